"""
Structured logging setup.

Every component logs through structlog with a bound ``component`` key:

    logger = get_logger("reconciliation")
    logger.info("payment_captured", gateway_payment_id="pay_123")
"""

import logging
from typing import Optional

import structlog


def configure_logging(level: str = "INFO", fmt: str = "json") -> None:
    """Configure structlog once for the process."""
    level_num = getattr(logging, level.upper(), logging.INFO)

    if fmt == "console":
        renderer = structlog.dev.ConsoleRenderer(colors=False)
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level_num),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(component: Optional[str] = None, **context):
    """Get a structlog logger bound to a component name."""
    logger = structlog.get_logger()
    if component:
        logger = logger.bind(component=component)
    if context:
        logger = logger.bind(**context)
    return logger
