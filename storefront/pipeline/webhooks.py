"""
Webhook routing.

Gateway events are dispatched by their ``event`` name to registered async
handlers. Unknown events are acknowledged and ignored.
"""

from typing import Any, Awaitable, Callable, Dict, Optional

from storefront.logger import get_logger

WebhookHandler = Callable[[Dict[str, Any], str], Awaitable[Any]]


class WebhookRouter:
    """
    Clean webhook routing.
    Separates routing logic from business logic.
    """

    def __init__(self):
        self._handlers: Dict[str, WebhookHandler] = {}
        self._logger = get_logger("webhook_router")

    def register(self, event_type: str):
        """Decorator to register handler for event type"""
        def decorator(handler: WebhookHandler):
            self._handlers[event_type] = handler
            self._logger.debug("handler_registered", event_type=event_type)
            return handler
        return decorator

    async def route(self, event: Dict[str, Any], correlation_id: str) -> Optional[Any]:
        """Route event to appropriate handler"""
        event_type = event.get("event", "unknown")

        handler = self._handlers.get(event_type)
        if not handler:
            self._logger.info("no_handler", event_type=event_type, correlation_id=correlation_id)
            return None

        return await handler(event, correlation_id)
