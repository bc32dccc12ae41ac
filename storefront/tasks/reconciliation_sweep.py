"""
Reconciliation Sweep - The Safety Net
=====================================
Background task that finishes what request handling could not:

- Payments left "verified" (signature good, order not yet confirmed because
  the gateway or the database was unavailable) are reconciled again. One whose
  draft is gone is flagged for review and taken out of "verified".
- Drafts holding a gateway order but no Order after a threshold are checked
  against the gateway; captured payments are reconciled.
- Expired drafts, and drafts already promoted to an Order, are deleted. An
  expired draft a verified payment still needs is kept.

Every step is safe to re-run: reconciliation is idempotent per payment id.
"""

import asyncio
from datetime import timedelta
from typing import Optional

from pydantic import BaseModel

from storefront.logger import get_logger
from storefront.pipeline.errors import CheckoutError
from storefront.pipeline.reconciliation import ReasonCode, ReconciliationOutcome
from storefront.schemas.orders import PaymentRecordStatus, utcnow

logger = get_logger("reconciliation_sweep")


# =============================================================================
# CONFIGURATION
# =============================================================================

class SweepConfig(BaseModel):
    """Sweep loop configuration"""

    # How often to sweep (seconds)
    interval_seconds: int = 300

    # How old a draft must be before the gateway is polled for it (minutes)
    threshold_minutes: int = 10

    # Maximum payments / drafts handled per cycle
    batch_size: int = 20

    enabled: bool = True

    @classmethod
    def from_settings(cls, settings) -> "SweepConfig":
        return cls(
            interval_seconds=settings.sweep_interval_seconds,
            threshold_minutes=settings.sweep_threshold_minutes,
            batch_size=settings.sweep_batch_size,
            enabled=settings.sweep_enabled,
        )


class SweepReport(BaseModel):
    verified_retried: int = 0
    drafts_checked: int = 0
    reconciled: int = 0
    still_pending: int = 0
    failed: int = 0
    drafts_reaped: int = 0
    held_for_review: int = 0
    errors: int = 0


# =============================================================================
# SWEEP LOGIC
# =============================================================================

async def _reconcile(service, report: SweepReport, gateway_payment_id: str, gateway_order_id: str, draft) -> None:
    try:
        result = await service.engine.reconcile_authenticated(
            gateway_payment_id=gateway_payment_id,
            gateway_order_id=gateway_order_id,
            draft=draft,
            source="sweep",
        )
    except CheckoutError as e:
        report.errors += 1
        logger.warning(
            "sweep_reconcile_error",
            gateway_payment_id=gateway_payment_id,
            gateway_order_id=gateway_order_id,
            code=e.code,
            error=str(e),
        )
        return

    if result.outcome == ReconciliationOutcome.RECONCILED:
        report.reconciled += 1
    elif result.outcome == ReconciliationOutcome.AWAITING_PAYMENT:
        report.still_pending += 1
    else:
        report.failed += 1


async def _hold_orphan(service, report: SweepReport, record) -> None:
    """A verified payment whose draft is gone cannot be confirmed automatically."""
    order = await service.store.find_order_by_gateway_order(record.gateway_order_id)
    await service.engine.hold_for_review(
        record,
        ReasonCode.DRAFT_NOT_FOUND,
        {
            "amount": record.amount_minor_units,
            "currency": record.currency,
            "order_id": order.order_id if order else None,
        },
    )
    report.held_for_review += 1


async def run_sweep_once(service, config: SweepConfig) -> SweepReport:
    """Run one sweep cycle. Exposed for tests and manual triggering."""
    report = SweepReport()
    store = service.store
    now = utcnow()

    # 1. Verified but not reconciled
    for record in await store.list_payments(PaymentRecordStatus.VERIFIED, limit=config.batch_size):
        report.verified_retried += 1
        draft = await store.find_draft_by_gateway_order(record.gateway_order_id)
        if draft is None:
            await _hold_orphan(service, report, record)
            continue
        await _reconcile(service, report, record.gateway_payment_id, record.gateway_order_id, draft)

    # 2. Drafts whose payment never reached us
    created_before = now - timedelta(minutes=config.threshold_minutes)
    drafts = await store.list_unreconciled_drafts(created_before, config.batch_size)
    for draft in drafts:
        report.drafts_checked += 1
        try:
            payments = await service.gateway_client.fetch_order_payments(draft.gateway_order_id)
        except CheckoutError as e:
            report.errors += 1
            logger.warning("sweep_gateway_poll_failed", gateway_order_id=draft.gateway_order_id, error=str(e))
            continue
        for payment in payments:
            if payment.is_captured:
                await _reconcile(service, report, payment.id, draft.gateway_order_id, draft)

    # 3. Reap
    report.drafts_reaped = await store.delete_expired_drafts(now)

    logger.info("sweep_cycle_complete", **report.model_dump())
    return report


async def reconciliation_sweep_loop(service, config: SweepConfig):
    """
    Background task that runs every ``interval_seconds``.

    Errors are logged and the loop carries on with the next cycle.
    """
    logger.info(
        "sweep_loop_started",
        interval=config.interval_seconds,
        threshold=config.threshold_minutes,
        enabled=config.enabled,
    )

    if not config.enabled:
        logger.info("sweep_loop_disabled")
        return

    while True:
        try:
            await run_sweep_once(service, config)
        except Exception as e:
            logger.error("sweep_loop_error", error=str(e), exc_info=True)

        await asyncio.sleep(config.interval_seconds)


def start_sweep(service, config: SweepConfig) -> Optional[asyncio.Task]:
    """Schedule the loop on the running event loop; None when disabled."""
    if not config.enabled:
        logger.info("sweep_loop_disabled")
        return None
    return asyncio.create_task(reconciliation_sweep_loop(service, config))
