"""
Reconciliation Engine
=====================
Turns a completed gateway payment into exactly one confirmed Order.

Flow per payment:
1. Replay check: a captured record for the payment id returns the recorded Order
2. Callback signature check (skipped for webhook deliveries, which are
   authenticated at the envelope level). A rejected callback only ever
   inserts a record; an existing one is left as it is
3. Authoritative payment fetch from the gateway
4. Amount / currency / order cross-check against the draft
5. Atomic upsert of PaymentRecord + Order, guarded by uniqueness
6. Finalized Order returned

Concurrent attempts for the same payment converge through the store's
uniqueness guard: the loser gets StorageConflictError and re-reads.

pip install pydantic structlog
"""

import asyncio
import uuid
from enum import Enum
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel

from storefront.logger import get_logger
from storefront.pipeline.errors import (
    CheckoutError,
    DraftNotFoundError,
    GatewayUnavailableError,
    StorageConflictError,
    StorageUnavailableError,
)
from storefront.pipeline.gateway import PaymentGatewayClient
from storefront.pipeline.signatures import SignatureVerifier
from storefront.schemas.orders import (
    GatewayPayment,
    Order,
    OrderDraft,
    PaymentRecord,
    PaymentRecordStatus,
    ReviewFlag,
    utcnow,
)
from storefront.storage.base import IOrderStore


# =============================================================================
# RESULT TYPES
# =============================================================================

class ReconciliationOutcome(str, Enum):
    AWAITING_PAYMENT = "awaiting_payment"
    SIGNATURE_REJECTED = "signature_rejected"
    PAYMENT_FAILED = "payment_failed"
    GATEWAY_STATUS_MISMATCH = "gateway_status_mismatch"
    RECONCILED = "reconciled"


class ReasonCode(str, Enum):
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    PAYMENT_NOT_CAPTURED = "PAYMENT_NOT_CAPTURED"
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
    ORDER_MISMATCH = "ORDER_MISMATCH"
    DUPLICATE_PAYMENT = "DUPLICATE_PAYMENT"
    RECONCILIATION_PENDING = "RECONCILIATION_PENDING"
    DRAFT_NOT_FOUND = "DRAFT_NOT_FOUND"
    OVER_REFUND = "OVER_REFUND"


class ReconciliationResult(BaseModel):
    outcome: ReconciliationOutcome
    order: Optional[Order] = None
    payment: Optional[PaymentRecord] = None
    reason_code: Optional[ReasonCode] = None
    message: Optional[str] = None
    replayed: bool = False

    @property
    def success(self) -> bool:
        return self.outcome == ReconciliationOutcome.RECONCILED


# =============================================================================
# ENGINE
# =============================================================================

class ReconciliationEngine:
    """Orchestrates signature, gateway and store into one idempotent transition."""

    def __init__(
        self,
        store: IOrderStore,
        gateway: PaymentGatewayClient,
        verifier: SignatureVerifier,
        max_retries: int = 3,
        backoff_seconds: float = 0.2,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.gateway = gateway
        self.verifier = verifier
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep
        self._logger = get_logger("reconciliation")

    async def reconcile(
        self,
        gateway_payment_id: str,
        gateway_order_id: str,
        provided_signature: Optional[str],
        draft: Optional[OrderDraft],
    ) -> ReconciliationResult:
        """Reconcile a client payment callback.

        ``draft`` may be None only for replays; a first-time reconcile without
        its draft raises DraftNotFoundError after the signature check.
        """
        log = self._bind(gateway_payment_id, gateway_order_id, source="client")

        existing = await self.store.find_payment_by_gateway_id(gateway_payment_id)
        signature_ok = self.verifier.verify_payment(gateway_order_id, gateway_payment_id, provided_signature)

        if existing is not None and existing.is_settled:
            if not signature_ok:
                log.warning("replay_signature_rejected")
                return self._rejected(existing)
            return await self._replay(existing, log)

        if not signature_ok:
            if existing is not None:
                # An unauthenticated caller never rewrites a recorded payment.
                log.warning("signature_rejected_for_recorded_payment", status=existing.status.value)
                await self._flag(
                    gateway_payment_id, gateway_order_id, ReasonCode.INVALID_SIGNATURE,
                    {"recorded_status": existing.status.value}, log,
                )
                return self._rejected(existing)

            record = PaymentRecord(
                gateway_payment_id=gateway_payment_id,
                gateway_order_id=gateway_order_id,
                signature=provided_signature,
                status=PaymentRecordStatus.FAILED,
                amount_minor_units=draft.grand_total if draft else 0,
                currency=draft.currency if draft else "INR",
                reason=ReasonCode.INVALID_SIGNATURE.value,
            )
            stored = await self._record_rejection(record, log)
            log.warning("signature_rejected")
            return self._rejected(stored)

        return await self._settle(gateway_payment_id, gateway_order_id, provided_signature, draft, log)

    async def reconcile_authenticated(
        self,
        gateway_payment_id: str,
        gateway_order_id: str,
        draft: Optional[OrderDraft],
        source: str = "webhook",
    ) -> ReconciliationResult:
        """Reconcile a payment whose origin is already authenticated.

        Used for webhook deliveries and the background sweep. Skips only the
        callback signature check.
        """
        log = self._bind(gateway_payment_id, gateway_order_id, source=source)

        existing = await self.store.find_payment_by_gateway_id(gateway_payment_id)
        if existing is not None and existing.is_settled:
            return await self._replay(existing, log)

        signature = existing.signature if existing is not None else None
        return await self._settle(gateway_payment_id, gateway_order_id, signature, draft, log)

    async def record_failed_payment(self, payment: GatewayPayment) -> Optional[PaymentRecord]:
        """Record a gateway-reported failure. Settled payments are left alone."""
        log = self._bind(payment.id, payment.order_id or "", source="webhook")
        existing = await self.store.find_payment_by_gateway_id(payment.id)
        if existing is not None and existing.is_settled:
            log.warning("failure_event_for_settled_payment", status=existing.status.value)
            return existing
        record = PaymentRecord(
            gateway_payment_id=payment.id,
            gateway_order_id=payment.order_id or (existing.gateway_order_id if existing else ""),
            signature=existing.signature if existing else None,
            status=PaymentRecordStatus.FAILED,
            amount_minor_units=payment.amount,
            currency=payment.currency,
            method=payment.method,
            reason=self._gateway_reason(payment),
        )
        return await self._record_failure(record, log)

    async def hold_for_review(
        self,
        record: PaymentRecord,
        reason: ReasonCode,
        details: Optional[dict] = None,
    ) -> Optional[PaymentRecord]:
        """Take a payment out of automatic retry and leave it for a human."""
        log = self._bind(record.gateway_payment_id, record.gateway_order_id, source="sweep")
        await self._flag(record.gateway_payment_id, record.gateway_order_id, reason, details or {}, log)
        held = record.model_copy(update={"status": PaymentRecordStatus.FAILED, "reason": reason.value})
        stored = await self._record_failure(held, log)
        log.error("payment_held_for_review", reason=reason.value)
        return stored

    # =========================================================================
    # STEPS 3-6
    # =========================================================================

    async def _settle(self, gateway_payment_id, gateway_order_id, signature, draft, log) -> ReconciliationResult:
        if draft is None:
            log.warning("draft_missing")
            raise DraftNotFoundError(
                f"No checkout draft for gateway order {gateway_order_id}",
                gateway_order_id=gateway_order_id,
            )

        try:
            payment = await self.gateway.fetch_payment(gateway_payment_id)
        except GatewayUnavailableError:
            # Signature was good; leave a verified record so the sweep retries.
            await self._record_verified(gateway_payment_id, gateway_order_id, signature, draft, log)
            raise

        base = PaymentRecord(
            gateway_payment_id=gateway_payment_id,
            gateway_order_id=gateway_order_id,
            signature=signature,
            amount_minor_units=payment.amount,
            currency=payment.currency,
            method=payment.method,
        )

        if not payment.is_captured:
            reason = self._gateway_reason(payment)
            stored = await self._record_failure(
                base.model_copy(update={"status": PaymentRecordStatus.FAILED, "reason": reason}), log
            )
            log.info("payment_not_captured", gateway_status=payment.status, reason=reason)
            return ReconciliationResult(
                outcome=ReconciliationOutcome.PAYMENT_FAILED,
                payment=stored,
                reason_code=ReasonCode.PAYMENT_NOT_CAPTURED,
                message=reason,
            )

        mismatch = self._cross_check(payment, gateway_order_id, draft)
        if mismatch is not None:
            return await self._mismatch(base, mismatch, payment, draft, log)

        captured = base.model_copy(update={
            "status": PaymentRecordStatus.CAPTURED,
            "captured_at": utcnow(),
        })
        method = f" via {payment.method}" if payment.method else ""
        candidate = Order.from_draft(draft, gateway_order_id).confirm_payment(
            captured, f"Payment {gateway_payment_id} captured{method}"
        )
        return await self._persist(captured, candidate, log)

    def _cross_check(self, payment: GatewayPayment, gateway_order_id: str, draft: OrderDraft) -> Optional[ReasonCode]:
        if payment.order_id and payment.order_id != gateway_order_id:
            return ReasonCode.ORDER_MISMATCH
        if draft.gateway_order_id and draft.gateway_order_id != gateway_order_id:
            return ReasonCode.ORDER_MISMATCH
        if payment.amount != draft.grand_total or payment.currency != draft.currency:
            return ReasonCode.AMOUNT_MISMATCH
        return None

    async def _mismatch(self, base, reason: ReasonCode, payment, draft, log) -> ReconciliationResult:
        stored = await self._record_failure(
            base.model_copy(update={"status": PaymentRecordStatus.FAILED, "reason": reason.value}), log
        )
        details = {
            "draft_id": draft.draft_id,
            "expected_amount": draft.grand_total,
            "expected_currency": draft.currency,
            "gateway_amount": payment.amount,
            "gateway_currency": payment.currency,
            "gateway_reported_order_id": payment.order_id,
        }
        await self._flag(base.gateway_payment_id, base.gateway_order_id, reason, details, log)
        log.error("gateway_status_mismatch", reason=reason.value, **details)
        return ReconciliationResult(
            outcome=ReconciliationOutcome.GATEWAY_STATUS_MISMATCH,
            payment=stored,
            reason_code=reason,
            message=f"{reason.value}: expected {draft.grand_total} {draft.currency}, "
                    f"gateway reported {payment.amount} {payment.currency}",
        )

    async def _persist(self, captured: PaymentRecord, candidate: Order, log) -> ReconciliationResult:
        attempts = self.max_retries + 1
        for attempt in range(attempts):
            try:
                order = await self.store.upsert_payment_and_order(captured, candidate)
            except StorageConflictError:
                log.info("reconcile_conflict_rereading")
                return await self._resolve_conflict(captured, log)
            except StorageUnavailableError as e:
                log.warning("store_unavailable_retrying", attempt=attempt + 1, max_attempts=attempts, error=str(e))
                if attempt + 1 < attempts:
                    await self._sleep(self.backoff_seconds * (2 ** attempt))
                continue
            log.info("payment_reconciled", order_id=order.order_id, amount=captured.amount_minor_units)
            return ReconciliationResult(
                outcome=ReconciliationOutcome.RECONCILED,
                order=order,
                payment=captured,
            )

        verified = captured.model_copy(update={"status": PaymentRecordStatus.VERIFIED, "captured_at": None})
        stored = await self._record_failure(verified, log)
        log.error("reconciliation_pending", attempts=attempts)
        return ReconciliationResult(
            outcome=ReconciliationOutcome.AWAITING_PAYMENT,
            payment=stored,
            reason_code=ReasonCode.RECONCILIATION_PENDING,
            message="Payment verified; order confirmation pending",
        )

    async def _resolve_conflict(self, captured: PaymentRecord, log) -> ReconciliationResult:
        record = await self.store.find_payment_by_gateway_id(captured.gateway_payment_id)
        if record is not None and record.is_settled:
            return await self._replay(record, log)

        order = await self.store.find_order_by_gateway_order(captured.gateway_order_id)
        if order is not None and order.gateway_payment_id != captured.gateway_payment_id:
            details = {"order_id": order.order_id, "paid_by": order.gateway_payment_id}
            await self._flag(
                captured.gateway_payment_id, captured.gateway_order_id,
                ReasonCode.DUPLICATE_PAYMENT, details, log,
            )
            failed = captured.model_copy(update={
                "status": PaymentRecordStatus.FAILED,
                "reason": ReasonCode.DUPLICATE_PAYMENT.value,
                "captured_at": None,
            })
            stored = await self._record_failure(failed, log)
            log.error("duplicate_payment_for_order", **details)
            return ReconciliationResult(
                outcome=ReconciliationOutcome.GATEWAY_STATUS_MISMATCH,
                order=order,
                payment=stored,
                reason_code=ReasonCode.DUPLICATE_PAYMENT,
                message="Order was already paid by another payment",
            )

        log.error("conflict_unresolved")
        return ReconciliationResult(
            outcome=ReconciliationOutcome.AWAITING_PAYMENT,
            payment=record,
            reason_code=ReasonCode.RECONCILIATION_PENDING,
            message="Payment verified; order confirmation pending",
        )

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _replay(self, record: PaymentRecord, log) -> ReconciliationResult:
        order = await self.store.find_order_by_gateway_order(record.gateway_order_id)
        log.info("reconcile_replayed", order_id=order.order_id if order else None)
        return ReconciliationResult(
            outcome=ReconciliationOutcome.RECONCILED,
            order=order,
            payment=record,
            replayed=True,
        )

    @staticmethod
    def _rejected(record: Optional[PaymentRecord]) -> ReconciliationResult:
        return ReconciliationResult(
            outcome=ReconciliationOutcome.SIGNATURE_REJECTED,
            payment=record,
            reason_code=ReasonCode.INVALID_SIGNATURE,
            message="Signature verification failed",
        )

    async def _record_failure(self, record: PaymentRecord, log) -> Optional[PaymentRecord]:
        """Write a non-captured record; storage trouble must not mask the outcome."""
        try:
            return await self.store.save_payment(record)
        except StorageConflictError:
            log.info("payment_already_settled", status=record.status.value)
            return await self.store.find_payment_by_gateway_id(record.gateway_payment_id)
        except StorageUnavailableError as e:
            log.error("payment_record_write_failed", status=record.status.value, error=str(e))
            return None

    async def _record_rejection(self, record: PaymentRecord, log) -> Optional[PaymentRecord]:
        """Insert a rejected record; one written concurrently wins and is returned."""
        try:
            stored = await self.store.insert_payment_if_absent(record)
            if stored is None:
                stored = await self.store.find_payment_by_gateway_id(record.gateway_payment_id)
            return stored
        except StorageUnavailableError as e:
            log.error("payment_record_write_failed", status=record.status.value, error=str(e))
            return None

    async def _record_verified(self, gateway_payment_id, gateway_order_id, signature, draft, log) -> None:
        await self._record_failure(PaymentRecord(
            gateway_payment_id=gateway_payment_id,
            gateway_order_id=gateway_order_id,
            signature=signature,
            status=PaymentRecordStatus.VERIFIED,
            amount_minor_units=draft.grand_total,
            currency=draft.currency,
        ), log)
        log.warning("gateway_fetch_failed_payment_left_verified")

    async def _flag(self, gateway_payment_id, gateway_order_id, reason: ReasonCode, details, log) -> None:
        try:
            await self.store.flag_for_review(ReviewFlag(
                gateway_payment_id=gateway_payment_id,
                gateway_order_id=gateway_order_id,
                reason=reason.value,
                details=details,
            ))
        except CheckoutError as e:
            log.error("review_flag_write_failed", reason=reason.value, error=str(e))

    @staticmethod
    def _gateway_reason(payment: GatewayPayment) -> str:
        return payment.error_description or payment.error_code or f"Payment {payment.status}"

    def _bind(self, gateway_payment_id: str, gateway_order_id: str, **context):
        return self._logger.bind(
            correlation_id=uuid.uuid4().hex[:12],
            gateway_payment_id=gateway_payment_id,
            gateway_order_id=gateway_order_id,
            **context,
        )
