"""
Checkout Service
================
Application layer between the HTTP routes and the pipeline:

- calculate: cart -> breakdown & totals
- create_checkout: breakdown -> gateway order -> persisted draft
- verify_payment: tagged callback -> reconciliation -> confirmed Order
- handle_webhook: signed gateway event -> routed handler
- refund_order: gateway refund -> paid -> refunded
- update_order_status: fulfilment progress (processing, shipped, delivered, cancelled)

Failure results from reconciliation are raised as CheckoutError subclasses so
the API layer has one place that maps errors to responses.
"""

import json
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Sequence

from pydantic import BaseModel, ValidationError

from storefront.logger import get_logger
from storefront.pipeline.errors import (
    AmountMismatchError,
    DraftNotFoundError,
    InvalidSignatureError,
    InvalidTransitionError,
    InvalidWebhookPayloadError,
    OrderNotFoundError,
    PaymentDeclinedError,
    ReconciliationPendingError,
)
from storefront.pipeline.gateway import GatewayOrderService, PaymentGatewayClient, RazorpayClient
from storefront.pipeline.reconciliation import (
    ReasonCode,
    ReconciliationEngine,
    ReconciliationOutcome,
    ReconciliationResult,
)
from storefront.pipeline.signatures import SignatureVerifier
from storefront.pipeline.tax_calculator import TaxCalculator
from storefront.pipeline.webhooks import WebhookRouter
from storefront.schemas.api import ClientPaymentCallback, PaymentCallback, WebhookPaymentCallback
from storefront.schemas.orders import (
    Customer,
    GatewayPayment,
    LineItem,
    Order,
    OrderDraft,
    OrderFinancials,
    PaymentStatus,
    RefundEntry,
    ReviewFlag,
    ShippingAddress,
    StatusUpdate,
    utcnow,
)
from storefront.storage import IOrderStore, create_store


class CheckoutSession(BaseModel):
    """What the storefront needs to open the hosted checkout."""

    draft_id: str
    gateway_order_id: str
    amount: int
    currency: str
    financials: OrderFinancials
    key_id: str
    expires_at: datetime


class CheckoutService:
    """Checkout, verification, webhook, refund and fulfilment use cases."""

    def __init__(
        self,
        settings,
        store: IOrderStore,
        gateway_client: PaymentGatewayClient,
        calculator: Optional[TaxCalculator] = None,
        verifier: Optional[SignatureVerifier] = None,
        engine: Optional[ReconciliationEngine] = None,
    ):
        self.settings = settings
        self.store = store
        self.gateway_client = gateway_client
        self.calculator = calculator or TaxCalculator.from_settings(settings)
        self.verifier = verifier or SignatureVerifier(settings.gateway_key_secret, settings.webhook_secret)
        self.gateway_orders = GatewayOrderService(gateway_client)
        self.engine = engine or ReconciliationEngine(
            store=store,
            gateway=gateway_client,
            verifier=self.verifier,
            max_retries=settings.store_max_retries,
            backoff_seconds=settings.store_backoff_seconds,
        )

        self.router = WebhookRouter()
        self._register_handlers()
        self._logger = get_logger("checkout_service")

    @classmethod
    def from_settings(cls, settings, store: Optional[IOrderStore] = None, gateway_client=None) -> "CheckoutService":
        return cls(
            settings=settings,
            store=store or create_store(settings),
            gateway_client=gateway_client or RazorpayClient.from_settings(settings),
        )

    async def close(self) -> None:
        await self.gateway_client.close()

    # =========================================================================
    # CHECKOUT
    # =========================================================================

    def calculate(self, items: Sequence[LineItem], delivery_charge: int = 0) -> OrderFinancials:
        return self.calculator.compute_breakdown(items, delivery_charge)

    async def create_checkout(
        self,
        items: Sequence[LineItem],
        delivery_charge: int,
        customer: Customer,
        shipping_address: ShippingAddress,
    ) -> CheckoutSession:
        """Open a gateway order for the cart and persist the draft.

        The draft is written only once the gateway has confirmed the order, so a
        gateway failure leaves nothing behind.
        """
        financials = self.calculate(items, delivery_charge)
        now = utcnow()
        draft = OrderDraft(
            items=list(items),
            delivery_charge=delivery_charge,
            financials=financials,
            customer=customer,
            shipping_address=shipping_address,
            currency=self.settings.currency,
            created_at=now,
            expires_at=now + timedelta(seconds=self.settings.draft_ttl_seconds),
        )
        log = self._logger.bind(draft_id=draft.draft_id)
        log.info("checkout_started", items=len(draft.items), grand_total=financials.grand_total)

        gateway_order = await self.gateway_orders.create_gateway_order(
            amount_minor_units=financials.grand_total,
            currency=draft.currency,
            idempotency_key=draft.draft_id,
            metadata={"draft_id": draft.draft_id, "customer_email": customer.email},
        )
        draft = draft.model_copy(update={"gateway_order_id": gateway_order.gateway_order_id})
        await self.store.save_draft(draft)

        log.info("checkout_created", gateway_order_id=gateway_order.gateway_order_id)
        return CheckoutSession(
            draft_id=draft.draft_id,
            gateway_order_id=gateway_order.gateway_order_id,
            amount=gateway_order.amount_minor_units,
            currency=gateway_order.currency,
            financials=financials,
            key_id=self.settings.gateway_key_id,
            expires_at=draft.expires_at,
        )

    # =========================================================================
    # VERIFICATION
    # =========================================================================

    async def verify_payment(self, callback: PaymentCallback) -> ReconciliationResult:
        """Reconcile a callback; anything but a confirmed Order is raised."""
        if isinstance(callback, ClientPaymentCallback):
            draft = await self.store.find_draft(callback.draft_id)
            result = await self.engine.reconcile(
                gateway_payment_id=callback.gateway_payment_id,
                gateway_order_id=callback.gateway_order_id,
                provided_signature=callback.signature,
                draft=draft,
            )
        else:
            draft = await self.store.find_draft_by_gateway_order(callback.gateway_order_id)
            result = await self.engine.reconcile_authenticated(
                gateway_payment_id=callback.gateway_payment_id,
                gateway_order_id=callback.gateway_order_id,
                draft=draft,
            )
        return self._raise_for_result(result)

    @staticmethod
    def _raise_for_result(result: ReconciliationResult) -> ReconciliationResult:
        context = {
            "gateway_payment_id": result.payment.gateway_payment_id if result.payment else None,
            "reason_code": result.reason_code.value if result.reason_code else None,
        }
        if result.outcome == ReconciliationOutcome.RECONCILED:
            if result.order is None:
                raise OrderNotFoundError("Payment captured but order record is missing", **context)
            return result
        if result.outcome == ReconciliationOutcome.SIGNATURE_REJECTED:
            raise InvalidSignatureError(result.message, **context)
        if result.outcome == ReconciliationOutcome.PAYMENT_FAILED:
            raise PaymentDeclinedError(result.message, **context)
        if result.outcome == ReconciliationOutcome.GATEWAY_STATUS_MISMATCH:
            raise AmountMismatchError(result.message, **context)
        raise ReconciliationPendingError(result.message, **context)

    async def get_order(self, order_id: str) -> Order:
        order = await self.store.find_order(order_id)
        if order is None:
            raise OrderNotFoundError(f"Order {order_id} not found", order_id=order_id)
        return order

    # =========================================================================
    # FULFILMENT
    # =========================================================================

    async def update_order_status(self, order_id: str, update: StatusUpdate) -> Order:
        order = await self.store.update_order_status(order_id, update)
        if order is None:
            raise OrderNotFoundError(f"Order {order_id} not found", order_id=order_id)
        self._logger.info(
            "order_status_updated",
            order_id=order_id,
            status=order.status.value,
            tracking_number=order.fulfilment.tracking_number,
        )
        return order

    # =========================================================================
    # REFUNDS
    # =========================================================================

    async def refund_order(self, order_id: str, amount: Optional[int] = None, reason: str = "") -> Order:
        """Refund a paid order through the gateway (full remaining amount by default)."""
        order = await self.get_order(order_id)
        if order.payment_status not in (PaymentStatus.PAID, PaymentStatus.REFUNDED) or not order.gateway_payment_id:
            raise InvalidTransitionError(
                f"Order {order_id} is {order.payment_status.value}; only paid orders can be refunded",
                order_id=order_id,
            )
        remaining = order.financials.grand_total - order.refunded_amount
        amount = remaining if amount is None else amount
        if amount <= 0 or amount > remaining:
            raise InvalidTransitionError(
                f"Refund of {amount} is outside the refundable {remaining}",
                order_id=order_id,
            )

        refund = await self.gateway_client.refund_payment(order.gateway_payment_id, amount, reason)
        updated = await self.store.apply_refund(
            order.gateway_payment_id,
            RefundEntry(refund_id=refund.id, amount=refund.amount, reason=reason or None, status=refund.status),
        )
        self._logger.info("order_refunded", order_id=order_id, refund_id=refund.id, amount=refund.amount)
        return updated

    # =========================================================================
    # WEBHOOKS
    # =========================================================================

    async def handle_webhook(
        self,
        raw_body: bytes,
        signature: Optional[str],
        event_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Authenticate a gateway webhook delivery and route it."""
        if not self.verifier.verify_webhook(raw_body, signature):
            raise InvalidSignatureError("Webhook signature verification failed", event_id=event_id)

        try:
            event = json.loads(raw_body)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise InvalidWebhookPayloadError(str(e), event_id=event_id) from e
        if not isinstance(event, dict):
            raise InvalidWebhookPayloadError("Webhook body must be a JSON object", event_id=event_id)

        event_type = event.get("event", "unknown")
        correlation_id = event_id or uuid.uuid4().hex[:12]
        self._logger.info("webhook_received", event_type=event_type, correlation_id=correlation_id)

        result = await self.router.route(event, correlation_id)
        if result is None:
            return {"status": "ignored", "event": event_type}
        return {"status": "processed", "event": event_type, **result}

    def _register_handlers(self):
        """Register all webhook handlers"""

        @self.router.register("payment.captured")
        async def handle_payment_captured(event: dict, correlation_id: str):
            return await self._on_payment_captured(event, correlation_id)

        @self.router.register("order.paid")
        async def handle_order_paid(event: dict, correlation_id: str):
            return await self._on_payment_captured(event, correlation_id)

        @self.router.register("payment.failed")
        async def handle_payment_failed(event: dict, correlation_id: str):
            return await self._on_payment_failed(event, correlation_id)

        @self.router.register("refund.processed")
        async def handle_refund(event: dict, correlation_id: str):
            return await self._on_refund(event, correlation_id)

    @staticmethod
    def _entity(event: dict, name: str) -> dict:
        entity = ((event.get("payload") or {}).get(name) or {}).get("entity")
        if not isinstance(entity, dict):
            raise InvalidWebhookPayloadError(f"Event has no {name} entity", event=event.get("event"))
        return entity

    def _payment_entity(self, event: dict) -> GatewayPayment:
        try:
            return GatewayPayment.model_validate(self._entity(event, "payment"))
        except ValidationError as e:
            raise InvalidWebhookPayloadError(str(e), event=event.get("event")) from e

    async def _on_payment_captured(self, event: dict, correlation_id: str) -> Dict[str, Any]:
        payment = self._payment_entity(event)
        gateway_order_id = payment.order_id or self._entity(event, "order").get("id")
        if not gateway_order_id:
            raise InvalidWebhookPayloadError("Captured payment has no order id", event=event.get("event"))
        log = self._logger.bind(
            correlation_id=correlation_id,
            gateway_payment_id=payment.id,
            gateway_order_id=gateway_order_id,
        )

        callback = WebhookPaymentCallback(
            gateway_payment_id=payment.id,
            gateway_order_id=gateway_order_id,
            event_id=correlation_id,
        )
        try:
            result = await self.verify_payment(callback)
        except DraftNotFoundError:
            # Money moved for a checkout we no longer know about.
            await self.store.flag_for_review(ReviewFlag(
                gateway_payment_id=payment.id,
                gateway_order_id=gateway_order_id,
                reason=ReasonCode.DRAFT_NOT_FOUND.value,
                details={"event": event.get("event"), "amount": payment.amount},
            ))
            log.error("webhook_draft_missing")
            return {"outcome": "draft_not_found"}
        except (AmountMismatchError, PaymentDeclinedError, ReconciliationPendingError) as e:
            # Recorded by the engine; acknowledging stops the gateway redelivering.
            log.warning("webhook_reconcile_unsuccessful", code=e.code)
            return {"outcome": e.code.lower()}

        return {
            "outcome": result.outcome.value,
            "orderId": result.order.order_id,
            "replayed": result.replayed,
        }

    async def _on_payment_failed(self, event: dict, correlation_id: str) -> Dict[str, Any]:
        payment = self._payment_entity(event)
        record = await self.engine.record_failed_payment(payment)
        self._logger.info(
            "payment_failed_recorded",
            correlation_id=correlation_id,
            gateway_payment_id=payment.id,
            status=record.status.value if record else None,
        )
        return {"paymentStatus": record.status.value if record else None}

    async def _on_refund(self, event: dict, correlation_id: str) -> Dict[str, Any]:
        refund = self._entity(event, "refund")
        payment_id = refund.get("payment_id")
        if not refund.get("id") or not payment_id:
            raise InvalidWebhookPayloadError("Refund event missing ids", event=event.get("event"))

        notes = refund.get("notes") or {}
        entry = RefundEntry(
            refund_id=refund["id"],
            amount=int(refund.get("amount", 0)),
            reason=notes.get("reason") if isinstance(notes, dict) else None,
            status=refund.get("status", "processed"),
        )
        if await self._exceeds_refundable(payment_id, entry, correlation_id):
            return {"outcome": "over_refund"}

        order = await self.store.apply_refund(payment_id, entry)
        if order is None:
            self._logger.warning("refund_for_unknown_payment", correlation_id=correlation_id, gateway_payment_id=payment_id)
            return {"outcome": "unknown_payment"}

        self._logger.info(
            "refund_applied",
            correlation_id=correlation_id,
            order_id=order.order_id,
            refund_id=entry.refund_id,
        )
        return {"orderId": order.order_id, "paymentStatus": order.payment_status.value}

    async def _exceeds_refundable(self, payment_id: str, entry: RefundEntry, correlation_id: str) -> bool:
        """A refund larger than what is left on the order is held for review."""
        record = await self.store.find_payment_by_gateway_id(payment_id)
        if record is None:
            return False
        order = await self.store.find_order_by_gateway_order(record.gateway_order_id)
        if order is None or any(r.refund_id == entry.refund_id for r in order.refunds):
            return False
        remaining = order.financials.grand_total - order.refunded_amount
        if entry.amount <= remaining:
            return False

        await self.store.flag_for_review(ReviewFlag(
            gateway_payment_id=payment_id,
            gateway_order_id=record.gateway_order_id,
            reason=ReasonCode.OVER_REFUND.value,
            details={"refund_id": entry.refund_id, "amount": entry.amount, "refundable": remaining},
        ))
        self._logger.error(
            "refund_exceeds_refundable",
            correlation_id=correlation_id,
            order_id=order.order_id,
            refund_id=entry.refund_id,
            amount=entry.amount,
            refundable=remaining,
        )
        return True
