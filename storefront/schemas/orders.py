"""
Order Schemas
=============
Domain models for checkout drafts, gateway orders, payment records and the
persisted Order.

All money is integer minor currency units (paise). Rates are Decimal
percentages (``Decimal("5")`` is 5 %).

pip install pydantic
"""

import hashlib
import uuid
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator

from storefront.pipeline.errors import InvalidTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS
# =============================================================================

class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    """Order-level payment status."""
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentRecordStatus(str, Enum):
    """Status of a single gateway payment as we have recorded it."""
    PENDING = "pending"
    VERIFIED = "verified"
    CAPTURED = "captured"
    FAILED = "failed"
    REFUNDED = "refunded"


SETTLED_PAYMENT_STATUSES = frozenset({PaymentRecordStatus.CAPTURED, PaymentRecordStatus.REFUNDED})


# pending -> paid -> refunded, or pending -> failed (terminal)
PAYMENT_STATUS_TRANSITIONS: Dict[PaymentStatus, frozenset] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.PAID, PaymentStatus.FAILED}),
    PaymentStatus.PAID: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}


# Fulfilment moves forward only; cancelled and delivered are terminal.
ORDER_STATUS_TRANSITIONS: Dict[OrderStatus, frozenset] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


# =============================================================================
# CART
# =============================================================================

class LineItem(BaseModel):
    """One cart line. Validated by the tax calculator, not here."""
    model_config = ConfigDict(frozen=True)

    product_id: str
    name: str
    unit_price: int
    quantity: int
    attributes: Dict[str, str] = Field(default_factory=dict)

    @computed_field
    @property
    def line_total(self) -> int:
        return self.unit_price * self.quantity


class TaxComponent(BaseModel):
    """Tax attributable to one rate tier."""
    model_config = ConfigDict(frozen=True)

    label: str
    rate: Decimal
    items_value: int
    delivery_share: int
    tax_amount: int


class GstSplit(BaseModel):
    cgst: int = 0
    sgst: int = 0
    igst: int = 0


class TaxBreakdown(BaseModel):
    model_config = ConfigDict(frozen=True)

    taxable_value: int
    tax_rate: Decimal
    tax_amount: int
    components: List[TaxComponent] = Field(default_factory=list)

    def gst_split(self, inter_state: bool = False) -> GstSplit:
        """Split the tax into CGST/SGST halves, or IGST for inter-state supply.

        The halves always sum to ``tax_amount``; an odd paisa goes to CGST.
        """
        if inter_state:
            return GstSplit(igst=self.tax_amount)
        cgst = int((Decimal(self.tax_amount) / 2).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        return GstSplit(cgst=cgst, sgst=self.tax_amount - cgst)


class OrderFinancials(BaseModel):
    """Breakdown and totals for a cart, fixed at draft time."""
    model_config = ConfigDict(frozen=True)

    subtotal: int
    delivery_charge: int
    tax: TaxBreakdown
    grand_total: int

    @model_validator(mode="after")
    def _check_grand_total(self) -> "OrderFinancials":
        expected = self.subtotal + self.delivery_charge + self.tax.tax_amount
        if self.grand_total != expected:
            raise ValueError(
                f"grand_total {self.grand_total} != subtotal + delivery + tax ({expected})"
            )
        return self


# =============================================================================
# CUSTOMER / SHIPPING
# =============================================================================

class Customer(BaseModel):
    name: str = Field(min_length=1)
    email: str = Field(min_length=3, pattern=r"^[^@\s]+@[^@\s]+$")
    phone: Optional[str] = None
    user_id: Optional[str] = None


class ShippingAddress(BaseModel):
    name: Optional[str] = None
    line1: str = Field(min_length=1)
    line2: Optional[str] = None
    city: str = Field(min_length=1)
    state: str = Field(min_length=1)
    pincode: str = Field(min_length=1)
    country: str = "India"
    landmark: Optional[str] = None
    phone: Optional[str] = None


# =============================================================================
# CHECKOUT DRAFT / GATEWAY ORDER
# =============================================================================

class OrderDraft(BaseModel):
    """Checkout in progress. Lives until reconciled or expired."""

    draft_id: str = Field(default_factory=lambda: f"DRF-{uuid.uuid4().hex[:16].upper()}")
    items: List[LineItem] = Field(min_length=1)
    delivery_charge: int = 0
    financials: OrderFinancials
    customer: Customer
    shipping_address: ShippingAddress
    currency: str = "INR"
    gateway_order_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _default_expiry(self) -> "OrderDraft":
        if self.expires_at is None:
            self.expires_at = self.created_at + timedelta(minutes=30)
        return self

    @computed_field
    @property
    def grand_total(self) -> int:
        return self.financials.grand_total

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


class GatewayOrder(BaseModel):
    """Payment intent registered with the gateway. Immutable."""
    model_config = ConfigDict(frozen=True)

    gateway_order_id: str
    amount_minor_units: int
    currency: str
    draft_id: str
    receipt: str
    status: str = "created"


class GatewayPayment(BaseModel):
    """Authoritative payment state as reported by the gateway."""

    id: str
    order_id: Optional[str] = None
    amount: int
    currency: str = "INR"
    status: str
    method: Optional[str] = None
    captured: bool = False
    error_code: Optional[str] = None
    error_description: Optional[str] = None

    @property
    def is_captured(self) -> bool:
        return self.status == "captured"


# =============================================================================
# PAYMENT RECORD / ORDER
# =============================================================================

class PaymentRecord(BaseModel):
    """Our record of one gateway payment. At most one per gateway_payment_id."""

    gateway_payment_id: str
    gateway_order_id: str
    signature: Optional[str] = None
    status: PaymentRecordStatus = PaymentRecordStatus.PENDING
    amount_minor_units: int = 0
    currency: str = "INR"
    method: Optional[str] = None
    reason: Optional[str] = None
    captured_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @computed_field
    @property
    def is_captured(self) -> bool:
        return self.status == PaymentRecordStatus.CAPTURED

    @property
    def is_settled(self) -> bool:
        """Captured, possibly refunded since. Settled records are never rewritten."""
        return self.status in SETTLED_PAYMENT_STATUSES


class TimelineEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: str
    description: str
    timestamp: datetime = Field(default_factory=utcnow)


class RefundEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    refund_id: str
    amount: int
    reason: Optional[str] = None
    status: str = "processed"
    processed_at: datetime = Field(default_factory=utcnow)


class Fulfilment(BaseModel):
    tracking_number: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None


class StatusUpdate(BaseModel):
    """A requested fulfilment change, applied by ``Order.transition_status``."""

    status: OrderStatus
    note: Optional[str] = None
    tracking_number: Optional[str] = None
    estimated_delivery: Optional[datetime] = None


class ReviewFlag(BaseModel):
    """A payment that needs a human before money state can move."""

    flag_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    gateway_payment_id: str
    gateway_order_id: str
    reason: str
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class Order(BaseModel):
    """The single persisted order entity."""

    order_id: str
    gateway_order_id: str
    gateway_payment_id: Optional[str] = None
    draft_id: str
    items: List[LineItem]
    financials: OrderFinancials
    customer: Customer
    shipping_address: ShippingAddress
    currency: str = "INR"
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_method: Optional[str] = None
    timeline: List[TimelineEntry] = Field(default_factory=list)
    refunds: List[RefundEntry] = Field(default_factory=list)
    fulfilment: Fulfilment = Field(default_factory=Fulfilment)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    paid_at: Optional[datetime] = None
    version: int = 1

    @staticmethod
    def generate_order_id(draft_id: str) -> str:
        """Deterministic business key, so concurrent creators agree on it."""
        h = hashlib.sha256(f"order:{draft_id}".encode()).hexdigest()[:12].upper()
        return f"ORD-{h}"

    @classmethod
    def from_draft(cls, draft: OrderDraft, gateway_order_id: str) -> "Order":
        return cls(
            order_id=cls.generate_order_id(draft.draft_id),
            gateway_order_id=gateway_order_id,
            draft_id=draft.draft_id,
            items=list(draft.items),
            financials=draft.financials,
            customer=draft.customer,
            shipping_address=draft.shipping_address,
            currency=draft.currency,
        )

    @computed_field
    @property
    def refunded_amount(self) -> int:
        return sum(r.amount for r in self.refunds)

    def with_timeline(self, status: str, description: str) -> "Order":
        entry = TimelineEntry(status=status, description=description)
        return self.model_copy(update={
            "timeline": [*self.timeline, entry],
            "updated_at": entry.timestamp,
            "version": self.version + 1,
        })

    def transition_payment(self, new_status: PaymentStatus, description: str) -> "Order":
        """Move payment_status along the allowed edges, recording the change."""
        if new_status not in PAYMENT_STATUS_TRANSITIONS[self.payment_status]:
            raise InvalidTransitionError(
                f"payment_status {self.payment_status.value} -> {new_status.value} not allowed",
                order_id=self.order_id,
            )
        return self.model_copy(update={"payment_status": new_status}).with_timeline(
            new_status.value, description
        )

    def transition_status(self, update: StatusUpdate) -> "Order":
        """Move the fulfilment status along the allowed edges.

        Only a paid order can progress past confirmed; cancelling is allowed
        from any non-terminal state. Shipped and delivered stamp their times.
        """
        new_status = update.status
        if new_status not in ORDER_STATUS_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"status {self.status.value} -> {new_status.value} not allowed",
                order_id=self.order_id,
            )
        if new_status != OrderStatus.CANCELLED and self.payment_status != PaymentStatus.PAID:
            raise InvalidTransitionError(
                f"Order is {self.payment_status.value}; only paid orders can be fulfilled",
                order_id=self.order_id,
            )

        now = utcnow()
        fulfilment = self.fulfilment.model_copy(update={
            key: value
            for key, value in (
                ("tracking_number", update.tracking_number),
                ("estimated_delivery", update.estimated_delivery),
                ("shipped_at", now if new_status == OrderStatus.SHIPPED else None),
                ("delivered_at", now if new_status == OrderStatus.DELIVERED else None),
            )
            if value is not None
        })
        return self.model_copy(update={"status": new_status, "fulfilment": fulfilment}).with_timeline(
            new_status.value, update.note or f"Status updated to {new_status.value}"
        )

    def confirm_payment(self, payment: PaymentRecord, description: str) -> "Order":
        paid = self.transition_payment(PaymentStatus.PAID, description)
        return paid.model_copy(update={
            "status": OrderStatus.CONFIRMED,
            "gateway_payment_id": payment.gateway_payment_id,
            "payment_method": payment.method,
            "paid_at": payment.captured_at or utcnow(),
        })

    def record_refund(self, refund: RefundEntry) -> "Order":
        """Apply a refund; a refund id already present is a no-op."""
        if any(r.refund_id == refund.refund_id for r in self.refunds):
            return self
        updated = self.model_copy(update={"refunds": [*self.refunds, refund]})
        if updated.payment_status == PaymentStatus.REFUNDED:
            return updated.with_timeline("refund", f"Additional refund processed: {refund.amount}")
        return updated.transition_payment(
            PaymentStatus.REFUNDED, f"Refund processed: {refund.amount}"
        )
