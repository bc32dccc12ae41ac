"""
API Schemas
===========
Request and response bodies for the HTTP layer. JSON is camelCase on the wire;
Python attributes stay snake_case.

The payment callback is a tagged union on ``source`` so a webhook-derived
callback can never be mistaken for a client redirect (and vice versa).
"""

from datetime import datetime
from decimal import Decimal
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from storefront.schemas.orders import (
    Customer,
    LineItem,
    Order,
    OrderFinancials,
    ShippingAddress,
)


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# REQUESTS
# =============================================================================

class LineItemIn(ApiModel):
    product_id: str
    name: str
    unit_price: int
    quantity: int
    size: Optional[str] = None
    color: Optional[str] = None
    image: Optional[str] = None
    category: Optional[str] = None

    def to_line_item(self) -> LineItem:
        attributes = {
            key: value
            for key, value in (
                ("size", self.size),
                ("color", self.color),
                ("image", self.image),
                ("category", self.category),
            )
            if value is not None
        }
        return LineItem(
            product_id=self.product_id,
            name=self.name,
            unit_price=self.unit_price,
            quantity=self.quantity,
            attributes=attributes,
        )


class CustomerIn(ApiModel):
    name: str = Field(min_length=1)
    email: str = Field(pattern=r"^[^@\s]+@[^@\s]+$")
    phone: Optional[str] = None
    user_id: Optional[str] = None

    def to_customer(self) -> Customer:
        return Customer(**self.model_dump())


class ShippingAddressIn(ApiModel):
    name: Optional[str] = None
    line1: str = Field(min_length=1)
    line2: Optional[str] = None
    city: str = Field(min_length=1)
    state: str = Field(min_length=1)
    pincode: str = Field(min_length=1)
    country: str = "India"
    landmark: Optional[str] = None
    phone: Optional[str] = None

    def to_address(self) -> ShippingAddress:
        return ShippingAddress(**self.model_dump())


class CalculateRequest(ApiModel):
    items: List[LineItemIn]
    delivery_charge: int = 0

    def line_items(self) -> List[LineItem]:
        return [item.to_line_item() for item in self.items]


class CreateOrderRequest(CalculateRequest):
    customer: CustomerIn
    shipping_address: ShippingAddressIn


class ClientPaymentCallback(ApiModel):
    """Redirect from the hosted checkout. Advisory until reconciled."""

    source: Literal["client"] = "client"
    gateway_payment_id: str = Field(min_length=1, max_length=64)
    gateway_order_id: str = Field(min_length=1, max_length=64)
    signature: str = Field(max_length=128)
    draft_id: str = Field(min_length=1, max_length=64)


class WebhookPaymentCallback(ApiModel):
    """Payment reference lifted from an authenticated webhook envelope."""

    source: Literal["webhook"] = "webhook"
    gateway_payment_id: str = Field(min_length=1)
    gateway_order_id: str = Field(min_length=1)
    event_id: Optional[str] = None


PaymentCallback = Annotated[
    Union[ClientPaymentCallback, WebhookPaymentCallback],
    Field(discriminator="source"),
]

payment_callback_adapter = TypeAdapter(PaymentCallback)


# =============================================================================
# RESPONSES
# =============================================================================

class TaxComponentOut(ApiModel):
    label: str
    rate: Decimal
    items_value: int
    delivery_share: int
    tax_amount: int


class BreakdownOut(ApiModel):
    subtotal: int
    delivery_charge: int
    taxable_value: int
    tax_rate: Decimal
    tax_amount: int
    cgst: int
    sgst: int
    igst: int
    components: List[TaxComponentOut]
    grand_total: int

    @classmethod
    def from_financials(cls, financials: OrderFinancials, inter_state: bool = False) -> "BreakdownOut":
        split = financials.tax.gst_split(inter_state=inter_state)
        return cls(
            subtotal=financials.subtotal,
            delivery_charge=financials.delivery_charge,
            taxable_value=financials.tax.taxable_value,
            tax_rate=financials.tax.tax_rate,
            tax_amount=financials.tax.tax_amount,
            cgst=split.cgst,
            sgst=split.sgst,
            igst=split.igst,
            components=[TaxComponentOut(**c.model_dump()) for c in financials.tax.components],
            grand_total=financials.grand_total,
        )


class CalculateResponse(ApiModel):
    success: bool = True
    breakdown: BreakdownOut


class CreateOrderResponse(ApiModel):
    success: bool = True
    draft_id: str
    gateway_order_id: str
    amount: int
    currency: str
    breakdown: BreakdownOut
    key_id: str
    expires_at: datetime


class TimelineOut(ApiModel):
    status: str
    description: str
    timestamp: datetime


class OrderLineOut(ApiModel):
    product_id: str
    name: str
    unit_price: int
    quantity: int
    line_total: int
    attributes: dict


class FulfilmentOut(ApiModel):
    tracking_number: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None


class OrderSummary(ApiModel):
    order_id: str
    gateway_order_id: str
    gateway_payment_id: Optional[str] = None
    status: str
    payment_status: str
    payment_method: Optional[str] = None
    items: List[OrderLineOut]
    breakdown: BreakdownOut
    customer: CustomerIn
    shipping_address: ShippingAddressIn
    currency: str
    refunded_amount: int
    timeline: List[TimelineOut]
    fulfilment: FulfilmentOut
    paid_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_order(cls, order: Order) -> "OrderSummary":
        return cls(
            order_id=order.order_id,
            gateway_order_id=order.gateway_order_id,
            gateway_payment_id=order.gateway_payment_id,
            status=order.status.value,
            payment_status=order.payment_status.value,
            payment_method=order.payment_method,
            items=[
                OrderLineOut(
                    product_id=item.product_id,
                    name=item.name,
                    unit_price=item.unit_price,
                    quantity=item.quantity,
                    line_total=item.line_total,
                    attributes=dict(item.attributes),
                )
                for item in order.items
            ],
            breakdown=BreakdownOut.from_financials(order.financials),
            customer=CustomerIn(**order.customer.model_dump()),
            shipping_address=ShippingAddressIn(**order.shipping_address.model_dump()),
            currency=order.currency,
            refunded_amount=order.refunded_amount,
            timeline=[TimelineOut(**entry.model_dump()) for entry in order.timeline],
            fulfilment=FulfilmentOut(**order.fulfilment.model_dump()),
            paid_at=order.paid_at,
            created_at=order.created_at,
        )


class OrderResponse(ApiModel):
    success: bool = True
    order: OrderSummary
    replayed: bool = False
