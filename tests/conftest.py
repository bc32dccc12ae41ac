"""Shared fixtures: settings, a scripted gateway, stores and sample carts."""

import asyncio
import itertools
from typing import Dict, List, Optional

import pytest

from storefront.config import Settings
from storefront.pipeline.errors import GatewayRequestError, StorageUnavailableError
from storefront.pipeline.gateway import GatewayRefund, PaymentGatewayClient
from storefront.pipeline.reconciliation import ReconciliationEngine
from storefront.pipeline.signatures import SignatureVerifier, compute_payment_signature
from storefront.pipeline.tax_calculator import TaxCalculator
from storefront.schemas.orders import (
    Customer,
    GatewayPayment,
    LineItem,
    OrderDraft,
    ShippingAddress,
)
from storefront.services.checkout_service import CheckoutService
from storefront.storage.memory import InMemoryOrderStore

KEY_SECRET = "test_key_secret"
WEBHOOK_SECRET = "test_webhook_secret"


async def no_sleep(_seconds: float) -> None:
    return None


class ScriptedGatewayClient(PaymentGatewayClient):
    """In-process gateway: orders and payments are whatever the test scripts."""

    def __init__(self):
        self._ids = itertools.count(1)
        self.created_orders: List[dict] = []
        self.payments: Dict[str, GatewayPayment] = {}
        self.refunds: List[GatewayRefund] = []
        self.fetch_error: Optional[Exception] = None
        self.fetch_calls = 0
        self.amount_override: Optional[int] = None
        self.closed = False

    async def create_order(self, amount_minor_units, currency, receipt, notes, idempotency_key):
        order = {
            "id": f"order_{next(self._ids):04d}",
            "amount": self.amount_override if self.amount_override is not None else amount_minor_units,
            "currency": currency,
            "receipt": receipt,
            "notes": notes,
            "status": "created",
            "idempotency_key": idempotency_key,
        }
        self.created_orders.append(order)
        return order

    def add_payment(self, payment_id, order_id, amount, currency="INR", status="captured", method="upi", **extra):
        payment = GatewayPayment(
            id=payment_id,
            order_id=order_id,
            amount=amount,
            currency=currency,
            status=status,
            method=method,
            captured=status == "captured",
            **extra,
        )
        self.payments[payment_id] = payment
        return payment

    async def fetch_payment(self, payment_id):
        self.fetch_calls += 1
        # yield like a real network call so concurrent callers interleave
        await asyncio.sleep(0)
        if self.fetch_error is not None:
            raise self.fetch_error
        if payment_id not in self.payments:
            raise GatewayRequestError("The id provided does not exist", payment_id=payment_id)
        return self.payments[payment_id]

    async def fetch_order_payments(self, order_id):
        return [p for p in self.payments.values() if p.order_id == order_id]

    async def refund_payment(self, payment_id, amount, reason):
        refund = GatewayRefund(id=f"rfnd_{next(self._ids):04d}", payment_id=payment_id, amount=amount)
        self.refunds.append(refund)
        return refund

    async def close(self):
        self.closed = True


class FlakyOrderStore(InMemoryOrderStore):
    """Fails the first ``failures`` atomic upserts with StorageUnavailableError."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.upsert_calls = 0

    async def upsert_payment_and_order(self, payment, order):
        self.upsert_calls += 1
        if self.upsert_calls <= self.failures:
            raise StorageUnavailableError("connection reset")
        return await super().upsert_payment_and_order(payment, order)


def sign(gateway_order_id: str, gateway_payment_id: str, secret: str = KEY_SECRET) -> str:
    return compute_payment_signature(gateway_order_id, gateway_payment_id, secret)


@pytest.fixture
def settings():
    return Settings(
        gateway_key_id="rzp_test_key",
        gateway_key_secret=KEY_SECRET,
        webhook_secret=WEBHOOK_SECRET,
        store_backend="memory",
        store_backoff_seconds=0,
        sweep_enabled=False,
        log_format="console",
    )


@pytest.fixture
def gateway():
    return ScriptedGatewayClient()


@pytest.fixture
def store():
    return InMemoryOrderStore()


@pytest.fixture
def verifier():
    return SignatureVerifier(KEY_SECRET, WEBHOOK_SECRET)


@pytest.fixture
def make_engine(gateway, verifier):
    def factory(store, max_retries=3):
        return ReconciliationEngine(
            store=store,
            gateway=gateway,
            verifier=verifier,
            max_retries=max_retries,
            backoff_seconds=0,
            sleep=no_sleep,
        )
    return factory


@pytest.fixture
def engine(make_engine, store):
    return make_engine(store)


@pytest.fixture
def service(settings, store, gateway):
    return CheckoutService(settings=settings, store=store, gateway_client=gateway)


@pytest.fixture
def customer():
    return Customer(name="Asha Rao", email="asha@example.com", phone="9800000000")


@pytest.fixture
def address():
    return ShippingAddress(line1="12 MG Road", city="Bengaluru", state="Karnataka", pincode="560001")


@pytest.fixture
def low_tier_items():
    return [LineItem(product_id="kurta-01", name="Cotton Kurta", unit_price=2000, quantity=2)]


@pytest.fixture
def make_draft(customer, address):
    calculator = TaxCalculator()

    def factory(items, delivery_charge=0, gateway_order_id="order_0001"):
        return OrderDraft(
            items=items,
            delivery_charge=delivery_charge,
            financials=calculator.compute_breakdown(items, delivery_charge),
            customer=customer,
            shipping_address=address,
            gateway_order_id=gateway_order_id,
        )
    return factory


@pytest.fixture
def draft(make_draft, low_tier_items):
    # subtotal 4000 + delivery 50 + tax 203
    return make_draft(low_tier_items, delivery_charge=50)


@pytest.fixture
def signer():
    return sign


@pytest.fixture
def flaky_store():
    return FlakyOrderStore
