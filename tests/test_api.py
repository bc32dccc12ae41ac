"""HTTP tests for the checkout API using FastAPI's TestClient."""

import json

import pytest
from fastapi.testclient import TestClient

from storefront.api.server import create_app
from storefront.pipeline.signatures import compute_webhook_signature

CART = {
    "items": [{"productId": "kurta-01", "name": "Cotton Kurta", "unitPrice": 2000, "quantity": 2, "size": "M"}],
    "deliveryCharge": 50,
}
CUSTOMER = {"name": "Asha Rao", "email": "asha@example.com", "phone": "9800000000"}
ADDRESS = {"line1": "12 MG Road", "city": "Bengaluru", "state": "Karnataka", "pincode": "560001"}


@pytest.fixture
def client(settings, service):
    with TestClient(create_app(settings, service)) as test_client:
        yield test_client


@pytest.fixture
def created(client):
    response = client.post("/orders/create", json={**CART, "customer": CUSTOMER, "shippingAddress": ADDRESS})
    assert response.status_code == 200
    return response.json()


def verify_body(created, payment_id, signer, signature=None):
    return {
        "gatewayPaymentId": payment_id,
        "gatewayOrderId": created["gatewayOrderId"],
        "signature": signature or signer(created["gatewayOrderId"], payment_id),
        "draftId": created["draftId"],
    }


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")
        body = response.json()

        assert response.status_code == 200
        assert body["status"] == "healthy"
        assert body["storeBackend"] == "memory"
        assert "X-Response-Time-Ms" in response.headers
        assert "X-Request-ID" in response.headers


class TestCalculate:

    def test_breakdown_is_camel_case(self, client):
        response = client.post("/orders/calculate", json=CART)
        body = response.json()

        assert response.status_code == 200
        assert body["success"] is True
        breakdown = body["breakdown"]
        assert breakdown["grandTotal"] == 4253
        assert breakdown["taxAmount"] == 203
        assert breakdown["cgst"] + breakdown["sgst"] == 203
        assert breakdown["taxRate"] == "5"

    def test_invalid_quantity_is_400(self, client):
        cart = {"items": [{**CART["items"][0], "quantity": 0}]}
        response = client.post("/orders/calculate", json=cart)
        assert response.status_code == 400
        assert response.json() == {"success": False, "error": "Cart contains an invalid item"}

    def test_empty_cart_is_400(self, client):
        response = client.post("/orders/calculate", json={"items": []})
        assert response.status_code == 400

    def test_malformed_body_is_400_with_details(self, client):
        response = client.post("/orders/calculate", json={"items": [{"name": "x"}]})
        body = response.json()
        assert response.status_code == 400
        assert body["success"] is False
        assert body["details"]


class TestCreateAndVerify:

    def test_create_returns_checkout_session(self, created):
        assert created["success"] is True
        assert created["draftId"].startswith("DRF-")
        assert created["gatewayOrderId"] == "order_0001"
        assert created["amount"] == 4253
        assert created["keyId"] == "rzp_test_key"
        assert created["breakdown"]["deliveryCharge"] == 50

    def test_zero_total_is_400(self, client):
        free = {"productId": "sample-01", "name": "Free Sample", "unitPrice": 0, "quantity": 1}
        response = client.post(
            "/orders/create",
            json={"items": [free], "deliveryCharge": 0, "customer": CUSTOMER, "shippingAddress": ADDRESS},
        )
        assert response.status_code == 400
        assert response.json() == {"success": False, "error": "Order total must be greater than zero"}

    def test_verify_confirms_order(self, client, created, gateway, signer):
        gateway.add_payment("pay_1", created["gatewayOrderId"], 4253, method="card")

        response = client.post("/orders/verify", json=verify_body(created, "pay_1", signer))
        body = response.json()

        assert response.status_code == 200
        assert body["replayed"] is False
        order = body["order"]
        assert order["paymentStatus"] == "paid"
        assert order["status"] == "confirmed"
        assert order["paymentMethod"] == "card"
        assert order["items"][0]["attributes"] == {"size": "M"}
        assert order["shippingAddress"]["pincode"] == "560001"
        assert order["fulfilment"] == {
            "trackingNumber": None, "estimatedDelivery": None, "shippedAt": None, "deliveredAt": None,
        }

        fetched = client.get(f"/orders/{order['orderId']}").json()
        assert fetched["order"]["orderId"] == order["orderId"]

    def test_verify_replay(self, client, created, gateway, signer):
        gateway.add_payment("pay_1", created["gatewayOrderId"], 4253)
        first = client.post("/orders/verify", json=verify_body(created, "pay_1", signer)).json()
        second = client.post("/orders/verify", json=verify_body(created, "pay_1", signer)).json()

        assert second["replayed"] is True
        assert second["order"]["orderId"] == first["order"]["orderId"]

    def test_bad_signature_is_generic_400(self, client, created, gateway, signer):
        gateway.add_payment("pay_1", created["gatewayOrderId"], 4253)
        response = client.post("/orders/verify", json=verify_body(created, "pay_1", signer, "00" * 32))

        assert response.status_code == 400
        assert response.json() == {"success": False, "error": "Payment could not be verified"}

    @pytest.mark.parametrize("field, size", [("signature", 129), ("gatewayPaymentId", 65), ("draftId", 65)])
    def test_oversized_callback_field_is_400(self, client, created, signer, field, size):
        body = {**verify_body(created, "pay_1", signer), field: "a" * size}
        response = client.post("/orders/verify", json=body)
        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_amount_mismatch_is_409(self, client, created, gateway, signer):
        gateway.add_payment("pay_1", created["gatewayOrderId"], 4252)
        response = client.post("/orders/verify", json=verify_body(created, "pay_1", signer))

        assert response.status_code == 409
        assert "4252" not in response.text

    def test_declined_is_402(self, client, created, gateway, signer):
        gateway.add_payment("pay_1", created["gatewayOrderId"], 4253, status="failed",
                            error_description="Payment was cancelled by user")
        response = client.post("/orders/verify", json=verify_body(created, "pay_1", signer))

        assert response.status_code == 402
        assert response.json()["error"] == "Payment was cancelled by user"

    def test_unknown_draft_is_404(self, client, created, gateway, signer):
        gateway.add_payment("pay_1", created["gatewayOrderId"], 4253)
        body = {**verify_body(created, "pay_1", signer), "draftId": "DRF-UNKNOWN"}
        assert client.post("/orders/verify", json=body).status_code == 404

    def test_unknown_order_is_404(self, client):
        assert client.get("/orders/ORD-000000000000").status_code == 404


class TestWebhookEndpoint:

    def _post(self, client, settings, event, signature=None):
        body = json.dumps(event).encode()
        headers = {
            "X-Razorpay-Signature": signature or compute_webhook_signature(body, settings.webhook_secret),
            "X-Razorpay-Event-Id": "evt_1",
            "Content-Type": "application/json",
        }
        return client.post("/webhooks/gateway", content=body, headers=headers)

    def test_captured_webhook_confirms_order(self, client, settings, created, gateway):
        gateway.add_payment("pay_1", created["gatewayOrderId"], 4253)
        event = {"event": "payment.captured", "payload": {"payment": {"entity": {
            "id": "pay_1", "order_id": created["gatewayOrderId"], "amount": 4253,
            "currency": "INR", "status": "captured",
        }}}}

        response = self._post(client, settings, event)
        body = response.json()

        assert response.status_code == 200
        assert body["received"] is True
        assert body["outcome"] == "reconciled"
        assert client.get(f"/orders/{body['orderId']}").json()["order"]["paymentStatus"] == "paid"

    def test_bad_webhook_signature_is_400(self, client, settings):
        response = self._post(client, settings, {"event": "payment.captured"}, signature="ab" * 32)
        assert response.status_code == 400

    def test_unknown_event_acknowledged(self, client, settings):
        response = self._post(client, settings, {"event": "invoice.paid", "payload": {}})
        assert response.status_code == 200
        assert response.json() == {"received": True, "status": "ignored", "event": "invoice.paid"}
