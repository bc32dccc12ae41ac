"""
Checkout error taxonomy.

Each error carries a stable ``code`` for logs, the HTTP status the API layer
answers with, and the message a customer is allowed to see.
"""

from typing import Any, Dict, Optional


GENERIC_VERIFICATION_MESSAGE = "Payment could not be verified"


class CheckoutError(Exception):
    """Base class for every checkout/reconciliation failure."""

    code: str = "CHECKOUT_ERROR"
    http_status: int = 500
    public_message: str = "Checkout failed"

    def __init__(self, message: Optional[str] = None, **details: Any):
        super().__init__(message or self.public_message)
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "error": self.public_message}


# =============================================================================
# CLIENT INPUT (4xx)
# =============================================================================

class InvalidLineItemError(CheckoutError):
    code = "INVALID_LINE_ITEM"
    http_status = 400
    public_message = "Cart contains an invalid item"


class EmptyCartError(CheckoutError):
    code = "EMPTY_CART"
    http_status = 400
    public_message = "Cart is empty"


class InvalidOrderAmountError(CheckoutError):
    code = "INVALID_ORDER_AMOUNT"
    http_status = 400
    public_message = "Order total must be greater than zero"


class DraftNotFoundError(CheckoutError):
    code = "DRAFT_NOT_FOUND"
    http_status = 404
    public_message = "Checkout session not found"


class OrderNotFoundError(CheckoutError):
    code = "ORDER_NOT_FOUND"
    http_status = 404
    public_message = "Order not found"


# =============================================================================
# UPSTREAM GATEWAY
# =============================================================================

class GatewayUnavailableError(CheckoutError):
    """Gateway timed out, returned 5xx, or rejected our credentials."""

    code = "GATEWAY_UNAVAILABLE"
    http_status = 503
    public_message = "Payment service is temporarily unavailable"


class GatewayTimeoutError(GatewayUnavailableError):
    code = "GATEWAY_TIMEOUT"
    http_status = 504


class GatewayRequestError(CheckoutError):
    """Gateway rejected the request itself (4xx other than auth)."""

    code = "GATEWAY_REJECTED"
    http_status = 400
    public_message = "Payment service rejected the request"


class GatewayAmountMismatchError(CheckoutError):
    """Gateway confirmed a different amount/currency than we asked for."""

    code = "GATEWAY_AMOUNT_MISMATCH"
    http_status = 502
    public_message = "Payment service returned an inconsistent order"


# =============================================================================
# SECURITY / FINANCIAL INTEGRITY
# =============================================================================

class InvalidSignatureError(CheckoutError):
    code = "INVALID_SIGNATURE"
    http_status = 400
    public_message = GENERIC_VERIFICATION_MESSAGE


class AmountMismatchError(CheckoutError):
    """Captured amount differs from the draft total. Never auto-resolved."""

    code = "AMOUNT_MISMATCH"
    http_status = 409
    public_message = GENERIC_VERIFICATION_MESSAGE


class InvalidTransitionError(CheckoutError):
    code = "INVALID_TRANSITION"
    http_status = 409
    public_message = "Order cannot change to the requested state"


# =============================================================================
# STORAGE (internal)
# =============================================================================

class StorageConflictError(CheckoutError):
    """Uniqueness guard tripped; resolved by re-reading, never surfaced."""

    code = "STORAGE_CONFLICT"
    http_status = 409


class StorageUnavailableError(CheckoutError):
    code = "STORAGE_UNAVAILABLE"
    http_status = 503
    public_message = "Order service is temporarily unavailable"


class ConfigurationError(Exception):
    """Fatal startup-time misconfiguration (e.g. missing gateway secret)."""


# =============================================================================
# RECONCILIATION RESULTS SURFACED TO CLIENTS
# =============================================================================

class PaymentDeclinedError(CheckoutError):
    """Gateway reports the payment as not captured. Its reason is shown as-is."""

    code = "PAYMENT_DECLINED"
    http_status = 402
    public_message = "Payment was not completed"

    def __init__(self, message: Optional[str] = None, **details: Any):
        super().__init__(message, **details)
        if message:
            self.public_message = message


class ReconciliationPendingError(CheckoutError):
    """Payment verified, order not yet confirmed; the sweep will finish it."""

    code = "RECONCILIATION_PENDING"
    http_status = 202
    public_message = "Payment received; order confirmation is pending"


class InvalidWebhookPayloadError(CheckoutError):
    code = "INVALID_WEBHOOK_PAYLOAD"
    http_status = 400
    public_message = "Malformed webhook payload"
