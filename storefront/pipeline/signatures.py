"""
Gateway signature verification.

Payment callbacks are signed as HMAC-SHA256(key_secret, order_id + "|" + payment_id).
Webhook bodies are signed as HMAC-SHA256(webhook_secret, raw_body).
Both are hex digests compared in constant time.
"""

import hashlib
import hmac
from typing import Optional, Union

from storefront.logger import get_logger
from storefront.pipeline.errors import ConfigurationError

logger = get_logger("signatures")

# Dictated by the gateway's documented scheme.
CANONICAL_DELIMITER = "|"


def _hex_hmac(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def compute_payment_signature(gateway_order_id: str, gateway_payment_id: str, shared_secret: str) -> str:
    message = f"{gateway_order_id}{CANONICAL_DELIMITER}{gateway_payment_id}"
    return _hex_hmac(shared_secret, message.encode())


def compute_webhook_signature(raw_body: Union[bytes, str], webhook_secret: str) -> str:
    if isinstance(raw_body, str):
        raw_body = raw_body.encode()
    return _hex_hmac(webhook_secret, raw_body)


def _constant_time_equal(expected: str, provided: Optional[str]) -> bool:
    if not isinstance(provided, str) or not provided:
        return False
    try:
        return hmac.compare_digest(expected.encode("ascii"), provided.encode("ascii"))
    except UnicodeEncodeError:
        return False


class SignatureVerifier:
    """Validates payment-completion callbacks and webhook deliveries."""

    def __init__(self, shared_secret: str, webhook_secret: Optional[str] = None):
        if not shared_secret:
            raise ConfigurationError("Gateway key secret is required for signature verification")
        self._shared_secret = shared_secret
        self._webhook_secret = webhook_secret

    @staticmethod
    def verify(
        gateway_order_id: str,
        gateway_payment_id: str,
        provided_signature: Optional[str],
        shared_secret: str,
    ) -> bool:
        """Check a callback signature. Never raises on bad input."""
        if not gateway_order_id or not gateway_payment_id:
            return False
        expected = compute_payment_signature(gateway_order_id, gateway_payment_id, shared_secret)
        return _constant_time_equal(expected, provided_signature)

    def verify_payment(
        self,
        gateway_order_id: str,
        gateway_payment_id: str,
        provided_signature: Optional[str],
    ) -> bool:
        valid = self.verify(gateway_order_id, gateway_payment_id, provided_signature, self._shared_secret)
        if not valid:
            logger.warning(
                "payment_signature_invalid",
                gateway_order_id=gateway_order_id,
                gateway_payment_id=gateway_payment_id,
            )
        return valid

    def verify_webhook(self, raw_body: Union[bytes, str], provided_signature: Optional[str]) -> bool:
        if not self._webhook_secret:
            raise ConfigurationError("Webhook secret is not configured")
        expected = compute_webhook_signature(raw_body, self._webhook_secret)
        valid = _constant_time_equal(expected, provided_signature)
        if not valid:
            logger.warning("webhook_signature_invalid", body_bytes=len(raw_body))
        return valid
