"""Application services."""

from storefront.services.checkout_service import CheckoutService, CheckoutSession

__all__ = ["CheckoutService", "CheckoutSession"]
