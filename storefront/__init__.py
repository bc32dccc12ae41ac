"""
Storefront checkout backend: tax computation, gateway orders, payment
signature verification and exactly-once order reconciliation.
"""

__version__ = "1.0.0"
