"""
Checkout pipeline: tax, gateway, signatures, reconciliation.

Import the submodules directly; this package stays empty so that
``storefront.schemas`` can depend on ``storefront.pipeline.errors``.
"""
