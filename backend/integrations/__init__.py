"""
Accounting integrations package.

Xero is the only accounting backend: OAuth2 connection management and
DRAFT sales invoices raised from orders.

Usage:
    from integrations.xero import get_xero_service

    xero = get_xero_service()
    await xero.initialize()
    invoice = await xero.generate_invoice(order_view(order))
"""

from integrations.xero import (
    TokenSet,
    XeroAuthRequiredError,
    XeroError,
    XeroNotConfiguredError,
    XeroService,
    build_contact_payload,
    build_invoice_payload,
    get_xero_service,
)

__all__ = [
    "TokenSet",
    "XeroError",
    "XeroAuthRequiredError",
    "XeroNotConfiguredError",
    "XeroService",
    "build_contact_payload",
    "build_invoice_payload",
    "get_xero_service",
]
