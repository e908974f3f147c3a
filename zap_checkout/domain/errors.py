"""
Checkout error taxonomy.

Every condition here is local to one order and recoverable. Receipt
conditions (spoofed, incomplete, duplicate, stale) are normally reported as
``ReceiptOutcome`` values by the session rather than raised; the exception
classes exist so callers that need to raise them (or match on them) share
one hierarchy.
"""

from __future__ import annotations


class CheckoutError(Exception):
    """Base class for all checkout errors."""

    def __init__(self, message: str, order_id: str | None = None):
        self.order_id = order_id
        super().__init__(message)


class MalformedOrder(CheckoutError):
    """Order event has no usable ``description`` tag."""


class OrderNotFound(CheckoutError):
    """No relay returned an event for the requested order id."""


class SpoofedReceipt(CheckoutError):
    """
    Receipt not authored by the order's recipient, or its signature is bad.

    Security relevant: logged with ``security_event=True`` and counted
    separately from routine rejections.
    """


class IncompleteReceipt(CheckoutError):
    """Receipt carries no decodable payment amount."""


class DuplicateReceipt(CheckoutError):
    """Receipt was already applied to the order."""


class StaleReceipt(CheckoutError):
    """Receipt was delivered for an order that is no longer active."""


class InvoiceServiceFailure(CheckoutError):
    """The invoice-issuing service failed or returned an unusable answer."""


class NetworkUnavailable(CheckoutError):
    """Relay fetch, publish or subscribe failed."""
