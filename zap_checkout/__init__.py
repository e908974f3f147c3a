"""
Zap Checkout - Nostr order publishing and Lightning payment reconciliation

This package lets a point of sale:
1. Price a basket (or a wagered vote) in fiat and freeze its value in sats
2. Publish the order as a signed Nostr event
3. Request zap invoices for whatever is still pending
4. Reconcile incoming zap receipts exactly once until the order is settled

The domain layer has no network dependencies; relays, LNURL services and
signing keys plug in through the protocols in ``zap_checkout.domain.ports``.
"""

__version__ = "0.1.0"
