"""
BOLT-11 invoice decoder.

Wraps the ``bolt11`` library, which checks the bech32 checksum and the
node signature and reads the amount from the human-readable part.
Receipt parsing only needs validity and the amount in millisats.
"""

from __future__ import annotations

import bolt11
import structlog
from bolt11.exceptions import Bolt11Exception

from zap_checkout.domain.ports import DecodedPaymentString

logger = structlog.get_logger(__name__)

URI_PREFIX = "lightning:"

NETWORKS = {
    "bc": "bitcoin",
    "tb": "testnet",
    "tbs": "signet",
    "bcrt": "regtest",
    "sb": "simnet",
}


def normalize(payment_string: str) -> str:
    """Strip whitespace and the ``lightning:`` scheme; fold all-caps to lower."""
    invoice = payment_string.strip()
    if invoice.lower().startswith(URI_PREFIX):
        invoice = invoice[len(URI_PREFIX):]
    # QR codes carry invoices upper-cased; mixed case stays invalid
    if invoice.upper() == invoice:
        invoice = invoice.lower()
    return invoice


class Bolt11Decoder:
    """Decodes bolt11 invoices into ``DecodedPaymentString``."""

    def decode(self, payment_string: str) -> DecodedPaymentString:
        invoice = normalize(payment_string)
        try:
            decoded = bolt11.decode(invoice)
        except (Bolt11Exception, ValueError) as e:
            logger.debug("bolt11.decode_failed", error=str(e), error_type=type(e).__name__)
            return DecodedPaymentString(valid=False, error="undecodable")

        return DecodedPaymentString(
            valid=True,
            amount_msat=int(decoded.amount_msat) if decoded.amount_msat is not None else None,
            network=NETWORKS.get(decoded.currency, decoded.currency),
        )
