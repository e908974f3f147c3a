"""
Payment Receipt Parser

A zap receipt proves payment by carrying the paid invoice:

    ["bolt11", "lnbc5u1p..."]

Parsing is a pure function of one message. A receipt is *complete* when
the bolt11 tag exists, decodes, and states an amount; anything else is
incomplete and must never be applied.
"""

from __future__ import annotations

from dataclasses import dataclass

from zap_checkout.domain.messages import TAG_BOLT11, SignedMessage
from zap_checkout.domain.ports import PaymentStringDecoder


@dataclass(frozen=True)
class ReceiptInfo:
    """Classification of one receipt."""

    complete: bool
    amount_msat: int | None = None
    bolt11: str | None = None
    reason: str | None = None

    @property
    def amount_sats(self) -> int | None:
        if self.amount_msat is None:
            return None
        return self.amount_msat // 1000


def parse_receipt(message: SignedMessage, decoder: PaymentStringDecoder) -> ReceiptInfo:
    """Extract the paid amount (millisats) from a receipt."""
    bolt11 = message.first_tag_value(TAG_BOLT11)
    if not bolt11:
        return ReceiptInfo(complete=False, reason="missing_bolt11")

    decoded = decoder.decode(bolt11)
    if not decoded.valid:
        return ReceiptInfo(complete=False, bolt11=bolt11, reason=decoded.error or "undecodable")

    if decoded.amount_msat is None or decoded.amount_msat <= 0:
        return ReceiptInfo(complete=False, bolt11=bolt11, reason="missing_amount")

    return ReceiptInfo(complete=True, amount_msat=decoded.amount_msat, bolt11=bolt11)
