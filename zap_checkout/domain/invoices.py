"""
Invoice Request Orchestrator

Turns "collect N millisats for order X" into a bolt11 invoice:

1. Build a NIP-57 zap request (kind 9734) that references the order
2. Sign it with the local identity
3. Hand amount + zap request to the invoice service
4. Return the invoice string unchanged

When the invoice is paid the service publishes a zap receipt that
references the same order, which is what the session listens for.
"""

from __future__ import annotations

import time

import structlog

from zap_checkout.domain.codec import build_unsigned, sign
from zap_checkout.domain.errors import InvoiceServiceFailure
from zap_checkout.domain.messages import (
    TAG_AMOUNT,
    TAG_EVENT,
    TAG_PUBKEY,
    TAG_RELAYS,
    EventKind,
    SignedMessage,
)
from zap_checkout.domain.ports import InvoiceService, SigningIdentity
from zap_checkout.observability.metrics import metrics

logger = structlog.get_logger(__name__)


class InvoiceRequester:
    """Builds zap requests and exchanges them for invoices."""

    def __init__(
        self,
        identity: SigningIdentity,
        service: InvoiceService,
        relays: list[str],
    ):
        self.identity = identity
        self.service = service
        self.relays = list(relays)

    def build_zap_request(
        self,
        amount_msat: int,
        order_id: str,
        recipient_pubkey: str,
        comment: str = "",
    ) -> SignedMessage:
        """Signed kind-9734 zap request for ``amount_msat`` toward ``order_id``."""
        unsigned = build_unsigned(
            kind=EventKind.ZAP_REQUEST,
            content=comment,
            author_pubkey=self.identity.public_key,
            tags=[
                [TAG_RELAYS, *self.relays],
                [TAG_AMOUNT, str(amount_msat)],
                [TAG_PUBKEY, recipient_pubkey],
                [TAG_EVENT, order_id],
            ],
        )
        return sign(unsigned, self.identity)

    async def request_invoice(self, amount_msat: int, order_id: str) -> str:
        """
        Request an invoice for ``amount_msat`` toward ``order_id``.

        Raises:
            ValueError: non-positive amount
            InvoiceServiceFailure: the service failed (not retried here)
        """
        if amount_msat <= 0:
            raise ValueError("Invoice amount must be positive")

        start = time.perf_counter()
        try:
            recipient = await self.service.recipient_pubkey()
            zap_request = self.build_zap_request(amount_msat, order_id, recipient)
            invoice = await self.service.request_invoice(amount_msat, zap_request)
        except InvoiceServiceFailure as e:
            metrics.record_invoice_request("failed", time.perf_counter() - start)
            logger.error(
                "invoice_requester.request_failed",
                order_id=order_id,
                amount_msat=amount_msat,
                error=str(e),
            )
            raise

        metrics.record_invoice_request("success", time.perf_counter() - start)
        logger.info(
            "invoice_requester.invoice_issued",
            order_id=order_id,
            amount_msat=amount_msat,
            zap_request_id=zap_request.id,
        )
        return invoice
