"""
Ports - Interfaces to the Outside World

The domain talks to relays, the LNURL server, signing keys and invoice
decoders only through these protocols. Concrete adapters live in
``zap_checkout.infrastructure``; tests use the in-memory ones.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterator, Protocol

from zap_checkout.domain.messages import SignedMessage, UnsignedMessage


class SigningIdentity(Protocol):
    """Keypair plus the hashing/signing primitives of the event format."""

    @property
    def public_key(self) -> str:
        """x-only public key, lowercase hex."""
        ...

    def hash(self, unsigned: UnsignedMessage) -> str:
        """Canonical message id (hex)."""
        ...

    def sign(self, message_id: str) -> str:
        """Signature over the id, hex."""
        ...

    def verify(self, message: SignedMessage) -> bool:
        """Check ``message.sig`` against ``message.pubkey`` and ``message.id``."""
        ...


class Subscription(Protocol):
    """
    Cancellable, unbounded stream of incoming messages.

    Iterating yields messages until ``stop()`` is called; ``stop()`` is
    idempotent.
    """

    def __aiter__(self) -> AsyncIterator[SignedMessage]:
        ...

    async def stop(self) -> None:
        ...

    @property
    def active(self) -> bool:
        ...


class RelayClient(Protocol):
    """Nostr network access."""

    async def fetch_by_id(self, message_id: str) -> SignedMessage | None:
        """Fetch one message, ``None`` when no relay has it."""
        ...

    async def publish(self, message: SignedMessage) -> bool:
        """Publish a message, ``True`` once at least one relay accepted it."""
        ...

    async def subscribe(self, refers_to: str) -> Subscription:
        """Stream zap receipts whose ``e`` tag references ``refers_to``."""
        ...


class InvoiceService(Protocol):
    """LNURL-pay style service that turns zap requests into invoices."""

    async def recipient_pubkey(self) -> str:
        """Public key the service signs zap receipts with."""
        ...

    async def request_invoice(self, amount_msat: int, zap_request: SignedMessage) -> str:
        """Return a bolt11 invoice for ``amount_msat``."""
        ...


@dataclass(frozen=True)
class DecodedPaymentString:
    """Result of decoding a redeemable payment string."""

    valid: bool
    amount_msat: int | None = None
    network: str | None = None
    error: str | None = None


class PaymentStringDecoder(Protocol):
    """Decoder for redeemable payment strings (bolt11 invoices)."""

    def decode(self, payment_string: str) -> DecodedPaymentString:
        ...
