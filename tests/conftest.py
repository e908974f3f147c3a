"""
Pytest configuration and fixtures.
"""
import asyncio
import re
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio

from zap_checkout.config import Settings
from zap_checkout.domain.codec import build_unsigned, sign
from zap_checkout.domain.messages import (
    TAG_BOLT11,
    TAG_DESCRIPTION,
    TAG_EVENT,
    TAG_PUBKEY,
    EventKind,
    SignedMessage,
)
from zap_checkout.domain.ports import DecodedPaymentString
from zap_checkout.domain.session import OrderSession
from zap_checkout.infrastructure.identity import LocalKeyIdentity
from zap_checkout.infrastructure.relay import InMemoryRelay

STUB_INVOICE = re.compile(r"^lnstub(\d*)$")


class StubDecoder:
    """
    Decodes ``lnstub<msat>`` strings.

    ``lnstub`` alone is a valid invoice without an amount; anything else is
    undecodable.
    """

    def decode(self, payment_string: str) -> DecodedPaymentString:
        match = STUB_INVOICE.match(payment_string)
        if match is None:
            return DecodedPaymentString(valid=False, error="undecodable")
        if not match.group(1):
            return DecodedPaymentString(valid=True, network="stub")
        return DecodedPaymentString(valid=True, amount_msat=int(match.group(1)), network="stub")


class FakeInvoiceService:
    """Invoice service whose zap receipts are signed by ``identity``."""

    def __init__(self, identity: LocalKeyIdentity):
        self.identity = identity
        self.requests: list[tuple[int, SignedMessage]] = []
        self.error: Exception | None = None
        self.holds: dict[int, asyncio.Event] = {}

    async def recipient_pubkey(self) -> str:
        return self.identity.public_key

    async def request_invoice(self, amount_msat: int, zap_request: SignedMessage) -> str:
        self.requests.append((amount_msat, zap_request))
        number = len(self.requests)
        if self.error is not None:
            raise self.error
        if number in self.holds:
            await self.holds[number].wait()
        return f"lnbc-invoice-{number}-{amount_msat}"

    async def wait_for_requests(self, count: int) -> None:
        while len(self.requests) < count:
            await asyncio.sleep(0)


def make_receipt(
    author: LocalKeyIdentity,
    order_id: str,
    amount_msat: int | None = None,
    bolt11: str | None = None,
    created_at: int = 1_700_000_000,
) -> SignedMessage:
    """Signed kind-9735 receipt for ``order_id`` paying ``amount_msat``."""
    tags = [[TAG_PUBKEY, author.public_key], [TAG_EVENT, order_id]]
    if bolt11 is None and amount_msat is not None:
        bolt11 = f"lnstub{amount_msat}"
    if bolt11 is not None:
        tags.append([TAG_BOLT11, bolt11])
    tags.append([TAG_DESCRIPTION, "{}"])
    unsigned = build_unsigned(
        kind=EventKind.ZAP_RECEIPT,
        content="",
        author_pubkey=author.public_key,
        tags=tags,
        created_at=created_at,
    )
    return sign(unsigned, author)


@pytest.fixture
def test_settings() -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(
        _env_file=None,
        app_env="test",
        log_level="DEBUG",
        relay_urls="wss://relay.test",
        lightning_address="shop@pay.test",
        default_fiat_currency="ARS",
        auto_request_invoices=False,
    )


@pytest.fixture
def buyer() -> LocalKeyIdentity:
    return LocalKeyIdentity.generate()


@pytest.fixture
def service_identity() -> LocalKeyIdentity:
    """Key the LNURL server signs receipts with."""
    return LocalKeyIdentity.generate()


@pytest.fixture
def decoder() -> StubDecoder:
    return StubDecoder()


@pytest.fixture
def relay() -> InMemoryRelay:
    return InMemoryRelay()


@pytest.fixture
def invoice_service(service_identity) -> FakeInvoiceService:
    return FakeInvoiceService(service_identity)


@pytest.fixture
def receipt_factory(service_identity):
    """Receipts authored by the recipient unless another author is given."""

    def factory(order_id: str, amount_msat: int | None = None, **kwargs: Any) -> SignedMessage:
        author = kwargs.pop("author", service_identity)
        return make_receipt(author, order_id, amount_msat, **kwargs)

    return factory


@pytest_asyncio.fixture
async def session(
    buyer, relay, decoder, invoice_service, test_settings
) -> AsyncGenerator[OrderSession, Any]:
    """Order session wired to in-memory collaborators."""
    order_session = OrderSession(
        identity=buyer,
        relay=relay,
        decoder=decoder,
        invoice_service=invoice_service,
        settings=test_settings,
    )
    yield order_session
    await order_session.close()
