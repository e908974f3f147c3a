"""
Application wiring.

Builds an ``OrderSession`` backed by the real adapters: websocket relays,
the configured lightning address, a local signing key and the bolt11
decoder.
"""

from zap_checkout.config import Settings, get_settings
from zap_checkout.domain.session import OrderSession
from zap_checkout.infrastructure.bolt11 import Bolt11Decoder
from zap_checkout.infrastructure.identity import LocalKeyIdentity
from zap_checkout.infrastructure.lnurl import LnurlPayService
from zap_checkout.infrastructure.relay import WebSocketRelayClient
from zap_checkout.observability import get_logger, setup_logging

logger = get_logger(__name__)


def build_session(settings: Settings | None = None, configure_logging: bool = True) -> OrderSession:
    """
    Create a session from settings.

    No network traffic happens here; relays and the LNURL service are
    contacted on first use.
    """
    settings = settings or get_settings()
    if configure_logging:
        setup_logging(settings)

    identity = LocalKeyIdentity.from_settings(settings)
    session = OrderSession(
        identity=identity,
        relay=WebSocketRelayClient.from_settings(settings),
        decoder=Bolt11Decoder(),
        invoice_service=LnurlPayService.from_settings(settings),
        settings=settings,
    )

    logger.info(
        "app.session_created",
        public_key=identity.public_key,
        relays=settings.get_relay_urls(),
        lightning_address=settings.lightning_address,
    )
    return session
