"""
Tests for application wiring.
"""

import pytest

from zap_checkout.app import build_session
from zap_checkout.domain.session import SessionState
from zap_checkout.infrastructure.bolt11 import Bolt11Decoder
from zap_checkout.infrastructure.lnurl import LnurlPayService
from zap_checkout.infrastructure.relay import WebSocketRelayClient


class TestBuildSession:

    @pytest.mark.asyncio
    async def test_real_adapters(self, test_settings):
        key = "00" * 31 + "07"
        settings = test_settings.model_copy(update={"private_key": key})

        session = build_session(settings, configure_logging=False)

        assert isinstance(session.relay, WebSocketRelayClient)
        assert session.relay.urls == ["wss://relay.test"]
        assert session.relay.timeout == settings.relay_timeout_seconds
        assert isinstance(session.invoice_service, LnurlPayService)
        assert isinstance(session.decoder, Bolt11Decoder)
        assert session.identity.private_key_hex == key
        assert session.state == SessionState.IDLE
        await session.invoice_service.aclose()

    def test_lightning_address_required(self, test_settings):
        settings = test_settings.model_copy(update={"lightning_address": ""})

        with pytest.raises(ValueError):
            build_session(settings, configure_logging=False)
