"""
Tests for signed message construction and validation.
"""

import json

import pytest

from zap_checkout.domain import codec
from zap_checkout.domain.messages import (
    EventKind,
    SignedMessage,
    UnsignedMessage,
    first_tag_value,
    message_from_json,
    tag_values,
)


class TestBuildAndSign:

    def test_build_unsigned_defaults(self, buyer):
        unsigned = codec.build_unsigned(EventKind.ORDER, "hi", buyer.public_key)

        assert unsigned.kind == 1
        assert unsigned.tags == []
        assert unsigned.created_at > 1_600_000_000

    def test_serialization_is_canonical(self, buyer):
        unsigned = codec.build_unsigned(
            EventKind.ORDER, "café", buyer.public_key, tags=[["p", "x"]], created_at=42
        )

        expected = f'[0,"{buyer.public_key}",42,1,[["p","x"]],"café"]'.encode("utf-8")
        assert unsigned.serialize() == expected

    def test_same_fields_same_id(self, buyer):
        a = codec.build_unsigned(EventKind.ORDER, "x", buyer.public_key, created_at=1)
        b = codec.build_unsigned(EventKind.ORDER, "x", buyer.public_key, created_at=1)

        assert codec.sign(a, buyer).id == codec.sign(b, buyer).id

    def test_sign_rejects_foreign_author(self, buyer, service_identity):
        unsigned = codec.build_unsigned(EventKind.ORDER, "x", service_identity.public_key)

        with pytest.raises(ValueError):
            codec.sign(unsigned, buyer)

    def test_pubkey_must_be_32_bytes_hex(self):
        with pytest.raises(ValueError):
            UnsignedMessage(pubkey="abc", created_at=1, kind=1)


class TestValidate:

    @pytest.fixture
    def message(self, buyer) -> SignedMessage:
        unsigned = codec.build_unsigned(
            EventKind.ORDER, "order", buyer.public_key, tags=[["p", buyer.public_key]]
        )
        return codec.sign(unsigned, buyer)

    def test_signed_message_validates(self, message, service_identity):
        # Any identity can verify; verification uses the message's own pubkey
        assert codec.validate(message, service_identity)

    def test_changed_content_fails(self, message, buyer):
        tampered = message.model_copy(update={"content": "order x2"})

        assert not codec.validate(tampered, buyer)

    def test_changed_author_fails(self, message, buyer, service_identity):
        tampered = message.model_copy(update={"pubkey": service_identity.public_key})

        assert not codec.validate(tampered, buyer)

    def test_garbage_signature_fails(self, message, buyer):
        tampered = message.model_copy(update={"sig": "zz"})

        assert not codec.validate(tampered, buyer)

    def test_wire_round_trip_keeps_validity(self, message, buyer):
        restored = message_from_json(message.to_json())

        assert restored == message
        assert codec.validate(restored, buyer)
        assert list(json.loads(message.to_json())) == [
            "id", "pubkey", "created_at", "kind", "tags", "content", "sig"
        ]


class TestTags:

    def test_tag_helpers(self):
        tags = [["relays", "wss://a", "wss://b"], ["e", "1"], ["e", "2"]]

        assert tag_values(tags, "relays") == ["wss://a", "wss://b"]
        assert first_tag_value(tags, "e") == "1"
        assert first_tag_value(tags, "bolt11") is None
        assert tag_values(tags, "p") == []
