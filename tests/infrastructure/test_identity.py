"""
Tests for the local signing identity (BIP-340).
"""

import pytest

from zap_checkout.config import Settings
from zap_checkout.domain import codec
from zap_checkout.domain.messages import EventKind
from zap_checkout.infrastructure.identity import (
    LocalKeyIdentity,
    schnorr_sign,
    schnorr_verify,
    x_only_public_key,
)

# BIP-340 test vector 0
VECTOR_SECRET = bytes(31) + b"\x03"
VECTOR_PUBKEY = "f9308a019258c31049344f85f89d5229b531c845836f99b08601f113bce036f9"
VECTOR_SIG = (
    "e907831f80848d1069a5371b402410364bdf1c5f8307b0084c55f1ce2dca8215"
    "25f66a4a85ea8b71e482a74f382d2ce5ebeee8fdb2172f477df4900d310536c0"
)


class TestSchnorr:

    def test_known_vector(self):
        msg = bytes(32)

        sig = schnorr_sign(msg, VECTOR_SECRET, bytes(32))

        assert x_only_public_key(VECTOR_SECRET).hex() == VECTOR_PUBKEY
        assert sig.hex() == VECTOR_SIG
        assert schnorr_verify(msg, bytes.fromhex(VECTOR_PUBKEY), sig)

    def test_random_aux_still_verifies(self):
        sig = schnorr_sign(bytes(32), VECTOR_SECRET)

        assert schnorr_verify(bytes(32), bytes.fromhex(VECTOR_PUBKEY), sig)

    def test_other_message_fails(self):
        sig = schnorr_sign(bytes(32), VECTOR_SECRET, bytes(32))

        assert not schnorr_verify(b"\x01" * 32, bytes.fromhex(VECTOR_PUBKEY), sig)

    def test_malformed_inputs_fail(self):
        sig = bytes.fromhex(VECTOR_SIG)
        pubkey = bytes.fromhex(VECTOR_PUBKEY)

        assert not schnorr_verify(bytes(32), pubkey[:31], sig)
        assert not schnorr_verify(bytes(32), pubkey, sig[:63])
        assert not schnorr_verify(bytes(31), pubkey, sig)
        # r not below the field size
        assert not schnorr_verify(bytes(32), pubkey, b"\xff" * 32 + sig[32:])

    def test_pubkey_off_curve_fails(self):
        # BIP-340 test vector 5
        off_curve = bytes.fromhex("eefdea4cdb677750a420fee807eacf21eb9898ae79b9768766e4faa04a2d4a34")

        assert not schnorr_verify(bytes(32), off_curve, bytes.fromhex(VECTOR_SIG))

    def test_message_must_be_32_bytes(self):
        with pytest.raises(ValueError):
            schnorr_sign(b"short", VECTOR_SECRET)


class TestLocalKeyIdentity:

    def test_zero_secret_rejected(self):
        with pytest.raises(ValueError):
            LocalKeyIdentity(bytes(32))

    def test_generated_keys_differ(self):
        assert LocalKeyIdentity.generate().public_key != LocalKeyIdentity.generate().public_key

    def test_hex_round_trip(self):
        identity = LocalKeyIdentity.generate()

        restored = LocalKeyIdentity.from_hex(identity.private_key_hex)

        assert restored.public_key == identity.public_key

    def test_from_hex_rejects_short_keys(self):
        with pytest.raises(ValueError):
            LocalKeyIdentity.from_hex("ab" * 16)

    def test_from_settings(self):
        settings = Settings(_env_file=None, private_key=VECTOR_SECRET.hex())

        assert LocalKeyIdentity.from_settings(settings).public_key == VECTOR_PUBKEY

    def test_from_settings_without_key_is_ephemeral(self):
        settings = Settings(_env_file=None)

        first = LocalKeyIdentity.from_settings(settings)
        second = LocalKeyIdentity.from_settings(settings)

        assert first.public_key != second.public_key

    def test_signs_messages_that_validate(self):
        identity = LocalKeyIdentity.generate()
        unsigned = codec.build_unsigned(EventKind.ORDER, "hello", identity.public_key)

        message = codec.sign(unsigned, identity)

        assert len(message.id) == 64
        assert len(message.sig) == 128
        assert identity.verify(message)
        assert codec.validate(message, identity)
