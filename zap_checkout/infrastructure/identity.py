"""
Local signing identity (secp256k1 / BIP-340 Schnorr).

Nostr ids are ``sha256`` of the canonical serialization; signatures are
64-byte BIP-340 Schnorr signatures over the id, made with x-only keys.
Signing and verification go through libsecp256k1 via ``coincurve``.
"""

from __future__ import annotations

import hashlib
import os

import structlog
from coincurve import PrivateKey, PublicKeyXOnly

from zap_checkout.config import Settings
from zap_checkout.domain.messages import SignedMessage, UnsignedMessage

logger = structlog.get_logger(__name__)


def schnorr_sign(msg: bytes, secret: bytes, aux_rand: bytes | None = None) -> bytes:
    """BIP-340 signature of a 32-byte message; fresh aux randomness unless given."""
    if len(msg) != 32:
        raise ValueError("Message must be 32 bytes")
    return PrivateKey(secret).sign_schnorr(msg, aux_rand if aux_rand is not None else os.urandom(32))


def schnorr_verify(msg: bytes, pubkey: bytes, sig: bytes) -> bool:
    if len(msg) != 32 or len(pubkey) != 32 or len(sig) != 64:
        return False
    try:
        return PublicKeyXOnly(pubkey).verify(sig, msg)
    except ValueError:
        # x coordinate not on the curve
        return False


def x_only_public_key(secret: bytes) -> bytes:
    # compressed SEC1 encoding minus the parity byte
    return PrivateKey(secret).public_key.format(compressed=True)[1:]


class LocalKeyIdentity:
    """Signing identity backed by an in-process private key."""

    def __init__(self, secret: bytes):
        if len(secret) != 32:
            raise ValueError("Private key must be 32 bytes")
        # coincurve rejects zero and scalars not below the curve order
        self._key = PrivateKey(secret)
        self._public_key = x_only_public_key(secret).hex()

    @classmethod
    def generate(cls) -> LocalKeyIdentity:
        """Fresh random key (buyers get one per device/session)."""
        return cls(PrivateKey().secret)

    @classmethod
    def from_hex(cls, private_key_hex: str) -> LocalKeyIdentity:
        return cls(bytes.fromhex(private_key_hex))

    @classmethod
    def from_settings(cls, settings: Settings) -> LocalKeyIdentity:
        if settings.private_key:
            return cls.from_hex(settings.private_key)
        identity = cls.generate()
        logger.info("identity.generated_ephemeral_key", public_key=identity.public_key)
        return identity

    @property
    def public_key(self) -> str:
        return self._public_key

    @property
    def private_key_hex(self) -> str:
        return self._key.secret.hex()

    def hash(self, unsigned: UnsignedMessage) -> str:
        return hashlib.sha256(unsigned.serialize()).hexdigest()

    def sign(self, message_id: str) -> str:
        return schnorr_sign(bytes.fromhex(message_id), self._key.secret).hex()

    def verify(self, message: SignedMessage) -> bool:
        return schnorr_verify(
            bytes.fromhex(message.id),
            bytes.fromhex(message.pubkey),
            bytes.fromhex(message.sig),
        )
