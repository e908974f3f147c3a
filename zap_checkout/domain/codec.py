"""
Signed Message Codec

Builds unsigned messages, signs them and validates inbound ones.

The hash and signature algorithms belong to the signing identity; this
module only fixes the order of operations:

    unsigned --hash--> id --sign--> sig

``validate`` never raises. A ``False`` result means "reject the message,
do not look at its content".
"""

from __future__ import annotations

import time

import structlog
from pydantic import ValidationError

from zap_checkout.domain.messages import SignedMessage, UnsignedMessage
from zap_checkout.domain.ports import SigningIdentity

logger = structlog.get_logger(__name__)


def build_unsigned(
    kind: int,
    content: str,
    author_pubkey: str,
    tags: list[list[str]] | None = None,
    created_at: int | None = None,
) -> UnsignedMessage:
    """
    Construct an unsigned message.

    ``created_at`` defaults to the current time rounded to whole seconds.
    """
    return UnsignedMessage(
        pubkey=author_pubkey,
        created_at=round(time.time()) if created_at is None else created_at,
        kind=int(kind),
        tags=[list(tag) for tag in (tags or [])],
        content=content,
    )


def sign(unsigned: UnsignedMessage, identity: SigningIdentity) -> SignedMessage:
    """
    Compute the id of ``unsigned`` and sign it.

    Deterministic for a given identity and field values: the same fields
    always hash to the same id.
    """
    if unsigned.pubkey != identity.public_key:
        raise ValueError("Message author does not match the signing identity")

    message_id = identity.hash(unsigned)
    return SignedMessage(
        id=message_id,
        sig=identity.sign(message_id),
        **unsigned.model_dump(),
    )


def validate(message: SignedMessage, identity: SigningIdentity) -> bool:
    """
    Recompute the id from the content fields and verify the signature.

    Returns False on any structural or cryptographic mismatch.
    """
    try:
        expected_id = identity.hash(message.unsigned())
    except (ValidationError, ValueError, TypeError) as e:
        logger.info("codec.structure_invalid", message_id=message.id, error=str(e))
        return False

    if expected_id != message.id:
        logger.info(
            "codec.id_mismatch",
            message_id=message.id,
            expected_id=expected_id,
        )
        return False

    try:
        verified = identity.verify(message)
    except (ValueError, TypeError) as e:
        logger.info("codec.signature_error", message_id=message.id, error=str(e))
        return False

    if not verified:
        logger.info("codec.signature_invalid", message_id=message.id)
    return verified
