"""
Signed Messages - The Envelope for Orders, Zap Requests and Receipts

Everything this system sends or receives is a Nostr event:

    {id, pubkey, created_at, kind, tags, content, sig}

- ``id`` is the SHA-256 of the canonical serialization of the other fields
- ``sig`` is a signature over ``id`` by the key in ``pubkey``

Orders, zap requests and zap receipts differ only by ``kind`` and by the
tag conventions they use. Messages are immutable once built.
"""

from __future__ import annotations

import json
from enum import IntEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EventKind(IntEnum):
    """Nostr kinds used by the checkout flow."""

    ORDER = 1  # Text note carrying the order description
    ZAP_REQUEST = 9734  # NIP-57 zap request, sent to the LNURL server
    ZAP_RECEIPT = 9735  # NIP-57 zap receipt, published by the LNURL server


# Tag names
TAG_RELAYS = "relays"
TAG_PUBKEY = "p"
TAG_EVENT = "e"
TAG_DESCRIPTION = "description"
TAG_AMOUNT = "amount"
TAG_BOLT11 = "bolt11"


class UnsignedMessage(BaseModel):
    """Message fields covered by the id hash."""

    model_config = ConfigDict(frozen=True)

    pubkey: str
    created_at: int
    kind: int
    tags: list[list[str]] = Field(default_factory=list)
    content: str = ""

    @field_validator("pubkey")
    @classmethod
    def validate_pubkey(cls, v: str) -> str:
        """Public keys are 32-byte x-only keys in lowercase hex."""
        if len(v) != 64:
            raise ValueError("pubkey must be 64 hex characters")
        bytes.fromhex(v)
        return v.lower()

    def serialize(self) -> bytes:
        """
        Canonical NIP-01 serialization used for hashing.

        ``[0, pubkey, created_at, kind, tags, content]`` as compact UTF-8 JSON.
        Two messages with identical field values always serialize to the
        same bytes.
        """
        payload = [0, self.pubkey, self.created_at, self.kind, self.tags, self.content]
        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


class SignedMessage(UnsignedMessage):
    """Unsigned fields plus ``id`` and ``sig``."""

    id: str
    sig: str

    def unsigned(self) -> UnsignedMessage:
        """Strip ``id`` and ``sig``."""
        return UnsignedMessage(
            pubkey=self.pubkey,
            created_at=self.created_at,
            kind=self.kind,
            tags=self.tags,
            content=self.content,
        )

    def to_dict(self) -> dict[str, Any]:
        """Wire representation (NIP-01 field order)."""
        return {
            "id": self.id,
            "pubkey": self.pubkey,
            "created_at": self.created_at,
            "kind": self.kind,
            "tags": self.tags,
            "content": self.content,
            "sig": self.sig,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)

    def tag_values(self, name: str) -> list[str]:
        return tag_values(self.tags, name)

    def first_tag_value(self, name: str) -> str | None:
        return first_tag_value(self.tags, name)


def message_from_dict(data: dict[str, Any]) -> SignedMessage:
    """Build a message from its wire dict (raises ``pydantic.ValidationError``)."""
    return SignedMessage.model_validate(data)


def message_from_json(raw: str) -> SignedMessage:
    """Build a message from a JSON string (raises ``ValueError`` subclasses)."""
    return SignedMessage.model_validate_json(raw)


def tag_values(tags: list[list[str]], name: str) -> list[str]:
    """Values (everything after the name) of the first tag called ``name``."""
    for tag in tags:
        if tag and tag[0] == name:
            return list(tag[1:])
    return []


def first_tag_value(tags: list[list[str]], name: str) -> str | None:
    """First value of the first tag called ``name``, if any."""
    values = tag_values(tags, name)
    return values[0] if values else None
