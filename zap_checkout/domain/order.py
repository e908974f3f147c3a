"""
Order Description Model

An order's economic facts travel inside the order event:

- ``content``: a short human-readable summary (what clients display)
- ``["description", <json>]``: the machine-readable facts
- ``["relays", ...]``: where receipts for the order should be looked for
- ``["p", <recipient>]``: whose zap receipts count as payment

The JSON shape is shared with existing clients:

    {"amount": 1389, "fiatAmount": 250, "fiatCurrency": "ARS", "items": [...]}
    {"amount": 1000, "fiatAmount": 260, "fiatCurrency": "ARS", "memo": {"vote": 50}}

An order is either an item list or a memo, never both.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Annotated, Any, Literal, Union

import simplejson
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from zap_checkout.config import get_settings
from zap_checkout.domain.codec import build_unsigned, sign
from zap_checkout.domain.errors import MalformedOrder
from zap_checkout.domain.messages import (
    TAG_DESCRIPTION,
    TAG_PUBKEY,
    TAG_RELAYS,
    EventKind,
    SignedMessage,
)
from zap_checkout.domain.ports import SigningIdentity


def default_fiat_currency() -> str:
    return get_settings().default_fiat_currency


class MenuItem(BaseModel):
    """One line of an item-list order."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str | None = None
    name: str = ""
    price: Decimal = Field(ge=0)
    qty: int = Field(default=1, ge=0)

    @property
    def line_total(self) -> Decimal:
        return self.price * self.qty


class ItemsContent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["items"] = "items"
    items: tuple[MenuItem, ...] = ()


class MemoContent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["memo"] = "memo"
    # opaque caller context; any JSON value
    memo: Any = Field(default_factory=dict)


OrderContent = Annotated[Union[ItemsContent, MemoContent], Field(discriminator="kind")]


class OrderDescription(BaseModel):
    """
    Economic facts of an order.

    ``amount`` (sats) is frozen at checkout; ``fiat_amount`` and
    ``fiat_currency`` are for display only.
    """

    model_config = ConfigDict(frozen=True)

    amount: int = Field(ge=0)
    fiat_amount: Decimal = Field(default=Decimal("0"), ge=0)
    fiat_currency: str = Field(default_factory=default_fiat_currency)
    content: OrderContent = Field(default_factory=ItemsContent)

    @field_validator("fiat_currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("fiat_currency cannot be empty")
        return v.strip().upper()

    @property
    def items(self) -> tuple[MenuItem, ...]:
        if isinstance(self.content, ItemsContent):
            return self.content.items
        return ()

    @property
    def memo(self) -> Any:
        if isinstance(self.content, MemoContent):
            return self.content.memo
        return None

    def to_json_dict(self) -> dict[str, Any]:
        """Shape stored in the ``description`` tag."""
        data: dict[str, Any] = {
            "amount": self.amount,
            "fiatAmount": _number(self.fiat_amount),
            "fiatCurrency": self.fiat_currency,
        }
        if isinstance(self.content, MemoContent):
            data["memo"] = self.content.memo
        else:
            data["items"] = [
                {
                    **({"id": item.id} if item.id is not None else {}),
                    "name": item.name,
                    "price": _number(item.price),
                    "qty": item.qty,
                }
                for item in self.content.items
            ]
        return data


@dataclass(frozen=True)
class EncodedOrder:
    content: str
    tags: list[list[str]]


def compute_total(items: list[MenuItem] | tuple[MenuItem, ...]) -> Decimal:
    """Sum of ``price * qty`` over all lines; an empty list totals zero."""
    return sum((item.line_total for item in items), Decimal("0"))


def fiat_to_sats(fiat_amount: Decimal | int, rate: Decimal) -> int:
    """
    Convert a fiat amount to whole sats at a fixed rate (fiat per sat).

    Halves round up: 250 / 0.18 = 1388.89 -> 1389.
    """
    if rate <= 0:
        raise ValueError("Conversion rate must be positive")
    sats = Decimal(fiat_amount) / Decimal(rate)
    return int(sats.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def describe(description: OrderDescription) -> str:
    """Human-readable summary placed in the event content."""
    lines = [
        f"Order: {description.fiat_currency} {_format(description.fiat_amount)} "
        f"({description.amount} sats)"
    ]
    memo = description.memo
    if isinstance(memo, dict):
        lines.extend(f"{key}: {value}" for key, value in memo.items())
    elif memo is not None:
        lines.append(f"memo: {memo}")
    for item in description.items:
        label = item.name or item.id or "item"
        lines.append(f"{item.qty} x {label} @ {_format(item.price)}")
    return "\n".join(lines)


def encode(
    description: OrderDescription,
    recipient_pubkey: str,
    relays: list[str],
) -> EncodedOrder:
    """Serialize an order description into event content and tags."""
    return EncodedOrder(
        content=describe(description),
        tags=[
            [TAG_RELAYS, *relays],
            [TAG_PUBKEY, recipient_pubkey],
            [
                TAG_DESCRIPTION,
                simplejson.dumps(description.to_json_dict(), separators=(",", ":"), use_decimal=True),
            ],
        ],
    )


def decode(
    message: SignedMessage,
    default_currency: str | None = None,
) -> OrderDescription:
    """
    Read the economic facts back from an order event.

    Raises:
        MalformedOrder: description tag missing, not JSON, or invalid values
    """
    default_currency = default_currency or default_fiat_currency()
    raw = message.first_tag_value(TAG_DESCRIPTION)
    if raw is None:
        raise MalformedOrder("Order has no description tag", order_id=message.id)

    try:
        data = simplejson.loads(raw, use_decimal=True)
    except simplejson.JSONDecodeError as e:
        raise MalformedOrder(f"Order description is not valid JSON: {e}", order_id=message.id) from e

    if not isinstance(data, dict):
        raise MalformedOrder("Order description must be a JSON object", order_id=message.id)

    try:
        if "memo" in data:
            memo = data["memo"]
            content: ItemsContent | MemoContent = MemoContent(memo={} if memo is None else memo)
        else:
            content = ItemsContent(
                items=tuple(MenuItem.model_validate(item) for item in data.get("items") or [])
            )
    except (ValidationError, TypeError) as e:
        raise MalformedOrder(f"Order content is invalid: {e}", order_id=message.id) from e

    try:
        return OrderDescription(
            amount=data.get("amount", 0),
            fiat_amount=data.get("fiatAmount", 0),
            fiat_currency=data.get("fiatCurrency") or default_currency,
            content=content,
        )
    except ValidationError as e:
        raise MalformedOrder(f"Order description is invalid: {e}", order_id=message.id) from e


def recipient_from_message(message: SignedMessage) -> str | None:
    """Recipient public key from the order's ``p`` tag."""
    return message.first_tag_value(TAG_PUBKEY)


def create_order_message(
    description: OrderDescription,
    identity: SigningIdentity,
    recipient_pubkey: str,
    relays: list[str],
) -> SignedMessage:
    """Encode, build and sign an order event."""
    encoded = encode(description, recipient_pubkey, relays)
    unsigned = build_unsigned(
        kind=EventKind.ORDER,
        content=encoded.content,
        author_pubkey=identity.public_key,
        tags=encoded.tags,
    )
    return sign(unsigned, identity)


def _number(value: Decimal) -> int | Decimal:
    if value == value.to_integral_value():
        return int(value)
    return value


def _format(value: Decimal) -> str:
    return str(_number(value))
