"""
Order Session - The Reconciliation State Machine

One ``OrderSession`` owns at most one active order and everything derived
from it: the pending balance, the running total paid, and the receipts
already applied.

State machine:

    IDLE --load_order--> LOADED --subscribe--> SUBSCRIBED
                                                   |
                                        pending <= 0
                                                   v
                                                SETTLED

Invariants:
1. ``pending_amount_msat == amount * 1000 - sum(accepted receipts)``
   after every apply
2. A receipt id is applied at most once
3. Receipts are applied one at a time (``asyncio.Lock``); the
   subscription consumer task is the only producer
4. Loading another order stops the previous subscription before the new
   one starts; receipts delivered for the previous order are rejected

Receipt rejections are returned as ``ReceiptOutcome`` values and never
raised. Spoofed receipts (wrong author, bad signature) are logged as
security events; every other rejection is routine.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable

import structlog

from zap_checkout.config import Settings, get_settings
from zap_checkout.domain import codec
from zap_checkout.domain.errors import (
    CheckoutError,
    DuplicateReceipt,
    IncompleteReceipt,
    InvoiceServiceFailure,
    MalformedOrder,
    NetworkUnavailable,
    OrderNotFound,
    SpoofedReceipt,
    StaleReceipt,
)
from zap_checkout.domain.invoices import InvoiceRequester
from zap_checkout.domain.messages import TAG_EVENT, SignedMessage
from zap_checkout.domain.order import (
    ItemsContent,
    MemoContent,
    MenuItem,
    OrderDescription,
    compute_total,
    create_order_message,
    decode,
    fiat_to_sats,
    recipient_from_message,
)
from zap_checkout.domain.ports import (
    InvoiceService,
    PaymentStringDecoder,
    RelayClient,
    SigningIdentity,
    Subscription,
)
from zap_checkout.domain.receipts import parse_receipt
from zap_checkout.observability.metrics import metrics

logger = structlog.get_logger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    LOADED = "loaded"
    SUBSCRIBED = "subscribed"
    SETTLED = "settled"


class RejectionReason(str, Enum):
    """Why a receipt was not applied."""

    NO_ORDER = "no_order"
    STALE = "stale"
    WRONG_AUTHOR = "wrong_author"
    INVALID_SIGNATURE = "invalid_signature"
    INCOMPLETE = "incomplete"
    DUPLICATE = "duplicate"
    WRONG_ORDER = "wrong_order"

    @property
    def security_relevant(self) -> bool:
        return self in (RejectionReason.WRONG_AUTHOR, RejectionReason.INVALID_SIGNATURE)


_REJECTION_ERRORS: dict[RejectionReason, type[CheckoutError]] = {
    RejectionReason.NO_ORDER: StaleReceipt,
    RejectionReason.STALE: StaleReceipt,
    RejectionReason.WRONG_ORDER: StaleReceipt,
    RejectionReason.WRONG_AUTHOR: SpoofedReceipt,
    RejectionReason.INVALID_SIGNATURE: SpoofedReceipt,
    RejectionReason.INCOMPLETE: IncompleteReceipt,
    RejectionReason.DUPLICATE: DuplicateReceipt,
}


@dataclass(frozen=True)
class AcceptedReceipt:
    receipt_id: str
    amount_msat: int
    bolt11: str | None
    received_at: datetime


@dataclass(frozen=True)
class ReceiptOutcome:
    """Result of offering one receipt to the session."""

    receipt_id: str
    applied: bool
    reason: RejectionReason | None = None
    amount_msat: int = 0

    @property
    def security_relevant(self) -> bool:
        return self.reason is not None and self.reason.security_relevant

    def raise_for_rejection(self, order_id: str | None = None) -> None:
        """Raise the matching ``CheckoutError`` if the receipt was rejected."""
        if self.reason is None:
            return
        error_class = _REJECTION_ERRORS[self.reason]
        raise error_class(f"Receipt {self.receipt_id} rejected: {self.reason.value}", order_id=order_id)


@dataclass(frozen=True)
class CheckoutResult:
    order_id: str
    message: SignedMessage


@dataclass(frozen=True)
class LoadedOrder:
    id: str
    recipient_pubkey: str
    description: OrderDescription
    message: SignedMessage


@dataclass
class OrderDraft:
    """Mutable order being priced before checkout."""

    fiat_currency: str
    amount: int = 0
    fiat_amount: Decimal = Decimal("0")
    content: ItemsContent | MemoContent = field(default_factory=ItemsContent)

    def to_description(self) -> OrderDescription:
        return OrderDescription(
            amount=self.amount,
            fiat_amount=self.fiat_amount,
            fiat_currency=self.fiat_currency,
            content=self.content,
        )


class OrderSession:
    """
    Owned state for one buyer's checkout.

    Callers hold the session and pass it around; there is no global order.
    """

    def __init__(
        self,
        identity: SigningIdentity,
        relay: RelayClient,
        decoder: PaymentStringDecoder,
        invoice_service: InvoiceService | None = None,
        settings: Settings | None = None,
        recipient_pubkey: str | None = None,
    ):
        self.settings = settings or get_settings()
        self.identity = identity
        self.relay = relay
        self.decoder = decoder
        self.relays = self.settings.get_relay_urls()
        self.invoice_service = invoice_service
        self.invoice_requester = (
            InvoiceRequester(identity, invoice_service, self.relays)
            if invoice_service is not None
            else None
        )
        self._recipient_pubkey = recipient_pubkey

        self.draft = OrderDraft(fiat_currency=self.settings.default_fiat_currency)

        # Active order and accumulators
        self._order: LoadedOrder | None = None
        self._total_paid_msat = 0
        self._accepted: list[AcceptedReceipt] = []
        self._accepted_ids: set[str] = set()
        self._generation = 0

        # Subscription
        self._subscription: Subscription | None = None
        self._consumer: asyncio.Task[None] | None = None

        # Invoices
        self._current_invoice: str | None = None
        self._invoice_seq = 0
        self.last_invoice_error: Exception | None = None
        self.last_subscription_error: Exception | None = None

        self._lock = asyncio.Lock()
        self._changed = asyncio.Condition()
        self._background: set[asyncio.Task[Any]] = set()
        self.receipts_seen = 0

    # ------------------------------------------------------------------
    # Read accessors
    # ------------------------------------------------------------------

    @property
    def order(self) -> LoadedOrder | None:
        return self._order

    @property
    def order_id(self) -> str | None:
        return self._order.id if self._order else None

    @property
    def recipient_pubkey(self) -> str | None:
        if self._order:
            return self._order.recipient_pubkey
        return self._recipient_pubkey

    @property
    def amount(self) -> int:
        if self._order:
            return self._order.description.amount
        return self.draft.amount

    @property
    def fiat_amount(self) -> Decimal:
        if self._order:
            return self._order.description.fiat_amount
        return self.draft.fiat_amount

    @property
    def fiat_currency(self) -> str:
        if self._order:
            return self._order.description.fiat_currency
        return self.draft.fiat_currency

    @property
    def items(self) -> tuple[MenuItem, ...]:
        if self._order:
            return self._order.description.items
        content = self.draft.content
        return content.items if isinstance(content, ItemsContent) else ()

    @property
    def memo(self) -> Any:
        if self._order:
            return self._order.description.memo
        content = self.draft.content
        return content.memo if isinstance(content, MemoContent) else None

    @property
    def total_paid_msat(self) -> int:
        return self._total_paid_msat

    @property
    def pending_amount_msat(self) -> int:
        if self._order is None:
            return 0
        return self._order.description.amount * 1000 - self._total_paid_msat

    @property
    def total_paid(self) -> int:
        """Whole sats paid so far."""
        return self._total_paid_msat // 1000

    @property
    def pending_amount(self) -> int:
        """Sats still to collect (partial sats round up); negative when overpaid."""
        return -(-self.pending_amount_msat // 1000)

    @property
    def overpaid_msat(self) -> int:
        return max(0, -self.pending_amount_msat)

    @property
    def accepted_receipts(self) -> tuple[AcceptedReceipt, ...]:
        return tuple(self._accepted)

    @property
    def current_invoice(self) -> str | None:
        return self._current_invoice

    @property
    def is_subscribed(self) -> bool:
        return self._subscription is not None and self._subscription.active

    @property
    def state(self) -> SessionState:
        if self._order is None:
            return SessionState.IDLE
        if self.pending_amount_msat <= 0:
            return SessionState.SETTLED
        if self.is_subscribed:
            return SessionState.SUBSCRIBED
        return SessionState.LOADED

    # ------------------------------------------------------------------
    # Draft mutators
    # ------------------------------------------------------------------

    def set_amount(self, amount: int) -> None:
        if amount < 0:
            raise ValueError("Amount cannot be negative")
        self.draft.amount = amount

    def set_fiat_amount(self, fiat_amount: Decimal | int) -> None:
        """Set the fiat total and re-price the draft in sats."""
        fiat_amount = Decimal(fiat_amount)
        if fiat_amount < 0:
            raise ValueError("Fiat amount cannot be negative")
        self.draft.fiat_amount = fiat_amount
        self.draft.amount = fiat_to_sats(fiat_amount, self.settings.fiat_per_sat_rate)

    def set_fiat_currency(self, currency: str) -> None:
        if not currency.strip():
            raise ValueError("Fiat currency cannot be empty")
        self.draft.fiat_currency = currency.strip().upper()

    def set_items(self, items: list[MenuItem]) -> None:
        """Replace the item list; fiat total and sats follow."""
        self.draft.content = ItemsContent(items=tuple(items))
        self.set_fiat_amount(compute_total(items))

    def set_memo(self, memo: Any) -> None:
        """Attach opaque caller context (any JSON value) in place of items."""
        self.draft.content = MemoContent(memo=memo)

    # ------------------------------------------------------------------
    # Checkout and order loading
    # ------------------------------------------------------------------

    async def check_out(self, activate: bool = False) -> CheckoutResult:
        """
        Sign the draft as an order event and publish it.

        Args:
            activate: also load the new order into this session

        Raises:
            NetworkUnavailable: no relay accepted the order
        """
        recipient = await self._resolve_recipient()
        message = create_order_message(
            self.draft.to_description(), self.identity, recipient, self.relays
        )

        try:
            accepted = await self.relay.publish(message)
        except NetworkUnavailable:
            metrics.record_order_published("failed")
            raise
        if not accepted:
            metrics.record_order_published("failed")
            raise NetworkUnavailable("No relay accepted the order", order_id=message.id)

        metrics.record_order_published("success")
        logger.info(
            "order_session.checked_out",
            order_id=message.id,
            amount=self.draft.amount,
            fiat_amount=str(self.draft.fiat_amount),
            fiat_currency=self.draft.fiat_currency,
        )

        if activate:
            await self.load_order(message)
        return CheckoutResult(order_id=message.id, message=message)

    async def set_order(self, order_id: str) -> LoadedOrder:
        """
        Fetch an order by id and make it the active one.

        Raises:
            OrderNotFound: no relay returned the event
            MalformedOrder: the event is not a usable order
            NetworkUnavailable: the fetch failed
        """
        if self._order and self._order.id == order_id:
            logger.debug("order_session.order_already_loaded", order_id=order_id)
            return self._order

        logger.info("order_session.fetching_order", order_id=order_id)
        message = await self.relay.fetch_by_id(order_id)
        if message is None:
            raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)
        if message.id != order_id:
            raise MalformedOrder("Relay returned a different event", order_id=order_id)
        return await self.load_order(message)

    async def load_order(self, message: SignedMessage) -> LoadedOrder:
        """
        Make ``message`` the active order, reset accumulators, subscribe.

        Raises:
            MalformedOrder: bad signature or unusable description
        """
        if not codec.validate(message, self.identity):
            raise MalformedOrder("Order event failed validation", order_id=message.id)

        description = decode(message, default_currency=self.settings.default_fiat_currency)
        recipient = recipient_from_message(message) or await self._resolve_recipient()
        order = LoadedOrder(
            id=message.id,
            recipient_pubkey=recipient,
            description=description,
            message=message,
        )

        async with self._lock:
            await self._stop_subscription()
            self._order = order
            self._total_paid_msat = 0
            self._accepted = []
            self._accepted_ids = set()
            self._current_invoice = None
            self._invoice_seq += 1
            self.last_invoice_error = None
            self.last_subscription_error = None
            self._generation += 1
            generation = self._generation

            logger.info(
                "order_session.order_loaded",
                order_id=order.id,
                amount=description.amount,
                recipient=recipient,
            )
            await self._start_subscription(order.id, generation)

        await self._notify()
        self._on_pending_changed()
        return order

    async def reset(self) -> None:
        """Drop the active order and return to IDLE."""
        async with self._lock:
            await self._stop_subscription()
            self._order = None
            self._total_paid_msat = 0
            self._accepted = []
            self._accepted_ids = set()
            self._current_invoice = None
            self._invoice_seq += 1
            self._generation += 1
            self.draft = OrderDraft(fiat_currency=self.settings.default_fiat_currency)
        await self._notify()

    async def close(self) -> None:
        """Stop listening and cancel background work. Idempotent."""
        async with self._lock:
            await self._stop_subscription()
        for task in list(self._background):
            task.cancel()
        for task in list(self._background):
            with contextlib.suppress(asyncio.CancelledError):
                await task

    # ------------------------------------------------------------------
    # Receipt application
    # ------------------------------------------------------------------

    async def apply_receipt(
        self, message: SignedMessage, generation: int | None = None
    ) -> ReceiptOutcome:
        """
        Offer one zap receipt to the active order.

        ``generation`` identifies the subscription that delivered the
        receipt; receipts from an older subscription are stale.
        """
        async with self._lock:
            was_pending = self.pending_amount_msat > 0
            outcome = self._apply_locked(message, generation)
            settled_now = was_pending and self.pending_amount_msat <= 0
            self.receipts_seen += 1

        if outcome.applied:
            if settled_now:
                metrics.record_order_settled()
                logger.info(
                    "order_session.order_settled",
                    order_id=self.order_id,
                    total_paid_msat=self._total_paid_msat,
                    overpaid_msat=self.overpaid_msat,
                )
            self._on_pending_changed()
        await self._notify()
        return outcome

    def _apply_locked(self, message: SignedMessage, generation: int | None) -> ReceiptOutcome:
        order = self._order
        log = logger.bind(receipt_id=message.id, order_id=order.id if order else None)

        if order is None:
            log.info("order_session.receipt_without_order")
            metrics.record_receipt(RejectionReason.NO_ORDER.value)
            return ReceiptOutcome(message.id, applied=False, reason=RejectionReason.NO_ORDER)

        if generation is not None and generation != self._generation:
            log.info("order_session.stale_receipt", generation=generation)
            metrics.record_receipt(RejectionReason.STALE.value)
            return ReceiptOutcome(message.id, applied=False, reason=RejectionReason.STALE)

        # 1. Only the recipient's receipts count
        if message.pubkey != order.recipient_pubkey:
            return self._reject_spoofed(log, message, RejectionReason.WRONG_AUTHOR)

        # 2. Id and signature must check out
        if not codec.validate(message, self.identity):
            return self._reject_spoofed(log, message, RejectionReason.INVALID_SIGNATURE)

        referenced = message.first_tag_value(TAG_EVENT)
        if referenced is not None and referenced != order.id:
            log.info("order_session.receipt_for_other_order", referenced_order=referenced)
            metrics.record_receipt(RejectionReason.WRONG_ORDER.value)
            return ReceiptOutcome(message.id, applied=False, reason=RejectionReason.WRONG_ORDER)

        # 3. Must state a paid amount
        info = parse_receipt(message, self.decoder)
        if not info.complete or info.amount_msat is None:
            log.info("order_session.incomplete_receipt", reason=info.reason)
            metrics.record_receipt(RejectionReason.INCOMPLETE.value)
            return ReceiptOutcome(message.id, applied=False, reason=RejectionReason.INCOMPLETE)

        # 4. Exactly once
        if message.id in self._accepted_ids:
            log.debug("order_session.duplicate_receipt")
            metrics.record_receipt(RejectionReason.DUPLICATE.value)
            return ReceiptOutcome(message.id, applied=False, reason=RejectionReason.DUPLICATE)

        # 5. Apply
        self._total_paid_msat += info.amount_msat
        self._accepted.append(
            AcceptedReceipt(
                receipt_id=message.id,
                amount_msat=info.amount_msat,
                bolt11=info.bolt11,
                received_at=datetime.now(timezone.utc),
            )
        )
        self._accepted_ids.add(message.id)
        metrics.record_receipt("applied", info.amount_msat)

        if self.pending_amount_msat < 0:
            log.warning(
                "order_session.overpaid",
                overpaid_msat=self.overpaid_msat,
            )
        log.info(
            "order_session.receipt_applied",
            amount_msat=info.amount_msat,
            total_paid_msat=self._total_paid_msat,
            pending_amount_msat=self.pending_amount_msat,
        )
        return ReceiptOutcome(message.id, applied=True, amount_msat=info.amount_msat)

    def _reject_spoofed(
        self, log: Any, message: SignedMessage, reason: RejectionReason
    ) -> ReceiptOutcome:
        log.warning(
            "order_session.spoofed_receipt",
            security_event=True,
            reason=reason.value,
            author=message.pubkey,
            expected_author=self._order.recipient_pubkey if self._order else None,
        )
        metrics.record_spoofed_receipt(reason.value)
        return ReceiptOutcome(message.id, applied=False, reason=reason)

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    async def request_invoice(self, amount_msat: int, order_id: str | None = None) -> str:
        """
        Request an invoice for ``amount_msat`` toward an order.

        Raises:
            RuntimeError: no invoice service configured or no order
            InvoiceServiceFailure: the service failed
        """
        if self.invoice_requester is None:
            raise RuntimeError("Session has no invoice service")
        order_id = order_id or self.order_id
        if order_id is None:
            raise RuntimeError("No active order to invoice")
        return await self.invoice_requester.request_invoice(amount_msat, order_id)

    async def refresh_invoice(self) -> str | None:
        """
        Request an invoice for the whole pending amount.

        Returns ``None`` (and requests nothing) when the order is settled.
        Only the answer to the latest request becomes ``current_invoice``.
        """
        async with self._lock:
            if self._order is None:
                return None
            pending_msat = self.pending_amount_msat
            order_id = self._order.id
            self._invoice_seq += 1
            seq = self._invoice_seq

        if pending_msat <= 0:
            logger.debug("order_session.invoice_suppressed", order_id=order_id)
            return None

        invoice = await self.request_invoice(pending_msat, order_id)

        async with self._lock:
            if seq == self._invoice_seq and order_id == self.order_id:
                self._current_invoice = invoice
                self.last_invoice_error = None
            else:
                logger.debug("order_session.invoice_superseded", order_id=order_id, seq=seq)
        await self._notify()
        return invoice

    def _on_pending_changed(self) -> None:
        if not self.settings.auto_request_invoices or self.invoice_requester is None:
            return
        if self.pending_amount_msat <= 0:
            return
        self._spawn(self._auto_refresh_invoice())

    async def _auto_refresh_invoice(self) -> None:
        try:
            await self.refresh_invoice()
        except InvoiceServiceFailure as e:
            self.last_invoice_error = e
            logger.error("order_session.invoice_refresh_failed", order_id=self.order_id, error=str(e))
            await self._notify()

    # ------------------------------------------------------------------
    # Subscription lifecycle
    # ------------------------------------------------------------------

    async def _start_subscription(self, order_id: str, generation: int) -> None:
        subscription = await self.relay.subscribe(order_id)
        self._subscription = subscription
        self._consumer = asyncio.create_task(self._consume(subscription, generation))
        metrics.subscription_opened()
        logger.info("order_session.subscribed", order_id=order_id, generation=generation)

    async def _stop_subscription(self) -> None:
        subscription, consumer = self._subscription, self._consumer
        self._subscription = None
        self._consumer = None

        if subscription is not None:
            await subscription.stop()
            metrics.subscription_closed()
            logger.info("order_session.unsubscribed", order_id=self.order_id)

        if consumer is not None and consumer is not asyncio.current_task():
            consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await consumer

    async def _consume(self, subscription: Subscription, generation: int) -> None:
        try:
            async for message in subscription:
                await self.apply_receipt(message, generation=generation)
        except NetworkUnavailable as e:
            self.last_subscription_error = e
            logger.error(
                "order_session.subscription_failed",
                order_id=self.order_id,
                generation=generation,
                error=str(e),
            )
        except Exception as e:
            self.last_subscription_error = e
            logger.exception(
                "order_session.consumer_failed",
                order_id=self.order_id,
                generation=generation,
                error=str(e),
            )
            # is_subscribed must not outlive the consumer
            await subscription.stop()
        await self._notify()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _resolve_recipient(self) -> str:
        if self._recipient_pubkey is None:
            if self.invoice_service is None:
                raise RuntimeError("No recipient public key and no invoice service to ask")
            self._recipient_pubkey = await self.invoice_service.recipient_pubkey()
        return self._recipient_pubkey

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _notify(self) -> None:
        async with self._changed:
            self._changed.notify_all()

    async def wait_for(
        self, predicate: Callable[[OrderSession], bool], timeout: float | None = None
    ) -> None:
        """Block until ``predicate(self)`` holds (re-checked on every change)."""
        async with self._changed:
            await asyncio.wait_for(self._changed.wait_for(lambda: predicate(self)), timeout)

    async def wait_for_background_tasks(self) -> None:
        """Await in-flight invoice refreshes."""
        while self._background:
            await asyncio.gather(*list(self._background))
