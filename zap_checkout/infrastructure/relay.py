"""
Relay clients.

- ``InMemoryRelay``: single in-process relay for tests and local demos
- ``WebSocketRelayClient``: NIP-01 over websockets against a relay list

Both implement ``RelayClient``. Subscriptions stream kind-9735 receipts
whose ``e`` tag references a given order id, stored ones first, then live
ones, until stopped.

Wire frames (NIP-01):

    -> ["EVENT", <event>]               <- ["OK", <id>, <accepted>, <reason>]
    -> ["REQ", <sub_id>, <filter>]      <- ["EVENT", <sub_id>, <event>] ... ["EOSE", <sub_id>]
    -> ["CLOSE", <sub_id>]
"""

from __future__ import annotations

import asyncio
import json
import secrets
from typing import Any, Awaitable, Callable

import structlog
import websockets
from pydantic import ValidationError
from websockets.exceptions import WebSocketException

from zap_checkout.config import Settings
from zap_checkout.domain.errors import NetworkUnavailable
from zap_checkout.domain.messages import TAG_EVENT, EventKind, SignedMessage, message_from_dict

logger = structlog.get_logger(__name__)

_STOP = object()

_TRANSPORT_ERRORS = (OSError, asyncio.TimeoutError, WebSocketException)


def receipt_filter(refers_to: str) -> dict[str, Any]:
    return {"kinds": [int(EventKind.ZAP_RECEIPT)], "#e": [refers_to]}


def matches_receipt_filter(message: SignedMessage, refers_to: str) -> bool:
    if message.kind != EventKind.ZAP_RECEIPT:
        return False
    return any(len(tag) > 1 and tag[0] == TAG_EVENT and tag[1] == refers_to for tag in message.tags)


class QueueSubscription:
    """
    Subscription fed through an ``asyncio.Queue``.

    Producers call ``push``/``fail``; consumers iterate. Iteration ends
    after ``stop()``; a pushed exception is raised to the consumer.
    """

    def __init__(self, refers_to: str, on_stop: Callable[[], Awaitable[None]] | None = None):
        self.refers_to = refers_to
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._stopped = False
        self._on_stop = on_stop

    def __aiter__(self) -> QueueSubscription:
        return self

    async def __anext__(self) -> SignedMessage:
        if self._stopped:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _STOP:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            self._stopped = True
            raise item
        return item

    @property
    def active(self) -> bool:
        return not self._stopped

    def push(self, message: SignedMessage) -> None:
        if not self._stopped:
            self._queue.put_nowait(message)

    def fail(self, error: Exception) -> None:
        if not self._stopped:
            self._queue.put_nowait(error)

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        self._queue.put_nowait(_STOP)
        if self._on_stop is not None:
            await self._on_stop()


class InMemoryRelay:
    """In-process relay: stores events and fans receipts out to subscribers."""

    def __init__(self) -> None:
        self._events: dict[str, SignedMessage] = {}
        self._subscriptions: list[QueueSubscription] = []
        self.available = True
        self.accept_events = True

    @property
    def events(self) -> list[SignedMessage]:
        return list(self._events.values())

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    async def publish(self, message: SignedMessage) -> bool:
        self._check_available()
        if not self.accept_events:
            return False
        if message.id not in self._events:
            self._events[message.id] = message
        self.deliver(message)
        return True

    def deliver(self, message: SignedMessage) -> None:
        """Push to matching live subscriptions without storing."""
        for subscription in self._subscriptions:
            if matches_receipt_filter(message, subscription.refers_to):
                subscription.push(message)

    async def fetch_by_id(self, message_id: str) -> SignedMessage | None:
        self._check_available()
        return self._events.get(message_id)

    async def subscribe(self, refers_to: str) -> QueueSubscription:
        self._check_available()

        async def remove() -> None:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

        subscription = QueueSubscription(refers_to, on_stop=remove)
        self._subscriptions.append(subscription)
        for message in self._events.values():
            if matches_receipt_filter(message, refers_to):
                subscription.push(message)
        return subscription

    def drop_subscriptions(self, error: Exception | None = None) -> None:
        """Simulate losing the connection under every live subscription."""
        for subscription in list(self._subscriptions):
            subscription.fail(error or NetworkUnavailable("Relay connection lost"))
        self._subscriptions.clear()

    def _check_available(self) -> None:
        if not self.available:
            raise NetworkUnavailable("Relay unavailable")


class WebSocketRelayClient:
    """NIP-01 client over a list of relay URLs."""

    def __init__(
        self,
        urls: list[str],
        timeout: float = 10.0,
        connect: Callable[[str], Awaitable[Any]] | None = None,
    ):
        if not urls:
            raise ValueError("At least one relay URL is required")
        self.urls = list(urls)
        self.timeout = timeout
        self._connect = connect or websockets.connect

    @classmethod
    def from_settings(cls, settings: Settings) -> WebSocketRelayClient:
        return cls(settings.get_relay_urls(), timeout=settings.relay_timeout_seconds)

    async def _open(self, url: str) -> Any:
        return await asyncio.wait_for(self._connect(url), self.timeout)

    async def publish(self, message: SignedMessage) -> bool:
        """Send to every relay; True when at least one accepted it."""
        results = await asyncio.gather(
            *(self._publish_one(url, message) for url in self.urls),
            return_exceptions=True,
        )

        answered = [r for r in results if isinstance(r, bool)]
        for url, result in zip(self.urls, results):
            if isinstance(result, BaseException):
                if not isinstance(result, _TRANSPORT_ERRORS):
                    raise result
                logger.warning("relay.publish_failed", relay=url, message_id=message.id, error=str(result))
        if not answered:
            raise NetworkUnavailable("No relay reachable for publish", order_id=message.id)
        return any(answered)

    async def _publish_one(self, url: str, message: SignedMessage) -> bool:
        ws = await self._open(url)
        try:
            await ws.send(json.dumps(["EVENT", message.to_dict()], separators=(",", ":")))
            while True:
                frame = _parse_frame(await asyncio.wait_for(ws.recv(), self.timeout))
                if frame and frame[0] == "OK" and len(frame) >= 3 and frame[1] == message.id:
                    accepted = bool(frame[2])
                    if not accepted:
                        logger.info(
                            "relay.event_rejected",
                            relay=url,
                            message_id=message.id,
                            reason=frame[3] if len(frame) > 3 else "",
                        )
                    return accepted
        finally:
            await ws.close()

    async def fetch_by_id(self, message_id: str) -> SignedMessage | None:
        """Ask each relay in turn; first matching event wins."""
        reached = False
        for url in self.urls:
            try:
                found = await self._fetch_one(url, message_id)
            except _TRANSPORT_ERRORS as e:
                logger.warning("relay.fetch_failed", relay=url, message_id=message_id, error=str(e))
                continue
            reached = True
            if found is not None:
                return found

        if not reached:
            raise NetworkUnavailable("No relay reachable for fetch", order_id=message_id)
        return None

    async def _fetch_one(self, url: str, message_id: str) -> SignedMessage | None:
        sub_id = secrets.token_hex(8)
        ws = await self._open(url)
        try:
            await ws.send(json.dumps(["REQ", sub_id, {"ids": [message_id]}]))
            found = None
            while True:
                frame = _parse_frame(await asyncio.wait_for(ws.recv(), self.timeout))
                if not frame or len(frame) < 2 or frame[1] != sub_id:
                    continue
                if frame[0] == "EOSE" or frame[0] == "CLOSED":
                    break
                if frame[0] == "EVENT" and len(frame) >= 3:
                    message = _parse_event(frame[2], url)
                    if message is not None and message.id == message_id:
                        found = message
                        break
            await ws.send(json.dumps(["CLOSE", sub_id]))
            return found
        finally:
            await ws.close()

    async def subscribe(self, refers_to: str) -> QueueSubscription:
        """Open one REQ per relay and merge them, de-duplicated by event id."""
        sub_id = secrets.token_hex(8)
        request = json.dumps(["REQ", sub_id, receipt_filter(refers_to)])

        connections = []
        for url in self.urls:
            try:
                ws = await self._open(url)
                await ws.send(request)
            except _TRANSPORT_ERRORS as e:
                logger.warning("relay.subscribe_failed", relay=url, order_id=refers_to, error=str(e))
                continue
            connections.append((url, ws))

        if not connections:
            raise NetworkUnavailable("No relay reachable for subscribe", order_id=refers_to)

        readers: list[asyncio.Task[None]] = []

        async def close_all() -> None:
            for task in readers:
                task.cancel()
            for url, ws in connections:
                try:
                    await ws.send(json.dumps(["CLOSE", sub_id]))
                    await ws.close()
                except _TRANSPORT_ERRORS as e:
                    logger.debug("relay.close_failed", relay=url, error=str(e))

        subscription = QueueSubscription(refers_to, on_stop=close_all)
        seen: set[str] = set()
        open_readers = {"count": len(connections)}

        async def read(url: str, ws: Any) -> None:
            try:
                while True:
                    frame = _parse_frame(await ws.recv())
                    if not frame or len(frame) < 3 or frame[0] != "EVENT" or frame[1] != sub_id:
                        continue
                    message = _parse_event(frame[2], url)
                    if message is None or message.id in seen:
                        continue
                    if not matches_receipt_filter(message, refers_to):
                        continue
                    seen.add(message.id)
                    subscription.push(message)
            except _TRANSPORT_ERRORS as e:
                logger.warning("relay.subscription_lost", relay=url, order_id=refers_to, error=str(e))
            open_readers["count"] -= 1
            if open_readers["count"] == 0:
                subscription.fail(NetworkUnavailable("All relay connections lost", order_id=refers_to))

        for url, ws in connections:
            readers.append(asyncio.create_task(read(url, ws)))

        logger.info("relay.subscribed", order_id=refers_to, relays=[url for url, _ in connections])
        return subscription


def _parse_frame(raw: str | bytes) -> list[Any] | None:
    try:
        frame = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning("relay.bad_frame", frame=str(raw)[:200])
        return None
    return frame if isinstance(frame, list) and frame else None


def _parse_event(data: Any, url: str) -> SignedMessage | None:
    if not isinstance(data, dict):
        return None
    try:
        return message_from_dict(data)
    except ValidationError as e:
        logger.warning("relay.bad_event", relay=url, error=str(e))
        return None
