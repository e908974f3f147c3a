"""
LNURL-pay invoice service (LUD-06 / LUD-16 with NIP-57 zaps).

A lightning address ``user@domain`` resolves to

    GET https://domain/.well-known/lnurlp/user
    -> {"tag": "payRequest", "callback": ..., "minSendable": ..., "maxSendable": ...,
        "allowsNostr": true, "nostrPubkey": ...}

Invoices come from the callback:

    GET <callback>?amount=<msat>&nostr=<zap request json>
    -> {"pr": "lnbc..."}

``nostrPubkey`` is the key the service signs zap receipts with, i.e. the
only author whose receipts count toward an order.
"""

from __future__ import annotations

import json
from typing import Any, Optional

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from zap_checkout.config import Settings
from zap_checkout.domain.errors import InvoiceServiceFailure
from zap_checkout.domain.messages import SignedMessage

logger = structlog.get_logger(__name__)


class PayRequestParams(BaseModel):
    """Resolved ``payRequest`` metadata."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    tag: str = "payRequest"
    callback: str
    min_sendable: int = Field(alias="minSendable", ge=0)
    max_sendable: int = Field(alias="maxSendable", ge=0)
    allows_nostr: bool = Field(default=False, alias="allowsNostr")
    nostr_pubkey: Optional[str] = Field(default=None, alias="nostrPubkey")


def well_known_url(lightning_address: str) -> str:
    """``user@domain`` -> ``https://domain/.well-known/lnurlp/user``."""
    user, sep, domain = lightning_address.strip().partition("@")
    if not sep or not user or not domain:
        raise ValueError(f"Invalid lightning address: {lightning_address!r}")
    scheme = "http" if domain.endswith(".onion") or domain.startswith("localhost") else "https"
    return f"{scheme}://{domain}/.well-known/lnurlp/{user}"


class LnurlPayService:
    """``InvoiceService`` backed by a lightning address."""

    def __init__(
        self,
        lightning_address: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ):
        self.lightning_address = lightning_address
        self.url = well_known_url(lightning_address)
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._params: PayRequestParams | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> LnurlPayService:
        if not settings.lightning_address:
            raise ValueError("ZAP_CHECKOUT_LIGHTNING_ADDRESS is not set")
        return cls(settings.lightning_address, timeout=settings.http_timeout_seconds)

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def resolve(self) -> PayRequestParams:
        """Fetch (once) and cache the pay request metadata."""
        if self._params is not None:
            return self._params

        data = await self._get_json(self.url)
        try:
            params = PayRequestParams.model_validate(data)
        except ValidationError as e:
            raise InvoiceServiceFailure(f"Invalid payRequest from {self.url}: {e}") from e

        if params.tag != "payRequest":
            raise InvoiceServiceFailure(f"Unexpected LNURL tag {params.tag!r}")

        logger.info(
            "lnurl.resolved",
            lightning_address=self.lightning_address,
            min_sendable=params.min_sendable,
            max_sendable=params.max_sendable,
            allows_nostr=params.allows_nostr,
        )
        self._params = params
        return params

    async def recipient_pubkey(self) -> str:
        params = await self.resolve()
        if not params.allows_nostr or not params.nostr_pubkey:
            raise InvoiceServiceFailure(f"{self.lightning_address} does not support zaps")
        return params.nostr_pubkey.lower()

    async def request_invoice(self, amount_msat: int, zap_request: SignedMessage) -> str:
        """
        Exchange a zap request for a bolt11 invoice.

        Raises:
            InvoiceServiceFailure: amount out of bounds, service error, bad response
        """
        params = await self.resolve()
        if not params.min_sendable <= amount_msat <= params.max_sendable:
            raise InvoiceServiceFailure(
                f"Amount {amount_msat} msat outside [{params.min_sendable}, {params.max_sendable}]"
            )

        data = await self._get_json(
            params.callback,
            params={"amount": str(amount_msat), "nostr": zap_request.to_json()},
        )

        invoice = data.get("pr")
        if not isinstance(invoice, str) or not invoice:
            logger.error("lnurl.invalid_callback_response", response=data)
            raise InvoiceServiceFailure("Callback response has no invoice")
        return invoice

    async def _get_json(self, url: str, params: dict[str, str] | None = None) -> dict[str, Any]:
        try:
            response = await self.client.get(url, params=params)
            response.raise_for_status()
            data = response.json()

        except httpx.ConnectError as e:
            logger.error("lnurl.connect_failed", url=url, error=str(e))
            raise InvoiceServiceFailure(f"Cannot connect to {url}") from e

        except httpx.TimeoutException as e:
            logger.error("lnurl.timeout", url=url, timeout=self.timeout)
            raise InvoiceServiceFailure(f"Request to {url} timed out after {self.timeout}s") from e

        except httpx.HTTPStatusError as e:
            logger.error(
                "lnurl.http_error",
                url=url,
                status_code=e.response.status_code,
                body=e.response.text[:200],
            )
            raise InvoiceServiceFailure(f"LNURL server returned {e.response.status_code}") from e

        except httpx.HTTPError as e:
            logger.error("lnurl.request_failed", url=url, error=str(e))
            raise InvoiceServiceFailure(f"Request to {url} failed: {e}") from e

        except json.JSONDecodeError as e:
            raise InvoiceServiceFailure(f"LNURL server returned invalid JSON: {e}") from e

        if not isinstance(data, dict):
            raise InvoiceServiceFailure("LNURL response must be a JSON object")
        if str(data.get("status", "")).upper() == "ERROR":
            reason = data.get("reason", "unknown error")
            logger.error("lnurl.service_error", url=url, reason=reason)
            raise InvoiceServiceFailure(f"LNURL error: {reason}")
        return data
