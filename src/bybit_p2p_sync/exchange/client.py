"""Authenticated Bybit P2P REST client.

Wraps the two P2P endpoints the sync service needs (order list and order
chat) plus the public server-time endpoint used to align request
timestamps with the exchange clock.
"""

import hashlib
import hmac
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

import httpx

from bybit_p2p_sync.config import MAINNET_BASE_URL
from bybit_p2p_sync.exchange.models import (
    RET_CODE_FIELDS,
    ChatMessage,
    ExchangeResult,
    first_present,
)

logger = logging.getLogger(__name__)

SERVER_TIME_PATH = "/v5/market/time"
ORDER_LIST_PATH = "/v5/p2p/order/simplifyList"
CHAT_MESSAGES_PATH = "/v5/p2p/order/message/listpage"

HEADER_API_KEY = "X-BAPI-API-KEY"
HEADER_SIGN = "X-BAPI-SIGN"
HEADER_TIMESTAMP = "X-BAPI-TIMESTAMP"
HEADER_RECV_WINDOW = "X-BAPI-RECV-WINDOW"

DEFAULT_RECV_WINDOW_MS = 5000
DEFAULT_TIMEOUT_SECONDS = 15.0
DEFAULT_CHAT_PAGE_SIZE = 100


class ExchangeClientError(Exception):
    """Base exception for exchange client errors."""


class ClockNotSyncedError(ExchangeClientError):
    """Raised when a signed call is attempted before sync_clock()."""


class ExchangeTransportError(ExchangeClientError):
    """Raised for network failures, HTTP error statuses and unreadable bodies."""


@dataclass(frozen=True)
class TradeFilters:
    """Optional filters for the order list endpoint."""

    token_id: str | None = None
    side: tuple[int, ...] | None = None
    status: tuple[int, ...] | None = None
    begin_time_ms: int | None = None
    end_time_ms: int | None = None

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {}
        if self.token_id:
            body["tokenId"] = self.token_id
        if self.side:
            body["side"] = list(self.side)
        if self.status:
            body["status"] = list(self.status)
        if self.begin_time_ms:
            body["beginTime"] = self.begin_time_ms
        if self.end_time_ms:
            body["endTime"] = self.end_time_ms
        return body


def sign_payload(api_secret: str, payload: str) -> str:
    """Hex HMAC-SHA256 of ``payload`` keyed by the API secret."""
    return hmac.new(api_secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()


class BybitP2PClient:
    """Signed client for the Bybit P2P API.

    The client must be clock-synchronized before any authenticated call:
    ``sync_clock()`` fetches the server time once and stores the offset that
    is added to every local timestamp used for signing.

    Example:
        >>> async with httpx.AsyncClient() as http:
        ...     client = BybitP2PClient("key", "secret", http_client=http)
        ...     await client.sync_clock()
        ...     result = await client.fetch_trade_page(1, 20)
    """

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        *,
        http_client: httpx.AsyncClient | None = None,
        base_url: str = MAINNET_BASE_URL,
        recv_window_ms: int = DEFAULT_RECV_WINDOW_MS,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the client.

        Args:
            api_key: Account API key.
            api_secret: Account API secret.
            http_client: Shared HTTP client. When omitted, the client owns one
                and closes it in aclose().
            base_url: REST host.
            recv_window_ms: Receive window sent with signed requests.
            timeout_seconds: Per-request timeout for an owned HTTP client.
            clock: Local wall clock in seconds.
        """
        self._api_key = api_key
        self._api_secret = api_secret
        self._base_url = base_url.rstrip("/")
        self._recv_window_ms = recv_window_ms
        self._clock = clock
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout_seconds)

        self._time_offset_ms = 0
        self._clock_synced = False

    @property
    def is_clock_synced(self) -> bool:
        return self._clock_synced

    @property
    def time_offset_ms(self) -> int:
        return self._time_offset_ms

    def _local_ms(self) -> int:
        return int(self._clock() * 1000)

    def timestamp_ms(self) -> int:
        """Local time shifted onto the exchange clock."""
        return self._local_ms() + self._time_offset_ms

    async def sync_clock(self) -> int:
        """Align request timestamps with the exchange clock.

        Returns:
            The offset in milliseconds (server minus local).

        Raises:
            ExchangeTransportError: If the server time cannot be fetched.
        """
        body = await self._request("GET", SERVER_TIME_PATH)
        server_ms = _server_time_ms(body)
        if server_ms is None:
            raise ExchangeTransportError("Unexpected server time response")

        self._time_offset_ms = server_ms - self._local_ms()
        self._clock_synced = True
        logger.info("Clock synchronized with exchange (offset=%dms)", self._time_offset_ms)
        return self._time_offset_ms

    def _require_clock(self) -> None:
        if not self._clock_synced:
            raise ClockNotSyncedError(
                "Clock synchronization required before signed requests; call sync_clock() first"
            )

    def _auth_headers(self, payload: str) -> dict[str, str]:
        timestamp = str(self.timestamp_ms())
        recv_window = str(self._recv_window_ms)
        signature = sign_payload(self._api_secret, timestamp + self._api_key + recv_window + payload)
        return {
            HEADER_API_KEY: self._api_key,
            HEADER_SIGN: signature,
            HEADER_TIMESTAMP: timestamp,
            HEADER_RECV_WINDOW: recv_window,
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
        signed: bool = False,
    ) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        headers: dict[str, str] = {}
        content: bytes | None = None

        if method == "GET":
            query = urlencode({k: v for k, v in (params or {}).items() if v is not None})
            if query:
                url = f"{url}?{query}"
            if signed:
                headers.update(self._auth_headers(query))
        else:
            body_text = json.dumps(body or {})
            content = body_text.encode("utf-8")
            headers["Content-Type"] = "application/json"
            if signed:
                headers.update(self._auth_headers(body_text))

        logger.debug("%s %s", method, url)
        try:
            response = await self._http.request(method, url, headers=headers, content=content)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise ExchangeTransportError(f"{method} {path} failed: {e}") from e
        except ValueError as e:
            raise ExchangeTransportError(f"{method} {path} returned invalid JSON: {e}") from e

        if not isinstance(data, dict):
            raise ExchangeTransportError(f"{method} {path} returned a non-object body")
        return data

    async def fetch_trade_page(
        self,
        page: int,
        page_size: int,
        filters: TradeFilters | None = None,
    ) -> ExchangeResult:
        """Fetch one page of the P2P order list.

        Returns:
            ExchangeResult with the parsed page, or success=False when the
            API rejected the request.

        Raises:
            ClockNotSyncedError: If sync_clock() has not completed.
            ExchangeTransportError: On network or HTTP failures.
        """
        self._require_clock()
        body: dict[str, Any] = {"page": page, "size": page_size}
        if filters is not None:
            body.update(filters.to_body())

        data = await self._request("POST", ORDER_LIST_PATH, body=body, signed=True)
        result = ExchangeResult.from_response(data, page=page, page_size=page_size)
        if not result.success:
            logger.warning(
                "Order list rejected (page=%d, code=%s): %s", page, result.ret_code, result.message
            )
        return result

    async def fetch_chat_messages(
        self, order_id: str, *, size: int = DEFAULT_CHAT_PAGE_SIZE
    ) -> list[ChatMessage]:
        """Fetch the chat transcript of an order.

        Chat may legitimately be missing, so an API rejection is logged and
        reported as an empty transcript.

        Raises:
            ClockNotSyncedError: If sync_clock() has not completed.
            ExchangeTransportError: On network or HTTP failures.
        """
        self._require_clock()
        data = await self._request(
            "POST",
            CHAT_MESSAGES_PATH,
            body={"orderId": order_id, "size": str(size)},
            signed=True,
        )

        code = first_present(data, RET_CODE_FIELDS)
        if str(code) != "0":
            logger.warning("Chat request for order %s rejected with code %s", order_id, code)
            return []

        messages: list[ChatMessage] = []
        for item in _chat_items(data.get("result")):
            if isinstance(item, dict):
                messages.append(ChatMessage.from_dict(item))
        return messages

    async def aclose(self) -> None:
        """Close the HTTP client if this instance owns it."""
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> "BybitP2PClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()


def _server_time_ms(body: dict[str, Any]) -> int | None:
    result = body.get("result")
    if isinstance(result, dict):
        time_nano = result.get("timeNano")
        if time_nano is not None:
            try:
                return int(time_nano) // 1_000_000
            except (TypeError, ValueError):
                pass
        time_second = result.get("timeSecond")
        if time_second is not None:
            try:
                return int(time_second) * 1000
            except (TypeError, ValueError):
                pass
    top_level = body.get("time")
    if top_level is not None:
        try:
            return int(top_level)
        except (TypeError, ValueError):
            return None
    return None


def _chat_items(result: Any) -> list[Any]:
    if isinstance(result, list):
        return result
    if isinstance(result, dict):
        for key in ("result", "items"):
            value = result.get(key)
            if isinstance(value, list):
                return value
    return []
