"""Data models for the exchange adapter.

Bybit's P2P endpoints are not consistent about field names across
response variants, so every logical field is read through an explicit
priority list of candidate keys.
"""

import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any

logger = logging.getLogger(__name__)

ORDER_ID_FIELDS = ("id", "orderId")
SIDE_FIELDS = ("side",)
STATUS_FIELDS = ("status", "orderStatus")
TOKEN_FIELDS = ("tokenId", "tokenName", "coin")
PRICE_FIELDS = ("price", "unitPrice")
AMOUNT_FIELDS = ("amount", "quantity")
COUNTERPARTY_FIELDS = ("targetNickName", "counterpartyNickName", "nickName")
CREATE_DATE_FIELDS = ("createDate", "createTime")

RET_CODE_FIELDS = ("retCode", "ret_code")
RET_MSG_FIELDS = ("retMsg", "ret_msg")

PLAIN_TEXT_CONTENT_TYPE = "str"


class TradeSide(IntEnum):
    """Order side as encoded by the P2P API."""

    BUY = 0
    SELL = 1

    @property
    def label(self) -> str:
        return "Buy" if self is TradeSide.BUY else "Sell"


class OrderStatus(IntEnum):
    """P2P order status codes."""

    WAITING_FOR_CHAIN = 5
    WAITING_FOR_PAYMENT = 10
    WAITING_FOR_RELEASE = 20
    APPEALING = 30
    CANCELLED = 40
    COMPLETED = 50
    PAYING = 60
    PAYMENT_FAILED = 70
    EXCEPTION_CANCELLED = 80
    WAITING_SELECTION = 90
    OBJECTING = 100
    WAITING_OBJECTION = 110


def first_present(data: dict[str, Any], keys: tuple[str, ...]) -> Any:
    """Return the value of the first key that is present and not empty."""
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return value
    return None


def _parse_int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def _parse_side(value: Any) -> TradeSide | None:
    if isinstance(value, str):
        text = value.strip().upper()
        if text == "BUY":
            return TradeSide.BUY
        if text == "SELL":
            return TradeSide.SELL
    code = _parse_int(value)
    if code is None:
        return None
    try:
        return TradeSide(code)
    except ValueError:
        return None


@dataclass(frozen=True)
class RawTrade:
    """One P2P order as returned by the trade list endpoint.

    Monetary and date fields are kept as the raw upstream values; parsing
    and defaulting them is the normalizer's job.
    """

    order_no: str
    side: TradeSide | None
    status_code: int | None
    token: str | None
    price: Any
    amount: Any
    counterparty: str | None
    create_date: Any
    payload: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "RawTrade | None":
        """Parse a raw order record.

        Returns None (after logging) when no identifier field is present.
        """
        order_no = first_present(data, ORDER_ID_FIELDS)
        if order_no is None:
            logger.warning("Dropping trade without identifier (keys: %s)", ", ".join(sorted(data)))
            return None

        token = first_present(data, TOKEN_FIELDS)
        counterparty = first_present(data, COUNTERPARTY_FIELDS)
        return cls(
            order_no=str(order_no),
            side=_parse_side(first_present(data, SIDE_FIELDS)),
            status_code=_parse_int(first_present(data, STATUS_FIELDS)),
            token=str(token) if token is not None else None,
            price=first_present(data, PRICE_FIELDS),
            amount=first_present(data, AMOUNT_FIELDS),
            counterparty=str(counterparty) if counterparty is not None else None,
            create_date=first_present(data, CREATE_DATE_FIELDS),
            payload=dict(data),
        )


@dataclass(frozen=True)
class TradePage:
    """A single page of the order list."""

    page: int
    page_size: int
    total_count: int
    trades: tuple[RawTrade, ...]

    @classmethod
    def from_result(cls, result: Any, *, page: int, page_size: int) -> "TradePage":
        if not isinstance(result, dict):
            result = {}
        items = result.get("items") or []
        trades: list[RawTrade] = []
        for item in items:
            if not isinstance(item, dict):
                logger.warning("Skipping non-object trade item on page %d", page)
                continue
            trade = RawTrade.from_payload(item)
            if trade is not None:
                trades.append(trade)
        total = _parse_int(result.get("count")) or 0
        return cls(page=page, page_size=page_size, total_count=total, trades=tuple(trades))

    @property
    def is_empty(self) -> bool:
        return not self.trades


@dataclass(frozen=True)
class ChatMessage:
    """One message from an order's chat transcript."""

    message: str
    content_type: str
    message_id: str | None = None
    user_id: str | None = None
    create_date: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChatMessage":
        raw_id = data.get("id")
        raw_user = data.get("userId")
        raw_date = data.get("createDate")
        return cls(
            message=str(data.get("message") or ""),
            content_type=str(data.get("contentType") or ""),
            message_id=str(raw_id) if raw_id is not None else None,
            user_id=str(raw_user) if raw_user is not None else None,
            create_date=str(raw_date) if raw_date is not None else None,
        )

    @property
    def is_plain_text(self) -> bool:
        return self.content_type == PLAIN_TEXT_CONTENT_TYPE and bool(self.message)


@dataclass(frozen=True)
class ExchangeResult:
    """Outcome of an authenticated call that reached the API.

    ``success`` is False when the API answered with a non-zero result code;
    transport failures are raised instead.
    """

    success: bool
    message: str | None = None
    ret_code: int | None = None
    page: TradePage | None = None

    @classmethod
    def from_response(
        cls, body: dict[str, Any], *, page: int, page_size: int
    ) -> "ExchangeResult":
        code = _parse_int(first_present(body, RET_CODE_FIELDS))
        message = first_present(body, RET_MSG_FIELDS)
        if code != 0:
            return cls(
                success=False,
                message=str(message) if message else f"API returned code {code}",
                ret_code=code,
            )
        return cls(
            success=True,
            message=str(message) if message else None,
            ret_code=code,
            page=TradePage.from_result(body.get("result"), page=page, page_size=page_size),
        )
