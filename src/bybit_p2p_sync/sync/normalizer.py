"""Transaction normalization.

Maps raw exchange orders onto the canonical stored transaction shape and
decides, per account kind, which orders are worth keeping at all.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from bybit_p2p_sync.exchange.models import OrderStatus, RawTrade, TradeSide
from bybit_p2p_sync.storage.repos import AccountKind, TransactionDTO

logger = logging.getLogger(__name__)

DEFAULT_COUNTERPARTY = "Unknown"
DEFAULT_ASSET = "USDT"
UNKNOWN_LABEL = "Unknown"
COMPLETED_LABEL = "Completed"

STATUS_LABELS: dict[int, str] = {
    OrderStatus.WAITING_FOR_CHAIN: "Waiting for chain",
    OrderStatus.WAITING_FOR_PAYMENT: "Waiting for payment",
    OrderStatus.WAITING_FOR_RELEASE: "Waiting for release",
    OrderStatus.APPEALING: "Appealing",
    OrderStatus.CANCELLED: "Cancelled",
    OrderStatus.COMPLETED: COMPLETED_LABEL,
    OrderStatus.PAYING: "Paying",
    OrderStatus.PAYMENT_FAILED: "Payment failed",
    OrderStatus.EXCEPTION_CANCELLED: "Exception cancelled",
    OrderStatus.WAITING_SELECTION: "Waiting selection",
    OrderStatus.OBJECTING: "Objecting",
    OrderStatus.WAITING_OBJECTION: "Waiting objection",
}


def status_label(code: int | None) -> str:
    """Human-readable status for an order status code."""
    if code is None:
        return UNKNOWN_LABEL
    return STATUS_LABELS.get(code, UNKNOWN_LABEL)


def side_label(side: TradeSide | None) -> str:
    return side.label if side is not None else UNKNOWN_LABEL


def parse_decimal(value: Any) -> Decimal:
    """Parse a monetary value; missing or invalid input becomes 0."""
    if value is None or value == "":
        return Decimal("0")
    try:
        parsed = Decimal(str(value).strip())
    except InvalidOperation:
        return Decimal("0")
    if not parsed.is_finite():
        return Decimal("0")
    return parsed


def parse_epoch_ms(value: Any, *, now: Callable[[], datetime]) -> datetime:
    """Parse an epoch-millisecond timestamp, falling back to ``now()``."""
    try:
        millis = int(str(value).strip())
        if millis <= 0:
            raise ValueError(f"non-positive timestamp {millis}")
        return datetime.fromtimestamp(millis / 1000, tz=UTC)
    except (TypeError, ValueError, OverflowError, OSError) as e:
        fallback = now()
        logger.warning("Unparseable createDate %r (%s); using %s", value, e, fallback.isoformat())
        return fallback


@dataclass(frozen=True)
class AccountPolicy:
    """Which orders an account keeps, and which codes count as completed.

    User accounts keep completed sells only. Cabinet accounts keep both
    sides and may optionally count appealing orders as completed.
    """

    sides: frozenset[TradeSide]
    completed_codes: frozenset[int]

    @classmethod
    def for_account(cls, kind: AccountKind, *, appealing_as_completed: bool = False) -> AccountPolicy:
        if kind is AccountKind.CABINET:
            codes = {int(OrderStatus.COMPLETED)}
            if appealing_as_completed:
                codes.add(int(OrderStatus.APPEALING))
            return cls(
                sides=frozenset({TradeSide.BUY, TradeSide.SELL}),
                completed_codes=frozenset(codes),
            )
        return cls(
            sides=frozenset({TradeSide.SELL}),
            completed_codes=frozenset({int(OrderStatus.COMPLETED)}),
        )

    @property
    def status_filter(self) -> tuple[int, ...]:
        """Status codes to request from the order list endpoint."""
        return tuple(sorted(self.completed_codes))

    def accepts(self, trade: RawTrade) -> bool:
        return trade.side in self.sides and trade.status_code in self.completed_codes

    def status_text(self, code: int | None) -> str:
        if code is not None and code in self.completed_codes:
            return COMPLETED_LABEL
        return status_label(code)


def normalize_trade(
    trade: RawTrade,
    *,
    account_id: int,
    policy: AccountPolicy,
    now: Callable[[], datetime] | None = None,
) -> TransactionDTO:
    """Map a raw order onto a new (unsaved) transaction.

    The total price is always recomputed as amount times unit price.
    """
    clock = now or (lambda: datetime.now(UTC))
    amount = parse_decimal(trade.amount)
    unit_price = parse_decimal(trade.price)

    return TransactionDTO(
        order_no=trade.order_no,
        account_id=account_id,
        counterparty=trade.counterparty or DEFAULT_COUNTERPARTY,
        status=policy.status_text(trade.status_code),
        type=side_label(trade.side),
        asset=trade.token or DEFAULT_ASSET,
        amount=amount,
        unit_price=unit_price,
        total_price=amount * unit_price,
        date_time=parse_epoch_ms(trade.create_date, now=clock),
        raw_payload=dict(trade.payload),
    )
