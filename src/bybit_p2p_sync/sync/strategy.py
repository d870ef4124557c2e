"""Trade fetch strategy with ordered query fallback.

The order list endpoint frequently returns nothing for windows that do
contain trades, so completed trades are fetched through an ordered chain of
query shapes. The first query to produce a non-empty page wins the pass;
results are never merged across queries.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from decimal import Decimal

from bybit_p2p_sync.config import SyncSettings
from bybit_p2p_sync.exchange.client import (
    BybitP2PClient,
    ExchangeTransportError,
    TradeFilters,
)
from bybit_p2p_sync.exchange.models import RawTrade
from bybit_p2p_sync.sync.normalizer import DEFAULT_ASSET, parse_decimal, side_label

logger = logging.getLogger(__name__)

MS_PER_DAY = 86_400_000


@dataclass(frozen=True)
class FetchQuery:
    """One query shape in the fallback chain."""

    name: str
    page_size: int
    lookback_days: int | None = None

    def filters(self, *, status: tuple[int, ...], now_ms: int) -> TradeFilters:
        if self.lookback_days is None:
            return TradeFilters(status=status or None)
        return TradeFilters(
            status=status or None,
            begin_time_ms=now_ms - self.lookback_days * MS_PER_DAY,
            end_time_ms=now_ms,
        )


@dataclass
class TradeTotals:
    count: int = 0
    fiat_volume: Decimal = Decimal("0")
    token_volume: Decimal = Decimal("0")

    def add(self, amount: Decimal, price: Decimal) -> None:
        self.count += 1
        self.token_volume += amount
        self.fiat_volume += amount * price


@dataclass
class FetchSummary:
    """Per-side and per-asset totals over fetched trades."""

    by_side: dict[str, TradeTotals] = field(default_factory=dict)
    by_asset: dict[str, dict[str, TradeTotals]] = field(default_factory=dict)

    @classmethod
    def from_trades(cls, trades: Sequence[RawTrade]) -> FetchSummary:
        summary = cls()
        for trade in trades:
            summary.add(trade)
        return summary

    def add(self, trade: RawTrade) -> None:
        side = side_label(trade.side)
        asset = trade.token or DEFAULT_ASSET
        amount = parse_decimal(trade.amount)
        price = parse_decimal(trade.price)
        self.by_side.setdefault(side, TradeTotals()).add(amount, price)
        self.by_asset.setdefault(asset, {}).setdefault(side, TradeTotals()).add(amount, price)

    def describe(self) -> str:
        if not self.by_side:
            return "no trades"
        parts = []
        for asset in sorted(self.by_asset):
            for side in sorted(self.by_asset[asset]):
                totals = self.by_asset[asset][side]
                parts.append(
                    f"{asset} {side}: {totals.count} trades, "
                    f"{totals.token_volume} {asset}, fiat {totals.fiat_volume}"
                )
        return "; ".join(parts)


@dataclass
class FetchResult:
    """Outcome of one fetch pass for an account.

    ``success`` is False when every query came back empty or failed, which
    callers treat as "no new transactions" rather than an error.
    """

    success: bool
    trades: list[RawTrade] = field(default_factory=list)
    strategy: str | None = None
    message: str | None = None
    summary: FetchSummary = field(default_factory=FetchSummary)


def default_queries(settings: SyncSettings) -> list[FetchQuery]:
    """The fallback chain in the order it is tried."""
    queries = [
        FetchQuery("windowed", settings.windowed_page_size, settings.lookback_days),
        FetchQuery("unwindowed", settings.unwindowed_page_size),
    ]
    if settings.minimal_strategy_enabled:
        queries.append(FetchQuery("minimal", settings.minimal_page_size))
    return queries


class TradeFetcher:
    """Runs the query fallback chain against one account's client.

    Pages within a query are fetched strictly in sequence with a fixed
    pause between requests. A page that is empty, rejected by the API, or
    lost to a transport error ends that query immediately.
    """

    def __init__(
        self,
        queries: Sequence[FetchQuery],
        *,
        max_pages: int = 10,
        page_delay_seconds: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if not queries:
            raise ValueError("At least one fetch query is required")
        self.queries = list(queries)
        self.max_pages = max_pages
        self.page_delay_seconds = page_delay_seconds
        self._sleep = sleep
        self._requests_made = 0

    @classmethod
    def from_settings(
        cls,
        settings: SyncSettings,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> TradeFetcher:
        return cls(
            default_queries(settings),
            max_pages=settings.max_pages,
            page_delay_seconds=settings.page_delay_seconds,
            sleep=sleep,
        )

    async def fetch(self, client: BybitP2PClient, *, status: tuple[int, ...] = ()) -> FetchResult:
        """Fetch trades, trying each query until one yields data."""
        self._requests_made = 0
        for query in self.queries:
            trades = await self._run_query(client, query, status)
            if trades:
                summary = FetchSummary.from_trades(trades)
                logger.info(
                    "Fetched %d trades with '%s' query (%s)",
                    len(trades),
                    query.name,
                    summary.describe(),
                )
                return FetchResult(
                    success=True,
                    trades=trades,
                    strategy=query.name,
                    summary=summary,
                )
            logger.info("Query '%s' returned no trades, falling back", query.name)

        return FetchResult(success=False, message="No trades returned by any query")

    async def _throttle(self) -> None:
        if self._requests_made and self.page_delay_seconds > 0:
            await self._sleep(self.page_delay_seconds)
        self._requests_made += 1

    async def _run_query(
        self,
        client: BybitP2PClient,
        query: FetchQuery,
        status: tuple[int, ...],
    ) -> list[RawTrade]:
        filters = query.filters(status=status, now_ms=client.timestamp_ms())
        collected: list[RawTrade] = []

        for page_number in range(1, self.max_pages + 1):
            await self._throttle()
            try:
                result = await client.fetch_trade_page(page_number, query.page_size, filters)
            except ExchangeTransportError as e:
                logger.warning(
                    "Query '%s' page %d failed: %s", query.name, page_number, e
                )
                break

            if not result.success or result.page is None:
                logger.warning(
                    "Query '%s' page %d rejected: %s", query.name, page_number, result.message
                )
                break

            page = result.page
            if page.is_empty:
                logger.debug("Query '%s' page %d is empty", query.name, page_number)
                break

            collected.extend(page.trades)
            logger.debug(
                "Query '%s' page %d: %d trades (total %d/%d)",
                query.name,
                page_number,
                len(page.trades),
                len(collected),
                page.total_count,
            )

            if len(page.trades) < query.page_size:
                break
            if page.total_count and len(collected) >= page.total_count:
                break

        return collected
