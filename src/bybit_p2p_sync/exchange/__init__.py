"""Exchange adapter layer - Signed access to the Bybit P2P API."""

from bybit_p2p_sync.exchange.client import (
    BybitP2PClient,
    ClockNotSyncedError,
    ExchangeClientError,
    ExchangeTransportError,
    TradeFilters,
)
from bybit_p2p_sync.exchange.models import (
    ChatMessage,
    ExchangeResult,
    OrderStatus,
    RawTrade,
    TradePage,
    TradeSide,
)

__all__ = [
    "BybitP2PClient",
    "ChatMessage",
    "ClockNotSyncedError",
    "ExchangeClientError",
    "ExchangeResult",
    "ExchangeTransportError",
    "OrderStatus",
    "RawTrade",
    "TradeFilters",
    "TradePage",
    "TradeSide",
]
