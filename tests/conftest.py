"""Pytest configuration and fixtures."""

from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from bybit_p2p_sync.exchange.client import BybitP2PClient
from bybit_p2p_sync.exchange.models import ExchangeResult
from bybit_p2p_sync.storage.database import DatabaseManager
from bybit_p2p_sync.storage.repos import AccountDTO, AccountKind, AccountRepository
from bybit_p2p_sync.storage.store import DatabaseSyncStore

PayloadFactory = Callable[..., dict[str, Any]]
PageFactory = Callable[..., ExchangeResult]


@pytest.fixture
def make_payload() -> PayloadFactory:
    """Build a raw order record as returned by the order list endpoint."""

    def _make(
        order_id: str,
        *,
        side: Any = 1,
        status: Any = 50,
        price: Any = "95.50",
        amount: Any = "100",
        token: Any = "USDT",
        nick: Any = "alice",
        create_date: Any = "1700000000000",
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": order_id,
            "side": side,
            "status": status,
            "tokenId": token,
            "price": price,
            "amount": amount,
            "targetNickName": nick,
            "createDate": create_date,
        }
        return {k: v for k, v in payload.items() if v is not None}

    return _make


@pytest.fixture
def make_page() -> PageFactory:
    """Build a successful order list page result."""

    def _make(
        items: list[dict[str, Any]],
        *,
        page: int = 1,
        page_size: int = 20,
        count: int | None = None,
    ) -> ExchangeResult:
        body = {
            "retCode": 0,
            "retMsg": "SUCCESS",
            "result": {"count": count if count is not None else len(items), "items": items},
        }
        return ExchangeResult.from_response(body, page=page, page_size=page_size)

    return _make


@pytest.fixture
def api_error() -> ExchangeResult:
    return ExchangeResult.from_response(
        {"retCode": 10002, "retMsg": "invalid request"}, page=1, page_size=20
    )


@pytest.fixture
def no_sleep() -> AsyncMock:
    """Replacement for asyncio.sleep that returns immediately."""
    return AsyncMock()


@pytest.fixture
def mock_client() -> MagicMock:
    """Exchange client double with awaitable methods."""
    client = MagicMock(spec=BybitP2PClient)
    client.sync_clock = AsyncMock(return_value=0)
    client.timestamp_ms = MagicMock(return_value=1_700_000_000_000)
    client.fetch_trade_page = AsyncMock()
    client.fetch_chat_messages = AsyncMock(return_value=[])
    client.aclose = AsyncMock()
    return client


@pytest.fixture
async def db_manager():
    """In-memory SQLite database with the schema created."""
    db = DatabaseManager("sqlite+aiosqlite:///:memory:")
    await db.init_schema_async()
    yield db
    await db.dispose_async()


@pytest.fixture
def store(db_manager: DatabaseManager) -> DatabaseSyncStore:
    return DatabaseSyncStore(db_manager)


@pytest.fixture
def make_account(db_manager: DatabaseManager):
    """Insert an account and return its DTO."""

    async def _make(
        *,
        kind: AccountKind = AccountKind.USER,
        api_key: str | None = "key",
        api_secret: str | None = "secret",
        name: str | None = None,
        is_active: bool = True,
    ) -> AccountDTO:
        async with db_manager.get_async_session() as session:
            return await AccountRepository(session).insert(
                kind=kind,
                api_key=api_key,
                api_secret=api_secret,
                name=name,
                is_active=is_active,
            )

    return _make
