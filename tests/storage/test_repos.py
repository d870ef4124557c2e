"""Tests for storage repositories."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from bybit_p2p_sync.storage.models import Base
from bybit_p2p_sync.storage.repos import (
    AccountDTO,
    AccountKind,
    AccountRepository,
    TransactionDTO,
    TransactionRepository,
)

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
async def async_engine():
    """Create an async SQLite engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def async_session(async_engine) -> AsyncSession:
    """Create an async session for testing."""
    session_factory = async_sessionmaker(bind=async_engine, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
async def account(async_session) -> AccountDTO:
    return await AccountRepository(async_session).insert(
        kind=AccountKind.USER, api_key="key", api_secret="secret", name="main"
    )


def make_transaction(
    order_no: str,
    account_id: int,
    *,
    date_time: datetime | None = None,
    status: str = "Completed",
) -> TransactionDTO:
    return TransactionDTO(
        order_no=order_no,
        account_id=account_id,
        counterparty="alice",
        status=status,
        type="Sell",
        asset="USDT",
        amount=Decimal("100"),
        unit_price=Decimal("95.5"),
        total_price=Decimal("9550"),
        date_time=date_time or datetime(2026, 1, 1, tzinfo=UTC),
        raw_payload={"id": order_no, "side": 1},
    )


# ============================================================================
# AccountRepository
# ============================================================================


class TestAccountRepository:
    @pytest.mark.asyncio
    async def test_insert_and_get(self, async_session, account) -> None:
        repo = AccountRepository(async_session)

        fetched = await repo.get(account.id)

        assert fetched is not None
        assert fetched.kind is AccountKind.USER
        assert fetched.name == "main"
        assert fetched.has_credentials
        assert fetched.last_sync_status is None

    @pytest.mark.asyncio
    async def test_get_missing(self, async_session) -> None:
        assert await AccountRepository(async_session).get(12345) is None

    @pytest.mark.asyncio
    async def test_list_with_credentials(self, async_session) -> None:
        repo = AccountRepository(async_session)
        user = await repo.insert(kind=AccountKind.USER, api_key="k1", api_secret="s1")
        cabinet = await repo.insert(kind=AccountKind.CABINET, api_key="k2", api_secret="s2")
        await repo.insert(kind=AccountKind.USER, api_key=None, api_secret="s3")
        await repo.insert(kind=AccountKind.USER, api_key="k4", api_secret="")
        await repo.insert(kind=AccountKind.USER, api_key="k5", api_secret="s5", is_active=False)

        accounts = await repo.list_with_credentials()

        assert [a.id for a in accounts] == [user.id, cabinet.id]
        assert accounts[1].kind is AccountKind.CABINET

    @pytest.mark.asyncio
    async def test_update_sync_status(self, async_session, account) -> None:
        repo = AccountRepository(async_session)
        synced_at = datetime(2026, 3, 1, 8, 30, tzinfo=UTC)

        await repo.update_sync_status(account.id, status="Success: saved 3 new transactions", synced_at=synced_at)

        fetched = await repo.get(account.id)
        assert fetched is not None
        assert fetched.last_sync_status == "Success: saved 3 new transactions"
        assert fetched.last_sync_at is not None
        assert fetched.last_sync_at.replace(tzinfo=UTC) == synced_at


class TestAccountDTO:
    @pytest.mark.parametrize(
        ("api_key", "api_secret", "expected"),
        [
            ("k", "s", True),
            (None, "s", False),
            ("k", None, False),
            ("", "s", False),
            ("k", "   ", False),
        ],
    )
    def test_has_credentials(self, api_key, api_secret, expected) -> None:
        dto = AccountDTO(id=1, kind=AccountKind.USER, api_key=api_key, api_secret=api_secret)
        assert dto.has_credentials is expected

    def test_inactive_cannot_be_synced(self) -> None:
        dto = AccountDTO(id=1, kind=AccountKind.USER, api_key="k", api_secret="s", is_active=False)
        assert dto.has_credentials
        assert not dto.can_be_synced


# ============================================================================
# TransactionRepository
# ============================================================================


class TestTransactionRepository:
    @pytest.mark.asyncio
    async def test_insert_and_lookup(self, async_session, account) -> None:
        repo = TransactionRepository(async_session)

        inserted = await repo.insert(make_transaction("o1", account.id))

        assert inserted.id is not None
        assert inserted.created_at is not None
        fetched = await repo.get_by_order("o1", account.id)
        assert fetched is not None
        assert fetched.id == inserted.id
        assert fetched.amount == Decimal("100")
        assert fetched.total_price == Decimal("9550")
        assert fetched.raw_payload == {"id": "o1", "side": 1}
        assert fetched.enriched is False
        assert fetched.extracted_phones == []

    @pytest.mark.asyncio
    async def test_lookup_is_scoped_to_account(self, async_session, account) -> None:
        other = await AccountRepository(async_session).insert(
            kind=AccountKind.CABINET, api_key="k", api_secret="s"
        )
        repo = TransactionRepository(async_session)
        await repo.insert(make_transaction("o1", account.id))

        assert await repo.get_by_order("o1", other.id) is None
        await repo.insert(make_transaction("o1", other.id))
        assert await repo.get_by_order("o1", other.id) is not None

    @pytest.mark.asyncio
    async def test_duplicate_order_rejected(self, async_session, account) -> None:
        repo = TransactionRepository(async_session)
        await repo.insert(make_transaction("o1", account.id))

        with pytest.raises(IntegrityError):
            await repo.insert(make_transaction("o1", account.id))

    @pytest.mark.asyncio
    async def test_update_status(self, async_session, account) -> None:
        repo = TransactionRepository(async_session)
        inserted = await repo.insert(make_transaction("o1", account.id, status="Appealing"))
        assert inserted.id is not None

        await repo.update_status(inserted.id, "Completed")

        fetched = await repo.get(inserted.id)
        assert fetched is not None
        assert fetched.status == "Completed"

    @pytest.mark.asyncio
    async def test_list_unenriched_order_and_limit(self, async_session, account) -> None:
        other = await AccountRepository(async_session).insert(
            kind=AccountKind.USER, api_key="k", api_secret="s"
        )
        repo = TransactionRepository(async_session)
        base = datetime(2026, 1, 1, tzinfo=UTC)
        await repo.insert(make_transaction("late", account.id, date_time=base + timedelta(days=2)))
        await repo.insert(make_transaction("other", other.id, date_time=base))
        await repo.insert(make_transaction("early", account.id, date_time=base))

        pending = await repo.list_unenriched()
        limited = await repo.list_unenriched(limit=2)

        assert [t.order_no for t in pending] == ["early", "late", "other"]
        assert [t.order_no for t in limited] == ["early", "late"]

    @pytest.mark.asyncio
    async def test_list_unenriched_skips_unusable_accounts(self, async_session, account) -> None:
        accounts = AccountRepository(async_session)
        keyless = await accounts.insert(kind=AccountKind.USER, api_key=None, api_secret="s")
        blank = await accounts.insert(kind=AccountKind.USER, api_key="k", api_secret="")
        inactive = await accounts.insert(
            kind=AccountKind.USER, api_key="k", api_secret="s", is_active=False
        )
        repo = TransactionRepository(async_session)
        await repo.insert(make_transaction("keyless", keyless.id))
        await repo.insert(make_transaction("blank", blank.id))
        await repo.insert(make_transaction("inactive", inactive.id))
        await repo.insert(make_transaction("live", account.id))

        pending = await repo.list_unenriched(limit=1)

        assert [t.order_no for t in pending] == ["live"]

    @pytest.mark.asyncio
    async def test_list_unenriched_failed_rows_last(self, async_session, account) -> None:
        repo = TransactionRepository(async_session)
        base = datetime(2026, 1, 1, tzinfo=UTC)
        failing = await repo.insert(make_transaction("failing", account.id, date_time=base))
        await repo.insert(make_transaction("fresh", account.id, date_time=base + timedelta(days=1)))
        assert failing.id is not None
        await repo.update_enrichment(failing.id, phones=[], enriched=False, error="HTTP 503")

        pending = await repo.list_unenriched()
        limited = await repo.list_unenriched(limit=1)

        assert [t.order_no for t in pending] == ["fresh", "failing"]
        assert [t.order_no for t in limited] == ["fresh"]

    @pytest.mark.asyncio
    async def test_update_enrichment(self, async_session, account) -> None:
        repo = TransactionRepository(async_session)
        inserted = await repo.insert(make_transaction("o1", account.id))
        assert inserted.id is not None

        await repo.update_enrichment(inserted.id, phones=[], enriched=False, error="timeout")
        failed = await repo.get(inserted.id)
        assert failed is not None
        assert failed.last_enrichment_error == "timeout"
        assert [t.order_no for t in await repo.list_unenriched()] == ["o1"]

        await repo.update_enrichment(
            inserted.id, phones=["+79991234567"], enriched=True, error=None
        )
        done = await repo.get(inserted.id)
        assert done is not None
        assert done.enriched is True
        assert done.extracted_phones == ["+79991234567"]
        assert done.last_enrichment_error is None
        assert await repo.list_unenriched() == []
