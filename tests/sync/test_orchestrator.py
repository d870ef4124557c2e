"""Tests for the trade sync orchestrator."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import func, select

from bybit_p2p_sync.exchange.client import BybitP2PClient, ExchangeTransportError
from bybit_p2p_sync.storage.models import TransactionModel
from bybit_p2p_sync.storage.repos import AccountDTO, AccountKind, AccountRepository
from bybit_p2p_sync.sync.orchestrator import (
    NO_NEW_TRANSACTIONS_STATUS,
    AccountSyncState,
    SyncOrchestrator,
    SyncState,
)
from bybit_p2p_sync.sync.strategy import FetchQuery, TradeFetcher

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def fetcher(no_sleep) -> TradeFetcher:
    return TradeFetcher(
        [FetchQuery("windowed", 20, 3), FetchQuery("unwindowed", 10)],
        max_pages=10,
        page_delay_seconds=0,
        sleep=no_sleep,
    )


@pytest.fixture
def client_factory(mock_client) -> MagicMock:
    return MagicMock(return_value=mock_client)


@pytest.fixture
def orchestrator(store, client_factory, fetcher, no_sleep) -> SyncOrchestrator:
    return SyncOrchestrator(
        store,
        client_factory,
        fetcher=fetcher,
        account_delay_seconds=2.0,
        sleep=no_sleep,
    )


def sell_payloads(make_payload, start: int, count: int) -> list[dict]:
    return [make_payload(f"ord-{i}") for i in range(start, start + count)]


async def count_transactions(db_manager, account_id: int | None = None) -> int:
    async with db_manager.get_async_session() as session:
        stmt = select(func.count()).select_from(TransactionModel)
        if account_id is not None:
            stmt = stmt.where(TransactionModel.account_id == account_id)
        return (await session.execute(stmt)).scalar_one()


async def reload_account(db_manager, account_id: int) -> AccountDTO:
    async with db_manager.get_async_session() as session:
        account = await AccountRepository(session).get(account_id)
    assert account is not None
    return account


# ============================================================================
# syncAccount
# ============================================================================


class TestSyncAccount:
    @pytest.mark.asyncio
    async def test_two_pages_insert_all(
        self, orchestrator, mock_client, make_account, make_payload, make_page, db_manager
    ) -> None:
        account = await make_account()
        mock_client.fetch_trade_page.side_effect = [
            make_page(sell_payloads(make_payload, 0, 20), page=1, count=25),
            make_page(sell_payloads(make_payload, 20, 5), page=2, count=25),
        ]

        result = await orchestrator.sync_account(account)

        assert result.state is AccountSyncState.SUCCEEDED
        assert result.inserted == 25
        assert result.status_message == "Success: saved 25 new transactions"
        assert await count_transactions(db_manager, account.id) == 25

        stored = await reload_account(db_manager, account.id)
        assert stored.last_sync_status == "Success: saved 25 new transactions"
        assert stored.last_sync_at is not None
        mock_client.sync_clock.assert_awaited_once()
        mock_client.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_rerun_inserts_nothing(
        self, orchestrator, mock_client, make_account, make_payload, make_page, db_manager
    ) -> None:
        account = await make_account()
        mock_client.fetch_trade_page.return_value = make_page(sell_payloads(make_payload, 0, 7))

        first = await orchestrator.sync_account(account)
        second = await orchestrator.sync_account(account)

        assert first.inserted == 7
        assert second.inserted == 0
        assert second.unchanged == 7
        assert second.state is AccountSyncState.NO_NEW_DATA
        assert await count_transactions(db_manager) == 7
        stored = await reload_account(db_manager, account.id)
        assert stored.last_sync_status == NO_NEW_TRANSACTIONS_STATUS

    @pytest.mark.asyncio
    async def test_duplicate_order_in_one_fetch_stored_once(
        self, orchestrator, mock_client, make_account, make_payload, make_page, db_manager
    ) -> None:
        account = await make_account()
        mock_client.fetch_trade_page.return_value = make_page(
            [make_payload("dup"), make_payload("dup"), make_payload("other")]
        )

        result = await orchestrator.sync_account(account)

        assert result.inserted == 2
        assert await count_transactions(db_manager) == 2

    @pytest.mark.asyncio
    async def test_same_order_on_two_accounts(
        self, orchestrator, mock_client, make_account, make_payload, make_page, db_manager
    ) -> None:
        first = await make_account()
        second = await make_account()
        mock_client.fetch_trade_page.return_value = make_page([make_payload("shared")])

        await orchestrator.sync_account(first)
        await orchestrator.sync_account(second)

        assert await count_transactions(db_manager, first.id) == 1
        assert await count_transactions(db_manager, second.id) == 1

    @pytest.mark.asyncio
    async def test_filters_by_account_policy(
        self, orchestrator, mock_client, make_account, make_payload, make_page, db_manager
    ) -> None:
        account = await make_account()
        mock_client.fetch_trade_page.return_value = make_page(
            [
                make_payload("sell-done"),
                make_payload("buy-done", side=0),
                make_payload("sell-cancelled", status=40),
            ]
        )

        result = await orchestrator.sync_account(account)

        assert result.fetched == 3
        assert result.inserted == 1
        assert await count_transactions(db_manager) == 1

    @pytest.mark.asyncio
    async def test_cabinet_keeps_buys(
        self, orchestrator, mock_client, make_account, make_payload, make_page, store
    ) -> None:
        account = await make_account(kind=AccountKind.CABINET)
        mock_client.fetch_trade_page.return_value = make_page(
            [make_payload("b1", side=0), make_payload("s1", side=1)]
        )

        result = await orchestrator.sync_account(account)

        assert result.inserted == 2
        buy = await store.find_transaction("b1", account.id)
        assert buy is not None
        assert buy.type == "Buy"
        assert buy.status == "Completed"

    @pytest.mark.asyncio
    async def test_status_transition_updates_existing(
        self, store, client_factory, fetcher, no_sleep, mock_client, make_account, make_payload, make_page
    ) -> None:
        orchestrator = SyncOrchestrator(
            store,
            client_factory,
            fetcher=fetcher,
            cabinet_appealing_as_completed=False,
            sleep=no_sleep,
        )
        account = await make_account(kind=AccountKind.CABINET)
        existing = await store.find_transaction("x", account.id)
        assert existing is None

        mock_client.fetch_trade_page.return_value = make_page([make_payload("x")])
        await orchestrator.sync_account(account)
        stored = await store.find_transaction("x", account.id)
        assert stored is not None and stored.id is not None
        await store.update_transaction_status(stored.id, "Appealing")

        result = await orchestrator.sync_account(account)

        assert result.updated == 1
        assert result.inserted == 0
        refreshed = await store.find_transaction("x", account.id)
        assert refreshed is not None
        assert refreshed.status == "Completed"

    @pytest.mark.asyncio
    async def test_no_trades_records_status(
        self, orchestrator, mock_client, make_account, make_page, db_manager
    ) -> None:
        account = await make_account()
        mock_client.fetch_trade_page.return_value = make_page([])

        result = await orchestrator.sync_account(account)

        assert result.state is AccountSyncState.NO_NEW_DATA
        stored = await reload_account(db_manager, account.id)
        assert stored.last_sync_status == "No new transactions found"

    @pytest.mark.asyncio
    async def test_clock_failure_records_error(
        self, orchestrator, mock_client, make_account, db_manager
    ) -> None:
        account = await make_account()
        mock_client.sync_clock.side_effect = ExchangeTransportError("connect timeout")

        result = await orchestrator.sync_account(account)

        assert result.state is AccountSyncState.FAILED
        assert orchestrator.account_state(account.id) is AccountSyncState.FAILED
        stored = await reload_account(db_manager, account.id)
        assert stored.last_sync_status == "Error: connect timeout"
        mock_client.aclose.assert_awaited_once()
        mock_client.fetch_trade_page.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_insert_failure_is_isolated(
        self, client_factory, fetcher, no_sleep, mock_client, make_account, make_payload, make_page, store
    ) -> None:
        account = await make_account()
        real_insert = store.insert_transaction

        async def flaky_insert(transaction):
            if transaction.order_no == "bad":
                raise RuntimeError("constraint violation")
            return await real_insert(transaction)

        store.insert_transaction = flaky_insert
        orchestrator = SyncOrchestrator(store, client_factory, fetcher=fetcher, sleep=no_sleep)
        mock_client.fetch_trade_page.return_value = make_page(
            [make_payload("ok-1"), make_payload("bad"), make_payload("ok-2")]
        )

        result = await orchestrator.sync_account(account)

        assert result.inserted == 2
        assert result.failed_records == 1
        assert result.status_message == "Success: saved 2 new transactions"

    @pytest.mark.asyncio
    async def test_missing_credentials_skipped(self, orchestrator, client_factory) -> None:
        account = AccountDTO(id=99, kind=AccountKind.USER, api_key="", api_secret="secret")

        result = await orchestrator.sync_account(account)

        assert result.state is AccountSyncState.IDLE
        client_factory.assert_not_called()


# ============================================================================
# syncAllAccounts
# ============================================================================


class TestSyncAllAccounts:
    @pytest.mark.asyncio
    async def test_only_accounts_with_credentials(
        self, orchestrator, client_factory, mock_client, make_account, make_page
    ) -> None:
        good = await make_account()
        await make_account(api_key=None)
        await make_account(api_secret="")
        await make_account(is_active=False)
        mock_client.fetch_trade_page.return_value = make_page([])

        results = await orchestrator.sync_all_accounts()

        assert [r.account_id for r in results] == [good.id]
        client_factory.assert_called_once()

    @pytest.mark.asyncio
    async def test_one_failure_does_not_abort_batch(
        self, store, fetcher, no_sleep, make_account, make_payload, make_page, db_manager
    ) -> None:
        broken_account = await make_account(name="broken")
        healthy_account = await make_account(name="healthy")

        broken = MagicMock(spec=BybitP2PClient)
        broken.sync_clock = AsyncMock(side_effect=ExchangeTransportError("boom"))
        broken.aclose = AsyncMock()
        healthy = MagicMock(spec=BybitP2PClient)
        healthy.sync_clock = AsyncMock(return_value=0)
        healthy.fetch_trade_page = AsyncMock(return_value=make_page([make_payload("h1")]))
        healthy.aclose = AsyncMock()

        def factory(account: AccountDTO) -> MagicMock:
            return broken if account.name == "broken" else healthy

        orchestrator = SyncOrchestrator(
            store, factory, fetcher=fetcher, account_delay_seconds=1.5, sleep=no_sleep
        )

        results = await orchestrator.sync_all_accounts()

        states = {r.account_id: r.state for r in results}
        assert states[broken_account.id] is AccountSyncState.FAILED
        assert states[healthy_account.id] is AccountSyncState.SUCCEEDED
        assert orchestrator.stats.accounts_failed == 1
        assert orchestrator.stats.transactions_inserted == 1
        assert orchestrator.state is SyncState.IDLE
        assert (await reload_account(db_manager, broken_account.id)).last_sync_status == "Error: boom"

    @pytest.mark.asyncio
    async def test_pauses_between_accounts(
        self, orchestrator, mock_client, make_account, make_page, no_sleep
    ) -> None:
        for _ in range(3):
            await make_account()
        mock_client.fetch_trade_page.return_value = make_page([])

        await orchestrator.sync_all_accounts()

        assert no_sleep.await_count == 2
        no_sleep.assert_awaited_with(2.0)

    @pytest.mark.asyncio
    async def test_stats_track_passes(self, orchestrator, mock_client, make_page) -> None:
        mock_client.fetch_trade_page.return_value = make_page([])

        await orchestrator.sync_all_accounts()
        await orchestrator.sync_all_accounts()

        assert orchestrator.stats.total_syncs == 2
        assert orchestrator.stats.last_sync_time is not None
