"""Trade history synchronizer.

This module walks every account with API credentials, fetches its completed
P2P trades through the fallback fetch strategy, and stores new trades
exactly once per (order number, account).
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

from bybit_p2p_sync.config import SyncSettings
from bybit_p2p_sync.exchange.client import BybitP2PClient
from bybit_p2p_sync.storage.repos import AccountDTO
from bybit_p2p_sync.storage.store import SyncStore
from bybit_p2p_sync.sync.normalizer import AccountPolicy, normalize_trade
from bybit_p2p_sync.sync.strategy import TradeFetcher

logger = logging.getLogger(__name__)

DEFAULT_ACCOUNT_DELAY_SECONDS = 2.0

NO_NEW_TRANSACTIONS_STATUS = "No new transactions found"

ClientFactory = Callable[[AccountDTO], BybitP2PClient]


class SyncState(str, Enum):
    """State of the synchronizer as a whole."""

    IDLE = "idle"
    SYNCING = "syncing"


class AccountSyncState(str, Enum):
    """Per-account sync state. Terminal states return to IDLE next pass."""

    IDLE = "idle"
    SYNCING = "syncing"
    SUCCEEDED = "succeeded"
    NO_NEW_DATA = "no_new_data"
    FAILED = "failed"


@dataclass
class SyncStats:
    """Statistics for the trade sync process."""

    total_syncs: int = 0
    accounts_processed: int = 0
    accounts_failed: int = 0
    transactions_inserted: int = 0
    transactions_updated: int = 0
    last_sync_time: datetime | None = None
    last_sync_duration_seconds: float = 0.0
    last_error: str | None = None


@dataclass
class AccountSyncResult:
    """What one account's sync attempt did."""

    account_id: int
    state: AccountSyncState
    status_message: str | None = None
    fetched: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    failed_records: int = 0


def success_status(inserted: int) -> str:
    return f"Success: saved {inserted} new transactions"


def error_status(error: BaseException) -> str:
    return f"Error: {error}"


class SyncOrchestrator:
    """Syncs completed trades for every eligible account.

    Accounts are processed strictly one after another with a fixed pause
    between them. A failure in one account is logged, recorded on that
    account's sync status and never aborts the batch.

    Example:
        ```python
        orchestrator = SyncOrchestrator(store, client_factory, fetcher=fetcher)
        results = await orchestrator.sync_all_accounts()
        ```
    """

    def __init__(
        self,
        store: SyncStore,
        client_factory: ClientFactory,
        *,
        fetcher: TradeFetcher,
        account_delay_seconds: float = DEFAULT_ACCOUNT_DELAY_SECONDS,
        cabinet_appealing_as_completed: bool = False,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            store: Persistence for accounts and transactions.
            client_factory: Builds an exchange client from an account's credentials.
            fetcher: Fallback fetch strategy shared by all accounts.
            account_delay_seconds: Pause between consecutive accounts.
            cabinet_appealing_as_completed: Count appealing orders as completed
                for cabinet accounts.
            sleep: Awaitable sleep, replaceable in tests.
        """
        self._store = store
        self._client_factory = client_factory
        self._fetcher = fetcher
        self._account_delay = account_delay_seconds
        self._cabinet_appealing_as_completed = cabinet_appealing_as_completed
        self._sleep = sleep

        self._state = SyncState.IDLE
        self._stats = SyncStats()
        self._account_states: dict[int, AccountSyncState] = {}

    @classmethod
    def from_settings(
        cls,
        store: SyncStore,
        client_factory: ClientFactory,
        settings: SyncSettings,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> "SyncOrchestrator":
        return cls(
            store,
            client_factory,
            fetcher=TradeFetcher.from_settings(settings, sleep=sleep),
            account_delay_seconds=settings.account_delay_seconds,
            cabinet_appealing_as_completed=settings.cabinet_appealing_as_completed,
            sleep=sleep,
        )

    @property
    def state(self) -> SyncState:
        """Current sync state."""
        return self._state

    @property
    def stats(self) -> SyncStats:
        """Current sync statistics."""
        return self._stats

    def account_state(self, account_id: int) -> AccountSyncState:
        return self._account_states.get(account_id, AccountSyncState.IDLE)

    def policy_for(self, account: AccountDTO) -> AccountPolicy:
        return AccountPolicy.for_account(
            account.kind, appealing_as_completed=self._cabinet_appealing_as_completed
        )

    async def sync_all_accounts(self) -> list[AccountSyncResult]:
        """Run one sync pass over every account with credentials."""
        self._state = SyncState.SYNCING
        start_time = datetime.now(UTC)
        self._stats.total_syncs += 1

        try:
            accounts = [a for a in await self._store.find_accounts_with_credentials() if a.can_be_synced]
            logger.info("Starting trade sync for %d accounts", len(accounts))

            results: list[AccountSyncResult] = []
            for index, account in enumerate(accounts):
                if index > 0 and self._account_delay > 0:
                    await self._sleep(self._account_delay)
                result = await self.sync_account(account)
                results.append(result)

                self._stats.accounts_processed += 1
                self._stats.transactions_inserted += result.inserted
                self._stats.transactions_updated += result.updated
                if result.state is AccountSyncState.FAILED:
                    self._stats.accounts_failed += 1
                    self._stats.last_error = result.status_message

            end_time = datetime.now(UTC)
            self._stats.last_sync_time = end_time
            self._stats.last_sync_duration_seconds = (end_time - start_time).total_seconds()
            logger.info(
                "Trade sync finished: %d accounts, %d new, %d updated in %.2fs",
                len(results),
                sum(r.inserted for r in results),
                sum(r.updated for r in results),
                self._stats.last_sync_duration_seconds,
            )
            return results
        finally:
            self._state = SyncState.IDLE

    async def sync_account(self, account: AccountDTO) -> AccountSyncResult:
        """Sync one account and record the outcome on it.

        The account's sync status is written whatever happens, so it always
        reflects the most recent attempt.
        """
        if not account.has_credentials:
            logger.warning("Account %d has no API credentials, skipping", account.id)
            return AccountSyncResult(account_id=account.id, state=AccountSyncState.IDLE)

        self._account_states[account.id] = AccountSyncState.SYNCING
        try:
            result = await self._sync_account_trades(account)
        except Exception as e:
            logger.error("Sync failed for account %d: %s", account.id, e, exc_info=True)
            result = AccountSyncResult(
                account_id=account.id,
                state=AccountSyncState.FAILED,
                status_message=error_status(e),
            )

        self._account_states[account.id] = result.state
        await self._record_status(account, result.status_message or NO_NEW_TRANSACTIONS_STATUS)
        return result

    async def _record_status(self, account: AccountDTO, status: str) -> None:
        try:
            await self._store.update_account_sync_status(
                account.id, status=status, synced_at=datetime.now(UTC)
            )
        except Exception as e:
            logger.error("Failed to record sync status for account %d: %s", account.id, e)

    async def _sync_account_trades(self, account: AccountDTO) -> AccountSyncResult:
        client = self._client_factory(account)
        try:
            await client.sync_clock()
            policy = self.policy_for(account)
            fetch = await self._fetcher.fetch(client, status=policy.status_filter)
        finally:
            await client.aclose()

        result = AccountSyncResult(account_id=account.id, state=AccountSyncState.NO_NEW_DATA)
        if not fetch.success:
            logger.info("Account %d: %s", account.id, fetch.message)
            result.status_message = NO_NEW_TRANSACTIONS_STATUS
            return result

        accepted = [trade for trade in fetch.trades if policy.accepts(trade)]
        result.fetched = len(fetch.trades)
        logger.info(
            "Account %d: %d of %d fetched trades match the account policy",
            account.id,
            len(accepted),
            len(fetch.trades),
        )

        for trade in accepted:
            try:
                existing = await self._store.find_transaction(trade.order_no, account.id)
                if existing is not None:
                    new_status = policy.status_text(trade.status_code)
                    if existing.id is not None and existing.status != new_status:
                        await self._store.update_transaction_status(existing.id, new_status)
                        logger.info(
                            "Order %s status changed %s -> %s",
                            trade.order_no,
                            existing.status,
                            new_status,
                        )
                        result.updated += 1
                    else:
                        result.unchanged += 1
                    continue

                transaction = normalize_trade(trade, account_id=account.id, policy=policy)
                await self._store.insert_transaction(transaction)
                result.inserted += 1
            except Exception as e:
                result.failed_records += 1
                logger.error(
                    "Failed to store order %s for account %d: %s", trade.order_no, account.id, e
                )

        if result.inserted > 0:
            result.state = AccountSyncState.SUCCEEDED
            result.status_message = success_status(result.inserted)
        else:
            result.status_message = NO_NEW_TRANSACTIONS_STATUS

        logger.info(
            "Account %d: %d new, %d updated, %d unchanged, %d failed",
            account.id,
            result.inserted,
            result.updated,
            result.unchanged,
            result.failed_records,
        )
        return result
