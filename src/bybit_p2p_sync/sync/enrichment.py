"""Chat phone enrichment pass.

Backfills phone numbers for stored transactions by reading each order's
chat transcript. Runs on its own schedule, independent of trade sync.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from bybit_p2p_sync.config import EnrichmentSettings
from bybit_p2p_sync.exchange.client import DEFAULT_CHAT_PAGE_SIZE, BybitP2PClient
from bybit_p2p_sync.storage.repos import AccountDTO, TransactionDTO
from bybit_p2p_sync.storage.store import SyncStore
from bybit_p2p_sync.sync.orchestrator import ClientFactory
from bybit_p2p_sync.sync.phones import extract_phone_numbers

logger = logging.getLogger(__name__)

DEFAULT_RECORD_DELAY_SECONDS = 1.0
DEFAULT_BATCH_LIMIT = 500


@dataclass
class EnrichmentResult:
    """Counters for one enrichment pass."""

    processed: int = 0
    enriched: int = 0
    skipped: int = 0
    failed: int = 0
    phones_found: int = 0


@dataclass
class EnrichmentStats:
    total_passes: int = 0
    transactions_enriched: int = 0
    transactions_failed: int = 0
    last_pass_time: datetime | None = None
    last_pass_duration_seconds: float = 0.0
    last_error: str | None = None


class EnrichmentPass:
    """Extracts phone numbers from chat transcripts of unenriched transactions.

    A transaction is marked enriched once its chat has been read, even if it
    held no phone numbers. When reading fails, the error is stored on the
    transaction and it stays unenriched, so the next pass retries it.
    Transactions whose account has lost its credentials are left untouched.
    """

    def __init__(
        self,
        store: SyncStore,
        client_factory: ClientFactory,
        *,
        record_delay_seconds: float = DEFAULT_RECORD_DELAY_SECONDS,
        batch_limit: int | None = DEFAULT_BATCH_LIMIT,
        chat_page_size: int = DEFAULT_CHAT_PAGE_SIZE,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._client_factory = client_factory
        self._record_delay = record_delay_seconds
        self._batch_limit = batch_limit
        self._chat_page_size = chat_page_size
        self._sleep = sleep
        self._stats = EnrichmentStats()

    @classmethod
    def from_settings(
        cls,
        store: SyncStore,
        client_factory: ClientFactory,
        settings: EnrichmentSettings,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> "EnrichmentPass":
        return cls(
            store,
            client_factory,
            record_delay_seconds=settings.record_delay_seconds,
            batch_limit=settings.batch_limit,
            chat_page_size=settings.chat_page_size,
            sleep=sleep,
        )

    @property
    def stats(self) -> EnrichmentStats:
        return self._stats

    async def process_unenriched(self) -> EnrichmentResult:
        """Run one enrichment pass over pending transactions."""
        start_time = datetime.now(UTC)
        self._stats.total_passes += 1
        result = EnrichmentResult()

        pending = await self._store.find_unenriched_transactions(limit=self._batch_limit)
        if not pending:
            logger.debug("No transactions awaiting enrichment")
            return result
        logger.info("Enriching %d transactions", len(pending))

        accounts: dict[int, AccountDTO | None] = {}
        clients: dict[int, BybitP2PClient] = {}
        calls_made = 0
        try:
            for transaction in pending:
                if transaction.account_id not in accounts:
                    accounts[transaction.account_id] = await self._store.get_account(
                        transaction.account_id
                    )
                account = accounts[transaction.account_id]
                if transaction.id is None or account is None or not account.has_credentials:
                    result.skipped += 1
                    logger.info(
                        "Skipping order %s: account %d has no credentials",
                        transaction.order_no,
                        transaction.account_id,
                    )
                    continue

                if calls_made and self._record_delay > 0:
                    await self._sleep(self._record_delay)
                calls_made += 1
                result.processed += 1
                await self._enrich_one(transaction.id, transaction, account, clients, result)
        finally:
            for client in clients.values():
                await client.aclose()

        end_time = datetime.now(UTC)
        self._stats.transactions_enriched += result.enriched
        self._stats.transactions_failed += result.failed
        self._stats.last_pass_time = end_time
        self._stats.last_pass_duration_seconds = (end_time - start_time).total_seconds()
        logger.info(
            "Enrichment finished: %d enriched, %d failed, %d skipped, %d phones in %.2fs",
            result.enriched,
            result.failed,
            result.skipped,
            result.phones_found,
            self._stats.last_pass_duration_seconds,
        )
        return result

    async def _client_for(
        self, account: AccountDTO, clients: dict[int, BybitP2PClient]
    ) -> BybitP2PClient:
        client = clients.get(account.id)
        if client is not None:
            return client
        client = self._client_factory(account)
        try:
            await client.sync_clock()
        except Exception:
            await client.aclose()
            raise
        clients[account.id] = client
        return client

    async def _enrich_one(
        self,
        transaction_id: int,
        transaction: TransactionDTO,
        account: AccountDTO,
        clients: dict[int, BybitP2PClient],
        result: EnrichmentResult,
    ) -> None:
        try:
            client = await self._client_for(account, clients)
            messages = await client.fetch_chat_messages(
                transaction.order_no, size=self._chat_page_size
            )
            phones = extract_phone_numbers(messages)
            await self._store.update_transaction_enrichment(
                transaction_id, phones=phones, enriched=True, error=None
            )
        except Exception as e:
            result.failed += 1
            self._stats.last_error = str(e)
            logger.error("Enrichment failed for order %s: %s", transaction.order_no, e)
            await self._record_failure(transaction_id, transaction, e)
            return

        result.enriched += 1
        result.phones_found += len(phones)
        if phones:
            logger.info("Order %s: found %d phone numbers", transaction.order_no, len(phones))

    async def _record_failure(
        self, transaction_id: int, transaction: TransactionDTO, error: Exception
    ) -> None:
        try:
            await self._store.update_transaction_enrichment(
                transaction_id,
                phones=list(transaction.extracted_phones),
                enriched=False,
                error=str(error) or type(error).__name__,
            )
        except Exception as e:
            logger.error(
                "Failed to record enrichment error for order %s: %s", transaction.order_no, e
            )
