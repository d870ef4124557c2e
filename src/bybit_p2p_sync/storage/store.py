"""Store interface consumed by the sync and enrichment passes.

``SyncStore`` is the narrow persistence contract the core depends on;
``DatabaseSyncStore`` implements it on top of the async repositories, with
one short-lived session (and transaction) per operation so a failed write
never poisons the rest of the batch.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from bybit_p2p_sync.storage.database import DatabaseManager
from bybit_p2p_sync.storage.repos import (
    AccountDTO,
    AccountRepository,
    TransactionDTO,
    TransactionRepository,
)


class SyncStore(Protocol):
    async def find_accounts_with_credentials(self) -> list[AccountDTO]:
        raise NotImplementedError

    async def get_account(self, account_id: int) -> AccountDTO | None:
        raise NotImplementedError

    async def find_transaction(self, order_no: str, account_id: int) -> TransactionDTO | None:
        raise NotImplementedError

    async def insert_transaction(self, transaction: TransactionDTO) -> TransactionDTO:
        raise NotImplementedError

    async def update_transaction_status(self, transaction_id: int, status: str) -> None:
        raise NotImplementedError

    async def find_unenriched_transactions(self, *, limit: int | None = None) -> list[TransactionDTO]:
        raise NotImplementedError

    async def update_transaction_enrichment(
        self,
        transaction_id: int,
        *,
        phones: list[str],
        enriched: bool,
        error: str | None,
    ) -> None:
        raise NotImplementedError

    async def update_account_sync_status(
        self, account_id: int, *, status: str, synced_at: datetime
    ) -> None:
        raise NotImplementedError


class DatabaseSyncStore:
    """SyncStore backed by the SQLAlchemy repositories."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def find_accounts_with_credentials(self) -> list[AccountDTO]:
        async with self._db.get_async_session() as session:
            return await AccountRepository(session).list_with_credentials()

    async def get_account(self, account_id: int) -> AccountDTO | None:
        async with self._db.get_async_session() as session:
            return await AccountRepository(session).get(account_id)

    async def find_transaction(self, order_no: str, account_id: int) -> TransactionDTO | None:
        async with self._db.get_async_session() as session:
            return await TransactionRepository(session).get_by_order(order_no, account_id)

    async def insert_transaction(self, transaction: TransactionDTO) -> TransactionDTO:
        async with self._db.get_async_session() as session:
            return await TransactionRepository(session).insert(transaction)

    async def update_transaction_status(self, transaction_id: int, status: str) -> None:
        async with self._db.get_async_session() as session:
            await TransactionRepository(session).update_status(transaction_id, status)

    async def find_unenriched_transactions(self, *, limit: int | None = None) -> list[TransactionDTO]:
        async with self._db.get_async_session() as session:
            return await TransactionRepository(session).list_unenriched(limit=limit)

    async def update_transaction_enrichment(
        self,
        transaction_id: int,
        *,
        phones: list[str],
        enriched: bool,
        error: str | None,
    ) -> None:
        async with self._db.get_async_session() as session:
            await TransactionRepository(session).update_enrichment(
                transaction_id, phones=phones, enriched=enriched, error=error
            )

    async def update_account_sync_status(
        self, account_id: int, *, status: str, synced_at: datetime
    ) -> None:
        async with self._db.get_async_session() as session:
            await AccountRepository(session).update_sync_status(
                account_id, status=status, synced_at=synced_at
            )
