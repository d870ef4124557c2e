"""Storage layer - Database schema, repositories and the sync store."""

from bybit_p2p_sync.storage.database import (
    DatabaseConnectionError,
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from bybit_p2p_sync.storage.models import (
    AccountModel,
    Base,
    TransactionModel,
)
from bybit_p2p_sync.storage.repos import (
    AccountDTO,
    AccountKind,
    AccountRepository,
    TransactionDTO,
    TransactionRepository,
)
from bybit_p2p_sync.storage.store import DatabaseSyncStore, SyncStore

__all__ = [
    "AccountDTO",
    "AccountKind",
    "AccountModel",
    "AccountRepository",
    "Base",
    "DatabaseConnectionError",
    "DatabaseManager",
    "DatabaseSyncStore",
    "SyncStore",
    "TransactionDTO",
    "TransactionModel",
    "TransactionRepository",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
