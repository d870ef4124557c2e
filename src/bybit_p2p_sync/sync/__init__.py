"""Sync layer - Trade fetch, normalization, orchestration and enrichment."""

from bybit_p2p_sync.sync.enrichment import EnrichmentPass, EnrichmentResult, EnrichmentStats
from bybit_p2p_sync.sync.normalizer import AccountPolicy, normalize_trade, status_label
from bybit_p2p_sync.sync.orchestrator import (
    AccountSyncResult,
    AccountSyncState,
    ClientFactory,
    SyncOrchestrator,
    SyncState,
    SyncStats,
)
from bybit_p2p_sync.sync.phones import extract_phone_numbers
from bybit_p2p_sync.sync.strategy import FetchQuery, FetchResult, FetchSummary, TradeFetcher

__all__ = [
    "AccountPolicy",
    "AccountSyncResult",
    "AccountSyncState",
    "ClientFactory",
    "EnrichmentPass",
    "EnrichmentResult",
    "EnrichmentStats",
    "FetchQuery",
    "FetchResult",
    "FetchSummary",
    "SyncOrchestrator",
    "SyncState",
    "SyncStats",
    "TradeFetcher",
    "extract_phone_numbers",
    "normalize_trade",
    "status_label",
]
