"""Service lifecycle for the Bybit P2P sync.

This module provides the SyncService class that wires the store, the
exchange clients, the trade sync orchestrator and the enrichment pass
together and drives both passes on their own schedules.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import httpx

from bybit_p2p_sync.config import Settings, get_settings
from bybit_p2p_sync.exchange.client import BybitP2PClient
from bybit_p2p_sync.storage.database import DatabaseManager
from bybit_p2p_sync.storage.repos import AccountDTO
from bybit_p2p_sync.storage.store import DatabaseSyncStore, SyncStore
from bybit_p2p_sync.sync.enrichment import EnrichmentPass, EnrichmentResult
from bybit_p2p_sync.sync.orchestrator import AccountSyncResult, SyncOrchestrator

logger = logging.getLogger(__name__)


class ServiceState(str, Enum):
    """Service lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class ServiceStats:
    """Statistics for the service."""

    started_at: datetime | None = None
    sync_cycles: int = 0
    enrichment_cycles: int = 0
    cycle_errors: int = 0
    last_cycle_duration_seconds: float = 0.0
    last_error: str | None = None


class ServiceError(Exception):
    """Raised when the service is used in the wrong lifecycle state."""


class SyncService:
    """Runs the trade sync and enrichment passes until stopped.

    Both passes run once immediately on start and then on their own
    intervals. They share a single lock, so a sync cycle and an enrichment
    cycle never execute at the same time.

    Example:
        ```python
        from bybit_p2p_sync.config import get_settings
        from bybit_p2p_sync.service import SyncService

        service = SyncService(get_settings())
        await service.run()  # until SIGINT/SIGTERM
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        db: DatabaseManager | None = None,
        store: SyncStore | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the service.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            db: Database manager. Created from settings when omitted.
            store: Store implementation. Defaults to a DatabaseSyncStore over db.
            http_client: Shared HTTP client for exchange calls. Created (and
                closed on stop) when omitted.
            sleep: Awaitable sleep used for pacing, replaceable in tests.
        """
        self._settings = settings or get_settings()
        self._sleep = sleep

        self._state = ServiceState.STOPPED
        self._stats = ServiceStats()

        self._db = db
        self._owns_db = db is None
        self._store = store
        self._http = http_client
        self._owns_http = http_client is None

        self._orchestrator: SyncOrchestrator | None = None
        self._enrichment: EnrichmentPass | None = None

        self._cycle_lock = asyncio.Lock()
        self._stop_event: asyncio.Event | None = None
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def state(self) -> ServiceState:
        """Current service state."""
        return self._state

    @property
    def stats(self) -> ServiceStats:
        """Current service statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._state == ServiceState.RUNNING

    @property
    def orchestrator(self) -> SyncOrchestrator:
        if self._orchestrator is None:
            raise ServiceError("Service has not been started")
        return self._orchestrator

    @property
    def enrichment(self) -> EnrichmentPass:
        if self._enrichment is None:
            raise ServiceError("Service has not been started")
        return self._enrichment

    def _make_client(self, account: AccountDTO) -> BybitP2PClient:
        exchange = self._settings.exchange
        return BybitP2PClient(
            account.api_key or "",
            account.api_secret or "",
            http_client=self._http,
            base_url=exchange.resolved_base_url,
            recv_window_ms=exchange.recv_window_ms,
            timeout_seconds=exchange.request_timeout_seconds,
        )

    async def start(self, *, background: bool = True) -> None:
        """Start the service.

        Connects to the database (with bounded retries) and, when
        ``background`` is True, launches the periodic sync and enrichment
        loops.

        Raises:
            ServiceError: If the service is not stopped.
            DatabaseConnectionError: If the database stays unreachable.
        """
        if self._state != ServiceState.STOPPED:
            raise ServiceError(f"Cannot start service in state {self._state}")

        self._state = ServiceState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting sync service...")

        try:
            await self._initialize_components()
            if background:
                self._start_loops()
            self._stats.started_at = datetime.now(UTC)
            self._state = ServiceState.RUNNING
            logger.info("Sync service started")
        except Exception as e:
            self._state = ServiceState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start sync service: %s", e)
            await self._cleanup()
            self._state = ServiceState.STOPPED
            raise

    async def _initialize_components(self) -> None:
        settings = self._settings
        if self._store is None:
            if self._db is None:
                self._db = DatabaseManager(settings.database.url, echo=settings.database.echo)
            await self._db.connect_with_retry(
                attempts=settings.database.connect_retries,
                delay_seconds=settings.database.connect_retry_delay_seconds,
            )
            self._store = DatabaseSyncStore(self._db)

        if self._http is None:
            self._http = httpx.AsyncClient(timeout=settings.exchange.request_timeout_seconds)

        self._orchestrator = SyncOrchestrator.from_settings(
            self._store, self._make_client, settings.sync, sleep=self._sleep
        )
        self._enrichment = EnrichmentPass.from_settings(
            self._store, self._make_client, settings.enrichment, sleep=self._sleep
        )
        logger.debug("Components initialized (exchange=%s)", settings.exchange.resolved_base_url)

    def _start_loops(self) -> None:
        self._tasks.append(
            asyncio.create_task(
                self._run_periodic("sync", self._settings.sync.interval_seconds, self._sync_cycle)
            )
        )
        if self._settings.enrichment.enabled:
            self._tasks.append(
                asyncio.create_task(
                    self._run_periodic(
                        "enrichment",
                        self._settings.enrichment.interval_seconds,
                        self._enrichment_cycle,
                    )
                )
            )
        else:
            logger.info("Enrichment pass disabled")

    async def stop(self) -> None:
        """Stop the service gracefully.

        No new cycles are started; an in-flight cycle gets up to the
        configured shutdown timeout to finish before it is cancelled.
        """
        if self._state == ServiceState.STOPPED:
            return

        self._state = ServiceState.STOPPING
        logger.info("Stopping sync service...")

        if self._stop_event:
            self._stop_event.set()

        if self._tasks:
            _, pending = await asyncio.wait(
                self._tasks, timeout=self._settings.shutdown_timeout_seconds
            )
            for task in pending:
                logger.warning("Cycle did not finish within shutdown timeout, cancelling")
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            self._tasks = []

        await self._cleanup()
        self._state = ServiceState.STOPPED
        logger.info("Sync service stopped")

    async def _cleanup(self) -> None:
        """Release resources the service created."""
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

        if self._db is not None and self._owns_db:
            await self._db.dispose_async()
            self._db = None
            self._store = None

        logger.debug("Resources cleaned up")

    async def run_sync_cycle(self) -> list[AccountSyncResult]:
        """Run one trade sync pass under the cycle lock."""
        async with self._cycle_lock:
            return await self._sync_cycle()

    async def run_enrichment_cycle(self) -> EnrichmentResult:
        """Run one enrichment pass under the cycle lock."""
        async with self._cycle_lock:
            return await self._enrichment_cycle()

    async def _sync_cycle(self) -> list[AccountSyncResult]:
        started = datetime.now(UTC)
        results = await self.orchestrator.sync_all_accounts()
        self._stats.sync_cycles += 1
        self._record_duration("Sync", started)
        return results

    async def _enrichment_cycle(self) -> EnrichmentResult:
        started = datetime.now(UTC)
        result = await self.enrichment.process_unenriched()
        self._stats.enrichment_cycles += 1
        self._record_duration("Enrichment", started)
        return result

    def _record_duration(self, name: str, started: datetime) -> None:
        duration = (datetime.now(UTC) - started).total_seconds()
        self._stats.last_cycle_duration_seconds = duration
        logger.info("%s cycle completed in %.2fs", name, duration)

    async def _run_periodic(
        self,
        name: str,
        interval: float,
        cycle: Callable[[], Awaitable[Any]],
    ) -> None:
        """Run ``cycle`` now and then every ``interval`` seconds until stopped."""
        if self._stop_event is None:
            raise ServiceError("Service has not been started")
        while not self._stop_event.is_set():
            try:
                async with self._cycle_lock:
                    if self._stop_event.is_set():
                        break
                    await cycle()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._stats.cycle_errors += 1
                self._stats.last_error = str(e)
                logger.error("%s cycle failed: %s", name, e, exc_info=True)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                break
            except TimeoutError:
                pass

    def request_stop(self) -> None:
        """Ask run() to return; safe to call from a signal handler."""
        if self._stop_event is not None:
            self._stop_event.set()

    async def run(self) -> None:
        """Start the service and run until SIGINT/SIGTERM or request_stop()."""
        await self.start()

        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
                installed.append(sig)
            except (NotImplementedError, RuntimeError):
                logger.debug("Signal handler for %s not supported on this platform", sig.name)

        try:
            if self._stop_event:
                await self._stop_event.wait()
                logger.info("Shutdown requested")
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)
            await self.stop()

    async def __aenter__(self) -> SyncService:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()
