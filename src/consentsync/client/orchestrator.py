"""Sync orchestrator for the consent collections.

This module provides:
- SyncOrchestrator: Serves cached data immediately, refreshes in the
  background, retries with backoff, and performs writes with optimistic
  local updates
- SyncSnapshot: Observable state published to listeners
- RetryState, LoadResult: Retry bookkeeping and load cycle outcome

Load cycle:
    IDLE ──trigger──► PROBING ──connected──► FETCHING ──► IDLE
                         │
                         └──disconnected──► BACKING_OFF ──timer──► IDLE ──► PROBING

Only IDLE accepts a trigger. Triggers arriving in any other phase
(realtime change, network restored, foreground, scheduled retry) are
dropped, not queued. A manual retry cancels a pending backoff timer and
starts immediately; if a cycle is already probing or fetching it joins
that cycle.

Retry policy when disconnected:
    | attempt_count | Manual retry | Action                                |
    |---------------|--------------|---------------------------------------|
    | < 15          | no           | retry after backoff(attempt, 3s, 120s)|
    | >= 15         | no           | retry every 5 minutes, no doubling    |
    | any           | yes          | surface ConnectivityError, no timer   |
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from consentsync.client.connection import ConnectionStatus
from consentsync.client.records import (
    Consent,
    NewConsent,
    generate_code,
    records_from_cache,
    records_to_cache,
    transform_rows,
)
from consentsync.client.retry import Sleep, backoff_delay
from consentsync.client.stats import ConsentStatistics, compute_statistics
from consentsync.core.config import SyncSettings
from consentsync.core.errors import (
    ConnectivityError,
    ConsentSyncError,
    NotFoundError,
    RemoteError,
    SyncTimeoutError,
    with_timeout,
)
from consentsync.core.types import LoadPhase

if TYPE_CHECKING:
    from consentsync.client.api import BackendClient
    from consentsync.client.cache import CacheStore
    from consentsync.client.connection import ConnectionMonitor
    from consentsync.client.realtime import RealtimeSubscriptionManager, Subscription

logger = logging.getLogger(__name__)

ACTIVE_CACHE_KEY = "app_consents_data"
ARCHIVED_CACHE_KEY = "app_archived_consents_data"
CONSENTS_RESOURCE = "consents"

LOCAL_ARCHIVE_NOTE = (
    "The consent is already archived locally; the backend may not reflect "
    "it until the connection is restored."
)


@dataclass
class RetryState:
    """Background retry bookkeeping.

    Attributes:
        attempt_count: Scheduled retries since the last reset.
        last_attempt_at: Epoch seconds of the last load attempt.
        last_delay: Delay of the last scheduled retry, floor for the next.
    """

    attempt_count: int = 0
    last_attempt_at: float | None = None
    last_delay: float = 0.0

    def reset(self) -> None:
        self.attempt_count = 0
        self.last_delay = 0.0


@dataclass(frozen=True)
class SyncSnapshot:
    """Observable state of the orchestrator at one instant."""

    active: list[Consent]
    archived: list[Consent]
    connection_error: bool
    is_loading: bool
    last_connection_attempt: datetime | None
    phase: LoadPhase
    last_error: ConsentSyncError | None = None


@dataclass
class LoadResult:
    """Outcome of one load cycle.

    Attributes:
        connected: Whether the connectivity check succeeded.
        active_loaded: Active collection fetched and committed.
        archived_loaded: Archived collection fetched and committed.
        error: The failure to report, if any.
    """

    connected: bool
    active_loaded: bool = False
    archived_loaded: bool = False
    error: ConsentSyncError | None = field(default=None)

    @property
    def partial(self) -> bool:
        """True if only the active collection was refreshed."""
        return self.active_loaded and not self.archived_loaded

    @property
    def ok(self) -> bool:
        return self.error is None and self.active_loaded and self.archived_loaded


Listener = Callable[[SyncSnapshot], None]


class SyncOrchestrator:
    """Eventually-consistent view of the active and archived consents.

    Usage:
        orchestrator = SyncOrchestrator(backend, cache, monitor, realtime)
        await orchestrator.start()
        snapshot = await orchestrator.load()
        consent = await orchestrator.create(new_consent)
        await orchestrator.archive(consent.id)
        await orchestrator.close()
    """

    def __init__(
        self,
        backend: BackendClient,
        cache: CacheStore,
        monitor: ConnectionMonitor,
        realtime: RealtimeSubscriptionManager | None = None,
        settings: SyncSettings | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            backend: Remote query/RPC client.
            cache: Two-tier cache for the collections.
            monitor: Connectivity monitor.
            realtime: Realtime manager; no push refresh when None.
            settings: Timing policy.
            sleep: Awaitable sleep used by retry timers.
            clock: Time source in epoch seconds.
            rng: Random source for backoff jitter.
        """
        self._backend = backend
        self._cache = cache
        self._monitor = monitor
        self._realtime = realtime
        self._settings = settings or SyncSettings()
        self._sleep = sleep
        self._clock = clock
        self._rng = rng

        # Start from whatever the cache holds
        self._active: list[Consent] = records_from_cache(cache.get(ACTIVE_CACHE_KEY))
        self._archived: list[Consent] = records_from_cache(cache.get(ARCHIVED_CACHE_KEY))

        self._phase = LoadPhase.IDLE
        self._retry = RetryState()
        self._connection_error = False
        self._is_loading = False
        self._last_connection_attempt: datetime | None = None
        self._last_error: ConsentSyncError | None = None
        self._next_retry_delay: float | None = None

        self._cycle_task: asyncio.Task[LoadResult] | None = None
        self._timer_task: asyncio.Task[None] | None = None
        self._subscription: Subscription | None = None
        self._listeners: list[Listener] = []
        self._closed = False

    # === Observable state ===

    @property
    def phase(self) -> LoadPhase:
        return self._phase

    @property
    def retry_state(self) -> RetryState:
        return self._retry

    @property
    def connection_error(self) -> bool:
        return self._connection_error

    @property
    def next_retry_delay(self) -> float | None:
        """Delay of the most recently scheduled retry, in seconds."""
        return self._next_retry_delay

    @property
    def active(self) -> list[Consent]:
        return list(self._active)

    @property
    def archived(self) -> list[Consent]:
        return list(self._archived)

    def snapshot(self) -> SyncSnapshot:
        """Current observable state."""
        return SyncSnapshot(
            active=list(self._active),
            archived=list(self._archived),
            connection_error=self._connection_error,
            is_loading=self._is_loading,
            last_connection_attempt=self._last_connection_attempt,
            phase=self._phase,
            last_error=self._last_error,
        )

    def add_listener(self, listener: Listener) -> None:
        """Call ``listener`` with a new snapshot on every state change."""
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        with contextlib.suppress(ValueError):
            self._listeners.remove(listener)

    def _publish(self) -> None:
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("State listener failed")

    # === Lifecycle ===

    async def start(self) -> None:
        """Serve cached data, subscribe to changes and start loading."""
        self._serve_cached()
        if self._realtime is not None and self._subscription is None:
            self._subscription = self._realtime.subscribe(
                CONSENTS_RESOURCE, self.on_remote_change
            )
        self._try_start_cycle("startup")

    async def close(self) -> None:
        """Cancel timers, the running cycle and the subscription."""
        self._closed = True

        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None

        for task in (self._timer_task, self._cycle_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._timer_task = None
        self._cycle_task = None
        self._phase = LoadPhase.IDLE
        logger.info("Orchestrator closed")

    # === Reads ===

    async def load(self) -> SyncSnapshot:
        """Return the collections, refreshing them from the backend.

        With a warm cache the cached snapshot is returned immediately and
        the refresh runs in the background. With a cold cache the call
        waits for the load cycle (or joins the one already running).
        """
        if self._serve_cached():
            self._try_start_cycle("load")
            return self.snapshot()

        task = self._try_start_cycle("load") or self._cycle_task
        if task is not None:
            await asyncio.shield(task)
        return self.snapshot()

    async def refresh(self, reason: str = "refresh") -> LoadResult | None:
        """Run one load cycle if the orchestrator is idle.

        Returns:
            The cycle outcome, or None if the trigger was dropped because
            another cycle or a backoff timer owns the orchestrator.
        """
        task = self._try_start_cycle(reason)
        if task is None:
            return None
        return await asyncio.shield(task)

    def get_by_id(self, consent_id: str) -> Consent | None:
        """Find a consent in the active, then the archived collection."""
        for record in (*self._active, *self._archived):
            if record.id == consent_id:
                return record
        return None

    def get_by_code(self, code: str) -> Consent | None:
        """Find a consent by its printed code."""
        for record in (*self._active, *self._archived):
            if record.code == code:
                return record
        return None

    def connection_status(self) -> ConnectionStatus:
        """Last connectivity result, downgraded by a recorded connection error."""
        status = self._monitor.status
        if status is None:
            return ConnectionStatus(connected=False, checked_at=None)
        return ConnectionStatus(
            connected=status.connected and not self._connection_error,
            checked_at=status.checked_at,
        )

    def statistics(self) -> ConsentStatistics:
        """Dashboard statistics over the active collection."""
        return compute_statistics(self._active)

    # === Triggers ===

    def on_remote_change(self) -> None:
        """Realtime push: the consents table changed."""
        logger.info("Change notification received, reloading consents")
        self._try_start_cycle("realtime change")

    def notify_network_restored(self) -> None:
        """Environment signal: the network interface came back."""
        logger.info("Network connection restored, reconnecting...")
        self._retry.reset()
        self._monitor.invalidate()
        if self._phase is LoadPhase.BACKING_OFF:
            self._cancel_timer()
        self._try_start_cycle("network restored")

    def notify_foreground(self) -> None:
        """Environment signal: the application came back to the foreground."""
        logger.info("Application in foreground, checking connection...")
        self._try_start_cycle("foreground")

    async def retry(self) -> LoadResult:
        """Manual retry: reset backoff and load now.

        Raises:
            ConnectivityError, SyncTimeoutError, RemoteError: If the
                cycle fails (or only partially succeeds).
        """
        logger.info("Forcing manual connection retry...")
        self._cancel_timer()
        self._retry.reset()
        self._connection_error = False
        self._monitor.invalidate()
        self._publish()

        task = self._try_start_cycle("manual retry", manual=True) or self._cycle_task
        if task is None:
            raise ConnectivityError("Orchestrator is closed")

        result = await asyncio.shield(task)
        if result.error is not None:
            raise result.error
        return result

    # === Load cycle ===

    def _try_start_cycle(
        self,
        reason: str,
        manual: bool = False,
    ) -> asyncio.Task[LoadResult] | None:
        """Start a load cycle unless one already owns the orchestrator."""
        if self._closed:
            return None
        if self._phase is not LoadPhase.IDLE:
            logger.debug(
                "Dropping %s trigger: load cycle is %s", reason, self._phase.value
            )
            return None

        self._phase = LoadPhase.PROBING
        task = asyncio.create_task(self._run_cycle(reason, manual))
        self._cycle_task = task
        return task

    def _serve_cached(self) -> bool:
        """Publish unexpired cached collections. Returns True on a hit."""
        active = records_from_cache(self._cache.get(ACTIVE_CACHE_KEY))
        archived = records_from_cache(self._cache.get(ARCHIVED_CACHE_KEY))
        if not active and not archived:
            return False

        logger.info("Using cached data while connecting")
        if active:
            self._active = active
        if archived:
            self._archived = archived
        self._publish()
        return True

    async def _run_cycle(self, reason: str, manual: bool) -> LoadResult:
        now = self._clock()
        self._retry.last_attempt_at = now
        self._last_connection_attempt = datetime.fromtimestamp(now, tz=timezone.utc)
        if manual:
            self._is_loading = True
        self._publish()

        logger.info(
            "Loading consents (attempt %d%s, %s)",
            self._retry.attempt_count + 1,
            ", manual" if manual else "",
            reason,
        )

        try:
            if not await self._check_connection():
                logger.error("Could not connect to the backend (timeout or connection error)")
                error = ConnectivityError("Backend unreachable")
                self._last_error = error
                self._handle_disconnected(manual)
                return LoadResult(connected=False, error=error)

            return await self._fetch_collections(manual)
        finally:
            if self._phase is not LoadPhase.BACKING_OFF:
                self._phase = LoadPhase.IDLE
            self._is_loading = False
            self._cycle_task = None
            self._publish()

    async def _check_connection(self) -> bool:
        """Race the connectivity check against the hard ceiling."""
        ceiling = self._settings.connection_ceiling
        try:
            return await asyncio.wait_for(self._monitor.check_connection(), timeout=ceiling)
        except TimeoutError:
            logger.error("Connectivity check exceeded %.0fs ceiling", ceiling)
            return False

    async def _fetch_collections(self, manual: bool) -> LoadResult:
        settings = self._settings
        self._phase = LoadPhase.FETCHING
        self._connection_error = False
        self._retry.reset()
        logger.info("Backend connection established, fetching consents")
        self._publish()

        try:
            active_rows = await with_timeout(
                self._backend.fetch_consents(archived=False),
                settings.fetch_timeout,
                "fetch active consents",
            )
        except (ConnectivityError, SyncTimeoutError) as e:
            logger.error("Failed to load active consents: %s", e)
            self._last_error = e
            self._handle_disconnected(manual)
            return LoadResult(connected=True, error=e)
        except RemoteError as e:
            logger.error("Backend error loading active consents: %s", e)
            self._last_error = e
            return LoadResult(connected=True, error=e)

        active = transform_rows(active_rows)
        logger.info("Fetched %d active consents", len(active))

        try:
            archived_rows = await with_timeout(
                self._backend.fetch_consents(archived=True),
                settings.fetch_timeout,
                "fetch archived consents",
            )
        except (ConnectivityError, SyncTimeoutError, RemoteError) as e:
            logger.error("Failed to load archived consents, keeping active only: %s", e)
            self._commit(active=active)
            self._last_error = e
            return LoadResult(connected=True, active_loaded=True, error=e)

        archived = transform_rows(archived_rows)
        self._commit(active=active, archived=archived)
        self._last_error = None
        logger.info(
            "Loaded and cached %d active, %d archived consents",
            len(active),
            len(archived),
        )
        return LoadResult(connected=True, active_loaded=True, archived_loaded=True)

    def _handle_disconnected(self, manual: bool) -> None:
        """Record the failure and schedule the next background attempt."""
        settings = self._settings
        self._connection_error = True

        if manual:
            logger.info("Manual retry failed, using cached data")
            return

        attempt = self._retry.attempt_count
        if attempt < settings.max_retries:
            delay = backoff_delay(
                attempt,
                settings.retry_base_delay,
                settings.retry_max_delay,
                settings.jitter,
                self._rng,
                floor=self._retry.last_delay,
            )
            self._retry.attempt_count += 1
            self._retry.last_delay = delay
            logger.info(
                "Retrying in background (%d/%d) in %.0fs...",
                attempt + 1,
                settings.max_retries,
                delay,
            )
        else:
            delay = settings.periodic_retry_interval
            logger.info(
                "Maximum retries reached, retrying every %.0fs with cached data",
                delay,
            )
        self._schedule_retry(delay)

    def _schedule_retry(self, delay: float) -> None:
        self._cancel_timer()
        self._phase = LoadPhase.BACKING_OFF
        self._next_retry_delay = delay
        self._timer_task = asyncio.create_task(self._retry_after(delay))

    async def _retry_after(self, delay: float) -> None:
        await self._sleep(delay)
        self._timer_task = None
        if self._phase is LoadPhase.BACKING_OFF:
            self._phase = LoadPhase.IDLE
        self._try_start_cycle("scheduled retry")

    def _cancel_timer(self) -> None:
        if self._timer_task is not None and not self._timer_task.done():
            self._timer_task.cancel()
        self._timer_task = None
        if self._phase is LoadPhase.BACKING_OFF:
            self._phase = LoadPhase.IDLE

    def _commit(
        self,
        active: list[Consent] | None = None,
        archived: list[Consent] | None = None,
        clear_empty: bool = False,
    ) -> None:
        """Write collections to the cache, then publish them.

        Args:
            clear_empty: Drop the cache entry when a collection becomes
                empty. Fetch results never do this, so an empty result
                cannot wipe a good cache; local writes do, so a record
                moved away does not linger in the cached collection.
        """
        if active is not None:
            self._write_cache(ACTIVE_CACHE_KEY, active, clear_empty)
            self._active = active
        if archived is not None:
            self._write_cache(ARCHIVED_CACHE_KEY, archived, clear_empty)
            self._archived = archived
        self._publish()

    def _write_cache(self, key: str, records: list[Consent], clear_empty: bool) -> None:
        if records:
            self._cache.set(key, records_to_cache(records), self._settings.record_ttl)
        elif clear_empty:
            self._cache.delete(key)

    # === Writes ===

    async def _require_connection(self) -> None:
        if not await self._monitor.check_connection(force=True):
            self._connection_error = True
            self._publish()
            raise ConnectivityError(
                "Cannot reach the backend. Check the internet connection and try again."
            )

    async def _recheck_after_failure(self) -> None:
        if not await self._monitor.check_connection():
            self._connection_error = True
            self._publish()

    async def create(self, new_consent: NewConsent) -> Consent:
        """Create a consent remotely and show it locally right away.

        Raises:
            ConnectivityError: If the backend is unreachable.
            NotFoundError: If the artist name does not resolve.
            SyncTimeoutError, RemoteError: If the insert fails.
        """
        settings = self._settings
        await self._require_connection()

        code = generate_code()
        created_at = datetime.now(timezone.utc).isoformat()
        logger.info("Creating consent for artist %s", new_consent.artist_name)

        try:
            artist_id = await with_timeout(
                self._backend.find_artist_id(new_consent.artist_name),
                settings.lookup_timeout,
                "artist lookup",
            )
            row = await with_timeout(
                self._backend.insert_consent(new_consent.to_insert_payload(code, artist_id)),
                settings.insert_timeout,
                "insert consent",
            )
            if row.get("id") is None:
                raise RemoteError("Created consent has no id")
        except ConsentSyncError as e:
            logger.error("Failed to create consent: %s", e)
            await self._recheck_after_failure()
            raise

        consent = new_consent.to_consent(
            consent_id=str(row["id"]),
            code=code,
            created_at=row.get("created_at") or created_at,
        )
        self._commit(active=[consent, *self._active], clear_empty=True)
        logger.info("Consent %s saved", consent.id)
        return consent

    async def archive(self, consent_id: str) -> Consent:
        """Archive a consent, locally first, then on the backend.

        The local move is not rolled back if the remote call fails; the
        error says so and local state may diverge until a later load.

        Raises:
            ConnectivityError: If the backend is unreachable (before any
                local change).
            NotFoundError: If the consent is unknown locally.
            SyncTimeoutError, RemoteError: If the remote call fails
                (after the local change).
        """
        await self._require_connection()

        record = next((c for c in self._active if c.id == consent_id), None)
        if record is not None:
            archived = record.as_archived()
            self._commit(
                active=[c for c in self._active if c.id != consent_id],
                archived=[archived, *self._archived],
                clear_empty=True,
            )
            logger.info("Consent %s archived locally", consent_id)
        else:
            existing = next((c for c in self._archived if c.id == consent_id), None)
            if existing is None:
                raise NotFoundError(f"Consent not found: {consent_id}")
            logger.info("Consent %s already archived locally, confirming remotely", consent_id)
            archived = existing

        try:
            await with_timeout(
                self._backend.archive_consent(consent_id),
                self._settings.archive_timeout,
                "archive consent",
            )
        except SyncTimeoutError as e:
            logger.error("Timed out archiving consent %s", consent_id)
            await self._recheck_after_failure()
            raise SyncTimeoutError(
                f"Timed out archiving consent {consent_id}. {LOCAL_ARCHIVE_NOTE}",
                operation=e.operation,
                timeout=e.timeout,
            ) from e
        except RemoteError as e:
            logger.error("Backend error archiving consent %s: %s", consent_id, e)
            raise RemoteError(
                f"Error archiving consent {consent_id}: {e}. {LOCAL_ARCHIVE_NOTE}",
                e.status_code,
            ) from e
        except ConnectivityError as e:
            logger.error("Lost connection archiving consent %s: %s", consent_id, e)
            await self._recheck_after_failure()
            raise ConnectivityError(
                f"Lost connection archiving consent {consent_id}. {LOCAL_ARCHIVE_NOTE}"
            ) from e

        logger.info("Consent %s archived on the backend", consent_id)
        return archived
