"""Connectivity monitoring for the backend.

This module provides:
- ConnectionStatus: Most recent connectivity result
- ConnectionMonitor: Debounced two-stage reachability probe

Probe sequence:
    offline override? ──yes──► False (no network)
          │no
    fresh result (< TTL)? ──yes──► cached result
          │no
    internet reachable? (external endpoints, first responder wins)
          │yes
    backend count probe, retried with exponential backoff + jitter
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx

from consentsync.client.retry import Sleep, retry_with_backoff
from consentsync.core.config import SyncSettings
from consentsync.core.errors import (
    ConnectivityError,
    RemoteError,
    SyncTimeoutError,
    with_timeout,
)

if TYPE_CHECKING:
    from consentsync.client.api import BackendClient
    from consentsync.client.store import ConnectivityFlags

logger = logging.getLogger(__name__)


@dataclass
class ConnectionStatus:
    """Result of the most recent connectivity check.

    Attributes:
        connected: Whether the backend was reachable.
        checked_at: Epoch seconds of the check, None if never checked.
    """

    connected: bool
    checked_at: float | None


class ConnectionMonitor:
    """Answers "can we reach the backend right now?" without hammering it.

    Results are debounced for ``settings.status_ttl`` seconds, and calls
    arriving while a probe is running share that probe.

    Usage:
        monitor = ConnectionMonitor(backend, flags)
        if await monitor.check_connection():
            ...
        await monitor.aclose()
    """

    def __init__(
        self,
        backend: BackendClient,
        flags: ConnectivityFlags,
        settings: SyncSettings | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Sleep = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the monitor.

        Args:
            backend: Backend client used for the health probe.
            flags: Persisted connectivity flags.
            settings: Timing policy.
            http_client: Client for external reachability probes.
            clock: Time source in epoch seconds.
            sleep: Awaitable sleep used between probe attempts.
            rng: Random source for backoff jitter.
        """
        self._backend = backend
        self._flags = flags
        self._settings = settings or SyncSettings()
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(follow_redirects=False)
        self._clock = clock
        self._sleep = sleep
        self._rng = rng

        self._status: ConnectionStatus | None = None
        self._inflight: asyncio.Task[bool] | None = None

    @property
    def status(self) -> ConnectionStatus | None:
        """Most recent status, or None if never checked."""
        return self._status

    def invalidate(self) -> None:
        """Forget the cached status so the next check probes again."""
        self._status = None

    async def aclose(self) -> None:
        """Cancel any running probe and release the HTTP client."""
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()
        self._inflight = None
        if self._owns_http:
            await self._http.aclose()

    async def check_connection(self, force: bool = False) -> bool:
        """Check whether the backend is reachable.

        Never raises; always resolves to a boolean.

        Args:
            force: Ignore a cached result (a probe already running is
                still shared, since it is at least as fresh).
        """
        now = self._clock()

        if self._flags.offline_mode:
            logger.debug("Offline mode active, skipping connectivity probe")
            self._status = ConnectionStatus(connected=False, checked_at=now)
            return False

        status = self._status
        if (
            not force
            and status is not None
            and now - status.checked_at < self._settings.status_ttl
        ):
            return status.connected

        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.ensure_future(self._probe())

        # Shield so one impatient caller cannot cancel the shared probe
        return await asyncio.shield(self._inflight)

    async def _probe(self) -> bool:
        try:
            connected = await self._run_probe_sequence()
        except Exception:
            logger.exception("Unexpected error while checking connectivity")
            connected = False
        self._status = ConnectionStatus(connected=connected, checked_at=self._clock())
        return connected

    async def _run_probe_sequence(self) -> bool:
        if not await self._check_internet():
            logger.warning("No internet connection available")
            self._flags.mark_unreachable()
            return False
        return await self._check_backend()

    async def _check_internet(self) -> bool:
        """Stage 1: reach any of the external endpoints."""
        timeout = self._settings.internet_probe_timeout
        for url in self._settings.probe_urls:
            try:
                await with_timeout(
                    self._http.head(
                        url,
                        params={"_": str(int(time.time() * 1000))},
                        headers={"cache-control": "no-cache"},
                        timeout=timeout,
                    ),
                    timeout,
                    f"HEAD {url}",
                )
                # Any HTTP answer proves the network works
                return True
            except (httpx.HTTPError, SyncTimeoutError) as e:
                logger.debug("Reachability probe failed for %s: %s", url, e)
        return False

    async def _check_backend(self) -> bool:
        """Stage 2: the backend health probe, with backoff."""
        settings = self._settings

        async def attempt() -> None:
            await with_timeout(
                self._backend.probe(),
                settings.backend_probe_timeout,
                "backend probe",
            )

        try:
            await retry_with_backoff(
                attempt,
                max_attempts=settings.backend_probe_attempts,
                initial_delay=settings.backend_probe_initial_delay,
                max_delay=settings.backend_probe_max_delay,
                jitter=settings.jitter,
                retryable_exceptions=(ConnectivityError, SyncTimeoutError),
                sleep=self._sleep,
                rng=self._rng,
            )
        except RemoteError as e:
            logger.error("Backend rejected connectivity probe: %s", e)
            return False
        except (ConnectivityError, SyncTimeoutError):
            logger.error("All backend connection attempts failed")
            self._flags.mark_unreachable()
            return False

        self._flags.clear_unreachable()
        logger.info("Backend connection established")
        return True
