"""Wiring of the sync components for CLI commands.

Usage:
    async with open_session(config_dir) as session:
        await session.orchestrator.load()
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import AsyncIterator, Callable, Coroutine
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

import click

from consentsync.client.api import BackendClient
from consentsync.client.cache import CacheStore
from consentsync.client.cli.config import get_state_db, load_config
from consentsync.client.connection import ConnectionMonitor
from consentsync.client.orchestrator import SyncOrchestrator
from consentsync.client.realtime import RealtimeSubscriptionManager
from consentsync.client.store import ConnectivityFlags, KeyValueStore
from consentsync.core.config import SyncSettings, load_backend_config
from consentsync.core.errors import ConsentSyncError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class Session:
    """Components shared by one CLI invocation."""

    store: KeyValueStore
    flags: ConnectivityFlags
    cache: CacheStore
    backend: BackendClient
    monitor: ConnectionMonitor
    orchestrator: SyncOrchestrator
    realtime: RealtimeSubscriptionManager | None = None


def open_store(config_dir: Path) -> KeyValueStore:
    """Open the local state database, creating the directory if needed."""
    config_dir.mkdir(parents=True, exist_ok=True)
    return KeyValueStore(get_state_db(config_dir))


@asynccontextmanager
async def open_session(
    config_dir: Path,
    with_realtime: bool = False,
) -> AsyncIterator[Session]:
    """Build the component graph from the config directory.

    Args:
        config_dir: Directory holding config.json and state.db.
        with_realtime: Also open realtime subscriptions (``watch``).

    Raises:
        ConfigurationError: If the backend URL or API key is missing.
    """
    backend_config = load_backend_config(load_config(config_dir))
    settings = SyncSettings()

    store = open_store(config_dir)
    flags = ConnectivityFlags(store)
    cache = CacheStore(store)
    backend = BackendClient(backend_config, flags)
    monitor = ConnectionMonitor(backend, flags, settings)
    realtime = (
        RealtimeSubscriptionManager(backend_config, monitor, flags, settings)
        if with_realtime
        else None
    )
    orchestrator = SyncOrchestrator(backend, cache, monitor, realtime, settings)

    try:
        yield Session(store, flags, cache, backend, monitor, orchestrator, realtime)
    finally:
        await orchestrator.close()
        if realtime is not None:
            realtime.close()
        await monitor.aclose()
        await backend.aclose()
        store.close()


def run_command(factory: Callable[[], Coroutine[Any, Any, T]]) -> T:
    """Run a command coroutine, turning package errors into CLI errors."""
    try:
        return asyncio.run(factory())
    except ConsentSyncError as e:
        logger.debug("Command failed", exc_info=True)
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
