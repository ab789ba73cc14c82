"""Shared fixtures for client tests."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from consentsync.client.cache import CacheStore
from consentsync.client.store import ConnectivityFlags, KeyValueStore


class FakeClock:
    """Manually advanced clock returning epoch seconds."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Sleep replacement that records delays instead of waiting.

    Once ``block_after`` delays have been recorded, further calls block
    until cancelled, which freezes a retry loop at a known point.
    """

    def __init__(self, block_after: int | None = None) -> None:
        self.delays: list[float] = []
        self.block_after = block_after

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.block_after is not None and len(self.delays) >= self.block_after:
            await asyncio.Future()
        await asyncio.sleep(0)


async def _drain(
    condition: Callable[[], bool] | None = None,
    max_iterations: int = 5000,
) -> None:
    """Let background tasks run until ``condition`` holds (or for a while)."""
    for _ in range(max_iterations):
        if condition is not None and condition():
            return
        await asyncio.sleep(0)
    if condition is not None:
        raise AssertionError("Condition not reached while draining the event loop")


@pytest.fixture
def store(tmp_path: Path) -> Iterator[KeyValueStore]:
    """Create a persistent store in a temp directory."""
    kv = KeyValueStore(tmp_path / "state.db")
    yield kv
    kv.close()


@pytest.fixture
def flags(store: KeyValueStore) -> ConnectivityFlags:
    """Connectivity flags backed by the temp store."""
    return ConnectivityFlags(store)


@pytest.fixture
def clock() -> FakeClock:
    """A manually advanced clock."""
    return FakeClock()


@pytest.fixture
def cache(store: KeyValueStore, clock: FakeClock) -> CacheStore:
    """A cache on the temp store, driven by the fake clock."""
    return CacheStore(store, clock=clock)


@pytest.fixture
def drain() -> Callable[..., Any]:
    """Helper to run pending event loop callbacks."""
    return _drain


@pytest.fixture
def make_row() -> Callable[..., dict[str, Any]]:
    """Factory for raw consent rows as returned by the backend."""

    def factory(
        consent_id: int = 1,
        code: str = "TCF-AAAAA-11111",
        name: str = "Ana",
        age: int = 30,
        artist: str | None = "Luna",
        archived: bool = False,
        created_at: str = "2025-03-01T10:00:00+00:00",
        **overrides: Any,
    ) -> dict[str, Any]:
        row: dict[str, Any] = {
            "id": consent_id,
            "code": code,
            "client_info": {
                "name": name,
                "last_name": "Perez",
                "age": age,
                "national_id": "12345678A",
                "birth_date": "1995-01-01",
                "address": "Calle Mayor 1",
                "phone": "600000000",
                "email": "ana@example.com",
                "data_confirmed": True,
                "health_info": {"allergies": "none"},
            },
            "tutor_info": None,
            "artist_id": 7,
            "client_signature": "data:image/png;base64,AAAA",
            "tutor_signature": None,
            "archived": archived,
            "created_at": created_at,
            "updated_at": created_at,
            "artists": {"name": artist} if artist else None,
        }
        row.update(overrides)
        return row

    return factory


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    """A sleep that records delays and never blocks."""
    return RecordingSleep()


@pytest.fixture
def blocking_sleep() -> RecordingSleep:
    """A sleep that records its first delay and then blocks."""
    return RecordingSleep(block_after=1)


@pytest.fixture
def make_sleep() -> Callable[..., RecordingSleep]:
    """Factory for recording sleeps with a custom blocking point."""
    return RecordingSleep
