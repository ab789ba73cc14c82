"""Two-tier TTL cache.

This module provides:
- CacheEntry: A cached value with its storage and expiry instants
- CacheStore: Read-through/write-through cache with an in-process tier
  backed by the persistent KeyValueStore

Entries expire lazily: there is no background sweep, an expired entry is
purged the next time it is read.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from consentsync.client.store import KeyValueStore

logger = logging.getLogger(__name__)

CACHE_PREFIX = "cache_"
DEFAULT_TTL = 7200  # seconds


@dataclass
class CacheEntry:
    """A cached value.

    Attributes:
        data: The cached value (JSON-serializable).
        stored_at: Epoch seconds when the entry was written.
        expires_at: Epoch seconds after which the entry is a miss.
    """

    data: Any
    stored_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        """True once ``now`` is past ``expires_at``."""
        return now > self.expires_at

    def to_json(self) -> str:
        """Serialize for the durable tier."""
        return json.dumps(
            {
                "data": self.data,
                "stored_at": self.stored_at,
                "expires_at": self.expires_at,
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> CacheEntry:
        """Parse a durable-tier record.

        Raises:
            ValueError: If the record is malformed.
        """
        try:
            payload = json.loads(raw)
            return cls(
                data=payload["data"],
                stored_at=float(payload["stored_at"]),
                expires_at=float(payload["expires_at"]),
            )
        except (TypeError, KeyError, json.JSONDecodeError) as e:
            raise ValueError(f"Malformed cache record: {e}") from e


def _is_empty(data: Any) -> bool:
    if data is None:
        return True
    if isinstance(data, (list, tuple, dict, set)) and len(data) == 0:
        return True
    return False


class CacheStore:
    """TTL cache with a fast in-process tier and a durable tier.

    Usage:
        cache = CacheStore(KeyValueStore(path))
        cache.set("app_consents_data", rows, ttl_seconds=172800)
        rows = cache.get("app_consents_data")  # None on miss
    """

    def __init__(
        self,
        store: KeyValueStore,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the cache.

        Args:
            store: Persistent store used as the durable tier.
            clock: Wall-clock source in epoch seconds.
        """
        self._store = store
        self._clock = clock
        self._memory: dict[str, CacheEntry] = {}

    def set(self, key: str, data: Any, ttl_seconds: float = DEFAULT_TTL) -> None:
        """Write ``data`` to both tiers.

        No-op when ``data`` is None or an empty collection, so an empty
        result never overwrites a good entry.
        """
        if _is_empty(data):
            logger.debug("Not caching %s: empty or null data", key)
            return

        now = self._clock()
        entry = CacheEntry(data=data, stored_at=now, expires_at=now + ttl_seconds)
        self._memory[key] = entry

        try:
            self._store.set(CACHE_PREFIX + key, entry.to_json())
        except (sqlite3.Error, TypeError, ValueError) as e:
            logger.error("Failed to persist cache entry %s: %s", key, e)

        logger.debug("Cached %s, expires in %ss", key, ttl_seconds)

    def get(self, key: str) -> Any | None:
        """Return the cached data, or None on miss or expiry. Never raises."""
        now = self._clock()

        entry = self._memory.get(key)
        if entry is not None:
            if not entry.is_expired(now):
                return entry.data
            del self._memory[key]

        try:
            raw = self._store.get(CACHE_PREFIX + key)
        except sqlite3.Error as e:
            logger.error("Failed to read cache entry %s: %s", key, e)
            return None

        if raw is None:
            return None

        try:
            entry = CacheEntry.from_json(raw)
        except ValueError as e:
            logger.warning("Discarding cache entry %s: %s", key, e)
            self._purge_durable(key)
            return None

        if entry.is_expired(now):
            logger.debug("Cache entry %s expired", key)
            self._purge_durable(key)
            return None

        # Rehydrate the fast tier
        self._memory[key] = entry
        return entry.data

    def get_entry(self, key: str) -> CacheEntry | None:
        """Return the full entry (with timestamps), or None on miss."""
        if self.get(key) is None:
            return None
        return self._memory.get(key)

    def delete(self, key: str) -> None:
        """Remove one entry from both tiers."""
        self._memory.pop(key, None)
        self._purge_durable(key)

    def clear(self) -> None:
        """Remove every cache entry, leaving other persisted keys alone."""
        self._memory.clear()
        try:
            removed = self._store.delete_prefix(CACHE_PREFIX)
        except sqlite3.Error as e:
            logger.error("Failed to clear persisted cache: %s", e)
            return
        logger.info("Cleared cache (%d persisted entries)", removed)

    def _purge_durable(self, key: str) -> None:
        try:
            self._store.delete(CACHE_PREFIX + key)
        except sqlite3.Error as e:
            logger.error("Failed to remove cache entry %s: %s", key, e)
