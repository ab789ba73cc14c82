"""Persistent key-value store shared by every client instance.

This module provides:
- KeyValueStore: SQLite-backed string key/value table
- ConnectivityFlags: Typed access to the persisted connectivity flags

Architecture:
    The durable cache tier (``cache_*`` keys) and the connectivity flags
    live in the same table. Any process opening the same database file
    sees the same values, so an offline override set from the CLI is
    honoured by a running ``watch``.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from pathlib import Path

logger = logging.getLogger(__name__)

OFFLINE_MODE_KEY = "app_offline_mode"
NETWORK_UNREACHABLE_KEY = "app_network_unreachable"


class KeyValueStore:
    """SQLite-based persistent key/value store."""

    def __init__(self, db_path: Path | str) -> None:
        """Open (or create) the store.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self._db_path = str(db_path)
        if self._db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        # Lock for thread-safe database access
        self._lock = threading.RLock()

        self._conn = sqlite3.connect(
            self._db_path,
            check_same_thread=False,
            isolation_level=None,  # Autocommit mode
        )
        self._conn.row_factory = sqlite3.Row

        if self._db_path != ":memory:":
            # WAL lets several processes share the file
            self._conn.execute("PRAGMA journal_mode=WAL")

        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS kv_store (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );
        """)

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def get(self, key: str) -> str | None:
        """Get a value, or None if the key is absent."""
        with self._lock:
            cursor = self._conn.execute(
                "SELECT value FROM kv_store WHERE key = ?",
                (key,),
            )
            row = cursor.fetchone()
        return row["value"] if row else None

    def set(self, key: str, value: str) -> None:
        """Set a value (upsert)."""
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO kv_store (key, value) VALUES (?, ?)",
                (key, value),
            )

    def delete(self, key: str) -> None:
        """Remove a key. Missing keys are ignored."""
        with self._lock:
            self._conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))

    def keys(self, prefix: str = "") -> list[str]:
        """List keys starting with ``prefix``."""
        # Escape LIKE wildcards so the prefix is matched literally
        escaped = (
            prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        )
        with self._lock:
            cursor = self._conn.execute(
                "SELECT key FROM kv_store WHERE key LIKE ? ESCAPE '\\' ORDER BY key",
                (escaped + "%",),
            )
            rows = cursor.fetchall()
        return [row["key"] for row in rows]

    def delete_prefix(self, prefix: str) -> int:
        """Remove every key starting with ``prefix``.

        Returns:
            Number of keys removed.
        """
        keys = self.keys(prefix)
        with self._lock:
            self._conn.executemany(
                "DELETE FROM kv_store WHERE key = ?",
                [(key,) for key in keys],
            )
        return len(keys)


class ConnectivityFlags:
    """Persisted connectivity flags.

    - offline mode: manual override, forces every check to "offline"
    - network unreachable: set when probes are exhausted, cleared on success
    """

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    @property
    def offline_mode(self) -> bool:
        """True if the offline override is active."""
        return self._store.get(OFFLINE_MODE_KEY) == "true"

    @property
    def network_unreachable(self) -> bool:
        """True if the last probe sequence could not reach the network."""
        return self._store.get(NETWORK_UNREACHABLE_KEY) == "true"

    def mark_unreachable(self) -> None:
        """Record that the network or backend could not be reached."""
        if not self.network_unreachable:
            logger.info("Marking network as unreachable")
        self._store.set(NETWORK_UNREACHABLE_KEY, "true")

    def clear_unreachable(self) -> None:
        """Clear the unreachable flag after a successful request."""
        if self.network_unreachable:
            logger.info("Network reachable again")
            self._store.delete(NETWORK_UNREACHABLE_KEY)

    def set_offline_mode(self, active: bool) -> None:
        """Turn the offline override on or off.

        Turning it off also clears the unreachable flag, so the next check
        probes the network from a clean slate.
        """
        if active:
            self._store.set(OFFLINE_MODE_KEY, "true")
            logger.info("Offline mode enabled manually")
        else:
            self._store.delete(OFFLINE_MODE_KEY)
            self._store.delete(NETWORK_UNREACHABLE_KEY)
            logger.info("Offline mode disabled manually")
