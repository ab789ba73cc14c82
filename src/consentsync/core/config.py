"""Configuration classes for consentsync.

This module defines:
- BackendConfig: How to reach the hosted backend (REST + realtime)
- SyncSettings: Timing policy for probing, caching, fetching and retrying
- load_backend_config: Build a BackendConfig from a config dict and env
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from urllib.parse import urlencode

from consentsync.core.errors import ConfigurationError

ENV_URL = "CONSENTSYNC_URL"
ENV_API_KEY = "CONSENTSYNC_API_KEY"

DEFAULT_PROBE_URLS: tuple[str, ...] = (
    "https://www.gstatic.com/generate_204",
    "https://www.apple.com/favicon.ico",
    "https://www.cloudflare.com/favicon.ico",
)


@dataclass
class BackendConfig:
    """Configuration for connecting to the hosted backend.

    Used by both the REST client (BackendClient) and the realtime
    channel (RealtimeChannel) so they share URL and credentials.

    Attributes:
        url: Base URL of the backend project (e.g. "https://abc.example.co").
        api_key: Access credential, sent as ``apikey`` and bearer token.
        timeout: Default HTTP timeout in seconds.
        verify_ssl: Whether to verify SSL certificates (default True).
        probe_table: Small reference table used for the health probe.
        archive_rpc: Name of the remote procedure that archives a record.
    """

    url: str
    api_key: str
    timeout: float = 60.0
    verify_ssl: bool = True
    probe_table: str = "config"
    archive_rpc: str = "archive_consent"

    def __post_init__(self) -> None:
        """Validate required fields and normalize the URL."""
        if not self.url or not self.api_key:
            raise ConfigurationError(
                "Backend URL and API key are required "
                f"(set {ENV_URL} and {ENV_API_KEY})"
            )
        self.url = self.url.rstrip("/")

    @property
    def rest_url(self) -> str:
        """Base URL of the REST query API."""
        return f"{self.url}/rest/v1"

    @property
    def realtime_url(self) -> str:
        """WebSocket URL of the realtime push endpoint."""
        url = self.url
        if url.startswith("https://"):
            url = "wss://" + url[8:]
        elif url.startswith("http://"):
            url = "ws://" + url[7:]
        query = urlencode({"apikey": self.api_key, "vsn": "1.0.0"})
        return f"{url}/realtime/v1/websocket?{query}"

    @property
    def is_secure(self) -> bool:
        """True if the backend is reached over HTTPS/WSS."""
        return self.url.startswith("https://")


@dataclass
class SyncSettings:
    """Timing policy for the synchronization layer.

    All durations are in seconds.

    Attributes:
        status_ttl: Debounce window for connectivity results.
        internet_probe_timeout: Per-endpoint timeout for reachability probes.
        probe_urls: External endpoints tried in order for reachability.
        backend_probe_timeout: Per-attempt timeout for the backend probe.
        backend_probe_attempts: Maximum backend probe attempts per check.
        backend_probe_initial_delay: First backoff delay between probes.
        backend_probe_max_delay: Cap on the backoff delay between probes.
        jitter: Random +/- fraction applied to every backoff delay.
        connection_ceiling: Hard ceiling on a whole connectivity check.
        fetch_timeout: Timeout for each collection fetch.
        lookup_timeout: Timeout for the artist name -> id lookup.
        insert_timeout: Timeout for inserting a new record.
        archive_timeout: Timeout for the remote archive call.
        retry_base_delay: Base delay of the load retry backoff.
        retry_max_delay: Cap on the load retry backoff.
        max_retries: Exponential retries before switching to periodic.
        periodic_retry_interval: Flat interval once retries are exhausted.
        realtime_reconnect_delay: Delay before probing after a channel drop.
        realtime_heartbeat_interval: Heartbeat interval on the push channel.
        realtime_rejoin_delay: Delay before the channel reconnects itself.
        record_ttl: TTL of cached record collections.
    """

    status_ttl: float = 10.0
    internet_probe_timeout: float = 10.0
    probe_urls: tuple[str, ...] = field(default=DEFAULT_PROBE_URLS)
    backend_probe_timeout: float = 30.0
    backend_probe_attempts: int = 10
    backend_probe_initial_delay: float = 2.0
    backend_probe_max_delay: float = 120.0
    jitter: float = 0.3
    connection_ceiling: float = 60.0
    fetch_timeout: float = 60.0
    lookup_timeout: float = 30.0
    insert_timeout: float = 45.0
    archive_timeout: float = 40.0
    retry_base_delay: float = 3.0
    retry_max_delay: float = 120.0
    max_retries: int = 15
    periodic_retry_interval: float = 300.0
    realtime_reconnect_delay: float = 30.0
    realtime_heartbeat_interval: float = 30.0
    realtime_rejoin_delay: float = 5.0
    record_ttl: int = 172800


def load_backend_config(
    config: Mapping[str, str] | None = None,
    env: Mapping[str, str] | None = None,
) -> BackendConfig:
    """Build a BackendConfig from a config dict, with environment overrides.

    Args:
        config: Values loaded from the CLI config file (keys ``url``,
            ``api_key`` and optional ``probe_table``, ``archive_rpc``).
        env: Environment mapping (defaults to ``os.environ``).

    Raises:
        ConfigurationError: If URL or API key is missing.
    """
    config = config or {}
    env = os.environ if env is None else env

    url = env.get(ENV_URL) or config.get("url", "")
    api_key = env.get(ENV_API_KEY) or config.get("api_key", "")

    extra: dict[str, str] = {}
    for key in ("probe_table", "archive_rpc"):
        if config.get(key):
            extra[key] = config[key]

    return BackendConfig(url=url, api_key=api_key, **extra)
