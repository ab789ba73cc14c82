"""Core module - Shared configuration, errors and types."""

from consentsync.core.config import (
    DEFAULT_PROBE_URLS,
    BackendConfig,
    SyncSettings,
    load_backend_config,
)
from consentsync.core.errors import (
    ConfigurationError,
    ConnectivityError,
    ConsentSyncError,
    NotFoundError,
    RemoteError,
    SyncTimeoutError,
    TransformError,
    with_timeout,
)
from consentsync.core.types import ChannelStatus, LoadPhase

__all__ = [
    # Config
    "DEFAULT_PROBE_URLS",
    "BackendConfig",
    "SyncSettings",
    "load_backend_config",
    # Errors
    "ConfigurationError",
    "ConnectivityError",
    "ConsentSyncError",
    "NotFoundError",
    "RemoteError",
    "SyncTimeoutError",
    "TransformError",
    "with_timeout",
    # Types
    "ChannelStatus",
    "LoadPhase",
]
