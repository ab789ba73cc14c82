"""Error taxonomy for consentsync.

This module provides:
- ConsentSyncError: Base exception for every error raised by the package
- ConfigurationError: Missing or invalid startup configuration (fatal)
- ConnectivityError: No internet, or the backend is unreachable
- SyncTimeoutError: A bounded operation exceeded its deadline
- RemoteError: The backend answered with an application-level error
- TransformError: A single remote row could not be mapped to a record
- NotFoundError: A required lookup found nothing
- with_timeout: Run an awaitable under a deadline, raising SyncTimeoutError
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import Any, TypeVar

T = TypeVar("T")


class ConsentSyncError(Exception):
    """Base exception for consentsync errors."""


class ConfigurationError(ConsentSyncError):
    """Required configuration is missing. Not retryable."""


class ConnectivityError(ConsentSyncError):
    """No internet connection, or the backend cannot be reached."""


class SyncTimeoutError(ConsentSyncError, TimeoutError):
    """A bounded operation exceeded its deadline.

    Attributes:
        operation: Short name of the operation that timed out.
        timeout: Deadline in seconds.
    """

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        timeout: float | None = None,
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.timeout = timeout


class RemoteError(ConsentSyncError):
    """The backend returned an application-level error."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransformError(ConsentSyncError):
    """A remote row failed to map to the domain shape.

    Always handled locally: the row is logged and skipped.
    """

    def __init__(self, message: str, row: Any = None) -> None:
        super().__init__(message)
        self.row = row


class NotFoundError(ConsentSyncError):
    """A required lookup (e.g. artist name -> id) found nothing."""


async def with_timeout(
    awaitable: Awaitable[T],
    timeout: float,
    operation: str,
) -> T:
    """Await ``awaitable``, cancelling it once ``timeout`` seconds elapse.

    Only the wrapped operation is cancelled; callers keep whatever state
    they had before the call.

    Raises:
        SyncTimeoutError: If the deadline is exceeded.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except TimeoutError as e:
        if isinstance(e, SyncTimeoutError):
            raise
        raise SyncTimeoutError(
            f"Timed out after {timeout:.0f}s: {operation}",
            operation=operation,
            timeout=timeout,
        ) from e
