"""Shared types for consentsync.

This module defines enums used by the orchestrator, the realtime
channel and the CLI.
"""

from __future__ import annotations

from enum import Enum


class LoadPhase(str, Enum):
    """Phase of the orchestrator's load cycle.

    Only IDLE accepts a new trigger; every other phase means a cycle
    (or its scheduled retry) owns the orchestrator.
    """

    IDLE = "idle"
    PROBING = "probing"
    FETCHING = "fetching"
    BACKING_OFF = "backing_off"


class ChannelStatus(str, Enum):
    """Status of a realtime push channel."""

    CONNECTING = "CONNECTING"
    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"

    @property
    def is_disconnected(self) -> bool:
        """True for statuses that should trigger a reconnect probe."""
        return self in (
            ChannelStatus.CHANNEL_ERROR,
            ChannelStatus.TIMED_OUT,
            ChannelStatus.CLOSED,
        )
