"""Realtime push notifications that trigger refreshes.

This module provides:
- RealtimeChannel: WebSocket client for one table's change feed
- Subscription: Handle returned by subscribe(); cancel() releases it
- RealtimeSubscriptionManager: Opens channels and turns their events and
  disconnects into refresh callbacks

Architecture:
    Backend ─push─► RealtimeChannel ─► on_change() ─► SyncOrchestrator
                          │
                 (on CLOSED / CHANNEL_ERROR / TIMED_OUT:
                  wait 30s, ConnectionMonitor probe, on_change() once)

The manager only triggers re-fetches; it never delivers deltas. Delivery
is at-least-once and may be redundant with a scheduled retry.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import ssl
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Protocol

import websockets
from websockets.exceptions import WebSocketException

from consentsync.client.retry import Sleep
from consentsync.core.config import SyncSettings
from consentsync.core.errors import ConfigurationError
from consentsync.core.types import ChannelStatus

if TYPE_CHECKING:
    from websockets.asyncio.client import ClientConnection

    from consentsync.client.connection import ConnectionMonitor
    from consentsync.client.store import ConnectivityFlags
    from consentsync.core.config import BackendConfig

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[], None]
EventCallback = Callable[[dict[str, Any]], None]
StatusCallback = Callable[[ChannelStatus], None]

JOIN_TIMEOUT = 10.0


class PushChannel(Protocol):
    """A push channel for one resource."""

    def start(self) -> None:
        """Open the channel (returns immediately)."""
        ...

    def stop(self) -> None:
        """Release the channel."""
        ...


ChannelFactory = Callable[[str, EventCallback, StatusCallback], PushChannel]


class RealtimeChannel:
    """WebSocket change feed for one table.

    Speaks the Phoenix channel protocol used by the backend's realtime
    service: join the ``realtime:changes_<table>`` topic asking for
    ``postgres_changes``, send heartbeats, and report status changes.
    When the socket drops the channel reports CLOSED, waits
    ``rejoin_delay`` and connects again.
    """

    def __init__(
        self,
        config: BackendConfig,
        resource: str,
        on_event: EventCallback,
        on_status: StatusCallback,
        schema: str = "public",
        event: str = "*",
        heartbeat_interval: float = 30.0,
        rejoin_delay: float = 5.0,
    ) -> None:
        """Initialize the channel.

        Args:
            config: Backend configuration with URL and API key.
            resource: Table to watch.
            on_event: Called with each change payload.
            on_status: Called on every status transition.
            schema: Database schema of the table.
            event: Change type filter (INSERT, UPDATE, DELETE or *).
            heartbeat_interval: Seconds between heartbeats.
            rejoin_delay: Seconds before reconnecting after a drop.
        """
        self._config = config
        self._resource = resource
        self._on_event = on_event
        self._on_status = on_status
        self._schema = schema
        self._event = event
        self._heartbeat_interval = heartbeat_interval
        self._rejoin_delay = rejoin_delay

        self._ws: ClientConnection | None = None
        self._task: asyncio.Task[None] | None = None
        self._should_run = False
        self._status = ChannelStatus.CLOSED
        self._ref = 0
        self._join_ref: str | None = None

    @property
    def topic(self) -> str:
        return f"realtime:changes_{self._resource}"

    @property
    def status(self) -> ChannelStatus:
        return self._status

    def start(self) -> None:
        """Start the connection loop as a background task."""
        if self._task and not self._task.done():
            logger.warning("RealtimeChannel for %s already running", self._resource)
            return
        self._should_run = True
        self._task = asyncio.create_task(
            self._connection_loop(), name=f"realtime-{self._resource}"
        )

    def stop(self) -> None:
        """Stop the channel; the socket is closed by the cancelled task."""
        self._should_run = False
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = None

    def _next_ref(self) -> str:
        self._ref += 1
        return str(self._ref)

    def _set_status(self, status: ChannelStatus) -> None:
        if status == self._status:
            return
        self._status = status
        logger.info("Realtime subscription status for %s: %s", self._resource, status.value)
        try:
            self._on_status(status)
        except Exception:
            logger.exception("Realtime status callback failed")

    async def _connection_loop(self) -> None:
        """Main connection loop with automatic reconnection."""
        while self._should_run:
            self._set_status(ChannelStatus.CONNECTING)
            try:
                await self._connect()
                await self._join()
                heartbeat = asyncio.create_task(self._heartbeat())
                try:
                    await self._listen_for_messages()
                finally:
                    heartbeat.cancel()
            except TimeoutError:
                self._set_status(ChannelStatus.TIMED_OUT)
            except WebSocketException as e:
                logger.debug("Realtime WebSocket error: %s", e)
            except OSError as e:
                logger.debug("Realtime connection error: %s", e)
            finally:
                await self._close_connection()

            if not self._should_run:
                break

            if not self._status.is_disconnected:
                self._set_status(ChannelStatus.CLOSED)
            logger.info(
                "Realtime channel %s reconnecting in %.0fs...",
                self._resource,
                self._rejoin_delay,
            )
            await asyncio.sleep(self._rejoin_delay)

    async def _connect(self) -> None:
        """Establish the WebSocket connection."""
        url = self._config.realtime_url
        ssl_context: ssl.SSLContext | None = None
        if url.startswith("wss://"):
            ssl_context = ssl.create_default_context()
            if not self._config.verify_ssl:
                ssl_context.check_hostname = False
                ssl_context.verify_mode = ssl.CERT_NONE

        self._ws = await websockets.connect(
            url,
            ssl=ssl_context,
            open_timeout=10,
            close_timeout=5,
        )

    async def _send(self, topic: str, event: str, payload: dict[str, Any]) -> str:
        ref = self._next_ref()
        if self._ws is not None:
            await self._ws.send(
                json.dumps({"topic": topic, "event": event, "payload": payload, "ref": ref})
            )
        return ref

    async def _join(self) -> None:
        """Join the topic and wait for the server's reply."""
        self._join_ref = await self._send(
            self.topic,
            "phx_join",
            {
                "config": {
                    "postgres_changes": [
                        {"event": self._event, "schema": self._schema, "table": self._resource}
                    ]
                }
            },
        )

        async def wait_for_reply() -> None:
            while self._ws is not None and self._status == ChannelStatus.CONNECTING:
                message = await self._ws.recv()
                if isinstance(message, bytes):
                    message = message.decode("utf-8")
                self.handle_message(message)

        await asyncio.wait_for(wait_for_reply(), timeout=JOIN_TIMEOUT)

    async def _heartbeat(self) -> None:
        with contextlib.suppress(WebSocketException):
            while self._ws is not None:
                await asyncio.sleep(self._heartbeat_interval)
                await self._send("phoenix", "heartbeat", {})

    async def _listen_for_messages(self) -> None:
        """Dispatch incoming messages until the socket closes."""
        while self._should_run and self._ws is not None:
            if self._status in (ChannelStatus.CHANNEL_ERROR, ChannelStatus.CLOSED):
                break
            try:
                message = await self._ws.recv()
            except websockets.ConnectionClosed:
                logger.info("Realtime connection closed by server")
                break
            if isinstance(message, bytes):
                message = message.decode("utf-8")
            self.handle_message(message)

    def handle_message(self, message: str) -> None:
        """Handle one incoming protocol message.

        Supported events on the channel topic:
        - phx_reply (to our join): SUBSCRIBED or CHANNEL_ERROR
        - postgres_changes: a row changed; forwarded to on_event
        - phx_error: CHANNEL_ERROR
        - phx_close: CLOSED
        """
        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            logger.warning("Invalid realtime message received: %s", message[:100])
            return

        if not isinstance(data, dict) or data.get("topic") != self.topic:
            # Heartbeat replies and other topics
            return

        event = data.get("event")
        payload = data.get("payload") or {}

        if event == "phx_reply" and data.get("ref") == self._join_ref:
            if payload.get("status") == "ok":
                self._set_status(ChannelStatus.SUBSCRIBED)
            else:
                logger.warning("Realtime join rejected: %s", payload.get("response"))
                self._set_status(ChannelStatus.CHANNEL_ERROR)
        elif event == "postgres_changes":
            logger.info("Change detected on table %s", self._resource)
            try:
                self._on_event(payload)
            except Exception:
                logger.exception("Realtime change callback failed")
        elif event == "phx_error":
            self._set_status(ChannelStatus.CHANNEL_ERROR)
        elif event == "phx_close":
            self._set_status(ChannelStatus.CLOSED)

    async def _close_connection(self) -> None:
        """Close the WebSocket connection."""
        if self._ws is not None:
            with contextlib.suppress(WebSocketException, OSError):
                await self._ws.close()
            self._ws = None


class Subscription:
    """Handle for a realtime subscription. cancel() is idempotent."""

    def __init__(
        self,
        resource: str,
        channel: PushChannel | None = None,
        on_cancel: Callable[[Subscription], None] | None = None,
    ) -> None:
        self.resource = resource
        self._channel = channel
        self._on_cancel = on_cancel
        self._cancelled = False
        self._probe_task: asyncio.Task[None] | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def inert(self) -> bool:
        """True for the no-op handle returned in offline mode."""
        return self._channel is None

    @property
    def reconnect_pending(self) -> bool:
        """True while a reconnect probe is scheduled."""
        return self._probe_task is not None and not self._probe_task.done()

    def cancel(self) -> None:
        """Release the channel and any pending reconnect probe."""
        if self._cancelled:
            return
        self._cancelled = True

        if self._channel is None:
            logger.info("Cancelling subscription for %s (offline mode)", self.resource)
            return

        self._channel.stop()
        if self._probe_task is not None and not self._probe_task.done():
            self._probe_task.cancel()
        self._probe_task = None
        if self._on_cancel is not None:
            self._on_cancel(self)
        logger.info("Cancelled realtime subscription for %s", self.resource)


class RealtimeSubscriptionManager:
    """Turns backend push notifications into refresh triggers.

    Usage:
        manager = RealtimeSubscriptionManager(config, monitor, flags)
        subscription = manager.subscribe("consents", orchestrator.on_remote_change)
        ...
        subscription.cancel()
    """

    def __init__(
        self,
        config: BackendConfig | None,
        monitor: ConnectionMonitor,
        flags: ConnectivityFlags,
        settings: SyncSettings | None = None,
        channel_factory: ChannelFactory | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        """Initialize the manager.

        Args:
            config: Backend configuration (needed by the default channel).
            monitor: Connection monitor used for reconnect probes.
            flags: Persisted connectivity flags (offline override).
            settings: Timing policy.
            channel_factory: Builds a channel for a resource; defaults to
                RealtimeChannel.
            sleep: Awaitable sleep used before reconnect probes.
        """
        if channel_factory is None and config is None:
            raise ConfigurationError(
                "A backend config or a channel factory is required"
            )
        self._config = config
        self._monitor = monitor
        self._flags = flags
        self._settings = settings or SyncSettings()
        self._channel_factory = channel_factory or self._default_channel
        self._sleep = sleep
        self._subscriptions: list[Subscription] = []

    @property
    def subscriptions(self) -> list[Subscription]:
        """Live (non-cancelled) subscriptions."""
        return list(self._subscriptions)

    def _default_channel(
        self,
        resource: str,
        on_event: EventCallback,
        on_status: StatusCallback,
    ) -> PushChannel:
        config = self._config
        if config is None:
            raise ConfigurationError("Realtime channels need a backend config")
        return RealtimeChannel(
            config,
            resource,
            on_event,
            on_status,
            heartbeat_interval=self._settings.realtime_heartbeat_interval,
            rejoin_delay=self._settings.realtime_rejoin_delay,
        )

    def subscribe(self, resource: str, on_change: ChangeCallback) -> Subscription:
        """Watch ``resource`` and call ``on_change`` when it changes.

        Must be called from a running event loop. In offline mode returns
        an inert handle and opens nothing.
        """
        if self._flags.offline_mode:
            logger.info("Realtime subscription for %s not started (offline mode)", resource)
            return Subscription(resource)

        subscription = Subscription(resource, on_cancel=self._forget)

        def on_event(payload: dict[str, Any]) -> None:
            self._notify(resource, on_change)

        def on_status(status: ChannelStatus) -> None:
            if status.is_disconnected:
                self._schedule_reconnect_probe(subscription, on_change)

        channel = self._channel_factory(resource, on_event, on_status)
        subscription._channel = channel
        self._subscriptions.append(subscription)
        channel.start()
        logger.info("Realtime subscription for %s started", resource)
        return subscription

    def close(self) -> None:
        """Cancel every live subscription."""
        for subscription in list(self._subscriptions):
            subscription.cancel()

    def _forget(self, subscription: Subscription) -> None:
        with contextlib.suppress(ValueError):
            self._subscriptions.remove(subscription)

    def _notify(self, resource: str, on_change: ChangeCallback) -> None:
        try:
            on_change()
        except Exception:
            logger.exception("Refresh callback for %s failed", resource)

    def _schedule_reconnect_probe(
        self,
        subscription: Subscription,
        on_change: ChangeCallback,
    ) -> None:
        """Schedule a single delayed connectivity probe for a dropped channel."""
        if subscription.cancelled or subscription.reconnect_pending:
            return
        delay = self._settings.realtime_reconnect_delay
        logger.info(
            "Subscription %s disconnected, probing connection in %.0fs...",
            subscription.resource,
            delay,
        )
        subscription._probe_task = asyncio.create_task(
            self._reconnect_probe(subscription, on_change, delay)
        )

    async def _reconnect_probe(
        self,
        subscription: Subscription,
        on_change: ChangeCallback,
        delay: float,
    ) -> None:
        await self._sleep(delay)
        if subscription.cancelled:
            return
        if await self._monitor.check_connection():
            logger.info("Connection back, forcing refresh of %s", subscription.resource)
            self._notify(subscription.resource, on_change)
        else:
            logger.info("Still no connection for %s subscription", subscription.resource)
