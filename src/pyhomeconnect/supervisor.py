"""Supervision of the Home Connect event streams.

The supervisor owns at most one global stream and any number of
per-appliance streams. It watches stream liveness through a heartbeat
monitor fed by item events, recreates streams after failures with a backoff
that depends on the kind of failure, and recreates every stream when the
access token rotates.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from enum import Enum
import inspect
import logging
import time

from .auth import TokenStore
from .broadcaster import Status
from .const import (
    APPLIANCE_EVENTS_ENDPOINT,
    BASE_URL,
    EVENTS_ENDPOINT,
    GLOBAL_STREAM_ID,
    HEARTBEAT_CHECK_INTERVAL,
    HEARTBEAT_STALE_THRESHOLD,
    PRE_SUBSCRIBE_REFRESH_MAX_AGE,
    STREAM_AUTH_RECONNECT_DELAY,
    STREAM_RECONNECT_DELAY,
)
from .events import DispatchTable, EventKind, ServerSentEvent
from .exceptions import (
    HTTP_FORBIDDEN,
    HTTP_TOO_MANY_REQUESTS,
    HTTP_UNAUTHORIZED,
    HomeConnectError,
    InvalidGrantError,
)
from .models import Token
from .sse import EventStream, StreamState, classify_stream_error

_LOGGER = logging.getLogger(__name__)

StatusCallback = Callable[[Status, str], None]

# Only item events count as liveness; KEEP-ALIVE frames do not
_LIVENESS_KINDS = frozenset({EventKind.STATUS, EventKind.NOTIFY, EventKind.EVENT})


class ReconnectKind(Enum):
    """Why a reconnect was scheduled."""

    AUTH = "auth"
    TRANSIENT = "transient"


class EventStreamSupervisor:
    """Keeps the global and per-appliance event streams alive."""

    def __init__(
        self,
        token_store: TokenStore,
        base_url: str = BASE_URL,
        on_status: StatusCallback | None = None,
        heartbeat_enabled: bool = True,
        heartbeat_interval: float = HEARTBEAT_CHECK_INTERVAL,
        stale_threshold: float = HEARTBEAT_STALE_THRESHOLD,
        pre_subscribe_refresh_max_age: float = PRE_SUBSCRIBE_REFRESH_MAX_AGE,
        reconnect_delay: float = STREAM_RECONNECT_DELAY,
        auth_reconnect_delay: float = STREAM_AUTH_RECONNECT_DELAY,
    ) -> None:
        """Initialize the supervisor and listen for token rotations."""
        self._token_store = token_store
        self._base_url = base_url
        self._on_status = on_status
        self.heartbeat_enabled = heartbeat_enabled
        self.heartbeat_interval = heartbeat_interval
        self.stale_threshold = stale_threshold
        self.pre_subscribe_refresh_max_age = pre_subscribe_refresh_max_age
        self.reconnect_delay = reconnect_delay
        self.auth_reconnect_delay = auth_reconnect_delay

        self._streams: dict[str, EventStream] = {}
        self._handlers: DispatchTable | None = None
        self._subscribed = False
        self._refreshing = False

        self._reconnect_task: asyncio.Task[None] | None = None
        self._pending_reconnect: set[str] = set()

        self._heartbeat_task: asyncio.Task[None] | None = None
        self._last_event_at: float | None = None
        self._heartbeat_armed = False
        self._heartbeat_stale = False

        self._unregister_rotation = token_store.add_rotation_listener(
            self._on_token_rotated
        )

    @property
    def subscribed(self) -> bool:
        """Return True once the global subscription is established."""
        return self._subscribed

    @property
    def stream_ids(self) -> list[str]:
        """Return the ids of the streams currently owned."""
        return list(self._streams)

    @property
    def is_stale(self) -> bool:
        """Return True while the heartbeat considers the streams stale."""
        return self._heartbeat_stale

    @property
    def reconnect_pending(self) -> bool:
        """Return True while a reconnect timer is pending."""
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def state(self, stream_id: str = GLOBAL_STREAM_ID) -> StreamState:
        """Return the state of one stream."""
        stream = self._streams.get(stream_id)
        return stream.state if stream is not None else StreamState.CLOSED

    def _notify(self, status: Status, message: str) -> None:
        if self._on_status is None:
            return
        try:
            self._on_status(status, message)
        except Exception:
            _LOGGER.exception("Error in stream status callback")

    # --- Subscription -----------------------------------------------------

    async def subscribe_to_device_events(self, handlers: DispatchTable) -> None:
        """Ensure the global stream exists and routes events to ``handlers``.

        Calling again with the same dispatch table is a no-op; a different
        table resets every stream and subscribes again.
        """
        handler_changed = self._handlers is not handlers
        self._handlers = handlers

        if self._subscribed and not handler_changed:
            _LOGGER.debug("Global SSE subscription already active - skipping")
            return

        _LOGGER.debug("Preparing SSE subscriptions (resetting existing channels)")
        # Claim the subscription before the first await
        previous = self._release_all()
        self._subscribed = True
        await self._close_streams(previous)

        try:
            await self._token_store.ensure_fresh(self.pre_subscribe_refresh_max_age)
        except HomeConnectError as err:
            _LOGGER.warning(
                "Pre-SSE token refresh failed - continuing with existing token: %s",
                err,
            )

        _LOGGER.info("Subscribing to global device events...")
        await self._open_stream(GLOBAL_STREAM_ID)
        if self.heartbeat_enabled:
            self.start_heartbeat_monitor()

    async def subscribe_appliance(self, ha_id: str) -> None:
        """Ensure a per-appliance stream exists for ``ha_id``."""
        if self._handlers is None:
            _LOGGER.error("No event handlers registered - cannot subscribe %s", ha_id)
            return
        if ha_id in self._streams:
            _LOGGER.debug("Appliance stream %s already active", ha_id)
            return
        await self._open_stream(ha_id)

    def _stream_url(self, stream_id: str) -> str:
        if stream_id == GLOBAL_STREAM_ID:
            return self._base_url + EVENTS_ENDPOINT
        return self._base_url + APPLIANCE_EVENTS_ENDPOINT.format(ha_id=stream_id)

    async def _open_stream(self, stream_id: str) -> None:
        stream = EventStream(
            stream_id,
            self._stream_url(stream_id),
            self._token_store,
            self._handle_event,
            self._handle_stream_error,
        )
        self._streams[stream_id] = stream
        try:
            await stream.open()
        except InvalidGrantError:
            _LOGGER.error("Token revoked - event stream %s stays closed", stream_id)
            if self._streams.get(stream_id) is stream:
                del self._streams[stream_id]
        except HomeConnectError as err:
            _LOGGER.warning("Could not open event stream %s: %s", stream_id, err)
            self._handle_stream_error(stream_id, err)

    # --- Event routing ----------------------------------------------------

    async def _handle_event(self, event: ServerSentEvent) -> None:
        if event.kind in _LIVENESS_KINDS:
            self._mark_event()
        handler = self._handlers.get(event.kind) if self._handlers else None
        if handler is None:
            _LOGGER.debug("No handler for %s event", event.kind.value)
            return
        result = handler(event)
        if inspect.isawaitable(result):
            await result

    def _mark_event(self) -> None:
        self._last_event_at = time.monotonic()
        self._heartbeat_armed = True
        if self._heartbeat_stale:
            _LOGGER.info("SSE heartbeat recovered via incoming event")
            self._recover()

    # --- Heartbeat --------------------------------------------------------

    def start_heartbeat_monitor(self) -> None:
        """Start the periodic staleness check."""
        if not self.heartbeat_enabled:
            return
        if self._heartbeat_task is not None and not self._heartbeat_task.done():
            return
        _LOGGER.debug(
            "Starting SSE heartbeat monitor (interval=%ss, stale=%ss)",
            self.heartbeat_interval,
            self.stale_threshold,
        )
        self._last_event_at = time.monotonic()
        self._heartbeat_armed = False
        self._heartbeat_task = asyncio.create_task(self._run_heartbeat())

    def stop_heartbeat_monitor(self) -> None:
        """Stop the staleness check and reset its state."""
        task = self._heartbeat_task
        self._heartbeat_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self._heartbeat_stale = False
        self._heartbeat_armed = False
        self._last_event_at = None

    async def _run_heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            self.check_heartbeat()

    def check_heartbeat(self, now: float | None = None) -> None:
        """Compare the time since the last event with the stale threshold."""
        if not self.heartbeat_enabled:
            return
        if not self._heartbeat_armed or self._last_event_at is None:
            return
        if now is None:
            now = time.monotonic()
        silence = now - self._last_event_at

        if silence >= self.stale_threshold and not self._heartbeat_stale:
            self._heartbeat_stale = True
            minutes = round(silence / 60)
            _LOGGER.warning(
                "No SSE events received for %d minute(s) - broadcasting stale status",
                minutes,
            )
            for stream in self._streams.values():
                if stream.state is StreamState.OPEN:
                    stream.state = StreamState.DEGRADED
            self._notify(
                Status.SSE_STALE,
                f"No Home Connect events received for {minutes} minute(s)",
            )
        elif silence < self.stale_threshold and self._heartbeat_stale:
            _LOGGER.info("SSE heartbeat recovered")
            self._recover()

    def _recover(self) -> None:
        self._heartbeat_stale = False
        for stream in self._streams.values():
            if stream.state is StreamState.DEGRADED:
                stream.state = StreamState.OPEN
        self._notify(Status.SSE_RECOVERED, "Home Connect event stream recovered")

    # --- Failure handling -------------------------------------------------

    def _handle_stream_error(self, stream_id: str, err: Exception) -> None:
        """Record a failed stream and schedule a single reconnect."""
        if stream_id not in self._streams:
            _LOGGER.debug("Ignoring error from closed stream %s", stream_id)
            return
        self._pending_reconnect.add(stream_id)

        if self.reconnect_pending:
            _LOGGER.debug(
                "Reconnect already scheduled - coalescing error from %s", stream_id
            )
            return

        status = classify_stream_error(err)
        if status in (HTTP_UNAUTHORIZED, HTTP_FORBIDDEN):
            kind, delay = ReconnectKind.AUTH, self.auth_reconnect_delay
        else:
            kind, delay = ReconnectKind.TRANSIENT, self.reconnect_delay
            if status == HTTP_TOO_MANY_REQUESTS:
                _LOGGER.warning("Event stream %s rate limited", stream_id)
        _LOGGER.info(
            "Scheduling %s reconnect of event streams in %ss (status=%s)",
            kind.value,
            delay,
            status,
        )
        self._reconnect_task = asyncio.create_task(self._run_reconnect(kind, delay))

    async def _run_reconnect(self, kind: ReconnectKind, delay: float) -> None:
        await asyncio.sleep(delay)
        # Errors raised from here on schedule a fresh timer
        self._reconnect_task = None

        if kind is ReconnectKind.AUTH:
            self._refreshing = True
            try:
                await self._token_store.refresh()
            except InvalidGrantError:
                _LOGGER.error("Token revoked - event streams stay closed")
                self._pending_reconnect.clear()
                return
            except HomeConnectError as err:
                _LOGGER.warning("Token refresh for event streams failed: %s", err)
                self._reconnect_task = asyncio.create_task(
                    self._run_reconnect(ReconnectKind.TRANSIENT, self.reconnect_delay)
                )
                return
            finally:
                self._refreshing = False
            await self.recreate_streams()
            return

        await self.recreate_streams(list(self._pending_reconnect))

    async def _on_token_rotated(self, token: Token) -> None:  # noqa: ARG002
        # Streams cannot switch credentials in place. Connecting streams are
        # still waiting for this token and are left alone.
        if self._refreshing:
            return
        targets = [
            stream_id
            for stream_id, stream in self._streams.items()
            if stream.state is not StreamState.CONNECTING
        ]
        if not targets:
            return
        _LOGGER.info("Token rotated - recreating event streams")
        await self.recreate_streams(targets)

    async def recreate_streams(self, stream_ids: list[str] | None = None) -> None:
        """Close and reopen streams (all of them when ``stream_ids`` is None)."""
        targets = list(self._streams) if stream_ids is None else stream_ids
        for stream_id in targets:
            self._pending_reconnect.discard(stream_id)
            old = self._streams.pop(stream_id, None)
            if old is None:
                continue
            old.detach()
            await old.close()
            await self._open_stream(stream_id)
        if self._heartbeat_stale:
            self._last_event_at = time.monotonic()
            self._recover()

    # --- Teardown ---------------------------------------------------------

    async def close(self, stream_id: str | None = None) -> None:
        """Close one stream, or everything when ``stream_id`` is None.

        Idempotent. Callbacks are detached before each transport is closed.
        """
        if stream_id is None:
            streams = self._release_all()
        else:
            self._pending_reconnect.discard(stream_id)
            stream = self._streams.pop(stream_id, None)
            streams = [stream] if stream is not None else []
            if stream_id == GLOBAL_STREAM_ID:
                self._subscribed = False
        await self._close_streams(streams)

    def _release_all(self) -> list[EventStream]:
        """Forget every stream and timer without awaiting anything."""
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self._pending_reconnect.clear()
        self.stop_heartbeat_monitor()
        streams = list(self._streams.values())
        self._streams.clear()
        self._subscribed = False
        return streams

    async def _close_streams(self, streams: list[EventStream]) -> None:
        for stream in streams:
            stream.detach()
            try:
                await stream.close()
            except Exception:
                _LOGGER.exception("Error closing event stream %s", stream.stream_id)
        if streams:
            _LOGGER.info("Closed %d event stream(s)", len(streams))

    async def shutdown(self) -> None:
        """Close everything and stop listening for token rotations."""
        await self.close()
        self._unregister_rotation()
        self._handlers = None
