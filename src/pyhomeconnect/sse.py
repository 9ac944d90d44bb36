"""Server-Sent Events client for receiving Home Connect push updates."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from enum import Enum
import inspect
import logging

import aiohttp

from .auth import TokenStore
from .const import ACCEPT_EVENT_STREAM, STREAM_CONNECT_TIMEOUT
from .events import EventKind, ServerSentEvent
from .exceptions import (
    ApiError,
    HomeConnectError,
    UpstreamUnavailableError,
    api_error_for_status,
)

_LOGGER = logging.getLogger(__name__)

HTTP_BAD_REQUEST = 400

StreamEventCallback = Callable[[ServerSentEvent], Awaitable[None]]
StreamErrorCallback = Callable[[str, Exception], Awaitable[None] | None]


class StreamState(Enum):
    """Lifecycle state of one event stream."""

    CLOSED = "closed"
    CONNECTING = "connecting"
    OPEN = "open"
    DEGRADED = "degraded"


class SseParser:
    """Incremental parser turning event-stream lines into events."""

    def __init__(self, stream_id: str | None = None) -> None:
        """Initialize the parser."""
        self._stream_id = stream_id
        self._event_name: str | None = None
        self._data: list[str] = []
        self._last_id: str | None = None

    def feed_line(self, line: str) -> ServerSentEvent | None:
        """Feed one line (without terminator); return an event on dispatch."""
        line = line.rstrip("\r\n")
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None  # comment
        field, _, value = line.partition(":")
        value = value.removeprefix(" ")
        if field == "event":
            self._event_name = value
        elif field == "data":
            self._data.append(value)
        elif field == "id":
            self._last_id = value or None
        return None

    def _dispatch(self) -> ServerSentEvent | None:
        if self._event_name is None and not self._data:
            return None
        event = ServerSentEvent(
            kind=EventKind.from_name(self._event_name),
            data="\n".join(self._data),
            event_id=self._last_id,
            stream_id=self._stream_id,
        )
        self._event_name = None
        self._data = []
        return event


class EventStream:
    """One SSE connection to a Home Connect events endpoint.

    The stream fetches a fresh bearer token on every open, feeds received
    events to ``on_event`` and reports transport failures to ``on_error``.
    Reconnecting is left to the EventStreamSupervisor.

    Attributes:
        stream_id (str): "global" or the appliance id of the stream.
        url (str): Events endpoint URL.
        state (StreamState): Current lifecycle state.

    """

    def __init__(
        self,
        stream_id: str,
        url: str,
        token_store: TokenStore,
        on_event: StreamEventCallback,
        on_error: StreamErrorCallback,
    ) -> None:
        """Initialize the event stream."""
        if not inspect.iscoroutinefunction(on_event):
            err_msg = "on_event must be an async function"
            raise TypeError(err_msg)
        self.stream_id = stream_id
        self.url = url
        self.state = StreamState.CLOSED
        self._token_store = token_store
        self._on_event: StreamEventCallback | None = on_event
        self._on_error: StreamErrorCallback | None = on_error
        self._response: aiohttp.ClientResponse | None = None
        self._listener_task: asyncio.Task[None] | None = None
        self._connection_lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        """Return True while the listener is running."""
        return self._listener_task is not None and not self._listener_task.done()

    async def open(self) -> None:
        """Connect to the events endpoint and start listening.

        The access token is fetched before the connection lock is taken: a
        refresh it triggers may close this stream, and ``close`` needs the lock.

        Raises:
            ApiError: If the server rejected the connection (status classified).
            UpstreamUnavailableError: On network failures.

        """
        if self.is_open:
            _LOGGER.debug("Event stream %s already open.", self.stream_id)
            return

        self.state = StreamState.CONNECTING
        try:
            access_token = await self._token_store.get_access_token()
        except HomeConnectError:
            self.state = StreamState.CLOSED
            raise

        async with self._connection_lock:
            if self._on_event is None:
                # Closed while the token was being fetched
                self.state = StreamState.CLOSED
                _LOGGER.debug(
                    "Event stream %s closed before connecting.", self.stream_id
                )
                return
            if self.is_open:
                _LOGGER.debug("Event stream %s already open.", self.stream_id)
                return

            headers = {
                "Accept": ACCEPT_EVENT_STREAM,
                "Authorization": f"Bearer {access_token}",
            }
            session = await self._token_store.get_session()
            _LOGGER.info("Connecting to event stream: %s", self.url)
            try:
                response = await session.get(
                    self.url,
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(
                        total=None,
                        sock_connect=STREAM_CONNECT_TIMEOUT,
                    ),
                )
            except aiohttp.ClientError as err:
                self.state = StreamState.CLOSED
                err_msg = f"Event stream connection failed: {err}"
                raise UpstreamUnavailableError(0, err_msg) from err
            except TimeoutError as err:
                self.state = StreamState.CLOSED
                err_msg = "Event stream connection timed out"
                raise UpstreamUnavailableError(0, err_msg) from err

            if response.status >= HTTP_BAD_REQUEST:
                error_text = await response.text()
                response.release()
                self.state = StreamState.CLOSED
                raise api_error_for_status(response.status, error_text)

            self._response = response
            self.state = StreamState.OPEN
            self._listener_task = asyncio.create_task(self._listen(response))
            _LOGGER.info("Event stream %s established.", self.stream_id)

    async def _listen(self, response: aiohttp.ClientResponse) -> None:
        """Read the stream line by line and dispatch parsed events."""
        parser = SseParser(self.stream_id)
        try:
            async for raw_line in response.content:
                event = parser.feed_line(raw_line.decode("utf-8", errors="replace"))
                if event is None:
                    continue
                callback = self._on_event
                if callback is None:
                    # Detached during teardown
                    return
                try:
                    await callback(event)
                except Exception:
                    _LOGGER.exception("Error processing event in callback")
            err_msg = "Event stream closed by server"
            raise UpstreamUnavailableError(0, err_msg)  # noqa: TRY301
        except asyncio.CancelledError:
            _LOGGER.debug("Event stream %s listener cancelled.", self.stream_id)
            raise
        except (HomeConnectError, aiohttp.ClientError, TimeoutError) as err:
            self.state = StreamState.CLOSED
            _LOGGER.warning("Event stream %s failed: %s", self.stream_id, err)
            await self._report_error(err)
        finally:
            response.release()

    async def _report_error(self, err: Exception) -> None:
        callback = self._on_error
        if callback is None:
            return
        try:
            result = callback(self.stream_id, err)
            if inspect.isawaitable(result):
                await result
        except Exception:
            _LOGGER.exception("Error in event stream error callback")

    def detach(self) -> None:
        """Drop the callbacks so nothing is delivered during teardown."""
        self._on_event = None
        self._on_error = None

    async def close(self) -> None:
        """Detach callbacks, stop the listener and release the connection."""
        self.detach()
        async with self._connection_lock:
            task = self._listener_task
            self._listener_task = None
            if (
                task is not None
                and not task.done()
                and task is not asyncio.current_task()
            ):
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    _LOGGER.debug("Listener task successfully cancelled.")
            response = self._response
            self._response = None
            if response is not None:
                response.release()
            self.state = StreamState.CLOSED
            _LOGGER.debug("Event stream %s closed.", self.stream_id)


def classify_stream_error(err: Exception) -> int | None:
    """Return the HTTP status code carried by a stream error, if any."""
    if isinstance(err, ApiError):
        return err.status_code or None
    status = getattr(err, "status", None)
    return status if isinstance(status, int) else None
