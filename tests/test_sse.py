"""Tests for the Server-Sent Events parser and stream."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from conftest import API_BASE, FakeResponse, FakeSession
from pyhomeconnect.const import ACCEPT_EVENT_STREAM, EVENTS_ENDPOINT
from pyhomeconnect.events import EventKind
from pyhomeconnect.exceptions import (
    AuthTransientError,
    InvalidGrantError,
    RateLimitedError,
    UpstreamUnavailableError,
)
from pyhomeconnect.sse import EventStream, SseParser, StreamState, classify_stream_error

EVENTS_URL = API_BASE + EVENTS_ENDPOINT


class TestSseParser:
    """Tests for SseParser."""

    def test_dispatch_on_blank_line(self) -> None:
        """Test that an event is emitted at the blank line."""
        parser = SseParser("global")
        assert parser.feed_line("event: STATUS\n") is None
        assert parser.feed_line('data: {"haId": "ha-1"}\n') is None
        assert parser.feed_line("id: ha-1\n") is None
        event = parser.feed_line("\n")
        assert event is not None
        assert event.kind is EventKind.STATUS
        assert event.data == '{"haId": "ha-1"}'
        assert event.event_id == "ha-1"
        assert event.stream_id == "global"

    def test_multi_line_data_and_comments(self) -> None:
        """Test data line joining and comment skipping."""
        parser = SseParser()
        parser.feed_line(": keep the connection warm")
        parser.feed_line("event: NOTIFY")
        parser.feed_line("data: first")
        parser.feed_line("data:second")
        event = parser.feed_line("")
        assert event is not None
        assert event.data == "first\nsecond"

    def test_blank_line_without_event(self) -> None:
        """Test that a lone blank line emits nothing."""
        assert SseParser().feed_line("\r\n") is None

    def test_state_resets_between_events(self) -> None:
        """Test that fields do not leak into the next event."""
        parser = SseParser()
        parser.feed_line("event: STATUS")
        parser.feed_line("data: x")
        parser.feed_line("")
        parser.feed_line("event: KEEP-ALIVE")
        event = parser.feed_line("")
        assert event is not None
        assert event.kind is EventKind.KEEP_ALIVE
        assert event.data == ""


@pytest.fixture
def stream_store(mock_token_store: MagicMock, fake_session: FakeSession) -> MagicMock:
    """Provide a token store mock handing out the fake session."""
    mock_token_store.get_session.return_value = fake_session
    return mock_token_store


class TestEventStream:
    """Tests for EventStream."""

    def test_requires_async_callback(self, stream_store: MagicMock) -> None:
        """Test that a sync event callback is rejected."""
        with pytest.raises(TypeError):
            EventStream("global", EVENTS_URL, stream_store, MagicMock(), MagicMock())

    @pytest.mark.asyncio
    async def test_open_and_receive(
        self, stream_store: MagicMock, fake_session: FakeSession
    ) -> None:
        """Test connecting and delivering parsed events."""
        response = FakeResponse(
            200,
            lines=[
                b"event: KEEP-ALIVE\n",
                b"\n",
                b"event: STATUS\n",
                b'data: {"haId": "ha-1"}\n',
                b"\n",
            ],
            hold_open=True,
        )
        fake_session.add("GET", EVENTS_URL, response)
        on_event = AsyncMock()
        stream = EventStream("global", EVENTS_URL, stream_store, on_event, MagicMock())

        await stream.open()
        await asyncio.wait_for(response.content.finished.wait(), 1)

        assert stream.is_open
        assert stream.state is StreamState.OPEN
        kinds = [c.args[0].kind for c in on_event.await_args_list]
        assert kinds == [EventKind.KEEP_ALIVE, EventKind.STATUS]
        headers = fake_session.requests("GET", EVENTS_URL)[0]["headers"]
        assert headers["Authorization"] == "Bearer access-1"
        assert headers["Accept"] == ACCEPT_EVENT_STREAM

        await stream.close()
        assert stream.state is StreamState.CLOSED
        assert not stream.is_open
        assert response.released

    @pytest.mark.asyncio
    async def test_open_twice_is_noop(
        self, stream_store: MagicMock, fake_session: FakeSession
    ) -> None:
        """Test that opening an open stream makes no second request."""
        fake_session.add("GET", EVENTS_URL, FakeResponse(200, hold_open=True))
        stream = EventStream("global", EVENTS_URL, stream_store, AsyncMock(), MagicMock())

        await stream.open()
        await stream.open()

        assert len(fake_session.requests("GET", EVENTS_URL)) == 1
        await stream.close()

    @pytest.mark.asyncio
    async def test_rejected_connection(
        self, stream_store: MagicMock, fake_session: FakeSession
    ) -> None:
        """Test that an HTTP error on connect raises a classified error."""
        response = FakeResponse(401, text="unauthorized")
        fake_session.add("GET", EVENTS_URL, response)
        stream = EventStream("global", EVENTS_URL, stream_store, AsyncMock(), MagicMock())

        with pytest.raises(AuthTransientError):
            await stream.open()
        assert stream.state is StreamState.CLOSED
        assert response.released

    @pytest.mark.asyncio
    async def test_connection_error(
        self, stream_store: MagicMock, fake_session: FakeSession
    ) -> None:
        """Test that transport failures on connect raise UpstreamUnavailableError."""
        fake_session.add("GET", EVENTS_URL, aiohttp.ClientConnectionError("refused"))
        stream = EventStream("global", EVENTS_URL, stream_store, AsyncMock(), MagicMock())

        with pytest.raises(UpstreamUnavailableError):
            await stream.open()
        assert stream.state is StreamState.CLOSED

    @pytest.mark.asyncio
    async def test_server_close_reports_error(
        self, stream_store: MagicMock, fake_session: FakeSession
    ) -> None:
        """Test that the end of the stream is reported through on_error."""
        fake_session.add("GET", EVENTS_URL, FakeResponse(200, lines=[b": hi\n"]))
        on_error = MagicMock()
        stream = EventStream("global", EVENTS_URL, stream_store, AsyncMock(), on_error)

        await stream.open()
        await asyncio.wait_for(stream._listener_task, 1)

        assert stream.state is StreamState.CLOSED
        stream_id, err = on_error.call_args.args
        assert stream_id == "global"
        assert isinstance(err, UpstreamUnavailableError)

    @pytest.mark.asyncio
    async def test_callback_errors_do_not_stop_stream(
        self, stream_store: MagicMock, fake_session: FakeSession
    ) -> None:
        """Test that a failing event callback is logged and skipped."""
        response = FakeResponse(
            200,
            lines=[b"event: STATUS\n", b"\n", b"event: NOTIFY\n", b"\n"],
            hold_open=True,
        )
        fake_session.add("GET", EVENTS_URL, response)
        on_event = AsyncMock(side_effect=[RuntimeError("boom"), None])
        stream = EventStream("global", EVENTS_URL, stream_store, on_event, MagicMock())

        await stream.open()
        await asyncio.wait_for(response.content.finished.wait(), 1)

        assert on_event.await_count == 2
        assert stream.is_open
        await stream.close()

    @pytest.mark.asyncio
    async def test_close_detaches_callbacks(
        self, stream_store: MagicMock, fake_session: FakeSession
    ) -> None:
        """Test that nothing is reported after close."""
        fake_session.add("GET", EVENTS_URL, FakeResponse(200, hold_open=True))
        on_error = MagicMock()
        stream = EventStream("global", EVENTS_URL, stream_store, AsyncMock(), on_error)

        await stream.open()
        await stream.close()
        await stream.close()

        on_error.assert_not_called()
        assert stream.state is StreamState.CLOSED

    @pytest.mark.asyncio
    async def test_close_while_fetching_token(
        self, stream_store: MagicMock, fake_session: FakeSession
    ) -> None:
        """Test that a close during the token fetch completes and skips connecting."""
        fake_session.add("GET", EVENTS_URL, FakeResponse(200, hold_open=True))
        stream = EventStream("global", EVENTS_URL, stream_store, AsyncMock(), MagicMock())

        async def close_then_return_token() -> str:
            assert stream.state is StreamState.CONNECTING
            await asyncio.wait_for(stream.close(), 1)
            return "access-2"

        stream_store.get_access_token.side_effect = close_then_return_token

        await asyncio.wait_for(stream.open(), 1)

        assert fake_session.requests("GET", EVENTS_URL) == []
        assert stream.state is StreamState.CLOSED
        assert not stream.is_open

    @pytest.mark.asyncio
    async def test_token_failure_leaves_stream_closed(
        self, stream_store: MagicMock, fake_session: FakeSession
    ) -> None:
        """Test that a failed token fetch resets the state and propagates."""
        stream_store.get_access_token.side_effect = InvalidGrantError("revoked")
        stream = EventStream("global", EVENTS_URL, stream_store, AsyncMock(), MagicMock())

        with pytest.raises(InvalidGrantError):
            await stream.open()

        assert stream.state is StreamState.CLOSED
        assert fake_session.requests("GET", EVENTS_URL) == []


class TestClassifyStreamError:
    """Tests for classify_stream_error."""

    def test_classification(self) -> None:
        """Test status extraction from the supported error types."""
        assert classify_stream_error(AuthTransientError(401, "x")) == 401
        assert classify_stream_error(RateLimitedError(429, "x")) == 429
        assert classify_stream_error(UpstreamUnavailableError(0, "x")) is None
        assert classify_stream_error(RuntimeError("x")) is None
