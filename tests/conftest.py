"""Pytest configuration and fixtures for pyhomeconnect tests."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from pyhomeconnect.auth import TokenStore
from pyhomeconnect.broadcaster import Topic
from pyhomeconnect.models import Token

API_BASE = "https://api.example.test"


class FakeStreamReader:
    """Minimal stand-in for ``aiohttp.StreamReader`` iterated line by line."""

    def __init__(self, lines: list[bytes], hold_open: bool = False) -> None:
        """Initialize the reader with the raw lines to deliver."""
        self._lines = lines
        self._hold_open = hold_open
        self.finished = asyncio.Event()

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for line in self._lines:
            yield line
        self.finished.set()
        if self._hold_open:
            # Keep the stream open until cancelled
            await asyncio.Event().wait()


class FakeResponse:
    """Minimal stand-in for ``aiohttp.ClientResponse``."""

    def __init__(
        self,
        status: int = 200,
        json_data: Any = None,
        text: str | None = None,
        lines: list[bytes] | None = None,
        hold_open: bool = False,
    ) -> None:
        """Initialize the response."""
        self.status = status
        self._json = json_data
        if text is None:
            text = json.dumps(json_data) if json_data is not None else ""
        self._text = text
        self.content = FakeStreamReader(lines or [], hold_open=hold_open)
        self.released = False

    async def json(self, content_type: str | None = "application/json") -> Any:  # noqa: ARG002
        if self._json is None:
            raise ValueError("No JSON body")
        return self._json

    async def text(self) -> str:
        return self._text

    def release(self) -> None:
        self.released = True

    async def __aenter__(self) -> FakeResponse:
        return self

    async def __aexit__(self, *args: object) -> None:
        self.release()


class _FakeRequest:
    """Awaitable and async context manager, like aiohttp's request helper."""

    def __init__(self, session: FakeSession, method: str, url: str) -> None:
        self._session = session
        self._method = method
        self._url = url
        self._response: FakeResponse | None = None

    async def _resolve(self) -> FakeResponse:
        self._response = self._session.next_response(self._method, self._url)
        return self._response

    def __await__(self):
        return self._resolve().__await__()

    async def __aenter__(self) -> FakeResponse:
        return await self._resolve()

    async def __aexit__(self, *args: object) -> None:
        if self._response is not None:
            self._response.release()


class FakeSession:
    """In-memory replacement for ``aiohttp.ClientSession``.

    Responses are queued per ``(method, url)``; a queued exception is raised
    instead of returning a response.
    """

    def __init__(self) -> None:
        """Initialize an empty session."""
        self.closed = False
        self.calls: list[tuple[str, str, dict[str, Any]]] = []
        self._queues: dict[tuple[str, str], deque[Any]] = defaultdict(deque)

    def add(self, method: str, url: str, *responses: Any) -> None:
        """Queue responses (or exceptions) for a method and URL."""
        self._queues[(method, url)].extend(responses)

    def next_response(self, method: str, url: str) -> FakeResponse:
        queue = self._queues.get((method, url))
        if not queue:
            raise AssertionError(f"Unexpected request: {method} {url}")
        item = queue.popleft()
        if isinstance(item, BaseException):
            raise item
        return item

    def requests(self, method: str, url: str) -> list[dict[str, Any]]:
        """Return the kwargs of every request made to a method and URL."""
        return [kw for m, u, kw in self.calls if m == method and u == url]

    def get(self, url: str, **kwargs: Any) -> _FakeRequest:
        self.calls.append(("GET", url, kwargs))
        return _FakeRequest(self, "GET", url)

    def post(self, url: str, **kwargs: Any) -> _FakeRequest:
        self.calls.append(("POST", url, kwargs))
        return _FakeRequest(self, "POST", url)

    async def close(self) -> None:
        self.closed = True


class Recorder:
    """Session sender that records every delivery."""

    def __init__(self) -> None:
        """Initialize an empty log."""
        self.sent: list[tuple[Topic, dict[str, Any]]] = []

    def __call__(self, topic: Topic, payload: dict[str, Any]) -> None:
        self.sent.append((topic, payload))

    def topics(self, topic: Topic, session_id: str | None = None) -> list[dict[str, Any]]:
        """Return the payloads sent on a topic, optionally to one session."""
        return [
            payload
            for t, payload in self.sent
            if t is topic and (session_id is None or payload["instance_id"] == session_id)
        ]

    def statuses(self, session_id: str | None = None) -> list[str]:
        """Return the INIT_STATUS values in delivery order."""
        return [
            payload["status"] for payload in self.topics(Topic.INIT_STATUS, session_id)
        ]


def make_token(
    access_token: str = "access-1",
    refresh_token: str = "refresh-1",
    expires_in: int = 3600,
) -> Token:
    """Build a token issued now."""
    return Token(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_in=expires_in,
    )


@pytest.fixture
def fake_session() -> FakeSession:
    """Provide an empty fake aiohttp session."""
    return FakeSession()


@pytest.fixture
def recorder() -> Recorder:
    """Provide a recording session sender."""
    return Recorder()


@pytest.fixture
def mock_token_store() -> MagicMock:
    """Provide a TokenStore mock handing out a fixed access token."""
    store = MagicMock(spec=TokenStore)
    store.get_session = AsyncMock()
    store.get_access_token = AsyncMock(return_value="access-1")
    store.refresh = AsyncMock(return_value=make_token())
    store.ensure_fresh = AsyncMock(return_value=False)
    store.add_rotation_listener = MagicMock(return_value=MagicMock())
    store.add_invalid_grant_listener = MagicMock(return_value=MagicMock())
    return store


@pytest.fixture
def sample_appliances() -> list[dict[str, Any]]:
    """Provide appliance records as returned by the appliance list endpoint."""
    return [
        {
            "haId": "ha-2",
            "name": "Washer",
            "type": "Washer",
            "brand": "Bosch",
            "vib": "WAW28",
            "enumber": "WAW28/01",
            "connected": True,
        },
        {
            "haId": "ha-1",
            "name": "Oven",
            "type": "Oven",
            "brand": "Siemens",
            "vib": "HB676",
            "enumber": "HB676/01",
            "connected": "online",
        },
    ]
