"""Fan-out of engine notifications to the registered client sessions."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from enum import Enum
import inspect
import logging
from typing import Any

from .models import Appliance

_LOGGER = logging.getLogger(__name__)


class Topic(str, Enum):
    """Notification channels understood by the presentation layer."""

    INIT_STATUS = "INIT_STATUS"
    AUTH_STATUS = "AUTH_STATUS"
    AUTH_INFO = "AUTH_INFO"
    DEVICES = "DEVICES"
    ACTIVE_PROGRAMS = "ACTIVE_PROGRAMS"


class Status(str, Enum):
    """Named status transitions broadcast on the INIT_STATUS topic."""

    INITIALIZING = "initializing"
    SESSION_ACTIVE = "session_active"
    TOKEN_FOUND = "token_found"
    NEED_AUTH = "need_auth"
    INITIALIZING_HC = "initializing_hc"
    SUCCESS = "success"
    FETCHING_DEVICES = "fetching_devices"
    COMPLETE = "complete"
    NO_DEVICES = "no_devices"
    DEVICE_ERROR = "device_error"
    HC_NOT_READY = "hc_not_ready"
    HC_ERROR = "hc_error"
    FETCHING_PROGRAMS = "fetching_programs"
    SSE_STALE = "sse_stale"
    SSE_RECOVERED = "sse_recovered"
    RATE_LIMITED = "rate_limited"
    AUTH_IN_PROGRESS = "auth_in_progress"
    AUTH_FAILED = "auth_failed"
    REAUTH_REQUIRED = "reauth_required"


# send(topic, payload); the payload carries the recipient in "instance_id"
SessionSender = Callable[[Topic, dict[str, Any]], Awaitable[None] | None]


class SessionBroadcaster:
    """Delivers every notification to every known session.

    Sessions are opaque ids. The set only grows until ``reset()``; there is
    no per-session filtering, each delivery is just stamped with its
    recipient so the transport can route it.
    """

    def __init__(self, send: SessionSender) -> None:
        """Initialize the broadcaster with the transport callback."""
        self._send = send
        self._sessions: dict[str, None] = {}

    @property
    def sessions(self) -> list[str]:
        """Return the registered session ids in registration order."""
        return list(self._sessions)

    def register(self, session_id: str) -> bool:
        """Add a session; return True if it was not known before."""
        if session_id in self._sessions:
            return False
        self._sessions[session_id] = None
        _LOGGER.debug("Registered session %s (%d total)", session_id, len(self._sessions))
        return True

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def reset(self) -> None:
        """Forget every session."""
        self._sessions.clear()

    async def send_to(
        self,
        session_id: str,
        topic: Topic,
        payload: dict[str, Any],
    ) -> None:
        """Deliver one notification to a single session."""
        message = dict(payload)
        message["instance_id"] = session_id
        try:
            result = self._send(topic, message)
            if inspect.isawaitable(result):
                await result
        except Exception:
            _LOGGER.exception(
                "Failed to deliver %s to session %s", topic.value, session_id
            )

    async def broadcast(self, topic: Topic, payload: dict[str, Any]) -> None:
        """Deliver a copy of ``payload`` to every registered session."""
        if not self._sessions:
            _LOGGER.debug("No sessions registered - dropping %s", topic.value)
            return
        for session_id in list(self._sessions):
            await self.send_to(session_id, topic, payload)

    async def broadcast_status(
        self,
        status: Status,
        message: str | None = None,
        **extra: Any,
    ) -> None:
        """Broadcast a named status transition on INIT_STATUS."""
        payload: dict[str, Any] = {"status": status.value}
        if message is not None:
            payload["message"] = message
        payload.update(extra)
        await self.broadcast(Topic.INIT_STATUS, payload)

    async def send_status(
        self,
        session_id: str,
        status: Status,
        message: str | None = None,
        **extra: Any,
    ) -> None:
        """Send a named status transition to one session."""
        payload: dict[str, Any] = {"status": status.value}
        if message is not None:
            payload["message"] = message
        payload.update(extra)
        await self.send_to(session_id, Topic.INIT_STATUS, payload)

    async def broadcast_devices(self, appliances: Iterable[Appliance]) -> None:
        """Broadcast the device list."""
        await self.broadcast(
            Topic.DEVICES,
            {"devices": [appliance.to_dict() for appliance in appliances]},
        )
