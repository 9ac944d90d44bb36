"""Tests for the engine orchestrating sessions, auth and device sync."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
import time
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from conftest import API_BASE, FakeSession, Recorder, make_token
from pyhomeconnect.broadcaster import Status, Topic
from pyhomeconnect.config import EngineConfig
from pyhomeconnect.const import KEY_REMAINING_PROGRAM_TIME
from pyhomeconnect.engine import Engine
from pyhomeconnect.events import EventKind, ServerSentEvent
from pyhomeconnect.exceptions import (
    AuthDeniedError,
    AuthError,
    InvalidGrantError,
    UpstreamUnavailableError,
)


@pytest.fixture
def token_path(tmp_path: Path) -> Path:
    """Provide the refresh token file location."""
    return tmp_path / "refresh_token.json"


@pytest.fixture
def config(token_path: Path) -> EngineConfig:
    """Provide a config without delays or heartbeat."""
    return EngineConfig(
        client_id="client",
        client_secret="secret",
        base_url=API_BASE,
        token_file=str(token_path),
        heartbeat_enabled=False,
        active_program_pacing_delay=0,
        active_program_retry_delay=0,
        auth_retry_delay=0,
        max_init_attempts=2,
    )


@pytest.fixture
def engine(
    config: EngineConfig,
    recorder: Recorder,
    fake_session: FakeSession,
    sample_appliances: list,
) -> Engine:
    """Provide an engine whose network-facing parts are mocked."""
    engine = Engine(config, recorder, session=fake_session)
    engine.token_store.get_access_token = AsyncMock(return_value="access-1")
    engine.api.async_get_appliances = AsyncMock(return_value=sample_appliances)
    engine.api.async_get_status = AsyncMock(return_value=[])
    engine.api.async_get_settings = AsyncMock(return_value=[])
    engine.supervisor.subscribe_to_device_events = AsyncMock()
    engine.supervisor.subscribe_appliance = AsyncMock()
    return engine


@pytest.fixture
def authenticator():
    """Replace the device flow with one that waits until released."""
    release = asyncio.Event()

    async def authenticate():
        await release.wait()
        return make_token()

    with patch("pyhomeconnect.engine.DeviceFlowAuthenticator") as cls:
        instance = cls.return_value
        instance.authenticate = AsyncMock(side_effect=authenticate)
        yield SimpleNamespace(cls=cls, instance=instance, release=release)


async def finish_auth(engine: Engine) -> None:
    """Wait for the running device flow task."""
    task = engine._auth_task
    assert task is not None
    await task


class TestRegisterSession:
    """Tests for register_session."""

    @pytest.mark.asyncio
    async def test_stored_token(
        self,
        engine: Engine,
        recorder: Recorder,
        token_path: Path,
    ) -> None:
        """Test initialization from a saved refresh token."""
        token_path.write_text("refresh-1", encoding="utf-8")

        await engine.register_session("s1")

        assert recorder.statuses("s1") == [
            Status.INITIALIZING.value,
            Status.TOKEN_FOUND.value,
            Status.SUCCESS.value,
            Status.FETCHING_DEVICES.value,
            Status.COMPLETE.value,
        ]
        assert engine.token_store.refresh_token == "refresh-1"
        assert engine.context.is_authenticated
        assert not engine.context.is_authenticating
        (devices,) = recorder.topics(Topic.DEVICES)
        assert [d["name"] for d in devices["devices"]] == ["Oven", "Washer"]
        engine.supervisor.subscribe_to_device_events.assert_awaited_once_with(
            engine._handlers
        )
        assert engine.api.async_get_status.await_count == 2
        await engine.async_close()

    @pytest.mark.asyncio
    async def test_existing_session_reuses_auth(
        self,
        engine: Engine,
        recorder: Recorder,
        token_path: Path,
    ) -> None:
        """Test that a later session only receives the current state."""
        token_path.write_text("refresh-1", encoding="utf-8")
        await engine.register_session("s1")

        await engine.register_session("s2")

        assert recorder.statuses("s2") == [Status.SESSION_ACTIVE.value]
        assert len(recorder.topics(Topic.DEVICES, "s2")) == 1
        assert engine.api.async_get_appliances.await_count == 1
        await engine.async_close()

    @pytest.mark.asyncio
    async def test_second_session_during_auth(
        self,
        engine: Engine,
        recorder: Recorder,
        authenticator: SimpleNamespace,
        token_path: Path,
    ) -> None:
        """Test that only one device flow runs for concurrent sessions."""
        await engine.register_session("s1")
        assert engine.auth_in_progress

        await engine.register_session("s2")
        assert recorder.statuses("s2") == [Status.AUTH_IN_PROGRESS.value]

        authenticator.release.set()
        await finish_auth(engine)

        authenticator.cls.assert_called_once()
        authenticator.instance.authenticate.assert_awaited_once()
        assert recorder.statuses("s1") == [
            Status.INITIALIZING.value,
            Status.NEED_AUTH.value,
            Status.INITIALIZING_HC.value,
            Status.SUCCESS.value,
            Status.FETCHING_DEVICES.value,
            Status.COMPLETE.value,
        ]
        assert recorder.topics(Topic.AUTH_STATUS, "s1")[-1]["status"] == "success"
        assert token_path.read_text(encoding="utf-8") == "refresh-1"
        assert engine.context.is_authenticated
        await engine.async_close()

    @pytest.mark.asyncio
    async def test_denied_authorization(
        self,
        engine: Engine,
        recorder: Recorder,
        authenticator: SimpleNamespace,
    ) -> None:
        """Test that a denied request ends the flow without retrying."""
        authenticator.instance.authenticate.side_effect = AuthDeniedError("denied")

        await engine.register_session("s1")
        await finish_auth(engine)

        assert authenticator.instance.authenticate.await_count == 1
        assert recorder.statuses()[-1] == Status.AUTH_FAILED.value
        assert recorder.topics(Topic.AUTH_STATUS)[-1]["status"] == "error"
        assert not engine.context.is_authenticating
        assert not engine.context.is_authenticated
        await engine.async_close()

    @pytest.mark.asyncio
    async def test_failed_flow_retries_until_max_attempts(
        self,
        engine: Engine,
        recorder: Recorder,
        authenticator: SimpleNamespace,
    ) -> None:
        """Test that other failures are retried up to max_init_attempts."""
        authenticator.instance.authenticate.side_effect = AuthError("boom")

        await engine.register_session("s1")
        await finish_auth(engine)

        assert authenticator.instance.authenticate.await_count == 2
        assert recorder.statuses()[-1] == Status.AUTH_FAILED.value
        assert not engine.context.is_authenticating
        await engine.async_close()

    @pytest.mark.asyncio
    async def test_auth_attempts_are_rate_limited(
        self,
        engine: Engine,
        recorder: Recorder,
        authenticator: SimpleNamespace,
    ) -> None:
        """Test that a new flow is refused too soon after the last attempt."""
        engine.context.last_auth_attempt = time.time()

        await engine.register_session("s1")

        authenticator.cls.assert_not_called()
        assert recorder.statuses() == [
            Status.INITIALIZING.value,
            Status.RATE_LIMITED.value,
        ]
        assert not engine.context.is_authenticating
        await engine.async_close()

    @pytest.mark.asyncio
    async def test_initialization_failure(
        self,
        engine: Engine,
        recorder: Recorder,
        token_path: Path,
    ) -> None:
        """Test that a failing token exchange reports hc_error."""
        token_path.write_text("refresh-1", encoding="utf-8")
        engine.token_store.get_access_token.side_effect = UpstreamUnavailableError(0, "down")

        await engine.register_session("s1")

        assert recorder.statuses()[-1] == Status.HC_ERROR.value
        assert not engine.context.is_authenticated
        assert not engine.context.is_authenticating
        await engine.async_close()


class TestInvalidGrant:
    """Tests for re-authentication after the grant is revoked."""

    @pytest.mark.asyncio
    async def test_invalid_grant_restarts_device_flow(
        self,
        engine: Engine,
        recorder: Recorder,
        authenticator: SimpleNamespace,
        token_path: Path,
    ) -> None:
        """Test that a revoked token broadcasts reauth_required and starts over."""
        token_path.write_text("refresh-1", encoding="utf-8")

        async def revoked() -> str:
            await engine.token_store._notify_invalid_grant()
            raise InvalidGrantError("revoked")

        engine.token_store.get_access_token.side_effect = revoked

        await engine.register_session("s1")

        assert Status.REAUTH_REQUIRED.value in recorder.statuses()
        assert Status.HC_ERROR.value not in recorder.statuses()
        assert engine.auth_in_progress
        assert not engine.context.is_authenticated

        engine.token_store.get_access_token.side_effect = None
        authenticator.release.set()
        await finish_auth(engine)
        assert engine.context.is_authenticated
        await engine.async_close()


class TestActivePrograms:
    """Tests for request_active_programs."""

    @pytest.mark.asyncio
    async def test_not_ready(self, engine: Engine, recorder: Recorder) -> None:
        """Test that requests before authentication report hc_not_ready."""
        engine.broadcaster.register("s1")
        engine.scheduler.request_active_program = AsyncMock(return_value={})

        assert await engine.request_active_programs("s1") == {}

        assert recorder.statuses() == [Status.HC_NOT_READY.value]
        engine.scheduler.request_active_program.assert_not_awaited()
        await engine.async_close()

    @pytest.mark.asyncio
    async def test_throttle_and_force(self, engine: Engine) -> None:
        """Test the minimum interval between batches and its bypass."""
        engine.context.is_authenticated = True
        engine.scheduler.request_active_program = AsyncMock(return_value={})

        await engine.request_active_programs("s1")
        await engine.request_active_programs("s2")
        assert engine.scheduler.request_active_program.await_count == 1

        await engine.request_active_programs("s2", force=True)
        assert engine.scheduler.request_active_program.await_count == 2
        engine.scheduler.request_active_program.assert_awaited_with(
            session_id="s2", force=True
        )
        await engine.async_close()

    @pytest.mark.asyncio
    async def test_cooldown_is_never_bypassed(
        self, engine: Engine, recorder: Recorder
    ) -> None:
        """Test that force does not skip the 429 cooldown."""
        engine.broadcaster.register("s1")
        engine.context.is_authenticated = True
        engine.context.rate_limit_until = time.time() + 120
        engine.scheduler.request_active_program = AsyncMock(return_value={})

        await engine.request_active_programs("s1", force=True)

        engine.scheduler.request_active_program.assert_not_awaited()
        (payload,) = recorder.topics(Topic.INIT_STATUS)
        assert payload["status"] == Status.RATE_LIMITED.value
        assert 115 <= payload["rateLimitSeconds"] <= 120
        await engine.async_close()


class TestDevices:
    """Tests for device refresh and event handling."""

    @pytest.mark.asyncio
    async def test_refresh_before_auth(self, engine: Engine, recorder: Recorder) -> None:
        """Test that refresh_devices requires authentication."""
        engine.broadcaster.register("s1")
        await engine.refresh_devices()
        assert recorder.statuses() == [Status.HC_NOT_READY.value]
        engine.api.async_get_appliances.assert_not_awaited()
        await engine.async_close()

    @pytest.mark.asyncio
    async def test_device_list_error(self, engine: Engine, recorder: Recorder) -> None:
        """Test that a failed appliance list reports device_error."""
        engine.broadcaster.register("s1")
        engine.context.is_authenticated = True
        engine.api.async_get_appliances.side_effect = UpstreamUnavailableError(503, "busy")

        await engine.refresh_devices()

        assert recorder.statuses()[-1] == Status.DEVICE_ERROR.value
        engine.supervisor.subscribe_to_device_events.assert_not_awaited()
        await engine.async_close()

    @pytest.mark.asyncio
    async def test_refresh_ignored_while_authenticating(self, engine: Engine) -> None:
        """Test that update requests wait for authentication."""
        engine.context.is_authenticating = True
        await engine.request_refresh()
        engine.api.async_get_appliances.assert_not_awaited()
        await engine.async_close()

    @pytest.mark.asyncio
    async def test_per_appliance_streams(self, engine: Engine) -> None:
        """Test optional per-appliance subscriptions."""
        engine.config.subscribe_per_appliance = True
        engine.context.is_authenticated = True

        await engine.refresh_devices()

        subscribed = sorted(
            c.args[0] for c in engine.supervisor.subscribe_appliance.await_args_list
        )
        assert subscribed == ["ha-1", "ha-2"]
        await engine.async_close()

    @pytest.mark.asyncio
    async def test_item_events_update_registry(
        self, engine: Engine, recorder: Recorder
    ) -> None:
        """Test that STATUS events are merged and broadcast."""
        engine.broadcaster.register("s1")
        engine.context.is_authenticated = True
        await engine.refresh_devices()
        before = len(recorder.topics(Topic.DEVICES))

        event = ServerSentEvent(
            EventKind.STATUS,
            json.dumps(
                {"haId": "ha-1", "items": [{"key": KEY_REMAINING_PROGRAM_TIME, "value": 600}]}
            ),
        )
        await engine._handlers[EventKind.STATUS](event)
        await engine._handlers[EventKind.NOTIFY](
            ServerSentEvent(EventKind.NOTIFY, json.dumps({"haId": "ha-1", "items": []}))
        )

        assert engine.registry.get("ha-1").remaining_program_seconds == 600
        assert len(recorder.topics(Topic.DEVICES)) == before + 1
        await engine.async_close()

    @pytest.mark.asyncio
    async def test_connection_events(self, engine: Engine, recorder: Recorder) -> None:
        """Test that DISCONNECTED and CONNECTED flip the connected flag."""
        engine.broadcaster.register("s1")
        engine.context.is_authenticated = True
        await engine.refresh_devices()

        await engine._handlers[EventKind.DISCONNECTED](
            ServerSentEvent(EventKind.DISCONNECTED, json.dumps({"haId": "ha-2"}))
        )
        assert engine.registry.get("ha-2").connected is False

        await engine._handlers[EventKind.CONNECTED](
            ServerSentEvent(EventKind.CONNECTED, "", event_id="ha-2")
        )
        assert engine.registry.get("ha-2").connected is True

        devices = recorder.topics(Topic.DEVICES)
        await engine._handlers[EventKind.CONNECTED](
            ServerSentEvent(EventKind.CONNECTED, "", event_id="unknown")
        )
        assert recorder.topics(Topic.DEVICES) == devices
        await engine.async_close()

    @pytest.mark.asyncio
    async def test_stream_status_is_broadcast(
        self, engine: Engine, recorder: Recorder
    ) -> None:
        """Test that supervisor status changes reach the sessions."""
        engine.broadcaster.register("s1")

        engine._on_stream_status(Status.SSE_STALE, "quiet")
        await asyncio.gather(*engine._tasks)

        assert recorder.topics(Topic.INIT_STATUS) == [
            {"status": "sse_stale", "message": "quiet", "instance_id": "s1"}
        ]
        await engine.async_close()


class TestReset:
    """Tests for retry_authentication."""

    @pytest.mark.asyncio
    async def test_reset_clears_everything(
        self,
        engine: Engine,
        recorder: Recorder,
        token_path: Path,
    ) -> None:
        """Test that a manual retry drops the token and all state."""
        token_path.write_text("refresh-1", encoding="utf-8")
        await engine.register_session("s1")
        assert engine.context.is_authenticated

        await engine.retry_authentication()

        assert not token_path.exists()
        assert engine.registry.ids == []
        assert engine.broadcaster.sessions == []
        assert not engine.context.is_authenticated
        assert engine.token_store.refresh_token is None
        await engine.async_close()

    @pytest.mark.asyncio
    async def test_reset_then_register(
        self,
        engine: Engine,
        recorder: Recorder,
        authenticator: SimpleNamespace,
        token_path: Path,
    ) -> None:
        """Test that retrying with a session starts a fresh device flow."""
        token_path.write_text("refresh-1", encoding="utf-8")
        await engine.register_session("s1")

        await engine.retry_authentication("s1")

        assert engine.auth_in_progress
        assert recorder.statuses("s1")[-1] == Status.NEED_AUTH.value
        authenticator.release.set()
        await finish_auth(engine)
        await engine.async_close()

    @pytest.mark.asyncio
    async def test_reset_cancels_background_refresh(
        self,
        engine: Engine,
        token_path: Path,
        sample_appliances: list,
    ) -> None:
        """Test that a device refresh in flight cannot repopulate after a reset."""
        token_path.write_text("refresh-1", encoding="utf-8")
        await engine.register_session("s1")
        engine.supervisor.subscribe_to_device_events.reset_mock()
        gate = asyncio.Event()

        async def slow_appliances():
            await gate.wait()
            return sample_appliances

        engine.api.async_get_appliances = AsyncMock(side_effect=slow_appliances)
        task = engine._spawn(engine.refresh_devices())
        for _ in range(3):
            await asyncio.sleep(0)

        await engine.retry_authentication()
        gate.set()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert task.cancelled()
        assert engine.registry.ids == []
        engine.supervisor.subscribe_to_device_events.assert_not_awaited()
        await engine.async_close()
