"""Engine wiring authentication, REST sync, event streams and sessions."""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
import logging
import time
from types import MappingProxyType
from typing import Any

import aiohttp

from .api import HomeConnectApi
from .auth import DeviceFlowAuthenticator, TokenStore
from .broadcaster import SessionBroadcaster, SessionSender, Status, Topic
from .config import EngineConfig, set_log_level
from .events import (
    EventItem,
    EventKind,
    ServerSentEvent,
    connection_event_ha_id,
    decode_event_items,
)
from .exceptions import (
    AuthDeniedError,
    DeviceCodeExpiredError,
    HomeConnectError,
    InvalidGrantError,
)
from .models import Appliance, DeviceCode, SessionContext, Token
from .registry import DeviceRegistry, appears_active, is_connected
from .scheduler import ActiveProgramScheduler
from .storage import RefreshTokenFile
from .supervisor import EventStreamSupervisor

_LOGGER = logging.getLogger(__name__)


class Engine:
    """Keeps the registry in sync with Home Connect for a set of sessions.

    Sessions are registered by the presentation layer; every notification is
    delivered to all of them through ``send(topic, payload)``. Only one
    authentication attempt runs at a time, tracked in the shared
    SessionContext.

    Attributes:
        config (EngineConfig): Engine configuration.
        context (SessionContext): Process-wide session state.
        token_store (TokenStore): Token holder shared by every component.
        api (HomeConnectApi): REST client.
        registry (DeviceRegistry): Latest appliance state.
        broadcaster (SessionBroadcaster): Session fan-out.
        supervisor (EventStreamSupervisor): Event stream owner.
        scheduler (ActiveProgramScheduler): Active program lookups.

    """

    def __init__(
        self,
        config: EngineConfig,
        send: SessionSender,
        session: aiohttp.ClientSession | None = None,
        context: SessionContext | None = None,
    ) -> None:
        """Initialize the engine and all of its components."""
        set_log_level(config.log_level)
        self.config = config
        self.context = context or SessionContext(
            min_auth_interval=config.min_auth_interval,
            min_active_program_interval=config.min_active_program_interval,
        )
        base_url = config.api_base_url
        self._storage = RefreshTokenFile(config.token_file)
        self.token_store = TokenStore(
            config.client_id,
            config.client_secret,
            base_url=base_url,
            storage=self._storage,
            session=session,
        )
        self.api = HomeConnectApi(self.token_store, base_url)
        self.registry = DeviceRegistry()
        self.broadcaster = SessionBroadcaster(send)
        self.supervisor = EventStreamSupervisor(
            self.token_store,
            base_url=base_url,
            on_status=self._on_stream_status,
            heartbeat_enabled=config.heartbeat_enabled,
            heartbeat_interval=config.heartbeat_interval,
            stale_threshold=config.heartbeat_stale_threshold,
            pre_subscribe_refresh_max_age=config.pre_subscribe_refresh_max_age,
            reconnect_delay=config.reconnect_delay,
            auth_reconnect_delay=config.auth_reconnect_delay,
        )
        self.scheduler = ActiveProgramScheduler(
            self.api,
            self.registry,
            self.broadcaster,
            self.context,
            max_retries=config.active_program_max_retries,
            retry_delay=config.active_program_retry_delay,
            pacing_delay=config.active_program_pacing_delay,
        )
        self._handlers = MappingProxyType(
            {
                EventKind.STATUS: self._handle_item_event,
                EventKind.NOTIFY: self._handle_item_event,
                EventKind.EVENT: self._handle_item_event,
                EventKind.CONNECTED: self._handle_connection_event,
                EventKind.DISCONNECTED: self._handle_connection_event,
            }
        )
        self._subscribed = False
        self._init_attempts = 0
        self._auth_task: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

        self.token_store.add_rotation_listener(self._on_token_rotated)
        self.token_store.add_invalid_grant_listener(self._on_invalid_grant)

    # --- Background tasks -------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _LOGGER.error("Background task failed: %s", exc, exc_info=exc)

    def _cancel_tasks(self) -> None:
        for task in list(self._tasks):
            if task is not asyncio.current_task():
                task.cancel()
        self._tasks.clear()

    @property
    def auth_in_progress(self) -> bool:
        """Return True while a device flow task is running."""
        return self._auth_task is not None and not self._auth_task.done()

    # --- Session entry points ---------------------------------------------

    async def register_session(self, session_id: str) -> None:
        """Register a session and bring it up to date.

        A session arriving while another one's authentication is running
        only receives ``auth_in_progress``; no second attempt is started.
        """
        self.broadcaster.register(session_id)
        _LOGGER.debug("Registered clients: %d", len(self.broadcaster))

        if self.context.is_authenticated:
            _LOGGER.info("Session already authenticated - using existing tokens")
            await self.broadcaster.send_status(
                session_id,
                Status.SESSION_ACTIVE,
                "Session active - using existing authentication",
            )
            await self.broadcaster.send_to(
                session_id,
                Topic.DEVICES,
                {"devices": [a.to_dict() for a in self.registry.snapshot()]},
            )
            return

        if self.context.is_authenticating:
            _LOGGER.info("Authentication already in progress for another session")
            await self.broadcaster.send_status(
                session_id, Status.AUTH_IN_PROGRESS, "Authentication in progress"
            )
            return

        self.context.is_authenticating = True
        await self.broadcaster.send_status(
            session_id, Status.INITIALIZING, "Initialization started"
        )
        await self._check_token_and_initialize()

    async def request_refresh(self) -> None:
        """Re-fetch the appliance list, status and settings."""
        if self.context.is_authenticating:
            _LOGGER.warning("Update request ignored - authentication in progress")
            return
        _LOGGER.info("Update request received - fetching devices")
        await self.refresh_devices()

    async def request_active_programs(
        self,
        session_id: str | None = None,
        force: bool = False,
    ) -> dict[str, dict[str, Any]]:
        """Throttled entry point for active program lookups.

        One global policy applies to every session: a minimum interval between
        batches (skipped with ``force``) and the 429 cooldown (never skipped).
        Results are broadcast to all sessions.
        """
        _LOGGER.info("Active program request from %s", session_id or "(no session)")
        if not self.context.is_authenticated:
            _LOGGER.warning("HomeConnect not initialized - cannot fetch active programs")
            await self.broadcaster.broadcast_status(
                Status.HC_NOT_READY, "HomeConnect not ready"
            )
            return {}

        now = time.time()
        if self.context.is_rate_limited(now):
            remaining = self.context.rate_limit_remaining(now)
            _LOGGER.info("Rate limited - %ss remaining", remaining)
            await self.broadcaster.broadcast_status(
                Status.RATE_LIMITED,
                f"Rate limit active - please wait {remaining}s",
                rateLimitSeconds=remaining,
                requested_by=session_id,
            )
            return {}

        since_last = now - self.context.last_active_program_fetch
        if not force and since_last < self.context.min_active_program_interval:
            _LOGGER.warning(
                "Throttling active program requests (%.1fs since last, minimum %ss)",
                since_last,
                self.context.min_active_program_interval,
            )
            return {}

        self.context.last_active_program_fetch = now
        return await self.scheduler.request_active_program(
            session_id=session_id, force=force
        )

    async def retry_authentication(self, session_id: str | None = None) -> None:
        """Reset everything, delete the stored token and start over."""
        _LOGGER.info("Manual authentication retry")
        await self._reset()
        if session_id is not None:
            await self.register_session(session_id)

    async def async_close(self) -> None:
        """Stop every task and close the HTTP session."""
        self._cancel_auth_task()
        self.scheduler.clear_all()
        await self.supervisor.shutdown()
        self._cancel_tasks()
        await self.token_store.close_session()
        _LOGGER.info("Engine closed")

    # --- Authentication ---------------------------------------------------

    async def _check_token_and_initialize(self) -> None:
        _LOGGER.debug("Checking for existing refresh token...")
        refresh_token = self._storage.load()
        if refresh_token:
            _LOGGER.info("Using saved refresh token - initializing HomeConnect")
            self.token_store.set_refresh_token(refresh_token)
            await self.broadcaster.broadcast_status(
                Status.TOKEN_FOUND, "Token found - initializing HomeConnect"
            )
            await self._initialize_client()
            return

        if not self.context.can_attempt_auth():
            _LOGGER.warning("Rate limit: waiting before next auth attempt")
            self.context.is_authenticating = False
            await self.broadcaster.broadcast_status(
                Status.RATE_LIMITED, "Rate limit - please wait..."
            )
            return

        await self.broadcaster.broadcast_status(
            Status.NEED_AUTH, "Authentication required"
        )
        self._start_device_flow()

    def _start_device_flow(self) -> None:
        if self.auth_in_progress:
            _LOGGER.warning("Authentication already in progress, skipping...")
            return
        self.context.is_authenticating = True
        self._init_attempts = 0
        self._auth_task = self._spawn(self._run_device_flow())

    def _cancel_auth_task(self) -> None:
        task = self._auth_task
        self._auth_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _run_device_flow(self) -> None:
        while True:
            self._init_attempts += 1
            self.context.last_auth_attempt = time.time()
            _LOGGER.info(
                "Starting headless authentication (attempt %d/%d)",
                self._init_attempts,
                self.config.max_init_attempts,
            )
            authenticator = DeviceFlowAuthenticator(
                self.config.client_id,
                self.config.client_secret,
                base_url=self.config.api_base_url,
                session=await self.token_store.get_session(),
                on_device_code=self._on_device_code,
                on_poll=self._on_poll,
            )
            try:
                token = await authenticator.authenticate()
                break
            except (AuthDeniedError, DeviceCodeExpiredError) as err:
                _LOGGER.error("Headless authentication failed: %s", err)
                await self._auth_failed(err)
                return
            except HomeConnectError as err:
                _LOGGER.error("Headless authentication failed: %s", err)
                await self.broadcaster.broadcast(
                    Topic.AUTH_STATUS,
                    {"status": "error", "message": f"Authentication failed: {err}"},
                )
                if self._init_attempts >= self.config.max_init_attempts:
                    _LOGGER.error("Max initialization attempts reached")
                    await self._auth_failed(err)
                    return
                _LOGGER.info(
                    "Will retry in %s seconds (%d/%d)",
                    self.config.auth_retry_delay,
                    self._init_attempts,
                    self.config.max_init_attempts,
                )
                await asyncio.sleep(self.config.auth_retry_delay)

        await self.broadcaster.broadcast(
            Topic.AUTH_STATUS,
            {"status": "success", "message": "Authentication successful"},
        )
        await self.token_store.seed(token)
        await self.broadcaster.broadcast_status(
            Status.INITIALIZING_HC, "Initializing HomeConnect..."
        )
        await self._initialize_client()

    async def _auth_failed(self, err: Exception) -> None:
        self.context.is_authenticating = False
        await self.broadcaster.broadcast(
            Topic.AUTH_STATUS,
            {"status": "error", "message": f"Authentication failed: {err}"},
        )
        await self.broadcaster.broadcast_status(
            Status.AUTH_FAILED, "Authentication failed - please check manually"
        )

    def _on_device_code(self, device_code: DeviceCode) -> None:
        self._spawn(
            self.broadcaster.broadcast(
                Topic.AUTH_INFO,
                {
                    "status": "waiting",
                    "verification_uri": device_code.verification_uri,
                    "user_code": device_code.user_code,
                    "verification_uri_complete": device_code.complete_link,
                    "expires_in": device_code.expires_in,
                    "interval": device_code.interval,
                    "expires_in_minutes": device_code.expires_in // 60,
                },
            )
        )

    def _on_poll(self, attempt: int, max_attempts: int, interval: int) -> None:
        self._spawn(
            self.broadcaster.broadcast(
                Topic.AUTH_STATUS,
                {
                    "status": "polling",
                    "attempt": attempt,
                    "maxAttempts": max_attempts,
                    "interval": interval,
                    "message": (
                        f"Waiting for authorization... (attempt {attempt}/{max_attempts})"
                    ),
                },
            )
        )

    async def _initialize_client(self) -> None:
        _LOGGER.info("Initializing HomeConnect with token...")
        try:
            await asyncio.wait_for(
                self.token_store.get_access_token(),
                timeout=self.config.init_timeout,
            )
        except InvalidGrantError:
            # Re-authentication was started by the invalid grant listener
            return
        except TimeoutError:
            _LOGGER.error("HomeConnect initialization timeout")
            self.context.is_authenticating = False
            await self.broadcaster.broadcast_status(
                Status.HC_ERROR, "HomeConnect error: initialization timeout"
            )
            return
        except HomeConnectError as err:
            _LOGGER.error("HomeConnect initialization failed: %s", err)
            self.context.is_authenticating = False
            await self.broadcaster.broadcast_status(
                Status.HC_ERROR, f"HomeConnect error: {err}"
            )
            return

        _LOGGER.info("HomeConnect initialized successfully")
        self.context.is_authenticated = True
        self.context.is_authenticating = False
        await self.broadcaster.broadcast_status(
            Status.SUCCESS, "Successfully initialized"
        )
        await self.refresh_devices()

    async def _on_invalid_grant(self) -> None:
        _LOGGER.warning("Stored token rejected - starting re-authentication")
        self.context.is_authenticated = False
        self.context.is_authenticating = False
        self._subscribed = False
        self.scheduler.clear_all()
        await self.broadcaster.broadcast_status(
            Status.REAUTH_REQUIRED,
            "Stored token is no longer valid - please authorize again",
        )
        await self.supervisor.close()
        self._start_device_flow()

    async def _on_token_rotated(self, token: Token) -> None:  # noqa: ARG002
        if self._subscribed:
            _LOGGER.info("Token updated post-init - refreshing device list")
            self._spawn(self.refresh_devices())
        else:
            _LOGGER.debug("Token updated during initialization")

    async def _reset(self) -> None:
        self._cancel_auth_task()
        self._cancel_tasks()
        self.scheduler.clear_all()
        await self.supervisor.close()
        self.token_store.reset()
        if self._storage.delete():
            _LOGGER.info("Old token file deleted")
        self.registry.clear()
        self.broadcaster.reset()
        self.context.reset()
        self._subscribed = False
        self._init_attempts = 0

    # --- Devices ----------------------------------------------------------

    async def refresh_devices(self) -> None:
        """Fetch the appliance list and details, then subscribe to events."""
        if not self.context.is_authenticated:
            _LOGGER.error("HomeConnect not initialized - cannot get devices")
            await self.broadcaster.broadcast_status(
                Status.HC_NOT_READY, "HomeConnect not ready"
            )
            return

        _LOGGER.info("Fetching devices from Home Connect API...")
        await self.broadcaster.broadcast_status(
            Status.FETCHING_DEVICES, "Fetching devices..."
        )
        try:
            records = await self.api.async_get_appliances()
        except HomeConnectError as err:
            _LOGGER.error("Failed to get devices: %s", err)
            await self.broadcaster.broadcast_status(
                Status.DEVICE_ERROR, f"Device error: {err}"
            )
            return

        if not records:
            _LOGGER.warning("No appliances found - check Home Connect app")
            await self.broadcaster.broadcast_status(
                Status.NO_DEVICES, "No devices found - check Home Connect app"
            )

        appliances: list[Appliance] = []
        for record in records:
            try:
                appliances.append(self.registry.apply_snapshot(record))
            except ValueError:
                _LOGGER.warning("Skipping appliance record without haId: %s", record)
        await asyncio.gather(*(self._fetch_details(a) for a in appliances))

        await self.supervisor.subscribe_to_device_events(self._handlers)
        if self.config.subscribe_per_appliance:
            for ha_id in self.registry.ids:
                await self.supervisor.subscribe_appliance(ha_id)
        self._subscribed = True

        _LOGGER.info("Device processing complete - broadcasting to sessions")
        await self.broadcaster.broadcast_devices(self.registry.snapshot())
        await self.broadcaster.broadcast_status(
            Status.COMPLETE, f"{len(appliances)} device(s) loaded"
        )

    async def _fetch_details(self, appliance: Appliance) -> None:
        connected = is_connected(appliance)
        if not connected and not appears_active(appliance):
            _LOGGER.warning("Device %s is not connected", appliance.name)
            return
        if connected:
            _LOGGER.info("Device %s is connected - fetching status", appliance.name)
        else:
            _LOGGER.info(
                "Device %s not marked connected but appears active - fetching status/settings",
                appliance.name,
            )

        for label, fetch in (
            ("Status", self.api.async_get_status),
            ("Settings", self.api.async_get_settings),
        ):
            try:
                items = await fetch(appliance.ha_id)
            except HomeConnectError as err:
                _LOGGER.error("%s error for %s: %s", label, appliance.name, err)
                continue
            self.registry.apply_events(appliance.ha_id, items)

    # --- Event stream handlers --------------------------------------------

    async def _handle_item_event(self, event: ServerSentEvent) -> None:
        batches: dict[str, list[EventItem]] = {}
        for item in decode_event_items(event):
            batches.setdefault(item.ha_id, []).append(item)

        changed = False
        for ha_id, items in batches.items():
            if self.registry.apply_events(ha_id, items):
                changed = True
        if changed:
            await self.broadcaster.broadcast_devices(self.registry.snapshot())

    async def _handle_connection_event(self, event: ServerSentEvent) -> None:
        ha_id = connection_event_ha_id(event)
        if not ha_id or ha_id not in self.registry:
            _LOGGER.debug("Ignoring %s for unknown appliance %s", event.kind.value, ha_id)
            return
        connected = event.kind is EventKind.CONNECTED
        _LOGGER.info("Appliance %s %s", ha_id, "connected" if connected else "disconnected")
        self.registry.apply_snapshot({"haId": ha_id, "connected": connected})
        await self.broadcaster.broadcast_devices(self.registry.snapshot())

    def _on_stream_status(self, status: Status, message: str) -> None:
        self._spawn(self.broadcaster.broadcast_status(status, message))
