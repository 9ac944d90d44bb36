"""Async OAuth device flow and token management for pyhomeconnect."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
import logging
import time
from typing import Any

import aiohttp

from .const import (
    AUTH_REQUEST_TIMEOUT,
    BASE_URL,
    CONTENT_TYPE_FORM,
    DEVICE_AUTHORIZATION_ENDPOINT,
    DEVICE_FLOW_DEFAULT_INTERVAL,
    DEVICE_FLOW_SLOW_DOWN_FLOOR,
    DEVICE_FLOW_SLOW_DOWN_INCREMENT,
    GRANT_TYPE_DEVICE_CODE,
    GRANT_TYPE_REFRESH_TOKEN,
    TOKEN_ENDPOINT,
    TOKEN_REFRESH_RETRY_DELAY,
)
from .exceptions import (
    ApiError,
    AuthDeniedError,
    AuthError,
    AuthTimeout,
    DeviceCodeExpiredError,
    InvalidGrantError,
    UpstreamUnavailableError,
    api_error_for_status,
)
from .models import DeviceCode, Token
from .storage import RefreshTokenFile

_LOGGER = logging.getLogger(__name__)

HTTP_BAD_REQUEST = 400
INVALID_GRANT_ERRORS = ("invalid_grant", "invalid_request")

RotationListener = Callable[[Token], Awaitable[None]]
InvalidGrantListener = Callable[[], Awaitable[None]]


class TokenStore:
    """Holds the current token pair and keeps it refreshed.

    The store owns the shared aiohttp session, persists every rotated refresh
    token, and notifies rotation listeners so that event streams can be
    recreated with the new bearer credential.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str | None = None,
        refresh_token: str | None = None,
        base_url: str = BASE_URL,
        storage: RefreshTokenFile | None = None,
        session: aiohttp.ClientSession | None = None,
        refresh_retry_delay: float = TOKEN_REFRESH_RETRY_DELAY,
    ) -> None:
        """Initialize the token store."""
        self._client_id = client_id
        self._client_secret = client_secret
        self._base_url = base_url
        self._storage = storage
        self._refresh_retry_delay = refresh_retry_delay
        self._token: Token | None = None
        self._refresh_token = refresh_token
        self._last_refreshed_at: float | None = None
        self._refresh_task: asyncio.Task[Token] | None = None
        self._timer_task: asyncio.Task[None] | None = None
        self._rotation_listeners: list[RotationListener] = []
        self._invalid_grant_listeners: list[InvalidGrantListener] = []
        # Use provided session or create a new one
        self._session = session
        self._managed_session = session is None

    async def get_session(self) -> aiohttp.ClientSession:
        """Get or create the aiohttp session."""
        if self._session is None or self._session.closed:
            _LOGGER.debug("Creating new aiohttp ClientSession for TokenStore.")
            self._session = aiohttp.ClientSession()
            self._managed_session = True  # We created it, so we manage it
        return self._session

    async def close_session(self) -> None:
        """Cancel timers and close the aiohttp session if we own it."""
        self.cancel_scheduled_refresh()
        if self._session and not self._session.closed and self._managed_session:
            await self._session.close()
            self._session = None
            _LOGGER.debug("Managed aiohttp session closed by TokenStore.")
        elif self._session and not self._managed_session:
            _LOGGER.debug("Session provided externally, not closing.")

    @property
    def token(self) -> Token | None:
        """Return the current token pair, if any."""
        return self._token

    @property
    def refresh_token(self) -> str | None:
        """Return the current refresh token."""
        return self._refresh_token

    @property
    def last_refreshed_at(self) -> float | None:
        """Monotonic timestamp of the last successful refresh."""
        return self._last_refreshed_at

    @property
    def has_refresh_scheduled(self) -> bool:
        """Return True if an automatic refresh is pending."""
        return self._timer_task is not None and not self._timer_task.done()

    def set_refresh_token(self, refresh_token: str | None) -> None:
        """Install a refresh token loaded from storage."""
        self._refresh_token = refresh_token

    def add_rotation_listener(self, listener: RotationListener) -> Callable[[], None]:
        """Register an async callback invoked after every token rotation.

        Returns:
            A function to unregister the callback.

        """
        self._rotation_listeners.append(listener)

        def unregister() -> None:
            if listener in self._rotation_listeners:
                self._rotation_listeners.remove(listener)

        return unregister

    def add_invalid_grant_listener(
        self,
        listener: InvalidGrantListener,
    ) -> Callable[[], None]:
        """Register an async callback invoked when the refresh token is revoked.

        Returns:
            A function to unregister the callback.

        """
        self._invalid_grant_listeners.append(listener)

        def unregister() -> None:
            if listener in self._invalid_grant_listeners:
                self._invalid_grant_listeners.remove(listener)

        return unregister

    def _is_token_expired(self) -> bool:
        """Check if the access token is missing or due for refresh."""
        if self._token is None:
            return True
        return time.time() >= self._token.refresh_due_at

    async def get_access_token(self) -> str:
        """Return the current access token, refreshing if necessary."""
        if self._is_token_expired():
            _LOGGER.debug("Access token is missing or nearing expiration.")
            await self.refresh()
        if self._token is None:
            # Should not happen if refresh worked, but safety check
            err_msg = "Failed to obtain a valid access token."
            raise AuthError(err_msg)
        return self._token.access_token

    async def seed(self, token: Token) -> None:
        """Install a token obtained from the device flow."""
        _LOGGER.info("Installing token from device authorization.")
        await self._install(token)

    async def refresh(self) -> Token:
        """Exchange the refresh token for a new token pair.

        Concurrent callers share a single request to the token endpoint.

        Raises:
            InvalidGrantError: If the refresh token was permanently rejected.
            AuthError: If no refresh token is available.
            ApiError: If the request failed; a retry is scheduled.

        """
        if self._refresh_task is None:
            self._refresh_task = asyncio.create_task(self._async_refresh())
            self._refresh_task.add_done_callback(self._clear_refresh_task)
        return await asyncio.shield(self._refresh_task)

    def _clear_refresh_task(self, task: asyncio.Task[Token]) -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        # The awaiting caller may have been cancelled by the retry it scheduled
        if not task.cancelled():
            task.exception()

    async def ensure_fresh(self, max_age: float) -> bool:
        """Refresh unless the last successful refresh is younger than max_age.

        Returns:
            True if a refresh was performed.

        """
        if (
            self._last_refreshed_at is not None
            and time.monotonic() - self._last_refreshed_at < max_age
        ):
            return False
        _LOGGER.debug("Refreshing token before establishing event streams")
        await self.refresh()
        return True

    async def _async_refresh(self) -> Token:
        """Perform the refresh request and install the result."""
        if not self._refresh_token:
            err_msg = "Cannot refresh token: No refresh token available."
            raise AuthError(err_msg)

        try:
            data = await self._request_refresh()
        except InvalidGrantError:
            _LOGGER.error("Refresh token rejected, re-authentication required")
            self._token = None
            self._refresh_token = None
            self.cancel_scheduled_refresh()
            if self._storage is not None:
                self._storage.delete()
            await self._notify_invalid_grant()
            raise
        except (ApiError, AuthError) as err:
            _LOGGER.error(
                "Could not refresh tokens: %s. Retrying in %s seconds",
                err,
                self._refresh_retry_delay,
            )
            self.schedule_refresh(self._refresh_retry_delay)
            raise

        token = Token.from_response(data, previous_refresh_token=self._refresh_token)
        await self._install(token)
        _LOGGER.info("Access token refreshed successfully.")
        return token

    async def _request_refresh(self) -> dict[str, Any]:
        url = self._base_url + TOKEN_ENDPOINT
        payload = {
            "grant_type": GRANT_TYPE_REFRESH_TOKEN,
            "refresh_token": self._refresh_token,
        }
        # client_secret is optional for device-flow clients
        if self._client_secret:
            payload["client_secret"] = self._client_secret
        headers = {"Content-Type": CONTENT_TYPE_FORM}
        session = await self.get_session()

        try:
            _LOGGER.info("Refreshing access token...")
            async with session.post(
                url,
                data=payload,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=AUTH_REQUEST_TIMEOUT),
            ) as response:
                if response.status >= HTTP_BAD_REQUEST:
                    error_text = await response.text()
                    _LOGGER.error(
                        "HTTP error %s during token refresh: %s",
                        response.status,
                        error_text,
                    )
                    error_code = await _read_error_code(response)
                    if (
                        response.status == HTTP_BAD_REQUEST
                        and error_code in INVALID_GRANT_ERRORS
                    ):
                        err_msg = f"Token refresh failed: {error_code}"
                        raise InvalidGrantError(err_msg)
                    raise api_error_for_status(
                        response.status,
                        error_code or error_text,
                    )

                token_data = await response.json()
        except aiohttp.ClientError as req_err:
            # Don't clear tokens on temporary network errors
            err_msg = f"Token refresh failed: Request error - {req_err}"
            raise UpstreamUnavailableError(0, err_msg) from req_err
        except TimeoutError as timeout_err:
            err_msg = "Token refresh failed: Request timed out"
            raise UpstreamUnavailableError(0, err_msg) from timeout_err

        if "access_token" not in token_data:
            err_msg = "Token refresh failed: Missing access token in response"
            raise AuthError(err_msg)
        return token_data

    async def _install(self, token: Token) -> None:
        """Store, persist and announce a new token, then schedule its refresh."""
        self._token = token
        self._refresh_token = token.refresh_token or self._refresh_token
        self._last_refreshed_at = time.monotonic()
        if self._storage is not None and self._refresh_token:
            try:
                self._storage.save(self._refresh_token)
            except OSError:
                _LOGGER.exception("Could not persist refresh token")
        delay = token.seconds_until_refresh()
        _LOGGER.debug("Next token refresh in %.0f seconds", delay)
        self.schedule_refresh(delay)
        for listener in list(self._rotation_listeners):
            try:
                await listener(token)
            except Exception:
                _LOGGER.exception("Error in token rotation listener")

    async def _notify_invalid_grant(self) -> None:
        for listener in list(self._invalid_grant_listeners):
            try:
                await listener()
            except Exception:
                _LOGGER.exception("Error in invalid grant listener")

    def schedule_refresh(self, delay: float) -> None:
        """(Re)arm the automatic refresh timer."""
        self.cancel_scheduled_refresh()
        self._timer_task = asyncio.create_task(self._run_scheduled_refresh(delay))

    def cancel_scheduled_refresh(self) -> None:
        """Cancel the automatic refresh timer, if any."""
        task = self._timer_task
        self._timer_task = None
        # The timer may reschedule itself from inside its own task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _run_scheduled_refresh(self, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            await self.refresh()
        except InvalidGrantError:
            _LOGGER.warning("Scheduled token refresh stopped: grant revoked")
        except Exception:  # noqa: BLE001
            # A retry has already been scheduled by refresh()
            _LOGGER.debug("Scheduled token refresh failed")

    def reset(self) -> None:
        """Forget all tokens and cancel the refresh timer."""
        self.cancel_scheduled_refresh()
        self._token = None
        self._refresh_token = None
        self._last_refreshed_at = None


async def _read_error_code(response: aiohttp.ClientResponse) -> str | None:
    """Return the OAuth ``error`` field of an error response, if any."""
    try:
        error_data = await response.json(content_type=None)
    except (aiohttp.ContentTypeError, ValueError):
        return None
    if isinstance(error_data, dict):
        return error_data.get("error")
    return None


class DeviceFlowAuthenticator:
    """Performs the OAuth2 device authorization flow.

    The verification URI and user code are handed to ``on_device_code`` so the
    caller can show them; the token endpoint is then polled until the user
    approves, denies, or the code expires.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str | None = None,
        base_url: str = BASE_URL,
        session: aiohttp.ClientSession | None = None,
        on_device_code: Callable[[DeviceCode], None] | None = None,
        on_poll: Callable[[int, int, int], None] | None = None,
    ) -> None:
        """Initialize the authenticator."""
        self._client_id = client_id
        self._client_secret = client_secret
        self._base_url = base_url
        self._session = session
        self._managed_session = session is None
        self._on_device_code = on_device_code
        self._on_poll = on_poll

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._managed_session = True
        return self._session

    async def close_session(self) -> None:
        """Close the aiohttp session if it's managed by this instance."""
        if self._session and not self._session.closed and self._managed_session:
            await self._session.close()
            self._session = None

    async def request_device_code(self) -> DeviceCode:
        """Request a device code from the authorization server."""
        url = self._base_url + DEVICE_AUTHORIZATION_ENDPOINT
        headers = {"Content-Type": CONTENT_TYPE_FORM}
        session = await self._get_session()
        try:
            async with session.post(
                url,
                data={"client_id": self._client_id},
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=AUTH_REQUEST_TIMEOUT),
            ) as response:
                if response.status >= HTTP_BAD_REQUEST:
                    error_text = await response.text()
                    err_msg = (
                        f"Device authorization failed: {response.status} - {error_text}"
                    )
                    raise AuthError(err_msg)
                data = await response.json()
        except aiohttp.ClientError as req_err:
            _LOGGER.exception("Device flow initiation failed")
            err_msg = f"Device authorization failed: Request error - {req_err}"
            raise AuthError(err_msg) from req_err
        except TimeoutError as timeout_err:
            err_msg = "Device authorization failed: Request timed out"
            raise AuthError(err_msg) from timeout_err

        _LOGGER.debug("Device authorization response: %s", data)
        try:
            return DeviceCode(
                device_code=data["device_code"],
                user_code=data["user_code"],
                verification_uri=data["verification_uri"],
                expires_in=int(data["expires_in"]),
                interval=int(data.get("interval") or DEVICE_FLOW_DEFAULT_INTERVAL),
                verification_uri_complete=data.get("verification_uri_complete"),
            )
        except (KeyError, TypeError, ValueError) as err:
            err_msg = f"Device authorization failed: malformed response - {err}"
            raise AuthError(err_msg) from err

    async def authenticate(self) -> Token:
        """Run the whole device flow and return the obtained token.

        Raises:
            AuthDeniedError: If the user denied the request.
            DeviceCodeExpiredError: If the device code expired.
            AuthTimeout: If polling ran out of attempts.
            AuthError: For any other terminal failure.

        """
        _LOGGER.info("Starting headless authentication (device flow)")
        device_code = await self.request_device_code()
        _LOGGER.info(
            "Open %s and enter code %s (expires in %d minutes)",
            device_code.verification_uri,
            device_code.user_code,
            device_code.expires_in // 60,
        )
        if self._on_device_code is not None:
            self._on_device_code(device_code)

        interval = max(device_code.interval, DEVICE_FLOW_DEFAULT_INTERVAL)
        max_attempts = max(device_code.expires_in // interval, 1)
        token = await self.poll_for_token(device_code.device_code, interval, max_attempts)
        _LOGGER.info("Authentication completed successfully")
        return token

    async def poll_for_token(
        self,
        device_code: str,
        interval: int = DEVICE_FLOW_DEFAULT_INTERVAL,
        max_attempts: int = 60,
    ) -> Token:
        """Poll the token endpoint until the device code is authorized."""
        current_interval = max(interval, DEVICE_FLOW_DEFAULT_INTERVAL)
        _LOGGER.info("Starting token polling with %ss interval...", current_interval)

        for attempt in range(1, max_attempts + 1):
            await asyncio.sleep(current_interval)
            _LOGGER.debug(
                "Token polling attempt %d/%d (interval: %ss)",
                attempt,
                max_attempts,
                current_interval,
            )
            if self._on_poll is not None:
                self._on_poll(attempt, max_attempts, current_interval)

            try:
                status, data = await self._request_token(device_code)
            except (aiohttp.ClientError, TimeoutError) as err:
                _LOGGER.error("Network error during token polling: %s", err)
                continue

            if status < HTTP_BAD_REQUEST and "access_token" in data:
                _LOGGER.info("Token received successfully")
                return Token.from_response(data)

            error_code = data.get("error")
            if error_code == "authorization_pending":
                _LOGGER.info("Waiting for user authorization...")
            elif error_code == "slow_down":
                current_interval = max(
                    current_interval + DEVICE_FLOW_SLOW_DOWN_INCREMENT,
                    DEVICE_FLOW_SLOW_DOWN_FLOOR,
                )
                _LOGGER.info("Polling interval increased to %ss", current_interval)
            elif error_code == "access_denied":
                err_msg = "User denied authorization"
                raise AuthDeniedError(err_msg)
            elif error_code == "expired_token":
                err_msg = "Device code expired - please restart"
                raise DeviceCodeExpiredError(err_msg)
            else:
                description = data.get("error_description") or error_code or status
                err_msg = f"Token request failed: {description}"
                raise AuthError(err_msg)

        err_msg = f"Token polling timeout after {max_attempts} attempts"
        raise AuthTimeout(err_msg)

    async def _request_token(self, device_code: str) -> tuple[int, dict[str, Any]]:
        url = self._base_url + TOKEN_ENDPOINT
        payload = {
            "grant_type": GRANT_TYPE_DEVICE_CODE,
            "device_code": device_code,
            "client_id": self._client_id,
        }
        if self._client_secret:
            payload["client_secret"] = self._client_secret
        headers = {"Content-Type": CONTENT_TYPE_FORM}
        session = await self._get_session()
        async with session.post(
            url,
            data=payload,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=AUTH_REQUEST_TIMEOUT),
        ) as response:
            try:
                data = await response.json(content_type=None)
            except (aiohttp.ContentTypeError, ValueError):
                data = {"error": await response.text()}
            if not isinstance(data, dict):
                data = {}
            return response.status, data
