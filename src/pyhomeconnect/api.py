"""Async REST client for the Home Connect appliance API."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiohttp

from .auth import TokenStore
from .const import (
    ACCEPT_JSON,
    ACTIVE_PROGRAM_ENDPOINT,
    API_REQUEST_TIMEOUT,
    APPLIANCES_ENDPOINT,
    BASE_URL,
    SETTINGS_ENDPOINT,
    STATUS_ENDPOINT,
)
from .exceptions import (
    ApiError,
    AuthError,
    UpstreamUnavailableError,
    api_error_for_status,
)

_LOGGER = logging.getLogger(__name__)

HTTP_BAD_REQUEST = 400
HTTP_NO_CONTENT = 204


class HomeConnectApi:
    """Thin async wrapper around the bearer-authenticated REST endpoints."""

    def __init__(self, token_store: TokenStore, base_url: str = BASE_URL) -> None:
        """Initialize the API client."""
        if not isinstance(token_store, TokenStore):
            err_msg = "token_store must be an instance of TokenStore"
            raise TypeError(err_msg)
        self.token_store = token_store
        self._base_url = base_url

    async def _async_get_api_request(
        self,
        endpoint: str,
        timeout: float = API_REQUEST_TIMEOUT,
    ) -> dict[str, Any]:
        """Make an authenticated async GET request and return its ``data``."""
        try:
            access_token = await self.token_store.get_access_token()
        except AuthError as auth_err:
            _LOGGER.error("Authentication required but failed: %s", auth_err)
            raise

        url = self._base_url + endpoint
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": ACCEPT_JSON,
        }
        session = await self.token_store.get_session()

        _LOGGER.debug("Making ASYNC GET request to %s", url)
        try:
            async with session.get(
                url,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as response:
                _LOGGER.debug("Response status code: %s", response.status)

                if response.status >= HTTP_BAD_REQUEST:
                    error_text = await response.text()
                    _LOGGER.debug(
                        "API Error Response (%s): %s", response.status, error_text
                    )
                    try:
                        # Try to parse the vendor error format
                        error_content = await response.json(content_type=None)
                        error_message = (
                            error_content.get("error", {}).get("description")
                            or error_content.get("error", {}).get("key")
                            or error_text
                        )
                    except (aiohttp.ContentTypeError, ValueError, AttributeError):
                        error_message = error_text
                    raise api_error_for_status(response.status, error_message)

                if response.status == HTTP_NO_CONTENT:
                    return {}

                body = await response.json(content_type=None)
        except ApiError:
            raise
        except (TimeoutError, asyncio.TimeoutError) as timeout_err:
            _LOGGER.error("Request timed out: GET %s", url)
            err_msg = "Request timed out"
            raise UpstreamUnavailableError(408, err_msg) from timeout_err
        except aiohttp.ClientError as req_err:
            _LOGGER.error("Request error during API request: %s", req_err)
            err_msg = f"Request error: {req_err}"
            raise UpstreamUnavailableError(0, err_msg) from req_err

        if not isinstance(body, dict):
            return {}
        return body.get("data") or {}

    async def async_get_appliances(self) -> list[dict[str, Any]]:
        """Return the raw appliance records of the account."""
        data = await self._async_get_api_request(APPLIANCES_ENDPOINT)
        appliances = data.get("homeappliances", [])
        _LOGGER.info("API response received - Found %d appliances", len(appliances))
        return appliances

    async def async_get_status(self, ha_id: str) -> list[dict[str, Any]]:
        """Return the status entries (key/value items) of one appliance."""
        data = await self._async_get_api_request(STATUS_ENDPOINT.format(ha_id=ha_id))
        return data.get("status", [])

    async def async_get_settings(self, ha_id: str) -> list[dict[str, Any]]:
        """Return the settings entries (key/value items) of one appliance."""
        data = await self._async_get_api_request(SETTINGS_ENDPOINT.format(ha_id=ha_id))
        return data.get("settings", [])

    async def async_get_active_program(self, ha_id: str) -> dict[str, Any]:
        """Return the active program of one appliance.

        Raises:
            DataUnavailableError: If no program is active (HTTP 404).
            RateLimitedError: If the request was rate limited (HTTP 429).

        """
        return await self._async_get_api_request(
            ACTIVE_PROGRAM_ENDPOINT.format(ha_id=ha_id)
        )
