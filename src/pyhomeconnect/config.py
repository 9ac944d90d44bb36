"""Engine configuration and package log level control."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, fields
import logging
from typing import Any

from .const import (
    ACTIVE_PROGRAM_MAX_RETRIES,
    ACTIVE_PROGRAM_PACING_DELAY,
    ACTIVE_PROGRAM_RETRY_DELAY,
    AUTH_RETRY_DELAY,
    BASE_URL,
    DEFAULT_TOKEN_FILE,
    HEARTBEAT_CHECK_INTERVAL,
    HEARTBEAT_STALE_THRESHOLD,
    INIT_TIMEOUT,
    LOGGER_NAME,
    MAX_INIT_ATTEMPTS,
    MIN_ACTIVE_PROGRAM_INTERVAL,
    MIN_AUTH_INTERVAL,
    PRE_SUBSCRIBE_REFRESH_MAX_AGE,
    SIMULATOR_BASE_URL,
    STREAM_AUTH_RECONNECT_DELAY,
    STREAM_RECONNECT_DELAY,
)
from .exceptions import ConfigError

_LOGGER = logging.getLogger(__name__)

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "none": logging.CRITICAL + 10,
}

# Keys accepted by from_dict that map onto a differently named field
_KEY_ALIASES = {
    "clientId": "client_id",
    "client_ID": "client_id",
    "clientSecret": "client_secret",
    "client_Secret": "client_secret",
    "baseUrl": "base_url",
    "BaseURL": "base_url",
    "isSimulated": "simulated",
    "tokenFile": "token_file",
    "logLevel": "log_level",
    "loglevel": "log_level",
    "enableSSEHeartbeat": "heartbeat_enabled",
    "subscribePerAppliance": "subscribe_per_appliance",
}

# Legacy millisecond keys, converted to seconds
_MS_KEYS = {
    "sseHeartbeatCheckIntervalMs": "heartbeat_interval",
    "sseHeartbeatStaleThresholdMs": "heartbeat_stale_threshold",
    "ssePreSubscribeRefreshMs": "pre_subscribe_refresh_max_age",
}


def set_log_level(level: str | int | None) -> None:
    """Set the level of the package logger.

    Accepts a ``logging`` level number or one of ``debug``, ``info``,
    ``warn``, ``error`` and ``none`` (which silences the package).
    """
    if level is None:
        return
    if isinstance(level, int):
        logging.getLogger(LOGGER_NAME).setLevel(level)
        return
    numeric = LOG_LEVELS.get(str(level).lower())
    if numeric is None:
        _LOGGER.warning("Unknown log level '%s', keeping current level", level)
        return
    logging.getLogger(LOGGER_NAME).setLevel(numeric)


@dataclass
class EngineConfig:
    """Configuration for the synchronization engine."""

    client_id: str
    client_secret: str | None = None
    base_url: str | None = None
    simulated: bool = False
    token_file: str = DEFAULT_TOKEN_FILE
    log_level: str | None = None
    heartbeat_enabled: bool = True
    heartbeat_interval: float = HEARTBEAT_CHECK_INTERVAL
    heartbeat_stale_threshold: float = HEARTBEAT_STALE_THRESHOLD
    pre_subscribe_refresh_max_age: float = PRE_SUBSCRIBE_REFRESH_MAX_AGE
    reconnect_delay: float = STREAM_RECONNECT_DELAY
    auth_reconnect_delay: float = STREAM_AUTH_RECONNECT_DELAY
    active_program_max_retries: int = ACTIVE_PROGRAM_MAX_RETRIES
    active_program_retry_delay: float = ACTIVE_PROGRAM_RETRY_DELAY
    active_program_pacing_delay: float = ACTIVE_PROGRAM_PACING_DELAY
    min_active_program_interval: float = MIN_ACTIVE_PROGRAM_INTERVAL
    min_auth_interval: float = MIN_AUTH_INTERVAL
    init_timeout: float = INIT_TIMEOUT
    max_init_attempts: int = MAX_INIT_ATTEMPTS
    auth_retry_delay: float = AUTH_RETRY_DELAY
    subscribe_per_appliance: bool = False

    def __post_init__(self) -> None:
        """Validate the configuration."""
        if not self.client_id:
            err_msg = "A Home Connect client_id is required"
            raise ConfigError(err_msg)
        if self.max_init_attempts < 1:
            err_msg = "max_init_attempts must be at least 1"
            raise ConfigError(err_msg)
        if self.heartbeat_stale_threshold <= 0 or self.heartbeat_interval <= 0:
            err_msg = "Heartbeat interval and stale threshold must be positive"
            raise ConfigError(err_msg)

    @property
    def api_base_url(self) -> str:
        """Return the base URL requests are sent to."""
        if self.base_url:
            return self.base_url.rstrip("/")
        return SIMULATOR_BASE_URL if self.simulated else BASE_URL

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> EngineConfig:
        """Build a config from a mapping, accepting the legacy key spellings."""
        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            if key in _MS_KEYS:
                if value is not None:
                    kwargs.setdefault(_MS_KEYS[key], float(value) / 1000)
                continue
            name = _KEY_ALIASES.get(key, key)
            if name not in known:
                _LOGGER.debug("Ignoring unknown config key '%s'", key)
                continue
            # Canonical spellings win over aliases
            if key == name or name not in kwargs:
                kwargs[name] = value
        if "client_id" not in kwargs:
            err_msg = "A Home Connect client_id is required"
            raise ConfigError(err_msg)
        return cls(**kwargs)
