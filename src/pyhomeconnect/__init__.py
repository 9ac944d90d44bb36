"""Python library keeping Home Connect appliances in sync for many sessions."""

# Import main classes for easier access
from .api import HomeConnectApi
from .auth import DeviceFlowAuthenticator, TokenStore
from .broadcaster import SessionBroadcaster, Status, Topic
from .config import EngineConfig, set_log_level
from .engine import Engine
from .events import EventItem, EventKind, ServerSentEvent
from .models import Appliance, DeviceCode, SessionContext, Token  # Expose models
from .registry import DeviceRegistry, appears_active, is_connected
from .scheduler import ActiveProgramScheduler
from .storage import RefreshTokenFile
from .supervisor import EventStreamSupervisor

# Import exceptions for easier handling
from .exceptions import (
    ApiError,
    AuthDeniedError,
    AuthError,
    AuthTimeout,
    AuthTransientError,
    ConfigError,
    DataUnavailableError,
    DeviceCodeExpiredError,
    HomeConnectError,
    InvalidGrantError,
    RateLimitedError,
    UpstreamUnavailableError,
)

__version__ = "0.1.0"

# Define what gets imported with 'from pyhomeconnect import *'
__all__ = [
    "ActiveProgramScheduler",
    "ApiError",
    "Appliance",
    "AuthDeniedError",
    "AuthError",
    "AuthTimeout",
    "AuthTransientError",
    "ConfigError",
    "DataUnavailableError",
    "DeviceCodeExpiredError",
    "DeviceFlowAuthenticator",
    "DeviceCode",
    "DeviceRegistry",
    "Engine",
    "EngineConfig",
    "EventItem",
    "EventKind",
    "EventStreamSupervisor",
    "HomeConnectApi",
    "HomeConnectError",
    "InvalidGrantError",
    "RateLimitedError",
    "RefreshTokenFile",
    "ServerSentEvent",
    "SessionBroadcaster",
    "SessionContext",
    "Status",
    "Token",
    "TokenStore",
    "Topic",
    "UpstreamUnavailableError",
    "__version__",
    "appears_active",
    "is_connected",
    "set_log_level",
]
