"""Constants for pyhomeconnect."""

# Base URLs for the Home Connect API
BASE_URL = "https://api.home-connect.com"
SIMULATOR_BASE_URL = "https://simulator.home-connect.com"

# OAuth2 endpoints
DEVICE_AUTHORIZATION_ENDPOINT = "/security/oauth/device_authorization"
TOKEN_ENDPOINT = "/security/oauth/token"

GRANT_TYPE_DEVICE_CODE = "device_code"
GRANT_TYPE_REFRESH_TOKEN = "refresh_token"

# API Endpoints
APPLIANCES_ENDPOINT = "/api/homeappliances"
STATUS_ENDPOINT = "/api/homeappliances/{ha_id}/status"
SETTINGS_ENDPOINT = "/api/homeappliances/{ha_id}/settings"
ACTIVE_PROGRAM_ENDPOINT = "/api/homeappliances/{ha_id}/programs/active"
EVENTS_ENDPOINT = "/api/homeappliances/events"
APPLIANCE_EVENTS_ENDPOINT = "/api/homeappliances/{ha_id}/events"

# Content types
CONTENT_TYPE_FORM = "application/x-www-form-urlencoded"
ACCEPT_JSON = "application/vnd.bsh.sdk.v1+json"
ACCEPT_EVENT_STREAM = "text/event-stream"

# Request timeouts (seconds)
AUTH_REQUEST_TIMEOUT = 10
API_REQUEST_TIMEOUT = 15
STREAM_CONNECT_TIMEOUT = 20

# Token lifecycle
TOKEN_REFRESH_FRACTION = 0.9
TOKEN_REFRESH_RETRY_DELAY = 60
DEFAULT_TOKEN_FILE = "refresh_token.json"

# Device flow polling (seconds)
DEVICE_FLOW_DEFAULT_INTERVAL = 5
DEVICE_FLOW_SLOW_DOWN_INCREMENT = 5
DEVICE_FLOW_SLOW_DOWN_FLOOR = 10

# Event stream supervision (seconds)
HEARTBEAT_CHECK_INTERVAL = 60
HEARTBEAT_STALE_THRESHOLD = 180
PRE_SUBSCRIBE_REFRESH_MAX_AGE = 300
STREAM_RECONNECT_DELAY = 15
STREAM_AUTH_RECONNECT_DELAY = 60
GLOBAL_STREAM_ID = "global"

# Active program lookups
ACTIVE_PROGRAM_MAX_RETRIES = 3
ACTIVE_PROGRAM_RETRY_DELAY = 5
ACTIVE_PROGRAM_PACING_DELAY = 0.5
SLOW_ACTIVE_PROGRAM_REQUEST = 4
MIN_ACTIVE_PROGRAM_INTERVAL = 10

# Rate limit cooldown after a 429, in minutes: min(base * 2**k, max)
RATE_LIMIT_BACKOFF_BASE_MINUTES = 2
RATE_LIMIT_BACKOFF_MAX_EXPONENT = 2
RATE_LIMIT_BACKOFF_MAX_MINUTES = 10

# Session / initialization
MIN_AUTH_INTERVAL = 60
INIT_TIMEOUT = 30
MAX_INIT_ATTEMPTS = 3
AUTH_RETRY_DELAY = 30

# Vendor keys (SSE items, status and settings entries, program options)
KEY_REMAINING_PROGRAM_TIME = "BSH.Common.Option.RemainingProgramTime"
KEY_PROGRAM_PROGRESS = "BSH.Common.Option.ProgramProgress"
KEY_OPERATION_STATE = "BSH.Common.Status.OperationState"
KEY_LIGHTING = "Cooking.Common.Setting.Lighting"
KEY_POWER_STATE = "BSH.Common.Setting.PowerState"
KEY_DOOR_STATE = "BSH.Common.Status.DoorState"

OPERATION_STATE_FINISHED = "BSH.Common.EnumType.OperationState.Finished"

POWER_STATE_MAP = {
    "BSH.Common.EnumType.PowerState.On": "On",
    "BSH.Common.EnumType.PowerState.Standby": "Standby",
    "BSH.Common.EnumType.PowerState.Off": "Off",
}

DOOR_STATE_MAP = {
    "BSH.Common.EnumType.DoorState.Open": "Open",
    "BSH.Common.EnumType.DoorState.Closed": "Closed",
    "BSH.Common.EnumType.DoorState.Locked": "Locked",
}

# Values of the "connected" flag that count as online
CONNECTED_STRINGS = frozenset({"true", "connected", "online", "available"})

# Logger name shared by every module of the package
LOGGER_NAME = "pyhomeconnect"
