"""Custom exceptions for pyhomeconnect."""

HTTP_NOT_FOUND = 404
HTTP_UNAUTHORIZED = 401
HTTP_FORBIDDEN = 403
HTTP_REQUEST_TIMEOUT = 408
HTTP_TOO_MANY_REQUESTS = 429


class HomeConnectError(Exception):
    """Base class for pyhomeconnect exceptions."""


class ConfigError(HomeConnectError):
    """Raised when the engine configuration is invalid."""


class AuthError(HomeConnectError):
    """Raised when authentication fails."""


class AuthDeniedError(AuthError):
    """Raised when the user denies the device authorization."""


class DeviceCodeExpiredError(AuthError):
    """Raised when the device code expires before the user authorizes it."""


class AuthTimeout(AuthError):
    """Raised when device flow polling runs out of attempts."""


class InvalidGrantError(AuthError):
    """Raised when the refresh token is permanently rejected."""


class ApiError(HomeConnectError):
    """Raised when an API call fails."""

    def __init__(self, status_code: int, error_message: str) -> None:
        """Initialize the API error."""
        self.status_code = status_code
        self.error_message = error_message
        super().__init__(f"API Error {status_code}: {error_message}")


class AuthTransientError(ApiError):
    """Raised on 401/403 from the API or an event stream."""


class RateLimitedError(ApiError):
    """Raised on 429 Too Many Requests."""


class DataUnavailableError(ApiError):
    """Raised on 404, e.g. no active program."""


class UpstreamUnavailableError(ApiError):
    """Raised on network failures, timeouts and 5xx responses."""


def api_error_for_status(status_code: int, error_message: str) -> ApiError:
    """Return the ApiError subclass matching an HTTP status code."""
    if status_code in (HTTP_UNAUTHORIZED, HTTP_FORBIDDEN):
        return AuthTransientError(status_code, error_message)
    if status_code == HTTP_TOO_MANY_REQUESTS:
        return RateLimitedError(status_code, error_message)
    if status_code == HTTP_NOT_FOUND:
        return DataUnavailableError(status_code, error_message)
    if status_code in (0, HTTP_REQUEST_TIMEOUT) or status_code >= 500:  # noqa: PLR2004
        return UpstreamUnavailableError(status_code, error_message)
    return ApiError(status_code, error_message)
