"""Data models for pyhomeconnect."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
import math
import random
import re
import time
from typing import Any

from .const import (
    MIN_ACTIVE_PROGRAM_INTERVAL,
    MIN_AUTH_INTERVAL,
    RATE_LIMIT_BACKOFF_BASE_MINUTES,
    RATE_LIMIT_BACKOFF_MAX_EXPONENT,
    RATE_LIMIT_BACKOFF_MAX_MINUTES,
    TOKEN_REFRESH_FRACTION,
)

_ISO_DURATION = re.compile(r"^PT(?:(\d+)H)?(?:(\d+)M)?(?:(\d+)S)?$")


@dataclass(frozen=True)
class ScalarValue:
    """A vendor value delivered as a bare scalar."""

    value: Any


@dataclass(frozen=True)
class LabeledValue:
    """A vendor value delivered as ``{"value": ..., "displayValue": ...}``."""

    value: Any
    display_value: Any = None


VendorValue = ScalarValue | LabeledValue


def coerce_value(raw: Any) -> VendorValue:
    """Normalize a raw vendor value into a ScalarValue or LabeledValue."""
    if isinstance(raw, (ScalarValue, LabeledValue)):
        return raw
    if isinstance(raw, dict) and ("value" in raw or "displayValue" in raw):
        return LabeledValue(value=raw.get("value"), display_value=raw.get("displayValue"))
    return ScalarValue(value=raw)


def _parse_number(candidate: Any) -> float | int | None:
    if candidate is None or isinstance(candidate, bool):
        return None
    if isinstance(candidate, (int, float)):
        return candidate
    if isinstance(candidate, str):
        text = candidate.strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            return float(text)
        except ValueError:
            pass
        match = _ISO_DURATION.match(text)
        if match and any(match.groups()):
            hours, minutes, seconds = (int(part or 0) for part in match.groups())
            return hours * 3600 + minutes * 60 + seconds
    return None


def numeric_value(raw: Any) -> float | int | None:
    """Return the numeric content of a vendor value, or None."""
    value = coerce_value(raw)
    number = _parse_number(value.value)
    if number is None and isinstance(value, LabeledValue):
        number = _parse_number(value.display_value)
    return number


def string_value(raw: Any) -> str | None:
    """Return the string content of a vendor value, or None."""
    value = coerce_value(raw)
    if isinstance(value.value, str):
        return value.value
    if isinstance(value, LabeledValue) and isinstance(value.display_value, str):
        return value.display_value
    return None


@dataclass
class Token:
    """An OAuth2 access/refresh token pair."""

    access_token: str
    refresh_token: str
    expires_in: int
    issued_at: float = field(default_factory=time.time)

    @classmethod
    def from_response(
        cls,
        data: dict[str, Any],
        previous_refresh_token: str | None = None,
    ) -> Token:
        """Build a Token from a token endpoint response."""
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or previous_refresh_token or "",
            expires_in=int(data.get("expires_in") or 0),
        )

    @property
    def refresh_due_at(self) -> float:
        """Wall-clock time at which the access token should be refreshed."""
        return self.issued_at + self.expires_in * TOKEN_REFRESH_FRACTION

    def seconds_until_refresh(self, now: float | None = None) -> float:
        """Return the delay until the next scheduled refresh (never negative)."""
        if now is None:
            now = time.time()
        return max(self.refresh_due_at - now, 0.0)


@dataclass(frozen=True)
class DeviceCode:
    """Device authorization response, shown to the user out of band."""

    device_code: str
    user_code: str
    verification_uri: str
    expires_in: int
    interval: int
    verification_uri_complete: str | None = None

    @property
    def complete_link(self) -> str:
        """Link that pre-fills the user code (the one a QR code would encode)."""
        return (
            self.verification_uri_complete
            or f"{self.verification_uri}?user_code={self.user_code}"
        )


@dataclass
class Appliance:
    """Latest known state of one Home Connect appliance.

    Fields other than ``ha_id`` are updated in place by the DeviceRegistry;
    ``None`` means the value is unknown.
    """

    ha_id: str
    name: str | None = None
    type: str | None = None
    brand: str | None = None
    vib: str | None = None
    enumber: str | None = None
    connected: Any = None
    power_state: str | None = None
    door_state: str | None = None
    lighting: bool | None = None
    operation_state: str | None = None
    remaining_program_seconds: float | int | None = None
    program_progress_percent: float | int | None = None
    initial_remaining_seconds: float | int | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def estimated_progress(self) -> float | int | None:
        """Return the explicit progress, or one derived from remaining time."""
        if self.program_progress_percent is not None:
            return self.program_progress_percent
        initial = self.initial_remaining_seconds
        remaining = self.remaining_program_seconds
        if not initial or remaining is None:
            return None
        done = (initial - remaining) / initial * 100
        return round(min(max(done, 0), 100))

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-friendly representation for broadcasting."""
        data = asdict(self)
        data["estimated_progress"] = self.estimated_progress
        return data


@dataclass
class SessionContext:
    """Process-wide session state shared by every engine component."""

    is_authenticated: bool = False
    is_authenticating: bool = False
    last_auth_attempt: float = 0.0
    rate_limit_until: float = 0.0
    last_active_program_fetch: float = 0.0
    min_auth_interval: float = MIN_AUTH_INTERVAL
    min_active_program_interval: float = MIN_ACTIVE_PROGRAM_INTERVAL

    def is_rate_limited(self, now: float | None = None) -> bool:
        """Return True while a 429 cooldown is active."""
        if now is None:
            now = time.time()
        return now < self.rate_limit_until

    def rate_limit_remaining(self, now: float | None = None) -> int:
        """Return the whole seconds left in the cooldown."""
        if now is None:
            now = time.time()
        return max(math.ceil(self.rate_limit_until - now), 0)

    def begin_rate_limit(self, now: float | None = None) -> int:
        """Start a 429 cooldown and return its length in seconds.

        The length is ``min(base * 2**k, max)`` minutes with a random ``k`` so
        that several clients hitting the limit together do not retry in step.
        """
        if now is None:
            now = time.time()
        exponent = random.randint(0, RATE_LIMIT_BACKOFF_MAX_EXPONENT)  # noqa: S311
        minutes = min(
            RATE_LIMIT_BACKOFF_BASE_MINUTES * 2**exponent,
            RATE_LIMIT_BACKOFF_MAX_MINUTES,
        )
        seconds = minutes * 60
        self.rate_limit_until = now + seconds
        return seconds

    def can_attempt_auth(self, now: float | None = None) -> bool:
        """Return True if enough time passed since the last auth attempt."""
        if now is None:
            now = time.time()
        return now - self.last_auth_attempt >= self.min_auth_interval

    def reset(self) -> None:
        """Return to the pre-authentication state."""
        self.is_authenticated = False
        self.is_authenticating = False
        self.last_auth_attempt = 0.0
        self.rate_limit_until = 0.0
        self.last_active_program_fetch = 0.0
