"""Event kinds and decoding of Home Connect event payloads."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import Enum
import json
import logging
from typing import Any

_LOGGER = logging.getLogger(__name__)


class EventKind(Enum):
    """Kinds of events delivered on the Home Connect event streams."""

    KEEP_ALIVE = "KEEP-ALIVE"
    STATUS = "STATUS"
    NOTIFY = "NOTIFY"
    EVENT = "EVENT"
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"
    PAIRED = "PAIRED"
    DEPAIRED = "DEPAIRED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def from_name(cls, name: str | None) -> EventKind:
        """Map a raw SSE event name onto an EventKind."""
        if not name:
            return cls.UNKNOWN
        try:
            return cls(name.upper())
        except ValueError:
            return cls.UNKNOWN


@dataclass(frozen=True)
class ServerSentEvent:
    """One event received on an event stream."""

    kind: EventKind
    data: str = ""
    event_id: str | None = None
    stream_id: str | None = None


@dataclass(frozen=True)
class EventItem:
    """A single key/value change for one appliance."""

    ha_id: str
    key: str
    value: Any
    uri: str | None = None


EventHandler = Callable[[ServerSentEvent], Awaitable[None] | None]
DispatchTable = Mapping[EventKind, EventHandler]


def extract_ha_id_from_uri(uri: str | None) -> str | None:
    """Return the appliance id embedded in an event item URI."""
    if not uri or not isinstance(uri, str):
        return None
    parts = uri.split("/")
    if "homeappliances" in parts:
        index = parts.index("homeappliances")
        if len(parts) > index + 1 and parts[index + 1]:
            return parts[index + 1]
    # Legacy URIs like /notifications/homeappliances/<haId>/events/...
    if len(parts) >= 4:  # noqa: PLR2004
        return parts[3] or None
    return None


def decode_payload(event: ServerSentEvent) -> dict[str, Any] | None:
    """Parse the JSON data of an event; None when empty or malformed."""
    if not event.data:
        return None
    try:
        payload = json.loads(event.data)
    except json.JSONDecodeError:
        _LOGGER.warning("Received non-JSON event data: %s", event.data)
        return None
    if not isinstance(payload, dict):
        return None
    return payload


def decode_event_items(event: ServerSentEvent) -> list[EventItem]:
    """Decode the key/value items carried by a STATUS/NOTIFY/EVENT event.

    Items may be wrapped in an ``items`` list or be the payload itself, and
    their key/value may sit under a nested ``data`` object. The appliance id
    comes from the item, the payload, the SSE id, or the item URI.
    """
    payload = decode_payload(event)
    if payload is None:
        return []
    raw_items = payload.get("items")
    if not isinstance(raw_items, list) or not raw_items:
        raw_items = [payload]

    items: list[EventItem] = []
    for raw in raw_items:
        item = _normalize_item(raw, payload, event.event_id)
        if item is not None:
            items.append(item)
    return items


def _normalize_item(
    raw: Any,
    payload: Mapping[str, Any],
    fallback_id: str | None,
) -> EventItem | None:
    if not isinstance(raw, dict):
        return None
    nested = raw.get("data") if isinstance(raw.get("data"), dict) else None
    key = raw.get("key") or (nested.get("key") if nested else None)
    if not key:
        return None
    if "value" in raw:
        value = raw["value"]
    elif nested is not None:
        value = nested.get("value", nested)
    else:
        value = None
    uri = raw.get("uri") or (nested.get("uri") if nested else None) or payload.get("uri")
    ha_id = (
        raw.get("haId")
        or payload.get("haId")
        or extract_ha_id_from_uri(uri)
        or fallback_id
    )
    if not ha_id:
        return None
    return EventItem(ha_id=ha_id, key=key, value=value, uri=uri)


def connection_event_ha_id(event: ServerSentEvent) -> str | None:
    """Return the appliance id of a CONNECTED/DISCONNECTED event."""
    payload = decode_payload(event) or {}
    return payload.get("haId") or event.event_id or None
