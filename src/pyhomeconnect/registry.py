"""In-memory registry holding the latest known state of each appliance."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import replace
import logging
import re
from typing import Any

from .const import (
    CONNECTED_STRINGS,
    DOOR_STATE_MAP,
    KEY_DOOR_STATE,
    KEY_LIGHTING,
    KEY_OPERATION_STATE,
    KEY_POWER_STATE,
    KEY_PROGRAM_PROGRESS,
    KEY_REMAINING_PROGRAM_TIME,
    OPERATION_STATE_FINISHED,
    POWER_STATE_MAP,
)
from .events import EventItem
from .models import Appliance, coerce_value, numeric_value, string_value

_LOGGER = logging.getLogger(__name__)

_ACTIVE_STATE = re.compile(r"Run|Active|DelayedStart|InProgress", re.IGNORECASE)

# REST appliance record key -> Appliance field
_SNAPSHOT_FIELDS = {
    "haId": "ha_id",
    "name": "name",
    "type": "type",
    "brand": "brand",
    "vib": "vib",
    "enumber": "enumber",
    "connected": "connected",
}

_PROGRESS_COMPLETE = 100


def appears_active(appliance: Appliance | None) -> bool:
    """Return True if the appliance looks like it is running a program."""
    if appliance is None:
        return False
    remaining = appliance.remaining_program_seconds
    if remaining is not None and remaining > 0:
        return True
    progress = appliance.program_progress_percent
    if progress is not None and 0 < progress < _PROGRESS_COMPLETE:
        return True
    state = appliance.operation_state
    return bool(state and _ACTIVE_STATE.search(state))


def is_connected(appliance: Appliance | None) -> bool:
    """Normalize the vendor "connected" flag into a boolean."""
    if appliance is None:
        return False
    flag = appliance.connected
    if isinstance(flag, bool):
        return flag
    if isinstance(flag, (int, float)):
        return flag != 0
    if isinstance(flag, str):
        return flag.strip().lower() in CONNECTED_STRINGS
    return False


def _item_key_value(item: EventItem | Mapping[str, Any]) -> tuple[str | None, Any]:
    if isinstance(item, EventItem):
        return item.key, item.value
    return item.get("key"), item.get("value")


class DeviceRegistry:
    """Map of appliance id to Appliance, mutated only through its methods.

    Write methods contain no ``await`` so updates to one appliance never
    interleave. Reads return copies.
    """

    def __init__(self) -> None:
        """Initialize an empty registry."""
        self._appliances: dict[str, Appliance] = {}

    def __len__(self) -> int:
        return len(self._appliances)

    def __contains__(self, ha_id: object) -> bool:
        return ha_id in self._appliances

    @property
    def ids(self) -> list[str]:
        """Return the known appliance ids."""
        return list(self._appliances)

    def get(self, ha_id: str) -> Appliance | None:
        """Return a copy of one appliance, or None if unknown."""
        appliance = self._appliances.get(ha_id)
        if appliance is None:
            return None
        return replace(appliance, extra=dict(appliance.extra))

    def snapshot(self) -> list[Appliance]:
        """Return copies of every appliance sorted by name."""
        copies = [
            replace(appliance, extra=dict(appliance.extra))
            for appliance in self._appliances.values()
        ]
        copies.sort(key=lambda appliance: (appliance.name or "", appliance.ha_id))
        return copies

    def clear(self) -> None:
        """Forget every appliance."""
        self._appliances.clear()

    def apply_snapshot(self, record: Mapping[str, Any]) -> Appliance:
        """Merge a REST appliance record over the existing entry.

        Keys absent from ``record`` keep their previous value.

        Raises:
            ValueError: If the record has no ``haId``.

        """
        ha_id = record.get("haId")
        if not ha_id:
            err_msg = "Appliance record without haId"
            raise ValueError(err_msg)

        appliance = self._appliances.get(ha_id)
        if appliance is None:
            appliance = Appliance(ha_id=ha_id)
            self._appliances[ha_id] = appliance
            _LOGGER.debug("New appliance %s (%s)", record.get("name"), ha_id)

        for key, value in record.items():
            attr = _SNAPSHOT_FIELDS.get(key)
            if attr is None:
                appliance.extra[key] = value
            elif attr != "ha_id":
                setattr(appliance, attr, value)
        return replace(appliance, extra=dict(appliance.extra))

    def apply_event(self, ha_id: str, key: str, value: Any) -> bool:
        """Apply one vendor key/value update; return True if it was applied."""
        appliance = self._appliances.get(ha_id)
        if appliance is None:
            _LOGGER.debug("Ignoring %s for unknown appliance %s", key, ha_id)
            return False
        return self._apply(appliance, key, value)

    def apply_events(
        self,
        ha_id: str,
        items: Iterable[EventItem | Mapping[str, Any]],
    ) -> bool:
        """Apply a batch of updates to one appliance.

        A batch that moves the appliance to Finished ends with no remaining
        time, whatever order its items arrived in.
        """
        appliance = self._appliances.get(ha_id)
        if appliance is None:
            _LOGGER.debug("Ignoring event batch for unknown appliance %s", ha_id)
            return False

        changed = False
        finished = False
        for item in items:
            key, value = _item_key_value(item)
            if key and self._apply(appliance, key, value):
                changed = True
            if key == KEY_OPERATION_STATE:
                finished = string_value(value) == OPERATION_STATE_FINISHED

        if finished and appliance.operation_state == OPERATION_STATE_FINISHED:
            appliance.remaining_program_seconds = 0
            appliance.initial_remaining_seconds = None
        return changed

    def apply_active_program(self, ha_id: str, data: Mapping[str, Any]) -> dict[str, Any]:
        """Apply the options of an active program; return its broadcast entry."""
        options = data.get("options") or []
        if options:
            _LOGGER.debug("Applying %d option update(s) for %s", len(options), ha_id)
            self.apply_events(ha_id, options)
        appliance = self._appliances.get(ha_id)
        return {
            "name": appliance.name if appliance is not None else None,
            "program": dict(data),
        }

    def _apply(self, appliance: Appliance, key: str, value: Any) -> bool:
        if key == KEY_REMAINING_PROGRAM_TIME:
            self._set_remaining(appliance, numeric_value(value))
        elif key == KEY_PROGRAM_PROGRESS:
            progress = numeric_value(value)
            appliance.program_progress_percent = progress
            if progress is not None and progress >= _PROGRESS_COMPLETE:
                appliance.initial_remaining_seconds = None
        elif key == KEY_OPERATION_STATE:
            state = string_value(value)
            appliance.operation_state = state
            if state == OPERATION_STATE_FINISHED:
                appliance.remaining_program_seconds = 0
                appliance.initial_remaining_seconds = None
        elif key == KEY_LIGHTING:
            lighting = coerce_value(value).value
            appliance.lighting = lighting if lighting is None else bool(lighting)
        elif key == KEY_POWER_STATE:
            appliance.power_state = POWER_STATE_MAP.get(string_value(value) or "")
        elif key == KEY_DOOR_STATE:
            appliance.door_state = DOOR_STATE_MAP.get(string_value(value) or "")
        else:
            return False
        return True

    @staticmethod
    def _set_remaining(appliance: Appliance, remaining: float | int | None) -> None:
        appliance.remaining_program_seconds = remaining
        if remaining is None:
            return
        if remaining > 0:
            if appliance.initial_remaining_seconds is None:
                appliance.initial_remaining_seconds = remaining
        else:
            appliance.initial_remaining_seconds = None
