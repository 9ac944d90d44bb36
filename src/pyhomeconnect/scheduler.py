"""Active program lookups with bounded retries for eventual consistency.

Right after a program starts, the REST API can still answer "no active
program" (HTTP 404) while the event stream already reports the appliance as
running. Such appliances are retried a few times at a fixed delay before the
404 is accepted as the truth.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
import logging
import time
from typing import Any

from .api import HomeConnectApi
from .broadcaster import SessionBroadcaster, Status, Topic
from .const import (
    ACTIVE_PROGRAM_MAX_RETRIES,
    ACTIVE_PROGRAM_PACING_DELAY,
    ACTIVE_PROGRAM_RETRY_DELAY,
    SLOW_ACTIVE_PROGRAM_REQUEST,
)
from .exceptions import DataUnavailableError, HomeConnectError, RateLimitedError
from .models import Appliance, SessionContext
from .registry import DeviceRegistry, appears_active, is_connected

_LOGGER = logging.getLogger(__name__)


class RetryPhase(Enum):
    """Lifecycle of the retry timer of one appliance."""

    IDLE = "idle"
    SCHEDULED = "scheduled"
    IN_FLIGHT = "in_flight"


@dataclass
class RetryState:
    """Retry bookkeeping for one appliance."""

    attempt: int = 0
    phase: RetryPhase = RetryPhase.IDLE
    session_id: str | None = None
    task: asyncio.Task[None] | None = None

    def cancel(self) -> None:
        """Cancel the pending timer, if any."""
        task = self.task
        self.task = None
        self.phase = RetryPhase.IDLE
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()


class ActiveProgramScheduler:
    """Fetches active programs sequentially and retries missing ones."""

    def __init__(
        self,
        api: HomeConnectApi,
        registry: DeviceRegistry,
        broadcaster: SessionBroadcaster,
        context: SessionContext,
        max_retries: int = ACTIVE_PROGRAM_MAX_RETRIES,
        retry_delay: float = ACTIVE_PROGRAM_RETRY_DELAY,
        pacing_delay: float = ACTIVE_PROGRAM_PACING_DELAY,
    ) -> None:
        """Initialize the scheduler."""
        self._api = api
        self._registry = registry
        self._broadcaster = broadcaster
        self._context = context
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.pacing_delay = pacing_delay
        self._retries: dict[str, RetryState] = {}

    @property
    def pending_retries(self) -> dict[str, int]:
        """Return ``{ha_id: attempt}`` for every appliance with a pending timer."""
        return {
            ha_id: state.attempt
            for ha_id, state in self._retries.items()
            if state.phase is RetryPhase.SCHEDULED
        }

    def retry_state(self, ha_id: str) -> RetryState | None:
        """Return the retry state of one appliance."""
        return self._retries.get(ha_id)

    def clear(self, ha_id: str) -> None:
        """Drop the retry state of one appliance and cancel its timer."""
        state = self._retries.pop(ha_id, None)
        if state is not None:
            state.cancel()

    def clear_all(self) -> None:
        """Drop every retry state and cancel every timer."""
        for state in self._retries.values():
            state.cancel()
        self._retries.clear()

    async def request_active_program(
        self,
        ha_ids: Iterable[str] | None = None,
        session_id: str | None = None,
        force: bool = False,
    ) -> dict[str, dict[str, Any]]:
        """Fetch the active program of each target appliance, one at a time.

        Args:
            ha_ids: Appliances to query; every known appliance when None.
            session_id: Session that asked, echoed in the ACTIVE_PROGRAMS payload.
            force: Restart retry counting for the targets.

        Returns:
            The ``{ha_id: {"name", "program"}}`` entries that were fetched.

        """
        if ha_ids is None:
            targets = self._registry.snapshot()
        else:
            targets = [
                appliance
                for appliance in (self._registry.get(ha_id) for ha_id in ha_ids)
                if appliance is not None
            ]
        if not targets:
            _LOGGER.debug("No devices to fetch active programs for")
            return {}

        if force:
            for appliance in targets:
                self.clear(appliance.ha_id)

        _LOGGER.info("Fetching active programs for %d device(s)", len(targets))
        await self._broadcaster.broadcast_status(
            Status.FETCHING_PROGRAMS,
            "Fetching active programs...",
            requested_by=session_id,
        )

        programs: dict[str, dict[str, Any]] = {}
        retry_candidates: list[str] = []
        for appliance in targets:
            connected = is_connected(appliance)
            active = appears_active(appliance)
            if not connected and not active:
                _LOGGER.debug("Skipping %s - not connected", appliance.name)
                continue
            if not connected:
                _LOGGER.info(
                    "Device %s not marked connected but appears active - fetching program anyway",
                    appliance.name,
                )

            try:
                data = await self._fetch(appliance)
            except RateLimitedError:
                _LOGGER.warning("Rate limit hit for %s - aborting batch", appliance.name)
                await self._start_cooldown()
                return programs
            except DataUnavailableError:
                current = self._registry.get(appliance.ha_id)
                still_active = appears_active(current)
                _LOGGER.debug(
                    "Device %s reported no active program (appears_active=%s)",
                    appliance.name,
                    still_active,
                )
                if still_active:
                    retry_candidates.append(appliance.ha_id)
            except HomeConnectError as err:
                _LOGGER.error(
                    "Error fetching active program for %s: %s", appliance.name, err
                )
            else:
                programs[appliance.ha_id] = self._registry.apply_active_program(
                    appliance.ha_id, data
                )
                self.clear(appliance.ha_id)

            await asyncio.sleep(self.pacing_delay)

        await self._broadcaster.broadcast_devices(self._registry.snapshot())
        await self._broadcast_programs(programs, session_id)

        if retry_candidates:
            _LOGGER.info(
                "Scheduling retries for %d device(s) awaiting active program data",
                len(retry_candidates),
            )
            self.schedule_retry(retry_candidates, session_id)
        return programs

    def schedule_retry(self, ha_ids: Iterable[str], session_id: str | None = None) -> None:
        """Schedule one retry per appliance unless a timer is already pending."""
        for ha_id in ha_ids:
            state = self._retries.get(ha_id)
            next_attempt = (state.attempt if state is not None else 0) + 1
            if next_attempt > self.max_retries:
                _LOGGER.debug("Max retries reached for %s", ha_id)
                self.clear(ha_id)
                continue
            if state is not None and state.phase is not RetryPhase.IDLE:
                _LOGGER.debug("Retry already scheduled for %s", ha_id)
                continue
            if state is None:
                state = RetryState()
                self._retries[ha_id] = state
            state.attempt = next_attempt
            state.phase = RetryPhase.SCHEDULED
            state.session_id = session_id
            _LOGGER.info(
                "Scheduling active program retry for %s in %ss (attempt %d/%d)",
                ha_id,
                self.retry_delay,
                next_attempt,
                self.max_retries,
            )
            state.task = asyncio.create_task(self._run_retry(ha_id, next_attempt))

    async def _run_retry(self, ha_id: str, attempt: int) -> None:
        await asyncio.sleep(self.retry_delay)
        state = self._retries.get(ha_id)
        if state is None or state.attempt != attempt:
            return
        state.task = None
        state.phase = RetryPhase.IN_FLIGHT

        try:
            await self._retry_once(ha_id, state)
        except Exception:
            _LOGGER.exception("Active program retry for %s failed", ha_id)
            self._retries.pop(ha_id, None)

    async def _retry_once(self, ha_id: str, state: RetryState) -> None:
        if self._context.is_rate_limited():
            _LOGGER.debug("Rate limit cooldown active - abandoning retry for %s", ha_id)
            self._retries.pop(ha_id, None)
            return
        appliance = self._registry.get(ha_id)
        if appliance is None:
            self._retries.pop(ha_id, None)
            return

        _LOGGER.debug(
            "Executing active program retry for %s (attempt %d)",
            appliance.name,
            state.attempt,
        )
        try:
            data = await self._fetch(appliance)
        except RateLimitedError:
            self._retries.pop(ha_id, None)
            await self._start_cooldown()
            return
        except DataUnavailableError:
            state.phase = RetryPhase.IDLE
            if state.attempt < self.max_retries and appears_active(
                self._registry.get(ha_id)
            ):
                self.schedule_retry([ha_id], state.session_id)
            else:
                _LOGGER.debug("Giving up on active program for %s", appliance.name)
                self._retries.pop(ha_id, None)
            return
        except HomeConnectError as err:
            _LOGGER.error("Retry fetch failed for %s: %s", appliance.name, err)
            self._retries.pop(ha_id, None)
            return

        program = self._registry.apply_active_program(ha_id, data)
        self._retries.pop(ha_id, None)
        await self._broadcaster.broadcast_devices(self._registry.snapshot())
        await self._broadcast_programs({ha_id: program}, state.session_id)

    async def _fetch(self, appliance: Appliance) -> dict[str, Any]:
        started = time.monotonic()
        _LOGGER.debug("Fetching active program for %s (%s)", appliance.name, appliance.ha_id)
        data = await self._api.async_get_active_program(appliance.ha_id)
        duration = time.monotonic() - started
        if duration > SLOW_ACTIVE_PROGRAM_REQUEST:
            _LOGGER.warning(
                "Slow active program response for %s: %.1fs", appliance.name, duration
            )
        return data

    async def _start_cooldown(self) -> None:
        seconds = self._context.begin_rate_limit()
        minutes = seconds // 60
        _LOGGER.warning("Rate limit detected - backing off for %d minutes", minutes)
        await self._broadcaster.broadcast_status(
            Status.RATE_LIMITED,
            f"Rate limit detected - wait {minutes} minutes",
            rateLimitSeconds=seconds,
        )

    async def _broadcast_programs(
        self,
        programs: dict[str, dict[str, Any]],
        session_id: str | None,
    ) -> None:
        _LOGGER.info("Active programs fetched: %d with data", len(programs))
        await self._broadcaster.broadcast(
            Topic.ACTIVE_PROGRAMS,
            {
                "programs": programs,
                "timestamp": int(time.time() * 1000),
                "requested_by": session_id,
            },
        )
