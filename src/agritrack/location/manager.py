"""Location acquisition under unreliable device conditions.

Acquisition is two-tier (high accuracy first, relaxed accuracy after a
timeout), retried through a bounded backoff schedule, and always bounded by
``asyncio.timeout``. All mutable state lives in an explicit
:class:`LocationContext` so several managers can coexist in one process.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from agritrack._constants import BACKOFF_DELAYS
from agritrack.config import TrackingConfig
from agritrack.exceptions import (
    LocationError,
    LocationTimeoutError,
    LocationUnsupportedError,
    PermissionDeniedError,
    PositionUnavailableError,
)
from agritrack.location.sources import PermissionState, PositionSource
from agritrack.models.position import GeoPosition

_logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[Any]]
ClockFn = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class LocationContext:
    """Per-session acquisition state: permission, last good fix, active source."""

    source: PositionSource
    permission: PermissionState | None = None
    last_position: GeoPosition | None = None


class LocationAcquisitionManager:
    """Acquire device positions with tiered accuracy, retries and caching."""

    def __init__(
        self,
        context: LocationContext,
        *,
        high_accuracy_timeout: float = 10.0,
        relaxed_timeout: float = 30.0,
        maximum_age: float = 60.0,
        backoff_delays: tuple[float, ...] = BACKOFF_DELAYS,
        sleep: SleepFn = asyncio.sleep,
        clock: ClockFn = _utcnow,
    ) -> None:
        self._context = context
        self._high_accuracy_timeout = high_accuracy_timeout
        self._relaxed_timeout = relaxed_timeout
        self._maximum_age = maximum_age
        self._backoff_delays = tuple(backoff_delays)
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_config(
        cls,
        config: TrackingConfig,
        source: PositionSource,
        *,
        sleep: SleepFn = asyncio.sleep,
        clock: ClockFn = _utcnow,
    ) -> LocationAcquisitionManager:
        return cls(
            LocationContext(source=source),
            high_accuracy_timeout=config.high_accuracy_timeout,
            relaxed_timeout=config.relaxed_timeout,
            maximum_age=config.maximum_age,
            backoff_delays=config.backoff_delays,
            sleep=sleep,
            clock=clock,
        )

    @property
    def context(self) -> LocationContext:
        return self._context

    @property
    def source(self) -> PositionSource:
        return self._context.source

    def set_source(self, source: PositionSource) -> None:
        """Swap the active position source.

        Running periodic updates pick the new source up on their next tick.
        The cached fix belongs to the old source and is dropped.
        """
        _logger.info("Switching position source %s -> %s", self._context.source.kind, source.kind)
        self._context.source = source
        self._context.permission = None
        self._context.last_position = None

    # ------------------------------------------------------------------
    # One-shot operations
    # ------------------------------------------------------------------

    async def check_permission(self) -> PermissionState:
        """Query the active source's permission state.

        Raises
        ------
        PermissionDeniedError
            Access is blocked.
        LocationUnsupportedError
            No positioning primitive is available.
        """
        state = await self._context.source.query_permission()
        self._context.permission = state
        if state is PermissionState.DENIED:
            raise PermissionDeniedError("Location access is blocked for this application")
        if state is PermissionState.UNSUPPORTED:
            raise LocationUnsupportedError("Geolocation is not supported in this environment")
        return state

    async def _acquire_tier(self, *, high_accuracy: bool, timeout: float) -> GeoPosition:
        source = self._context.source
        try:
            # Same task as the caller: cancelling the caller cancels the acquisition.
            async with asyncio.timeout(timeout):
                return await source.acquire_once(
                    high_accuracy=high_accuracy,
                    timeout=timeout,
                    maximum_age=self._maximum_age,
                )
        except TimeoutError as exc:
            raise LocationTimeoutError(f"No position fix within {timeout:.0f}s") from exc

    async def acquire_once(self) -> GeoPosition:
        """Acquire a single fix: high accuracy first, relaxed after a timeout."""
        try:
            try:
                position = await self._acquire_tier(
                    high_accuracy=True,
                    timeout=self._high_accuracy_timeout,
                )
            except LocationTimeoutError:
                _logger.debug("High-accuracy fix timed out; retrying with relaxed accuracy")
                position = await self._acquire_tier(
                    high_accuracy=False,
                    timeout=self._relaxed_timeout,
                )
        except PermissionDeniedError:
            self._context.permission = PermissionState.DENIED
            raise
        self._context.last_position = position
        return position

    async def acquire_with_retry(
        self,
        *,
        on_retry: Callable[[int], None] | None = None,
    ) -> GeoPosition:
        """Acquire a fix, retrying transient failures on the backoff schedule.

        Timeouts and unavailable positions are retried once per configured
        delay. When the schedule is exhausted the last error is re-raised
        with ``retries`` set. Permission errors are raised immediately.
        """
        retries = 0
        while True:
            try:
                return await self.acquire_once()
            except (LocationTimeoutError, PositionUnavailableError) as exc:
                if retries >= len(self._backoff_delays):
                    exc.retries = retries
                    raise
                delay = self._backoff_delays[retries]
                retries += 1
                _logger.info(
                    "Position acquisition failed (%s); retry %d/%d in %.0fs",
                    exc,
                    retries,
                    len(self._backoff_delays),
                    delay,
                )
                if on_retry is not None:
                    on_retry(retries)
                await self._sleep(delay)

    def cached_position(self, max_age: float | None = None) -> GeoPosition | None:
        """Return the last good fix if it is younger than *max_age* seconds."""
        position = self._context.last_position
        if position is None:
            return None
        limit = self._maximum_age if max_age is None else max_age
        if not position.is_fresh(self._clock(), limit):
            return None
        return position

    async def get_position(
        self,
        max_age: float | None = None,
        *,
        on_retry: Callable[[int], None] | None = None,
    ) -> GeoPosition:
        """Cached-if-fresh, else a live fix."""
        cached = self.cached_position(max_age)
        if cached is not None:
            return cached
        return await self.acquire_with_retry(on_retry=on_retry)

    async def watch_positions(self) -> AsyncIterator[GeoPosition]:
        """Stream readings from the active source's continuous watch."""
        async for position in self._context.source.watch(
            high_accuracy=True,
            timeout=self._high_accuracy_timeout,
            maximum_age=self._maximum_age,
        ):
            self._context.last_position = position
            yield position

    # ------------------------------------------------------------------
    # Periodic updates
    # ------------------------------------------------------------------

    def start_periodic_updates(
        self,
        interval: float,
        on_position: Callable[[GeoPosition], None],
        *,
        on_error: Callable[[LocationError], None] | None = None,
        on_permission_denied: Callable[[PermissionDeniedError], None] | None = None,
        max_age: float | None = None,
    ) -> PeriodicUpdates:
        """Start a repeating acquisition task.

        Each tick reuses a cached fix younger than *max_age* (defaults to half
        of *interval*) instead of forcing a new one.
        """
        updates = PeriodicUpdates(
            self,
            interval,
            on_position,
            on_error=on_error,
            on_permission_denied=on_permission_denied,
            max_age=interval / 2 if max_age is None else max_age,
            sleep=self._sleep,
        )
        updates.start()
        return updates


class PeriodicUpdates:
    """Handle for a running periodic acquisition loop."""

    def __init__(
        self,
        manager: LocationAcquisitionManager,
        interval: float,
        on_position: Callable[[GeoPosition], None],
        *,
        on_error: Callable[[LocationError], None] | None = None,
        on_permission_denied: Callable[[PermissionDeniedError], None] | None = None,
        max_age: float,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._manager = manager
        self._sleep = sleep
        self._interval = interval
        self._on_position = on_position
        self._on_error = on_error
        self._on_permission_denied = on_permission_denied
        self._max_age = max_age
        self._task: asyncio.Task[None] | None = None
        self.retry_count = 0
        self._stopping = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopping = False
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Cancel the loop and wait for it to end.

        The loop also checks a stop flag after every await, so it ends even
        if the cancellation is absorbed by a position source.
        """
        self._stopping = True
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        task.cancel()
        if task is asyncio.current_task():
            return
        with contextlib.suppress(asyncio.CancelledError):
            await task

    def _note_retry(self, retries: int) -> None:
        self.retry_count = retries

    @staticmethod
    def _notify(callback: Callable[[Any], None] | None, value: Any) -> None:
        if callback is None:
            return
        try:
            callback(value)
        except Exception:
            _logger.debug("Periodic update callback failed", exc_info=True)

    async def _run(self) -> None:
        while not self._stopping:
            try:
                position = await self._manager.get_position(self._max_age, on_retry=self._note_retry)
            except PermissionDeniedError as exc:
                if self._stopping:
                    return
                _logger.info("Location permission revoked; stopping periodic updates")
                self._notify(self._on_permission_denied, exc)
                return
            except LocationError as exc:
                if self._stopping:
                    return
                _logger.debug("Periodic acquisition failed after %d retries", exc.retries, exc_info=True)
                self._notify(self._on_error, exc)
            else:
                if self._stopping:
                    return
                self.retry_count = 0
                self._notify(self._on_position, position)
            await self._sleep(self._interval)
