"""Live location publishing.

The transporter's session writes readings into a :class:`LocationStore`;
a per-delivery push loop sends the newest unpushed reading to the delivery
service, and an optional live-view loop polls the store for viewers.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any, Protocol

from agritrack.exceptions import AgriTrackError
from agritrack.models.position import GeoPosition
from agritrack.state.events import LocationUpdate, UpdateOrigin
from agritrack.state.store import LocationStore

_logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[Any]]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class LocationSink(Protocol):
    """Where published positions go (the delivery service)."""

    async def update_location(self, delivery_id: str, position: GeoPosition) -> None:
        ...

    async def get_location(self, delivery_id: str) -> GeoPosition | None:
        ...


async def _cancel(task: asyncio.Task[None] | None) -> None:
    if task is None or task.done():
        return
    task.cancel()
    if task is asyncio.current_task():
        return
    with contextlib.suppress(asyncio.CancelledError):
        await task


class LiveLocationPublisher:
    """Publish and expose the latest position per delivery."""

    def __init__(
        self,
        sink: LocationSink,
        *,
        store: LocationStore | None = None,
        push_interval: float = 30.0,
        poll_interval: float = 10.0,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._sink = sink
        self._store = store if store is not None else LocationStore(clock=clock)
        self._push_interval = push_interval
        self._poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock
        self._push_tasks: dict[str, asyncio.Task[None]] = {}
        self._view_tasks: dict[str, asyncio.Task[None]] = {}

    @property
    def store(self) -> LocationStore:
        return self._store

    # ------------------------------------------------------------------
    # Store access
    # ------------------------------------------------------------------

    def record(
        self,
        delivery_id: str,
        position: GeoPosition,
        *,
        origin: UpdateOrigin = UpdateOrigin.SESSION,
    ) -> bool:
        """Store a reading; return ``False`` if it is older than the cached one."""
        accepted = self._store.apply(
            LocationUpdate(
                delivery_id=delivery_id,
                position=position,
                origin=origin,
                observed_at=self._clock(),
            )
        )
        if not accepted:
            _logger.debug("Discarded out-of-order reading for delivery %s", delivery_id)
        return accepted

    def latest(self, delivery_id: str) -> GeoPosition | None:
        return self._store.latest(delivery_id)

    def history(self, delivery_id: str) -> list[GeoPosition]:
        return self._store.history(delivery_id)

    def forget(self, delivery_id: str) -> None:
        """Drop every stored reading for a delivery that is no longer tracked."""
        self._store.discard(delivery_id)

    # ------------------------------------------------------------------
    # Push loop
    # ------------------------------------------------------------------

    def is_publishing(self, delivery_id: str) -> bool:
        task = self._push_tasks.get(delivery_id)
        return task is not None and not task.done()

    def start(self, delivery_id: str) -> None:
        """Start the periodic push loop for *delivery_id* (idempotent)."""
        if self.is_publishing(delivery_id):
            return
        _logger.info("Publishing location for delivery %s every %.0fs", delivery_id, self._push_interval)
        self._push_tasks[delivery_id] = asyncio.create_task(self._push_loop(delivery_id))

    async def push_now(self, delivery_id: str) -> bool:
        """Push the newest unpushed reading.

        Returns ``True`` if a reading was delivered. A failed push is logged
        and left for the next tick, which sends whatever is newest then.
        """
        position = self._store.unpushed(delivery_id)
        if position is None:
            return False
        try:
            await self._sink.update_location(delivery_id, position)
        except (AgriTrackError, ValueError) as exc:
            _logger.warning("Location push for delivery %s failed: %s", delivery_id, exc)
            return False
        self._store.mark_pushed(delivery_id, position.timestamp)
        return True

    async def _push_loop(self, delivery_id: str) -> None:
        while True:
            await self.push_now(delivery_id)
            await self._sleep(self._push_interval)

    # ------------------------------------------------------------------
    # Live view
    # ------------------------------------------------------------------

    def is_viewing(self, delivery_id: str) -> bool:
        task = self._view_tasks.get(delivery_id)
        return task is not None and not task.done()

    def open_live_view(
        self,
        delivery_id: str,
        on_reading: Callable[[GeoPosition], None],
        *,
        remote: bool = False,
    ) -> None:
        """Poll the latest reading while the view is open.

        *on_reading* is called whenever a newer reading is available. With
        ``remote=True`` each poll first fetches the service's copy, for
        viewers that are not the transporter.
        """
        if self.is_viewing(delivery_id):
            return
        self._view_tasks[delivery_id] = asyncio.create_task(self._view_loop(delivery_id, on_reading, remote))

    async def close_live_view(self, delivery_id: str) -> None:
        await _cancel(self._view_tasks.pop(delivery_id, None))

    async def _refresh_remote(self, delivery_id: str) -> None:
        try:
            position = await self._sink.get_location(delivery_id)
        except AgriTrackError:
            _logger.debug("Remote location refresh failed for delivery %s", delivery_id, exc_info=True)
            return
        if position is not None:
            self.record(delivery_id, position, origin=UpdateOrigin.REMOTE)

    async def _view_loop(
        self,
        delivery_id: str,
        on_reading: Callable[[GeoPosition], None],
        remote: bool,
    ) -> None:
        shown: datetime | None = None
        while True:
            if remote:
                await self._refresh_remote(delivery_id)
            latest = self._store.latest(delivery_id)
            if latest is not None and (shown is None or latest.timestamp > shown):
                shown = latest.timestamp
                try:
                    on_reading(latest)
                except Exception:
                    _logger.debug("Live view callback failed", exc_info=True)
            await self._sleep(self._poll_interval)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def stop(self, delivery_id: str) -> None:
        """Cancel the push loop and any open live view for *delivery_id*."""
        push_task = self._push_tasks.pop(delivery_id, None)
        if push_task is not None:
            _logger.info("Stopped publishing location for delivery %s", delivery_id)
        await _cancel(push_task)
        await _cancel(self._view_tasks.pop(delivery_id, None))

    async def close(self) -> None:
        for delivery_id in list(self._push_tasks) + list(self._view_tasks):
            await self.stop(delivery_id)
