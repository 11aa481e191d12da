"""Deterministic in-memory store of the latest position per delivery.

This is the only component allowed to merge incoming location updates.
Readers always observe non-decreasing capture timestamps per delivery.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from agritrack._constants import HISTORY_LIMIT
from agritrack.models.position import GeoPosition
from agritrack.state.events import LocationUpdate, UpdateOrigin
from agritrack.state.policy import should_accept_update


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class DeliveryTrack:
    """Merged tracking state for one delivery."""

    latest: GeoPosition | None = None
    origin: UpdateOrigin | None = None
    observed_at: datetime | None = None
    pushed_at: datetime | None = None
    rejected: int = 0
    history: deque[GeoPosition] = field(default_factory=deque)


class LocationStore:
    """In-memory store for per-delivery positions.

    Given the same sequence of :class:`LocationUpdate`\\s it produces the
    same snapshots regardless of arrival timing.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] = _utcnow,
        history_limit: int = HISTORY_LIMIT,
    ) -> None:
        self._clock = clock
        self._history_limit = history_limit
        self._tracks: dict[str, DeliveryTrack] = {}

    @property
    def history_limit(self) -> int:
        return self._history_limit

    def _track(self, delivery_id: str) -> DeliveryTrack:
        track = self._tracks.get(delivery_id)
        if track is None:
            track = DeliveryTrack(history=deque(maxlen=self._history_limit))
            self._tracks[delivery_id] = track
        return track

    def apply(self, update: LocationUpdate) -> bool:
        """Apply an update; return ``False`` if it was discarded as stale."""
        track = self._track(update.delivery_id)
        cached_ts = track.latest.timestamp if track.latest is not None else None

        if not should_accept_update(
            cached_captured_at=cached_ts,
            incoming_captured_at=update.captured_at,
            cached_origin=track.origin,
            incoming_origin=update.origin,
        ):
            track.rejected += 1
            return False

        track.latest = update.position
        track.origin = update.origin
        track.observed_at = update.observed_at
        if cached_ts is None or update.captured_at > cached_ts:
            track.history.append(update.position)
        return True

    def latest(self, delivery_id: str) -> GeoPosition | None:
        track = self._tracks.get(delivery_id)
        return track.latest if track is not None else None

    def history(self, delivery_id: str) -> list[GeoPosition]:
        track = self._tracks.get(delivery_id)
        return list(track.history) if track is not None else []

    def unpushed(self, delivery_id: str) -> GeoPosition | None:
        """Latest reading newer than the last successful push, if any."""
        track = self._tracks.get(delivery_id)
        if track is None or track.latest is None:
            return None
        if track.pushed_at is not None and track.latest.timestamp <= track.pushed_at:
            return None
        return track.latest

    def mark_pushed(self, delivery_id: str, captured_at: datetime) -> None:
        track = self._track(delivery_id)
        if track.pushed_at is None or captured_at > track.pushed_at:
            track.pushed_at = captured_at

    def age_seconds(self, delivery_id: str) -> float | None:
        latest = self.latest(delivery_id)
        if latest is None:
            return None
        return latest.age(self._clock())

    def discard(self, delivery_id: str) -> None:
        self._tracks.pop(delivery_id, None)

    def delivery_ids(self) -> list[str]:
        return list(self._tracks)
