from __future__ import annotations

import asyncio
import random
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from agritrack.config import TrackingConfig
from agritrack.exceptions import (
    LocationError,
    LocationTimeoutError,
    LocationUnsupportedError,
    PermissionDeniedError,
    PositionUnavailableError,
)
from agritrack.location.manager import LocationAcquisitionManager, LocationContext
from agritrack.location.sources import (
    DevicePositionSource,
    GeolocationBackendError,
    PermissionState,
    SyntheticPositionSource,
    build_position_source,
)
from agritrack.models.position import GeoPosition, PositionSourceKind


class FakeClock:
    """Manual clock whose ``sleep`` advances time instead of waiting."""

    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, tzinfo=UTC)
        self.sleeps: list[float] = []

    def __call__(self) -> datetime:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += timedelta(seconds=seconds)
        await asyncio.sleep(0)


@dataclass
class FakeSource:
    """Scripted position source. Each call consumes one outcome.

    An outcome is a :class:`GeoPosition`, an exception instance to raise or
    ``"hang"`` to block until cancelled. When the script runs out the last
    outcome repeats.
    """

    clock: FakeClock
    outcomes: list[Any] = field(default_factory=list)
    permission: PermissionState = PermissionState.GRANTED
    kind: PositionSourceKind = PositionSourceKind.DEVICE
    calls: list[tuple[bool, float]] = field(default_factory=list)

    def position(self, latitude: float = 27.7) -> GeoPosition:
        return GeoPosition(latitude=latitude, longitude=85.3, accuracy=8.0, timestamp=self.clock())

    async def query_permission(self) -> PermissionState:
        return self.permission

    async def acquire_once(self, *, high_accuracy: bool, timeout: float, maximum_age: float) -> GeoPosition:
        self.calls.append((high_accuracy, timeout))
        index = min(len(self.calls), len(self.outcomes)) - 1
        outcome = self.outcomes[index] if self.outcomes else self.position()
        if outcome == "hang":
            await asyncio.Event().wait()
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is None:
            return self.position()
        return outcome

    async def watch(self, *, high_accuracy: bool, timeout: float, maximum_age: float) -> AsyncIterator[GeoPosition]:
        for _ in range(3):
            yield self.position()


def _manager(source: Any, clock: FakeClock, **kwargs: Any) -> LocationAcquisitionManager:
    return LocationAcquisitionManager(LocationContext(source=source), sleep=clock.sleep, clock=clock, **kwargs)


async def _until(predicate: Any, *, rounds: int = 200) -> None:
    for _ in range(rounds):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


# ---------------------------------------------------------------------------
# Permission
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_check_permission_denied_raises_with_remediation() -> None:
    clock = FakeClock()
    manager = _manager(FakeSource(clock, permission=PermissionState.DENIED), clock)

    with pytest.raises(PermissionDeniedError) as exc_info:
        await manager.check_permission()

    assert "settings" in exc_info.value.remediation
    assert exc_info.value.synthetic_fallback_available is True
    assert manager.context.permission is PermissionState.DENIED


@pytest.mark.asyncio
async def test_check_permission_without_positioning_primitive() -> None:
    clock = FakeClock()
    manager = _manager(DevicePositionSource(None, clock=clock), clock)

    with pytest.raises(LocationUnsupportedError):
        await manager.check_permission()
    with pytest.raises(LocationUnsupportedError):
        await manager.acquire_once()


@pytest.mark.asyncio
async def test_check_permission_prompt_is_allowed() -> None:
    clock = FakeClock()
    manager = _manager(FakeSource(clock, permission=PermissionState.PROMPT), clock)
    assert await manager.check_permission() is PermissionState.PROMPT


# ---------------------------------------------------------------------------
# Two-tier acquisition
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_high_accuracy_timeout_falls_back_to_relaxed_tier() -> None:
    clock = FakeClock()
    source = FakeSource(clock)
    relaxed = source.position(latitude=27.71)
    source.outcomes = [LocationTimeoutError("slow"), relaxed]
    manager = _manager(source, clock, high_accuracy_timeout=10.0, relaxed_timeout=30.0)

    position = await manager.acquire_once()

    assert position is relaxed
    assert source.calls == [(True, 10.0), (False, 30.0)]
    assert manager.context.last_position is relaxed


@pytest.mark.asyncio
async def test_unavailable_does_not_trigger_relaxed_tier() -> None:
    clock = FakeClock()
    source = FakeSource(clock, outcomes=[PositionUnavailableError("no fix")])
    manager = _manager(source, clock)

    with pytest.raises(PositionUnavailableError):
        await manager.acquire_once()
    assert source.calls == [(True, 10.0)]


@pytest.mark.asyncio
async def test_each_tier_is_bounded_by_its_timeout() -> None:
    clock = FakeClock()
    source = FakeSource(clock, outcomes=["hang"])
    manager = _manager(source, clock, high_accuracy_timeout=0.01, relaxed_timeout=0.01)

    with pytest.raises(LocationTimeoutError):
        await manager.acquire_once()
    assert [high for high, _ in source.calls] == [True, False]


# ---------------------------------------------------------------------------
# Retry with backoff
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_three_backoff_retries_then_timeout_error() -> None:
    clock = FakeClock()
    source = FakeSource(clock, outcomes=[LocationTimeoutError("slow")])
    manager = _manager(source, clock)

    with pytest.raises(LocationTimeoutError) as exc_info:
        await manager.acquire_with_retry()

    assert exc_info.value.retries == 3
    assert clock.sleeps == [5.0, 10.0, 20.0]
    # Four attempts, each trying both tiers.
    assert len(source.calls) == 8


@pytest.mark.asyncio
async def test_retry_recovers_after_transient_failure() -> None:
    clock = FakeClock()
    source = FakeSource(clock)
    source.outcomes = [PositionUnavailableError("no fix"), None]
    manager = _manager(source, clock)
    retries: list[int] = []

    position = await manager.acquire_with_retry(on_retry=retries.append)

    assert position.latitude == 27.7
    assert retries == [1]
    assert clock.sleeps == [5.0]


@pytest.mark.asyncio
async def test_permission_denied_is_never_retried() -> None:
    clock = FakeClock()
    source = FakeSource(clock, outcomes=[PermissionDeniedError("blocked")])
    manager = _manager(source, clock)

    with pytest.raises(PermissionDeniedError) as exc_info:
        await manager.acquire_with_retry()

    assert exc_info.value.retries == 0
    assert clock.sleeps == []
    assert len(source.calls) == 1
    assert manager.context.permission is PermissionState.DENIED


# ---------------------------------------------------------------------------
# Cached-if-fresh
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_get_position_prefers_fresh_cache() -> None:
    clock = FakeClock()
    source = FakeSource(clock)
    manager = _manager(source, clock, maximum_age=60.0)

    first = await manager.get_position()
    clock.now += timedelta(seconds=30)
    assert await manager.get_position() is first
    assert len(source.calls) == 1

    clock.now += timedelta(seconds=31)
    second = await manager.get_position()
    assert second is not first
    assert len(source.calls) == 2


@pytest.mark.asyncio
async def test_contexts_are_independent() -> None:
    clock = FakeClock()
    a = _manager(FakeSource(clock), clock)
    b = _manager(FakeSource(clock), clock)

    await a.acquire_once()

    assert a.cached_position() is not None
    assert b.cached_position() is None


# ---------------------------------------------------------------------------
# Periodic updates
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_periodic_updates_deliver_positions_until_stopped() -> None:
    clock = FakeClock()
    source = FakeSource(clock)
    manager = _manager(source, clock)
    positions: list[GeoPosition] = []

    updates = manager.start_periodic_updates(15.0, positions.append)
    await _until(lambda: len(positions) >= 3)
    await updates.stop()

    assert not updates.running
    assert all(delay == 15.0 for delay in clock.sleeps)
    timestamps = [p.timestamp for p in positions]
    assert timestamps == sorted(timestamps)


@pytest.mark.asyncio
async def test_periodic_updates_reuse_fresh_cache() -> None:
    clock = FakeClock()
    source = FakeSource(clock)
    manager = _manager(source, clock)
    positions: list[GeoPosition] = []

    # Cache stays fresh for a minute, so three 15s ticks share one fix.
    updates = manager.start_periodic_updates(15.0, positions.append, max_age=60.0)
    await _until(lambda: len(positions) >= 3)
    await updates.stop()

    assert len(source.calls) == 1
    assert positions[0] is positions[1] is positions[2]


@pytest.mark.asyncio
async def test_periodic_updates_report_errors_and_continue() -> None:
    clock = FakeClock()
    source = FakeSource(clock)
    source.outcomes = [PositionUnavailableError("no fix"), PositionUnavailableError("no fix"), None]
    manager = _manager(source, clock, backoff_delays=(5.0,))
    positions: list[GeoPosition] = []
    errors: list[LocationError] = []

    updates = manager.start_periodic_updates(15.0, positions.append, on_error=errors.append)
    await _until(lambda: len(positions) >= 1)
    retry_count_after_error = errors[0].retries
    await updates.stop()

    assert retry_count_after_error == 1
    assert updates.retry_count == 0
    assert clock.sleeps[:2] == [5.0, 15.0]


@pytest.mark.asyncio
async def test_permission_revoked_stops_periodic_updates() -> None:
    clock = FakeClock()
    source = FakeSource(clock)
    source.outcomes = [None, PermissionDeniedError("revoked")]
    manager = _manager(source, clock)
    positions: list[GeoPosition] = []
    denied: list[PermissionDeniedError] = []

    updates = manager.start_periodic_updates(15.0, positions.append, on_permission_denied=denied.append)
    await _until(lambda: not updates.running)

    assert len(positions) == 1
    assert len(denied) == 1
    assert clock.sleeps == [15.0]


@dataclass
class BlockingSource:
    """Blocks every acquisition; optionally answers a cancel with a fix."""

    clock: FakeClock
    absorb_cancel: bool = False
    kind: PositionSourceKind = PositionSourceKind.DEVICE
    entered: asyncio.Event = field(default_factory=asyncio.Event)

    async def query_permission(self) -> PermissionState:
        return PermissionState.GRANTED

    async def acquire_once(self, *, high_accuracy: bool, timeout: float, maximum_age: float) -> GeoPosition:
        self.entered.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            if not self.absorb_cancel:
                raise
        return GeoPosition(latitude=27.7, longitude=85.3, timestamp=self.clock())

    async def watch(self, *, high_accuracy: bool, timeout: float, maximum_age: float) -> AsyncIterator[GeoPosition]:
        yield await self.acquire_once(high_accuracy=high_accuracy, timeout=timeout, maximum_age=maximum_age)


@pytest.mark.asyncio
@pytest.mark.parametrize("absorb_cancel", [False, True])
async def test_stop_during_acquisition_ends_loop(absorb_cancel: bool) -> None:
    clock = FakeClock()
    source = BlockingSource(clock, absorb_cancel=absorb_cancel)
    manager = _manager(source, clock)
    positions: list[GeoPosition] = []

    updates = manager.start_periodic_updates(15.0, positions.append)
    await asyncio.wait_for(source.entered.wait(), 1.0)
    await asyncio.wait_for(updates.stop(), 1.0)

    assert not updates.running
    assert positions == []
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_set_source_applies_on_next_tick() -> None:
    clock = FakeClock()
    manager = _manager(FakeSource(clock), clock)
    positions: list[GeoPosition] = []

    updates = manager.start_periodic_updates(15.0, positions.append)
    await _until(lambda: len(positions) >= 1)
    manager.set_source(SyntheticPositionSource(27.7172, 85.3240, rng=random.Random(1), clock=clock))
    await _until(lambda: len(positions) >= 2)
    await updates.stop()

    assert positions[0].source == PositionSourceKind.DEVICE
    assert positions[-1].source == PositionSourceKind.SYNTHETIC


@pytest.mark.asyncio
async def test_watch_positions_updates_cache() -> None:
    clock = FakeClock()
    manager = _manager(FakeSource(clock), clock)

    seen = [position async for position in manager.watch_positions()]

    assert len(seen) == 3
    assert manager.context.last_position is seen[-1]


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------


@dataclass
class FakeBackend:
    permission: str = "granted"
    error_code: int | None = None
    reading: dict[str, Any] = field(
        default_factory=lambda: {
            "coords": {"latitude": 27.7, "longitude": 85.3, "accuracy": 15.0, "speed": None, "heading": 90.0},
            "timestamp": 1767225600000,
        }
    )

    async def query_permission(self) -> str:
        return self.permission

    async def get_current_position(self, *, high_accuracy: bool, timeout: float, maximum_age: float) -> dict[str, Any]:
        if self.error_code is not None:
            raise GeolocationBackendError(self.error_code)
        return self.reading

    async def watch_position(
        self, *, high_accuracy: bool, timeout: float, maximum_age: float
    ) -> AsyncIterator[dict[str, Any]]:
        yield self.reading
        raise GeolocationBackendError(GeolocationBackendError.PERMISSION_DENIED)


@pytest.mark.asyncio
async def test_device_source_parses_backend_reading() -> None:
    source = DevicePositionSource(FakeBackend())

    position = await source.acquire_once(high_accuracy=True, timeout=10.0, maximum_age=60.0)

    assert position.coordinates == (27.7, 85.3)
    assert position.heading == 90.0
    assert position.speed is None
    assert position.timestamp == datetime(2026, 1, 1, tzinfo=UTC)
    assert position.source == PositionSourceKind.DEVICE


@pytest.mark.parametrize(
    ("code", "expected"),
    [
        (1, PermissionDeniedError),
        (2, PositionUnavailableError),
        (3, LocationTimeoutError),
    ],
)
@pytest.mark.asyncio
async def test_device_source_maps_error_codes(code: int, expected: type[Exception]) -> None:
    source = DevicePositionSource(FakeBackend(error_code=code))
    with pytest.raises(expected):
        await source.acquire_once(high_accuracy=True, timeout=10.0, maximum_age=60.0)


@pytest.mark.asyncio
async def test_device_source_watch_maps_errors() -> None:
    source = DevicePositionSource(FakeBackend())
    seen: list[GeoPosition] = []

    with pytest.raises(PermissionDeniedError):
        async for position in source.watch(high_accuracy=True, timeout=10.0, maximum_age=60.0):
            seen.append(position)

    assert len(seen) == 1


@pytest.mark.asyncio
async def test_device_source_permission_states() -> None:
    assert await DevicePositionSource(FakeBackend(permission="denied")).query_permission() is PermissionState.DENIED
    assert await DevicePositionSource(FakeBackend(permission="weird")).query_permission() is PermissionState.PROMPT
    assert await DevicePositionSource(None).query_permission() is PermissionState.UNSUPPORTED


@pytest.mark.asyncio
async def test_synthetic_source_jitters_around_fixed_point() -> None:
    source = SyntheticPositionSource(27.7172, 85.3240, jitter=0.005, rng=random.Random(42))

    assert await source.query_permission() is PermissionState.GRANTED
    for _ in range(20):
        position = await source.acquire_once(high_accuracy=True, timeout=1.0, maximum_age=0.0)
        assert abs(position.latitude - 27.7172) <= 0.005
        assert abs(position.longitude - 85.3240) <= 0.005
        assert position.source == PositionSourceKind.SYNTHETIC


def test_build_position_source_follows_config() -> None:
    assert isinstance(build_position_source(TrackingConfig()), DevicePositionSource)

    source = build_position_source(TrackingConfig(use_synthetic_positions=True, synthetic_latitude=10.0))
    assert isinstance(source, SyntheticPositionSource)
    assert source.latitude == 10.0
