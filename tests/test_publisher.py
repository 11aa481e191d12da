from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from agritrack.exceptions import TransportError
from agritrack.models.position import GeoPosition
from agritrack.publisher import LiveLocationPublisher
from agritrack.state.store import LocationStore


def _position(seconds: float, latitude: float = 27.7) -> GeoPosition:
    return GeoPosition(
        latitude=latitude,
        longitude=85.3,
        timestamp=datetime(2026, 1, 1, tzinfo=UTC) + timedelta(seconds=seconds),
    )


@dataclass
class FakeSink:
    pushes: list[tuple[str, GeoPosition]] = field(default_factory=list)
    fail_next: int = 0
    remote: GeoPosition | None = None

    async def update_location(self, delivery_id: str, position: GeoPosition) -> None:
        if self.fail_next:
            self.fail_next -= 1
            raise TransportError("network down")
        self.pushes.append((delivery_id, position))

    async def get_location(self, delivery_id: str) -> GeoPosition | None:
        return self.remote


class TickSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> Any:
        self.calls.append(seconds)
        await asyncio.sleep(0)


async def _until(predicate: Any, *, rounds: int = 200) -> None:
    for _ in range(rounds):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


def test_record_discards_out_of_order_readings() -> None:
    publisher = LiveLocationPublisher(FakeSink())

    assert publisher.record("d-1", _position(20.0, latitude=27.72))
    assert not publisher.record("d-1", _position(10.0, latitude=27.71))

    latest = publisher.latest("d-1")
    assert latest is not None
    assert latest.latitude == 27.72
    assert len(publisher.history("d-1")) == 1


def test_history_is_bounded_by_store_limit() -> None:
    publisher = LiveLocationPublisher(FakeSink(), store=LocationStore(history_limit=100))
    for seconds in range(150):
        publisher.record("d-1", _position(float(seconds)))

    history = publisher.history("d-1")
    assert len(history) == 100
    assert history[0].timestamp == _position(50.0).timestamp


@pytest.mark.asyncio
async def test_push_now_sends_newest_unpushed_reading_once() -> None:
    sink = FakeSink()
    publisher = LiveLocationPublisher(sink)
    publisher.record("d-1", _position(1.0))
    publisher.record("d-1", _position(2.0))

    assert await publisher.push_now("d-1")
    assert not await publisher.push_now("d-1")

    assert [p.timestamp for _, p in sink.pushes] == [_position(2.0).timestamp]


@pytest.mark.asyncio
async def test_failed_push_is_superseded_by_next_tick(caplog: pytest.LogCaptureFixture) -> None:
    sink = FakeSink(fail_next=1)
    publisher = LiveLocationPublisher(sink)
    publisher.record("d-1", _position(1.0))

    with caplog.at_level("WARNING", logger="agritrack.publisher"):
        assert not await publisher.push_now("d-1")
    assert "push for delivery d-1 failed" in caplog.text

    publisher.record("d-1", _position(2.0))
    assert await publisher.push_now("d-1")

    # Only the newer reading is sent; the failed one is never retried on its own.
    assert [p.timestamp for _, p in sink.pushes] == [_position(2.0).timestamp]


@pytest.mark.asyncio
async def test_push_loop_runs_on_interval_until_stopped() -> None:
    sink = FakeSink()
    sleep = TickSleep()
    publisher = LiveLocationPublisher(sink, push_interval=30.0, sleep=sleep)
    publisher.record("d-1", _position(1.0))

    publisher.start("d-1")
    publisher.start("d-1")
    await _until(lambda: len(sink.pushes) == 1 and len(sleep.calls) >= 2)
    await publisher.stop("d-1")

    assert not publisher.is_publishing("d-1")
    assert set(sleep.calls) == {30.0}
    assert len(sink.pushes) == 1


@pytest.mark.asyncio
async def test_live_view_polls_only_while_open() -> None:
    sleep = TickSleep()
    publisher = LiveLocationPublisher(FakeSink(), poll_interval=10.0, sleep=sleep)
    seen: list[GeoPosition] = []

    publisher.record("d-1", _position(1.0))
    publisher.open_live_view("d-1", seen.append)
    await _until(lambda: len(seen) == 1)
    publisher.record("d-1", _position(2.0))
    await _until(lambda: len(seen) == 2)
    await publisher.close_live_view("d-1")

    assert not publisher.is_viewing("d-1")
    assert [p.timestamp for p in seen] == [_position(1.0).timestamp, _position(2.0).timestamp]
    assert set(sleep.calls) == {10.0}


@pytest.mark.asyncio
async def test_remote_live_view_records_service_copy() -> None:
    sink = FakeSink(remote=_position(5.0, latitude=27.75))
    publisher = LiveLocationPublisher(sink, sleep=TickSleep())
    seen: list[GeoPosition] = []

    publisher.open_live_view("d-9", seen.append, remote=True)
    await _until(lambda: len(seen) == 1)
    await publisher.close()

    assert seen[0].latitude == 27.75
    assert publisher.latest("d-9") == seen[0]
