"""Position sources.

A :class:`PositionSource` is the seam between the acquisition manager and
whatever produces readings: the device's geolocation primitive
(:class:`DevicePositionSource`) or a fixed coordinate with jitter
(:class:`SyntheticPositionSource`) for environments without usable
positioning. Which one is used is decided by configuration through
:func:`build_position_source`.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import random
from collections.abc import AsyncIterator, Callable, Mapping
from datetime import UTC, datetime
from typing import Any, Protocol

from agritrack.config import TrackingConfig
from agritrack.exceptions import (
    LocationError,
    LocationTimeoutError,
    LocationUnsupportedError,
    PermissionDeniedError,
    PositionUnavailableError,
)
from agritrack.models.position import GeoPosition, PositionSourceKind

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class PermissionState(enum.StrEnum):
    GRANTED = "granted"
    PROMPT = "prompt"
    DENIED = "denied"
    UNSUPPORTED = "unsupported"


class GeolocationBackendError(Exception):
    """Error raised by a device geolocation backend.

    ``code`` follows the W3C ``GeolocationPositionError`` numbering.
    """

    PERMISSION_DENIED = 1
    POSITION_UNAVAILABLE = 2
    TIMEOUT = 3

    def __init__(self, code: int, message: str = "") -> None:
        self.code = code
        super().__init__(message or f"geolocation error code={code}")


class GeolocationBackend(Protocol):
    """The device geolocation primitive (permission query, one-shot, watch)."""

    async def query_permission(self) -> str:
        ...

    async def get_current_position(
        self,
        *,
        high_accuracy: bool,
        timeout: float,
        maximum_age: float,
    ) -> Mapping[str, Any]:
        ...

    def watch_position(
        self,
        *,
        high_accuracy: bool,
        timeout: float,
        maximum_age: float,
    ) -> AsyncIterator[Mapping[str, Any]]:
        ...


class PositionSource(Protocol):
    """Anything that can produce :class:`GeoPosition` readings."""

    kind: PositionSourceKind

    async def query_permission(self) -> PermissionState:
        ...

    async def acquire_once(
        self,
        *,
        high_accuracy: bool,
        timeout: float,
        maximum_age: float,
    ) -> GeoPosition:
        ...

    def watch(
        self,
        *,
        high_accuracy: bool,
        timeout: float,
        maximum_age: float,
    ) -> AsyncIterator[GeoPosition]:
        ...


def _map_backend_error(exc: GeolocationBackendError) -> LocationError:
    if exc.code == GeolocationBackendError.PERMISSION_DENIED:
        return PermissionDeniedError(f"Location access was denied: {exc}")
    if exc.code == GeolocationBackendError.POSITION_UNAVAILABLE:
        return PositionUnavailableError(f"Location information is unavailable: {exc}")
    if exc.code == GeolocationBackendError.TIMEOUT:
        return LocationTimeoutError(f"Location request timed out: {exc}")
    return PositionUnavailableError(f"Unknown geolocation error: {exc}")


class DevicePositionSource:
    """Adapts a :class:`GeolocationBackend` to :class:`PositionSource`.

    ``backend=None`` models an environment without a positioning primitive:
    every call reports :class:`LocationUnsupportedError`.
    """

    kind = PositionSourceKind.DEVICE

    def __init__(
        self,
        backend: GeolocationBackend | None,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._backend = backend
        self._clock = clock

    def _require_backend(self) -> GeolocationBackend:
        if self._backend is None:
            raise LocationUnsupportedError("Geolocation is not supported in this environment")
        return self._backend

    async def query_permission(self) -> PermissionState:
        if self._backend is None:
            return PermissionState.UNSUPPORTED
        state = await self._backend.query_permission()
        try:
            return PermissionState(str(state).lower())
        except ValueError:
            _logger.debug("Unknown permission state %r; treating as prompt", state)
            return PermissionState.PROMPT

    def _to_position(self, reading: Mapping[str, Any]) -> GeoPosition:
        coords = reading.get("coords")
        data: dict[str, Any] = dict(coords) if isinstance(coords, Mapping) else dict(reading)
        timestamp = reading.get("timestamp") if isinstance(coords, Mapping) else data.get("timestamp")
        data["timestamp"] = timestamp if timestamp is not None else self._clock()
        data["source"] = PositionSourceKind.DEVICE
        try:
            return GeoPosition.model_validate(data)
        except ValueError as exc:
            raise PositionUnavailableError(f"Device returned an unusable reading: {exc}") from exc

    async def acquire_once(
        self,
        *,
        high_accuracy: bool,
        timeout: float,
        maximum_age: float,
    ) -> GeoPosition:
        backend = self._require_backend()
        try:
            reading = await backend.get_current_position(
                high_accuracy=high_accuracy,
                timeout=timeout,
                maximum_age=maximum_age,
            )
        except GeolocationBackendError as exc:
            raise _map_backend_error(exc) from exc
        return self._to_position(reading)

    async def watch(
        self,
        *,
        high_accuracy: bool,
        timeout: float,
        maximum_age: float,
    ) -> AsyncIterator[GeoPosition]:
        backend = self._require_backend()
        try:
            async for reading in backend.watch_position(
                high_accuracy=high_accuracy,
                timeout=timeout,
                maximum_age=maximum_age,
            ):
                yield self._to_position(reading)
        except GeolocationBackendError as exc:
            raise _map_backend_error(exc) from exc


class SyntheticPositionSource:
    """Fixed coordinate plus a small uniform per-tick jitter.

    Always permitted. Intended for tests and demo environments without a
    usable sensor; readings are tagged ``source=synthetic``.
    """

    kind = PositionSourceKind.SYNTHETIC

    def __init__(
        self,
        latitude: float,
        longitude: float,
        *,
        jitter: float = 0.005,
        accuracy: float = 50.0,
        tick: float = 1.0,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.latitude = latitude
        self.longitude = longitude
        self._jitter = jitter
        self._accuracy = accuracy
        self._tick = tick
        self._rng = rng or random.Random()
        self._clock = clock

    async def query_permission(self) -> PermissionState:
        return PermissionState.GRANTED

    def _next(self) -> GeoPosition:
        lat = self.latitude + self._rng.uniform(-self._jitter, self._jitter)
        lng = self.longitude + self._rng.uniform(-self._jitter, self._jitter)
        return GeoPosition(
            latitude=max(-90.0, min(90.0, lat)),
            longitude=max(-180.0, min(180.0, lng)),
            accuracy=self._accuracy,
            timestamp=self._clock(),
            source=PositionSourceKind.SYNTHETIC,
        )

    async def acquire_once(
        self,
        *,
        high_accuracy: bool,
        timeout: float,
        maximum_age: float,
    ) -> GeoPosition:
        return self._next()

    async def watch(
        self,
        *,
        high_accuracy: bool,
        timeout: float,
        maximum_age: float,
    ) -> AsyncIterator[GeoPosition]:
        while True:
            yield self._next()
            await asyncio.sleep(self._tick)


def build_position_source(
    config: TrackingConfig,
    backend: GeolocationBackend | None = None,
    *,
    rng: random.Random | None = None,
    clock: Callable[[], datetime] = _utcnow,
) -> PositionSource:
    """Select the position source implementation from configuration."""
    if config.use_synthetic_positions:
        return SyntheticPositionSource(
            config.synthetic_latitude,
            config.synthetic_longitude,
            jitter=config.synthetic_jitter,
            rng=rng,
            clock=clock,
        )
    return DevicePositionSource(backend, clock=clock)
