"""Device location acquisition."""

from agritrack.location.manager import LocationAcquisitionManager, LocationContext, PeriodicUpdates
from agritrack.location.sources import (
    DevicePositionSource,
    GeolocationBackend,
    GeolocationBackendError,
    PermissionState,
    PositionSource,
    SyntheticPositionSource,
    build_position_source,
)

__all__ = [
    "DevicePositionSource",
    "GeolocationBackend",
    "GeolocationBackendError",
    "LocationAcquisitionManager",
    "LocationContext",
    "PeriodicUpdates",
    "PermissionState",
    "PositionSource",
    "SyntheticPositionSource",
    "build_position_source",
]
