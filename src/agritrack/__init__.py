"""agritrack - Async live delivery tracking and route planning."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("agritrack")
except PackageNotFoundError:
    __version__ = "0+local"
from agritrack.client import AgriTrackClient
from agritrack.config import TrackingConfig
from agritrack.exceptions import (
    AgriTrackError,
    ApiError,
    AuthenticationError,
    ConfigError,
    InvalidTransitionError,
    LifecycleError,
    LocationError,
    LocationTimeoutError,
    LocationUnsupportedError,
    MalformedResponseError,
    NoRouteFoundError,
    PermissionDeniedError,
    PositionUnavailableError,
    ProviderUnavailableError,
    RoutingError,
    TransportError,
)
from agritrack.lifecycle import DeliveryLifecycleController, RouteView, TrackingSession
from agritrack.location import (
    DevicePositionSource,
    LocationAcquisitionManager,
    LocationContext,
    SyntheticPositionSource,
)
from agritrack.models import (
    Delivery,
    DeliveryStatus,
    GeoPosition,
    PositionSourceKind,
    RouteDescriptor,
    RouteInstruction,
    RouteSource,
    Stop,
    StopKind,
)
from agritrack.publisher import LiveLocationPublisher
from agritrack.routing import OptimizedTrip, RouteComputationService, TripStatistics, optimize_stops, plan_trip

__all__ = [
    "__version__",
    "AgriTrackClient",
    "AgriTrackError",
    "ApiError",
    "AuthenticationError",
    "ConfigError",
    "Delivery",
    "DeliveryLifecycleController",
    "DeliveryStatus",
    "DevicePositionSource",
    "GeoPosition",
    "InvalidTransitionError",
    "LifecycleError",
    "LiveLocationPublisher",
    "LocationAcquisitionManager",
    "LocationContext",
    "LocationError",
    "LocationTimeoutError",
    "LocationUnsupportedError",
    "MalformedResponseError",
    "NoRouteFoundError",
    "OptimizedTrip",
    "PermissionDeniedError",
    "PositionSourceKind",
    "PositionUnavailableError",
    "ProviderUnavailableError",
    "RouteComputationService",
    "RouteDescriptor",
    "RouteInstruction",
    "RouteSource",
    "RouteView",
    "RoutingError",
    "Stop",
    "StopKind",
    "SyntheticPositionSource",
    "TrackingConfig",
    "TrackingSession",
    "TransportError",
    "TripStatistics",
    "optimize_stops",
    "plan_trip",
]
