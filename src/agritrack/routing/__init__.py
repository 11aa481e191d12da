"""Route computation and trip sequencing."""

from agritrack.routing.optimizer import OptimizedTrip, TripStatistics, optimize_stops, plan_trip, trip_statistics
from agritrack.routing.providers import (
    OpenRouteServiceProvider,
    OsrmRouteProvider,
    RouteProvider,
    default_providers,
    straight_line_route,
)
from agritrack.routing.service import RouteComputationService

__all__ = [
    "OpenRouteServiceProvider",
    "OptimizedTrip",
    "OsrmRouteProvider",
    "RouteComputationService",
    "RouteProvider",
    "TripStatistics",
    "default_providers",
    "optimize_stops",
    "plan_trip",
    "straight_line_route",
    "trip_statistics",
]
