"""Greedy multi-stop trip sequencing.

Nearest-neighbour heuristic over great-circle distances. It is not an
optimal solver; ties are broken by input order so results are
deterministic.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from agritrack._constants import AVERAGE_SPEED_KMH, FUEL_EFFICIENCY_KM_PER_L, FUEL_PRICE_PER_L
from agritrack.geo import LatLng, haversine_km, require_finite
from agritrack.models.delivery import Delivery, Stop, route_target


@dataclass(frozen=True)
class TripStatistics:
    """Planning estimates for a sequenced trip."""

    total_distance_km: float
    estimated_minutes: float
    fuel_cost: float
    stop_count: int


@dataclass(frozen=True)
class OptimizedTrip:
    stops: list[Stop]
    statistics: TripStatistics
    unavailable: list[Stop] = field(default_factory=list)


def _stop_coordinates(stop: Stop) -> LatLng:
    coordinates = stop.coordinates
    if coordinates is None:
        raise ValueError(f"stop for delivery {stop.delivery_id!r} has no usable coordinates")
    return coordinates


def optimize_stops(stops: Sequence[Stop], start: LatLng) -> list[Stop]:
    """Order *stops* by repeatedly visiting the nearest unvisited one.

    Every stop must carry coordinates. Zero or one stop is returned
    unchanged.

    Raises
    ------
    ValueError
        If *start* or a stop has no usable coordinates.
    """
    current = require_finite(start, name="start")
    if len(stops) <= 1:
        return list(stops)

    remaining = [(stop, _stop_coordinates(stop)) for stop in stops]
    ordered: list[Stop] = []
    while remaining:
        best_index = 0
        best_distance = haversine_km(current, remaining[0][1])
        for index in range(1, len(remaining)):
            distance = haversine_km(current, remaining[index][1])
            if distance < best_distance:
                best_index = index
                best_distance = distance
        stop, current = remaining.pop(best_index)
        ordered.append(stop)
    return ordered


def trip_statistics(stops: Sequence[Stop], start: LatLng) -> TripStatistics:
    """Distance, time and fuel estimates for visiting *stops* in order."""
    current = require_finite(start, name="start")
    total_km = 0.0
    for stop in stops:
        point = _stop_coordinates(stop)
        total_km += haversine_km(current, point)
        current = point
    return TripStatistics(
        total_distance_km=total_km,
        estimated_minutes=total_km / AVERAGE_SPEED_KMH * 60.0,
        fuel_cost=total_km / FUEL_EFFICIENCY_KM_PER_L * FUEL_PRICE_PER_L,
        stop_count=len(stops),
    )


def plan_trip(deliveries: Iterable[Delivery], start: LatLng) -> OptimizedTrip:
    """Sequence the current target stop of every open delivery.

    Terminal deliveries are skipped. Targets without coordinates cannot be
    routed and are returned in ``unavailable`` in input order.
    """
    routable: list[Stop] = []
    unavailable: list[Stop] = []
    for delivery in deliveries:
        target = route_target(delivery)
        if target is None:
            continue
        if target.has_coordinates:
            routable.append(target)
        else:
            unavailable.append(target)

    ordered = optimize_stops(routable, start)
    return OptimizedTrip(
        stops=ordered,
        statistics=trip_statistics(ordered, start),
        unavailable=unavailable,
    )
