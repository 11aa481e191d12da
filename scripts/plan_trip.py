#!/usr/bin/env python3
"""Plan a multi-stop trip for a transporter.

Reads deliveries either from a JSON file (a list in the delivery service's
format) or live from the delivery service, sequences the current target
stop of every open delivery with the nearest-neighbour optimizer and
prints the order with distance, time and fuel estimates.

Usage
-----
::

    python scripts/plan_trip.py --start 27.7172,85.3240 deliveries.json
    python scripts/plan_trip.py --start 27.7172,85.3240 --transporter USER_ID

Options::

    --routes            Also compute a road route for every leg
    --json              Output as machine-readable JSON
    --verbose, -v       Enable debug logging

The live mode reads ``AGRITRACK_*`` environment variables
(``AGRITRACK_BASE_URL``, ``AGRITRACK_AUTH_TOKEN``, ...).
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

# Allow running from the repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from agritrack import AgriTrackClient, Delivery, TrackingConfig  # noqa: E402
from agritrack.geo import LatLng, require_finite  # noqa: E402
from agritrack.routing import OptimizedTrip, RouteComputationService, plan_trip  # noqa: E402


def _parse_start(value: str) -> LatLng:
    try:
        lat_text, lng_text = value.split(",", 1)
        return require_finite((float(lat_text), float(lng_text)), name="--start")
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected LAT,LNG: {exc}") from exc


def _load_deliveries(path: Path) -> list[Delivery]:
    payload = json.loads(path.read_text(encoding="utf-8"))
    items = payload if isinstance(payload, list) else payload.get("deliveries", [])
    return [Delivery.model_validate(item) for item in items]


async def _leg_routes(routes: RouteComputationService, trip: OptimizedTrip, start: LatLng) -> list[dict[str, Any]]:
    legs: list[dict[str, Any]] = []
    current = start
    for stop in trip.stops:
        assert stop.coordinates is not None  # noqa: S101
        route = await routes.compute_route(current, stop.coordinates)
        legs.append(
            {
                "delivery_id": stop.delivery_id,
                "source": route.source.value,
                "distance_km": round(route.distance_km, 2),
                "duration_minutes": None if route.duration_minutes is None else round(route.duration_minutes, 1),
                "fallback": route.fallback,
            }
        )
        current = stop.coordinates
    return legs


def _trip_to_dict(trip: OptimizedTrip) -> dict[str, Any]:
    stats = trip.statistics
    return {
        "stops": [stop.model_dump(mode="json") for stop in trip.stops],
        "unavailable": [stop.model_dump(mode="json") for stop in trip.unavailable],
        "statistics": {
            "total_distance_km": round(stats.total_distance_km, 2),
            "estimated_minutes": round(stats.estimated_minutes, 1),
            "fuel_cost": round(stats.fuel_cost, 2),
            "stop_count": stats.stop_count,
        },
    }


def _print_trip(trip: OptimizedTrip, legs: list[dict[str, Any]] | None) -> None:
    print("Stop order:")
    for index, stop in enumerate(trip.stops, start=1):
        label = stop.address or f"{stop.latitude:.5f},{stop.longitude:.5f}"
        line = f"  {index:2d}. [{stop.kind}] {label} (delivery {stop.delivery_id})"
        if legs is not None:
            leg = legs[index - 1]
            suffix = " straight line" if leg["fallback"] else f" via {leg['source']}"
            line += f" - {leg['distance_km']} km{suffix}"
        print(line)
    for stop in trip.unavailable:
        print(f"   -  [{stop.kind}] {stop.address or '?'} (delivery {stop.delivery_id}): no coordinates")
    stats = trip.statistics
    print(f"Total distance : {stats.total_distance_km:.2f} km")
    print(f"Estimated time : {stats.estimated_minutes:.0f} min")
    print(f"Fuel cost      : {stats.fuel_cost:.2f}")


async def main() -> None:
    parser = argparse.ArgumentParser(description="Plan a multi-stop delivery trip.")
    parser.add_argument("deliveries", nargs="?", type=Path, help="JSON file with a list of deliveries")
    parser.add_argument("--start", required=True, type=_parse_start, help="Start position as LAT,LNG")
    parser.add_argument("--transporter", help="Fetch this transporter's deliveries from the service")
    parser.add_argument("--routes", action="store_true", help="Compute a road route for every leg")
    parser.add_argument("--json", action="store_true", dest="json_mode", help="Output machine-readable JSON")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")
    else:
        logging.basicConfig(level=logging.WARNING)

    if args.deliveries is None and not args.transporter:
        parser.error("pass a deliveries file or --transporter")

    config = TrackingConfig.from_env()
    async with AgriTrackClient(config) as client:
        if args.transporter:
            trip = await client.plan_trip(args.transporter, args.start)
        else:
            trip = plan_trip(_load_deliveries(args.deliveries), args.start)
        legs = await _leg_routes(client.routes, trip, args.start) if args.routes else None

    if args.json_mode:
        result = _trip_to_dict(trip)
        if legs is not None:
            result["legs"] = legs
        print(json.dumps(result, indent=2, ensure_ascii=False))
    else:
        _print_trip(trip, legs)


if __name__ == "__main__":
    asyncio.run(main())
