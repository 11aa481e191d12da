"""Routing providers.

Each provider turns a ``(start, end)`` pair into a normalized
:class:`RouteDescriptor` or raises a :class:`RoutingError` subclass. The
service tries them in order; any error moves the chain on.

Endpoints:
  - OSRM: GET /route/v1/{profile}/{lng,lat;lng,lat}
  - OpenRouteService: POST /v2/directions/{profile}/geojson
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any, Protocol

from pydantic import ValidationError

from agritrack._constants import ORS_BASE_URL, OSRM_BASE_URL, ors_profile
from agritrack._normalize import safe_float, safe_str
from agritrack._transport import Transport
from agritrack.exceptions import (
    MalformedResponseError,
    NoRouteFoundError,
    ProviderUnavailableError,
    TransportError,
)
from agritrack.geo import LatLng, haversine_m
from agritrack.models.route import RouteDescriptor, RouteInstruction, RouteSource

_logger = logging.getLogger(__name__)


class RouteProvider(Protocol):
    """One link of the routing fallback chain."""

    name: str

    async def route(self, start: LatLng, end: LatLng) -> RouteDescriptor:
        ...


def _lnglat_to_latlng(points: Any, *, provider: str) -> list[LatLng]:
    """Convert a GeoJSON ``[[lng, lat], ...]`` line into ``(lat, lng)`` pairs."""
    if not isinstance(points, list):
        raise MalformedResponseError("Route geometry is not a coordinate list", provider=provider)
    coordinates: list[LatLng] = []
    for point in points:
        if not isinstance(point, (list, tuple)) or len(point) < 2:
            raise MalformedResponseError(f"Invalid geometry point {point!r}", provider=provider)
        lng = safe_float(point[0])
        lat = safe_float(point[1])
        if lat is None or lng is None:
            raise MalformedResponseError(f"Invalid geometry point {point!r}", provider=provider)
        coordinates.append((lat, lng))
    return coordinates


def _build_descriptor(provider: str, **fields: Any) -> RouteDescriptor:
    try:
        return RouteDescriptor(**fields)
    except ValidationError as exc:
        raise MalformedResponseError(f"Route failed validation: {exc}", provider=provider) from exc


# ------------------------------------------------------------------
# OSRM
# ------------------------------------------------------------------


def _osrm_instruction_text(step: Mapping[str, Any]) -> str:
    maneuver = step.get("maneuver")
    maneuver = maneuver if isinstance(maneuver, Mapping) else {}
    kind = safe_str(maneuver.get("type")) or "continue"
    modifier = safe_str(maneuver.get("modifier"))
    name = safe_str(step.get("name"))

    if kind == "depart":
        text = f"Head {modifier}" if modifier else "Depart"
    elif kind == "arrive":
        return "Arrive at destination"
    else:
        text = kind.replace("_", " ").capitalize()
        if modifier:
            text = f"{text} {modifier}"
    if name:
        text = f"{text} onto {name}"
    return text


def _osrm_instructions(legs: Any) -> list[RouteInstruction]:
    instructions: list[RouteInstruction] = []
    if not isinstance(legs, list):
        return instructions
    for leg in legs:
        steps = leg.get("steps") if isinstance(leg, Mapping) else None
        if not isinstance(steps, list):
            continue
        for step in steps:
            if not isinstance(step, Mapping):
                continue
            instructions.append(
                RouteInstruction(
                    text=_osrm_instruction_text(step),
                    distance=safe_float(step.get("distance")) or 0.0,
                    duration=safe_float(step.get("duration")),
                )
            )
    return instructions


class OsrmRouteProvider:
    """Primary provider: an OSRM ``route`` service."""

    name = "osrm"

    def __init__(
        self,
        transport: Transport,
        *,
        base_url: str = OSRM_BASE_URL,
        profile: str = "driving",
    ) -> None:
        self._transport = transport
        self._base_url = base_url.rstrip("/")
        self._profile = profile

    def _url(self, start: LatLng, end: LatLng) -> str:
        coords = f"{start[1]},{start[0]};{end[1]},{end[0]}"
        return f"{self._base_url}/route/v1/{self._profile}/{coords}"

    async def route(self, start: LatLng, end: LatLng) -> RouteDescriptor:
        url = self._url(start, end)
        try:
            payload = await self._transport.request_json(
                "GET",
                url,
                params={"overview": "full", "geometries": "geojson", "steps": "true"},
            )
        except TransportError as exc:
            raise ProviderUnavailableError(f"OSRM request failed: {exc}", provider=self.name) from exc

        if not isinstance(payload, Mapping):
            raise MalformedResponseError("OSRM response is not a JSON object", provider=self.name)

        code = safe_str(payload.get("code"))
        routes = payload.get("routes")
        if code in {"NoRoute", "NoSegment"} or (code == "Ok" and not routes):
            raise NoRouteFoundError(f"OSRM found no route (code={code})", provider=self.name)
        if code != "Ok":
            message = safe_str(payload.get("message")) or "unknown error"
            raise ProviderUnavailableError(f"OSRM error {code}: {message}", provider=self.name)
        if not isinstance(routes, list) or not isinstance(routes[0], Mapping):
            raise MalformedResponseError("OSRM routes missing", provider=self.name)

        best = routes[0]
        geometry = best.get("geometry")
        if not isinstance(geometry, Mapping):
            raise MalformedResponseError("OSRM route has no GeoJSON geometry", provider=self.name)

        distance = safe_float(best.get("distance"))
        if distance is None:
            raise MalformedResponseError("OSRM route has no distance", provider=self.name)

        return _build_descriptor(
            self.name,
            coordinates=_lnglat_to_latlng(geometry.get("coordinates"), provider=self.name),
            distance=distance,
            duration=safe_float(best.get("duration")),
            instructions=_osrm_instructions(best.get("legs")),
            source=RouteSource.OSRM,
        )


# ------------------------------------------------------------------
# OpenRouteService
# ------------------------------------------------------------------


def _ors_instructions(segments: Any) -> list[RouteInstruction]:
    instructions: list[RouteInstruction] = []
    if not isinstance(segments, list):
        return instructions
    for segment in segments:
        steps = segment.get("steps") if isinstance(segment, Mapping) else None
        if not isinstance(steps, list):
            continue
        for step in steps:
            if not isinstance(step, Mapping):
                continue
            instructions.append(
                RouteInstruction(
                    text=safe_str(step.get("instruction")) or "Continue",
                    distance=safe_float(step.get("distance")) or 0.0,
                    duration=safe_float(step.get("duration")),
                )
            )
    return instructions


class OpenRouteServiceProvider:
    """Secondary provider: OpenRouteService directions (GeoJSON output)."""

    name = "openrouteservice"

    def __init__(
        self,
        transport: Transport,
        *,
        api_key: str | None,
        base_url: str = ORS_BASE_URL,
        profile: str = "driving",
    ) -> None:
        self._transport = transport
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._profile = ors_profile(profile)

    async def route(self, start: LatLng, end: LatLng) -> RouteDescriptor:
        if not self._api_key:
            raise ProviderUnavailableError("OpenRouteService API key is not configured", provider=self.name)

        url = f"{self._base_url}/v2/directions/{self._profile}/geojson"
        body = {
            "coordinates": [[start[1], start[0]], [end[1], end[0]]],
            "instructions": True,
        }
        try:
            payload = await self._transport.request_json(
                "POST",
                url,
                json_body=body,
                headers={"Authorization": self._api_key},
            )
        except TransportError as exc:
            raise ProviderUnavailableError(
                f"OpenRouteService request failed: {exc}", provider=self.name
            ) from exc

        if not isinstance(payload, Mapping):
            raise MalformedResponseError("OpenRouteService response is not a JSON object", provider=self.name)

        features = payload.get("features")
        if not isinstance(features, list):
            raise MalformedResponseError("OpenRouteService response has no features", provider=self.name)
        if not features:
            raise NoRouteFoundError("OpenRouteService found no route", provider=self.name)

        feature = features[0]
        if not isinstance(feature, Mapping):
            raise MalformedResponseError("OpenRouteService feature is not an object", provider=self.name)
        geometry = feature.get("geometry")
        properties = feature.get("properties")
        if not isinstance(geometry, Mapping) or not isinstance(properties, Mapping):
            raise MalformedResponseError("OpenRouteService feature is incomplete", provider=self.name)

        summary = properties.get("summary")
        summary = summary if isinstance(summary, Mapping) else {}
        # ORS omits zero-valued summary fields.
        distance = safe_float(summary.get("distance")) or 0.0

        return _build_descriptor(
            self.name,
            coordinates=_lnglat_to_latlng(geometry.get("coordinates"), provider=self.name),
            distance=distance,
            duration=safe_float(summary.get("duration")),
            instructions=_ors_instructions(properties.get("segments")),
            source=RouteSource.OPENROUTESERVICE,
        )


# ------------------------------------------------------------------
# Straight line
# ------------------------------------------------------------------


def _format_distance(meters: float) -> str:
    if meters >= 1000.0:
        return f"{meters / 1000.0:.1f} km"
    return f"{meters:.0f} m"


def straight_line_route(start: LatLng, end: LatLng) -> RouteDescriptor:
    """Last-resort route: the great-circle segment between the endpoints."""
    distance = haversine_m(start, end)
    return RouteDescriptor(
        coordinates=[start, end],
        distance=distance,
        duration=None,
        instructions=[
            RouteInstruction(
                text=f"Head directly to destination ({_format_distance(distance)}, straight line)",
                distance=distance,
            )
        ],
        source=RouteSource.STRAIGHT_LINE,
        fallback=True,
    )


def default_providers(
    transport: Transport,
    *,
    osrm_base_url: str = OSRM_BASE_URL,
    ors_base_url: str = ORS_BASE_URL,
    ors_api_key: str | None = None,
    profile: str = "driving",
) -> Iterable[RouteProvider]:
    """The standard chain: OSRM first, OpenRouteService second."""
    return (
        OsrmRouteProvider(transport, base_url=osrm_base_url, profile=profile),
        OpenRouteServiceProvider(transport, api_key=ors_api_key, base_url=ors_base_url, profile=profile),
    )
