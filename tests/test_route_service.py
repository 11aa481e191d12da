from __future__ import annotations

import math
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import pytest

from agritrack.config import TrackingConfig
from agritrack.exceptions import (
    MalformedResponseError,
    NoRouteFoundError,
    ProviderUnavailableError,
    TransportError,
)
from agritrack.geo import LatLng, haversine_m
from agritrack.models.route import RouteDescriptor, RouteSource
from agritrack.routing.providers import OpenRouteServiceProvider, OsrmRouteProvider, straight_line_route
from agritrack.routing.service import RouteComputationService

START: LatLng = (27.70, 85.30)
END: LatLng = (27.80, 85.40)


@dataclass
class FakeTransport:
    """Answers requests through a handler keyed on a URL substring."""

    handlers: dict[str, Callable[[], Any]] = field(default_factory=dict)
    requests: list[dict[str, Any]] = field(default_factory=list)

    async def request_json(
        self,
        method: str,
        url: str,
        *,
        params: Mapping[str, str] | None = None,
        json_body: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> Any:
        self.requests.append(
            {"method": method, "url": url, "params": params, "json": json_body, "headers": headers}
        )
        for fragment, handler in self.handlers.items():
            if fragment in url:
                return handler()
        raise TransportError(f"no handler for {url}", endpoint=url)


def _raise(exc: Exception) -> Callable[[], Any]:
    def handler() -> Any:
        raise exc

    return handler


def _osrm_ok() -> dict[str, Any]:
    return {
        "code": "Ok",
        "routes": [
            {
                "geometry": {"type": "LineString", "coordinates": [[85.30, 27.70], [85.35, 27.76], [85.40, 27.80]]},
                "distance": 16_250.4,
                "duration": 1_410.2,
                "legs": [
                    {
                        "steps": [
                            {
                                "maneuver": {"type": "depart", "modifier": "north"},
                                "name": "Ring Road",
                                "distance": 800.0,
                                "duration": 70.0,
                            },
                            {
                                "maneuver": {"type": "turn", "modifier": "right"},
                                "name": "",
                                "distance": 15_450.4,
                                "duration": 1_340.2,
                            },
                            {"maneuver": {"type": "arrive"}, "name": "Bhaktapur Road", "distance": 0, "duration": 0},
                        ]
                    }
                ],
            }
        ],
    }


def _ors_ok() -> dict[str, Any]:
    return {
        "type": "FeatureCollection",
        "features": [
            {
                "type": "Feature",
                "geometry": {"type": "LineString", "coordinates": [[85.30, 27.70], [85.40, 27.80]]},
                "properties": {
                    "summary": {"distance": 17_020.0, "duration": 1_500.0},
                    "segments": [
                        {
                            "steps": [
                                {"instruction": "Head north on Ring Road", "distance": 900.0, "duration": 80.0},
                                {"instruction": "Arrive at your destination", "distance": 0.0, "duration": 0.0},
                            ]
                        }
                    ],
                },
            }
        ],
    }


def _service(transport: FakeTransport, *, ors_api_key: str | None = "ors-key") -> RouteComputationService:
    return RouteComputationService.from_config(TrackingConfig(ors_api_key=ors_api_key), transport)


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_osrm_request_and_normalization() -> None:
    transport = FakeTransport(handlers={"/route/v1/": _osrm_ok})
    provider = OsrmRouteProvider(transport, base_url="https://osrm.example.com/")

    route = await provider.route(START, END)

    request = transport.requests[0]
    assert request["method"] == "GET"
    assert request["url"] == "https://osrm.example.com/route/v1/driving/85.3,27.7;85.4,27.8"
    assert request["params"] == {"overview": "full", "geometries": "geojson", "steps": "true"}

    assert route.source == RouteSource.OSRM
    assert route.fallback is False
    assert route.coordinates == [(27.70, 85.30), (27.76, 85.35), (27.80, 85.40)]
    assert route.distance == pytest.approx(16_250.4)
    assert route.duration == pytest.approx(1_410.2)
    assert [i.text for i in route.instructions] == [
        "Head north onto Ring Road",
        "Turn right",
        "Arrive at destination",
    ]


@pytest.mark.asyncio
async def test_osrm_no_route_code() -> None:
    transport = FakeTransport(handlers={"/route/v1/": lambda: {"code": "NoRoute", "routes": []}})
    with pytest.raises(NoRouteFoundError):
        await OsrmRouteProvider(transport).route(START, END)


@pytest.mark.asyncio
async def test_osrm_malformed_geometry() -> None:
    payload = _osrm_ok()
    payload["routes"][0]["geometry"] = {"coordinates": [[85.3]]}
    transport = FakeTransport(handlers={"/route/v1/": lambda: payload})
    with pytest.raises(MalformedResponseError):
        await OsrmRouteProvider(transport).route(START, END)


@pytest.mark.asyncio
async def test_osrm_transport_failure_is_provider_unavailable() -> None:
    transport = FakeTransport(handlers={"/route/v1/": _raise(TransportError("boom", status_code=503))})
    with pytest.raises(ProviderUnavailableError) as exc_info:
        await OsrmRouteProvider(transport).route(START, END)
    assert exc_info.value.provider == "osrm"


@pytest.mark.asyncio
async def test_ors_request_and_normalization() -> None:
    transport = FakeTransport(handlers={"/v2/directions/": _ors_ok})
    provider = OpenRouteServiceProvider(transport, api_key="ors-key", base_url="https://ors.example.com")

    route = await provider.route(START, END)

    request = transport.requests[0]
    assert request["method"] == "POST"
    assert request["url"] == "https://ors.example.com/v2/directions/driving-car/geojson"
    assert request["json"] == {"coordinates": [[85.30, 27.70], [85.40, 27.80]], "instructions": True}
    assert request["headers"] == {"Authorization": "ors-key"}

    assert route.source == RouteSource.OPENROUTESERVICE
    assert route.coordinates == [START, END]
    assert route.distance == 17_020.0
    assert route.duration == 1_500.0
    assert route.instructions[0].text == "Head north on Ring Road"


@pytest.mark.asyncio
async def test_ors_without_api_key_is_unavailable() -> None:
    transport = FakeTransport()
    with pytest.raises(ProviderUnavailableError):
        await OpenRouteServiceProvider(transport, api_key=None).route(START, END)
    assert transport.requests == []


@pytest.mark.asyncio
async def test_ors_empty_features_is_no_route() -> None:
    transport = FakeTransport(handlers={"/v2/directions/": lambda: {"features": []}})
    with pytest.raises(NoRouteFoundError):
        await OpenRouteServiceProvider(transport, api_key="k").route(START, END)


# ---------------------------------------------------------------------------
# Fallback chain
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_primary_provider_wins() -> None:
    transport = FakeTransport(handlers={"/route/v1/": _osrm_ok, "/v2/directions/": _ors_ok})

    route = await _service(transport).compute_route(START, END)

    assert route.source == RouteSource.OSRM
    assert len(transport.requests) == 1


@pytest.mark.asyncio
async def test_secondary_provider_used_when_primary_fails() -> None:
    transport = FakeTransport(
        handlers={"/route/v1/": _raise(TransportError("down", status_code=502)), "/v2/directions/": _ors_ok}
    )

    route = await _service(transport).compute_route(START, END)

    assert route.source == RouteSource.OPENROUTESERVICE
    assert route.fallback is False


@pytest.mark.asyncio
async def test_both_providers_failing_yields_straight_line(caplog: pytest.LogCaptureFixture) -> None:
    transport = FakeTransport(
        handlers={
            "/route/v1/": _raise(TransportError("down", status_code=502)),
            "/v2/directions/": lambda: {"unexpected": True},
        }
    )

    with caplog.at_level("WARNING", logger="agritrack.routing.service"):
        route = await _service(transport).compute_route(START, END)

    assert route.fallback is True
    assert route.duration is None
    assert route.source == RouteSource.STRAIGHT_LINE
    assert route.coordinates == [START, END]
    assert route.distance == pytest.approx(haversine_m(START, END))
    assert len(route.instructions) == 1
    assert "straight line" in route.instructions[0].text
    assert "straight-line fallback" in caplog.text


@pytest.mark.asyncio
async def test_missing_ors_key_skips_to_fallback_without_request() -> None:
    transport = FakeTransport(handlers={"/route/v1/": lambda: {"code": "NoRoute"}})

    route = await _service(transport, ors_api_key=None).compute_route(START, END)

    assert route.fallback is True
    assert [r["url"] for r in transport.requests] == [
        "https://router.project-osrm.org/route/v1/driving/85.3,27.7;85.4,27.8"
    ]


@pytest.mark.asyncio
async def test_unexpected_provider_exception_is_absorbed() -> None:
    class _Broken:
        name = "broken"

        async def route(self, start: LatLng, end: LatLng) -> RouteDescriptor:
            raise RuntimeError("bug")

    route = await RouteComputationService([_Broken()]).compute_route(START, END)
    assert route.fallback is True


@pytest.mark.asyncio
@pytest.mark.parametrize("bad", [(math.nan, 85.3), (27.7, math.inf), (91.0, 0.0)])
async def test_non_finite_input_is_a_caller_error(bad: LatLng) -> None:
    with pytest.raises(ValueError):
        await RouteComputationService([]).compute_route(bad, END)


def test_straight_line_route_short_distance_in_metres() -> None:
    route = straight_line_route((27.7, 85.3), (27.701, 85.3))
    assert route.distance == pytest.approx(111.19, abs=0.1)
    assert "111 m" in route.instructions[0].text
