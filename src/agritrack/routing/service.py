"""Route computation with a provider fallback chain."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from agritrack._transport import Transport
from agritrack.config import TrackingConfig
from agritrack.exceptions import RoutingError
from agritrack.geo import LatLng, require_finite
from agritrack.models.route import RouteDescriptor
from agritrack.routing.providers import RouteProvider, default_providers, straight_line_route

_logger = logging.getLogger(__name__)


class RouteComputationService:
    """Compute routes, degrading to a straight line when providers fail.

    Providers are tried in order. Any :class:`RoutingError` (or unexpected
    exception) from a provider is logged and the next one is tried. When
    all of them fail the great-circle fallback is returned, so
    :meth:`compute_route` never raises for valid coordinates.
    """

    def __init__(self, providers: Iterable[RouteProvider]) -> None:
        self._providers: tuple[RouteProvider, ...] = tuple(providers)

    @classmethod
    def from_config(cls, config: TrackingConfig, transport: Transport) -> RouteComputationService:
        return cls(
            default_providers(
                transport,
                osrm_base_url=config.osrm_base_url,
                ors_base_url=config.ors_base_url,
                ors_api_key=config.ors_api_key,
                profile=config.routing_profile,
            )
        )

    @property
    def providers(self) -> tuple[RouteProvider, ...]:
        return self._providers

    async def compute_route(self, start: LatLng, end: LatLng) -> RouteDescriptor:
        """Return the best available route from *start* to *end*.

        Raises
        ------
        ValueError
            If either endpoint is not a finite WGS84 coordinate.
        """
        start = require_finite(start, name="start")
        end = require_finite(end, name="end")

        for provider in self._providers:
            try:
                route = await provider.route(start, end)
            except RoutingError as exc:
                _logger.debug("Routing provider %s failed: %s", provider.name, exc, exc_info=True)
                continue
            except Exception:
                _logger.debug("Routing provider %s raised unexpectedly", provider.name, exc_info=True)
                continue
            _logger.debug("Route from %s: %.0f m", provider.name, route.distance)
            return route

        _logger.warning("All routing providers failed; using straight-line fallback")
        return straight_line_route(start, end)
