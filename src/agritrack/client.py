"""High-level async client for delivery tracking and route planning."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

import aiohttp

from agritrack._api.deliveries import DeliveryServiceClient
from agritrack._transport import HttpTransport
from agritrack.config import TrackingConfig
from agritrack.exceptions import AgriTrackError
from agritrack.geo import LatLng
from agritrack.lifecycle import DeliveryLifecycleController
from agritrack.location.manager import LocationAcquisitionManager
from agritrack.location.sources import GeolocationBackend, build_position_source
from agritrack.models.delivery import Delivery
from agritrack.models.route import RouteDescriptor
from agritrack.publisher import LiveLocationPublisher
from agritrack.routing.optimizer import OptimizedTrip, plan_trip
from agritrack.routing.service import RouteComputationService
from agritrack.state.store import LocationStore

_logger = logging.getLogger(__name__)


class AgriTrackClient:
    """Async client wiring the tracking components together.

    Usage::

        async with AgriTrackClient(config, geolocation=backend) as client:
            deliveries = await client.get_deliveries(transporter_id)
            await client.lifecycle.start_transit(deliveries[0])
    """

    def __init__(
        self,
        config: TrackingConfig,
        *,
        geolocation: GeolocationBackend | None = None,
        session: aiohttp.ClientSession | None = None,
        on_tracking_stopped: Callable[[str, str], None] | None = None,
    ) -> None:
        self._config = config
        self._geolocation = geolocation
        self._external_session = session is not None
        self._http_session = session
        self._on_tracking_stopped = on_tracking_stopped
        self._transport: HttpTransport | None = None
        self._deliveries: DeliveryServiceClient | None = None
        self._routes: RouteComputationService | None = None
        self._location: LocationAcquisitionManager | None = None
        self._publisher: LiveLocationPublisher | None = None
        self._lifecycle: DeliveryLifecycleController | None = None

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> AgriTrackClient:
        if self._http_session is None:
            self._http_session = aiohttp.ClientSession()
        config = self._config
        self._transport = HttpTransport(self._http_session, timeout=config.request_timeout)
        self._deliveries = DeliveryServiceClient(config, self._transport)
        self._routes = RouteComputationService.from_config(config, self._transport)
        self._location = LocationAcquisitionManager.from_config(
            config,
            build_position_source(config, self._geolocation),
        )
        self._publisher = LiveLocationPublisher(
            self._deliveries,
            store=LocationStore(history_limit=config.history_limit),
            push_interval=config.push_interval,
            poll_interval=config.poll_interval,
        )
        self._lifecycle = DeliveryLifecycleController(
            self._deliveries,
            self._location,
            self._publisher,
            self._routes,
            config=config,
            on_tracking_stopped=self._on_tracking_stopped,
        )
        return self

    async def __aexit__(self, *exc: Any) -> None:
        if self._lifecycle is not None:
            await self._lifecycle.shutdown()
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None
        self._transport = None
        self._deliveries = None
        self._routes = None
        self._location = None
        self._publisher = None
        self._lifecycle = None

    def _require(self, component: Any) -> Any:
        if component is None:
            raise AgriTrackError("Client not initialized. Use 'async with AgriTrackClient(...) as client:'")
        return component

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    @property
    def config(self) -> TrackingConfig:
        return self._config

    @property
    def deliveries(self) -> DeliveryServiceClient:
        return self._require(self._deliveries)

    @property
    def routes(self) -> RouteComputationService:
        return self._require(self._routes)

    @property
    def location(self) -> LocationAcquisitionManager:
        return self._require(self._location)

    @property
    def publisher(self) -> LiveLocationPublisher:
        return self._require(self._publisher)

    @property
    def lifecycle(self) -> DeliveryLifecycleController:
        return self._require(self._lifecycle)

    # ------------------------------------------------------------------
    # Convenience
    # ------------------------------------------------------------------

    async def get_deliveries(self, transporter_id: str) -> list[Delivery]:
        """Fetch the transporter's deliveries and adopt them as local state."""
        fetched = await self.deliveries.list_deliveries(transporter_id)
        return await self.lifecycle.sync(fetched)

    async def compute_route(self, start: LatLng, end: LatLng) -> RouteDescriptor:
        return await self.routes.compute_route(start, end)

    async def plan_trip(self, transporter_id: str, start: LatLng) -> OptimizedTrip:
        """Sequence the current target stops of the transporter's open deliveries."""
        deliveries = await self.get_deliveries(transporter_id)
        assigned = [delivery for delivery in deliveries if delivery.transporter_id == transporter_id]
        trip = plan_trip(assigned, start)
        _logger.debug(
            "Planned trip stops=%d unavailable=%d distance=%.1fkm",
            len(trip.stops),
            len(trip.unavailable),
            trip.statistics.total_distance_km,
        )
        return trip
