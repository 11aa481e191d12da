"""Delivery lifecycle state machine and tracking sessions.

Transitions are persisted to the delivery service before any local state
changes. Live location sharing is gated on a successful ``in_transit``
transition, and at most one tracking session exists per transporter.

Route computation runs in background tasks. A finished computation is
dropped when the delivery's ``(id, picked_up)`` pair has changed, or the
delivery has left ``in_transit``, since it was requested.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from functools import partial
from typing import Any, Protocol

from agritrack.config import TrackingConfig
from agritrack.exceptions import (
    InvalidTransitionError,
    LifecycleError,
    LocationError,
    PermissionDeniedError,
)
from agritrack.location.manager import LocationAcquisitionManager, PeriodicUpdates
from agritrack.location.sources import SyntheticPositionSource
from agritrack.models.delivery import Delivery, DeliveryStatus, Stop, StopKind, route_target
from agritrack.models.position import GeoPosition
from agritrack.models.route import RouteDescriptor
from agritrack.publisher import LiveLocationPublisher
from agritrack.routing.service import RouteComputationService

_logger = logging.getLogger(__name__)

TRANSITIONS: Mapping[DeliveryStatus, frozenset[DeliveryStatus]] = {
    DeliveryStatus.PENDING: frozenset({DeliveryStatus.ASSIGNED, DeliveryStatus.CANCELLED}),
    DeliveryStatus.ASSIGNED: frozenset({DeliveryStatus.IN_TRANSIT, DeliveryStatus.CANCELLED}),
    DeliveryStatus.IN_TRANSIT: frozenset({DeliveryStatus.DELIVERED, DeliveryStatus.CANCELLED}),
    DeliveryStatus.DELIVERED: frozenset(),
    DeliveryStatus.CANCELLED: frozenset(),
}

#: Reasons passed to ``on_tracking_stopped``.
STOP_PERMISSION_DENIED = "permission_denied"
STOP_DELIVERED = "delivered"
STOP_CANCELLED = "cancelled"
STOP_SUPERSEDED = "superseded"
STOP_SHUTDOWN = "shutdown"


def can_transition(current: DeliveryStatus, target: DeliveryStatus) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


class DeliveryService(Protocol):
    """Persistence side of the lifecycle (the delivery service)."""

    async def update_status(self, delivery_id: str, status: DeliveryStatus) -> Mapping[str, Any] | None:
        ...

    async def mark_picked_up(self, delivery_id: str) -> Mapping[str, Any] | None:
        ...

    async def assign(self, delivery_id: str) -> Mapping[str, Any] | None:
        ...


@dataclass
class TrackingSession:
    """Live sharing state of one transporter."""

    transporter_id: str
    delivery_id: str | None = None
    sharing: bool = False
    retry_count: int = 0
    last_position: GeoPosition | None = None
    updates: PeriodicUpdates | None = None
    route_task: asyncio.Task[None] | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class RouteView:
    """Current route of a delivery toward its target stop."""

    delivery_id: str
    picked_up: bool
    target: StopKind
    route: RouteDescriptor | None = None
    unavailable_reason: str | None = None


class DeliveryLifecycleController:
    """Drive deliveries through their lifecycle and own tracking sessions."""

    def __init__(
        self,
        service: DeliveryService,
        location: LocationAcquisitionManager,
        publisher: LiveLocationPublisher,
        routes: RouteComputationService,
        *,
        config: TrackingConfig | None = None,
        on_tracking_stopped: Callable[[str, str], None] | None = None,
    ) -> None:
        self._service = service
        self._location = location
        self._publisher = publisher
        self._routes = routes
        self._config = config or TrackingConfig()
        self._on_tracking_stopped = on_tracking_stopped
        self._deliveries: dict[str, Delivery] = {}
        self._sessions: dict[str, TrackingSession] = {}
        self._route_tasks: dict[str, asyncio.Task[None]] = {}
        self._route_views: dict[str, RouteView] = {}
        self._background: set[asyncio.Task[None]] = set()
        self._start_locks: dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Local state
    # ------------------------------------------------------------------

    def track(self, delivery: Delivery) -> Delivery:
        """Register *delivery* unless a local copy already exists."""
        return self._deliveries.setdefault(delivery.id, delivery)

    async def sync(self, deliveries: Iterable[Delivery]) -> list[Delivery]:
        """Adopt freshly fetched deliveries as the local state.

        Sessions whose delivery the service reports as terminal are stopped
        and their readings dropped. A changed pickup flag re-targets the route.
        """
        synced: list[Delivery] = []
        for fetched in deliveries:
            local = self._deliveries.get(fetched.id)
            session = self._session_for_delivery(fetched.id)
            if session is not None and fetched.status != DeliveryStatus.IN_TRANSIT:
                reason = STOP_DELIVERED if fetched.status == DeliveryStatus.DELIVERED else STOP_CANCELLED
                await self._stop_session(session, reason)
                self._drop_route(fetched.id)
            elif session is not None:
                fetched = fetched.replace(sharing_active=session.sharing)
            self._deliveries[fetched.id] = fetched
            if fetched.is_terminal:
                self._publisher.forget(fetched.id)
            elif (
                local is not None
                and local.status == DeliveryStatus.IN_TRANSIT
                and fetched.status == DeliveryStatus.IN_TRANSIT
                and local.picked_up != fetched.picked_up
            ):
                self._schedule_route(fetched)
            synced.append(fetched)
        return synced

    def delivery(self, delivery_id: str) -> Delivery | None:
        return self._deliveries.get(delivery_id)

    def _current(self, delivery: Delivery) -> Delivery:
        return self._deliveries.get(delivery.id, delivery)

    def session_for(self, transporter_id: str) -> TrackingSession | None:
        return self._sessions.get(transporter_id)

    def _transporter_lock(self, transporter_id: str) -> asyncio.Lock:
        return self._start_locks.setdefault(transporter_id, asyncio.Lock())

    def _session_for_delivery(self, delivery_id: str) -> TrackingSession | None:
        for session in self._sessions.values():
            if session.delivery_id == delivery_id:
                return session
        return None

    @staticmethod
    def _require_transition(delivery: Delivery, target: DeliveryStatus) -> None:
        if not can_transition(delivery.status, target):
            raise InvalidTransitionError(
                f"Delivery {delivery.id} cannot move from {delivery.status} to {target}",
                delivery_id=delivery.id,
                current=str(delivery.status),
                target=str(target),
            )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def accept(self, delivery: Delivery, *, transporter_id: str | None = None) -> Delivery:
        """pending -> assigned."""
        current = self._current(delivery)
        self._require_transition(current, DeliveryStatus.ASSIGNED)
        await self._service.assign(current.id)
        updated = current.replace(
            status=DeliveryStatus.ASSIGNED,
            transporter_id=transporter_id or current.transporter_id,
        )
        self._deliveries[updated.id] = updated
        _logger.info("Delivery %s assigned to transporter %s", updated.id, updated.transporter_id)
        return updated

    async def start_transit(self, delivery: Delivery) -> Delivery:
        """assigned -> in_transit, then start live sharing.

        Location access is checked before anything is persisted so a blocked
        permission never leaves a half-started delivery behind.

        Raises
        ------
        PermissionDeniedError, LocationUnsupportedError
            Sharing cannot start. ``remediation`` carries user guidance.
        InvalidTransitionError
            The delivery is not assigned.
        ApiError, TransportError
            Persisting the status failed; nothing changed locally.
        """
        current = self._current(delivery)
        self._require_transition(current, DeliveryStatus.IN_TRANSIT)
        if not current.transporter_id:
            raise LifecycleError(f"Delivery {current.id} has no transporter")

        await self._location.check_permission()
        await self._service.update_status(current.id, DeliveryStatus.IN_TRANSIT)

        updated = current.replace(status=DeliveryStatus.IN_TRANSIT, picked_up=False)
        self._deliveries[updated.id] = updated

        # At most one session per transporter, also across overlapping starts.
        async with self._transporter_lock(current.transporter_id):
            while (existing := self._sessions.get(current.transporter_id)) is not None:
                await self._stop_session(existing, STOP_SUPERSEDED)

            updated = self._deliveries.get(updated.id, updated)
            if updated.status != DeliveryStatus.IN_TRANSIT:
                return updated
            self._start_session(current.transporter_id, updated.id)
            updated = updated.replace(sharing_active=True)
            self._deliveries[updated.id] = updated
            self._schedule_route(updated)
        return updated

    async def mark_picked_up(self, delivery: Delivery) -> Delivery:
        """Record the pickup and re-target the route to the dropoff stop."""
        current = self._current(delivery)
        if current.status != DeliveryStatus.IN_TRANSIT:
            raise InvalidTransitionError(
                f"Delivery {current.id} must be in transit to be picked up (is {current.status})",
                delivery_id=current.id,
                current=str(current.status),
                target="picked_up",
            )
        if current.picked_up:
            return current

        await self._service.mark_picked_up(current.id)
        updated = current.replace(picked_up=True)
        self._deliveries[updated.id] = updated
        _logger.info("Delivery %s picked up", updated.id)
        self._schedule_route(updated)
        return updated

    async def mark_delivered(self, delivery: Delivery) -> Delivery:
        """in_transit -> delivered; stops tracking."""
        return await self._finish(delivery, DeliveryStatus.DELIVERED, STOP_DELIVERED)

    async def cancel(self, delivery: Delivery) -> Delivery:
        """Any non-terminal state -> cancelled; stops tracking if active."""
        return await self._finish(delivery, DeliveryStatus.CANCELLED, STOP_CANCELLED)

    async def _finish(self, delivery: Delivery, status: DeliveryStatus, reason: str) -> Delivery:
        current = self._current(delivery)
        self._require_transition(current, status)
        await self._service.update_status(current.id, status)

        updated = current.replace(status=status)
        self._deliveries[updated.id] = updated
        session = self._session_for_delivery(updated.id)
        if session is not None:
            await self._stop_session(session, reason)
        self._drop_route(updated.id)
        self._publisher.forget(updated.id)
        _logger.info("Delivery %s %s", updated.id, status)
        return updated

    # ------------------------------------------------------------------
    # Tracking sessions
    # ------------------------------------------------------------------

    def _start_session(self, transporter_id: str, delivery_id: str) -> TrackingSession:
        session = TrackingSession(transporter_id=transporter_id, delivery_id=delivery_id, sharing=True)
        session.updates = self._location.start_periodic_updates(
            self._config.update_interval,
            partial(self._on_position, session),
            on_error=partial(self._on_location_error, session),
            on_permission_denied=partial(self._on_permission_revoked, session),
        )
        self._publisher.start(delivery_id)
        self._sessions[transporter_id] = session
        _logger.info("Started tracking delivery %s for transporter %s", delivery_id, transporter_id)
        return session

    async def _stop_session(self, session: TrackingSession, reason: str) -> None:
        if self._sessions.get(session.transporter_id) is session:
            del self._sessions[session.transporter_id]
        session.sharing = False
        if session.updates is not None:
            await session.updates.stop()
        delivery_id = session.delivery_id
        if delivery_id is None:
            return
        await self._publisher.stop(delivery_id)
        current = self._deliveries.get(delivery_id)
        if current is not None and current.sharing_active:
            self._deliveries[delivery_id] = current.replace(sharing_active=False)
        _logger.info("Stopped tracking delivery %s (%s)", delivery_id, reason)
        if self._on_tracking_stopped is not None:
            try:
                self._on_tracking_stopped(delivery_id, reason)
            except Exception:
                _logger.debug("on_tracking_stopped callback failed", exc_info=True)

    def _on_position(self, session: TrackingSession, position: GeoPosition) -> None:
        session.last_position = position
        session.retry_count = 0
        if session.delivery_id is not None and session.sharing:
            self._publisher.record(session.delivery_id, position)

    def _on_location_error(self, session: TrackingSession, exc: LocationError) -> None:
        session.retry_count = exc.retries
        _logger.info(
            "No position for delivery %s after %d retries: %s",
            session.delivery_id,
            exc.retries,
            exc,
        )

    def _on_permission_revoked(self, session: TrackingSession, exc: PermissionDeniedError) -> None:
        _logger.info("Location permission revoked during delivery %s", session.delivery_id)
        session.sharing = False
        if session.delivery_id is not None:
            current = self._deliveries.get(session.delivery_id)
            if current is not None and current.sharing_active:
                self._deliveries[current.id] = current.replace(sharing_active=False)
        task = asyncio.create_task(self._stop_session(session, STOP_PERMISSION_DENIED))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def enable_synthetic_positions(self) -> SyntheticPositionSource:
        """Switch location acquisition to synthetic positions.

        Active sessions keep running and use the new source on their next
        tick.
        """
        source = SyntheticPositionSource(
            self._config.synthetic_latitude,
            self._config.synthetic_longitude,
            jitter=self._config.synthetic_jitter,
        )
        self._location.set_source(source)
        return source

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------

    def route_target(self, delivery: Delivery) -> Stop | None:
        return route_target(self._current(delivery))

    def route_view(self, delivery_id: str) -> RouteView | None:
        """The route computed for the delivery's current target, if any."""
        view = self._route_views.get(delivery_id)
        current = self._deliveries.get(delivery_id)
        if view is None or current is None or view.picked_up != current.picked_up:
            return None
        return view

    def refresh_route(self, delivery_id: str) -> asyncio.Task[None] | None:
        """Recompute the route toward the delivery's current target."""
        current = self._deliveries.get(delivery_id)
        if current is None:
            raise LifecycleError(f"Unknown delivery {delivery_id}")
        if current.status != DeliveryStatus.IN_TRANSIT:
            raise LifecycleError(f"Delivery {delivery_id} is not in transit")
        return self._schedule_route(current)

    def _schedule_route(self, delivery: Delivery) -> asyncio.Task[None] | None:
        previous = self._route_tasks.pop(delivery.id, None)
        if previous is not None and not previous.done():
            previous.cancel()

        target = route_target(delivery)
        if target is None:
            return None
        if not target.has_coordinates:
            self._route_views[delivery.id] = RouteView(
                delivery_id=delivery.id,
                picked_up=delivery.picked_up,
                target=target.kind,
                unavailable_reason=f"The {target.kind} location has no coordinates",
            )
            return None

        task = asyncio.create_task(self._compute_route(delivery.id, delivery.picked_up, target))
        self._route_tasks[delivery.id] = task
        task.add_done_callback(partial(self._forget_route_task, delivery.id))
        session = self._session_for_delivery(delivery.id)
        if session is not None:
            session.route_task = task
        return task

    def _forget_route_task(self, delivery_id: str, task: asyncio.Task[None]) -> None:
        if self._route_tasks.get(delivery_id) is task:
            del self._route_tasks[delivery_id]

    async def _compute_route(self, delivery_id: str, picked_up: bool, target: Stop) -> None:
        end = target.coordinates
        assert end is not None  # noqa: S101
        try:
            position = await self._location.get_position()
        except LocationError as exc:
            self._apply_route_view(
                RouteView(
                    delivery_id=delivery_id,
                    picked_up=picked_up,
                    target=target.kind,
                    unavailable_reason=f"Current position unavailable: {exc}",
                )
            )
            return
        route = await self._routes.compute_route(position.coordinates, end)
        self._apply_route_view(
            RouteView(delivery_id=delivery_id, picked_up=picked_up, target=target.kind, route=route)
        )

    def _apply_route_view(self, view: RouteView) -> bool:
        current = self._deliveries.get(view.delivery_id)
        if (
            current is None
            or current.status != DeliveryStatus.IN_TRANSIT
            or current.picked_up != view.picked_up
        ):
            _logger.debug("Discarding stale route for delivery %s", view.delivery_id)
            return False
        self._route_views[view.delivery_id] = view
        return True

    def _drop_route(self, delivery_id: str) -> None:
        task = self._route_tasks.pop(delivery_id, None)
        if task is not None and not task.done():
            task.cancel()
        self._route_views.pop(delivery_id, None)

    async def wait_for_routes(self) -> None:
        """Wait until all scheduled route computations have settled."""
        while True:
            pending = [task for task in self._route_tasks.values() if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def shutdown(self) -> None:
        """Stop every session and cancel all background work."""
        for session in list(self._sessions.values()):
            await self._stop_session(session, STOP_SHUTDOWN)
        for delivery_id in list(self._route_tasks):
            task = self._route_tasks.pop(delivery_id)
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        await self._publisher.close()
