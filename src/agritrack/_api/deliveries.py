"""Delivery service endpoints.

Endpoints:
  - GET /api/deliveries
  - PUT /api/deliveries/{id}/status
  - PUT /api/deliveries/{id}/pickup
  - PUT /api/deliveries/{id}/assign
  - PUT /api/deliveries/{id}/location
  - GET /api/deliveries/{id}/location

All requests carry the configured bearer credential.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from agritrack._normalize import safe_str
from agritrack._transport import Transport
from agritrack.config import TrackingConfig
from agritrack.exceptions import ApiError, AuthenticationError, TransportError
from agritrack.geo import is_valid_coordinate
from agritrack.models.delivery import Delivery, DeliveryStatus
from agritrack.models.position import GeoPosition

_logger = logging.getLogger(__name__)

_DELIVERIES = "/api/deliveries"
AUTH_STATUS_CODES: frozenset[int] = frozenset({401, 403})


def _headers(config: TrackingConfig) -> dict[str, str]:
    headers = {"content-type": "application/json"}
    if config.auth_token:
        headers["authorization"] = f"Bearer {config.auth_token}"
    return headers


def _url(config: TrackingConfig, path: str) -> str:
    return f"{config.base_url.rstrip('/')}{path}"


async def _request(
    config: TrackingConfig,
    transport: Transport,
    method: str,
    path: str,
    *,
    body: Any = None,
) -> Any:
    """Send one request, mapping HTTP status failures to API errors."""
    try:
        return await transport.request_json(
            method,
            _url(config, path),
            json_body=body,
            headers=_headers(config),
        )
    except TransportError as exc:
        if exc.status_code is None:
            raise
        code = str(exc.status_code)
        if exc.status_code in AUTH_STATUS_CODES:
            raise AuthenticationError(
                f"{method} {path} rejected: HTTP {code}",
                code=code,
                endpoint=path,
            ) from exc
        raise ApiError(
            f"{method} {path} failed: HTTP {code}",
            code=code,
            endpoint=path,
        ) from exc


def _unwrap_delivery(payload: Any) -> Mapping[str, Any] | None:
    """Responses either are the delivery or wrap it as ``{"delivery": ...}``."""
    if not isinstance(payload, Mapping):
        return None
    inner = payload.get("delivery")
    if isinstance(inner, Mapping):
        return inner
    if "status" in payload and ("_id" in payload or "id" in payload):
        return payload
    return None


async def fetch_deliveries(
    config: TrackingConfig,
    transport: Transport,
    transporter_id: str,
) -> list[Delivery]:
    """List the deliveries assigned to *transporter_id*.

    The service also returns unassigned pending deliveries; those are kept
    so they can be accepted. Items that fail validation are skipped.
    """
    decoded = await _request(config, transport, "GET", _DELIVERIES)
    items = decoded if isinstance(decoded, list) else []
    deliveries: list[Delivery] = []
    for item in items:
        try:
            delivery = Delivery.model_validate(item)
        except ValueError:
            _logger.debug("Skipping unparseable delivery item", exc_info=True)
            continue
        if delivery.transporter_id == transporter_id or (
            delivery.transporter_id is None and delivery.status == DeliveryStatus.PENDING
        ):
            deliveries.append(delivery)
    _logger.debug("Delivery list decoded total=%d kept=%d", len(items), len(deliveries))
    return deliveries


async def put_status(
    config: TrackingConfig,
    transport: Transport,
    delivery_id: str,
    status: DeliveryStatus,
) -> Mapping[str, Any] | None:
    decoded = await _request(
        config,
        transport,
        "PUT",
        f"{_DELIVERIES}/{delivery_id}/status",
        body={"status": status.value},
    )
    return _unwrap_delivery(decoded)


async def put_pickup(
    config: TrackingConfig,
    transport: Transport,
    delivery_id: str,
) -> Mapping[str, Any] | None:
    decoded = await _request(config, transport, "PUT", f"{_DELIVERIES}/{delivery_id}/pickup", body={})
    return _unwrap_delivery(decoded)


async def put_assign(
    config: TrackingConfig,
    transport: Transport,
    delivery_id: str,
) -> Mapping[str, Any] | None:
    decoded = await _request(config, transport, "PUT", f"{_DELIVERIES}/{delivery_id}/assign", body={})
    return _unwrap_delivery(decoded)


async def put_location(
    config: TrackingConfig,
    transport: Transport,
    delivery_id: str,
    position: GeoPosition,
) -> None:
    """Push the transporter's position for *delivery_id*.

    Raises
    ------
    ValueError
        If the coordinates are outside WGS84 bounds. Nothing is sent.
    """
    if not is_valid_coordinate(position.latitude, position.longitude):
        raise ValueError(f"Refusing to send invalid coordinates for delivery {delivery_id}")
    body = {
        "latitude": position.latitude,
        "longitude": position.longitude,
        "speed": position.speed,
        "heading": position.heading,
        "accuracy": position.accuracy,
        "timestamp": position.timestamp.isoformat(),
    }
    decoded = await _request(config, transport, "PUT", f"{_DELIVERIES}/{delivery_id}/location", body=body)
    if isinstance(decoded, Mapping) and decoded.get("quotaExceeded"):
        _logger.warning(
            "Location for delivery %s accepted but not stored: %s",
            delivery_id,
            safe_str(decoded.get("warning")) or "storage limit",
        )


async def fetch_location(
    config: TrackingConfig,
    transport: Transport,
    delivery_id: str,
) -> GeoPosition | None:
    """Fetch the last position the service holds for *delivery_id*."""
    decoded = await _request(config, transport, "GET", f"{_DELIVERIES}/{delivery_id}/location")
    if not isinstance(decoded, Mapping):
        return None
    current = decoded.get("currentLocation")
    if not isinstance(current, Mapping):
        return None
    data = dict(current)
    data.setdefault("timestamp", current.get("lastUpdated"))
    try:
        return GeoPosition.model_validate(data)
    except ValueError:
        _logger.debug("Ignoring unusable remote location for delivery %s", delivery_id, exc_info=True)
        return None


class DeliveryServiceClient:
    """HTTP implementation of the delivery persistence protocol."""

    def __init__(self, config: TrackingConfig, transport: Transport) -> None:
        self._config = config
        self._transport = transport

    async def list_deliveries(self, transporter_id: str) -> list[Delivery]:
        return await fetch_deliveries(self._config, self._transport, transporter_id)

    async def update_status(self, delivery_id: str, status: DeliveryStatus) -> Mapping[str, Any] | None:
        return await put_status(self._config, self._transport, delivery_id, status)

    async def mark_picked_up(self, delivery_id: str) -> Mapping[str, Any] | None:
        return await put_pickup(self._config, self._transport, delivery_id)

    async def assign(self, delivery_id: str) -> Mapping[str, Any] | None:
        return await put_assign(self._config, self._transport, delivery_id)

    async def update_location(self, delivery_id: str, position: GeoPosition) -> None:
        await put_location(self._config, self._transport, delivery_id, position)

    async def get_location(self, delivery_id: str) -> GeoPosition | None:
        return await fetch_location(self._config, self._transport, delivery_id)
