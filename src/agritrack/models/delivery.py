"""Delivery and stop models."""

from __future__ import annotations

import enum
from typing import Any

from pydantic import AliasChoices, Field, field_validator, model_validator

from agritrack._normalize import safe_float, safe_str
from agritrack.geo import LatLng, is_valid_coordinate
from agritrack.models._base import AgriBaseModel


class DeliveryStatus(enum.StrEnum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (DeliveryStatus.DELIVERED, DeliveryStatus.CANCELLED)


class StopKind(enum.StrEnum):
    PICKUP = "pickup"
    DROPOFF = "dropoff"


class Stop(AgriBaseModel):
    """A pickup or dropoff point.

    Coordinates are optional and never synthesized: a stop without them
    has ``has_coordinates == False`` and cannot be routed to.
    """

    latitude: float | None = None
    longitude: float | None = None
    address: str = ""
    delivery_id: str = ""
    kind: StopKind = StopKind.DROPOFF

    @field_validator("latitude", "longitude", mode="before")
    @classmethod
    def _coerce_coordinate(cls, value: Any) -> float | None:
        return safe_float(value)

    @property
    def has_coordinates(self) -> bool:
        return is_valid_coordinate(self.latitude, self.longitude)

    @property
    def coordinates(self) -> LatLng | None:
        if not self.has_coordinates:
            return None
        assert self.latitude is not None and self.longitude is not None  # noqa: S101
        return (self.latitude, self.longitude)


def _stop_from_api(kind: StopKind, address: Any, coordinates: Any, delivery_id: Any) -> dict[str, Any]:
    """Build a :class:`Stop` payload from the flat delivery service fields."""
    stop: dict[str, Any] = {"kind": kind, "address": safe_str(address) or ""}
    if isinstance(coordinates, dict):
        stop["latitude"] = coordinates.get("latitude", coordinates.get("lat"))
        stop["longitude"] = coordinates.get("longitude", coordinates.get("lng", coordinates.get("lon")))
        if not stop["address"]:
            stop["address"] = safe_str(coordinates.get("address")) or ""
    if delivery_id is not None:
        stop["delivery_id"] = str(delivery_id)
    return stop


def _reference_id(value: Any) -> str | None:
    """Extract an id from either a plain reference or a populated document."""
    if isinstance(value, dict):
        return safe_str(value.get("_id") or value.get("id"))
    return safe_str(value)


class Delivery(AgriBaseModel):
    """A delivery as seen by the tracking core.

    ``picked_up`` is only meaningful while the delivery is in transit and
    is normalized to ``False`` in every other state. ``sharing_active``
    follows the same rule.
    """

    id: str = Field(validation_alias=AliasChoices("id", "_id", "deliveryId"))
    status: DeliveryStatus
    picked_up: bool = False
    pickup: Stop = Field(default_factory=lambda: Stop(kind=StopKind.PICKUP))
    dropoff: Stop = Field(default_factory=lambda: Stop(kind=StopKind.DROPOFF))
    transporter_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("transporterId", "transporter_id", "transporter"),
    )
    sharing_active: bool = False
    raw: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _from_service_shape(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        merged = dict(values)
        delivery_id = merged.get("id") or merged.get("_id") or merged.get("deliveryId")
        if delivery_id is not None:
            delivery_id = str(delivery_id)
            merged.setdefault("id", delivery_id)
        if "pickup" not in merged:
            merged["pickup"] = _stop_from_api(
                StopKind.PICKUP,
                merged.get("pickupLocation"),
                merged.get("pickupCoordinates"),
                delivery_id,
            )
        if "dropoff" not in merged:
            merged["dropoff"] = _stop_from_api(
                StopKind.DROPOFF,
                merged.get("dropoffLocation"),
                merged.get("dropoffCoordinates"),
                delivery_id,
            )
        for key in ("transporterId", "transporter_id", "transporter"):
            if key in merged:
                merged[key] = _reference_id(merged[key])
        if "raw" not in values:
            merged["raw"] = dict(values)
        return merged

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> Any:
        # The service has emitted both "in-transit" and "in_transit".
        if isinstance(value, str):
            return value.strip().lower().replace("-", "_").replace(" ", "_")
        return value

    @model_validator(mode="after")
    def _normalize_in_transit_flags(self) -> Delivery:
        if self.status != DeliveryStatus.IN_TRANSIT:
            if self.picked_up:
                object.__setattr__(self, "picked_up", False)
            if self.sharing_active:
                object.__setattr__(self, "sharing_active", False)
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def replace(self, **changes: Any) -> Delivery:
        """Return a validated copy with *changes* applied (field names)."""
        data = self.model_dump()
        data.update(changes)
        return Delivery.model_validate(data)


def route_target(delivery: Delivery) -> Stop | None:
    """The stop a delivery is currently heading to.

    Pickup while not picked up, dropoff once picked up, ``None`` once the
    delivery is terminal. Derived from ``(status, picked_up)`` only.
    """
    if delivery.is_terminal:
        return None
    return delivery.dropoff if delivery.picked_up else delivery.pickup
