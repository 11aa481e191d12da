"""Data models for delivery tracking and routing."""

from agritrack.models._base import AgriBaseModel, Timestamp
from agritrack.models.delivery import Delivery, DeliveryStatus, Stop, StopKind, route_target
from agritrack.models.position import GeoPosition, PositionSourceKind
from agritrack.models.route import RouteDescriptor, RouteInstruction, RouteSource

__all__ = [
    "AgriBaseModel",
    "Delivery",
    "DeliveryStatus",
    "GeoPosition",
    "PositionSourceKind",
    "RouteDescriptor",
    "RouteInstruction",
    "RouteSource",
    "Stop",
    "StopKind",
    "Timestamp",
    "route_target",
]
