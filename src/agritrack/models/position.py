"""Device position model."""

from __future__ import annotations

import enum
from datetime import datetime

from pydantic import AliasChoices, Field, field_validator

from agritrack._normalize import safe_float
from agritrack.geo import LatLng
from agritrack.models._base import AgriBaseModel, Timestamp


class PositionSourceKind(enum.StrEnum):
    """Where a position reading came from."""

    DEVICE = "device"
    SYNTHETIC = "synthetic"


class GeoPosition(AgriBaseModel):
    """A timestamped latitude/longitude reading.

    Parameters
    ----------
    latitude, longitude : float
        WGS84 degrees.
    accuracy : float or None
        Horizontal accuracy radius in metres.
    speed : float or None
        Ground speed in m/s, when the sensor reports it.
    heading : float or None
        Direction of travel in degrees clockwise from north.
    timestamp : datetime
        Capture time (UTC).
    source : PositionSourceKind
        Device sensor or synthetic generator.
    """

    latitude: float = Field(validation_alias=AliasChoices("latitude", "lat"))
    longitude: float = Field(validation_alias=AliasChoices("longitude", "lng", "lon"))
    accuracy: float | None = None
    speed: float | None = None
    heading: float | None = None
    timestamp: Timestamp
    source: PositionSourceKind = PositionSourceKind.DEVICE

    @field_validator("speed", "heading", "accuracy", mode="before")
    @classmethod
    def _coerce_optional(cls, value: object) -> float | None:
        return safe_float(value)

    @field_validator("latitude")
    @classmethod
    def _check_latitude(cls, value: float) -> float:
        if not -90.0 <= value <= 90.0:
            raise ValueError(f"latitude out of range: {value}")
        return value

    @field_validator("longitude")
    @classmethod
    def _check_longitude(cls, value: float) -> float:
        if not -180.0 <= value <= 180.0:
            raise ValueError(f"longitude out of range: {value}")
        return value

    @property
    def coordinates(self) -> LatLng:
        return (self.latitude, self.longitude)

    def age(self, now: datetime) -> float:
        """Seconds elapsed between capture and *now*."""
        return (now - self.timestamp).total_seconds()

    def is_fresh(self, now: datetime, max_age: float) -> bool:
        return self.age(now) <= max_age
