"""Normalized route result models."""

from __future__ import annotations

import enum

from pydantic import Field, model_validator

from agritrack.geo import LatLng
from agritrack.models._base import AgriBaseModel


class RouteSource(enum.StrEnum):
    """Which strategy of the fallback chain produced a route."""

    OSRM = "osrm"
    OPENROUTESERVICE = "openrouteservice"
    STRAIGHT_LINE = "straight_line"


class RouteInstruction(AgriBaseModel):
    """A single turn-by-turn instruction."""

    text: str
    distance: float = 0.0
    duration: float | None = None


class RouteDescriptor(AgriBaseModel):
    """Route between two coordinates.

    ``distance`` is in metres, ``duration`` in seconds. A ``fallback``
    route is a straight-line estimate and never carries a duration.
    """

    coordinates: list[LatLng] = Field(min_length=2)
    distance: float = Field(ge=0.0)
    duration: float | None = None
    instructions: list[RouteInstruction] = Field(default_factory=list)
    source: RouteSource
    fallback: bool = False

    @model_validator(mode="after")
    def _fallback_has_no_duration(self) -> RouteDescriptor:
        if self.fallback and self.duration is not None:
            raise ValueError("fallback routes must not carry a duration")
        return self

    @property
    def start(self) -> LatLng:
        return self.coordinates[0]

    @property
    def end(self) -> LatLng:
        return self.coordinates[-1]

    @property
    def distance_km(self) -> float:
        return self.distance / 1000.0

    @property
    def duration_minutes(self) -> float | None:
        if self.duration is None:
            return None
        return self.duration / 60.0
