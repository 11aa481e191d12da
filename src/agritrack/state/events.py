"""Normalized location update events.

Every writer (the transporter's own tracking session, or a remote feed
replayed into a viewer) converts its input into a :class:`LocationUpdate`.
Only the store is allowed to merge them.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from agritrack.models.position import GeoPosition


class UpdateOrigin(StrEnum):
    SESSION = "session"
    REMOTE = "remote"


class LocationUpdate(BaseModel):
    """A position reading to apply to the store for one delivery."""

    model_config = ConfigDict(frozen=True)

    delivery_id: str = Field(..., description="Delivery the reading belongs to")
    position: GeoPosition
    origin: UpdateOrigin = UpdateOrigin.SESSION
    observed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("delivery_id")
    @classmethod
    def _normalize_delivery_id(cls, value: str) -> str:
        delivery_id = value.strip()
        if not delivery_id:
            raise ValueError("delivery_id must be non-empty")
        return delivery_id

    @field_validator("observed_at")
    @classmethod
    def _ensure_tz_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @property
    def captured_at(self) -> datetime:
        return self.position.timestamp
