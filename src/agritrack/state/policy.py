"""Deterministic acceptance policy for location updates.

This module contains *no* payload parsing. The models are responsible for
producing validated positions with aware capture timestamps.
"""

from __future__ import annotations

from datetime import datetime

from agritrack.state.events import UpdateOrigin


def origin_priority(origin: UpdateOrigin) -> int:
    """Higher wins for deterministic tie-breaking."""
    # The transporter's own session is the single writer; remote replays rank below it.
    priorities: dict[UpdateOrigin, int] = {
        UpdateOrigin.SESSION: 50,
        UpdateOrigin.REMOTE: 10,
    }
    return priorities.get(origin, 0)


def should_accept_update(
    *,
    cached_captured_at: datetime | None,
    incoming_captured_at: datetime,
    cached_origin: UpdateOrigin | None,
    incoming_origin: UpdateOrigin,
) -> bool:
    """Decide whether an incoming reading should replace the cached one.

    Policy:
    - Nothing cached: accept.
    - Older capture timestamp than the cached one: reject.
    - Same capture timestamp: accept only from an origin of equal or higher priority.
    - Newer: accept.
    """
    if cached_captured_at is None:
        return True
    if incoming_captured_at < cached_captured_at:
        return False
    if incoming_captured_at == cached_captured_at and cached_origin is not None:
        return origin_priority(incoming_origin) >= origin_priority(cached_origin)
    return True
