"""Client configuration for agritrack."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from agritrack._constants import (
    BACKOFF_DELAYS,
    BASE_URL,
    HISTORY_LIMIT,
    ORS_BASE_URL,
    OSRM_BASE_URL,
    SYNTHETIC_JITTER_DEG,
    SYNTHETIC_LATITUDE,
    SYNTHETIC_LONGITUDE,
)
from agritrack.exceptions import ConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _env_float(name: str, value: str) -> float:
    try:
        return float(value)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {value!r}") from exc


def _env_delays(name: str, value: str) -> tuple[float, ...]:
    parts = [part.strip() for part in value.split(",") if part.strip()]
    return tuple(_env_float(name, part) for part in parts)


@dataclasses.dataclass(frozen=True)
class TrackingConfig:
    """Client configuration.

    Parameters
    ----------
    base_url : str
        Delivery service base URL.
    auth_token : str or None
        Bearer credential sent with every delivery service request.
    osrm_base_url : str
        Primary routing provider (OSRM) base URL.
    ors_base_url : str
        Secondary routing provider (OpenRouteService) base URL.
    ors_api_key : str or None
        OpenRouteService API key. Without it the secondary provider
        reports itself unavailable and the chain moves on.
    routing_profile : str
        Travel profile sent to the routing providers.
    request_timeout : float
        Total timeout in seconds for a single HTTP request.
    high_accuracy_timeout : float
        Timeout in seconds for the high-accuracy acquisition tier.
    relaxed_timeout : float
        Timeout in seconds for the relaxed-accuracy acquisition tier.
    maximum_age : float
        Age in seconds below which a cached position counts as fresh.
    update_interval : float
        Seconds between periodic acquisition ticks.
    push_interval : float
        Seconds between pushes of the latest position to the delivery service.
    poll_interval : float
        Seconds between local reads while a live view is open.
    backoff_delays : tuple of float
        Sleep before each automatic retry of a failed acquisition.
    use_synthetic_positions : bool
        Use a fixed coordinate with jitter instead of the device sensor.
    synthetic_latitude, synthetic_longitude : float
        Centre of the synthetic positions.
    synthetic_jitter : float
        Maximum per-tick offset in degrees applied to synthetic positions.
    history_limit : int
        Location entries kept per delivery.
    """

    base_url: str = BASE_URL
    auth_token: str | None = None
    osrm_base_url: str = OSRM_BASE_URL
    ors_base_url: str = ORS_BASE_URL
    ors_api_key: str | None = None
    routing_profile: str = "driving"
    request_timeout: float = 10.0
    high_accuracy_timeout: float = 10.0
    relaxed_timeout: float = 30.0
    maximum_age: float = 60.0
    update_interval: float = 15.0
    push_interval: float = 30.0
    poll_interval: float = 10.0
    backoff_delays: tuple[float, ...] = BACKOFF_DELAYS
    use_synthetic_positions: bool = False
    synthetic_latitude: float = SYNTHETIC_LATITUDE
    synthetic_longitude: float = SYNTHETIC_LONGITUDE
    synthetic_jitter: float = SYNTHETIC_JITTER_DEG
    history_limit: int = HISTORY_LIMIT

    def __post_init__(self) -> None:
        for name in ("request_timeout", "high_accuracy_timeout", "relaxed_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")
        for name in ("update_interval", "push_interval", "poll_interval"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")
        if any(delay < 0 for delay in self.backoff_delays):
            raise ConfigError("backoff_delays must not be negative")
        if self.history_limit < 1:
            raise ConfigError("history_limit must be at least 1")

    @classmethod
    def from_env(cls, **overrides: Any) -> TrackingConfig:
        """Create configuration from ``AGRITRACK_*`` environment variables.

        Explicit keyword arguments override environment values.

        Raises
        ------
        ConfigError
            If a numeric variable cannot be parsed.
        """
        env = os.environ

        _ENV_STR_MAP = {
            "AGRITRACK_BASE_URL": "base_url",
            "AGRITRACK_AUTH_TOKEN": "auth_token",
            "AGRITRACK_OSRM_BASE_URL": "osrm_base_url",
            "AGRITRACK_ORS_BASE_URL": "ors_base_url",
            "AGRITRACK_ORS_API_KEY": "ors_api_key",
            "AGRITRACK_ROUTING_PROFILE": "routing_profile",
        }
        _ENV_FLOAT_MAP = {
            "AGRITRACK_REQUEST_TIMEOUT": "request_timeout",
            "AGRITRACK_HIGH_ACCURACY_TIMEOUT": "high_accuracy_timeout",
            "AGRITRACK_RELAXED_TIMEOUT": "relaxed_timeout",
            "AGRITRACK_MAXIMUM_AGE": "maximum_age",
            "AGRITRACK_UPDATE_INTERVAL": "update_interval",
            "AGRITRACK_PUSH_INTERVAL": "push_interval",
            "AGRITRACK_POLL_INTERVAL": "poll_interval",
            "AGRITRACK_SYNTHETIC_LATITUDE": "synthetic_latitude",
            "AGRITRACK_SYNTHETIC_LONGITUDE": "synthetic_longitude",
            "AGRITRACK_SYNTHETIC_JITTER": "synthetic_jitter",
        }

        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_STR_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                config_kwargs[field_name] = val

        for env_key, field_name in _ENV_FLOAT_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                config_kwargs[field_name] = _env_float(env_key, val)

        delays_env = env.get("AGRITRACK_BACKOFF_DELAYS")
        if delays_env is not None and "backoff_delays" not in overrides:
            config_kwargs["backoff_delays"] = _env_delays("AGRITRACK_BACKOFF_DELAYS", delays_env)

        history_env = env.get("AGRITRACK_HISTORY_LIMIT")
        if history_env is not None and "history_limit" not in overrides:
            config_kwargs["history_limit"] = int(_env_float("AGRITRACK_HISTORY_LIMIT", history_env))

        if "use_synthetic_positions" not in overrides:
            config_kwargs["use_synthetic_positions"] = _env_bool(env.get("AGRITRACK_USE_SYNTHETIC_POSITIONS"), False)

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
