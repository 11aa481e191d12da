"""Custom exception hierarchy for agritrack."""

from __future__ import annotations


class AgriTrackError(Exception):
    """Base exception for all agritrack errors."""


class ConfigError(AgriTrackError):
    """Invalid or missing configuration."""


class TransportError(AgriTrackError):
    """HTTP-level failure (network, timeout, invalid JSON)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class ApiError(AgriTrackError):
    """Delivery service rejected a request (non-2xx response)."""

    def __init__(
        self,
        message: str,
        *,
        code: str = "",
        endpoint: str = "",
    ) -> None:
        self.code = code
        self.endpoint = endpoint
        super().__init__(message)


class AuthenticationError(ApiError):
    """Auth credential missing, expired or not allowed to act on the delivery."""


# ---------------------------------------------------------------------------
# Location errors
# ---------------------------------------------------------------------------

_DEFAULT_REMEDIATION = (
    "Allow location access for this application in the device or browser "
    "settings, then try again. Synthetic positions can be enabled for "
    "environments without usable positioning."
)


class LocationError(AgriTrackError):
    """Position could not be obtained.

    ``retries`` is the number of automatic backoff retries performed before
    the error surfaced. ``remediation`` is user-facing guidance for the
    sharing-start flow.
    """

    remediation: str = "Check that positioning is enabled on the device and try again."

    def __init__(
        self,
        message: str,
        *,
        retries: int = 0,
        remediation: str | None = None,
    ) -> None:
        self.retries = retries
        if remediation is not None:
            self.remediation = remediation
        super().__init__(message)

    @property
    def synthetic_fallback_available(self) -> bool:
        """Whether switching to synthetic positions would let sharing start."""
        return True


class PermissionDeniedError(LocationError):
    """Location access is blocked. Never retried."""

    remediation = _DEFAULT_REMEDIATION


class PositionUnavailableError(LocationError):
    """The positioning hardware could not produce a fix."""


class LocationTimeoutError(LocationError):
    """No fix arrived within the acquisition timeout."""


class LocationUnsupportedError(LocationError):
    """No positioning primitive is available in this environment."""

    remediation = (
        "This device does not provide positioning. Enable synthetic positions "
        "to share an approximate location instead."
    )


# ---------------------------------------------------------------------------
# Routing errors (always absorbed by the route fallback chain)
# ---------------------------------------------------------------------------


class RoutingError(AgriTrackError):
    """A routing provider could not produce a route."""

    def __init__(self, message: str, *, provider: str = "") -> None:
        self.provider = provider
        super().__init__(message)


class ProviderUnavailableError(RoutingError):
    """Provider unreachable, misconfigured or answered with an HTTP error."""


class MalformedResponseError(RoutingError):
    """Provider answered with a payload that could not be normalized."""


class NoRouteFoundError(RoutingError):
    """Provider answered successfully but without any route."""


# ---------------------------------------------------------------------------
# Lifecycle errors
# ---------------------------------------------------------------------------


class LifecycleError(AgriTrackError):
    """Delivery lifecycle operation could not be applied."""


class InvalidTransitionError(LifecycleError):
    """Requested transition is not allowed from the delivery's current state."""

    def __init__(self, message: str, *, delivery_id: str = "", current: str = "", target: str = "") -> None:
        self.delivery_id = delivery_id
        self.current = current
        self.target = target
        super().__init__(message)
