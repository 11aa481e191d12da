"""Internal constants shared across the library."""

BASE_URL = "http://localhost:5000"
OSRM_BASE_URL = "https://router.project-osrm.org"
ORS_BASE_URL = "https://api.openrouteservice.org"
USER_AGENT = "agritrack/1 (+aiohttp)"

#: Mean Earth radius used by the haversine formula.
EARTH_RADIUS_KM = 6371.0

# ------------------------------------------------------------------
# Positioning
# ------------------------------------------------------------------

#: Seconds slept before each automatic acquisition retry.
BACKOFF_DELAYS: tuple[float, ...] = (5.0, 10.0, 20.0)

#: Default synthetic position (Kathmandu) and per-tick jitter in degrees.
SYNTHETIC_LATITUDE = 27.7172
SYNTHETIC_LONGITUDE = 85.3240
SYNTHETIC_JITTER_DEG = 0.005

#: Location entries kept per delivery.
HISTORY_LIMIT = 100

# ------------------------------------------------------------------
# Trip planning estimates
# ------------------------------------------------------------------

AVERAGE_SPEED_KMH = 30.0  # includes stops
FUEL_EFFICIENCY_KM_PER_L = 12.0
FUEL_PRICE_PER_L = 110.0

# ------------------------------------------------------------------
# Routing profiles
# ------------------------------------------------------------------

_ORS_PROFILES: dict[str, str] = {
    "driving": "driving-car",
    "car": "driving-car",
    "truck": "driving-hgv",
    "hgv": "driving-hgv",
    "cycling": "cycling-regular",
    "walking": "foot-walking",
    "foot": "foot-walking",
}


def ors_profile(profile: str) -> str:
    """Map an OSRM-style travel profile to its OpenRouteService name.

    Names that already look like ORS profiles (``driving-car``) pass through.
    """
    if "-" in profile:
        return profile
    return _ORS_PROFILES.get(profile, "driving-car")
