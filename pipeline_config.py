"""
Pipeline configuration for RentRadar.

Owns the provider endpoints, cache TTLs, and fallback seed data used by the
discovery-and-caching pipeline. Values come from environment variables where
an operator might reasonably need to change them; everything else is a
constant here.

Frozen dataclasses are passed explicitly to the components that need them
(OverpassHTTPClient, resolvers, orchestrator) so tests can substitute mirror
lists and timeouts without touching module state.
"""

import os
from dataclasses import dataclass, field
from typing import Optional, Tuple


DEFAULT_OVERPASS_MIRRORS: Tuple[str, ...] = (
    "https://overpass-api.de/api/interpreter",
    "https://overpass.kumi.systems/api/interpreter",
    "https://maps.mail.ru/osm/tools/overpass/api/interpreter",
)


# =============================================================================
# Dataclasses
# =============================================================================

@dataclass(frozen=True)
class OverpassConfig:
    """Overpass mirror list and request limits."""
    mirrors: Tuple[str, ...] = DEFAULT_OVERPASS_MIRRORS
    timeout_seconds: int = 60            # [timeout:N] server-side limit
    http_timeout: float = 70.0           # client timeout, must exceed timeout_seconds
    maxsize_bytes: int = 67_108_864      # [maxsize:N], 64 MB
    retry_backoff_seconds: float = 2.0   # attempt i waits i * this
    min_spacing_seconds: float = 1.0     # process-local spacing between requests


@dataclass(frozen=True)
class CacheConfig:
    neighborhood_ttl_days: float = 7
    poi_ttl_hours: float = 24


@dataclass(frozen=True)
class SeedNeighborhood:
    """A pre-seeded neighborhood used when boundary search yields nothing."""
    id: str
    name: str
    lat: float
    lng: float


@dataclass(frozen=True)
class FallbackCity:
    name: str
    center_lat: float
    center_lng: float
    neighborhoods: Tuple[SeedNeighborhood, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class MapboxConfig:
    access_token: str = ""
    base_url: str = "https://api.mapbox.com"
    timeout: float = 10.0


@dataclass(frozen=True)
class StreetViewConfig:
    api_key: str = ""
    size: str = "800x500"
    fov: int = 100
    pitch: int = 15
    timeout: float = 10.0


# =============================================================================
# Static fallback data
# =============================================================================

MIAMI = FallbackCity(
    name="miami",
    center_lat=25.7617,
    center_lng=-80.1918,
    neighborhoods=(
        SeedNeighborhood("miami_brickell", "Brickell", 25.7593, -80.1937),
        SeedNeighborhood("miami_wynwood", "Wynwood", 25.8008, -80.1995),
        SeedNeighborhood("miami_coral_gables", "Coral Gables", 25.7215, -80.2684),
        SeedNeighborhood("miami_coconut_grove", "Coconut Grove", 25.7308, -80.2394),
        SeedNeighborhood("miami_little_havana", "Little Havana", 25.7697, -80.2299),
        SeedNeighborhood("miami_design_district", "Design District", 25.8124, -80.1942),
        SeedNeighborhood("miami_downtown", "Downtown Miami", 25.7749, -80.1936),
        SeedNeighborhood("miami_south_beach", "South Beach", 25.7825, -80.1300),
    ),
)

DEFAULT_FALLBACK_CITY = MIAMI

# Max concurrent photo lookups per batch (Street View rate limits).
PHOTO_BATCH_SIZE = 5


# =============================================================================
# Environment loading
# =============================================================================

def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def overpass_config_from_env() -> OverpassConfig:
    """Build an OverpassConfig, honoring OVERPASS_* overrides.

    OVERPASS_MIRRORS is a comma-separated list tried in order.
    """
    mirrors_raw = os.environ.get("OVERPASS_MIRRORS", "")
    mirrors = tuple(m.strip() for m in mirrors_raw.split(",") if m.strip())
    return OverpassConfig(
        mirrors=mirrors or DEFAULT_OVERPASS_MIRRORS,
        timeout_seconds=int(_env_float("OVERPASS_TIMEOUT_SECONDS", 60)),
        http_timeout=_env_float("OVERPASS_HTTP_TIMEOUT", 70.0),
        maxsize_bytes=int(_env_float("OVERPASS_MAXSIZE_BYTES", 67_108_864)),
        retry_backoff_seconds=_env_float("OVERPASS_RETRY_BACKOFF", 2.0),
        min_spacing_seconds=_env_float("OVERPASS_MIN_SPACING", 1.0),
    )


def cache_config_from_env() -> CacheConfig:
    return CacheConfig(
        neighborhood_ttl_days=_env_float("NEIGHBORHOOD_TTL_DAYS", 7),
        poi_ttl_hours=_env_float("POI_TTL_HOURS", 24),
    )


def free_tier_limit_from_env() -> Optional[int]:
    """Neighborhood cap for anonymous callers; 0 disables the cap."""
    limit = int(_env_float("FREE_TIER_NEIGHBORHOOD_LIMIT", 10))
    return limit if limit > 0 else None


def mapbox_config_from_env() -> MapboxConfig:
    return MapboxConfig(access_token=os.environ.get("MAPBOX_ACCESS_TOKEN", ""))


def street_view_config_from_env() -> StreetViewConfig:
    return StreetViewConfig(api_key=os.environ.get("GOOGLE_STREET_VIEW_KEY", ""))
