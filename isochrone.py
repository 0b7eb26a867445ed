"""
Mapbox Isochrone API client.

Returns the polygon reachable from a point within a travel-time budget.
This is the one fatal dependency of an analysis run: every failure here is
raised as IsochroneError and propagates to the caller.
"""

import logging
import time
from typing import Optional

import requests

from geometry import Polygon, close_ring
from pipeline_config import MapboxConfig, mapbox_config_from_env
from rr_trace import get_trace

logger = logging.getLogger(__name__)

# Analysis mode -> Mapbox routing profile
PROFILES = {
    "driving": "driving",
    "walking": "walking",
    "cycling": "cycling",
}


class IsochroneError(Exception):
    """Raised when no usable isochrone polygon could be obtained."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def _record_api(endpoint: str, t0: float, status_code: int, provider_status: str):
    trace = get_trace()
    if trace:
        trace.record_api_call(
            service="mapbox",
            endpoint=endpoint,
            elapsed_ms=int((time.time() - t0) * 1000),
            status_code=status_code,
            provider_status=provider_status,
        )


class MapboxIsochroneClient:
    def __init__(self, config: Optional[MapboxConfig] = None):
        self.config = config or mapbox_config_from_env()
        if not self.config.access_token:
            logger.warning("MAPBOX_ACCESS_TOKEN not configured")

    def get_isochrone(
        self,
        longitude: float,
        latitude: float,
        time_minutes: int,
        mode: str,
    ) -> Polygon:
        profile = PROFILES.get(mode)
        if profile is None:
            raise IsochroneError(f"Unsupported travel mode: {mode!r}")
        if not self.config.access_token:
            raise IsochroneError("MAPBOX_ACCESS_TOKEN not configured")

        url = (
            f"{self.config.base_url}/isochrone/v1/mapbox/{profile}/"
            f"{longitude},{latitude}"
        )
        params = {
            "contours_minutes": str(time_minutes),
            "polygons": "true",
            "access_token": self.config.access_token,
        }
        logger.info(
            "[isochrone] %dmin %s from (%.4f, %.4f)", time_minutes, mode, longitude, latitude,
        )

        t0 = time.time()
        try:
            resp = requests.get(url, params=params, timeout=self.config.timeout)
        except requests.Timeout:
            _record_api("isochrone", t0, 0, "timeout")
            raise IsochroneError(f"Mapbox isochrone timed out after {self.config.timeout}s")
        except requests.RequestException as e:
            _record_api("isochrone", t0, 0, "network_error")
            raise IsochroneError(f"Mapbox isochrone request failed: {e}") from e

        if not resp.ok:
            _record_api("isochrone", t0, resp.status_code, "http_error")
            raise IsochroneError(
                f"Mapbox isochrone returned HTTP {resp.status_code}",
                status_code=resp.status_code,
            )

        try:
            data = resp.json()
            geometry = data["features"][0]["geometry"]
            ring = geometry["coordinates"][0]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            _record_api("isochrone", t0, resp.status_code, "parse_error")
            raise IsochroneError(f"Mapbox isochrone response unusable: {e}") from e

        if geometry.get("type") != "Polygon" or len(ring) < 3:
            _record_api("isochrone", t0, resp.status_code, "parse_error")
            raise IsochroneError("Mapbox isochrone did not return a polygon")

        _record_api("isochrone", t0, resp.status_code, "ok")
        return {"type": "Polygon", "coordinates": [close_ring(ring)]}
