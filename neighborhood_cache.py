"""
Neighborhood resolution with a TTL cache and a static fallback.

resolve() tries, in order:
  1. fresh neighborhoods already stored inside the search bbox
  2. an Overpass boundary search (failures are logged, never raised)
  3. the seed neighborhoods of the default city

Any fresh cached entry short-circuits the external search entirely.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import List, Optional

from geometry import NEIGHBORHOOD_POINT_RADIUS_DEG, Polygon, point_polygon
from models import Neighborhood, NeighborhoodSource, NeighborhoodStore, utcnow
from osm_search import OsmSearchClient
from overpass_http import OverpassCancelledError
from pipeline_config import DEFAULT_FALLBACK_CITY, FallbackCity

logger = logging.getLogger(__name__)

ORIGIN_CACHE = "cache"
ORIGIN_OVERPASS = "overpass"
ORIGIN_FALLBACK = "fallback"


@dataclass
class NeighborhoodResolution:
    neighborhoods: List[Neighborhood] = field(default_factory=list)
    origin: str = ORIGIN_CACHE


def _cap(items: list, limit: Optional[int]) -> list:
    return items[:limit] if limit else items


class NeighborhoodResolver:
    def __init__(
        self,
        store: NeighborhoodStore,
        search: OsmSearchClient,
        fallback_city: FallbackCity = DEFAULT_FALLBACK_CITY,
        ttl_days: float = 7,
    ):
        self.store = store
        self.search = search
        self.fallback_city = fallback_city
        self.ttl_days = ttl_days

    def resolve(
        self,
        polygon: Polygon,
        limit: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> NeighborhoodResolution:
        now = utcnow()
        cached = self.store.find_within_bounds(polygon)
        fresh = [n for n in cached if n.is_cache_valid(self.ttl_days, now)]
        if fresh:
            logger.info(
                "[neighborhoods] cache hit: %d fresh of %d in bbox", len(fresh), len(cached),
            )
            return NeighborhoodResolution(_cap(fresh, limit), ORIGIN_CACHE)

        try:
            features = self.search.search_boundaries(
                polygon, limit=limit, cancel_event=cancel_event,
            )
        except OverpassCancelledError:
            raise
        except Exception as e:
            logger.warning(
                "[neighborhoods] boundary search failed, using fallback: %s: %s",
                type(e).__name__, e,
            )
            features = []

        if not features:
            return NeighborhoodResolution(self.seed_fallback(limit), ORIGIN_FALLBACK)

        saved = []
        for feature in _cap(features, limit):
            neighborhood = Neighborhood.build(
                id=feature.id,
                name=feature.name,
                boundary=feature.boundary,
                source=feature.source,
            )
            saved.append(self.store.upsert(neighborhood))
        logger.info("[neighborhoods] %d resolved from Overpass", len(saved))
        return NeighborhoodResolution(saved, ORIGIN_OVERPASS)

    def seed_fallback(self, limit: Optional[int] = None) -> List[Neighborhood]:
        """Upsert the fallback city's seed neighborhoods by their fixed ids."""
        city = self.fallback_city
        logger.info(
            "[neighborhoods] using static fallback for %s (%d seeds)",
            city.name, len(city.neighborhoods),
        )
        result = []
        for seed in _cap(list(city.neighborhoods), limit):
            neighborhood = Neighborhood.build(
                id=seed.id,
                name=seed.name,
                boundary=point_polygon(seed.lat, seed.lng, NEIGHBORHOOD_POINT_RADIUS_DEG),
                source=NeighborhoodSource.STATIC_FALLBACK,
            )
            result.append(self.store.upsert(neighborhood))
        return result
