"""
POI resolution with a per-neighborhood TTL cache.

Writes are all-or-nothing per neighborhood: the stored set is deleted and
the new set inserted in one transaction, never merged. Every successful
fetch stamps the neighborhood, so one that has no POIs is not fetched again
until the TTL runs out.
"""

import logging
import threading
from typing import List, Optional, Sequence

from models import POI, Neighborhood, NeighborhoodStore, POIStore, utcnow
from osm_search import OsmSearchClient, POIFeature
from poi_categories import ALL_CATEGORIES, POICategory

logger = logging.getLogger(__name__)


class NeighborhoodNotFoundError(LookupError):
    def __init__(self, neighborhood_id: str):
        super().__init__(f"Neighborhood {neighborhood_id} not found")
        self.neighborhood_id = neighborhood_id


def features_to_pois(neighborhood_id: str, features: Sequence[POIFeature]) -> List[POI]:
    now = utcnow()
    return [
        POI(
            neighborhood_id=neighborhood_id,
            category=f.category,
            name=f.name,
            latitude=f.latitude,
            longitude=f.longitude,
            metadata=dict(f.properties),
            provider_id=f.id,
            cached_at=now,
            created_at=now,
            updated_at=now,
        )
        for f in features
    ]


class POIResolver:
    def __init__(self, store: POIStore, search: OsmSearchClient, ttl_hours: float = 24):
        self.store = store
        self.search = search
        self.ttl_hours = ttl_hours

    def cached(self, neighborhood_id: str) -> List[POI]:
        """Whatever is stored for the neighborhood, fresh or not."""
        return self.store.find_by_neighborhood(neighborhood_id)

    def _servable(self, neighborhood: Neighborhood, existing: List[POI]) -> Optional[List[POI]]:
        now = utcnow()
        if neighborhood.pois_checked_within(self.ttl_hours, now):
            return existing
        fresh = [p for p in existing if p.is_cache_valid(self.ttl_hours, now)]
        return fresh or None

    def servable(self, neighborhood: Neighborhood) -> Optional[List[POI]]:
        """The stored set if it can be served without a fetch, else None.

        A neighborhood checked within the TTL is served as stored, even when
        the check found nothing. An unchecked one is served only if it has
        fresh rows.
        """
        return self._servable(neighborhood, self.store.find_by_neighborhood(neighborhood.id))

    def replace(self, neighborhood_id: str, features: Sequence[POIFeature]) -> List[POI]:
        """Replace the neighborhood's stored POIs with *features* atomically."""
        return self.store.replace_for_neighborhood(
            neighborhood_id, features_to_pois(neighborhood_id, features),
        )

    def mark_checked(self, neighborhood_id: str):
        self.store.mark_checked(neighborhood_id)

    def resolve(
        self,
        neighborhood: Neighborhood,
        categories: Sequence[POICategory] = ALL_CATEGORIES,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[POI]:
        """Cached POIs while fresh, or a new Overpass fetch scoped to the boundary.

        Cache hits are filtered to *categories*. Provider errors propagate.
        """
        wanted = set(categories)
        existing = self.store.find_by_neighborhood(neighborhood.id)
        served = self._servable(neighborhood, existing)
        if served is not None:
            logger.info("[pois] cache hit for %s: %d POIs", neighborhood.id, len(served))
            return [p for p in served if p.category in wanted]

        if existing:
            logger.info(
                "[pois] %d stale POIs dropped for %s", len(existing), neighborhood.id,
            )
            self.store.delete_by_neighborhood(neighborhood.id)

        features = self.search.search_pois(
            neighborhood.boundary, categories, cancel_event=cancel_event,
        )
        return self.replace(neighborhood.id, features)


def get_neighborhood_pois(
    neighborhood_id: str,
    neighborhoods: NeighborhoodStore,
    resolver: POIResolver,
    categories: Sequence[POICategory] = ALL_CATEGORIES,
) -> List[POI]:
    neighborhood = neighborhoods.find_by_id(neighborhood_id)
    if neighborhood is None:
        raise NeighborhoodNotFoundError(neighborhood_id)
    return resolver.resolve(neighborhood, categories)
