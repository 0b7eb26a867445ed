"""
Nearest-centroid assignment of POIs to neighborhoods.

POIs are fetched once for the whole isochrone and then distributed here.
Distances are planar degrees (see geometry.distance). A POI farther than
max_radius from every centroid is dropped.

Equidistant centroids resolve to the lowest neighborhood id, so the result
does not depend on the order neighborhoods were loaded in.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from geometry import centroid, distance
from models import Neighborhood
from osm_search import POIFeature

MAX_ASSIGN_RADIUS_DEG = 0.05  # ~5.5 km


@dataclass(frozen=True)
class NeighborhoodCentroid:
    neighborhood_id: str
    lat: float
    lng: float


def centroids_for(neighborhoods: Iterable[Neighborhood]) -> List[NeighborhoodCentroid]:
    result = []
    for n in neighborhoods:
        lat, lng = centroid(n.boundary)
        result.append(NeighborhoodCentroid(n.id, lat, lng))
    return result


def find_nearest(
    lat: float,
    lng: float,
    centroids: Sequence[NeighborhoodCentroid],
    max_radius: float = MAX_ASSIGN_RADIUS_DEG,
) -> Optional[str]:
    best_id = None
    best_dist = None
    for c in centroids:
        d = distance((lat, lng), (c.lat, c.lng))
        if d > max_radius:
            continue
        if (
            best_dist is None
            or d < best_dist
            or (d == best_dist and c.neighborhood_id < best_id)
        ):
            best_id = c.neighborhood_id
            best_dist = d
    return best_id


def assign_pois(
    pois: Iterable[POIFeature],
    centroids: Sequence[NeighborhoodCentroid],
    max_radius: float = MAX_ASSIGN_RADIUS_DEG,
) -> Dict[str, List[POIFeature]]:
    """Group *pois* by nearest neighborhood.

    Every neighborhood id is present in the result, possibly with an
    empty list.
    """
    grouped: Dict[str, List[POIFeature]] = {c.neighborhood_id: [] for c in centroids}
    for poi in pois:
        nearest = find_nearest(poi.latitude, poi.longitude, centroids, max_radius)
        if nearest is not None:
            grouped[nearest].append(poi)
    return grouped
