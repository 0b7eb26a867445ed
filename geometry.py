"""
Planar geometry helpers for neighborhood boundaries and POI proximity.

Polygons are GeoJSON-style dicts: {"type": "Polygon", "coordinates": [ring]}
where ring is a list of [lng, lat] pairs. Only the outer ring is used.

All distances are planar, in degrees. At city scale the error is well inside
what the rest of the pipeline tolerates (no sub-100m guarantees anywhere),
but it degrades near the poles and over very large search areas.
"""

import math
from typing import Any, Dict, List, Sequence, Tuple

Polygon = Dict[str, Any]
BBox = Tuple[float, float, float, float]  # (min_lng, min_lat, max_lng, max_lat)

# Buffer radii for point features that must be stored as areas.
POI_POINT_RADIUS_DEG = 0.005
NEIGHBORHOOD_POINT_RADIUS_DEG = 0.01
DEFAULT_POINT_COUNT = 16


def outer_ring(polygon: Polygon) -> List[List[float]]:
    coords = polygon.get("coordinates") or []
    return coords[0] if coords else []


def bounding_box(polygon: Polygon) -> BBox:
    """Return (min_lng, min_lat, max_lng, max_lat) of the outer ring.

    Raises ValueError on an empty ring; there is no meaningful box for it.
    """
    ring = outer_ring(polygon)
    if not ring:
        raise ValueError("Polygon has an empty outer ring")

    min_lng = min_lat = math.inf
    max_lng = max_lat = -math.inf
    for lng, lat in ring:
        if lng < min_lng:
            min_lng = lng
        if lng > max_lng:
            max_lng = lng
        if lat < min_lat:
            min_lat = lat
        if lat > max_lat:
            max_lat = lat
    return (min_lng, min_lat, max_lng, max_lat)


def validate_polygon(polygon: Any) -> Polygon:
    """Return *polygon* unchanged if it is a usable GeoJSON Polygon.

    Raises ValueError otherwise. The outer ring needs four or more points,
    each a [lng, lat] pair of numbers.
    """
    if not isinstance(polygon, dict) or polygon.get("type") != "Polygon":
        raise ValueError("polygon must be a GeoJSON Polygon")
    coords = polygon.get("coordinates")
    if not isinstance(coords, list) or not coords or not isinstance(coords[0], list):
        raise ValueError("polygon must have an outer ring")
    ring = coords[0]
    if len(ring) < 4:
        raise ValueError("polygon outer ring needs at least 4 points")
    for point in ring:
        if (
            not isinstance(point, (list, tuple))
            or len(point) != 2
            or not all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in point)
        ):
            raise ValueError("polygon coordinates must be [lng, lat] number pairs")
    return polygon


def centroid(polygon: Polygon) -> Tuple[float, float]:
    """Arithmetic mean of the ring vertices as (lat, lng).

    Not the area centroid. A closed ring counts its first vertex twice,
    which is fine for proximity comparisons.
    """
    ring = outer_ring(polygon)
    if not ring:
        return (0.0, 0.0)
    sum_lat = sum(lat for _, lat in ring)
    sum_lng = sum(lng for lng, _ in ring)
    return (sum_lat / len(ring), sum_lng / len(ring))


def close_ring(ring: Sequence[Sequence[float]]) -> List[List[float]]:
    """Return a copy of *ring* whose last vertex equals its first."""
    closed = [[float(lng), float(lat)] for lng, lat in ring]
    if closed and closed[0] != closed[-1]:
        closed.append(list(closed[0]))
    return closed


def polygon_from_ring(ring: Sequence[Sequence[float]]) -> Polygon:
    return {"type": "Polygon", "coordinates": [close_ring(ring)]}


def point_polygon(
    lat: float,
    lng: float,
    radius_deg: float,
    point_count: int = DEFAULT_POINT_COUNT,
) -> Polygon:
    """Approximate a point feature as a regular N-gon of *radius_deg*.

    The ring has point_count distinct vertices followed by an exact copy of
    the first one, so it is always closed regardless of float rounding.
    """
    if point_count < 3:
        raise ValueError("point_count must be at least 3")
    ring = []
    for i in range(point_count):
        angle = (i / point_count) * 2 * math.pi
        ring.append([
            lng + radius_deg * math.cos(angle),
            lat + radius_deg * math.sin(angle),
        ])
    ring.append(list(ring[0]))
    return {"type": "Polygon", "coordinates": [ring]}


def distance(p1: Tuple[float, float], p2: Tuple[float, float]) -> float:
    """Planar distance in degrees between two (lat, lng) points."""
    return math.hypot(p1[0] - p2[0], p1[1] - p2[1])
