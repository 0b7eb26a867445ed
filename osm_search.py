"""
OpenStreetMap search over the Overpass API.

Builds Overpass QL for neighborhood boundaries and categorized POIs, sends it
through overpass_http (mirror rotation lives there), and normalizes the
response elements into BoundaryFeature / POIFeature records.

Overpass returns two element shapes:
  - nodes carry lat/lon directly
  - ways and relations carry a geometry list (out geom) or a server-computed
    center (out center), sometimes both

parse_element() turns the raw dict into NodeElement or AreaElement exactly
once; everything after that works on the typed records.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from geometry import (
    POI_POINT_RADIUS_DEG,
    BBox,
    Polygon,
    bounding_box,
    point_polygon,
    polygon_from_ring,
)
from models import NeighborhoodSource
from overpass_http import OverpassHTTPClient, default_client
from pipeline_config import OverpassConfig
from poi_categories import POICategory, classify_tags, filters_for

logger = logging.getLogger(__name__)

PLACE_FILTER = '["place"~"^(neighbourhood|suburb|quarter)$"]'

# Boundary over-fetch window when a result limit is supplied.
MIN_BOUNDARY_CANDIDATES = 50
MAX_BOUNDARY_CANDIDATES = 80


# =============================================================================
# Element types
# =============================================================================

@dataclass(frozen=True)
class NodeElement:
    id: int
    tags: Dict[str, str]
    lat: float
    lng: float

    @property
    def provider_id(self) -> str:
        return f"osm_node_{self.id}"


@dataclass(frozen=True)
class AreaElement:
    id: int
    osm_type: str                                   # "way" | "relation"
    tags: Dict[str, str]
    geometry: Tuple[Tuple[float, float], ...] = ()  # (lat, lng) points
    center: Optional[Tuple[float, float]] = None    # (lat, lng)

    @property
    def provider_id(self) -> str:
        return f"osm_{self.osm_type}_{self.id}"

    def representative_point(self) -> Optional[Tuple[float, float]]:
        """Server center if present, else the mean of the geometry points."""
        if self.center is not None:
            return self.center
        if not self.geometry:
            return None
        n = len(self.geometry)
        return (
            sum(lat for lat, _ in self.geometry) / n,
            sum(lng for _, lng in self.geometry) / n,
        )


Element = Union[NodeElement, AreaElement]


@dataclass
class BoundaryFeature:
    id: str
    name: str
    boundary: Polygon
    source: NeighborhoodSource
    properties: Dict[str, str] = field(default_factory=dict)


@dataclass
class POIFeature:
    id: str
    name: str
    category: POICategory
    latitude: float
    longitude: float
    properties: Dict[str, str] = field(default_factory=dict)


def _coerce_point(raw: Any) -> Optional[Tuple[float, float]]:
    if not isinstance(raw, dict):
        return None
    lat, lon = raw.get("lat"), raw.get("lon")
    if lat is None or lon is None:
        return None
    try:
        return (float(lat), float(lon))
    except (TypeError, ValueError):
        return None


def parse_element(raw: Dict[str, Any]) -> Optional[Element]:
    """Convert one raw Overpass element into a typed element.

    Returns None for unknown element types and for elements with no usable
    coordinates at all.
    """
    el_type = raw.get("type")
    el_id = raw.get("id")
    if el_id is None:
        return None
    tags = dict(raw.get("tags") or {})

    if el_type == "node":
        point = _coerce_point(raw)
        if point is None:
            return None
        return NodeElement(id=el_id, tags=tags, lat=point[0], lng=point[1])

    if el_type in ("way", "relation"):
        geometry = tuple(
            p for p in (_coerce_point(g) for g in raw.get("geometry") or []) if p is not None
        )
        center = _coerce_point(raw.get("center"))
        if not geometry and center is None:
            return None
        return AreaElement(
            id=el_id, osm_type=el_type, tags=tags, geometry=geometry, center=center,
        )

    return None


def parse_elements(data: Dict[str, Any]) -> List[Element]:
    """Parse the elements array, collapsing duplicates by provider id."""
    seen = set()
    elements: List[Element] = []
    for raw in data.get("elements") or []:
        element = parse_element(raw)
        if element is None or element.provider_id in seen:
            continue
        seen.add(element.provider_id)
        elements.append(element)
    return elements


# =============================================================================
# Element normalization
# =============================================================================

def element_to_boundary(element: Element) -> Optional[BoundaryFeature]:
    tags = element.tags
    name = tags.get("name") or tags.get("name:en")
    if not name:
        return None

    if isinstance(element, NodeElement):
        boundary = point_polygon(element.lat, element.lng, POI_POINT_RADIUS_DEG)
        source = NeighborhoodSource.POINT_APPROXIMATION
    elif len(element.geometry) >= 3:
        boundary = polygon_from_ring([(lng, lat) for lat, lng in element.geometry])
        source = NeighborhoodSource.OSM_OVERPASS
    else:
        point = element.representative_point()
        if point is None:
            return None
        boundary = point_polygon(point[0], point[1], POI_POINT_RADIUS_DEG)
        source = NeighborhoodSource.POINT_APPROXIMATION

    return BoundaryFeature(
        id=element.provider_id, name=name, boundary=boundary, source=source, properties=tags,
    )


def element_to_poi(
    element: Element,
    requested: Iterable[POICategory],
) -> Optional[POIFeature]:
    tags = element.tags
    name = tags.get("name")
    if not name:
        return None

    category = classify_tags(tags, requested)
    if category is None:
        return None

    if isinstance(element, NodeElement):
        lat, lng = element.lat, element.lng
    else:
        point = element.representative_point()
        if point is None:
            return None
        lat, lng = point

    return POIFeature(
        id=element.provider_id,
        name=name,
        category=category,
        latitude=lat,
        longitude=lng,
        properties=tags,
    )


# =============================================================================
# Query synthesis
# =============================================================================

def boundary_candidate_count(limit: int) -> int:
    """Candidates to request for a hard result *limit*.

    Downstream filtering drops some candidates, so over-fetch within a window.
    """
    return min(max(limit * 3, MIN_BOUNDARY_CANDIDATES), MAX_BOUNDARY_CANDIDATES)


def _header(bbox: BBox, config: OverpassConfig) -> str:
    min_lng, min_lat, max_lng, max_lat = bbox
    return (
        f"[out:json][timeout:{config.timeout_seconds}][maxsize:{config.maxsize_bytes}]"
        f"[bbox:{min_lat},{min_lng},{max_lat},{max_lng}];"
    )


def build_boundary_query(
    bbox: BBox,
    limit: Optional[int] = None,
    config: Optional[OverpassConfig] = None,
) -> str:
    config = config or OverpassConfig()
    out = f"out geom {boundary_candidate_count(limit)};" if limit else "out geom;"
    return "\n".join([
        _header(bbox, config),
        "(",
        f"  node{PLACE_FILTER};",
        f"  way{PLACE_FILTER};",
        ");",
        out,
    ])


def build_poi_query(
    bbox: BBox,
    categories: Sequence[POICategory],
    config: Optional[OverpassConfig] = None,
) -> Optional[str]:
    """POI query for *categories*, or None when no filter applies."""
    filters = filters_for(categories)
    if not filters:
        return None
    config = config or OverpassConfig()
    lines = [_header(bbox, config), "("]
    for expr in filters:
        lines.append(f"  node{expr};")
        lines.append(f"  way{expr};")
    lines.append(");")
    lines.append("out center;")
    return "\n".join(lines)


# =============================================================================
# Client
# =============================================================================

class OsmSearchClient:
    """Boundary and POI search against Overpass."""

    def __init__(self, http_client: Optional[OverpassHTTPClient] = None):
        self.http = http_client or default_client()

    @property
    def config(self) -> OverpassConfig:
        return self.http.config

    def search_boundaries(
        self,
        polygon: Polygon,
        limit: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[BoundaryFeature]:
        bbox = bounding_box(polygon)
        logger.info(
            "[osm] searching neighbourhoods in bbox S:%.4f W:%.4f N:%.4f E:%.4f limit=%s",
            bbox[1], bbox[0], bbox[3], bbox[2], limit,
        )
        query = build_boundary_query(bbox, limit, self.config)
        data = self.http.query(query, caller="search_boundaries", cancel_event=cancel_event)
        elements = parse_elements(data)
        features = [f for f in (element_to_boundary(el) for el in elements) if f is not None]
        logger.info("[osm] %d boundary elements -> %d features", len(elements), len(features))
        return features

    def search_pois(
        self,
        boundary: Polygon,
        categories: Sequence[POICategory],
        cancel_event: Optional[threading.Event] = None,
    ) -> List[POIFeature]:
        query = build_poi_query(bounding_box(boundary), categories, self.config)
        if query is None:
            return []
        logger.info("[osm] searching POIs for [%s]", ", ".join(c.value for c in categories))
        data = self.http.query(query, caller="search_pois", cancel_event=cancel_event)
        elements = parse_elements(data)
        features = [
            f for f in (element_to_poi(el, categories) for el in elements) if f is not None
        ]
        logger.info("[osm] %d POI elements -> %d features", len(elements), len(features))
        return features

    def search_pois_for_area(
        self,
        polygon: Polygon,
        categories: Sequence[POICategory],
        cancel_event: Optional[threading.Event] = None,
    ) -> List[POIFeature]:
        """All POIs inside an isochrone in a single request."""
        return self.search_pois(polygon, categories, cancel_event=cancel_event)
