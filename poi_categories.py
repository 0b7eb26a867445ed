"""
POI category taxonomy and OSM tag classification.

Two tables live here and must stay in sync:
  - CATEGORY_FILTERS: the Overpass tag expressions sent to the server for
    each requested category.
  - CATEGORY_RULES: the ordered predicates used to classify whatever comes
    back. Order is precedence: specific categories (school, supermarket)
    are checked before generic ones (shop), and the first match wins.
"""

import re
from enum import Enum
from typing import Callable, Dict, Iterable, Mapping, Optional, Tuple


class POICategory(str, Enum):
    SCHOOL = "school"
    PARK = "park"
    SHOP = "shop"
    TRANSIT = "transit"
    GYM = "gym"
    HOSPITAL = "hospital"
    RESTAURANT = "restaurant"
    BAR = "bar"
    CAFE = "cafe"
    SUPERMARKET = "supermarket"


ALL_CATEGORIES: Tuple[POICategory, ...] = tuple(POICategory)


# =============================================================================
# OVERPASS FILTERS: one or more tag expressions per category
# =============================================================================

CATEGORY_FILTERS: Dict[POICategory, Tuple[str, ...]] = {
    POICategory.SCHOOL: ('["amenity"~"^(school|university|college|kindergarten)$"]',),
    POICategory.PARK: ('["leisure"~"^(park|garden|nature_reserve)$"]',),
    POICategory.SHOP: ('["shop"~"."]',),
    POICategory.TRANSIT: (
        '["highway"="bus_stop"]',
        '["railway"~"^(station|halt|tram_stop|subway_entrance)$"]',
    ),
    POICategory.GYM: ('["leisure"~"^(fitness_centre|sports_centre|swimming_pool)$"]',),
    POICategory.HOSPITAL: ('["amenity"~"^(hospital|clinic|doctors|dentist|pharmacy)$"]',),
    POICategory.RESTAURANT: ('["amenity"="restaurant"]',),
    POICategory.BAR: ('["amenity"~"^(bar|pub|nightclub)$"]',),
    POICategory.CAFE: ('["amenity"~"^(cafe|fast_food)$"]',),
    POICategory.SUPERMARKET: ('["shop"~"^(supermarket|convenience)$"]',),
}


# =============================================================================
# CLASSIFICATION RULES: ordered, first match wins
# =============================================================================

Tags = Mapping[str, str]


def _matches(key: str, pattern: str) -> Callable[[Tags], bool]:
    regex = re.compile(pattern)
    return lambda tags: bool(regex.search(tags.get(key) or ""))


def _equals(key: str, value: str) -> Callable[[Tags], bool]:
    return lambda tags: tags.get(key) == value


def _any(*predicates: Callable[[Tags], bool]) -> Callable[[Tags], bool]:
    return lambda tags: any(p(tags) for p in predicates)


CATEGORY_RULES: Tuple[Tuple[POICategory, Callable[[Tags], bool]], ...] = (
    (POICategory.SCHOOL, _matches("amenity", "school|university|college|kindergarten")),
    (POICategory.PARK, _matches("leisure", "park|garden|nature_reserve")),
    (POICategory.SUPERMARKET, _matches("shop", "supermarket|grocery|convenience")),
    (POICategory.SHOP, lambda tags: bool(tags.get("shop"))),
    (POICategory.TRANSIT, _any(
        _equals("highway", "bus_stop"),
        _matches("railway", "station|halt|tram_stop|subway_entrance"),
        _matches("amenity", "bus_station|ferry_terminal"),
    )),
    (POICategory.GYM, _any(
        _matches("leisure", "fitness_centre|sports_centre|swimming_pool"),
        _equals("amenity", "gym"),
    )),
    (POICategory.HOSPITAL, _matches("amenity", "hospital|clinic|doctors|dentist|pharmacy")),
    (POICategory.RESTAURANT, _equals("amenity", "restaurant")),
    (POICategory.BAR, _matches("amenity", "bar|pub|nightclub|biergarten")),
    (POICategory.CAFE, _matches("amenity", "cafe|fast_food|food_court")),
)


def classify_tags(
    tags: Optional[Tags],
    requested: Iterable[POICategory],
) -> Optional[POICategory]:
    """Return the first requested category whose rule matches *tags*.

    Returns None when nothing matches; callers drop such features rather
    than storing them uncategorized.
    """
    if not tags:
        return None
    wanted = set(requested)
    for category, predicate in CATEGORY_RULES:
        if category in wanted and predicate(tags):
            return category
    return None


def filters_for(categories: Iterable[POICategory]) -> Tuple[str, ...]:
    """Unique Overpass filter expressions for *categories*, in first-seen order."""
    seen: Dict[str, None] = {}
    for category in categories:
        for expr in CATEGORY_FILTERS.get(category, ()):
            seen.setdefault(expr, None)
    return tuple(seen)


def parse_categories(values: Optional[Iterable[str]]) -> Tuple[POICategory, ...]:
    """Convert category names to POICategory values.

    None means "all categories". Unknown names raise ValueError.
    """
    if values is None:
        return ALL_CATEGORIES
    result = []
    for value in values:
        try:
            category = POICategory(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown POI category: {value!r}") from None
        if category not in result:
            result.append(category)
    return tuple(result)
