"""Unit tests for poi_cache.py: per-neighborhood POI cache."""

from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from geometry import bounding_box, point_polygon
from models import POI, Neighborhood, NeighborhoodSource, NeighborhoodStore, POIStore, utcnow
from osm_search import POIFeature
from poi_cache import NeighborhoodNotFoundError, POIResolver, get_neighborhood_pois
from poi_categories import ALL_CATEGORIES, POICategory


def _feature(id="osm_node_1", name="Joe's", category=POICategory.RESTAURANT):
    return POIFeature(
        id=id, name=name, category=category, latitude=25.76, longitude=-80.19,
        properties={"amenity": "restaurant"},
    )


@pytest.fixture()
def neighborhood():
    n = Neighborhood.build(
        "n1", "Brickell", point_polygon(25.76, -80.19, 0.01), NeighborhoodSource.MANUAL,
    )
    return NeighborhoodStore().upsert(n)


def _resolver(features=None):
    search = MagicMock()
    search.search_pois.return_value = features or []
    return POIResolver(POIStore(), search), search


class TestResolve:
    def test_cold_fetch_persists(self, neighborhood):
        resolver, search = _resolver([_feature()])
        pois = resolver.resolve(neighborhood, ALL_CATEGORIES)

        assert [p.name for p in pois] == ["Joe's"]
        assert pois[0].provider_id == "osm_node_1"
        assert pois[0].metadata == {"amenity": "restaurant"}
        assert len(resolver.store.find_by_neighborhood("n1")) == 1

    def test_fetch_scoped_to_boundary(self, neighborhood):
        resolver, search = _resolver([_feature()])
        resolver.resolve(neighborhood, [POICategory.CAFE])
        boundary, categories = search.search_pois.call_args.args
        assert bounding_box(boundary) == bounding_box(neighborhood.boundary)
        assert categories == [POICategory.CAFE]

    def test_cache_hit_filtered_to_requested_categories(self, neighborhood):
        resolver, search = _resolver([
            _feature("osm_node_1", "Joe's", POICategory.RESTAURANT),
            _feature("osm_node_2", "Beans", POICategory.CAFE),
        ])
        assert len(resolver.resolve(neighborhood)) == 2

        cafes = resolver.resolve(neighborhood, [POICategory.CAFE])
        assert [p.name for p in cafes] == ["Beans"]
        assert search.search_pois.call_count == 1

    def test_fresh_cache_short_circuits(self, neighborhood):
        resolver, search = _resolver([_feature()])
        resolver.resolve(neighborhood)
        resolver.resolve(neighborhood)
        assert search.search_pois.call_count == 1

    def test_stale_cache_deleted_before_fetch(self, neighborhood):
        resolver, search = _resolver([])
        old = utcnow() - timedelta(hours=25)
        resolver.store.create_many([
            POI("n1", POICategory.CAFE, "Old Cafe", 25.76, -80.19, cached_at=old),
        ])
        assert resolver.resolve(neighborhood) == []
        assert resolver.store.find_by_neighborhood("n1") == []
        search.search_pois.assert_called_once()

    def test_empty_result_is_not_an_error(self, neighborhood):
        resolver, _ = _resolver([])
        assert resolver.resolve(neighborhood) == []

    def test_empty_result_not_refetched_within_ttl(self, neighborhood):
        resolver, search = _resolver([])
        assert resolver.resolve(neighborhood) == []

        reloaded = NeighborhoodStore().find_by_id("n1")
        assert resolver.resolve(reloaded) == []
        assert search.search_pois.call_count == 1

    def test_empty_check_expires(self, neighborhood):
        resolver, search = _resolver([])
        resolver.resolve(neighborhood)
        resolver.store.mark_checked("n1", utcnow() - timedelta(hours=25))

        resolver.resolve(NeighborhoodStore().find_by_id("n1"))
        assert search.search_pois.call_count == 2

    def test_provider_error_propagates(self, neighborhood):
        resolver, search = _resolver()
        search.search_pois.side_effect = RuntimeError("overpass down")
        with pytest.raises(RuntimeError):
            resolver.resolve(neighborhood)


class TestReplace:
    def test_replace_is_all_or_nothing(self, neighborhood):
        resolver, _ = _resolver()
        resolver.replace("n1", [_feature("osm_node_1", "A"), _feature("osm_node_2", "B")])
        resolver.replace("n1", [_feature("osm_node_3", "C")])
        assert [p.name for p in resolver.cached("n1")] == ["C"]

    def test_failed_replace_keeps_previous_set(self, neighborhood):
        resolver, _ = _resolver()
        resolver.replace("n1", [_feature("osm_node_1", "A"), _feature("osm_node_2", "B")])
        with patch("models._poi_params", side_effect=ValueError("bad row")):
            with pytest.raises(ValueError):
                resolver.replace("n1", [_feature("osm_node_3", "C")])
        assert [p.name for p in resolver.cached("n1")] == ["A", "B"]

    def test_servable_distinguishes_unchecked_from_checked_empty(self, neighborhood):
        resolver, _ = _resolver()
        assert resolver.servable(neighborhood) is None

        resolver.replace("n1", [])
        assert resolver.servable(NeighborhoodStore().find_by_id("n1")) == []

    def test_servable_excludes_stale_rows_when_unchecked(self, neighborhood):
        resolver, _ = _resolver()
        old = utcnow() - timedelta(days=2)
        resolver.store.create_many([
            POI("n1", POICategory.CAFE, "Old", 25.76, -80.19, cached_at=old),
            POI("n1", POICategory.CAFE, "New", 25.76, -80.19),
        ])
        assert [p.name for p in resolver.servable(neighborhood)] == ["New"]
        assert len(resolver.cached("n1")) == 2


class TestGetNeighborhoodPOIs:
    def test_unknown_neighborhood(self):
        resolver, search = _resolver()
        with pytest.raises(NeighborhoodNotFoundError):
            get_neighborhood_pois("ghost", NeighborhoodStore(), resolver)
        search.search_pois.assert_not_called()

    def test_known_neighborhood(self, neighborhood):
        resolver, _ = _resolver([_feature()])
        pois = get_neighborhood_pois("n1", NeighborhoodStore(), resolver)
        assert len(pois) == 1
