"""Unit tests for neighborhood_cache.py: TTL short-circuit and static fallback."""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from geometry import point_polygon
from models import Neighborhood, NeighborhoodSource, NeighborhoodStore, utcnow
from neighborhood_cache import (
    ORIGIN_CACHE,
    ORIGIN_FALLBACK,
    ORIGIN_OVERPASS,
    NeighborhoodResolver,
)
from osm_search import BoundaryFeature
from overpass_http import OverpassCancelledError, OverpassUnavailableError
from pipeline_config import MIAMI


def _feature(id, name, lat, lng):
    return BoundaryFeature(
        id=id, name=name, boundary=point_polygon(lat, lng, 0.005),
        source=NeighborhoodSource.POINT_APPROXIMATION,
    )


def _resolver(search_result=None, search_error=None):
    search = MagicMock()
    if search_error is not None:
        search.search_boundaries.side_effect = search_error
    else:
        search.search_boundaries.return_value = search_result or []
    return NeighborhoodResolver(NeighborhoodStore(), search), search


class TestCacheShortCircuit:
    def test_fresh_entries_skip_search(self, miami_square):
        resolver, search = _resolver()
        resolver.store.upsert(Neighborhood.build(
            "osm_node_1", "Brickell", point_polygon(25.76, -80.19, 0.005),
            NeighborhoodSource.POINT_APPROXIMATION,
        ))
        result = resolver.resolve(miami_square)

        assert result.origin == ORIGIN_CACHE
        assert [n.id for n in result.neighborhoods] == ["osm_node_1"]
        search.search_boundaries.assert_not_called()

    def test_stale_entries_trigger_search(self, miami_square):
        resolver, search = _resolver([_feature("osm_node_2", "Wynwood", 25.80, -80.20)])
        resolver.store.upsert(Neighborhood.build(
            "osm_node_1", "Brickell", point_polygon(25.76, -80.19, 0.005),
            NeighborhoodSource.POINT_APPROXIMATION,
            cached_at=utcnow() - timedelta(days=8),
        ))
        result = resolver.resolve(miami_square)

        assert result.origin == ORIGIN_OVERPASS
        search.search_boundaries.assert_called_once()

    def test_second_resolve_makes_no_external_call(self, miami_square):
        resolver, search = _resolver([_feature("osm_node_1", "Brickell", 25.76, -80.19)])
        first = resolver.resolve(miami_square)
        second = resolver.resolve(miami_square)

        assert first.origin == ORIGIN_OVERPASS
        assert second.origin == ORIGIN_CACHE
        assert search.search_boundaries.call_count == 1

    def test_cache_hit_respects_limit(self, miami_square):
        resolver, _ = _resolver()
        for i in range(5):
            resolver.store.upsert(Neighborhood.build(
                f"n{i}", f"N{i}", point_polygon(25.76 + i * 0.01, -80.19, 0.005),
                NeighborhoodSource.MANUAL,
            ))
        assert len(resolver.resolve(miami_square, limit=3).neighborhoods) == 3


class TestSearchResults:
    def test_results_persisted_with_source(self, miami_square):
        resolver, _ = _resolver([_feature("osm_node_1", "Brickell", 25.76, -80.19)])
        resolver.resolve(miami_square)
        stored = resolver.store.find_by_id("osm_node_1")
        assert stored.source == NeighborhoodSource.POINT_APPROXIMATION

    def test_results_capped_to_limit(self, miami_square):
        features = [_feature(f"osm_node_{i}", f"N{i}", 25.76, -80.19) for i in range(5)]
        resolver, search = _resolver(features)
        result = resolver.resolve(miami_square, limit=2)

        assert len(result.neighborhoods) == 2
        assert search.search_boundaries.call_args.kwargs["limit"] == 2


class TestFallback:
    def test_search_error_soft_fails_to_seeds(self, miami_square):
        resolver, _ = _resolver(search_error=OverpassUnavailableError("all down"))
        result = resolver.resolve(miami_square)

        assert result.origin == ORIGIN_FALLBACK
        assert len(result.neighborhoods) == len(MIAMI.neighborhoods)
        assert all(n.source == NeighborhoodSource.STATIC_FALLBACK for n in result.neighborhoods)

    def test_empty_search_uses_seeds(self, miami_square):
        resolver, _ = _resolver([])
        result = resolver.resolve(miami_square)
        assert {n.id for n in result.neighborhoods} == {s.id for s in MIAMI.neighborhoods}

    def test_seed_polygons_closed(self, miami_square):
        resolver, _ = _resolver([])
        for n in resolver.resolve(miami_square).neighborhoods:
            ring = n.boundary["coordinates"][0]
            assert ring[0] == ring[-1]
            assert len(ring) == 17

    def test_fallback_idempotent(self):
        resolver, _ = _resolver([])
        resolver.seed_fallback()
        resolver.seed_fallback()
        everything = point_polygon(25.77, -80.2, 1.0)
        rows = resolver.store.find_within_bounds(everything)
        assert len(rows) == len(MIAMI.neighborhoods)

    def test_fallback_respects_limit(self, miami_square):
        resolver, _ = _resolver([])
        assert len(resolver.resolve(miami_square, limit=3).neighborhoods) == 3

    def test_cancellation_propagates(self, miami_square):
        resolver, _ = _resolver(search_error=OverpassCancelledError("stop"))
        with pytest.raises(OverpassCancelledError):
            resolver.resolve(miami_square)
