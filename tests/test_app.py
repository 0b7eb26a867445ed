"""HTTP-level tests for app.py using the Flask test client.

The orchestrator is patched out; these cover request parsing, status codes,
and response shapes.
"""

from unittest.mock import MagicMock, patch

import pytest

import app as app_module
from analysis import (
    AnalysisCancelledError,
    AnalysisOrchestrator,
    AnalyzeResult,
    NeighborhoodResult,
    SavedAnalysis,
)
from geometry import point_polygon
from isochrone import IsochroneError
from models import (
    POI,
    Neighborhood,
    NeighborhoodSource,
    NeighborhoodStore,
    POIStore,
    SearchSession,
    SessionStore,
)
from neighborhood_cache import NeighborhoodResolution, NeighborhoodResolver
from overpass_http import OverpassUnavailableError
from poi_cache import POIResolver
from poi_categories import POICategory

ISOCHRONE = {
    "type": "Polygon",
    "coordinates": [[[-80.2, 25.7], [-80.1, 25.7], [-80.1, 25.8], [-80.2, 25.7]]],
}

VALID_BODY = {"longitude": -80.19, "latitude": 25.76, "timeMinutes": 15, "mode": "driving"}

SEARCH_AREA = {
    "type": "Polygon",
    "coordinates": [[[-80.2, 25.7], [-80.1, 25.7], [-80.1, 25.8], [-80.2, 25.8], [-80.2, 25.7]]],
}


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(app_module.limiter, "enabled", False)
    app_module.app.config["TESTING"] = True
    with app_module.app.test_client() as c:
        yield c


@pytest.fixture
def brickell():
    return NeighborhoodStore().upsert(Neighborhood.build(
        "osm_node_1", "Brickell", point_polygon(25.76, -80.19, 0.005),
        NeighborhoodSource.POINT_APPROXIMATION,
    ))


def _orchestrator(result=None, error=None, search=None):
    orch = MagicMock()
    if error is not None:
        orch.analyze.side_effect = error
    else:
        orch.analyze.return_value = result
    orch.pois = POIResolver(POIStore(), search or MagicMock())
    return orch


# =========================================================================
# POST /api/analyze
# =========================================================================

class TestAnalyze:
    def test_success_shape(self, client, brickell):
        poi = POI("osm_node_1", POICategory.CAFE, "Beans", 25.7601, -80.1901)
        result = AnalyzeResult([NeighborhoodResult(brickell, [poi])], ISOCHRONE)
        with patch("app.get_orchestrator", return_value=_orchestrator(result)):
            resp = client.post("/api/analyze", json=VALID_BODY)

        assert resp.status_code == 200
        data = resp.get_json()
        assert data["isochrone"] == ISOCHRONE
        (entry,) = data["neighborhoods"]
        assert entry["neighborhood"]["id"] == "osm_node_1"
        assert entry["neighborhood"]["centerLat"] == pytest.approx(25.76, abs=1e-3)
        assert entry["pois"][0]["name"] == "Beans"
        assert entry["pois"][0]["category"] == "cafe"

    def test_request_parsed_from_camel_case(self, client):
        orch = _orchestrator(AnalyzeResult([], ISOCHRONE))
        with patch("app.get_orchestrator", return_value=orch):
            client.post("/api/analyze", json={**VALID_BODY, "callerId": "u1"})

        req = orch.analyze.call_args.args[0]
        assert req.time_minutes == 15
        assert req.caller_id == "u1"

    @pytest.mark.parametrize("body", [
        {**VALID_BODY, "mode": "teleport"},
        {**VALID_BODY, "timeMinutes": 0},
        {**VALID_BODY, "latitude": 91},
    ])
    def test_invalid_request(self, client, body):
        orch = _orchestrator()
        with patch("app.get_orchestrator", return_value=orch):
            resp = client.post("/api/analyze", json=body)

        assert resp.status_code == 400
        assert "error" in resp.get_json()
        orch.analyze.assert_not_called()

    def test_non_json_body(self, client):
        resp = client.post("/api/analyze", data="not json", content_type="text/plain")
        assert resp.status_code == 400

    def test_isochrone_failure_is_502(self, client):
        orch = _orchestrator(error=IsochroneError("mapbox down", status_code=500))
        with patch("app.get_orchestrator", return_value=orch):
            resp = client.post("/api/analyze", json=VALID_BODY)

        assert resp.status_code == 502
        data = resp.get_json()
        assert data["request_id"]
        assert "mapbox" not in data["error"].lower()

    def test_cancelled_is_503(self, client):
        orch = _orchestrator(error=AnalysisCancelledError("stop"))
        with patch("app.get_orchestrator", return_value=orch):
            resp = client.post("/api/analyze", json=VALID_BODY)
        assert resp.status_code == 503

    def test_empty_result(self, client):
        with patch("app.get_orchestrator", return_value=_orchestrator(AnalyzeResult([], ISOCHRONE))):
            resp = client.post("/api/analyze", json=VALID_BODY)
        assert resp.status_code == 200
        assert resp.get_json()["neighborhoods"] == []


# =========================================================================
# GET /api/neighborhoods/<id>/pois
# =========================================================================

class TestNeighborhoodPOIs:
    def test_unknown_neighborhood_is_404(self, client):
        with patch("app.get_orchestrator", return_value=_orchestrator()):
            resp = client.get("/api/neighborhoods/ghost/pois")
        assert resp.status_code == 404
        assert "ghost" in resp.get_json()["error"]

    def test_unknown_category_is_400(self, client, brickell):
        with patch("app.get_orchestrator", return_value=_orchestrator()):
            resp = client.get("/api/neighborhoods/osm_node_1/pois?categories=cafe,casino")
        assert resp.status_code == 400

    def test_returns_cached_pois_filtered(self, client, brickell):
        POIStore().create_many([
            POI("osm_node_1", POICategory.CAFE, "Beans", 25.7601, -80.1901),
            POI("osm_node_1", POICategory.BAR, "Tavern", 25.7602, -80.1902),
        ])
        search = MagicMock()
        with patch("app.get_orchestrator", return_value=_orchestrator(search=search)):
            resp = client.get("/api/neighborhoods/osm_node_1/pois?categories=cafe")

        assert resp.status_code == 200
        assert [p["name"] for p in resp.get_json()["pois"]] == ["Beans"]
        search.search_pois.assert_not_called()

    def test_provider_failure_is_503(self, client, brickell):
        search = MagicMock()
        search.search_pois.side_effect = OverpassUnavailableError("all mirrors down")
        with patch("app.get_orchestrator", return_value=_orchestrator(search=search)):
            resp = client.get("/api/neighborhoods/osm_node_1/pois")
        assert resp.status_code == 503


# =========================================================================
# GET /api/analysis/latest
# =========================================================================

class TestLatestAnalysis:
    def test_caller_required(self, client):
        with patch("app.get_orchestrator", return_value=_orchestrator()):
            resp = client.get("/api/analysis/latest")
        assert resp.status_code == 400

    def test_restores_saved_session(self, client, brickell):
        POIStore().create_many([POI("osm_node_1", POICategory.CAFE, "Beans", 25.7601, -80.1901)])
        SessionStore().save(SearchSession("u1", -80.19, 25.76, 15, "walking", ["osm_node_1"]))
        orch = AnalysisOrchestrator(
            isochrone=MagicMock(), neighborhoods=MagicMock(),
            pois=POIResolver(POIStore(), MagicMock()), search=MagicMock(),
            neighborhood_store=NeighborhoodStore(), session_store=SessionStore(),
        )
        with patch("app.get_orchestrator", return_value=orch):
            resp = client.get("/api/analysis/latest?callerId=u1")

        assert resp.status_code == 200
        data = resp.get_json()
        assert data["searchParams"] == {
            "longitude": -80.19, "latitude": 25.76, "timeMinutes": 15, "mode": "walking",
        }
        assert data["analyzedAt"]
        (entry,) = data["neighborhoods"]
        assert entry["neighborhood"]["name"] == "Brickell"
        assert [p["name"] for p in entry["pois"]] == ["Beans"]
        orch.neighborhoods.resolve.assert_not_called()

    def test_unknown_caller_is_empty(self, client):
        orch = _orchestrator()
        orch.latest_analysis.return_value = SavedAnalysis()
        with patch("app.get_orchestrator", return_value=orch):
            resp = client.get("/api/analysis/latest?callerId=nobody")
        assert resp.status_code == 200
        assert resp.get_json() == {"neighborhoods": [], "analyzedAt": None, "searchParams": None}


# =========================================================================
# POST /api/isochrone
# =========================================================================

class TestIsochrone:
    def test_returns_polygon(self, client):
        orch = _orchestrator()
        orch.isochrone.get_isochrone.return_value = ISOCHRONE
        with patch("app.get_orchestrator", return_value=orch):
            resp = client.post("/api/isochrone", json=VALID_BODY)

        assert resp.status_code == 200
        assert resp.get_json() == {"polygon": ISOCHRONE}
        orch.isochrone.get_isochrone.assert_called_once_with(-80.19, 25.76, 15, "driving")

    def test_invalid_request(self, client):
        orch = _orchestrator()
        with patch("app.get_orchestrator", return_value=orch):
            resp = client.post("/api/isochrone", json={**VALID_BODY, "timeMinutes": 61})
        assert resp.status_code == 400
        orch.isochrone.get_isochrone.assert_not_called()

    def test_provider_failure_is_502(self, client):
        orch = _orchestrator()
        orch.isochrone.get_isochrone.side_effect = IsochroneError("mapbox down", status_code=500)
        with patch("app.get_orchestrator", return_value=orch):
            resp = client.post("/api/isochrone", json=VALID_BODY)
        assert resp.status_code == 502


# =========================================================================
# POST /api/neighborhoods/search
# =========================================================================

class TestSearchNeighborhoods:
    def test_cached_neighborhoods_returned(self, client, brickell):
        search = MagicMock()
        orch = _orchestrator()
        orch.neighborhoods = NeighborhoodResolver(NeighborhoodStore(), search)
        with patch("app.get_orchestrator", return_value=orch):
            resp = client.post("/api/neighborhoods/search", json={"polygon": SEARCH_AREA})

        assert resp.status_code == 200
        data = resp.get_json()
        assert data["origin"] == "cache"
        assert [n["name"] for n in data["neighborhoods"]] == ["Brickell"]
        search.search_boundaries.assert_not_called()

    def test_limit_passed_through(self, client):
        orch = _orchestrator()
        orch.neighborhoods.resolve.return_value = NeighborhoodResolution([], "overpass")
        with patch("app.get_orchestrator", return_value=orch):
            resp = client.post(
                "/api/neighborhoods/search", json={"polygon": SEARCH_AREA, "limit": 5},
            )
        assert resp.status_code == 200
        assert orch.neighborhoods.resolve.call_args.kwargs["limit"] == 5

    @pytest.mark.parametrize("body", [
        {},
        {"polygon": {"type": "Point", "coordinates": [0, 0]}},
        {"polygon": SEARCH_AREA, "limit": 0},
        {"polygon": SEARCH_AREA, "limit": "5"},
    ])
    def test_invalid_request(self, client, body):
        orch = _orchestrator()
        with patch("app.get_orchestrator", return_value=orch):
            resp = client.post("/api/neighborhoods/search", json=body)
        assert resp.status_code == 400
        orch.neighborhoods.resolve.assert_not_called()


# =========================================================================
# Health, errors, rate limiting
# =========================================================================

class TestHealthAndErrors:
    def test_healthz_ok(self, client):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        assert resp.get_json() == {"status": "ok", "missing_keys": []}

    def test_healthz_degraded_without_mapbox(self, client, monkeypatch):
        monkeypatch.delenv("MAPBOX_ACCESS_TOKEN", raising=False)
        resp = client.get("/healthz")
        assert resp.status_code == 503
        assert resp.get_json()["missing_keys"] == ["MAPBOX_ACCESS_TOKEN"]

    def test_unknown_route_is_json_404(self, client):
        resp = client.get("/nope")
        assert resp.status_code == 404
        assert resp.get_json() == {"error": "Not found"}

    def test_analyze_rate_limited(self, monkeypatch):
        app_module.limiter.reset()
        monkeypatch.setattr(app_module.limiter, "enabled", True)
        app_module.app.config["TESTING"] = True
        bad = {**VALID_BODY, "mode": "teleport"}
        with app_module.app.test_client() as c:
            statuses = [c.post("/api/analyze", json=bad).status_code for _ in range(11)]
        app_module.limiter.reset()

        assert statuses[:10] == [400] * 10
        assert statuses[10] == 429
