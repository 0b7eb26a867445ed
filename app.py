import os
import logging
import threading
import uuid
from flask import Flask, request, jsonify, g
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.middleware.proxy_fix import ProxyFix
from dotenv import load_dotenv
from rr_trace import TraceContext, set_trace, clear_trace
from analysis import (
    AnalyzeRequest, AnalysisCancelledError, AnalysisOrchestrator,
    InvalidAnalyzeRequest, build_orchestrator,
)
from geometry import validate_polygon
from isochrone import IsochroneError
from models import init_db, NeighborhoodStore
from overpass_http import OverpassError
from poi_cache import NeighborhoodNotFoundError, get_neighborhood_pois
from poi_categories import parse_categories

load_dotenv()

# ---------------------------------------------------------------------------
# Sentry error tracking, gated on SENTRY_DSN; silent when unset (local dev)
# ---------------------------------------------------------------------------
_sentry_dsn = os.environ.get("SENTRY_DSN")
if _sentry_dsn:
    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration
    import requests.exceptions

    def _sentry_before_send(event, hint):
        """Demote expected provider failures to breadcrumbs."""
        exc_info = hint.get("exc_info")
        if exc_info:
            exc_type, exc_value, _ = exc_info
            msg = str(exc_value) if exc_value else ""
            if exc_type is not None and issubclass(exc_type, OverpassError):
                sentry_sdk.add_breadcrumb(category="overpass", message=msg, level="warning")
                return None
            if exc_type is not None and issubclass(exc_type, requests.exceptions.RequestException):
                sentry_sdk.add_breadcrumb(category="http", message=msg, level="warning")
                return None
        return event

    sentry_sdk.init(
        dsn=_sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.0,
        environment=os.environ.get("RENTRADAR_ENVIRONMENT", "production"),
        before_send=_sentry_before_send,
    )

app = Flask(__name__)

# Behind a reverse proxy: rewrite remote_addr so the limiter sees the client.
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Rate limiting. Analysis fans out to Mapbox and Overpass, keep it bounded.
# In-memory storage is per-process.
# ---------------------------------------------------------------------------
RATE_LIMIT_DEFAULT = os.environ.get("RATE_LIMIT_DEFAULT", "60/minute")
RATE_LIMIT_ANALYZE = os.environ.get("RATE_LIMIT_ANALYZE", "10/minute")

limiter = Limiter(
    get_remote_address,
    app=app,
    default_limits=[RATE_LIMIT_DEFAULT],
    storage_uri="memory://",
)
logging.getLogger("flask-limiter").setLevel(logging.WARNING)

if not os.environ.get("MAPBOX_ACCESS_TOKEN"):
    logger.warning(
        "MAPBOX_ACCESS_TOKEN is not set. "
        "Analyses will fail until it is configured. "
        "For local development, add it to .env."
    )


def _generate_request_id():
    return uuid.uuid4().hex[:10]


@app.before_request
def _set_request_context():
    g.request_id = _generate_request_id()


# ---------------------------------------------------------------------------
# Orchestrator is built on first use so importing the app has no side effects
# beyond init_db().
# ---------------------------------------------------------------------------
_orchestrator = None
_orchestrator_lock = threading.Lock()


def get_orchestrator() -> AnalysisOrchestrator:
    global _orchestrator
    with _orchestrator_lock:
        if _orchestrator is None:
            _orchestrator = build_orchestrator()
        return _orchestrator


def _check_service_config():
    """
    Validate required service configuration.
    Returns (is_ok, missing_keys) tuple.
    """
    missing = []
    if not os.environ.get("MAPBOX_ACCESS_TOKEN"):
        missing.append("MAPBOX_ACCESS_TOKEN")
    return (len(missing) == 0, missing)


def _error(message, status):
    return jsonify({"error": message, "request_id": g.get("request_id")}), status


# ---------------------------------------------------------------------------
# API
# ---------------------------------------------------------------------------

@app.route("/api/analyze", methods=["POST"])
@limiter.limit(RATE_LIMIT_ANALYZE)
def analyze():
    try:
        req = AnalyzeRequest.from_dict(request.get_json(silent=True))
    except InvalidAnalyzeRequest as e:
        return _error(str(e), 400)

    trace = TraceContext(trace_id=g.request_id)
    set_trace(trace)
    try:
        result = get_orchestrator().analyze(req)
    except IsochroneError as e:
        logger.warning("[api] analyze %s: isochrone failed: %s", g.request_id, e)
        return _error("Could not compute the reachable area. Please try again.", 502)
    except AnalysisCancelledError:
        return _error("Analysis cancelled", 503)
    finally:
        trace.log_summary()
        clear_trace()

    return jsonify(result.to_dict())


@app.route("/api/neighborhoods/<neighborhood_id>/pois")
def neighborhood_pois(neighborhood_id):
    raw = request.args.get("categories")
    try:
        categories = parse_categories(raw.split(",") if raw else None)
    except ValueError as e:
        return _error(str(e), 400)

    try:
        pois = get_neighborhood_pois(
            neighborhood_id, NeighborhoodStore(), get_orchestrator().pois, categories,
        )
    except NeighborhoodNotFoundError as e:
        return _error(str(e), 404)
    except OverpassError as e:
        logger.warning("[api] POI lookup for %s failed: %s", neighborhood_id, e)
        return _error("POI provider unavailable. Please try again later.", 503)

    return jsonify({"pois": [p.to_dict() for p in pois]})


@app.route("/api/analysis/latest")
def latest_analysis():
    caller_id = request.args.get("callerId", "").strip()
    if not caller_id:
        return _error("callerId is required", 400)
    saved = get_orchestrator().latest_analysis(caller_id)
    return jsonify(saved.to_dict())


@app.route("/api/isochrone", methods=["POST"])
@limiter.limit(RATE_LIMIT_ANALYZE)
def isochrone():
    try:
        req = AnalyzeRequest.from_dict(request.get_json(silent=True))
    except InvalidAnalyzeRequest as e:
        return _error(str(e), 400)

    try:
        polygon = get_orchestrator().isochrone.get_isochrone(
            req.longitude, req.latitude, req.time_minutes, req.mode,
        )
    except IsochroneError as e:
        logger.warning("[api] isochrone %s failed: %s", g.request_id, e)
        return _error("Could not compute the reachable area. Please try again.", 502)

    return jsonify({"polygon": polygon})


@app.route("/api/neighborhoods/search", methods=["POST"])
@limiter.limit(RATE_LIMIT_ANALYZE)
def search_neighborhoods():
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        return _error("Request body must be a JSON object", 400)
    try:
        polygon = validate_polygon(body.get("polygon"))
    except ValueError as e:
        return _error(str(e), 400)
    limit = body.get("limit")
    if limit is not None and (
        not isinstance(limit, int) or isinstance(limit, bool) or limit < 1
    ):
        return _error("limit must be a positive integer", 400)

    try:
        resolution = get_orchestrator().neighborhoods.resolve(polygon, limit=limit)
    except OverpassError as e:
        logger.warning("[api] neighborhood search %s failed: %s", g.request_id, e)
        return _error("Neighborhood provider unavailable. Please try again later.", 503)

    return jsonify({
        "neighborhoods": [n.to_dict() for n in resolution.neighborhoods],
        "origin": resolution.origin,
    })


@app.route("/healthz")
@limiter.exempt
def healthz():
    """Lightweight health-check endpoint for monitoring."""
    config_ok, missing = _check_service_config()
    return jsonify({
        "status": "ok" if config_ok else "degraded",
        "missing_keys": missing,
    }), 200 if config_ok else 503


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

@app.errorhandler(429)
def rate_limit_exceeded(e):
    return jsonify({"error": "Too many requests. Please wait and try again."}), 429


@app.errorhandler(404)
def not_found(e):
    return jsonify({"error": "Not found"}), 404


@app.errorhandler(500)
def internal_error(e):
    return jsonify({"error": "Internal server error"}), 500


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------

# Initialize database on import (safe to call repeatedly)
init_db()

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5001))
    debug = os.environ.get("FLASK_DEBUG", "0") == "1"
    app.run(host="0.0.0.0", port=port, debug=debug)
