"""
Analysis orchestration: isochrone -> neighborhoods -> POIs -> response.

Stages run in a fixed order:

    isochrone -> neighborhoods -> [none? done] -> poi_fetch -> spatial_assign
        -> cache_write -> photo_backfill -> session_persist

Only the isochrone stage is fatal. Boundary and POI provider failures
degrade to fallback seeds and cached POIs; photo backfill and session
persistence are best-effort and only ever logged.
"""

import logging
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

from geometry import Polygon
from isochrone import MapboxIsochroneClient
from models import (
    POI,
    Neighborhood,
    NeighborhoodStore,
    POIStore,
    SearchSession,
    SessionStore,
)
from neighborhood_cache import NeighborhoodResolver
from osm_search import OsmSearchClient, POIFeature
from overpass_http import OverpassCancelledError
from photos import StreetViewPhotoClient, backfill_photos
from pipeline_config import (
    PHOTO_BATCH_SIZE,
    cache_config_from_env,
    free_tier_limit_from_env,
)
from poi_cache import POIResolver
from poi_categories import ALL_CATEGORIES
from rr_trace import (
    BestEffortResult,
    TraceContext,
    clear_trace,
    get_trace,
    log_best_effort,
    set_trace,
)
from spatial_assign import assign_pois, centroids_for

logger = logging.getLogger(__name__)

VALID_MODES = ("driving", "walking", "cycling")
MIN_TIME_MINUTES = 1
MAX_TIME_MINUTES = 60

# Cap on concurrent per-neighborhood cache reads/writes.
MAX_CACHE_WORKERS = 8

T = TypeVar("T")


# =============================================================================
# Request / result types
# =============================================================================

class InvalidAnalyzeRequest(ValueError):
    pass


class AnalysisCancelledError(Exception):
    pass


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass
class AnalyzeRequest:
    longitude: float
    latitude: float
    time_minutes: int
    mode: str
    caller_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalyzeRequest":
        """Build from a JSON body (camelCase keys). Raises InvalidAnalyzeRequest."""
        if not isinstance(data, dict):
            raise InvalidAnalyzeRequest("Request body must be a JSON object")
        time_minutes = data.get("timeMinutes", data.get("time_minutes"))
        caller_id = data.get("callerId", data.get("caller_id"))
        req = cls(
            longitude=data.get("longitude"),
            latitude=data.get("latitude"),
            time_minutes=time_minutes,
            mode=data.get("mode"),
            caller_id=str(caller_id) if caller_id else None,
        )
        req.validate()
        return req

    def validate(self):
        if not _is_number(self.longitude) or not -180 <= self.longitude <= 180:
            raise InvalidAnalyzeRequest("longitude must be a number between -180 and 180")
        if not _is_number(self.latitude) or not -90 <= self.latitude <= 90:
            raise InvalidAnalyzeRequest("latitude must be a number between -90 and 90")
        if (
            not _is_number(self.time_minutes)
            or int(self.time_minutes) != self.time_minutes
            or not MIN_TIME_MINUTES <= self.time_minutes <= MAX_TIME_MINUTES
        ):
            raise InvalidAnalyzeRequest(
                f"timeMinutes must be an integer between {MIN_TIME_MINUTES} "
                f"and {MAX_TIME_MINUTES}"
            )
        if self.mode not in VALID_MODES:
            raise InvalidAnalyzeRequest(f"mode must be one of {', '.join(VALID_MODES)}")
        self.time_minutes = int(self.time_minutes)


@dataclass
class NeighborhoodResult:
    neighborhood: Neighborhood
    pois: List[POI] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "neighborhood": self.neighborhood.to_dict(),
            "pois": [p.to_dict() for p in self.pois],
        }


@dataclass
class AnalyzeResult:
    neighborhoods: List[NeighborhoodResult]
    isochrone: Polygon

    def to_dict(self) -> Dict[str, Any]:
        return {
            "neighborhoods": [r.to_dict() for r in self.neighborhoods],
            "isochrone": self.isochrone,
        }


@dataclass
class SavedAnalysis:
    """A caller's most recent analysis, restored from the session store."""
    neighborhoods: List[NeighborhoodResult] = field(default_factory=list)
    analyzed_at: Optional[datetime] = None
    search_params: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "neighborhoods": [r.to_dict() for r in self.neighborhoods],
            "analyzedAt": self.analyzed_at.isoformat() if self.analyzed_at else None,
            "searchParams": self.search_params,
        }


def dedupe_key(n: Neighborhood) -> str:
    """Identity of a neighborhood across sessions: name plus 4dp center."""
    return f"{n.name}|{n.center_lat:.4f}|{n.center_lng:.4f}"


# =============================================================================
# Stage helpers
# =============================================================================

def _timed_stage(stage_name: str, fn: Callable[..., T], *args, **kwargs) -> T:
    """Run *fn* with timing.  Logs duration and re-raises on failure."""
    trace = get_trace()
    if trace:
        trace.start_stage(stage_name)
    t0 = time.time()
    try:
        result = fn(*args, **kwargs)
        t1 = time.time()
        if trace:
            trace.record_stage(stage_name, t0, t1)
        else:
            logger.info("  [stage] %s OK (%.1fs)", stage_name, t1 - t0)
        return result
    except Exception as exc:
        t1 = time.time()
        if trace:
            trace.record_stage(
                stage_name, t0, t1,
                error_class=type(exc).__name__,
                error_message=str(exc)[:200],
            )
        else:
            logger.warning("  [stage] %s FAILED (%.1fs)", stage_name, t1 - t0, exc_info=True)
        raise
    finally:
        if trace:
            trace.end_stage()


def _skip_stage(stage_name: str):
    trace = get_trace()
    if trace:
        now = time.time()
        trace.record_stage(stage_name, now, now, skipped=True)


def _fan_out(fn: Callable[[Any], T], items: Sequence[Any]) -> List[T]:
    """Run fn over items concurrently; results come back in input order."""
    if not items:
        return []
    parent_trace = get_trace()

    def _run(item):
        set_trace(parent_trace)
        return fn(item)

    with ThreadPoolExecutor(max_workers=min(MAX_CACHE_WORKERS, len(items))) as pool:
        return list(pool.map(_run, items))


def _check_cancel(cancel_event: Optional[threading.Event], where: str):
    if cancel_event is not None and cancel_event.is_set():
        raise AnalysisCancelledError(f"Analysis cancelled before {where}")


# =============================================================================
# Orchestrator
# =============================================================================

class AnalysisOrchestrator:
    def __init__(
        self,
        isochrone: MapboxIsochroneClient,
        neighborhoods: NeighborhoodResolver,
        pois: POIResolver,
        search: OsmSearchClient,
        neighborhood_store: NeighborhoodStore,
        session_store: SessionStore,
        photos: Optional[StreetViewPhotoClient] = None,
        free_tier_limit: Optional[int] = 10,
        session_executor: Optional[ThreadPoolExecutor] = None,
        photo_batch_size: int = PHOTO_BATCH_SIZE,
    ):
        self.isochrone = isochrone
        self.neighborhoods = neighborhoods
        self.pois = pois
        self.search = search
        self.neighborhood_store = neighborhood_store
        self.session_store = session_store
        self.photos = photos
        self.free_tier_limit = free_tier_limit
        self.session_executor = session_executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="session-save",
        )
        self.photo_batch_size = photo_batch_size

    def analyze(
        self,
        request: AnalyzeRequest,
        cancel_event: Optional[threading.Event] = None,
    ) -> AnalyzeResult:
        request.validate()
        trace = get_trace()
        own_trace = trace is None
        if own_trace:
            trace = TraceContext(trace_id=uuid.uuid4().hex[:12])
            set_trace(trace)
        try:
            return self._analyze(request, cancel_event)
        except OverpassCancelledError as e:
            raise AnalysisCancelledError(str(e)) from e
        finally:
            if own_trace:
                trace.log_summary()
                clear_trace()

    def _analyze(
        self,
        request: AnalyzeRequest,
        cancel_event: Optional[threading.Event],
    ) -> AnalyzeResult:
        limit = None if request.caller_id else self.free_tier_limit
        logger.info(
            "[analysis] %dmin %s from (%.4f, %.4f) caller=%s limit=%s",
            request.time_minutes, request.mode, request.longitude, request.latitude,
            request.caller_id or "-", limit,
        )

        polygon = _timed_stage(
            "isochrone", self.isochrone.get_isochrone,
            request.longitude, request.latitude, request.time_minutes, request.mode,
        )
        _check_cancel(cancel_event, "neighborhoods")

        resolution = _timed_stage(
            "neighborhoods", self.neighborhoods.resolve,
            polygon, limit=limit, cancel_event=cancel_event,
        )
        if not resolution.neighborhoods:
            logger.warning("[analysis] no neighborhoods found, returning empty result")
            return AnalyzeResult(neighborhoods=[], isochrone=polygon)
        logger.info(
            "[analysis] %d neighborhoods (%s)",
            len(resolution.neighborhoods), resolution.origin,
        )

        previous = self._load_previous(request.caller_id)
        seen = {dedupe_key(r.neighborhood) for r in previous}
        seen_ids = {r.neighborhood.id for r in previous}
        new_neighborhoods = []
        for n in resolution.neighborhoods:
            key = dedupe_key(n)
            if key in seen or n.id in seen_ids:
                logger.info("[analysis] skip duplicate from previous session: %s", n.name)
                continue
            seen.add(key)
            seen_ids.add(n.id)
            new_neighborhoods.append(n)
        logger.info(
            "[analysis] %d from previous session, %d new",
            len(previous), len(new_neighborhoods),
        )

        new_results = []
        if new_neighborhoods:
            _check_cancel(cancel_event, "poi_fetch")
            new_results = self._populate_pois(polygon, new_neighborhoods, cancel_event)
        results = previous + new_results

        self._backfill_photos(results)
        self._persist_session(request, results)

        logger.info(
            "[analysis] done: %d neighborhoods, %d POIs",
            len(results), sum(len(r.pois) for r in results),
        )
        return AnalyzeResult(neighborhoods=results, isochrone=polygon)

    # ----- previous session -------------------------------------------------

    def latest_analysis(self, caller_id: str) -> SavedAnalysis:
        """Restore the caller's latest saved session with its cached POIs.

        Makes no provider calls. Neighborhoods keep their saved order; ones
        deleted since the session was saved are skipped. Store errors
        propagate.
        """
        session = self.session_store.find_latest_by_caller(caller_id)
        if session is None or not session.neighborhood_ids:
            logger.info("[analysis] no saved session for %s", caller_id)
            return SavedAnalysis()

        neighborhoods = self.neighborhood_store.find_by_ids(session.neighborhood_ids)
        pois = _fan_out(lambda n: self.pois.cached(n.id), neighborhoods)
        logger.info(
            "[analysis] restoring %d of %d neighborhoods for %s",
            len(neighborhoods), len(session.neighborhood_ids), caller_id,
        )
        return SavedAnalysis(
            neighborhoods=[NeighborhoodResult(n, p) for n, p in zip(neighborhoods, pois)],
            analyzed_at=session.created_at,
            search_params={
                "longitude": session.longitude,
                "latitude": session.latitude,
                "timeMinutes": session.time_minutes,
                "mode": session.mode,
            },
        )

    def _load_previous(self, caller_id: Optional[str]) -> List[NeighborhoodResult]:
        if not caller_id:
            return []
        try:
            session = self.session_store.find_latest_by_caller(caller_id)
            if session is None:
                return []
            neighborhoods = self.neighborhood_store.find_by_ids(session.neighborhood_ids)
            pois = _fan_out(lambda n: self.pois.cached(n.id), neighborhoods)
        except Exception as e:
            logger.warning("[analysis] could not load previous session for %s: %s", caller_id, e)
            return []
        results = [NeighborhoodResult(n, p) for n, p in zip(neighborhoods, pois)]
        logger.info(
            "[analysis] loaded %d neighborhoods from previous session with %d POIs",
            len(results), sum(len(r.pois) for r in results),
        )
        return results

    # ----- POIs -------------------------------------------------------------

    def _populate_pois(
        self,
        polygon: Polygon,
        neighborhoods: List[Neighborhood],
        cancel_event: Optional[threading.Event],
    ) -> List[NeighborhoodResult]:
        served = dict(zip(
            (n.id for n in neighborhoods),
            _fan_out(self._safe_servable, neighborhoods),
        ))

        features: List[POIFeature] = []
        if all(served[n.id] is not None for n in neighborhoods):
            logger.info("[analysis] all %d neighborhoods have fresh POIs", len(neighborhoods))
            _skip_stage("poi_fetch")
            _skip_stage("spatial_assign")
            return [NeighborhoodResult(n, served[n.id]) for n in neighborhoods]

        fetched = False
        try:
            features = _timed_stage(
                "poi_fetch", self.search.search_pois_for_area,
                polygon, ALL_CATEGORIES, cancel_event=cancel_event,
            )
            fetched = True
            logger.info("[analysis] Overpass returned %d POIs in isochrone", len(features))
        except OverpassCancelledError:
            raise
        except Exception as e:
            logger.warning(
                "[analysis] POI fetch failed (%s: %s), continuing with no POIs",
                type(e).__name__, e,
            )

        assigned = _timed_stage(
            "spatial_assign", assign_pois, features, centroids_for(neighborhoods),
        )

        def _write(n: Neighborhood) -> NeighborhoodResult:
            if served[n.id] is not None:
                return NeighborhoodResult(n, served[n.id])
            assigned_here = assigned.get(n.id) or []
            if fetched:
                try:
                    if assigned_here:
                        return NeighborhoodResult(n, self.pois.replace(n.id, assigned_here))
                    # Nothing here this time; keep what is stored, but stop refetching
                    self.pois.mark_checked(n.id)
                except Exception as e:
                    logger.warning("[analysis] POI cache write failed for %s: %s", n.id, e)
            return NeighborhoodResult(n, self._safe_read(self.pois.cached, n.id))

        return _timed_stage("cache_write", _fan_out, _write, neighborhoods)

    def _safe_servable(self, neighborhood: Neighborhood) -> Optional[List[POI]]:
        try:
            return self.pois.servable(neighborhood)
        except Exception as e:
            logger.warning("[analysis] POI cache read failed for %s: %s", neighborhood.id, e)
            return None

    @staticmethod
    def _safe_read(read: Callable[[str], List[POI]], neighborhood_id: str) -> List[POI]:
        try:
            return read(neighborhood_id)
        except Exception as e:
            logger.warning("[analysis] POI cache read failed for %s: %s", neighborhood_id, e)
            return []

    # ----- best-effort side tasks ------------------------------------------

    def _backfill_photos(self, results: List[NeighborhoodResult]):
        if self.photos is None:
            _skip_stage("photo_backfill")
            return
        try:
            urls, outcomes = _timed_stage(
                "photo_backfill", backfill_photos,
                [r.neighborhood for r in results], self.photos,
                self.neighborhood_store, self.photo_batch_size,
            )
        except Exception as e:
            log_best_effort([BestEffortResult("photo_backfill", False, str(e))])
            return
        for r in results:
            url = urls.get(r.neighborhood.id)
            if url:
                r.neighborhood.photo_url = url
        log_best_effort(outcomes)

    def _persist_session(
        self,
        request: AnalyzeRequest,
        results: List[NeighborhoodResult],
    ) -> Optional[Future]:
        if not request.caller_id:
            _skip_stage("session_persist")
            return None
        session = SearchSession(
            caller_id=request.caller_id,
            longitude=request.longitude,
            latitude=request.latitude,
            time_minutes=request.time_minutes,
            mode=request.mode,
            neighborhood_ids=[r.neighborhood.id for r in results],
        )
        task = f"session_save:{session.id}"

        def _done(future: Future):
            exc = future.exception()
            log_best_effort([
                BestEffortResult(task, exc is None, f"{type(exc).__name__}: {exc}" if exc else "")
            ])

        try:
            future = self.session_executor.submit(self.session_store.save, session)
        except RuntimeError as e:
            log_best_effort([BestEffortResult(task, False, str(e))])
            return None
        future.add_done_callback(_done)
        return future


# =============================================================================
# Wiring
# =============================================================================

def build_orchestrator() -> AnalysisOrchestrator:
    """Orchestrator wired to SQLite stores and env-configured providers."""
    cache = cache_config_from_env()
    search = OsmSearchClient()
    neighborhood_store = NeighborhoodStore()
    return AnalysisOrchestrator(
        isochrone=MapboxIsochroneClient(),
        neighborhoods=NeighborhoodResolver(
            neighborhood_store, search, ttl_days=cache.neighborhood_ttl_days,
        ),
        pois=POIResolver(POIStore(), search, ttl_hours=cache.poi_ttl_hours),
        search=search,
        neighborhood_store=neighborhood_store,
        session_store=SessionStore(),
        photos=StreetViewPhotoClient(),
        free_tier_limit=free_tier_limit_from_env(),
    )
