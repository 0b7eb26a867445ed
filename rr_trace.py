"""
Request-scoped tracing for RentRadar analysis runs.

Provides a thread-local TraceContext that records:
  - Per-stage timing (isochrone, neighborhoods, poi_fetch, ...)
  - Per-outbound-call records (service, mirror host, elapsed_ms, status)
  - End-of-request summary (total_elapsed, total_api_calls, outcome)

Usage:
    from rr_trace import TraceContext, get_trace, set_trace, clear_trace

    ctx = TraceContext(trace_id=request_id)
    set_trace(ctx)
    ...
    ctx.log_summary()
    clear_trace()

Worker threads do not inherit thread-locals, so fan-out code must call
set_trace(parent) inside each submitted task.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class APICallRecord:
    """One outbound HTTP call (Overpass mirror, Mapbox, Street View)."""
    service: str          # "overpass" | "mapbox" | "street_view"
    endpoint: str         # caller label, e.g. "search_boundaries"
    elapsed_ms: int
    status_code: int
    provider_status: str = ""   # "ok", "rate_limit", "http_error", ...
    host: str = ""              # mirror host for Overpass
    stage: str = ""


@dataclass
class StageRecord:
    stage_name: str
    elapsed_ms: int = 0
    api_calls_made: int = 0
    skipped: bool = False
    error_class: str = ""
    error_message: str = ""


@dataclass
class TraceContext:
    """Accumulates timing data for a single analysis request."""
    trace_id: str
    request_start: float = field(default_factory=time.time)
    stages: List[StageRecord] = field(default_factory=list)
    api_calls: List[APICallRecord] = field(default_factory=list)
    _current_stage: str = ""
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def start_stage(self, name: str):
        self._current_stage = name

    def end_stage(self):
        self._current_stage = ""

    def record_stage(
        self,
        stage_name: str,
        start_ts: float,
        end_ts: float,
        skipped: bool = False,
        error_class: str = "",
        error_message: str = "",
    ):
        with self._lock:
            api_in_stage = sum(1 for c in self.api_calls if c.stage == stage_name)
            rec = StageRecord(
                stage_name=stage_name,
                elapsed_ms=int((end_ts - start_ts) * 1000),
                api_calls_made=api_in_stage,
                skipped=skipped,
                error_class=error_class,
                error_message=error_message,
            )
            self.stages.append(rec)

        status = "SKIP" if skipped else ("ERR" if error_class else "OK")
        err_info = f" err={error_class}: {error_message}" if error_class else ""
        logger.info(
            "  [stage] trace=%s %s %s %dms api_calls=%d%s",
            self.trace_id, stage_name, status, rec.elapsed_ms, api_in_stage, err_info,
        )

    def record_api_call(
        self,
        service: str,
        endpoint: str,
        elapsed_ms: int,
        status_code: int,
        provider_status: str = "",
        host: str = "",
    ):
        rec = APICallRecord(
            service=service,
            endpoint=endpoint,
            elapsed_ms=elapsed_ms,
            status_code=status_code,
            provider_status=provider_status,
            host=host,
            stage=self._current_stage,
        )
        with self._lock:
            self.api_calls.append(rec)
        logger.info(
            "  [api] trace=%s stage=%s svc=%s ep=%s host=%s ms=%d http=%d provider=%s",
            self.trace_id, self._current_stage or "-", service, endpoint,
            host or "-", elapsed_ms, status_code, provider_status,
        )

    def calls_for(self, service: str) -> List[APICallRecord]:
        return [c for c in self.api_calls if c.service == service]

    def summary_dict(self) -> Dict[str, Any]:
        total_elapsed = int((time.time() - self.request_start) * 1000)
        completed = [s for s in self.stages if not s.skipped and not s.error_class]
        skipped = [s for s in self.stages if s.skipped]
        errored = [s for s in self.stages if s.error_class and not s.skipped]

        if errored and not completed:
            outcome = "error"
        elif not completed and not errored:
            outcome = "empty"
        elif errored:
            outcome = "partial"
        else:
            outcome = "success"

        return {
            "trace_id": self.trace_id,
            "total_elapsed_ms": total_elapsed,
            "total_api_calls": len(self.api_calls),
            "stages_completed": len(completed),
            "stages_skipped": len(skipped),
            "stages_errored": len(errored),
            "final_outcome": outcome,
            "stages": [
                {
                    "stage": s.stage_name,
                    "elapsed_ms": s.elapsed_ms,
                    "api_calls": s.api_calls_made,
                    "skipped": s.skipped,
                    "error": f"{s.error_class}: {s.error_message}" if s.error_class else None,
                }
                for s in self.stages
            ],
        }

    def log_summary(self):
        """Emit a single structured summary log line."""
        s = self.summary_dict()
        logger.info(
            "[trace-summary] trace=%s total_ms=%d api_calls=%d "
            "completed=%d skipped=%d errored=%d outcome=%s",
            s["trace_id"], s["total_elapsed_ms"], s["total_api_calls"],
            s["stages_completed"], s["stages_skipped"], s["stages_errored"],
            s["final_outcome"],
        )


# =============================================================================
# Thread-local storage
# =============================================================================

_trace_local = threading.local()


def get_trace() -> Optional[TraceContext]:
    """Get the current request's trace context, or None."""
    return getattr(_trace_local, "ctx", None)


def set_trace(ctx: Optional[TraceContext]):
    _trace_local.ctx = ctx


def clear_trace():
    _trace_local.ctx = None


# =============================================================================
# Best-effort task outcomes
# =============================================================================

@dataclass
class BestEffortResult:
    """Outcome of a side task whose failure must never reach the caller."""
    task: str
    ok: bool
    error: str = ""


def log_best_effort(results: List[BestEffortResult]):
    failed = [r for r in results if not r.ok]
    for r in failed:
        logger.warning("[best-effort] %s failed: %s", r.task, r.error)
    if results:
        logger.info("[best-effort] %d/%d ok", len(results) - len(failed), len(results))
