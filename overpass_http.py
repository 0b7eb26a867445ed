"""
Coordinated Overpass API HTTP layer.

All Overpass HTTP requests in the application go through this module.
It provides:
- Mirror rotation: mirrors are tried in configured order; the first success
  wins
- Error classification: a 4xx other than 429 aborts immediately; 429, 5xx,
  timeouts, connection errors and server-side body errors move on to the next mirror
- Linear backoff between mirrors: attempt i waits i * retry_backoff_seconds
- Process-local rate limiting: minimum spacing between requests
- Thread-safe request execution (no shared requests.Session)
- rr_trace integration, one record per attempt

Response caching is NOT done here. Neighborhoods and POIs are cached as
entities by the resolvers, with their own TTLs.
"""

import logging
import threading
import time
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import requests

from pipeline_config import OverpassConfig, overpass_config_from_env
from rr_trace import get_trace

logger = logging.getLogger(__name__)


class OverpassError(Exception):
    """Base class for Overpass failures."""


class OverpassQueryError(OverpassError):
    """A single mirror attempt failed.

    ``retryable`` is False only for client errors (4xx other than 429),
    where trying another mirror would fail the same way.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, retryable: bool = True):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class OverpassRateLimitError(OverpassQueryError):
    """Raised when a mirror returns 429 or a rate-limit remark in the body."""

    def __init__(self, message: str):
        super().__init__(message, status_code=429, retryable=True)


class OverpassUnavailableError(OverpassError):
    """Raised when every configured mirror failed with a retryable error."""

    def __init__(self, message: str, last_error: Optional[Exception] = None):
        super().__init__(message)
        self.last_error = last_error


class OverpassCancelledError(OverpassError):
    """Raised when the caller's cancel event is set before or during an attempt's backoff."""


_BODY_ERROR_INDICATORS = ("runtime error", "timed out", "out of memory")


class OverpassHTTPClient:
    def __init__(self, config: Optional[OverpassConfig] = None):
        self.config = config or overpass_config_from_env()
        self._lock = threading.Lock()
        self._last_request_time = 0.0

    def query(
        self,
        overpass_ql: str,
        caller: str = "unknown",
        cancel_event: Optional[threading.Event] = None,
    ) -> Dict[str, Any]:
        """
        Execute an Overpass QL query against the mirror list.

        Args:
            overpass_ql: The Overpass QL query string.
            caller: Identifier for trace attribution (e.g. "search_boundaries").
            cancel_event: Optional event; when set, no further attempt is made
                and any pending backoff wait ends early.

        Returns:
            Parsed JSON response dict from the first mirror that succeeds.

        Raises:
            OverpassQueryError: A mirror rejected the query with a non-retryable
                client error. No other mirror is tried.
            OverpassUnavailableError: Every mirror failed with a retryable error.
            OverpassCancelledError: cancel_event was set.
        """
        mirrors = self.config.mirrors
        if not mirrors:
            raise OverpassUnavailableError("No Overpass mirrors configured")

        last_error: Optional[OverpassQueryError] = None
        for attempt, mirror in enumerate(mirrors):
            if attempt > 0:
                delay = attempt * self.config.retry_backoff_seconds
                logger.info(
                    "[overpass] attempt %d/%d: waiting %.1fs before trying %s [caller=%s]",
                    attempt + 1, len(mirrors), delay, _host(mirror), caller,
                )
                if cancel_event is not None:
                    cancel_event.wait(delay)
                else:
                    time.sleep(delay)
            if cancel_event is not None and cancel_event.is_set():
                raise OverpassCancelledError(f"Overpass query cancelled [caller={caller}]")

            try:
                return self._do_request(mirror, overpass_ql, caller)
            except OverpassQueryError as e:
                if not e.retryable:
                    logger.warning(
                        "[overpass] %s rejected query, not retrying: %s", _host(mirror), e,
                    )
                    raise
                last_error = e
                logger.warning("[overpass] %s failed: %s", _host(mirror), e)

        raise OverpassUnavailableError(
            f"Overpass service unavailable after {len(mirrors)} mirrors: {last_error}",
            last_error=last_error,
        )

    def _throttle(self):
        """Enforce minimum spacing between requests from this process."""
        spacing = self.config.min_spacing_seconds
        if spacing <= 0:
            return
        with self._lock:
            elapsed_since_last = time.monotonic() - self._last_request_time
            if elapsed_since_last < spacing:
                time.sleep(spacing - elapsed_since_last)
            self._last_request_time = time.monotonic()

    def _do_request(self, mirror: str, overpass_ql: str, caller: str) -> Dict[str, Any]:
        """Make a single HTTP request to one mirror."""
        self._throttle()

        host = _host(mirror)
        trace = get_trace()
        start = time.monotonic()

        def _record(status_code: int, provider_status: str):
            if trace:
                trace.record_api_call(
                    service="overpass",
                    endpoint=caller,
                    elapsed_ms=int((time.monotonic() - start) * 1000),
                    status_code=status_code,
                    provider_status=provider_status,
                    host=host,
                )

        # Fresh session per request (thread-safe, no shared state)
        try:
            session = requests.Session()
            session.trust_env = False
            resp = session.post(
                mirror,
                data={"data": overpass_ql},
                timeout=self.config.http_timeout,
            )
        except requests.exceptions.Timeout:
            _record(0, "timeout")
            raise OverpassQueryError(
                f"Overpass request timeout after {self.config.http_timeout}s [host={host}]"
            )
        except requests.exceptions.RequestException as e:
            _record(0, "network_error")
            raise OverpassQueryError(f"Overpass request failed: {e} [host={host}]") from e

        status_code = resp.status_code
        if status_code == 429:
            _record(429, "rate_limit")
            raise OverpassRateLimitError(f"Overpass 429 Too Many Requests [host={host}]")
        if 400 <= status_code < 500:
            _record(status_code, "client_error")
            raise OverpassQueryError(
                f"Overpass HTTP {status_code} [host={host}]",
                status_code=status_code,
                retryable=False,
            )
        if status_code >= 500:
            _record(status_code, "server_error")
            raise OverpassQueryError(
                f"Overpass HTTP {status_code} [host={host}]", status_code=status_code,
            )

        try:
            data = resp.json()
        except ValueError:
            _record(status_code, "parse_error")
            raise OverpassQueryError(
                f"Overpass returned non-JSON response (HTTP {status_code}) [host={host}]",
                status_code=status_code,
            )

        # Overpass reports some failures in osm3s.remark or a top-level remark
        remark = ""
        if isinstance(data, dict):
            osm3s = data.get("osm3s", {}) or {}
            remark = str(osm3s.get("remark") or data.get("remark") or "")
        remark_lower = remark.lower()
        if "too many requests" in remark_lower:
            _record(status_code, "rate_limit")
            raise OverpassRateLimitError(f"Overpass rate limit in response body [host={host}]")
        if any(indicator in remark_lower for indicator in _BODY_ERROR_INDICATORS):
            _record(status_code, "body_error")
            raise OverpassQueryError(
                f"Overpass server error in response body: {remark[:100]} [host={host}]",
                status_code=status_code,
            )
        if not isinstance(data, dict):
            _record(status_code, "parse_error")
            raise OverpassQueryError(f"Overpass returned unexpected JSON shape [host={host}]")

        _record(status_code, "ok")
        return data


def _host(url: str) -> str:
    return urlparse(url).netloc or url


_client: Optional[OverpassHTTPClient] = None
_client_lock = threading.Lock()


def default_client() -> OverpassHTTPClient:
    """Process-wide client built from environment config on first use."""
    global _client
    with _client_lock:
        if _client is None:
            _client = OverpassHTTPClient()
        return _client
