"""
Neighborhood photo backfill via Google Street View.

The metadata endpoint is free and tells us whether imagery exists at the
neighborhood center; only then is the static image URL stored as the
neighborhood's photo_url. Backfill is best-effort and runs in fixed
windows of PHOTO_BATCH_SIZE concurrent lookups.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlencode

import requests

from models import Neighborhood, NeighborhoodStore
from pipeline_config import PHOTO_BATCH_SIZE, StreetViewConfig, street_view_config_from_env
from rr_trace import BestEffortResult, get_trace, set_trace

logger = logging.getLogger(__name__)

_STREET_VIEW_BASE = "https://maps.googleapis.com/maps/api/streetview"
_METADATA_URL = _STREET_VIEW_BASE + "/metadata"


class PhotoError(Exception):
    pass


class StreetViewPhotoClient:
    def __init__(self, config: Optional[StreetViewConfig] = None):
        self.config = config or street_view_config_from_env()

    @property
    def enabled(self) -> bool:
        return bool(self.config.api_key)

    def image_url(self, lat: float, lng: float) -> str:
        params = {
            "size": self.config.size,
            "location": f"{lat},{lng}",
            "fov": str(self.config.fov),
            "pitch": str(self.config.pitch),
            "key": self.config.api_key,
        }
        return f"{_STREET_VIEW_BASE}?{urlencode(params)}"

    def find_photo(self, lat: float, lng: float) -> Optional[str]:
        """Static image URL when Street View has imagery at the point, else None.

        Raises PhotoError on transport or HTTP failures.
        """
        t0 = time.time()
        trace = get_trace()
        try:
            resp = requests.get(
                _METADATA_URL,
                params={"location": f"{lat},{lng}", "key": self.config.api_key},
                timeout=self.config.timeout,
            )
        except requests.RequestException as e:
            if trace:
                trace.record_api_call(
                    service="street_view", endpoint="metadata",
                    elapsed_ms=int((time.time() - t0) * 1000),
                    status_code=0, provider_status="network_error",
                )
            raise PhotoError(f"Street View metadata request failed: {e}") from e

        try:
            status = resp.json().get("status", "") if resp.ok else ""
        except ValueError:
            status = "INVALID_JSON"
        if trace:
            trace.record_api_call(
                service="street_view", endpoint="metadata",
                elapsed_ms=int((time.time() - t0) * 1000),
                status_code=resp.status_code, provider_status=status,
            )
        if not resp.ok:
            raise PhotoError(f"Street View metadata returned HTTP {resp.status_code}")
        if status != "OK":
            return None
        return self.image_url(lat, lng)


def backfill_photos(
    neighborhoods: Sequence[Neighborhood],
    client: StreetViewPhotoClient,
    store: NeighborhoodStore,
    batch_size: int = PHOTO_BATCH_SIZE,
) -> Tuple[Dict[str, str], List[BestEffortResult]]:
    """Fill photo_url for neighborhoods that lack one.

    Batches run one after another; each batch is fully resolved before the
    next starts. Returns ({neighborhood_id: photo_url}, per-item outcomes).
    """
    pending = [n for n in neighborhoods if not n.photo_url]
    if not pending or not client.enabled:
        if pending:
            logger.info("[photos] GOOGLE_STREET_VIEW_KEY not set, skipping %d", len(pending))
        return {}, []

    parent_trace = get_trace()

    def _one(n: Neighborhood) -> Optional[str]:
        set_trace(parent_trace)
        url = client.find_photo(n.center_lat, n.center_lng)
        if url:
            store.update_photo(n.id, url)
        return url

    urls: Dict[str, str] = {}
    results: List[BestEffortResult] = []
    for start in range(0, len(pending), batch_size):
        batch = pending[start:start + batch_size]
        with ThreadPoolExecutor(max_workers=batch_size) as pool:
            futures = [(n, pool.submit(_one, n)) for n in batch]
            for n, future in futures:
                task = f"photo:{n.id}"
                try:
                    url = future.result()
                except Exception as e:
                    results.append(BestEffortResult(task, False, f"{type(e).__name__}: {e}"))
                    continue
                if url:
                    urls[n.id] = url
                results.append(BestEffortResult(task, True))
    logger.info("[photos] %d/%d neighborhoods got a photo", len(urls), len(pending))
    return urls, results
