"""
SQLite persistence for RentRadar neighborhoods, POIs, and search sessions.

No ORM, just raw sqlite3, one connection per operation (WAL mode).
Cache freshness is never stored: rows carry cached_at and callers decide
at read time whether a row is still fresh.
"""

import json
import logging
import os
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from geometry import BBox, Polygon, bounding_box, centroid
from poi_categories import POICategory

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "rentradar.db"


def _db_path() -> str:
    """Resolved per connection so tests can point at a temp file."""
    return os.environ.get("RENTRADAR_DB_PATH", DEFAULT_DB_PATH)


def _get_db():
    """Get a sqlite3 connection with WAL mode for concurrent reads."""
    conn = sqlite3.connect(_db_path(), timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_db():
    """Create tables if they don't exist. Safe to call on every startup."""
    conn = _get_db()
    try:
        _create_schema(conn)
        conn.commit()
    finally:
        conn.close()


def _create_schema(conn):
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS neighborhoods (
            id          TEXT PRIMARY KEY,
            name        TEXT NOT NULL,
            boundary    TEXT NOT NULL,
            center_lat  REAL NOT NULL,
            center_lng  REAL NOT NULL,
            min_lng     REAL NOT NULL,
            min_lat     REAL NOT NULL,
            max_lng     REAL NOT NULL,
            max_lat     REAL NOT NULL,
            source      TEXT NOT NULL,
            photo_url   TEXT,
            pois_cached_at TEXT,
            cached_at   TEXT NOT NULL,
            created_at  TEXT NOT NULL,
            updated_at  TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_neighborhoods_bbox
            ON neighborhoods(min_lng, max_lng, min_lat, max_lat);

        CREATE TABLE IF NOT EXISTS pois (
            id              TEXT PRIMARY KEY,
            neighborhood_id TEXT NOT NULL REFERENCES neighborhoods(id) ON DELETE CASCADE,
            category        TEXT NOT NULL,
            name            TEXT NOT NULL,
            latitude        REAL NOT NULL,
            longitude       REAL NOT NULL,
            metadata        TEXT,
            provider_id     TEXT,
            cached_at       TEXT NOT NULL,
            created_at      TEXT NOT NULL,
            updated_at      TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_pois_neighborhood ON pois(neighborhood_id);

        CREATE TABLE IF NOT EXISTS search_sessions (
            id               TEXT PRIMARY KEY,
            caller_id        TEXT NOT NULL,
            longitude        REAL NOT NULL,
            latitude         REAL NOT NULL,
            time_minutes     INTEGER NOT NULL,
            mode             TEXT NOT NULL,
            neighborhood_ids TEXT NOT NULL,
            created_at       TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_sessions_caller
            ON search_sessions(caller_id, created_at);
    """)
    cols = {row["name"] for row in conn.execute("PRAGMA table_info(neighborhoods)").fetchall()}
    if "pois_cached_at" not in cols:
        conn.execute("ALTER TABLE neighborhoods ADD COLUMN pois_cached_at TEXT")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: datetime) -> str:
    return dt.isoformat()


def _parse_dt(value: str) -> datetime:
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------

class NeighborhoodSource(str, Enum):
    OSM_OVERPASS = "osm_overpass"
    POINT_APPROXIMATION = "point_approximation"
    STATIC_FALLBACK = "static_fallback"
    MANUAL = "manual"


@dataclass
class Neighborhood:
    id: str
    name: str
    boundary: Polygon
    center_lat: float
    center_lng: float
    source: NeighborhoodSource
    photo_url: Optional[str] = None
    cached_at: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    # Last time the POI set was fetched for this neighborhood, empty or not
    pois_cached_at: Optional[datetime] = None

    @classmethod
    def build(
        cls,
        id: str,
        name: str,
        boundary: Polygon,
        source: NeighborhoodSource,
        cached_at: Optional[datetime] = None,
    ) -> "Neighborhood":
        """New neighborhood with its center computed from *boundary*."""
        lat, lng = centroid(boundary)
        now = utcnow()
        return cls(
            id=id,
            name=name,
            boundary=boundary,
            center_lat=lat,
            center_lng=lng,
            source=source,
            cached_at=cached_at or now,
            created_at=now,
            updated_at=now,
        )

    def is_cache_valid(self, ttl_days: float = 7, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return now - self.cached_at < timedelta(days=ttl_days)

    def pois_checked_within(self, ttl_hours: float = 24, now: Optional[datetime] = None) -> bool:
        if self.pois_cached_at is None:
            return False
        now = now or utcnow()
        return now - self.pois_cached_at < timedelta(hours=ttl_hours)

    def bbox(self) -> BBox:
        return bounding_box(self.boundary)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "boundary": self.boundary,
            "centerLat": self.center_lat,
            "centerLng": self.center_lng,
            "source": self.source.value,
            "photoUrl": self.photo_url,
            "cachedAt": _iso(self.cached_at),
        }


@dataclass
class POI:
    neighborhood_id: str
    category: POICategory
    name: str
    latitude: float
    longitude: float
    metadata: Dict[str, Any] = field(default_factory=dict)
    provider_id: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    cached_at: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_cache_valid(self, ttl_hours: float = 24, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return now - self.cached_at < timedelta(hours=ttl_hours)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "neighborhoodId": self.neighborhood_id,
            "category": self.category.value,
            "name": self.name,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "metadata": self.metadata,
            "providerId": self.provider_id,
            "cachedAt": _iso(self.cached_at),
        }


@dataclass
class SearchSession:
    caller_id: str
    longitude: float
    latitude: float
    time_minutes: int
    mode: str
    neighborhood_ids: List[str] = field(default_factory=list)
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    created_at: datetime = field(default_factory=utcnow)


def _row_to_neighborhood(row) -> Neighborhood:
    return Neighborhood(
        id=row["id"],
        name=row["name"],
        boundary=json.loads(row["boundary"]),
        center_lat=row["center_lat"],
        center_lng=row["center_lng"],
        source=NeighborhoodSource(row["source"]),
        photo_url=row["photo_url"],
        cached_at=_parse_dt(row["cached_at"]),
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
        pois_cached_at=_parse_dt(row["pois_cached_at"]) if row["pois_cached_at"] else None,
    )


def _row_to_poi(row) -> POI:
    try:
        metadata = json.loads(row["metadata"]) if row["metadata"] else {}
    except (json.JSONDecodeError, TypeError) as e:
        logger.error("Corrupted metadata for POI %s: %s", row["id"], e)
        metadata = {}
    return POI(
        id=row["id"],
        neighborhood_id=row["neighborhood_id"],
        category=POICategory(row["category"]),
        name=row["name"],
        latitude=row["latitude"],
        longitude=row["longitude"],
        metadata=metadata,
        provider_id=row["provider_id"],
        cached_at=_parse_dt(row["cached_at"]),
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


# ---------------------------------------------------------------------------
# Neighborhood store
# ---------------------------------------------------------------------------

_NEIGHBORHOOD_COLUMNS = (
    "id, name, boundary, center_lat, center_lng, min_lng, min_lat, max_lng, max_lat, "
    "source, photo_url, cached_at, created_at, updated_at"
)


def _neighborhood_params(n: Neighborhood):
    min_lng, min_lat, max_lng, max_lat = n.bbox()
    return (
        n.id, n.name, json.dumps(n.boundary), n.center_lat, n.center_lng,
        min_lng, min_lat, max_lng, max_lat, n.source.value, n.photo_url,
        _iso(n.cached_at), _iso(n.created_at), _iso(n.updated_at),
    )


class NeighborhoodStore:
    def find_by_id(self, neighborhood_id: str) -> Optional[Neighborhood]:
        conn = _get_db()
        try:
            row = conn.execute(
                "SELECT * FROM neighborhoods WHERE id = ?", (neighborhood_id,)
            ).fetchone()
        finally:
            conn.close()
        return _row_to_neighborhood(row) if row else None

    def find_by_ids(self, ids: Sequence[str]) -> List[Neighborhood]:
        """Neighborhoods for *ids*, in the order given; unknown ids are skipped."""
        if not ids:
            return []
        placeholders = ",".join("?" for _ in ids)
        conn = _get_db()
        try:
            rows = conn.execute(
                f"SELECT * FROM neighborhoods WHERE id IN ({placeholders})", tuple(ids)
            ).fetchall()
        finally:
            conn.close()
        by_id = {row["id"]: _row_to_neighborhood(row) for row in rows}
        return [by_id[i] for i in ids if i in by_id]

    def find_within_bounds(self, polygon: Polygon) -> List[Neighborhood]:
        """Neighborhoods whose stored bbox intersects the bbox of *polygon*."""
        min_lng, min_lat, max_lng, max_lat = bounding_box(polygon)
        conn = _get_db()
        try:
            rows = conn.execute(
                """SELECT * FROM neighborhoods
                   WHERE min_lng <= ? AND max_lng >= ?
                     AND min_lat <= ? AND max_lat >= ?
                   ORDER BY rowid""",
                (max_lng, min_lng, max_lat, min_lat),
            ).fetchall()
        finally:
            conn.close()
        return [_row_to_neighborhood(row) for row in rows]

    def create(self, neighborhood: Neighborhood) -> Neighborhood:
        conn = _get_db()
        try:
            conn.execute(
                f"INSERT INTO neighborhoods ({_NEIGHBORHOOD_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                _neighborhood_params(neighborhood),
            )
            conn.commit()
        finally:
            conn.close()
        return neighborhood

    def upsert(self, neighborhood: Neighborhood) -> Neighborhood:
        """Insert, or refresh geometry and cached_at of an existing row.

        created_at, photo_url and pois_cached_at of an existing row are kept.
        """
        conn = _get_db()
        try:
            conn.execute(
                f"""INSERT INTO neighborhoods ({_NEIGHBORHOOD_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        name = excluded.name,
                        boundary = excluded.boundary,
                        center_lat = excluded.center_lat,
                        center_lng = excluded.center_lng,
                        min_lng = excluded.min_lng,
                        min_lat = excluded.min_lat,
                        max_lng = excluded.max_lng,
                        max_lat = excluded.max_lat,
                        source = excluded.source,
                        photo_url = COALESCE(neighborhoods.photo_url, excluded.photo_url),
                        cached_at = excluded.cached_at,
                        updated_at = excluded.updated_at""",
                _neighborhood_params(neighborhood),
            )
            conn.commit()
            row = conn.execute(
                "SELECT * FROM neighborhoods WHERE id = ?", (neighborhood.id,)
            ).fetchone()
        finally:
            conn.close()
        return _row_to_neighborhood(row)

    def update_photo(self, neighborhood_id: str, photo_url: str):
        conn = _get_db()
        try:
            conn.execute(
                "UPDATE neighborhoods SET photo_url = ?, updated_at = ? WHERE id = ?",
                (photo_url, _iso(utcnow()), neighborhood_id),
            )
            conn.commit()
        finally:
            conn.close()

    def delete_stale(self, ttl_days: float = 7) -> int:
        """Operator sweep: delete neighborhoods (and their POIs) older than ttl_days."""
        cutoff = _iso(utcnow() - timedelta(days=ttl_days))
        conn = _get_db()
        try:
            cur = conn.execute("DELETE FROM neighborhoods WHERE cached_at < ?", (cutoff,))
            conn.commit()
        finally:
            conn.close()
        return cur.rowcount


# ---------------------------------------------------------------------------
# POI store
# ---------------------------------------------------------------------------

_POI_INSERT = """INSERT INTO pois
   (id, neighborhood_id, category, name, latitude, longitude,
    metadata, provider_id, cached_at, created_at, updated_at)
   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"""


def _poi_params(p: POI):
    return (
        p.id, p.neighborhood_id, p.category.value, p.name,
        p.latitude, p.longitude,
        json.dumps(p.metadata, default=str) if p.metadata else None,
        p.provider_id,
        _iso(p.cached_at), _iso(p.created_at), _iso(p.updated_at),
    )


class POIStore:
    def find_by_neighborhood(self, neighborhood_id: str) -> List[POI]:
        conn = _get_db()
        try:
            rows = conn.execute(
                "SELECT * FROM pois WHERE neighborhood_id = ? ORDER BY rowid",
                (neighborhood_id,),
            ).fetchall()
        finally:
            conn.close()
        return [_row_to_poi(row) for row in rows]

    def delete_by_neighborhood(self, neighborhood_id: str) -> int:
        conn = _get_db()
        try:
            cur = conn.execute("DELETE FROM pois WHERE neighborhood_id = ?", (neighborhood_id,))
            conn.commit()
        finally:
            conn.close()
        return cur.rowcount

    def create_many(self, pois: Sequence[POI]) -> List[POI]:
        if not pois:
            return []
        conn = _get_db()
        try:
            conn.executemany(_POI_INSERT, [_poi_params(p) for p in pois])
            conn.commit()
        finally:
            conn.close()
        return list(pois)

    def replace_for_neighborhood(
        self,
        neighborhood_id: str,
        pois: Sequence[POI],
        checked_at: Optional[datetime] = None,
    ) -> List[POI]:
        """Swap the neighborhood's POI set for *pois* in one write transaction.

        Also stamps neighborhoods.pois_cached_at, so an empty *pois* records
        that the neighborhood was checked and has nothing to show. On any
        error the previous set is left untouched.
        """
        checked_at = checked_at or utcnow()
        conn = _get_db()
        try:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute("DELETE FROM pois WHERE neighborhood_id = ?", (neighborhood_id,))
            if pois:
                conn.executemany(_POI_INSERT, [_poi_params(p) for p in pois])
            conn.execute(
                "UPDATE neighborhoods SET pois_cached_at = ? WHERE id = ?",
                (_iso(checked_at), neighborhood_id),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        return list(pois)

    def mark_checked(self, neighborhood_id: str, checked_at: Optional[datetime] = None):
        """Stamp pois_cached_at without touching the stored POI rows."""
        conn = _get_db()
        try:
            conn.execute(
                "UPDATE neighborhoods SET pois_cached_at = ? WHERE id = ?",
                (_iso(checked_at or utcnow()), neighborhood_id),
            )
            conn.commit()
        finally:
            conn.close()


# ---------------------------------------------------------------------------
# Search sessions
# ---------------------------------------------------------------------------

class SessionStore:
    def save(self, session: SearchSession) -> SearchSession:
        conn = _get_db()
        try:
            conn.execute(
                """INSERT INTO search_sessions
                   (id, caller_id, longitude, latitude, time_minutes, mode,
                    neighborhood_ids, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    session.id, session.caller_id, session.longitude, session.latitude,
                    session.time_minutes, session.mode,
                    json.dumps(session.neighborhood_ids), _iso(session.created_at),
                ),
            )
            conn.commit()
        finally:
            conn.close()
        return session

    def find_latest_by_caller(self, caller_id: str) -> Optional[SearchSession]:
        conn = _get_db()
        try:
            row = conn.execute(
                """SELECT * FROM search_sessions WHERE caller_id = ?
                   ORDER BY created_at DESC, rowid DESC LIMIT 1""",
                (caller_id,),
            ).fetchone()
        finally:
            conn.close()
        if not row:
            return None
        return SearchSession(
            id=row["id"],
            caller_id=row["caller_id"],
            longitude=row["longitude"],
            latitude=row["latitude"],
            time_minutes=row["time_minutes"],
            mode=row["mode"],
            neighborhood_ids=json.loads(row["neighborhood_ids"]),
            created_at=_parse_dt(row["created_at"]),
        )
