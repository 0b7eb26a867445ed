"""Shared fixtures for the RentRadar test suite.

Points the SQLite database at a temp file and resets it between tests.
"""

import atexit
import os
import tempfile

import pytest

# Point the DB at a temp file BEFORE importing app/models
_test_db_fd, _test_db_path = tempfile.mkstemp(suffix=".db")
os.close(_test_db_fd)  # close the fd immediately; sqlite3 opens its own handle
os.environ["RENTRADAR_DB_PATH"] = _test_db_path
atexit.register(lambda: os.unlink(_test_db_path) if os.path.exists(_test_db_path) else None)

# Keep startup quiet and deterministic
os.environ.setdefault("MAPBOX_ACCESS_TOKEN", "test-mapbox-token")
os.environ.pop("GOOGLE_STREET_VIEW_KEY", None)
os.environ.pop("SENTRY_DSN", None)

from models import init_db, _get_db  # noqa: E402
from pipeline_config import OverpassConfig  # noqa: E402


@pytest.fixture(autouse=True)
def _fresh_db():
    """Reset the database before every test, keeping the schema."""
    init_db()
    conn = _get_db()
    for table in ("pois", "search_sessions", "neighborhoods"):
        conn.execute(f"DELETE FROM {table}")
    conn.commit()
    conn.close()
    yield


@pytest.fixture()
def overpass_config():
    """Two mirrors, no spacing, fast backoff."""
    return OverpassConfig(
        mirrors=("https://mirror-a.test/api/interpreter", "https://mirror-b.test/api/interpreter"),
        retry_backoff_seconds=2.0,
        min_spacing_seconds=0,
    )


# Square around downtown Miami, ~0.1 degrees on a side
MIAMI_SQUARE = {
    "type": "Polygon",
    "coordinates": [[
        [-80.25, 25.72], [-80.13, 25.72], [-80.13, 25.82], [-80.25, 25.82], [-80.25, 25.72],
    ]],
}


@pytest.fixture()
def miami_square():
    return {"type": "Polygon", "coordinates": [list(map(list, MIAMI_SQUARE["coordinates"][0]))]}
