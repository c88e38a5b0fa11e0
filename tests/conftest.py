"""
Pytest fixtures for the FeatureServer query engine.

Provides an in-memory SQLite stand-in for a Databricks session. SQLite gets
Python implementations of the handful of ST_* functions the builder emits
for POINT geometries, so end-to-end tests run real WHERE / ORDER BY /
LIMIT / OFFSET logic against real rows.
"""

import json
import re
import sqlite3

import pytest

from feature_server.config import FeatureServerConfig
from feature_server.service import FeatureServerService
from feature_server.metadata_cache import FieldMetadataCache
from feature_server.rate_limiter import SlidingWindowRateLimiter


TABLE = "main.default.cities"

CITIES = [
    # objectid, name, state, population, elevation, geometry_wkt
    (1, "New York", "NY", 8336817, 10.0, "POINT(-74.006 40.7128)"),
    (2, "Los Angeles", "CA", 3979576, 71.0, "POINT(-118.2437 34.0522)"),
    (3, "Chicago", "IL", 2693976, 181.0, "POINT(-87.6298 41.8781)"),
    (4, "Houston", "TX", 2320268, 15.0, "POINT(-95.3698 29.7604)"),
    (5, "Austin", "TX", 961855, 149.0, "POINT(-97.7431 30.2672)"),
    (6, "Seattle", "WA", 737015, 53.0, "POINT(-122.3321 47.6062)"),
    (7, "Denver", "CO", 715522, 1609.0, "POINT(-104.9903 39.7392)"),
    (8, "Boston", "MA", 675647, 43.0, "POINT(-71.0589 42.3601)"),
    (9, "Portland", "OR", 652503, 15.0, "POINT(-122.6765 45.5231)"),
    (10, "Miami", "FL", 442241, 2.0, "POINT(-80.1918 25.7617)"),
]

_NUMBER = re.compile(r"-?\d+(?:\.\d+)?(?:[eE]-?\d+)?")


# ============================================================================
# SQLITE STAND-INS FOR DATABRICKS SPATIAL FUNCTIONS
# ============================================================================

def _coords(wkt):
    if wkt is None:
        return []
    numbers = [float(n) for n in _NUMBER.findall(wkt)]
    return list(zip(numbers[0::2], numbers[1::2]))


def _st_geom_from_text(wkt, srid):
    return wkt


def _st_as_geojson(wkt):
    coords = _coords(wkt)
    if not coords:
        return None
    x, y = coords[0]
    return json.dumps({"type": "Point", "coordinates": [x, y]})


def _st_intersects(geometry, envelope):
    points = _coords(geometry)
    corners = _coords(envelope)
    if not points or not corners:
        return 0
    xs = [c[0] for c in corners]
    ys = [c[1] for c in corners]
    x, y = points[0]
    return int(min(xs) <= x <= max(xs) and min(ys) <= y <= max(ys))


def _bound(index, pick):
    def extract(wkt):
        coords = _coords(wkt)
        if not coords:
            return None
        return pick(c[index] for c in coords)
    return extract


class SQLiteSession:
    """Databricks session double backed by SQLite."""

    def __init__(self, connection, table_map):
        self.connection = connection
        self.table_map = table_map
        self.statements = []
        self.closed = False

    def execute(self, statement):
        self.statements.append(statement)

        if statement.startswith("DESCRIBE "):
            table = self.table_map[statement[len("DESCRIBE "):].strip()]
            info = self.connection.execute(f"PRAGMA table_info({table})").fetchall()
            return [{"col_name": row[1], "data_type": row[2], "comment": None} for row in info]

        local = statement
        for remote, table in self.table_map.items():
            local = local.replace(remote, table)

        cursor = self.connection.execute(local)
        columns = [d[0] for d in cursor.description]
        return [dict(zip(columns, row)) for row in cursor.fetchall()]

    def close(self):
        self.closed = True


class FakeConnectionManager:
    """Hands out sessions from a factory and remembers them."""

    def __init__(self, session_factory):
        self.session_factory = session_factory
        self.sessions = []

    def get_session(self, correlation_id=None):
        session = self.session_factory()
        self.sessions.append(session)
        return session


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def config():
    """Engine configuration with the documented defaults."""
    return FeatureServerConfig(
        object_id_column="objectid",
        geometry_column="geometry_wkt",
        geometry_format="wkt",
        spatial_reference=4326,
        max_rows=10000,
        default_time_field="created_at",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sqlite_connection():
    connection = sqlite3.connect(":memory:", check_same_thread=False)
    connection.create_function("ST_GeomFromText", 2, _st_geom_from_text)
    connection.create_function("ST_AsGeoJSON", 1, _st_as_geojson)
    connection.create_function("ST_Intersects", 2, _st_intersects)
    connection.create_function("ST_Envelope", 1, lambda wkt: wkt)
    connection.create_function("ST_XMin", 1, _bound(0, min))
    connection.create_function("ST_YMin", 1, _bound(1, min))
    connection.create_function("ST_XMax", 1, _bound(0, max))
    connection.create_function("ST_YMax", 1, _bound(1, max))
    connection.execute(
        "CREATE TABLE cities ("
        "objectid INT, name STRING, state STRING, population BIGINT, "
        "elevation DOUBLE, geometry_wkt STRING)"
    )
    connection.executemany("INSERT INTO cities VALUES (?, ?, ?, ?, ?, ?)", CITIES)
    connection.commit()
    yield connection
    connection.close()


@pytest.fixture
def connection_manager(sqlite_connection):
    return FakeConnectionManager(lambda: SQLiteSession(sqlite_connection, {TABLE: "cities"}))


@pytest.fixture
def service(config, connection_manager, clock):
    return FeatureServerService(
        connection_manager,
        config=config,
        metadata_cache=FieldMetadataCache(
            ttl_seconds=300, max_entries=10, geometry_column="geometry_wkt", clock=clock
        ),
        rate_limiter=SlidingWindowRateLimiter(max_requests=100, window_seconds=60, clock=clock),
    )
