"""
End-to-end tests for FeatureServerService.get_data against the SQLite-backed
session from conftest.
"""

import logging
import sqlite3

import pytest

from feature_server.exceptions import InvalidParameterError, RateLimitExceededError
from feature_server.metadata_cache import FieldMetadataCache
from feature_server.models import (
    CountResult,
    EsriFieldType,
    ExtentResult,
    FeatureCollection,
    FeatureRequest,
    IdsResult,
)
from feature_server.rate_limiter import SlidingWindowRateLimiter
from feature_server.service import FeatureServerService

from conftest import TABLE, FakeConnectionManager, SQLiteSession


def get(service, client_id="10.0.0.1", table=TABLE, **params):
    return service.get_data(FeatureRequest(table=table, params=params, client_id=client_id))


# ============================================================================
# MODES
# ============================================================================

class TestModes:

    def test_count(self, service):
        result = get(service, returnCountOnly="true")
        assert isinstance(result, CountResult)
        assert result.to_response() == {"count": 10}

    def test_count_with_where(self, service):
        assert get(service, returnCountOnly="true", where="population > 1000000").count == 4

    def test_ids(self, service):
        result = get(service, returnIdsOnly="true", where="state = 'TX'")
        assert isinstance(result, IdsResult)
        assert result.to_response() == {"objectIdFieldName": "objectid", "objectIds": [4, 5]}

    def test_count_wins_over_ids(self, service):
        assert isinstance(get(service, returnCountOnly="true", returnIdsOnly="true"), CountResult)

    def test_extent(self, service):
        result = get(service, returnExtentOnly="true")
        assert isinstance(result, ExtentResult)
        extent = result.extent
        assert extent.xmin == pytest.approx(-122.6765)
        assert extent.ymin == pytest.approx(25.7617)
        assert extent.xmax == pytest.approx(-71.0589)
        assert extent.ymax == pytest.approx(47.6062)
        assert extent.spatialReference.wkid == 4326

    def test_extent_of_nothing(self, service):
        result = get(service, returnExtentOnly="true", where="population > 99999999")
        assert result.to_response() == {"extent": None}


# ============================================================================
# FEATURE QUERIES
# ============================================================================

class TestFeatureQuery:

    def test_full_collection(self, service):
        result = get(service)
        assert isinstance(result, FeatureCollection)
        assert len(result.features) == 10

        first = result.features[0]
        assert first["type"] == "Feature"
        assert first["geometry"] == {"type": "Point", "coordinates": [-74.006, 40.7128]}
        assert first["properties"]["name"] == "New York"
        assert "__geojson__" not in first["properties"]

        metadata = result.metadata
        assert metadata.idField == "objectid"
        assert metadata.name == TABLE
        assert metadata.maxRecordCount == 10000
        assert metadata.geometryType == "esriGeometryPoint"
        assert metadata.extent.xmin == pytest.approx(-122.6765)
        assert metadata.extent.ymax == pytest.approx(47.6062)

    def test_where_with_record_count(self, service):
        result = get(service, where="population>1000000", resultRecordCount="5")
        assert len(result.features) == 4
        assert all(f["properties"]["population"] > 1000000 for f in result.features)
        assert result.to_response()["filtersApplied"]["where"] is True

    def test_field_metadata_excludes_geometry(self, service):
        fields = {f.name: f.type for f in get(service).metadata.fields}
        assert fields == {
            "objectid": EsriFieldType.INTEGER,
            "name": EsriFieldType.STRING,
            "state": EsriFieldType.STRING,
            "population": EsriFieldType.BIG_INTEGER,
            "elevation": EsriFieldType.DOUBLE,
        }

    def test_response_shape(self, service):
        response = get(service, resultRecordCount="1").to_response()
        assert response["type"] == "FeatureCollection"
        assert len(response["features"]) == 1
        assert response["filtersApplied"] == {
            "offset": True, "limit": True, "where": True, "geometry": True
        }
        assert response["metadata"]["fields"][0]["type"] == "esriFieldTypeInteger"

    def test_order_and_projection(self, service):
        result = get(service, orderByFields="population DESC", outFields="name, population",
                     returnGeometry="false", resultRecordCount="3")
        names = [f["properties"]["name"] for f in result.features]
        assert names == ["New York", "Los Angeles", "Chicago"]
        assert set(result.features[0]["properties"]) == {"name", "population"}

    def test_descending_order_is_monotonic(self, service):
        result = get(service, orderByFields="population DESC", returnGeometry="false")
        populations = [f["properties"]["population"] for f in result.features]
        assert populations == sorted(populations, reverse=True)

    def test_paging_is_stable(self, service):
        first = get(service, resultOffset="0", resultRecordCount="3")
        second = get(service, resultOffset="3", resultRecordCount="3")
        ids = [f["properties"]["objectid"] for f in first.features + second.features]
        assert ids == [1, 2, 3, 4, 5, 6]

    def test_envelope_filter(self, service):
        result = get(service, geometry="-100,25,-90,35", returnGeometry="false")
        assert sorted(f["properties"]["name"] for f in result.features) == ["Austin", "Houston"]

    def test_malformed_envelope_returns_everything(self, service):
        assert get(service, geometry="-100,25,oops,35", returnCountOnly="true").count == 10

    def test_without_geometry(self, service):
        result = get(service, returnGeometry="false")
        assert all(f["geometry"] is None for f in result.features)
        metadata = result.to_response()["metadata"]
        assert "geometryType" not in metadata
        assert "extent" not in metadata

    def test_empty_result(self, service):
        result = get(service, where="state = 'ZZ'")
        assert result.features == []
        assert result.metadata.extent is None
        assert result.metadata.geometryType is None


# ============================================================================
# VALIDATION, LIFECYCLE AND ADMISSION
# ============================================================================

class TestLifecycle:

    @pytest.mark.parametrize("params, parameter", [
        ({"where": "1=1; DROP TABLE cities"}, "where"),
        ({"outFields": "name; DROP TABLE cities"}, "outFields"),
        ({"orderByFields": "name; DROP TABLE cities"}, "orderByFields"),
        ({"bbox": "0,0,1,1", "h3col": "h3", "h3res": "99"}, "h3res"),
    ])
    def test_invalid_parameters_never_open_a_session(self, service, connection_manager,
                                                     params, parameter):
        with pytest.raises(InvalidParameterError) as exc_info:
            service.get_data(FeatureRequest(table=TABLE, params=params))
        assert exc_info.value.parameter == parameter
        assert connection_manager.sessions == []

    @pytest.mark.parametrize("table", ["cities", "main.default.cities;DROP TABLE x",
                                       "main.default.cities\n"])
    def test_invalid_table(self, service, connection_manager, table):
        with pytest.raises(InvalidParameterError) as exc_info:
            get(service, table=table)
        assert exc_info.value.parameter == "table"
        assert connection_manager.sessions == []

    def test_session_closed_after_success(self, service, connection_manager):
        get(service)
        get(service, returnCountOnly="true")
        assert len(connection_manager.sessions) == 2
        assert all(s.closed for s in connection_manager.sessions)

    def test_session_closed_after_failure(self, service, connection_manager):
        with pytest.raises(sqlite3.OperationalError):
            get(service, where="no_such_column = 1")
        (session,) = connection_manager.sessions
        assert session.closed

    def test_describe_runs_once_per_ttl(self, service, connection_manager):
        get(service)
        get(service)
        describes = [stmt for s in connection_manager.sessions for stmt in s.statements
                     if stmt.startswith("DESCRIBE")]
        assert describes == [f"DESCRIBE {TABLE}"]

    def test_describe_failure_degrades_to_no_fields(self, config, sqlite_connection, clock):
        class NoDescribeSession(SQLiteSession):
            def execute(self, statement):
                if statement.startswith("DESCRIBE"):
                    raise RuntimeError("permission denied")
                return super().execute(statement)

        manager = FakeConnectionManager(lambda: NoDescribeSession(sqlite_connection, {TABLE: "cities"}))
        service = FeatureServerService(
            manager, config=config,
            metadata_cache=FieldMetadataCache(300, 10, "geometry_wkt", clock=clock),
            rate_limiter=SlidingWindowRateLimiter(100, 60, clock=clock),
        )
        result = get(service)
        assert len(result.features) == 10
        assert result.metadata.fields == []

    def test_rate_limit(self, config, connection_manager, clock):
        service = FeatureServerService(
            connection_manager, config=config,
            metadata_cache=FieldMetadataCache(300, 10, "geometry_wkt", clock=clock),
            rate_limiter=SlidingWindowRateLimiter(max_requests=2, window_seconds=60, clock=clock),
        )
        get(service, returnCountOnly="true")
        get(service, returnCountOnly="true")

        with pytest.raises(RateLimitExceededError) as exc_info:
            get(service, returnCountOnly="true")
        assert exc_info.value.retry_after == 60
        assert len(connection_manager.sessions) == 2

        # Another client is unaffected
        assert get(service, client_id="10.0.0.2", returnCountOnly="true").count == 10

        clock.advance(60)
        assert get(service, returnCountOnly="true").count == 10

    def test_server_info(self, service):
        info = service.get_server_info()
        assert info["maxRecordCount"] == 10000
        assert info["idField"] == "objectid"
        assert info["spatialReference"] == {"wkid": 4326}

    def test_injected_state_is_kept(self, config, connection_manager, clock):
        cache = FieldMetadataCache(ttl_seconds=5, max_entries=3, geometry_column="geometry_wkt",
                                   clock=clock)
        limiter = SlidingWindowRateLimiter(max_requests=2, window_seconds=10, clock=clock)
        assert len(cache) == 0
        assert len(limiter) == 0

        service = FeatureServerService(connection_manager, config=config,
                                       metadata_cache=cache, rate_limiter=limiter)

        assert service.metadata_cache is cache
        assert service.rate_limiter is limiter

    def test_log_records_carry_request_dimensions(self, service, caplog):
        caplog.set_level(logging.INFO)
        service.get_data(FeatureRequest(table=TABLE, params={"returnCountOnly": "true"},
                                        client_id="10.0.0.9", correlation_id="cid-1"))

        executing = [r for r in caplog.records if "Executing count query" in r.getMessage()]
        assert len(executing) == 1
        dims = executing[0].custom_dimensions
        assert dims["correlation_id"] == "cid-1"
        assert dims["client_id"] == "10.0.0.9"
        assert dims["table"] == TABLE
        assert dims["mode"] == "count"
