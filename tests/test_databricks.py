"""
Tests for the Databricks connection manager and statement sessions.

The SQL Statement Execution API is simulated with ``httpx.MockTransport``;
no network access is needed.
"""

import base64
import json
import signal
import threading
import time

import httpx
import pytest

import infrastructure.databricks as databricks
from config import AppConfig
from feature_server.exceptions import ConfigurationError, QueryExecutionError, QueryTimeoutError
from infrastructure.databricks import DatabricksConnectionManager, warehouse_id_from_http_path

HOST = "adb-123.azuredatabricks.net"
HTTP_PATH = "/sql/1.0/warehouses/abc123"
STATEMENTS = "/api/2.0/sql/statements"

COLUMNS = [
    {"name": "objectid", "type_name": "INT"},
    {"name": "name", "type_name": "STRING"},
    {"name": "population", "type_name": "LONG"},
    {"name": "elevation", "type_name": "DOUBLE"},
    {"name": "capital", "type_name": "BOOLEAN"},
]


def succeeded(data, columns=COLUMNS, next_link=None, statement_id="s1"):
    result = {"data_array": data}
    if next_link:
        result["next_chunk_internal_link"] = next_link
    return {
        "statement_id": statement_id,
        "status": {"state": "SUCCEEDED"},
        "manifest": {"schema": {"columns": columns}},
        "result": result,
    }


def state(name, statement_id="s1", message=None):
    status = {"state": name}
    if message:
        status["error"] = {"error_code": "INTERNAL_ERROR", "message": message}
    return {"statement_id": statement_id, "status": status}


class FakeWarehouse:
    """
    Scripted Statement Execution API.

    ``routes`` maps (method, path) to a list of responses; each call pops
    the first one, the last one repeats.
    """

    def __init__(self):
        self.routes = {}
        self.requests = []

    def on(self, method, path, *responses):
        self.routes[(method, path)] = list(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        if key == ("POST", "/oidc/v1/token") and key not in self.routes:
            return httpx.Response(200, json={"access_token": "oauth-token", "expires_in": 3600})
        if key[1].endswith("/cancel") and key not in self.routes:
            return httpx.Response(200, json={})

        responses = self.routes.get(key)
        if not responses:
            return httpx.Response(404, json={"error_code": "NOT_FOUND", "message": f"no route {key}"})
        response = responses.pop(0) if len(responses) > 1 else responses[0]
        if isinstance(response, Exception):
            raise response
        if isinstance(response, httpx.Response):
            return response
        return httpx.Response(200, json=response)

    def paths(self, method=None):
        return [r.url.path for r in self.requests if method is None or r.method == method]


class SleepingClock:
    """Clock whose ``sleep`` advances time instead of blocking."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture(autouse=True)
def no_databricks_env(monkeypatch):
    for name in ("DATABRICKS_SERVER_HOSTNAME", "DATABRICKS_HTTP_PATH", "DATABRICKS_TOKEN",
                 "DATABRICKS_CLIENT_ID", "DATABRICKS_CLIENT_SECRET"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def warehouse():
    return FakeWarehouse()


@pytest.fixture
def fake_clock():
    return SleepingClock()


def make_manager(warehouse, fake_clock, timeout_seconds=30, **config):
    settings = {
        "databricks_server_hostname": HOST,
        "databricks_http_path": HTTP_PATH,
        "databricks_token": "dapi-token",
    }
    settings.update(config)
    return DatabricksConnectionManager(
        AppConfig(**settings),
        timeout_seconds=timeout_seconds,
        register_shutdown_hooks=False,
        transport=httpx.MockTransport(warehouse),
        clock=fake_clock,
        sleep=fake_clock.sleep,
    )


@pytest.fixture
def manager(warehouse, fake_clock):
    manager = make_manager(warehouse, fake_clock)
    yield manager
    manager.close()


# ============================================================================
# WAREHOUSE PATH
# ============================================================================

@pytest.mark.parametrize("http_path", [
    "/sql/1.0/warehouses/abc123",
    "/sql/1.0/endpoints/abc123/",
])
def test_warehouse_id_from_http_path(http_path):
    assert warehouse_id_from_http_path(http_path) == "abc123"


@pytest.mark.parametrize("http_path", ["/sql/protocolv1/o/123/0123-456-abc", "", None])
def test_http_path_without_warehouse(http_path):
    with pytest.raises(ConfigurationError):
        warehouse_id_from_http_path(http_path)


# ============================================================================
# STATEMENT EXECUTION
# ============================================================================

class TestExecute:

    def test_rows_are_typed_dicts(self, manager, warehouse):
        warehouse.on("POST", STATEMENTS, succeeded([
            ["1", "New York", "8336817", "10.0", "false"],
            ["2", None, None, "71.5", "true"],
        ]))

        with manager.get_session("cid-1") as session:
            rows = session.execute("SELECT * FROM main.default.cities")

        assert rows == [
            {"objectid": 1, "name": "New York", "population": 8336817, "elevation": 10.0,
             "capital": False},
            {"objectid": 2, "name": None, "population": None, "elevation": 71.5, "capital": True},
        ]

        (request,) = warehouse.requests
        body = json.loads(request.content)
        assert request.url.host == HOST
        assert request.headers["Authorization"] == "Bearer dapi-token"
        assert body["warehouse_id"] == "abc123"
        assert body["statement"] == "SELECT * FROM main.default.cities"
        assert body["format"] == "JSON_ARRAY"
        assert body["wait_timeout"] == "30s"

    def test_wait_timeout_stays_within_api_bounds(self, warehouse, fake_clock):
        warehouse.on("POST", STATEMENTS, succeeded([]))
        for timeout, expected in ((1, "0s"), (5, "5s"), (600, "50s")):
            manager = make_manager(warehouse, fake_clock, timeout_seconds=timeout)
            manager.get_session().execute("SELECT 1")
            assert json.loads(warehouse.requests[-1].content)["wait_timeout"] == expected

    def test_polls_until_finished(self, manager, warehouse, fake_clock):
        warehouse.on("POST", STATEMENTS, state("PENDING"))
        warehouse.on("GET", f"{STATEMENTS}/s1",
                     state("RUNNING"),
                     succeeded([["7", "Denver", "715522", "1609.0", "true"]]))

        rows = manager.get_session().execute("SELECT * FROM main.default.cities")

        assert [row["name"] for row in rows] == ["Denver"]
        assert len(fake_clock.sleeps) == 2

    def test_result_chunks_are_followed(self, manager, warehouse):
        link = f"{STATEMENTS}/s1/result/chunks/1"
        warehouse.on("POST", STATEMENTS, succeeded(
            [["1", "a", "1", "1.0", "true"]], next_link=link
        ))
        warehouse.on("GET", link, {"chunk_index": 1, "data_array": [["2", "b", "2", "2.0", "false"]]})

        rows = manager.get_session().execute("SELECT * FROM main.default.cities")
        assert [row["objectid"] for row in rows] == [1, 2]

    def test_timeout_cancels_statement(self, warehouse, fake_clock):
        manager = make_manager(warehouse, fake_clock, timeout_seconds=2)
        warehouse.on("POST", STATEMENTS, state("PENDING"))
        warehouse.on("GET", f"{STATEMENTS}/s1", state("RUNNING"))

        with pytest.raises(QueryTimeoutError):
            manager.get_session().execute("SELECT * FROM main.default.cities")

        assert f"{STATEMENTS}/s1/cancel" in warehouse.paths("POST")
        assert fake_clock.now >= 2

    def test_failed_statement(self, manager, warehouse):
        warehouse.on("POST", STATEMENTS, state("FAILED", message="[UNRESOLVED_COLUMN] nope"))
        with pytest.raises(QueryExecutionError, match="UNRESOLVED_COLUMN") as exc_info:
            manager.get_session().execute("SELECT nope FROM main.default.cities")
        assert not isinstance(exc_info.value, QueryTimeoutError)

    def test_server_side_timeout(self, manager, warehouse):
        warehouse.on("POST", STATEMENTS, state("FAILED", message="Query timed out after 30s"))
        with pytest.raises(QueryTimeoutError):
            manager.get_session().execute("SELECT * FROM main.default.cities")

    def test_http_error(self, manager, warehouse):
        warehouse.on("POST", STATEMENTS, httpx.Response(
            400, json={"error_code": "INVALID_PARAMETER_VALUE", "message": "warehouse is stopped"}
        ))
        with pytest.raises(QueryExecutionError, match="warehouse is stopped"):
            manager.get_session().execute("SELECT 1")

    def test_error_while_polling_cancels_statement(self, manager, warehouse):
        warehouse.on("POST", STATEMENTS, state("PENDING"))
        warehouse.on("GET", f"{STATEMENTS}/s1", httpx.Response(503, text="unavailable"))

        with pytest.raises(QueryExecutionError):
            manager.get_session().execute("SELECT 1")
        assert f"{STATEMENTS}/s1/cancel" in warehouse.paths("POST")

    def test_transport_errors(self, manager, warehouse):
        request = httpx.Request("POST", f"https://{HOST}{STATEMENTS}")
        warehouse.on("POST", STATEMENTS,
                     httpx.ConnectError("connection refused", request=request),
                     httpx.ReadTimeout("read timed out", request=request))

        session = manager.get_session()
        with pytest.raises(QueryExecutionError) as exc_info:
            session.execute("SELECT 1")
        assert not isinstance(exc_info.value, QueryTimeoutError)
        with pytest.raises(QueryTimeoutError):
            session.execute("SELECT 1")

    def test_closed_session_rejects_statements(self, manager):
        session = manager.get_session()
        session.close()
        session.close()
        assert session.closed
        with pytest.raises(QueryExecutionError):
            session.execute("SELECT 1")


# ============================================================================
# CREDENTIALS
# ============================================================================

class TestOAuth:

    def test_service_principal_token_is_cached(self, warehouse, fake_clock):
        manager = make_manager(warehouse, fake_clock, databricks_token=None,
                               databricks_client_id="sp-id", databricks_client_secret="sp-secret")
        warehouse.on("POST", STATEMENTS, succeeded([]))

        session = manager.get_session()
        session.execute("SELECT 1")
        session.execute("SELECT 2")

        token_requests = [r for r in warehouse.requests if r.url.path == "/oidc/v1/token"]
        assert len(token_requests) == 1
        expected = base64.b64encode(b"sp-id:sp-secret").decode()
        assert token_requests[0].headers["Authorization"] == f"Basic {expected}"
        assert b"grant_type=client_credentials" in token_requests[0].content

        statements = [r for r in warehouse.requests if r.url.path == STATEMENTS]
        assert all(r.headers["Authorization"] == "Bearer oauth-token" for r in statements)

    def test_expired_token_is_refreshed(self, warehouse, fake_clock):
        manager = make_manager(warehouse, fake_clock, databricks_token=None,
                               databricks_client_id="sp-id", databricks_client_secret="sp-secret")
        warehouse.on("POST", STATEMENTS, succeeded([]))

        manager.get_session().execute("SELECT 1")
        fake_clock.now += 3600
        manager.get_session().execute("SELECT 1")

        assert warehouse.paths("POST").count("/oidc/v1/token") == 2

    def test_rejected_token_request(self, warehouse, fake_clock):
        manager = make_manager(warehouse, fake_clock, databricks_token=None,
                               databricks_client_id="sp-id", databricks_client_secret="wrong")
        warehouse.on("POST", "/oidc/v1/token", httpx.Response(401, json={"error": "invalid_client"}))

        with pytest.raises(QueryExecutionError, match="401"):
            manager.get_session().execute("SELECT 1")


# ============================================================================
# CLIENT LIFECYCLE
# ============================================================================

class TestConnect:

    def test_client_is_memoized(self, manager):
        client = manager.connect()
        assert manager.connect() is client
        assert client.warehouse_id == "abc123"
        assert client.scheme == "access-token"

    def test_failed_connect_is_retried(self, warehouse, fake_clock):
        manager = make_manager(warehouse, fake_clock, databricks_server_hostname=None)
        with pytest.raises(ConfigurationError, match="DATABRICKS_SERVER_HOSTNAME"):
            manager.connect()

        manager.app_config.databricks_server_hostname = HOST
        assert manager.connect().base_url == f"https://{HOST}"

    def test_missing_credentials(self, warehouse, fake_clock):
        manager = make_manager(warehouse, fake_clock, databricks_token=None)
        with pytest.raises(ConfigurationError):
            manager.get_session()

    def test_concurrent_first_callers_share_one_attempt(self, manager, monkeypatch):
        calls = []
        original = manager._do_connect

        def slow_connect():
            calls.append(1)
            time.sleep(0.05)
            return original()

        monkeypatch.setattr(manager, "_do_connect", slow_connect)

        clients = []
        threads = [threading.Thread(target=lambda: clients.append(manager.connect()))
                   for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(calls) == 1
        assert len(clients) == 8
        assert all(c is clients[0] for c in clients)

    def test_close_releases_client(self, manager):
        client = manager.connect()
        manager.close()
        assert client.http.is_closed
        assert manager.connect() is not client

    def test_close_without_client_is_noop(self, manager):
        manager.close()


class TestShutdownHooks:

    def test_hooks_register_once_and_chain(self, warehouse, fake_clock, monkeypatch):
        registered = []
        installed = {}
        previous_calls = []

        def previous_handler(signum, frame):
            previous_calls.append(signum)

        monkeypatch.setattr(databricks.atexit, "register", registered.append)
        monkeypatch.setattr(databricks.signal, "getsignal", lambda signum: previous_handler)
        monkeypatch.setattr(databricks.signal, "signal",
                            lambda signum, handler: installed.__setitem__(signum, handler))

        manager = make_manager(warehouse, fake_clock)
        manager.register_shutdown_hooks = True

        client = manager.connect()
        manager.close()
        manager.connect()

        assert registered == [manager.close]
        assert set(installed) == {signal.SIGTERM, signal.SIGINT}

        installed[signal.SIGTERM](signal.SIGTERM, None)
        assert previous_calls == [signal.SIGTERM]
        assert client.http.is_closed
