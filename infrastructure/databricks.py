# ============================================================================
# MODULE CONTEXT - DATABRICKS CONNECTION MANAGER
# ============================================================================
# STATUS: Core Infrastructure - Databricks SQL warehouse access
# PURPOSE: Shared client lifecycle, per-request sessions, timed statement execution
# EXPORTS: DatabricksConnectionManager, DatabricksClient, DatabricksSession, OAuthTokenProvider
# DEPENDENCIES: httpx (sync), config, util_logger
# SOURCE: Databricks SQL Statement Execution API (/api/2.0/sql/statements)
# SCOPE: Read-only statement execution for the FeatureServer query engine
# PATTERNS: Memoized lazy connect, Per-request sessions, Shutdown hooks
# ============================================================================

"""
Databricks Connection Manager (SYNC VERSION).

Provides Databricks SQL access for the FeatureServer query engine with:
- Lazy, memoized client creation shared by the whole process
- Credential scheme selection (OAuth service principal or access token)
- Per-request sessions that track their own statements
- Statement timeout bounded client-side, with server-side cancellation
- Cleanup of in-flight statements on every path
- One-time shutdown hooks (atexit, SIGTERM, SIGINT)

Connection Strategy:
-------------------
The *client* (resolved warehouse, credentials, pooled ``httpx.Client``) is
created once. Concurrent first callers wait on the same in-flight attempt;
a failed attempt is forgotten so the next call retries.

Statements go through the SQL Statement Execution API. The request waits
server-side for up to ``MAX_WAIT_SECONDS`` (not at all for timeouts under
``MIN_WAIT_SECONDS``); longer statements are polled
until they finish or the timeout elapses, at which point they are cancelled.
Each request gets its own ``DatabricksSession`` which cancels anything it
started and did not finish when it is closed. The pooled HTTP client is
closed only at process shutdown.

Usage:
    from infrastructure.databricks import DatabricksConnectionManager

    manager = DatabricksConnectionManager(app_config, timeout_seconds=30)
    with manager.get_session(correlation_id) as session:
        rows = session.execute("SELECT COUNT(*) AS cnt FROM main.default.cities")
"""

import atexit
import re
import signal
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

import httpx

from util_logger import LoggerFactory, ComponentType, request_dimensions
from feature_server.exceptions import ConfigurationError, QueryExecutionError, QueryTimeoutError

logger = LoggerFactory.create_logger(ComponentType.REPOSITORY, "DatabricksConnectionManager")

STATEMENTS_PATH = "/api/2.0/sql/statements"
TOKEN_PATH = "/oidc/v1/token"

# Statement API accepts wait_timeout between 5 and 50 seconds
MIN_WAIT_SECONDS = 5
MAX_WAIT_SECONDS = 50
POLL_INTERVAL_SECONDS = 0.5

# Extra time granted to each HTTP call beyond the statement timeout
CLIENT_TIMEOUT_GRACE_SECONDS = 5

# Refresh OAuth tokens this long before they expire
TOKEN_REFRESH_MARGIN_SECONDS = 60

_WAREHOUSE_PATH = re.compile(r"/sql/[^/]+/(?:warehouses|endpoints)/([A-Za-z0-9]+)/?$")

_RUNNING_STATES = {"PENDING", "RUNNING"}

_INTEGER_TYPES = {"BYTE", "SHORT", "INT", "LONG"}
_FLOAT_TYPES = {"FLOAT", "DOUBLE", "DECIMAL"}


def warehouse_id_from_http_path(http_path: str) -> str:
    """
    Extract the SQL warehouse id from a connection http path.

    Args:
        http_path: e.g. ``/sql/1.0/warehouses/abc123``

    Raises:
        ConfigurationError: Path does not name a warehouse
    """
    match = _WAREHOUSE_PATH.search(http_path or "")
    if not match:
        raise ConfigurationError(
            f"DATABRICKS_HTTP_PATH does not name a SQL warehouse: {http_path!r}"
        )
    return match.group(1)


def _is_timeout(message: str) -> bool:
    message = (message or "").lower()
    return "timeout" in message or "timed out" in message


def _convert_value(value: Any, type_name: str) -> Any:
    """JSON_ARRAY results carry every value as a string; restore scalars."""
    if value is None:
        return None
    try:
        if type_name in _INTEGER_TYPES:
            return int(value)
        if type_name in _FLOAT_TYPES:
            return float(value)
    except (TypeError, ValueError):
        return value
    if type_name == "BOOLEAN":
        return str(value).lower() == "true"
    return value


class OAuthTokenProvider:
    """
    Service principal (client credentials) tokens for the workspace.

    Tokens are cached and refreshed shortly before they expire. Safe to call
    from several threads.
    """

    def __init__(self, http: httpx.Client, base_url: str, client_id: str, client_secret: str,
                 clock: Callable[[], float] = time.monotonic):
        self._http = http
        self._url = f"{base_url}{TOKEN_PATH}"
        self._client_id = client_id
        self._client_secret = client_secret
        self._clock = clock
        self._lock = threading.Lock()
        self._token: Optional[str] = None
        self._expires_at = 0.0

    def __call__(self) -> str:
        with self._lock:
            if self._token is None or self._clock() >= self._expires_at:
                self._refresh()
            return self._token

    def _refresh(self) -> None:
        try:
            response = self._http.post(
                self._url,
                data={"grant_type": "client_credentials", "scope": "all-apis"},
                auth=(self._client_id, self._client_secret),
            )
        except httpx.RequestError as e:
            logger.error(f"❌ OAuth token request failed: {e}")
            raise QueryExecutionError(f"OAuth token request failed: {e}") from e

        if response.status_code >= 400:
            logger.error(f"❌ OAuth token request rejected: HTTP {response.status_code}")
            raise QueryExecutionError(
                f"OAuth token request rejected: HTTP {response.status_code} {response.text[:200]}"
            )

        payload = response.json()
        self._token = payload["access_token"]
        lifetime = float(payload.get("expires_in", 3600))
        self._expires_at = self._clock() + max(0.0, lifetime - TOKEN_REFRESH_MARGIN_SECONDS)
        logger.debug(f"OAuth token refreshed, valid for {lifetime:.0f}s")


@dataclass
class DatabricksClient:
    """Process-wide connection state shared by every session."""
    base_url: str
    warehouse_id: str
    scheme: str
    http: httpx.Client = field(repr=False)
    token_provider: Callable[[], str] = field(repr=False)

    def auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token_provider()}"}

    def close(self) -> None:
        if not self.http.is_closed:
            self.http.close()


class DatabricksSession:
    """
    Statement execution for a single request.

    Always close it (or use it as a context manager); closing never raises
    and cancels any statement this session left running.
    """

    def __init__(self, client: DatabricksClient, timeout_seconds: int,
                 correlation_id: Optional[str] = None,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        self._client = client
        self.timeout_seconds = timeout_seconds
        self.correlation_id = correlation_id
        self._clock = clock
        self._sleep = sleep
        self._in_flight: Set[str] = set()
        self._closed = False

    def __enter__(self) -> "DatabricksSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def execute(self, statement: str) -> List[Dict[str, Any]]:
        """
        Execute exactly one statement and return its rows as dicts.

        Args:
            statement: Complete SQL text

        Returns:
            List of row dicts keyed by column name

        Raises:
            QueryTimeoutError: Statement exceeded the timeout (and was cancelled)
            QueryExecutionError: Any other failure reported by the warehouse
        """
        if self._closed:
            raise QueryExecutionError("Session is closed")

        cid = self.correlation_id
        dims = request_dimensions(cid)
        deadline = self._clock() + self.timeout_seconds
        # The API accepts 0 (return at once) or 5-50 s; shorter timeouts
        # must not wait server-side past their own deadline.
        if self.timeout_seconds < MIN_WAIT_SECONDS:
            wait = 0
        else:
            wait = min(int(self.timeout_seconds), MAX_WAIT_SECONDS)

        logger.debug(f"{cid}> Executing: {statement}", extra=dims)
        payload = self._request("POST", STATEMENTS_PATH, json={
            "warehouse_id": self._client.warehouse_id,
            "statement": statement,
            "wait_timeout": f"{wait}s",
            "on_wait_timeout": "CONTINUE",
            "format": "JSON_ARRAY",
            "disposition": "INLINE",
        })
        statement_id = payload.get("statement_id")
        if statement_id:
            self._in_flight.add(statement_id)

        finished = False
        try:
            while self._state(payload) in _RUNNING_STATES:
                if self._clock() >= deadline:
                    logger.error(f"{cid}> Statement exceeded {self.timeout_seconds}s, cancelling",
                                 extra=dims)
                    self._cancel(statement_id)
                    raise QueryTimeoutError(f"Query exceeded timeout of {self.timeout_seconds}s")
                self._sleep(POLL_INTERVAL_SECONDS)
                payload = self._request("GET", f"{STATEMENTS_PATH}/{statement_id}")
            finished = True
        finally:
            # A statement abandoned mid-poll must not keep running on the warehouse
            if not finished and statement_id in self._in_flight:
                self._cancel(statement_id)
            self._in_flight.discard(statement_id)

        self._raise_for_state(payload)
        rows = self._collect_rows(payload)

        logger.debug(f"{cid}> Returned {len(rows)} rows", extra=dims)
        return rows

    # ========================================================================
    # STATEMENT API HELPERS
    # ========================================================================

    def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        cid = self.correlation_id
        url = path if path.startswith("http") else f"{self._client.base_url}{path}"
        try:
            response = self._client.http.request(
                method, url, json=json, headers=self._client.auth_headers()
            )
        except httpx.TimeoutException as e:
            logger.error(f"{cid}> Databricks request timed out: {e}", extra=request_dimensions(cid))
            raise QueryTimeoutError(f"Query exceeded timeout of {self.timeout_seconds}s") from e
        except httpx.RequestError as e:
            logger.error(f"{cid}> Databricks request failed: {e}", extra=request_dimensions(cid))
            raise QueryExecutionError(f"Databricks request failed: {e}") from e

        if response.status_code >= 400:
            message = self._error_message(response)
            logger.error(f"{cid}> Databricks API error {response.status_code}: {message}",
                         extra=request_dimensions(cid))
            if _is_timeout(message):
                raise QueryTimeoutError(f"Query exceeded timeout of {self.timeout_seconds}s: {message}")
            raise QueryExecutionError(f"Query execution failed: {message}")

        return response.json()

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200]
        return body.get("message") or body.get("error_code") or response.text[:200]

    @staticmethod
    def _state(payload: Dict[str, Any]) -> str:
        return (payload.get("status") or {}).get("state", "SUCCEEDED")

    def _raise_for_state(self, payload: Dict[str, Any]) -> None:
        state = self._state(payload)
        if state == "SUCCEEDED":
            return

        error = (payload.get("status") or {}).get("error") or {}
        message = error.get("message") or f"statement {state.lower()}"
        logger.error(f"{self.correlation_id}> Query execution failed ({state}): {message}",
                     extra=request_dimensions(self.correlation_id))
        if _is_timeout(message) or _is_timeout(error.get("error_code", "")):
            raise QueryTimeoutError(f"Query exceeded timeout of {self.timeout_seconds}s: {message}")
        raise QueryExecutionError(f"Query execution failed: {message}")

    def _collect_rows(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        columns = ((payload.get("manifest") or {}).get("schema") or {}).get("columns") or []
        names = [column["name"] for column in columns]
        types = [str(column.get("type_name", "STRING")).upper() for column in columns]

        rows: List[Dict[str, Any]] = []
        chunk = payload.get("result") or {}
        while True:
            for values in chunk.get("data_array") or []:
                rows.append({
                    name: _convert_value(value, type_name)
                    for name, type_name, value in zip(names, types, values)
                })
            next_link = chunk.get("next_chunk_internal_link")
            if not next_link:
                return rows
            chunk = self._request("GET", next_link)

    def _cancel(self, statement_id: Optional[str]) -> None:
        if not statement_id:
            return
        try:
            self._client.http.post(
                f"{self._client.base_url}{STATEMENTS_PATH}/{statement_id}/cancel",
                headers=self._client.auth_headers(),
            )
        except Exception as e:
            logger.warning(f"{self.correlation_id}> Error cancelling statement {statement_id}: {e}",
                           extra=request_dimensions(self.correlation_id))
        self._in_flight.discard(statement_id)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for statement_id in list(self._in_flight):
            self._cancel(statement_id)
        logger.debug(f"{self.correlation_id}> Session closed",
                     extra=request_dimensions(self.correlation_id))


class DatabricksConnectionManager:
    """
    Owns the shared Databricks client for the process.

    Args:
        app_config: config.AppConfig with target and credentials
        timeout_seconds: Statement timeout for every session
        register_shutdown_hooks: Install atexit and SIGTERM/SIGINT handlers on first connect
        transport: Optional httpx transport (tests pass ``httpx.MockTransport``)
        clock: Monotonic clock used for deadlines and token expiry
        sleep: Pause between status polls
    """

    def __init__(self, app_config, timeout_seconds: int = 30,
                 register_shutdown_hooks: bool = True,
                 transport: Optional[httpx.BaseTransport] = None,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        self.app_config = app_config
        self.timeout_seconds = timeout_seconds
        self.register_shutdown_hooks = register_shutdown_hooks
        self._transport = transport
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._pending: Optional[Future] = None
        self._hooks_registered = False
        self._previous_handlers: Dict[int, Any] = {}

    # ========================================================================
    # CLIENT LIFECYCLE
    # ========================================================================

    def connect(self) -> DatabricksClient:
        """
        Return the shared client, creating it on first use.

        Concurrent first callers share one attempt. A failed attempt is
        cleared so the next call starts over.

        Raises:
            ConfigurationError: Missing target or credentials
        """
        with self._lock:
            pending = self._pending
            owner = pending is None
            if owner:
                pending = Future()
                self._pending = pending

        if not owner:
            return pending.result()

        try:
            client = self._do_connect()
        except BaseException as e:
            with self._lock:
                if self._pending is pending:
                    self._pending = None
            pending.set_exception(e)
            raise

        pending.set_result(client)
        return client

    def _do_connect(self) -> DatabricksClient:
        # Local import keeps config and feature_server importable in either order
        from config import CredentialScheme, resolve_credentials

        credentials = resolve_credentials(self.app_config)
        warehouse_id = warehouse_id_from_http_path(credentials.http_path)
        base_url = f"https://{credentials.server_hostname}"

        http = httpx.Client(
            timeout=httpx.Timeout(MAX_WAIT_SECONDS + CLIENT_TIMEOUT_GRACE_SECONDS),
            transport=self._transport,
        )

        if credentials.scheme == CredentialScheme.OAUTH_M2M:
            token_provider = OAuthTokenProvider(
                http, base_url,
                credentials.client_id,
                credentials.client_secret.get_secret_value(),
                clock=self._clock,
            )
        else:
            token = credentials.access_token.get_secret_value()
            token_provider = lambda: token  # noqa: E731

        client = DatabricksClient(
            base_url=base_url,
            warehouse_id=warehouse_id,
            scheme=credentials.scheme.value,
            http=http,
            token_provider=token_provider,
        )
        self._register_shutdown_hooks()

        logger.info(f"✅ Databricks client ready for {credentials.server_hostname} "
                    f"warehouse {warehouse_id} ({credentials.scheme.value})")
        return client

    def get_session(self, correlation_id: Optional[str] = None) -> DatabricksSession:
        """
        Open a new session on the shared client.

        Raises:
            ConfigurationError: Client could not be created
        """
        client = self.connect()
        return DatabricksSession(client, self.timeout_seconds, correlation_id,
                                 clock=self._clock, sleep=self._sleep)

    def close(self) -> None:
        """Close the shared client; the next connect() creates a new one."""
        with self._lock:
            pending = self._pending
            self._pending = None

        if pending is None or not pending.done() or pending.exception() is not None:
            return

        pending.result().close()
        logger.info("🔒 Databricks client closed")

    # ========================================================================
    # SHUTDOWN HOOKS
    # ========================================================================

    def _register_shutdown_hooks(self) -> None:
        if not self.register_shutdown_hooks or self._hooks_registered:
            return
        self._hooks_registered = True

        atexit.register(self.close)

        # signal.signal only works on the main thread
        if threading.current_thread() is not threading.main_thread():
            logger.debug("Not on the main thread; skipping signal handlers")
            return

        for signum in (signal.SIGTERM, signal.SIGINT):
            self._previous_handlers[signum] = signal.getsignal(signum)
            signal.signal(signum, self._handle_signal)

    def _handle_signal(self, signum, frame) -> None:
        logger.info(f"Received signal {signum}, closing Databricks client")
        self.close()
        previous = self._previous_handlers.get(signum)
        if callable(previous):
            previous(signum, frame)
        elif previous == signal.SIG_DFL:
            signal.signal(signum, signal.SIG_DFL)
            signal.raise_signal(signum)
