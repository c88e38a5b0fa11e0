# ============================================================================
# MODULE CONTEXT - FEATURE SERVER SERVICE
# ============================================================================
# STATUS: Core Service - FeatureServer query engine orchestration
# PURPOSE: getData: rate limit, validate, build, execute, translate, enrich
# EXPORTS: FeatureServerService, get_feature_server_service
# INTERFACES: None (called by triggers or any host)
# PYDANTIC_MODELS: FeatureRequest, FeatureCollection, CountResult, IdsResult, ExtentResult
# DEPENDENCIES: feature_server.*, infrastructure.databricks, util_logger
# SOURCE: Databricks SQL warehouse via DatabricksConnectionManager
# SCOPE: One request in, one statement out, one typed result back
# PATTERNS: Service Layer, Facade Pattern, explicit state object
# ENTRY_POINTS: service = get_feature_server_service(); result = service.get_data(request)
# ============================================================================

"""
FeatureServer Service - Query Engine

Coordinates a single getData call:

    1. Rate limit the client identity
    2. Validate the table token and parse the query parameters
    3. Select the mode (count, then ids, then extent, else full query)
    4. Build the statement (every validation happens here, before any session)
    5. Open a session, execute the statement, translate the rows
    6. Attach layer metadata (geometry type, cached field list, extent)
    7. Close the session on every path

Long-lived state (metadata cache, rate windows, Databricks client) lives on
the service instance, which is built once per process by
``get_feature_server_service()``.
"""

from functools import lru_cache
from typing import Any, Dict, Optional, Union

from util_logger import LoggerFactory, ComponentType, LogContext
from .config import FeatureServerConfig, get_feature_server_config
from .exceptions import InvalidParameterError
from .metadata_cache import FieldMetadataCache
from .models import (
    CountResult,
    Extent,
    ExtentResult,
    FeatureCollection,
    FeatureCollectionMetadata,
    FeatureQuery,
    FeatureRequest,
    FiltersApplied,
    IdsResult,
    SpatialReference,
)
from .query_builder import FeatureQueryBuilder
from .rate_limiter import SlidingWindowRateLimiter
from .translator import calculate_extent, detect_geometry_type, translate_with_st_functions
from .validation import is_valid_table_name

logger = LoggerFactory.create_logger(ComponentType.SERVICE, "FeatureServerService")

FeatureServerResult = Union[FeatureCollection, CountResult, IdsResult, ExtentResult]


class FeatureServerService:
    """
    Query engine for FeatureServer requests against Databricks SQL.

    Responsibilities:
    - Admission control (per-client sliding window)
    - Statement construction through FeatureQueryBuilder
    - Session lifecycle through the connection manager
    - Translation of rows into features and scalar results
    - Layer metadata enrichment (field list cache, extent)
    """

    def __init__(self,
                 connection_manager,
                 config: Optional[FeatureServerConfig] = None,
                 metadata_cache: Optional[FieldMetadataCache] = None,
                 rate_limiter: Optional[SlidingWindowRateLimiter] = None):
        """
        Initialize service with configuration.

        Args:
            connection_manager: Object exposing ``get_session(correlation_id)``
            config: Engine configuration (uses singleton if not provided)
            metadata_cache: Field metadata cache (built from config if not provided)
            rate_limiter: Rate limiter (built from config if not provided)
        """
        self.config = config or get_feature_server_config()
        self.connection_manager = connection_manager
        self.builder = FeatureQueryBuilder(self.config)
        self.metadata_cache = metadata_cache if metadata_cache is not None else FieldMetadataCache(
            ttl_seconds=self.config.metadata_cache_ttl_seconds,
            max_entries=self.config.metadata_cache_max_entries,
            geometry_column=self.config.geometry_column,
        )
        self.rate_limiter = rate_limiter if rate_limiter is not None else SlidingWindowRateLimiter(
            max_requests=self.config.rate_limit_max_requests,
            window_seconds=self.config.rate_limit_window_seconds,
            sweep_interval_seconds=self.config.rate_limit_sweep_interval_seconds,
        )
        logger.info(
            f"FeatureServerService initialized: idField={self.config.object_id_column}, "
            f"geometry={self.config.geometry_column} ({self.config.geometry_format.value}), "
            f"wkid={self.config.spatial_reference}, maxRows={self.config.max_rows}"
        )

    # ========================================================================
    # SERVER INFO
    # ========================================================================

    def get_server_info(self) -> Dict[str, Any]:
        """Static description of this FeatureServer endpoint."""
        return {
            "currentVersion": 11.2,
            "fullVersion": "11.2.0",
            "maxRecordCount": self.config.max_rows,
            "idField": self.config.object_id_column,
            "spatialReference": {"wkid": self.config.spatial_reference},
            "supportedQueryFormats": "JSON, geojson",
            "capabilities": "Query",
        }

    # ========================================================================
    # QUERY ENGINE
    # ========================================================================

    def get_data(self, request: FeatureRequest) -> FeatureServerResult:
        """
        Answer one FeatureServer query.

        Args:
            request: Table token, raw parameters, client id, correlation id

        Returns:
            FeatureCollection, CountResult, IdsResult or ExtentResult by mode

        Raises:
            RateLimitExceededError: Client is over its budget
            InvalidParameterError: A parameter failed validation (no SQL was sent)
            ConfigurationError: Databricks target or credentials missing
            QueryExecutionError: The warehouse failed the statement
            QueryTimeoutError: The statement exceeded its timeout
        """
        cid = request.correlation_id
        table = request.table
        context = LogContext(correlation_id=cid, client_id=request.client_id, table=table)
        dims = context.dimensions()

        self.rate_limiter.enforce(request.client_id)

        if not is_valid_table_name(table):
            logger.warning(f"{cid}> Invalid table name: {table!r}", extra=dims)
            raise InvalidParameterError("table", "Invalid table name provided")

        query = FeatureQuery.from_params(request.params)
        mode = query.mode
        context.mode = mode
        dims = context.dimensions()
        statement = self._build_statement(mode, table, query)
        logger.info(f"{cid}> Executing {mode} query: {statement}", extra=dims)

        session = self.connection_manager.get_session(cid)
        try:
            rows = session.execute(statement)

            if mode == "count":
                count = int(rows[0].get("cnt") or 0) if rows else 0
                logger.info(f"{cid}> Count result: {count}", extra=dims)
                return CountResult(count=count)

            if mode == "ids":
                id_column = self.config.object_id_column
                object_ids = [row.get(id_column) for row in rows]
                logger.info(f"{cid}> Returned {len(object_ids)} IDs", extra=dims)
                return IdsResult(objectIdFieldName=id_column, objectIds=object_ids)

            if mode == "extent":
                return self._to_extent_result(rows, cid, dims)

            return self._to_feature_collection(table, query, rows, session, cid, dims)

        finally:
            session.close()

    def _build_statement(self, mode: str, table: str, query: FeatureQuery) -> str:
        if mode == "count":
            return self.builder.build_count_query(table, query)
        if mode == "ids":
            return self.builder.build_ids_query(table, query)
        if mode == "extent":
            return self.builder.build_extent_query(table, query)
        return self.builder.build_query(table, query)

    def _to_extent_result(self, rows, cid: str, dims: Dict[str, Any]) -> ExtentResult:
        row = rows[0] if rows else {}
        bounds = [row.get(key) for key in ("xmin", "ymin", "xmax", "ymax")]
        if any(value is None for value in bounds):
            logger.info(f"{cid}> No extent found (empty dataset or invalid geometries)", extra=dims)
            return ExtentResult(extent=None)

        extent = Extent(
            xmin=bounds[0], ymin=bounds[1], xmax=bounds[2], ymax=bounds[3],
            spatialReference=SpatialReference(wkid=self.config.spatial_reference),
        )
        logger.info(f"{cid}> Extent result: {extent.model_dump()}", extra=dims)
        return ExtentResult(extent=extent)

    def _to_feature_collection(self, table: str, query: FeatureQuery, rows, session,
                               cid: str, dims: Dict[str, Any]) -> FeatureCollection:
        logger.info(f"{cid}> Received {len(rows)} rows", extra=dims)
        geojson = translate_with_st_functions(rows, return_geometry=query.return_geometry)
        features = geojson["features"]

        geometry_type = detect_geometry_type(features)
        if geometry_type:
            logger.debug(f"{cid}> Detected geometry type: {geometry_type}", extra=dims)

        fields = self.metadata_cache.get_field_metadata(table, session, correlation_id=cid)
        extent = calculate_extent(features, self.config.spatial_reference) if features else None

        metadata = FeatureCollectionMetadata(
            idField=self.config.object_id_column,
            name=table,
            maxRecordCount=self.config.max_rows,
            geometryType=geometry_type,
            fields=fields,
            extent=extent,
        )
        logger.info(f"{cid}> Translated to {len(features)} features", extra=dims)
        return FeatureCollection(features=features, metadata=metadata, filtersApplied=FiltersApplied())


@lru_cache(maxsize=1)
def get_feature_server_service() -> FeatureServerService:
    """
    Get the process-wide service instance.

    Builds configuration, the Databricks connection manager and the rate
    limiter sweeper once. The Databricks client itself is created lazily on
    the first request.
    """
    from config import get_app_config
    from infrastructure.databricks import DatabricksConnectionManager

    config = get_feature_server_config()
    app_config = get_app_config()
    connection_manager = DatabricksConnectionManager(
        app_config,
        timeout_seconds=config.query_timeout_seconds,
        register_shutdown_hooks=app_config.register_shutdown_hooks,
    )
    service = FeatureServerService(connection_manager, config=config)
    service.rate_limiter.start_sweeper()
    return service
