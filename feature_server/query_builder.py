# ============================================================================
# MODULE CONTEXT - FEATURE SERVER SQL BUILDER
# ============================================================================
# STATUS: Core - composes every statement sent to Databricks
# PURPOSE: Build query / count / ids / extent statements from validated fragments
# EXPORTS: FeatureQueryBuilder, GEOJSON_ALIAS
# DEPENDENCIES: feature_server.validation, feature_server.geometry, util_logger, datetime
# PATTERNS: Builder, fail-closed validation before composition
# ENTRY_POINTS: FeatureServerService.get_data
# ============================================================================

"""
FeatureServer SQL Builder

Turns a parsed FeatureQuery into exactly one Databricks SQL statement.

Statement shapes:
    query  -> SELECT <projection>[, ST_AsGeoJSON(g) AS __geojson__] FROM t
              [WHERE ...] [ORDER BY ...] LIMIT n [OFFSET m]
    count  -> SELECT COUNT(*) AS cnt FROM t [WHERE ...]
    ids    -> SELECT <id> FROM t [WHERE ...] ORDER BY <order|id> LIMIT n [OFFSET m]
    extent -> SELECT MIN(ST_XMin(ST_Envelope(g))) AS xmin, ... FROM t [WHERE ...]

WHERE predicates (AND-joined):
    - user predicate, validated and parenthesized (skipped when absent or 1=1)
    - envelope from ``geometry``: ST_Intersects(g, ST_GeomFromText('POLYGON(...)', srid))
    - H3 coverage: array_contains(h3_coverash3('POLYGON(...)', res), <h3col>)
    - time: <field> = TIMESTAMP '...' or <field> >= TIMESTAMP '...' AND <field> < TIMESTAMP '...'

Spatial policy:
    Malformed envelope coordinates mean "no spatial filter" and are logged.
    Anything interpolated as an identifier or integer (h3col, h3res,
    timeField, outFields, orderByFields, where, table) is rejected with
    InvalidParameterError naming the parameter.
"""

import re
from datetime import datetime, timezone
from typing import Any, List, Optional, Tuple

from util_logger import LoggerFactory, ComponentType
from .config import FeatureServerConfig
from .exceptions import InvalidParameterError
from .geometry import bbox_to_wkt, build_geometry_expression, parse_bbox
from .models import FeatureQuery
from .validation import (
    is_valid_table_name,
    sanitize_order_by,
    validate_column_list,
    validate_column_name,
    validate_where_clause,
)

logger = LoggerFactory.create_logger(ComponentType.BUILDER, "FeatureQueryBuilder")

# Reserved alias for the GeoJSON carrier column
GEOJSON_ALIAS = "__geojson__"

H3_MIN_RESOLUTION = 0
H3_MAX_RESOLUTION = 15

_ALWAYS_TRUE = re.compile(r"^\s*1\s*=\s*1\s*$")


class FeatureQueryBuilder:
    """
    Composes SQL statements from validator-approved fragments.

    Stateless apart from configuration; safe to share across threads.
    """

    def __init__(self, config: FeatureServerConfig):
        self.config = config
        self.geometry_expression = build_geometry_expression(config)

    # ========================================================================
    # STATEMENTS
    # ========================================================================

    def build_query(self, table: str, query: FeatureQuery) -> str:
        """
        Full feature query.

        Args:
            table: Validated table token
            query: Parsed request parameters

        Returns:
            SQL text

        Raises:
            InvalidParameterError: If any fragment fails validation
        """
        self._require_table(table)
        select_clause = self.build_select_clause(query.out_fields, query.return_geometry)
        predicates = self.build_where_clause(query)
        limit, offset = self.resolve_pagination(query)
        order_by = self.resolve_order_by(query, limit, offset)

        parts = [f"SELECT {select_clause} FROM {table}"]
        if predicates:
            parts.append(f"WHERE {' AND '.join(predicates)}")
        if order_by:
            parts.append(f"ORDER BY {order_by}")
        parts.append(f"LIMIT {limit}")
        if offset > 0:
            parts.append(f"OFFSET {offset}")

        sql = " ".join(parts)
        logger.debug(f"Built feature query: {sql}")
        return sql

    def build_count_query(self, table: str, query: FeatureQuery) -> str:
        """``SELECT COUNT(*) AS cnt`` over the filtered table."""
        self._require_table(table)
        predicates = self.build_where_clause(query)

        parts = [f"SELECT COUNT(*) AS cnt FROM {table}"]
        if predicates:
            parts.append(f"WHERE {' AND '.join(predicates)}")
        return " ".join(parts)

    def build_ids_query(self, table: str, query: FeatureQuery) -> str:
        """Id-only query; always ordered so pages are stable."""
        self._require_table(table)
        id_column = self.config.object_id_column
        predicates = self.build_where_clause(query)
        limit, offset = self.resolve_pagination(query)
        order_by = self._explicit_order_by(query) or id_column

        parts = [f"SELECT {id_column} FROM {table}"]
        if predicates:
            parts.append(f"WHERE {' AND '.join(predicates)}")
        parts.append(f"ORDER BY {order_by}")
        parts.append(f"LIMIT {limit}")
        if offset > 0:
            parts.append(f"OFFSET {offset}")
        return " ".join(parts)

    def build_extent_query(self, table: str, query: FeatureQuery) -> str:
        """Envelope of every matching row's geometry."""
        self._require_table(table)
        envelope = f"ST_Envelope({self.geometry_expression})"
        predicates = self.build_where_clause(query)

        parts = [
            f"SELECT MIN(ST_XMin({envelope})) AS xmin, "
            f"MIN(ST_YMin({envelope})) AS ymin, "
            f"MAX(ST_XMax({envelope})) AS xmax, "
            f"MAX(ST_YMax({envelope})) AS ymax "
            f"FROM {table}"
        ]
        if predicates:
            parts.append(f"WHERE {' AND '.join(predicates)}")
        return " ".join(parts)

    # ========================================================================
    # CLAUSES
    # ========================================================================

    def build_select_clause(self, out_fields: Optional[str], return_geometry: bool) -> str:
        """
        Projection list, with the GeoJSON carrier appended when geometry is requested.

        Raises:
            InvalidParameterError: If outFields is not '*' or a valid column list
        """
        if out_fields is None or out_fields.strip() in ("", "*"):
            projection = "*"
        else:
            result = validate_column_list(out_fields)
            if not result.valid:
                raise InvalidParameterError("outFields", result.error)
            if any(f.lower() == GEOJSON_ALIAS for f in result.fields):
                raise InvalidParameterError("outFields", f"{GEOJSON_ALIAS} is a reserved name")
            projection = ", ".join(result.fields)

        if return_geometry:
            return f"{projection}, ST_AsGeoJSON({self.geometry_expression}) AS {GEOJSON_ALIAS}"
        return projection

    def build_where_clause(self, query: FeatureQuery) -> List[str]:
        """
        Predicates to AND together; an empty list means no WHERE clause.

        Raises:
            InvalidParameterError: For an invalid where, h3col, h3res or timeField
        """
        predicates = []

        where = query.where
        if where is not None and not _ALWAYS_TRUE.match(where):
            result = validate_where_clause(where)
            if not result.valid:
                logger.warning(f"Rejected where clause: {result.error}")
                raise InvalidParameterError("where", result.error)
            predicates.append(f"({where.strip()})")

        bbox_predicate = self._build_bbox_predicate(query)
        if bbox_predicate:
            predicates.append(bbox_predicate)

        h3_predicate = self._build_h3_predicate(query)
        if h3_predicate:
            predicates.append(h3_predicate)

        time_predicate = self._build_time_predicate(query)
        if time_predicate:
            predicates.append(time_predicate)

        return predicates

    def resolve_pagination(self, query: FeatureQuery) -> Tuple[int, int]:
        """
        (limit, offset) for a request.

        Absent or non-positive counts fall back to the configured page size;
        counts above the maximum are clamped; negative offsets become 0.
        """
        limit = query.result_record_count
        if limit is None or limit <= 0:
            limit = self.config.page_size
        limit = min(limit, self.config.max_rows)

        offset = query.result_offset
        if offset is None or offset < 0:
            offset = 0

        return limit, offset

    def resolve_order_by(self, query: FeatureQuery, limit: int, offset: int) -> Optional[str]:
        """Explicit order list, else the id column whenever paging is non-trivial."""
        explicit = self._explicit_order_by(query)
        if explicit:
            return explicit
        if offset > 0 or limit < self.config.max_rows:
            return self.config.object_id_column
        return None

    # ========================================================================
    # PREDICATES
    # ========================================================================

    def _explicit_order_by(self, query: FeatureQuery) -> Optional[str]:
        if query.order_by_fields is None:
            return None
        order_by = sanitize_order_by(query.order_by_fields)
        if GEOJSON_ALIAS in order_by.lower():
            raise InvalidParameterError("orderByFields", f"{GEOJSON_ALIAS} is a reserved name")
        return order_by

    def _build_bbox_predicate(self, query: FeatureQuery) -> Optional[str]:
        if query.geometry is None:
            return None

        bbox = parse_bbox(query.geometry)
        if bbox is None:
            logger.warning(f"Ignoring malformed geometry envelope: {query.geometry!r}")
            return None

        srid = self.config.spatial_reference
        return (
            f"ST_Intersects({self.geometry_expression}, "
            f"ST_GeomFromText('{bbox_to_wkt(bbox)}', {srid}))"
        )

    def _build_h3_predicate(self, query: FeatureQuery) -> Optional[str]:
        if query.h3col is None and query.h3res is None:
            return None
        if query.h3col is None or query.h3res is None:
            raise InvalidParameterError("h3col" if query.h3col is None else "h3res",
                                        "h3col and h3res must be supplied together")

        column = validate_column_name(query.h3col)
        if not column.valid:
            raise InvalidParameterError("h3col", "h3col must be a valid column name")
        resolution = _parse_resolution(query.h3res)
        if resolution is None:
            raise InvalidParameterError(
                "h3res",
                f"h3res must be an integer between {H3_MIN_RESOLUTION} and {H3_MAX_RESOLUTION}"
            )

        # bbox is the primary source; geometry is accepted as a fallback
        source = query.bbox if query.bbox is not None else query.geometry
        bbox = parse_bbox(source)
        if bbox is None:
            logger.warning(f"Ignoring H3 filter without a usable bbox: {source!r}")
            return None

        return (
            f"array_contains(h3_coverash3('{bbox_to_wkt(bbox)}', {resolution}), "
            f"{column.fields[0]})"
        )

    def _build_time_predicate(self, query: FeatureQuery) -> Optional[str]:
        if query.time is None or (isinstance(query.time, str) and not query.time.strip()):
            return None

        field_name = query.time_field if query.time_field is not None else self.config.default_time_field
        column = validate_column_name(field_name)
        if not column.valid:
            raise InvalidParameterError("timeField", "Invalid timeField")
        field_name = column.fields[0]

        bounds = _parse_time(query.time)
        if bounds is None:
            logger.warning(f"Ignoring malformed time parameter: {query.time!r}")
            return None

        if len(bounds) == 1:
            return f"{field_name} = TIMESTAMP '{bounds[0]}'"

        start, end = bounds
        clauses = []
        if start is not None:
            clauses.append(f"{field_name} >= TIMESTAMP '{start}'")
        if end is not None:
            clauses.append(f"{field_name} < TIMESTAMP '{end}'")
        return " AND ".join(clauses) if clauses else None

    def _require_table(self, table: str) -> None:
        if not is_valid_table_name(table):
            raise InvalidParameterError("table", f"Invalid table name: {table!r}")


# ============================================================================
# HELPERS
# ============================================================================

def _parse_resolution(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        resolution = value
    else:
        text = str(value).strip()
        if not re.fullmatch(r"\d+", text):
            return None
        resolution = int(text)
    if H3_MIN_RESOLUTION <= resolution <= H3_MAX_RESOLUTION:
        return resolution
    return None


def _epoch_ms_to_iso(value: int) -> str:
    instant = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    return instant.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _parse_epoch_ms(text: str) -> Optional[str]:
    text = text.strip()
    if not re.fullmatch(r"-?\d+", text):
        raise ValueError(text)
    return _epoch_ms_to_iso(int(text))


def _parse_time(value: Any) -> Optional[tuple]:
    """
    Epoch-millisecond instant ``(iso,)`` or range ``(start, end)``.

    Range ends may be ``null`` (open). Returns None when unparseable.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        value = str(value)
    if not isinstance(value, str):
        return None

    parts = value.split(",")
    try:
        if len(parts) == 1:
            return (_parse_epoch_ms(parts[0]),)
        if len(parts) == 2:
            return tuple(
                None if p.strip().lower() in ("", "null") else _parse_epoch_ms(p)
                for p in parts
            )
    except (ValueError, OverflowError, OSError):
        return None
    return None
