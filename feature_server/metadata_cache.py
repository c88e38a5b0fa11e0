# ============================================================================
# MODULE CONTEXT - FIELD METADATA CACHE
# ============================================================================
# STATUS: Core - schema enrichment for FeatureCollection metadata
# PURPOSE: TTL- and capacity-bounded cache of DESCRIBE results per table
# EXPORTS: FieldMetadataCache, CacheEntry, map_databricks_to_esri_field_type
# DEPENDENCIES: threading, time, util_logger
# PATTERNS: Read-through cache, injectable clock
# ENTRY_POINTS: FeatureServerService.get_data
# ============================================================================

"""
Field Metadata Cache

Layer field descriptions come from ``DESCRIBE <table>``. They change rarely,
so results are cached per table token for a configurable TTL. At capacity
the entry with the oldest timestamp is evicted before a new one is stored.

Introspection failures never fail a request: the caller gets an empty field
list and nothing is cached, so the next request tries again.
"""

import re
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from util_logger import LoggerFactory, ComponentType, request_dimensions
from .models import EsriFieldType, FieldMetadata

logger = LoggerFactory.create_logger(ComponentType.CACHE, "FieldMetadataCache")

# DESCRIBE section headers and partition info rows start with this marker
RESERVED_MARKER = "#"

_INTEGER_TYPE = re.compile(r"int(eger)?\b|long")


def map_databricks_to_esri_field_type(sql_type: Optional[str]) -> EsriFieldType:
    """
    Map a Databricks column type name to an ArcGIS field type.

    Examples:
        bigint -> esriFieldTypeBigInteger
        int -> esriFieldTypeInteger
        decimal(10,2) -> esriFieldTypeDouble
        timestamp -> esriFieldTypeDate
        boolean -> esriFieldTypeSmallInteger
        anything else -> esriFieldTypeString
    """
    t = (sql_type or "").strip().lower()
    if _INTEGER_TYPE.search(t):
        return EsriFieldType.BIG_INTEGER if "big" in t else EsriFieldType.INTEGER
    if "double" in t or "float" in t or "decimal" in t:
        return EsriFieldType.DOUBLE
    if "date" in t or "timestamp" in t:
        return EsriFieldType.DATE
    if "boolean" in t:
        return EsriFieldType.SMALL_INTEGER
    return EsriFieldType.STRING


@dataclass
class CacheEntry:
    data: List[FieldMetadata]
    timestamp: float


class FieldMetadataCache:
    """
    Per-table cache of FieldMetadata lists.

    Args:
        ttl_seconds: Entry lifetime
        max_entries: Capacity; the oldest entry is evicted when full
        geometry_column: Column excluded from field lists
        clock: Monotonic time source (injectable for tests)
    """

    def __init__(self, ttl_seconds: float, max_entries: int, geometry_column: str,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.geometry_column = geometry_column
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_field_metadata(self, table: str, session,
                           correlation_id: Optional[str] = None) -> List[FieldMetadata]:
        """
        Fields for ``table``, introspecting through ``session`` on a miss.

        Args:
            table: Validated table token
            session: Object with ``execute(sql) -> List[dict]``
            correlation_id: Request id for log correlation

        Returns:
            FieldMetadata list (empty when introspection failed)
        """
        now = self._clock()
        with self._lock:
            entry = self._entries.get(table)
            if entry is not None and now - entry.timestamp < self.ttl_seconds:
                return entry.data

        try:
            rows = session.execute(f"DESCRIBE {table}")
        except Exception as e:
            logger.warning(
                f"{correlation_id}> DESCRIBE {table} failed, returning no field metadata: {e}",
                extra=request_dimensions(correlation_id, table=table)
            )
            return []

        fields = self._to_field_metadata(rows)

        with self._lock:
            if table not in self._entries and len(self._entries) >= self.max_entries:
                oldest = min(self._entries, key=lambda k: self._entries[k].timestamp)
                del self._entries[oldest]
                logger.debug(f"Evicted field metadata for {oldest}")
            self._entries[table] = CacheEntry(data=fields, timestamp=self._clock())

        logger.debug(
            f"{correlation_id}> Cached {len(fields)} fields for {table}",
            extra=request_dimensions(correlation_id, table=table)
        )
        return fields

    def invalidate(self, table: Optional[str] = None) -> None:
        """Drop one table's entry, or every entry when ``table`` is None."""
        with self._lock:
            if table is None:
                self._entries.clear()
            else:
                self._entries.pop(table, None)

    def _to_field_metadata(self, rows) -> List[FieldMetadata]:
        fields = []
        seen = set()
        for row in rows:
            name = (row.get("col_name") or "").strip()
            if not name or name.startswith(RESERVED_MARKER) or name == self.geometry_column:
                continue
            # Partition columns are listed a second time after the partition header
            if name in seen:
                continue
            seen.add(name)
            sql_type = row.get("data_type") or ""
            fields.append(FieldMetadata(
                name=name,
                type=map_databricks_to_esri_field_type(sql_type),
                alias=name,
                sqlType=sql_type,
            ))
        return fields
