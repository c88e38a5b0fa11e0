# ============================================================================
# MODULE CONTEXT - FEATURE SERVER MODULE
# ============================================================================
# STATUS: Standalone Module - FeatureServer query engine over Databricks SQL
# PURPOSE: Translate FeatureServer queries into validated Databricks SQL and back
# EXPORTS: FeatureServerService, FeatureServerConfig, FeatureRequest, get_feature_server_triggers
# INTERFACES: Host calls FeatureServerService.get_data(FeatureRequest)
# PYDANTIC_MODELS: FeatureRequest, FeatureQuery, FeatureCollection, FieldMetadata
# DEPENDENCIES: httpx, pydantic, pydantic-settings, sqlparse, azure-functions
# SOURCE: Environment variables and feature_server.json
# SCOPE: Query translation, validation, execution and result translation
# PATTERNS: Service Layer, Builder, Standalone Module
# ENTRY_POINTS: from feature_server import get_feature_server_triggers
# ============================================================================

"""
FeatureServer Query Engine - Standalone Module

Accepts the ArcGIS FeatureServer ``query`` vocabulary (where, geometry,
outFields, paging, ordering, count/ids/extent-only, H3 and time filters),
validates every client fragment, builds one Databricks SQL statement,
executes it and returns a GeoJSON FeatureCollection with layer metadata.

Architecture:
    feature_server/
    ├── config.py          # Engine settings (pydantic-settings)
    ├── exceptions.py      # Typed errors mapped to HTTP status codes
    ├── models.py          # Pydantic request/response models
    ├── validation.py      # WHERE / column / order-by / table validation
    ├── geometry.py        # Geometry encoding -> SQL expression, bbox parsing
    ├── query_builder.py   # Statement construction (query/count/ids/extent)
    ├── translator.py      # Rows -> GeoJSON, extent, geometry type
    ├── metadata_cache.py  # DESCRIBE results with TTL and capacity
    ├── rate_limiter.py    # Per-client sliding window
    ├── service.py         # getData orchestration
    └── triggers.py        # Azure Functions HTTP handlers

Integration:
    # In function_app.py (ONLY integration point)
    from feature_server import get_feature_server_triggers
"""

from .config import FeatureServerConfig, GeometryFormat, get_feature_server_config
from .exceptions import (
    FeatureServerError,
    InvalidParameterError,
    ConfigurationError,
    RateLimitExceededError,
    QueryExecutionError,
    QueryTimeoutError
)
from .models import FeatureRequest, FeatureQuery
from .service import FeatureServerService, get_feature_server_service
from .triggers import get_feature_server_triggers

__version__ = "1.0.0"
__all__ = [
    "FeatureServerConfig",
    "GeometryFormat",
    "get_feature_server_config",
    "FeatureServerError",
    "InvalidParameterError",
    "ConfigurationError",
    "RateLimitExceededError",
    "QueryExecutionError",
    "QueryTimeoutError",
    "FeatureRequest",
    "FeatureQuery",
    "FeatureServerService",
    "get_feature_server_service",
    "get_feature_server_triggers"
]
