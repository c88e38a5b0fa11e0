# ============================================================================
# MODULE CONTEXT - FEATURE SERVER CONFIGURATION
# ============================================================================
# STATUS: Standalone Configuration - FeatureServer query engine
# PURPOSE: Process-wide engine settings (columns, geometry encoding, limits, TTLs)
# EXPORTS: FeatureServerConfig, GeometryFormat, get_feature_server_config
# INTERFACES: pydantic-settings BaseSettings
# PYDANTIC_MODELS: FeatureServerConfig
# DEPENDENCIES: pydantic, pydantic-settings
# SOURCE: JSON defaults file < .env < environment variables < explicit overrides
# SCOPE: Query engine configuration only (Databricks credentials live in config.py)
# VALIDATION: Pydantic v2 field constraints
# PATTERNS: Settings Pattern, Singleton via cached function
# ENTRY_POINTS: from feature_server.config import get_feature_server_config
# ============================================================================

"""
FeatureServer Configuration

Resolved once per process and injected into the service; nothing reads the
environment after startup.

Sources (increasing precedence):
    1. JSON file named by FEATURE_SERVER_CONFIG_FILE (default: feature_server.json)
    2. .env file
    3. Environment variables
    4. Keyword arguments passed to FeatureServerConfig(...)

Environment Variables:
    - OBJECT_ID_COLUMN: Unique row identifier column (default: "objectid")
    - GEOMETRY_COLUMN: Column carrying the geometry (default: "geometry_wkt")
    - GEOMETRY_FORMAT: wkt | wkb | geojson | geometry (default: "wkt")
    - SPATIAL_REFERENCE: Spatial reference id of stored geometries (default: 4326)
    - MAX_ROWS: Hard cap on rows per request (default: 10000)
    - DEFAULT_ROWS: Rows returned when resultRecordCount is absent (default: MAX_ROWS)
    - DEFAULT_TIME_FIELD: Column used by the time filter (default: "created_at")
    - QUERY_TIMEOUT_SECONDS: Statement timeout (default: 30)
    - METADATA_CACHE_TTL_SECONDS / METADATA_CACHE_MAX_ENTRIES
    - RATE_LIMIT_MAX_REQUESTS / RATE_LIMIT_WINDOW_SECONDS / RATE_LIMIT_SWEEP_INTERVAL_SECONDS
"""

import os
from enum import Enum
from functools import lru_cache
from typing import Optional, Tuple, Type

from pydantic import Field, model_validator
from pydantic_settings import (
    BaseSettings,
    JsonConfigSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

IDENTIFIER_PATTERN = r"^[A-Za-z_][A-Za-z0-9_]*$"

DEFAULT_CONFIG_FILE = "feature_server.json"


def _config_file_path() -> str:
    return os.getenv("FEATURE_SERVER_CONFIG_FILE", DEFAULT_CONFIG_FILE)


class GeometryFormat(str, Enum):
    """Storage encoding of the geometry column."""
    WKT = "wkt"
    WKB = "wkb"
    GEOJSON = "geojson"
    GEOMETRY = "geometry"


class FeatureServerConfig(BaseSettings):
    """
    Configuration for the FeatureServer query engine.

    Identifier settings are interpolated into SQL, so they are held to the
    same column-name rule the request validator applies.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Table layout
    object_id_column: str = Field(
        default="objectid",
        pattern=IDENTIFIER_PATTERN,
        description="Column holding the unique feature id"
    )
    geometry_column: str = Field(
        default="geometry_wkt",
        pattern=IDENTIFIER_PATTERN,
        description="Column holding the feature geometry"
    )
    geometry_format: GeometryFormat = Field(
        default=GeometryFormat.WKT,
        description="Encoding of the geometry column"
    )
    spatial_reference: int = Field(
        default=4326,
        ge=1,
        description="Spatial reference id (WKID) of stored geometries"
    )

    # Paging
    max_rows: int = Field(
        default=10000,
        ge=1,
        description="Maximum number of features allowed per request"
    )
    default_rows: Optional[int] = Field(
        default=None,
        ge=1,
        description="Features returned when resultRecordCount is absent (defaults to max_rows)"
    )

    # Filters
    default_time_field: str = Field(
        default="created_at",
        pattern=IDENTIFIER_PATTERN,
        description="Column used by the time filter when timeField is absent"
    )

    # Performance Settings
    query_timeout_seconds: int = Field(
        default=30,
        ge=1,
        le=3600,
        description="Maximum statement execution time in seconds"
    )
    metadata_cache_ttl_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Lifetime of cached DESCRIBE results"
    )
    metadata_cache_max_entries: int = Field(
        default=100,
        ge=1,
        description="Maximum number of tables held in the metadata cache"
    )

    # Rate limiting
    rate_limit_max_requests: int = Field(
        default=100,
        ge=1,
        description="Requests admitted per client per window"
    )
    rate_limit_window_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Sliding window length"
    )
    rate_limit_sweep_interval_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Interval of the background sweep that drops idle clients"
    )

    @model_validator(mode="after")
    def validate_default_rows(self) -> "FeatureServerConfig":
        """Ensure the default page size never exceeds the hard cap."""
        if self.default_rows is not None and self.default_rows > self.max_rows:
            raise ValueError(
                f"default_rows ({self.default_rows}) cannot exceed max_rows ({self.max_rows})"
            )
        return self

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        # First source wins
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            JsonConfigSettingsSource(settings_cls, json_file=_config_file_path()),
            file_secret_settings,
        )

    @property
    def page_size(self) -> int:
        """Rows returned when the request does not ask for a count."""
        return self.default_rows if self.default_rows is not None else self.max_rows


@lru_cache(maxsize=1)
def get_feature_server_config() -> FeatureServerConfig:
    """
    Get singleton FeatureServer configuration instance.

    Returns:
        Cached configuration instance

    Raises:
        ValidationError: If a configured value violates its constraint
    """
    return FeatureServerConfig()
