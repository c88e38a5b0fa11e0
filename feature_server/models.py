# ============================================================================
# MODULE CONTEXT - FEATURE SERVER MODELS
# ============================================================================
# STATUS: Standalone Models - FeatureServer request/response Pydantic models
# PURPOSE: Typed request parameters and response payloads of the query engine
# EXPORTS: FeatureRequest, FeatureQuery, FeatureCollection, FeatureCollectionMetadata,
#          FiltersApplied, FieldMetadata, EsriFieldType, Extent, SpatialReference,
#          CountResult, IdsResult, ExtentResult
# INTERFACES: Pydantic BaseModel
# PYDANTIC_MODELS: All classes in this file
# DEPENDENCIES: pydantic, typing
# SOURCE: ArcGIS FeatureServer query vocabulary, GeoJSON RFC 7946
# SCOPE: FeatureServer request and response models
# VALIDATION: Pydantic v2 validation
# PATTERNS: Data Transfer Objects (DTOs)
# ENTRY_POINTS: from feature_server.models import FeatureRequest, FeatureQuery
# ============================================================================

"""
FeatureServer Pydantic Models

Response field names keep the ArcGIS camelCase spelling (``idField``,
``maxRecordCount``, ``objectIdFieldName``) so payloads serialize without
aliases. Request parameters are parsed into snake_case fields by
``FeatureQuery.from_params``; free-text fragments stay raw strings and are
validated by the builder when they are turned into SQL.
"""

import uuid
from enum import Enum
from typing import Any, Dict, List, Literal, Mapping, Optional

from pydantic import BaseModel, Field


# ============================================================================
# REQUEST MODELS
# ============================================================================

def _parse_flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return False


def _parse_int(value: Any) -> Optional[int]:
    """Lenient integer parsing; anything unparseable is treated as absent."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value)
    return text if text.strip() else None


class FeatureQuery(BaseModel):
    """
    Parsed FeatureServer query parameters.

    Built from the raw wire mapping with ``from_params``. Unknown parameters
    (``f``, ``outSR``, ...) are ignored.
    """
    where: Optional[str] = Field(default=None, description="Attribute predicate")
    geometry: Optional[Any] = Field(default=None, description="Envelope filter (CSV or JSON envelope)")
    geometry_type: Optional[str] = Field(default=None, description="ArcGIS geometry type of the filter")
    out_fields: str = Field(default="*", description="Comma-separated projection or '*'")
    return_geometry: bool = Field(default=True, description="Include feature geometry")
    result_offset: Optional[int] = Field(default=None, description="Rows to skip")
    result_record_count: Optional[int] = Field(default=None, description="Rows to return")
    order_by_fields: Optional[str] = Field(default=None, description="Comma-separated order list")
    return_count_only: bool = Field(default=False)
    return_ids_only: bool = Field(default=False)
    return_extent_only: bool = Field(default=False)
    bbox: Optional[str] = Field(default=None, description="Envelope for the H3 coverage filter")
    h3col: Optional[str] = Field(default=None, description="Column holding H3 cell ids")
    h3res: Optional[Any] = Field(default=None, description="H3 resolution (0-15)")
    time: Optional[Any] = Field(default=None, description="Epoch ms instant or 'start,end' range")
    time_field: Optional[str] = Field(default=None, description="Column the time filter applies to")

    @classmethod
    def from_params(cls, params: Optional[Mapping[str, Any]]) -> "FeatureQuery":
        """
        Parse the raw query-string mapping.

        Args:
            params: Wire parameters (values are usually strings)

        Returns:
            FeatureQuery with flags and paging values normalized
        """
        params = params or {}
        out_fields = _optional_text(params.get("outFields"))
        return_geometry = params.get("returnGeometry")

        return cls(
            where=_optional_text(params.get("where")),
            geometry=params.get("geometry") or None,
            geometry_type=_optional_text(params.get("geometryType")),
            out_fields=out_fields.strip() if out_fields else "*",
            return_geometry=True if return_geometry is None else _parse_flag(return_geometry),
            result_offset=_parse_int(params.get("resultOffset")),
            result_record_count=_parse_int(params.get("resultRecordCount")),
            order_by_fields=_optional_text(params.get("orderByFields")),
            return_count_only=_parse_flag(params.get("returnCountOnly")),
            return_ids_only=_parse_flag(params.get("returnIdsOnly")),
            return_extent_only=_parse_flag(params.get("returnExtentOnly")),
            bbox=_optional_text(params.get("bbox")),
            h3col=_optional_text(params.get("h3col")),
            h3res=params.get("h3res"),
            time=params.get("time"),
            time_field=_optional_text(params.get("timeField")),
        )

    @property
    def mode(self) -> str:
        """Statement mode; count wins over ids, ids over extent."""
        if self.return_count_only:
            return "count"
        if self.return_ids_only:
            return "ids"
        if self.return_extent_only:
            return "extent"
        return "query"


class FeatureRequest(BaseModel):
    """One getData call: target table token plus query parameters."""
    table: str = Field(description="catalog.schema.table or schema.table")
    params: Dict[str, Any] = Field(default_factory=dict, description="Raw query parameters")
    client_id: str = Field(default="anonymous", description="Rate-limit identity")
    correlation_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Request correlation id carried in logs"
    )


# ============================================================================
# METADATA MODELS
# ============================================================================

class EsriFieldType(str, Enum):
    """ArcGIS field types reported in layer metadata."""
    INTEGER = "esriFieldTypeInteger"
    BIG_INTEGER = "esriFieldTypeBigInteger"
    DOUBLE = "esriFieldTypeDouble"
    DATE = "esriFieldTypeDate"
    SMALL_INTEGER = "esriFieldTypeSmallInteger"
    STRING = "esriFieldTypeString"
    OID = "esriFieldTypeOID"


class FieldMetadata(BaseModel):
    """Layer field description derived from DESCRIBE output."""
    name: str
    type: EsriFieldType
    alias: str
    sqlType: str = Field(description="Type name reported by the remote engine")
    nullable: bool = True
    editable: bool = False
    domain: Optional[Any] = None
    defaultValue: Optional[Any] = None


class SpatialReference(BaseModel):
    wkid: int


class Extent(BaseModel):
    """Envelope of a set of features."""
    xmin: float
    ymin: float
    xmax: float
    ymax: float
    spatialReference: SpatialReference


# ============================================================================
# RESPONSE MODELS
# ============================================================================

class FiltersApplied(BaseModel):
    """Declares that filtering/paging was done server-side."""
    offset: bool = True
    limit: bool = True
    where: bool = True
    geometry: bool = True


class FeatureCollectionMetadata(BaseModel):
    idField: str
    name: str
    maxRecordCount: int
    geometryType: Optional[str] = None
    fields: Optional[List[FieldMetadata]] = None
    extent: Optional[Extent] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize, omitting optional sections that were not computed."""
        data: Dict[str, Any] = {
            "idField": self.idField,
            "name": self.name,
            "maxRecordCount": self.maxRecordCount,
        }
        if self.geometryType is not None:
            data["geometryType"] = self.geometryType
        if self.fields is not None:
            data["fields"] = [f.model_dump(mode="json") for f in self.fields]
        if self.extent is not None:
            data["extent"] = self.extent.model_dump(mode="json")
        return data


class FeatureCollection(BaseModel):
    """GeoJSON FeatureCollection with ArcGIS layer metadata."""
    type: Literal["FeatureCollection"] = "FeatureCollection"
    features: List[Dict[str, Any]] = Field(default_factory=list)
    metadata: FeatureCollectionMetadata
    filtersApplied: FiltersApplied = Field(default_factory=FiltersApplied)

    def to_response(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "features": self.features,
            "metadata": self.metadata.to_dict(),
            "filtersApplied": self.filtersApplied.model_dump(),
        }


class CountResult(BaseModel):
    count: int

    def to_response(self) -> Dict[str, Any]:
        return {"count": self.count}


class IdsResult(BaseModel):
    objectIdFieldName: str
    objectIds: List[Any] = Field(default_factory=list)

    def to_response(self) -> Dict[str, Any]:
        return {"objectIdFieldName": self.objectIdFieldName, "objectIds": self.objectIds}


class ExtentResult(BaseModel):
    """Envelope of all matching rows; ``extent`` is None when nothing matched."""
    extent: Optional[Extent] = None

    def to_response(self) -> Dict[str, Any]:
        return {"extent": self.extent.model_dump(mode="json") if self.extent else None}
