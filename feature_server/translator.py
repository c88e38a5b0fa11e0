# ============================================================================
# MODULE CONTEXT - FEATURE SERVER RESULT TRANSLATION
# ============================================================================
# STATUS: Core - tabular rows to GeoJSON features
# PURPOSE: Build features from rows carrying ST_AsGeoJSON output, compute extents
# EXPORTS: translate_with_st_functions, get_all_coordinates, calculate_extent,
#          detect_geometry_type
# DEPENDENCIES: json, math, util_logger
# PATTERNS: Pure functions, degrade-don't-fail on bad geometry
# ENTRY_POINTS: FeatureServerService.get_data
# ============================================================================

"""
Result Translation

Rows come back from Databricks as dicts. Full queries carry the geometry as
GeoJSON text in the reserved ``__geojson__`` column; it is parsed into the
feature geometry and removed from the properties. A row whose geometry text
cannot be parsed still becomes a feature, with ``geometry: None``.
"""

import json
import math
from typing import Any, Dict, Iterable, List, Optional, Tuple

from util_logger import LoggerFactory, ComponentType
from .models import Extent, SpatialReference
from .query_builder import GEOJSON_ALIAS

logger = LoggerFactory.create_logger(ComponentType.ADAPTER, "ResultTranslator")

ESRI_GEOMETRY_TYPES = {
    "Point": "esriGeometryPoint",
    "MultiPoint": "esriGeometryMultipoint",
    "LineString": "esriGeometryPolyline",
    "MultiLineString": "esriGeometryPolyline",
    "Polygon": "esriGeometryPolygon",
    "MultiPolygon": "esriGeometryPolygon",
}
DEFAULT_ESRI_GEOMETRY_TYPE = "esriGeometryPoint"


def _parse_geometry(text: Any) -> Optional[Dict[str, Any]]:
    if text is None or text == "":
        return None
    if isinstance(text, dict):
        return text
    try:
        geometry = json.loads(text)
    except (TypeError, ValueError) as e:
        logger.error(f"Error parsing GeoJSON from ST_AsGeoJSON: {e}")
        return None
    if not isinstance(geometry, dict):
        logger.error(f"ST_AsGeoJSON returned a non-object value: {type(geometry).__name__}")
        return None
    return geometry


def translate_with_st_functions(rows: Iterable[Dict[str, Any]],
                                return_geometry: bool = True) -> Dict[str, Any]:
    """
    Convert result rows into a GeoJSON FeatureCollection.

    Args:
        rows: Result rows as dicts
        return_geometry: When False, every feature gets ``geometry: None``

    Returns:
        {"type": "FeatureCollection", "features": [...]}
    """
    features = []
    for row in rows:
        properties = dict(row)
        carrier = properties.pop(GEOJSON_ALIAS, None)
        geometry = _parse_geometry(carrier) if return_geometry else None
        features.append({
            "type": "Feature",
            "geometry": geometry,
            "properties": properties,
        })

    return {"type": "FeatureCollection", "features": features}


def get_all_coordinates(geometry: Optional[Dict[str, Any]]) -> List[Tuple[float, float]]:
    """
    Flatten every (x, y) position of a GeoJSON geometry.

    Unknown types and malformed coordinate arrays yield no positions.
    """
    if not geometry:
        return []

    geometry_type = geometry.get("type")
    if geometry_type == "GeometryCollection":
        coords = []
        for member in geometry.get("geometries") or []:
            coords.extend(get_all_coordinates(member))
        return coords

    depth = {
        "Point": 0,
        "MultiPoint": 1,
        "LineString": 1,
        "MultiLineString": 2,
        "Polygon": 2,
        "MultiPolygon": 3,
    }.get(geometry_type)
    if depth is None:
        return []

    return list(_positions(geometry.get("coordinates"), depth))


def _positions(value: Any, depth: int):
    if not isinstance(value, (list, tuple)):
        return
    if depth == 0:
        if len(value) >= 2 and all(isinstance(v, (int, float)) and not isinstance(v, bool)
                                   for v in value[:2]):
            yield float(value[0]), float(value[1])
        return
    for item in value:
        yield from _positions(item, depth - 1)


def calculate_extent(features: Iterable[Dict[str, Any]], wkid: int) -> Optional[Extent]:
    """
    Envelope of all feature geometries.

    Returns:
        Extent, or None when no feature has a usable geometry
    """
    xmin = ymin = math.inf
    xmax = ymax = -math.inf

    for feature in features:
        for x, y in get_all_coordinates(feature.get("geometry")):
            xmin = min(xmin, x)
            ymin = min(ymin, y)
            xmax = max(xmax, x)
            ymax = max(ymax, y)

    if xmin == math.inf:
        return None

    return Extent(
        xmin=xmin, ymin=ymin, xmax=xmax, ymax=ymax,
        spatialReference=SpatialReference(wkid=wkid),
    )


def detect_geometry_type(features: List[Dict[str, Any]]) -> Optional[str]:
    """
    ArcGIS geometry type of the collection, read from the first feature.

    Returns None when the first feature has no geometry.
    """
    if not features or not features[0].get("geometry"):
        return None

    geometry_type = features[0]["geometry"].get("type")
    esri_type = ESRI_GEOMETRY_TYPES.get(geometry_type)
    if esri_type is None:
        logger.warning(f"Unknown geometry type {geometry_type!r}, reporting {DEFAULT_ESRI_GEOMETRY_TYPE}")
        return DEFAULT_ESRI_GEOMETRY_TYPE
    return esri_type
