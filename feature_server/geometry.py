# ============================================================================
# MODULE CONTEXT - GEOMETRY EXPRESSIONS
# ============================================================================
# STATUS: Core - single home of the storage encoding -> SQL mapping
# PURPOSE: Build the SQL expression that yields a geometry, parse bounding boxes
# EXPORTS: build_geometry_expression, parse_bbox, bbox_to_wkt, BBox
# DEPENDENCIES: json, math
# PATTERNS: Pure functions
# ENTRY_POINTS: Used by FeatureQueryBuilder for projections and spatial predicates
# ============================================================================

"""
Geometry Expressions

The geometry column can be stored as WKT text, WKB bytes, GeoJSON text or a
native GEOMETRY column. Every statement needs a geometry-valued expression,
so the conversion happens here and nowhere else:

    wkt      -> ST_GeomFromText(<col>, <srid>)
    wkb      -> ST_GeomFromWKB(<col>)
    geojson  -> ST_GeomFromGeoJSON(<col>)
    geometry -> <col>

Bounding boxes arrive either as ``xmin,ymin,xmax,ymax`` text or as an
ArcGIS JSON envelope (``{"xmin": .., "ymin": .., "xmax": .., "ymax": ..}``).
Malformed boxes parse to ``None`` and callers decide what that means.
"""

import json
import math
from typing import Any, Optional, Tuple

from .config import FeatureServerConfig, GeometryFormat

BBox = Tuple[float, float, float, float]

_ENVELOPE_KEYS = ("xmin", "ymin", "xmax", "ymax")


def build_geometry_expression(config: FeatureServerConfig) -> str:
    """
    SQL expression converting the configured geometry column into a geometry.

    Args:
        config: Engine configuration (geometry column, format, spatial reference)

    Returns:
        SQL expression text
    """
    column = config.geometry_column
    geometry_format = config.geometry_format

    if geometry_format == GeometryFormat.WKB:
        return f"ST_GeomFromWKB({column})"
    if geometry_format == GeometryFormat.GEOJSON:
        return f"ST_GeomFromGeoJSON({column})"
    if geometry_format == GeometryFormat.GEOMETRY:
        return column
    return f"ST_GeomFromText({column}, {config.spatial_reference})"


def parse_bbox(value: Any) -> Optional[BBox]:
    """
    Parse a bounding box into four finite floats.

    Args:
        value: CSV text, JSON envelope text, envelope dict or 4-item sequence

    Returns:
        (xmin, ymin, xmax, ymax) or None when the value is malformed
    """
    if value is None:
        return None

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.startswith("{"):
            try:
                value = json.loads(text)
            except ValueError:
                return None
        else:
            value = text.split(",")

    if isinstance(value, dict):
        if not all(key in value for key in _ENVELOPE_KEYS):
            return None
        value = [value[key] for key in _ENVELOPE_KEYS]

    if not isinstance(value, (list, tuple)) or len(value) != 4:
        return None

    coords = []
    for item in value:
        if isinstance(item, bool):
            return None
        try:
            number = float(item.strip() if isinstance(item, str) else item)
        except (TypeError, ValueError):
            return None
        if not math.isfinite(number):
            return None
        coords.append(number)

    return coords[0], coords[1], coords[2], coords[3]


def _format_coordinate(value: float) -> str:
    return str(int(value)) if value.is_integer() else repr(value)


def bbox_to_wkt(bbox: BBox) -> str:
    """Closed five-vertex POLYGON for an envelope."""
    xmin, ymin, xmax, ymax = (_format_coordinate(v) for v in bbox)
    return (
        f"POLYGON(({xmin} {ymin}, {xmax} {ymin}, {xmax} {ymax}, "
        f"{xmin} {ymax}, {xmin} {ymin}))"
    )
