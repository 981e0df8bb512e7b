"""Geometry engine adapter used throughout the placeindex package.

Every exact predicate, repair and clipping operation goes through Shapely
(GEOS). Nothing here reimplements computational geometry; the functions only
normalise inputs and outputs to the polygonal shapes the store keeps.
"""

from __future__ import annotations

import json
import math
from typing import Any, Mapping

from shapely import wkb as shapely_wkb
from shapely import wkt as shapely_wkt
from shapely.errors import GEOSException
from shapely.geometry import (
    GeometryCollection,
    MultiPolygon,
    Point as ShapelyPoint,
    Polygon as ShapelyPolygon,
    box,
    mapping,
    shape,
)
from shapely.geometry.base import BaseGeometry
from shapely.ops import unary_union
from shapely.validation import make_valid as _make_valid

from .errors import InvalidGeometry

SRID = 4326

__all__ = [
    "SRID",
    "BaseGeometry",
    "GEOSException",
    "MultiPolygon",
    "ShapelyPoint",
    "ShapelyPolygon",
    "make_valid",
    "simplify_preserve_topology",
    "contains",
    "within",
    "intersects",
    "intersection",
    "cast_to_multipolygon",
    "polygonal_part",
    "geometry_from_geojson",
    "geometry_from_wkt",
    "geometry_from_wkb",
    "coerce_geometry",
    "repair",
    "make_point",
    "rectangle",
    "to_geojson",
    "probably_lonlat",
]


def make_valid(geom: BaseGeometry) -> BaseGeometry:
    return _make_valid(geom)


def simplify_preserve_topology(geom: BaseGeometry, tolerance: float) -> BaseGeometry:
    """Douglas-Peucker simplification that keeps rings from collapsing or crossing."""
    return geom.simplify(float(tolerance), preserve_topology=True)


def contains(a: BaseGeometry, b: BaseGeometry) -> bool:
    return bool(a.contains(b))


def within(a: BaseGeometry, b: BaseGeometry) -> bool:
    return bool(a.within(b))


def intersects(a: BaseGeometry, b: BaseGeometry) -> bool:
    return bool(a.intersects(b))


def intersection(a: BaseGeometry, b: BaseGeometry) -> BaseGeometry:
    return a.intersection(b)


def polygonal_part(geom: BaseGeometry | None) -> ShapelyPolygon | MultiPolygon | None:
    """Keep only the areal components of ``geom``; None when nothing areal is left."""
    if geom is None or geom.is_empty:
        return None
    if isinstance(geom, (ShapelyPolygon, MultiPolygon)):
        return geom
    if isinstance(geom, GeometryCollection):
        polys: list[ShapelyPolygon] = []
        for part in geom.geoms:
            kept = polygonal_part(part)
            if kept is None:
                continue
            if isinstance(kept, MultiPolygon):
                polys.extend(kept.geoms)
            else:
                polys.append(kept)
        if not polys:
            return None
        if len(polys) == 1:
            return polys[0]
        # dissolves parts that share edges so the result stays valid
        return polygonal_part(unary_union(polys))
    # points and lines have no area
    return None


def cast_to_multipolygon(geom: BaseGeometry | None) -> MultiPolygon | None:
    part = polygonal_part(geom)
    if part is None:
        return None
    if isinstance(part, ShapelyPolygon):
        return MultiPolygon([part])
    return part


def geometry_from_geojson(payload: Mapping[str, Any] | str) -> BaseGeometry:
    if isinstance(payload, str):
        payload = json.loads(payload)
    if not isinstance(payload, Mapping):
        raise InvalidGeometry("GeoJSON geometry must be an object")
    if payload.get("type") == "Feature":
        payload = payload.get("geometry") or {}
    return shape(payload)


def geometry_from_wkt(text: str) -> BaseGeometry:
    return shapely_wkt.loads(text)


def geometry_from_wkb(blob: bytes | bytearray | memoryview) -> BaseGeometry:
    if isinstance(blob, memoryview):
        blob = blob.tobytes()
    return shapely_wkb.loads(bytes(blob))


def coerce_geometry(value: Any) -> BaseGeometry | None:
    """Accept a Shapely geometry, GeoJSON (mapping or text), WKT, WKB or a ring of (x, y)."""
    if value is None:
        return None
    try:
        if isinstance(value, BaseGeometry):
            return value
        if isinstance(value, Mapping):
            return geometry_from_geojson(value)
        if isinstance(value, str):
            text = value.strip()
            if text.startswith("{"):
                return geometry_from_geojson(text)
            return geometry_from_wkt(text)
        if isinstance(value, (bytes, bytearray, memoryview)):
            return geometry_from_wkb(value)
        if isinstance(value, (list, tuple)) and all(
            isinstance(p, (list, tuple)) and len(p) == 2 for p in value
        ):
            return ShapelyPolygon([(float(x), float(y)) for x, y in value])
    except InvalidGeometry:
        raise
    except (GEOSException, ValueError, TypeError, KeyError, AttributeError) as exc:
        raise InvalidGeometry(
            "unparseable geometry", {"error": type(exc).__name__, "detail": str(exc)}
        ) from exc
    raise InvalidGeometry(
        "unsupported geometry value", {"type": type(value).__name__}
    )


def repair(geom: BaseGeometry | None) -> ShapelyPolygon | MultiPolygon | None:
    """Return a valid polygonal geometry or raise InvalidGeometry."""
    if geom is None:
        return None
    if not isinstance(geom, (ShapelyPolygon, MultiPolygon, GeometryCollection)):
        raise InvalidGeometry("geometry is not polygonal", {"type": geom.geom_type})
    if geom.is_empty:
        raise InvalidGeometry("geometry is empty", {"type": geom.geom_type})
    try:
        fixed = geom if geom.is_valid else make_valid(geom)
    except GEOSException as exc:
        raise InvalidGeometry("geometry repair failed", {"detail": str(exc)}) from exc
    part = polygonal_part(fixed)
    if part is None or not part.is_valid:
        raise InvalidGeometry(
            "geometry has no valid polygonal part after repair",
            {"type": fixed.geom_type},
        )
    return part


def make_point(lon: float, lat: float) -> ShapelyPoint:
    x, y = float(lon), float(lat)
    if not (math.isfinite(x) and math.isfinite(y)):
        raise ValueError(f"Point coordinates must be finite, got ({lon}, {lat})")
    return ShapelyPoint(x, y)


def rectangle(xmin: float, ymin: float, xmax: float, ymax: float) -> ShapelyPolygon:
    return box(xmin, ymin, xmax, ymax)


def to_geojson(geom: BaseGeometry | None) -> dict[str, Any] | None:
    if geom is None:
        return None
    return mapping(geom)


def probably_lonlat(x: float, y: float) -> bool:
    """Return True when (x, y) look like lon/lat coordinates."""

    return -180.0 <= x <= 180.0 and -90.0 <= y <= 90.0
