"""Domain entities (Place, GridCell) and the bounding-box value type."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional
import math

from .geometry import BaseGeometry, coerce_geometry, rectangle, to_geojson

__all__ = ["BoundingBox", "Place", "GridCell", "tile_bounds"]

# SQLite INTEGER is a signed 64-bit value
MIN_ID = -(2**63)
MAX_ID = 2**63 - 1


def validate_non_empty_str(name: str):
    """Decorator factory: enforce non-empty string attribute on __post_init__."""

    def deco(cls):
        orig_post = getattr(cls, "__post_init__", None)

        def post(self):
            if not isinstance(getattr(self, name), str) or not getattr(self, name).strip():
                raise ValueError(f"{cls.__name__}.{name} must be a non-empty string")
            if orig_post:
                orig_post(self)

        cls.__post_init__ = post
        return cls

    return deco


@dataclass(frozen=True, slots=True)
class BoundingBox:
    """Axis-aligned extent used for pruning only, never for exact answers.

    All comparisons are closed: boxes that merely touch overlap, and a box
    encloses itself.
    """

    xmin: float
    xmax: float
    ymin: float
    ymax: float

    def __post_init__(self):
        for v in (self.xmin, self.xmax, self.ymin, self.ymax):
            if not math.isfinite(v):
                raise ValueError(f"BoundingBox bounds must be finite, got {self}")
        if self.xmin > self.xmax or self.ymin > self.ymax:
            raise ValueError(f"BoundingBox min exceeds max: {self}")

    @classmethod
    def of(cls, geom: BaseGeometry) -> "BoundingBox":
        minx, miny, maxx, maxy = geom.bounds
        return cls(float(minx), float(maxx), float(miny), float(maxy))

    @classmethod
    def point(cls, x: float, y: float) -> "BoundingBox":
        return cls(float(x), float(x), float(y), float(y))

    def overlaps(self, other: "BoundingBox") -> bool:
        return (
            self.xmin <= other.xmax
            and self.xmax >= other.xmin
            and self.ymin <= other.ymax
            and self.ymax >= other.ymin
        )

    def encloses(self, other: "BoundingBox") -> bool:
        return (
            other.xmin >= self.xmin
            and other.xmax <= self.xmax
            and other.ymin >= self.ymin
            and other.ymax <= self.ymax
        )

    def to_polygon(self):
        return rectangle(self.xmin, self.ymin, self.xmax, self.ymax)

    def as_tuple(self) -> tuple[float, float, float, float]:
        return (self.xmin, self.xmax, self.ymin, self.ymax)


def tile_bounds(tile_x: int, tile_y: int) -> BoundingBox:
    """Closed 1x1 degree rectangle addressed by its lower-left corner."""
    x, y = int(tile_x), int(tile_y)
    return BoundingBox(float(x), float(x + 1), float(y), float(y + 1))


@validate_non_empty_str("name")
@dataclass(slots=True)
class Place:
    id: int
    name: str
    layer: Optional[str] = None
    geometry: Any = field(default=None, repr=False, compare=False)

    def __post_init__(self):
        if isinstance(self.id, bool) or not isinstance(self.id, int):
            raise ValueError(f"Place.id must be an integer, got {self.id!r}")
        if not MIN_ID <= self.id <= MAX_ID:
            raise ValueError(f"Place.id must fit in a signed 64-bit integer, got {self.id}")
        if self.layer is not None:
            self.layer = str(self.layer)
        self.geometry = coerce_geometry(self.geometry)

    @property
    def has_geometry(self) -> bool:
        return self.geometry is not None

    @property
    def bounds(self) -> BoundingBox | None:
        if self.geometry is None or self.geometry.is_empty:
            return None
        return BoundingBox.of(self.geometry)

    def to_dict(self, *, include_geometry: bool = False) -> dict[str, Any]:
        out: dict[str, Any] = {"id": self.id, "name": self.name, "layer": self.layer}
        if include_geometry:
            out["geometry"] = to_geojson(self.geometry)
        return out


@dataclass(slots=True)
class GridCell:
    id: Optional[int]
    place_id: int
    tile_x: int
    tile_y: int
    geometry: Any = field(repr=False, compare=False)

    @property
    def tile(self) -> tuple[int, int]:
        return (self.tile_x, self.tile_y)
