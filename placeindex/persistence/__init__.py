"""Persistence helpers for working with relational databases."""

from .sqlalchemy_store import (
    Base,
    GridCellRecord,
    PlaceBoundsRecord,
    PlaceRecord,
    StoreMetaRecord,
    create_engine,
    create_sessionmaker,
    ensure_schema,
    grid_rtree,
    place_rtree,
    read_store_meta,
    sqlite_url,
)

__all__ = [
    "Base",
    "GridCellRecord",
    "PlaceBoundsRecord",
    "PlaceRecord",
    "StoreMetaRecord",
    "create_engine",
    "create_sessionmaker",
    "ensure_schema",
    "grid_rtree",
    "place_rtree",
    "read_store_meta",
    "sqlite_url",
]
