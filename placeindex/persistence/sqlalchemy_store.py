"""SQLAlchemy persistence for places, their bounding boxes and grid cells.

The schema keeps three structures side by side in one SQLite file:

* ``place``: the canonical records, geometry stored as WKB.
* ``place_bounds``: one ``(pkid, xmin, xmax, ymin, ymax)`` row per place with a
  geometry, written in the same transaction as the geometry it describes.
* ``place_rtree``: an SQLite R-tree over ``place_bounds``, kept in step by
  triggers, so pruning queries never see a box the transaction has not.
* ``grid``: per-tile geometry fragments derived from ``place``, with their
  own ``grid_rtree``.

R-tree coordinates are 32-bit floats rounded outward, so a box read back
from an R-tree always encloses the exact one.

A small ``store_meta`` table pins the coordinate reference system and the
schema version so an extracted store can be checked before it is reused.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Mapping

from sqlalchemy import (
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    MetaData,
    String,
    Table,
    Text,
    create_engine as _sa_create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    Session,
    mapped_column,
    relationship,
    sessionmaker,
)
from sqlalchemy.pool import StaticPool

from ..entities import BoundingBox, GridCell, Place
from ..geometry import SRID, BaseGeometry, geometry_from_wkb

SCHEMA_VERSION = "2"

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# SQLAlchemy ORM models
# ---------------------------------------------------------------------------

_naming_convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    metadata = MetaData(naming_convention=_naming_convention)


class PlaceRecord(Base):
    __tablename__ = "place"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    layer: Mapped[str | None] = mapped_column(Text, index=True)
    geom_wkb: Mapped[bytes | None] = mapped_column(LargeBinary)

    bounds: Mapped["PlaceBoundsRecord | None"] = relationship(
        back_populates="place",
        cascade="all, delete-orphan",
        passive_deletes=True,
        uselist=False,
    )
    cells: Mapped[list["GridCellRecord"]] = relationship(
        back_populates="place", cascade="all, delete-orphan", passive_deletes=True
    )


class PlaceBoundsRecord(Base):
    __tablename__ = "place_bounds"

    pkid: Mapped[int] = mapped_column(
        ForeignKey("place.id", ondelete="CASCADE"), primary_key=True
    )
    xmin: Mapped[float] = mapped_column(Float, nullable=False)
    xmax: Mapped[float] = mapped_column(Float, nullable=False)
    ymin: Mapped[float] = mapped_column(Float, nullable=False)
    ymax: Mapped[float] = mapped_column(Float, nullable=False)

    place: Mapped[PlaceRecord] = relationship(back_populates="bounds")


class GridCellRecord(Base):
    __tablename__ = "grid"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    place_id: Mapped[int] = mapped_column(
        ForeignKey("place.id", ondelete="CASCADE"), nullable=False, index=True
    )
    tile_x: Mapped[int] = mapped_column(Integer, nullable=False)
    tile_y: Mapped[int] = mapped_column(Integer, nullable=False)
    xmin: Mapped[float] = mapped_column(Float, nullable=False)
    xmax: Mapped[float] = mapped_column(Float, nullable=False)
    ymin: Mapped[float] = mapped_column(Float, nullable=False)
    ymax: Mapped[float] = mapped_column(Float, nullable=False)
    geom_wkb: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)

    place: Mapped[PlaceRecord] = relationship(back_populates="cells")

    __table_args__ = (
        Index("ix_grid_tile", "tile_x", "tile_y"),
        {"sqlite_autoincrement": True},
    )


class StoreMetaRecord(Base):
    __tablename__ = "store_meta"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)


# ---------------------------------------------------------------------------
# R-tree virtual tables
# ---------------------------------------------------------------------------

# Kept off Base.metadata: create_all cannot emit CREATE VIRTUAL TABLE.
rtree_metadata = MetaData()

place_rtree = Table(
    "place_rtree",
    rtree_metadata,
    Column("pkid", Integer, primary_key=True),
    Column("xmin", Float),
    Column("xmax", Float),
    Column("ymin", Float),
    Column("ymax", Float),
)

grid_rtree = Table(
    "grid_rtree",
    rtree_metadata,
    Column("id", Integer, primary_key=True),
    Column("xmin", Float),
    Column("xmax", Float),
    Column("ymin", Float),
    Column("ymax", Float),
)


def _rtree_ddl(rtree: str, source: str, key: str) -> list[str]:
    cols = "xmin, xmax, ymin, ymax"
    new_row = f"new.{key}, new.xmin, new.xmax, new.ymin, new.ymax"
    return [
        f"CREATE VIRTUAL TABLE IF NOT EXISTS {rtree} USING rtree({key}, {cols})",
        f"CREATE TRIGGER IF NOT EXISTS {source}_rtree_insert AFTER INSERT ON {source} "
        f"BEGIN INSERT INTO {rtree} ({key}, {cols}) VALUES ({new_row}); END",
        f"CREATE TRIGGER IF NOT EXISTS {source}_rtree_update AFTER UPDATE ON {source} "
        f"BEGIN DELETE FROM {rtree} WHERE {key} = old.{key}; "
        f"INSERT INTO {rtree} ({key}, {cols}) VALUES ({new_row}); END",
        f"CREATE TRIGGER IF NOT EXISTS {source}_rtree_delete AFTER DELETE ON {source} "
        f"BEGIN DELETE FROM {rtree} WHERE {key} = old.{key}; END",
    ]


_RTREES = (
    ("place_rtree", "place_bounds", "pkid"),
    ("grid_rtree", "grid", "id"),
)


def _ensure_rtrees(connection) -> None:
    for rtree, source, key in _RTREES:
        for stmt in _rtree_ddl(rtree, source, key):
            connection.exec_driver_sql(stmt)
        indexed = connection.execute(
            select(func.count()).select_from(rtree_metadata.tables[rtree])
        ).scalar_one()
        rows = connection.execute(
            select(func.count()).select_from(Base.metadata.tables[source])
        ).scalar_one()
        if indexed != rows:
            # store written before the triggers existed
            connection.exec_driver_sql(f"DELETE FROM {rtree}")
            connection.exec_driver_sql(
                f"INSERT INTO {rtree} ({key}, xmin, xmax, ymin, ymax) "
                f"SELECT {key}, xmin, xmax, ymin, ymax FROM {source}"
            )
            logger.info("store.rtree_rebuilt table=%s rows=%d", rtree, rows)


# ---------------------------------------------------------------------------
# Engine / session helpers
# ---------------------------------------------------------------------------

_ALLOWED_PRAGMAS = {
    "page_size",
    "cache_size",
    "synchronous",
    "journal_mode",
    "temp_store",
    "busy_timeout",
    "mmap_size",
}


def sqlite_url(path: str | Path) -> str:
    """Return a SQLAlchemy URL for a SQLite file (``":memory:"`` stays in memory)."""

    text = str(path)
    if "://" in text:
        return text
    if text == ":memory:":
        return "sqlite+pysqlite:///:memory:"
    return f"sqlite+pysqlite:///{Path(text).expanduser()}"


def is_memory_url(url: str) -> bool:
    parsed = make_url(url)
    return parsed.get_backend_name() == "sqlite" and parsed.database in (None, "", ":memory:")


def _install_sqlite_pragmas(engine: Engine, pragmas: Mapping[str, Any]) -> None:
    statements: list[str] = []
    for name, value in pragmas.items():
        key = str(name).lower()
        if key not in _ALLOWED_PRAGMAS:
            raise ValueError(f"Unsupported SQLite pragma: {name}")
        text = str(value)
        if not text.replace("-", "", 1).isalnum():
            raise ValueError(f"Invalid value for pragma {name}: {value!r}")
        statements.append(f"PRAGMA {key}={text}")
    # cascade deletes from place to grid/place_bounds rely on this
    statements.append("PRAGMA foreign_keys=ON")

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _connection_record):  # pragma: no cover - driver hook
        cursor = dbapi_connection.cursor()
        try:
            for stmt in statements:
                cursor.execute(stmt)
        finally:
            cursor.close()


def create_engine(
    url: str,
    *,
    echo: bool = False,
    pragmas: Mapping[str, Any] | None = None,
    **kwargs,
):
    """Wrapper around :func:`sqlalchemy.create_engine` that prepares SQLite connections."""

    if url.startswith("sqlite"):
        connect_args = dict(kwargs.pop("connect_args", {}) or {})
        connect_args.setdefault("check_same_thread", False)
        kwargs["connect_args"] = connect_args
        if is_memory_url(url):
            # every connection to ":memory:" would otherwise be a new database
            kwargs.setdefault("poolclass", StaticPool)
    engine = _sa_create_engine(url, echo=echo, **kwargs)
    if url.startswith("sqlite"):
        _install_sqlite_pragmas(engine, pragmas or {})
    return engine


def create_sessionmaker(engine, *, expire_on_commit: bool = False, **kwargs):
    """Return a configured ``sessionmaker`` factory for the given engine."""

    return sessionmaker(bind=engine, expire_on_commit=expire_on_commit, class_=Session, **kwargs)


def ensure_schema(engine) -> None:
    """Create the schema if needed and verify the store's CRS and version."""

    Base.metadata.create_all(engine)
    with engine.begin() as connection:
        _ensure_rtrees(connection)
    with Session(engine) as session, session.begin():
        rows = read_store_meta(session)
        if "srid" not in rows:
            session.add(StoreMetaRecord(key="srid", value=str(SRID)))
        elif rows["srid"] != str(SRID):
            raise ValueError(
                f"Store uses SRID {rows['srid']}; placeindex requires {SRID}"
            )
        if "schema_version" not in rows:
            session.add(StoreMetaRecord(key="schema_version", value=SCHEMA_VERSION))
        elif rows["schema_version"] != SCHEMA_VERSION:
            logger.warning(
                "store.schema_version_mismatch found=%s expected=%s",
                rows["schema_version"],
                SCHEMA_VERSION,
            )


def read_store_meta(session: Session) -> dict[str, str]:
    """Return the ``store_meta`` key/value pairs (``srid``, ``schema_version``)."""
    return dict(session.execute(select(StoreMetaRecord.key, StoreMetaRecord.value)).all())


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def dump_geometry(geom: BaseGeometry | None) -> bytes | None:
    if geom is None:
        return None
    return geom.wkb


def load_geometry(blob: bytes | None) -> BaseGeometry | None:
    if not blob:
        return None
    return geometry_from_wkb(blob)


def bounds_record(place_id: int, box: BoundingBox) -> PlaceBoundsRecord:
    return PlaceBoundsRecord(
        pkid=place_id, xmin=box.xmin, xmax=box.xmax, ymin=box.ymin, ymax=box.ymax
    )


def bounds_from_record(record: PlaceBoundsRecord | None) -> BoundingBox | None:
    if record is None:
        return None
    return BoundingBox(record.xmin, record.xmax, record.ymin, record.ymax)


def place_from_record(record: PlaceRecord) -> Place:
    return Place(
        id=record.id,
        name=record.name,
        layer=record.layer,
        geometry=load_geometry(record.geom_wkb),
    )


def cell_from_record(record: GridCellRecord) -> GridCell:
    return GridCell(
        id=record.id,
        place_id=record.place_id,
        tile_x=record.tile_x,
        tile_y=record.tile_y,
        geometry=load_geometry(record.geom_wkb),
    )
