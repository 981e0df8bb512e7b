"""Durable store of places, their geometries and bounding-box entries."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Mapping, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .entities import BoundingBox, Place
from .errors import (
    BatchReport,
    DuplicateId,
    InvalidGeometry,
    NotFound,
    PlaceIndexError,
)
from .geometry import (
    BaseGeometry,
    GEOSException,
    coerce_geometry,
    polygonal_part,
    repair,
    simplify_preserve_topology,
)
from .locking import ReadWriteLock
from .persistence.sqlalchemy_store import (
    PlaceBoundsRecord,
    PlaceRecord,
    bounds_from_record,
    bounds_record,
    create_engine,
    create_sessionmaker,
    dump_geometry,
    ensure_schema,
    is_memory_url,
    load_geometry,
    place_from_record,
    sqlite_url,
)
from .pruning import BoundingBoxPruner, make_pruner

__all__ = ["PlaceStore"]

logger = logging.getLogger(__name__)

# keeps IN (...) lists under SQLite's host parameter limit
_CHUNK = 500


def _chunks(values: list[int], size: int = _CHUNK) -> Iterator[list[int]]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


class PlaceStore:
    """Mapping from place id to Place, kept in lockstep with its bounding boxes.

    Reads share a lock and writes take it exclusively, so a query never sees a
    geometry without its matching box. Obtain instances with :meth:`open`.
    """

    def __init__(
        self,
        engine,
        *,
        url: str | None = None,
        pruner: str | Callable[["PlaceStore"], BoundingBoxPruner] = "sql",
    ):
        self._engine = engine
        self._Session = create_sessionmaker(engine)
        self.url = url or engine.url.render_as_string(hide_password=True)
        self._lock = ReadWriteLock(shared_reads=not is_memory_url(self.url))
        self._generation = 0
        self._closed = False
        self.pruner: BoundingBoxPruner = make_pruner(pruner, self)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @classmethod
    def open(
        cls,
        location: str | Path = ":memory:",
        *,
        pragmas: Mapping[str, Any] | None = None,
        pruner: str | Callable[["PlaceStore"], BoundingBoxPruner] = "sql",
        echo: bool = False,
    ) -> "PlaceStore":
        url = sqlite_url(location)
        if "://" not in str(location) and str(location) != ":memory:":
            Path(location).expanduser().parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(url, echo=echo, pragmas=pragmas)
        ensure_schema(engine)
        logger.info("place_store.opened url=%s pruner=%s", url, pruner)
        return cls(engine, url=url, pruner=pruner)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._engine.dispose()
        logger.info("place_store.closed url=%s", self.url)

    def __enter__(self) -> "PlaceStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def concurrent_reads(self) -> bool:
        """False for in-memory stores, where every session shares one connection."""
        return self._lock.shared_reads

    @property
    def generation(self) -> int:
        """Counter bumped by every geometry mutation."""
        return self._generation

    def _bump(self) -> None:
        self._generation += 1

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError(f"PlaceStore is closed: {self.url}")

    # ------------------------------------------------------------------
    # Sessions and locking
    # ------------------------------------------------------------------

    @contextmanager
    def read_lock(self) -> Iterator[None]:
        """Hold a read-consistent view across several calls."""
        with self._lock.read():
            yield

    @contextmanager
    def session(self) -> Iterator[Session]:
        self._check_open()
        with self._lock.read(), self._Session() as session:
            yield session

    @contextmanager
    def session_scope(self, session: Session | None) -> Iterator[Session]:
        """Reuse ``session`` when given, otherwise open a read session."""
        if session is not None:
            yield session
            return
        with self.session() as active:
            yield active

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        self._check_open()
        with self._lock.write():
            try:
                with self._Session.begin() as session:
                    yield session
            except BaseException:
                # in-memory pruners may have read the rolled back state
                self._bump()
                raise

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @staticmethod
    def _prepare_geometry(value: Any, *, repair_geometry: bool = True) -> BaseGeometry | None:
        geom = coerce_geometry(value)
        if geom is None or not repair_geometry:
            return geom
        return repair(geom)

    def _write_geometry(
        self, session: Session, record: PlaceRecord, geom: BaseGeometry | None
    ) -> None:
        record.geom_wkb = dump_geometry(geom)
        if geom is None:
            record.bounds = None
        else:
            box = BoundingBox.of(geom)
            if record.bounds is None:
                record.bounds = bounds_record(record.id, box)
            else:
                record.bounds.xmin = box.xmin
                record.bounds.xmax = box.xmax
                record.bounds.ymin = box.ymin
                record.bounds.ymax = box.ymax
        session.flush()
        self._bump()

    def _insert(self, session: Session, place: Place, *, repair_geometry: bool = True) -> Place:
        if session.get(PlaceRecord, place.id) is not None:
            raise DuplicateId(place.id)
        geom = self._prepare_geometry(place.geometry, repair_geometry=repair_geometry)
        record = PlaceRecord(id=place.id, name=place.name, layer=place.layer)
        session.add(record)
        self._write_geometry(session, record, geom)
        return Place(id=place.id, name=place.name, layer=place.layer, geometry=geom)

    def insert_stored(self, session: Session, place: Place) -> Place:
        """Insert ``place`` as is inside the caller's transaction.

        The geometry is written without repair, as when copying a place that
        another store has already validated.
        """

        return self._insert(session, place, repair_geometry=False)

    def insert(self, place: Place, *, repair: bool = True) -> Place:
        """Store a new place and its bounding box; returns the stored (repaired) place."""

        with self.transaction() as session:
            stored = self._insert(session, place, repair_geometry=repair)
        logger.debug("place_store.inserted id=%s layer=%s", place.id, place.layer)
        return stored

    def insert_many(self, places: Iterable[Place], *, repair: bool = True) -> BatchReport:
        """Insert a batch in one transaction, skipping places that fail validation."""

        report = BatchReport("insert")
        with self.transaction() as session:
            for place in places:
                # validation raises before anything is added to the session
                try:
                    stored = self._insert(session, place, repair_geometry=repair)
                except (PlaceIndexError, GEOSException) as exc:
                    logger.warning(
                        "place_store.insert_failed id=%s error=%s", place.id, exc
                    )
                    report.record_failure(place.id, exc)
                    continue
                report.record_success()
                logger.debug("place_store.inserted id=%s", stored.id)
        logger.info("place_store.insert_many %s", report.summary())
        return report

    def update_geometry(self, place_id: int, geometry: Any, *, repair: bool = True) -> Place:
        """Replace a geometry and recompute its bounding box atomically."""

        geom = self._prepare_geometry(geometry, repair_geometry=repair)
        with self.transaction() as session:
            record = session.get(PlaceRecord, place_id)
            if record is None:
                raise NotFound(place_id)
            self._write_geometry(session, record, geom)
            updated = Place(id=record.id, name=record.name, layer=record.layer, geometry=geom)
        logger.debug("place_store.geometry_updated id=%s", place_id)
        return updated

    def delete(self, place_id: int) -> None:
        """Remove a place; its bounding box and grid cells go with it."""

        with self.transaction() as session:
            record = session.get(PlaceRecord, place_id)
            if record is None:
                raise NotFound(place_id)
            session.delete(record)
            session.flush()
            self._bump()
        logger.debug("place_store.deleted id=%s", place_id)

    def _rewrite_all(
        self,
        operation: str,
        transform: Callable[[BaseGeometry], Optional[BaseGeometry]],
    ) -> BatchReport:
        report = BatchReport(operation)
        with self.session() as session:
            ids = list(
                session.scalars(
                    select(PlaceRecord.id)
                    .where(PlaceRecord.geom_wkb.is_not(None))
                    .order_by(PlaceRecord.id)
                )
            )
        for chunk in _chunks(ids):
            # one transaction per chunk lets readers in between
            with self.transaction() as session:
                records = session.scalars(
                    select(PlaceRecord).where(PlaceRecord.id.in_(chunk))
                ).all()
                for record in records:
                    geom = load_geometry(record.geom_wkb)
                    if geom is None:
                        continue
                    try:
                        new_geom = transform(geom)
                    except (PlaceIndexError, GEOSException, ValueError) as exc:
                        logger.warning(
                            "place_store.%s_failed id=%s error=%s", operation, record.id, exc
                        )
                        report.record_failure(record.id, exc)
                        continue
                    if new_geom is not None and not new_geom.equals_exact(geom, 0.0):
                        self._write_geometry(session, record, new_geom)
                    report.record_success()
        logger.info("place_store.%s %s", operation, report.summary())
        return report

    def repair_all(self) -> BatchReport:
        """MakeValid every stored geometry that is not already valid."""

        def _fix(geom: BaseGeometry) -> BaseGeometry | None:
            if geom.is_valid:
                return None
            return repair(geom)

        return self._rewrite_all("repair", _fix)

    def simplify_all(self, tolerance: float) -> BatchReport:
        """Topology-preserving simplification of every stored geometry."""

        tolerance = float(tolerance)
        if tolerance < 0:
            raise ValueError(f"tolerance must be >= 0, got {tolerance}")

        def _simplify(geom: BaseGeometry) -> BaseGeometry:
            simplified = polygonal_part(simplify_preserve_topology(geom, tolerance))
            if simplified is None:
                raise InvalidGeometry("geometry collapsed during simplification")
            return simplified if simplified.is_valid else repair(simplified)

        return self._rewrite_all("simplify", _simplify)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, place_id: int, *, session: Session | None = None) -> Place:
        with self.session_scope(session) as active:
            record = active.get(PlaceRecord, place_id)
            if record is None:
                raise NotFound(place_id)
            return place_from_record(record)

    def exists(self, place_id: int, *, session: Session | None = None) -> bool:
        with self.session_scope(session) as active:
            return active.get(PlaceRecord, place_id) is not None

    def existing_ids(
        self, place_ids: Iterable[int], *, session: Session | None = None
    ) -> set[int]:
        found: set[int] = set()
        with self.session_scope(session) as active:
            for chunk in _chunks(sorted(set(place_ids))):
                found.update(
                    active.scalars(select(PlaceRecord.id).where(PlaceRecord.id.in_(chunk)))
                )
        return found

    def get_many(
        self, place_ids: Iterable[int], *, session: Session | None = None
    ) -> dict[int, Place]:
        out: dict[int, Place] = {}
        with self.session_scope(session) as active:
            for chunk in _chunks(sorted(set(place_ids))):
                for record in active.scalars(
                    select(PlaceRecord).where(PlaceRecord.id.in_(chunk))
                ):
                    out[record.id] = place_from_record(record)
        return out

    def bounds(self, place_id: int, *, session: Session | None = None) -> BoundingBox | None:
        """The place's bounding box, or None when its geometry is null."""

        with self.session_scope(session) as active:
            if active.get(PlaceRecord, place_id) is None:
                raise NotFound(place_id)
            return bounds_from_record(active.get(PlaceBoundsRecord, place_id))

    def iter_places(
        self,
        *,
        with_geometry: bool = False,
        session: Session | None = None,
        batch_size: int = 1000,
    ) -> Iterator[Place]:
        stmt = select(PlaceRecord).order_by(PlaceRecord.id)
        if with_geometry:
            stmt = stmt.where(PlaceRecord.geom_wkb.is_not(None))
        with self.session_scope(session) as active:
            for record in active.scalars(stmt.execution_options(yield_per=batch_size)):
                yield place_from_record(record)

    def ids(self, *, session: Session | None = None) -> list[int]:
        with self.session_scope(session) as active:
            return list(active.scalars(select(PlaceRecord.id).order_by(PlaceRecord.id)))

    def count(self, *, session: Session | None = None) -> int:
        with self.session_scope(session) as active:
            return int(active.scalar(select(func.count()).select_from(PlaceRecord)) or 0)

    def __len__(self) -> int:
        return self.count()

    def __contains__(self, place_id: object) -> bool:
        return isinstance(place_id, int) and self.exists(place_id)

    def __repr__(self) -> str:
        return f"PlaceStore(url={self.url!r}, closed={self._closed})"
