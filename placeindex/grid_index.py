"""1x1 degree tile decomposition of place geometries for fast point lookups.

Each grid cell is the polygonal part of ``place.geometry ∩ tile`` stored as a
MultiPolygon. Places that only touch a tile along an edge or at a corner get
no cell there. Building a tile clears that tile's previous cells first unless
the caller asks for additive mode, so re-running a range is idempotent.
"""

from __future__ import annotations

import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from .entities import BoundingBox, GridCell, Place, tile_bounds
from .errors import BatchReport, NotFound, PlaceIndexError
from .geometry import (
    GEOSException,
    cast_to_multipolygon,
    intersection,
    intersects,
    make_point,
)
from .persistence.sqlalchemy_store import (
    GridCellRecord,
    PlaceRecord,
    cell_from_record,
    dump_geometry,
    grid_rtree,
    load_geometry,
)
from .place_store import PlaceStore

__all__ = ["GridIndex", "tiles_for_bounds", "tile_bounds"]

logger = logging.getLogger(__name__)


def tiles_for_bounds(box: BoundingBox) -> list[tuple[int, int]]:
    """Tiles whose interior can meet ``box``.

    A box edge lying exactly on an integer line only touches the next tile,
    which can never yield an areal fragment, so that tile is left out.
    """

    def _span(lo: float, hi: float) -> range:
        first = math.floor(lo)
        last = math.floor(hi)
        if hi == last and hi > lo:
            last -= 1
        return range(first, last + 1)

    return [(x, y) for x in _span(box.xmin, box.xmax) for y in _span(box.ymin, box.ymax)]


def _clip(place: Place, tile_x: int, tile_y: int) -> Optional[GridCellRecord]:
    if place.geometry is None:
        return None
    rect = tile_bounds(tile_x, tile_y)
    fragment = cast_to_multipolygon(intersection(place.geometry, rect.to_polygon()))
    if fragment is None:
        return None
    box = BoundingBox.of(fragment)
    return GridCellRecord(
        place_id=place.id,
        tile_x=tile_x,
        tile_y=tile_y,
        xmin=box.xmin,
        xmax=box.xmax,
        ymin=box.ymin,
        ymax=box.ymax,
        geom_wkb=dump_geometry(fragment),
    )


class GridIndex:
    """Builds and queries the grid cells stored next to a :class:`PlaceStore`."""

    def __init__(self, store: PlaceStore):
        self._store = store

    @property
    def store(self) -> PlaceStore:
        return self._store

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    def _tile_fragments(
        self, tile_x: int, tile_y: int, session: Session
    ) -> list[GridCellRecord]:
        rect = tile_bounds(tile_x, tile_y)
        candidates = self._store.pruner.candidates_overlapping(rect, session=session)
        places = self._store.get_many(candidates, session=session)
        records: list[GridCellRecord] = []
        for place_id in sorted(places):
            record = _clip(places[place_id], tile_x, tile_y)
            if record is not None:
                records.append(record)
        return records

    @staticmethod
    def _clear_tile(session: Session, tile_x: int, tile_y: int) -> int:
        result = session.execute(
            delete(GridCellRecord).where(
                GridCellRecord.tile_x == tile_x, GridCellRecord.tile_y == tile_y
            )
        )
        return int(result.rowcount or 0)

    def build_tile(self, tile_x: int, tile_y: int, *, additive: bool = False) -> int:
        """Derive the cells of one tile; returns the number of cells written."""

        tile_x, tile_y = int(tile_x), int(tile_y)
        # clipping runs under the shared lock so tiles can build in parallel
        with self._store.session() as session:
            generation = self._store.generation
            records = self._tile_fragments(tile_x, tile_y, session)

        with self._store.transaction() as session:
            if self._store.generation != generation:
                logger.debug(
                    "grid.tile_recomputed tile=%s,%s generation=%s->%s",
                    tile_x,
                    tile_y,
                    generation,
                    self._store.generation,
                )
                records = self._tile_fragments(tile_x, tile_y, session)
            cleared = 0 if additive else self._clear_tile(session, tile_x, tile_y)
            session.add_all(records)

        logger.debug(
            "grid.tile_built tile=%s,%s cells=%d cleared=%d additive=%s",
            tile_x,
            tile_y,
            len(records),
            cleared,
            additive,
        )
        return len(records)

    def build_range(
        self,
        min_x: int,
        min_y: int,
        max_x: int,
        max_y: int,
        *,
        additive: bool = False,
        max_workers: int | None = None,
    ) -> BatchReport:
        """Build every tile in the inclusive range, collecting per-tile failures."""

        min_x, min_y, max_x, max_y = int(min_x), int(min_y), int(max_x), int(max_y)
        if min_x > max_x or min_y > max_y:
            raise ValueError(
                f"Empty tile range: ({min_x}, {min_y}) to ({max_x}, {max_y})"
            )
        tiles = [(x, y) for x in range(min_x, max_x + 1) for y in range(min_y, max_y + 1)]
        report = BatchReport("grid")
        cells = 0
        t0 = time.perf_counter()

        def _record(tile: tuple[int, int], outcome: int | BaseException) -> None:
            nonlocal cells
            if isinstance(outcome, BaseException):
                logger.warning("grid.tile_failed tile=%s,%s error=%s", *tile, outcome)
                report.record_failure(tile, outcome)
            else:
                cells += outcome
                report.record_success()

        workers = max_workers or 1
        if workers <= 1 or not self._store.concurrent_reads:
            for tile in tiles:
                try:
                    _record(tile, self.build_tile(*tile, additive=additive))
                except (PlaceIndexError, GEOSException, ValueError) as exc:
                    _record(tile, exc)
        else:
            executor = ThreadPoolExecutor(max_workers=workers)
            try:
                futures = {
                    executor.submit(self.build_tile, x, y, additive=additive): (x, y)
                    for x, y in tiles
                }
                for fut in as_completed(futures):
                    try:
                        _record(futures[fut], fut.result())
                    except (PlaceIndexError, GEOSException, ValueError) as exc:
                        _record(futures[fut], exc)
            except BaseException:
                executor.shutdown(wait=True, cancel_futures=True)
                raise
            executor.shutdown(wait=True)

        logger.info(
            "grid.range_built range=%s,%s..%s,%s tiles=%d cells=%d failed=%d seconds=%.2f",
            min_x,
            min_y,
            max_x,
            max_y,
            len(tiles),
            cells,
            len(report.failures),
            time.perf_counter() - t0,
        )
        return report

    def refresh_place(self, place_id: int) -> int:
        """Drop and re-derive one place's cells, e.g. after ``update_geometry``."""

        with self._store.transaction() as session:
            record = session.get(PlaceRecord, place_id)
            if record is None:
                raise NotFound(place_id)
            session.execute(delete(GridCellRecord).where(GridCellRecord.place_id == place_id))
            place = self._store.get(place_id, session=session)
            records: list[GridCellRecord] = []
            if place.bounds is not None:
                for tile_x, tile_y in tiles_for_bounds(place.bounds):
                    cell = _clip(place, tile_x, tile_y)
                    if cell is not None:
                        records.append(cell)
            session.add_all(records)
        logger.debug("grid.place_refreshed id=%s cells=%d", place_id, len(records))
        return len(records)

    def clear_tile(self, tile_x: int, tile_y: int) -> int:
        with self._store.transaction() as session:
            return self._clear_tile(session, int(tile_x), int(tile_y))

    def clear(self) -> int:
        with self._store.transaction() as session:
            result = session.execute(delete(GridCellRecord))
            return int(result.rowcount or 0)

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def lookup_point(
        self, lon: float, lat: float, *, session: Session | None = None
    ) -> set[int]:
        """Ids of places owning a cell that intersects the point (edges included)."""

        point = make_point(lon, lat)
        x, y = point.x, point.y
        r = grid_rtree.c
        stmt = (
            select(GridCellRecord.place_id, GridCellRecord.geom_wkb)
            .join(grid_rtree, r.id == GridCellRecord.id)
            .where(r.xmin <= x, r.xmax >= x, r.ymin <= y, r.ymax >= y)
        )
        found: set[int] = set()
        with self._store.session_scope(session) as active:
            for place_id, blob in active.execute(stmt):
                if place_id in found:
                    continue
                if intersects(load_geometry(blob), point):
                    found.add(place_id)
        return found

    def cells_for_place(self, place_id: int) -> list[GridCell]:
        with self._store.session() as session:
            rows = session.scalars(
                select(GridCellRecord)
                .where(GridCellRecord.place_id == place_id)
                .order_by(GridCellRecord.tile_x, GridCellRecord.tile_y, GridCellRecord.id)
            )
            return [cell_from_record(r) for r in rows]

    def built_tiles(self) -> list[tuple[int, int]]:
        with self._store.session() as session:
            rows = session.execute(
                select(GridCellRecord.tile_x, GridCellRecord.tile_y)
                .distinct()
                .order_by(GridCellRecord.tile_x, GridCellRecord.tile_y)
            )
            return [(int(x), int(y)) for x, y in rows]

    def cell_count(self) -> int:
        with self._store.session() as session:
            return int(session.scalar(select(func.count()).select_from(GridCellRecord)) or 0)

