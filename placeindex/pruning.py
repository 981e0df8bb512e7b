"""Bounding-box pruning over the ``place_bounds`` boxes.

Every higher level operation narrows its candidate set here before running
exact geometry predicates, so a pruner must only ever return a superset of
the true answer. Comparisons are closed on every edge.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Callable, Protocol

import numpy as np
from sqlalchemy import select
from sqlalchemy.orm import Session

from .entities import BoundingBox
from .persistence.sqlalchemy_store import PlaceBoundsRecord, place_rtree

if TYPE_CHECKING:  # pragma: no cover
    from .place_store import PlaceStore

__all__ = [
    "BoundingBoxPruner",
    "SqlBoundsPruner",
    "ArrayBoundsPruner",
    "make_pruner",
]

logger = logging.getLogger(__name__)


class BoundingBoxPruner(Protocol):
    def candidates_overlapping(
        self, rect: BoundingBox, *, session: Session | None = None
    ) -> set[int]: ...

    def candidates_enclosed_by(
        self, rect: BoundingBox, *, session: Session | None = None
    ) -> set[int]: ...

    def candidates_enclosing(
        self, rect: BoundingBox, *, session: Session | None = None
    ) -> set[int]: ...


def _down(value: float) -> float:
    """Largest float32 not above ``value``."""
    f = np.float32(value)
    if float(f) > value:
        f = np.nextafter(f, np.float32(-np.inf))
    return float(f)


def _up(value: float) -> float:
    """Smallest float32 not below ``value``."""
    f = np.float32(value)
    if float(f) < value:
        f = np.nextafter(f, np.float32(np.inf))
    return float(f)


class SqlBoundsPruner:
    """R-tree queries against ``place_rtree``; always current.

    The R-tree holds float32 boxes rounded outward. Overlap and enclosing
    queries are supersets as they stand; for ``enclosed_by`` the query
    rectangle is widened to float32 as well, or a box sharing an edge with
    it could be rounded out of the answer.
    """

    def __init__(self, store: "PlaceStore"):
        self._store = store

    def _ids(self, predicate, session: Session | None) -> set[int]:
        stmt = select(place_rtree.c.pkid).where(*predicate)
        with self._store.session_scope(session) as active:
            return set(active.scalars(stmt))

    def candidates_overlapping(
        self, rect: BoundingBox, *, session: Session | None = None
    ) -> set[int]:
        r = place_rtree.c
        return self._ids(
            (
                r.xmin <= rect.xmax,
                r.xmax >= rect.xmin,
                r.ymin <= rect.ymax,
                r.ymax >= rect.ymin,
            ),
            session,
        )

    def candidates_enclosed_by(
        self, rect: BoundingBox, *, session: Session | None = None
    ) -> set[int]:
        r = place_rtree.c
        return self._ids(
            (
                r.xmin >= _down(rect.xmin),
                r.xmax <= _up(rect.xmax),
                r.ymin >= _down(rect.ymin),
                r.ymax <= _up(rect.ymax),
            ),
            session,
        )

    def candidates_enclosing(
        self, rect: BoundingBox, *, session: Session | None = None
    ) -> set[int]:
        r = place_rtree.c
        return self._ids(
            (
                r.xmin <= rect.xmin,
                r.xmax >= rect.xmax,
                r.ymin <= rect.ymin,
                r.ymax >= rect.ymax,
            ),
            session,
        )


class ArrayBoundsPruner:
    """In-memory NumPy copy of every box, masked with vectorised comparisons.

    The arrays are tagged with the store generation they were read at and
    rebuilt on first use after any geometry mutation, so a stale box is never
    consulted.
    """

    def __init__(self, store: "PlaceStore"):
        self._store = store
        self._build_lock = threading.Lock()
        self._generation: int | None = None
        self._ids: np.ndarray | None = None
        self._boxes: np.ndarray | None = None

    def _ensure_arrays(self, session: Session | None) -> tuple[np.ndarray, np.ndarray]:
        # store lock first, then the build lock
        with self._store.session_scope(session) as active, self._build_lock:
            current = self._store.generation
            if self._generation == current and self._ids is not None:
                return self._ids, self._boxes  # type: ignore[return-value]

            b = PlaceBoundsRecord
            stmt = select(b.pkid, b.xmin, b.xmax, b.ymin, b.ymax).order_by(b.pkid)
            rows = active.execute(stmt).all()
            if rows:
                ids = np.fromiter((r[0] for r in rows), dtype=np.int64, count=len(rows))
                boxes = np.array([r[1:] for r in rows], dtype=np.float64)
            else:
                ids = np.empty(0, dtype=np.int64)
                boxes = np.empty((0, 4), dtype=np.float64)
            self._ids, self._boxes, self._generation = ids, boxes, current
            logger.debug(
                "pruner.arrays_built generation=%s boxes=%d", current, len(ids)
            )
            return ids, boxes

    def _select(self, mask_fn: Callable[[np.ndarray], np.ndarray], session) -> set[int]:
        ids, boxes = self._ensure_arrays(session)
        if not len(ids):
            return set()
        mask = mask_fn(boxes)
        return {int(i) for i in ids[np.nonzero(mask)[0]]}

    def candidates_overlapping(
        self, rect: BoundingBox, *, session: Session | None = None
    ) -> set[int]:
        return self._select(
            lambda a: (a[:, 0] <= rect.xmax)
            & (a[:, 1] >= rect.xmin)
            & (a[:, 2] <= rect.ymax)
            & (a[:, 3] >= rect.ymin),
            session,
        )

    def candidates_enclosed_by(
        self, rect: BoundingBox, *, session: Session | None = None
    ) -> set[int]:
        return self._select(
            lambda a: (a[:, 0] >= rect.xmin)
            & (a[:, 1] <= rect.xmax)
            & (a[:, 2] >= rect.ymin)
            & (a[:, 3] <= rect.ymax),
            session,
        )

    def candidates_enclosing(
        self, rect: BoundingBox, *, session: Session | None = None
    ) -> set[int]:
        return self._select(
            lambda a: (a[:, 0] <= rect.xmin)
            & (a[:, 1] >= rect.xmax)
            & (a[:, 2] <= rect.ymin)
            & (a[:, 3] >= rect.ymax),
            session,
        )


_PRUNERS: dict[str, Callable[["PlaceStore"], BoundingBoxPruner]] = {
    "sql": SqlBoundsPruner,
    "array": ArrayBoundsPruner,
}


def make_pruner(
    kind: str | Callable[["PlaceStore"], BoundingBoxPruner], store: "PlaceStore"
) -> BoundingBoxPruner:
    """Build a pruner by name (``"sql"``/``"array"``) or from a factory callable."""

    if callable(kind):
        return kind(store)
    factory = _PRUNERS.get(str(kind).lower())
    if factory is None:
        raise ValueError(f"Unknown pruner '{kind}'; expected one of {sorted(_PRUNERS)}")
    return factory(store)
