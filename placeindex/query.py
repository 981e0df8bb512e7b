"""Point-in-polygon and containment queries plus the result view they return."""
from __future__ import annotations

import functools
import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from shapely.prepared import prep

from .entities import BoundingBox, Place
from .errors import NotFound
from .geometry import contains, make_point, probably_lonlat, within
from .grid_index import GridIndex
from .place_store import PlaceStore

__all__ = ["PlaceQuery", "QueryEngine", "STRATEGIES"]

logger = logging.getLogger(__name__)

STRATEGIES = ("exhaustive", "fast", "turbo")


def timeit(func):
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        t0 = time.perf_counter()
        out = func(*args, **kwargs)
        dt = (time.perf_counter() - t0) * 1000
        logger.debug("query.%s took %.2f ms results=%d", func.__name__, dt, len(out))
        return out

    return wrapper


class PlaceQuery:
    """Lightweight, ordered view over the places a query matched."""

    def __init__(self, items: Iterable[Place]):
        self._items = sorted(items, key=lambda p: p.id)

    def __iter__(self):
        return iter(self._items)

    def __len__(self):
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)

    def __getitem__(self, idx: int) -> Place:
        return self._items[idx]

    def __repr__(self) -> str:
        return f"PlaceQuery(ids={self.ids()})"

    def to_list(self) -> List[Place]:
        return list(self._items)

    def first(self) -> Optional[Place]:
        return self._items[0] if self._items else None

    def ids(self) -> List[int]:
        return [p.id for p in self._items]

    def id_set(self) -> set[int]:
        return {p.id for p in self._items}

    def filter(self, predicate: Callable[[Place], bool]) -> "PlaceQuery":
        return PlaceQuery(p for p in self._items if predicate(p))

    def in_layer(self, *layers: str) -> "PlaceQuery":
        wanted = set(layers)
        return self.filter(lambda p: p.layer in wanted)

    def to_dicts(self, *, include_geometry: bool = False) -> List[Dict[str, Any]]:
        return [p.to_dict(include_geometry=include_geometry) for p in self._items]

    def to_df(
        self,
        columns: list[str] | None = None,
        *,
        include_geometry: bool = False,
        column_order: Sequence[str] | None = None,
        rename: Dict[str, str] | None = None,
    ):
        """Materialize the matched places as a pandas DataFrame.

        Parameters
        ----------
        columns : list[str] | None
            Optional subset of columns to retain.
        include_geometry : bool
            Add a ``geometry`` column holding GeoJSON-like mappings.
        column_order : Sequence[str] | None
            Preferred ordering applied after materialisation. Missing columns are ignored.
        rename : Dict[str, str] | None
            Column rename mapping applied via DataFrame.rename.
        """

        import pandas as pd

        base_columns = ["id", "name", "layer"] + (["geometry"] if include_geometry else [])
        df = pd.DataFrame(self.to_dicts(include_geometry=include_geometry), columns=base_columns)

        if rename:
            df = df.rename(columns=rename)

        order = list(column_order or [])
        if columns:
            order = list(columns) if not order else list(order) + [
                c for c in columns if c not in order
            ]
        if order:
            cols = [c for c in order if c in df.columns]
            if columns:
                df = df[cols]
            else:
                df = df[cols + [c for c in df.columns if c not in cols]]
        return df


class QueryEngine:
    """Answers point and containment queries against one store.

    Three point-in-polygon strategies trade exactness for speed:

    * ``pip``: exact ``contains`` against every place.
    * ``pip_fast``: bounding-box candidates, then exact ``contains``. Always
      the same answer as ``pip``.
    * ``pip_turbo``: grid cells only, no exact re-test. Cells are matched with
      ``intersects``, so a point lying on a place's own boundary is reported
      here while the exact strategies leave it out, and cells built before a
      geometry update keep answering for the old geometry.
    """

    def __init__(self, store: PlaceStore, grid: GridIndex | None = None):
        self._store = store
        self._grid = grid if grid is not None else GridIndex(store)

    @property
    def grid(self) -> GridIndex:
        return self._grid

    @staticmethod
    def _point(lon: float, lat: float):
        point = make_point(lon, lat)
        if not probably_lonlat(point.x, point.y):
            logger.debug("query.point_outside_lonlat lon=%s lat=%s", lon, lat)
        return point

    @timeit
    def pip(self, lon: float, lat: float) -> PlaceQuery:
        point = self._point(lon, lat)
        matches: list[Place] = []
        with self._store.session() as session:
            for place in self._store.iter_places(with_geometry=True, session=session):
                if contains(place.geometry, point):
                    matches.append(place)
        return PlaceQuery(matches)

    @timeit
    def pip_fast(self, lon: float, lat: float) -> PlaceQuery:
        point = self._point(lon, lat)
        with self._store.session() as session:
            candidates = self._store.pruner.candidates_overlapping(
                BoundingBox.point(point.x, point.y), session=session
            )
            places = self._store.get_many(candidates, session=session)
        return PlaceQuery(
            p for p in places.values() if p.geometry is not None and contains(p.geometry, point)
        )

    @timeit
    def pip_turbo(self, lon: float, lat: float) -> PlaceQuery:
        point = self._point(lon, lat)
        with self._store.session() as session:
            ids = self._grid.lookup_point(point.x, point.y, session=session)
            places = self._store.get_many(ids, session=session)
        return PlaceQuery(places.values())

    def point_in_polygon(self, lon: float, lat: float, strategy: str = "fast") -> PlaceQuery:
        key = strategy.lower()
        if key == "exhaustive":
            return self.pip(lon, lat)
        if key == "fast":
            return self.pip_fast(lon, lat)
        if key == "turbo":
            return self.pip_turbo(lon, lat)
        raise ValueError(f"Unknown strategy '{strategy}'; expected one of {STRATEGIES}")

    def _reference(self, place_id: int, session) -> Place:
        ref = self._store.get(place_id, session=session)
        if ref.geometry is None:
            raise NotFound(place_id, "place has no geometry")
        return ref

    @timeit
    def find_children(self, place_id: int) -> PlaceQuery:
        """Places exactly contained by ``place_id``'s geometry."""

        with self._store.session() as session:
            ref = self._reference(place_id, session)
            candidates = self._store.pruner.candidates_enclosed_by(ref.bounds, session=session)
            candidates.discard(place_id)
            places = self._store.get_many(candidates, session=session)
        prepared = prep(ref.geometry)
        return PlaceQuery(
            p for p in places.values() if p.geometry is not None and contains(prepared, p.geometry)
        )

    @timeit
    def find_parents(self, place_id: int) -> PlaceQuery:
        """Places whose geometry exactly contains ``place_id``'s geometry."""

        with self._store.session() as session:
            ref = self._reference(place_id, session)
            candidates = self._store.pruner.candidates_enclosing(ref.bounds, session=session)
            candidates.discard(place_id)
            places = self._store.get_many(candidates, session=session)
        return PlaceQuery(
            p for p in places.values() if p.geometry is not None and within(ref.geometry, p.geometry)
        )
