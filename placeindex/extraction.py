"""Copy a root place and everything it contains into another store."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from shapely.prepared import prep

from .entities import Place
from .errors import NotFound, TargetAlreadyInitialized
from .geometry import contains
from .place_store import PlaceStore

__all__ = ["ExtractionEngine", "ExtractionResult", "extract_to_path"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExtractionResult:
    root_id: int
    ids: tuple[int, ...] = field(default_factory=tuple)

    def __len__(self) -> int:
        return len(self.ids)

    def __contains__(self, place_id: object) -> bool:
        return place_id in self.ids


class ExtractionEngine:
    """Builds self-consistent regional subsets of a source store.

    The closure of a root is the root itself plus every place whose bounding
    box lies inside the root's box and whose geometry the root exactly
    contains. Grid cells are never copied; rebuild them on the target.
    """

    def __init__(self, source: PlaceStore):
        self._source = source

    @property
    def source(self) -> PlaceStore:
        return self._source

    def closure(self, root_id: int) -> list[Place]:
        """The places ``extract`` would copy, ordered by id."""

        with self._source.session() as session:
            root = self._source.get(root_id, session=session)
            if root.geometry is None:
                raise NotFound(root_id, "place has no geometry")
            candidates = self._source.pruner.candidates_enclosed_by(root.bounds, session=session)
            candidates.discard(root_id)
            places = self._source.get_many(candidates, session=session)

        prepared = prep(root.geometry)
        members = [root]
        for place_id in sorted(places):
            place = places[place_id]
            if place.geometry is not None and contains(prepared, place.geometry):
                members.append(place)
        return sorted(members, key=lambda p: p.id)

    def extract(self, target: PlaceStore, root_id: int) -> ExtractionResult:
        """Copy ``root_id`` and its contained places into ``target``.

        Raises ``NotFound`` when the root is unknown or has no geometry and
        ``TargetAlreadyInitialized`` when ``target`` already holds any of the
        ids; in that case nothing is written.
        """

        if target is self._source:
            raise ValueError("Extraction target must be a different store than the source")

        t0 = time.perf_counter()
        members = self.closure(root_id)
        ids = [p.id for p in members]

        with target.transaction() as session:
            conflicting = sorted(target.existing_ids(ids, session=session))
            if conflicting:
                raise TargetAlreadyInitialized(conflicting)
            for place in members:
                target.insert_stored(session, place)

        logger.info(
            "extract.completed root=%s places=%d target=%s seconds=%.2f",
            root_id,
            len(ids),
            target.url,
            time.perf_counter() - t0,
        )
        return ExtractionResult(root_id=root_id, ids=tuple(ids))


def extract_to_path(
    source: PlaceStore,
    path: str | Path,
    root_id: int,
    *,
    pragmas: Mapping[str, Any] | None = None,
) -> ExtractionResult:
    """Extract ``root_id`` into a fresh store file at ``path``."""

    with PlaceStore.open(path, pragmas=pragmas) as target:
        return ExtractionEngine(source).extract(target, root_id)
