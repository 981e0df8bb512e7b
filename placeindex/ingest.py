"""Loading Who's On First style GeoJSON features into a PlaceStore."""

from __future__ import annotations

import json
import logging
import re
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Any, Iterable, Mapping

from tqdm import tqdm

from .entities import Place
from .errors import BatchReport, PlaceIndexError
from .place_store import PlaceStore

__all__ = [
    "place_from_feature",
    "load_place_file",
    "ingest_paths",
    "ingest_directory",
    "read_json_property",
]

logger = logging.getLogger(__name__)

ID_PROPERTY = "wof:id"
NAME_PROPERTY = "wof:name"
LAYER_PROPERTY = "wof:placetype"

_INSERT_CHUNK = 1000


def _coerce_id(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{ID_PROPERTY} must be an integer, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    raise ValueError(f"{ID_PROPERTY} must be an integer, got {value!r}")


def place_from_feature(feature: Mapping[str, Any]) -> Place:
    """Build a Place from a GeoJSON Feature carrying ``wof:*`` properties."""

    if not isinstance(feature, Mapping):
        raise ValueError("GeoJSON feature must be an object")
    props = feature.get("properties") or {}
    if ID_PROPERTY not in props or props[ID_PROPERTY] is None:
        raise ValueError(f"feature has no '{ID_PROPERTY}' property")
    name = props.get(NAME_PROPERTY)
    if not isinstance(name, str) or not name.strip():
        raise ValueError(f"feature has no '{NAME_PROPERTY}' property")
    layer = props.get(LAYER_PROPERTY)
    return Place(
        id=_coerce_id(props[ID_PROPERTY]),
        name=name,
        layer=layer if layer not in ("", None) else None,
        geometry=feature.get("geometry"),
    )


def load_place_file(path: str | Path) -> Place:
    p = Path(path)
    with p.open("r", encoding="utf-8") as f:
        feature = json.load(f)
    return place_from_feature(feature)


def _load_all(
    paths: list[Path], report: BatchReport, max_workers: int | None, progress: bool
) -> list[tuple[Path, Place]]:
    loaded: list[tuple[Path, Place]] = []

    def _fail(path: Path, exc: BaseException) -> None:
        logger.warning("ingest.file_failed path=%s error=%s", path, exc)
        report.record_failure(str(path), exc)

    bar = tqdm(total=len(paths), desc="Loading", unit="file", disable=not progress)
    try:
        if not max_workers or max_workers <= 1:
            for path in paths:
                try:
                    loaded.append((path, load_place_file(path)))
                except (OSError, ValueError, PlaceIndexError) as exc:
                    _fail(path, exc)
                bar.update(1)
        else:
            with ThreadPoolExecutor(max_workers=max_workers) as ex:
                futures = {ex.submit(load_place_file, path): path for path in paths}
                for fut in as_completed(futures):
                    path = futures[fut]
                    try:
                        loaded.append((path, fut.result()))
                    except (OSError, ValueError, PlaceIndexError) as exc:
                        _fail(path, exc)
                    bar.update(1)
    finally:
        bar.close()
    # keep insertion order independent of thread scheduling
    loaded.sort(key=lambda item: str(item[0]))
    return loaded


def ingest_paths(
    store: PlaceStore,
    paths: Iterable[str | Path],
    *,
    repair: bool = True,
    max_workers: int | None = None,
    progress: bool = False,
) -> BatchReport:
    """Insert every file in ``paths``, continuing past files that fail.

    Failures are reported per file path: unreadable or malformed JSON, missing
    ``wof:*`` properties, duplicate ids and unrepairable geometry.
    """

    files = [Path(p) for p in paths]
    report = BatchReport("index")
    loaded = _load_all(files, report, max_workers, progress)

    for start in range(0, len(loaded), _INSERT_CHUNK):
        chunk = loaded[start : start + _INSERT_CHUNK]
        # a later file with a repeated id is the one that fails
        path_by_id = {place.id: path for path, place in chunk}
        inserted = store.insert_many((place for _, place in chunk), repair=repair)
        for failure in inserted.failures:
            failure.item = str(path_by_id.get(failure.item, failure.item))
        report.merge(inserted)

    logger.info("ingest.completed files=%d %s", len(files), report.summary())
    return report


def ingest_directory(
    store: PlaceStore,
    directory: str | Path,
    *,
    pattern: str = "*.geojson",
    repair: bool = True,
    max_workers: int | None = None,
    progress: bool = False,
) -> BatchReport:
    """Recursively ingest every ``*.geojson`` file below ``directory``."""

    root = Path(directory)
    if not root.is_dir():
        raise NotADirectoryError(f"Not a directory: {root}")
    paths = sorted(p for p in root.rglob(pattern) if p.is_file())
    logger.info("ingest.discovered directory=%s files=%d", root, len(paths))
    return ingest_paths(
        store, paths, repair=repair, max_workers=max_workers, progress=progress
    )


_SEGMENT = re.compile(r'\.(?:"([^"]*)"|([^.\[\]"]+))|\[(\d+)\]')


def _parse_expression(expression: str) -> list[str | int]:
    text = expression.strip()
    if not text.startswith("$"):
        raise ValueError(f"JSON path must start with '$': {expression!r}")
    steps: list[str | int] = []
    pos = 1
    while pos < len(text):
        m = _SEGMENT.match(text, pos)
        if m is None:
            raise ValueError(f"Malformed JSON path at offset {pos}: {expression!r}")
        quoted, bare, index = m.groups()
        if index is not None:
            steps.append(int(index))
        else:
            steps.append(quoted if quoted is not None else bare)
        pos = m.end()
    return steps


def read_json_property(path: str | Path, expression: str) -> Any:
    """Evaluate a small JSON path such as ``$.properties."wof:id"`` against a file.

    Supports dotted keys, double-quoted keys and ``[n]`` array indexes.
    Returns None when any step is missing.
    """

    steps = _parse_expression(expression)
    with Path(path).open("r", encoding="utf-8") as f:
        value: Any = json.load(f)
    for step in steps:
        if isinstance(step, int):
            if not isinstance(value, list) or step >= len(value):
                return None
            value = value[step]
        else:
            if not isinstance(value, Mapping) or step not in value:
                return None
            value = value[step]
    return value
