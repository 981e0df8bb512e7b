# placeindex/__init__.py
from importlib.metadata import PackageNotFoundError, version
import sys
import warnings

_MINIMUM_PYTHON = (3, 11)
_REQUIRED_DEPENDENCIES = {
    "shapely": "2.0",
    "sqlalchemy": "2.0",
    "numpy": "1.26",
    "pandas": "2.1",
}

_OPTIONAL_DEPENDENCIES = {
    "pyyaml": "6.0",
}

if sys.version_info < _MINIMUM_PYTHON:
    raise RuntimeError(f"Python >= {'.'.join(map(str, _MINIMUM_PYTHON))} is required.")


def _gte(installed: str, required: str) -> bool:
    from packaging import version as pv

    return pv.parse(installed) >= pv.parse(required)


def _check(deps: dict[str, str]) -> list[str]:
    issues: list[str] = []
    for pkg, minv in deps.items():
        try:
            v = version(pkg)
        except PackageNotFoundError:
            issues.append(f"{pkg}>={minv} (not installed)")
            continue
        if not _gte(v, minv):
            issues.append(f"{pkg}>={minv} (found {v})")
    return issues


_required_issues = _check(_REQUIRED_DEPENDENCIES)
if _required_issues:
    raise ImportError(
        "placeindex requires the following dependencies: "
        + ", ".join(_required_issues)
    ) from None

_optional_issues = _check(_OPTIONAL_DEPENDENCIES)
if _optional_issues:
    warnings.warn(
        "Optional dependencies are missing or out of date: "
        + ", ".join(_optional_issues)
        + ". YAML configuration files will be unavailable.",
        RuntimeWarning,
        stacklevel=2,
    )


try:
    __version__ = version("placeindex")
except PackageNotFoundError:
    __version__ = "0.0.0"

from .entities import BoundingBox, GridCell, Place
from .errors import (
    BatchReport,
    DuplicateId,
    InvalidGeometry,
    NotFound,
    PlaceIndexError,
    TargetAlreadyInitialized,
)
from .place_store import PlaceStore
from .grid_index import GridIndex
from .query import PlaceQuery, QueryEngine
from .extraction import ExtractionEngine, ExtractionResult

__all__ = [
    "BoundingBox",
    "GridCell",
    "Place",
    "PlaceStore",
    "GridIndex",
    "QueryEngine",
    "PlaceQuery",
    "ExtractionEngine",
    "ExtractionResult",
    "BatchReport",
    "PlaceIndexError",
    "DuplicateId",
    "NotFound",
    "InvalidGeometry",
    "TargetAlreadyInitialized",
    "__version__",
]
