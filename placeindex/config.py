"""
config.py

Settings for placeindex stores and the batch CLI.

Sources, later ones winning:
- built-in defaults
- a YAML or TOML file (top-level keys, or a ``placeindex`` table)
- PLACEINDEX_* environment variables
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

__all__ = ["Settings", "load_settings", "DEFAULT_PRAGMAS", "ENV_PREFIX"]

ENV_PREFIX = "PLACEINDEX_"

DEFAULT_PRAGMAS: Dict[str, Any] = {
    "page_size": 4096,
    "cache_size": -2000,
    "temp_store": "MEMORY",
}

_PRUNERS = ("sql", "array")
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# ------------------------------
# Loading utilities (YAML/TOML)
# ------------------------------


def _load_yaml(text: str) -> dict:
    try:
        import yaml  # PyYAML
    except ImportError as e:
        raise RuntimeError(
            "PyYAML is required to read .yaml/.yml configs. pip install pyyaml"
        ) from e
    data = yaml.safe_load(text) or {}
    if not isinstance(data, dict):
        raise ValueError("YAML root must be a mapping (dict).")
    return data


def _load_toml(text: str) -> dict:
    import tomllib

    data = tomllib.loads(text)
    if not isinstance(data, dict):
        raise ValueError("TOML root must be a mapping (dict).")
    return data


def _detect_and_load(path: Path) -> dict:
    suffix = path.suffix.lower()
    text = path.read_text(encoding="utf-8")
    if suffix in (".yaml", ".yml"):
        return _load_yaml(text)
    if suffix == ".toml":
        return _load_toml(text)
    raise ValueError(f"Unsupported config file type '{suffix}' (expected .yaml, .yml or .toml)")


def _expand_path(value: str) -> str:
    """Expand ~ and $ENV in a path-like string, but leave URLs untouched."""
    if isinstance(value, str) and ("://" not in value):
        return os.path.expandvars(os.path.expanduser(value))
    return value


# ------------------------------
# Data model & validation
# ------------------------------


@dataclass(frozen=True)
class Settings:
    database: Optional[str] = None
    indir: Optional[str] = None
    outdir: str = "."
    grid_extent: Tuple[int, int, int, int] = (-180, -90, 179, 89)
    simplify_tolerance: float = 0.1
    max_workers: Optional[int] = None
    pruner: str = "sql"
    log_level: str = "INFO"
    sqlite_pragmas: Dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_PRAGMAS))

    def __post_init__(self):
        if self.pruner not in _PRUNERS:
            raise ValueError(f"pruner must be one of {_PRUNERS}, got {self.pruner!r}")
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of {_LOG_LEVELS}, got {self.log_level!r}")
        if self.max_workers is not None and self.max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {self.max_workers}")
        if self.simplify_tolerance < 0:
            raise ValueError(
                f"simplify_tolerance must be >= 0, got {self.simplify_tolerance}"
            )
        if len(self.grid_extent) != 4:
            raise ValueError(f"grid_extent needs 4 integers, got {self.grid_extent!r}")
        min_x, min_y, max_x, max_y = self.grid_extent
        if min_x > max_x or min_y > max_y:
            raise ValueError(f"grid_extent min exceeds max: {self.grid_extent}")

    @property
    def database_location(self) -> str:
        """The store location; ``wof.sqlite3`` inside ``outdir`` unless set."""
        if self.database:
            return self.database
        return str(Path(self.outdir) / "wof.sqlite3")

    def open_store(self, location: str | Path | None = None):
        from .place_store import PlaceStore

        return PlaceStore.open(
            location if location is not None else self.database_location,
            pragmas=self.sqlite_pragmas,
            pruner=self.pruner,
        )

    def with_overrides(self, **overrides: Any) -> "Settings":
        """Copy with the given values applied; None values are ignored."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **_coerce(changes)) if changes else self


def _as_int(key: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{key} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"{key} must be an integer, got {value!r}") from e


def _coerce(raw: Mapping[str, Any]) -> Dict[str, Any]:
    known = {f.name for f in fields(Settings)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ValueError(f"Unknown settings: {', '.join(unknown)}")

    out: Dict[str, Any] = {}
    for key, value in raw.items():
        if key in ("database", "indir", "outdir"):
            out[key] = None if value is None else _expand_path(str(value))
        elif key == "grid_extent":
            if isinstance(value, str):
                value = [v for v in value.replace(",", " ").split() if v]
            out[key] = tuple(_as_int(key, v) for v in value)
        elif key == "simplify_tolerance":
            try:
                out[key] = float(value)
            except (TypeError, ValueError) as e:
                raise ValueError(f"simplify_tolerance must be a number, got {value!r}") from e
        elif key == "max_workers":
            out[key] = None if value in (None, "") else _as_int(key, value)
        elif key == "pruner":
            out[key] = str(value).lower()
        elif key == "log_level":
            out[key] = str(value).upper()
        elif key == "sqlite_pragmas":
            if not isinstance(value, Mapping):
                raise ValueError("sqlite_pragmas must be a mapping")
            out[key] = {**DEFAULT_PRAGMAS, **dict(value)}
        else:
            out[key] = value
    return out


_ENV_KEYS = ("database", "indir", "outdir", "log_level", "max_workers", "pruner")


def _from_env(env: Mapping[str, str]) -> Dict[str, Any]:
    raw: Dict[str, Any] = {}
    for key in _ENV_KEYS:
        value = env.get(ENV_PREFIX + key.upper())
        if value is not None and value.strip() != "":
            raw[key] = value.strip()
    return raw


def load_settings(
    path: str | Path | None = None, env: Mapping[str, str] | None = None
) -> Settings:
    """Build Settings from defaults, an optional config file and the environment."""

    raw: Dict[str, Any] = {}
    if path is not None:
        p = Path(_expand_path(str(path)))
        if not p.exists():
            raise FileNotFoundError(f"Config file not found: {p}")
        data = _detect_and_load(p)
        section = data.get("placeindex", data)
        if not isinstance(section, dict):
            raise ValueError("'placeindex' config section must be a mapping")
        raw.update(section)

    raw.update(_from_env(os.environ if env is None else env))
    return Settings(**_coerce(raw))
