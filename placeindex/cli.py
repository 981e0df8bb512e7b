"""Batch driver for building and querying a place store.

Usage:
    placeindex [--config FILE] [--database DB] <command> ...

Commands:
    init                          create the schema
    json <file> <path>            print a JSON property, e.g. '$.properties."wof:id"'
    index <file>                  add one GeoJSON feature
    index_all [dir]               add every *.geojson below dir (default: indir)
    fixify                        repair invalid geometries
    simplify [tolerance]          topology-preserving simplification
    grid <x> <y>                  build the 1x1 degree tile at (x, y)
    grid_all [minx miny maxx maxy]  build every tile in range (default: grid_extent)
    pip | pipfast | pipturbo <lon> <lat>
    contains <id>                 places contained by id
    within <id>                   places containing id
    extract <target.db> <id>      copy id and its contents into a new store
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from .config import Settings, load_settings
from .errors import BatchReport, PlaceIndexError
from .extraction import extract_to_path
from .grid_index import GridIndex
from .ingest import ingest_directory, ingest_paths, read_json_property
from .query import PlaceQuery, QueryEngine

logger = logging.getLogger(__name__)


def _emit_places(result: PlaceQuery, as_json: bool) -> None:
    if as_json:
        print(json.dumps(result.to_dicts()))
        return
    for place in result:
        print(f"{place.id}\t{place.name}\t{place.layer or ''}")


def _emit_report(report: BatchReport, as_json: bool) -> int:
    if as_json:
        print(json.dumps(report.to_dict(), default=str))
    else:
        print(report.summary())
        for failure in report.failures:
            print(f"  {failure.item}: {failure.error_type}: {failure.message}", file=sys.stderr)
    return 0 if report.ok else 1


# ------------------------------
# Commands
# ------------------------------


def _cmd_init(settings: Settings, args) -> int:
    with settings.open_store() as store:
        url = store.url
    if args.json:
        print(json.dumps({"database": url}))
    else:
        print(f"Initialised {url}")
    return 0


def _cmd_json(settings: Settings, args) -> int:
    value = read_json_property(args.file, args.path)
    if isinstance(value, str) and not args.json:
        print(value)
    else:
        print(json.dumps(value))
    return 0


def _cmd_index(settings: Settings, args) -> int:
    with settings.open_store() as store:
        report = ingest_paths(store, [args.file])
    return _emit_report(report, args.json)


def _cmd_index_all(settings: Settings, args) -> int:
    directory = args.directory or settings.indir
    if not directory:
        print("index_all needs a directory (argument, indir setting or PLACEINDEX_INDIR)", file=sys.stderr)
        return 2
    with settings.open_store() as store:
        report = ingest_directory(
            store, directory, max_workers=settings.max_workers, progress=args.progress
        )
    return _emit_report(report, args.json)


def _cmd_fixify(settings: Settings, args) -> int:
    with settings.open_store() as store:
        report = store.repair_all()
    return _emit_report(report, args.json)


def _cmd_simplify(settings: Settings, args) -> int:
    tolerance = settings.simplify_tolerance if args.tolerance is None else args.tolerance
    with settings.open_store() as store:
        report = store.simplify_all(tolerance)
    return _emit_report(report, args.json)


def _cmd_grid(settings: Settings, args) -> int:
    with settings.open_store() as store:
        cells = GridIndex(store).build_tile(args.x, args.y, additive=args.additive)
    if args.json:
        print(json.dumps({"tile": [args.x, args.y], "cells": cells}))
    else:
        print(f"{args.x} {args.y}: {cells} cells")
    return 0


def _cmd_grid_all(settings: Settings, args) -> int:
    extent = tuple(args.extent) if args.extent else settings.grid_extent
    with settings.open_store() as store:
        report = GridIndex(store).build_range(
            *extent, additive=args.additive, max_workers=settings.max_workers
        )
    return _emit_report(report, args.json)


def _cmd_point(strategy: str):
    def run(settings: Settings, args) -> int:
        with settings.open_store() as store:
            result = QueryEngine(store).point_in_polygon(args.lon, args.lat, strategy)
        _emit_places(result, args.json)
        return 0

    return run


def _cmd_contains(settings: Settings, args) -> int:
    with settings.open_store() as store:
        result = QueryEngine(store).find_children(args.id)
    _emit_places(result, args.json)
    return 0


def _cmd_within(settings: Settings, args) -> int:
    with settings.open_store() as store:
        result = QueryEngine(store).find_parents(args.id)
    _emit_places(result, args.json)
    return 0


def _cmd_extract(settings: Settings, args) -> int:
    with settings.open_store() as store:
        result = extract_to_path(store, args.target, args.id, pragmas=settings.sqlite_pragmas)
    if args.json:
        print(json.dumps({"root_id": result.root_id, "ids": list(result.ids)}))
    else:
        print(f"Extracted {len(result)} places under {result.root_id} into {args.target}")
    return 0


# ------------------------------
# Parser
# ------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="placeindex",
        description="Build and query a spatial index of place polygons.",
    )
    parser.add_argument("--config", help="YAML or TOML settings file")
    parser.add_argument("--database", help="store path or SQLAlchemy URL (overrides settings)")
    parser.add_argument("--outdir", help="output directory holding wof.sqlite3")
    parser.add_argument("--log-level", dest="log_level", help="DEBUG, INFO, WARNING, ...")
    parser.add_argument("--workers", dest="max_workers", type=int, help="thread pool size")
    parser.add_argument("--pruner", choices=("sql", "array"), help="bounding-box pruner")
    parser.add_argument("--json", action="store_true", help="print JSON instead of text")
    sub = parser.add_subparsers(dest="command", required=True, metavar="command")

    sub.add_parser("init", help="create the schema").set_defaults(func=_cmd_init)

    p = sub.add_parser("json", help="print a JSON property from a file")
    p.add_argument("file")
    p.add_argument("path")
    p.set_defaults(func=_cmd_json)

    p = sub.add_parser("index", help="add one GeoJSON feature")
    p.add_argument("file")
    p.set_defaults(func=_cmd_index)

    p = sub.add_parser("index_all", help="add every *.geojson below a directory")
    p.add_argument("directory", nargs="?")
    p.add_argument("--progress", action="store_true", help="show a progress bar")
    p.set_defaults(func=_cmd_index_all)

    sub.add_parser("fixify", help="repair invalid geometries").set_defaults(func=_cmd_fixify)

    p = sub.add_parser("simplify", help="topology-preserving simplification")
    p.add_argument("tolerance", nargs="?", type=float)
    p.set_defaults(func=_cmd_simplify)

    p = sub.add_parser("grid", help="build one 1x1 degree tile")
    p.add_argument("x", type=int)
    p.add_argument("y", type=int)
    p.add_argument("--additive", action="store_true", help="keep existing cells")
    p.set_defaults(func=_cmd_grid)

    p = sub.add_parser("grid_all", help="build every tile in a range")
    p.add_argument("extent", nargs="*", type=int, metavar="N")
    p.add_argument("--additive", action="store_true", help="keep existing cells")
    p.set_defaults(func=_cmd_grid_all)

    for name, strategy in (("pip", "exhaustive"), ("pipfast", "fast"), ("pipturbo", "turbo")):
        p = sub.add_parser(name, help=f"point-in-polygon ({strategy})")
        p.add_argument("lon", type=float)
        p.add_argument("lat", type=float)
        p.set_defaults(func=_cmd_point(strategy))

    p = sub.add_parser("contains", help="places contained by id")
    p.add_argument("id", type=int)
    p.set_defaults(func=_cmd_contains)

    p = sub.add_parser("within", help="places containing id")
    p.add_argument("id", type=int)
    p.set_defaults(func=_cmd_within)

    p = sub.add_parser("extract", help="copy id and its contents into a new store")
    p.add_argument("target")
    p.add_argument("id", type=int)
    p.set_defaults(func=_cmd_extract)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "grid_all" and args.extent and len(args.extent) != 4:
        parser.error("grid_all takes either no extent or exactly: minx miny maxx maxy")

    try:
        settings = load_settings(args.config).with_overrides(
            database=args.database,
            outdir=args.outdir,
            log_level=args.log_level,
            max_workers=args.max_workers,
            pruner=args.pruner,
        )
    except (OSError, ValueError, RuntimeError) as exc:
        print(f"placeindex: configuration error: {exc}", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    if args.command != "json" and not settings.database:
        outdir = Path(settings.outdir)
        if not outdir.is_dir():
            print(f"placeindex: output directory does not exist: {outdir}", file=sys.stderr)
            return 2

    try:
        return args.func(settings, args)
    except PlaceIndexError as exc:
        logger.error("cli.failed command=%s error=%s", args.command, exc)
        print(f"placeindex: {exc}", file=sys.stderr)
        return 1
    except (OSError, ValueError) as exc:
        logger.error("cli.failed command=%s error=%s", args.command, exc)
        print(f"placeindex: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
