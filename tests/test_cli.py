import json

import pytest

from placeindex.cli import main


def _feature(place_id, name, placetype, x0, y0, x1, y1):
    return {
        "type": "Feature",
        "properties": {"wof:id": place_id, "wof:name": name, "wof:placetype": placetype},
        "geometry": {
            "type": "Polygon",
            "coordinates": [[[x0, y0], [x1, y0], [x1, y1], [x0, y1], [x0, y0]]],
        },
    }


@pytest.fixture
def indexed(tmp_path, monkeypatch):
    for key in ("DATABASE", "INDIR", "OUTDIR", "LOG_LEVEL", "MAX_WORKERS", "PRUNER"):
        monkeypatch.delenv(f"PLACEINDEX_{key}", raising=False)
    data = tmp_path / "data"
    data.mkdir()
    (data / "1.geojson").write_text(
        json.dumps(_feature(1, "Square", "country", -1, -1, 1, 1)), encoding="utf-8"
    )
    (data / "2.geojson").write_text(
        json.dumps(_feature(2, "Inner", "region", -0.5, -0.5, 0.5, 0.5)), encoding="utf-8"
    )
    db = tmp_path / "wof.sqlite3"
    assert main(["--database", str(db), "init"]) == 0
    assert main(["--database", str(db), "index_all", str(data)]) == 0
    return db


def test_point_queries_print_one_line_per_place(indexed, capsys):
    capsys.readouterr()

    assert main(["--database", str(indexed), "pipfast", "0", "0"]) == 0
    assert capsys.readouterr().out.splitlines() == ["1\tSquare\tcountry", "2\tInner\tregion"]

    assert main(["--database", str(indexed), "pip", "5", "5"]) == 0
    assert capsys.readouterr().out == ""


def test_grid_then_turbo_lookup(indexed, capsys):
    capsys.readouterr()
    assert main(["--database", str(indexed), "grid", "0", "0"]) == 0
    assert capsys.readouterr().out.strip() == "0 0: 2 cells"

    assert main(["--database", str(indexed), "grid_all", "-1", "-1", "0", "0"]) == 0
    capsys.readouterr()

    assert main(["--database", str(indexed), "--json", "pipturbo", "-0.25", "0.25"]) == 0
    payload = json.loads(capsys.readouterr().out)
    assert [p["id"] for p in payload] == [1, 2]


def test_containment_commands(indexed, capsys):
    capsys.readouterr()

    assert main(["--database", str(indexed), "contains", "1"]) == 0
    assert capsys.readouterr().out.splitlines() == ["2\tInner\tregion"]
    assert main(["--database", str(indexed), "within", "2"]) == 0
    assert capsys.readouterr().out.splitlines() == ["1\tSquare\tcountry"]


def test_unknown_id_exits_with_error(indexed, capsys):
    assert main(["--database", str(indexed), "contains", "999"]) == 1
    assert "unknown place id" in capsys.readouterr().err


def test_extract_command(indexed, tmp_path, capsys):
    target = tmp_path / "extract.db"

    assert main(["--database", str(indexed), "--json", "extract", str(target), "1"]) == 0
    assert json.loads(capsys.readouterr().out.splitlines()[-1]) == {"root_id": 1, "ids": [1, 2]}
    assert main(["--database", str(target), "contains", "1"]) == 0


def test_index_reports_failures(indexed, tmp_path, capsys):
    dup = tmp_path / "dup.geojson"
    dup.write_text(json.dumps(_feature(1, "Again", "country", 0, 0, 1, 1)), encoding="utf-8")
    capsys.readouterr()

    assert main(["--database", str(indexed), "index", str(dup)]) == 1
    captured = capsys.readouterr()
    assert "index: 0 succeeded, 1 failed" in captured.out
    assert "DuplicateId" in captured.err


def test_json_command(tmp_path, capsys):
    path = tmp_path / "f.geojson"
    path.write_text(json.dumps(_feature(7, "Seven", "locality", 0, 0, 1, 1)), encoding="utf-8")

    assert main(["json", str(path), '$.properties."wof:name"']) == 0
    assert capsys.readouterr().out.strip() == "Seven"


def test_missing_outdir_is_rejected(tmp_path, monkeypatch, capsys):
    monkeypatch.delenv("PLACEINDEX_DATABASE", raising=False)

    assert main(["--outdir", str(tmp_path / "nope"), "init"]) == 2
    assert "does not exist" in capsys.readouterr().err


def test_fixify_and_simplify(indexed, capsys):
    capsys.readouterr()

    assert main(["--database", str(indexed), "fixify"]) == 0
    assert main(["--database", str(indexed), "simplify", "0.01"]) == 0
    out = capsys.readouterr().out
    assert "repair: 2 succeeded, 0 failed" in out
    assert "simplify: 2 succeeded, 0 failed" in out
