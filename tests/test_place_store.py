import logging

import pytest
from shapely.geometry import LineString, Polygon, box
from sqlalchemy import func, select, text

from placeindex.entities import BoundingBox, Place
from placeindex.errors import DuplicateId, InvalidGeometry, NotFound
from placeindex.persistence.sqlalchemy_store import (
    SCHEMA_VERSION,
    StoreMetaRecord,
    place_rtree,
    read_store_meta,
)
from placeindex.place_store import PlaceStore

BOWTIE = Polygon([(0, 0), (2, 2), (2, 0), (0, 2), (0, 0)])


def _square(place_id, x0, y0, x1, y1, *, name=None, layer="region"):
    return Place(id=place_id, name=name or f"place {place_id}", layer=layer, geometry=box(x0, y0, x1, y1))


def test_insert_and_get_round_trip():
    with PlaceStore.open() as store:
        stored = store.insert(_square(1, -1, -1, 1, 1, name="Square", layer="country"))
        fetched = store.get(1)

        assert stored.geometry.equals(box(-1, -1, 1, 1))
        assert fetched.name == "Square"
        assert fetched.layer == "country"
        assert fetched.geometry.equals(stored.geometry)
        assert store.bounds(1) == BoundingBox(-1.0, 1.0, -1.0, 1.0)
        assert 1 in store
        assert len(store) == 1


def test_insert_duplicate_id_raises_and_keeps_original():
    with PlaceStore.open() as store:
        store.insert(_square(1, 0, 0, 1, 1, name="first"))

        with pytest.raises(DuplicateId):
            store.insert(_square(1, 5, 5, 6, 6, name="second"))

        assert store.get(1).name == "first"
        assert store.bounds(1) == BoundingBox(0.0, 1.0, 0.0, 1.0)


def test_insert_rejects_non_polygonal_geometry():
    with PlaceStore.open() as store:
        with pytest.raises(InvalidGeometry):
            store.insert(Place(id=1, name="line", geometry=LineString([(0, 0), (1, 1)])))

        assert not store.exists(1)
        assert store.count() == 0


def test_insert_repairs_invalid_polygon():
    with PlaceStore.open() as store:
        stored = store.insert(Place(id=1, name="bowtie", geometry=BOWTIE))

        assert stored.geometry.is_valid
        assert store.get(1).geometry.is_valid
        assert store.bounds(1) == BoundingBox(0.0, 2.0, 0.0, 2.0)


def test_null_geometry_has_no_bounds():
    with PlaceStore.open() as store:
        store.insert(Place(id=1, name="nowhere"))

        assert store.get(1).geometry is None
        assert store.bounds(1) is None
        assert list(store.iter_places(with_geometry=True)) == []
        assert [p.id for p in store.iter_places()] == [1]


def test_bounds_of_unknown_id_raises():
    with PlaceStore.open() as store:
        with pytest.raises(NotFound):
            store.bounds(42)
        with pytest.raises(NotFound):
            store.get(42)


def test_update_geometry_recomputes_bounds():
    with PlaceStore.open() as store:
        store.insert(_square(1, 0, 0, 1, 1))
        before = store.generation

        store.update_geometry(1, box(10, 10, 12, 13))

        assert store.bounds(1) == BoundingBox(10.0, 12.0, 10.0, 13.0)
        assert store.generation > before

        store.update_geometry(1, None)

        assert store.bounds(1) is None
        assert store.get(1).geometry is None


def test_update_geometry_errors_leave_state_unchanged():
    with PlaceStore.open() as store:
        store.insert(_square(1, 0, 0, 1, 1))

        with pytest.raises(NotFound):
            store.update_geometry(99, box(0, 0, 1, 1))
        with pytest.raises(InvalidGeometry):
            store.update_geometry(1, LineString([(0, 0), (3, 3)]))

        assert store.bounds(1) == BoundingBox(0.0, 1.0, 0.0, 1.0)


def test_delete_removes_place_and_bounds():
    with PlaceStore.open() as store:
        store.insert(_square(1, 0, 0, 1, 1))
        store.delete(1)

        assert not store.exists(1)
        assert store.pruner.candidates_overlapping(BoundingBox(0.0, 1.0, 0.0, 1.0)) == set()
        with pytest.raises(NotFound):
            store.delete(1)


def test_insert_many_continues_past_failures(caplog):
    places = [
        _square(1, 0, 0, 1, 1),
        _square(2, 1, 1, 2, 2),
        _square(1, 3, 3, 4, 4),
        Place(id=3, name="line", geometry=LineString([(0, 0), (1, 1)])),
        Place(id=4, name="empty"),
    ]
    with PlaceStore.open() as store:
        with caplog.at_level(logging.WARNING, logger="placeindex.place_store"):
            report = store.insert_many(places)

        assert report.succeeded == 3
        assert [(f.item, f.error_type) for f in report.failures] == [
            (1, "DuplicateId"),
            (3, "InvalidGeometry"),
        ]
        assert store.ids() == [1, 2, 4]
        assert store.bounds(1) == BoundingBox(0.0, 1.0, 0.0, 1.0)
        assert "place_store.insert_failed" in caplog.text


def test_get_many_spans_several_chunks():
    with PlaceStore.open() as store:
        store.insert_many(Place(id=i, name=f"p{i}") for i in range(1, 1201))

        found = store.get_many(range(0, 1300))

        assert len(found) == 1200
        assert store.existing_ids([5, 1199, 5000]) == {5, 1199}


def test_repair_all_fixes_unrepaired_geometry():
    with PlaceStore.open() as store:
        store.insert(Place(id=1, name="bowtie", geometry=BOWTIE), repair=False)
        store.insert(_square(2, 0, 0, 1, 1))
        assert not store.get(1).geometry.is_valid

        report = store.repair_all()

        assert report.ok
        assert report.succeeded == 2
        assert store.get(1).geometry.is_valid


def test_simplify_all_reduces_vertices_and_keeps_bounds_in_sync():
    ring = [(i / 10.0, 0.0) for i in range(0, 101)] + [(10.0, 10.0), (0.0, 10.0)]
    with PlaceStore.open() as store:
        store.insert(Place(id=1, name="many vertices", geometry=Polygon(ring)))
        store.insert(Place(id=2, name="nowhere"))

        report = store.simplify_all(0.1)

        simplified = store.get(1).geometry
        assert report.ok
        assert report.succeeded == 1
        assert len(simplified.exterior.coords) < len(ring)
        assert store.bounds(1) == BoundingBox.of(simplified)


def test_simplify_all_rejects_negative_tolerance():
    with PlaceStore.open() as store:
        with pytest.raises(ValueError):
            store.simplify_all(-1)


def test_file_store_survives_reopen(tmp_path):
    path = tmp_path / "nested" / "wof.sqlite3"
    with PlaceStore.open(path, pragmas={"page_size": 4096, "temp_store": "MEMORY"}) as store:
        store.insert(_square(1, 0, 0, 1, 1, name="kept"))

    with PlaceStore.open(path) as reopened:
        assert reopened.get(1).name == "kept"
        assert reopened.bounds(1) == BoundingBox(0.0, 1.0, 0.0, 1.0)
        assert reopened.concurrent_reads


def test_memory_store_serialises_reads():
    with PlaceStore.open() as store:
        assert not store.concurrent_reads


def test_open_rejects_foreign_srid(tmp_path):
    path = tmp_path / "wof.sqlite3"
    with PlaceStore.open(path) as store:
        with store.transaction() as session:
            session.get(StoreMetaRecord, "srid").value = "3857"

    with pytest.raises(ValueError):
        PlaceStore.open(path)


def test_open_rejects_unknown_pragma():
    with pytest.raises(ValueError):
        PlaceStore.open(":memory:", pragmas={"foreign_keys": "OFF"})


def test_closed_store_refuses_work():
    store = PlaceStore.open()
    store.close()

    assert store.closed
    with pytest.raises(RuntimeError):
        store.count()


def _rtree_rows(store):
    with store.session() as session:
        return session.execute(
            select(place_rtree.c.pkid, place_rtree.c.xmin, place_rtree.c.ymax).order_by(
                place_rtree.c.pkid
            )
        ).all()


def test_rtree_follows_every_bounds_write():
    with PlaceStore.open() as store:
        store.insert_many([_square(1, 0, 0, 1, 1), _square(2, 5, 5, 6, 6)])
        store.insert(Place(id=3, name="nowhere"))
        assert [tuple(r) for r in _rtree_rows(store)] == [(1, 0.0, 1.0), (2, 5.0, 6.0)]

        store.update_geometry(1, box(10, 10, 12, 13))
        assert [tuple(r) for r in _rtree_rows(store)] == [(1, 10.0, 13.0), (2, 5.0, 6.0)]

        store.update_geometry(2, None)
        store.update_geometry(3, box(0, 0, 1, 1))
        assert [r.pkid for r in _rtree_rows(store)] == [1, 3]

        store.delete(1)
        assert [r.pkid for r in _rtree_rows(store)] == [3]


def test_rtree_discards_writes_of_rolled_back_transaction():
    with PlaceStore.open() as store:
        with pytest.raises(RuntimeError):
            with store.transaction() as session:
                store.insert_stored(session, _square(1, 0, 0, 1, 1))
                raise RuntimeError("abort")

        assert _rtree_rows(store) == []


def test_pruning_queries_are_answered_by_rtree():
    with PlaceStore.open() as store:
        store.insert(_square(1, 0, 0, 1, 1))
        with store.session() as session:
            ddl = session.execute(
                text("SELECT sql FROM sqlite_master WHERE name = 'place_rtree'")
            ).scalar_one()
            plan = session.execute(
                text(
                    "EXPLAIN QUERY PLAN SELECT pkid FROM place_rtree "
                    "WHERE xmin <= 1 AND xmax >= 0 AND ymin <= 1 AND ymax >= 0"
                )
            ).all()

        assert "USING rtree" in ddl
        assert any("VIRTUAL TABLE" in row[-1] for row in plan)


def test_open_rebuilds_rtree_that_lost_rows(tmp_path):
    path = tmp_path / "wof.sqlite3"
    with PlaceStore.open(path) as store:
        store.insert_many([_square(1, 0, 0, 1, 1), _square(2, 5, 5, 6, 6)])
        with store.transaction() as session:
            session.execute(text("DELETE FROM place_rtree"))

    with PlaceStore.open(path) as reopened:
        assert [r.pkid for r in _rtree_rows(reopened)] == [1, 2]
        assert reopened.pruner.candidates_overlapping(BoundingBox(5.5, 5.5, 5.5, 5.5)) == {2}


def test_read_store_meta_reports_srid_and_version():
    with PlaceStore.open() as store:
        with store.session() as session:
            meta = read_store_meta(session)

        assert meta == {"srid": "4326", "schema_version": SCHEMA_VERSION}


def test_insert_stored_writes_geometry_without_repair():
    with PlaceStore.open() as store:
        with store.transaction() as session:
            stored = store.insert_stored(session, Place(id=1, name="bowtie", geometry=BOWTIE))
            with pytest.raises(DuplicateId):
                store.insert_stored(session, Place(id=1, name="again"))

        assert not stored.geometry.is_valid
        assert store.get(1).geometry.wkb == BOWTIE.wkb
        assert store.bounds(1) == BoundingBox(0.0, 2.0, 0.0, 2.0)
        with store.session() as session:
            assert session.scalar(select(func.count()).select_from(place_rtree)) == 1
