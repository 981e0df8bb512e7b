import itertools

import pytest
from shapely.geometry import box

from placeindex.entities import BoundingBox, Place
from placeindex.place_store import PlaceStore
from placeindex.pruning import ArrayBoundsPruner, SqlBoundsPruner, make_pruner

BOXES = {
    1: (0.0, 0.0, 10.0, 10.0),
    2: (1.0, 1.0, 2.0, 2.0),
    3: (9.0, 1.0, 11.0, 2.0),
    4: (10.0, 10.0, 12.0, 12.0),
    5: (-5.0, -5.0, -4.0, -4.0),
}


def _store(kind):
    store = PlaceStore.open(pruner=kind)
    store.insert_many(
        Place(id=i, name=f"p{i}", geometry=box(*coords)) for i, coords in BOXES.items()
    )
    store.insert(Place(id=6, name="nowhere"))
    return store


def _boxes():
    return {i: BoundingBox(x0, x1, y0, y1) for i, (x0, y0, x1, y1) in BOXES.items()}


@pytest.mark.parametrize("kind", ["sql", "array"])
def test_overlap_includes_touching_boxes(kind):
    with _store(kind) as store:
        got = store.pruner.candidates_overlapping(BoundingBox(10.0, 10.0, 10.0, 10.0))

        assert got == {1, 4}


@pytest.mark.parametrize("kind", ["sql", "array"])
def test_enclosed_by_and_enclosing(kind):
    with _store(kind) as store:
        outer = BoundingBox(0.0, 10.0, 0.0, 10.0)

        assert store.pruner.candidates_enclosed_by(outer) == {1, 2}
        assert store.pruner.candidates_enclosing(BoundingBox(1.0, 2.0, 1.0, 2.0)) == {1, 2}


@pytest.mark.parametrize("kind", ["sql", "array"])
def test_pruners_match_brute_force(kind):
    probes = [
        BoundingBox(x0, x1, y0, y1)
        for x0, x1 in itertools.combinations([-6.0, -4.0, 0.0, 1.5, 9.5, 10.0, 13.0], 2)
        for y0, y1 in [(-6.0, 0.0), (0.0, 10.0), (1.5, 1.5), (10.0, 13.0)]
    ]
    boxes = _boxes()
    with _store(kind) as store:
        for probe in probes:
            assert store.pruner.candidates_overlapping(probe) == {
                i for i, b in boxes.items() if b.overlaps(probe)
            }
            assert store.pruner.candidates_enclosed_by(probe) == {
                i for i, b in boxes.items() if probe.encloses(b)
            }
            assert store.pruner.candidates_enclosing(probe) == {
                i for i, b in boxes.items() if b.encloses(probe)
            }


@pytest.mark.parametrize("kind", ["sql", "array"])
def test_enclosed_by_keeps_boxes_on_edges_float32_cannot_hold(kind):
    # R-tree boxes are rounded outward to float32; 0.1 and 0.7 are not exact there
    with PlaceStore.open(pruner=kind) as store:
        store.insert_many(
            [
                Place(id=1, name="parent", geometry=box(0.1, 0.1, 0.7, 0.7)),
                Place(id=2, name="child", geometry=box(0.1, 0.3, 0.7, 0.7)),
                Place(id=3, name="outside", geometry=box(0.2, 0.2, 0.71, 0.5)),
            ]
        )
        outer = store.bounds(1)

        got = store.pruner.candidates_enclosed_by(outer)

        assert {1, 2} <= got
        assert 3 not in got
        assert store.pruner.candidates_enclosing(store.bounds(2)) >= {1, 2}
        assert store.pruner.candidates_overlapping(BoundingBox(0.7, 0.7, 0.7, 0.7)) >= {1, 2, 3}


def test_array_pruner_rebuilds_after_mutation():
    with _store("array") as store:
        probe = BoundingBox(50.0, 51.0, 50.0, 51.0)
        assert store.pruner.candidates_overlapping(probe) == set()

        store.update_geometry(5, box(50, 50, 51, 51))

        assert store.pruner.candidates_overlapping(probe) == {5}

        store.delete(5)

        assert store.pruner.candidates_overlapping(probe) == set()


def test_array_pruner_rebuilds_after_rollback():
    with _store("array") as store:
        probe = BoundingBox(50.0, 51.0, 50.0, 51.0)
        with pytest.raises(RuntimeError):
            with store.transaction() as session:
                store.insert_stored(session, Place(id=99, name="tmp", geometry=box(50, 50, 51, 51)))
                assert store.pruner.candidates_overlapping(probe, session=session) == {99}
                raise RuntimeError("abort")

        assert store.pruner.candidates_overlapping(probe) == set()


def test_make_pruner_by_name_and_factory():
    with PlaceStore.open() as store:
        assert isinstance(make_pruner("SQL", store), SqlBoundsPruner)
        assert isinstance(make_pruner("array", store), ArrayBoundsPruner)
        assert isinstance(make_pruner(ArrayBoundsPruner, store), ArrayBoundsPruner)
        with pytest.raises(ValueError):
            make_pruner("rtree", store)
