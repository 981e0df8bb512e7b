import math

import pytest
from shapely.geometry import Polygon

from placeindex.entities import BoundingBox, GridCell, Place, tile_bounds
from placeindex.errors import InvalidGeometry


def _square(x0, y0, x1, y1):
    return {
        "type": "Polygon",
        "coordinates": [[[x0, y0], [x1, y0], [x1, y1], [x0, y1], [x0, y0]]],
    }


def test_bounding_box_rejects_inverted_and_non_finite_bounds():
    with pytest.raises(ValueError):
        BoundingBox(1.0, 0.0, 0.0, 1.0)
    with pytest.raises(ValueError):
        BoundingBox(0.0, math.inf, 0.0, 1.0)


def test_bounding_box_comparisons_are_closed():
    a = BoundingBox(0.0, 1.0, 0.0, 1.0)
    touching = BoundingBox(1.0, 2.0, 0.0, 1.0)
    apart = BoundingBox(1.5, 2.0, 0.0, 1.0)

    assert a.overlaps(touching)
    assert touching.overlaps(a)
    assert not a.overlaps(apart)
    assert a.encloses(a)
    assert a.overlaps(BoundingBox.point(1.0, 1.0))
    assert not BoundingBox(0.0, 0.5, 0.0, 0.5).encloses(a)


def test_tile_bounds_addresses_lower_left_corner():
    assert tile_bounds(-1, 2) == BoundingBox(-1.0, 0.0, 2.0, 3.0)
    assert tile_bounds(-1, 2).to_polygon().area == pytest.approx(1.0)


def test_place_coerces_geojson_geometry():
    place = Place(id=1, name="Square", layer="country", geometry=_square(-1, -1, 1, 1))

    assert isinstance(place.geometry, Polygon)
    assert place.has_geometry
    assert place.bounds == BoundingBox(-1.0, 1.0, -1.0, 1.0)
    assert place.to_dict() == {"id": 1, "name": "Square", "layer": "country"}
    assert place.to_dict(include_geometry=True)["geometry"]["type"] == "Polygon"


def test_place_without_geometry_has_no_bounds():
    place = Place(id=2, name="Nowhere")

    assert place.geometry is None
    assert place.bounds is None
    assert place.layer is None


@pytest.mark.parametrize("bad_id", ["1", 1.0, True, None, 2**63, -(2**63) - 1, 2**70])
def test_place_requires_integer_id(bad_id):
    with pytest.raises(ValueError):
        Place(id=bad_id, name="x")


def test_place_accepts_64_bit_id_limits():
    assert Place(id=2**63 - 1, name="max").id == 2**63 - 1
    assert Place(id=-(2**63), name="min").id == -(2**63)


@pytest.mark.parametrize("bad_name", ["", "   ", None])
def test_place_requires_non_empty_name(bad_name):
    with pytest.raises(ValueError):
        Place(id=1, name=bad_name)


def test_place_rejects_unparseable_geometry():
    with pytest.raises(InvalidGeometry):
        Place(id=1, name="x", geometry="POLYGON((not wkt")


def test_grid_cell_exposes_its_tile():
    cell = GridCell(id=None, place_id=1, tile_x=-3, tile_y=4, geometry=None)

    assert cell.tile == (-3, 4)
