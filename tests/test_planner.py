import math
from pathlib import Path

import pytest

from geomosaic.errors import InvalidParameter
from geomosaic.models import BoundingBox, Geometry
from geomosaic.services.bounds import resolve
from geomosaic.services.planner import max_tile_side, plan


def _overlap_area(first: BoundingBox, second: BoundingBox) -> float:
    width = min(first.max_x, second.max_x) - max(first.min_x, second.min_x)
    height = min(first.max_y, second.max_y) - max(first.min_y, second.min_y)
    if width <= 0 or height <= 0:
        return 0.0
    return width * height


def _area(bbox: BoundingBox) -> float:
    return bbox.width * bbox.height


def test_sixteen_km_box_splits_into_quadrants():
    bbox = resolve(Geometry.point(-105.27, 40.01), 16, "km")

    tile_plan = plan(bbox, 10.0, ["elevation"], max_cells_per_tile=800 * 800)

    assert len(tile_plan) == 4
    assert {(spec.row, spec.col) for spec in tile_plan} == {(0, 0), (0, 1), (1, 0), (1, 1)}
    assert tile_plan.grid_shape("elevation") == (2, 2)

    center_x, center_y = bbox.center
    tiles = {(spec.row, spec.col): spec for spec in tile_plan}
    north_west = tiles[(0, 0)].bbox
    assert north_west.min_x == bbox.min_x
    assert north_west.max_y == bbox.max_y
    assert north_west.max_x == pytest.approx(center_x)
    assert north_west.min_y == pytest.approx(center_y)
    south_east = tiles[(1, 1)].bbox
    assert south_east.max_x == bbox.max_x
    assert south_east.min_y == bbox.min_y
    assert all(spec.width == 800 and spec.height == 800 for spec in tile_plan)


def test_every_requested_service_gets_its_own_grid():
    bbox = resolve(Geometry.point(-105.27, 40.01), 16, "km")

    tile_plan = plan(bbox, 250.0, ["elevation", "satellite"], max_cells_per_tile=32 * 32)

    assert tile_plan.services == ("elevation", "satellite")
    for service in tile_plan.services:
        specs = tile_plan.for_service(service)
        assert len(specs) == 4
        assert {(spec.row, spec.col) for spec in specs} == {(0, 0), (0, 1), (1, 0), (1, 1)}


def test_last_column_absorbs_the_remainder():
    bbox = BoundingBox(0.0, 0.0, 2500.0, 1000.0, crs="EPSG:3857")

    tile_plan = plan(bbox, 10.0, ["elevation"], max_cells_per_tile=100 * 100)

    assert tile_plan.grid_shape("elevation") == (1, 3)
    assert [spec.width for spec in tile_plan] == [100, 100, 50]
    assert [spec.bbox.width for spec in tile_plan] == pytest.approx([1000.0, 1000.0, 500.0])
    assert all(spec.height == 100 for spec in tile_plan)


@pytest.mark.parametrize(
    "bbox, resolution, max_cells",
    [
        (BoundingBox(0.0, 0.0, 2500.0, 1000.0, crs="EPSG:3857"), 10.0, 100 * 100),
        (BoundingBox(-1234.5, 87.0, 9876.5, 5432.1, crs="EPSG:3857"), 12.5, 150 * 150),
        (BoundingBox(10.0, 45.0, 10.37, 45.21), 30.0, 256 * 256),
        (BoundingBox(-0.01, -0.01, 0.01, 0.01), 10.0, 5000),
    ],
)
def test_tiles_cover_the_box_without_overlap(bbox, resolution, max_cells):
    tile_plan = plan(bbox, resolution, ["elevation"], max_cells_per_tile=max_cells)
    boxes = [spec.bbox for spec in tile_plan]

    union = BoundingBox.union_of(boxes)
    assert union.as_tuple() == bbox.as_tuple()
    assert sum(_area(box) for box in boxes) == pytest.approx(_area(bbox))
    for index, first in enumerate(boxes):
        for second in boxes[index + 1 :]:
            assert _overlap_area(first, second) == pytest.approx(0.0, abs=_area(bbox) * 1e-12)


def test_tiles_respect_the_request_limit():
    bbox = BoundingBox(10.0, 45.0, 10.37, 45.21)
    max_cells = 200 * 300

    tile_plan = plan(bbox, 30.0, ["elevation"], max_cells_per_tile=max_cells)
    limit = max_tile_side(30.0, max_cells)

    for spec in tile_plan:
        assert spec.width * spec.height <= max_cells
        assert spec.width * spec.resolution <= limit
        assert spec.height * spec.resolution <= limit


def test_paths_are_deterministic_and_unique():
    bbox = BoundingBox(0.0, 0.0, 2500.0, 2500.0, crs="EPSG:3857")

    first = plan(bbox, 250.0, ["satellite", "elevation"], max_cells_per_tile=4 * 4)
    second = plan(bbox, 250.0, ["satellite", "elevation"], max_cells_per_tile=4 * 4)

    paths = [spec.path for spec in first]
    assert paths == [spec.path for spec in second]
    assert len(set(paths)) == len(paths)
    assert Path("satellite/satellite_r000_c001.png") in paths
    assert Path("elevation/elevation_r002_c002.tif") in paths


def test_native_service_limit_applies_when_no_limit_is_given():
    bbox = BoundingBox(0.0, 0.0, 50000.0, 50000.0, crs="EPSG:3857")

    tile_plan = plan(bbox, 10.0, ["elevation"])

    assert tile_plan.grid_shape("elevation") == (2, 2)
    assert max(spec.width for spec in tile_plan) == 4000


def test_resolution_finer_than_service_is_coarsened():
    bbox = BoundingBox(0.0, 0.0, 1000.0, 1000.0, crs="EPSG:3857")

    tile_plan = plan(bbox, 1.0, ["elevation"])

    assert all(spec.resolution == 10.0 for spec in tile_plan)
    assert tile_plan.tiles[0].width == 100


@pytest.mark.parametrize("resolution, max_cells", [(0, 100), (-10.0, 100), (10.0, 0), (10.0, -4)])
def test_plan_rejects_non_positive_parameters(resolution, max_cells):
    bbox = BoundingBox(0.0, 0.0, 1000.0, 1000.0, crs="EPSG:3857")

    with pytest.raises(InvalidParameter):
        plan(bbox, resolution, ["elevation"], max_cells_per_tile=max_cells)


def test_plan_rejects_unknown_service():
    bbox = BoundingBox(0.0, 0.0, 1000.0, 1000.0, crs="EPSG:3857")

    with pytest.raises(InvalidParameter) as exc:
        plan(bbox, 10.0, ["landcover"])

    assert "landcover" in str(exc.value)


def test_tile_count_follows_whole_pixel_tiles():
    bbox = BoundingBox(0.0, 0.0, 16000.0, 16000.0, crs="EPSG:3857")

    tile_plan = plan(bbox, 30.0, ["elevation"], max_cells_per_tile=1000)

    assert tile_plan.grid_shape("elevation") == (18, 18)
    assert math.ceil(16000.0 / max_tile_side(30.0, 1000)) == 17
    widths = [spec.width for spec in tile_plan if spec.row == 0]
    assert widths == [31] * 17 + [7]
    assert sum(widths) == math.ceil(16000.0 / 30.0)
