import math
from pathlib import Path

import numpy as np
import pytest

from geomosaic.errors import (
    FetchCancelled,
    IncompleteFetch,
    InvalidGeometry,
    InvalidParameter,
    PermanentFetchFailure,
)
from geomosaic.models import (
    BoundingBox,
    DownloadResult,
    FetchReport,
    Geometry,
    GeometryKind,
    ProgressEvent,
    ProgressOutcome,
    TileRaster,
)
from geomosaic.services.planner import plan


@pytest.mark.parametrize(
    "values",
    [(1.0, 0.0, 1.0, 1.0), (0.0, 2.0, 1.0, 1.0), (0.0, 0.0, math.nan, 1.0), (0.0, 0.0, 1.0, math.inf)],
)
def test_bounding_box_rejects_degenerate_values(values):
    with pytest.raises(InvalidParameter):
        BoundingBox(*values)


def test_bounding_box_reprojects_to_web_mercator():
    bbox = BoundingBox(0.0, 0.0, 1.0, 1.0)

    projected = bbox.to_crs("EPSG:3857")

    assert projected.crs == "EPSG:3857"
    assert projected.min_x == pytest.approx(0.0, abs=1e-6)
    assert projected.max_x == pytest.approx(111319.49, rel=1e-6)
    assert projected.max_y == pytest.approx(111325.14, rel=1e-6)
    assert bbox.to_crs("epsg:4326") is bbox


def test_unknown_crs_is_an_invalid_parameter():
    with pytest.raises(InvalidParameter):
        BoundingBox(0.0, 0.0, 1.0, 1.0, crs="EPSG:999999").ground_size()


def test_geometry_from_geojson_feature():
    feature = {
        "type": "Feature",
        "properties": {"name": "site"},
        "geometry": {"type": "Point", "coordinates": [-105.27, 40.01, 1655.0]},
    }

    geometry = Geometry.from_geojson(feature)

    assert geometry.kind == GeometryKind.POINT
    assert geometry.coordinates == ((-105.27, 40.01),)


def test_geometry_from_geojson_polygon_keeps_exterior_ring():
    polygon = {
        "type": "Polygon",
        "coordinates": [
            [[0, 0], [4, 0], [4, 4], [0, 4], [0, 0]],
            [[1, 1], [2, 1], [2, 2], [1, 1]],
        ],
    }

    geometry = Geometry.from_geojson(polygon, crs="EPSG:3857")

    assert geometry.kind == GeometryKind.POLYGON
    assert geometry.crs == "EPSG:3857"
    assert len(geometry.coordinates) == 5
    assert geometry.envelope() == (0.0, 0.0, 4.0, 4.0)


@pytest.mark.parametrize(
    "payload",
    [
        {"type": "GeometryCollection", "geometries": []},
        {"type": "LineString"},
        {"type": "Feature", "geometry": None},
        {"type": "MultiPoint", "coordinates": [[0, "north"]]},
        {"type": "Point", "coordinates": [0, math.nan]},
    ],
)
def test_geometry_from_geojson_rejects_bad_input(payload):
    with pytest.raises(InvalidGeometry):
        Geometry.from_geojson(payload)


def test_tile_plan_subset_keeps_plan_order():
    tile_plan = plan(BoundingBox(0.0, 0.0, 400.0, 400.0, crs="EPSG:3857"), 10.0, ["elevation"], 20 * 20)

    subset = tile_plan.subset([tile_plan.tiles[3], tile_plan.tiles[0]])

    assert subset.tiles == (tile_plan.tiles[0], tile_plan.tiles[3])
    assert subset.bbox == tile_plan.bbox


def test_fetch_report_summary_and_failures():
    tile_plan = plan(BoundingBox(0.0, 0.0, 400.0, 400.0, crs="EPSG:3857"), 10.0, ["elevation"], 20 * 20)
    first, second, third, fourth = tile_plan.tiles
    report = FetchReport(
        results=[
            DownloadResult(spec=first, path=Path("a.tif"), attempts=1),
            DownloadResult(spec=second, path=Path("b.tif"), skipped=True),
            DownloadResult(spec=third, error=PermanentFetchFailure("404 missing", status_code=404)),
            DownloadResult(spec=fourth, error=FetchCancelled("cancelled")),
        ],
        cancelled=True,
    )

    summary = report.summary()

    assert summary["total"] == 4
    assert summary["succeeded"] == 2
    assert summary["skipped"] == 1
    assert summary["failed"] == [
        {"tile_id": "elevation:1:0", "error": "404 missing"},
        {"tile_id": "elevation:1:1", "error": "cancelled"},
    ]
    assert summary["cancelled"] is True
    assert report.failed_specs() == [third, fourth]
    with pytest.raises(IncompleteFetch) as exc:
        report.raise_for_failures()
    assert [spec for spec, _ in exc.value.failed] == [third, fourth]


def test_complete_report_does_not_raise():
    tile_plan = plan(BoundingBox(0.0, 0.0, 100.0, 100.0, crs="EPSG:3857"), 10.0, ["elevation"])
    report = FetchReport(results=[DownloadResult(spec=tile_plan.tiles[0], path=Path("a.tif"))])

    report.raise_for_failures()
    assert report.complete


def test_progress_event_serializes_outcome():
    event = ProgressEvent(tile_id="aerial:0:2", outcome=ProgressOutcome.SKIPPED, completed=3, total=9)

    assert event.to_dict() == {
        "tile_id": "aerial:0:2",
        "outcome": "skipped",
        "completed": 3,
        "total": 9,
        "detail": None,
    }


@pytest.mark.parametrize("shape", [(0, 4), (4,), (2, 2, 2, 2)])
def test_tile_raster_rejects_unusable_arrays(shape):
    with pytest.raises(InvalidParameter):
        TileRaster(array=np.zeros(shape), bbox=BoundingBox(0.0, 0.0, 1.0, 1.0))


def test_tile_raster_pixel_position():
    raster = TileRaster(array=np.zeros((10, 20)), bbox=BoundingBox(0.0, 0.0, 200.0, 50.0, crs="EPSG:3857"))

    assert raster.resolution == (10.0, 5.0)
    assert raster.to_pixel(15.0, 47.5) == (1.5, 0.5)
