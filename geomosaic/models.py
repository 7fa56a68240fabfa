from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Sequence, Tuple

import numpy as np
from PIL import Image
from pyproj import CRS, Transformer
from pyproj.exceptions import CRSError

from .errors import FetchFailure, IncompleteFetch, InvalidGeometry, InvalidParameter

DEFAULT_CRS = "EPSG:4326"
EARTH_RADIUS_M = 6378137.0
METERS_PER_DEGREE = math.pi * EARTH_RADIUS_M / 180.0
LINEAR_UNITS: Dict[str, float] = {"m": 1.0, "km": 1000.0}
DEGREE_UNIT = "deg"
SUPPORTED_UNITS: Tuple[str, ...] = (*LINEAR_UNITS, DEGREE_UNIT)

Coordinate = Tuple[float, float]


@lru_cache(maxsize=64)
def crs_units(crs: str) -> Tuple[bool, float]:
    try:
        parsed = CRS.from_user_input(crs)
    except CRSError as exc:
        raise InvalidParameter(f"Unknown coordinate reference system {crs!r}: {exc}") from exc
    if parsed.is_geographic:
        return True, 1.0
    factor = 1.0
    if parsed.axis_info:
        factor = parsed.axis_info[0].unit_conversion_factor or 1.0
    return False, factor


def is_geographic(crs: str) -> bool:
    return crs_units(crs)[0]


def meters_per_degree_lon(lat: float) -> float:
    """Length in metres of one degree of longitude at ``lat`` on a sphere."""

    return METERS_PER_DEGREE * math.cos(math.radians(lat))


def validate_unit(unit: str) -> str:
    normalized = (unit or "").strip().lower()
    if normalized not in SUPPORTED_UNITS:
        raise InvalidParameter(
            f"Unsupported unit {unit!r}; expected one of {', '.join(SUPPORTED_UNITS)}."
        )
    return normalized


class GeometryKind(str, Enum):
    POINT = "point"
    MULTIPOINT = "multipoint"
    LINESTRING = "linestring"
    POLYGON = "polygon"


_GEOJSON_KINDS: Dict[str, GeometryKind] = {
    "Point": GeometryKind.POINT,
    "MultiPoint": GeometryKind.MULTIPOINT,
    "LineString": GeometryKind.LINESTRING,
    "Polygon": GeometryKind.POLYGON,
}


@dataclass(frozen=True)
class Geometry:
    """An immutable set of coordinates tagged with a coordinate reference system."""

    coordinates: Tuple[Coordinate, ...]
    crs: str = DEFAULT_CRS
    kind: GeometryKind = GeometryKind.MULTIPOINT

    def __post_init__(self) -> None:
        coords: List[Coordinate] = []
        for item in self.coordinates:
            try:
                x, y = float(item[0]), float(item[1])
            except (TypeError, ValueError, IndexError) as exc:
                raise InvalidGeometry(f"Invalid coordinate {item!r}") from exc
            if not (math.isfinite(x) and math.isfinite(y)):
                raise InvalidGeometry(f"Coordinate {item!r} is not finite")
            coords.append((x, y))
        object.__setattr__(self, "coordinates", tuple(coords))
        object.__setattr__(self, "kind", GeometryKind(self.kind))

    @classmethod
    def point(cls, x: float, y: float, crs: str = DEFAULT_CRS) -> "Geometry":
        return cls(coordinates=((x, y),), crs=crs, kind=GeometryKind.POINT)

    @classmethod
    def from_geojson(cls, payload: Mapping[str, Any], crs: str = DEFAULT_CRS) -> "Geometry":
        """Build a geometry from a GeoJSON geometry or feature mapping.

        Only the exterior ring of a polygon is kept; holes do not move a
        bounding box built around the centroid.
        """

        if payload.get("type") == "Feature":
            geometry = payload.get("geometry")
            if not isinstance(geometry, Mapping):
                raise InvalidGeometry("GeoJSON feature has no geometry.")
            payload = geometry

        geometry_type = payload.get("type")
        kind = _GEOJSON_KINDS.get(str(geometry_type))
        if kind is None:
            raise InvalidGeometry(f"Unsupported GeoJSON geometry type: {geometry_type!r}")

        coordinates = payload.get("coordinates")
        if coordinates is None:
            raise InvalidGeometry(f"GeoJSON {geometry_type} has no coordinates.")

        if kind == GeometryKind.POINT:
            points: Sequence[Any] = [coordinates] if coordinates else []
        elif kind == GeometryKind.POLYGON:
            points = coordinates[0] if coordinates else []
        else:
            points = coordinates

        return cls(coordinates=tuple(tuple(point[:2]) for point in points), crs=crs, kind=kind)

    @property
    def is_empty(self) -> bool:
        return not self.coordinates

    def envelope(self) -> Tuple[float, float, float, float]:
        if self.is_empty:
            raise InvalidGeometry("Geometry has no coordinates.")
        xs = [x for x, _ in self.coordinates]
        ys = [y for _, y in self.coordinates]
        return min(xs), min(ys), max(xs), max(ys)


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned rectangle in a coordinate reference system."""

    min_x: float
    min_y: float
    max_x: float
    max_y: float
    crs: str = DEFAULT_CRS

    def __post_init__(self) -> None:
        values = (self.min_x, self.min_y, self.max_x, self.max_y)
        if not all(math.isfinite(value) for value in values):
            raise InvalidParameter(f"Bounding box coordinates must be finite: {values}")
        if self.min_x >= self.max_x:
            raise InvalidParameter(
                f"Bounding box min_x ({self.min_x}) must be less than max_x ({self.max_x})."
            )
        if self.min_y >= self.max_y:
            raise InvalidParameter(
                f"Bounding box min_y ({self.min_y}) must be less than max_y ({self.max_y})."
            )

    @property
    def width(self) -> float:
        return self.max_x - self.min_x

    @property
    def height(self) -> float:
        return self.max_y - self.min_y

    @property
    def center(self) -> Coordinate:
        return (self.min_x + self.max_x) / 2, (self.min_y + self.max_y) / 2

    @property
    def is_geographic(self) -> bool:
        return is_geographic(self.crs)

    def ground_scale(self) -> Tuple[float, float]:
        """Metres per CRS unit along x and y, taken at the box center."""

        geographic, factor = crs_units(self.crs)
        if not geographic:
            return factor, factor
        return meters_per_degree_lon(self.center[1]), METERS_PER_DEGREE

    def ground_size(self) -> Tuple[float, float]:
        scale_x, scale_y = self.ground_scale()
        return self.width * scale_x, self.height * scale_y

    def side_lengths(self, unit: str = "m") -> Tuple[float, float]:
        unit = validate_unit(unit)
        if unit == DEGREE_UNIT:
            if not self.is_geographic:
                raise InvalidParameter(
                    f"Degree units are only meaningful for geographic CRSs, not {self.crs}."
                )
            return self.width, self.height
        width_m, height_m = self.ground_size()
        factor = LINEAR_UNITS[unit]
        return width_m / factor, height_m / factor

    def contains(self, x: float, y: float) -> bool:
        return self.min_x <= x <= self.max_x and self.min_y <= y <= self.max_y

    def to_crs(self, crs: str) -> "BoundingBox":
        """Reproject the box, densifying its edges so curved borders stay enclosed."""

        if CRS.from_user_input(crs) == CRS.from_user_input(self.crs):
            return self
        transformer = Transformer.from_crs(self.crs, crs, always_xy=True)
        min_x, min_y, max_x, max_y = transformer.transform_bounds(
            self.min_x, self.min_y, self.max_x, self.max_y, densify_pts=21
        )
        return BoundingBox(min_x, min_y, max_x, max_y, crs=crs)

    def as_tuple(self) -> Tuple[float, float, float, float]:
        return self.min_x, self.min_y, self.max_x, self.max_y

    def to_dict(self) -> Dict[str, Any]:
        return {
            "min_x": self.min_x,
            "min_y": self.min_y,
            "max_x": self.max_x,
            "max_y": self.max_y,
            "crs": self.crs,
        }

    @classmethod
    def union_of(cls, boxes: Iterable["BoundingBox"]) -> "BoundingBox":
        boxes = list(boxes)
        if not boxes:
            raise InvalidParameter("Cannot build the union of zero bounding boxes.")
        return cls(
            min(box.min_x for box in boxes),
            min(box.min_y for box in boxes),
            max(box.max_x for box in boxes),
            max(box.max_y for box in boxes),
            crs=boxes[0].crs,
        )


@dataclass(frozen=True)
class TileSpec:
    """One planned request: a sub-box of the parent extent for a single service."""

    bbox: BoundingBox
    service: str
    row: int
    col: int
    resolution: float
    width: int
    height: int
    path: Path

    @property
    def tile_id(self) -> str:
        return f"{self.service}:{self.row}:{self.col}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tile_id": self.tile_id,
            "service": self.service,
            "row": self.row,
            "col": self.col,
            "resolution": self.resolution,
            "width": self.width,
            "height": self.height,
            "path": self.path.as_posix(),
            "bbox": self.bbox.to_dict(),
        }


@dataclass(frozen=True)
class TilePlan:
    bbox: BoundingBox
    tiles: Tuple[TileSpec, ...]

    def __iter__(self) -> Iterator[TileSpec]:
        return iter(self.tiles)

    def __len__(self) -> int:
        return len(self.tiles)

    @property
    def services(self) -> Tuple[str, ...]:
        return tuple(dict.fromkeys(spec.service for spec in self.tiles))

    def for_service(self, service: str) -> Tuple[TileSpec, ...]:
        return tuple(spec for spec in self.tiles if spec.service == service)

    def grid_shape(self, service: str) -> Tuple[int, int]:
        specs = self.for_service(service)
        if not specs:
            return 0, 0
        return max(spec.row for spec in specs) + 1, max(spec.col for spec in specs) + 1

    def subset(self, specs: Iterable[TileSpec]) -> "TilePlan":
        """Plan restricted to ``specs``, keeping the original order."""

        wanted = set(specs)
        return TilePlan(bbox=self.bbox, tiles=tuple(spec for spec in self.tiles if spec in wanted))


@dataclass(frozen=True)
class DownloadResult:
    """Outcome of retrieving one tile: a local file or a failure record.

    ``attempts`` and ``skipped`` describe how the outcome was reached and are
    left out of equality, so a resumed run compares equal to the run that
    downloaded the same files.
    """

    spec: TileSpec
    path: Path | None = None
    error: FetchFailure | None = None
    attempts: int = field(default=0, compare=False)
    sha256: str | None = None
    size: int = 0
    skipped: bool = field(default=False, compare=False)

    @property
    def ok(self) -> bool:
        return self.path is not None and self.error is None


@dataclass
class FetchReport:
    """Per-tile outcomes of a fetch, in plan order."""

    results: List[DownloadResult]
    cancelled: bool = False

    def __iter__(self) -> Iterator[DownloadResult]:
        return iter(self.results)

    def __len__(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> List[DownloadResult]:
        return [result for result in self.results if result.ok]

    @property
    def failed(self) -> List[DownloadResult]:
        return [result for result in self.results if not result.ok]

    @property
    def complete(self) -> bool:
        return not self.cancelled and all(result.ok for result in self.results)

    def failed_specs(self) -> List[TileSpec]:
        return [result.spec for result in self.failed]

    def for_service(self, service: str) -> List[DownloadResult]:
        return [result for result in self.results if result.spec.service == service]

    def raise_for_failures(self) -> None:
        failures = [(result.spec, result.error) for result in self.failed if result.error]
        if failures:
            raise IncompleteFetch(failures)

    def summary(self) -> Dict[str, Any]:
        return {
            "total": len(self.results),
            "succeeded": len(self.succeeded),
            "skipped": sum(1 for result in self.results if result.skipped),
            "failed": [
                {"tile_id": result.spec.tile_id, "error": str(result.error)}
                for result in self.failed
            ],
            "cancelled": self.cancelled,
        }


class ProgressOutcome(str, Enum):
    DOWNLOADED = "downloaded"
    SKIPPED = "skipped"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ProgressEvent:
    tile_id: str
    outcome: ProgressOutcome
    completed: int
    total: int
    detail: str | None = field(default=None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tile_id": self.tile_id,
            "outcome": self.outcome.value,
            "completed": self.completed,
            "total": self.total,
            "detail": self.detail,
        }


@dataclass(frozen=True)
class TileRaster:
    """A pixel array georeferenced by the bounding box it covers."""

    array: np.ndarray
    bbox: BoundingBox

    def __post_init__(self) -> None:
        if self.array.ndim not in (2, 3) or self.array.shape[0] == 0 or self.array.shape[1] == 0:
            raise InvalidParameter(
                f"Raster arrays must be non-empty 2D or 3D arrays, got shape {self.array.shape}."
            )

    @property
    def height(self) -> int:
        return int(self.array.shape[0])

    @property
    def width(self) -> int:
        return int(self.array.shape[1])

    @property
    def bands(self) -> int:
        return 1 if self.array.ndim == 2 else int(self.array.shape[2])

    @property
    def resolution(self) -> Tuple[float, float]:
        """Pixel size in CRS units along x and y."""

        return self.bbox.width / self.width, self.bbox.height / self.height

    def to_pixel(self, x: float, y: float) -> Tuple[float, float]:
        """Fractional ``(column, row)`` position of ``(x, y)`` in the pixel grid."""

        res_x, res_y = self.resolution
        return (x - self.bbox.min_x) / res_x, (self.bbox.max_y - y) / res_y

    @classmethod
    def from_file(cls, path: Path, bbox: BoundingBox) -> "TileRaster":
        with Image.open(path) as image:
            image.load()
            array = np.asarray(image)
        return cls(array=array, bbox=bbox)

    @classmethod
    def from_download(cls, result: DownloadResult) -> "TileRaster":
        if not result.ok or result.path is None:
            raise InvalidParameter(
                f"Tile {result.spec.tile_id} was not downloaded: {result.error}"
            )
        return cls.from_file(result.path, result.spec.bbox)


@dataclass(frozen=True)
class Mosaic(TileRaster):
    """A merged or composited raster. The pixel array is read-only."""

    nodata: float | int | None = 0

    def __post_init__(self) -> None:
        super().__post_init__()
        view = np.asarray(self.array).view()
        view.flags.writeable = False
        object.__setattr__(self, "array", view)

    def to_image(self) -> Image.Image:
        return Image.fromarray(np.ascontiguousarray(self.array))

    def save(self, path: Path) -> Path:
        """Write the raster with Pillow and a ``.json`` world file next to it."""

        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.to_image().save(path)
        res_x, res_y = self.resolution
        world = {
            "bbox": self.bbox.to_dict(),
            "resolution": [res_x, res_y],
            "width": self.width,
            "height": self.height,
            "nodata": self.nodata,
        }
        path.with_name(f"{path.name}.json").write_text(json.dumps(world, sort_keys=True))
        return path
