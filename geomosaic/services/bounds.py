from __future__ import annotations

import math
from typing import Tuple

from ..errors import InvalidGeometry, InvalidParameter
from ..models import (
    DEGREE_UNIT,
    LINEAR_UNITS,
    METERS_PER_DEGREE,
    BoundingBox,
    Geometry,
    GeometryKind,
    crs_units,
    meters_per_degree_lon,
    validate_unit,
)


def resolve(geometry: Geometry, side_length: float, unit: str = "km") -> BoundingBox:
    """Square box of ``side_length`` (in ``unit``) centred on ``geometry``.

    The result stays in the geometry's CRS. For geographic CRSs linear units
    are converted to degrees with the scale factor at the centre latitude,
    so ``resolve(g, L, unit).side_lengths(unit)`` gives back ``(L, L)``.
    """

    if geometry.is_empty:
        raise InvalidGeometry("Cannot resolve a bounding box for an empty geometry.")
    side_length = _validate_side_length(side_length)
    unit = validate_unit(unit)

    center_x, center_y = geometry_center(geometry)
    geographic, unit_factor = crs_units(geometry.crs)

    if unit == DEGREE_UNIT:
        if not geographic:
            raise InvalidParameter(
                f"Side length in degrees requires a geographic CRS, got {geometry.crs}."
            )
        half_x = half_y = side_length / 2
    else:
        half_meters = side_length * LINEAR_UNITS[unit] / 2
        if geographic:
            if abs(center_y) >= 90.0:
                raise InvalidGeometry(
                    f"Geometry centre latitude {center_y} is at or beyond a pole."
                )
            half_x = half_meters / meters_per_degree_lon(center_y)
            half_y = half_meters / METERS_PER_DEGREE
        else:
            half_x = half_y = half_meters / unit_factor

    bbox = BoundingBox(
        center_x - half_x,
        center_y - half_y,
        center_x + half_x,
        center_y + half_y,
        crs=geometry.crs,
    )
    if geographic:
        _validate_geographic_extent(bbox)
    return bbox


def geometry_center(geometry: Geometry) -> Tuple[float, float]:
    """Centroid for polygons, envelope centre for every other geometry kind."""

    if geometry.kind == GeometryKind.POLYGON and len(geometry.coordinates) >= 3:
        centroid = _polygon_centroid(geometry.coordinates)
        if centroid is not None:
            return centroid
    min_x, min_y, max_x, max_y = geometry.envelope()
    return (min_x + max_x) / 2, (min_y + max_y) / 2


def _polygon_centroid(ring) -> Tuple[float, float] | None:
    area = 0.0
    sum_x = 0.0
    sum_y = 0.0
    count = len(ring)
    for index in range(count):
        x0, y0 = ring[index]
        x1, y1 = ring[(index + 1) % count]
        cross = x0 * y1 - x1 * y0
        area += cross
        sum_x += (x0 + x1) * cross
        sum_y += (y0 + y1) * cross
    if abs(area) < 1e-15:
        return None
    area *= 0.5
    return sum_x / (6 * area), sum_y / (6 * area)


def _validate_side_length(side_length: float) -> float:
    try:
        value = float(side_length)
    except (TypeError, ValueError) as exc:
        raise InvalidParameter(f"Side length must be a number, got {side_length!r}.") from exc
    if not math.isfinite(value) or value <= 0:
        raise InvalidParameter(f"Side length must be positive, got {side_length!r}.")
    return value


def _validate_geographic_extent(bbox: BoundingBox) -> None:
    if bbox.min_y < -90.0 or bbox.max_y > 90.0:
        raise InvalidParameter(
            f"Requested box spans latitudes {bbox.min_y:.4f}..{bbox.max_y:.4f}, beyond the poles."
        )
    if bbox.width > 360.0:
        raise InvalidParameter("Requested box spans more than 360 degrees of longitude.")
