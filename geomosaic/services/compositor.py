from __future__ import annotations

import logging
import math
from functools import lru_cache
from typing import Iterable, List, Sequence, Tuple

import numpy as np
from PIL import Image, ImageDraw
from pyproj import CRS, Transformer

from ..errors import DimensionMismatch, IncompatibleTiles, InvalidParameter
from ..models import BoundingBox, Geometry, Mosaic, TileRaster

logger = logging.getLogger(__name__)

RESOLUTION_TOLERANCE = 1e-6

DEFAULT_MARKER_FILL: Tuple[int, int, int, int] = (230, 57, 70, 255)
DEFAULT_MARKER_OUTLINE: Tuple[int, int, int, int] = (255, 255, 255, 255)


def merge(tile_rasters: Sequence[TileRaster], nodata: float | int | None = None) -> Mosaic:
    """Merge same-resolution tiles into one raster covering their union.

    Every tile is placed at the pixel offset implied by its bounding box.
    Where tiles overlap, the tile that comes first in ``tile_rasters`` keeps
    the pixel; values are never averaged. Pixels no tile covers are set to
    ``nodata`` (NaN for float rasters, 0 otherwise, when not given).
    """

    tiles = list(tile_rasters)
    if not tiles:
        raise InvalidParameter("merge requires at least one tile raster.")
    _check_compatible(tiles)

    reference = tiles[0]
    res_x, res_y = reference.resolution
    union = BoundingBox.union_of(tile.bbox for tile in tiles)
    width = max(1, int(round(union.width / res_x)))
    height = max(1, int(round(union.height / res_y)))

    fill = _default_nodata(reference.array.dtype) if nodata is None else nodata
    shape = (height, width) + reference.array.shape[2:]
    output = np.full(shape, fill, dtype=reference.array.dtype)
    filled = np.zeros((height, width), dtype=bool)

    for tile in tiles:
        col_offset = int(round((tile.bbox.min_x - union.min_x) / res_x))
        row_offset = int(round((union.max_y - tile.bbox.max_y) / res_y))
        row_end = min(height, row_offset + tile.height)
        col_end = min(width, col_offset + tile.width)
        source = tile.array[: row_end - row_offset, : col_end - col_offset]
        target = output[row_offset:row_end, col_offset:col_end]
        free = ~filled[row_offset:row_end, col_offset:col_end]
        target[free] = source[free]
        filled[row_offset:row_end, col_offset:col_end] = True

    uncovered = int(filled.size - np.count_nonzero(filled))
    if uncovered:
        logger.info("Mosaic has %d pixel(s) not covered by any tile", uncovered)
    return Mosaic(array=output, bbox=union, nodata=fill)


def composite_overlay(base: TileRaster, overlays: Iterable[Image.Image | np.ndarray]) -> Mosaic:
    """Stack RGBA overlays on ``base``, bottom to top.

    Any overlay pixel with a non-zero alpha replaces the pixel beneath it
    outright; fully transparent pixels leave it untouched. Single band bases
    are expanded to grey RGB first; a single band that is not 8-bit, such as
    an elevation mosaic, is stretched linearly from its finite minimum to its
    maximum, with nodata (NaN) drawn black.
    """

    result = _colour_array(base.array)
    height, width = result.shape[:2]

    for index, overlay in enumerate(overlays):
        layer = _overlay_array(overlay, index)
        if layer.shape[:2] != (height, width):
            raise DimensionMismatch(
                f"Overlay {index} is {layer.shape[1]}x{layer.shape[0]} pixels but the base raster "
                f"is {width}x{height}."
            )
        opaque = layer[..., 3] > 0
        result[opaque, :3] = layer[opaque, :3]
        if result.shape[2] == 4:
            result[opaque, 3] = layer[opaque, 3]

    return Mosaic(array=result, bbox=base.bbox, nodata=None)


def render_markers(
    raster: TileRaster,
    points: Geometry | Iterable[Tuple[float, float]],
    *,
    radius: int = 4,
    fill: Tuple[int, int, int, int] = DEFAULT_MARKER_FILL,
    outline: Tuple[int, int, int, int] | None = DEFAULT_MARKER_OUTLINE,
) -> Image.Image:
    """Draw point markers on a transparent overlay sized to ``raster``.

    A :class:`Geometry` in another CRS is reprojected to the raster's CRS.
    Points outside the raster are left out.
    """

    if radius <= 0:
        raise InvalidParameter(f"Marker radius must be positive, got {radius}.")

    coordinates = _marker_coordinates(raster.bbox, points)
    overlay = Image.new("RGBA", (raster.width, raster.height), (0, 0, 0, 0))
    draw = ImageDraw.Draw(overlay)
    skipped = 0
    for x, y in coordinates:
        if not raster.bbox.contains(x, y):
            skipped += 1
            continue
        column, row = raster.to_pixel(x, y)
        draw.ellipse(
            (column - radius, row - radius, column + radius, row + radius),
            fill=fill,
            outline=outline,
        )
    if skipped:
        logger.debug("Skipped %d marker(s) outside the raster extent", skipped)
    return overlay


def _check_compatible(tiles: Sequence[TileRaster]) -> None:
    reference = tiles[0]
    res_x, res_y = reference.resolution
    for index, tile in enumerate(tiles[1:], start=1):
        if not _same_crs(tile.bbox.crs, reference.bbox.crs):
            raise IncompatibleTiles(
                f"Tile {index} uses CRS {tile.bbox.crs}, tile 0 uses {reference.bbox.crs}."
            )
        tile_x, tile_y = tile.resolution
        if not (
            math.isclose(tile_x, res_x, rel_tol=RESOLUTION_TOLERANCE)
            and math.isclose(tile_y, res_y, rel_tol=RESOLUTION_TOLERANCE)
        ):
            raise IncompatibleTiles(
                f"Tile {index} has resolution ({tile_x:.9g}, {tile_y:.9g}), "
                f"tile 0 has ({res_x:.9g}, {res_y:.9g})."
            )
        if tile.bands != reference.bands or tile.array.dtype != reference.array.dtype:
            raise IncompatibleTiles(
                f"Tile {index} has {tile.bands} band(s) of {tile.array.dtype}, "
                f"tile 0 has {reference.bands} band(s) of {reference.array.dtype}."
            )


@lru_cache(maxsize=64)
def _same_crs(first: str, second: str) -> bool:
    if first.upper() == second.upper():
        return True
    return CRS.from_user_input(first) == CRS.from_user_input(second)


def _default_nodata(dtype: np.dtype) -> float | int:
    return float("nan") if np.issubdtype(dtype, np.floating) else 0


def _colour_array(array: np.ndarray) -> np.ndarray:
    if array.ndim == 2 and array.dtype != np.uint8:
        array = _grey_levels(array)
    if array.dtype != np.uint8:
        raise InvalidParameter(
            f"Overlays can only be stacked on 8-bit colour rasters, got {array.shape[2]} "
            f"band(s) of {array.dtype}; render the raster to colour first."
        )
    if array.ndim == 2:
        return np.repeat(array[..., np.newaxis], 3, axis=2)
    if array.shape[2] not in (3, 4):
        raise InvalidParameter(
            f"Base raster must have 1, 3 or 4 bands, got {array.shape[2]}."
        )
    return array.copy()


def _grey_levels(array: np.ndarray) -> np.ndarray:
    values = array.astype(np.float64)
    finite = np.isfinite(values)
    levels = np.zeros(values.shape, dtype=np.uint8)
    if not finite.any():
        return levels
    low = values[finite].min()
    high = values[finite].max()
    scale = 255.0 / (high - low) if high > low else 0.0
    levels[finite] = np.round((values[finite] - low) * scale).astype(np.uint8)
    return levels


def _overlay_array(overlay: Image.Image | np.ndarray, index: int) -> np.ndarray:
    if isinstance(overlay, Image.Image):
        return np.asarray(overlay.convert("RGBA"))
    layer = np.asarray(overlay)
    if layer.ndim != 3 or layer.shape[2] != 4:
        raise DimensionMismatch(
            f"Overlay {index} must be an RGBA array of shape (height, width, 4), "
            f"got {layer.shape}."
        )
    return layer


def _marker_coordinates(
    bbox: BoundingBox, points: Geometry | Iterable[Tuple[float, float]]
) -> List[Tuple[float, float]]:
    if not isinstance(points, Geometry):
        return [(float(x), float(y)) for x, y in points]
    if _same_crs(points.crs, bbox.crs):
        return list(points.coordinates)
    transformer = Transformer.from_crs(points.crs, bbox.crs, always_xy=True)
    return [transformer.transform(x, y) for x, y in points.coordinates]
