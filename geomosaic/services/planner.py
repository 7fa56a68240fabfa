from __future__ import annotations

import logging
import math
from pathlib import Path
from typing import Iterable, List, Sequence, Tuple

from ..errors import InvalidParameter
from ..models import BoundingBox, TilePlan, TileSpec
from .catalog import ServiceConfig, ServiceKey, get_service

logger = logging.getLogger(__name__)

# Pixel counts are rounded up, so a box that is an exact multiple of the
# resolution must not gain an extra sliver pixel from float noise.
PIXEL_EPSILON = 1e-9


def plan(
    bbox: BoundingBox,
    resolution: float,
    services: Iterable[str | ServiceKey],
    max_cells_per_tile: int | None = None,
) -> TilePlan:
    """Split ``bbox`` into per-service tiles that respect request size limits.

    ``resolution`` is the ground distance per pixel in metres (or in the
    linear unit of a projected CRS scaled to metres). Tiles are laid out on a
    regular grid, row 0 being the northern edge; full tiles are
    ``floor(sqrt(max_cells_per_tile))`` pixels on a side and the last row and
    column absorb the remainder. Tiles per axis are therefore
    ``ceil(ceil(extent / resolution) / floor(sqrt(max_cells_per_tile)))``, which can be
    one more than ``ceil(extent / max_tile_side(...))`` because tile edges snap
    to whole pixels. When ``max_cells_per_tile`` is omitted each service's own
    request limit applies.
    """

    _validate_positive("resolution", resolution)
    if max_cells_per_tile is not None:
        _validate_positive("max_cells_per_tile", max_cells_per_tile)

    configs = _resolve_services(services)
    tiles: List[TileSpec] = []
    for service in configs:
        cells = max_cells_per_tile or service.max_cells_per_request
        service_resolution = _effective_resolution(service, resolution)
        tiles.extend(_plan_service(bbox, service, service_resolution, cells))

    logger.info(
        "Planned %d tile(s) for %d service(s) over %s",
        len(tiles),
        len(configs),
        bbox.as_tuple(),
    )
    return TilePlan(bbox=bbox, tiles=tuple(tiles))


def max_tile_side(resolution: float, max_cells_per_tile: int) -> float:
    return math.sqrt(max_cells_per_tile) * resolution


def _plan_service(
    bbox: BoundingBox, service: ServiceConfig, resolution: float, max_cells: int
) -> List[TileSpec]:
    tile_pixels = math.isqrt(int(max_cells))
    if tile_pixels < 1:
        raise InvalidParameter(
            f"max_cells_per_tile ({max_cells}) is too small to hold a single pixel."
        )

    width_m, height_m = bbox.ground_size()
    if width_m <= 0 or height_m <= 0:
        raise InvalidParameter(f"Bounding box {bbox.as_tuple()} has no ground extent.")

    total_cols = _pixel_count(width_m, resolution)
    total_rows = _pixel_count(height_m, resolution)
    col_spans = _axis_spans(total_cols, tile_pixels)
    row_spans = _axis_spans(total_rows, tile_pixels)

    # Pixel size in CRS units, uniform across every tile of the service.
    pixel_x = bbox.width / total_cols
    pixel_y = bbox.height / total_rows

    logger.debug(
        "Service %s: %dx%d pixels at %.3f m split into %d row(s) x %d column(s)",
        service.key.value,
        total_cols,
        total_rows,
        resolution,
        len(row_spans),
        len(col_spans),
    )

    specs: List[TileSpec] = []
    for row, (row_offset, row_pixels) in enumerate(row_spans):
        max_y = bbox.max_y if row_offset == 0 else bbox.max_y - row_offset * pixel_y
        row_end = row_offset + row_pixels
        min_y = bbox.min_y if row_end == total_rows else bbox.max_y - row_end * pixel_y
        for col, (col_offset, col_pixels) in enumerate(col_spans):
            min_x = bbox.min_x if col_offset == 0 else bbox.min_x + col_offset * pixel_x
            col_end = col_offset + col_pixels
            max_x = bbox.max_x if col_end == total_cols else bbox.min_x + col_end * pixel_x
            specs.append(
                TileSpec(
                    bbox=BoundingBox(min_x, min_y, max_x, max_y, crs=bbox.crs),
                    service=service.key.value,
                    row=row,
                    col=col,
                    resolution=resolution,
                    width=col_pixels,
                    height=row_pixels,
                    path=tile_path(service, row, col),
                )
            )
    return specs


def tile_path(service: ServiceConfig, row: int, col: int) -> Path:
    name = service.key.value
    return Path(name) / f"{name}_r{row:03d}_c{col:03d}{service.extension}"


def _axis_spans(total_pixels: int, tile_pixels: int) -> List[Tuple[int, int]]:
    divisions = max(1, math.ceil(total_pixels / tile_pixels))
    spans: List[Tuple[int, int]] = []
    for index in range(divisions):
        offset = index * tile_pixels
        spans.append((offset, min(tile_pixels, total_pixels - offset)))
    return spans


def _pixel_count(extent: float, resolution: float) -> int:
    return max(1, math.ceil(extent / resolution - PIXEL_EPSILON))


def _effective_resolution(service: ServiceConfig, resolution: float) -> float:
    if resolution < service.native_resolution:
        logger.info(
            "Requested resolution %.3f m is finer than the native resolution of %s (%.3f m); "
            "using %.3f m instead.",
            resolution,
            service.key.value,
            service.native_resolution,
            service.native_resolution,
        )
        return service.native_resolution
    return float(resolution)


def _resolve_services(services: Iterable[str | ServiceKey]) -> Sequence[ServiceConfig]:
    if isinstance(services, (str, ServiceKey)):
        services = [services]
    configs: List[ServiceConfig] = []
    for service in services:
        config = get_service(service)
        if config not in configs:
            configs.append(config)
    if not configs:
        raise InvalidParameter("At least one service must be requested.")
    return configs


def _validate_positive(name: str, value: float) -> None:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidParameter(f"{name} must be a number, got {value!r}.") from exc
    if not math.isfinite(number) or number <= 0:
        raise InvalidParameter(f"{name} must be positive, got {value!r}.")
