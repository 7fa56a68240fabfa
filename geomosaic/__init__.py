"""Bounded-tile raster acquisition: resolve a box, plan tiles, fetch them and build mosaics."""

from .errors import (
    DimensionMismatch,
    FetchCancelled,
    GeomosaicError,
    IncompatibleTiles,
    IncompleteFetch,
    InvalidGeometry,
    InvalidParameter,
    PermanentFetchFailure,
    TransientFetchFailure,
)
from .models import (
    BoundingBox,
    DownloadResult,
    FetchReport,
    Geometry,
    Mosaic,
    ProgressEvent,
    ProgressOutcome,
    TilePlan,
    TileRaster,
    TileSpec,
)
from .services import composite_overlay, fetch, fetch_tiles, merge, plan, render_markers, resolve
from .services.catalog import SERVICE_CATALOG, ServiceKey

__version__ = "0.1.0"

__all__ = [
    "BoundingBox",
    "DimensionMismatch",
    "DownloadResult",
    "FetchCancelled",
    "FetchReport",
    "GeomosaicError",
    "Geometry",
    "IncompatibleTiles",
    "IncompleteFetch",
    "InvalidGeometry",
    "InvalidParameter",
    "Mosaic",
    "PermanentFetchFailure",
    "ProgressEvent",
    "ProgressOutcome",
    "SERVICE_CATALOG",
    "ServiceKey",
    "TilePlan",
    "TileRaster",
    "TileSpec",
    "TransientFetchFailure",
    "composite_overlay",
    "fetch",
    "fetch_tiles",
    "merge",
    "plan",
    "render_markers",
    "resolve",
]
