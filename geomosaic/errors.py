from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from .models import TileSpec


class GeomosaicError(Exception):
    """Base class for all errors raised by the acquisition pipeline."""


class InvalidGeometry(GeomosaicError, ValueError):
    """Raised when an input geometry cannot be used to derive a bounding box."""


class InvalidParameter(GeomosaicError, ValueError):
    """Raised when a numeric or enumerated argument is out of range."""


class FetchFailure(GeomosaicError):
    """A single tile could not be retrieved."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PermanentFetchFailure(FetchFailure):
    """Raised for non-retryable tile failures (4xx, empty or malformed payloads)."""


class TransientFetchFailure(FetchFailure):
    """Raised for retryable failures; only surfaced once retries are exhausted."""


class FetchCancelled(FetchFailure):
    """Recorded for tiles that were never requested because the fetch was cancelled."""


class IncompleteFetch(GeomosaicError):
    """Raised by ``FetchReport.raise_for_failures`` when any tile failed."""

    def __init__(self, failed: Sequence[tuple["TileSpec", FetchFailure]]) -> None:
        self.failed = list(failed)
        details = "; ".join(f"{spec.tile_id}: {error}" for spec, error in self.failed)
        super().__init__(f"{len(self.failed)} tile(s) failed to download: {details}")


class IncompatibleTiles(GeomosaicError):
    """Raised when tiles passed to ``merge`` do not share CRS, resolution or layout."""


class DimensionMismatch(GeomosaicError):
    """Raised when an overlay does not match the pixel dimensions of its base raster."""
