"""Acquisition pipeline exposed by the ``geomosaic.services`` package."""

from .bounds import resolve
from .compositor import composite_overlay, merge, render_markers
from .fetcher import fetch, fetch_tiles
from .planner import plan

__all__ = ["resolve", "plan", "fetch", "fetch_tiles", "merge", "composite_overlay", "render_markers"]
