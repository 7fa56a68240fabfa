from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from . import config
from .errors import GeomosaicError
from .models import DEFAULT_CRS, FetchReport, Geometry, ProgressEvent, TilePlan, TileRaster
from .services.bounds import resolve
from .services.catalog import SERVICE_CATALOG, ServiceKey
from .services.compositor import merge
from .services.fetcher import fetch_tiles
from .services.planner import plan

app = FastAPI(title="Geomosaic", version="0.1.0")

logger = logging.getLogger(__name__)

DEFAULT_SIDE_LENGTH = 16.0
DEFAULT_UNIT = "km"
DEFAULT_RESOLUTION = 30.0
DEFAULT_SERVICES = [ServiceKey.ELEVATION]
ACQUISITIONS_DIRNAME = "acquisitions"


class PlanRequest(BaseModel):
    geometry: Dict[str, Any] = Field(description="GeoJSON geometry or feature")
    crs: str = DEFAULT_CRS
    side_length: float = DEFAULT_SIDE_LENGTH
    unit: str = DEFAULT_UNIT
    resolution: float = DEFAULT_RESOLUTION
    services: List[ServiceKey] = Field(default_factory=lambda: list(DEFAULT_SERVICES))
    max_cells_per_tile: int | None = None


class StopAcquisitionRequest(BaseModel):
    acquisition_id: str


class AcquisitionController:
    def __init__(self) -> None:
        self.cancel_event = asyncio.Event()

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


_active_acquisitions: Dict[str, AcquisitionController] = {}
_acquisition_lock = asyncio.Lock()


async def _register_acquisition(acquisition_id: str) -> AcquisitionController:
    async with _acquisition_lock:
        if acquisition_id in _active_acquisitions:
            raise HTTPException(status_code=409, detail="Acquisition already in progress")
        controller = AcquisitionController()
        _active_acquisitions[acquisition_id] = controller
        return controller


async def _lookup_acquisition(acquisition_id: str) -> AcquisitionController | None:
    async with _acquisition_lock:
        return _active_acquisitions.get(acquisition_id)


async def _unregister_acquisition(acquisition_id: str) -> None:
    async with _acquisition_lock:
        _active_acquisitions.pop(acquisition_id, None)


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/services")
def list_services() -> List[Dict[str, object]]:
    return [
        {
            "key": key.value,
            "label": service.label,
            "description": service.description,
            "format": service.image_format,
            "native_resolution": service.native_resolution,
            "max_cells_per_request": service.max_cells_per_request,
        }
        for key, service in SERVICE_CATALOG.items()
    ]


@app.post("/plan")
def plan_tiles(request: PlanRequest) -> Dict[str, object]:
    try:
        geometry = Geometry.from_geojson(request.geometry, crs=request.crs)
        bbox = resolve(geometry, request.side_length, request.unit)
        tile_plan = plan(bbox, request.resolution, request.services, request.max_cells_per_tile)
    except GeomosaicError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _plan_payload(tile_plan)


@app.get("/acquire/stream")
async def stream_acquisition(
    request: Request,
    acquisition_id: str = Query(..., description="Client-chosen identifier; reusing it resumes the download"),
    lon: float = Query(...),
    lat: float = Query(...),
    side_length: float = Query(DEFAULT_SIDE_LENGTH),
    unit: str = Query(DEFAULT_UNIT),
    resolution: float = Query(DEFAULT_RESOLUTION),
    services: List[ServiceKey] = Query(DEFAULT_SERVICES),
    max_cells_per_tile: int | None = Query(None),
    overwrite: bool = Query(False),
):
    acquisition_id = _safe_identifier(acquisition_id)
    if not acquisition_id:
        raise HTTPException(status_code=400, detail="acquisition_id query parameter is required")

    try:
        bbox = resolve(Geometry.point(lon, lat), side_length, unit)
        tile_plan = plan(bbox, resolution, services, max_cells_per_tile)
    except GeomosaicError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    controller = await _register_acquisition(acquisition_id)
    output_dir = config.data_dir() / ACQUISITIONS_DIRNAME / acquisition_id
    events: asyncio.Queue[tuple[str, Dict[str, object]]] = asyncio.Queue()

    async def enqueue(event: str, data: Dict[str, object]) -> None:
        await events.put((event, data))

    async def handle_progress(event: ProgressEvent) -> None:
        await enqueue("progress", event.to_dict())

    async def producer() -> None:
        try:
            await enqueue(
                "status",
                {
                    "message": f"Fetching {len(tile_plan)} tile(s) for {', '.join(tile_plan.services)}.",
                    "bbox": bbox.to_dict(),
                    "total": len(tile_plan),
                },
            )
            report = await fetch_tiles(
                tile_plan,
                output_dir,
                overwrite=overwrite,
                progress=handle_progress,
                cancel_event=controller.cancel_event,
            )
            if report.cancelled:
                await enqueue("cancelled", {"message": "Acquisition cancelled.", **report.summary()})
                return
            mosaics = await asyncio.to_thread(_build_mosaics, tile_plan, report, output_dir)
            await enqueue("complete", _acquisition_summary(report, mosaics))
        except GeomosaicError as exc:
            await enqueue("error", {"message": str(exc)})
        except Exception as exc:  # pragma: no cover
            logger.exception("Acquisition %s failed: %s", acquisition_id, exc)
            await enqueue("error", {"message": "Unexpected error while acquiring tiles."})
        finally:
            await enqueue("_end", {})

    async def event_stream() -> AsyncIterator[bytes]:
        producer_task = asyncio.create_task(producer())
        try:
            while True:
                if await request.is_disconnected():
                    controller.cancel()
                try:
                    event_type, payload = await asyncio.wait_for(events.get(), timeout=1.0)
                except asyncio.TimeoutError:
                    if producer_task.done() and events.empty():
                        break
                    continue
                if event_type == "_end":
                    break
                yield _sse_event(event_type, payload)
        finally:
            controller.cancel()
            await producer_task
            await _unregister_acquisition(acquisition_id)

    return StreamingResponse(event_stream(), media_type="text/event-stream")


@app.post("/acquire/stop")
async def stop_acquisition(request: StopAcquisitionRequest) -> Dict[str, object]:
    acquisition_id = _safe_identifier(request.acquisition_id)
    if not acquisition_id:
        raise HTTPException(status_code=400, detail="acquisition_id is required")

    controller = await _lookup_acquisition(acquisition_id)
    if controller is None:
        return {"status": "not_found"}

    controller.cancel()
    return {"status": "stopping"}


def _plan_payload(tile_plan: TilePlan) -> Dict[str, object]:
    return {
        "bbox": tile_plan.bbox.to_dict(),
        "grid": {service: list(tile_plan.grid_shape(service)) for service in tile_plan.services},
        "tiles": [spec.to_dict() for spec in tile_plan],
    }


def _build_mosaics(tile_plan: TilePlan, report: FetchReport, output_dir: Path) -> Dict[str, str]:
    """Merge and save one mosaic per service whose tiles all downloaded."""

    mosaics: Dict[str, str] = {}
    for service in tile_plan.services:
        results = report.for_service(service)
        if not results or not all(result.ok for result in results):
            logger.info("Skipping %s mosaic: not every tile was downloaded", service)
            continue
        rasters = [TileRaster.from_download(result) for result in results]
        mosaic = merge(rasters)
        extension = SERVICE_CATALOG[ServiceKey(service)].extension
        path = mosaic.save(output_dir / f"{service}_mosaic{extension}")
        mosaics[service] = str(path)
    return mosaics


def _acquisition_summary(report: FetchReport, mosaics: Dict[str, str]) -> Dict[str, object]:
    summary = report.summary()
    failed_count = len(summary["failed"])
    if failed_count:
        plural = "s" if failed_count != 1 else ""
        message = (
            f"{failed_count} tile{plural} failed to download. "
            f"First failure detail: {summary['failed'][0]['tile_id']}: {summary['failed'][0]['error']}."
        )
    else:
        message = f"Downloaded {summary['succeeded']} tile(s) ({summary['skipped']} already present)."
    summary.update({"message": message, "mosaics": mosaics})
    return summary


def _sse_event(event: str, data: Dict[str, object]) -> bytes:
    payload = json.dumps(data, default=str)
    return f"event: {event}\ndata: {payload}\n\n".encode("utf-8")


def _safe_identifier(value: str) -> str:
    return "".join(ch for ch in (value or "").strip() if ch.isalnum() or ch in {"-", "_"})
