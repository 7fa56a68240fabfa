from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import httpx

from .. import config
from ..errors import (
    FetchCancelled,
    InvalidParameter,
    PermanentFetchFailure,
    TransientFetchFailure,
)
from ..models import DownloadResult, FetchReport, ProgressEvent, ProgressOutcome, TileSpec
from .cache import TileCache
from .catalog import ServiceConfig, build_request, get_service, matches_signature

logger = logging.getLogger(__name__)

# Request timeouts and throttling responses are worth another attempt even
# though they are 4xx codes.
RETRYABLE_STATUS_CODES = frozenset({408, 429})

ProgressSink = Callable[[ProgressEvent], Optional[Awaitable[None]]]


@dataclass
class _FetchContext:
    client: httpx.AsyncClient | None
    cache: TileCache
    max_retries: int
    overwrite: bool
    backoff_base: float
    request_delay: float
    cancel_event: asyncio.Event | None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()


class _ProgressDispatcher:
    """Forwards progress events to the sink from a separate task.

    Workers only enqueue events, so a slow or failing sink never holds up a
    download.
    """

    def __init__(self, sink: ProgressSink | None, total: int) -> None:
        self._sink = sink
        self._total = total
        self._completed = 0
        self._queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None

    def start(self) -> None:
        if self._sink is not None:
            self._task = asyncio.create_task(self._drain())

    def emit(self, spec: TileSpec, outcome: ProgressOutcome, detail: str | None = None) -> None:
        self._completed += 1
        if self._task is None:
            return
        self._queue.put_nowait(
            ProgressEvent(
                tile_id=spec.tile_id,
                outcome=outcome,
                completed=self._completed,
                total=self._total,
                detail=detail,
            )
        )

    async def close(self) -> None:
        if self._task is None:
            return
        self._queue.put_nowait(None)
        await self._task

    async def _drain(self) -> None:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            try:
                outcome = self._sink(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("Progress sink failed while handling tile %s", event.tile_id)


async def fetch_tiles(
    tile_plan: Iterable[TileSpec],
    output_dir: Path,
    *,
    max_concurrency: int | None = None,
    max_retries: int | None = None,
    overwrite: bool = False,
    progress: ProgressSink | None = None,
    cancel_event: asyncio.Event | None = None,
    client: httpx.AsyncClient | None = None,
    backoff_base: float | None = None,
) -> FetchReport:
    """Download every tile of ``tile_plan`` into ``output_dir``.

    At most ``max_concurrency`` requests are in flight. Transient failures
    (transport errors, 5xx, 408 and 429) are retried up to ``max_retries``
    times with exponential backoff; every other failure is permanent and
    recorded straight away. Tiles already present with a matching checksum
    sidecar are skipped unless ``overwrite`` is set.

    The returned report lists one result per tile in plan order. Setting
    ``cancel_event`` stops workers from starting new tiles; tiles that were
    never requested are reported with a ``FetchCancelled`` error.
    """

    specs = list(tile_plan)
    concurrency = config.max_concurrency() if max_concurrency is None else max_concurrency
    retries = config.max_retries() if max_retries is None else max_retries
    if concurrency < 1:
        raise InvalidParameter(f"max_concurrency must be at least 1, got {concurrency}.")
    if retries < 0:
        raise InvalidParameter(f"max_retries cannot be negative, got {retries}.")
    for spec in specs:
        get_service(spec.service)

    context = _FetchContext(
        client=client,
        cache=TileCache(Path(output_dir)),
        max_retries=retries,
        overwrite=overwrite,
        backoff_base=config.backoff_base_seconds() if backoff_base is None else backoff_base,
        request_delay=config.request_delay_seconds(),
        cancel_event=cancel_event,
    )
    if client is None:
        async with httpx.AsyncClient(
            timeout=config.REQUEST_TIMEOUT, follow_redirects=True
        ) as owned_client:
            context.client = owned_client
            return await _run_workers(context, specs, concurrency=concurrency, progress=progress)
    return await _run_workers(context, specs, concurrency=concurrency, progress=progress)


def fetch(tile_plan: Iterable[TileSpec], output_dir: Path, **kwargs) -> FetchReport:
    """Blocking wrapper around :func:`fetch_tiles` for scripts and notebooks."""

    return asyncio.run(fetch_tiles(tile_plan, output_dir, **kwargs))


async def _run_workers(
    context: _FetchContext,
    specs: Sequence[TileSpec],
    *,
    concurrency: int,
    progress: ProgressSink | None,
) -> FetchReport:
    results: List[DownloadResult | None] = [None] * len(specs)
    pending: asyncio.Queue[int] = asyncio.Queue()
    for index in range(len(specs)):
        pending.put_nowait(index)

    dispatcher = _ProgressDispatcher(progress, total=len(specs))
    dispatcher.start()

    async def worker() -> None:
        while True:
            try:
                index = pending.get_nowait()
            except asyncio.QueueEmpty:
                return
            spec = specs[index]
            if context.cancelled:
                result = DownloadResult(
                    spec=spec, error=FetchCancelled("fetch cancelled before the tile was requested")
                )
            else:
                result = await _fetch_tile(context, spec)
            results[index] = result
            outcome, detail = _progress_outcome(result)
            dispatcher.emit(spec, outcome, detail)

    workers = [asyncio.create_task(worker()) for _ in range(min(concurrency, len(specs)))]
    try:
        await asyncio.gather(*workers)
    finally:
        for task in workers:
            task.cancel()
        await dispatcher.close()

    final_results = [result for result in results if result is not None]
    report = FetchReport(
        results=final_results,
        cancelled=any(isinstance(result.error, FetchCancelled) for result in final_results),
    )
    logger.info(
        "Fetched %d of %d tile(s) (%d skipped, %d failed%s)",
        len(report.succeeded),
        len(report),
        sum(1 for result in report if result.skipped),
        len(report.failed),
        ", cancelled" if report.cancelled else "",
    )
    return report


async def _fetch_tile(context: _FetchContext, spec: TileSpec) -> DownloadResult:
    cache = context.cache
    try:
        stored = None if context.overwrite else cache.load(spec)
        if stored is None:
            # Anything left at the tile path is unverified at this point.
            cache.discard(spec)
    except OSError as exc:
        return _storage_failure(cache, spec, exc, attempts=0)
    if stored is not None:
        logger.info("Tile %s already downloaded; skipping request", spec.tile_id)
        return DownloadResult(
            spec=spec,
            path=cache.path_for(spec),
            sha256=stored["sha256"],
            size=int(stored["size"]),
            skipped=True,
        )

    service = get_service(spec.service)
    url, params = build_request(spec)
    attempts = 0
    while True:
        attempts += 1
        await _respect_rate_limit(context.request_delay)
        try:
            content, source_url = await _request_tile(context.client, service, url, params)
        except PermanentFetchFailure as exc:
            logger.warning("Tile %s failed permanently: %s", spec.tile_id, exc)
            return DownloadResult(spec=spec, error=exc, attempts=attempts)
        except TransientFetchFailure as exc:
            if attempts > context.max_retries:
                logger.warning(
                    "Tile %s failed after %d attempt(s): %s", spec.tile_id, attempts, exc
                )
                return DownloadResult(spec=spec, error=exc, attempts=attempts)
            delay = _backoff_delay(context.backoff_base, attempts)
            logger.warning(
                "Tile %s request failed (%s); retrying in %.2fs (attempt %d of %d)",
                spec.tile_id,
                exc,
                delay,
                attempts + 1,
                context.max_retries + 1,
            )
            if await _wait_for_cancel(context.cancel_event, delay):
                return DownloadResult(
                    spec=spec,
                    error=FetchCancelled(f"fetch cancelled while retrying after: {exc}"),
                    attempts=attempts,
                )
            continue

        try:
            record = cache.store(
                spec,
                content,
                {
                    "service": spec.service,
                    "source_url": source_url,
                    "bbox": spec.bbox.to_dict(),
                    "width": spec.width,
                    "height": spec.height,
                },
            )
        except OSError as exc:
            return _storage_failure(cache, spec, exc, attempts=attempts)
        logger.debug(
            "Downloaded tile %s (%d bytes, %d attempt(s))", spec.tile_id, len(content), attempts
        )
        return DownloadResult(
            spec=spec,
            path=cache.path_for(spec),
            sha256=record["sha256"],
            size=record["size"],
            attempts=attempts,
        )


def _storage_failure(
    cache: TileCache, spec: TileSpec, exc: OSError, *, attempts: int
) -> DownloadResult:
    logger.error("Storage error for tile %s: %s", spec.tile_id, exc)
    try:
        cache.discard(spec)
    except OSError:
        logger.warning("Could not remove partial files for tile %s", spec.tile_id)
    return DownloadResult(
        spec=spec,
        error=PermanentFetchFailure(f"storage error: {exc}"),
        attempts=attempts,
    )


async def _request_tile(
    client: httpx.AsyncClient,
    service: ServiceConfig,
    url: str,
    params: Dict[str, object],
) -> Tuple[bytes, str]:
    try:
        response = await client.get(url, params=params)
    except httpx.RequestError as exc:
        raise TransientFetchFailure(f"request error: {exc}") from exc

    status = response.status_code
    if status >= 500 or status in RETRYABLE_STATUS_CODES:
        raise TransientFetchFailure(
            f"{status} {_response_detail(response)}", status_code=status
        )
    if status >= 300:
        raise PermanentFetchFailure(
            f"{status} {_response_detail(response)}", status_code=status
        )
    if status == 204:
        raise PermanentFetchFailure("no imagery available (204 No Content)", status_code=status)

    content = response.content
    if not content:
        raise PermanentFetchFailure("empty payload", status_code=status)
    if not matches_signature(service, content):
        raise PermanentFetchFailure(
            f"expected {service.image_format} but received {_response_detail(response)}",
            status_code=status,
        )
    return content, str(response.url)


async def _respect_rate_limit(delay: float) -> None:
    if delay > 0:
        await asyncio.sleep(delay)


async def _wait_for_cancel(cancel_event: asyncio.Event | None, delay: float) -> bool:
    """Sleep for ``delay`` seconds; return True early if the fetch is cancelled."""

    if cancel_event is None:
        await asyncio.sleep(delay)
        return False
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return False
    return True


def _backoff_delay(base: float, attempt: int) -> float:
    return min(base * 2 ** (attempt - 1), config.MAX_BACKOFF_SECONDS)


def _progress_outcome(result: DownloadResult) -> Tuple[ProgressOutcome, str | None]:
    if isinstance(result.error, FetchCancelled):
        return ProgressOutcome.CANCELLED, str(result.error)
    if result.error is not None:
        return ProgressOutcome.FAILED, str(result.error)
    if result.skipped:
        return ProgressOutcome.SKIPPED, None
    return ProgressOutcome.DOWNLOADED, None


def _response_detail(response: httpx.Response) -> str:
    content_type = response.headers.get("Content-Type", "unknown")
    lowered = content_type.lower()
    if any(token in lowered for token in ("text", "xml", "json", "html")):
        return _short_error_detail(response.text)
    return f"{content_type} payload ({len(response.content)} bytes)"


def _short_error_detail(detail: str) -> str:
    detail = detail.strip()
    if len(detail) > 160:
        return f"{detail[:157]}..."
    return detail or "(no detail)"
