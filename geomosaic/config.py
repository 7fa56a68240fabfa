from __future__ import annotations

import os
from pathlib import Path

import httpx

BASE_DIR = Path(__file__).resolve().parent.parent

DATA_DIR_ENV = "GEOMOSAIC_DATA_DIR"
REQUEST_DELAY_ENV = "GEOMOSAIC_REQUEST_DELAY"
MAX_CONCURRENCY_ENV = "GEOMOSAIC_MAX_CONCURRENCY"
MAX_RETRIES_ENV = "GEOMOSAIC_MAX_RETRIES"
BACKOFF_BASE_ENV = "GEOMOSAIC_BACKOFF_BASE"

DEFAULT_REQUEST_DELAY = 0.0
DEFAULT_MAX_CONCURRENCY = 4
DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_BASE = 0.5
MAX_BACKOFF_SECONDS = 30.0

REQUEST_TIMEOUT = httpx.Timeout(60.0)


def data_dir() -> Path:
    """Root directory under which acquisitions write their tiles and mosaics."""

    override = os.getenv(DATA_DIR_ENV, "").strip()
    if override:
        return Path(override).expanduser()
    return BASE_DIR / "data"


def request_delay_seconds() -> float:
    return max(0.0, _float_env(REQUEST_DELAY_ENV, DEFAULT_REQUEST_DELAY))


def backoff_base_seconds() -> float:
    return max(0.0, _float_env(BACKOFF_BASE_ENV, DEFAULT_BACKOFF_BASE))


def max_concurrency() -> int:
    value = _int_env(MAX_CONCURRENCY_ENV, DEFAULT_MAX_CONCURRENCY)
    return value if value > 0 else DEFAULT_MAX_CONCURRENCY


def max_retries() -> int:
    value = _int_env(MAX_RETRIES_ENV, DEFAULT_MAX_RETRIES)
    return value if value >= 0 else DEFAULT_MAX_RETRIES


def _float_env(name: str, default: float) -> float:
    raw_value = os.getenv(name, "").strip()
    if not raw_value:
        return default
    try:
        return float(raw_value)
    except ValueError:
        return default


def _int_env(name: str, default: int) -> int:
    raw_value = os.getenv(name, "").strip()
    if not raw_value:
        return default
    try:
        return int(raw_value)
    except ValueError:
        return default
