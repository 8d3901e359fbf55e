"""
Extraction tick configuration.

Single source of truth for tick-level defaults and tunables (batch sizing,
confidence threshold, timeouts, scheduler cadence).
"""
from __future__ import annotations

import os
from dataclasses import dataclass

from app.config import OCR_LANGUAGE_HINT

DEFAULT_LOG_FORMAT = "%(asctime)s - [TICK] - %(levelname)s - %(message)s"


@dataclass(frozen=True)
class WorkerConfig:
    """Immutable tick configuration loaded once at startup."""

    # --- Batching ---
    batch_size: int = 6
    max_batches_per_tick: int = 2

    # --- Candidate scoring ---
    confidence_threshold: float = 0.5

    # --- Timeouts ---
    signed_url_ttl_seconds: int = 180
    download_timeout_seconds: float = 60.0
    provider_timeout_seconds: float = 120.0

    # --- Ingestion (eager ticks after upload) ---
    ingest_tick_attempts: int = 3

    # --- Scheduler loop ---
    poll_interval_seconds: float = 30.0
    error_sleep_seconds: float = 5.0

    # --- Provider ---
    language_hint: str = "es,en"

    # --- Logging ---
    log_level: str = "INFO"
    log_format: str = DEFAULT_LOG_FORMAT


def load_worker_config() -> WorkerConfig:
    """Build WorkerConfig from environment variables (with defaults).

    Values that do not parse, or fall outside their allowed range, fall back
    to the default rather than failing startup.
    """
    def _float(key: str, default: float, lo: float | None = None, hi: float | None = None) -> float:
        raw = os.getenv(key)
        if raw is None:
            return default
        try:
            value = float(raw)
        except (TypeError, ValueError):
            return default
        if (lo is not None and value < lo) or (hi is not None and value > hi):
            return default
        return value

    def _int(key: str, default: int, lo: int | None = None, hi: int | None = None) -> int:
        raw = os.getenv(key)
        if raw is None:
            return default
        try:
            value = int(raw)
        except (TypeError, ValueError):
            return default
        if (lo is not None and value < lo) or (hi is not None and value > hi):
            return default
        return value

    return WorkerConfig(
        batch_size=_int("OCR_BATCH_SIZE", 6, 1, 20),
        max_batches_per_tick=_int("OCR_MAX_BATCHES", 2, 1, 10),
        confidence_threshold=_float("OCR_CONFIDENCE_THRESHOLD", 0.5, 0.0, 1.0),
        signed_url_ttl_seconds=_int("OCR_SIGNED_URL_TTL", 180, 1),
        download_timeout_seconds=_float("OCR_DOWNLOAD_TIMEOUT", 60.0, 1.0),
        provider_timeout_seconds=_float("OCR_PROVIDER_TIMEOUT", 120.0, 1.0),
        ingest_tick_attempts=_int("INGEST_TICK_ATTEMPTS", 3, 0, 10),
        poll_interval_seconds=_float("WORKER_POLL_INTERVAL", 30.0, 0.1),
        error_sleep_seconds=_float("WORKER_ERROR_SLEEP", 5.0, 0.0),
        language_hint=(os.getenv("OCR_LANGUAGE_HINT") or OCR_LANGUAGE_HINT).strip() or "es,en",
        log_level=os.getenv("WORKER_LOG_LEVEL", "INFO"),
        log_format=os.getenv("WORKER_LOG_FORMAT", DEFAULT_LOG_FORMAT),
    )
