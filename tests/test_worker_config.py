"""Unit tests for app.worker.config."""
from __future__ import annotations

import os
from unittest.mock import patch

import pytest

from app.worker.config import WorkerConfig, load_worker_config

_KEYS = [
    "OCR_BATCH_SIZE", "OCR_MAX_BATCHES", "OCR_CONFIDENCE_THRESHOLD", "OCR_SIGNED_URL_TTL",
    "OCR_DOWNLOAD_TIMEOUT", "OCR_PROVIDER_TIMEOUT", "INGEST_TICK_ATTEMPTS",
    "WORKER_POLL_INTERVAL", "WORKER_ERROR_SLEEP", "OCR_LANGUAGE_HINT",
    "WORKER_LOG_LEVEL", "WORKER_LOG_FORMAT",
]


def _clean_env() -> dict:
    return {k: v for k, v in os.environ.items() if k not in _KEYS}


# --- WorkerConfig defaults ---

def test_worker_config_defaults():
    cfg = WorkerConfig()
    assert cfg.batch_size == 6
    assert cfg.max_batches_per_tick == 2
    assert cfg.confidence_threshold == 0.5
    assert cfg.signed_url_ttl_seconds == 180
    assert cfg.download_timeout_seconds == 60.0
    assert cfg.provider_timeout_seconds == 120.0
    assert cfg.ingest_tick_attempts == 3
    assert cfg.poll_interval_seconds == 30.0
    assert cfg.error_sleep_seconds == 5.0
    assert cfg.language_hint == "es,en"
    assert cfg.log_level == "INFO"


def test_worker_config_is_frozen():
    cfg = WorkerConfig()
    with pytest.raises(AttributeError):
        cfg.batch_size = 99  # type: ignore[misc]


# --- load_worker_config with no env vars ---

def test_load_worker_config_defaults():
    with patch.dict(os.environ, _clean_env(), clear=True):
        cfg = load_worker_config()
    assert cfg.batch_size == 6
    assert cfg.max_batches_per_tick == 2
    assert cfg.confidence_threshold == 0.5


# --- Overrides ---

def test_load_worker_config_int_override():
    with patch.dict(os.environ, {"OCR_BATCH_SIZE": "10", "OCR_MAX_BATCHES": "4"}, clear=False):
        cfg = load_worker_config()
    assert cfg.batch_size == 10
    assert cfg.max_batches_per_tick == 4


def test_load_worker_config_float_override():
    with patch.dict(os.environ, {"OCR_CONFIDENCE_THRESHOLD": "0.7", "WORKER_POLL_INTERVAL": "5.5"}, clear=False):
        cfg = load_worker_config()
    assert cfg.confidence_threshold == 0.7
    assert cfg.poll_interval_seconds == 5.5


def test_load_worker_config_language_hint_override():
    with patch.dict(os.environ, {"OCR_LANGUAGE_HINT": "en"}, clear=False):
        cfg = load_worker_config()
    assert cfg.language_hint == "en"


# --- Invalid / out-of-range values fall back to defaults ---

def test_load_worker_config_invalid_int_falls_back():
    with patch.dict(os.environ, {"OCR_BATCH_SIZE": "abc"}, clear=False):
        cfg = load_worker_config()
    assert cfg.batch_size == 6


@pytest.mark.parametrize("raw", ["0", "21", "-3"])
def test_load_worker_config_batch_size_out_of_range(raw):
    with patch.dict(os.environ, {"OCR_BATCH_SIZE": raw}, clear=False):
        cfg = load_worker_config()
    assert cfg.batch_size == 6


@pytest.mark.parametrize("raw", ["0", "11"])
def test_load_worker_config_max_batches_out_of_range(raw):
    with patch.dict(os.environ, {"OCR_MAX_BATCHES": raw}, clear=False):
        cfg = load_worker_config()
    assert cfg.max_batches_per_tick == 2


def test_load_worker_config_threshold_out_of_range():
    with patch.dict(os.environ, {"OCR_CONFIDENCE_THRESHOLD": "1.5"}, clear=False):
        cfg = load_worker_config()
    assert cfg.confidence_threshold == 0.5


def test_load_worker_config_log_level_override():
    with patch.dict(os.environ, {"WORKER_LOG_LEVEL": "DEBUG"}, clear=False):
        cfg = load_worker_config()
    assert cfg.log_level == "DEBUG"
