"""Scheduler loop tests (app.worker.main)."""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.services.extraction_provider import ProviderConfigurationError
from app.worker import main as worker_main
from app.worker.config import WorkerConfig
from app.worker.tick import TickSummary


def _session_factory():
    session = AsyncMock()
    factory = MagicMock()
    factory.return_value.__aenter__ = AsyncMock(return_value=session)
    factory.return_value.__aexit__ = AsyncMock(return_value=False)
    return factory, session


@pytest.mark.asyncio
async def test_worker_loop_runs_ticks_with_shared_provider():
    factory, session = _session_factory()
    provider, blobs = object(), object()
    cfg = WorkerConfig(poll_interval_seconds=7.0)
    with patch("app.worker.main.load_worker_config", return_value=cfg), \
         patch("app.worker.main.get_extraction_provider", return_value=provider), \
         patch("app.worker.main.get_blob_store", return_value=blobs), \
         patch("app.worker.main.AsyncSessionLocal", factory), \
         patch("app.worker.main.run_tick", new_callable=AsyncMock, return_value=TickSummary()) as tick, \
         patch("app.worker.main.asyncio.sleep", new_callable=AsyncMock) as sleep:
        await worker_main.worker_loop(max_iterations=2)

    assert tick.await_count == 2
    assert tick.call_args.args[0] is session
    assert tick.call_args.kwargs["provider"] is provider
    assert tick.call_args.kwargs["blob_store"] is blobs
    sleep.assert_awaited_with(7.0)


@pytest.mark.asyncio
async def test_worker_loop_survives_tick_errors():
    factory, _ = _session_factory()
    cfg = WorkerConfig(error_sleep_seconds=1.5)
    with patch("app.worker.main.load_worker_config", return_value=cfg), \
         patch("app.worker.main.get_extraction_provider", return_value=object()), \
         patch("app.worker.main.get_blob_store", return_value=object()), \
         patch("app.worker.main.AsyncSessionLocal", factory), \
         patch("app.worker.main.run_tick", new_callable=AsyncMock, side_effect=RuntimeError("db down")) as tick, \
         patch("app.worker.main.asyncio.sleep", new_callable=AsyncMock) as sleep:
        await worker_main.worker_loop(max_iterations=3)

    assert tick.await_count == 3
    sleep.assert_awaited_with(1.5)


def test_main_exits_on_missing_credentials():
    with patch("app.worker.main.load_worker_config", return_value=WorkerConfig()), \
         patch("app.worker.main.get_extraction_provider",
               side_effect=ProviderConfigurationError("GOOGLE_AI_STUDIO_API_KEY (or GOOGLE_API_KEY) is required")):
        with pytest.raises(SystemExit) as exc_info:
            worker_main.main()
    assert exc_info.value.code == 2
