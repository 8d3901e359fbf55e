"""
Extraction scheduler entry-point.

Thin shell: main() -> worker_loop() -> run_tick() every poll interval.
All batch logic lives in ``app.worker.tick``. DB access is via ``app.worker.db``.
Configuration via ``app.worker.config``.
"""
import asyncio
import logging
import os
import sys
from datetime import datetime, timezone

from app.database import AsyncSessionLocal
from app.services.extraction_provider import ProviderConfigurationError, get_extraction_provider
from app.services.storage import get_blob_store
from app.worker.config import load_worker_config
from app.worker.tick import run_tick

logger = logging.getLogger(__name__)


def _utc_now_naive() -> datetime:
    """Naive UTC datetime for DB (TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


WORKER_ID = f"worker-{os.getpid()}-{_utc_now_naive().isoformat()}"


# ---------------------------------------------------------------------------
# worker_loop
# ---------------------------------------------------------------------------

async def worker_loop(max_iterations: int | None = None):
    """Run a tick every poll interval, each in a fresh session.

    The provider is built once up front so missing credentials fail at startup.
    """
    cfg = load_worker_config()
    provider = get_extraction_provider(timeout=cfg.provider_timeout_seconds)
    blob_store = get_blob_store()
    logger.info(
        "Worker %s starting (batch_size=%s, max_batches=%s, interval=%ss)",
        WORKER_ID, cfg.batch_size, cfg.max_batches_per_tick, cfg.poll_interval_seconds,
    )

    idle_count = 0
    iterations = 0
    while max_iterations is None or iterations < max_iterations:
        iterations += 1
        try:
            async with AsyncSessionLocal() as db:
                summary = await run_tick(db, provider=provider, blob_store=blob_store, worker_cfg=cfg)
            if summary.status == "processed" or summary.errors:
                logger.info("Tick result: %s", summary.to_dict())
                idle_count = 0
            else:
                idle_count += 1
                if idle_count % 10 == 0:
                    logger.debug("No queued pages (idle tick #%s)", idle_count)
            await asyncio.sleep(cfg.poll_interval_seconds)
        except Exception as e:
            logger.error("Error in worker loop: %s", e, exc_info=True)
            await asyncio.sleep(cfg.error_sleep_seconds)


# ---------------------------------------------------------------------------
# main
# ---------------------------------------------------------------------------

def main():
    """Entry point for the scheduler process."""
    cfg = load_worker_config()
    logging.basicConfig(level=getattr(logging, cfg.log_level.upper(), logging.INFO), format=cfg.log_format)
    try:
        asyncio.run(worker_loop())
    except KeyboardInterrupt:
        logger.info("Worker shutting down...")
    except ProviderConfigurationError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(2)
    except Exception as e:
        logger.error("Fatal error in worker: %s", e, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
