# Extraction tick internals.
# Process entry-point: ``python -m app.worker.main``.

# Re-export so ``from app.worker import run_tick`` keeps working.
from app.worker.tick import run_tick, TickSummary  # noqa: F401
