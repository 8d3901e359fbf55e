"""Pytest fixtures for the requirements ingest tests."""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from app.database import get_db
from app.main import app
from app.worker.config import WorkerConfig
from fakes import InMemoryStore


@pytest.fixture
def store():
    """In-memory store patched in wherever ``db_handler`` is used by the pipeline."""
    s = InMemoryStore()
    with patch("app.worker.tick.db_handler", s), \
         patch("app.worker.errors.db_handler", s), \
         patch("app.services.ingest.db_handler", s), \
         patch("app.services.quota.db_handler", s), \
         patch("app.services.review.db_handler", s):
        yield s


@pytest.fixture
def db():
    """Mock AsyncSession (commit/rollback awaitable)."""
    session = AsyncMock()
    session.add = MagicMock()
    return session


@pytest.fixture
def worker_cfg() -> WorkerConfig:
    return WorkerConfig(batch_size=6, max_batches_per_tick=2, confidence_threshold=0.5)


@pytest.fixture
def client(db):
    """FastAPI test client with the DB session dependency replaced by the mock session."""
    async def _override_get_db():
        yield db

    app.dependency_overrides[get_db] = _override_get_db
    yield TestClient(app)
    app.dependency_overrides.pop(get_db, None)
