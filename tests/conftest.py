"""
Pytest configuration and shared fixtures.

The datastore is in-memory SQLite (aiosqlite) and the broker is fakeredis, so
the suite needs no running services.
"""

from typing import Any

import pytest
import pytest_asyncio
import structlog
from fakeredis import FakeAsyncRedis
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from bundle_ingest.database import build_session_factory
from bundle_ingest.models import Base
from bundle_ingest.worker.queue import IngestQueue


class FakeClock:
    """Settable wall clock for the queue's backoff and stall arithmetic."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_raw_bundle(**overrides: Any) -> dict[str, Any]:
    """A scraped record in feed (camelCase) shape that passes validation."""
    raw = {
        "id": "bundle-1",
        "name": "Disney Trio",
        "services": ["disney plus", "Hulu", "espn"],
        "price": 14.99,
        "currency": "USD",
        "billingCycle": "mo",
        "regions": ["US"],
        "provider": "Disney",
        "link": "https://example.com/trio",
        "tags": ["Streaming", "Sports"],
        "summary": "Three services, one price",
        "isActive": True,
        "lastVerified": "2026-10-01T12:00:00Z",
        "source": "official",
        "confidence": 0.9,
    }
    raw.update(overrides)
    return raw


@pytest.fixture(autouse=True)
def reset_structlog():
    """Entry points reconfigure structlog onto captured streams; undo that per test."""
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def redis():
    client = FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest_asyncio.fixture
async def queue(redis, clock):
    return IngestQueue(redis, name="test:ingest", clock=clock)
