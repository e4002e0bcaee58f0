"""Process-scoped resources shared by the CLI and the worker service."""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from bundle_ingest.config import Settings, settings
from bundle_ingest.database import build_session_factory, create_engine_from_settings
from bundle_ingest.scrapers import initialize_scrapers
from bundle_ingest.scrapers.registry import SourceRegistry, registry as default_registry
from bundle_ingest.services.source_config import SourceConfig, load_source_config
from bundle_ingest.worker.queue import IngestQueue
from bundle_ingest.worker.runner import JobRunner

log = structlog.get_logger(__name__)


@dataclass
class IngestRuntime:
    settings: Settings
    registry: SourceRegistry
    sources: dict[str, SourceConfig]
    engine: Optional[AsyncEngine] = None
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None
    queue: Optional[IngestQueue] = None

    def runner(self) -> JobRunner:
        return JobRunner(
            self.registry,
            session_factory=self.session_factory,
            http_timeout=self.settings.http_timeout,
        )

    def require_queue(self) -> IngestQueue:
        if self.queue is None:
            raise RuntimeError("Runtime was opened without a queue")
        return self.queue


@asynccontextmanager
async def ingest_runtime(
    cfg: Settings = settings,
    *,
    with_queue: bool = True,
    sources_path: Optional[str] = None,
) -> AsyncIterator[IngestRuntime]:
    """Open the database engine and broker connection, and close them on exit.

    The datastore is optional: without ``DATABASE_URL`` jobs run with
    persistence disabled.
    """
    sources = load_source_config(sources_path)
    registry = initialize_scrapers(default_registry, sources)

    engine = create_engine_from_settings(cfg)
    if engine is None:
        log.warning("database_not_configured")
    runtime = IngestRuntime(
        settings=cfg,
        registry=registry,
        sources=sources,
        engine=engine,
        session_factory=build_session_factory(engine) if engine is not None else None,
        queue=IngestQueue.from_settings(cfg) if with_queue else None,
    )
    try:
        yield runtime
    finally:
        if runtime.queue is not None:
            await runtime.queue.close()
        if engine is not None:
            await engine.dispose()
