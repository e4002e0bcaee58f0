"""Job runner: one end-to-end ingestion attempt for one source.

resolve scraper -> start run -> fetch -> normalize -> persist -> complete.
Any exception after the run starts is recorded on the run row and re-raised
so the job queue can apply its retry policy.
"""

import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bundle_ingest.config import settings
from bundle_ingest.metrics import BUNDLES_TOTAL, RUN_DURATION
from bundle_ingest.scrapers.base import ScrapeContext
from bundle_ingest.scrapers.registry import SourceRegistry
from bundle_ingest.services.normalizer import normalize_bundles
from bundle_ingest.services.persistence import persist_bundles
from bundle_ingest.services.run_tracker import RunTracker

log = structlog.get_logger(__name__)


@dataclass
class IngestionJobData:
    source: str
    options: dict[str, Any] = field(default_factory=dict)
    run_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IngestionJobData":
        return cls(
            source=data["source"],
            options=dict(data.get("options") or {}),
            run_id=data.get("run_id") or data.get("runId"),
        )


@dataclass(frozen=True)
class IngestionResult:
    run_id: str
    source: str
    fetched: int
    normalized: int
    failed: int
    persisted: int
    skipped: int
    created: int
    updated: int
    history: int
    deactivated: int

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class JobRunner:
    def __init__(
        self,
        registry: SourceRegistry,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        tracker: Optional[RunTracker] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        http_timeout: Optional[float] = None,
    ):
        self.registry = registry
        self.session_factory = session_factory
        self.tracker = tracker or RunTracker(session_factory)
        self.http_client = http_client
        self.http_timeout = http_timeout or settings.http_timeout

    def _new_http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.http_timeout, connect=min(self.http_timeout, 10.0)),
            headers={"User-Agent": settings.http_user_agent},
            follow_redirects=True,
        )

    async def run(self, job: IngestionJobData) -> IngestionResult:
        # Unknown sources fail fast, before any run row exists
        scraper = self.registry.require(job.source)

        run_id = job.run_id or uuid.uuid4().hex
        with structlog.contextvars.bound_contextvars(run_id=run_id, source=job.source):
            return await self._run(scraper, job, run_id)

    async def _run(self, scraper, job: IngestionJobData, run_id: str) -> IngestionResult:
        await self.tracker.start(run_id, job.source)
        log.info("ingestion_run_started")
        t0 = time.perf_counter()

        fetched = 0
        normalized: list = []
        try:
            if self.http_client is not None:
                raw = await self._fetch(scraper, job, run_id, self.http_client)
            else:
                async with self._new_http_client() as client:
                    raw = await self._fetch(scraper, job, run_id, client)
            fetched = len(raw)
            log.info("bundles_fetched", count=fetched)

            normalized = normalize_bundles(raw, log)
            log.info("bundles_normalized", count=len(normalized))

            persistence = await persist_bundles(
                self.session_factory,
                run_id=run_id,
                source=job.source,
                bundles=normalized,
                bundle_source=job.options.get("bundle_source"),
            )
        except Exception as exc:
            failed = max(0, fetched - len(normalized))
            await self.tracker.fail(run_id, job.source, exc, ingested=len(normalized), failed=failed)
            RUN_DURATION.labels(source=job.source, status="failed").observe(time.perf_counter() - t0)
            log.error("ingestion_run_failed", error=str(exc), error_type=exc.__class__.__name__)
            raise

        failed = max(0, fetched - len(normalized))
        await self.tracker.complete(run_id, job.source, ingested=persistence.upserts, failed=failed)
        BUNDLES_TOTAL.labels(source=job.source, outcome="invalid").inc(failed)
        RUN_DURATION.labels(source=job.source, status="success").observe(time.perf_counter() - t0)

        result = IngestionResult(
            run_id=run_id,
            source=job.source,
            fetched=fetched,
            normalized=len(normalized),
            failed=failed,
            persisted=persistence.upserts,
            skipped=persistence.skipped,
            created=persistence.created,
            updated=persistence.updated,
            history=persistence.history,
            deactivated=persistence.deactivated,
        )
        log.info(
            "ingestion_run_completed",
            fetched=result.fetched,
            normalized=result.normalized,
            failed=result.failed,
            created=result.created,
            updated=result.updated,
            skipped=result.skipped,
            history=result.history,
            deactivated=result.deactivated,
        )
        return result

    async def _fetch(self, scraper, job: IngestionJobData, run_id: str, client: httpx.AsyncClient) -> list:
        context = ScrapeContext(
            run_id=run_id,
            source=job.source,
            logger=log,
            http=client,
            options=dict(job.options),
        )
        return list(await scraper.fetch(context))
