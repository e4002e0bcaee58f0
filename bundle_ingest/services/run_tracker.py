"""Best-effort ingestion run tracking.

Run rows are observability, not correctness: every write here is wrapped so
that a datastore failure is logged and discarded. Tracking can neither fail
a successful run nor mask the real error of a failed one.
"""

from datetime import datetime, timezone
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bundle_ingest.models.ingestion_run import IngestionRun, IngestionStatus

log = structlog.get_logger(__name__)


class RunTracker:
    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]]):
        self.session_factory = session_factory

    async def start(self, run_id: str, source: str) -> None:
        """Upsert the run row to running with reset counters."""
        await self._write(
            "start",
            run_id,
            source,
            status=IngestionStatus.running.value,
            started_at=datetime.now(timezone.utc),
            finished_at=None,
            error_message=None,
            bundles_ingested=0,
            bundles_failed=0,
        )

    async def complete(self, run_id: str, source: str, ingested: int, failed: int) -> None:
        await self._write(
            "complete",
            run_id,
            source,
            status=IngestionStatus.success.value,
            finished_at=datetime.now(timezone.utc),
            error_message=None,
            bundles_ingested=ingested,
            bundles_failed=failed,
        )

    async def fail(
        self,
        run_id: str,
        source: str,
        error: BaseException | str,
        ingested: int,
        failed: int,
    ) -> None:
        message = str(error) or error.__class__.__name__
        await self._write(
            "fail",
            run_id,
            source,
            status=IngestionStatus.failed.value,
            finished_at=datetime.now(timezone.utc),
            error_message=message,
            bundles_ingested=ingested,
            bundles_failed=failed,
        )

    async def _write(self, action: str, run_id: str, source: str, **values) -> None:
        if self.session_factory is None:
            return
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    run = await session.get(IngestionRun, run_id)
                    if run is None:
                        run = IngestionRun(id=run_id, source=source)
                        session.add(run)
                    run.source = source
                    for key, value in values.items():
                        setattr(run, key, value)
        except Exception as exc:
            log.error(
                "ingestion_run_tracking_failed",
                action=action,
                run_id=run_id,
                source=source,
                error=str(exc),
            )
