"""Cron scheduler: enqueues one ingestion job per source on its schedule.

Every source gets its own asyncio timer task that sleeps until the next cron
fire time (computed in the source's timezone) and then enqueues a job. An
enqueue failure is logged and the timer keeps going.
"""

import asyncio
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog
from croniter import croniter

from bundle_ingest.scrapers.registry import SourceRegistry
from bundle_ingest.services.source_config import SourceConfig
from bundle_ingest.worker.queue import IngestQueue

log = structlog.get_logger(__name__)


def _zone(config: SourceConfig):
    return ZoneInfo(config.timezone) if config.timezone else timezone.utc


def next_fire_time(config: SourceConfig, now: Optional[datetime] = None) -> datetime:
    """Next time ``config`` should fire, strictly after ``now``."""
    tz = _zone(config)
    base = (now or datetime.now(timezone.utc)).astimezone(tz)
    return croniter(config.cron_expression, base).get_next(datetime)


class Scheduler:
    def __init__(
        self,
        queue: IngestQueue,
        configs: Mapping[str, SourceConfig],
        registry: Optional[SourceRegistry] = None,
    ):
        self.queue = queue
        self.configs = dict(configs)
        self.registry = registry
        self._tasks: dict[str, asyncio.Task] = {}
        self._stopped = asyncio.Event()

    def _schedulable(self, name: str, config: SourceConfig) -> bool:
        if not config.active:
            log.info("source_inactive", source=name)
            return False
        if not config.cron_expression:
            log.warning("source_schedule_missing", source=name)
            return False
        if not croniter.is_valid(config.cron_expression):
            log.warning("source_schedule_invalid", source=name, schedule=config.cron_expression)
            return False
        try:
            _zone(config)
        except (ZoneInfoNotFoundError, ValueError):
            log.warning("source_timezone_invalid", source=name, timezone=config.timezone)
            return False
        if self.registry is not None and name not in self.registry:
            log.warning("source_scraper_missing", source=name)
            return False
        return True

    def start(self) -> list[str]:
        """Start one timer per schedulable source and return their names."""
        scheduled = [name for name, config in self.configs.items() if self._schedulable(name, config)]
        if not scheduled:
            log.warning("scheduler_idle")
            return []

        for name in scheduled:
            config = self.configs[name]
            log.info(
                "source_scheduled",
                source=name,
                schedule=config.cron_expression,
                timezone=config.timezone,
            )
            self._tasks[name] = asyncio.create_task(self._timer(config), name=f"schedule-{name}")
        log.info("scheduler_started", count=len(scheduled))
        return scheduled

    def next_fire_time(self, config: SourceConfig, now: Optional[datetime] = None) -> datetime:
        return next_fire_time(config, now)

    async def trigger(self, config: SourceConfig) -> Optional[str]:
        """Enqueue one job for ``config``; returns the job id, or None on failure."""
        try:
            job = await self.queue.enqueue({"source": config.name, "options": dict(config.options)})
        except Exception as exc:
            log.error("scheduled_enqueue_failed", source=config.name, error=str(exc))
            return None
        log.info("scheduled_job_enqueued", source=config.name, job_id=job.id)
        return job.id

    async def _timer(self, config: SourceConfig) -> None:
        while True:
            now = datetime.now(timezone.utc)
            fire_at = self.next_fire_time(config, now)
            await asyncio.sleep(max(0.0, (fire_at - now).total_seconds()))
            await self.trigger(config)

    @property
    def tasks(self) -> dict[str, asyncio.Task]:
        return dict(self._tasks)

    async def serve_forever(self) -> None:
        await self._stopped.wait()

    async def stop(self) -> None:
        for task in self._tasks.values():
            task.cancel()
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks.clear()
        self._stopped.set()
        log.info("scheduler_stopped")
