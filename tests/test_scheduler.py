"""Tests for the cron scheduler."""

import asyncio
from datetime import datetime, timezone

import pytest
from structlog.testing import capture_logs

from bundle_ingest.scrapers import SourceRegistry
from bundle_ingest.services.source_config import SourceConfig
from bundle_ingest.worker.scheduler import Scheduler, next_fire_time


class NullScraper:
    async def fetch(self, context):
        return []


class FlakyQueue:
    """Records enqueues; raises for the sources named in ``fail_for``."""

    def __init__(self, fail_for=()):
        self.fail_for = set(fail_for)
        self.enqueued = []

    async def enqueue(self, data, options=None, name="ingest"):
        if data["source"] in self.fail_for:
            raise ConnectionError("broker unavailable")
        self.enqueued.append(data)

        class Job:
            id = str(len(self.enqueued))

        return Job()


def config(name, **values):
    return SourceConfig.model_validate({"name": name, **values})


def test_next_fire_time_respects_timezone():
    cfg = config("nightly", schedule="0 3 * * *", timezone="America/New_York")
    now = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    fire = next_fire_time(cfg, now)

    assert fire.astimezone(timezone.utc) == datetime(2026, 1, 16, 8, 0, tzinfo=timezone.utc)


def test_next_fire_time_defaults_to_utc():
    cfg = config("hourly", schedule="15 * * * *")
    now = datetime(2026, 1, 15, 12, 20, tzinfo=timezone.utc)

    assert next_fire_time(cfg, now) == datetime(2026, 1, 15, 13, 15, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_start_filters_unschedulable_sources():
    registry = SourceRegistry()
    for name in ("good", "inactive", "no-cron", "bad-cron", "bad-tz"):
        registry.register(name, NullScraper())
    configs = {
        "good": config("good", schedule="*/5 * * * *"),
        "inactive": config("inactive", schedule="*/5 * * * *", active=False),
        "no-cron": config("no-cron"),
        "bad-cron": config("bad-cron", schedule="every tuesday"),
        "bad-tz": config("bad-tz", schedule="*/5 * * * *", timezone="Mars/Olympus"),
        "unregistered": config("unregistered", schedule="*/5 * * * *"),
    }
    scheduler = Scheduler(FlakyQueue(), configs, registry=registry)

    with capture_logs() as logs:
        scheduled = scheduler.start()
    await scheduler.stop()

    assert scheduled == ["good"]
    events = {entry["event"] for entry in logs}
    assert {
        "source_inactive",
        "source_schedule_missing",
        "source_schedule_invalid",
        "source_timezone_invalid",
        "source_scraper_missing",
        "scheduler_started",
    } <= events


@pytest.mark.asyncio
async def test_start_with_nothing_to_schedule_is_idle():
    scheduler = Scheduler(FlakyQueue(), {"off": config("off", schedule="* * * * *", active=False)})

    with capture_logs() as logs:
        assert scheduler.start() == []

    assert logs[-1]["event"] == "scheduler_idle"
    assert scheduler.tasks == {}


@pytest.mark.asyncio
async def test_trigger_enqueues_source_and_options():
    queue = FlakyQueue()
    scheduler = Scheduler(queue, {})

    job_id = await scheduler.trigger(config("feed", schedule="* * * * *", options={"url": "https://x"}))

    assert job_id == "1"
    assert queue.enqueued == [{"source": "feed", "options": {"url": "https://x"}}]


@pytest.mark.asyncio
async def test_enqueue_failure_is_logged_and_other_sources_continue():
    queue = FlakyQueue(fail_for={"broken"})
    scheduler = Scheduler(queue, {})

    with capture_logs() as logs:
        assert await scheduler.trigger(config("broken", schedule="* * * * *")) is None
        assert await scheduler.trigger(config("healthy", schedule="* * * * *")) == "1"

    assert [entry["event"] for entry in logs] == ["scheduled_enqueue_failed", "scheduled_job_enqueued"]
    assert queue.enqueued == [{"source": "healthy", "options": {}}]


@pytest.mark.asyncio
async def test_timer_fires_on_schedule(monkeypatch):
    queue = FlakyQueue()
    scheduler = Scheduler(queue, {"fast": config("fast", schedule="* * * * *")})
    fired = asyncio.Event()

    def immediate(cfg, now=None):
        return now or datetime.now(timezone.utc)

    monkeypatch.setattr(scheduler, "next_fire_time", immediate)
    original_trigger = scheduler.trigger

    async def trigger_once(cfg):
        result = await original_trigger(cfg)
        fired.set()
        return result

    monkeypatch.setattr(scheduler, "trigger", trigger_once)

    scheduler.start()
    await asyncio.wait_for(fired.wait(), timeout=5)
    await scheduler.stop()

    assert queue.enqueued[0]["source"] == "fast"
    assert scheduler.tasks == {}


@pytest.mark.asyncio
async def test_serve_forever_returns_after_stop():
    scheduler = Scheduler(FlakyQueue(), {"a": config("a", schedule="0 0 1 1 *")})
    scheduler.start()

    serving = asyncio.create_task(scheduler.serve_forever())
    await asyncio.sleep(0)
    assert not serving.done()

    await scheduler.stop()
    await asyncio.wait_for(serving, timeout=5)
