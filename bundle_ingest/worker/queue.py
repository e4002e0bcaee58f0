"""Durable ingestion job queue on Redis.

At-least-once delivery with per-job retry policy. Key layout under the
queue name:

    <name>:wait        list of job ids ready to run (LPUSH in, BLMOVE out)
    <name>:active      list of job ids claimed by a worker
    <name>:delayed     zset of job ids waiting out a retry backoff (score = ready ms)
    <name>:completed   list of finished job ids, capped by remove_on_complete
    <name>:failed      list of terminally failed job ids, capped by remove_on_fail
    <name>:job:<id>    hash with the job payload and bookkeeping
    <name>:id          job id counter

Moves between lists use single atomic commands (LMOVE, LREM, ZREM) whose
return value decides which worker owns a job, so any number of workers can
share one queue.
"""

import json
import time
from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any, Awaitable, Callable, Mapping, Optional

import redis.asyncio as aioredis
import structlog

from bundle_ingest.broker import create_redis
from bundle_ingest.config import Settings, settings
from bundle_ingest.metrics import JOBS_COMPLETED, JOBS_FAILED

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class JobOptions:
    attempts: int = 3
    backoff_type: str = "exponential"
    backoff_delay: float = 1.0
    remove_on_complete: Optional[int] = 200
    remove_on_fail: Optional[int] = 500

    def backoff_for(self, attempts_made: int) -> float:
        """Seconds to wait before the next attempt, given attempts so far."""
        if self.backoff_type == "fixed":
            return self.backoff_delay
        return self.backoff_delay * (2 ** max(attempts_made - 1, 0))

    def merged(self, overrides: Optional[Mapping[str, Any]]) -> "JobOptions":
        if not overrides:
            return self
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ValueError(f"Unknown job options: {sorted(unknown)}")
        return replace(self, **overrides)


DEFAULT_JOB_OPTIONS = JobOptions()


@dataclass
class QueuedJob:
    id: str
    name: str
    data: dict[str, Any]
    options: JobOptions = field(default_factory=JobOptions)
    attempts_made: int = 0
    failed_reason: Optional[str] = None
    timestamp: int = 0

    @classmethod
    def from_hash(cls, job_id: str, raw: Mapping[str, str]) -> "QueuedJob":
        return cls(
            id=job_id,
            name=raw.get("name", "ingest"),
            data=json.loads(raw.get("data") or "{}"),
            options=JobOptions(**json.loads(raw.get("opts") or "{}")),
            attempts_made=int(raw.get("attempts_made") or 0),
            failed_reason=raw.get("failed_reason") or None,
            timestamp=int(raw.get("timestamp") or 0),
        )


JobHandler = Callable[[QueuedJob], Awaitable[Any]]


class IngestQueue:
    def __init__(
        self,
        redis: aioredis.Redis,
        name: str = "smartbundle:ingest",
        clock: Callable[[], float] = time.time,
    ):
        self.redis = redis
        self.name = name
        self._clock = clock

    @classmethod
    def from_settings(cls, cfg: Settings = settings) -> "IngestQueue":
        return cls(create_redis(cfg), name=cfg.ingest_queue_name)

    async def close(self) -> None:
        await self.redis.aclose()

    async def ping(self) -> bool:
        return bool(await self.redis.ping())

    def _key(self, suffix: str) -> str:
        return f"{self.name}:{suffix}"

    def _job_key(self, job_id: str) -> str:
        return self._key(f"job:{job_id}")

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def enqueue(
        self,
        data: Mapping[str, Any],
        options: Optional[Mapping[str, Any]] = None,
        name: str = "ingest",
    ) -> QueuedJob:
        """Add a job; caller options override the defaults field by field."""
        opts = DEFAULT_JOB_OPTIONS.merged(options)
        job_id = str(await self.redis.incr(self._key("id")))
        job = QueuedJob(id=job_id, name=name, data=dict(data), options=opts, timestamp=self._now_ms())

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(
                self._job_key(job_id),
                mapping={
                    "name": name,
                    "data": json.dumps(job.data),
                    "opts": json.dumps(asdict(opts)),
                    "attempts_made": 0,
                    "timestamp": job.timestamp,
                    "state": "waiting",
                },
            )
            pipe.lpush(self._key("wait"), job_id)
            await pipe.execute()

        log.info("ingest_job_enqueued", job_id=job_id, queue=self.name, source=job.data.get("source"))
        return job

    async def get_job(self, job_id: str) -> Optional[QueuedJob]:
        raw = await self.redis.hgetall(self._job_key(job_id))
        if not raw:
            return None
        return QueuedJob.from_hash(job_id, raw)

    async def get_state(self, job_id: str) -> Optional[str]:
        return await self.redis.hget(self._job_key(job_id), "state")

    async def claim(self, timeout: float = 0) -> Optional[QueuedJob]:
        """Move the oldest waiting job to active and return it.

        Blocks up to ``timeout`` seconds when positive; returns None if the
        queue stayed empty.
        """
        if timeout > 0:
            job_id = await self.redis.blmove(
                self._key("wait"), self._key("active"), timeout, src="RIGHT", dest="LEFT"
            )
        else:
            job_id = await self.redis.lmove(
                self._key("wait"), self._key("active"), src="RIGHT", dest="LEFT"
            )
        if job_id is None:
            return None

        job = await self.get_job(job_id)
        if job is None:
            # Hash was trimmed away underneath us; drop the orphan id
            await self.redis.lrem(self._key("active"), 1, job_id)
            return None
        await self.redis.hset(
            self._job_key(job_id), mapping={"state": "active", "claimed_at": self._now_ms()}
        )
        return job

    async def complete(self, job: QueuedJob, result: Any = None) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self._key("active"), 1, job.id)
            pipe.hset(
                self._job_key(job.id),
                mapping={
                    "state": "completed",
                    "finished_on": self._now_ms(),
                    "result": json.dumps(result, default=str),
                },
            )
            pipe.lpush(self._key("completed"), job.id)
            await pipe.execute()
        await self._trim(self._key("completed"), job.options.remove_on_complete)

        JOBS_COMPLETED.labels(queue=self.name).inc()
        log.info("ingest_job_completed", job_id=job.id, queue=self.name, source=job.data.get("source"))

    async def fail(self, job: QueuedJob, error: BaseException) -> str:
        """Record a failed attempt and schedule a retry or fail terminally.

        Returns:
            "delayed" if the job will be retried, "failed" if it is terminal.
        """
        job.attempts_made += 1
        job.failed_reason = str(error) or error.__class__.__name__
        retryable = getattr(error, "retryable", True)
        terminal = not retryable or job.attempts_made >= job.options.attempts

        if terminal:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.lrem(self._key("active"), 1, job.id)
                pipe.hset(
                    self._job_key(job.id),
                    mapping={
                        "state": "failed",
                        "attempts_made": job.attempts_made,
                        "failed_reason": job.failed_reason,
                        "finished_on": self._now_ms(),
                    },
                )
                pipe.lpush(self._key("failed"), job.id)
                await pipe.execute()
            await self._trim(self._key("failed"), job.options.remove_on_fail)

            JOBS_FAILED.labels(queue=self.name, terminal="true").inc()
            log.error(
                "ingest_job_failed",
                job_id=job.id,
                queue=self.name,
                source=job.data.get("source"),
                attempts_made=job.attempts_made,
                retryable=retryable,
                failed_reason=job.failed_reason,
            )
            return "failed"

        delay = job.options.backoff_for(job.attempts_made)
        ready_at = self._now_ms() + int(delay * 1000)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self._key("active"), 1, job.id)
            pipe.hset(
                self._job_key(job.id),
                mapping={
                    "state": "delayed",
                    "attempts_made": job.attempts_made,
                    "failed_reason": job.failed_reason,
                },
            )
            pipe.zadd(self._key("delayed"), {job.id: ready_at})
            await pipe.execute()

        JOBS_FAILED.labels(queue=self.name, terminal="false").inc()
        log.warning(
            "ingest_job_retry_scheduled",
            job_id=job.id,
            queue=self.name,
            source=job.data.get("source"),
            attempts_made=job.attempts_made,
            delay_seconds=delay,
            failed_reason=job.failed_reason,
        )
        return "delayed"

    async def promote_delayed(self) -> int:
        """Move delayed jobs whose backoff has elapsed back to the wait list."""
        due = await self.redis.zrangebyscore(self._key("delayed"), 0, self._now_ms())
        promoted = 0
        for job_id in due:
            # ZREM returns 0 if another worker promoted it first
            if await self.redis.zrem(self._key("delayed"), job_id):
                await self.redis.hset(self._job_key(job_id), "state", "waiting")
                await self.redis.lpush(self._key("wait"), job_id)
                promoted += 1
        return promoted

    async def requeue_stalled(self, stall_timeout: float) -> int:
        """Return jobs stuck in active (crashed worker) to the wait list.

        A claim moves the id before stamping ``claimed_at``. An unstamped id is
        stamped here instead and gets a full stall window before it is eligible.
        """
        now = self._now_ms()
        cutoff = now - int(stall_timeout * 1000)
        requeued = 0
        for job_id in await self.redis.lrange(self._key("active"), 0, -1):
            if not await self.redis.exists(self._job_key(job_id)):
                await self.redis.lrem(self._key("active"), 1, job_id)
                continue
            if await self.redis.hsetnx(self._job_key(job_id), "claimed_at", now):
                continue
            claimed_at = await self.redis.hget(self._job_key(job_id), "claimed_at")
            if int(claimed_at) > cutoff:
                continue
            if await self.redis.lrem(self._key("active"), 1, job_id):
                await self.redis.hset(self._job_key(job_id), "state", "waiting")
                await self.redis.lpush(self._key("wait"), job_id)
                log.warning("ingest_job_stalled", job_id=job_id, queue=self.name)
                requeued += 1
        return requeued

    async def process_next(self, handler: JobHandler, timeout: float = 0) -> bool:
        """Claim one job and run ``handler`` on it.

        Returns:
            True if a job was processed (successfully or not), False if the
            queue was empty.
        """
        await self.promote_delayed()
        job = await self.claim(timeout)
        if job is None:
            return False

        try:
            result = await handler(job)
        except Exception as exc:
            await self.fail(job, exc)
        else:
            await self.complete(job, result)
        return True

    async def counts(self) -> dict[str, int]:
        return {
            "waiting": await self.redis.llen(self._key("wait")),
            "active": await self.redis.llen(self._key("active")),
            "delayed": await self.redis.zcard(self._key("delayed")),
            "completed": await self.redis.llen(self._key("completed")),
            "failed": await self.redis.llen(self._key("failed")),
        }

    async def _trim(self, list_key: str, keep: Optional[int]) -> None:
        if keep is None or keep < 0:
            return
        evicted = await self.redis.lrange(list_key, keep, -1)
        if not evicted:
            return
        if keep == 0:
            await self.redis.delete(list_key)
        else:
            await self.redis.ltrim(list_key, 0, keep - 1)
        await self.redis.delete(*(self._job_key(job_id) for job_id in evicted))
