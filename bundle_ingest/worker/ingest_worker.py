"""Queue consumer: runs ingestion jobs pulled from the broker.

Each consume loop blocks on the wait list for up to ``poll_timeout`` seconds,
so an idle worker costs one Redis round trip per poll.
"""

import asyncio
from typing import Any

import structlog

from bundle_ingest.worker.queue import IngestQueue, QueuedJob
from bundle_ingest.worker.runner import IngestionJobData, JobRunner

log = structlog.get_logger(__name__)

ERROR_BACKOFF_SECONDS = 5


class IngestWorker:
    def __init__(
        self,
        queue: IngestQueue,
        runner: JobRunner,
        concurrency: int = 2,
        poll_timeout: float = 5.0,
        stall_timeout: float = 900.0,
    ):
        self.queue = queue
        self.runner = runner
        self.concurrency = max(1, concurrency)
        self.poll_timeout = poll_timeout
        self.stall_timeout = stall_timeout
        self._stopping = asyncio.Event()

    async def handle(self, job: QueuedJob) -> dict[str, Any]:
        data = IngestionJobData.from_dict(job.data)
        with structlog.contextvars.bound_contextvars(job_id=job.id):
            result = await self.runner.run(data)
        return result.as_dict()

    async def run_forever(self) -> None:
        """Run ``concurrency`` consume loops until stop() is called."""
        requeued = await self.queue.requeue_stalled(self.stall_timeout)
        log.info(
            "ingest_worker_started",
            queue=self.queue.name,
            concurrency=self.concurrency,
            requeued_stalled=requeued,
        )
        loops = [
            asyncio.create_task(self._consume_loop(index), name=f"ingest-consumer-{index}")
            for index in range(self.concurrency)
        ]
        try:
            await asyncio.gather(*loops)
        finally:
            for task in loops:
                task.cancel()
            await asyncio.gather(*loops, return_exceptions=True)
            log.info("ingest_worker_stopped", queue=self.queue.name)

    async def _consume_loop(self, index: int) -> None:
        while not self._stopping.is_set():
            try:
                processed = await self.queue.process_next(self.handle, timeout=self.poll_timeout)
                if not processed:
                    # Idle: reclaim jobs orphaned by a dead worker
                    await self.queue.requeue_stalled(self.stall_timeout)
            except Exception as exc:
                log.error("ingest_worker_error", consumer=index, error=str(exc))
                await self._sleep(ERROR_BACKOFF_SECONDS)

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def stop(self) -> None:
        self._stopping.set()

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

