import asyncio
from contextlib import AsyncExitStack, asynccontextmanager

import structlog
from fastapi import FastAPI, Response
from sqlalchemy import text

from bundle_ingest.config import settings
from bundle_ingest.logging_config import configure_logging
from bundle_ingest.metrics import metrics_endpoint
from bundle_ingest.runtime import ingest_runtime
from bundle_ingest.worker.ingest_worker import IngestWorker
from bundle_ingest.worker.scheduler import Scheduler

log = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Configure structured logging before anything else
    configure_logging()

    async with AsyncExitStack() as stack:
        runtime = await stack.enter_async_context(ingest_runtime(settings))
        queue = runtime.require_queue()

        app.state.redis = queue.redis
        app.state.session_factory = runtime.session_factory

        worker = IngestWorker(
            queue,
            runtime.runner(),
            concurrency=settings.worker_concurrency,
            poll_timeout=settings.worker_poll_timeout,
            stall_timeout=settings.worker_stall_timeout,
        )
        app.state.worker_task = asyncio.create_task(worker.run_forever())

        scheduler = None
        app.state.scheduler_task = None
        if settings.scheduler_enabled:
            scheduler = Scheduler(queue, runtime.sources, registry=runtime.registry)
            scheduler.start()
            app.state.scheduler_task = asyncio.create_task(scheduler.serve_forever())

        try:
            yield
        finally:
            worker.stop()
            if scheduler is not None:
                await scheduler.stop()
            app.state.worker_task.cancel()
            await asyncio.gather(app.state.worker_task, return_exceptions=True)


app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)

# Prometheus metrics endpoint
app.get("/metrics")(metrics_endpoint)


def _task_check(task) -> dict:
    if task is None:
        return {"status": "unhealthy", "error": "Task not initialized"}
    if task.done() or task.cancelled():
        return {"status": "unhealthy", "error": "Task stopped"}
    return {"status": "healthy"}


@app.get("/health")
async def health_check(response: Response):
    """Health of the worker service and its dependencies.

    Returns 200 if all components are healthy, 503 if any component is unhealthy.

    Checks:
    - PostgreSQL connectivity ("disabled" when DATABASE_URL is unset)
    - Redis connectivity
    - Queue consumer task
    - Scheduler task (only when SCHEDULER_ENABLED)
    """
    checks = {}
    overall_healthy = True

    session_factory = getattr(app.state, "session_factory", None)
    if session_factory is None:
        checks["database"] = {"status": "disabled"}
    else:
        try:
            async with session_factory() as db:
                await db.execute(text("SELECT 1"))
            checks["database"] = {"status": "healthy"}
        except Exception as e:
            checks["database"] = {"status": "unhealthy", "error": str(e)}
            overall_healthy = False

    try:
        await app.state.redis.ping()
        checks["redis"] = {"status": "healthy"}
    except Exception as e:
        checks["redis"] = {"status": "unhealthy", "error": str(e)}
        overall_healthy = False

    checks["worker"] = _task_check(getattr(app.state, "worker_task", None))
    if checks["worker"]["status"] != "healthy":
        overall_healthy = False

    if settings.scheduler_enabled:
        checks["scheduler"] = _task_check(getattr(app.state, "scheduler_task", None))
        if checks["scheduler"]["status"] != "healthy":
            overall_healthy = False

    response.status_code = 200 if overall_healthy else 503
    return {"status": "healthy" if overall_healthy else "unhealthy", "checks": checks}
