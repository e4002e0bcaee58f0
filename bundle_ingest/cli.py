"""bundle-ingest command line.

Maps argparse subcommands onto the runner, the queue, the scheduler and the
worker service. Every command returns a process exit code; any uncaught
failure is logged as ``cli_failed`` and exits with status 1.
"""

import argparse
import asyncio
import json
import signal
from typing import Callable, Sequence

import structlog
import uvicorn

from bundle_ingest.config import settings
from bundle_ingest.logging_config import configure_logging
from bundle_ingest.runtime import ingest_runtime
from bundle_ingest.scrapers import initialize_scrapers
from bundle_ingest.scrapers.registry import registry
from bundle_ingest.services.source_config import load_source_config
from bundle_ingest.worker.ingest_worker import IngestWorker
from bundle_ingest.worker.runner import IngestionJobData
from bundle_ingest.worker.scheduler import Scheduler

log = structlog.get_logger(__name__)


def parse_option_pairs(pairs: Sequence[str] | None) -> dict[str, str]:
    """Turn ``key=value`` strings into a dict; only the first ``=`` splits."""
    options: dict[str, str] = {}
    for entry in pairs or []:
        key, _, value = entry.partition("=")
        if not key:
            raise ValueError(f"Option must be key=value, got {entry!r}")
        options[key] = value
    return options


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="bundle-ingest", description="SmartBundle ingestion pipeline")
    parser.add_argument("--log-level", help="Override LOG_LEVEL for this command")
    subparsers = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("run", "Run an ingestion job immediately"),
        ("enqueue", "Queue an ingestion job for background processing"),
    ):
        command = subparsers.add_parser(name, help=help_text)
        command.add_argument("source", help="Source key registered in the scraper registry")
        command.add_argument(
            "-o",
            "--option",
            action="append",
            default=[],
            metavar="KEY=VALUE",
            help="Scraper option override, repeatable",
        )

    subparsers.add_parser("list", help="List registered scrapers")

    schedule = subparsers.add_parser("schedule", help="Start the cron scheduler from sources.yml")
    schedule.add_argument("--config", help="Path to the sources configuration YAML file")

    worker = subparsers.add_parser("worker", help="Consume ingestion jobs from the queue")
    worker.add_argument("--concurrency", type=int, default=None, help="Concurrent jobs per process")

    serve = subparsers.add_parser("serve", help="Run the worker service with /health and /metrics")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(level=args.log_level)

    try:
        if args.command == "run":
            return asyncio.run(_run_command(args))
        if args.command == "enqueue":
            return asyncio.run(_enqueue_command(args))
        if args.command == "list":
            return _list_command()
        if args.command == "schedule":
            return asyncio.run(_schedule_command(args))
        if args.command == "worker":
            return asyncio.run(_worker_command(args))
        if args.command == "serve":
            return _serve_command(args)
    except KeyboardInterrupt:
        return 130
    except Exception as exc:
        log.error("cli_failed", command=args.command, error=str(exc), error_type=exc.__class__.__name__)
        return 1
    parser.error(f"Unsupported command: {args.command}")
    return 2


async def _run_command(args: argparse.Namespace) -> int:
    job = IngestionJobData(source=args.source, options=parse_option_pairs(args.option))
    async with ingest_runtime(with_queue=False) as runtime:
        result = await runtime.runner().run(job)
    print(json.dumps(result.as_dict(), indent=2))
    return 0


async def _enqueue_command(args: argparse.Namespace) -> int:
    job = IngestionJobData(source=args.source, options=parse_option_pairs(args.option))
    async with ingest_runtime() as runtime:
        queued = await runtime.require_queue().enqueue(job.to_dict())
    log.info("cli_job_enqueued", job_id=queued.id, source=job.source)
    print(queued.id)
    return 0


def _list_command() -> int:
    names = initialize_scrapers(registry, load_source_config()).list()
    if not names:
        log.warning("no_scrapers_registered")
        return 0
    for name in names:
        print(name)
    return 0


async def _schedule_command(args: argparse.Namespace) -> int:
    async with ingest_runtime(sources_path=args.config) as runtime:
        scheduler = Scheduler(runtime.require_queue(), runtime.sources, registry=runtime.registry)
        if not scheduler.start():
            return 0
        _on_shutdown(lambda: asyncio.ensure_future(scheduler.stop()))
        await scheduler.serve_forever()
    return 0


async def _worker_command(args: argparse.Namespace) -> int:
    async with ingest_runtime() as runtime:
        worker = IngestWorker(
            runtime.require_queue(),
            runtime.runner(),
            concurrency=args.concurrency or settings.worker_concurrency,
            poll_timeout=settings.worker_poll_timeout,
            stall_timeout=settings.worker_stall_timeout,
        )
        _on_shutdown(worker.stop)
        await worker.run_forever()
    return 0


def _serve_command(args: argparse.Namespace) -> int:
    uvicorn.run("bundle_ingest.main:app", host=args.host, port=args.port, log_config=None)
    return 0


def _on_shutdown(callback: Callable[[], object]) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, callback)
        except (NotImplementedError, RuntimeError):
            # Signal handlers are unavailable off the main thread and on Windows
            log.debug("signal_handler_unavailable", signal=sig.name)

