"""Structured logging setup.

Every module logs through ``structlog.get_logger(__name__)`` with snake_case
event names and keyword fields. ``configure_logging`` is called once by each
entry point (CLI, worker service) before any work starts.
"""

import logging
import sys

import structlog

from bundle_ingest.config import settings


def configure_logging(level: str | None = None, json_logs: bool | None = None) -> None:
    """Configure structlog for the process.

    Args:
        level: Log level name, defaults to ``settings.log_level``.
        json_logs: Render JSON lines instead of the console format,
            defaults to ``settings.log_json``.
    """
    level_name = (level or settings.log_level).upper()
    log_level = logging.getLevelName(level_name)
    if not isinstance(log_level, int):
        log_level = logging.INFO
    use_json = settings.log_json if json_logs is None else json_logs

    renderer = (
        structlog.processors.JSONRenderer()
        if use_json
        else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )
