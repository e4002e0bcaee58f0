"""Prometheus metrics for the ingestion pipeline, served at GET /metrics."""

from fastapi import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

JOBS_COMPLETED = Counter(
    "ingest_jobs_completed_total",
    "Ingestion jobs that finished successfully",
    ["queue"],
)

JOBS_FAILED = Counter(
    "ingest_jobs_failed_total",
    "Ingestion job attempts that raised; terminal=true once retries are exhausted",
    ["queue", "terminal"],
)

BUNDLES_TOTAL = Counter(
    "ingest_bundles_total",
    "Bundles processed by outcome",
    ["source", "outcome"],
)

RUN_DURATION = Histogram(
    "ingest_run_duration_seconds",
    "Wall time of one fetch/normalize/persist run",
    ["source", "status"],
)


async def metrics_endpoint() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
