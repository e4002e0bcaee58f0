"""Normalization and validation of scraped bundles.

Canonicalizes free-text service names and tags, then validates the result
against the canonical Bundle schema. Records that fail validation are
dropped and logged with field-level reasons; the run carries on with the rest.
"""

from typing import Any, Iterable, Mapping, Optional, Union

import structlog
from pydantic import ValidationError

from bundle_ingest.models.bundle import BundleSource
from bundle_ingest.schemas.bundle import Bundle, ScrapedBundle

log = structlog.get_logger(__name__)

# Keys are lower-cased and trimmed before lookup
SERVICE_ALIASES: dict[str, str] = {
    "disney plus": "Disney+",
    "disney+": "Disney+",
    "spotify": "Spotify",
    "hulu": "Hulu",
    "espn": "ESPN+",
    "espn+": "ESPN+",
    "apple tv": "Apple TV+",
    "apple tv+": "Apple TV+",
}

_KNOWN_SOURCES = {member.value for member in BundleSource}

RawBundle = Union[ScrapedBundle, Mapping[str, Any]]


def canonicalize_service_name(value: str) -> str:
    """Map a service name to its canonical spelling; unknown names are trimmed."""
    trimmed = value.strip()
    return SERVICE_ALIASES.get(trimmed.lower(), trimmed)


def unique_canonical_services(services: Iterable[str]) -> list[str]:
    """Canonicalize and deduplicate, keeping first-seen order."""
    seen: dict[str, None] = {}
    for service in services:
        seen.setdefault(canonicalize_service_name(service), None)
    return list(seen)


def normalize_search_text(value: str) -> str:
    return value.strip().lower()


def _field_errors(exc: ValidationError) -> dict[str, list[str]]:
    errors: dict[str, list[str]] = {}
    for error in exc.errors():
        field = ".".join(str(part) for part in error["loc"]) or "__root__"
        errors.setdefault(field, []).append(error["msg"])
    return errors


def _raw_id(raw: RawBundle) -> Optional[str]:
    if isinstance(raw, ScrapedBundle):
        return raw.id
    if isinstance(raw, Mapping):
        value = raw.get("id")
        return str(value) if value is not None else None
    return None


def normalize_scraped_bundle(raw: RawBundle, logger: Any = None) -> Optional[Bundle]:
    """Canonicalize and validate one scraped record.

    Returns:
        The canonical Bundle, or None when the record was dropped.
    """
    logger = logger or log
    try:
        scraped = raw if isinstance(raw, ScrapedBundle) else ScrapedBundle.model_validate(raw)
    except ValidationError as exc:
        logger.warning("bundle_dropped", bundle_id=_raw_id(raw), errors=_field_errors(exc))
        return None

    candidate = scraped.model_dump(exclude_none=True)
    candidate["services"] = unique_canonical_services(scraped.services)
    candidate["tags"] = [normalize_search_text(tag) for tag in scraped.tags]

    if scraped.summary is not None and not scraped.summary.strip():
        candidate.pop("summary", None)

    # Unknown source labels are left for persistence to resolve from the job
    if scraped.source is not None and scraped.source not in _KNOWN_SOURCES:
        logger.debug("bundle_source_untagged", bundle_id=scraped.id, source=scraped.source)
        candidate.pop("source", None)

    try:
        return Bundle.model_validate(candidate)
    except ValidationError as exc:
        logger.warning("bundle_dropped", bundle_id=scraped.id, errors=_field_errors(exc))
        return None


def normalize_bundles(raws: Iterable[RawBundle], logger: Any = None) -> list[Bundle]:
    """Normalize a batch, returning only the records that validated, in input order."""
    bundles = []
    for raw in raws:
        bundle = normalize_scraped_bundle(raw, logger)
        if bundle is not None:
            bundles.append(bundle)
    return bundles
