from collections.abc import Mapping
from typing import TYPE_CHECKING, Optional

import structlog

from .base import ScrapeContext, Scraper, ScrapedRecord
from .json_feed import JsonFeedScraper
from .local_file import LocalFileScraper
from .registry import SourceRegistry, registry

if TYPE_CHECKING:
    from bundle_ingest.services.source_config import SourceConfig

log = structlog.get_logger(__name__)

BUILTIN_SCRAPERS = {
    "json-feed": JsonFeedScraper,
    "local-file": LocalFileScraper,
}


def initialize_scrapers(
    target: SourceRegistry = registry,
    configs: Optional[Mapping[str, "SourceConfig"]] = None,
) -> SourceRegistry:
    """Register the built-in scrapers, then bind configured sources to them.

    A source entry with ``scraper: json-feed`` in sources.yml is registered
    under its own key, so the scheduler and runner can address it by name.
    """
    for name, scraper_cls in BUILTIN_SCRAPERS.items():
        target.register(name, scraper_cls())

    for name, config in (configs or {}).items():
        if not config.scraper:
            continue
        scraper_cls = BUILTIN_SCRAPERS.get(config.scraper)
        if scraper_cls is None:
            log.warning("unknown_scraper_type", source=name, scraper=config.scraper)
            continue
        target.register(name, scraper_cls())
    return target


__all__ = [
    "BUILTIN_SCRAPERS",
    "ScrapeContext",
    "Scraper",
    "ScrapedRecord",
    "JsonFeedScraper",
    "LocalFileScraper",
    "SourceRegistry",
    "registry",
    "initialize_scrapers",
]
