"""Source registry: maps a source key to its scraper.

Registration is last-write-wins; replacing an existing key only logs a
warning. A missing key is a configuration error, never retried.
"""

from typing import Optional

import structlog

from bundle_ingest.errors import ScraperNotFoundError
from bundle_ingest.scrapers.base import Scraper

log = structlog.get_logger(__name__)


class SourceRegistry:
    def __init__(self) -> None:
        self._scrapers: dict[str, Scraper] = {}

    def register(self, name: str, scraper: Scraper) -> None:
        if name in self._scrapers:
            log.warning("scraper_replaced", name=name)
        self._scrapers[name] = scraper

    def get(self, name: str) -> Optional[Scraper]:
        scraper = self._scrapers.get(name)
        if scraper is None:
            log.error("scraper_not_registered", name=name)
        return scraper

    def require(self, name: str) -> Scraper:
        """Like ``get`` but raises ScraperNotFoundError for unknown sources."""
        scraper = self.get(name)
        if scraper is None:
            raise ScraperNotFoundError(name)
        return scraper

    def list(self) -> list[str]:
        return sorted(self._scrapers)

    def __contains__(self, name: object) -> bool:
        return name in self._scrapers


# Process-wide registry populated by initialize_scrapers()
registry = SourceRegistry()
