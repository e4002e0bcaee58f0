import asyncio
import json
from collections.abc import Sequence
from pathlib import Path

from bundle_ingest.errors import ConfigurationError, ScraperError
from bundle_ingest.scrapers.base import ScrapeContext, ScrapedRecord, extract_items, tag_source


class LocalFileScraper:
    """Reads bundle records from a JSON file on disk (seed and mock data).

    Accepts the same document shapes and options as the JSON feed scraper,
    with ``path`` in place of ``url``.
    """

    async def fetch(self, context: ScrapeContext) -> Sequence[ScrapedRecord]:
        raw_path = context.options.get("path")
        if not raw_path:
            raise ConfigurationError(f"Source {context.source} has no 'path' option")

        path = Path(str(raw_path)).expanduser()
        try:
            contents = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except FileNotFoundError as exc:
            raise ConfigurationError(f"Bundle file {path} does not exist") from exc

        try:
            items = extract_items(json.loads(contents), context.options.get("items_key", "bundles"))
        except ValueError as exc:
            raise ScraperError(f"Bundle file {path} is not a usable feed: {exc}") from exc

        context.logger.info("bundle_file_read", path=str(path), count=len(items))
        return tag_source(items, context.options.get("bundle_source"))
