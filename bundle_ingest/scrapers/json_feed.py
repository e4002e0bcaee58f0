"""Generic JSON feed scraper.

Options:
    url: feed endpoint (required)
    items_key: key holding the record list when the feed wraps it (default "bundles")
    bundle_source: source label applied to records that carry none
    params / headers: passed through to the GET request
"""

import time
from collections.abc import Sequence

import httpx

from bundle_ingest.errors import ConfigurationError, ScraperError
from bundle_ingest.scrapers.base import ScrapeContext, ScrapedRecord, extract_items, tag_source


class JsonFeedScraper:
    async def fetch(self, context: ScrapeContext) -> Sequence[ScrapedRecord]:
        url = context.options.get("url")
        if not url:
            raise ConfigurationError(f"Source {context.source} has no 'url' option")

        t0 = time.perf_counter()
        try:
            response = await context.http.get(
                str(url),
                params=context.options.get("params"),
                headers=context.options.get("headers"),
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            context.logger.warning(
                "feed_request_failed",
                url=str(url),
                elapsed=round(time.perf_counter() - t0, 3),
                error=repr(exc),
            )
            raise ScraperError(f"Fetching {url} failed: {exc}") from exc

        try:
            payload = response.json()
            items = extract_items(payload, context.options.get("items_key", "bundles"))
        except ValueError as exc:
            raise ScraperError(f"Feed {url} returned an unusable payload: {exc}") from exc

        context.logger.info(
            "feed_fetched",
            url=str(url),
            status=response.status_code,
            count=len(items),
            elapsed=round(time.perf_counter() - t0, 3),
        )
        return tag_source(items, context.options.get("bundle_source"))
