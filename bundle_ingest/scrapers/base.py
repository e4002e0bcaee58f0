"""Scraper contract.

A scraper turns one source into a sequence of raw bundle records. It gets an
outbound HTTP client and a bound logger through the context and nothing
else: no datastore handle, no queue. Any exception it raises fails the run.
Returning an empty sequence is a legitimate "nothing found" outcome.
"""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, Union, runtime_checkable

import httpx

from bundle_ingest.schemas.bundle import ScrapedBundle

ScrapedRecord = Union[ScrapedBundle, Mapping[str, Any]]


@dataclass
class ScrapeContext:
    run_id: str
    source: str
    logger: Any
    http: httpx.AsyncClient
    options: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class Scraper(Protocol):
    async def fetch(self, context: ScrapeContext) -> Sequence[ScrapedRecord]:
        """Fetch raw bundle records from the source."""
        ...


def extract_items(payload: Any, items_key: str = "bundles") -> list[Any]:
    """Pull the record list out of a feed document.

    Feeds either return a bare JSON array or wrap it under ``items_key``.
    """
    if isinstance(payload, list):
        return payload
    if isinstance(payload, Mapping):
        items = payload.get(items_key)
        if isinstance(items, list):
            return items
    raise ValueError(f"Feed payload has no list of records under {items_key!r}")


def tag_source(items: list[Any], bundle_source: Any) -> list[Any]:
    """Fill in ``source`` on records that carry none."""
    if not bundle_source:
        return items
    tagged = []
    for item in items:
        if isinstance(item, Mapping) and not item.get("source"):
            item = {**item, "source": bundle_source}
        tagged.append(item)
    return tagged
