"""Per-source schedule configuration (config/sources.yml).

The file maps a source key to its cron schedule and scraper options, either
at the top level or under a ``sources:`` key::

    sources:
      streaming-aggregator:
        schedule: "0 */6 * * *"
        timezone: America/New_York
        scraper: json-feed
        options:
          url: https://feeds.example.com/bundles.json
          bundle_source: aggregator
"""

from collections.abc import Mapping
from pathlib import Path
from typing import Any, Optional

import structlog
import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from bundle_ingest.config import settings
from bundle_ingest.errors import SourceConfigError

log = structlog.get_logger(__name__)

DEFAULT_SEARCH_PATHS = (
    Path("config") / "sources.yml",
    Path("services") / "ingest" / "config" / "sources.yml",
)


class SourceConfig(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    name: str
    cron_expression: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("schedule", "cron_expression", "cron")
    )
    timezone: Optional[str] = None
    active: bool = True
    scraper: Optional[str] = None
    options: dict[str, Any] = Field(default_factory=dict)


def candidate_paths(path: Optional[str | Path] = None) -> list[Path]:
    override = path or settings.sources_config
    paths = [Path(override).expanduser().resolve()] if override else []
    paths.extend(Path.cwd() / candidate for candidate in DEFAULT_SEARCH_PATHS)
    return paths


def parse_source_config(document: Any) -> dict[str, SourceConfig]:
    """Build SourceConfig entries from a parsed YAML document.

    Entries that are not mappings or fail validation are skipped with a
    warning so one bad source cannot take down the others.
    """
    if not isinstance(document, Mapping):
        return {}

    entries = document.get("sources") if isinstance(document.get("sources"), Mapping) else document

    configs: dict[str, SourceConfig] = {}
    for name, raw in entries.items():
        if not isinstance(raw, Mapping):
            log.warning("source_config_invalid", name=name, reason="entry is not a mapping")
            continue
        try:
            configs[str(name)] = SourceConfig.model_validate({**raw, "name": str(name)})
        except ValidationError as exc:
            log.warning("source_config_invalid", name=name, reason=str(exc))
    return configs


def load_source_config(path: Optional[str | Path] = None) -> dict[str, SourceConfig]:
    """Load the first sources file found; an absent file means no sources."""
    for candidate in candidate_paths(path):
        try:
            contents = candidate.read_text(encoding="utf-8")
        except FileNotFoundError:
            continue
        try:
            document = yaml.safe_load(contents)
        except yaml.YAMLError as exc:
            raise SourceConfigError(f"Could not parse {candidate}: {exc}") from exc
        configs = parse_source_config(document)
        log.info("source_config_loaded", path=str(candidate), sources=len(configs))
        return configs

    log.warning("source_config_missing", searched=[str(p) for p in candidate_paths(path)])
    return {}
