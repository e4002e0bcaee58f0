"""Tests for sources.yml loading."""

import pytest

from bundle_ingest.config import settings
from bundle_ingest.errors import SourceConfigError
from bundle_ingest.services.source_config import load_source_config, parse_source_config

SOURCES_YAML = """
sources:
  streaming-aggregator:
    schedule: "0 */6 * * *"
    timezone: America/New_York
    scraper: json-feed
    options:
      url: https://feeds.example.com/bundles.json
  paused:
    cron: "15 * * * *"
    active: false
  broken: "not a mapping"
"""


@pytest.fixture(autouse=True)
def isolated_cwd(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(settings, "sources_config", None)


def test_explicit_path_is_loaded(tmp_path):
    path = tmp_path / "custom.yml"
    path.write_text(SOURCES_YAML, encoding="utf-8")

    configs = load_source_config(path)

    assert sorted(configs) == ["paused", "streaming-aggregator"]
    aggregator = configs["streaming-aggregator"]
    assert aggregator.name == "streaming-aggregator"
    assert aggregator.cron_expression == "0 */6 * * *"
    assert aggregator.timezone == "America/New_York"
    assert aggregator.scraper == "json-feed"
    assert aggregator.options == {"url": "https://feeds.example.com/bundles.json"}
    assert configs["paused"].cron_expression == "15 * * * *"
    assert configs["paused"].active is False


def test_settings_override_is_used(tmp_path, monkeypatch):
    path = tmp_path / "from-env.yml"
    path.write_text("solo:\n  schedule: '* * * * *'\n", encoding="utf-8")
    monkeypatch.setattr(settings, "sources_config", str(path))

    assert list(load_source_config()) == ["solo"]


def test_default_search_path_in_working_directory(tmp_path):
    (tmp_path / "config").mkdir()
    (tmp_path / "config" / "sources.yml").write_text(SOURCES_YAML, encoding="utf-8")

    assert "streaming-aggregator" in load_source_config()


def test_nested_service_path_is_searched(tmp_path):
    nested = tmp_path / "services" / "ingest" / "config"
    nested.mkdir(parents=True)
    (nested / "sources.yml").write_text(SOURCES_YAML, encoding="utf-8")

    assert "paused" in load_source_config()


def test_missing_file_yields_empty_config():
    assert load_source_config() == {}


def test_unparseable_yaml_raises(tmp_path):
    path = tmp_path / "bad.yml"
    path.write_text("sources: [unclosed", encoding="utf-8")

    with pytest.raises(SourceConfigError):
        load_source_config(path)


def test_non_mapping_document_yields_empty_config():
    assert parse_source_config(["a", "b"]) == {}
    assert parse_source_config(None) == {}
