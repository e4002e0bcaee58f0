"""Ingestion exception hierarchy.

``retryable`` tells the job queue whether a failed attempt should be retried
with backoff or failed terminally on the spot.
"""


class IngestError(Exception):
    """Base exception for ingestion pipeline failures."""

    retryable = True


class ConfigurationError(IngestError):
    """Raised for misconfigured sources; retrying cannot fix these."""

    retryable = False


class ScraperNotFoundError(ConfigurationError):
    """Raised when a job names a source with no registered scraper."""

    def __init__(self, source: str):
        super().__init__(f"No scraper registered for source {source}")
        self.source = source


class SourceConfigError(ConfigurationError):
    """Raised when the sources configuration file cannot be parsed."""


class ScraperError(IngestError):
    """Raised by scrapers for transient fetch failures."""
