import enum
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, Boolean, DateTime, Float, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class BundleSource(str, enum.Enum):
    official = "official"
    carrier = "carrier"
    partner = "partner"
    aggregator = "aggregator"


class BillingCycle(str, enum.Enum):
    mo = "mo"
    yr = "yr"


class BundleRecord(Base):
    """Canonical bundle row, keyed by the scraper-supplied natural id."""

    __tablename__ = "bundles"
    __table_args__ = (
        Index("ix_bundles_source_is_active", "source", "is_active"),
    )

    id: Mapped[str] = mapped_column(String(191), primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    services: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    billing_cycle: Mapped[str] = mapped_column(
        String(2), nullable=False, default=BillingCycle.mo.value
    )
    regions: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    provider: Mapped[str] = mapped_column(Text, nullable=False)
    link: Mapped[str] = mapped_column(Text, nullable=False)
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_verified_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    # Null when neither the bundle nor the job named a recognized source;
    # such rows are never touched by a deactivation sweep.
    source: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    # sha256 of the mutable fields; equal hash means the re-scrape is a no-op
    data_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    raw_payload: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
