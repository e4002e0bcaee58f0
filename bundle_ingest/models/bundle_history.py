"""Bundle price history model.

Append-only: one row when a bundle is first created and one per later run
that changes its price, currency or billing cycle. Never updated or deleted.
"""

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class BundleHistory(Base):
    __tablename__ = "bundle_history"
    __table_args__ = (
        Index("ix_bundle_history_bundle_captured", "bundle_id", "captured_at"),
    )

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    bundle_id: Mapped[str] = mapped_column(
        String(191), ForeignKey("bundles.id"), nullable=False
    )
    captured_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    billing_cycle: Mapped[str] = mapped_column(String(2), nullable=False)
