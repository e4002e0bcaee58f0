from .base import Base
from .bundle import BillingCycle, BundleRecord, BundleSource
from .bundle_history import BundleHistory
from .ingestion_run import IngestionRun, IngestionStatus

__all__ = [
    "Base",
    "BillingCycle",
    "BundleRecord",
    "BundleSource",
    "BundleHistory",
    "IngestionRun",
    "IngestionStatus",
]
