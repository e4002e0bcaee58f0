"""Transactional bundle persistence.

Merges one run's canonical bundles into the bundle store:
1. Insert unseen bundles, with an initial price-history row
2. Skip bundles whose content hash is unchanged (the common re-scrape path)
3. Update changed bundles; append history only for price/currency/cycle moves
4. Deactivate the source's active bundles that this run did not see

All four steps share one transaction. Any failure rolls the whole run back,
so a partially applied run is never observable.
"""

import hashlib
import json
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

import structlog
from sqlalchemy import func, text, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bundle_ingest.metrics import BUNDLES_TOTAL
from bundle_ingest.models.bundle import BundleRecord, BundleSource
from bundle_ingest.models.bundle_history import BundleHistory
from bundle_ingest.schemas.bundle import Bundle

log = structlog.get_logger(__name__)

_ALLOWED_SOURCES = {member.value for member in BundleSource}


@dataclass(frozen=True)
class PersistResult:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    history: int = 0
    deactivated: int = 0

    @property
    def upserts(self) -> int:
        return self.created + self.updated

    def as_dict(self) -> dict:
        return {
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "history": self.history,
            "deactivated": self.deactivated,
            "upserts": self.upserts,
        }


def coerce_source(value: Optional[str]) -> Optional[str]:
    """Constrain a source label to the bundle source enum; anything else is untagged."""
    if not value:
        return None
    return value if value in _ALLOWED_SOURCES else None


def to_price_cents(price: float) -> int:
    return int(Decimal(str(price)).scaleb(2).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_data_hash(bundle: Bundle, price_cents: int, source: Optional[str]) -> str:
    """Stable sha256 over the bundle's mutable, user-visible fields."""
    payload = {
        "name": bundle.name,
        "services": bundle.services,
        "price_cents": price_cents,
        "currency": bundle.currency,
        "billing_cycle": bundle.billing_cycle,
        "regions": bundle.regions,
        "provider": bundle.provider,
        "link": bundle.link,
        "tags": bundle.tags,
        "summary": bundle.summary or "",
        "is_active": bundle.is_active,
        "source": source,
    }
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def _as_utc(value: Optional[datetime]) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


async def _lock_source(session: AsyncSession, source: Optional[str]) -> None:
    """Serialize same-source persists for the life of the transaction.

    Concurrent runs for one source would otherwise compute their deactivation
    sweeps against each other's uncommitted snapshots. Postgres only; other
    dialects rely on their own write locking.
    """
    if source is None or session.get_bind().dialect.name != "postgresql":
        return
    await session.execute(
        text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
        {"key": f"bundles:{source}"},
    )


def _append_history(
    session: AsyncSession,
    bundle_id: str,
    captured_at: datetime,
    price_cents: int,
    currency: str,
    billing_cycle: str,
) -> None:
    session.add(
        BundleHistory(
            bundle_id=bundle_id,
            captured_at=captured_at,
            price_cents=price_cents,
            currency=currency,
            billing_cycle=billing_cycle,
        )
    )


async def _deactivate_unseen(session: AsyncSession, source: str, seen_ids: set[str]) -> int:
    stmt = (
        update(BundleRecord)
        .where(BundleRecord.source == source)
        .where(BundleRecord.is_active.is_(True))
        .where(BundleRecord.id.not_in(seen_ids))
        .values(is_active=False, updated_at=func.now())
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount or 0


async def _merge_bundles(
    session: AsyncSession,
    source: str,
    bundles: Sequence[Bundle],
    sweep_source: Optional[str],
) -> PersistResult:
    created = updated = skipped = history = 0
    seen_ids: set[str] = set()

    for bundle in bundles:
        seen_ids.add(bundle.id)

        price_cents = to_price_cents(bundle.price)
        resolved_source = coerce_source(bundle.source) or sweep_source
        last_verified_at = _as_utc(bundle.last_verified)
        data_hash = compute_data_hash(bundle, price_cents, resolved_source)

        values = {
            "name": bundle.name,
            "services": list(bundle.services),
            "price_cents": price_cents,
            "currency": bundle.currency,
            "billing_cycle": bundle.billing_cycle,
            "regions": list(bundle.regions),
            "provider": bundle.provider,
            "link": bundle.link,
            "tags": list(bundle.tags),
            "summary": bundle.summary,
            "is_active": bundle.is_active,
            "last_verified_at": last_verified_at,
            "source": resolved_source,
            "data_hash": data_hash,
            "confidence": bundle.confidence,
            "raw_payload": bundle.raw_payload,
        }

        existing = await session.get(BundleRecord, bundle.id)

        if existing is None:
            session.add(BundleRecord(id=bundle.id, **values))
            _append_history(
                session, bundle.id, last_verified_at, price_cents, bundle.currency, bundle.billing_cycle
            )
            created += 1
            history += 1
            continue

        # A swept row keeps its old hash, so reappearing must still reactivate it
        if existing.data_hash == data_hash and existing.is_active == bundle.is_active:
            skipped += 1
            continue

        price_moved = (
            existing.price_cents != price_cents
            or existing.currency != bundle.currency
            or existing.billing_cycle != bundle.billing_cycle
        )
        for key, value in values.items():
            setattr(existing, key, value)
        updated += 1

        if price_moved:
            _append_history(
                session, bundle.id, last_verified_at, price_cents, bundle.currency, bundle.billing_cycle
            )
            history += 1

    deactivated = 0
    if seen_ids and sweep_source:
        deactivated = await _deactivate_unseen(session, sweep_source, seen_ids)

    return PersistResult(
        created=created,
        updated=updated,
        skipped=skipped,
        history=history,
        deactivated=deactivated,
    )


async def persist_bundles(
    session_factory: Optional[async_sessionmaker[AsyncSession]],
    *,
    run_id: str,
    source: str,
    bundles: Sequence[Bundle],
    bundle_source: Optional[str] = None,
) -> PersistResult:
    """Merge a run's bundles into the store inside a single transaction.

    The deactivation sweep is scoped to ``source`` when it is a bundle source
    label, otherwise to ``bundle_source`` (the label a configured source key
    tags its records with). With neither resolvable the sweep is skipped.

    With no session factory (DATABASE_URL unset) persistence is disabled and
    every input bundle is reported as skipped.
    """
    if session_factory is None:
        if bundles:
            log.warning("persistence_disabled", source=source, run_id=run_id, bundles=len(bundles))
        return PersistResult(skipped=len(bundles))

    if not bundles:
        return PersistResult()

    sweep_source = coerce_source(source) or coerce_source(bundle_source)
    async with session_factory() as session:
        async with session.begin():
            await _lock_source(session, sweep_source)
            result = await _merge_bundles(session, source, bundles, sweep_source)

    for outcome in ("created", "updated", "skipped", "deactivated"):
        BUNDLES_TOTAL.labels(source=source, outcome=outcome).inc(getattr(result, outcome))

    log.info("bundles_persisted", source=source, run_id=run_id, **result.as_dict())
    return result

