"""Tests for transactional bundle persistence."""

import pytest
from sqlalchemy import func, select
from structlog.testing import capture_logs

from bundle_ingest.models import BundleHistory, BundleRecord
from bundle_ingest.services import persistence
from bundle_ingest.services.normalizer import normalize_bundles
from bundle_ingest.services.persistence import (
    PersistResult,
    compute_data_hash,
    persist_bundles,
    to_price_cents,
)
from conftest import make_raw_bundle


def bundles(*raws):
    return normalize_bundles(list(raws))


async def fetch_bundle(session_factory, bundle_id):
    async with session_factory() as session:
        return await session.get(BundleRecord, bundle_id)


async def history_count(session_factory, bundle_id):
    async with session_factory() as session:
        result = await session.execute(
            select(func.count()).select_from(BundleHistory).where(BundleHistory.bundle_id == bundle_id)
        )
        return result.scalar_one()


async def bundle_count(session_factory):
    async with session_factory() as session:
        result = await session.execute(select(func.count()).select_from(BundleRecord))
        return result.scalar_one()


def test_to_price_cents_rounds_half_up():
    assert to_price_cents(14.99) == 1499
    assert to_price_cents(0.005) == 1
    assert to_price_cents(10) == 1000


def test_data_hash_is_stable_and_content_sensitive():
    [bundle] = bundles(make_raw_bundle())
    [same] = bundles(make_raw_bundle())
    [renamed] = bundles(make_raw_bundle(name="Disney Trio Plus"))

    assert compute_data_hash(bundle, 1499, "official") == compute_data_hash(same, 1499, "official")
    assert compute_data_hash(bundle, 1499, "official") != compute_data_hash(renamed, 1499, "official")
    assert compute_data_hash(bundle, 1499, "official") != compute_data_hash(bundle, 1599, "official")


@pytest.mark.asyncio
async def test_first_run_creates_rows_and_history(session_factory):
    result = await persist_bundles(
        session_factory,
        run_id="run-1",
        source="official",
        bundles=bundles(make_raw_bundle(id="a"), make_raw_bundle(id="b")),
    )

    assert result == PersistResult(created=2, history=2)
    assert result.upserts == 2
    record = await fetch_bundle(session_factory, "a")
    assert record.price_cents == 1499
    assert record.services == ["Disney+", "Hulu", "ESPN+"]
    assert record.source == "official"
    assert record.is_active is True
    assert len(record.data_hash) == 64
    assert await history_count(session_factory, "a") == 1


@pytest.mark.asyncio
async def test_rerun_with_identical_content_is_a_noop(session_factory):
    batch = bundles(make_raw_bundle(id="a"), make_raw_bundle(id="b"))
    await persist_bundles(session_factory, run_id="run-1", source="official", bundles=batch)

    result = await persist_bundles(session_factory, run_id="run-2", source="official", bundles=batch)

    assert result == PersistResult(skipped=2)
    assert await history_count(session_factory, "a") == 1
    assert await bundle_count(session_factory) == 2


@pytest.mark.asyncio
async def test_price_change_updates_and_appends_history(session_factory):
    await persist_bundles(
        session_factory, run_id="run-1", source="official", bundles=bundles(make_raw_bundle(id="a"))
    )

    result = await persist_bundles(
        session_factory,
        run_id="run-2",
        source="official",
        bundles=bundles(make_raw_bundle(id="a", price=16.99)),
    )

    assert result.updated == 1
    assert result.history == 1
    record = await fetch_bundle(session_factory, "a")
    assert record.price_cents == 1699
    assert await history_count(session_factory, "a") == 2


@pytest.mark.asyncio
async def test_non_price_change_updates_without_history(session_factory):
    await persist_bundles(
        session_factory, run_id="run-1", source="official", bundles=bundles(make_raw_bundle(id="a"))
    )

    result = await persist_bundles(
        session_factory,
        run_id="run-2",
        source="official",
        bundles=bundles(make_raw_bundle(id="a", name="Disney Trio (2026)", tags=["Family"])),
    )

    assert result == PersistResult(updated=1)
    record = await fetch_bundle(session_factory, "a")
    assert record.name == "Disney Trio (2026)"
    assert record.tags == ["family"]
    assert await history_count(session_factory, "a") == 1


@pytest.mark.asyncio
async def test_history_grows_once_per_pricing_change_across_runs(session_factory):
    runs = [
        make_raw_bundle(id="a"),
        make_raw_bundle(id="a", price=16.99),
        make_raw_bundle(id="a", price=16.99, name="Disney Trio Plus"),
        make_raw_bundle(id="a", price=16.99, name="Disney Trio Plus", billingCycle="yr"),
        make_raw_bundle(id="a", price=16.99, name="Disney Trio Plus", billingCycle="yr", currency="EUR"),
        make_raw_bundle(id="a", price=16.99, name="Disney Trio Plus", billingCycle="yr", currency="EUR"),
    ]
    recorded = []
    for n, raw in enumerate(runs, start=1):
        result = await persist_bundles(
            session_factory, run_id=f"run-{n}", source="official", bundles=bundles(raw)
        )
        recorded.append(result.history)

    assert recorded == [1, 1, 0, 1, 1, 0]
    async with session_factory() as session:
        rows = (
            await session.execute(
                select(BundleHistory).where(BundleHistory.bundle_id == "a").order_by(BundleHistory.id)
            )
        ).scalars().all()
    assert [(row.price_cents, row.currency, row.billing_cycle) for row in rows] == [
        (1499, "USD", "mo"),
        (1699, "USD", "mo"),
        (1699, "USD", "yr"),
        (1699, "EUR", "yr"),
    ]


@pytest.mark.asyncio
async def test_unseen_bundles_of_the_same_source_are_deactivated(session_factory):
    await persist_bundles(
        session_factory,
        run_id="run-1",
        source="official",
        bundles=bundles(make_raw_bundle(id="a"), make_raw_bundle(id="b")),
    )

    result = await persist_bundles(
        session_factory, run_id="run-2", source="official", bundles=bundles(make_raw_bundle(id="a"))
    )

    assert result.deactivated == 1
    assert (await fetch_bundle(session_factory, "a")).is_active is True
    assert (await fetch_bundle(session_factory, "b")).is_active is False


@pytest.mark.asyncio
async def test_deactivation_is_scoped_to_the_run_source(session_factory):
    await persist_bundles(
        session_factory,
        run_id="run-1",
        source="carrier",
        bundles=bundles(make_raw_bundle(id="carrier-1", source="carrier")),
    )

    result = await persist_bundles(
        session_factory, run_id="run-2", source="official", bundles=bundles(make_raw_bundle(id="a"))
    )

    assert result.deactivated == 0
    assert (await fetch_bundle(session_factory, "carrier-1")).is_active is True


@pytest.mark.asyncio
async def test_untagged_source_skips_the_sweep(session_factory):
    await persist_bundles(
        session_factory,
        run_id="run-1",
        source="unlisted-feed",
        bundles=bundles(make_raw_bundle(id="a", source=None), make_raw_bundle(id="b", source=None)),
    )

    result = await persist_bundles(
        session_factory,
        run_id="run-2",
        source="unlisted-feed",
        bundles=bundles(make_raw_bundle(id="a", source=None)),
    )

    assert (await fetch_bundle(session_factory, "a")).source is None
    assert result.deactivated == 0
    assert (await fetch_bundle(session_factory, "b")).is_active is True


@pytest.mark.asyncio
async def test_empty_batch_does_not_deactivate_anything(session_factory):
    await persist_bundles(
        session_factory, run_id="run-1", source="official", bundles=bundles(make_raw_bundle(id="a"))
    )

    result = await persist_bundles(session_factory, run_id="run-2", source="official", bundles=[])

    assert result == PersistResult()
    assert (await fetch_bundle(session_factory, "a")).is_active is True


@pytest.mark.asyncio
async def test_swept_bundle_is_reactivated_when_it_reappears(session_factory):
    batch = bundles(make_raw_bundle(id="a"), make_raw_bundle(id="b"))
    await persist_bundles(session_factory, run_id="run-1", source="official", bundles=batch)
    await persist_bundles(session_factory, run_id="run-2", source="official", bundles=batch[:1])

    result = await persist_bundles(session_factory, run_id="run-3", source="official", bundles=batch)

    assert result.updated == 1
    assert result.skipped == 1
    assert (await fetch_bundle(session_factory, "b")).is_active is True
    assert await history_count(session_factory, "b") == 1


@pytest.mark.asyncio
async def test_failure_rolls_back_the_whole_run(session_factory, monkeypatch):
    await persist_bundles(
        session_factory,
        run_id="run-1",
        source="official",
        bundles=bundles(make_raw_bundle(id="a"), make_raw_bundle(id="b")),
    )

    original = persistence._append_history
    def flaky_append(session, bundle_id, *args):
        if bundle_id == "c":
            raise RuntimeError("history write failed")
        return original(session, bundle_id, *args)

    monkeypatch.setattr(persistence, "_append_history", flaky_append)
    changed = bundles(
        make_raw_bundle(id="a", price=19.99),
        make_raw_bundle(id="c"),
    )

    with pytest.raises(RuntimeError, match="history write failed"):
        await persist_bundles(session_factory, run_id="run-2", source="official", bundles=changed)

    # Nothing from the failed run is visible: price, new row and the sweep of "b"
    assert (await fetch_bundle(session_factory, "a")).price_cents == 1499
    assert await fetch_bundle(session_factory, "c") is None
    assert (await fetch_bundle(session_factory, "b")).is_active is True
    assert await history_count(session_factory, "a") == 1

    monkeypatch.setattr(persistence, "_append_history", original)
    retried = await persist_bundles(session_factory, run_id="run-3", source="official", bundles=changed)

    assert retried.created == 1
    assert retried.updated == 1
    assert retried.deactivated == 1
    assert (await fetch_bundle(session_factory, "a")).price_cents == 1999


@pytest.mark.asyncio
async def test_without_datastore_every_bundle_is_skipped():
    with capture_logs() as logs:
        result = await persist_bundles(
            None, run_id="run-1", source="official", bundles=bundles(make_raw_bundle(id="a"))
        )

    assert result == PersistResult(skipped=1)
    assert logs[0]["event"] == "persistence_disabled"
    assert logs[0]["log_level"] == "warning"


@pytest.mark.asyncio
async def test_outage_mid_run_leaves_no_partial_writes(session_factory, monkeypatch):
    batch = bundles(*(make_raw_bundle(id=f"bundle-{n}") for n in range(10)))
    original = persistence._append_history
    written = []

    def outage_after_three(session, bundle_id, *args):
        if len(written) == 3:
            raise ConnectionError("server closed the connection unexpectedly")
        written.append(bundle_id)
        return original(session, bundle_id, *args)

    monkeypatch.setattr(persistence, "_append_history", outage_after_three)
    with pytest.raises(ConnectionError):
        await persist_bundles(session_factory, run_id="run-1", source="official", bundles=batch)

    assert await bundle_count(session_factory) == 0

    monkeypatch.setattr(persistence, "_append_history", original)
    result = await persist_bundles(session_factory, run_id="run-1", source="official", bundles=batch)

    assert result.created == 10
    assert result.history == 10
    assert await bundle_count(session_factory) == 10
    for n in range(3):
        assert await history_count(session_factory, f"bundle-{n}") == 1
