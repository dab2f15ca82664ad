# tests/test_ledger_store.py
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from farming.errors import InsufficientBalanceError, InvalidStatusTransitionError, PartitionGapError
from farming.partition_plan import plan_partitions, render_backfill_ddl, render_ddl
from farming.schemas import Currency, EntryFilters, EntryStatus, EntryType, NewLedgerEntry
from farming.services.ledger_store import LedgerStore, PartitionConfig
from shared.database import LedgerPartition, PartitionLog

from conftest import NOW


def _entry(user_id, amount, created_at=NOW, entry_type=EntryType.DEPOSIT, status=EntryStatus.CONFIRMED, currency=Currency.UNI):
    return NewLedgerEntry(
        user_id=user_id,
        type=entry_type,
        currency=currency,
        amount=Decimal(amount),
        created_at=created_at,
        status=status
    )


@pytest.mark.asyncio
async def test_bootstrap_creates_catch_all_and_forward_horizon(ledger):
    partitions = await ledger.list_partitions()
    names = [partition.name for partition in partitions]

    assert "transactions_default" in names
    assert "transactions_2025_01_15" in names
    assert "transactions_2025_01_22" in names
    assert len([p for p in partitions if not p.is_default]) == 8


@pytest.mark.asyncio
async def test_ensure_partitions_covering_thirty_days_is_idempotent(ledger):
    start = datetime(2025, 2, 1)
    end = start + timedelta(days=30)

    first = await ledger.ensure_partitions_covering(start, end)
    assert first.ok
    assert len(first.created) == 30

    second = await ledger.ensure_partitions_covering(start, end)
    assert second.ok
    assert second.created == []
    assert len(second.existing) == 30

    health = await ledger.partition_health_check()
    assert health.overlaps == []
    # Между горизонтом бутстрапа и февралём остаётся разрыв
    assert [(gap.start, gap.end) for gap in health.gaps] == [(datetime(2025, 1, 23), datetime(2025, 2, 1))]

    async with ledger.session_factory() as session:
        for day in range(30):
            moment = start + timedelta(days=day, hours=13)
            assert await ledger.resolve_partition(session, moment) == f"transactions_{moment:%Y_%m_%d}"


@pytest.mark.asyncio
async def test_overlapping_partition_is_refused(ledger, session_factory):
    async with session_factory() as session:
        session.add(LedgerPartition(
            name="transactions_2025_03",
            range_start=datetime(2025, 3, 1),
            range_end=datetime(2025, 4, 1),
            is_default=False,
            status="created"
        ))
        await session.commit()

    result = await ledger.ensure_partitions_covering(datetime(2025, 3, 10), datetime(2025, 3, 11))

    assert not result.ok
    assert result.failed[0]["name"] == "transactions_2025_03_10"
    assert "overlap" in result.failed[0]["error"]

    async with session_factory() as session:
        logs = (await session.execute(
            select(PartitionLog).where(PartitionLog.partition_name == "transactions_2025_03_10")
        )).scalars().all()
    assert [log.status for log in logs] == ["skipped"]


@pytest.mark.asyncio
async def test_entry_outside_partitions_without_catch_all_raises_gap(session_factory, make_user):
    store = LedgerStore(session_factory, PartitionConfig(catch_all_enabled=False, forward_horizon_days=1))
    result = await store.bootstrap(NOW)
    assert "transactions_default" not in result.created

    user = await make_user(ref_code="gapuser")
    async with session_factory() as session:
        with pytest.raises(PartitionGapError) as exc_info:
            await store.apply_entry(session, _entry(user.id, "5", created_at=NOW + timedelta(days=10)))
        await session.rollback()

    assert exc_info.value.created_at == NOW + timedelta(days=10)

    async with session_factory() as session:
        entry_id, balance = await store.apply_entry(session, _entry(user.id, "5", created_at=NOW))
        await session.commit()
    assert balance == Decimal("5")


@pytest.mark.asyncio
async def test_catch_all_takes_entries_beyond_horizon(ledger, make_user):
    user = await make_user(ref_code="farfuture")

    async with ledger.session_factory() as session:
        assert await ledger.resolve_partition(session, NOW + timedelta(days=400)) == "transactions_default"
        assert await ledger.resolve_partition(session, NOW) == "transactions_2025_01_15"
        await ledger.apply_entry(session, _entry(user.id, "1", created_at=NOW + timedelta(days=400)))
        await session.commit()


@pytest.mark.asyncio
async def test_partition_over_catch_all_entries_moves_them(ledger, make_user):
    user = await make_user(ref_code="backfill")
    moment = NOW + timedelta(days=400, hours=3)
    spec = plan_partitions("transactions", moment, moment + timedelta(seconds=1))[0]
    empty_day = plan_partitions("transactions", spec.range_end, spec.range_end + timedelta(seconds=1))[0]

    async with ledger.session_factory() as session:
        await ledger.apply_entry(session, _entry(user.id, "7", created_at=moment))
        await session.commit()

    async with ledger.session_factory() as session:
        assert await ledger.resolve_partition(session, moment) == "transactions_default"
        assert await ledger._partition_statements(session, spec) == render_backfill_ddl(spec, "transactions")
        assert await ledger._partition_statements(session, empty_day) == [render_ddl(empty_day, "transactions")]

    result = await ledger.ensure_partitions_covering(spec.range_start, spec.range_end)
    assert result.created == [spec.name]

    async with ledger.session_factory() as session:
        assert await ledger.resolve_partition(session, moment) == spec.name
        notes = (await session.execute(
            select(PartitionLog.notes).where(PartitionLog.partition_name == spec.name)
        )).scalar_one()
        entries = await ledger.list_entries(session, user.id)

    assert "ATTACH PARTITION" in notes
    assert [entry.amount for entry in entries] == [Decimal("7")]


@pytest.mark.asyncio
async def test_monthly_horizon_reaches_past_month_end(session_factory):
    store = LedgerStore(
        session_factory,
        PartitionConfig(granularity="month", forward_horizon_days=7, catch_all_enabled=False)
    )

    result = await store.ensure_forward_horizon(datetime(2025, 1, 28, 12))

    assert result.created == ["transactions_2025_01", "transactions_2025_02"]
    async with session_factory() as session:
        assert await store.resolve_partition(session, datetime(2025, 2, 3)) == "transactions_2025_02"

    health = await store.partition_health_check()
    assert health.ok
    assert health.covered_to == datetime(2025, 3, 1)


@pytest.mark.asyncio
async def test_debit_below_zero_is_rejected(ledger, make_user, fetch_user):
    user = await make_user(ref_code="poor")

    async with ledger.session_factory() as session:
        await ledger.apply_entry(session, _entry(user.id, "10"))
        await session.commit()

    async with ledger.session_factory() as session:
        with pytest.raises(InsufficientBalanceError):
            await ledger.apply_entry(session, _entry(user.id, "-10.5", entry_type=EntryType.WITHDRAWAL))
        await session.rollback()

    assert (await fetch_user(user.id)).balance_uni == Decimal("10")


@pytest.mark.asyncio
async def test_pending_entry_changes_balance_only_when_confirmed(ledger, make_user, fetch_user):
    user = await make_user(ref_code="pending")

    async with ledger.session_factory() as session:
        await ledger.apply_entry(session, _entry(user.id, "100"))
        entry_id, balance = await ledger.apply_entry(
            session, _entry(user.id, "-40", entry_type=EntryType.WITHDRAWAL, status=EntryStatus.PENDING)
        )
        await session.commit()
    assert balance == Decimal("100")

    async with ledger.session_factory() as session:
        await ledger.set_entry_status(session, entry_id, EntryStatus.CONFIRMED)
        await session.commit()
    assert (await fetch_user(user.id)).balance_uni == Decimal("60")

    async with ledger.session_factory() as session:
        with pytest.raises(InvalidStatusTransitionError):
            await ledger.set_entry_status(session, entry_id, EntryStatus.REJECTED)
        with pytest.raises(InvalidStatusTransitionError):
            await ledger.set_entry_status(session, entry_id, EntryStatus.PENDING)
        await session.rollback()


@pytest.mark.asyncio
async def test_list_entries_newest_first_with_filters(ledger, make_user):
    user = await make_user(ref_code="history")

    async with ledger.session_factory() as session:
        for hours in range(3):
            await ledger.apply_entry(session, _entry(user.id, "1", created_at=NOW + timedelta(hours=hours)))
        await ledger.apply_entry(session, _entry(user.id, "2", created_at=NOW, currency=Currency.TON))
        await session.commit()

        entries = await ledger.list_entries(session, user.id)
        assert [entry.created_at for entry in entries][:3] == [
            NOW + timedelta(hours=2), NOW + timedelta(hours=1), NOW
        ]

        ton_only = await ledger.list_entries(session, user.id, EntryFilters(currency=Currency.TON))
        assert [entry.amount for entry in ton_only] == [Decimal("2")]

        page = await ledger.list_entries(session, user.id, limit=2, offset=2)
        assert len(page) == 2


@pytest.mark.asyncio
async def test_reconciliation_matches_confirmed_entries(ledger, make_user):
    user = await make_user(ref_code="recon")

    async with ledger.session_factory() as session:
        await ledger.apply_entry(session, _entry(user.id, "100.123456789012345678"))
        await ledger.apply_entry(session, _entry(user.id, "-0.000000000000000001", entry_type=EntryType.WITHDRAWAL))
        await ledger.apply_entry(session, _entry(user.id, "3", currency=Currency.TON))
        await ledger.apply_entry(
            session, _entry(user.id, "-50", entry_type=EntryType.WITHDRAWAL, status=EntryStatus.PENDING)
        )
        await session.commit()

        report = await ledger.reconcile_user(session, user.id)

    assert report.ok
    lines = {line.currency: line for line in report.lines}
    assert lines[Currency.UNI].balance == Decimal("100.123456789012345677")
    assert lines[Currency.TON].ledger_sum == Decimal("3")


@pytest.mark.asyncio
async def test_health_reports_failed_descriptor(ledger, session_factory):
    async with session_factory() as session:
        session.add(LedgerPartition(
            name="transactions_2030_01_01",
            range_start=datetime(2030, 1, 1),
            range_end=datetime(2030, 1, 2),
            is_default=False,
            status="failed",
            error="permission denied"
        ))
        await session.commit()

    health = await ledger.partition_health_check()

    assert not health.ok
    assert health.failed == ["transactions_2030_01_01"]
    assert health.has_default
