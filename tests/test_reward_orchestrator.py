# tests/test_reward_orchestrator.py
import asyncio
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from farming.schemas import AccrualReport, CycleStatus
from farming.services.accrual_engine import AccrualEngine
from farming.services.ledger_store import LedgerStore, PartitionConfig
from farming.services.referral_distributor import ReferralDistributor, ReferralPolicy
from farming.services.reward_orchestrator import RewardOrchestrator
from shared.database import RewardCycleLog, RewardDistributionLog, Transaction

from conftest import NOW


class FakeLock:
    def __init__(self, available=True):
        self.available = available
        self.released = 0

    async def acquire(self):
        return self.available

    async def release(self):
        self.released += 1


@pytest.mark.asyncio
async def test_cycle_accrues_and_pays_the_inviter(orchestrator, make_user, make_deposit, fetch_user, session_factory):
    inviter = await make_user(ref_code="usera")
    farmer = await make_user(ref_code="userb", parent=inviter)
    await make_deposit(farmer, "1000", "0.00001", last_accrual_at=NOW - timedelta(seconds=10000))

    report = await orchestrator.run_cycle(NOW)

    assert report.status == CycleStatus.COMPLETED
    assert report.accrued_count == 1
    assert report.referral_credits_applied == 1
    assert report.errors == []
    assert report.finished_at >= report.started_at

    assert (await fetch_user(farmer.id)).balance_uni == Decimal("100")
    assert (await fetch_user(inviter.id)).balance_uni == Decimal("10")

    async with session_factory() as session:
        entries = (await session.execute(select(Transaction))).scalars().all()
        cycles = (await session.execute(select(RewardCycleLog))).scalars().all()

    assert sorted((entry.type, entry.user_id) for entry in entries) == sorted([
        ("harvest", farmer.id), ("referral_bonus", inviter.id)
    ])
    harvest = next(entry for entry in entries if entry.type == "harvest")
    bonus = next(entry for entry in entries if entry.type == "referral_bonus")
    assert bonus.event_ref == str(harvest.id)
    assert bonus.level == 1

    assert len(cycles) == 1
    assert cycles[0].cycle_id == report.cycle_id
    assert cycles[0].status == "completed"
    assert orchestrator.state == CycleStatus.COMPLETED


@pytest.mark.asyncio
async def test_second_trigger_while_running_is_skipped(orchestrator, mocker):
    started = asyncio.Event()
    release = asyncio.Event()

    async def slow_accrual(now, deadline=None):
        started.set()
        await release.wait()
        return AccrualReport()

    mocker.patch.object(orchestrator.accrual_engine, "accrue_all", side_effect=slow_accrual)

    first = asyncio.create_task(orchestrator.run_cycle(NOW))
    await started.wait()

    assert orchestrator.running
    assert await orchestrator.run_cycle(NOW) is None

    release.set()
    report = await first

    assert report.status == CycleStatus.COMPLETED
    assert orchestrator.accrual_engine.accrue_all.call_count == 1
    assert not orchestrator.running


@pytest.mark.asyncio
async def test_cycle_held_by_another_process_is_skipped(accrual_engine, distributor, session_factory, mocker):
    lock = FakeLock(available=False)
    orchestrator = RewardOrchestrator(accrual_engine, distributor, session_factory, lock=lock)
    spy = mocker.spy(accrual_engine, "accrue_all")

    assert await orchestrator.run_cycle(NOW) is None
    assert spy.call_count == 0
    assert orchestrator.state == CycleStatus.IDLE


@pytest.mark.asyncio
async def test_lock_is_released_after_cycle(accrual_engine, distributor, session_factory):
    lock = FakeLock()
    orchestrator = RewardOrchestrator(accrual_engine, distributor, session_factory, lock=lock)

    report = await orchestrator.run_cycle(NOW)

    assert report.status == CycleStatus.COMPLETED
    assert lock.released == 1


@pytest.mark.asyncio
async def test_partition_gap_fails_cycle_and_alerts(session_factory, retry_handler, policy, make_user, make_deposit, fetch_user):
    ledger = LedgerStore(session_factory, PartitionConfig(catch_all_enabled=False, forward_horizon_days=1))
    await ledger.bootstrap(NOW)
    alert = AsyncMock()
    orchestrator = RewardOrchestrator(
        AccrualEngine(session_factory, ledger, retry_handler),
        ReferralDistributor(session_factory, ledger, policy, retry_handler),
        session_factory,
        alert_callback=alert
    )
    farmer = await make_user(ref_code="gapfarm")
    await make_deposit(farmer, "1000", "0.00001", last_accrual_at=NOW)

    report = await orchestrator.run_cycle(NOW + timedelta(days=30))

    assert report.status == CycleStatus.FAILED
    assert report.accrued_count == 0
    assert [error.kind for error in report.errors] == ["partition_gap"]
    alert.assert_awaited_once()
    assert "partition" in alert.await_args.args[0]
    assert (await fetch_user(farmer.id)).balance_uni == Decimal("0")
    assert orchestrator.state == CycleStatus.FAILED


@pytest.mark.asyncio
async def test_failed_referral_credit_is_reported_with_ancestor(orchestrator, make_user, make_deposit, mocker):
    inviter = await make_user(ref_code="brokeinv")
    farmer = await make_user(ref_code="brokefarm", parent=inviter)
    await make_deposit(farmer, "100", "0.01", last_accrual_at=NOW - timedelta(seconds=10))

    mocker.patch.object(
        orchestrator.distributor, "_credit_ancestor", side_effect=RuntimeError("ledger unavailable")
    )

    report = await orchestrator.run_cycle(NOW)

    assert report.accrued_count == 1
    assert report.referral_credits_applied == 0
    assert report.status == CycleStatus.FAILED
    assert len(report.errors) == 1
    assert report.errors[0].user_id == inviter.id
    assert str(inviter.id) in report.errors[0].message


@pytest.mark.asyncio
async def test_aborted_accrual_fails_cycle(orchestrator, mocker):
    alert = AsyncMock()
    orchestrator.alert_callback = alert
    mocker.patch.object(orchestrator.accrual_engine, "accrue_all", side_effect=RuntimeError("database is gone"))

    report = await orchestrator.run_cycle(NOW)

    assert report.status == CycleStatus.FAILED
    assert report.errors[0].kind == "RuntimeError"
    alert.assert_awaited_once()

    # После неудачного цикла следующий запускается как обычно
    mocker.stopall()
    assert (await orchestrator.run_cycle(NOW)).status == CycleStatus.COMPLETED


@pytest.mark.asyncio
async def test_failed_distribution_is_recovered_by_next_cycle(
    orchestrator, make_user, make_deposit, fetch_user, session_factory, mocker
):
    inviter = await make_user(ref_code="recinv")
    farmer = await make_user(ref_code="recfarm", parent=inviter)
    await make_deposit(farmer, "1000", "0.00001", last_accrual_at=NOW - timedelta(seconds=10000))

    mocker.patch.object(
        orchestrator.distributor, "_credit_ancestor", side_effect=ConnectionError("connection reset by peer")
    )
    first = await orchestrator.run_cycle(NOW)

    assert first.status == CycleStatus.FAILED
    assert [error.kind for error in first.errors] == ["transient_store_error"]
    assert (await fetch_user(inviter.id)).balance_uni == Decimal("0")

    mocker.stopall()
    second = await orchestrator.run_cycle(NOW + timedelta(seconds=1))

    assert second.status == CycleStatus.COMPLETED
    assert second.distributions_recovered == 1
    # 10 за прошлый harvest и 0.001 за новый
    assert second.referral_credits_applied == 2
    assert (await fetch_user(inviter.id)).balance_uni == Decimal("10.001")

    async with session_factory() as session:
        logs = (await session.execute(
            select(RewardDistributionLog).order_by(RewardDistributionLog.created_at)
        )).scalars().all()

    assert [(log.status, log.attempts) for log in logs] == [("completed", 2), ("completed", 1)]

    third = await orchestrator.run_cycle(NOW + timedelta(seconds=1))
    assert third.distributions_recovered == 0
    assert (await fetch_user(inviter.id)).balance_uni == Decimal("10.001")


@pytest.mark.asyncio
async def test_harvest_left_undistributed_is_picked_up(orchestrator, accrual_engine, make_user, make_deposit, fetch_user):
    inviter = await make_user(ref_code="lostinv")
    farmer = await make_user(ref_code="lostfarm", parent=inviter)
    deposit = await make_deposit(farmer, "1000", "0.00001", last_accrual_at=NOW - timedelta(seconds=10000))

    # harvest записан, но распределение не запускалось
    await accrual_engine.accrue_deposit(deposit.id, NOW)
    assert (await fetch_user(inviter.id)).balance_uni == Decimal("0")

    report = await orchestrator.run_cycle(NOW)

    assert report.status == CycleStatus.COMPLETED
    assert report.accrued_count == 0
    assert report.distributions_recovered == 1
    assert (await fetch_user(inviter.id)).balance_uni == Decimal("10")


@pytest.mark.asyncio
async def test_transient_failure_on_third_of_five_ancestors(
    session_factory, ledger, retry_handler, make_chain, make_deposit, fetch_user, fetch_entries, mocker
):
    policy = ReferralPolicy(["0.10", "0.05", "0.03", "0.02", "0.01"], max_depth=20)
    distributor = ReferralDistributor(session_factory, ledger, policy, retry_handler)
    orchestrator = RewardOrchestrator(
        AccrualEngine(session_factory, ledger, retry_handler), distributor, session_factory
    )

    chain = await make_chain(5, prefix="five")
    farmer = chain[-1]
    ancestors = list(reversed(chain[:-1]))
    broken = ancestors[2]
    await make_deposit(farmer, "1000", "0.00001", last_accrual_at=NOW - timedelta(seconds=10000))

    credit_ancestor = distributor._credit_ancestor

    async def flaky_credit(ancestor_id, *args):
        if ancestor_id == broken.id:
            raise ConnectionError("connection reset by peer")
        return await credit_ancestor(ancestor_id, *args)

    mocker.patch.object(distributor, "_credit_ancestor", side_effect=flaky_credit)

    report = await orchestrator.run_cycle(NOW)

    assert report.status == CycleStatus.FAILED
    assert report.referral_credits_applied == 4
    assert len(report.errors) == 1
    assert report.errors[0].user_id == broken.id
    assert report.errors[0].kind == "transient_store_error"

    expected = dict(zip([ancestor.id for ancestor in ancestors], ["10", "5", "3", "2", "1"]))
    for ancestor in ancestors:
        balance = (await fetch_user(ancestor.id)).balance_uni
        assert balance == (Decimal("0") if ancestor.id == broken.id else Decimal(expected[ancestor.id]))

    # Следующий цикл доначисляет только пропущенному предку
    mocker.stopall()
    retry = await orchestrator.run_cycle(NOW)

    assert retry.status == CycleStatus.COMPLETED
    assert retry.distributions_recovered == 1
    assert retry.referral_credits_applied == 1
    for ancestor in ancestors:
        assert (await fetch_user(ancestor.id)).balance_uni == Decimal(expected[ancestor.id])
        assert len(await fetch_entries(ancestor.id, "referral_bonus")) == 1
