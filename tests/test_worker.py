# tests/test_worker.py
from unittest.mock import AsyncMock

import pytest

from shared.admin_notifier import notify_admin, notify_partition_failure
from shared.redis_client import CycleLock
from worker.accrual_scheduler import AccrualScheduler
from worker.partition_maintenance import PartitionMaintenance

from conftest import NOW


class FakeRedis:
    """SET NX EX и сравнение токена при снятии, как у RELEASE_SCRIPT"""

    def __init__(self):
        self.values = {}

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.values:
            return None
        self.values[key] = value
        return True

    async def eval(self, script, numkeys, key, token):
        if self.values.get(key) == token:
            del self.values[key]
            return 1
        return 0


@pytest.mark.asyncio
async def test_cycle_lock_is_exclusive_between_holders():
    redis = FakeRedis()
    first = CycleLock(key="test:lock", ttl=30, client=redis)
    second = CycleLock(key="test:lock", ttl=30, client=redis)

    assert await first.acquire() is True
    assert await second.acquire() is False

    # Чужой токен не снимает блокировку
    await second.release()
    assert await second.acquire() is False

    await first.release()
    assert await second.acquire() is True


@pytest.mark.asyncio
async def test_scheduler_runs_cycles_until_stopped():
    orchestrator = AsyncMock()
    scheduler = AccrualScheduler(orchestrator, interval=0)

    async def run_cycle():
        if orchestrator.run_cycle.await_count >= 3:
            scheduler.stop()

    orchestrator.run_cycle.side_effect = run_cycle

    await scheduler.start()

    assert orchestrator.run_cycle.await_count == 3
    assert scheduler.running is False


@pytest.mark.asyncio
async def test_scheduler_survives_cycle_errors():
    orchestrator = AsyncMock()
    scheduler = AccrualScheduler(orchestrator, interval=0)

    async def run_cycle():
        if orchestrator.run_cycle.await_count == 1:
            raise RuntimeError("boom")
        scheduler.stop()

    orchestrator.run_cycle.side_effect = run_cycle

    await scheduler.start()

    assert orchestrator.run_cycle.await_count == 2


@pytest.mark.asyncio
async def test_partition_maintenance_extends_horizon(ledger):
    on_failure = AsyncMock()
    maintenance = PartitionMaintenance(ledger, interval=0, on_failure=on_failure)

    result = await maintenance.run_maintenance(NOW.replace(day=20))

    # 15..22 созданы при бутстрапе, 23..27 добавлены
    assert result.created == [f"transactions_2025_01_{day}" for day in range(23, 28)]
    assert result.ok
    on_failure.assert_not_awaited()

    health = await ledger.partition_health_check()
    assert health.ok


@pytest.mark.asyncio
async def test_partition_maintenance_reports_failures(ledger, mocker):
    on_failure = AsyncMock()
    maintenance = PartitionMaintenance(ledger, interval=0, on_failure=on_failure)
    mocker.patch.object(ledger, "_create_partition", AsyncMock(return_value=(False, "permission denied")))

    result = await maintenance.run_maintenance(NOW.replace(day=25))

    assert not result.ok
    on_failure.assert_awaited_once()
    assert on_failure.await_args.args[0][0]["error"] == "permission denied"


@pytest.mark.asyncio
async def test_notify_admin_sends_to_every_admin():
    send_func = AsyncMock(side_effect=[None, RuntimeError("blocked"), None])

    await notify_admin("Cycle failed", level="critical", send_func=send_func, admin_ids=[1, 2, 3])

    assert [call.args[0] for call in send_func.await_args_list] == [1, 2, 3]
    assert send_func.await_args_list[0].args[1].startswith("🔴 *CRITICAL*")


@pytest.mark.asyncio
async def test_notify_partition_failure_lists_partitions(mocker):
    send_func = AsyncMock()
    mocker.patch("shared.admin_notifier.ADMIN_IDS", [42])

    await notify_partition_failure(
        [{"name": "transactions_2025_01_25", "error": "permission denied"}],
        send_func=send_func
    )

    chat_id, text = send_func.await_args.args
    assert chat_id == 42
    assert "transactions_2025_01_25: permission denied" in text
