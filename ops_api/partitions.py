"""
Ops endpoints: партиции журнала и отчёты циклов начислений
"""
import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from farming.schemas import CycleReport
from farming.services.ledger_store import LedgerStore
from ops_api.dependencies import get_ledger, get_session_factory
from shared.database import RewardCycleLog

logger = logging.getLogger(__name__)

router = APIRouter(tags=["ops"])


@router.get("/partitions")
async def list_partitions(ledger: LedgerStore = Depends(get_ledger)):
    """Партиции таблицы транзакций"""
    partitions = await ledger.list_partitions()
    return {
        "table": ledger.config.table_name,
        "count": len(partitions),
        "partitions": [partition.model_dump(mode="json") for partition in partitions]
    }


@router.get("/partitions/logs")
async def partition_logs(
    limit: int = Query(50, ge=1, le=500),
    ledger: LedgerStore = Depends(get_ledger)
):
    """Журнал операций с партициями"""
    logs = await ledger.get_partition_logs(limit)
    return [
        {
            "operation_type": log.operation_type,
            "partition_name": log.partition_name,
            "status": log.status,
            "notes": log.notes,
            "error_message": log.error_message,
            "created_at": log.created_at.isoformat()
        }
        for log in logs
    ]


@router.get("/cycles")
async def recent_cycles(
    limit: int = Query(20, ge=1, le=200),
    session_factory: async_sessionmaker = Depends(get_session_factory)
):
    """Последние отчёты циклов начислений"""
    async with session_factory() as session:
        result = await session.execute(
            select(RewardCycleLog).order_by(RewardCycleLog.started_at.desc()).limit(limit)
        )
        cycles = result.scalars().all()

    return [
        CycleReport(
            cycle_id=cycle.cycle_id,
            status=cycle.status,
            started_at=cycle.started_at,
            finished_at=cycle.finished_at,
            accrued_count=cycle.accrued_count,
            referral_credits_applied=cycle.referral_credits_applied,
            conflicts=cycle.conflicts,
            deferred=cycle.deferred,
            distributions_recovered=cycle.distributions_recovered,
            errors=cycle.errors or []
        ).model_dump(mode="json")
        for cycle in cycles
    ]
