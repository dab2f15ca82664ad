"""
Движок начислений: доход активных депозитов за прошедшие секунды

Для каждого депозита: earned = principal * rate_per_second * elapsed.
Сдвиг last_accrual_at выполняется условным UPDATE по старому значению,
поэтому два воркера не могут начислить один и тот же интервал дважды.
"""
import logging
import time
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from farming.errors import (
    ConcurrentAccrualConflict,
    DepositNotFoundError,
    PartitionGapError,
    TransientStoreError,
)
from farming.schemas import (
    AccrualFailure,
    AccrualReport,
    AccrualResult,
    Currency,
    DistributionStatus,
    EntryType,
    NewLedgerEntry,
)
from farming.services.ledger_store import LedgerStore
from shared.database import FarmingDeposit, RewardDistributionLog, to_naive_utc
from shared.money import ZERO, elapsed_seconds, multiply
from shared.retry import StoreRetryHandler

logger = logging.getLogger(__name__)


def calculate_earned(principal, rate_per_second, seconds):
    """Доход за интервал: principal * rate * seconds, 18 знаков, округление вниз"""
    return multiply(principal, rate_per_second, seconds)


class AccrualEngine:
    """Начисление дохода по фарминг- и буст-депозитам"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        ledger: LedgerStore,
        retry_handler: Optional[StoreRetryHandler] = None
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.retry_handler = retry_handler or StoreRetryHandler()

    async def get_active_deposits(self) -> List[FarmingDeposit]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(FarmingDeposit)
                .where(FarmingDeposit.is_active.is_(True))
                .order_by(FarmingDeposit.id)
            )
            return list(result.scalars().all())

    async def accrue_all(self, now: datetime, deadline: Optional[float] = None) -> AccrualReport:
        """
        Начислить доход по всем активным депозитам

        Args:
            now: момент начисления
            deadline: time.monotonic(), после которого новые депозиты не начинаются

        Ошибка одного депозита не прерывает обработку остальных.
        """
        now = to_naive_utc(now)
        report = AccrualReport()

        deposits = await self.retry_handler.execute_with_retry(self.get_active_deposits)
        logger.info(f"Accruing {len(deposits)} active deposits at {now.isoformat()}")

        for index, deposit in enumerate(deposits):
            if deadline is not None and time.monotonic() >= deadline:
                report.deferred = len(deposits) - index
                logger.warning(f"Accrual time budget exhausted, {report.deferred} deposits deferred")
                break

            try:
                result = await self.accrue_deposit(deposit.id, now)
                if result is None:
                    report.skipped += 1
                else:
                    report.results.append(result)

            except ConcurrentAccrualConflict as e:
                report.conflicts += 1
                logger.debug(str(e))

            except PartitionGapError as e:
                logger.error(f"Partition gap while accruing deposit {deposit.id}: {e}")
                report.failures.append(AccrualFailure(
                    deposit_id=deposit.id, user_id=deposit.user_id,
                    kind="partition_gap", message=str(e)
                ))

            except TransientStoreError as e:
                logger.error(f"Deposit {deposit.id} accrual failed after retries: {e}")
                report.failures.append(AccrualFailure(
                    deposit_id=deposit.id, user_id=deposit.user_id,
                    kind="transient_store_error", message=str(e)
                ))

            except Exception as e:
                logger.error(f"Error accruing deposit {deposit.id}: {e}", exc_info=True)
                report.failures.append(AccrualFailure(
                    deposit_id=deposit.id, user_id=deposit.user_id,
                    kind=type(e).__name__, message=str(e)
                ))

        logger.info(
            f"Accrual finished: accrued={len(report.results)}, skipped={report.skipped}, "
            f"conflicts={report.conflicts}, failed={len(report.failures)}, deferred={report.deferred}"
        )
        return report

    async def accrue_deposit(self, deposit_id: int, now: datetime) -> Optional[AccrualResult]:
        """
        Начислить доход по одному депозиту (с повторами при временных сбоях)

        Returns:
            AccrualResult или None, если начислять нечего

        Raises:
            ConcurrentAccrualConflict: интервал уже начислен другим воркером
        """
        return await self.retry_handler.execute_with_retry(self._accrue_once, deposit_id, to_naive_utc(now))

    async def _accrue_once(self, deposit_id: int, now: datetime) -> Optional[AccrualResult]:
        async with self.session_factory() as session:
            try:
                result = await self.accrue_in_session(session, deposit_id, now)
                await session.commit()

            except Exception:
                await session.rollback()
                raise

        if result is not None:
            logger.debug(
                f"Deposit {deposit_id}: +{result.earned} {result.currency.value} for {result.elapsed_seconds}s"
            )
        return result

    async def accrue_in_session(
        self,
        session: AsyncSession,
        deposit_id: int,
        now: datetime
    ) -> Optional[AccrualResult]:
        """
        Начисление в транзакции вызывающего (без commit)

        Returns:
            AccrualResult, если записан harvest, иначе None
        """
        now = to_naive_utc(now)
        deposit = await session.get(FarmingDeposit, deposit_id, populate_existing=True)
        if not deposit:
            raise DepositNotFoundError(f"Deposit {deposit_id} not found")
        if not deposit.is_active:
            return None

        previous = deposit.last_accrual_at
        accrue_until = now
        expired = False
        if deposit.expires_at is not None and deposit.expires_at <= now:
            accrue_until = deposit.expires_at
            expired = True

        seconds = elapsed_seconds(accrue_until - previous)
        if seconds <= 0 and not expired:
            return None

        earned = calculate_earned(deposit.amount, deposit.rate_per_second, seconds) if seconds > 0 else ZERO
        values = {"last_accrual_at": max(accrue_until, previous)}
        if expired:
            values["is_active"] = False
            values["closed_at"] = now

        # Условное обновление: выигрывает только один писатель
        result = await session.execute(
            update(FarmingDeposit)
            .where(
                FarmingDeposit.id == deposit_id,
                FarmingDeposit.last_accrual_at == previous,
                FarmingDeposit.is_active.is_(True)
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ConcurrentAccrualConflict(deposit_id)

        if expired:
            logger.info(f"Deposit {deposit_id} expired at {accrue_until.isoformat()} and was deactivated")

        if earned <= ZERO:
            return None

        entry_id, _ = await self.ledger.apply_entry(session, NewLedgerEntry(
            user_id=deposit.user_id,
            type=EntryType.HARVEST,
            currency=Currency(deposit.currency),
            amount=earned,
            created_at=now,
            event_ref=f"deposit:{deposit_id}:{accrue_until.isoformat()}",
            meta={
                "deposit_id": deposit_id,
                "deposit_kind": deposit.kind,
                "elapsed_seconds": str(seconds),
            }
        ))

        # Распределение по этой записи ещё не выполнено
        session.add(RewardDistributionLog(
            event_ref=str(entry_id),
            source_user_id=deposit.user_id,
            amount=earned,
            currency=deposit.currency,
            status=DistributionStatus.PENDING.value,
            created_at=now
        ))

        return AccrualResult(
            deposit_id=deposit_id,
            user_id=deposit.user_id,
            currency=Currency(deposit.currency),
            earned=earned,
            elapsed_seconds=seconds,
            accrued_at=accrue_until,
            entry_id=entry_id,
            deactivated=expired
        )
