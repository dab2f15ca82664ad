"""
Оркестратор цикла вознаграждений

Один цикл: повтор незавершённых распределений прошлых циклов, начисление
по всем активным депозитам, затем распределение реферальных долей
по каждой записи harvest (event_ref = id записи).
Одновременно выполняется не более одного цикла.
"""
import logging
import time
from datetime import datetime
from typing import Awaitable, Callable, Optional
from uuid import uuid4

from sqlalchemy.ext.asyncio import async_sessionmaker

from farming.schemas import AccrualReport, CycleError, CycleReport, CycleStatus
from farming.services.accrual_engine import AccrualEngine
from farming.services.referral_distributor import ReferralDistributor, failure_kind
from shared.config import CYCLE_TIME_BUDGET
from shared.database import RewardCycleLog, to_naive_utc, utcnow

logger = logging.getLogger(__name__)

PARTITION_GAP = "partition_gap"


class RewardOrchestrator:
    """
    Состояния: idle -> running -> completed | failed.
    Повторный запуск во время running пропускается.
    """

    def __init__(
        self,
        accrual_engine: AccrualEngine,
        distributor: ReferralDistributor,
        session_factory: async_sessionmaker,
        time_budget: float = CYCLE_TIME_BUDGET,
        lock=None,
        alert_callback: Optional[Callable[[str], Awaitable]] = None
    ):
        """
        Args:
            lock: межпроцессная блокировка с async acquire()/release()
            alert_callback: async функция для критичных уведомлений
        """
        self.accrual_engine = accrual_engine
        self.distributor = distributor
        self.session_factory = session_factory
        self.time_budget = time_budget
        self.lock = lock
        self.alert_callback = alert_callback

        self.state = CycleStatus.IDLE
        self.last_report: Optional[CycleReport] = None

    @property
    def running(self) -> bool:
        return self.state == CycleStatus.RUNNING

    async def run_cycle(self, now: Optional[datetime] = None) -> Optional[CycleReport]:
        """
        Выполнить один цикл

        Returns:
            CycleReport или None, если цикл уже идёт (здесь или в другом процессе)
        """
        if self.running:
            logger.warning("Reward cycle is already running, trigger skipped")
            return None

        previous_state = self.state
        self.state = CycleStatus.RUNNING

        try:
            if self.lock is not None:
                try:
                    acquired = await self.lock.acquire()
                except Exception as e:
                    # Без блокировки двойное начисление всё равно исключено условным UPDATE
                    logger.warning(f"Cycle lock unavailable, running without it: {e}")
                    acquired = None

                if acquired is False:
                    logger.info("Reward cycle is running in another process, trigger skipped")
                    self.state = previous_state
                    return None

            try:
                report = await self._run(now)
            finally:
                if self.lock is not None:
                    try:
                        await self.lock.release()
                    except Exception as e:
                        logger.warning(f"Failed to release cycle lock: {e}")

        except BaseException:
            self.state = CycleStatus.FAILED
            raise

        self.state = report.status
        self.last_report = report
        return report

    async def _run(self, now: Optional[datetime]) -> CycleReport:
        started_at = utcnow()
        now = to_naive_utc(now or started_at)
        deadline = time.monotonic() + self.time_budget

        report = CycleReport(
            cycle_id=str(uuid4()),
            status=CycleStatus.RUNNING,
            started_at=started_at
        )
        logger.info(f"🔄 Reward cycle {report.cycle_id} started (now={now.isoformat()})")

        fatal = None
        try:
            await self._recover(report, deadline)
            accrual = await self.accrual_engine.accrue_all(now, deadline)
            self._collect_accrual(report, accrual)
            await self._distribute(report, accrual)

        except Exception as e:
            fatal = e
            logger.error(f"Reward cycle {report.cycle_id} aborted: {e}", exc_info=True)
            report.errors.append(CycleError(kind=failure_kind(e), message=str(e)))

        report.finished_at = utcnow()
        report.status = CycleStatus.FAILED if report.errors else CycleStatus.COMPLETED

        await self._persist(report)
        self._log_report(report)

        gaps = [error for error in report.errors if error.kind == PARTITION_GAP]
        if gaps:
            await self._alert(
                f"Reward cycle {report.cycle_id}: no partition for ledger writes "
                f"({len(gaps)} operations failed). First error: {gaps[0].message}"
            )
        elif fatal is not None:
            await self._alert(f"Reward cycle {report.cycle_id} aborted: {fatal}")

        return report

    def _collect_accrual(self, report: CycleReport, accrual: AccrualReport):
        report.accrued_count = len(accrual.results)
        report.conflicts = accrual.conflicts
        report.deferred = accrual.deferred
        for failure in accrual.failures:
            report.errors.append(CycleError(
                kind=failure.kind,
                message=failure.message,
                deposit_id=failure.deposit_id,
                user_id=failure.user_id
            ))

    async def _recover(self, report: CycleReport, deadline: float):
        """
        Повторить распределения прошлых циклов, оставшиеся pending или failed.
        Уже начисленные предки пропускаются по event_ref.
        """
        pending = await self.distributor.pending_distributions()
        if not pending:
            return

        logger.info(f"Recovering {len(pending)} unfinished referral distributions")
        for index, log in enumerate(pending):
            if time.monotonic() >= deadline:
                logger.warning(f"Cycle time budget exhausted, {len(pending) - index} distributions left for later")
                break

            await self._distribute_event(report, log.source_user_id, log.amount, log.currency, log.event_ref)
            report.distributions_recovered += 1

    async def _distribute(self, report: CycleReport, accrual: AccrualReport):
        """
        Распределить доли по записям harvest этого цикла.
        Выполняется и после исчерпания бюджета: записи уже зафиксированы.
        """
        for result in accrual.results:
            await self._distribute_event(
                report, result.user_id, result.earned, result.currency, str(result.entry_id),
                deposit_id=result.deposit_id
            )

    async def _distribute_event(
        self,
        report: CycleReport,
        source_user_id: int,
        amount,
        currency,
        event_ref: str,
        deposit_id: Optional[int] = None
    ):
        try:
            distribution = await self.distributor.distribute(source_user_id, amount, currency, event_ref)
        except Exception as e:
            logger.error(f"Referral distribution for {event_ref} failed: {e}", exc_info=True)
            report.errors.append(CycleError(
                kind=failure_kind(e),
                message=str(e),
                deposit_id=deposit_id,
                user_id=source_user_id,
                event_ref=event_ref
            ))
            return

        report.referral_credits_applied += len(distribution.applied)

        if distribution.resolution_error:
            report.errors.append(CycleError(
                kind="ancestor_resolution",
                message=distribution.resolution_error,
                user_id=source_user_id,
                event_ref=event_ref
            ))

        for credit in distribution.failed:
            report.errors.append(CycleError(
                kind=credit.kind or "referral_credit_failed",
                message=f"Ancestor {credit.ancestor_id} (level {credit.level}): {credit.error}",
                user_id=credit.ancestor_id,
                event_ref=event_ref
            ))

    async def _persist(self, report: CycleReport):
        async with self.session_factory() as session:
            try:
                session.add(RewardCycleLog(
                    cycle_id=report.cycle_id,
                    status=report.status.value,
                    started_at=report.started_at,
                    finished_at=report.finished_at,
                    accrued_count=report.accrued_count,
                    referral_credits_applied=report.referral_credits_applied,
                    conflicts=report.conflicts,
                    deferred=report.deferred,
                    distributions_recovered=report.distributions_recovered,
                    errors=[error.model_dump() for error in report.errors] or None
                ))
                await session.commit()
            except Exception as e:
                await session.rollback()
                logger.error(f"Failed to save report of cycle {report.cycle_id}: {e}")

    def _log_report(self, report: CycleReport):
        duration = (report.finished_at - report.started_at).total_seconds()
        message = (
            f"Reward cycle {report.cycle_id} {report.status.value} in {duration:.2f}s: "
            f"accrued={report.accrued_count}, referral_credits={report.referral_credits_applied}, "
            f"recovered={report.distributions_recovered}, conflicts={report.conflicts}, "
            f"deferred={report.deferred}, errors={len(report.errors)}"
        )
        if report.status == CycleStatus.COMPLETED:
            logger.info(f"✅ {message}")
        else:
            logger.warning(f"⚠️ {message}")

    async def _alert(self, message: str):
        logger.critical(message)
        if self.alert_callback is None:
            return
        try:
            await self.alert_callback(message)
        except Exception as e:
            logger.error(f"Failed to send cycle alert: {e}")
