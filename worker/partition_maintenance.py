"""
Обслуживание партиций журнала транзакций
"""
import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

from farming.schemas import EnsureResult
from farming.services.ledger_store import LedgerStore
from shared.config import PARTITION_MAINTENANCE_INTERVAL
from shared.database import to_naive_utc, utcnow

logger = logging.getLogger(__name__)


class PartitionMaintenance:
    """
    Периодически создаёт партиции на горизонт вперёд
    и проверяет покрытие шкалы времени
    """

    def __init__(
        self,
        ledger: LedgerStore,
        interval: int = PARTITION_MAINTENANCE_INTERVAL,
        on_failure: Optional[Callable[[list], Awaitable]] = None
    ):
        """
        Args:
            interval: Интервал запуска в секундах
            on_failure: async функция, получает список несозданных партиций
        """
        self.ledger = ledger
        self.interval = interval
        self.on_failure = on_failure
        self.running = False

    async def start(self):
        """Запуск обслуживания"""
        self.running = True
        logger.info("🗂 Partition maintenance started")

        while self.running:
            try:
                await self.run_maintenance()
                await asyncio.sleep(self.interval)

            except Exception as e:
                logger.error(f"Error in partition maintenance loop: {e}", exc_info=True)
                await asyncio.sleep(self.interval)

    def stop(self):
        """Остановка обслуживания"""
        self.running = False
        logger.info("🗂 Partition maintenance stopped")

    async def run_maintenance(self, now: Optional[datetime] = None) -> EnsureResult:
        now = to_naive_utc(now or utcnow())
        logger.info("🗂 Starting partition maintenance...")

        result = await self.ledger.bootstrap(now)

        health = await self.ledger.partition_health_check()
        if not health.ok:
            logger.warning(
                f"Partition coverage issues: gaps={len(health.gaps)}, "
                f"overlaps={len(health.overlaps)}, failed={health.failed}"
            )

        if result.failed and self.on_failure is not None:
            try:
                await self.on_failure(result.failed)
            except Exception as e:
                logger.error(f"Failed to report partition failures: {e}")

        logger.info(
            f"🗂 Partition maintenance completed: created={len(result.created)}, "
            f"existing={len(result.existing)}, failed={len(result.failed)}"
        )
        return result
