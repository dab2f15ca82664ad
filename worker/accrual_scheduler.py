"""
Планировщик циклов начислений
"""
import asyncio
import logging

from farming.services.reward_orchestrator import RewardOrchestrator
from shared.config import ACCRUAL_INTERVAL

logger = logging.getLogger(__name__)


class AccrualScheduler:
    """
    Запускает цикл вознаграждений каждые interval секунд.
    Интервал отсчитывается от окончания предыдущего цикла.
    """

    def __init__(self, orchestrator: RewardOrchestrator, interval: int = ACCRUAL_INTERVAL):
        """
        Args:
            interval: Интервал между циклами в секундах (по умолчанию 60)
        """
        self.orchestrator = orchestrator
        self.interval = interval
        self.running = False

    async def start(self):
        """Запуск планировщика"""
        self.running = True
        logger.info(f"⏱ Accrual scheduler started (every {self.interval}s)")

        while self.running:
            try:
                await self.orchestrator.run_cycle()
                await asyncio.sleep(self.interval)

            except Exception as e:
                logger.error(f"Error in accrual scheduler loop: {e}", exc_info=True)
                await asyncio.sleep(self.interval)

    def stop(self):
        """Остановка планировщика"""
        self.running = False
        logger.info("⏱ Accrual scheduler stopped")
