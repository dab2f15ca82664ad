"""
Worker движка вознаграждений: циклы начислений и обслуживание партиций
"""
import asyncio
import logging
import sys
from functools import partial
from pathlib import Path

# Добавляем корневую директорию в путь
sys.path.insert(0, str(Path(__file__).parent.parent))

from farming.services.accrual_engine import AccrualEngine
from farming.services.ledger_store import LedgerStore, PartitionConfig
from farming.services.referral_distributor import ReferralDistributor, ReferralPolicy
from farming.services.reward_orchestrator import RewardOrchestrator
from shared.admin_notifier import notify_admin_critical, notify_partition_failure, telegram_send
from shared.config import (
    CYCLE_LOCK_ENABLED,
    CYCLE_TIME_BUDGET,
    DATA_DIR,
    LOG_FORMAT,
    LOG_LEVEL,
    STORE_RETRY_ATTEMPTS,
    STORE_RETRY_DELAY,
    ensure_data_dirs,
)
from shared.database import AsyncSessionLocal, close_db, init_db
from shared.redis_client import CycleLock, close_redis
from shared.retry import StoreRetryHandler
from worker.accrual_scheduler import AccrualScheduler
from worker.partition_maintenance import PartitionMaintenance

ensure_data_dirs()

# Настройка логирования
logging.basicConfig(
    level=LOG_LEVEL,
    format=LOG_FORMAT,
    handlers=[
        logging.FileHandler(DATA_DIR / "logs" / "worker.log"),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)


async def _alert_on_retry_exhausted(error_type: str, message: str):
    logger.error(f"{error_type}: {message}")


class Worker:
    """Worker с двумя независимыми циклами"""

    def __init__(self):
        self.running = False

        retry_handler = StoreRetryHandler(
            max_retries=STORE_RETRY_ATTEMPTS,
            retry_delay=STORE_RETRY_DELAY,
            on_error_callback=_alert_on_retry_exhausted
        )
        self.ledger = LedgerStore(AsyncSessionLocal, PartitionConfig())
        self.accrual_engine = AccrualEngine(AsyncSessionLocal, self.ledger, retry_handler)
        self.distributor = ReferralDistributor(
            AsyncSessionLocal, self.ledger, ReferralPolicy.from_config(), retry_handler
        )
        self.orchestrator = RewardOrchestrator(
            self.accrual_engine,
            self.distributor,
            AsyncSessionLocal,
            time_budget=CYCLE_TIME_BUDGET,
            lock=CycleLock() if CYCLE_LOCK_ENABLED else None,
            alert_callback=partial(notify_admin_critical, send_func=telegram_send)
        )

        self.scheduler = AccrualScheduler(self.orchestrator)
        self.partition_maintenance = PartitionMaintenance(
            self.ledger,
            on_failure=partial(notify_partition_failure, send_func=telegram_send)
        )
        self.tasks = []

    async def start(self):
        """Запуск worker"""
        self.running = True
        logger.info("🚀 Reward worker started")

        # Инициализация БД
        await init_db()
        logger.info("✅ Database initialized")

        # Партиции должны существовать до первой записи в журнал
        result = await self.ledger.bootstrap()
        logger.info(f"✅ Partitions bootstrapped: created={len(result.created)}, failed={len(result.failed)}")

        self.tasks = [
            asyncio.create_task(self.partition_maintenance.start()),
            asyncio.create_task(self.scheduler.start()),
        ]
        logger.info("✅ Accrual scheduler and partition maintenance started")

        try:
            await asyncio.gather(*self.tasks)
        except asyncio.CancelledError:
            logger.info("Worker tasks cancelled")
        finally:
            await self.cleanup()

    async def cleanup(self):
        """Очистка ресурсов"""
        logger.info("🧹 Cleaning up...")

        self.scheduler.stop()
        self.partition_maintenance.stop()
        for task in self.tasks:
            task.cancel()

        await close_redis()
        await close_db()
        logger.info("✅ Worker stopped")

    def stop(self):
        """Остановка worker"""
        self.running = False
        self.scheduler.stop()
        self.partition_maintenance.stop()


async def main():
    """Главная функция"""
    worker = Worker()

    try:
        await worker.start()
    except KeyboardInterrupt:
        logger.info("Shutting down worker...")
        worker.stop()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
