"""
Повторы операций с хранилищем при временных сбоях
"""
import asyncio
import logging
from typing import Callable, Optional

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError

from farming.errors import TransientStoreError
from shared.config import STORE_RETRY_ATTEMPTS, STORE_RETRY_DELAY

logger = logging.getLogger(__name__)


def is_transient(error: Exception) -> bool:
    """
    Классифицировать ошибку: временная (можно повторить) или нет
    """
    if isinstance(error, (TransientStoreError, ConnectionError, asyncio.TimeoutError)):
        return True

    if isinstance(error, (OperationalError, InterfaceError)):
        return True

    if isinstance(error, DBAPIError) and error.connection_invalidated:
        return True

    error_str = str(error).lower()
    return any(keyword in error_str for keyword in [
        "connection reset", "connection refused", "server closed the connection",
        "deadlock detected", "could not serialize access"
    ])


class StoreRetryHandler:
    """
    Выполнение единицы работы с хранилищем с ограниченным числом повторов
    и экспоненциальной задержкой
    """

    def __init__(
        self,
        max_retries: int = STORE_RETRY_ATTEMPTS,
        retry_delay: float = STORE_RETRY_DELAY,
        on_error_callback: Optional[Callable] = None
    ):
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.on_error_callback = on_error_callback

    async def execute_with_retry(self, func: Callable, *args, **kwargs):
        """
        Выполнить async функцию с повторами

        Функция должна сама открывать сессию: каждая попытка
        выполняется в новой транзакции.

        Raises:
            TransientStoreError: если все попытки завершились временной ошибкой
            Exception: любая не временная ошибка пробрасывается сразу
        """
        last_error = None

        for attempt in range(self.max_retries):
            try:
                return await func(*args, **kwargs)

            except Exception as e:
                if not is_transient(e):
                    raise

                last_error = e
                logger.warning(
                    f"Transient store error (attempt {attempt + 1}/{self.max_retries}): "
                    f"{type(e).__name__}: {e}"
                )

                if attempt < self.max_retries - 1:
                    wait_time = self.retry_delay * (2 ** attempt)  # Exponential backoff
                    await asyncio.sleep(wait_time)

        # Все попытки исчерпаны
        logger.error(f"All {self.max_retries} store attempts failed: {last_error}")

        if self.on_error_callback:
            await self.on_error_callback(
                "max_retries_exceeded",
                f"Store operation failed after {self.max_retries} attempts: {last_error}"
            )

        raise TransientStoreError(
            f"Failed after {self.max_retries} attempts: {last_error}"
        ) from last_error
