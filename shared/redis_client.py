"""
Redis клиент для межпроцессной блокировки цикла начислений
"""
import logging
import os
import socket
from typing import Optional
from uuid import uuid4

import redis.asyncio as redis

from shared.config import CYCLE_LOCK_TTL, REDIS_URL

logger = logging.getLogger(__name__)

# Глобальный Redis клиент
_redis_client: Optional[redis.Redis] = None

# Снимается только владельцем: сравнение токена и удаление атомарно
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


async def get_redis() -> redis.Redis:
    """
    Получить Redis клиент
    """
    global _redis_client

    if _redis_client is None:
        _redis_client = redis.from_url(
            REDIS_URL,
            encoding="utf-8",
            decode_responses=True
        )
        logger.info("Redis client initialized")

    return _redis_client


async def close_redis():
    """
    Закрыть Redis соединение
    """
    global _redis_client

    if _redis_client:
        await _redis_client.close()
        _redis_client = None
        logger.info("Redis client closed")


class CycleLock:
    """
    Блокировка SET NX EX: один цикл начислений на все процессы воркера
    """

    def __init__(self, key: str = "unifarm:reward_cycle_lock", ttl: int = CYCLE_LOCK_TTL, client: Optional[redis.Redis] = None):
        self.key = key
        self.ttl = ttl
        self.redis_client = client
        self.token = f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex}"

    async def _get_client(self):
        if not self.redis_client:
            self.redis_client = await get_redis()
        return self.redis_client

    async def acquire(self) -> bool:
        client = await self._get_client()
        acquired = await client.set(self.key, self.token, nx=True, ex=self.ttl)
        if acquired:
            logger.debug(f"Cycle lock {self.key} acquired by {self.token}")
        return bool(acquired)

    async def release(self):
        client = await self._get_client()
        released = await client.eval(RELEASE_SCRIPT, 1, self.key, self.token)
        if not released:
            logger.warning(f"Cycle lock {self.key} was not held by {self.token} (expired?)")
