"""
Health check endpoints
"""
import logging
from typing import Awaitable, Callable

from fastapi import APIRouter, Depends, Response
from sqlalchemy import text
from sqlalchemy.ext.asyncio import async_sessionmaker

from farming.services.ledger_store import LedgerStore
from ops_api.dependencies import get_ledger, get_redis_client, get_session_factory

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
async def health_check():
    """Базовый health check"""
    return {
        "status": "healthy",
        "service": "UniFarm reward engine"
    }


async def _check_dependency(service: str, response: Response, check: Callable[[], Awaitable]) -> dict:
    """Общий ответ health check внешней зависимости: 200 или 503 с текстом ошибки"""
    try:
        await check()
        return {
            "status": "healthy",
            "service": service
        }

    except Exception as e:
        logger.error(f"{service} health check failed: {e}")
        response.status_code = 503
        return {
            "status": "unhealthy",
            "service": service,
            "error": str(e)
        }


@router.get("/db")
async def health_check_db(response: Response, session_factory: async_sessionmaker = Depends(get_session_factory)):
    """
    Health check для PostgreSQL
    """
    async def select_one():
        async with session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            result.scalar()

    return await _check_dependency("postgresql", response, select_one)


@router.get("/redis")
async def health_check_redis(response: Response, redis_client=Depends(get_redis_client)):
    """
    Health check для Redis
    """
    return await _check_dependency("redis", response, lambda: redis_client.ping())


@router.get("/partitions")
async def health_check_partitions(response: Response, ledger: LedgerStore = Depends(get_ledger)):
    """
    Покрытие шкалы времени партициями журнала
    """
    try:
        health = await ledger.partition_health_check()

    except Exception as e:
        logger.error(f"Partition health check failed: {e}")
        response.status_code = 503
        return {
            "status": "unhealthy",
            "service": "partitions",
            "error": str(e)
        }

    if not health.ok:
        response.status_code = 503
    return {
        "status": "healthy" if health.ok else "unhealthy",
        "service": "partitions",
        "details": health.model_dump(mode="json")
    }
