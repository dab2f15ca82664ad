"""
Зависимости FastAPI для ops API
"""
from fastapi import Depends
from sqlalchemy.ext.asyncio import async_sessionmaker

from farming.services.ledger_store import LedgerStore
from shared.database import AsyncSessionLocal
from shared.redis_client import get_redis


def get_session_factory() -> async_sessionmaker:
    return AsyncSessionLocal


def get_ledger(session_factory: async_sessionmaker = Depends(get_session_factory)) -> LedgerStore:
    return LedgerStore(session_factory)


async def get_redis_client():
    return await get_redis()
