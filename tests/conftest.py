# tests/conftest.py
import itertools
from datetime import datetime
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from farming.services.accrual_engine import AccrualEngine
from farming.services.ledger_store import LedgerStore, PartitionConfig
from farming.services.referral_distributor import ReferralDistributor, ReferralPolicy
from farming.services.reward_orchestrator import RewardOrchestrator
from shared.database import FarmingDeposit, Transaction, User, create_session_factory, init_db
from shared.retry import StoreRetryHandler

# Фиксированное "сейчас" для всех тестов (naive UTC)
NOW = datetime(2025, 1, 15, 12, 0, 0)

_telegram_ids = itertools.count(100000)


@pytest_asyncio.fixture
async def db_engine():
    """
    In-memory SQLite: одно соединение на тест, чистая схема
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    await init_db(engine)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def retry_handler():
    return StoreRetryHandler(max_retries=2, retry_delay=0)


@pytest.fixture
def partition_config():
    return PartitionConfig(
        table_name="transactions",
        granularity="day",
        forward_horizon_days=7,
        catch_all_enabled=True
    )


@pytest_asyncio.fixture
async def ledger(session_factory, partition_config):
    store = LedgerStore(session_factory, partition_config)
    await store.bootstrap(NOW)
    return store


@pytest.fixture
def policy():
    return ReferralPolicy(["0.10", "0.05", "0.02"], max_depth=20)


@pytest.fixture
def accrual_engine(session_factory, ledger, retry_handler):
    return AccrualEngine(session_factory, ledger, retry_handler)


@pytest.fixture
def distributor(session_factory, ledger, policy, retry_handler):
    return ReferralDistributor(session_factory, ledger, policy, retry_handler)


@pytest.fixture
def orchestrator(accrual_engine, distributor, session_factory):
    return RewardOrchestrator(accrual_engine, distributor, session_factory, time_budget=30)


@pytest.fixture
def make_user(session_factory):
    """
    Создать пользователя напрямую (без записей журнала).
    Ненулевые балансы ломают сверку, поэтому по умолчанию 0.
    """
    async def _make_user(ref_code=None, parent=None, uni="0", ton="0"):
        async with session_factory() as session:
            user = User(
                telegram_id=next(_telegram_ids),
                username=ref_code,
                ref_code=ref_code,
                parent_ref_code=parent.ref_code if isinstance(parent, User) else parent,
                balance_uni=Decimal(uni),
                balance_ton=Decimal(ton),
                checkin_streak=0
            )
            session.add(user)
            await session.commit()
            return user

    return _make_user


@pytest.fixture
def make_chain(make_user):
    """
    Цепочка root <- u1 <- ... <- u{length}; возвращает список от корня к листу
    """
    async def _make_chain(length, prefix="chain"):
        users = [await make_user(ref_code=f"{prefix}0")]
        for index in range(1, length + 1):
            users.append(await make_user(ref_code=f"{prefix}{index}", parent=users[-1]))
        return users

    return _make_chain


@pytest.fixture
def make_deposit(session_factory):
    async def _make_deposit(user, amount, rate, last_accrual_at=NOW, kind="farming", currency="UNI", expires_at=None):
        async with session_factory() as session:
            deposit = FarmingDeposit(
                user_id=user.id,
                kind=kind,
                currency=currency,
                amount=Decimal(amount),
                rate_per_second=Decimal(rate),
                last_accrual_at=last_accrual_at,
                is_active=True,
                expires_at=expires_at,
                created_at=last_accrual_at
            )
            session.add(deposit)
            await session.commit()
            return deposit

    return _make_deposit


@pytest.fixture
def fetch_user(session_factory):
    async def _fetch_user(user_id):
        async with session_factory() as session:
            return await session.get(User, user_id)

    return _fetch_user


@pytest.fixture
def fetch_entries(session_factory):
    async def _fetch_entries(user_id=None, entry_type=None):
        async with session_factory() as session:
            query = select(Transaction).order_by(Transaction.created_at)
            if user_id is not None:
                query = query.where(Transaction.user_id == user_id)
            if entry_type is not None:
                query = query.where(Transaction.type == entry_type)
            result = await session.execute(query)
            return list(result.scalars().all())

    return _fetch_entries
