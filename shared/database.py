"""
SQLAlchemy модели базы данных
"""
from datetime import datetime, timezone
from decimal import Decimal
import uuid

from sqlalchemy import (
    BigInteger, Boolean, Column, Date, DateTime, Integer,
    Numeric, String, Text, ForeignKey, JSON, PrimaryKeyConstraint,
    Index, Uuid
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.types import TypeDecorator

from shared.config import (
    DATABASE_URL,
    DATABASE_POOL_SIZE,
    DATABASE_MAX_OVERFLOW,
    TRANSACTIONS_TABLE,
)
from shared.money import quantize_money

# Создаем базовый класс
Base = declarative_base()


def utcnow() -> datetime:
    """Текущее время UTC без tzinfo (все колонки хранят naive UTC)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class Money(TypeDecorator):
    """
    Decimal(38, 18) для PostgreSQL.
    SQLite не хранит Decimal без потерь, поэтому там значение пишется строкой.
    """
    impl = Numeric(38, 18)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(64))
        return dialect.type_descriptor(Numeric(38, 18, asdecimal=True))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        value = quantize_money(value)
        if dialect.name == "sqlite":
            return str(value)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return quantize_money(Decimal(str(value)))


JSONType = JSON().with_variant(JSONB, "postgresql")


# ========== Модели ==========

class User(Base):
    """Пользователи"""
    __tablename__ = "users"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    telegram_id = Column(BigInteger, unique=True, nullable=True, index=True)
    username = Column(String(255))

    # Реферальная система
    ref_code = Column(String(16), unique=True, nullable=True, index=True)
    parent_ref_code = Column(String(16), nullable=True, index=True)  # слабая ссылка на ref_code пригласителя

    # Балансы
    balance_uni = Column(Money, default=Decimal("0"), nullable=False)
    balance_ton = Column(Money, default=Decimal("0"), nullable=False)

    # Ежедневный бонус
    checkin_last_date = Column(Date, nullable=True)
    checkin_streak = Column(Integer, default=0, nullable=False)

    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    # Relationships
    deposits = relationship("FarmingDeposit", back_populates="user")

    def get_balance(self, currency: str) -> Decimal:
        return getattr(self, BALANCE_FIELDS[currency])

    def set_balance(self, currency: str, value: Decimal):
        setattr(self, BALANCE_FIELDS[currency], value)


BALANCE_FIELDS = {
    "UNI": "balance_uni",
    "TON": "balance_ton",
}


class FarmingDeposit(Base):
    """Фарминг- и буст-депозиты"""
    __tablename__ = "farming_deposits"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, ForeignKey("users.id"), nullable=False, index=True)
    kind = Column(String(20), nullable=False, default="farming")  # farming, boost
    currency = Column(String(10), nullable=False)
    amount = Column(Money, nullable=False)
    rate_per_second = Column(Money, nullable=False)
    last_accrual_at = Column(DateTime, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    expires_at = Column(DateTime, nullable=True)
    boost_package_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    closed_at = Column(DateTime, nullable=True)

    # Relationships
    user = relationship("User", back_populates="deposits")

    __table_args__ = (
        Index('idx_deposit_active', 'is_active'),
        Index('idx_deposit_user_kind', 'user_id', 'kind'),
    )


class Transaction(Base):
    """
    Журнал денежных событий.
    На PostgreSQL таблица партиционирована по created_at (RANGE),
    поэтому первичный ключ включает ключ партиционирования.
    """
    __tablename__ = TRANSACTIONS_TABLE

    id = Column(Uuid(as_uuid=True), default=uuid.uuid4, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    user_id = Column(BigInteger, ForeignKey("users.id"), nullable=False)
    type = Column(String(30), nullable=False)  # deposit, harvest, referral_bonus, withdrawal, bonus_claim, purchase
    currency = Column(String(10), nullable=False)
    amount = Column(Money, nullable=False)  # положительное для начисления, отрицательное для списания
    status = Column(String(20), default="confirmed", nullable=False)  # pending, confirmed, rejected
    source_user_id = Column(BigInteger, nullable=True)
    level = Column(Integer, nullable=True)
    event_ref = Column(String(100), nullable=True)
    meta = Column(JSONType, nullable=True)

    __table_args__ = (
        PrimaryKeyConstraint('id', 'created_at'),
        Index('idx_transaction_user_created', 'user_id', 'created_at'),
        Index('idx_transaction_event_ref', 'event_ref', 'user_id'),
        Index('idx_transaction_type', 'type'),
        {"postgresql_partition_by": "RANGE (created_at)"},
    )


class LedgerPartition(Base):
    """Описание партиций таблицы транзакций (служебные метаданные)"""
    __tablename__ = "ledger_partitions"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    name = Column(String(100), unique=True, nullable=False)
    range_start = Column(DateTime, nullable=True)  # NULL у catch-all партиции
    range_end = Column(DateTime, nullable=True)
    is_default = Column(Boolean, default=False, nullable=False)
    status = Column(String(20), nullable=False)  # created, failed
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index('idx_ledger_partition_range', 'range_start', 'range_end'),
    )


class PartitionLog(Base):
    """Журнал операций с партициями (только добавление)"""
    __tablename__ = "partition_logs"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    operation_type = Column(String(50), nullable=False)
    partition_name = Column(String(255), nullable=False)
    status = Column(String(50), nullable=False)
    notes = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index('idx_partition_logs_partition_name', 'partition_name'),
        Index('idx_partition_logs_created_at', 'created_at'),
    )


class RewardCycleLog(Base):
    """Отчёты циклов начислений"""
    __tablename__ = "reward_cycle_logs"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    cycle_id = Column(String(64), unique=True, nullable=False)
    status = Column(String(20), nullable=False)
    started_at = Column(DateTime, nullable=False)
    finished_at = Column(DateTime, nullable=True)
    accrued_count = Column(Integer, default=0, nullable=False)
    referral_credits_applied = Column(Integer, default=0, nullable=False)
    conflicts = Column(Integer, default=0, nullable=False)
    deferred = Column(Integer, default=0, nullable=False)
    distributions_recovered = Column(Integer, default=0, nullable=False)
    errors = Column(JSONType, nullable=True)

    __table_args__ = (
        Index('idx_reward_cycle_started_at', 'started_at'),
    )


class RewardDistributionLog(Base):
    """
    Статус реферального распределения по каждой записи harvest.
    Строка pending пишется в одной транзакции с harvest, поэтому
    незавершённое распределение подхватывается следующим циклом.
    """
    __tablename__ = "reward_distribution_logs"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    event_ref = Column(String(100), unique=True, nullable=False)
    source_user_id = Column(BigInteger, ForeignKey("users.id"), nullable=False)
    amount = Column(Money, nullable=False)
    currency = Column(String(10), nullable=False)
    status = Column(String(20), default="pending", nullable=False)  # pending, completed, failed
    attempts = Column(Integer, default=0, nullable=False)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index('idx_reward_distribution_status', 'status', 'created_at'),
    )


# ========== Функции для работы с БД ==========

def create_engine_for_url(url: str) -> AsyncEngine:
    """Создать async engine (postgresql:// -> postgresql+asyncpg://)"""
    return create_async_engine(
        url.replace("postgresql://", "postgresql+asyncpg://"),
        echo=False,
        pool_pre_ping=True,
        pool_size=DATABASE_POOL_SIZE,
        max_overflow=DATABASE_MAX_OVERFLOW
    )


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False
    )


# Создаем async engine
engine = create_engine_for_url(DATABASE_URL)

# Создаем session maker
AsyncSessionLocal = create_session_factory(engine)


async def init_db(bind: AsyncEngine = None):
    """Инициализация базы данных"""
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db():
    """Закрыть соединение с БД"""
    await engine.dispose()


# Импортируем Referral после определения всех моделей
from shared.referral_model import Referral  # noqa: E402,F401
