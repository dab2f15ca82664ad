"""
Хранилище журнала транзакций с партиционированием по времени

Все изменения балансов проходят через apply_entry: строка пользователя
блокируется (SELECT ... FOR UPDATE), баланс меняется и запись журнала
добавляется в одной транзакции БД.
"""
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Tuple
from uuid import UUID, uuid4

from pydantic import BaseModel
from sqlalchemy import select, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from farming.errors import (
    InsufficientBalanceError,
    InvalidStatusTransitionError,
    PartitionGapError,
    UserNotFoundError,
)
from farming.partition_plan import (
    PartitionSpec,
    default_partition_name,
    find_coverage_issues,
    floor_boundary,
    plan_partitions,
    render_backfill_ddl,
    render_ddl,
    render_default_ddl,
)
from farming.schemas import (
    Currency,
    EnsureResult,
    EntryFilters,
    EntryStatus,
    LedgerEntry,
    NewLedgerEntry,
    PartitionHealth,
    PartitionInfo,
    ReconciliationLine,
    ReconciliationReport,
    TimeRange,
)
from shared.config import (
    PARTITION_CATCH_ALL_ENABLED,
    PARTITION_FORWARD_HORIZON_DAYS,
    PARTITION_GRANULARITY,
    TRANSACTIONS_TABLE,
)
from shared.database import LedgerPartition, PartitionLog, Transaction, User, to_naive_utc, utcnow
from shared.money import ZERO, add

logger = logging.getLogger(__name__)

STATUS_CREATED = "created"
STATUS_FAILED = "failed"


class PartitionConfig(BaseModel):
    """Настройки партиционирования, передаются хранилищу при создании"""
    table_name: str = TRANSACTIONS_TABLE
    granularity: str = PARTITION_GRANULARITY
    forward_horizon_days: int = PARTITION_FORWARD_HORIZON_DAYS
    catch_all_enabled: bool = PARTITION_CATCH_ALL_ENABLED


def _is_already_exists(error: Exception) -> bool:
    error_str = str(error).lower()
    return "already exists" in error_str or "duplicate key" in error_str or "already a partition" in error_str


class LedgerStore:
    """Журнал транзакций и жизненный цикл его партиций"""

    def __init__(self, session_factory: async_sessionmaker, config: Optional[PartitionConfig] = None):
        self.session_factory = session_factory
        self.config = config or PartitionConfig()

    # ========== Записи журнала ==========

    async def append_entry(self, session: AsyncSession, entry: NewLedgerEntry) -> UUID:
        """
        Добавить запись в журнал (в транзакции вызывающего)

        Raises:
            PartitionGapError: ни одна партиция не покрывает entry.created_at
        """
        created_at = to_naive_utc(entry.created_at)
        partition = await self.resolve_partition(session, created_at)

        transaction = Transaction(
            id=uuid4(),
            created_at=created_at,
            user_id=entry.user_id,
            type=entry.type.value,
            currency=entry.currency.value,
            amount=entry.amount,
            status=entry.status.value,
            source_user_id=entry.source_user_id,
            level=entry.level,
            event_ref=entry.event_ref,
            meta=entry.meta or None
        )
        session.add(transaction)
        await session.flush()

        logger.debug(
            f"Appended {entry.type.value} entry {transaction.id} for user {entry.user_id}: "
            f"{entry.amount} {entry.currency.value} -> {partition}"
        )
        return transaction.id

    async def apply_entry(self, session: AsyncSession, entry: NewLedgerEntry) -> Tuple[UUID, Decimal]:
        """
        Изменить баланс пользователя и записать транзакцию атомарно.
        Подтверждённая запись меняет баланс сразу, pending только при подтверждении.

        Returns:
            (entry_id, баланс после операции)
        """
        user = await self.get_user(session, entry.user_id, for_update=True)

        balance = user.get_balance(entry.currency.value)
        if entry.status == EntryStatus.CONFIRMED:
            new_balance = add(balance, entry.amount)
            if new_balance < ZERO:
                raise InsufficientBalanceError(
                    f"User {user.id} has {balance} {entry.currency.value}, "
                    f"cannot apply {entry.amount}"
                )
            user.set_balance(entry.currency.value, new_balance)
            balance = new_balance

        entry_id = await self.append_entry(session, entry)
        return entry_id, balance

    async def get_user(self, session: AsyncSession, user_id: int, for_update: bool = False) -> User:
        query = select(User).where(User.id == user_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await session.execute(query)
        user = result.scalar_one_or_none()
        if not user:
            raise UserNotFoundError(f"User {user_id} not found")
        return user

    async def list_entries(
        self,
        session: AsyncSession,
        user_id: int,
        filters: Optional[EntryFilters] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[LedgerEntry]:
        """Страница записей пользователя, от новых к старым"""
        query = select(Transaction).where(Transaction.user_id == user_id)

        if filters:
            if filters.type:
                query = query.where(Transaction.type == filters.type.value)
            if filters.currency:
                query = query.where(Transaction.currency == filters.currency.value)
            if filters.status:
                query = query.where(Transaction.status == filters.status.value)
            if filters.since:
                query = query.where(Transaction.created_at >= to_naive_utc(filters.since))
            if filters.until:
                query = query.where(Transaction.created_at < to_naive_utc(filters.until))

        query = query.order_by(
            Transaction.created_at.desc(), Transaction.id.desc()
        ).limit(limit).offset(offset)

        result = await session.execute(query)
        return [LedgerEntry.model_validate(row) for row in result.scalars().all()]

    async def get_entry(self, session: AsyncSession, entry_id: UUID, for_update: bool = False) -> Optional[Transaction]:
        query = select(Transaction).where(Transaction.id == entry_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await session.execute(query)
        return result.scalar_one_or_none()

    async def find_entry_by_event_ref(
        self,
        session: AsyncSession,
        user_id: int,
        event_ref: str,
        entry_type: Optional[str] = None
    ) -> Optional[Transaction]:
        query = select(Transaction).where(
            Transaction.event_ref == event_ref,
            Transaction.user_id == user_id
        )
        if entry_type:
            query = query.where(Transaction.type == entry_type)
        result = await session.execute(query.limit(1))
        return result.scalar_one_or_none()

    async def set_entry_status(self, session: AsyncSession, entry_id: UUID, status: EntryStatus) -> Transaction:
        """
        Перевести запись pending -> confirmed | rejected.
        При подтверждении сумма применяется к балансу.
        """
        if status == EntryStatus.PENDING:
            raise InvalidStatusTransitionError("Entry cannot be moved back to pending")

        transaction = await self.get_entry(session, entry_id, for_update=True)
        if not transaction:
            raise InvalidStatusTransitionError(f"Entry {entry_id} not found")

        if transaction.status != EntryStatus.PENDING.value:
            raise InvalidStatusTransitionError(
                f"Entry {entry_id} is {transaction.status}, only pending entries can change status"
            )

        if status == EntryStatus.CONFIRMED:
            user = await self.get_user(session, transaction.user_id, for_update=True)
            new_balance = add(user.get_balance(transaction.currency), transaction.amount)
            if new_balance < ZERO:
                raise InsufficientBalanceError(
                    f"User {user.id} cannot cover entry {entry_id}: {transaction.amount} {transaction.currency}"
                )
            user.set_balance(transaction.currency, new_balance)

        transaction.status = status.value
        await session.flush()

        logger.info(f"Entry {entry_id} status changed: pending -> {status.value}")
        return transaction

    async def reconcile_user(self, session: AsyncSession, user_id: int) -> ReconciliationReport:
        """Сверка: сумма подтверждённых записей против текущего баланса по каждой валюте"""
        user = await self.get_user(session, user_id)

        result = await session.execute(
            select(Transaction.currency, Transaction.amount).where(
                Transaction.user_id == user_id,
                Transaction.status == EntryStatus.CONFIRMED.value
            )
        )
        sums: Dict[str, Decimal] = {currency.value: ZERO for currency in Currency}
        for currency, amount in result.all():
            sums[currency] = add(sums.get(currency, ZERO), amount)

        lines = [
            ReconciliationLine(
                currency=currency,
                balance=user.get_balance(currency.value),
                ledger_sum=sums[currency.value]
            )
            for currency in Currency
        ]

        report = ReconciliationReport(user_id=user_id, lines=lines)
        if not report.ok:
            logger.warning(
                f"Ledger drift for user {user_id}: "
                + ", ".join(f"{line.currency.value}={line.drift}" for line in lines if line.drift != 0)
            )
        return report

    # ========== Партиции ==========

    async def resolve_partition(self, session: AsyncSession, moment: datetime) -> str:
        """
        Имя партиции, в которую попадёт запись с этим временем

        Raises:
            PartitionGapError: нет ни диапазонной, ни catch-all партиции
        """
        result = await session.execute(
            select(LedgerPartition.name).where(
                LedgerPartition.status == STATUS_CREATED,
                LedgerPartition.is_default.is_(False),
                LedgerPartition.range_start <= moment,
                LedgerPartition.range_end > moment
            ).limit(1)
        )
        name = result.scalar_one_or_none()
        if name:
            return name

        result = await session.execute(
            select(LedgerPartition.name).where(
                LedgerPartition.status == STATUS_CREATED,
                LedgerPartition.is_default.is_(True)
            ).limit(1)
        )
        name = result.scalar_one_or_none()
        if name:
            return name

        raise PartitionGapError(moment, self.config.table_name)

    async def bootstrap(self, now: Optional[datetime] = None) -> EnsureResult:
        """catch-all партиция и партиции на горизонт вперёд"""
        now = to_naive_utc(now or utcnow())

        result = EnsureResult()
        if self.config.catch_all_enabled:
            default_result = await self.ensure_default_partition()
            result.created.extend(default_result.created)
            result.existing.extend(default_result.existing)
            result.failed.extend(default_result.failed)

        horizon = await self.ensure_forward_horizon(now)
        result.created.extend(horizon.created)
        result.existing.extend(horizon.existing)
        result.failed.extend(horizon.failed)
        return result

    async def ensure_forward_horizon(self, now: datetime) -> EnsureResult:
        """Партиции от текущей до now + forward_horizon_days (конец округляется вверх до границы)"""
        now = to_naive_utc(now)
        start = floor_boundary(now, self.config.granularity)
        end = now + timedelta(days=self.config.forward_horizon_days)
        return await self.ensure_partitions_covering(start, end)

    async def ensure_partitions_covering(self, start: datetime, end: datetime) -> EnsureResult:
        """
        Идемпотентно создать недостающие партиции для [start, end).
        Повторный или конкурентный вызов не создаёт дубликатов и не падает.
        """
        start = to_naive_utc(start)
        end = to_naive_utc(end)
        specs = plan_partitions(self.config.table_name, start, end, self.config.granularity)
        result = EnsureResult()

        async with self.session_factory() as session:
            descriptors = (await session.execute(
                select(LedgerPartition).where(LedgerPartition.is_default.is_(False))
            )).scalars().all()

        by_name = {d.name: d for d in descriptors}
        created_specs = [
            PartitionSpec(d.name, d.range_start, d.range_end)
            for d in descriptors if d.status == STATUS_CREATED
        ]

        for spec in specs:
            existing = by_name.get(spec.name)
            if existing and existing.status == STATUS_CREATED:
                result.existing.append(spec.name)
                continue

            conflicts = [other.name for other in created_specs if other.name != spec.name and other.overlaps(spec)]
            if conflicts:
                message = f"Partition {spec.name} would overlap {', '.join(conflicts)}"
                logger.error(message)
                await self._log_operation("create", spec.name, "skipped", error_message=message)
                result.failed.append({"name": spec.name, "error": message})
                continue

            ok, outcome = await self._create_partition(spec)
            if ok:
                (result.created if outcome == STATUS_CREATED else result.existing).append(spec.name)
                created_specs.append(spec)
            else:
                result.failed.append({"name": spec.name, "error": outcome})

        if result.created:
            logger.info(f"Created {len(result.created)} partitions of {self.config.table_name}: {result.created}")
        if result.failed:
            logger.error(f"Failed to create {len(result.failed)} partitions: {result.failed}")
        return result

    async def ensure_default_partition(self) -> EnsureResult:
        """Создать catch-all партицию"""
        name = default_partition_name(self.config.table_name)
        result = EnsureResult()

        async with self.session_factory() as session:
            existing = (await session.execute(
                select(LedgerPartition).where(LedgerPartition.name == name)
            )).scalar_one_or_none()

        if existing and existing.status == STATUS_CREATED:
            result.existing.append(name)
            return result

        ok, outcome = await self._create_partition(None)
        if ok:
            (result.created if outcome == STATUS_CREATED else result.existing).append(name)
        else:
            result.failed.append({"name": name, "error": outcome})
        return result

    async def _create_partition(self, spec: Optional[PartitionSpec]) -> Tuple[bool, str]:
        """
        Создать одну партицию (spec=None: catch-all).

        Returns:
            (успех, "created" | "existing" | текст ошибки)
        """
        table = self.config.table_name
        name = default_partition_name(table) if spec is None else spec.name

        async with self.session_factory() as session:
            try:
                statements = await self._partition_statements(session, spec)
                ddl = ";\n".join(statements)
                if self._dialect(session) == "postgresql":
                    for statement in statements:
                        await session.execute(text(statement))
                await self._upsert_descriptor(session, name, spec, STATUS_CREATED)
                session.add(PartitionLog(
                    operation_type="create",
                    partition_name=name,
                    status="success",
                    notes=ddl
                ))
                await session.commit()
                logger.info(f"Partition {name} created")
                return True, STATUS_CREATED

            except DBAPIError as e:
                await session.rollback()
                if not _is_already_exists(e):
                    error_message = str(e.orig if e.orig is not None else e)
                    logger.error(f"Error creating partition {name}: {error_message}")
                    await self._record_failure(name, spec, error_message)
                    return False, error_message

        # Другой воркер успел создать партицию первым
        logger.info(f"Partition {name} already created concurrently")
        async with self.session_factory() as session:
            await self._upsert_descriptor(session, name, spec, STATUS_CREATED)
            await session.commit()
        return True, "existing"

    async def _partition_statements(self, session: AsyncSession, spec: Optional[PartitionSpec]) -> List[str]:
        """DDL одной партиции; с переносом строк, если они уже попали в catch-all"""
        table = self.config.table_name
        if spec is None:
            return [render_default_ddl(table)]

        if self.config.catch_all_enabled and await self._has_entries_in_range(session, spec):
            logger.warning(f"Catch-all partition holds entries of {spec.name}, moving them before attach")
            return render_backfill_ddl(spec, table)
        return [render_ddl(spec, table)]

    @staticmethod
    async def _has_entries_in_range(session: AsyncSession, spec: PartitionSpec) -> bool:
        # Диапазон ещё не покрыт партицией, поэтому такие строки лежат в catch-all
        result = await session.execute(
            select(Transaction.id).where(
                Transaction.created_at >= spec.range_start,
                Transaction.created_at < spec.range_end
            ).limit(1)
        )
        return result.first() is not None

    async def _record_failure(self, name: str, spec: Optional[PartitionSpec], error_message: str):
        async with self.session_factory() as session:
            await self._upsert_descriptor(session, name, spec, STATUS_FAILED, error_message)
            session.add(PartitionLog(
                operation_type="create",
                partition_name=name,
                status="error",
                error_message=error_message
            ))
            await session.commit()

    async def _upsert_descriptor(
        self,
        session: AsyncSession,
        name: str,
        spec: Optional[PartitionSpec],
        status: str,
        error: Optional[str] = None
    ):
        insert = postgresql.insert if self._dialect(session) == "postgresql" else sqlite.insert
        values = {
            "name": name,
            "range_start": spec.range_start if spec else None,
            "range_end": spec.range_end if spec else None,
            "is_default": spec is None,
            "status": status,
            "error": error,
            "created_at": utcnow(),
        }
        statement = insert(LedgerPartition).values(**values)
        if status == STATUS_CREATED:
            statement = statement.on_conflict_do_update(
                index_elements=["name"],
                set_={"status": STATUS_CREATED, "error": None}
            )
        else:
            # Неудача не перезаписывает уже созданную партицию
            statement = statement.on_conflict_do_update(
                index_elements=["name"],
                set_={"status": STATUS_FAILED, "error": error},
                where=LedgerPartition.status != STATUS_CREATED
            )
        await session.execute(statement)

    async def _log_operation(
        self,
        operation_type: str,
        partition_name: str,
        status: str,
        notes: Optional[str] = None,
        error_message: Optional[str] = None
    ):
        async with self.session_factory() as session:
            session.add(PartitionLog(
                operation_type=operation_type,
                partition_name=partition_name,
                status=status,
                notes=notes,
                error_message=error_message
            ))
            await session.commit()

    async def partition_health_check(self) -> PartitionHealth:
        """
        Разрывы и пересечения партиций по всей покрытой шкале.
        Только для мониторинга и тестов, не для пути записи.
        """
        async with self.session_factory() as session:
            descriptors = (await session.execute(select(LedgerPartition))).scalars().all()

        specs = [
            PartitionSpec(d.name, d.range_start, d.range_end)
            for d in descriptors if not d.is_default and d.status == STATUS_CREATED
        ]
        has_default = any(d.is_default and d.status == STATUS_CREATED for d in descriptors)
        failed = [d.name for d in descriptors if d.status == STATUS_FAILED]

        gaps, overlaps = find_coverage_issues(specs)

        return PartitionHealth(
            ok=not gaps and not overlaps and not failed,
            partition_count=len(specs),
            has_default=has_default,
            covered_from=min((s.range_start for s in specs), default=None),
            covered_to=max((s.range_end for s in specs), default=None),
            gaps=[TimeRange(start=gap_start, end=gap_end) for gap_start, gap_end in gaps],
            overlaps=[list(pair) for pair in overlaps],
            failed=failed
        )

    async def list_partitions(self) -> List[PartitionInfo]:
        """Список партиций; на PostgreSQL с размерами и оценкой числа строк"""
        async with self.session_factory() as session:
            descriptors = (await session.execute(
                select(LedgerPartition).order_by(
                    LedgerPartition.is_default, LedgerPartition.range_start
                )
            )).scalars().all()
            partitions = [PartitionInfo.model_validate(d) for d in descriptors]

            if self._dialect(session) == "postgresql":
                stats = await session.execute(
                    text(
                        "SELECT c.relname, pg_total_relation_size(c.oid), c.reltuples::bigint "
                        "FROM pg_inherits i "
                        "JOIN pg_class c ON c.oid = i.inhrelid "
                        "JOIN pg_class p ON p.oid = i.inhparent "
                        "WHERE p.relname = :table"
                    ),
                    {"table": self.config.table_name}
                )
                by_name = {row[0]: (row[1], row[2]) for row in stats.all()}
                for partition in partitions:
                    if partition.name in by_name:
                        partition.size_bytes, partition.row_count = by_name[partition.name]

        return partitions

    async def get_partition_logs(self, limit: int = 50) -> List[PartitionLog]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(PartitionLog).order_by(PartitionLog.id.desc()).limit(limit)
            )
            return list(result.scalars().all())

    @staticmethod
    def _dialect(session: AsyncSession) -> str:
        return session.get_bind().dialect.name
