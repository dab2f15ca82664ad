"""
Распределение реферальных вознаграждений по цепочке пригласителей
"""
import logging
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from farming.errors import (
    AncestorResolutionError,
    PartitionGapError,
    TransientStoreError,
    UserNotFoundError,
)
from farming.schemas import (
    AncestorCredit,
    Currency,
    DistributionResult,
    DistributionStatus,
    EntryType,
    NewLedgerEntry,
)
from farming.services.ledger_store import LedgerStore
from shared.config import (
    DISTRIBUTION_MAX_ATTEMPTS,
    DISTRIBUTION_RECOVERY_BATCH,
    REFERRAL_LEVEL_RATES,
    REFERRAL_MAX_DEPTH,
)
from shared.database import RewardDistributionLog, User, to_naive_utc, utcnow
from shared.money import ZERO, multiply, to_decimal
from shared.retry import StoreRetryHandler

logger = logging.getLogger(__name__)

MAX_SUPPORTED_DEPTH = 20


def failure_kind(error: Exception) -> str:
    if isinstance(error, PartitionGapError):
        return "partition_gap"
    if isinstance(error, TransientStoreError):
        return "transient_store_error"
    return type(error).__name__


class ReferralPolicy:
    """
    Доли вознаграждения по уровням (уровень 1 = прямой пригласитель).
    Доли не возрастают с глубиной.
    """

    def __init__(self, level_rates: Sequence, max_depth: int = REFERRAL_MAX_DEPTH):
        rates = [to_decimal(rate) for rate in level_rates]

        if max_depth < 1 or max_depth > MAX_SUPPORTED_DEPTH:
            raise ValueError(f"max_depth must be within 1..{MAX_SUPPORTED_DEPTH}, got {max_depth}")
        if len(rates) > max_depth:
            raise ValueError(f"{len(rates)} level rates configured but max_depth is {max_depth}")
        if any(rate < ZERO for rate in rates):
            raise ValueError("Referral level rates must not be negative")
        if any(deeper > shallower for shallower, deeper in zip(rates, rates[1:])):
            raise ValueError(f"Referral level rates must be non-increasing: {[str(r) for r in rates]}")

        self.level_rates = rates
        self.max_depth = max_depth

    @classmethod
    def from_config(cls) -> "ReferralPolicy":
        return cls(REFERRAL_LEVEL_RATES, REFERRAL_MAX_DEPTH)

    @property
    def depth(self) -> int:
        """Сколько уровней реально получают долю"""
        return min(len(self.level_rates), self.max_depth)

    def rate_for_level(self, level: int) -> Decimal:
        if level < 1 or level > len(self.level_rates):
            return ZERO
        return self.level_rates[level - 1]


class ReferralDistributor:
    """Начисление долей предкам пользователя, идемпотентно по event_ref"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        ledger: LedgerStore,
        policy: Optional[ReferralPolicy] = None,
        retry_handler: Optional[StoreRetryHandler] = None
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.policy = policy or ReferralPolicy.from_config()
        self.retry_handler = retry_handler or StoreRetryHandler()

    async def get_upline_chain(
        self,
        user_id: int,
        max_depth: Optional[int] = None
    ) -> Tuple[List[User], Optional[AncestorResolutionError]]:
        """
        Цепочка пригласителей по parent_ref_code, от прямого пригласителя вверх

        Returns:
            (предки по порядку уровней, ошибка разрешения или None)
        """
        async with self.session_factory() as session:
            return await self.resolve_upline(session, user_id, max_depth or self.policy.max_depth)

    async def resolve_upline(
        self,
        session: AsyncSession,
        user_id: int,
        max_depth: int
    ) -> Tuple[List[User], Optional[AncestorResolutionError]]:
        user = await session.get(User, user_id)
        if not user:
            raise UserNotFoundError(f"User {user_id} not found")

        chain: List[User] = []
        seen = {user.id}
        current = user

        while current.parent_ref_code and len(chain) < max_depth:
            level = len(chain) + 1
            result = await session.execute(
                select(User).where(User.ref_code == current.parent_ref_code)
            )
            parent = result.scalar_one_or_none()

            if parent is None:
                return chain, AncestorResolutionError(
                    current.id,
                    f"Inviter code {current.parent_ref_code!r} of user {current.id} cannot be resolved",
                    level
                )
            if parent.id in seen:
                return chain, AncestorResolutionError(
                    parent.id,
                    f"Referral cycle detected at user {parent.id} (level {level}) above user {user_id}",
                    level
                )

            seen.add(parent.id)
            chain.append(parent)
            current = parent

        return chain, None

    async def distribute(
        self,
        source_user_id: int,
        amount,
        currency: Currency,
        event_ref: str
    ) -> DistributionResult:
        """
        Начислить предкам source_user_id доли от amount

        Повторный вызов с тем же event_ref ничего не начисляет.
        Сбой одного предка не откатывает уже начисленное остальным.
        Итог записывается в reward_distribution_logs: failed
        распределения повторяются следующими циклами.
        """
        try:
            result = await self._fan_out(source_user_id, to_decimal(amount), Currency(currency), event_ref)
        except Exception as e:
            await self._record_outcome(event_ref, DistributionStatus.FAILED, str(e))
            raise

        if result.failed:
            errors = "; ".join(f"ancestor {credit.ancestor_id}: {credit.error}" for credit in result.failed)
            await self._record_outcome(event_ref, DistributionStatus.FAILED, errors)
        else:
            await self._record_outcome(event_ref, DistributionStatus.COMPLETED, result.resolution_error)
        return result

    async def pending_distributions(
        self,
        limit: int = DISTRIBUTION_RECOVERY_BATCH,
        max_attempts: int = DISTRIBUTION_MAX_ATTEMPTS
    ) -> List[RewardDistributionLog]:
        """Незавершённые распределения (pending и failed), старые первыми"""
        async with self.session_factory() as session:
            result = await session.execute(
                select(RewardDistributionLog)
                .where(
                    RewardDistributionLog.status.in_([
                        DistributionStatus.PENDING.value,
                        DistributionStatus.FAILED.value
                    ]),
                    RewardDistributionLog.attempts < max_attempts
                )
                .order_by(RewardDistributionLog.created_at, RewardDistributionLog.id)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def _record_outcome(self, event_ref: str, status: DistributionStatus, error: Optional[str] = None):
        async with self.session_factory() as session:
            try:
                await session.execute(
                    update(RewardDistributionLog)
                    .where(RewardDistributionLog.event_ref == event_ref)
                    .values(
                        status=status.value,
                        attempts=RewardDistributionLog.attempts + 1,
                        error=error,
                        processed_at=utcnow()
                    )
                )
                await session.commit()
            except Exception as e:
                await session.rollback()
                logger.error(f"Failed to record distribution status of {event_ref}: {e}")

    async def _fan_out(
        self,
        source_user_id: int,
        amount: Decimal,
        currency: Currency,
        event_ref: str
    ) -> DistributionResult:
        result = DistributionResult(
            event_ref=event_ref,
            source_user_id=source_user_id,
            currency=currency
        )

        if amount <= ZERO or self.policy.depth == 0:
            return result

        chain, resolution_error = await self.retry_handler.execute_with_retry(
            self.get_upline_chain, source_user_id, self.policy.depth
        )
        if resolution_error:
            logger.warning(f"Upline of user {source_user_id} truncated: {resolution_error}")
            result.resolution_error = str(resolution_error)

        for level, ancestor in enumerate(chain, start=1):
            rate = self.policy.rate_for_level(level)
            share = multiply(amount, rate)
            if share <= ZERO:
                continue

            try:
                entry_id, applied = await self.retry_handler.execute_with_retry(
                    self._credit_ancestor, ancestor.id, source_user_id, level, rate, share, currency, event_ref
                )
                result.credits.append(AncestorCredit(
                    ancestor_id=ancestor.id,
                    level=level,
                    amount=share,
                    status="applied" if applied else "duplicate",
                    entry_id=entry_id
                ))

            except Exception as e:
                logger.error(
                    f"Failed to credit ancestor {ancestor.id} (level {level}) for {event_ref}: {e}",
                    exc_info=True
                )
                result.credits.append(AncestorCredit(
                    ancestor_id=ancestor.id,
                    level=level,
                    amount=share,
                    status="failed",
                    kind=failure_kind(e),
                    error=str(e)
                ))

        if result.applied:
            logger.info(
                f"Referral reward {event_ref}: {len(result.applied)} ancestors of user {source_user_id} "
                f"credited {result.total_applied} {currency.value}"
            )
        return result

    async def _credit_ancestor(
        self,
        ancestor_id: int,
        source_user_id: int,
        level: int,
        rate: Decimal,
        share: Decimal,
        currency: Currency,
        event_ref: str
    ):
        """
        Returns:
            (entry_id, True если начислено сейчас / False если уже было)
        """
        async with self.session_factory() as session:
            try:
                # Блокировка строки предка сериализует проверку дубликата и запись
                await self.ledger.get_user(session, ancestor_id, for_update=True)

                existing = await self.ledger.find_entry_by_event_ref(
                    session, ancestor_id, event_ref, EntryType.REFERRAL_BONUS.value
                )
                if existing:
                    logger.debug(f"Referral reward {event_ref} already applied to user {ancestor_id}")
                    return existing.id, False

                entry_id, _ = await self.ledger.apply_entry(session, NewLedgerEntry(
                    user_id=ancestor_id,
                    type=EntryType.REFERRAL_BONUS,
                    currency=currency,
                    amount=share,
                    created_at=to_naive_utc(utcnow()),
                    source_user_id=source_user_id,
                    level=level,
                    event_ref=event_ref,
                    meta={"rate": str(rate)}
                ))
                await session.commit()
                return entry_id, True

            except Exception:
                await session.rollback()
                raise
