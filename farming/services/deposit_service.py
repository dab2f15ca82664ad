"""
Сервис фарминг-депозитов UNI
"""
import logging
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from farming.errors import DepositNotFoundError
from farming.schemas import AccrualResult, Currency, DepositKind, EntryType, NewLedgerEntry
from farming.services.accrual_engine import AccrualEngine
from farming.services.ledger_store import LedgerStore
from farming.services.referral_distributor import ReferralDistributor
from shared.config import FARMING_DAILY_RATE, FARMING_MIN_DEPOSIT
from shared.database import FarmingDeposit, to_naive_utc, utcnow
from shared.money import daily_to_per_second, to_decimal

logger = logging.getLogger(__name__)


class DepositService:
    """Открытие и закрытие фарминг-депозитов"""

    def __init__(
        self,
        ledger: LedgerStore,
        accrual_engine: AccrualEngine,
        distributor: Optional[ReferralDistributor] = None
    ):
        self.ledger = ledger
        self.accrual_engine = accrual_engine
        self.distributor = distributor

    async def open_farming_deposit(
        self,
        session: AsyncSession,
        user_id: int,
        amount,
        now: Optional[datetime] = None
    ) -> FarmingDeposit:
        """
        Перевести UNI с баланса в фарминг-депозит

        Raises:
            InsufficientBalanceError: на балансе меньше amount
        """
        amount = to_decimal(amount)
        if amount < FARMING_MIN_DEPOSIT:
            raise ValueError(f"Minimum farming deposit is {FARMING_MIN_DEPOSIT} UNI, got {amount}")

        now = to_naive_utc(now or utcnow())
        try:
            deposit = FarmingDeposit(
                user_id=user_id,
                kind=DepositKind.FARMING.value,
                currency=Currency.UNI.value,
                amount=amount,
                rate_per_second=daily_to_per_second(FARMING_DAILY_RATE),
                last_accrual_at=now,
                is_active=True,
                created_at=now
            )
            session.add(deposit)
            await session.flush()

            await self.ledger.apply_entry(session, NewLedgerEntry(
                user_id=user_id,
                type=EntryType.DEPOSIT,
                currency=Currency.UNI,
                amount=-amount,
                created_at=now,
                event_ref=f"deposit:{deposit.id}:open",
                meta={"deposit_id": deposit.id, "direction": "open"}
            ))
            await session.commit()

        except Exception as e:
            await session.rollback()
            logger.error(f"Error opening farming deposit for user {user_id}: {e}")
            raise

        logger.info(f"User {user_id} opened farming deposit {deposit.id}: {amount} UNI")
        return deposit

    async def close_deposit(
        self,
        session: AsyncSession,
        deposit_id: int,
        now: Optional[datetime] = None
    ) -> Tuple[FarmingDeposit, Optional[AccrualResult]]:
        """
        Закрыть депозит: доначислить доход до now и деактивировать.
        Тело фарминг-депозита возвращается на баланс записью deposit
        (direction=close), тело буста нет.
        """
        now = to_naive_utc(now or utcnow())
        try:
            deposit = await session.get(FarmingDeposit, deposit_id)
            if not deposit or not deposit.is_active:
                raise DepositNotFoundError(f"Active deposit {deposit_id} not found")

            accrual = await self.accrual_engine.accrue_in_session(session, deposit_id, now)

            deposit = await session.get(FarmingDeposit, deposit_id, populate_existing=True)
            if deposit.is_active:
                deposit.is_active = False
                deposit.closed_at = now

            if deposit.kind == DepositKind.FARMING.value:
                await self.ledger.apply_entry(session, NewLedgerEntry(
                    user_id=deposit.user_id,
                    type=EntryType.DEPOSIT,
                    currency=Currency(deposit.currency),
                    amount=deposit.amount,
                    created_at=now,
                    event_ref=f"deposit:{deposit_id}:close",
                    meta={"deposit_id": deposit_id, "direction": "close"}
                ))

            await session.commit()

        except Exception as e:
            await session.rollback()
            logger.error(f"Error closing deposit {deposit_id}: {e}")
            raise

        logger.info(f"Deposit {deposit_id} of user {deposit.user_id} closed")

        if accrual is not None and self.distributor is not None:
            await self.distributor.distribute(
                accrual.user_id, accrual.earned, accrual.currency, str(accrual.entry_id)
            )
        return deposit, accrual
