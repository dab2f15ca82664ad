"""
Сервис управления балансами пользователей

Пополнение, вывод с подтверждением (pending -> confirmed | rejected)
и сверка баланса с журналом
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional, Tuple
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from farming.errors import InsufficientBalanceError
from farming.schemas import (
    Currency,
    EntryStatus,
    EntryType,
    NewLedgerEntry,
    ReconciliationReport,
)
from farming.services.ledger_store import LedgerStore
from shared.database import Transaction, to_naive_utc, utcnow
from shared.money import ZERO, add, to_decimal

logger = logging.getLogger(__name__)


class BalanceService:
    """Операции с балансом поверх журнала"""

    def __init__(self, ledger: LedgerStore):
        self.ledger = ledger

    async def get_balance(self, session: AsyncSession, user_id: int) -> Dict[str, Dict[str, Decimal]]:
        """
        Балансы по валютам: полный, в ожидании вывода и доступный
        """
        user = await self.ledger.get_user(session, user_id)
        balances = {}
        for currency in Currency:
            total = user.get_balance(currency.value)
            held = await self._pending_holds(session, user_id, currency)
            balances[currency.value] = {
                "balance": total,
                "pending_withdrawals": held,
                "available": add(total, -held)
            }
        return balances

    async def credit(
        self,
        session: AsyncSession,
        user_id: int,
        amount,
        currency: Currency,
        event_ref: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Tuple[UUID, Decimal]:
        """
        Пополнение баланса (подтверждённая запись deposit)

        Returns:
            (entry_id, новый баланс)
        """
        amount = to_decimal(amount)
        if amount <= ZERO:
            raise ValueError(f"Credit amount must be positive, got {amount}")

        try:
            entry_id, balance = await self.ledger.apply_entry(session, NewLedgerEntry(
                user_id=user_id,
                type=EntryType.DEPOSIT,
                currency=Currency(currency),
                amount=amount,
                created_at=to_naive_utc(now or utcnow()),
                event_ref=event_ref
            ))
            await session.commit()

        except Exception as e:
            await session.rollback()
            logger.error(f"Error crediting user {user_id}: {e}")
            raise

        logger.info(f"Credited {amount} {Currency(currency).value} to user {user_id}. Balance: {balance}")
        return entry_id, balance

    async def request_withdrawal(
        self,
        session: AsyncSession,
        user_id: int,
        amount,
        currency: Currency,
        now: Optional[datetime] = None
    ) -> UUID:
        """
        Заявка на вывод: pending запись withdrawal.
        Баланс меняется только при подтверждении, но сумма
        заявок в ожидании уже не доступна для новых выводов.
        """
        amount = to_decimal(amount)
        currency = Currency(currency)
        if amount <= ZERO:
            raise ValueError(f"Withdrawal amount must be positive, got {amount}")

        try:
            user = await self.ledger.get_user(session, user_id, for_update=True)
            held = await self._pending_holds(session, user_id, currency)
            available = add(user.get_balance(currency.value), -held)

            if available < amount:
                raise InsufficientBalanceError(
                    f"User {user_id} has {available} {currency.value} available, "
                    f"requested {amount}"
                )

            entry_id, _ = await self.ledger.apply_entry(session, NewLedgerEntry(
                user_id=user_id,
                type=EntryType.WITHDRAWAL,
                currency=currency,
                amount=-amount,
                created_at=to_naive_utc(now or utcnow()),
                status=EntryStatus.PENDING
            ))
            await session.commit()

        except InsufficientBalanceError as e:
            await session.rollback()
            logger.warning(str(e))
            raise

        except Exception as e:
            await session.rollback()
            logger.error(f"Error requesting withdrawal for user {user_id}: {e}", exc_info=True)
            raise

        logger.info(f"Withdrawal {entry_id} of {amount} {currency.value} requested by user {user_id}")
        return entry_id

    async def confirm_entry(self, session: AsyncSession, entry_id: UUID) -> Transaction:
        return await self._change_status(session, entry_id, EntryStatus.CONFIRMED)

    async def reject_entry(self, session: AsyncSession, entry_id: UUID) -> Transaction:
        return await self._change_status(session, entry_id, EntryStatus.REJECTED)

    async def _change_status(self, session: AsyncSession, entry_id: UUID, status: EntryStatus) -> Transaction:
        try:
            transaction = await self.ledger.set_entry_status(session, entry_id, status)
            await session.commit()
            return transaction

        except Exception as e:
            await session.rollback()
            logger.error(f"Error moving entry {entry_id} to {status.value}: {e}")
            raise

    async def reconcile(self, session: AsyncSession, user_id: int) -> ReconciliationReport:
        return await self.ledger.reconcile_user(session, user_id)

    @staticmethod
    async def _pending_holds(session: AsyncSession, user_id: int, currency: Currency) -> Decimal:
        result = await session.execute(
            select(Transaction.amount).where(
                Transaction.user_id == user_id,
                Transaction.currency == currency.value,
                Transaction.type == EntryType.WITHDRAWAL.value,
                Transaction.status == EntryStatus.PENDING.value
            )
        )
        held = ZERO
        for amount in result.scalars().all():
            held = add(held, -amount)
        return held
