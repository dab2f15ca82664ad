"""
Ежедневный бонус UNI с серией дней подряд
"""
import logging
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from farming.errors import DailyBonusAlreadyClaimedError
from farming.schemas import Currency, DailyBonusStatus, EntryType, NewLedgerEntry
from farming.services.ledger_store import LedgerStore
from shared.config import DAILY_BONUS_AMOUNT
from shared.database import User, to_naive_utc, utcnow

logger = logging.getLogger(__name__)


def next_streak(last_claim_date: Optional[date], streak: int, today: date) -> int:
    """Серия продолжается, только если прошлый бонус получен вчера"""
    if last_claim_date is not None and last_claim_date == today - timedelta(days=1):
        return streak + 1
    return 1


class DailyBonusService:

    def __init__(self, ledger: LedgerStore, bonus_amount=DAILY_BONUS_AMOUNT):
        self.ledger = ledger
        self.bonus_amount = bonus_amount

    async def get_status(self, session: AsyncSession, user_id: int, now: Optional[datetime] = None) -> DailyBonusStatus:
        today = to_naive_utc(now or utcnow()).date()
        user = await self.ledger.get_user(session, user_id)
        return self._status(user, today)

    def _status(self, user: User, today: date) -> DailyBonusStatus:
        return DailyBonusStatus(
            can_claim=user.checkin_last_date != today,
            streak=user.checkin_streak or 0,
            bonus_amount=self.bonus_amount,
            last_claim_date=user.checkin_last_date
        )

    async def claim(self, session: AsyncSession, user_id: int, now: Optional[datetime] = None) -> DailyBonusStatus:
        """
        Получить бонус за текущие сутки (UTC)

        Raises:
            DailyBonusAlreadyClaimedError: бонус за сегодня уже получен
        """
        now = to_naive_utc(now or utcnow())
        today = now.date()

        try:
            user = await self.ledger.get_user(session, user_id, for_update=True)
            if user.checkin_last_date == today:
                raise DailyBonusAlreadyClaimedError(f"User {user_id} already claimed the bonus for {today.isoformat()}")

            streak = next_streak(user.checkin_last_date, user.checkin_streak or 0, today)

            await self.ledger.apply_entry(session, NewLedgerEntry(
                user_id=user_id,
                type=EntryType.BONUS_CLAIM,
                currency=Currency.UNI,
                amount=self.bonus_amount,
                created_at=now,
                event_ref=f"daily_bonus:{today.isoformat()}",
                meta={"streak": streak}
            ))
            user.checkin_last_date = today
            user.checkin_streak = streak
            await session.commit()

        except DailyBonusAlreadyClaimedError:
            await session.rollback()
            raise

        except Exception as e:
            await session.rollback()
            logger.error(f"Error claiming daily bonus for user {user_id}: {e}")
            raise

        logger.info(f"User {user_id} claimed daily bonus {self.bonus_amount} UNI (streak {streak})")
        return self._status(user, today)
