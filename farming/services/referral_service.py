"""
Сервис регистрации пользователей и реферального дерева
"""
import logging
import secrets
from typing import Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from farming.schemas import EntryType
from farming.services.referral_distributor import ReferralDistributor
from shared.config import REFERRAL_CODE_ALPHABET, REFERRAL_CODE_LENGTH
from shared.database import Transaction, User
from shared.money import ZERO, add
from shared.referral_model import Referral

logger = logging.getLogger(__name__)

CODE_GENERATION_ATTEMPTS = 10


class ReferralService:
    """Регистрация пользователей с пригласительным кодом"""

    def __init__(self, distributor: ReferralDistributor):
        self.distributor = distributor

    @staticmethod
    def generate_referral_code() -> str:
        return "".join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(REFERRAL_CODE_LENGTH))

    @staticmethod
    async def _unique_referral_code(session: AsyncSession) -> str:
        for _ in range(CODE_GENERATION_ATTEMPTS):
            code = ReferralService.generate_referral_code()
            result = await session.execute(select(User.id).where(User.ref_code == code))
            if result.scalar_one_or_none() is None:
                return code
        raise RuntimeError(f"Could not generate a unique referral code in {CODE_GENERATION_ATTEMPTS} attempts")

    async def register_user(
        self,
        session: AsyncSession,
        telegram_id: int,
        username: Optional[str] = None,
        inviter_code: Optional[str] = None
    ) -> User:
        """
        Создать пользователя при первом обращении

        Существующий пользователь возвращается без изменений: пригласитель
        назначается только один раз, поэтому циклы в дереве невозможны.
        """
        result = await session.execute(
            select(User).where(User.telegram_id == telegram_id)
        )
        existing_user = result.scalar_one_or_none()
        if existing_user:
            logger.info(f"User {telegram_id} already exists")
            return existing_user

        try:
            inviter = None
            if inviter_code:
                result = await session.execute(
                    select(User).where(User.ref_code == inviter_code)
                )
                inviter = result.scalar_one_or_none()
                if inviter is None:
                    logger.warning(f"Inviter code {inviter_code!r} not found, registering {telegram_id} without inviter")
                elif inviter.telegram_id == telegram_id:
                    logger.warning(f"User {telegram_id} tried to refer themselves")
                    inviter = None

            user = User(
                telegram_id=telegram_id,
                username=username,
                ref_code=await self._unique_referral_code(session),
                parent_ref_code=inviter.ref_code if inviter else None,
                balance_uni=ZERO,
                balance_ton=ZERO,
                checkin_streak=0
            )
            session.add(user)
            await session.flush()

            if inviter:
                await self._add_edges(session, user, inviter)

            await session.commit()

        except Exception as e:
            await session.rollback()
            logger.error(f"Error registering user {telegram_id}: {e}", exc_info=True)
            raise

        logger.info(
            f"Registered user {user.id} (telegram {telegram_id}) with code {user.ref_code}"
            + (f", invited by {inviter.id}" if inviter else "")
        )
        return user

    async def _add_edges(self, session: AsyncSession, user: User, inviter: User):
        """Рёбра до всех предков: на уровне 1 пригласитель, выше его цепочка"""
        session.add(Referral(user_id=user.id, inviter_id=inviter.id, level=1))

        max_depth = self.distributor.policy.max_depth
        if max_depth > 1:
            chain, error = await self.distributor.resolve_upline(session, inviter.id, max_depth - 1)
            if error:
                logger.warning(f"Upline of inviter {inviter.id} is truncated: {error}")
            for level, ancestor in enumerate(chain, start=2):
                session.add(Referral(user_id=user.id, inviter_id=ancestor.id, level=level))

    @staticmethod
    async def get_referral_stats(session: AsyncSession, user_id: int) -> Dict:
        """
        Статистика реферальной программы пользователя
        """
        user = await session.get(User, user_id)
        if not user:
            return {
                "ref_code": None,
                "referrals_count": 0,
                "levels": {},
                "total_earned": {},
                "referrals": []
            }

        result = await session.execute(
            select(Referral.level, func.count(Referral.id))
            .where(Referral.inviter_id == user_id)
            .group_by(Referral.level)
            .order_by(Referral.level)
        )
        levels = {level: count for level, count in result.all()}

        # Суммы считаются в Python: на SQLite Money хранится строкой
        result = await session.execute(
            select(Transaction.currency, Transaction.amount).where(
                Transaction.user_id == user_id,
                Transaction.type == EntryType.REFERRAL_BONUS.value
            )
        )
        total_earned: Dict[str, object] = {}
        for currency, amount in result.all():
            total_earned[currency] = add(total_earned.get(currency, ZERO), amount)

        result = await session.execute(
            select(Referral, User)
            .join(User, User.id == Referral.user_id)
            .where(Referral.inviter_id == user_id, Referral.level == 1)
            .order_by(Referral.created_at.desc())
        )
        referrals = [
            {
                "user_id": invited.id,
                "username": invited.username,
                "registered_at": referral.created_at
            }
            for referral, invited in result.all()
        ]

        return {
            "ref_code": user.ref_code,
            "referrals_count": levels.get(1, 0),
            "levels": levels,
            "total_earned": total_earned,
            "referrals": referrals
        }
