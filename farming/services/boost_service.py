"""
Сервис буст-пакетов: покупка за TON, бонус UNI и доход в TON
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from farming.errors import UnknownBoostPackageError
from farming.schemas import Currency, DepositKind, EntryType, NewLedgerEntry
from farming.services.ledger_store import LedgerStore
from shared.config import BOOST_DURATION_DAYS, BOOST_PACKAGES
from shared.database import FarmingDeposit, to_naive_utc, utcnow
from shared.money import daily_to_per_second, divide, to_decimal

logger = logging.getLogger(__name__)


class BoostService:
    """Покупка буст-пакетов"""

    def __init__(self, ledger: LedgerStore, packages: Optional[List[dict]] = None):
        self.ledger = ledger
        self.packages: Dict[int, dict] = {
            int(package["id"]): package for package in (packages if packages is not None else BOOST_PACKAGES)
        }

    def get_package(self, package_id: int) -> dict:
        package = self.packages.get(package_id)
        if package is None:
            raise UnknownBoostPackageError(f"Boost package {package_id} does not exist")
        return package

    def list_packages(self) -> List[dict]:
        return [self.packages[package_id] for package_id in sorted(self.packages)]

    async def purchase(
        self,
        session: AsyncSession,
        user_id: int,
        package_id: int,
        now: Optional[datetime] = None
    ) -> FarmingDeposit:
        """
        Купить пакет: списать TON, начислить бонус UNI
        и открыть TON-депозит на BOOST_DURATION_DAYS

        Raises:
            UnknownBoostPackageError: нет такого пакета
            InsufficientBalanceError: не хватает TON
        """
        package = self.get_package(package_id)
        price = to_decimal(package["price_ton"])
        bonus = to_decimal(package["bonus_uni"])
        # rate_ton задан в процентах в день
        daily_rate = divide(to_decimal(package["rate_ton"]), 100)
        now = to_naive_utc(now or utcnow())

        try:
            deposit = FarmingDeposit(
                user_id=user_id,
                kind=DepositKind.BOOST.value,
                currency=Currency.TON.value,
                amount=price,
                rate_per_second=daily_to_per_second(daily_rate),
                last_accrual_at=now,
                is_active=True,
                expires_at=now + timedelta(days=BOOST_DURATION_DAYS),
                boost_package_id=package_id,
                created_at=now
            )
            session.add(deposit)
            await session.flush()

            meta = {"deposit_id": deposit.id, "boost_package_id": package_id}
            await self.ledger.apply_entry(session, NewLedgerEntry(
                user_id=user_id,
                type=EntryType.PURCHASE,
                currency=Currency.TON,
                amount=-price,
                created_at=now,
                event_ref=f"boost:{deposit.id}:purchase",
                meta=meta
            ))
            if bonus > 0:
                await self.ledger.apply_entry(session, NewLedgerEntry(
                    user_id=user_id,
                    type=EntryType.BONUS_CLAIM,
                    currency=Currency.UNI,
                    amount=bonus,
                    created_at=now,
                    event_ref=f"boost:{deposit.id}:bonus",
                    meta=meta
                ))
            await session.commit()

        except Exception as e:
            await session.rollback()
            logger.error(f"Error purchasing boost {package_id} for user {user_id}: {e}")
            raise

        logger.info(
            f"User {user_id} bought {package['name']} for {price} TON: "
            f"+{bonus} UNI, deposit {deposit.id} until {deposit.expires_at.isoformat()}"
        )
        return deposit
