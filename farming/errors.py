"""
Ошибки движка начислений
"""
from datetime import datetime
from typing import Optional


class FarmingError(Exception):
    """Базовая ошибка движка"""
    pass


class PartitionGapError(FarmingError):
    """Ни одна партиция не покрывает время записи, catch-all отсутствует"""

    def __init__(self, created_at: datetime, table: str = "transactions"):
        self.created_at = created_at
        self.table = table
        super().__init__(f"No partition of {table} covers {created_at.isoformat()} and no catch-all partition exists")


class ConcurrentAccrualConflict(FarmingError):
    """Условное обновление депозита проиграло гонку: другой воркер уже начислил"""

    def __init__(self, deposit_id: int):
        self.deposit_id = deposit_id
        super().__init__(f"Deposit {deposit_id} was already accrued by another worker")


class AncestorResolutionError(FarmingError):
    """Цепочка пригласителей содержит цикл или нечитаемую запись"""

    def __init__(self, user_id: int, message: str, level: Optional[int] = None):
        self.user_id = user_id
        self.level = level
        super().__init__(message)


class TransientStoreError(FarmingError):
    """Сбой ввода-вывода при работе с хранилищем (повторы исчерпаны)"""
    pass


class UserNotFoundError(FarmingError):
    pass


class DepositNotFoundError(FarmingError):
    pass


class InsufficientBalanceError(FarmingError):
    """Недостаточно средств"""
    pass


class InvalidStatusTransitionError(FarmingError):
    """Допустимы только переходы pending -> confirmed | rejected"""
    pass


class DailyBonusAlreadyClaimedError(FarmingError):
    pass


class UnknownBoostPackageError(FarmingError):
    pass
