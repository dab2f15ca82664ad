"""
Структуры данных движка: записи журнала, результаты и отчёты
"""
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class EntryType(str, Enum):
    DEPOSIT = "deposit"
    HARVEST = "harvest"
    REFERRAL_BONUS = "referral_bonus"
    WITHDRAWAL = "withdrawal"
    BONUS_CLAIM = "bonus_claim"
    PURCHASE = "purchase"


class EntryStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class Currency(str, Enum):
    UNI = "UNI"
    TON = "TON"


class DepositKind(str, Enum):
    FARMING = "farming"
    BOOST = "boost"


class CycleStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class DistributionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class NewLedgerEntry(BaseModel):
    """Запись для добавления в журнал"""
    user_id: int
    type: EntryType
    currency: Currency
    amount: Decimal
    created_at: datetime
    status: EntryStatus = EntryStatus.CONFIRMED
    source_user_id: Optional[int] = None
    level: Optional[int] = None
    event_ref: Optional[str] = None
    meta: dict = Field(default_factory=dict)


class LedgerEntry(BaseModel):
    id: UUID
    user_id: int
    type: EntryType
    currency: Currency
    amount: Decimal
    status: EntryStatus
    source_user_id: Optional[int] = None
    level: Optional[int] = None
    event_ref: Optional[str] = None
    meta: Optional[dict] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class EntryFilters(BaseModel):
    type: Optional[EntryType] = None
    currency: Optional[Currency] = None
    status: Optional[EntryStatus] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None


# ========== Начисления ==========

class AccrualResult(BaseModel):
    deposit_id: int
    user_id: int
    currency: Currency
    earned: Decimal
    elapsed_seconds: Decimal
    accrued_at: datetime
    entry_id: Optional[UUID] = None
    deactivated: bool = False


class AccrualFailure(BaseModel):
    deposit_id: int
    user_id: Optional[int] = None
    kind: str
    message: str


class AccrualReport(BaseModel):
    results: List[AccrualResult] = Field(default_factory=list)
    failures: List[AccrualFailure] = Field(default_factory=list)
    skipped: int = 0
    conflicts: int = 0
    deferred: int = 0


# ========== Реферальные начисления ==========

class AncestorCredit(BaseModel):
    ancestor_id: int
    level: int
    amount: Decimal
    status: str  # applied, duplicate, failed
    kind: Optional[str] = None
    entry_id: Optional[UUID] = None
    error: Optional[str] = None


class DistributionResult(BaseModel):
    event_ref: str
    source_user_id: int
    currency: Currency
    credits: List[AncestorCredit] = Field(default_factory=list)
    resolution_error: Optional[str] = None

    @property
    def applied(self) -> List[AncestorCredit]:
        return [c for c in self.credits if c.status == "applied"]

    @property
    def failed(self) -> List[AncestorCredit]:
        return [c for c in self.credits if c.status == "failed"]

    @property
    def total_applied(self) -> Decimal:
        return sum((c.amount for c in self.applied), Decimal("0"))


# ========== Цикл ==========

class CycleError(BaseModel):
    kind: str
    message: str
    deposit_id: Optional[int] = None
    user_id: Optional[int] = None
    event_ref: Optional[str] = None


class CycleReport(BaseModel):
    cycle_id: str
    status: CycleStatus
    started_at: datetime
    finished_at: Optional[datetime] = None
    accrued_count: int = 0
    referral_credits_applied: int = 0
    conflicts: int = 0
    deferred: int = 0
    distributions_recovered: int = 0
    errors: List[CycleError] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


# ========== Партиции ==========

class TimeRange(BaseModel):
    start: datetime
    end: datetime


class PartitionInfo(BaseModel):
    name: str
    range_start: Optional[datetime] = None
    range_end: Optional[datetime] = None
    is_default: bool = False
    status: str
    error: Optional[str] = None
    row_count: Optional[int] = None
    size_bytes: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


class EnsureResult(BaseModel):
    created: List[str] = Field(default_factory=list)
    existing: List[str] = Field(default_factory=list)
    failed: List[dict] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


class PartitionHealth(BaseModel):
    ok: bool
    partition_count: int
    has_default: bool
    covered_from: Optional[datetime] = None
    covered_to: Optional[datetime] = None
    gaps: List[TimeRange] = Field(default_factory=list)
    overlaps: List[List[str]] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)


# ========== Балансы ==========

class ReconciliationLine(BaseModel):
    currency: Currency
    balance: Decimal
    ledger_sum: Decimal

    @property
    def drift(self) -> Decimal:
        return self.balance - self.ledger_sum


class ReconciliationReport(BaseModel):
    user_id: int
    lines: List[ReconciliationLine]

    @property
    def ok(self) -> bool:
        return all(line.drift == 0 for line in self.lines)


class DailyBonusStatus(BaseModel):
    can_claim: bool
    streak: int
    bonus_amount: Decimal
    last_claim_date: Optional[date] = None
