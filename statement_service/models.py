from datetime import date as calendar_date
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Category(str, Enum):
    FOOD = "Food & Dining"
    SHOPPING = "Shopping"
    HEALTH = "Health"
    BILLS = "Bills & Utilities"
    TRAVEL = "Travel"
    TRANSFER = "Transfer"
    ENTERTAINMENT = "Entertainment"
    SUBSCRIPTIONS = "Subscriptions"
    INCOME = "Income"
    OTHER = "Other"

    @classmethod
    def coerce(cls, value: object) -> "Category":
        for member in cls:
            if member.value == value:
                return member
        return cls.OTHER


CATEGORY_NAMES: List[str] = [c.value for c in Category]


class TransactionType(str, Enum):
    DEBIT = "debit"
    CREDIT = "credit"


class Transaction(BaseModel):
    id: str
    date: str
    description: str
    amount: float = Field(ge=0)
    type: TransactionType
    category: str = Category.OTHER.value
    bankName: Optional[str] = None

    model_config = ConfigDict(use_enum_values=True)

    @field_validator("date")
    @classmethod
    def _iso_calendar_date(cls, value: str) -> str:
        # "2025-10-01T00:00:00" is accepted and stored as "2025-10-01"
        return calendar_date.fromisoformat(value.strip()[:10]).isoformat()


class FileStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"
    PASSWORD_REQUIRED = "password_required"


class ProcessingStage(str, Enum):
    QUEUED = "queued"
    UPLOADING = "uploading"
    DECRYPTING = "decrypting"
    SCANNING = "scanning"
    EXTRACTING = "extracting"
    ANALYZING = "analyzing"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in (ProcessingStage.COMPLETE, ProcessingStage.ERROR)

    def can_transition(self, target: "ProcessingStage") -> bool:
        return target in STAGE_TRANSITIONS[self]


# Any in-flight stage may fall back to UPLOADING when the whole file is retried.
STAGE_TRANSITIONS: Dict[ProcessingStage, FrozenSet[ProcessingStage]] = {
    ProcessingStage.QUEUED: frozenset({ProcessingStage.UPLOADING, ProcessingStage.ERROR}),
    ProcessingStage.UPLOADING: frozenset(
        {ProcessingStage.DECRYPTING, ProcessingStage.SCANNING, ProcessingStage.ERROR}
    ),
    ProcessingStage.DECRYPTING: frozenset(
        {ProcessingStage.SCANNING, ProcessingStage.UPLOADING, ProcessingStage.ERROR}
    ),
    ProcessingStage.SCANNING: frozenset(
        {ProcessingStage.SCANNING, ProcessingStage.EXTRACTING, ProcessingStage.UPLOADING, ProcessingStage.ERROR}
    ),
    ProcessingStage.EXTRACTING: frozenset(
        {ProcessingStage.ANALYZING, ProcessingStage.UPLOADING, ProcessingStage.ERROR}
    ),
    ProcessingStage.ANALYZING: frozenset(
        {ProcessingStage.COMPLETE, ProcessingStage.UPLOADING, ProcessingStage.ERROR}
    ),
    ProcessingStage.COMPLETE: frozenset(),
    ProcessingStage.ERROR: frozenset({ProcessingStage.QUEUED}),
}


class BatchPhase(str, Enum):
    IDLE = "idle"
    AWAITING_PASSWORD = "awaiting-password-input"
    PROCESSING = "processing"
    DRAINED = "drained"


class UploadedFile(BaseModel):
    id: str
    fileName: str
    status: FileStatus = FileStatus.PENDING
    stage: ProcessingStage = ProcessingStage.QUEUED
    estimatedTransactions: Optional[int] = None
    estimatedSeconds: Optional[int] = None
    transactionCount: Optional[int] = None
    error: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class ExtractionResult(BaseModel):
    success: bool
    transactions: List[Transaction] = Field(default_factory=list)
    error: Optional[str] = None
    rawResponse: Optional[str] = None
    transient: bool = False


class CountResult(BaseModel):
    success: bool
    count: int = 0
    estimatedSeconds: int = 0
    error: Optional[str] = None


class AccountSummary(BaseModel):
    accountNumber: Optional[str] = None
    holderName: Optional[str] = None
    branch: Optional[str] = None
    statementPeriod: Optional[str] = None
    openingBalance: Optional[float] = None
    closingBalance: Optional[float] = None
    totalDebited: Optional[float] = None
    totalCredited: Optional[float] = None
    debitCount: Optional[int] = None
    creditCount: Optional[int] = None


class MonthlyData(BaseModel):
    month: str
    totalSpending: float = 0.0
    totalIncome: float = 0.0
    netFlow: float = 0.0
    transactionCount: int = 0


class CategoryData(BaseModel):
    category: str
    amount: float
    percentage: float
    color: str


class KPIMetrics(BaseModel):
    totalSpending: float
    totalIncome: float
    netCashFlow: float
    transactionCount: int
    avgTransactionSize: float
    topCategory: str


class PasswordProfile(BaseModel):
    id: str
    name: str
    createdAt: str


class Step(BaseModel):
    service: str
    status: str
    detail: str
