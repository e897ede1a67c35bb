from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class Route(str, Enum):
    CACHE = "cache"
    SIMILARITY = "similarity"
    STATISTICAL = "statistical"
    REMOTE = "remote"
    UNRESOLVED = "unresolved"


class TransactionRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    merchant_name: str = ""
    description: str = ""
    amount: Decimal
    currency: str = "EUR"
    transaction_date: date
    bank_name: str | None = None

    @property
    def amount_cents(self) -> int:
        return int((self.amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class Category(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str


class Candidate(BaseModel):
    """A single layer's proposal for a record."""
    category_id: str
    confidence: float = Field(ge=0.0, le=1.0)
    route: Route
    reasoning: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)


class ComplexityAssessment(BaseModel):
    score: float = Field(ge=0.0, le=1.0)
    factors: dict[str, float]
    weighted: dict[str, float]
    primary_issue: str


class ClassificationDecision(BaseModel):
    id: str = Field(default_factory=lambda: uuid4().hex)
    record_id: str
    category_id: str | None = None
    complexity_score: float = Field(ge=0.0, le=1.0)
    route: Route
    confidence: float = Field(ge=0.0, le=1.0)
    cost: Decimal = Field(default=Decimal("0"), ge=0)
    latency_ms: float = 0.0
    correct: bool | None = None
    reasoning: str = ""
    created_at: datetime


class ClassificationResult(BaseModel):
    category_id: str | None
    category_name: str | None = None
    confidence: float
    route: Route
    cost: Decimal = Decimal("0")
    reasoning: str = ""
    decision_id: str | None = None
    complexity: float | None = None


class CachedEntry(BaseModel):
    key: str
    category_id: str
    confidence: float = Field(ge=0.0, le=1.0)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class CorrectionEvent(BaseModel):
    record_id: str
    merchant: str
    description: str
    amount: Decimal
    predicted_category_id: str
    actual_category_id: str
    created_at: datetime


class CorrectionRule(BaseModel):
    id: str = Field(default_factory=lambda: uuid4().hex)
    from_category_id: str
    to_category_id: str
    conditions: dict[str, Any]
    confidence: float = Field(gt=0.0, le=1.0)
    support: int = 0
    created_at: datetime
    expires_at: datetime

    def is_active(self, now: datetime) -> bool:
        return now < self.expires_at


class BudgetStatus(BaseModel):
    daily_spent: Decimal
    monthly_spent: Decimal
    daily_limit: Decimal
    monthly_limit: Decimal
    daily_remaining: Decimal
    monthly_remaining: Decimal
    warning: bool = False
    remote_disabled: bool = False


class UsageReport(BaseModel):
    daily_spent: Decimal
    monthly_spent: Decimal
    remaining: Decimal
    projected_monthly: Decimal
    daily_limit: Decimal
    monthly_limit: Decimal
    remote_disabled_until: datetime | None = None
