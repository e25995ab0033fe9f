import datetime as dt
from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import AccountType, CategoryType, Direction, Frequency


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    account_number: Optional[str] = Field(default=None, max_length=34)
    type: AccountType = AccountType.current
    opening_balance_cents: int = 0


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: CategoryType = CategoryType.expense


class TransactionIn(BaseModel):
    date: date
    description: str = Field(..., min_length=1, max_length=255)
    debit_cents: int = Field(default=0, ge=0)
    credit_cents: int = Field(default=0, ge=0)
    category_id: Optional[int] = None
    notes: Optional[str] = Field(default=None, max_length=500)
    auto_categorize: bool = True


class CategoryRuleIn(BaseModel):
    pattern: str = Field(..., min_length=1, max_length=200)
    category_id: int
    priority: int = Field(default=100, ge=0, le=10_000)
    is_active: bool = True


class DetectionOptions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    min_occurrences: Optional[int] = Field(default=None, ge=2)
    amount_tolerance: Optional[float] = Field(default=None, ge=0, le=0.5)
    lookback_days: Optional[int] = Field(default=None, ge=0)
    today: Optional[dt.date] = None
    account_id: Optional[int] = None


class RecurringCandidate(BaseModel):
    """A detected recurring pattern that has not been confirmed yet."""

    description_pattern: str
    merchant_name: str
    direction: Direction
    typical_amount_cents: int
    typical_day: Optional[int] = None
    frequency: Frequency
    is_subscription: bool = False
    category_id: Optional[int] = None
    occurrence_count: int
    transaction_ids: list[int]
    last_seen: dt.date
    next_expected: dt.date
    average_interval_days: float


class RecurringPatternUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    merchant_name: Optional[str] = Field(default=None, max_length=120)
    typical_amount_cents: Optional[int] = Field(default=None, ge=0)
    typical_day: Optional[int] = Field(default=None, ge=1, le=31)
    frequency: Optional[Frequency] = None
    category_id: Optional[int] = None
    is_subscription: Optional[bool] = None
    is_active: Optional[bool] = None


class ImportRowIn(BaseModel):
    date: date
    description: str = Field(..., min_length=1, max_length=255)
    debit_cents: int = Field(default=0, ge=0)
    credit_cents: int = Field(default=0, ge=0)
    category: Optional[str] = Field(default=None, max_length=100)
    notes: Optional[str] = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def _one_sided(self) -> "ImportRowIn":
        if self.debit_cents and self.credit_cents:
            raise ValueError("Row cannot have both a debit and a credit amount")
        return self


class SampleDataOptions(BaseModel):
    months: int = Field(default=3, ge=1, le=24)
    transactions_per_month: int = Field(default=20, ge=1, le=100)
    include_income: bool = True
    include_bills: bool = True
    include_shopping: bool = True
    include_dining: bool = True
    seed: Optional[int] = None
    end_date: Optional[dt.date] = None
