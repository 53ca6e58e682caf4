from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class HouseholdIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    payday_start_day: int = Field(1, ge=1, le=28)


class HouseholdSettingsIn(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    payday_start_day: Optional[int] = Field(default=None, ge=1, le=28)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class PaymentSourceIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class BudgetLineIn(BaseModel):
    category_id: int
    amount: int = Field(..., ge=0)


class BudgetUpsertIn(BaseModel):
    lines: list[BudgetLineIn] = Field(default_factory=list)


class ExpenseIn(BaseModel):
    id: Optional[str] = Field(default=None, min_length=1, max_length=64)
    user_id: str = Field(..., min_length=1, max_length=64)
    category_id: Optional[int] = None
    payment_source_id: Optional[int] = None
    txn_date: date
    amount: int = Field(..., gt=0)
    merchant: Optional[str] = Field(default=None, max_length=120)
    notes: Optional[str] = None
    receipt_path: Optional[str] = Field(default=None, max_length=255)

    @field_validator("merchant")
    @classmethod
    def _strip_merchant(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None


class ExpenseUpdateIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    category_id: Optional[int] = None
    payment_source_id: Optional[int] = None
    txn_date: Optional[date] = None
    amount: Optional[int] = Field(default=None, gt=0)
    merchant: Optional[str] = Field(default=None, max_length=120)
    notes: Optional[str] = None
    receipt_path: Optional[str] = Field(default=None, max_length=255)


class DraftExpense(BaseModel):
    """An expense recorded while offline, waiting in the local queue."""

    id: str = Field(..., min_length=1, max_length=64)
    household_id: int
    user_id: str = Field(..., min_length=1, max_length=64)
    category_id: Optional[int] = None
    payment_source_id: Optional[int] = None
    txn_date: date
    amount: int = Field(..., gt=0)
    merchant: Optional[str] = None
    notes: Optional[str] = None
    receipt_name: Optional[str] = None


class SavingsGoalIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    target_amount: Optional[int] = Field(default=None, ge=0)
    target_date: Optional[date] = None
    notes: Optional[str] = None


class SavingsTransactionIn(BaseModel):
    goal_id: int
    user_id: str = Field(..., min_length=1, max_length=64)
    txn_date: date
    amount: int
    notes: Optional[str] = None

    @field_validator("amount")
    @classmethod
    def _non_zero(cls, value: int) -> int:
        if value == 0:
            raise ValueError("Amount must not be zero")
        return value


class RoutineTaskIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    interval_months: int = Field(..., gt=0)
    last_date: date
