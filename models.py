from datetime import date, datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Household(Base, TimestampMixin):
    __tablename__ = "households"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    payday_start_day: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (
        CheckConstraint(
            "payday_start_day BETWEEN 1 AND 28", name="ck_household_payday_range"
        ),
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    household_id: Mapped[int] = mapped_column(
        ForeignKey("households.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    expenses: Mapped[list["Expense"]] = relationship(
        "Expense", back_populates="category"
    )

    __table_args__ = (
        UniqueConstraint("household_id", "name", name="uq_category_household_name"),
    )


class PaymentSource(Base, TimestampMixin):
    __tablename__ = "payment_sources"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    household_id: Mapped[int] = mapped_column(
        ForeignKey("households.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    expenses: Mapped[list["Expense"]] = relationship(
        "Expense", back_populates="payment_source"
    )

    __table_args__ = (
        UniqueConstraint(
            "household_id", "name", name="uq_payment_source_household_name"
        ),
    )


class BudgetLine(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    household_id: Mapped[int] = mapped_column(
        ForeignKey("households.id"), nullable=False
    )
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    month: Mapped[date] = mapped_column(Date, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    carry_over: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    category: Mapped["Category"] = relationship("Category")

    __table_args__ = (
        UniqueConstraint(
            "household_id",
            "category_id",
            "month",
            name="uq_budget_household_category_month",
        ),
        Index("ix_budget_household_month", "household_id", "month"),
        CheckConstraint("amount >= 0", name="ck_budget_amount_positive"),
    )


class Expense(Base, TimestampMixin):
    __tablename__ = "expenses"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    household_id: Mapped[int] = mapped_column(
        ForeignKey("households.id"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    payment_source_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("payment_sources.id")
    )
    month: Mapped[date] = mapped_column(Date, nullable=False)
    txn_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    merchant: Mapped[Optional[str]] = mapped_column(String(120))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    receipt_path: Mapped[Optional[str]] = mapped_column(String(255))

    category: Mapped[Optional["Category"]] = relationship(
        "Category", back_populates="expenses"
    )
    payment_source: Mapped[Optional["PaymentSource"]] = relationship(
        "PaymentSource", back_populates="expenses"
    )

    __table_args__ = (
        Index("ix_expenses_household_month", "household_id", "month"),
        Index("ix_expenses_household_date", "household_id", "txn_date"),
        Index(
            "ix_expenses_household_category_date",
            "household_id",
            "category_id",
            "txn_date",
        ),
        CheckConstraint("amount > 0", name="ck_expenses_amount_positive"),
    )


class SavingsGoal(Base, TimestampMixin):
    __tablename__ = "savings_goals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    household_id: Mapped[int] = mapped_column(
        ForeignKey("households.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    target_amount: Mapped[Optional[int]] = mapped_column(Integer)
    target_date: Mapped[Optional[date]] = mapped_column(Date)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    transactions: Mapped[list["SavingsTransaction"]] = relationship(
        "SavingsTransaction", back_populates="goal"
    )


class SavingsTransaction(Base, TimestampMixin):
    __tablename__ = "savings_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    household_id: Mapped[int] = mapped_column(
        ForeignKey("households.id"), nullable=False
    )
    goal_id: Mapped[int] = mapped_column(
        ForeignKey("savings_goals.id"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    txn_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)

    goal: Mapped["SavingsGoal"] = relationship(
        "SavingsGoal", back_populates="transactions"
    )

    __table_args__ = (
        Index("ix_savings_txn_goal", "household_id", "goal_id"),
        CheckConstraint("amount <> 0", name="ck_savings_txn_amount_nonzero"),
    )


class RoutineTask(Base, TimestampMixin):
    __tablename__ = "routine_tasks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    household_id: Mapped[int] = mapped_column(
        ForeignKey("households.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    interval_months: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_date: Mapped[date] = mapped_column(Date, nullable=False)

    __table_args__ = (
        CheckConstraint("interval_months > 0", name="ck_routine_interval_positive"),
    )
