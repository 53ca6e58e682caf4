from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional

from sqlalchemy import func, literal_column, select
from sqlalchemy.orm import Session

from config import get_settings
from cycles import Cycle, CycleKey, cycle_bounds
from errors import MalformedInput
from models import BudgetLine, Category, Expense, PaymentSource
from services import get_household
from store import ExpenseRow, LedgerStore, store_errors


UNCATEGORIZED_LABEL = "Uncategorized"
UNASSIGNED_SOURCE_LABEL = "Unassigned"
MAX_TREND_CYCLES = 120


@dataclass(frozen=True)
class CategoryRollup:
    category_id: Optional[int]
    category_name: str
    active: bool
    budget_amount: int
    actual_amount: int
    remaining_amount: int
    pct_used: Optional[float]


@dataclass(frozen=True)
class Totals:
    total_budget: int
    total_actual: int
    total_remaining: int


@dataclass(frozen=True)
class WeekBucket:
    week_no: int
    start: date
    end: date  # exclusive
    actual_amount: int

    @property
    def last_day(self) -> date:
        return self.end - timedelta(days=1)


@dataclass(frozen=True)
class MerchantTotal:
    merchant: Optional[str]
    total_amount: int
    txn_count: int


@dataclass(frozen=True)
class SourceShare:
    payment_source_id: Optional[int]
    source_name: str
    total_amount: int
    pct: float


@dataclass(frozen=True)
class TrendPoint:
    cycle: CycleKey
    budget_amount: int
    actual_amount: int


@dataclass(frozen=True)
class CycleSummary:
    cycle: Cycle
    categories: list[CategoryRollup]
    totals: Totals
    recent: list[ExpenseRow]


def percent(part: int, whole: int) -> Optional[float]:
    if whole <= 0:
        return None
    return round(part / whole * 100, 2)


def totals_from(rows: list[CategoryRollup]) -> Totals:
    budget = sum(row.budget_amount for row in rows)
    actual = sum(row.actual_amount for row in rows)
    return Totals(
        total_budget=budget, total_actual=actual, total_remaining=budget - actual
    )


class RollupService:
    """Read-only budget-vs-actual aggregation for one household."""

    def __init__(self, session: Session, household_id: int) -> None:
        self.session = session
        self.household_id = household_id

    def cycle(self, key: CycleKey) -> Cycle:
        household = get_household(self.session, self.household_id)
        return cycle_bounds(key, household.payday_start_day)

    def _in_cycle(self, cycle: Cycle):
        return (
            Expense.household_id == self.household_id,
            Expense.txn_date >= cycle.start,
            Expense.txn_date < cycle.end,
        )

    def category_rollup(self, key: CycleKey) -> list[CategoryRollup]:
        cycle = self.cycle(key)
        budget_stmt = (
            select(
                BudgetLine.category_id,
                func.coalesce(func.sum(BudgetLine.amount), 0).label("budget"),
            )
            .where(
                BudgetLine.household_id == self.household_id,
                BudgetLine.month == key.month_start,
            )
            .group_by(BudgetLine.category_id)
        )
        actual_stmt = (
            select(
                Expense.category_id,
                func.coalesce(func.sum(Expense.amount), 0).label("actual"),
            )
            .where(*self._in_cycle(cycle))
            .group_by(Expense.category_id)
        )
        with store_errors("category_rollup"):
            budget_by_category = {
                row.category_id: int(row.budget or 0)
                for row in self.session.execute(budget_stmt)
            }
            actual_by_category = {
                row.category_id: int(row.actual or 0)
                for row in self.session.execute(actual_stmt)
            }
            ids = (set(budget_by_category) | set(actual_by_category)) - {None}
            categories = {
                c.id: c
                for c in self.session.scalars(
                    select(Category).where(
                        Category.household_id == self.household_id,
                        Category.id.in_(ids),
                    )
                )
            }

        rows: list[CategoryRollup] = []
        for category_id in set(budget_by_category) | set(actual_by_category):
            budget = budget_by_category.get(category_id, 0)
            actual = actual_by_category.get(category_id, 0)
            if budget == 0 and actual == 0:
                continue
            category = categories.get(category_id)
            rows.append(
                CategoryRollup(
                    category_id=category_id,
                    category_name=category.name if category else UNCATEGORIZED_LABEL,
                    active=category.active if category else True,
                    budget_amount=budget,
                    actual_amount=actual,
                    remaining_amount=budget - actual,
                    pct_used=percent(actual, budget),
                )
            )
        rows.sort(
            key=lambda r: (
                r.category_id is None,
                r.category_name.lower(),
                r.category_id or 0,
            )
        )
        return rows

    def totals(self, key: CycleKey) -> Totals:
        return totals_from(self.category_rollup(key))

    def weekly_breakdown(self, key: CycleKey) -> list[WeekBucket]:
        cycle = self.cycle(key)
        stmt = (
            select(
                Expense.txn_date,
                func.coalesce(func.sum(Expense.amount), 0).label("actual"),
            )
            .where(*self._in_cycle(cycle))
            .group_by(Expense.txn_date)
        )
        with store_errors("weekly_breakdown"):
            per_day = [
                (row.txn_date, int(row.actual or 0))
                for row in self.session.execute(stmt)
            ]

        count = -(-cycle.length_days // 7)
        sums = [0] * count
        for txn_date, amount in per_day:
            sums[(txn_date - cycle.start).days // 7] += amount

        buckets: list[WeekBucket] = []
        for index, amount in enumerate(sums):
            start = cycle.start + timedelta(days=7 * index)
            end = min(start + timedelta(days=7), cycle.end)
            buckets.append(
                WeekBucket(
                    week_no=index + 1, start=start, end=end, actual_amount=amount
                )
            )
        return buckets

    def top_merchants(
        self, key: CycleKey, limit: Optional[int] = None
    ) -> list[MerchantTotal]:
        limit = limit if limit is not None else get_settings().top_merchants
        cycle = self.cycle(key)
        merchant = func.nullif(
            func.trim(Expense.merchant), literal_column("''")
        ).label("merchant")
        stmt = (
            select(
                merchant,
                func.coalesce(func.sum(Expense.amount), 0).label("total"),
                func.count(Expense.id).label("txn_count"),
            )
            .where(*self._in_cycle(cycle))
            .group_by(merchant)
        )
        with store_errors("top_merchants"):
            rows = [
                MerchantTotal(
                    merchant=row.merchant,
                    total_amount=int(row.total or 0),
                    txn_count=int(row.txn_count or 0),
                )
                for row in self.session.execute(stmt)
            ]
        rows.sort(key=lambda r: (-r.total_amount, -r.txn_count, r.merchant or ""))
        return rows[: max(0, limit)]

    def payment_source_share(self, key: CycleKey) -> list[SourceShare]:
        cycle = self.cycle(key)
        stmt = (
            select(
                Expense.payment_source_id,
                PaymentSource.name,
                func.coalesce(func.sum(Expense.amount), 0).label("total"),
            )
            .outerjoin(PaymentSource, Expense.payment_source_id == PaymentSource.id)
            .where(*self._in_cycle(cycle))
            .group_by(Expense.payment_source_id, PaymentSource.name)
        )
        with store_errors("payment_source_share"):
            rows = self.session.execute(stmt).all()

        cycle_total = sum(int(row.total or 0) for row in rows)
        shares = [
            SourceShare(
                payment_source_id=row.payment_source_id,
                source_name=row.name or UNASSIGNED_SOURCE_LABEL,
                total_amount=int(row.total or 0),
                pct=percent(int(row.total or 0), cycle_total) or 0.0,
            )
            for row in rows
        ]
        shares.sort(key=lambda s: (-s.total_amount, s.source_name.lower()))
        return shares

    def trend(self, key: CycleKey, cycles: Optional[int] = None) -> list[TrendPoint]:
        """Trailing cycles ending at ``key``, oldest first, with no gaps."""
        cycles = cycles if cycles is not None else get_settings().trend_cycles
        if cycles < 1:
            raise MalformedInput("Trend needs at least one cycle")
        if cycles > MAX_TREND_CYCLES:
            raise MalformedInput(f"Trend is limited to {MAX_TREND_CYCLES} cycles")
        keys = [key.shift(-offset) for offset in reversed(range(cycles))]
        months = [k.month_start for k in keys]

        budget_stmt = (
            select(
                BudgetLine.month,
                func.coalesce(func.sum(BudgetLine.amount), 0).label("budget"),
            )
            .where(
                BudgetLine.household_id == self.household_id,
                BudgetLine.month.in_(months),
            )
            .group_by(BudgetLine.month)
        )
        first, last = self.cycle(keys[0]), self.cycle(keys[-1])
        actual_stmt = (
            select(
                Expense.month,
                func.coalesce(func.sum(Expense.amount), 0).label("actual"),
            )
            .where(
                Expense.household_id == self.household_id,
                Expense.txn_date >= first.start,
                Expense.txn_date < last.end,
            )
            .group_by(Expense.month)
        )
        with store_errors("trend"):
            budget_by_month = {
                row.month: int(row.budget or 0)
                for row in self.session.execute(budget_stmt)
            }
            actual_by_month = {
                row.month: int(row.actual or 0)
                for row in self.session.execute(actual_stmt)
            }
        return [
            TrendPoint(
                cycle=k,
                budget_amount=budget_by_month.get(k.month_start, 0),
                actual_amount=actual_by_month.get(k.month_start, 0),
            )
            for k in keys
        ]

    def summary(self, key: CycleKey, recent_limit: int = 7) -> CycleSummary:
        categories = self.category_rollup(key)
        recent, _ = LedgerStore(self.session, self.household_id).select_expenses(
            key, limit=recent_limit
        )
        return CycleSummary(
            cycle=self.cycle(key),
            categories=categories,
            totals=totals_from(categories),
            recent=recent,
        )
