from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date
from typing import Optional, Type, Union

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from config import get_settings
from cycles import CycleKey, resolve_cycle
from errors import ConflictViolation, NotFound
from events import ChangeFeed
from models import (
    BudgetLine,
    Category,
    Expense,
    Household,
    PaymentSource,
    RoutineTask,
    SavingsGoal,
    SavingsTransaction,
)
from pagination import Page, paginate_expenses
from recurrence import RoutineStatus, local_today, routine_next_date, routine_status
from schemas import (
    BudgetLineIn,
    CategoryIn,
    ExpenseIn,
    ExpenseUpdateIn,
    HouseholdIn,
    HouseholdSettingsIn,
    PaymentSourceIn,
    RoutineTaskIn,
    SavingsGoalIn,
    SavingsTransactionIn,
)
from store import LedgerStore


logger = logging.getLogger(__name__)


def get_household(session: Session, household_id: int) -> Household:
    household = session.get(Household, household_id)
    if not household:
        raise NotFound("Household not found")
    return household


def recompute_cycle_keys(session: Session, household: Household) -> int:
    expenses = session.scalars(
        select(Expense).where(Expense.household_id == household.id)
    ).all()
    changed = 0
    for expense in expenses:
        month = resolve_cycle(expense.txn_date, household.payday_start_day).month_start
        if expense.month != month:
            expense.month = month
            changed += 1
    session.flush()
    logger.info(
        f"recompute_cycle_keys: household={household.id} "
        f"payday={household.payday_start_day} changed={changed}"
    )
    return changed


class HouseholdService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create(self, data: HouseholdIn) -> Household:
        household = Household(
            name=data.name.strip(), payday_start_day=data.payday_start_day
        )
        self.session.add(household)
        self.session.commit()
        self.session.refresh(household)
        return household

    def get(self, household_id: int) -> Household:
        return get_household(self.session, household_id)

    def update_settings(
        self, household_id: int, data: HouseholdSettingsIn
    ) -> Household:
        household = self.get(household_id)
        if data.name is not None:
            household.name = data.name.strip()
        if (
            data.payday_start_day is not None
            and data.payday_start_day != household.payday_start_day
        ):
            household.payday_start_day = data.payday_start_day
            recompute_cycle_keys(self.session, household)
        self.session.commit()
        self.session.refresh(household)
        return household


class _NamedLookupService:
    """Shared list/create/rename/(de)activate for categories and payment sources."""

    model: Type[Union[Category, PaymentSource]]
    label: str

    def __init__(self, session: Session, household_id: int) -> None:
        self.session = session
        self.household_id = household_id

    def list_all(self, include_inactive: bool = False) -> list:
        stmt = (
            select(self.model)
            .where(self.model.household_id == self.household_id)
            .order_by(self.model.name)
        )
        if not include_inactive:
            stmt = stmt.where(self.model.active.is_(True))
        return self.session.scalars(stmt).all()

    def get(self, item_id: int):
        item = self.session.get(self.model, item_id)
        if not item or item.household_id != self.household_id:
            raise NotFound(f"{self.label} not found")
        return item

    def _ensure_unique(self, name: str, exclude_id: Optional[int] = None) -> None:
        stmt = select(self.model).where(
            self.model.household_id == self.household_id,
            func.lower(self.model.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(self.model.id != exclude_id)
        if self.session.scalar(stmt):
            raise ConflictViolation(f"{self.label} with this name already exists")

    def create(self, data: Union[CategoryIn, PaymentSourceIn]):
        name = data.name.strip()
        self._ensure_unique(name)
        item = self.model(household_id=self.household_id, name=name, active=True)
        self.session.add(item)
        self.session.commit()
        self.session.refresh(item)
        return item

    def rename(self, item_id: int, name: str):
        item = self.get(item_id)
        clean_name = name.strip()
        if not clean_name:
            raise ValueError(f"{self.label} name cannot be empty")
        self._ensure_unique(clean_name, exclude_id=item.id)
        item.name = clean_name
        self.session.commit()
        return item

    def deactivate(self, item_id: int) -> None:
        item = self.get(item_id)
        item.active = False
        self.session.commit()

    def activate(self, item_id: int) -> None:
        item = self.get(item_id)
        item.active = True
        self.session.commit()


class CategoryService(_NamedLookupService):
    model = Category
    label = "Category"


class PaymentSourceService(_NamedLookupService):
    model = PaymentSource
    label = "Payment source"


class BudgetService:
    def __init__(
        self, session: Session, household_id: int, feed: Optional[ChangeFeed] = None
    ) -> None:
        self.session = session
        self.household_id = household_id
        self.store = LedgerStore(session, household_id)
        self.feed = feed

    def lines_for_cycle(self, key: CycleKey) -> list[dict[str, object]]:
        """Editor view: every active category with its amount (0 when unset)."""
        existing = {
            line.category_id: line for line in self.store.select_budget_lines(key)
        }
        categories = CategoryService(self.session, self.household_id).list_all()
        rows: list[dict[str, object]] = []
        for category in categories:
            line = existing.get(category.id)
            rows.append(
                {
                    "category_id": category.id,
                    "category_name": category.name,
                    "amount": line.amount if line else 0,
                    "carry_over": line.carry_over if line else False,
                }
            )
        return rows

    def upsert_cycle(self, key: CycleKey, lines: list[BudgetLineIn]) -> int:
        category_ids = {line.category_id for line in lines}
        if category_ids:
            found = set(
                self.session.scalars(
                    select(Category.id).where(
                        Category.household_id == self.household_id,
                        Category.id.in_(category_ids),
                    )
                ).all()
            )
            missing = sorted(category_ids - found)
            if missing:
                raise NotFound(f"Category not found: {', '.join(map(str, missing))}")

        count = self.store.upsert_budget_lines(
            key, [(line.category_id, line.amount) for line in lines]
        )
        self.session.commit()
        # the upsert bypasses the identity map
        self.session.expire_all()
        logger.info(
            f"budget_upsert: household={self.household_id} cycle={key} lines={count}"
        )
        if self.feed and count:
            self.feed.on_changed(key, self.household_id)
        return count

    def amount_for(self, key: CycleKey, category_id: int) -> int:
        amount = self.session.scalar(
            select(BudgetLine.amount).where(
                BudgetLine.household_id == self.household_id,
                BudgetLine.category_id == category_id,
                BudgetLine.month == key.month_start,
            )
        )
        return int(amount or 0)


class ExpenseService:
    def __init__(
        self, session: Session, household_id: int, feed: Optional[ChangeFeed] = None
    ) -> None:
        self.session = session
        self.household_id = household_id
        self.store = LedgerStore(session, household_id)
        self.feed = feed

    def _cycle_for(self, txn_date: date) -> CycleKey:
        household = get_household(self.session, self.household_id)
        return resolve_cycle(txn_date, household.payday_start_day)

    def _check_references(
        self, category_id: Optional[int], payment_source_id: Optional[int]
    ) -> None:
        if category_id is not None:
            CategoryService(self.session, self.household_id).get(category_id)
        if payment_source_id is not None:
            PaymentSourceService(self.session, self.household_id).get(
                payment_source_id
            )

    def _publish(self, *keys: CycleKey) -> None:
        if self.feed:
            self.feed.publish_many(keys, self.household_id)

    def create(self, data: ExpenseIn) -> Expense:
        self._check_references(data.category_id, data.payment_source_id)
        key = self._cycle_for(data.txn_date)
        record = data.model_dump()
        record["id"] = data.id or str(uuid.uuid4())
        record["month"] = key.month_start
        expense_id = self.store.insert_expense(record)
        self.session.commit()
        self._publish(key)
        return self.store.get_expense(expense_id)

    def get(self, expense_id: str) -> Expense:
        return self.store.get_expense(expense_id)

    def update(self, expense_id: str, data: ExpenseUpdateIn) -> Expense:
        expense = self.store.get_expense(expense_id)
        partial = data.model_dump(exclude_unset=True)
        for required in ("txn_date", "amount"):
            if required in partial and partial[required] is None:
                raise ValueError(f"{required} cannot be cleared")
        self._check_references(
            partial.get("category_id"), partial.get("payment_source_id")
        )
        if "merchant" in partial and partial["merchant"] is not None:
            partial["merchant"] = partial["merchant"].strip() or None

        old_key = CycleKey.from_date(expense.month)
        new_key = old_key
        if "txn_date" in partial:
            new_key = self._cycle_for(partial["txn_date"])
            partial["month"] = new_key.month_start

        expense = self.store.update_expense(expense_id, partial)
        self.session.commit()
        self._publish(old_key, new_key)
        return expense

    def delete(self, expense_id: str) -> None:
        expense = self.store.delete_expense(expense_id)
        key = CycleKey.from_date(expense.month)
        self.session.commit()
        self._publish(key)

    def page(self, key: CycleKey, page: int, page_size: Optional[int] = None) -> Page:
        return paginate_expenses(
            self.session,
            self.household_id,
            key,
            page,
            page_size or get_settings().page_size,
        )


@dataclass(frozen=True)
class GoalProgress:
    goal_id: int
    name: str
    active: bool
    target_amount: Optional[int]
    target_date: Optional[date]
    current_amount: int
    pct_of_target: Optional[float]
    remaining_to_target: Optional[int]


class SavingsService:
    def __init__(self, session: Session, household_id: int) -> None:
        self.session = session
        self.household_id = household_id

    def list_goals(self, include_inactive: bool = False) -> list[SavingsGoal]:
        stmt = (
            select(SavingsGoal)
            .where(SavingsGoal.household_id == self.household_id)
            .order_by(SavingsGoal.name)
        )
        if not include_inactive:
            stmt = stmt.where(SavingsGoal.active.is_(True))
        return self.session.scalars(stmt).all()

    def get_goal(self, goal_id: int) -> SavingsGoal:
        goal = self.session.get(SavingsGoal, goal_id)
        if not goal or goal.household_id != self.household_id:
            raise NotFound("Savings goal not found")
        return goal

    def create_goal(self, data: SavingsGoalIn) -> SavingsGoal:
        goal = SavingsGoal(
            household_id=self.household_id,
            name=data.name.strip(),
            target_amount=data.target_amount,
            target_date=data.target_date,
            notes=data.notes,
            active=True,
        )
        self.session.add(goal)
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def update_goal(self, goal_id: int, data: SavingsGoalIn) -> SavingsGoal:
        goal = self.get_goal(goal_id)
        goal.name = data.name.strip()
        goal.target_amount = data.target_amount
        goal.target_date = data.target_date
        goal.notes = data.notes
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def deactivate_goal(self, goal_id: int) -> None:
        goal = self.get_goal(goal_id)
        goal.active = False
        self.session.commit()

    def add_transaction(self, data: SavingsTransactionIn) -> SavingsTransaction:
        goal = self.get_goal(data.goal_id)
        txn = SavingsTransaction(
            household_id=self.household_id,
            goal_id=goal.id,
            user_id=data.user_id,
            txn_date=data.txn_date,
            amount=data.amount,
            notes=data.notes,
        )
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def list_transactions(self, goal_id: int) -> list[SavingsTransaction]:
        goal = self.get_goal(goal_id)
        stmt = (
            select(SavingsTransaction)
            .where(
                SavingsTransaction.household_id == self.household_id,
                SavingsTransaction.goal_id == goal.id,
            )
            .order_by(SavingsTransaction.txn_date.desc(), SavingsTransaction.id.desc())
        )
        return self.session.scalars(stmt).all()

    def rollup(self, include_inactive: bool = False) -> list[GoalProgress]:
        saved = func.coalesce(func.sum(SavingsTransaction.amount), 0).label("saved")
        stmt = (
            select(SavingsGoal, saved)
            .outerjoin(
                SavingsTransaction,
                (SavingsTransaction.goal_id == SavingsGoal.id)
                & (SavingsTransaction.household_id == self.household_id),
            )
            .where(SavingsGoal.household_id == self.household_id)
            .group_by(SavingsGoal.id)
            .order_by(SavingsGoal.name)
        )
        if not include_inactive:
            stmt = stmt.where(SavingsGoal.active.is_(True))

        progress: list[GoalProgress] = []
        for goal, current in self.session.execute(stmt).all():
            current = int(current or 0)
            target = goal.target_amount
            has_target = target is not None and target > 0
            progress.append(
                GoalProgress(
                    goal_id=goal.id,
                    name=goal.name,
                    active=goal.active,
                    target_amount=target,
                    target_date=goal.target_date,
                    current_amount=current,
                    pct_of_target=(
                        round(current / target * 100, 2) if has_target else None
                    ),
                    remaining_to_target=(
                        max(0, target - current) if has_target else None
                    ),
                )
            )
        return progress

    def total_saved(self) -> int:
        total = self.session.scalar(
            select(func.coalesce(func.sum(SavingsTransaction.amount), 0))
            .join(SavingsGoal, SavingsTransaction.goal_id == SavingsGoal.id)
            .where(
                SavingsTransaction.household_id == self.household_id,
                SavingsGoal.active.is_(True),
            )
        )
        return int(total or 0)


@dataclass(frozen=True)
class RoutineRow:
    id: int
    name: str
    interval_months: int
    last_date: date
    next_date: date
    status: RoutineStatus


class RoutineService:
    def __init__(self, session: Session, household_id: int) -> None:
        self.session = session
        self.household_id = household_id

    def get(self, task_id: int) -> RoutineTask:
        task = self.session.get(RoutineTask, task_id)
        if not task or task.household_id != self.household_id:
            raise NotFound("Routine task not found")
        return task

    def list_computed(
        self,
        today: Optional[date] = None,
        *,
        status: Optional[RoutineStatus] = None,
        query: Optional[str] = None,
    ) -> list[RoutineRow]:
        today = today or local_today()
        lookahead = get_settings().due_soon_days
        stmt = select(RoutineTask).where(RoutineTask.household_id == self.household_id)
        if query:
            stmt = stmt.where(func.lower(RoutineTask.name).like(f"%{query.lower()}%"))

        rows: list[RoutineRow] = []
        for task in self.session.scalars(stmt).all():
            next_date = routine_next_date(task.last_date, task.interval_months)
            row = RoutineRow(
                id=task.id,
                name=task.name,
                interval_months=task.interval_months,
                last_date=task.last_date,
                next_date=next_date,
                status=routine_status(
                    next_date, today=today, lookahead_days=lookahead
                ),
            )
            if status is None or row.status == status:
                rows.append(row)
        rows.sort(key=lambda r: (r.next_date, r.name, r.id))
        return rows

    def create(self, data: RoutineTaskIn) -> RoutineTask:
        task = RoutineTask(
            household_id=self.household_id,
            name=data.name.strip(),
            interval_months=data.interval_months,
            last_date=data.last_date,
        )
        self.session.add(task)
        self.session.commit()
        self.session.refresh(task)
        return task

    def update(self, task_id: int, data: RoutineTaskIn) -> RoutineTask:
        task = self.get(task_id)
        task.name = data.name.strip()
        task.interval_months = data.interval_months
        task.last_date = data.last_date
        self.session.commit()
        self.session.refresh(task)
        return task

    def mark_done(self, task_id: int, done_on: Optional[date] = None) -> RoutineTask:
        task = self.get(task_id)
        task.last_date = done_on or local_today()
        self.session.commit()
        self.session.refresh(task)
        return task

    def delete(self, task_id: int) -> None:
        task = self.get(task_id)
        self.session.delete(task)
        self.session.commit()
