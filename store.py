"""Set-based read/write operations against the ledger tables.

Everything here is scoped to one household. Services build on these
operations; aggregation queries live in :mod:`rollups`.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Generic, Iterable, Iterator, Literal, Optional, TypeVar

from sqlalchemy import delete, func, select
from sqlalchemy.exc import OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, joinedload

from cycles import CycleKey
from errors import NotFound, StoreUnavailable
from models import BudgetLine, Expense


T = TypeVar("T")

EXPENSE_LIST_ORDER = (
    Expense.txn_date.desc(),
    Expense.created_at.desc(),
    Expense.id.desc(),
)


@dataclass(frozen=True)
class OneOrMany(Generic[T]):
    """A relation payload that is either a single row or a list of rows."""

    kind: Literal["one", "many"]
    items: tuple[T, ...]

    @classmethod
    def of(cls, value: Any) -> "OneOrMany[T]":
        if value is None:
            return cls("many", ())
        if isinstance(value, (list, tuple)):
            return cls("many", tuple(value))
        return cls("one", (value,))

    def first(self) -> Optional[T]:
        return self.items[0] if self.items else None

    def all(self) -> list[T]:
        return list(self.items)


@dataclass(frozen=True)
class ExpenseRow:
    id: str
    user_id: str
    txn_date: date
    month: date
    amount: int
    merchant: Optional[str]
    notes: Optional[str]
    category_id: Optional[int]
    category_name: Optional[str]
    payment_source_id: Optional[int]
    payment_source_name: Optional[str]
    receipt_path: Optional[str]
    created_at: datetime

    @classmethod
    def from_model(cls, expense: Expense) -> "ExpenseRow":
        return cls(
            id=expense.id,
            user_id=expense.user_id,
            txn_date=expense.txn_date,
            month=expense.month,
            amount=expense.amount,
            merchant=expense.merchant,
            notes=expense.notes,
            category_id=expense.category_id,
            category_name=_relation_name(expense.category),
            payment_source_id=expense.payment_source_id,
            payment_source_name=_relation_name(expense.payment_source),
            receipt_path=expense.receipt_path,
            created_at=expense.created_at,
        )


def _relation_name(value: Any) -> Optional[str]:
    related = OneOrMany.of(value).first()
    return related.name if related is not None else None


@contextmanager
def store_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except (OperationalError, PoolTimeoutError) as exc:
        raise StoreUnavailable(f"{operation} failed: {exc.__class__.__name__}") from exc


def _insert_for(session: Session):
    if session.get_bind().dialect.name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    else:
        from sqlalchemy.dialects.sqlite import insert
    return insert


class LedgerStore:
    def __init__(self, session: Session, household_id: int) -> None:
        self.session = session
        self.household_id = household_id

    def select_budget_lines(self, key: CycleKey) -> list[BudgetLine]:
        stmt = (
            select(BudgetLine)
            .where(
                BudgetLine.household_id == self.household_id,
                BudgetLine.month == key.month_start,
            )
            .order_by(BudgetLine.category_id)
        )
        with store_errors("select_budget_lines"):
            return self.session.scalars(stmt).all()

    def select_expenses(
        self,
        key: CycleKey,
        *,
        order: Optional[Iterable[Any]] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> tuple[list[ExpenseRow], int]:
        scope = (
            Expense.household_id == self.household_id,
            Expense.month == key.month_start,
        )
        stmt = (
            select(Expense)
            .options(
                joinedload(Expense.category), joinedload(Expense.payment_source)
            )
            .where(*scope)
            .order_by(*(order or EXPENSE_LIST_ORDER))
            .offset(offset)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        count_stmt = select(func.count(Expense.id)).where(*scope)
        with store_errors("select_expenses"):
            total = int(self.session.execute(count_stmt).scalar_one() or 0)
            rows = self.session.scalars(stmt).unique().all()
        return [ExpenseRow.from_model(row) for row in rows], total

    def upsert_budget_lines(
        self, key: CycleKey, lines: Iterable[tuple[int, int]]
    ) -> int:
        """Insert or overwrite one row per category for the cycle.

        Repeated category ids in ``lines`` collapse to the last amount.
        """
        amounts: dict[int, int] = {}
        for category_id, amount in lines:
            amounts[category_id] = amount
        if not amounts:
            return 0

        now = datetime.utcnow()
        rows = [
            {
                "household_id": self.household_id,
                "category_id": category_id,
                "month": key.month_start,
                "amount": amount,
                "carry_over": False,
                "created_at": now,
                "updated_at": now,
            }
            for category_id, amount in amounts.items()
        ]
        insert = _insert_for(self.session)
        stmt = insert(BudgetLine).values(rows)
        stmt = stmt.on_conflict_do_update(
            index_elements=["household_id", "category_id", "month"],
            set_={
                "amount": stmt.excluded.amount,
                "carry_over": False,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        with store_errors("upsert_budget_lines"):
            self.session.execute(stmt)
        return len(rows)

    def insert_expense(self, record: dict[str, Any]) -> str:
        """Insert an expense; an existing row with the same id is left as is."""
        now = datetime.utcnow()
        values = {
            **record,
            "household_id": self.household_id,
            "created_at": record.get("created_at") or now,
            "updated_at": now,
        }
        insert = _insert_for(self.session)
        stmt = (
            insert(Expense)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["id"])
        )
        with store_errors("insert_expense"):
            self.session.execute(stmt)
        return values["id"]

    def get_expense(self, expense_id: str) -> Expense:
        stmt = (
            select(Expense)
            .options(
                joinedload(Expense.category), joinedload(Expense.payment_source)
            )
            .where(Expense.household_id == self.household_id, Expense.id == expense_id)
        )
        with store_errors("get_expense"):
            expense = self.session.scalar(stmt)
        if not expense:
            raise NotFound("Expense not found")
        return expense

    def update_expense(self, expense_id: str, partial: dict[str, Any]) -> Expense:
        expense = self.get_expense(expense_id)
        for field, value in partial.items():
            setattr(expense, field, value)
        with store_errors("update_expense"):
            self.session.flush()
        return expense

    def delete_expense(self, expense_id: str) -> Expense:
        expense = self.get_expense(expense_id)
        with store_errors("delete_expense"):
            self.session.execute(
                delete(Expense).where(
                    Expense.household_id == self.household_id,
                    Expense.id == expense_id,
                )
            )
        return expense
