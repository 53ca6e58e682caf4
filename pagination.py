import math
from dataclasses import dataclass

from sqlalchemy.orm import Session

from cycles import CycleKey
from errors import MalformedInput
from store import ExpenseRow, LedgerStore


@dataclass(frozen=True)
class Page:
    items: list[ExpenseRow]
    page: int
    page_size: int
    total_count: int

    @property
    def total_pages(self) -> int:
        return max(1, math.ceil(self.total_count / self.page_size))

    @property
    def has_prev(self) -> bool:
        return self.page > 1

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages


def clamp_page(requested: int, total_count: int, page_size: int) -> int:
    last_page = max(1, math.ceil(total_count / page_size))
    return max(1, min(requested, last_page))


def paginate_expenses(
    session: Session,
    household_id: int,
    key: CycleKey,
    page: int,
    page_size: int,
) -> Page:
    """Newest-first window over a cycle's expenses.

    Out-of-range pages resolve to the last page; an empty cycle is page 1.
    """
    if page_size < 1:
        raise MalformedInput("Page size must be at least 1")
    store = LedgerStore(session, household_id)

    page = max(1, page)
    items, total = store.select_expenses(
        key, offset=(page - 1) * page_size, limit=page_size
    )
    clamped = clamp_page(page, total, page_size)
    if clamped != page:
        items, total = store.select_expenses(
            key, offset=(clamped - 1) * page_size, limit=page_size
        )
        clamped = clamp_page(clamped, total, page_size)
    return Page(items=items, page=clamped, page_size=page_size, total_count=total)
