import logging
import re
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional, Union

from errors import InvalidCycleFormat, MalformedInput
from recurrence import add_months, local_today


logger = logging.getLogger(__name__)

_FULL_DATE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
_YEAR_MONTH = re.compile(r"^(\d{4})-(\d{2})$")


@dataclass(frozen=True, order=True)
class CycleKey:
    """A payday cycle, named after the calendar month it starts in."""

    year: int
    month: int

    def __post_init__(self) -> None:
        if not 1 <= self.month <= 12:
            raise InvalidCycleFormat(f"Month out of range: {self.month}")
        if not 1 <= self.year <= 9998:
            raise InvalidCycleFormat(f"Year out of range: {self.year}")

    def __str__(self) -> str:
        return f"{self.year:04d}-{self.month:02d}-01"

    @property
    def month_start(self) -> date:
        return date(self.year, self.month, 1)

    @classmethod
    def from_date(cls, value: date) -> "CycleKey":
        return cls(value.year, value.month)

    def shift(self, months: int) -> "CycleKey":
        return CycleKey.from_date(add_months(self.month_start, months))


@dataclass(frozen=True)
class Cycle:
    key: CycleKey
    start: date
    end: date  # exclusive

    @property
    def length_days(self) -> int:
        return (self.end - self.start).days

    @property
    def last_day(self) -> date:
        return self.end - timedelta(days=1)

    def contains(self, value: date) -> bool:
        return self.start <= value < self.end


def _payday(payday_start_day: Optional[int]) -> int:
    return payday_start_day or 1


def parse_reference_date(value: Union[date, str]) -> date:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError as exc:
        raise MalformedInput(f"Invalid date: {value!r}") from exc


def resolve_cycle(
    reference_date: Union[date, str], payday_start_day: Optional[int]
) -> CycleKey:
    """Return the cycle a date falls into for a household's payday start day.

    ``payday_start_day`` is expected to be pre-validated to 1..28; 0 or None
    means plain calendar months.
    """
    ref = parse_reference_date(reference_date)
    payday = _payday(payday_start_day)
    key = CycleKey.from_date(ref)
    if ref.day >= payday:
        return key
    return key.shift(-1)


def cycle_bounds(key: CycleKey, payday_start_day: Optional[int] = 1) -> Cycle:
    start = key.month_start.replace(day=_payday(payday_start_day))
    return Cycle(key=key, start=start, end=add_months(start, 1))


def current_cycle(
    payday_start_day: Optional[int], *, today: Optional[date] = None
) -> CycleKey:
    return resolve_cycle(today or local_today(), payday_start_day)


def normalize_cycle_key(raw: Union[str, CycleKey]) -> CycleKey:
    """Canonicalize ``YYYY-MM-DD``, ``YYYY-MM`` or ``YYYY-MM-01`` input."""
    if isinstance(raw, CycleKey):
        return raw
    if raw is None:
        raise InvalidCycleFormat("Missing cycle")
    value = str(raw).strip()
    match = _FULL_DATE.match(value) or _YEAR_MONTH.match(value)
    if not match:
        raise InvalidCycleFormat(f"Unrecognized cycle format: {raw!r}")
    year, month = int(match.group(1)), int(match.group(2))
    return CycleKey(year, month)


def cycle_or_default(
    raw: Optional[str],
    payday_start_day: Optional[int],
    *,
    today: Optional[date] = None,
) -> CycleKey:
    if raw:
        try:
            return normalize_cycle_key(raw)
        except InvalidCycleFormat:
            logger.warning(f"invalid_cycle: value={raw!r} falling back to current")
    return current_cycle(payday_start_day, today=today)
