from datetime import date, timedelta

import pytest

from cycles import (
    CycleKey,
    cycle_bounds,
    cycle_or_default,
    normalize_cycle_key,
    resolve_cycle,
)
from errors import InvalidCycleFormat, MalformedInput
from recurrence import add_months


def test_resolve_cycle_before_and_on_payday():
    assert str(resolve_cycle(date(2024, 3, 24), 25)) == "2024-02-01"
    assert str(resolve_cycle(date(2024, 3, 25), 25)) == "2024-03-01"


def test_resolve_cycle_wraps_year_boundary():
    assert resolve_cycle(date(2024, 1, 10), 25) == CycleKey(2023, 12)
    assert resolve_cycle(date(2023, 12, 31), 25) == CycleKey(2023, 12)


def test_resolve_cycle_accepts_iso_string():
    assert resolve_cycle("2024-03-25", 25) == CycleKey(2024, 3)


def test_resolve_cycle_rejects_garbage():
    with pytest.raises(MalformedInput):
        resolve_cycle("not-a-date", 25)


def test_missing_payday_means_calendar_month():
    assert resolve_cycle(date(2024, 3, 1), None) == CycleKey(2024, 3)
    assert resolve_cycle(date(2024, 3, 1), 0) == CycleKey(2024, 3)


def test_cycle_bounds_are_half_open():
    cycle = cycle_bounds(CycleKey(2024, 2), 25)
    assert cycle.start == date(2024, 2, 25)
    assert cycle.end == date(2024, 3, 25)
    assert cycle.last_day == date(2024, 3, 24)
    assert cycle.contains(date(2024, 3, 24))
    assert not cycle.contains(date(2024, 3, 25))


def test_resolved_cycle_contains_reference_for_every_payday():
    day = date(2023, 11, 1)
    end = date(2025, 3, 1)
    while day < end:
        for payday in range(1, 29):
            key = resolve_cycle(day, payday)
            assert cycle_bounds(key, payday).contains(day)
        day += timedelta(days=3)


def test_consecutive_cycles_tile_without_gaps():
    for payday in (1, 15, 28):
        key = CycleKey(2023, 11)
        for _ in range(14):
            current = cycle_bounds(key, payday)
            following = cycle_bounds(key.shift(1), payday)
            assert current.end == following.start
            assert 28 <= current.length_days <= 31
            key = key.shift(1)


def test_cycle_key_shift_handles_year_rollover():
    assert CycleKey(2024, 1).shift(-1) == CycleKey(2023, 12)
    assert CycleKey(2024, 12).shift(1) == CycleKey(2025, 1)
    assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)


@pytest.mark.parametrize(
    "raw",
    ["2024-03-01", "2024-03", "2024-03-17", " 2024-03 "],
)
def test_normalize_cycle_key_canonical_forms(raw):
    assert str(normalize_cycle_key(raw)) == "2024-03-01"


def test_normalize_cycle_key_is_idempotent():
    once = normalize_cycle_key("2024-07-19")
    assert normalize_cycle_key(str(once)) == once
    assert normalize_cycle_key(once) is once


@pytest.mark.parametrize(
    "raw",
    ["", "2024", "03-2024", "2024/03/01", "2024-13", "2024-00-01", "0000-05", "march"],
)
def test_normalize_cycle_key_rejects_other_shapes(raw):
    with pytest.raises(InvalidCycleFormat):
        normalize_cycle_key(raw)


def test_cycle_or_default_falls_back_to_current_cycle():
    today = date(2024, 3, 24)
    assert cycle_or_default("bogus", 25, today=today) == CycleKey(2024, 2)
    assert cycle_or_default(None, 25, today=today) == CycleKey(2024, 2)
    assert cycle_or_default("2024-05", 25, today=today) == CycleKey(2024, 5)


def test_cycle_or_default_falls_back_for_out_of_range_year():
    today = date(2024, 3, 24)
    assert cycle_or_default("0000-05", 25, today=today) == CycleKey(2024, 2)
    assert cycle_or_default("9999-12-01", 25, today=today) == CycleKey(2024, 2)
    assert cycle_or_default("9998-12", 25, today=today) == CycleKey(9998, 12)
