import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from cycles import CycleKey
from database import Base
from errors import ConflictViolation, NotFound
from events import ChangeFeed
from models import BudgetLine
from schemas import BudgetLineIn, CategoryIn, HouseholdIn
from services import BudgetService, CategoryService, HouseholdService


def test_upsert_is_idempotent_and_last_write_wins():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        household = HouseholdService(session).create(HouseholdIn(name="Home"))
        food = CategoryService(session, household.id).create(CategoryIn(name="Food"))
        budgets = BudgetService(session, household.id)
        key = CycleKey(2024, 3)

        lines = [BudgetLineIn(category_id=food.id, amount=5_000)]
        assert budgets.upsert_cycle(key, lines) == 1
        assert budgets.upsert_cycle(key, lines) == 1
        count = session.scalar(select(func.count(BudgetLine.id)))
        assert count == 1

        budgets.upsert_cycle(key, [BudgetLineIn(category_id=food.id, amount=7_500)])
        assert budgets.amount_for(key, food.id) == 7_500
        assert session.scalar(select(func.count(BudgetLine.id))) == 1


def test_partial_upsert_leaves_other_categories_untouched():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        household = HouseholdService(session).create(HouseholdIn(name="Home"))
        categories = CategoryService(session, household.id)
        food = categories.create(CategoryIn(name="Food"))
        rent = categories.create(CategoryIn(name="Rent"))
        budgets = BudgetService(session, household.id)
        key = CycleKey(2024, 3)

        budgets.upsert_cycle(
            key,
            [
                BudgetLineIn(category_id=food.id, amount=100),
                BudgetLineIn(category_id=rent.id, amount=900),
            ],
        )
        budgets.upsert_cycle(key, [BudgetLineIn(category_id=food.id, amount=150)])

        by_name = {row["category_name"]: row for row in budgets.lines_for_cycle(key)}
        assert by_name["Food"]["amount"] == 150
        assert by_name["Rent"]["amount"] == 900
        assert by_name["Rent"]["carry_over"] is False
        # other cycles are untouched
        assert budgets.amount_for(key.shift(1), food.id) == 0


def test_duplicate_category_ids_collapse_to_last_amount():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        household = HouseholdService(session).create(HouseholdIn(name="Home"))
        food = CategoryService(session, household.id).create(CategoryIn(name="Food"))
        budgets = BudgetService(session, household.id)
        key = CycleKey(2024, 4)

        saved = budgets.upsert_cycle(
            key,
            [
                BudgetLineIn(category_id=food.id, amount=1),
                BudgetLineIn(category_id=food.id, amount=2),
            ],
        )
        assert saved == 1
        assert budgets.amount_for(key, food.id) == 2


def test_unknown_category_is_rejected_without_writing():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        household = HouseholdService(session).create(HouseholdIn(name="Home"))
        food = CategoryService(session, household.id).create(CategoryIn(name="Food"))
        budgets = BudgetService(session, household.id)

        with pytest.raises(NotFound):
            budgets.upsert_cycle(
                CycleKey(2024, 3),
                [
                    BudgetLineIn(category_id=food.id, amount=10),
                    BudgetLineIn(category_id=food.id + 99, amount=10),
                ],
            )
        assert session.scalar(select(func.count(BudgetLine.id))) == 0


def test_upsert_notifies_change_feed():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        household = HouseholdService(session).create(HouseholdIn(name="Home"))
        food = CategoryService(session, household.id).create(CategoryIn(name="Food"))
        feed = ChangeFeed()
        seen = []
        feed.subscribe(lambda key, household_id: seen.append((str(key), household_id)))

        BudgetService(session, household.id, feed).upsert_cycle(
            CycleKey(2024, 3), [BudgetLineIn(category_id=food.id, amount=10)]
        )
        assert seen == [("2024-03-01", household.id)]


def test_duplicate_category_name_conflicts():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        household = HouseholdService(session).create(HouseholdIn(name="Home"))
        categories = CategoryService(session, household.id)
        categories.create(CategoryIn(name="Food"))
        with pytest.raises(ConflictViolation):
            categories.create(CategoryIn(name="Food"))
