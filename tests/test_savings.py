from datetime import date

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from errors import NotFound
from schemas import HouseholdIn, SavingsGoalIn, SavingsTransactionIn
from services import HouseholdService, SavingsService


def test_goal_progress_and_totals():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        household = HouseholdService(session).create(HouseholdIn(name="Home"))
        savings = SavingsService(session, household.id)
        trip = savings.create_goal(SavingsGoalIn(name="Trip", target_amount=1_000))
        rainy = savings.create_goal(SavingsGoalIn(name="Rainy day"))

        for amount in (400, 300, -100):
            savings.add_transaction(
                SavingsTransactionIn(
                    goal_id=trip.id,
                    user_id="u1",
                    txn_date=date(2024, 4, 1),
                    amount=amount,
                )
            )
        savings.add_transaction(
            SavingsTransactionIn(
                goal_id=rainy.id, user_id="u2", txn_date=date(2024, 4, 2), amount=50
            )
        )

        progress = {p.name: p for p in savings.rollup()}
        assert progress["Trip"].current_amount == 600
        assert progress["Trip"].pct_of_target == 60.0
        assert progress["Trip"].remaining_to_target == 400
        assert progress["Rainy day"].pct_of_target is None
        assert progress["Rainy day"].remaining_to_target is None
        assert savings.total_saved() == 650
        assert len(savings.list_transactions(trip.id)) == 3

        savings.deactivate_goal(rainy.id)
        assert [g.name for g in savings.list_goals()] == ["Trip"]
        assert savings.total_saved() == 600
        assert [p.name for p in savings.rollup(include_inactive=True)] == [
            "Rainy day",
            "Trip",
        ]


def test_zero_amount_transaction_is_rejected():
    with pytest.raises(ValidationError):
        SavingsTransactionIn(
            goal_id=1, user_id="u1", txn_date=date(2024, 4, 1), amount=0
        )


def test_goal_from_other_household_is_not_found():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        households = HouseholdService(session)
        home = households.create(HouseholdIn(name="Home"))
        other = households.create(HouseholdIn(name="Other"))
        goal = SavingsService(session, other.id).create_goal(SavingsGoalIn(name="Car"))

        with pytest.raises(NotFound):
            SavingsService(session, home.id).get_goal(goal.id)
