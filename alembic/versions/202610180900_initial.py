"""household budget ledger schema

Revision ID: 202610180900
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610180900"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "households",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("payday_start_day", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
        sa.CheckConstraint(
            "payday_start_day BETWEEN 1 AND 28", name="ck_household_payday_range"
        ),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "household_id", sa.Integer(), sa.ForeignKey("households.id"), nullable=False
        ),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.UniqueConstraint("household_id", "name", name="uq_category_household_name"),
    )

    op.create_table(
        "payment_sources",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "household_id", sa.Integer(), sa.ForeignKey("households.id"), nullable=False
        ),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.UniqueConstraint(
            "household_id", "name", name="uq_payment_source_household_name"
        ),
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "household_id", sa.Integer(), sa.ForeignKey("households.id"), nullable=False
        ),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("month", sa.Date(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "carry_over", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        *_timestamps(),
        sa.CheckConstraint("amount >= 0", name="ck_budget_amount_positive"),
        sa.UniqueConstraint(
            "household_id",
            "category_id",
            "month",
            name="uq_budget_household_category_month",
        ),
    )
    op.create_index("ix_budget_household_month", "budgets", ["household_id", "month"])

    op.create_table(
        "expenses",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column(
            "household_id", sa.Integer(), sa.ForeignKey("households.id"), nullable=False
        ),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column(
            "payment_source_id", sa.Integer(), sa.ForeignKey("payment_sources.id")
        ),
        sa.Column("month", sa.Date(), nullable=False),
        sa.Column("txn_date", sa.Date(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("merchant", sa.String(length=120)),
        sa.Column("notes", sa.Text()),
        sa.Column("receipt_path", sa.String(length=255)),
        *_timestamps(),
        sa.CheckConstraint("amount > 0", name="ck_expenses_amount_positive"),
    )
    op.create_index(
        "ix_expenses_household_month", "expenses", ["household_id", "month"]
    )
    op.create_index(
        "ix_expenses_household_date", "expenses", ["household_id", "txn_date"]
    )
    op.create_index(
        "ix_expenses_household_category_date",
        "expenses",
        ["household_id", "category_id", "txn_date"],
    )

    op.create_table(
        "savings_goals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "household_id", sa.Integer(), sa.ForeignKey("households.id"), nullable=False
        ),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("target_amount", sa.Integer()),
        sa.Column("target_date", sa.Date()),
        sa.Column("notes", sa.Text()),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        "savings_transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "household_id", sa.Integer(), sa.ForeignKey("households.id"), nullable=False
        ),
        sa.Column(
            "goal_id", sa.Integer(), sa.ForeignKey("savings_goals.id"), nullable=False
        ),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("txn_date", sa.Date(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("notes", sa.Text()),
        *_timestamps(),
        sa.CheckConstraint("amount <> 0", name="ck_savings_txn_amount_nonzero"),
    )
    op.create_index(
        "ix_savings_txn_goal", "savings_transactions", ["household_id", "goal_id"]
    )

    op.create_table(
        "routine_tasks",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "household_id", sa.Integer(), sa.ForeignKey("households.id"), nullable=False
        ),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("interval_months", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("last_date", sa.Date(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("interval_months > 0", name="ck_routine_interval_positive"),
    )


def downgrade():
    op.drop_table("routine_tasks")
    op.drop_index("ix_savings_txn_goal", table_name="savings_transactions")
    op.drop_table("savings_transactions")
    op.drop_table("savings_goals")
    op.drop_index("ix_expenses_household_category_date", table_name="expenses")
    op.drop_index("ix_expenses_household_date", table_name="expenses")
    op.drop_index("ix_expenses_household_month", table_name="expenses")
    op.drop_table("expenses")
    op.drop_index("ix_budget_household_month", table_name="budgets")
    op.drop_table("budgets")
    op.drop_table("payment_sources")
    op.drop_table("categories")
    op.drop_table("households")
