"""initial ledger schema

Revision ID: 0001_initial_ledger
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0001_initial_ledger"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "account",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("type", sa.Enum("asset", "liability", "income", "expense", "equity", name="accounttype"), nullable=False),
        sa.Column("account_class", sa.Enum("real", "nominal", name="accountclass"), nullable=False),
        sa.Column("is_group", sa.Boolean(), nullable=False),
        sa.Column("currency", sa.String(length=8), nullable=True),
        sa.Column("parent_id", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("is_system", sa.Boolean(), nullable=False),
        sa.Column("sort_order", sa.Integer(), nullable=False),
        sa.Column("deactivated_at", sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["parent_id"], ["account.id"], ondelete="RESTRICT"),
        sa.CheckConstraint(
            "(is_group = 0 AND account_class = 'real') OR currency IS NULL",
            name="ck_account_currency_real_leaf_only",
        ),
    )
    op.create_index("ix_account_parent", "account", ["parent_id"], unique=False)

    op.create_table(
        "transaction",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("from_account_id", sa.Integer(), nullable=False),
        sa.Column("to_account_id", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Numeric(20, 4), nullable=False),
        sa.Column("from_amount", sa.Numeric(20, 4), nullable=True),
        sa.Column("to_amount", sa.Numeric(20, 4), nullable=True),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("nature", sa.Enum("regular", "unexpected", "periodic", name="transactionnature"), nullable=False),
        sa.Column("is_opening", sa.Boolean(), nullable=False),
        sa.Column("is_large_expense", sa.Boolean(), nullable=False),
        sa.Column("is_starred", sa.Boolean(), nullable=False),
        sa.Column("needs_review", sa.Boolean(), nullable=False),
        sa.Column("linked_transaction_id", sa.Integer(), nullable=True),
        sa.Column(
            "link_type",
            sa.Enum("reimbursement", "refund", "split", "correction", name="linktype"),
            nullable=True,
        ),
        *_timestamps(),
        sa.ForeignKeyConstraint(["from_account_id"], ["account.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["to_account_id"], ["account.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["linked_transaction_id"], ["transaction.id"], ondelete="SET NULL"),
        sa.CheckConstraint("from_account_id <> to_account_id", name="ck_transaction_distinct_legs"),
        sa.CheckConstraint("amount <> 0", name="ck_transaction_amount_nonzero"),
    )
    op.create_index("ix_transaction_from_date", "transaction", ["from_account_id", "occurred_at"], unique=False)
    op.create_index("ix_transaction_to_date", "transaction", ["to_account_id", "occurred_at"], unique=False)

    op.create_table(
        "calibration",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("account_id", sa.Integer(), nullable=False),
        sa.Column("balance", sa.Numeric(20, 4), nullable=False),
        sa.Column("calibrated_at", sa.DateTime(), nullable=False),
        sa.Column("source", sa.Enum("manual", "import", name="calibrationsource"), nullable=False),
        sa.Column("is_opening", sa.Boolean(), nullable=False),
        sa.Column("note", sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["account_id"], ["account.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_calibration_account_date", "calibration", ["account_id", "calibrated_at"], unique=False)

    op.create_table(
        "currency_rate",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("from_currency", sa.String(length=8), nullable=False),
        sa.Column("to_currency", sa.String(length=8), nullable=False),
        sa.Column("rate", sa.Numeric(20, 8), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("from_currency", "to_currency", name="uq_currency_rate_pair"),
    )

    op.create_table(
        "budget_plan",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=True),
        sa.Column("plan_type", sa.Enum("category", "total", name="budgetplantype"), nullable=False),
        sa.Column("category_account_id", sa.Integer(), nullable=True),
        sa.Column("period", sa.Enum("weekly", "monthly", name="budgetperiodkind"), nullable=False),
        sa.Column("hard_limit", sa.Numeric(20, 4), nullable=False),
        sa.Column("limit_currency", sa.String(length=8), nullable=False),
        sa.Column("soft_limit_enabled", sa.Boolean(), nullable=False),
        sa.Column("account_filter_mode", sa.Enum("all", "include", "exclude", name="accountfiltermode"), nullable=False),
        sa.Column("account_filter_ids", sa.JSON(), nullable=False),
        sa.Column("included_category_ids", sa.JSON(), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("status", sa.Enum("active", "paused", "expired", name="budgetplanstatus"), nullable=False),
        sa.Column("round_number", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["category_account_id"], ["account.id"], ondelete="RESTRICT"),
    )

    op.create_table(
        "budget_period_record",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("plan_id", sa.Integer(), nullable=False),
        sa.Column("round_number", sa.Integer(), nullable=False),
        sa.Column("period_index", sa.Integer(), nullable=False),
        sa.Column("period_start", sa.Date(), nullable=False),
        sa.Column("period_end", sa.Date(), nullable=False),
        sa.Column("actual_amount", sa.Numeric(20, 4), nullable=False),
        sa.Column("hard_limit", sa.Numeric(20, 4), nullable=False),
        sa.Column("soft_limit", sa.Numeric(20, 4), nullable=True),
        sa.Column("indicator_status", sa.Enum("star", "green", "red", "none", name="indicatorstatus"), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["plan_id"], ["budget_plan.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("plan_id", "round_number", "period_index", name="uq_budget_period_slot"),
    )

    op.create_table(
        "periodic_task",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("from_account_id", sa.Integer(), nullable=False),
        sa.Column("to_account_id", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Numeric(20, 4), nullable=False),
        sa.Column("from_amount", sa.Numeric(20, 4), nullable=True),
        sa.Column("to_amount", sa.Numeric(20, 4), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("frequency", sa.String(length=32), nullable=False),
        sa.Column("first_run_date", sa.Date(), nullable=False),
        sa.Column("next_run_date", sa.Date(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["from_account_id"], ["account.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["to_account_id"], ["account.id"], ondelete="RESTRICT"),
        sa.CheckConstraint("amount > 0", name="ck_periodic_task_amount_positive"),
    )

    op.create_table(
        "reconciliation_issue",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("account_id", sa.Integer(), nullable=False),
        sa.Column("start_calibration_id", sa.Integer(), nullable=False),
        sa.Column("end_calibration_id", sa.Integer(), nullable=False),
        sa.Column("period_start", sa.DateTime(), nullable=False),
        sa.Column("period_end", sa.DateTime(), nullable=False),
        sa.Column("expected_delta", sa.Numeric(20, 4), nullable=False),
        sa.Column("actual_delta", sa.Numeric(20, 4), nullable=False),
        sa.Column("diff", sa.Numeric(20, 4), nullable=False),
        sa.Column("status", sa.Enum("open", "resolved", "ignored", name="reconciliationstatus"), nullable=False),
        sa.Column("resolved_at", sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["account_id"], ["account.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["start_calibration_id"], ["calibration.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["end_calibration_id"], ["calibration.id"], ondelete="RESTRICT"),
        sa.UniqueConstraint("start_calibration_id", "end_calibration_id", name="uq_reconciliation_pair"),
    )

    op.create_table(
        "daily_checkin",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("check_date", sa.Date(), nullable=False, unique=True),
        *_timestamps(),
    )

    # system equity account that balances opening postings
    op.execute(
        "INSERT INTO account (name, type, account_class, is_group, currency, parent_id, is_active, is_system, "
        "sort_order, created_at, updated_at) VALUES ('Opening Balance', 'equity', 'nominal', 0, NULL, NULL, 1, 1, 0, "
        "CURRENT_TIMESTAMP, CURRENT_TIMESTAMP)"
    )


def downgrade() -> None:
    op.drop_table("daily_checkin")
    op.drop_table("reconciliation_issue")
    op.drop_table("periodic_task")
    op.drop_table("budget_period_record")
    op.drop_table("budget_plan")
    op.drop_table("currency_rate")
    op.drop_index("ix_calibration_account_date", table_name="calibration")
    op.drop_table("calibration")
    op.drop_index("ix_transaction_to_date", table_name="transaction")
    op.drop_index("ix_transaction_from_date", table_name="transaction")
    op.drop_table("transaction")
    op.drop_index("ix_account_parent", table_name="account")
    op.drop_table("account")
