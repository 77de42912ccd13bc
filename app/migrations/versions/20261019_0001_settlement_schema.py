"""Settlement engine schema.

Revision ID: 0001
Revises:
Create Date: 2026-10-19

Creates the core tables:
- accounts and balance_entries (every funds movement, unique reference)
- wagers and wager_legs (selection snapshot frozen at placement)
- job_descriptors (persisted scheduling state of recurring jobs)
- job_runs for task audit logging
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _selection_columns() -> list[sa.Column]:
    return [
        sa.Column("market_id", sa.String(length=64), nullable=True),
        sa.Column("market_name", sa.String(length=200), nullable=True),
        sa.Column("market_kind", sa.String(length=40), nullable=True),
        sa.Column("selection_id", sa.String(length=64), nullable=True),
        sa.Column("selection_label", sa.String(length=120), nullable=True),
        sa.Column("line", sa.Numeric(precision=6, scale=2), nullable=True),
        sa.Column("odds_at_placement", sa.Numeric(precision=10, scale=3), nullable=True),
        sa.Column("event_id", sa.String(length=64), nullable=True),
        sa.Column("home_name", sa.String(length=120), nullable=True),
        sa.Column("away_name", sa.String(length=120), nullable=True),
        sa.Column("event_start_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("estimated_settlement_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("final_score", sa.String(length=20), nullable=True),
        sa.Column("resolved_event_id", sa.String(length=64), nullable=True),
    ]


def upgrade() -> None:
    # Accounts
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("external_ref", sa.String(length=64), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=True),
        sa.Column("balance", sa.Numeric(precision=14, scale=2), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("external_ref"),
    )

    # Wagers
    op.create_table(
        "wagers",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("account_id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(length=20), nullable=False),
        sa.Column("stake", sa.Numeric(precision=14, scale=2), nullable=False),
        sa.Column("total_odds", sa.Numeric(precision=14, scale=3), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("payout", sa.Numeric(precision=14, scale=2), nullable=False),
        sa.Column("profit", sa.Numeric(precision=14, scale=2), nullable=True),
        sa.Column("credited_amount", sa.Numeric(precision=14, scale=2), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        sa.Column("max_retry_count", sa.Integer(), nullable=False),
        sa.Column("inplay", sa.Boolean(), nullable=False),
        *_selection_columns(),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("settlement_reason", sa.Text(), nullable=True),
        sa.Column("match_method", sa.String(length=10), nullable=True),
        sa.Column("match_confidence", sa.Numeric(precision=5, scale=4), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_wagers_status_due", "wagers", ["status", "estimated_settlement_time"]
    )
    op.create_index("ix_wagers_retryable", "wagers", ["status", "max_retry_count"])
    op.create_index("ix_wagers_account", "wagers", ["account_id", "created_at"])

    # Combination legs
    op.create_table(
        "wager_legs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("wager_id", sa.Integer(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("leg_status", sa.String(length=20), nullable=False),
        *_selection_columns(),
        sa.ForeignKeyConstraint(["wager_id"], ["wagers.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("wager_id", "position", name="uq_wager_leg_position"),
    )

    # Balance entries
    op.create_table(
        "balance_entries",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("account_id", sa.Integer(), nullable=False),
        sa.Column("wager_id", sa.Integer(), nullable=True),
        sa.Column("kind", sa.String(length=10), nullable=False),
        sa.Column("amount", sa.Numeric(precision=14, scale=2), nullable=False),
        sa.Column("balance_after", sa.Numeric(precision=14, scale=2), nullable=False),
        sa.Column("reference", sa.String(length=120), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["wager_id"], ["wagers.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("reference"),
    )
    op.create_index(
        "ix_balance_entries_account", "balance_entries", ["account_id", "created_at"]
    )

    # Job descriptors
    op.create_table(
        "job_descriptors",
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("task", sa.String(length=200), nullable=False),
        sa.Column("trigger_kind", sa.String(length=20), nullable=False),
        sa.Column("trigger_expr", sa.String(length=100), nullable=False),
        sa.Column("concurrency_limit", sa.Integer(), nullable=False),
        sa.Column("state", sa.String(length=20), nullable=False),
        sa.Column("last_scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("name"),
    )

    # Job runs (audit log)
    op.create_table(
        "job_runs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_name", sa.String(length=100), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("records_processed", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_job_runs_job_name_started", "job_runs", ["job_name", "started_at"])


def downgrade() -> None:
    op.drop_index("ix_job_runs_job_name_started", table_name="job_runs")
    op.drop_table("job_runs")
    op.drop_table("job_descriptors")
    op.drop_index("ix_balance_entries_account", table_name="balance_entries")
    op.drop_table("balance_entries")
    op.drop_table("wager_legs")
    op.drop_index("ix_wagers_account", table_name="wagers")
    op.drop_index("ix_wagers_retryable", table_name="wagers")
    op.drop_index("ix_wagers_status_due", table_name="wagers")
    op.drop_table("wagers")
    op.drop_table("accounts")
