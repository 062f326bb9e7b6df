"""Initial schema: credit accounts, reservations, transactions and generation jobs.

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    json_value = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")

    op.create_table(
        "credit_accounts",
        sa.Column("user_id", sa.String(length=64), primary_key=True),
        sa.Column("total_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("available_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reserved_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("consumed_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_refill_period", sa.String(length=7), nullable=True),
        sa.Column("created_at", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.Integer(), nullable=False),
        sa.CheckConstraint("available_credits >= 0", name="chk_credit_accounts_available_nonnegative"),
        sa.CheckConstraint("reserved_credits >= 0", name="chk_credit_accounts_reserved_nonnegative"),
    )

    op.create_table(
        "credit_reservations",
        sa.Column("id", sa.String(length=32), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("reserved_amount", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("consumed_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("refunded_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("release_reason", sa.String(length=255), nullable=True),
        sa.Column("expires_at", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.Integer(), nullable=False),
        sa.Column("settled_at", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["credit_accounts.user_id"], ondelete="CASCADE"),
        sa.CheckConstraint("reserved_amount > 0", name="chk_credit_reservations_amount_positive"),
        sa.CheckConstraint(
            "status IN ('active','consumed','released')",
            name="chk_credit_reservations_status",
        ),
    )
    op.create_index("ix_credit_reservations_user_id", "credit_reservations", ["user_id"])
    op.create_index("ix_credit_reservations_job_id", "credit_reservations", ["job_id"])
    op.create_index(
        "idx_credit_reservations_status_expires",
        "credit_reservations",
        ["status", "expires_at"],
    )

    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.String(length=32), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("model", sa.String(length=128), nullable=True),
        sa.Column("job_id", sa.String(length=64), nullable=True),
        sa.Column("reservation_id", sa.String(length=32), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("meta", json_value, nullable=True),
        sa.Column("created_at", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["credit_accounts.user_id"], ondelete="CASCADE"),
        sa.CheckConstraint(
            "type IN ('reserve','consume','refund','release','grant')",
            name="chk_credit_transactions_type",
        ),
        sa.CheckConstraint("amount >= 0", name="chk_credit_transactions_amount_nonnegative"),
    )
    op.create_index("ix_credit_transactions_user_id", "credit_transactions", ["user_id"])
    op.create_index("ix_credit_transactions_job_id", "credit_transactions", ["job_id"])
    op.create_index("ix_credit_transactions_reservation_id", "credit_transactions", ["reservation_id"])
    op.create_index(
        "idx_credit_transactions_user_created_at",
        "credit_transactions",
        ["user_id", "created_at"],
    )

    op.create_table(
        "generation_jobs",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("model", sa.String(length=128), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("params", json_value, nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("reservation_id", sa.String(length=32), nullable=False),
        sa.Column("credits_reserved", sa.Integer(), nullable=False),
        sa.Column("credits_used", sa.Integer(), nullable=True),
        sa.Column("result_url", sa.Text(), nullable=True),
        sa.Column("result_meta", json_value, nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("started_at", sa.Integer(), nullable=True),
        sa.Column("completed_at", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.Integer(), nullable=False),
        sa.CheckConstraint("type IN ('image','video')", name="chk_generation_jobs_type"),
        sa.CheckConstraint(
            "status IN ('pending','processing','completed','failed','cancelled')",
            name="chk_generation_jobs_status",
        ),
        sa.CheckConstraint(
            "(status = 'completed') = (credits_used IS NOT NULL)",
            name="chk_generation_jobs_credits_used_iff_completed",
        ),
    )
    op.create_index("ix_generation_jobs_user_id", "generation_jobs", ["user_id"])
    op.create_index("ix_generation_jobs_reservation_id", "generation_jobs", ["reservation_id"])
    op.create_index("idx_generation_jobs_user_created_at", "generation_jobs", ["user_id", "created_at"])
    op.create_index("idx_generation_jobs_status_created_at", "generation_jobs", ["status", "created_at"])


def downgrade() -> None:
    op.drop_index("idx_generation_jobs_status_created_at", table_name="generation_jobs")
    op.drop_index("idx_generation_jobs_user_created_at", table_name="generation_jobs")
    op.drop_index("ix_generation_jobs_reservation_id", table_name="generation_jobs")
    op.drop_index("ix_generation_jobs_user_id", table_name="generation_jobs")
    op.drop_table("generation_jobs")

    op.drop_index("idx_credit_transactions_user_created_at", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_reservation_id", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_job_id", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_user_id", table_name="credit_transactions")
    op.drop_table("credit_transactions")

    op.drop_index("idx_credit_reservations_status_expires", table_name="credit_reservations")
    op.drop_index("ix_credit_reservations_job_id", table_name="credit_reservations")
    op.drop_index("ix_credit_reservations_user_id", table_name="credit_reservations")
    op.drop_table("credit_reservations")

    op.drop_table("credit_accounts")
