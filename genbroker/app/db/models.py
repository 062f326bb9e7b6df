"""SQLAlchemy ORM models for the broker's relational database."""

from __future__ import annotations

from typing import Any

from sqlalchemy import CheckConstraint, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from .base import Base

JSON_VALUE = JSON().with_variant(JSONB, "postgresql")


class DbCreditAccount(Base):
    """
    One row per Discord user. ``total_credits`` is grants minus permanent
    consumption and always equals ``available_credits + reserved_credits``.
    """
    __tablename__ = "credit_accounts"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    total_credits: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    available_credits: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    reserved_credits: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    consumed_credits: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    last_refill_period: Mapped[str | None] = mapped_column(String(7), nullable=True)
    created_at: Mapped[int] = mapped_column(Integer)
    updated_at: Mapped[int] = mapped_column(Integer)

    __table_args__ = (
        CheckConstraint("available_credits >= 0", name="chk_credit_accounts_available_nonnegative"),
        CheckConstraint("reserved_credits >= 0", name="chk_credit_accounts_reserved_nonnegative"),
    )


class DbCreditReservation(Base):
    __tablename__ = "credit_reservations"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("credit_accounts.user_id", ondelete="CASCADE"), index=True)
    reserved_amount: Mapped[int] = mapped_column(Integer)
    job_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(16), default="active")
    consumed_amount: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    refunded_amount: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    release_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    expires_at: Mapped[int] = mapped_column(Integer)
    created_at: Mapped[int] = mapped_column(Integer)
    settled_at: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        CheckConstraint("reserved_amount > 0", name="chk_credit_reservations_amount_positive"),
        CheckConstraint(
            "status IN ('active','consumed','released')",
            name="chk_credit_reservations_status",
        ),
        Index("idx_credit_reservations_status_expires", "status", "expires_at"),
    )


class DbCreditTransaction(Base):
    """Append-only audit log of every balance movement."""

    __tablename__ = "credit_transactions"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("credit_accounts.user_id", ondelete="CASCADE"), index=True)
    type: Mapped[str] = mapped_column(String(16))
    amount: Mapped[int] = mapped_column(Integer)
    model: Mapped[str | None] = mapped_column(String(128), nullable=True)
    job_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    reservation_id: Mapped[str | None] = mapped_column(String(32), nullable=True, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    meta: Mapped[dict[str, Any] | None] = mapped_column(JSON_VALUE, nullable=True)
    created_at: Mapped[int] = mapped_column(Integer)

    __table_args__ = (
        CheckConstraint(
            "type IN ('reserve','consume','refund','release','grant')",
            name="chk_credit_transactions_type",
        ),
        CheckConstraint("amount >= 0", name="chk_credit_transactions_amount_nonnegative"),
        Index("idx_credit_transactions_user_created_at", "user_id", "created_at"),
    )


class DbGenerationJob(Base):
    __tablename__ = "generation_jobs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    type: Mapped[str] = mapped_column(String(16))
    model: Mapped[str] = mapped_column(String(128))
    prompt: Mapped[str] = mapped_column(Text)
    params: Mapped[dict[str, Any] | None] = mapped_column(JSON_VALUE, nullable=True)
    status: Mapped[str] = mapped_column(String(32))
    reservation_id: Mapped[str] = mapped_column(String(32), index=True)
    credits_reserved: Mapped[int] = mapped_column(Integer)
    credits_used: Mapped[int | None] = mapped_column(Integer, nullable=True)
    result_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    result_meta: Mapped[dict[str, Any] | None] = mapped_column(JSON_VALUE, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    progress: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    attempts: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    started_at: Mapped[int | None] = mapped_column(Integer, nullable=True)
    completed_at: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[int] = mapped_column(Integer)
    updated_at: Mapped[int] = mapped_column(Integer)

    __table_args__ = (
        CheckConstraint("type IN ('image','video')", name="chk_generation_jobs_type"),
        CheckConstraint(
            "status IN ('pending','processing','completed','failed','cancelled')",
            name="chk_generation_jobs_status",
        ),
        CheckConstraint(
            "(status = 'completed') = (credits_used IS NOT NULL)",
            name="chk_generation_jobs_credits_used_iff_completed",
        ),
        Index("idx_generation_jobs_user_created_at", "user_id", "created_at"),
        Index("idx_generation_jobs_status_created_at", "status", "created_at"),
    )
