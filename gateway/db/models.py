"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations
(abuse event details are the one JSONB exception).
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import INET, JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class CreditAccount(Base):
    """
    ORM model for credit_accounts table.

    One row per user. Balance is only changed through conditional
    UPDATE statements in the ledger service.
    """

    __tablename__ = "credit_accounts"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    plan: Mapped[str] = mapped_column(String(20), nullable=False, default="free")

    # Lazy reset bookkeeping
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    next_reset_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    # Paid periods count whole months from here; resets never move it
    billing_anchor: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_credit_balance_non_negative"),
        CheckConstraint("plan IN ('free', 'paid')", name="ck_credit_plan"),
        Index("idx_credit_accounts_next_reset", "next_reset_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<CreditAccount(user_id={self.user_id}, plan={self.plan}, "
            f"balance={self.balance}, next_reset_at={self.next_reset_at})>"
        )


class UsageLog(Base):
    """
    ORM model for usage_logs table.

    One row per generation attempt, inserted pending alongside the
    deduction and finalized exactly once.
    """

    __tablename__ = "usage_logs"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    request_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)

    action: Mapped[str] = mapped_column(String(20), nullable=False)
    credits_used: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")

    processing_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("credits_used >= 0", name="ck_usage_credits_non_negative"),
        CheckConstraint(
            "status IN ('pending', 'success', 'failed', 'refunded')", name="ck_usage_status"
        ),
        CheckConstraint("action IN ('tryon', 'video', 'model3d')", name="ck_usage_action"),
        Index("idx_usage_logs_user_created", "user_id", "created_at"),
        Index("idx_usage_logs_pending", "status", postgresql_where=text("status = 'pending'")),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<UsageLog(request_id={self.request_id}, action={self.action}, "
            f"credits={self.credits_used}, status={self.status})>"
        )


class AbuseRecord(Base):
    """
    ORM model for abuse_records table.

    Append-only event log feeding the abuse score.
    """

    __tablename__ = "abuse_records"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(INET, nullable=True)

    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    severity: Mapped[str] = mapped_column(String(10), nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("severity IN ('low', 'medium', 'high')", name="ck_abuse_severity"),
        Index("idx_abuse_records_user_created", "user_id", "created_at"),
        Index(
            "idx_abuse_records_ip_created",
            "ip_address",
            "created_at",
            postgresql_where=(ip_address.isnot(None)),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<AbuseRecord(user_id={self.user_id}, event_type={self.event_type}, "
            f"severity={self.severity})>"
        )


class BlockEntry(Base):
    """
    ORM model for block_entries table.

    A block targets a user id or an IP address. Active while expires_at
    is null or in the future.
    """

    __tablename__ = "block_entries"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(INET, nullable=True)

    reason: Mapped[str] = mapped_column(Text, nullable=False)
    source: Mapped[str] = mapped_column(String(10), nullable=False, default="auto")
    trigger_event: Mapped[str | None] = mapped_column(String(50), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "user_id IS NOT NULL OR ip_address IS NOT NULL", name="ck_block_has_target"
        ),
        CheckConstraint("source IN ('auto', 'manual')", name="ck_block_source"),
        Index("idx_block_entries_user", "user_id", postgresql_where=(user_id.isnot(None))),
        Index("idx_block_entries_ip", "ip_address", postgresql_where=(ip_address.isnot(None))),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        target = self.user_id or self.ip_address
        return f"<BlockEntry(target={target}, source={self.source}, expires_at={self.expires_at})>"


class CacheEntry(Base):
    """
    ORM model for result_cache table.

    Maps a request fingerprint to a stored artifact pointer. The pointer
    is a storage path ("storage:<path>"), an inline data URL, or a
    legacy http URL; never a signed URL.
    """

    __tablename__ = "result_cache"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)

    subject_key: Mapped[str] = mapped_column(String(255), nullable=False)
    source_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    result_pointer: Mapped[str] = mapped_column(Text, nullable=False)

    access_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_accessed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_result_cache_user_created", "user_id", "created_at"),
        Index("idx_result_cache_expires", "expires_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<CacheEntry(fingerprint={self.fingerprint[:12]}, user_id={self.user_id}, "
            f"expires_at={self.expires_at}, access_count={self.access_count})>"
        )
