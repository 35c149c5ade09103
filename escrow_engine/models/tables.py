from __future__ import annotations

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

# Use JSONB on Postgres, fallback to JSON for SQLite/test environments.
JSONType = JSON().with_variant(JSONB, "postgresql")

from escrow_engine.models.base import Base

# A failed row is history; any other status occupies the (bounty, type) slot.
_LIVE_ROW = text("status != 'failed'")


class Bounty(Base):
    __tablename__ = "bounties"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    amount: Mapped[int] = mapped_column(Integer, nullable=False)  # minor units

    # open/in_progress/cancellation_requested/completed/cancelled/archived
    status: Mapped[str] = mapped_column(String(30), nullable=False)
    poster_id: Mapped[str] = mapped_column(String(64), nullable=False)
    worker_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payment_hold_ref: Mapped[str | None] = mapped_column(String(200), nullable=True)
    is_honor_only: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancellation_requested_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)


class WalletTransaction(Base):
    __tablename__ = "wallet_transactions"
    __table_args__ = (
        Index(
            "ux_wallet_transactions_bounty_type_live",
            "bounty_id",
            "type",
            unique=True,
            sqlite_where=_LIVE_ROW,
            postgresql_where=_LIVE_ROW,
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    bounty_id: Mapped[str] = mapped_column(String(36), ForeignKey("bounties.id"), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)

    type: Mapped[str] = mapped_column(String(20), nullable=False)  # escrow/release/platform_fee/refund
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    external_ref: Mapped[str | None] = mapped_column(String(200), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)  # pending/completed/failed

    outbox_event_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)

    created_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)


class OutboxEvent(Base):
    __tablename__ = "outbox_events"
    __table_args__ = (Index("ix_outbox_events_status_next_attempt", "status", "next_attempt_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)  # ESCROW_HOLD/COMPLETION_RELEASE/REFUND
    bounty_id: Mapped[str] = mapped_column(String(36), ForeignKey("bounties.id"), nullable=False, index=True)

    # Canonical contract payload (validated JSON)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    status: Mapped[str] = mapped_column(String(20), nullable=False)  # pending/processing/completed/failed
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_attempt_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)
    claimed_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=True)


class AuditLog(Base):
    __tablename__ = "audit_log"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    bounty_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    message: Mapped[str] = mapped_column(String(1000), nullable=False)
    context: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)
