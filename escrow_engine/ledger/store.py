"""Ledger store: the only place that reads or writes bounties, wallet rows and outbox rows.

Functions operate inside the caller's session and leave the commit to the
caller, so a status change, its ledger rows and its outbox event always land in
one transaction. The two relay claim helpers are the exception: a claim is its
own unit of work and is committed immediately.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from escrow_engine.core.errors import BountyNotFound
from escrow_engine.models.tables import Bounty, OutboxEvent, WalletTransaction
from escrow_engine.util.ids import new_uuid
from escrow_engine.util.time import now_utc

TX_ESCROW = "escrow"
TX_RELEASE = "release"
TX_PLATFORM_FEE = "platform_fee"
TX_REFUND = "refund"

TX_PENDING = "pending"
TX_COMPLETED = "completed"
TX_FAILED = "failed"

EVENT_PENDING = "pending"
EVENT_PROCESSING = "processing"
EVENT_COMPLETED = "completed"
EVENT_FAILED = "failed"


def get_bounty(db: Session, bounty_id: str, *, for_update: bool = False) -> Bounty:
    """Load a bounty; for_update takes a row lock (Postgres) so money operations
    on the same bounty serialize. SQLite has no row locks and ignores it."""

    b = db.get(Bounty, bounty_id, with_for_update=True if for_update else None)
    if b is None:
        raise BountyNotFound(f"Bounty {bounty_id} not found")
    return b


def compare_and_set_bounty_status(db: Session, bounty_id: str, *, expected: str, new: str, **values) -> bool:
    """Conditional status update; False means another request changed the row first."""

    res = db.execute(
        update(Bounty)
        .where(Bounty.id == bounty_id, Bounty.status == expected)
        .values(status=new, updated_at=now_utc(), **values)
        .execution_options(synchronize_session="fetch")
    )
    return res.rowcount == 1


def find_live_transaction(db: Session, bounty_id: str, tx_type: str) -> WalletTransaction | None:
    """The pending or completed row for (bounty, type), if any. Failed rows are ignored."""

    return db.scalars(
        select(WalletTransaction).where(
            WalletTransaction.bounty_id == bounty_id,
            WalletTransaction.type == tx_type,
            WalletTransaction.status != TX_FAILED,
        )
    ).one_or_none()


def add_transaction(
    db: Session,
    *,
    bounty_id: str,
    user_id: str,
    tx_type: str,
    amount: int,
    status: str = TX_PENDING,
    outbox_event_id: str | None = None,
    external_ref: str | None = None,
) -> WalletTransaction:
    now = now_utc()
    tx = WalletTransaction(
        id=new_uuid(),
        bounty_id=bounty_id,
        user_id=user_id,
        type=tx_type,
        amount=amount,
        external_ref=external_ref,
        status=status,
        outbox_event_id=outbox_event_id,
        created_at=now,
        updated_at=now,
    )
    db.add(tx)
    return tx


def settle_transaction(tx: WalletTransaction, *, status: str, external_ref: str | None = None) -> None:
    tx.status = status
    if external_ref is not None:
        tx.external_ref = external_ref
    tx.updated_at = now_utc()


def transactions_for_bounty(db: Session, bounty_id: str) -> list[WalletTransaction]:
    return list(
        db.scalars(
            select(WalletTransaction)
            .where(WalletTransaction.bounty_id == bounty_id)
            .order_by(WalletTransaction.created_at.asc())
        )
    )


def transactions_for_event(db: Session, event_id: str) -> list[WalletTransaction]:
    return list(
        db.scalars(
            select(WalletTransaction)
            .where(WalletTransaction.outbox_event_id == event_id)
            .order_by(WalletTransaction.created_at.asc())
        )
    )


def due_event_ids(db: Session, *, now: datetime, limit: int) -> list[str]:
    """Pending events whose backoff has elapsed, oldest first."""

    return list(
        db.scalars(
            select(OutboxEvent.id)
            .where(OutboxEvent.status == EVENT_PENDING, OutboxEvent.next_attempt_at <= now)
            .order_by(OutboxEvent.created_at.asc())
            .limit(limit)
        )
    )


def claim_event(db: Session, event_id: str, *, now: datetime) -> bool:
    """pending -> processing, atomically. Losing the race is not an error."""

    res = db.execute(
        update(OutboxEvent)
        .where(OutboxEvent.id == event_id, OutboxEvent.status == EVENT_PENDING)
        .values(status=EVENT_PROCESSING, claimed_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return res.rowcount == 1


def release_stale_claims(db: Session, *, claimed_before: datetime) -> int:
    """Return events stuck in processing (worker died mid-flight) to the queue."""

    res = db.execute(
        update(OutboxEvent)
        .where(OutboxEvent.status == EVENT_PROCESSING, OutboxEvent.claimed_at < claimed_before)
        .values(status=EVENT_PENDING, claimed_at=None)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return res.rowcount
