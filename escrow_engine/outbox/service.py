from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from escrow_engine.core.errors import OutboxEventNotFound, OutboxRequeueConflict
from escrow_engine.ledger import store
from escrow_engine.ledger.audit import audit
from escrow_engine.models.tables import OutboxEvent
from escrow_engine.schemas.outbox_events import (
    ESCROW_HOLD,
    CompletionReleasePayload,
    EscrowHoldPayload,
    RefundPayload,
)
from escrow_engine.util.ids import new_uuid
from escrow_engine.util.time import now_utc

log = logging.getLogger("outbox")


def new_event_id() -> str:
    return new_uuid()


def enqueue_event(
    db: Session,
    *,
    event_id: str,
    payload: EscrowHoldPayload | CompletionReleasePayload | RefundPayload,
) -> OutboxEvent:
    """Add a pending event to the caller's transaction (no commit).

    The event id is chosen by the caller up front so the wallet rows written
    in the same transaction can point at it.
    """

    now = now_utc()
    event = OutboxEvent(
        id=event_id,
        event_type=payload.event_type,
        bounty_id=payload.bounty_id,
        payload=payload.model_dump(mode="json"),
        status=store.EVENT_PENDING,
        retry_count=0,
        next_attempt_at=now,
        last_error=None,
        created_at=now,
        claimed_at=None,
        processed_at=None,
    )
    db.add(event)
    return event


def list_events(db: Session, *, status: str | None = None, limit: int = 200) -> list[OutboxEvent]:
    q = select(OutboxEvent).order_by(OutboxEvent.created_at.desc()).limit(limit)
    if status:
        q = q.where(OutboxEvent.status == status)
    return list(db.scalars(q))


def requeue_failed_event(db: Session, *, event_id: str, requested_by: str | None = None) -> OutboxEvent:
    """Manual reconciliation: put a failed event and its failed rows back in the queue."""

    event = db.get(OutboxEvent, event_id)
    if event is None:
        raise OutboxEventNotFound(f"Outbox event {event_id} not found")
    if event.status != store.EVENT_FAILED:
        raise OutboxRequeueConflict(f"Event is {event.status}, only failed events can be requeued")
    if event.event_type == ESCROW_HOLD:
        # A failed hold reopened the bounty; recovery is a fresh acceptance.
        raise OutboxRequeueConflict("Failed escrow holds are not requeued; the bounty was reopened")

    rows = [tx for tx in store.transactions_for_event(db, event.id) if tx.status == store.TX_FAILED]
    for tx in rows:
        live = store.find_live_transaction(db, tx.bounty_id, tx.type)
        if live is not None:
            raise OutboxRequeueConflict(f"A newer {tx.type} transaction {live.id} exists for this bounty")

    for tx in rows:
        store.settle_transaction(tx, status=store.TX_PENDING)

    event.status = store.EVENT_PENDING
    event.retry_count = 0
    event.next_attempt_at = now_utc()
    event.claimed_at = None
    event.processed_at = None

    audit(
        db,
        user_id=requested_by,
        bounty_id=event.bounty_id,
        event_type="OUTBOX_REQUEUED",
        severity="WARN",
        message=f"event={event.id} type={event.event_type}",
        context={"event_id": event.id, "transaction_ids": [tx.id for tx in rows]},
    )
    db.commit()
    log.warning("Outbox event %s requeued by %s", event.id, requested_by or "admin")
    return event
