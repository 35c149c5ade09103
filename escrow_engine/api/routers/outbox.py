from __future__ import annotations

from fastapi import APIRouter, Depends, Header
from sqlalchemy.orm import Session

from escrow_engine.api.deps import http_error
from escrow_engine.core.db import get_db
from escrow_engine.core.errors import EscrowError
from escrow_engine.core.security import require_admin_token
from escrow_engine.models.tables import OutboxEvent
from escrow_engine.outbox.service import list_events, requeue_failed_event

router = APIRouter(dependencies=[Depends(require_admin_token)])


def _event_out(e: OutboxEvent) -> dict:
    return {
        "id": e.id,
        "event_type": e.event_type,
        "bounty_id": e.bounty_id,
        "status": e.status,
        "retry_count": e.retry_count,
        "next_attempt_at": e.next_attempt_at,
        "last_error": e.last_error,
        "created_at": e.created_at,
        "claimed_at": e.claimed_at,
        "processed_at": e.processed_at,
        "payload": e.payload,
    }


@router.get("")
def list_outbox(status: str | None = None, limit: int = 200, db: Session = Depends(get_db)) -> dict:
    return {"items": [_event_out(e) for e in list_events(db, status=status, limit=min(limit, 500))]}


@router.post("/{event_id}/requeue")
def requeue(
    event_id: str,
    x_user_id: str | None = Header(default=None, alias="X-User-Id"),
    db: Session = Depends(get_db),
) -> dict:
    try:
        event = requeue_failed_event(db, event_id=event_id, requested_by=x_user_id)
    except EscrowError as e:
        db.rollback()
        raise http_error(e) from e
    return _event_out(event)
