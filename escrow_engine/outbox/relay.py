from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from escrow_engine.core.config import settings
from escrow_engine.core.retry import RetryPolicy
from escrow_engine.gateway.base import GatewayError, PaymentGateway
from escrow_engine.integrations.notifications import Notifier
from escrow_engine.ledger import store
from escrow_engine.models.tables import OutboxEvent
from escrow_engine.outbox.handlers import compensate_failed_event, dispatch
from escrow_engine.schemas.outbox_events import parse_payload
from escrow_engine.util.time import now_utc

log = logging.getLogger("outbox.relay")


def relay_outbox_events(
    db: Session,
    *,
    gateway: PaymentGateway,
    notifier: Notifier,
    policy: RetryPolicy | None = None,
    now: datetime | None = None,
    limit: int | None = None,
) -> dict:
    """One polling pass over the outbox.

    Each due event is claimed with a conditional update, so parallel relays
    never process the same event. Every claimed event leaves this function
    completed, back in pending with a later next_attempt_at, or failed.
    """

    policy = policy or RetryPolicy.from_settings()
    now = now or now_utc()
    limit = limit or settings.OUTBOX_BATCH_SIZE

    stats = {"reclaimed": 0, "claimed": 0, "skipped": 0, "completed": 0, "retried": 0, "failed": 0}

    stats["reclaimed"] = store.release_stale_claims(
        db, claimed_before=now - timedelta(seconds=settings.OUTBOX_CLAIM_TIMEOUT_S)
    )
    if stats["reclaimed"]:
        log.warning("Reclaimed %s outbox events stuck in processing", stats["reclaimed"])

    for event_id in store.due_event_ids(db, now=now, limit=limit):
        if not store.claim_event(db, event_id, now=now):
            # Another relay got there first.
            stats["skipped"] += 1
            continue
        stats["claimed"] += 1

        event = db.get(OutboxEvent, event_id)
        outcome = _process(db, event=event, gateway=gateway, notifier=notifier, policy=policy, now=now)
        stats[outcome] += 1

    if stats["claimed"]:
        log.info("Outbox pass: %s", stats)
    return stats


def _process(
    db: Session,
    *,
    event: OutboxEvent,
    gateway: PaymentGateway,
    notifier: Notifier,
    policy: RetryPolicy,
    now: datetime,
) -> str:
    try:
        payload = parse_payload(event.payload)
        dispatch(db, event=event, payload=payload, gateway=gateway, notifier=notifier)
    except GatewayError as e:
        db.rollback()
        error = f"{e.kind}: {e}" + (f" [{e.code}]" if e.code else "")
        if not e.retryable:
            log.error("Outbox event %s (%s) rejected by gateway: %s", event.id, event.event_type, error)
            _fail(db, event=event, error=error, notifier=notifier, now=now)
            return "failed"

        decision = policy.on_failure(retry_count=event.retry_count, now=now)
        if not decision.retry:
            log.error("Outbox event %s (%s) exhausted retries: %s", event.id, event.event_type, error)
            event.retry_count = decision.retry_count
            _fail(db, event=event, error=error, notifier=notifier, now=now)
            return "failed"

        event.status = store.EVENT_PENDING
        event.retry_count = decision.retry_count
        event.next_attempt_at = decision.next_attempt_at
        event.last_error = error
        event.claimed_at = None
        db.commit()
        log.warning(
            "Outbox event %s (%s) transient failure, retry %s/%s at %s: %s",
            event.id,
            event.event_type,
            decision.retry_count,
            policy.max_retries,
            decision.next_attempt_at.isoformat(),
            error,
        )
        return "retried"
    except Exception as e:
        # Bad payload, unknown type or a bug: retrying cannot help.
        db.rollback()
        log.exception("Outbox event %s (%s) failed fatally", event.id, event.event_type)
        _fail(db, event=event, error=f"fatal: {type(e).__name__}: {e}", notifier=notifier, now=now)
        return "failed"

    event.status = store.EVENT_COMPLETED
    event.processed_at = now
    event.last_error = None
    db.commit()
    return "completed"


def _fail(db: Session, *, event: OutboxEvent, error: str, notifier: Notifier, now: datetime) -> None:
    event.status = store.EVENT_FAILED
    event.last_error = error[:2000]
    event.processed_at = now
    compensate_failed_event(db, event=event, error=error, notifier=notifier)
