from __future__ import annotations

from escrow_engine.core.celery_app import celery
from escrow_engine.core.db import SessionLocal
from escrow_engine.gateway.registry import get_gateway
from escrow_engine.integrations.notifications import get_notifier
from escrow_engine.outbox.relay import relay_outbox_events


@celery.task(name="relay_outbox")
def relay_outbox(limit: int | None = None) -> dict:
    """Drive due outbox events to the payment gateway (scheduled by beat).

    Safe to run from several workers at once: events are claimed one at a
    time with a conditional update, a lost claim is simply skipped.
    """

    with SessionLocal() as db:
        stats = relay_outbox_events(db, gateway=get_gateway(), notifier=get_notifier(), limit=limit)
    return {"ok": True, **stats}
