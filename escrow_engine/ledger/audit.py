from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from escrow_engine.models.tables import AuditLog
from escrow_engine.util.ids import new_uuid
from escrow_engine.util.time import now_utc

log = logging.getLogger("escrow.alerts")


def audit(
    db: Session,
    *,
    user_id: str | None,
    bounty_id: str | None,
    event_type: str,
    severity: str,
    message: str,
    context: dict | None = None,
) -> None:
    db.add(
        AuditLog(
            id=new_uuid(),
            user_id=user_id,
            bounty_id=bounty_id,
            event_type=event_type,
            severity=severity,
            message=message[:1000],
            context=context or {},
            created_at=now_utc(),
        )
    )


def raise_operator_alert(db: Session, *, bounty_id: str | None, message: str, context: dict | None = None) -> None:
    """Persist an OPERATOR_ALERT row (caller commits) and log it at ERROR."""

    log.error("OPERATOR ALERT bounty=%s: %s", bounty_id, message, extra={"alert_context": context or {}})
    audit(
        db,
        user_id=None,
        bounty_id=bounty_id,
        event_type="OPERATOR_ALERT",
        severity="ERROR",
        message=message,
        context=context,
    )
