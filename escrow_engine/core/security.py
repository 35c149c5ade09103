from __future__ import annotations

import logging
import secrets

from fastapi import Header, HTTPException

from escrow_engine.core.config import settings

log = logging.getLogger("security")


def require_admin_token(x_admin_token: str | None = Header(default=None, alias="X-Admin-Token")) -> None:
    """Guard for the reconciliation endpoints (outbox listing and requeue)."""

    if settings.AUTH_DISABLED:
        return
    if not x_admin_token or not secrets.compare_digest(x_admin_token, settings.ADMIN_TOKEN):
        log.warning("Rejected admin request with %s token", "missing" if not x_admin_token else "invalid")
        raise HTTPException(status_code=401, detail="Invalid admin token")
