from __future__ import annotations

import logging
import time
from typing import Any

from fastapi import FastAPI
from redis import Redis
from sqlalchemy import text

from escrow_engine.api.routers.bounties import router as bounties_router
from escrow_engine.api.routers.outbox import router as outbox_router
from escrow_engine.core.config import settings
from escrow_engine.core.db import engine
from escrow_engine.core.logging import configure_logging

configure_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)
log = logging.getLogger("escrow_engine")

app = FastAPI(title=settings.APP_NAME)


def _retry_backoff(fn, *, attempts: int = 30, base_sleep_s: float = 1.0, max_sleep_s: float = 2.0, what: str) -> bool:
    sleep_s = base_sleep_s
    for i in range(1, attempts + 1):
        try:
            fn()
            return True
        except Exception as e:
            if i == attempts:
                log.error("Startup: %s still not ready after %s attempts: %s", what, attempts, str(e))
                return False
            log.warning("Startup: %s not ready (attempt %s/%s): %s", what, i, attempts, str(e))
            time.sleep(sleep_s)
            sleep_s = min(max_sleep_s, sleep_s * 2.0)
    return False


def _ping_db() -> None:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))


def _check_db() -> bool:
    try:
        _ping_db()
        return True
    except Exception:
        return False


def _check_redis() -> bool:
    try:
        r = Redis.from_url(settings.REDIS_URL, socket_connect_timeout=1, socket_timeout=1)
        return bool(r.ping())
    except Exception:
        return False


@app.on_event("startup")
def _startup() -> None:
    # The API must come up even if the database is briefly unavailable.
    if not settings.ENSURE_EXTERNAL_DEPS_ON_STARTUP:
        log.info("Startup: ENSURE_EXTERNAL_DEPS_ON_STARTUP=false; skipping dependency checks")
        return

    _retry_backoff(_ping_db, what="database")
    log.info("Startup: payment gateway=%s", settings.PAYMENT_GATEWAY)


@app.get("/health")
def health() -> dict[str, Any]:
    deps = {
        "database": _check_db(),
        "redis": _check_redis(),
    }
    return {"ok": all(deps.values()), "deps": deps, "app": settings.APP_NAME}


app.include_router(bounties_router, prefix="/bounties", tags=["bounties"])
app.include_router(outbox_router, prefix="/outbox", tags=["outbox"])
