from __future__ import annotations

from fastapi import Header, HTTPException

from escrow_engine.core.errors import EscrowError


def get_actor(x_user_id: str | None = Header(default=None, alias="X-User-Id")) -> str:
    if not x_user_id:
        raise HTTPException(status_code=400, detail="Missing X-User-Id")
    return x_user_id


def http_error(e: EscrowError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail={"code": e.code, "message": e.message})
