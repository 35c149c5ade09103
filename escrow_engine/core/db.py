from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from escrow_engine.core.config import settings


def _make_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        # In-memory SQLite (tests): every session must see the same database,
        # so one connection is shared across threads for the whole process.
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            pool_pre_ping=True,
        )
    return create_engine(url, pool_pre_ping=True, pool_recycle=1800)


engine = _make_engine(settings.DATABASE_URL)

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


def get_db():
    """FastAPI dependency: one session per request, closed afterwards.

    Services commit their own unit of work; anything left uncommitted when
    the request ends is rolled back on close.
    """
    db: Session = SessionLocal()
    try:
        yield db
    finally:
        db.close()
