from __future__ import annotations

import os

import pytest

# Settings() is built at import time; make sure the first import sees a test config.
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("ENSURE_EXTERNAL_DEPS_ON_STARTUP", "0")
os.environ.setdefault("PAYMENT_GATEWAY", "fake")
os.environ.setdefault("ADMIN_TOKEN", "change-me-admin-token")


@pytest.fixture(autouse=True)
def _test_env(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite+pysqlite:///:memory:")
    monkeypatch.setenv("ENSURE_EXTERNAL_DEPS_ON_STARTUP", "0")
    monkeypatch.setenv("PAYMENT_GATEWAY", "fake")
    monkeypatch.setenv("ADMIN_TOKEN", "change-me-admin-token")


@pytest.fixture
def db():
    from escrow_engine.core.db import SessionLocal, engine
    from escrow_engine.models import tables  # noqa: F401
    from escrow_engine.models.base import Base

    # One shared in-memory database (StaticPool): start every test from empty tables.
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    with SessionLocal() as session:
        yield session


@pytest.fixture
def gateway():
    from escrow_engine.gateway.fake import FakeGatewayAdapter

    return FakeGatewayAdapter(min_amount=50)


@pytest.fixture
def notifier():
    from tests.utils_escrow import RecordingNotifier

    return RecordingNotifier()


@pytest.fixture
def session_factory(tmp_path):
    """Sessions on a file database, one connection each, for tests that race threads."""
    from sqlalchemy import create_engine
    from sqlalchemy.orm import sessionmaker

    from escrow_engine.models import tables  # noqa: F401
    from escrow_engine.models.base import Base

    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'escrow.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False)
    engine.dispose()
