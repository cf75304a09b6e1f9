from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import MagicMock
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from bulletin.core.security import ScryptParams, hash_password
from bulletin.db import models  # noqa: F401
from bulletin.db.base import Base
from bulletin.db.models import SUBSCRIPTION_CONFIRMED, SUBSCRIPTION_PENDING, Subscription, User
from bulletin.db.session import build_session_factory

OPERATOR_USERNAME = "admin"
OPERATOR_PASSWORD = "everythinghastostartsomewhere"

# Cheap KDF parameters keep the suite fast; verify_password reads them from the hash.
_FAST_SCRYPT = ScryptParams(n=2**4, r=8, p=1)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest.fixture()
def engine():
    """In-memory SQLite engine with all tables created."""
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine) -> sessionmaker[Session]:
    return build_session_factory(engine)


@pytest.fixture()
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture()
def operator_id(session_factory):
    user_id = uuid4()
    with session_factory() as db:
        db.add(
            User(
                user_id=user_id,
                username=OPERATOR_USERNAME,
                password_hash=hash_password(OPERATOR_PASSWORD, _FAST_SCRYPT),
            )
        )
        db.commit()
    return user_id


@pytest.fixture()
def operator_credentials(operator_id) -> tuple[str, str]:
    return OPERATOR_USERNAME, OPERATOR_PASSWORD


def add_subscribers(
    factory: sessionmaker[Session], *, confirmed: int = 0, pending: int = 0, prefix: str = "reader"
) -> list[str]:
    """Insert subscribers and return the confirmed addresses."""
    now = datetime.now(timezone.utc)
    confirmed_emails = []
    with factory() as db:
        for i in range(confirmed):
            email = f"{prefix}{i}@example.com"
            db.add(
                Subscription(
                    email=email,
                    name=f"Reader {prefix} {i}",
                    status=SUBSCRIPTION_CONFIRMED,
                    subscribed_at=now,
                )
            )
            confirmed_emails.append(email)
        for i in range(pending):
            db.add(
                Subscription(
                    email=f"{prefix}-pending{i}@example.com",
                    name=f"Pending {i}",
                    status=SUBSCRIPTION_PENDING,
                    subscribed_at=now,
                )
            )
        db.commit()
    return confirmed_emails


@pytest.fixture()
def subscribers(session_factory):
    return lambda **kwargs: add_subscribers(session_factory, **kwargs)


# ---------------------------------------------------------------------------
# API
# ---------------------------------------------------------------------------

@pytest.fixture()
def email_client() -> MagicMock:
    return MagicMock(spec=["send_email"])


@pytest.fixture()
def client(session_factory, email_client, monkeypatch: pytest.MonkeyPatch) -> TestClient:
    """TestClient wired to the in-memory database and a mocked email client."""
    monkeypatch.setenv("DATABASE_URL", "sqlite+pysqlite:///:memory:")

    from bulletin.core.settings import get_settings

    get_settings.cache_clear()

    from bulletin.api.deps import get_email_client, get_session_factory
    from bulletin.main import app

    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_email_client] = lambda: email_client
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    get_settings.cache_clear()
