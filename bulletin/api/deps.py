"""FastAPI dependency injection: database sessions, email client, operator auth."""
from __future__ import annotations

from collections.abc import Generator
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from sqlalchemy.orm import Session, sessionmaker

from bulletin.core.errors import AuthorizationError
from bulletin.core.security import validate_credentials
from bulletin.core.settings import get_settings
from bulletin.db import session as db_session
from bulletin.delivery.queue import DeliveryQueue
from bulletin.notification.email_client import EmailClient, build_email_client

_basic = HTTPBasic(auto_error=False, realm="publish")

UNAUTHORIZED_HEADERS = {"WWW-Authenticate": 'Basic realm="publish"'}


def get_session_factory() -> sessionmaker[Session]:
    return db_session.get_session_factory()


def get_db(
    factory: sessionmaker[Session] = Depends(get_session_factory),
) -> Generator[Session, None, None]:
    """Yield a SQLAlchemy session; commit on success, rollback on error."""
    db = factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_email_client() -> EmailClient:
    return build_email_client(get_settings())


def get_delivery_queue(
    factory: sessionmaker[Session] = Depends(get_session_factory),
) -> DeliveryQueue:
    return DeliveryQueue(factory, lease_seconds=get_settings().delivery_lease_seconds)


def get_current_user_id(
    credentials: HTTPBasicCredentials | None = Depends(_basic),
    factory: sessionmaker[Session] = Depends(get_session_factory),
) -> UUID:
    """Resolve the operator from HTTP Basic credentials or reply 401."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing operator credentials",
            headers=UNAUTHORIZED_HEADERS,
        )
    db = factory()
    try:
        return validate_credentials(db, credentials.username, credentials.password)
    except AuthorizationError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers=UNAUTHORIZED_HEADERS,
        ) from exc
    finally:
        db.close()
