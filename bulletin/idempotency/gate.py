"""Idempotency gate for state-changing operator requests.

``try_claim`` atomically reserves a ``(user_id, idempotency_key)`` pair by
inserting a row with *insert-if-absent* semantics.  The winner receives a
``Claimed`` result holding the still-open transaction; it performs its side
effects in that transaction and finishes with ``save_response``, which
stores the response on the same row and commits.  Issue, delivery tasks and
replay cache therefore become visible together or not at all.

A concurrent request with the same key blocks on the winner's uncommitted
insert (PostgreSQL row lock / SQLite write lock) until it commits, then
sees the conflict and replays the stored response.

Every committed record carries a response unless a request crashed between
claim and commit on a store that persisted the bare claim; such rows raise
``InvariantViolation`` until ``expire_stale_claims`` removes them.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from starlette.responses import Response

from bulletin.audit.audit_log import record_event
from bulletin.audit.events import EVENT_STALE_CLAIMS_EXPIRED
from bulletin.core.errors import InvariantViolation, UnexpectedError
from bulletin.db.models import IdempotencyRecord
from bulletin.idempotency.key import IdempotencyKey

logger = logging.getLogger(__name__)

_INSERT_BY_DIALECT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


# ---------------------------------------------------------------------------
# Saved responses
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class SavedResponse:
    """A fully-buffered HTTP response as stored on the idempotency record."""

    status_code: int
    headers: list[tuple[str, str]] = field(default_factory=list)
    body: bytes = b""

    @classmethod
    def from_response(cls, response: Response) -> SavedResponse:
        body = getattr(response, "body", None)
        if body is None:
            raise TypeError("Only fully-buffered responses can be saved for replay")
        headers = [
            (name.decode("latin-1"), value.decode("latin-1"))
            for name, value in response.raw_headers
        ]
        return cls(status_code=response.status_code, headers=headers, body=bytes(body))

    @classmethod
    def from_record(cls, record: IdempotencyRecord) -> SavedResponse:
        return cls(
            status_code=record.response_status_code,
            headers=[(name, value) for name, value in (record.response_headers or [])],
            body=bytes(record.response_body or b""),
        )

    def to_response(self) -> Response:
        response = Response(content=self.body, status_code=self.status_code)
        response.raw_headers = [
            (name.encode("latin-1"), value.encode("latin-1")) for name, value in self.headers
        ]
        return response


# ---------------------------------------------------------------------------
# Claim results
# ---------------------------------------------------------------------------

@dataclass(slots=True)
class Claimed:
    """The caller owns the key; ``session`` holds the open claim transaction."""

    session: Session

    def abort(self) -> None:
        """Roll back the claim transaction, discarding the claim itself."""
        try:
            self.session.rollback()
        finally:
            self.session.close()


@dataclass(frozen=True, slots=True)
class Replay:
    """The key was already processed; return ``response`` verbatim."""

    response: SavedResponse


# ---------------------------------------------------------------------------
# Gate operations
# ---------------------------------------------------------------------------

def _insert_if_absent(db: Session, user_id: UUID, key: IdempotencyKey) -> bool:
    dialect = db.get_bind().dialect.name
    insert = _INSERT_BY_DIALECT.get(dialect)
    if insert is None:
        raise UnexpectedError(f"Unsupported database dialect {dialect!r}")
    stmt = (
        insert(IdempotencyRecord)
        .values(
            user_id=user_id,
            idempotency_key=key.value,
            created_at=datetime.now(timezone.utc),
        )
        .on_conflict_do_nothing(index_elements=["user_id", "idempotency_key"])
    )
    return db.execute(stmt).rowcount == 1


def _load_saved_response(db: Session, user_id: UUID, key: IdempotencyKey) -> SavedResponse | None:
    record = db.execute(
        select(IdempotencyRecord).where(
            IdempotencyRecord.user_id == user_id,
            IdempotencyRecord.idempotency_key == key.value,
        )
    ).scalar_one_or_none()
    if record is None or record.response_status_code is None:
        return None
    return SavedResponse.from_record(record)


def try_claim(
    session_factory: sessionmaker[Session],
    user_id: UUID,
    key: IdempotencyKey,
) -> Claimed | Replay:
    """Claim *key* for *user_id* or return the response of the earlier request.

    Raises ``UnexpectedError`` on store faults (including pool timeouts) and
    ``InvariantViolation`` when the key exists without a saved response.
    """
    db = session_factory()
    try:
        if _insert_if_absent(db, user_id, key):
            logger.debug("Idempotency key claimed for user %s", user_id)
            return Claimed(db)
        saved = _load_saved_response(db, user_id, key)
    except SQLAlchemyError as exc:
        db.rollback()
        db.close()
        raise UnexpectedError("Failed to claim idempotency key") from exc
    except BaseException:
        db.rollback()
        db.close()
        raise

    db.rollback()
    db.close()
    if saved is None:
        raise InvariantViolation(
            f"Idempotency key for user {user_id} was claimed but has no saved response"
        )
    logger.info("Replaying saved response for user %s (status=%d)", user_id, saved.status_code)
    return Replay(saved)


def save_response(
    db: Session,
    key: IdempotencyKey,
    user_id: UUID,
    response: Response,
) -> Response:
    """Attach *response* to the claimed record and commit the claim transaction.

    Returns an equivalent response rebuilt from the stored copy, so the first
    caller and every replay receive identical bytes.  The session is closed
    in every case.
    """
    saved = SavedResponse.from_response(response)
    try:
        result = db.execute(
            update(IdempotencyRecord)
            .where(
                IdempotencyRecord.user_id == user_id,
                IdempotencyRecord.idempotency_key == key.value,
                IdempotencyRecord.response_status_code.is_(None),
            )
            .values(
                response_status_code=saved.status_code,
                response_headers=[list(pair) for pair in saved.headers],
                response_body=saved.body,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvariantViolation(
                f"No open idempotency claim for user {user_id}; refusing to save a second response"
            )
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise UnexpectedError("Failed to save idempotent response") from exc
    except BaseException:
        db.rollback()
        raise
    finally:
        db.close()
    return saved.to_response()


def expire_stale_claims(
    db: Session,
    older_than: timedelta,
    *,
    now: datetime | None = None,
) -> int:
    """Delete claims that never received a response within *older_than*.

    Flushes but does not commit.  Returns the number of rows removed.
    """
    now = now or datetime.now(timezone.utc)
    cutoff = now - older_than
    result = db.execute(
        delete(IdempotencyRecord).where(
            IdempotencyRecord.response_status_code.is_(None),
            IdempotencyRecord.created_at < cutoff,
        )
        .execution_options(synchronize_session=False)
    )
    count = result.rowcount or 0
    if count:
        logger.warning("Expired %d stale idempotency claims", count)
        record_event(
            db,
            event_type=EVENT_STALE_CLAIMS_EXPIRED,
            actor="system",
            detail={"count": count, "older_than_seconds": int(older_than.total_seconds())},
        )
    return count
