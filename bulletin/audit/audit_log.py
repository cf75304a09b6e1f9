"""Append-only audit logger.

Provides ``record_event()`` to persist ``AuditEvent`` rows.  Events are
written inside the caller's transaction, so an event becomes visible exactly
when the state change it describes does.

Safety: subscriber emails never reach this table or the log line, only
row identifiers and counts.
"""
from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from bulletin.audit.events import VALID_EVENT_TYPES
from bulletin.db.models import AuditEvent

logger = logging.getLogger(__name__)


def record_event(
    db_session: Session,
    event_type: str,
    actor: str,
    subject_id: str | None = None,
    detail: dict | None = None,
) -> AuditEvent:
    """Create and persist an ``AuditEvent``.

    Raises ``ValueError`` for invalid inputs.  Flushes but does **not**
    commit; the caller controls the transaction boundary.
    """
    if event_type not in VALID_EVENT_TYPES:
        raise ValueError(
            f"Invalid event_type {event_type!r}; "
            f"must be one of {sorted(VALID_EVENT_TYPES)}"
        )

    if not actor or not actor.strip():
        raise ValueError("actor must be a non-empty string")

    event = AuditEvent(
        event_type=event_type,
        actor=actor,
        subject_id=subject_id,
        detail=detail,
    )
    db_session.add(event)
    db_session.flush()

    logger.info("Audit event recorded: type=%s actor=%s", event_type, actor)
    return event


def get_subject_history(
    db_session: Session,
    subject_id: str,
) -> list[AuditEvent]:
    """Return all ``AuditEvent`` rows for *subject_id*, ordered by timestamp."""
    stmt = (
        select(AuditEvent)
        .where(AuditEvent.subject_id == subject_id)
        .order_by(AuditEvent.timestamp.asc())
    )
    return list(db_session.execute(stmt).scalars().all())


def get_events_by_type(
    db_session: Session,
    event_type: str,
) -> list[AuditEvent]:
    """Return all ``AuditEvent`` rows of *event_type*, ordered by timestamp."""
    if event_type not in VALID_EVENT_TYPES:
        raise ValueError(
            f"Invalid event_type {event_type!r}; "
            f"must be one of {sorted(VALID_EVENT_TYPES)}"
        )
    stmt = (
        select(AuditEvent)
        .where(AuditEvent.event_type == event_type)
        .order_by(AuditEvent.timestamp.asc())
    )
    return list(db_session.execute(stmt).scalars().all())
