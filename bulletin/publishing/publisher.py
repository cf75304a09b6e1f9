"""Issue publisher: persist a newsletter issue and fan it out to the queue.

Both steps run inside the caller's session (the idempotency claim
transaction), so the issue and its delivery tasks commit together with the
cached response.  Nothing here commits.

Fan-out is a single set-based ``INSERT ... SELECT`` over confirmed
subscribers; subscribers confirmed after the statement runs are not
included in the issue.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import UUID, uuid4

from sqlalchemy import DateTime, Integer, Uuid, insert, literal, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from bulletin.audit.audit_log import record_event
from bulletin.audit.events import EVENT_ISSUE_PUBLISHED
from bulletin.core.errors import UnexpectedError, ValidationError
from bulletin.db.models import (
    SUBSCRIPTION_CONFIRMED,
    IssueDeliveryTask,
    NewsletterIssue,
    Subscription,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class IssueContent:
    title: str
    text: str
    html: str

    @classmethod
    def parse(cls, *, title: str, text: str, html: str) -> IssueContent:
        for field_name, value in (("title", title), ("text", text), ("html", html)):
            if not value or not value.strip():
                raise ValidationError(f"newsletter {field_name} must not be empty")
        return cls(title=title, text=text, html=html)


@dataclass(frozen=True, slots=True)
class PublishedIssue:
    newsletter_issue_id: UUID
    recipients: int


def publish(db: Session, title: str, plaintext: str, html: str) -> UUID:
    """Insert a ``newsletter_issues`` row and return its id."""
    issue_id = uuid4()
    try:
        db.execute(
            insert(NewsletterIssue).values(
                newsletter_issue_id=issue_id,
                title=title,
                text_content=plaintext,
                html_content=html,
                published_at=datetime.now(timezone.utc),
            )
        )
    except SQLAlchemyError as exc:
        raise UnexpectedError("Failed to store newsletter issue") from exc
    return issue_id


def enqueue(db: Session, issue_id: UUID) -> int:
    """Create one delivery task per confirmed subscriber for *issue_id*.

    Returns the number of tasks created.
    """
    now = datetime.now(timezone.utc)
    confirmed = select(
        literal(issue_id, Uuid()),
        Subscription.email,
        literal(0, Integer()),
        literal(now, DateTime(timezone=True)),
        literal(now, DateTime(timezone=True)),
    ).where(Subscription.status == SUBSCRIPTION_CONFIRMED)
    stmt = insert(IssueDeliveryTask).from_select(
        ["newsletter_issue_id", "subscriber_email", "n_retries", "execute_after", "created_at"],
        confirmed,
    )
    try:
        result = db.execute(stmt)
    except SQLAlchemyError as exc:
        raise UnexpectedError("Failed to enqueue delivery tasks") from exc
    return result.rowcount or 0


def publish_issue(db: Session, content: IssueContent, actor: str) -> PublishedIssue:
    """Publish *content* and enqueue it for every confirmed subscriber."""
    issue_id = publish(db, content.title, content.text, content.html)
    recipients = enqueue(db, issue_id)
    record_event(
        db,
        event_type=EVENT_ISSUE_PUBLISHED,
        actor=actor,
        subject_id=str(issue_id),
        detail={"recipients": recipients},
    )
    logger.info("Published issue %s to %d recipients", issue_id, recipients)
    return PublishedIssue(newsletter_issue_id=issue_id, recipients=recipients)
