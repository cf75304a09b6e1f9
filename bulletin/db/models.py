from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    func,
    text as sql_text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bulletin.db.base import Base

SUBSCRIPTION_PENDING = "pending_confirmation"
SUBSCRIPTION_CONFIRMED = "confirmed"


class User(Base):
    """Operator account allowed to publish newsletter issues."""

    __tablename__ = "users"

    user_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    username: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Subscription(Base):
    __tablename__ = "subscriptions"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=SUBSCRIPTION_PENDING, server_default=sql_text("'pending_confirmation'")
    )
    subscribed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    tokens: Mapped[list[SubscriptionToken]] = relationship(back_populates="subscriber", cascade="all, delete-orphan")


class SubscriptionToken(Base):
    __tablename__ = "subscription_tokens"

    subscription_token: Mapped[str] = mapped_column(String(64), primary_key=True)
    subscriber_id: Mapped[UUID] = mapped_column(ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False)

    subscriber: Mapped[Subscription] = relationship(back_populates="tokens")


class IdempotencyRecord(Base):
    """One row per (user, idempotency key).

    Inserted by the idempotency gate before any side effect; the response
    columns stay ``NULL`` until the owning request saves its response in the
    same transaction that persists its side effects.
    """

    __tablename__ = "idempotency"

    user_id: Mapped[UUID] = mapped_column(ForeignKey("users.user_id", ondelete="CASCADE"), primary_key=True)
    idempotency_key: Mapped[str] = mapped_column(String(50), primary_key=True)
    response_status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_headers: Mapped[list | None] = mapped_column(JSON, nullable=True)
    response_body: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class NewsletterIssue(Base):
    """A published issue.  Immutable once inserted."""

    __tablename__ = "newsletter_issues"

    newsletter_issue_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    text_content: Mapped[str] = mapped_column(Text, nullable=False)
    html_content: Mapped[str] = mapped_column(Text, nullable=False)
    published_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class IssueDeliveryTask(Base):
    """Outbox row: one undelivered (issue, subscriber email) pair.

    A row is deleted on successful delivery and moved to
    ``issue_delivery_dead_letters`` once its retry budget is exhausted.
    """

    __tablename__ = "issue_delivery_queue"
    __table_args__ = (Index("ix_issue_delivery_queue_execute_after", "execute_after"),)

    newsletter_issue_id: Mapped[UUID] = mapped_column(
        ForeignKey("newsletter_issues.newsletter_issue_id", ondelete="CASCADE"), primary_key=True
    )
    subscriber_email: Mapped[str] = mapped_column(String(320), primary_key=True)
    n_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=sql_text("0"))
    execute_after: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    claimed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    claim_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    issue: Mapped[NewsletterIssue] = relationship()


class DeliveryDeadLetter(Base):
    __tablename__ = "issue_delivery_dead_letters"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    newsletter_issue_id: Mapped[UUID] = mapped_column(
        ForeignKey("newsletter_issues.newsletter_issue_id", ondelete="CASCADE"), nullable=False
    )
    subscriber_email: Mapped[str] = mapped_column(String(320), nullable=False)
    n_retries: Mapped[int] = mapped_column(Integer, nullable=False)
    error_class: Mapped[str] = mapped_column(String(32), nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    dead_lettered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class AuditEvent(Base):
    """Append-only record of operator actions and delivery outcomes.

    Subscriber emails are never stored here, only issue and row identifiers.
    """

    __tablename__ = "audit_events"
    __table_args__ = (Index("ix_audit_events_subject_id", "subject_id"),)

    audit_event_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    actor: Mapped[str] = mapped_column(
        String(128), nullable=False, default="system", server_default=sql_text("'system'"),
    )
    subject_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    detail: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )
