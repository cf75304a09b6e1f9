"""Delivery queue access over the ``issue_delivery_queue`` outbox table.

Task lifecycle::

    Pending --claim_batch--> InFlight --ack_success--> (row deleted)
                                      --ack_retry----> Pending (execute_after pushed out)
                                      --dead_letter--> issue_delivery_dead_letters

Claims are leases: ``claimed_by``/``claim_expires_at`` are stamped in a short
transaction using ``FOR UPDATE SKIP LOCKED`` so concurrent workers never pick
the same row.  A task whose lease expires (worker crash) becomes claimable
again.  The worker renews the lease with ``heartbeat`` right before each send
and skips the send when renewal fails.  Every ack is guarded by
``claimed_by = worker_id`` so a worker whose lease was taken over cannot
clobber the new owner's state.
"""
from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import UUID

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from bulletin.audit.audit_log import record_event
from bulletin.audit.events import EVENT_DEAD_LETTER_REQUEUED, EVENT_DELIVERY_DEAD_LETTERED
from bulletin.core.errors import UnexpectedError
from bulletin.db.models import DeliveryDeadLetter, IssueDeliveryTask, NewsletterIssue
from bulletin.db.session import session_scope

logger = logging.getLogger(__name__)

ERROR_CLASS_TRANSIENT = "transient"
ERROR_CLASS_PERMANENT = "permanent"

# last_error is operator-facing; keep rows bounded
_MAX_ERROR_LENGTH = 2000


@dataclass(frozen=True, slots=True)
class DeliveryClaim:
    """One leased task together with the issue content needed to send it."""

    newsletter_issue_id: UUID
    subscriber_email: str
    n_retries: int
    worker_id: str
    title: str
    text_content: str
    html_content: str


def _truncate(error: str | None) -> str | None:
    if error is None:
        return None
    return error[:_MAX_ERROR_LENGTH]


def _task_key(claim: DeliveryClaim):
    return (
        IssueDeliveryTask.newsletter_issue_id == claim.newsletter_issue_id,
        IssueDeliveryTask.subscriber_email == claim.subscriber_email,
        IssueDeliveryTask.claimed_by == claim.worker_id,
    )


class DeliveryQueue:
    def __init__(self, session_factory: sessionmaker[Session], *, lease_seconds: int = 300) -> None:
        self._session_factory = session_factory
        self._lease_seconds = int(lease_seconds)

    @contextmanager
    def _transaction(self, action: str) -> Iterator[Session]:
        try:
            with session_scope(self._session_factory) as db:
                yield db
        except SQLAlchemyError as exc:
            raise UnexpectedError(f"Delivery queue failed to {action}") from exc

    # ------------------------------------------------------------------
    # Worker operations
    # ------------------------------------------------------------------

    def claim_batch(
        self,
        *,
        worker_id: str,
        now: datetime | None = None,
        limit: int = 10,
    ) -> list[DeliveryClaim]:
        """Lease up to *limit* due tasks for *worker_id*."""
        now = now or datetime.now(timezone.utc)
        lease_expires_at = now + timedelta(seconds=self._lease_seconds)
        stmt = (
            select(IssueDeliveryTask, NewsletterIssue)
            .join(
                NewsletterIssue,
                NewsletterIssue.newsletter_issue_id == IssueDeliveryTask.newsletter_issue_id,
            )
            .where(
                IssueDeliveryTask.execute_after <= now,
                or_(
                    IssueDeliveryTask.claimed_by.is_(None),
                    IssueDeliveryTask.claim_expires_at < now,
                ),
            )
            .order_by(IssueDeliveryTask.execute_after.asc(), IssueDeliveryTask.created_at.asc())
            .limit(max(1, int(limit)))
            .with_for_update(skip_locked=True, of=IssueDeliveryTask)
        )

        claims: list[DeliveryClaim] = []
        with self._transaction("claim tasks") as db:
            for task, issue in db.execute(stmt).all():
                task.claimed_by = worker_id
                task.claim_expires_at = lease_expires_at
                claims.append(
                    DeliveryClaim(
                        newsletter_issue_id=task.newsletter_issue_id,
                        subscriber_email=task.subscriber_email,
                        n_retries=task.n_retries,
                        worker_id=worker_id,
                        title=issue.title,
                        text_content=issue.text_content,
                        html_content=issue.html_content,
                    )
                )
        if claims:
            logger.debug("Worker %s claimed %d delivery tasks", worker_id, len(claims))
        return claims

    def heartbeat(self, claim: DeliveryClaim, *, now: datetime | None = None) -> bool:
        """Extend the lease on *claim* by another ``lease_seconds``.

        Only a lease that is still held and unexpired can be extended; once it
        has lapsed another worker may already own the task, so False is
        returned and the caller must not send.
        """
        now = now or datetime.now(timezone.utc)
        with self._transaction("extend lease") as db:
            result = db.execute(
                update(IssueDeliveryTask)
                .where(*_task_key(claim), IssueDeliveryTask.claim_expires_at > now)
                .values(claim_expires_at=now + timedelta(seconds=self._lease_seconds))
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def ack_success(self, claim: DeliveryClaim) -> bool:
        """Delete the delivered task.  Returns False if the lease was lost."""
        with self._transaction("acknowledge delivery") as db:
            result = db.execute(
                delete(IssueDeliveryTask)
                .where(*_task_key(claim))
                .execution_options(synchronize_session=False)
            )
            acked = result.rowcount == 1
        if not acked:
            logger.warning(
                "Lost lease on delivery task for issue %s before ack", claim.newsletter_issue_id
            )
        return acked

    def ack_retry(self, claim: DeliveryClaim, *, retry_at: datetime, error: str | None = None) -> bool:
        """Release the lease and reschedule the task for *retry_at*."""
        with self._transaction("reschedule delivery") as db:
            result = db.execute(
                update(IssueDeliveryTask)
                .where(*_task_key(claim))
                .values(
                    n_retries=IssueDeliveryTask.n_retries + 1,
                    execute_after=retry_at,
                    claimed_by=None,
                    claim_expires_at=None,
                    last_error=_truncate(error),
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def dead_letter(
        self,
        claim: DeliveryClaim,
        *,
        error_class: str,
        error: str | None = None,
        now: datetime | None = None,
    ) -> UUID | None:
        """Move the task to the dead-letter table.

        Returns the dead letter id, or ``None`` when the lease was lost.
        """
        now = now or datetime.now(timezone.utc)
        with self._transaction("dead-letter delivery") as db:
            result = db.execute(
                delete(IssueDeliveryTask)
                .where(*_task_key(claim))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
            dead = DeliveryDeadLetter(
                newsletter_issue_id=claim.newsletter_issue_id,
                subscriber_email=claim.subscriber_email,
                n_retries=claim.n_retries + 1,
                error_class=error_class,
                last_error=_truncate(error),
                dead_lettered_at=now,
            )
            db.add(dead)
            db.flush()
            record_event(
                db,
                event_type=EVENT_DELIVERY_DEAD_LETTERED,
                actor=claim.worker_id,
                subject_id=str(dead.id),
                detail={
                    "newsletter_issue_id": str(claim.newsletter_issue_id),
                    "error_class": error_class,
                    "attempts": dead.n_retries,
                },
            )
            dead_id = dead.id
        logger.warning(
            "Dead-lettered delivery for issue %s after %d attempts (%s)",
            claim.newsletter_issue_id,
            claim.n_retries + 1,
            error_class,
        )
        return dead_id

    # ------------------------------------------------------------------
    # Operator operations
    # ------------------------------------------------------------------

    def pending_count(self) -> int:
        with self._transaction("count pending tasks") as db:
            return db.execute(select(func.count()).select_from(IssueDeliveryTask)).scalar_one()

    def dead_letter_count(self) -> int:
        with self._transaction("count dead letters") as db:
            return db.execute(select(func.count()).select_from(DeliveryDeadLetter)).scalar_one()

    def list_dead_letters(self, *, limit: int = 100, offset: int = 0) -> list[DeliveryDeadLetter]:
        stmt = (
            select(DeliveryDeadLetter)
            .order_by(DeliveryDeadLetter.dead_lettered_at.desc())
            .offset(offset)
            .limit(limit)
        )
        with self._transaction("list dead letters") as db:
            return list(db.execute(stmt).scalars().all())

    def requeue_dead_letter(
        self,
        dead_letter_id: UUID,
        *,
        actor: str = "operator",
        now: datetime | None = None,
    ) -> bool:
        """Put a dead letter back on the queue with a fresh retry budget.

        Returns False when *dead_letter_id* does not exist.
        """
        now = now or datetime.now(timezone.utc)
        with self._transaction("requeue dead letter") as db:
            dead = db.get(DeliveryDeadLetter, dead_letter_id)
            if dead is None:
                return False
            existing = db.get(
                IssueDeliveryTask, (dead.newsletter_issue_id, dead.subscriber_email)
            )
            if existing is None:
                db.add(
                    IssueDeliveryTask(
                        newsletter_issue_id=dead.newsletter_issue_id,
                        subscriber_email=dead.subscriber_email,
                        n_retries=0,
                        execute_after=now,
                        created_at=now,
                    )
                )
            db.delete(dead)
            db.flush()
            record_event(
                db,
                event_type=EVENT_DEAD_LETTER_REQUEUED,
                actor=actor,
                subject_id=str(dead_letter_id),
                detail={"newsletter_issue_id": str(dead.newsletter_issue_id)},
            )
        logger.info("Requeued dead letter %s", dead_letter_id)
        return True
