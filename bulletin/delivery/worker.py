"""Delivery worker: drains ``issue_delivery_queue`` through the email client.

Each task is handled independently:

- success            -> task deleted
- permanent failure  -> dead-lettered immediately
- transient failure  -> rescheduled with exponential backoff, dead-lettered
                        once ``max_attempts`` failures have accumulated

Delivery is at-least-once: a crash after the provider accepted the email but
before the task row is deleted leaves the task to be picked up again when its
lease expires, so that subscriber receives the issue twice.
"""
from __future__ import annotations

import enum
import logging
import random
import signal
import socket
import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from bulletin.core.errors import ValidationError, error_chain
from bulletin.core.logging import setup_logging
from bulletin.core.settings import Settings, get_settings
from bulletin.db.session import build_engine, build_session_factory, session_scope
from bulletin.delivery.queue import (
    ERROR_CLASS_PERMANENT,
    ERROR_CLASS_TRANSIENT,
    DeliveryClaim,
    DeliveryQueue,
)
from bulletin.idempotency.gate import expire_stale_claims
from bulletin.notification.email_client import (
    DeliveryError,
    EmailClient,
    build_email_client,
)
from bulletin.subscriptions.domain import SubscriberEmail

logger = logging.getLogger(__name__)


def _default_worker_id() -> str:
    host = socket.gethostname() or "worker"
    return f"{host}-{uuid4().hex[:8]}"


def _clock(now: datetime | None) -> datetime:
    return now or datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 5
    backoff_base_seconds: float = 2.0
    backoff_max_seconds: float = 3600.0
    jitter_ratio: float = 0.1

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            max_attempts=settings.delivery_max_attempts,
            backoff_base_seconds=settings.delivery_backoff_base_seconds,
            backoff_max_seconds=settings.delivery_backoff_max_seconds,
        )

    def should_dead_letter(self, failures: int) -> bool:
        return failures >= self.max_attempts

    def backoff(self, failures: int) -> timedelta:
        """Delay before the next attempt after the *failures*-th failure."""
        exponent = max(failures - 1, 0)
        delay = min(self.backoff_max_seconds, self.backoff_base_seconds * (2 ** exponent))
        delay += random.uniform(0, delay * self.jitter_ratio)
        return timedelta(seconds=delay)


class DeliveryOutcome(str, enum.Enum):
    DELIVERED = "delivered"
    RETRY_SCHEDULED = "retry_scheduled"
    DEAD_LETTERED = "dead_lettered"
    LEASE_LOST = "lease_lost"


@dataclass(slots=True)
class BatchReport:
    claimed: int = 0
    outcomes: Counter = field(default_factory=Counter)

    @property
    def delivered(self) -> int:
        return self.outcomes[DeliveryOutcome.DELIVERED]

    @property
    def retried(self) -> int:
        return self.outcomes[DeliveryOutcome.RETRY_SCHEDULED]

    @property
    def dead_lettered(self) -> int:
        return self.outcomes[DeliveryOutcome.DEAD_LETTERED]


class DeliveryWorker:
    def __init__(
        self,
        queue: DeliveryQueue,
        email_client: EmailClient,
        *,
        retry_policy: RetryPolicy | None = None,
        worker_id: str | None = None,
        batch_size: int = 10,
        concurrency: int = 1,
    ) -> None:
        self.queue = queue
        self.email_client = email_client
        self.retry_policy = retry_policy or RetryPolicy()
        self.worker_id = worker_id or _default_worker_id()
        self.batch_size = batch_size
        self.concurrency = max(1, int(concurrency))

    # ------------------------------------------------------------------
    # Single task
    # ------------------------------------------------------------------

    def process(self, claim: DeliveryClaim, now: datetime | None = None) -> DeliveryOutcome:
        """Send one claimed task and record the result.

        *now* pins every timestamp for the task; when omitted the clock is
        read at the lease renewal and again after the send returns.
        """
        if not self.queue.heartbeat(claim, now=now):
            logger.warning(
                "Lease on delivery task for issue %s lapsed before send; skipping",
                claim.newsletter_issue_id,
            )
            return DeliveryOutcome.LEASE_LOST

        try:
            recipient = SubscriberEmail.parse(claim.subscriber_email)
        except ValidationError as exc:
            # Stored address no longer parses; retrying cannot fix it.
            return self._dead_letter(claim, ERROR_CLASS_PERMANENT, exc, _clock(now))

        try:
            self.email_client.send_email(
                recipient,
                claim.title,
                claim.html_content,
                claim.text_content,
            )
        except DeliveryError as exc:
            if exc.permanent:
                return self._dead_letter(claim, ERROR_CLASS_PERMANENT, exc, _clock(now))
            return self._handle_transient(claim, exc, _clock(now))
        except Exception as exc:
            return self._handle_transient(claim, exc, _clock(now))

        if self.queue.ack_success(claim):
            return DeliveryOutcome.DELIVERED
        return DeliveryOutcome.LEASE_LOST

    def _handle_transient(self, claim: DeliveryClaim, exc: Exception, now: datetime) -> DeliveryOutcome:
        failures = claim.n_retries + 1
        if self.retry_policy.should_dead_letter(failures):
            return self._dead_letter(claim, ERROR_CLASS_TRANSIENT, exc, now)

        retry_at = now + self.retry_policy.backoff(failures)
        logger.info(
            "Delivery for issue %s failed (attempt %d/%d), retrying at %s: %s",
            claim.newsletter_issue_id,
            failures,
            self.retry_policy.max_attempts,
            retry_at.isoformat(),
            type(exc).__name__,
        )
        if self.queue.ack_retry(claim, retry_at=retry_at, error=error_chain(exc)):
            return DeliveryOutcome.RETRY_SCHEDULED
        return DeliveryOutcome.LEASE_LOST

    def _dead_letter(
        self,
        claim: DeliveryClaim,
        error_class: str,
        exc: Exception,
        now: datetime,
    ) -> DeliveryOutcome:
        dead_id = self.queue.dead_letter(
            claim, error_class=error_class, error=error_chain(exc), now=now
        )
        if dead_id is None:
            return DeliveryOutcome.LEASE_LOST
        return DeliveryOutcome.DEAD_LETTERED

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def run_once(self, now: datetime | None = None) -> BatchReport:
        """Claim one batch of due tasks and process each of them."""
        claims = self.queue.claim_batch(worker_id=self.worker_id, now=now, limit=self.batch_size)
        report = BatchReport(claimed=len(claims))
        if not claims:
            return report

        if self.concurrency == 1 or len(claims) == 1:
            for claim in claims:
                report.outcomes[self.process(claim, now)] += 1
        else:
            with ThreadPoolExecutor(max_workers=min(self.concurrency, len(claims))) as executor:
                for outcome in executor.map(lambda c: self.process(c, now), claims):
                    report.outcomes[outcome] += 1

        logger.info(
            "Batch done: claimed=%d delivered=%d retried=%d dead_lettered=%d",
            report.claimed,
            report.delivered,
            report.retried,
            report.dead_lettered,
        )
        return report

    def run_forever(
        self,
        stop_event: threading.Event,
        *,
        poll_interval: float = 1.0,
        poll_interval_max: float = 10.0,
        cleanup_interval: float = 60.0,
        cleanup=None,
    ) -> None:
        """Poll until *stop_event* is set, backing off while the queue is idle."""
        logger.info("Delivery worker starting worker_id=%s concurrency=%d", self.worker_id, self.concurrency)
        poll = poll_interval
        next_cleanup = time.monotonic() + cleanup_interval

        while not stop_event.is_set():
            if cleanup is not None and time.monotonic() >= next_cleanup:
                try:
                    cleanup()
                except Exception:
                    logger.exception("periodic cleanup failed")
                next_cleanup = time.monotonic() + cleanup_interval

            try:
                report = self.run_once()
            except Exception:
                logger.exception("delivery batch crashed")
                report = BatchReport()

            if report.claimed:
                poll = poll_interval
                continue

            stop_event.wait(poll)
            poll = min(poll_interval_max, poll * 1.25 + 0.01 + (random.random() * 0.05))

        logger.info("Delivery worker %s stopped", self.worker_id)


def main() -> int:
    settings = get_settings()
    setup_logging()

    engine = build_engine(settings.database_url, pool_timeout=settings.db_pool_timeout_seconds)
    session_factory = build_session_factory(engine)
    queue = DeliveryQueue(session_factory, lease_seconds=settings.delivery_lease_seconds)
    worker = DeliveryWorker(
        queue,
        build_email_client(settings),
        retry_policy=RetryPolicy.from_settings(settings),
        worker_id=settings.worker_id,
        batch_size=settings.delivery_batch_size,
        concurrency=settings.worker_concurrency,
    )

    claim_ttl = timedelta(seconds=settings.idempotency_claim_ttl_seconds)

    def cleanup() -> None:
        with session_scope(session_factory) as db:
            expire_stale_claims(db, claim_ttl)

    stop_event = threading.Event()

    def _request_stop(signum, _frame) -> None:
        logger.info("Received signal %d, finishing current batch", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    try:
        worker.run_forever(
            stop_event,
            poll_interval=settings.worker_poll_interval,
            poll_interval_max=settings.worker_poll_interval_max,
            cleanup_interval=settings.worker_cleanup_interval,
            cleanup=cleanup,
        )
    finally:
        engine.dispose()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
