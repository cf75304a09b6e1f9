"""Subscriber registration and confirmation.

``register`` inserts a ``pending_confirmation`` subscriber plus a random
confirmation token; ``confirm`` flips the subscriber to ``confirmed``.
Only confirmed subscribers are picked up when an issue is enqueued.
"""
from __future__ import annotations

import logging
import secrets
import string
from urllib.parse import urlencode
from uuid import UUID

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from bulletin.audit.audit_log import record_event
from bulletin.audit.events import EVENT_SUBSCRIBER_CONFIRMED
from bulletin.core.errors import UnexpectedError, ValidationError
from bulletin.db.models import SUBSCRIPTION_CONFIRMED, SUBSCRIPTION_PENDING
from bulletin.db.repositories import SubscriptionRepository, SubscriptionTokenRepository
from bulletin.notification.email_client import EmailClient
from bulletin.subscriptions.domain import NewSubscriber

logger = logging.getLogger(__name__)

TOKEN_LENGTH = 48
_TOKEN_ALPHABET = string.ascii_letters + string.digits


def generate_subscription_token() -> str:
    return "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(TOKEN_LENGTH))


def register(db: Session, new_subscriber: NewSubscriber) -> tuple[UUID, str]:
    """Persist *new_subscriber* and a confirmation token.

    Flushes but does not commit.  Returns ``(subscriber_id, token)``.
    Raises ``ValidationError`` when the email is already subscribed.
    """
    subscriptions = SubscriptionRepository(db)
    tokens = SubscriptionTokenRepository(db)
    token = generate_subscription_token()
    if subscriptions.get_by_email(new_subscriber.email.value) is not None:
        raise ValidationError("email is already subscribed")
    try:
        subscriber = subscriptions.create(
            email=new_subscriber.email.value,
            name=new_subscriber.name.value,
            status=SUBSCRIPTION_PENDING,
        )
        tokens.create(subscription_token=token, subscriber_id=subscriber.id)
    except IntegrityError as exc:
        # Lost a race with a concurrent registration of the same address.
        raise ValidationError("email is already subscribed") from exc
    except SQLAlchemyError as exc:
        raise UnexpectedError("Failed to persist new subscriber") from exc

    logger.info("Registered subscriber %s", subscriber.id)
    return subscriber.id, token


def confirm(db: Session, subscription_token: str) -> UUID | None:
    """Confirm the subscriber owning *subscription_token*.

    Returns the subscriber id, or ``None`` when the token is unknown.
    """
    try:
        token = SubscriptionTokenRepository(db).get(subscription_token)
        if token is None:
            return None
        subscriber = token.subscriber
        if subscriber.status != SUBSCRIPTION_CONFIRMED:
            SubscriptionRepository(db).update(subscriber, status=SUBSCRIPTION_CONFIRMED)
            record_event(
                db,
                event_type=EVENT_SUBSCRIBER_CONFIRMED,
                actor="subscriber",
                subject_id=str(subscriber.id),
            )
    except SQLAlchemyError as exc:
        raise UnexpectedError("Failed to confirm subscriber") from exc
    return subscriber.id


def confirmation_link(base_url: str, subscription_token: str) -> str:
    query = urlencode({"subscription_token": subscription_token})
    return f"{base_url.rstrip('/')}/subscriptions/confirm?{query}"


def send_confirmation_email(
    email_client: EmailClient,
    new_subscriber: NewSubscriber,
    base_url: str,
    subscription_token: str,
) -> None:
    link = confirmation_link(base_url, subscription_token)
    email_client.send_email(
        new_subscriber.email,
        "Welcome!",
        f"<h3>Welcome to our newsletter!</h3>"
        f'<p>Click <a href="{link}">here</a> to confirm your subscription.</p>',
        f"Welcome to our newsletter!\nVisit {link} to confirm your subscription.",
    )
