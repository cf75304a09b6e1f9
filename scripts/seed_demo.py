#!/usr/bin/env python3
"""Seed demo data: one operator account and a handful of subscribers.

Usage:
    python scripts/seed_demo.py          # uses DATABASE_URL from env / .env
    SEED_ADMIN_PASSWORD=... python scripts/seed_demo.py
"""
from __future__ import annotations

import os
import sys
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy.orm import Session

# Ensure project root is on sys.path
sys.path.insert(0, ".")

from bulletin.core.security import hash_password
from bulletin.core.settings import get_settings
from bulletin.db.base import Base
from bulletin.db.models import (
    SUBSCRIPTION_CONFIRMED,
    SUBSCRIPTION_PENDING,
    Subscription,
    SubscriptionToken,
    User,
)
from bulletin.db.session import build_engine
from bulletin.subscriptions.service import generate_subscription_token


def seed(session: Session, admin_password: str) -> None:
    """Insert the ``admin`` operator plus confirmed and pending subscribers."""

    now = datetime.now(timezone.utc)
    session.add(User(user_id=uuid4(), username="admin", password_hash=hash_password(admin_password)))

    demo_subscribers = [
        # (name, email, status)
        ("Alice Johnson", "alice.johnson@example.com", SUBSCRIPTION_CONFIRMED),
        ("Bob Smith", "bob.smith@example.com", SUBSCRIPTION_CONFIRMED),
        ("Priya Patel", "priya.patel@example.in", SUBSCRIPTION_CONFIRMED),
        ("Carlos Rivera", "carlos.r@example.com", SUBSCRIPTION_PENDING),
        ("Fatima Khan", "fatima.khan@example.co.uk", SUBSCRIPTION_PENDING),
    ]

    for name, email, status in demo_subscribers:
        subscriber = Subscription(id=uuid4(), email=email, name=name, status=status, subscribed_at=now)
        session.add(subscriber)
        session.flush()
        if status == SUBSCRIPTION_PENDING:
            session.add(
                SubscriptionToken(subscription_token=generate_subscription_token(), subscriber_id=subscriber.id)
            )

    session.commit()
    print(f"Seeded 1 operator and {len(demo_subscribers)} subscribers.")


def main() -> None:
    settings = get_settings()
    engine = build_engine(settings.database_url)
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        seed(session, os.getenv("SEED_ADMIN_PASSWORD", "everythinghastostartsomewhere"))


if __name__ == "__main__":
    main()
