from __future__ import annotations

from typing import Generic, TypeVar
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from bulletin.db import models

ModelT = TypeVar("ModelT")


class BaseRepository(Generic[ModelT]):
    model: type[ModelT]

    def __init__(self, db: Session):
        self.db = db

    def create(self, **kwargs) -> ModelT:
        entity = self.model(**kwargs)
        self.db.add(entity)
        self.db.flush()
        return entity

    def get(self, entity_id) -> ModelT | None:
        return self.db.get(self.model, entity_id)

    def list(self, limit: int = 100, offset: int = 0) -> list[ModelT]:
        stmt = select(self.model).offset(offset).limit(limit)
        return list(self.db.execute(stmt).scalars().all())

    def count(self) -> int:
        return self.db.execute(select(func.count()).select_from(self.model)).scalar_one()

    def update(self, entity: ModelT, **kwargs) -> ModelT:
        for key, value in kwargs.items():
            setattr(entity, key, value)
        self.db.flush()
        return entity

    def delete(self, entity: ModelT) -> None:
        self.db.delete(entity)
        self.db.flush()


class UserRepository(BaseRepository[models.User]):
    model = models.User

    def get_by_username(self, username: str) -> models.User | None:
        stmt = select(models.User).where(models.User.username == username)
        return self.db.execute(stmt).scalar_one_or_none()


class SubscriptionRepository(BaseRepository[models.Subscription]):
    model = models.Subscription

    def get_by_email(self, email: str) -> models.Subscription | None:
        stmt = select(models.Subscription).where(models.Subscription.email == email)
        return self.db.execute(stmt).scalar_one_or_none()

    def list_confirmed(self) -> list[models.Subscription]:
        stmt = select(models.Subscription).where(
            models.Subscription.status == models.SUBSCRIPTION_CONFIRMED
        )
        return list(self.db.execute(stmt).scalars().all())


class SubscriptionTokenRepository(BaseRepository[models.SubscriptionToken]):
    model = models.SubscriptionToken


class NewsletterIssueRepository(BaseRepository[models.NewsletterIssue]):
    model = models.NewsletterIssue


class IssueDeliveryTaskRepository(BaseRepository[models.IssueDeliveryTask]):
    model = models.IssueDeliveryTask

    def list_for_issue(self, issue_id: UUID) -> list[models.IssueDeliveryTask]:
        stmt = select(models.IssueDeliveryTask).where(
            models.IssueDeliveryTask.newsletter_issue_id == issue_id
        )
        return list(self.db.execute(stmt).scalars().all())


class DeliveryDeadLetterRepository(BaseRepository[models.DeliveryDeadLetter]):
    model = models.DeliveryDeadLetter


class AuditEventRepository(BaseRepository[models.AuditEvent]):
    model = models.AuditEvent
