from datetime import datetime, timezone
from uuid import uuid4

from bulletin.db.models import SUBSCRIPTION_CONFIRMED, SUBSCRIPTION_PENDING
from bulletin.db.repositories import (
    AuditEventRepository,
    DeliveryDeadLetterRepository,
    IssueDeliveryTaskRepository,
    NewsletterIssueRepository,
    SubscriptionRepository,
    SubscriptionTokenRepository,
    UserRepository,
)


def test_repository_crud_helpers_cover_all_entities(db_session):
    now = datetime.now(timezone.utc)
    user_repo = UserRepository(db_session)
    subscription_repo = SubscriptionRepository(db_session)
    token_repo = SubscriptionTokenRepository(db_session)
    issue_repo = NewsletterIssueRepository(db_session)
    task_repo = IssueDeliveryTaskRepository(db_session)
    dead_letter_repo = DeliveryDeadLetterRepository(db_session)
    audit_repo = AuditEventRepository(db_session)

    user = user_repo.create(username="admin", password_hash="scrypt$x")
    subscriber = subscription_repo.create(email="reader@example.com", name="Reader", status=SUBSCRIPTION_PENDING)
    token_repo.create(subscription_token="a" * 48, subscriber_id=subscriber.id)
    issue = issue_repo.create(title="Issue #1", text_content="text", html_content="<p>html</p>", published_at=now)
    task_repo.create(
        newsletter_issue_id=issue.newsletter_issue_id,
        subscriber_email=subscriber.email,
        execute_after=now,
        created_at=now,
    )
    dead_letter_repo.create(
        newsletter_issue_id=issue.newsletter_issue_id,
        subscriber_email="other@example.com",
        n_retries=5,
        error_class="transient",
        dead_lettered_at=now,
    )
    audit_repo.create(event_type="issue_published", actor=str(user.user_id), subject_id=str(issue.newsletter_issue_id))
    db_session.commit()

    assert user_repo.get_by_username("admin").user_id == user.user_id
    assert subscription_repo.get_by_email("reader@example.com").id == subscriber.id
    assert token_repo.get("a" * 48).subscriber.id == subscriber.id
    assert len(task_repo.list_for_issue(issue.newsletter_issue_id)) == 1
    assert task_repo.list_for_issue(uuid4()) == []
    assert dead_letter_repo.count() == 1
    assert audit_repo.count() == 1

    subscription_repo.update(subscriber, status=SUBSCRIPTION_CONFIRMED)
    assert [s.id for s in subscription_repo.list_confirmed()] == [subscriber.id]

    task = task_repo.list_for_issue(issue.newsletter_issue_id)[0]
    task_repo.delete(task)
    assert task_repo.count() == 0
