"""Tests for the FastAPI routes.

Covers:
- POST /admin/newsletters: auth, validation, idempotent replay
- GET /admin/deliveries: queue summary
- GET /admin/deliveries/dead-letters: masked dead letters
- POST /admin/deliveries/dead-letters/{id}/requeue: operator requeue
- POST /subscriptions and GET /subscriptions/confirm
"""
from __future__ import annotations

from uuid import uuid4

import pytest
from sqlalchemy import func, select

from bulletin.db.models import (
    SUBSCRIPTION_CONFIRMED,
    IdempotencyRecord,
    IssueDeliveryTask,
    NewsletterIssue,
    Subscription,
    SubscriptionToken,
)
from bulletin.delivery.queue import ERROR_CLASS_PERMANENT, DeliveryQueue
from bulletin.notification.email_client import TransientDeliveryError


def _count(factory, model) -> int:
    with factory() as db:
        return db.execute(select(func.count()).select_from(model)).scalar_one()


def _newsletter(key: str = "publish-1", title: str = "Issue #1") -> dict:
    return {
        "title": title,
        "content": {"text": "Hello readers", "html": "<p>Hello readers</p>"},
        "idempotency_key": key,
    }


# ===========================================================================
# POST /admin/newsletters
# ===========================================================================

class TestPublishNewsletter:
    def test_publish_enqueues_confirmed_subscribers(self, client, operator_credentials, subscribers, session_factory):
        subscribers(confirmed=2, pending=1)

        response = client.post("/admin/newsletters", json=_newsletter(), auth=operator_credentials)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "published"
        assert body["recipients"] == 2
        assert _count(session_factory, NewsletterIssue) == 1
        assert _count(session_factory, IssueDeliveryTask) == 2

    def test_replays_return_identical_response_and_single_issue(
        self, client, operator_credentials, subscribers, session_factory
    ):
        subscribers(confirmed=3)

        responses = [
            client.post("/admin/newsletters", json=_newsletter(), auth=operator_credentials) for _ in range(3)
        ]

        assert {r.status_code for r in responses} == {200}
        assert responses[1].content == responses[0].content
        assert responses[2].content == responses[0].content
        assert responses[1].headers["content-type"] == responses[0].headers["content-type"]
        assert _count(session_factory, NewsletterIssue) == 1
        assert _count(session_factory, IssueDeliveryTask) == 3
        assert _count(session_factory, IdempotencyRecord) == 1

    def test_replay_ignores_changed_body(self, client, operator_credentials, session_factory):
        first = client.post("/admin/newsletters", json=_newsletter(title="First"), auth=operator_credentials)
        second = client.post("/admin/newsletters", json=_newsletter(title="Second"), auth=operator_credentials)

        assert second.content == first.content
        assert _count(session_factory, NewsletterIssue) == 1

    def test_distinct_keys_publish_distinct_issues(self, client, operator_credentials, session_factory):
        client.post("/admin/newsletters", json=_newsletter(key="a"), auth=operator_credentials)
        client.post("/admin/newsletters", json=_newsletter(key="b"), auth=operator_credentials)

        assert _count(session_factory, NewsletterIssue) == 2

    @pytest.mark.parametrize("key", ["", "k" * 51])
    def test_invalid_key_rejected_before_store_mutation(self, client, operator_credentials, session_factory, key):
        response = client.post("/admin/newsletters", json=_newsletter(key=key), auth=operator_credentials)

        assert response.status_code == 400
        assert _count(session_factory, IdempotencyRecord) == 0
        assert _count(session_factory, NewsletterIssue) == 0

    def test_key_of_max_length_accepted(self, client, operator_credentials):
        response = client.post("/admin/newsletters", json=_newsletter(key="k" * 50), auth=operator_credentials)

        assert response.status_code == 200

    def test_missing_fields_return_400(self, client, operator_credentials):
        response = client.post(
            "/admin/newsletters",
            json={"title": "T", "idempotency_key": "k"},
            auth=operator_credentials,
        )

        assert response.status_code == 400

    def test_empty_content_returns_400(self, client, operator_credentials, session_factory):
        payload = _newsletter()
        payload["content"]["html"] = ""

        response = client.post("/admin/newsletters", json=payload, auth=operator_credentials)

        assert response.status_code == 400
        assert _count(session_factory, IdempotencyRecord) == 0

    def test_missing_credentials_return_401(self, client, session_factory):
        response = client.post("/admin/newsletters", json=_newsletter())

        assert response.status_code == 401
        assert response.headers["www-authenticate"] == 'Basic realm="publish"'
        assert _count(session_factory, NewsletterIssue) == 0

    def test_wrong_password_returns_401(self, client, operator_credentials):
        username, _ = operator_credentials

        response = client.post("/admin/newsletters", json=_newsletter(), auth=(username, "wrong"))

        assert response.status_code == 401
        assert response.headers["www-authenticate"] == 'Basic realm="publish"'


# ===========================================================================
# Delivery inspection
# ===========================================================================

class TestDeliveries:
    def _publish(self, client, operator_credentials):
        response = client.post("/admin/newsletters", json=_newsletter(), auth=operator_credentials)
        return response.json()["newsletter_issue_id"]

    def test_summary_counts_pending_tasks(self, client, operator_credentials, subscribers):
        subscribers(confirmed=2)
        self._publish(client, operator_credentials)

        response = client.get("/admin/deliveries", auth=operator_credentials)

        assert response.status_code == 200
        assert response.json() == {"pending": 2, "dead_letters": 0}

    def test_summary_requires_auth(self, client):
        assert client.get("/admin/deliveries").status_code == 401

    def test_dead_letters_are_masked_and_requeueable(
        self, client, operator_credentials, subscribers, session_factory
    ):
        subscribers(confirmed=1)
        issue_id = self._publish(client, operator_credentials)
        queue = DeliveryQueue(session_factory)
        claim = queue.claim_batch(worker_id="w1", limit=1)[0]
        dead_id = queue.dead_letter(claim, error_class=ERROR_CLASS_PERMANENT, error="rejected")

        listing = client.get("/admin/deliveries/dead-letters", auth=operator_credentials)

        assert listing.status_code == 200
        (entry,) = listing.json()
        assert entry["id"] == str(dead_id)
        assert entry["newsletter_issue_id"] == issue_id
        assert entry["subscriber_email"] == "r***@example.com"
        assert entry["error_class"] == ERROR_CLASS_PERMANENT
        assert "reader0@example.com" not in listing.text

        requeued = client.post(f"/admin/deliveries/dead-letters/{dead_id}/requeue", auth=operator_credentials)

        assert requeued.status_code == 200
        assert requeued.json() == {"id": str(dead_id), "status": "requeued"}
        assert client.get("/admin/deliveries", auth=operator_credentials).json() == {
            "pending": 1,
            "dead_letters": 0,
        }

    def test_requeue_unknown_dead_letter_returns_404(self, client, operator_credentials):
        response = client.post(f"/admin/deliveries/dead-letters/{uuid4()}/requeue", auth=operator_credentials)

        assert response.status_code == 404


# ===========================================================================
# Subscriptions
# ===========================================================================

class TestSubscriptions:
    def test_subscribe_then_confirm(self, client, email_client, session_factory):
        response = client.post("/subscriptions", json={"email": "ursula@example.com", "name": "Ursula"})

        assert response.status_code == 200
        email_client.send_email.assert_called_once()
        with session_factory() as db:
            token = db.execute(select(SubscriptionToken.subscription_token)).scalar_one()
        assert token in email_client.send_email.call_args.args[3]

        confirmed = client.get("/subscriptions/confirm", params={"subscription_token": token})

        assert confirmed.status_code == 200
        with session_factory() as db:
            subscriber = db.execute(select(Subscription)).scalar_one()
        assert subscriber.status == SUBSCRIPTION_CONFIRMED

    @pytest.mark.parametrize(
        "payload",
        [
            {"email": "not-an-email", "name": "Ursula"},
            {"email": "ursula@example.com", "name": ""},
            {"email": "ursula@example.com", "name": "<script>"},
            {"name": "Ursula"},
        ],
    )
    def test_invalid_subscription_returns_400(self, client, email_client, payload):
        response = client.post("/subscriptions", json=payload)

        assert response.status_code == 400
        email_client.send_email.assert_not_called()

    def test_duplicate_subscription_returns_400(self, client):
        payload = {"email": "ursula@example.com", "name": "Ursula"}
        client.post("/subscriptions", json=payload)

        assert client.post("/subscriptions", json=payload).status_code == 400

    def test_failed_confirmation_email_rolls_back(self, client, email_client, session_factory):
        email_client.send_email.side_effect = TransientDeliveryError("provider down")

        response = client.post("/subscriptions", json={"email": "ursula@example.com", "name": "Ursula"})

        assert response.status_code == 500
        assert _count(session_factory, Subscription) == 0

    def test_unknown_token_returns_404(self, client):
        response = client.get("/subscriptions/confirm", params={"subscription_token": "missing"})

        assert response.status_code == 404

    def test_missing_token_returns_400(self, client):
        assert client.get("/subscriptions/confirm").status_code == 400
