"""POST /admin/newsletters: idempotent publish of a newsletter issue.

The request key is claimed through the idempotency gate before anything is
written.  A repeated request with the same key gets the first response back
byte for byte; the issue and its delivery tasks are created once.
"""
from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session, sessionmaker
from starlette.responses import Response

from bulletin.api.deps import get_current_user_id, get_session_factory
from bulletin.idempotency.gate import Replay, save_response, try_claim
from bulletin.idempotency.key import IdempotencyKey
from bulletin.publishing.publisher import IssueContent, publish_issue

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/newsletters", tags=["newsletters"])


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class NewsletterContentBody(BaseModel):
    text: str
    html: str


class PublishNewsletterBody(BaseModel):
    title: str
    content: NewsletterContentBody
    idempotency_key: str


@router.post("", summary="Publish a newsletter issue to all confirmed subscribers")
def publish_newsletter(
    body: PublishNewsletterBody,
    user_id: UUID = Depends(get_current_user_id),
    factory: sessionmaker[Session] = Depends(get_session_factory),
) -> Response:
    key = IdempotencyKey.parse(body.idempotency_key)
    content = IssueContent.parse(title=body.title, text=body.content.text, html=body.content.html)

    outcome = try_claim(factory, user_id, key)
    if isinstance(outcome, Replay):
        return outcome.response.to_response()

    try:
        published = publish_issue(outcome.session, content, actor=str(user_id))
    except BaseException:
        outcome.abort()
        raise

    response = JSONResponse(
        status_code=200,
        content={
            "newsletter_issue_id": str(published.newsletter_issue_id),
            "status": "published",
            "recipients": published.recipients,
        },
    )
    return save_response(outcome.session, key, user_id, response)
