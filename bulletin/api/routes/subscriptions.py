"""Subscriber sign-up and confirmation routes."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from bulletin.api.deps import get_db, get_email_client
from bulletin.core.settings import get_settings
from bulletin.notification.email_client import DeliveryError, EmailClient
from bulletin.subscriptions.domain import NewSubscriber
from bulletin.subscriptions.service import confirm, register, send_confirmation_email

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


class SubscribeBody(BaseModel):
    email: str
    name: str


@router.post("", summary="Register a new subscriber and send the confirmation email")
def subscribe(
    body: SubscribeBody,
    db: Session = Depends(get_db),
    email_client: EmailClient = Depends(get_email_client),
):
    new_subscriber = NewSubscriber.parse(email=body.email, name=body.name)
    subscriber_id, token = register(db, new_subscriber)
    try:
        send_confirmation_email(email_client, new_subscriber, get_settings().base_url, token)
    except DeliveryError as exc:
        logger.error("Failed to send confirmation email for subscriber %s: %s", subscriber_id, exc)
        raise HTTPException(status_code=500, detail="Failed to send confirmation email") from exc
    return {"status": "pending_confirmation"}


@router.get("/confirm", summary="Confirm a subscription from the emailed link")
def confirm_subscription(subscription_token: str, db: Session = Depends(get_db)):
    subscriber_id = confirm(db, subscription_token)
    if subscriber_id is None:
        raise HTTPException(status_code=404, detail="Unknown subscription token")
    return {"status": "confirmed"}
