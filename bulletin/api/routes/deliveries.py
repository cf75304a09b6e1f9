"""Delivery queue inspection routes for operators.

Subscriber emails are masked in every response.
"""
from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException

from bulletin.api.deps import get_current_user_id, get_delivery_queue
from bulletin.db.models import DeliveryDeadLetter
from bulletin.delivery.queue import DeliveryQueue
from bulletin.subscriptions.domain import mask_email

router = APIRouter(prefix="/admin/deliveries", tags=["deliveries"])


def _serialize_dead_letter(dead: DeliveryDeadLetter) -> dict:
    return {
        "id": str(dead.id),
        "newsletter_issue_id": str(dead.newsletter_issue_id),
        "subscriber_email": mask_email(dead.subscriber_email),
        "attempts": dead.n_retries,
        "error_class": dead.error_class,
        "dead_lettered_at": dead.dead_lettered_at.isoformat() if dead.dead_lettered_at else None,
    }


@router.get("", summary="Delivery queue summary")
def delivery_summary(
    _: UUID = Depends(get_current_user_id),
    queue: DeliveryQueue = Depends(get_delivery_queue),
):
    return {"pending": queue.pending_count(), "dead_letters": queue.dead_letter_count()}


@router.get("/dead-letters", summary="List dead-lettered deliveries")
def list_dead_letters(
    limit: int = 100,
    offset: int = 0,
    _: UUID = Depends(get_current_user_id),
    queue: DeliveryQueue = Depends(get_delivery_queue),
):
    return [_serialize_dead_letter(dead) for dead in queue.list_dead_letters(limit=limit, offset=offset)]


@router.post("/dead-letters/{dead_letter_id}/requeue", summary="Requeue a dead-lettered delivery")
def requeue_dead_letter(
    dead_letter_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    queue: DeliveryQueue = Depends(get_delivery_queue),
):
    if not queue.requeue_dead_letter(dead_letter_id, actor=str(user_id)):
        raise HTTPException(status_code=404, detail=f"No dead letter {dead_letter_id}")
    return {"id": str(dead_letter_id), "status": "requeued"}
