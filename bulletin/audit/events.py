"""Event type constants for the append-only audit trail."""
from __future__ import annotations

EVENT_ISSUE_PUBLISHED = "issue_published"
EVENT_DELIVERY_DEAD_LETTERED = "delivery_dead_lettered"
EVENT_DEAD_LETTER_REQUEUED = "dead_letter_requeued"
EVENT_SUBSCRIBER_CONFIRMED = "subscriber_confirmed"
EVENT_STALE_CLAIMS_EXPIRED = "stale_claims_expired"

VALID_EVENT_TYPES: frozenset[str] = frozenset({
    EVENT_ISSUE_PUBLISHED,
    EVENT_DELIVERY_DEAD_LETTERED,
    EVENT_DEAD_LETTER_REQUEUED,
    EVENT_SUBSCRIBER_CONFIRMED,
    EVENT_STALE_CLAIMS_EXPIRED,
})
