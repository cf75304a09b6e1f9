"""Idempotency gate.

A caller-supplied key is claimed once per operator; repeated requests with
the same key replay the stored response instead of re-running side effects.
"""
from bulletin.idempotency.gate import (
    Claimed,
    Replay,
    SavedResponse,
    expire_stale_claims,
    save_response,
    try_claim,
)
from bulletin.idempotency.key import MAX_KEY_LENGTH, IdempotencyKey

__all__ = [
    "Claimed",
    "IdempotencyKey",
    "MAX_KEY_LENGTH",
    "Replay",
    "SavedResponse",
    "expire_stale_claims",
    "save_response",
    "try_claim",
]
