"""Error taxonomy shared by the API, the publisher and the delivery worker.

``ValidationError``
    Caller fault (bad idempotency key, bad form input).  Never retried.
``AuthorizationError``
    Missing or invalid operator credentials.
``UnexpectedError``
    Store / driver faults.  Surfaced as a generic failure; the caller may
    retry at its discretion.
``InvariantViolation``
    An idempotency record exists without a saved response.  Indicates a
    request that crashed between claim and commit; the stale-claim sweeper
    removes such rows after ``IDEMPOTENCY_CLAIM_TTL_SECONDS``.
"""
from __future__ import annotations


class BulletinError(Exception):
    """Base class for every error raised by this package."""


class ValidationError(BulletinError, ValueError):
    """Raised when caller-supplied input is malformed."""


class AuthorizationError(BulletinError):
    """Raised when operator credentials are missing or invalid."""


class UnexpectedError(BulletinError):
    """Raised when the relational store or its driver fails."""


class InvariantViolation(BulletinError):
    """Raised when persisted state contradicts a guaranteed invariant."""


def error_chain(exc: BaseException) -> str:
    """Render *exc* and its ``__cause__`` chain, one cause per line."""
    lines = [f"{type(exc).__name__}: {exc}"]
    current = exc.__cause__ or exc.__context__
    while current is not None:
        lines.append(f"Caused by: {type(current).__name__}: {current}")
        current = current.__cause__ or current.__context__
    return "\n".join(lines)
