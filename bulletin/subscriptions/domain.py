"""Validated subscriber value types.

Parsing happens once at the edge; everything downstream receives a
``SubscriberEmail`` / ``SubscriberName`` and can trust its shape.

Safety rule: raw values are never logged.
"""
from __future__ import annotations

from dataclasses import dataclass

from email_validator import EmailNotValidError, validate_email

from bulletin.core.errors import ValidationError

_MAX_NAME_LENGTH = 256
FORBIDDEN_NAME_CHARACTERS = frozenset('/()"<>\\{}')


@dataclass(frozen=True, slots=True)
class SubscriberEmail:
    value: str

    @classmethod
    def parse(cls, raw: str) -> SubscriberEmail:
        """Return a ``SubscriberEmail`` for *raw*.

        Surrounding whitespace is stripped and the domain normalized; the
        local part is kept as typed.  No DNS lookup is made.
        """
        stripped = raw.strip()
        if not stripped:
            raise ValidationError("not a valid email address")
        try:
            result = validate_email(stripped, check_deliverability=False)
        except EmailNotValidError as exc:
            raise ValidationError("not a valid email address") from exc
        return cls(result.normalized)

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True, slots=True)
class SubscriberName:
    value: str

    @classmethod
    def parse(cls, raw: str) -> SubscriberName:
        if not raw or not raw.strip():
            raise ValidationError("subscriber name must not be blank")
        if len(raw) > _MAX_NAME_LENGTH:
            raise ValidationError(f"subscriber name must be at most {_MAX_NAME_LENGTH} characters")
        if any(ch in FORBIDDEN_NAME_CHARACTERS for ch in raw):
            raise ValidationError("subscriber name contains forbidden characters")
        return cls(raw)

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True, slots=True)
class NewSubscriber:
    email: SubscriberEmail
    name: SubscriberName

    @classmethod
    def parse(cls, *, email: str, name: str) -> NewSubscriber:
        return cls(email=SubscriberEmail.parse(email), name=SubscriberName.parse(name))


def mask_email(email: str | None) -> str | None:
    """Return *email* with the local part hidden, e.g. ``a***@example.com``."""
    if not email:
        return None
    local, sep, domain = email.rpartition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"
