from __future__ import annotations

from dataclasses import dataclass

from bulletin.core.errors import ValidationError

MAX_KEY_LENGTH = 50


@dataclass(frozen=True, slots=True)
class IdempotencyKey:
    """Caller-supplied token scoping one logical request across retries."""

    value: str

    @classmethod
    def parse(cls, raw: str | None) -> IdempotencyKey:
        if not raw:
            raise ValidationError("Idempotency key cannot be empty")
        if len(raw) > MAX_KEY_LENGTH:
            raise ValidationError(f"Idempotency key must be at most {MAX_KEY_LENGTH} characters long")
        return cls(raw)

    def __str__(self) -> str:
        return self.value
