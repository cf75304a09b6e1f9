from __future__ import annotations

import base64
import hmac
import os
from dataclasses import dataclass
from uuid import UUID

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from sqlalchemy import select
from sqlalchemy.orm import Session

from bulletin.core.errors import AuthorizationError
from bulletin.db.models import User

_SCHEME = "scrypt"
_SALT_BYTES = 16
_KEY_LENGTH = 32


@dataclass(frozen=True, slots=True)
class ScryptParams:
    n: int = 2**14
    r: int = 8
    p: int = 1


_DEFAULT_PARAMS = ScryptParams()


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def _kdf(salt: bytes, params: ScryptParams) -> Scrypt:
    return Scrypt(salt=salt, length=_KEY_LENGTH, n=params.n, r=params.r, p=params.p)


def hash_password(password: str, params: ScryptParams = _DEFAULT_PARAMS) -> str:
    """Return a self-describing scrypt hash (``scrypt$n$r$p$salt$key``)."""
    if not password:
        raise ValueError("Password must not be empty")
    salt = os.urandom(_SALT_BYTES)
    key = _kdf(salt, params).derive(password.encode("utf-8"))
    return f"{_SCHEME}${params.n}${params.r}${params.p}${_b64encode(salt)}${_b64encode(key)}"


def verify_password(password: str, encoded: str) -> bool:
    try:
        scheme, n, r, p, salt, key = encoded.split("$")
    except ValueError:
        return False
    if not hmac.compare_digest(scheme, _SCHEME):
        return False
    try:
        kdf = _kdf(_b64decode(salt), ScryptParams(n=int(n), r=int(r), p=int(p)))
        expected = _b64decode(key)
    except ValueError:
        # Unparseable parameters or base64 (binascii.Error is a ValueError).
        return False
    try:
        kdf.verify(password.encode("utf-8"), expected)
    except InvalidKey:
        return False
    return True


# Verified against when the username is unknown so both branches cost one KDF run.
_FALLBACK_HASH = hash_password("not-a-real-password")


def validate_credentials(db: Session, username: str, password: str) -> UUID:
    """Return the ``user_id`` for *username* when *password* matches.

    Raises ``AuthorizationError`` for unknown users and wrong passwords alike.
    """
    row = db.execute(
        select(User.user_id, User.password_hash).where(User.username == username)
    ).first()
    user_id, expected = (row.user_id, row.password_hash) if row else (None, _FALLBACK_HASH)

    if not verify_password(password, expected) or user_id is None:
        raise AuthorizationError("Invalid username or password")
    return user_id
