"""Tests for bulletin/core/security.py."""
from __future__ import annotations

from uuid import uuid4

import pytest

from bulletin.core.errors import AuthorizationError
from bulletin.core.security import ScryptParams, hash_password, validate_credentials, verify_password
from bulletin.db.models import User

_FAST = ScryptParams(n=2**4, r=8, p=1)


class TestPasswordHashing:
    def test_hash_is_self_describing_and_salted(self):
        first = hash_password("s3cret", _FAST)
        second = hash_password("s3cret", _FAST)

        assert first.startswith("scrypt$16$8$1$")
        assert first != second

    def test_verify_accepts_correct_password(self):
        assert verify_password("s3cret", hash_password("s3cret", _FAST)) is True

    def test_verify_rejects_wrong_password(self):
        assert verify_password("wrong", hash_password("s3cret", _FAST)) is False

    def test_verify_rejects_malformed_hash(self):
        assert verify_password("s3cret", "not-a-hash") is False
        assert verify_password("s3cret", "bcrypt$1$2$3$4$5") is False

    @pytest.mark.parametrize(
        "encoded",
        [
            "scrypt$abc$8$1$c2FsdHNhbHRzYWx0$a2V5",
            "scrypt$3$8$1$c2FsdHNhbHRzYWx0$a2V5",
            "scrypt$16$8$1$x$a2V5",
        ],
    )
    def test_verify_rejects_unparseable_parameters(self, encoded):
        assert verify_password("s3cret", encoded) is False

    def test_empty_password_cannot_be_hashed(self):
        with pytest.raises(ValueError):
            hash_password("")


class TestValidateCredentials:
    def test_valid_credentials_return_user_id(self, db_session, operator_id, operator_credentials):
        username, password = operator_credentials
        assert validate_credentials(db_session, username, password) == operator_id

    def test_wrong_password_rejected(self, db_session, operator_credentials):
        username, _ = operator_credentials
        with pytest.raises(AuthorizationError):
            validate_credentials(db_session, username, "nope")

    def test_unknown_user_rejected(self, db_session, operator_credentials):
        _, password = operator_credentials
        with pytest.raises(AuthorizationError):
            validate_credentials(db_session, "ghost", password)

    def test_corrupt_stored_hash_rejected(self, db_session):
        db_session.add(User(user_id=uuid4(), username="corrupt", password_hash="scrypt$abc$8$1$x$y"))
        db_session.flush()

        with pytest.raises(AuthorizationError):
            validate_credentials(db_session, "corrupt", "anything")
