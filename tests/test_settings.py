"""Tests for bulletin/core/settings.py."""
from __future__ import annotations

import pydantic
import pytest

from bulletin.core.settings import Settings


def test_defaults_load():
    settings = Settings(_env_file=None)
    assert settings.delivery_lease_seconds > settings.email_timeout_seconds


@pytest.mark.parametrize("lease", [5, 10])
def test_lease_must_outlast_email_timeout(lease):
    with pytest.raises(pydantic.ValidationError, match="DELIVERY_LEASE_SECONDS"):
        Settings(_env_file=None, DELIVERY_LEASE_SECONDS=lease, EMAIL_TIMEOUT_SECONDS=10)
