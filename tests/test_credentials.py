"""Tests for credential generation."""
from __future__ import annotations

import pytest

from redaxoctl.credentials import PASSWORD_ALPHABET, generate_password
from redaxoctl.models import InstanceKind, InstanceSpec
from tests.fakes import Harness


def test_generate_password_uses_alphanumerics() -> None:
    """Passwords have the requested length and only alphanumeric characters."""
    first = generate_password(16)
    second = generate_password(16)

    assert len(first) == 16
    assert set(first) <= set(PASSWORD_ALPHABET)
    assert first != second
    with pytest.raises(ValueError):
        generate_password(0)


def test_standard_credentials_use_independent_passwords(harness: Harness) -> None:
    """Standard instances get a fixed schema user and two unrelated secrets."""
    creds = harness.lifecycle.generate_credentials(InstanceSpec(name="demo"))

    assert (creds.db_name, creds.db_user) == ("redaxo", "redaxo")
    assert len(creds.db_password) == 12
    assert len(creds.db_root_password) == 16
    assert creds.db_password != creds.db_root_password


def test_custom_credentials_follow_instance_name(harness: Harness) -> None:
    """Custom instances name their schema and user after the instance."""
    spec = InstanceSpec(name="shop", kind=InstanceKind.CUSTOM)

    creds = harness.lifecycle.generate_credentials(spec)

    assert (creds.db_name, creds.db_user, creds.db_password) == ("shop", "shop", "shop")
    assert len(creds.db_root_password) == 16
