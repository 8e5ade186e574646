"""Tests for account → IMAP connection config resolution."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from mailmirror.config.accounts import AccountConfigError, build_imap_config, security_to_config_type
from mailmirror.models.state import AccountRow
from mailmirror.models.types import SecurityType


def _account(**overrides: object) -> AccountRow:
    now = datetime(2024, 1, 1, tzinfo=UTC)
    values: dict[str, object] = {
        "id": "acc1",
        "email": "bob@example.com",
        "imap_host": "imap.example.com",
        "imap_password": "secret",
        "created_at": now,
        "updated_at": now,
    }
    values.update(overrides)
    return AccountRow(**values)  # type: ignore[arg-type]


@pytest.mark.parametrize(
    ("stored", "expected"),
    [
        ("ssl", SecurityType.tls),
        ("SSL", SecurityType.tls),
        ("starttls", SecurityType.starttls),
        ("none", SecurityType.none),
        ("weird", SecurityType.tls),
        (None, SecurityType.tls),
    ],
)
def test_security_to_config_type(stored: str | None, expected: SecurityType) -> None:
    """Stored security values normalize to transport security types."""
    assert security_to_config_type(stored) == expected


def test_build_imap_config_defaults() -> None:
    """Port and username fall back to sensible defaults."""
    config = build_imap_config(_account())
    assert config.port == 993
    assert config.security == SecurityType.tls
    assert config.username == "bob@example.com"
    assert "secret" not in repr(config)

    config = build_imap_config(_account(imap_security="starttls", imap_username="bob"))
    assert config.port == 143
    assert config.username == "bob"


def test_build_imap_config_requires_host_and_password() -> None:
    """Accounts without a host or password cannot be connected."""
    with pytest.raises(AccountConfigError):
        build_imap_config(_account(imap_host=None))
    with pytest.raises(AccountConfigError):
        build_imap_config(_account(imap_password=None))
