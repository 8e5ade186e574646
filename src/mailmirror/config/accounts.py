"""Resolve stored account records into IMAP connection parameters."""

from __future__ import annotations

from typing import Annotated

from pydantic import Field

from mailmirror.models.base import AppModel
from mailmirror.models.state import AccountRow
from mailmirror.models.types import SecurityType

_DEFAULT_PORTS: dict[SecurityType, int] = {
    SecurityType.tls: 993,
    SecurityType.starttls: 143,
    SecurityType.none: 143,
}


class AccountConfigError(ValueError):
    """Raised when an account record lacks the fields needed to connect."""


class ImapConfig(AppModel):
    """Connection parameters for one IMAP account."""

    host: Annotated[str, Field(min_length=1)]
    port: Annotated[int, Field(ge=1, le=65535)]
    security: SecurityType = SecurityType.tls
    username: Annotated[str, Field(min_length=1)]
    password: Annotated[str, Field(repr=False)]


def security_to_config_type(db_security: str | None) -> SecurityType:
    """Map the stored security value to a transport security type.

    The accounts table stores ``ssl``/``starttls``/``none``; anything
    unrecognised falls back to implicit TLS.

    Args:
        db_security: Raw value from the accounts table.

    Returns:
        Normalized SecurityType.
    """
    match (db_security or "").strip().lower():
        case "ssl" | "tls":
            return SecurityType.tls
        case "starttls":
            return SecurityType.starttls
        case "none":
            return SecurityType.none
        case _:
            return SecurityType.tls


def build_imap_config(account: AccountRow) -> ImapConfig:
    """Build IMAP connection parameters for an account.

    Args:
        account: Stored account row.

    Returns:
        Validated ImapConfig.

    Raises:
        AccountConfigError: If the account has no IMAP host or credentials.
    """
    if not account.imap_host:
        raise AccountConfigError(f"Account {account.id} has no IMAP host configured")
    if account.imap_password is None:
        raise AccountConfigError(f"Account {account.id} has no IMAP password configured")

    security = security_to_config_type(account.imap_security)
    return ImapConfig(
        host=account.imap_host,
        port=account.imap_port or _DEFAULT_PORTS[security],
        security=security,
        username=account.imap_username or account.email,
        password=account.imap_password,
    )
