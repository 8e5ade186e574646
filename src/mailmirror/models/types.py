"""Shared enums and lightweight Pydantic models."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import Field

from mailmirror.models.base import AppModel


class LabelType(StrEnum):
    """Label kinds stored in the labels table."""

    system = "system"
    user = "user"


class SystemLabelId(StrEnum):
    """Well-known label identifiers shared with the Gmail label model."""

    inbox = "INBOX"
    sent = "SENT"
    draft = "DRAFT"
    trash = "TRASH"
    spam = "SPAM"
    starred = "STARRED"
    important = "IMPORTANT"
    unread = "UNREAD"
    archive = "archive"
    all_mail = "all-mail"


class SpecialUse(StrEnum):
    """IMAP special-use mailbox attributes (RFC 6154, plus ``\\Inbox``)."""

    inbox = "\\Inbox"
    sent = "\\Sent"
    drafts = "\\Drafts"
    trash = "\\Trash"
    junk = "\\Junk"
    archive = "\\Archive"
    flagged = "\\Flagged"
    all = "\\All"
    important = "\\Important"


class SecurityType(StrEnum):
    """Connection security for IMAP transports."""

    tls = "tls"
    starttls = "starttls"
    none = "none"


class SyncPhase(StrEnum):
    """Phases reported through sync progress callbacks."""

    folders = "folders"
    messages = "messages"
    threading = "threading"
    done = "done"


class SyncProgress(AppModel):
    """Progress event emitted by the sync orchestrator."""

    phase: SyncPhase
    current: int = Field(ge=0)
    total: int = Field(ge=0)
    folder: str | None = None


class SyncSummary(AppModel):
    """Row counts reported by the CLI ``status`` command."""

    created_at: datetime
    sqlite_path: str
    counts: dict[str, int] = Field(default_factory=dict)
