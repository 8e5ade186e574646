"""Pydantic models for database state."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import ConfigDict, Field

from mailmirror.models.base import AppModel
from mailmirror.models.types import LabelType


class PendingOperationStatus(StrEnum):
    """Lifecycle statuses for queued local mutations."""

    pending = "pending"
    executing = "executing"
    failed = "failed"


class AccountRow(AppModel):
    """Row model for the accounts table."""

    id: str = Field(min_length=1)
    email: str = Field(min_length=3)
    provider: str = "imap"
    imap_host: str | None = None
    imap_port: int | None = Field(default=None, ge=1, le=65535)
    imap_security: str | None = None
    imap_username: str | None = None
    imap_password: str | None = Field(default=None, repr=False)
    history_id: str | None = None
    created_at: datetime
    updated_at: datetime


class LabelRow(AppModel):
    """Row model for the labels table."""

    id: str = Field(min_length=1)
    account_id: str = Field(min_length=1)
    name: str
    type: LabelType
    imap_folder_path: str | None = None
    imap_special_use: str | None = None


class ThreadRow(AppModel):
    """Row model for the threads table."""

    id: str = Field(min_length=1)
    account_id: str = Field(min_length=1)
    subject: str | None = None
    snippet: str | None = None
    last_message_at: int = 0
    message_count: int = Field(default=0, ge=0)
    is_read: bool = False
    is_starred: bool = False
    is_important: bool = False
    has_attachments: bool = False
    label_ids: list[str] = Field(default_factory=list)


class MessageRow(AppModel):
    """Row model for the messages table."""

    model_config = ConfigDict(str_strip_whitespace=False)

    id: str = Field(min_length=1)
    account_id: str = Field(min_length=1)
    thread_id: str
    from_address: str | None = None
    from_name: str | None = None
    to_addresses: str | None = None
    cc_addresses: str | None = None
    bcc_addresses: str | None = None
    reply_to: str | None = None
    subject: str | None = None
    snippet: str | None = None
    date: int = 0
    is_read: bool = False
    is_starred: bool = False
    body_html: str | None = None
    body_text: str | None = None
    raw_size: int | None = Field(default=None, ge=0)
    internal_date: int | None = None
    list_unsubscribe: str | None = None
    list_unsubscribe_post: str | None = None
    auth_results: str | None = None
    message_id_header: str | None = None
    references_header: str | None = None
    in_reply_to_header: str | None = None
    imap_uid: int | None = Field(default=None, ge=1)
    imap_folder: str | None = None
    label_ids: list[str] = Field(default_factory=list)
    has_attachments: bool = False


class FolderSyncState(AppModel):
    """Per-folder IMAP sync cursor."""

    account_id: str = Field(min_length=1)
    folder_path: str = Field(min_length=1)
    uidvalidity: int | None = Field(default=None, ge=0)
    last_uid: int = Field(default=0, ge=0)
    modseq: int | None = None
    last_sync_at: int | None = None


class PendingOperationRow(AppModel):
    """Row model for the pending_operations table."""

    id: str = Field(min_length=1)
    account_id: str = Field(min_length=1)
    operation_type: str = Field(min_length=1)
    resource_id: str = Field(min_length=1)
    params: dict[str, object] = Field(default_factory=dict)
    status: PendingOperationStatus = PendingOperationStatus.pending
    retry_count: int = Field(default=0, ge=0)
    created_at: datetime
