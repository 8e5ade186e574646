"""In-memory message projections used between translation, threading and storage."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class ParsedAttachment:
    """Attachment descriptor ready for the attachments table.

    ``attachment_id`` holds the provider part identifier (the IMAP MIME part
    number for IMAP accounts).
    """

    filename: str
    mime_type: str
    size: int
    attachment_id: str
    content_id: str | None
    is_inline: bool


@dataclass
class ParsedMessage:
    """Durable message projection.

    ``thread_id`` stays empty until the thread builder has run over the
    whole batch.
    """

    id: str
    thread_id: str
    from_address: str | None
    from_name: str | None
    to_addresses: str | None
    cc_addresses: str | None
    bcc_addresses: str | None
    reply_to: str | None
    subject: str | None
    snippet: str
    date: int
    is_read: bool
    is_starred: bool
    body_html: str | None
    body_text: str | None
    raw_size: int
    internal_date: int
    label_ids: list[str]
    has_attachments: bool
    attachments: list[ParsedAttachment] = field(default_factory=list)
    list_unsubscribe: str | None = None
    list_unsubscribe_post: str | None = None
    auth_results: str | None = None


@dataclass(frozen=True)
class ThreadableMessage:
    """Identity and ancestry headers of one message, used only for grouping."""

    id: str
    message_id: str
    in_reply_to: str | None
    references: tuple[str, ...]
    subject: str | None
    date: int


@dataclass(frozen=True)
class ThreadGroup:
    """A derived thread id and the local message ids that belong to it."""

    thread_id: str
    message_ids: tuple[str, ...]


@dataclass(frozen=True)
class TranslatedMessage:
    """Both projections produced for one remote message."""

    parsed: ParsedMessage
    threadable: ThreadableMessage
