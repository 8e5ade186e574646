"""Transport records and the capability interface the sync engine consumes."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol


@dataclass(frozen=True)
class ImapFolder:
    """Snapshot of one mailbox returned by LIST (+ STATUS counts).

    ``raw_path`` is the server path exactly as listed (modified UTF-7) and is
    what IMAP commands must use; ``path`` is its decoded form.
    """

    path: str
    raw_path: str
    name: str
    delimiter: str = "/"
    special_use: str | None = None
    attributes: tuple[str, ...] = ()
    exists: int = 0
    unseen: int = 0


@dataclass(frozen=True)
class FolderStatus:
    """Mailbox status values relevant to incremental sync."""

    uidvalidity: int
    uidnext: int = 0
    exists: int = 0
    unseen: int = 0
    highest_modseq: int | None = None


@dataclass(frozen=True)
class ImapAttachment:
    """Attachment part descriptor of a fetched message."""

    part_id: str
    filename: str
    mime_type: str
    size: int
    content_id: str | None = None
    is_inline: bool = False


@dataclass(frozen=True)
class ImapMessage:
    """A fetched and parsed IMAP message."""

    uid: int
    folder: str
    message_id: str | None = None
    in_reply_to: str | None = None
    references: str | None = None
    from_address: str | None = None
    from_name: str | None = None
    to_addresses: str | None = None
    cc_addresses: str | None = None
    bcc_addresses: str | None = None
    reply_to: str | None = None
    subject: str | None = None
    date: int = 0
    is_read: bool = False
    is_starred: bool = False
    is_draft: bool = False
    body_html: str | None = None
    body_text: str | None = None
    snippet: str | None = None
    raw_size: int = 0
    list_unsubscribe: str | None = None
    list_unsubscribe_post: str | None = None
    auth_results: str | None = None
    attachments: tuple[ImapAttachment, ...] = ()


@dataclass(frozen=True)
class FetchResult:
    """Messages fetched from one folder plus the folder status at fetch time."""

    messages: list[ImapMessage]
    folder_status: FolderStatus
    failed_uids: list[int] = field(default_factory=list)


class MailTransport(Protocol):
    """Remote mail store operations used by the sync orchestrator."""

    async def list_folders(self) -> list[ImapFolder]:
        """List all folders with special-use tags and message counts."""
        ...

    async def get_folder_status(self, folder_path: str) -> FolderStatus:
        """Return the live status (UIDVALIDITY etc.) of a folder."""
        ...

    async def search_all_uids(self, folder_path: str) -> list[int]:
        """Return every UID in a folder, ascending."""
        ...

    async def fetch_new_uids(self, folder_path: str, since_uid: int) -> list[int]:
        """Return UIDs strictly greater than ``since_uid``, ascending."""
        ...

    async def fetch_messages(self, folder_path: str, uids: list[int]) -> FetchResult:
        """Fetch and parse the given UIDs."""
        ...

    async def close(self) -> None:
        """Release the underlying connection."""
        ...
