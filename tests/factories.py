"""Builders shared by the test modules."""

from __future__ import annotations

import time
from dataclasses import replace

from mailmirror.imap.client import ImapError
from mailmirror.imap.types import (
    FetchResult,
    FolderStatus,
    ImapAttachment,
    ImapFolder,
    ImapMessage,
)
from mailmirror.models.mail import ParsedMessage, ThreadableMessage
from mailmirror.sync.translator import to_parsed_message

NOW = int(time.time())
HOUR = 3600
DAY = 86_400


def imap_message(
    uid: int,
    folder: str = "INBOX",
    *,
    message_id: str | None = None,
    in_reply_to: str | None = None,
    references: str | None = None,
    subject: str | None = "Hello",
    date: int | None = None,
    is_read: bool = True,
    is_starred: bool = False,
    snippet: str | None = None,
    body_text: str | None = "body",
    attachments: tuple[ImapAttachment, ...] = (),
) -> ImapMessage:
    """Return a fetched message with sensible defaults."""
    return ImapMessage(
        uid=uid,
        folder=folder,
        message_id=message_id,
        in_reply_to=in_reply_to,
        references=references,
        from_address="alice@example.com",
        from_name="Alice",
        to_addresses="bob@example.com",
        subject=subject,
        date=NOW - HOUR * (100 - uid) if date is None else date,
        is_read=is_read,
        is_starred=is_starred,
        body_text=body_text,
        snippet=snippet,
        raw_size=128,
        attachments=attachments,
    )


def translate(
    messages: list[ImapMessage],
    *,
    account_id: str = "acc1",
    folder_label_id: str = "INBOX",
) -> tuple[dict[str, ParsedMessage], dict[str, ImapMessage], list[ThreadableMessage]]:
    """Translate messages into the maps the persistence layer expects."""
    parsed_by_id: dict[str, ParsedMessage] = {}
    raw_by_id: dict[str, ImapMessage] = {}
    threadables: list[ThreadableMessage] = []
    for msg in messages:
        translated = to_parsed_message(msg, account_id=account_id, folder_label_id=folder_label_id)
        parsed_by_id[translated.parsed.id] = translated.parsed
        raw_by_id[translated.parsed.id] = msg
        threadables.append(translated.threadable)
    return parsed_by_id, raw_by_id, threadables


class FakeTransport:
    """In-memory MailTransport."""

    def __init__(self) -> None:
        self.folders: dict[str, ImapFolder] = {}
        self.messages: dict[str, dict[int, ImapMessage]] = {}
        self.uidvalidity: dict[str, int] = {}
        self.failing: set[str] = set()
        self.fetch_calls: list[tuple[str, tuple[int, ...]]] = []
        self.closed = 0

    def add_folder(
        self,
        path: str,
        *,
        special_use: str | None = None,
        uidvalidity: int = 1,
        attributes: tuple[str, ...] = (),
    ) -> None:
        self.folders[path] = ImapFolder(
            path=path,
            raw_path=path,
            name=path.rsplit("/", 1)[-1],
            special_use=special_use,
            attributes=attributes,
        )
        self.messages.setdefault(path, {})
        self.uidvalidity[path] = uidvalidity

    def add_message(self, msg: ImapMessage) -> None:
        self.messages[msg.folder][msg.uid] = msg

    def renumber(self, path: str, *, uidvalidity: int, offset: int) -> None:
        """Simulate a server that rebuilt a folder with new UIDs."""
        self.uidvalidity[path] = uidvalidity
        self.messages[path] = {
            uid + offset: replace(msg, uid=uid + offset) for uid, msg in self.messages[path].items()
        }

    def _check(self, path: str) -> None:
        if path in self.failing:
            raise ImapError(f"IMAP SELECT failed ({path}): NO")

    async def list_folders(self) -> list[ImapFolder]:
        return [
            replace(folder, exists=len(self.messages[path]))
            for path, folder in self.folders.items()
        ]

    async def get_folder_status(self, folder_path: str) -> FolderStatus:
        self._check(folder_path)
        uids = self.messages[folder_path]
        return FolderStatus(
            uidvalidity=self.uidvalidity[folder_path],
            uidnext=max(uids, default=0) + 1,
            exists=len(uids),
        )

    async def search_all_uids(self, folder_path: str) -> list[int]:
        self._check(folder_path)
        return sorted(self.messages[folder_path])

    async def fetch_new_uids(self, folder_path: str, since_uid: int) -> list[int]:
        self._check(folder_path)
        return sorted(uid for uid in self.messages[folder_path] if uid > since_uid)

    async def fetch_messages(self, folder_path: str, uids: list[int]) -> FetchResult:
        self._check(folder_path)
        self.fetch_calls.append((folder_path, tuple(uids)))
        stored = self.messages[folder_path]
        return FetchResult(
            messages=[stored[uid] for uid in uids if uid in stored],
            folder_status=await self.get_folder_status(folder_path),
        )

    async def close(self) -> None:
        self.closed += 1
