"""Tests for IMAP response parsing and folder status."""

from __future__ import annotations

import pytest

from mailmirror.config.accounts import ImapConfig
from mailmirror.imap.client import (
    ImapTransport,
    ListEntry,
    _parse_fetch_response,
    _parse_list_response,
    _parse_status_response,
    _status_items,
    _to_folder,
    decode_modified_utf7,
)


def test_parse_list_response_handles_common_formats() -> None:
    """LIST parsing should support quoted and unquoted mailbox names."""
    lines = [
        b'* LIST (\\HasNoChildren) "/" "INBOX"\r\n',
        b'* LIST (\\HasNoChildren \\Sent) "/" "Sent Messages"\r\n',
        b'* LIST (\\Noselect) NIL "Archive"\r\n',
        b'* LIST (\\HasNoChildren) "/" INBOX\r\n',
    ]

    assert _parse_list_response(lines) == [
        ListEntry(raw_name="INBOX", delimiter="/", attributes=("\\HasNoChildren",)),
        ListEntry(raw_name="Sent Messages", delimiter="/", attributes=("\\HasNoChildren", "\\Sent")),
        ListEntry(raw_name="Archive", delimiter=None, attributes=("\\Noselect",)),
    ]


def test_parse_list_response_handles_literal_mailbox_name() -> None:
    """LIST parsing should handle literal mailbox names."""
    lines = [
        b'* LIST (\\HasNoChildren) "/" {12}\r\n',
        b"Sent Messages\r\n",
    ]
    assert [e.raw_name for e in _parse_list_response(lines)] == ["Sent Messages"]


def test_to_folder_decodes_name_and_special_use() -> None:
    """Folders keep the raw path for commands and expose the decoded one."""
    entry = ListEntry(raw_name="Projekte/Entw&APw-rfe", delimiter="/", attributes=("\\Drafts",))
    folder = _to_folder(entry, exists=4, unseen=1)

    assert folder.raw_path == "Projekte/Entw&APw-rfe"
    assert folder.path == "Projekte/Entwürfe"
    assert folder.name == "Entwürfe"
    assert folder.special_use == "\\Drafts"
    assert folder.exists == 4


def test_decode_modified_utf7() -> None:
    """Modified UTF-7 segments decode; plain and ``&-`` pass through."""
    assert decode_modified_utf7("INBOX") == "INBOX"
    assert decode_modified_utf7("R&AOk-sum&AOk-") == "Résumé"
    assert decode_modified_utf7("Tom &- Jerry") == "Tom & Jerry"


def test_parse_status_response() -> None:
    """STATUS data items are returned by name."""
    lines = [
        b'* STATUS "INBOX" (MESSAGES 12 UNSEEN 3 UIDVALIDITY 1700000000 UIDNEXT 45)',
        b"STATUS completed",
    ]
    assert _parse_status_response(lines) == {
        "MESSAGES": 12,
        "UNSEEN": 3,
        "UIDVALIDITY": 1700000000,
        "UIDNEXT": 45,
    }


def test_status_items_request_highestmodseq_only_with_condstore() -> None:
    """HIGHESTMODSEQ is only valid in STATUS on CONDSTORE servers."""
    assert _status_items(condstore=False) == "(UIDVALIDITY UIDNEXT MESSAGES UNSEEN)"
    assert _status_items(condstore=True) == "(UIDVALIDITY UIDNEXT MESSAGES UNSEEN HIGHESTMODSEQ)"


class _StatusClient:
    def __init__(self, capabilities: set[str], lines: list[bytes]) -> None:
        self.connected = True
        self.capabilities = capabilities
        self.lines = lines
        self.requested: list[str] = []

    def has_capability(self, name: str) -> bool:
        return name in self.capabilities

    async def status(self, mailbox: str, items: str) -> dict[str, int]:
        self.requested.append(items)
        return _parse_status_response(self.lines)


@pytest.mark.asyncio
async def test_folder_status_reports_highest_modseq_on_condstore_servers() -> None:
    """The transport asks for and returns HIGHESTMODSEQ when CONDSTORE is advertised."""
    client = _StatusClient(
        {"IMAP4REV1", "CONDSTORE"},
        [b'* STATUS "INBOX" (UIDVALIDITY 7 UIDNEXT 12 MESSAGES 11 UNSEEN 2 HIGHESTMODSEQ 9001)'],
    )
    transport = ImapTransport(
        config=ImapConfig(host="imap.example.com", port=993, username="me", password="secret"),
    )
    transport._client = client  # type: ignore[assignment]

    status = await transport.get_folder_status("INBOX")

    assert client.requested == ["(UIDVALIDITY UIDNEXT MESSAGES UNSEEN HIGHESTMODSEQ)"]
    assert (status.uidvalidity, status.uidnext, status.exists, status.unseen) == (7, 12, 11, 2)
    assert status.highest_modseq == 9001


def test_parse_fetch_response_reads_uid_flags_and_body() -> None:
    """UID and FLAGS are found before or after the literal."""
    body_a = b"Subject: a\r\n\r\nhello\r\n"
    body_b = b"Subject: b\r\n\r\nworld\r\n"
    lines = [
        b"1 FETCH (UID 10 FLAGS (\\Seen \\Flagged) BODY[] {%d}" % len(body_a),
        bytearray(body_a),
        b")",
        b"2 FETCH (BODY[] {%d}" % len(body_b),
        bytearray(body_b),
        b" UID 11 FLAGS ())",
        b"Fetch completed.",
    ]

    items = _parse_fetch_response(lines)

    assert [(i.uid, i.flags, i.body) for i in items] == [
        (10, frozenset({"\\Seen", "\\Flagged"}), body_a),
        (11, frozenset(), body_b),
    ]
