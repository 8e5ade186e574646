"""Write thread groups and their messages to the state database."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping

from mailmirror.imap.types import ImapMessage
from mailmirror.models.mail import ParsedMessage, ThreadableMessage, ThreadGroup
from mailmirror.models.state import MessageRow, ThreadRow
from mailmirror.storage.state_db import StateDb
from mailmirror.sync.threads import message_nodes
from mailmirror.sync.translator import to_threadable
from mailmirror.utils.ids import attachment_row_id

logger = logging.getLogger(__name__)


def load_known_threads(
    db: StateDb,
    account_id: str,
    threadables: Iterable[ThreadableMessage],
) -> dict[str, str]:
    """Return header -> thread id for every batch header already in a stored thread.

    Args:
        db: State database.
        account_id: Account id.
        threadables: Messages about to be threaded.

    Returns:
        Mapping usable as ``known_threads`` for the thread builder.
    """
    headers: set[str] = set()
    for msg in threadables:
        headers.update(message_nodes(msg))
    if not headers:
        return {}
    return db.get_thread_ids_for_headers(account_id, headers)


def _to_message_row(
    parsed: ParsedMessage,
    raw: ImapMessage,
    *,
    account_id: str,
    identity: str,
) -> MessageRow:
    """Build the messages-table row for a parsed message."""
    return MessageRow(
        id=parsed.id,
        account_id=account_id,
        thread_id=parsed.thread_id,
        from_address=parsed.from_address,
        from_name=parsed.from_name,
        to_addresses=parsed.to_addresses,
        cc_addresses=parsed.cc_addresses,
        bcc_addresses=parsed.bcc_addresses,
        reply_to=parsed.reply_to,
        subject=parsed.subject,
        snippet=parsed.snippet,
        date=parsed.date,
        is_read=parsed.is_read,
        is_starred=parsed.is_starred,
        body_html=parsed.body_html,
        body_text=parsed.body_text,
        raw_size=parsed.raw_size,
        internal_date=parsed.internal_date,
        list_unsubscribe=parsed.list_unsubscribe,
        list_unsubscribe_post=parsed.list_unsubscribe_post,
        auth_results=parsed.auth_results,
        message_id_header=identity,
        references_header=raw.references,
        in_reply_to_header=raw.in_reply_to,
        imap_uid=raw.uid,
        imap_folder=raw.folder,
        label_ids=list(parsed.label_ids),
        has_attachments=parsed.has_attachments,
    )


def _aggregate_thread(account_id: str, thread_id: str, members: list[MessageRow]) -> ThreadRow:
    """Derive thread metadata from its messages (sorted by date ascending)."""
    earliest = members[0]
    latest = members[-1]
    labels: list[str] = []
    for member in members:
        labels.extend(member.label_ids)
    label_ids = list(dict.fromkeys(labels))
    return ThreadRow(
        id=thread_id,
        account_id=account_id,
        subject=earliest.subject,
        snippet=latest.snippet,
        last_message_at=latest.date,
        message_count=len(members),
        is_read=all(m.is_read for m in members),
        is_starred=any(m.is_starred for m in members),
        # IMAP has no importance marker; the IMPORTANT folder label does not set it.
        is_important=False,
        has_attachments=any(m.has_attachments for m in members),
        label_ids=label_ids,
    )


def _store_group(
    db: StateDb,
    account_id: str,
    group: ThreadGroup,
    members: list[ParsedMessage],
    raw_by_id: Mapping[str, ImapMessage],
) -> None:
    """Persist one thread group inside a single transaction."""
    protected = bool(db.get_pending_ops_for_resource(account_id, group.thread_id))
    if protected:
        logger.info(
            "Thread has pending local changes; keeping its metadata",
            extra={"account_id": account_id, "thread_id": group.thread_id},
        )

    rows: list[MessageRow] = []
    headers: set[str] = set()
    for parsed in members:
        parsed.thread_id = group.thread_id
        raw = raw_by_id[parsed.id]
        threadable = to_threadable(raw, account_id=account_id)
        headers.update(message_nodes(threadable))
        rows.append(_to_message_row(parsed, raw, account_id=account_id, identity=threadable.message_id))

    with db.transaction():
        if not protected:
            batch_ids = {row.id for row in rows}
            previous = [
                row
                for row in db.get_messages_for_thread(account_id, group.thread_id)
                if row.id not in batch_ids
            ]
            everyone = sorted([*previous, *rows], key=lambda m: (m.date, m.id))
            thread = _aggregate_thread(account_id, group.thread_id, everyone)
            db.upsert_thread(thread)
            db.set_thread_labels(account_id, group.thread_id, thread.label_ids)

        for row, parsed in zip(rows, members, strict=True):
            db.upsert_message(row)
            for att in parsed.attachments:
                db.upsert_attachment(
                    attachment_row_id=attachment_row_id(parsed.id, att.attachment_id),
                    message_id=parsed.id,
                    account_id=account_id,
                    filename=att.filename,
                    mime_type=att.mime_type,
                    size=att.size,
                    attachment_id=att.attachment_id,
                    content_id=att.content_id,
                    is_inline=att.is_inline,
                )

        db.upsert_thread_headers(account_id, group.thread_id, headers)


def store_threads_and_messages(
    db: StateDb,
    account_id: str,
    thread_groups: Iterable[ThreadGroup],
    parsed_by_id: Mapping[str, ParsedMessage],
    raw_by_id: Mapping[str, ImapMessage],
) -> list[ParsedMessage]:
    """Persist thread groups with their messages and attachments.

    Thread aggregates cover the messages already stored for the same thread
    as well as the new ones. Threads with queued local operations keep their
    stored metadata and labels; their messages are still written.

    Args:
        db: State database.
        account_id: Account id.
        thread_groups: Output of the thread builder.
        parsed_by_id: Local id -> parsed message.
        raw_by_id: Local id -> fetched IMAP message (headers, uid, folder).

    Returns:
        Stored messages with ``thread_id`` assigned, grouped by thread.
    """
    stored: list[ParsedMessage] = []
    for group in thread_groups:
        members = [parsed_by_id[mid] for mid in group.message_ids if mid in parsed_by_id]
        if not members:
            continue
        members.sort(key=lambda m: (m.date, m.id))

        try:
            _store_group(db, account_id, group, members, raw_by_id)
        except Exception:
            logger.exception(
                "Failed to store thread",
                extra={"account_id": account_id, "thread_id": group.thread_id},
            )
            continue
        stored.extend(members)

    logger.info(
        "Stored messages",
        extra={"account_id": account_id, "messages": len(stored)},
    )
    return stored
