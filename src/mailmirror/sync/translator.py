"""Convert fetched IMAP messages into stored and threadable projections."""

from __future__ import annotations

from mailmirror.imap.types import ImapMessage
from mailmirror.models.mail import (
    ParsedAttachment,
    ParsedMessage,
    ThreadableMessage,
    TranslatedMessage,
)
from mailmirror.sync.folders import get_labels_for_message
from mailmirror.utils.email import normalize_message_id, split_message_ids
from mailmirror.utils.ids import local_message_id, synthetic_message_id

DEFAULT_SNIPPET_LENGTH = 200


def to_parsed_message(
    msg: ImapMessage,
    *,
    account_id: str,
    folder_label_id: str,
    snippet_length: int = DEFAULT_SNIPPET_LENGTH,
) -> TranslatedMessage:
    """Translate an IMAP message into its parsed and threadable forms.

    The local id depends only on (account, folder, uid), so fetching the same
    message again always targets the same row. ``thread_id`` is left empty;
    the thread builder assigns it once the whole batch is known.

    Args:
        msg: Fetched IMAP message.
        account_id: Owning account.
        folder_label_id: Label id of the folder the message was fetched from.
        snippet_length: Fallback snippet length when the message has none.

    Returns:
        TranslatedMessage with both projections.
    """
    local_id = local_message_id(account_id, msg.folder, msg.uid)

    snippet = msg.snippet
    if snippet is None:
        snippet = msg.body_text[:snippet_length] if msg.body_text else ""

    attachments = [
        ParsedAttachment(
            filename=att.filename,
            mime_type=att.mime_type,
            size=att.size,
            attachment_id=att.part_id,
            content_id=att.content_id,
            is_inline=att.is_inline,
        )
        for att in msg.attachments
    ]

    parsed = ParsedMessage(
        id=local_id,
        thread_id="",
        from_address=msg.from_address,
        from_name=msg.from_name,
        to_addresses=msg.to_addresses,
        cc_addresses=msg.cc_addresses,
        bcc_addresses=msg.bcc_addresses,
        reply_to=msg.reply_to,
        subject=msg.subject,
        snippet=snippet,
        date=msg.date,
        is_read=msg.is_read,
        is_starred=msg.is_starred,
        body_html=msg.body_html,
        body_text=msg.body_text,
        raw_size=msg.raw_size,
        internal_date=msg.date,
        label_ids=get_labels_for_message(
            folder_label_id,
            is_read=msg.is_read,
            is_starred=msg.is_starred,
            is_draft=msg.is_draft,
        ),
        has_attachments=bool(attachments),
        attachments=attachments,
        list_unsubscribe=msg.list_unsubscribe,
        list_unsubscribe_post=msg.list_unsubscribe_post,
        auth_results=msg.auth_results,
    )

    return TranslatedMessage(parsed=parsed, threadable=to_threadable(msg, account_id=account_id))


def to_threadable(msg: ImapMessage, *, account_id: str) -> ThreadableMessage:
    """Project an IMAP message onto the headers the thread builder needs."""
    identity = normalize_message_id(msg.message_id) or synthetic_message_id(
        account_id,
        msg.folder,
        msg.uid,
    )
    in_reply_to = split_message_ids(msg.in_reply_to)
    return ThreadableMessage(
        id=local_message_id(account_id, msg.folder, msg.uid),
        message_id=identity,
        in_reply_to=in_reply_to[0] if in_reply_to else None,
        references=tuple(split_message_ids(msg.references)),
        subject=msg.subject,
        date=msg.date,
    )
