"""Email parsing and header normalization utilities."""

from __future__ import annotations

import logging
import re
from email import policy
from email.header import decode_header, make_header
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import getaddresses, parsedate_to_datetime

from mailmirror.imap.types import ImapAttachment, ImapMessage

_MSGID_TOKEN_RE = re.compile(r"<[^<>\s]+>")
_WHITESPACE_RE = re.compile(r"\s+")

logger = logging.getLogger(__name__)


def _decode_header_value(value: str) -> str:
    """Decode RFC 2047-encoded header values.

    Args:
        value: Raw header value.

    Returns:
        Best-effort decoded value.
    """
    try:
        return str(make_header(decode_header(value)))
    except Exception:
        return value


def normalize_message_id(value: str | None) -> str | None:
    """Normalize a Message-ID for stable comparisons.

    Args:
        value: Raw Message-ID header value.

    Returns:
        Normalized Message-ID in angle brackets, or None if missing/invalid.
    """
    if value is None:
        return None
    v = value.strip()
    if not v:
        return None

    if " " in v:
        v = v.split(" ", 1)[0].strip()
    if v.startswith("<") and v.endswith(">"):
        v = v[1:-1].strip()
    if not v:
        return None
    return f"<{v.lower()}>"


def split_message_ids(value: str | None) -> list[str]:
    """Split a References/In-Reply-To header into normalized Message-IDs.

    Bracketed tokens are preferred; headers without brackets fall back to
    whitespace splitting. Order is preserved and duplicates are dropped.

    Args:
        value: Raw header value.

    Returns:
        Normalized Message-IDs in header order.
    """
    if not value:
        return []
    tokens = _MSGID_TOKEN_RE.findall(value) or value.split()

    out: list[str] = []
    seen: set[str] = set()
    for token in tokens:
        norm = normalize_message_id(token)
        if norm is None or norm in seen:
            continue
        seen.add(norm)
        out.append(norm)
    return out


def make_snippet(text: str | None, *, max_chars: int) -> str | None:
    """Collapse whitespace and truncate a plain-text body into a snippet.

    Args:
        text: Plain-text body.
        max_chars: Maximum number of characters before an ellipsis is added.

    Returns:
        Snippet text, or None when there is no body.
    """
    if text is None:
        return None
    cleaned = _WHITESPACE_RE.sub(" ", text).strip()
    if len(cleaned) > max_chars:
        return cleaned[:max_chars] + "..."
    return cleaned


def _header(msg: EmailMessage, name: str) -> str | None:
    """Return a decoded header value or None when absent/blank."""
    raw = msg.get(name)
    if raw is None:
        return None
    value = _decode_header_value(str(raw)).strip()
    return value or None


def _first_address(value: str | None) -> tuple[str | None, str | None]:
    """Return (address, display name) of the first mailbox in a header."""
    if not value:
        return None, None
    for name, addr in getaddresses([value]):
        if addr or name:
            return (addr or None), (name or None)
    return None, None


def _format_address_list(value: str | None) -> str | None:
    """Format an address header as ``Name <addr>, addr, ...``."""
    if not value:
        return None
    parts: list[str] = []
    for name, addr in getaddresses([value]):
        if not addr:
            continue
        parts.append(f"{name} <{addr}>" if name else addr)
    return ", ".join(parts) if parts else None


def _part_text(part: EmailMessage) -> str | None:
    """Decode a text part, tolerating unknown charsets."""
    try:
        content = part.get_content()
    except (LookupError, UnicodeDecodeError, AssertionError):
        payload = part.get_payload(decode=True)
        if not isinstance(payload, bytes):
            return None
        return payload.decode("utf-8", errors="replace")
    return content if isinstance(content, str) else None


def _body(msg: EmailMessage, subtype: str) -> str | None:
    """Return the preferred body of the given text subtype."""
    part = msg.get_body(preferencelist=(subtype,))
    if part is None or part.get_content_subtype() != subtype:
        return None
    return _part_text(part)  # type: ignore[arg-type]


def _attachments(msg: EmailMessage) -> tuple[ImapAttachment, ...]:
    """Collect attachment descriptors from a parsed message."""
    out: list[ImapAttachment] = []
    for part in msg.walk():
        if part.is_multipart():
            continue
        disposition = part.get_content_disposition()
        filename = part.get_filename()
        content_id = part.get("Content-ID")
        if disposition != "attachment" and filename is None and content_id is None:
            continue
        if disposition is None and part.get_content_maintype() == "text" and filename is None:
            continue

        payload = part.get_payload(decode=True)
        size = len(payload) if isinstance(payload, bytes) else 0
        out.append(
            ImapAttachment(
                part_id=str(len(out) + 1),
                filename=_decode_header_value(filename) if filename else "attachment",
                mime_type=part.get_content_type() or "application/octet-stream",
                size=size,
                content_id=str(content_id).strip() if content_id else None,
                is_inline=disposition == "inline",
            ),
        )
    return tuple(out)


def parse_rfc822(
    raw_rfc822: bytes,
    *,
    uid: int,
    folder: str,
    flags: frozenset[str],
    snippet_length: int = 200,
) -> ImapMessage:
    """Parse raw RFC822 bytes into an ImapMessage.

    Args:
        raw_rfc822: Raw RFC822 message bytes.
        uid: Message UID within the folder.
        folder: Raw folder path the message was fetched from.
        flags: IMAP flags returned with the message (e.g. ``\\Seen``).
        snippet_length: Snippet length in characters.

    Returns:
        Parsed message record.
    """
    msg = BytesParser(policy=policy.default).parsebytes(raw_rfc822)
    assert isinstance(msg, EmailMessage)

    date = 0
    date_raw = msg.get("Date")
    if date_raw:
        try:
            date = int(parsedate_to_datetime(str(date_raw)).timestamp())
        except (TypeError, ValueError, IndexError):
            logger.debug("Unparsable Date header (folder=%s, uid=%s): %r", folder, uid, date_raw)

    refs = split_message_ids(_header(msg, "References"))
    in_reply_to = split_message_ids(_header(msg, "In-Reply-To"))
    from_address, from_name = _first_address(_header(msg, "From"))
    body_text = _body(msg, "plain")
    normalized_flags = {flag.lower() for flag in flags}

    return ImapMessage(
        uid=uid,
        folder=folder,
        message_id=normalize_message_id(_header(msg, "Message-ID")),
        in_reply_to=in_reply_to[0] if in_reply_to else None,
        references=" ".join(refs) if refs else None,
        from_address=from_address,
        from_name=from_name,
        to_addresses=_format_address_list(_header(msg, "To")),
        cc_addresses=_format_address_list(_header(msg, "Cc")),
        bcc_addresses=_format_address_list(_header(msg, "Bcc")),
        reply_to=_format_address_list(_header(msg, "Reply-To")),
        subject=_header(msg, "Subject"),
        date=date,
        is_read="\\seen" in normalized_flags,
        is_starred="\\flagged" in normalized_flags,
        is_draft="\\draft" in normalized_flags,
        body_html=_body(msg, "html"),
        body_text=body_text,
        snippet=make_snippet(body_text, max_chars=snippet_length),
        raw_size=len(raw_rfc822),
        list_unsubscribe=_header(msg, "List-Unsubscribe"),
        list_unsubscribe_post=_header(msg, "List-Unsubscribe-Post"),
        auth_results=_header(msg, "Authentication-Results"),
        attachments=_attachments(msg),
    )
