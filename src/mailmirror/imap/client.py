"""IMAP client wrapper and the IMAP implementation of MailTransport."""

from __future__ import annotations

import asyncio
import base64
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass

import aioimaplib

from mailmirror.config.accounts import ImapConfig
from mailmirror.imap.types import FetchResult, FolderStatus, ImapFolder, ImapMessage
from mailmirror.models.types import SecurityType, SpecialUse
from mailmirror.utils.email import parse_rfc822

_LIST_MAILBOX_RE = re.compile(
    rb'^\* LIST \((?P<attrs>[^\)]*)\)\s+(?P<delim>NIL|"[^"]*"|[^\s]+)\s+(?P<name>.+)$',
)
_LITERAL_RE = re.compile(rb"^\{(?P<n>\d+)\}$")
_FETCH_HEADER_RE = re.compile(rb"^(?:\* )?(?P<seq>\d+) FETCH \(.*\{(?P<n>\d+)\}$")
_FETCH_UID_RE = re.compile(rb"UID (?P<uid>\d+)")
_FETCH_FLAGS_RE = re.compile(rb"FLAGS \((?P<flags>[^\)]*)\)")
_UIDVALIDITY_RE = re.compile(rb"\[UIDVALIDITY (?P<uidvalidity>\d+)\]")
_UIDNEXT_RE = re.compile(rb"\[UIDNEXT (?P<uidnext>\d+)\]")
_EXISTS_RE = re.compile(rb"(?i)\* (?P<exists>\d+) EXISTS")
_STATUS_ITEM_RE = re.compile(rb"(?P<key>MESSAGES|UNSEEN|UIDVALIDITY|UIDNEXT|HIGHESTMODSEQ) (?P<v>\d+)")

_SPECIAL_USE_ATTRIBUTES: dict[str, SpecialUse] = {
    "\\sent": SpecialUse.sent,
    "\\trash": SpecialUse.trash,
    "\\drafts": SpecialUse.drafts,
    "\\junk": SpecialUse.junk,
    "\\archive": SpecialUse.archive,
    "\\all": SpecialUse.all,
    "\\flagged": SpecialUse.flagged,
    "\\important": SpecialUse.important,
}

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SelectInfo:
    """IMAP SELECT response metadata."""

    mailbox: str
    uidvalidity: int | None
    uidnext: int | None
    exists: int | None


@dataclass(frozen=True)
class ListEntry:
    """One mailbox from an IMAP LIST response."""

    raw_name: str
    delimiter: str | None
    attributes: tuple[str, ...]


@dataclass(frozen=True)
class RawFetch:
    """Raw FETCH item: UID, flags and RFC822 bytes."""

    uid: int
    flags: frozenset[str]
    body: bytes


class ImapError(RuntimeError):
    """Raised for IMAP command errors."""


class ImapClient:
    """Async IMAP client with basic helpers."""

    def __init__(
        self,
        *,
        host: str,
        port: int,
        security: SecurityType,
        timeout_seconds: float = 120.0,
    ) -> None:
        """Initialize the IMAP client.

        Args:
            host: IMAP host.
            port: IMAP port.
            security: Connection security (implicit TLS, STARTTLS or none).
            timeout_seconds: Network timeout for IMAP operations.
        """
        self._host = host
        self._port = port
        self._security = security
        self._timeout = timeout_seconds
        self._imap: aioimaplib.IMAP4 | aioimaplib.IMAP4_SSL | None = None
        self._lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        """Return True once connect() has succeeded."""
        return self._imap is not None

    async def connect(self) -> None:
        """Connect to the IMAP server.

        Raises:
            ImapError: If STARTTLS is requested but refused by the server.
        """
        async with self._lock:
            if self._imap is not None:
                return
            if self._security == SecurityType.tls:
                imap: aioimaplib.IMAP4 = aioimaplib.IMAP4_SSL(
                    self._host,
                    self._port,
                    timeout=self._timeout,
                )
            else:
                imap = aioimaplib.IMAP4(self._host, self._port, timeout=self._timeout)
            await asyncio.wait_for(imap.wait_hello_from_server(), timeout=self._timeout)

            if self._security == SecurityType.starttls:
                resp = await asyncio.wait_for(imap.starttls(), timeout=self._timeout)
                if resp.result != "OK":
                    raise ImapError(f"IMAP STARTTLS failed: {resp.result} {resp.lines!r}")
            self._imap = imap

    def has_capability(self, name: str) -> bool:
        """Return True if the server advertised ``name`` in its CAPABILITY list."""
        return self._require().has_capability(name)

    async def login(self, *, username: str, password: str) -> None:
        """Login to the IMAP server.

        Args:
            username: IMAP username.
            password: IMAP password or app-specific password.

        Raises:
            ImapError: If authentication fails.
        """
        async with self._lock:
            imap = self._require()
            resp = await asyncio.wait_for(imap.login(username, password), timeout=self._timeout)
            if resp.result != "OK":
                raise ImapError(f"IMAP login failed: {resp.result} {resp.lines!r}")

    async def logout(self) -> None:
        """Logout and close the IMAP connection."""
        async with self._lock:
            if self._imap is None:
                return
            try:
                await self._imap.logout()
            finally:
                self._imap = None

    async def list_mailboxes(self) -> list[ListEntry]:
        """List available IMAP mailboxes with their attributes.

        Returns:
            Parsed LIST entries.

        Raises:
            ImapError: If the LIST command fails.
        """
        async with self._lock:
            imap = self._require()
            resp = await asyncio.wait_for(imap.list('""', "*"), timeout=self._timeout)
            if resp.result != "OK":
                raise ImapError(f"IMAP LIST failed: {resp.result} {resp.lines!r}")
            entries = _parse_list_response(resp.lines)
            if not entries:
                logger.debug("IMAP LIST raw lines: %r", resp.lines)
            return entries

    async def status(self, mailbox: str, items: str) -> dict[str, int]:
        """Run STATUS for a mailbox.

        Args:
            mailbox: Raw mailbox name.
            items: Parenthesized STATUS data items, e.g. ``(MESSAGES UNSEEN)``.

        Returns:
            Mapping of upper-cased item names to values.

        Raises:
            ImapError: If the STATUS command fails.
        """
        async with self._lock:
            imap = self._require()
            resp = await asyncio.wait_for(
                imap.status(_imap_quote(mailbox), items),
                timeout=self._timeout,
            )
            if resp.result != "OK":
                raise ImapError(f"IMAP STATUS failed ({mailbox}): {resp.result} {resp.lines!r}")
            return _parse_status_response(resp.lines)

    async def select(self, mailbox: str) -> SelectInfo:
        """Select a mailbox and return metadata.

        Args:
            mailbox: Mailbox name.

        Returns:
            SelectInfo with UIDVALIDITY and EXISTS info.

        Raises:
            ImapError: If the SELECT command fails.
        """
        async with self._lock:
            imap = self._require()
            mbx = _imap_quote(mailbox)
            resp = await asyncio.wait_for(imap.select(mbx), timeout=self._timeout)
            if resp.result != "OK":
                raise ImapError(f"IMAP SELECT failed ({mailbox}): {resp.result} {resp.lines!r}")

            uidvalidity: int | None = None
            uidnext: int | None = None
            exists: int | None = None

            for line in resp.lines:
                match = _UIDVALIDITY_RE.search(line)
                if match:
                    uidvalidity = int(match.group("uidvalidity"))
                match = _UIDNEXT_RE.search(line)
                if match:
                    uidnext = int(match.group("uidnext"))
                match = _EXISTS_RE.search(line)
                if match:
                    exists = int(match.group("exists"))

            return SelectInfo(
                mailbox=mailbox,
                uidvalidity=uidvalidity,
                uidnext=uidnext,
                exists=exists,
            )

    async def uid_search(
        self,
        criteria: Iterable[str],
        *,
        charset: str | None = None,
    ) -> list[int]:
        """Run UID SEARCH and return matching UIDs.

        Args:
            criteria: IMAP search criteria.
            charset: Optional charset for SEARCH.

        Returns:
            List of matching UIDs.

        Raises:
            ImapError: If the SEARCH command fails.
        """
        criteria = list(criteria)
        async with self._lock:
            imap = self._require()
            if charset is None:
                coro = imap.protocol.search(*criteria, by_uid=True)
            else:
                coro = imap.protocol.search(*criteria, charset=charset, by_uid=True)
            resp = await asyncio.wait_for(coro, timeout=self._timeout)
            if resp.result != "OK":
                raise ImapError(f"IMAP UID SEARCH failed: {resp.result} {resp.lines!r}")

            uids: list[int] = []
            for line in resp.lines:
                parts = line.split()
                if len(parts) >= 2 and parts[0] == b"*" and parts[1] == b"SEARCH":
                    parts = parts[2:]
                elif parts and parts[0] == b"SEARCH":
                    parts = parts[1:]

                if parts and all(p.isdigit() for p in parts):
                    uids.extend(int(p) for p in parts)

            if uids:
                return uids

            logger.debug(
                "IMAP UID SEARCH returned no matches (criteria=%s, lines=%r)",
                criteria,
                resp.lines,
            )
            return []

    async def uid_fetch_messages(self, uids: list[int]) -> list[RawFetch]:
        """Fetch UID, FLAGS and the full RFC822 body for a set of UIDs.

        Args:
            uids: Message UIDs in the selected mailbox.

        Returns:
            Raw fetch items in server order.

        Raises:
            ImapError: If the FETCH command fails.
        """
        if not uids:
            return []
        uid_set = ",".join(str(uid) for uid in uids)
        async with self._lock:
            imap = self._require()
            resp = await asyncio.wait_for(
                imap.uid("FETCH", uid_set, "(UID FLAGS BODY.PEEK[])"),
                timeout=self._timeout,
            )
            if resp.result != "OK":
                raise ImapError(f"IMAP UID FETCH failed: {resp.result} {resp.lines!r}")
            return _parse_fetch_response(resp.lines)

    def _require(self) -> aioimaplib.IMAP4 | aioimaplib.IMAP4_SSL:
        """Return the underlying IMAP client or raise if not connected."""
        if self._imap is None:
            raise ImapError("IMAP client not connected")
        return self._imap


class ImapTransport:
    """MailTransport backed by a single lazily-opened IMAP connection."""

    def __init__(
        self,
        *,
        config: ImapConfig,
        timeout_seconds: float = 120.0,
        snippet_length: int = 200,
    ) -> None:
        """Initialize the transport.

        Args:
            config: Connection parameters of the account.
            timeout_seconds: Network timeout for IMAP operations.
            snippet_length: Snippet length used when parsing fetched messages.
        """
        self._config = config
        self._timeout = timeout_seconds
        self._snippet_length = snippet_length
        self._client: ImapClient | None = None

    async def list_folders(self) -> list[ImapFolder]:
        """List folders and attach MESSAGES/UNSEEN counts via STATUS."""
        client = await self._session()
        try:
            entries = await client.list_mailboxes()
            folders: list[ImapFolder] = []
            for entry in entries:
                attrs_lower = {a.lower() for a in entry.attributes}
                exists = unseen = 0
                if "\\noselect" not in attrs_lower and "\\nonexistent" not in attrs_lower:
                    try:
                        counts = await client.status(entry.raw_name, "(MESSAGES UNSEEN)")
                        exists = counts.get("MESSAGES", 0)
                        unseen = counts.get("UNSEEN", 0)
                    except ImapError as exc:
                        logger.warning("STATUS failed for %s: %s", entry.raw_name, exc)
                folders.append(_to_folder(entry, exists=exists, unseen=unseen))
            return folders
        except (ImapError, OSError, TimeoutError):
            await self._reset()
            raise

    async def get_folder_status(self, folder_path: str) -> FolderStatus:
        """Return UIDVALIDITY, UIDNEXT, MESSAGES and UNSEEN for a folder.

        HIGHESTMODSEQ is requested too when the server supports CONDSTORE.
        """
        client = await self._session()
        try:
            items = _status_items(condstore=client.has_capability("CONDSTORE"))
            counts = await client.status(folder_path, items)
        except (ImapError, OSError, TimeoutError):
            await self._reset()
            raise
        return FolderStatus(
            uidvalidity=counts.get("UIDVALIDITY", 0),
            uidnext=counts.get("UIDNEXT", 0),
            exists=counts.get("MESSAGES", 0),
            unseen=counts.get("UNSEEN", 0),
            highest_modseq=counts.get("HIGHESTMODSEQ"),
        )

    async def search_all_uids(self, folder_path: str) -> list[int]:
        """Return all UIDs in a folder (UID SEARCH ALL), ascending."""
        client = await self._session()
        try:
            await client.select(folder_path)
            uids = await client.uid_search(["ALL"])
        except (ImapError, OSError, TimeoutError):
            await self._reset()
            raise
        return sorted(set(uids))

    async def fetch_new_uids(self, folder_path: str, since_uid: int) -> list[int]:
        """Return UIDs strictly greater than ``since_uid``, ascending.

        ``UID SEARCH n:*`` always matches the highest UID even when it is
        below ``n``, so the result is filtered again.
        """
        client = await self._session()
        try:
            await client.select(folder_path)
            uids = await client.uid_search([f"UID {since_uid + 1}:*"])
        except (ImapError, OSError, TimeoutError):
            await self._reset()
            raise
        return sorted({uid for uid in uids if uid > since_uid})

    async def fetch_messages(self, folder_path: str, uids: list[int]) -> FetchResult:
        """Fetch and parse a batch of messages from one folder."""
        client = await self._session()
        try:
            info = await client.select(folder_path)
            raw_items = await client.uid_fetch_messages(uids)
        except (ImapError, OSError, TimeoutError):
            await self._reset()
            raise

        messages: list[ImapMessage] = []
        failed: list[int] = []
        for item in raw_items:
            try:
                messages.append(
                    parse_rfc822(
                        item.body,
                        uid=item.uid,
                        folder=folder_path,
                        flags=item.flags,
                        snippet_length=self._snippet_length,
                    ),
                )
            except Exception as exc:
                logger.warning("Failed to parse message UID %s in %s: %r", item.uid, folder_path, exc)
                failed.append(item.uid)

        return FetchResult(
            messages=messages,
            folder_status=FolderStatus(
                uidvalidity=info.uidvalidity or 0,
                uidnext=info.uidnext or 0,
                exists=info.exists or 0,
            ),
            failed_uids=failed,
        )

    async def close(self) -> None:
        """Logout if a connection is open."""
        await self._reset()

    async def _session(self) -> ImapClient:
        """Return a connected and authenticated client, opening one if needed."""
        if self._client is not None and self._client.connected:
            return self._client
        client = ImapClient(
            host=self._config.host,
            port=self._config.port,
            security=self._config.security,
            timeout_seconds=self._timeout,
        )
        await client.connect()
        await client.login(username=self._config.username, password=self._config.password)
        self._client = client
        return client

    async def _reset(self) -> None:
        """Drop the current connection so the next call reconnects."""
        client, self._client = self._client, None
        if client is None:
            return
        try:
            await client.logout()
        except Exception as exc:
            logger.debug("IMAP logout failed during reset: %r", exc)


def _to_folder(entry: ListEntry, *, exists: int, unseen: int) -> ImapFolder:
    """Build an ImapFolder from a LIST entry and STATUS counts."""
    delimiter = entry.delimiter or "/"
    path = decode_modified_utf7(entry.raw_name)
    name = path.rsplit(delimiter, 1)[-1] if delimiter in path else path
    return ImapFolder(
        path=path,
        raw_path=entry.raw_name,
        name=name,
        delimiter=delimiter,
        special_use=_detect_special_use(entry.attributes),
        attributes=entry.attributes,
        exists=exists,
        unseen=unseen,
    )


def _detect_special_use(attributes: Iterable[str]) -> str | None:
    """Return the RFC 6154 special-use tag among LIST attributes, if any."""
    for attr in attributes:
        special = _SPECIAL_USE_ATTRIBUTES.get(attr.lower())
        if special is not None:
            return special.value
    return None


def _parse_fetch_response(lines: list[bytes]) -> list[RawFetch]:
    """Parse UID/FLAGS/body triples from a UID FETCH response.

    Servers may send UID and FLAGS before or after the body literal, so the
    line following the literal is inspected as well.

    Args:
        lines: IMAP response lines.

    Returns:
        Raw fetch items; items without a UID are dropped.
    """
    out: list[RawFetch] = []
    idx = 0
    while idx < len(lines):
        line = bytes(lines[idx]).rstrip(b"\r\n")
        match = _FETCH_HEADER_RE.match(line)
        if not match or idx + 1 >= len(lines):
            idx += 1
            continue

        literal = bytes(lines[idx + 1])
        size = int(match.group("n"))
        if len(literal) > size:
            literal = literal[:size]

        meta = line
        step = 2
        if idx + 2 < len(lines):
            trailer = bytes(lines[idx + 2])
            if not _FETCH_HEADER_RE.match(trailer.rstrip(b"\r\n")):
                meta = meta + b" " + trailer
                step = 3

        uid_match = _FETCH_UID_RE.search(meta)
        if uid_match is None:
            logger.debug("FETCH item without UID skipped: %r", line)
            idx += step
            continue

        flags_match = _FETCH_FLAGS_RE.search(meta)
        flags = (
            frozenset(f.decode("ascii", errors="replace") for f in flags_match.group("flags").split())
            if flags_match
            else frozenset()
        )
        out.append(RawFetch(uid=int(uid_match.group("uid")), flags=flags, body=literal))
        idx += step
    return out


def _status_items(*, condstore: bool) -> str:
    items = ["UIDVALIDITY", "UIDNEXT", "MESSAGES", "UNSEEN"]
    if condstore:
        items.append("HIGHESTMODSEQ")
    return f"({' '.join(items)})"


def _parse_status_response(lines: list[bytes]) -> dict[str, int]:
    """Parse data items from a STATUS response."""
    out: dict[str, int] = {}
    for line in lines:
        for match in _STATUS_ITEM_RE.finditer(bytes(line)):
            out[match.group("key").decode("ascii")] = int(match.group("v"))
    return out


def _parse_list_response(lines: list[bytes]) -> list[ListEntry]:
    """Parse mailbox entries from an IMAP LIST response.

    Args:
        lines: IMAP LIST response lines.

    Returns:
        LIST entries with raw (still UTF-7 encoded) mailbox names.
    """
    out: list[ListEntry] = []
    idx = 0
    while idx < len(lines):
        line = bytes(lines[idx]).strip()
        if line.startswith(b"+"):
            idx += 1
            continue
        if line.startswith(b"("):
            line = b"* LIST " + line
        match = _LIST_MAILBOX_RE.match(line)
        if not match:
            idx += 1
            continue

        name_token = match.group("name").strip()
        if b'"' in name_token:
            first_quote = name_token.find(b'"')
            if first_quote != -1:
                second_quote = name_token.find(b'"', first_quote + 1)
                if second_quote != -1:
                    last_quote = name_token.rfind(b'"')
                    if last_quote > first_quote:
                        name_token = name_token[first_quote : last_quote + 1]
        else:
            parts = name_token.split()
            if parts:
                name_token = parts[-1]

        literal_match = _LITERAL_RE.match(name_token)
        if literal_match:
            if idx + 1 >= len(lines):
                break
            raw_name = bytes(lines[idx + 1]).strip()
            idx += 2
        else:
            raw_name = name_token
            idx += 1

        name = _unquote_mailbox_name(raw_name)
        if not name:
            continue
        out.append(
            ListEntry(
                raw_name=name,
                delimiter=_unquote_mailbox_name(match.group("delim")) or None,
                attributes=tuple(
                    a.decode("ascii", errors="replace") for a in match.group("attrs").split()
                ),
            ),
        )

    seen: set[str] = set()
    result: list[ListEntry] = []
    for entry in out:
        if entry.raw_name in seen:
            continue
        seen.add(entry.raw_name)
        result.append(entry)
    return result


def _unquote_mailbox_name(raw: bytes) -> str:
    """Strip IMAP quoting from a mailbox token without decoding UTF-7.

    Args:
        raw: Raw mailbox token.

    Returns:
        Unquoted name, or empty string for NIL/blank tokens.
    """
    value = raw.strip()
    if not value or value.upper() == b"NIL":
        return ""

    if value.startswith(b'"') and value.endswith(b'"') and len(value) >= 2:
        value = value[1:-1]
        value = value.replace(b'\\"', b'"').replace(b"\\\\", b"\\")

    return value.decode("utf-8", errors="replace")


def decode_modified_utf7(value: str) -> str:
    """Decode an IMAP modified UTF-7 mailbox name (RFC 3501 section 5.1.3).

    Args:
        value: Encoded mailbox name.

    Returns:
        Decoded name; undecodable segments are kept verbatim.
    """
    out: list[str] = []
    idx = 0
    while idx < len(value):
        amp = value.find("&", idx)
        if amp == -1:
            out.append(value[idx:])
            break
        out.append(value[idx:amp])
        end = value.find("-", amp)
        if end == -1:
            out.append(value[amp:])
            break
        chunk = value[amp + 1 : end]
        if not chunk:
            out.append("&")
        else:
            b64 = chunk.replace(",", "/")
            b64 += "=" * (-len(b64) % 4)
            try:
                out.append(base64.b64decode(b64).decode("utf-16-be"))
            except (ValueError, UnicodeDecodeError):
                out.append(value[amp : end + 1])
        idx = end + 1
    return "".join(out)


def _imap_quote(value: str) -> str:
    """Quote a string for use in IMAP commands.

    Args:
        value: Raw mailbox name.

    Returns:
        Quoted string safe for IMAP commands.
    """
    stripped = value.strip()
    if not stripped:
        return '""'
    escaped = stripped.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'
