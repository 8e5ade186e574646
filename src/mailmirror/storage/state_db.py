"""SQLite persistence for the local mail cache."""

from __future__ import annotations

import json
import sqlite3
import uuid
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from mailmirror.models.state import (
    AccountRow,
    FolderSyncState,
    LabelRow,
    MessageRow,
    PendingOperationRow,
    PendingOperationStatus,
    ThreadRow,
)
from mailmirror.models.types import LabelType, SpecialUse, SystemLabelId

SCHEMA_VERSION = 1

_TABLES: tuple[str, ...] = (
    "accounts",
    "labels",
    "threads",
    "thread_labels",
    "messages",
    "attachments",
    "folder_sync_state",
    "pending_operations",
    "thread_headers",
)

# Special-use tag -> well-known label id, for folders detected by name only.
_SPECIAL_USE_TO_LABEL_ID: dict[str, str] = {
    SpecialUse.trash: SystemLabelId.trash.value,
    SpecialUse.junk: SystemLabelId.spam.value,
    SpecialUse.sent: SystemLabelId.sent.value,
    SpecialUse.drafts: SystemLabelId.draft.value,
    SpecialUse.archive: SystemLabelId.archive.value,
}

_MESSAGE_COLUMNS: tuple[str, ...] = (
    "id",
    "account_id",
    "thread_id",
    "from_address",
    "from_name",
    "to_addresses",
    "cc_addresses",
    "bcc_addresses",
    "reply_to",
    "subject",
    "snippet",
    "date",
    "is_read",
    "is_starred",
    "body_html",
    "body_text",
    "raw_size",
    "internal_date",
    "list_unsubscribe",
    "list_unsubscribe_post",
    "auth_results",
    "message_id_header",
    "references_header",
    "in_reply_to_header",
    "imap_uid",
    "imap_folder",
    "label_ids",
    "has_attachments",
)


def _utcnow() -> datetime:
    """Return current UTC time with timezone info."""
    return datetime.now(tz=UTC)


def _dt_to_iso(value: datetime) -> str:
    """Convert datetime to ISO string in UTC.

    Args:
        value: Datetime value.

    Returns:
        ISO-formatted string in UTC.
    """
    return value.astimezone(UTC).isoformat()


def _iso_to_dt(value: str) -> datetime:
    """Parse ISO datetime strings into timezone-aware datetimes.

    Args:
        value: ISO-formatted datetime string.

    Returns:
        Parsed datetime, defaulting to UTC if no timezone is present.
    """
    dt = datetime.fromisoformat(value)
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=UTC)


def _placeholders(count: int) -> str:
    """Return ``?, ?, ...`` for an IN clause."""
    return ", ".join("?" for _ in range(count))


@dataclass(frozen=True)
class ImapMessageInfo:
    """Where a cached message lives on the server."""

    uid: int
    folder: str


def group_messages_by_folder(messages: Mapping[str, ImapMessageInfo]) -> dict[str, list[int]]:
    """Group IMAP UIDs by folder path.

    Args:
        messages: Local message id -> server location.

    Returns:
        Folder path -> UIDs in input order.
    """
    grouped: dict[str, list[int]] = {}
    for info in messages.values():
        grouped.setdefault(info.folder, []).append(info.uid)
    return grouped


class StateDb:
    """SQLite wrapper for the mirrored accounts, labels, threads and messages."""

    def __init__(self, *, sqlite_path: Path) -> None:
        """Initialize the database connection.

        Args:
            sqlite_path: Path to the sqlite database file (``:memory:`` allowed).
        """
        self._sqlite_path = sqlite_path
        self._conn = sqlite3.connect(
            sqlite_path,
            timeout=30,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        self._tx_depth = 0

    @property
    def sqlite_path(self) -> Path:
        """Return the sqlite database path."""
        return self._sqlite_path

    def close(self) -> None:
        """Close the underlying sqlite connection."""
        self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Provide a transaction context manager.

        Nested uses join the outermost transaction.
        """
        if self._tx_depth:
            self._tx_depth += 1
            try:
                yield self._conn
            finally:
                self._tx_depth -= 1
            return

        cursor = self._conn.cursor()
        cursor.execute("BEGIN")
        self._tx_depth = 1
        try:
            yield self._conn
            cursor.execute("COMMIT")
        except BaseException:
            cursor.execute("ROLLBACK")
            raise
        finally:
            self._tx_depth = 0

    def init_schema(self) -> None:
        """Create tables if missing and ensure sqlite PRAGMA settings."""
        if str(self._sqlite_path) != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")

        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS accounts (
                  id TEXT PRIMARY KEY,
                  email TEXT NOT NULL,
                  provider TEXT NOT NULL DEFAULT 'imap',
                  imap_host TEXT,
                  imap_port INTEGER,
                  imap_security TEXT,
                  imap_username TEXT,
                  imap_password TEXT,
                  history_id TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                )
                """,
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS labels (
                  id TEXT NOT NULL,
                  account_id TEXT NOT NULL,
                  name TEXT NOT NULL,
                  type TEXT NOT NULL,
                  imap_folder_path TEXT,
                  imap_special_use TEXT,
                  PRIMARY KEY (account_id, id)
                )
                """,
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS threads (
                  id TEXT NOT NULL,
                  account_id TEXT NOT NULL,
                  subject TEXT,
                  snippet TEXT,
                  last_message_at INTEGER NOT NULL DEFAULT 0,
                  message_count INTEGER NOT NULL DEFAULT 0,
                  is_read INTEGER NOT NULL DEFAULT 0,
                  is_starred INTEGER NOT NULL DEFAULT 0,
                  is_important INTEGER NOT NULL DEFAULT 0,
                  has_attachments INTEGER NOT NULL DEFAULT 0,
                  updated_at TEXT NOT NULL,
                  PRIMARY KEY (account_id, id)
                )
                """,
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_threads_last_message "
                "ON threads(account_id, last_message_at DESC)",
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS thread_labels (
                  account_id TEXT NOT NULL,
                  thread_id TEXT NOT NULL,
                  label_id TEXT NOT NULL,
                  PRIMARY KEY (account_id, thread_id, label_id)
                )
                """,
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                  id TEXT NOT NULL,
                  account_id TEXT NOT NULL,
                  thread_id TEXT NOT NULL,
                  from_address TEXT,
                  from_name TEXT,
                  to_addresses TEXT,
                  cc_addresses TEXT,
                  bcc_addresses TEXT,
                  reply_to TEXT,
                  subject TEXT,
                  snippet TEXT,
                  date INTEGER NOT NULL DEFAULT 0,
                  is_read INTEGER NOT NULL DEFAULT 0,
                  is_starred INTEGER NOT NULL DEFAULT 0,
                  body_html TEXT,
                  body_text TEXT,
                  raw_size INTEGER,
                  internal_date INTEGER,
                  list_unsubscribe TEXT,
                  list_unsubscribe_post TEXT,
                  auth_results TEXT,
                  message_id_header TEXT,
                  references_header TEXT,
                  in_reply_to_header TEXT,
                  imap_uid INTEGER,
                  imap_folder TEXT,
                  label_ids TEXT NOT NULL DEFAULT '[]',
                  has_attachments INTEGER NOT NULL DEFAULT 0,
                  updated_at TEXT NOT NULL,
                  PRIMARY KEY (account_id, id)
                )
                """,
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_thread ON messages(account_id, thread_id)",
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_msgid "
                "ON messages(account_id, message_id_header)",
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS attachments (
                  id TEXT NOT NULL,
                  message_id TEXT NOT NULL,
                  account_id TEXT NOT NULL,
                  filename TEXT,
                  mime_type TEXT,
                  size INTEGER,
                  attachment_id TEXT,
                  content_id TEXT,
                  is_inline INTEGER NOT NULL DEFAULT 0,
                  local_path TEXT,
                  PRIMARY KEY (account_id, id)
                )
                """,
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_attachments_message "
                "ON attachments(account_id, message_id)",
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS folder_sync_state (
                  account_id TEXT NOT NULL,
                  folder_path TEXT NOT NULL,
                  uidvalidity INTEGER,
                  last_uid INTEGER NOT NULL DEFAULT 0,
                  modseq INTEGER,
                  last_sync_at INTEGER,
                  PRIMARY KEY (account_id, folder_path)
                )
                """,
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS pending_operations (
                  id TEXT PRIMARY KEY,
                  account_id TEXT NOT NULL,
                  operation_type TEXT NOT NULL,
                  resource_id TEXT NOT NULL,
                  params_json TEXT NOT NULL DEFAULT '{}',
                  status TEXT NOT NULL,
                  retry_count INTEGER NOT NULL DEFAULT 0,
                  created_at TEXT NOT NULL
                )
                """,
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_pending_ops_resource "
                "ON pending_operations(account_id, resource_id)",
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS thread_headers (
                  account_id TEXT NOT NULL,
                  header TEXT NOT NULL,
                  thread_id TEXT NOT NULL,
                  PRIMARY KEY (account_id, header)
                )
                """,
            )

            conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")

    # -- accounts -----------------------------------------------------------

    def upsert_account(
        self,
        *,
        account_id: str,
        email: str,
        imap_host: str | None,
        imap_port: int | None,
        imap_security: str | None,
        imap_username: str | None,
        imap_password: str | None,
        provider: str = "imap",
    ) -> AccountRow:
        """Insert or update an account row.

        Returns:
            Updated account row.
        """
        now = _dt_to_iso(_utcnow())
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO accounts(
                  id, email, provider, imap_host, imap_port, imap_security,
                  imap_username, imap_password, created_at, updated_at
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                  email=excluded.email,
                  provider=excluded.provider,
                  imap_host=excluded.imap_host,
                  imap_port=excluded.imap_port,
                  imap_security=excluded.imap_security,
                  imap_username=excluded.imap_username,
                  imap_password=excluded.imap_password,
                  updated_at=excluded.updated_at
                """,
                (
                    account_id,
                    email,
                    provider,
                    imap_host,
                    imap_port,
                    imap_security,
                    imap_username,
                    imap_password,
                    now,
                    now,
                ),
            )
        account = self.get_account(account_id)
        assert account is not None
        return account

    def get_account(self, account_id: str) -> AccountRow | None:
        """Fetch an account row by id.

        Args:
            account_id: Account id.

        Returns:
            Account row if present, otherwise None.
        """
        row = self._conn.execute("SELECT * FROM accounts WHERE id=?", (account_id,)).fetchone()
        if row is None:
            return None
        return AccountRow(
            id=row["id"],
            email=row["email"],
            provider=row["provider"],
            imap_host=row["imap_host"],
            imap_port=row["imap_port"],
            imap_security=row["imap_security"],
            imap_username=row["imap_username"],
            imap_password=row["imap_password"],
            history_id=row["history_id"],
            created_at=_iso_to_dt(row["created_at"]),
            updated_at=_iso_to_dt(row["updated_at"]),
        )

    def update_account_sync_state(self, account_id: str, history_id: str) -> None:
        """Record the account-level sync token.

        Args:
            account_id: Account id.
            history_id: Opaque token marking the last completed sync.
        """
        with self.transaction() as conn:
            conn.execute(
                "UPDATE accounts SET history_id=?, updated_at=? WHERE id=?",
                (history_id, _dt_to_iso(_utcnow()), account_id),
            )

    # -- labels -------------------------------------------------------------

    def upsert_label(
        self,
        *,
        label_id: str,
        account_id: str,
        name: str,
        label_type: LabelType,
        imap_folder_path: str | None = None,
        imap_special_use: str | None = None,
    ) -> None:
        """Insert or update a label keyed by (account, label id)."""
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO labels(id, account_id, name, type, imap_folder_path, imap_special_use)
                VALUES(?, ?, ?, ?, ?, ?)
                ON CONFLICT(account_id, id) DO UPDATE SET
                  name=excluded.name,
                  type=excluded.type,
                  imap_folder_path=COALESCE(excluded.imap_folder_path, labels.imap_folder_path),
                  imap_special_use=COALESCE(excluded.imap_special_use, labels.imap_special_use)
                """,
                (
                    label_id,
                    account_id,
                    name,
                    label_type.value,
                    imap_folder_path,
                    imap_special_use,
                ),
            )

    def get_labels(self, account_id: str) -> list[LabelRow]:
        """Return all labels of an account ordered by id."""
        rows = self._conn.execute(
            "SELECT * FROM labels WHERE account_id=? ORDER BY id",
            (account_id,),
        ).fetchall()
        return [
            LabelRow(
                id=row["id"],
                account_id=row["account_id"],
                name=row["name"],
                type=LabelType(row["type"]),
                imap_folder_path=row["imap_folder_path"],
                imap_special_use=row["imap_special_use"],
            )
            for row in rows
        ]

    def find_special_folder(self, account_id: str, special_use: str) -> str | None:
        """Find the server folder path for a special-use tag.

        Looks up the recorded special-use attribute first, then the
        well-known label id for servers where only name heuristics matched.

        Args:
            account_id: Account id.
            special_use: Tag such as ``\\Trash``.

        Returns:
            Folder path (or label name when no path is recorded), or None.
        """
        row = self._conn.execute(
            """
            SELECT imap_folder_path, name FROM labels
            WHERE account_id=? AND imap_special_use=?
            LIMIT 1
            """,
            (account_id, special_use),
        ).fetchone()
        if row is not None:
            return str(row["imap_folder_path"] or row["name"])

        label_id = _SPECIAL_USE_TO_LABEL_ID.get(special_use)
        if label_id is None:
            return None
        row = self._conn.execute(
            """
            SELECT imap_folder_path, name FROM labels
            WHERE account_id=? AND id=? AND imap_folder_path IS NOT NULL
            LIMIT 1
            """,
            (account_id, label_id),
        ).fetchone()
        return str(row["imap_folder_path"] or row["name"]) if row is not None else None

    # -- threads ------------------------------------------------------------

    def upsert_thread(self, thread: ThreadRow) -> None:
        """Insert or replace thread metadata (labels are set separately)."""
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO threads(
                  id, account_id, subject, snippet, last_message_at, message_count,
                  is_read, is_starred, is_important, has_attachments, updated_at
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(account_id, id) DO UPDATE SET
                  subject=excluded.subject,
                  snippet=excluded.snippet,
                  last_message_at=excluded.last_message_at,
                  message_count=excluded.message_count,
                  is_read=excluded.is_read,
                  is_starred=excluded.is_starred,
                  is_important=excluded.is_important,
                  has_attachments=excluded.has_attachments,
                  updated_at=excluded.updated_at
                """,
                (
                    thread.id,
                    thread.account_id,
                    thread.subject,
                    thread.snippet,
                    thread.last_message_at,
                    thread.message_count,
                    int(thread.is_read),
                    int(thread.is_starred),
                    int(thread.is_important),
                    int(thread.has_attachments),
                    _dt_to_iso(_utcnow()),
                ),
            )

    def set_thread_labels(self, account_id: str, thread_id: str, label_ids: Iterable[str]) -> None:
        """Replace the label set of a thread."""
        with self.transaction() as conn:
            conn.execute(
                "DELETE FROM thread_labels WHERE account_id=? AND thread_id=?",
                (account_id, thread_id),
            )
            conn.executemany(
                "INSERT INTO thread_labels(account_id, thread_id, label_id) VALUES(?, ?, ?)",
                [(account_id, thread_id, label_id) for label_id in sorted(set(label_ids))],
            )

    def get_thread(self, account_id: str, thread_id: str) -> ThreadRow | None:
        """Fetch a thread with its labels.

        Args:
            account_id: Account id.
            thread_id: Thread id.

        Returns:
            Thread row if present, otherwise None.
        """
        row = self._conn.execute(
            "SELECT * FROM threads WHERE account_id=? AND id=?",
            (account_id, thread_id),
        ).fetchone()
        return self._row_to_thread(row) if row is not None else None

    def list_threads(self, account_id: str, *, limit: int = 50) -> list[ThreadRow]:
        """Return the most recent threads of an account."""
        rows = self._conn.execute(
            """
            SELECT * FROM threads WHERE account_id=?
            ORDER BY last_message_at DESC, id
            LIMIT ?
            """,
            (account_id, limit),
        ).fetchall()
        return [self._row_to_thread(row) for row in rows]

    def get_thread_label_ids(self, account_id: str, thread_id: str) -> list[str]:
        """Return the sorted label ids of a thread."""
        rows = self._conn.execute(
            """
            SELECT label_id FROM thread_labels
            WHERE account_id=? AND thread_id=?
            ORDER BY label_id
            """,
            (account_id, thread_id),
        ).fetchall()
        return [str(row["label_id"]) for row in rows]

    def upsert_thread_headers(self, account_id: str, thread_id: str, headers: Iterable[str]) -> None:
        """Point every given Message-ID header at a thread."""
        with self.transaction() as conn:
            conn.executemany(
                """
                INSERT INTO thread_headers(account_id, header, thread_id)
                VALUES(?, ?, ?)
                ON CONFLICT(account_id, header) DO UPDATE SET thread_id=excluded.thread_id
                """,
                [(account_id, header, thread_id) for header in set(headers)],
            )

    def get_thread_ids_for_headers(self, account_id: str, headers: Iterable[str]) -> dict[str, str]:
        """Return header -> thread id for headers already attached to a thread."""
        unique = sorted(set(headers))
        out: dict[str, str] = {}
        # Stay well below SQLITE_MAX_VARIABLE_NUMBER.
        for start in range(0, len(unique), 500):
            chunk = unique[start : start + 500]
            rows = self._conn.execute(
                f"""
                SELECT header, thread_id FROM thread_headers
                WHERE account_id=? AND header IN ({_placeholders(len(chunk))})
                """,
                (account_id, *chunk),
            ).fetchall()
            out.update({str(row["header"]): str(row["thread_id"]) for row in rows})
        return out

    # -- messages -----------------------------------------------------------

    def upsert_message(self, message: MessageRow) -> None:
        """Insert or update a message row keyed by (account, id)."""
        values = message.model_dump()
        values["is_read"] = int(message.is_read)
        values["is_starred"] = int(message.is_starred)
        values["has_attachments"] = int(message.has_attachments)
        values["label_ids"] = json.dumps(message.label_ids)

        columns = ", ".join(_MESSAGE_COLUMNS)
        updates = ",\n".join(
            f"{col}=excluded.{col}" for col in _MESSAGE_COLUMNS if col not in {"id", "account_id"}
        )
        with self.transaction() as conn:
            conn.execute(
                f"""
                INSERT INTO messages({columns}, updated_at)
                VALUES({_placeholders(len(_MESSAGE_COLUMNS) + 1)})
                ON CONFLICT(account_id, id) DO UPDATE SET
                {updates},
                updated_at=excluded.updated_at
                """,
                (*(values[col] for col in _MESSAGE_COLUMNS), _dt_to_iso(_utcnow())),
            )

    def get_message(self, account_id: str, message_id: str) -> MessageRow | None:
        """Fetch one message row."""
        row = self._conn.execute(
            "SELECT * FROM messages WHERE account_id=? AND id=?",
            (account_id, message_id),
        ).fetchone()
        return self._row_to_message(row) if row is not None else None

    def get_messages_for_thread(self, account_id: str, thread_id: str) -> list[MessageRow]:
        """Return the messages of a thread ordered by date."""
        rows = self._conn.execute(
            "SELECT * FROM messages WHERE account_id=? AND thread_id=? ORDER BY date, id",
            (account_id, thread_id),
        ).fetchall()
        return [self._row_to_message(row) for row in rows]

    def get_imap_uids_for_messages(
        self,
        account_id: str,
        message_ids: list[str],
    ) -> dict[str, ImapMessageInfo]:
        """Return the server location of cached messages.

        Messages without a recorded UID or folder are omitted.
        """
        if not message_ids:
            return {}
        rows = self._conn.execute(
            f"""
            SELECT id, imap_uid, imap_folder FROM messages
            WHERE account_id=? AND id IN ({_placeholders(len(message_ids))})
            """,
            (account_id, *message_ids),
        ).fetchall()
        return {
            str(row["id"]): ImapMessageInfo(uid=int(row["imap_uid"]), folder=str(row["imap_folder"]))
            for row in rows
            if row["imap_uid"] is not None and row["imap_folder"] is not None
        }

    def update_message_imap_folder(
        self,
        account_id: str,
        message_ids: list[str],
        new_folder: str,
    ) -> None:
        """Record that messages were moved to another server folder."""
        if not message_ids:
            return
        with self.transaction() as conn:
            conn.execute(
                f"""
                UPDATE messages SET imap_folder=?
                WHERE account_id=? AND id IN ({_placeholders(len(message_ids))})
                """,
                (new_folder, account_id, *message_ids),
            )

    # -- attachments --------------------------------------------------------

    def upsert_attachment(
        self,
        *,
        attachment_row_id: str,
        message_id: str,
        account_id: str,
        filename: str | None,
        mime_type: str | None,
        size: int | None,
        attachment_id: str | None,
        content_id: str | None,
        is_inline: bool,
    ) -> None:
        """Insert or update an attachment row; ``local_path`` is preserved."""
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO attachments(
                  id, message_id, account_id, filename, mime_type, size,
                  attachment_id, content_id, is_inline
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(account_id, id) DO UPDATE SET
                  filename=excluded.filename,
                  mime_type=excluded.mime_type,
                  size=excluded.size,
                  attachment_id=excluded.attachment_id,
                  content_id=excluded.content_id,
                  is_inline=excluded.is_inline
                """,
                (
                    attachment_row_id,
                    message_id,
                    account_id,
                    filename,
                    mime_type,
                    size,
                    attachment_id,
                    content_id,
                    int(is_inline),
                ),
            )

    def get_attachments_for_message(self, account_id: str, message_id: str) -> list[dict[str, Any]]:
        """Return attachment rows of a message as plain dicts."""
        rows = self._conn.execute(
            "SELECT * FROM attachments WHERE account_id=? AND message_id=? ORDER BY id",
            (account_id, message_id),
        ).fetchall()
        return [dict(row) for row in rows]

    # -- folder sync state --------------------------------------------------

    def get_all_folder_sync_states(self, account_id: str) -> list[FolderSyncState]:
        """Return every folder cursor of an account."""
        rows = self._conn.execute(
            "SELECT * FROM folder_sync_state WHERE account_id=? ORDER BY folder_path",
            (account_id,),
        ).fetchall()
        return [self._row_to_sync_state(row) for row in rows]

    def get_folder_sync_state(self, account_id: str, folder_path: str) -> FolderSyncState | None:
        """Return the cursor of one folder, if it was ever synced."""
        row = self._conn.execute(
            "SELECT * FROM folder_sync_state WHERE account_id=? AND folder_path=?",
            (account_id, folder_path),
        ).fetchone()
        return self._row_to_sync_state(row) if row is not None else None

    def upsert_folder_sync_state(self, state: FolderSyncState) -> None:
        """Insert or update a folder cursor keyed by (account, folder path)."""
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO folder_sync_state(
                  account_id, folder_path, uidvalidity, last_uid, modseq, last_sync_at
                )
                VALUES(?, ?, ?, ?, ?, ?)
                ON CONFLICT(account_id, folder_path) DO UPDATE SET
                  uidvalidity=excluded.uidvalidity,
                  last_uid=excluded.last_uid,
                  modseq=excluded.modseq,
                  last_sync_at=excluded.last_sync_at
                """,
                (
                    state.account_id,
                    state.folder_path,
                    state.uidvalidity,
                    state.last_uid,
                    state.modseq,
                    state.last_sync_at,
                ),
            )

    # -- pending operations -------------------------------------------------

    def add_pending_operation(
        self,
        *,
        account_id: str,
        operation_type: str,
        resource_id: str,
        params: dict[str, object] | None = None,
    ) -> PendingOperationRow:
        """Queue a local mutation that has not reached the server yet."""
        op = PendingOperationRow(
            id=str(uuid.uuid4()),
            account_id=account_id,
            operation_type=operation_type,
            resource_id=resource_id,
            params=params or {},
            created_at=_utcnow(),
        )
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO pending_operations(
                  id, account_id, operation_type, resource_id, params_json,
                  status, retry_count, created_at
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    op.id,
                    op.account_id,
                    op.operation_type,
                    op.resource_id,
                    json.dumps(op.params),
                    op.status.value,
                    op.retry_count,
                    _dt_to_iso(op.created_at),
                ),
            )
        return op

    def get_pending_ops_for_resource(
        self,
        account_id: str,
        resource_id: str,
    ) -> list[PendingOperationRow]:
        """Return queued operations targeting one resource (e.g. a thread)."""
        rows = self._conn.execute(
            """
            SELECT * FROM pending_operations
            WHERE account_id=? AND resource_id=?
            ORDER BY created_at, id
            """,
            (account_id, resource_id),
        ).fetchall()
        return [
            PendingOperationRow(
                id=row["id"],
                account_id=row["account_id"],
                operation_type=row["operation_type"],
                resource_id=row["resource_id"],
                params=json.loads(row["params_json"] or "{}"),
                status=PendingOperationStatus(row["status"]),
                retry_count=int(row["retry_count"]),
                created_at=_iso_to_dt(row["created_at"]),
            )
            for row in rows
        ]

    def delete_pending_operation(self, op_id: str) -> None:
        """Remove a pending operation once it has been applied remotely."""
        with self.transaction() as conn:
            conn.execute("DELETE FROM pending_operations WHERE id=?", (op_id,))

    # -- reporting ----------------------------------------------------------

    def counts_by_table(self, account_id: str | None = None) -> dict[str, int]:
        """Return row counts per table, optionally for one account.

        Args:
            account_id: Restrict counts to this account.

        Returns:
            Mapping of table name to row count.
        """
        out: dict[str, int] = {}
        for table in _TABLES:
            column = "id" if table == "accounts" else "account_id"
            if account_id is None:
                row = self._conn.execute(f"SELECT COUNT(*) AS c FROM {table}").fetchone()
            else:
                row = self._conn.execute(
                    f"SELECT COUNT(*) AS c FROM {table} WHERE {column}=?",
                    (account_id,),
                ).fetchone()
            out[table] = int(row["c"]) if row else 0
        return out

    def _row_to_thread(self, row: Mapping[str, Any]) -> ThreadRow:
        """Convert a sqlite row to a ThreadRow (with labels)."""
        return ThreadRow(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            subject=row["subject"],
            snippet=row["snippet"],
            last_message_at=int(row["last_message_at"]),
            message_count=int(row["message_count"]),
            is_read=bool(row["is_read"]),
            is_starred=bool(row["is_starred"]),
            is_important=bool(row["is_important"]),
            has_attachments=bool(row["has_attachments"]),
            label_ids=self.get_thread_label_ids(str(row["account_id"]), str(row["id"])),
        )

    def _row_to_message(self, row: Mapping[str, Any]) -> MessageRow:
        """Convert a sqlite row to a MessageRow.

        Args:
            row: Row mapping from sqlite.

        Returns:
            MessageRow instance.
        """
        values = {col: row[col] for col in _MESSAGE_COLUMNS}
        values["is_read"] = bool(row["is_read"])
        values["is_starred"] = bool(row["is_starred"])
        values["has_attachments"] = bool(row["has_attachments"])
        values["label_ids"] = json.loads(row["label_ids"] or "[]")
        return MessageRow(**values)

    def _row_to_sync_state(self, row: Mapping[str, Any]) -> FolderSyncState:
        """Convert a sqlite row to a FolderSyncState."""
        return FolderSyncState(
            account_id=str(row["account_id"]),
            folder_path=str(row["folder_path"]),
            uidvalidity=row["uidvalidity"],
            last_uid=int(row["last_uid"]),
            modseq=row["modseq"],
            last_sync_at=row["last_sync_at"],
        )
