"""Deterministic identifiers for cached rows.

Every id that must survive a re-fetch is a pure function of its inputs, so
repeated syncs upsert the same rows instead of creating duplicates.
"""

from __future__ import annotations

import hashlib

SYNTHETIC_MESSAGE_ID_DOMAIN = "mailmirror.local"
THREAD_ID_PREFIX = "thread-"
_THREAD_HASH_CHARS = 24


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest for raw bytes.

    Args:
        data: Input bytes.

    Returns:
        Hex-encoded SHA-256 digest.
    """
    return hashlib.sha256(data).hexdigest()


def local_message_id(account_id: str, folder: str, uid: int) -> str:
    """Return the local message id for a message at (account, folder, uid)."""
    return f"imap-{account_id}-{folder}-{uid}"


def synthetic_message_id(account_id: str, folder: str, uid: int) -> str:
    """Return a stable Message-ID for messages that arrive without one."""
    return f"<synthetic-{account_id}-{folder}-{uid}@{SYNTHETIC_MESSAGE_ID_DOMAIN}>"


def thread_id_for_root(root_header: str) -> str:
    """Derive a thread id from the canonical header of a thread component.

    Args:
        root_header: Normalized identity header chosen to represent the thread.

    Returns:
        Thread id of the form ``thread-<hash>``.
    """
    digest = sha256_hex(root_header.encode("utf-8", errors="replace"))
    return f"{THREAD_ID_PREFIX}{digest[:_THREAD_HASH_CHARS]}"


def attachment_row_id(message_id: str, part_id: str) -> str:
    """Return the attachments-table id for one part of a message."""
    return f"{message_id}_{part_id}"
