"""Async orchestration of initial and delta IMAP syncs."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from functools import partial
from typing import TypeVar

from mailmirror.config.accounts import build_imap_config
from mailmirror.config.settings import AppSettings
from mailmirror.imap.client import ImapTransport
from mailmirror.imap.types import ImapFolder, ImapMessage, MailTransport
from mailmirror.models.mail import ParsedMessage, ThreadableMessage
from mailmirror.models.state import AccountRow, FolderSyncState
from mailmirror.models.types import SyncPhase, SyncProgress
from mailmirror.storage.persistence import load_known_threads, store_threads_and_messages
from mailmirror.storage.state_db import StateDb
from mailmirror.sync.folders import (
    get_syncable_folders,
    map_folder_to_label,
    sync_folders_to_labels,
)
from mailmirror.sync.threads import build_threads
from mailmirror.sync.translator import to_parsed_message

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[SyncProgress], None]
TransportFactory = Callable[[AccountRow], MailTransport]

_SECONDS_PER_DAY = 86_400

T = TypeVar("T")


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    base_delay_s: float = 0.5,
    max_delay_s: float = 20.0,
    jitter_s: float = 0.25,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
) -> T:
    """Retry an async function with exponential backoff.

    Args:
        fn: Async callable to execute.
        attempts: Number of attempts before giving up.
        base_delay_s: Base delay in seconds.
        max_delay_s: Maximum delay between attempts.
        jitter_s: Random jitter added to delay.
        retry_on: Exception types to retry on.

    Returns:
        Result of the callable.

    Raises:
        BaseException: The last exception if retries are exhausted.
    """
    last_exc: BaseException | None = None
    for i in range(1, attempts + 1):
        try:
            return await fn()
        except retry_on as exc:
            last_exc = exc
            if i >= attempts:
                break
            delay = min(max_delay_s, base_delay_s * (2 ** (i - 1)))
            delay = delay + random.uniform(0, jitter_s)
            await asyncio.sleep(delay)
    assert last_exc is not None
    raise last_exc


class AccountNotFoundError(LookupError):
    """Raised when a sync is requested for an unknown account id."""

    def __init__(self, account_id: str) -> None:
        super().__init__(f"Account not found: {account_id}")
        self.account_id = account_id


@dataclass
class SyncResult:
    """Outcome of one sync run."""

    messages: list[ParsedMessage] = field(default_factory=list)
    folders_synced: int = 0
    failed_folders: list[str] = field(default_factory=list)


@dataclass
class _Batch:
    """Messages accumulated across folders before threading."""

    parsed_by_id: dict[str, ParsedMessage] = field(default_factory=dict)
    raw_by_id: dict[str, ImapMessage] = field(default_factory=dict)
    threadables: dict[str, ThreadableMessage] = field(default_factory=dict)

    def merge(self, other: _Batch) -> None:
        self.parsed_by_id.update(other.parsed_by_id)
        self.raw_by_id.update(other.raw_by_id)
        self.threadables.update(other.threadables)

    def __len__(self) -> int:
        return len(self.parsed_by_id)


def imap_transport_factory(settings: AppSettings) -> TransportFactory:
    """Return a factory building an ImapTransport for an account row."""

    def _build(account: AccountRow) -> MailTransport:
        return ImapTransport(
            config=build_imap_config(account),
            timeout_seconds=settings.imap.timeout_seconds,
            snippet_length=settings.sync.snippet_length,
        )

    return _build


class SyncOrchestrator:
    """Fetches folders and messages, threads them and persists the result."""

    def __init__(
        self,
        *,
        db: StateDb,
        transport_factory: TransportFactory,
        settings: AppSettings,
        retry_base_delay_s: float = 0.5,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            db: State database.
            transport_factory: Builds a MailTransport for an account.
            settings: Application settings.
            retry_base_delay_s: Base backoff delay for transport retries.
        """
        self._db = db
        self._transport_factory = transport_factory
        self._s = settings
        self._retry_base_delay_s = retry_base_delay_s

    async def initial_sync(
        self,
        account_id: str,
        *,
        days_back: int | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> SyncResult:
        """Fetch every folder in full (within ``days_back``) and persist it.

        Args:
            account_id: Account to sync.
            days_back: Ignore messages older than this many days. Defaults to
                the configured value.
            on_progress: Optional progress callback.

        Returns:
            SyncResult with the stored messages.

        Raises:
            AccountNotFoundError: If the account does not exist.
        """
        account = self._require_account(account_id)
        cutoff = self._cutoff(days_back if days_back is not None else self._s.sync.days_back)
        transport = self._transport_factory(account)
        result = SyncResult()
        batch = _Batch()
        cursors: list[FolderSyncState] = []

        try:
            folders = await self._prepare_folders(transport, account_id, on_progress)
            total = sum(f.exists for f in folders)

            for folder in folders:
                if folder.exists == 0:
                    continue
                try:
                    folder_batch, cursor = await self._fetch_full_folder(
                        transport,
                        account_id,
                        folder,
                        cutoff=cutoff,
                        fetched_before=len(batch),
                        total=total,
                        on_progress=on_progress,
                    )
                except Exception:
                    logger.exception(
                        "Folder sync failed; skipping",
                        extra={"account_id": account_id, "folder": folder.path},
                    )
                    result.failed_folders.append(folder.raw_path)
                    continue
                batch.merge(folder_batch)
                cursors.append(cursor)
                result.folders_synced += 1
        finally:
            await transport.close()

        result.messages = self._persist(account_id, batch, on_progress)
        self._commit_cursors(account_id, cursors)
        _emit(on_progress, SyncPhase.done, len(result.messages), len(result.messages))
        logger.info(
            "Initial sync complete",
            extra={
                "account_id": account_id,
                "messages": len(result.messages),
                "folders": result.folders_synced,
                "failed_folders": len(result.failed_folders),
            },
        )
        return result

    async def delta_sync(
        self,
        account_id: str,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> SyncResult:
        """Fetch messages that arrived since the last sync.

        Folders never synced, or whose UIDVALIDITY changed, are fetched in
        full. When nothing is left to store, only cursors that moved (a new
        folder or a new UIDVALIDITY) are written; otherwise the database is not
        touched.

        Args:
            account_id: Account to sync.
            on_progress: Optional progress callback.

        Returns:
            SyncResult with the stored messages.

        Raises:
            AccountNotFoundError: If the account does not exist.
        """
        account = self._require_account(account_id)
        cutoff = self._cutoff(self._s.sync.days_back)
        transport = self._transport_factory(account)
        result = SyncResult()
        batch = _Batch()
        cursors: list[FolderSyncState] = []
        moved: list[FolderSyncState] = []

        try:
            folders = await self._prepare_folders(transport, account_id, on_progress)
            total = sum(f.exists for f in folders)

            for folder in folders:
                state = self._db.get_folder_sync_state(account_id, folder.raw_path)
                try:
                    if state is None or state.uidvalidity is None:
                        folder_batch, cursor = await self._fetch_full_folder(
                            transport,
                            account_id,
                            folder,
                            cutoff=cutoff,
                            fetched_before=len(batch),
                            total=total,
                            on_progress=on_progress,
                        )
                    else:
                        folder_batch, cursor = await self._fetch_folder_delta(
                            transport,
                            account_id,
                            folder,
                            state,
                            cutoff=cutoff,
                            fetched_before=len(batch),
                            total=total,
                            on_progress=on_progress,
                        )
                except Exception:
                    logger.exception(
                        "Folder delta sync failed; skipping",
                        extra={"account_id": account_id, "folder": folder.path},
                    )
                    result.failed_folders.append(folder.raw_path)
                    continue
                batch.merge(folder_batch)
                cursors.append(cursor)
                if _cursor_moved(state, cursor):
                    moved.append(cursor)
                result.folders_synced += 1
        finally:
            await transport.close()

        if not len(batch):
            if moved:
                self._commit_folder_cursors(moved)
            logger.info(
                "No new messages",
                extra={"account_id": account_id, "cursors_moved": len(moved)},
            )
            _emit(on_progress, SyncPhase.done, 0, 0)
            return SyncResult(
                messages=[],
                folders_synced=result.folders_synced,
                failed_folders=result.failed_folders,
            )

        result.messages = self._persist(account_id, batch, on_progress)
        self._commit_cursors(account_id, cursors)
        _emit(on_progress, SyncPhase.done, len(result.messages), len(result.messages))
        logger.info(
            "Delta sync complete",
            extra={"account_id": account_id, "messages": len(result.messages)},
        )
        return result

    def _require_account(self, account_id: str) -> AccountRow:
        account = self._db.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    @staticmethod
    def _cutoff(days_back: int) -> int:
        return int(time.time()) - days_back * _SECONDS_PER_DAY

    async def _retry(self, fn: Callable[[], Awaitable[T]]) -> T:
        return await retry_async(
            fn,
            attempts=self._s.sync.retry_attempts,
            base_delay_s=self._retry_base_delay_s,
            jitter_s=self._retry_base_delay_s / 2,
        )

    async def _prepare_folders(
        self,
        transport: MailTransport,
        account_id: str,
        on_progress: ProgressCallback | None,
    ) -> list[ImapFolder]:
        """List folders, drop unsyncable ones and refresh their labels."""
        _emit(on_progress, SyncPhase.folders, 0, 0)
        listed = await self._retry(transport.list_folders)
        folders = get_syncable_folders(listed)
        sync_folders_to_labels(self._db, account_id=account_id, folders=folders)
        logger.info(
            "Folders listed",
            extra={"account_id": account_id, "listed": len(listed), "syncable": len(folders)},
        )
        _emit(on_progress, SyncPhase.folders, len(folders), len(folders))
        return folders

    async def _fetch_full_folder(
        self,
        transport: MailTransport,
        account_id: str,
        folder: ImapFolder,
        *,
        cutoff: int,
        fetched_before: int,
        total: int,
        on_progress: ProgressCallback | None,
    ) -> tuple[_Batch, FolderSyncState]:
        """Fetch every UID of a folder."""
        status = await self._retry(partial(transport.get_folder_status, folder.raw_path))
        uids = await self._retry(partial(transport.search_all_uids, folder.raw_path))
        batch, highest = await self._fetch_uids(
            transport,
            account_id,
            folder,
            uids,
            cutoff=cutoff,
            fetched_before=fetched_before,
            total=total,
            on_progress=on_progress,
        )
        cursor = FolderSyncState(
            account_id=account_id,
            folder_path=folder.raw_path,
            uidvalidity=status.uidvalidity,
            last_uid=highest,
            modseq=status.highest_modseq,
            last_sync_at=int(time.time()),
        )
        return batch, cursor

    async def _fetch_folder_delta(
        self,
        transport: MailTransport,
        account_id: str,
        folder: ImapFolder,
        state: FolderSyncState,
        *,
        cutoff: int,
        fetched_before: int,
        total: int,
        on_progress: ProgressCallback | None,
    ) -> tuple[_Batch, FolderSyncState]:
        """Fetch UIDs above the stored cursor, or everything on UIDVALIDITY change.

        ``cutoff`` only applies when the folder is refetched in full.
        """
        status = await self._retry(partial(transport.get_folder_status, folder.raw_path))
        if status.uidvalidity != state.uidvalidity:
            logger.warning(
                "UIDVALIDITY changed; refetching folder",
                extra={
                    "account_id": account_id,
                    "folder": folder.path,
                    "stored_uidvalidity": state.uidvalidity,
                    "server_uidvalidity": status.uidvalidity,
                },
            )
            return await self._fetch_full_folder(
                transport,
                account_id,
                folder,
                cutoff=cutoff,
                fetched_before=fetched_before,
                total=total,
                on_progress=on_progress,
            )

        uids = await self._retry(
            partial(transport.fetch_new_uids, folder.raw_path, state.last_uid),
        )
        batch, highest = await self._fetch_uids(
            transport,
            account_id,
            folder,
            uids,
            # No date filter above the cursor.
            cutoff=0,
            fetched_before=fetched_before,
            total=total,
            on_progress=on_progress,
        )
        cursor = state.model_copy(
            update={
                "last_uid": max(state.last_uid, highest),
                "modseq": status.highest_modseq,
                "last_sync_at": int(time.time()),
            },
        )
        return batch, cursor

    async def _fetch_uids(
        self,
        transport: MailTransport,
        account_id: str,
        folder: ImapFolder,
        uids: list[int],
        *,
        cutoff: int,
        fetched_before: int,
        total: int,
        on_progress: ProgressCallback | None,
    ) -> tuple[_Batch, int]:
        """Fetch UIDs in batches and translate them.

        Returns:
            Translated messages and the highest UID fetched (0 if none).
        """
        label_id = map_folder_to_label(folder).label_id
        batch = _Batch()
        highest = 0
        size = self._s.sync.batch_size
        ordered = sorted(set(uids))

        for start in range(0, len(ordered), size):
            chunk = ordered[start : start + size]
            fetched = await self._retry(partial(transport.fetch_messages, folder.raw_path, chunk))
            highest = max(highest, chunk[-1])
            if fetched.failed_uids:
                logger.warning(
                    "Skipped unparsable messages",
                    extra={"folder": folder.path, "uids": fetched.failed_uids},
                )

            for msg in fetched.messages:
                # Messages with an unknown date are kept.
                if msg.date and msg.date < cutoff:
                    continue
                translated = to_parsed_message(
                    msg,
                    account_id=account_id,
                    folder_label_id=label_id,
                    snippet_length=self._s.sync.snippet_length,
                )
                batch.parsed_by_id[translated.parsed.id] = translated.parsed
                batch.raw_by_id[translated.parsed.id] = msg
                batch.threadables[translated.parsed.id] = translated.threadable

            current = fetched_before + len(batch)
            _emit(on_progress, SyncPhase.messages, current, max(total, current), folder.path)

        logger.info(
            "Folder fetched",
            extra={
                "account_id": account_id,
                "folder": folder.path,
                "uids": len(ordered),
                "messages": len(batch),
            },
        )
        return batch, highest

    def _persist(
        self,
        account_id: str,
        batch: _Batch,
        on_progress: ProgressCallback | None,
    ) -> list[ParsedMessage]:
        """Thread the accumulated messages once and store them."""
        threadables = list(batch.threadables.values())
        known = load_known_threads(self._db, account_id, threadables)
        groups = build_threads(threadables, known_threads=known)
        _emit(on_progress, SyncPhase.threading, 0, len(groups))

        stored = store_threads_and_messages(
            self._db,
            account_id,
            groups,
            batch.parsed_by_id,
            batch.raw_by_id,
        )
        _emit(on_progress, SyncPhase.threading, len(groups), len(groups))
        return stored

    def _commit_folder_cursors(self, cursors: list[FolderSyncState]) -> None:
        with self._db.transaction():
            for cursor in cursors:
                self._db.upsert_folder_sync_state(cursor)

    def _commit_cursors(self, account_id: str, cursors: list[FolderSyncState]) -> None:
        """Advance folder cursors and the account sync token."""
        with self._db.transaction():
            self._commit_folder_cursors(cursors)
            self._db.update_account_sync_state(
                account_id,
                f"imap-synced-{int(time.time() * 1000)}",
            )


def _cursor_moved(stored: FolderSyncState | None, cursor: FolderSyncState) -> bool:
    """Whether a cursor differs from the stored one in epoch or position."""
    if stored is None:
        return True
    return (stored.uidvalidity, stored.last_uid) != (cursor.uidvalidity, cursor.last_uid)


def _emit(
    on_progress: ProgressCallback | None,
    phase: SyncPhase,
    current: int,
    total: int,
    folder: str | None = None,
) -> None:
    """Invoke the progress callback if one was given."""
    if on_progress is None:
        return
    on_progress(SyncProgress(phase=phase, current=current, total=total, folder=folder))
