"""Tests for initial and delta sync orchestration."""

from __future__ import annotations

import logging

import pytest
from factories import DAY, NOW, FakeTransport, imap_message

from mailmirror.config.settings import AppSettings
from mailmirror.models.state import AccountRow
from mailmirror.models.types import SyncPhase, SyncProgress
from mailmirror.pipeline.orchestrator import (
    AccountNotFoundError,
    SyncOrchestrator,
    retry_async,
)
from mailmirror.storage.state_db import StateDb


def _orchestrator(db: StateDb, transport: FakeTransport, settings: AppSettings) -> SyncOrchestrator:
    return SyncOrchestrator(
        db=db,
        transport_factory=lambda _account: transport,
        settings=settings,
        retry_base_delay_s=0,
    )


def _seed_mailbox(transport: FakeTransport) -> None:
    transport.add_folder("INBOX", uidvalidity=100)
    transport.add_folder("Sent Messages", uidvalidity=200)
    transport.add_folder("Projects/Alpha", uidvalidity=300)
    transport.add_folder("[Gmail]")
    transport.add_message(imap_message(1, "INBOX", message_id="<a@x>", subject="Plan"))
    transport.add_message(imap_message(2, "INBOX", message_id="<b@x>", in_reply_to="<a@x>", is_read=False))
    transport.add_message(imap_message(3, "INBOX", message_id="<solo@x>", subject="Other"))
    transport.add_message(
        imap_message(5, "Sent Messages", message_id="<c@x>", references="<a@x> <b@x>"),
    )
    transport.add_message(imap_message(1, "Projects/Alpha", message_id="<p@x>", subject="Alpha"))


@pytest.mark.asyncio
async def test_initial_sync_threads_across_folders(
    db: StateDb,
    account: AccountRow,
    transport: FakeTransport,
    settings: AppSettings,
) -> None:
    """Full sync stores all messages, threads across folders and records cursors."""
    _seed_mailbox(transport)
    events: list[SyncProgress] = []

    result = await _orchestrator(db, transport, settings).initial_sync(
        account.id,
        on_progress=events.append,
    )

    assert len(result.messages) == 5
    assert result.failed_folders == []
    assert len({m.thread_id for m in result.messages}) == 3
    conversation = {m.id: m.thread_id for m in result.messages}
    assert (
        conversation["imap-acc1-INBOX-1"]
        == conversation["imap-acc1-INBOX-2"]
        == conversation["imap-acc1-Sent Messages-5"]
    )

    thread = db.get_thread("acc1", conversation["imap-acc1-INBOX-1"])
    assert thread is not None
    assert thread.message_count == 3
    assert thread.subject == "Plan"
    assert thread.label_ids == ["INBOX", "SENT", "UNREAD"]

    labels = {label.id for label in db.get_labels("acc1")}
    assert labels == {"INBOX", "SENT", "folder-Projects/Alpha", "UNREAD"}

    states = {s.folder_path: s for s in db.get_all_folder_sync_states("acc1")}
    assert set(states) == {"INBOX", "Sent Messages", "Projects/Alpha"}
    assert (states["INBOX"].uidvalidity, states["INBOX"].last_uid) == (100, 3)
    assert (states["Sent Messages"].uidvalidity, states["Sent Messages"].last_uid) == (200, 5)

    stored_account = db.get_account("acc1")
    assert stored_account is not None
    assert stored_account.history_id is not None
    assert stored_account.history_id.startswith("imap-synced-")

    phases = [e.phase for e in events]
    assert phases[0] == SyncPhase.folders
    assert phases[-1] == SyncPhase.done
    assert {SyncPhase.messages, SyncPhase.threading} <= set(phases)
    assert all(e.folder for e in events if e.phase == SyncPhase.messages)
    assert transport.closed == 1
    # batch_size=2 splits INBOX into two fetches.
    assert [uids for folder, uids in transport.fetch_calls if folder == "INBOX"] == [(1, 2), (3,)]


@pytest.mark.asyncio
async def test_initial_sync_is_idempotent(
    db: StateDb,
    account: AccountRow,
    transport: FakeTransport,
    settings: AppSettings,
) -> None:
    """Running the initial sync twice leaves the same rows."""
    _seed_mailbox(transport)
    orchestrator = _orchestrator(db, transport, settings)

    await orchestrator.initial_sync(account.id)
    before = db.counts_by_table("acc1")
    await orchestrator.initial_sync(account.id)
    assert db.counts_by_table("acc1") == before


@pytest.mark.asyncio
async def test_initial_sync_respects_days_back(
    db: StateDb,
    account: AccountRow,
    transport: FakeTransport,
    settings: AppSettings,
) -> None:
    """Messages older than the window are not stored, but the cursor still advances."""
    transport.add_folder("INBOX")
    transport.add_message(imap_message(1, message_id="<old@x>", date=NOW - 30 * DAY))
    transport.add_message(imap_message(2, message_id="<new@x>", date=NOW - DAY))

    result = await _orchestrator(db, transport, settings).initial_sync(account.id, days_back=7)

    assert [m.id for m in result.messages] == ["imap-acc1-INBOX-2"]
    state = db.get_folder_sync_state("acc1", "INBOX")
    assert state is not None
    assert state.last_uid == 2


@pytest.mark.asyncio
async def test_initial_sync_honors_zero_days_back(
    db: StateDb,
    account: AccountRow,
    transport: FakeTransport,
    settings: AppSettings,
) -> None:
    """An explicit zero-day window keeps only undated messages instead of using the default."""
    transport.add_folder("INBOX")
    transport.add_message(imap_message(1, message_id="<yesterday@x>", date=NOW - DAY))
    transport.add_message(imap_message(2, message_id="<undated@x>", date=0))

    result = await _orchestrator(db, transport, settings).initial_sync(account.id, days_back=0)

    assert [m.id for m in result.messages] == ["imap-acc1-INBOX-2"]
    assert db.get_message("acc1", "imap-acc1-INBOX-1") is None


@pytest.mark.asyncio
async def test_delta_without_changes_is_a_no_op(
    db: StateDb,
    account: AccountRow,
    transport: FakeTransport,
    settings: AppSettings,
) -> None:
    """Delta with nothing new returns no messages and writes nothing."""
    _seed_mailbox(transport)
    orchestrator = _orchestrator(db, transport, settings)
    await orchestrator.initial_sync(account.id)
    before = db.counts_by_table("acc1")
    states = db.get_all_folder_sync_states("acc1")
    token = db.get_account("acc1").history_id  # type: ignore[union-attr]
    transport.fetch_calls.clear()

    result = await orchestrator.delta_sync(account.id)

    assert result.messages == []
    assert transport.fetch_calls == []
    assert db.counts_by_table("acc1") == before
    assert db.get_all_folder_sync_states("acc1") == states
    assert db.get_account("acc1").history_id == token  # type: ignore[union-attr]


@pytest.mark.asyncio
async def test_delta_fetches_only_new_messages(
    db: StateDb,
    account: AccountRow,
    transport: FakeTransport,
    settings: AppSettings,
) -> None:
    """New UIDs are fetched and join their existing thread."""
    _seed_mailbox(transport)
    orchestrator = _orchestrator(db, transport, settings)
    initial = await orchestrator.initial_sync(account.id)
    thread_id = {m.id: m.thread_id for m in initial.messages}["imap-acc1-INBOX-1"]
    transport.fetch_calls.clear()

    transport.add_message(
        imap_message(7, "INBOX", message_id="<d@x>", in_reply_to="<c@x>", snippet="newest", date=NOW),
    )
    result = await orchestrator.delta_sync(account.id)

    assert [m.id for m in result.messages] == ["imap-acc1-INBOX-7"]
    assert result.messages[0].thread_id == thread_id
    assert transport.fetch_calls == [("INBOX", (7,))]

    thread = db.get_thread("acc1", thread_id)
    assert thread is not None
    assert thread.message_count == 4
    assert thread.snippet == "newest"

    state = db.get_folder_sync_state("acc1", "INBOX")
    assert state is not None
    assert (state.uidvalidity, state.last_uid) == (100, 7)


@pytest.mark.asyncio
async def test_delta_stores_new_messages_with_old_dates(
    db: StateDb,
    account: AccountRow,
    transport: FakeTransport,
    settings: AppSettings,
) -> None:
    """UIDs above the cursor are stored whatever their Date header says."""
    transport.add_folder("INBOX")
    transport.add_message(imap_message(1, message_id="<first@x>"))
    orchestrator = _orchestrator(db, transport, settings)
    await orchestrator.initial_sync(account.id)

    # A message moved into the folder today can carry a Date from years ago.
    transport.add_message(imap_message(2, message_id="<archived@x>", date=NOW - 730 * DAY))
    transport.add_message(imap_message(3, message_id="<recent@x>", date=NOW))
    result = await orchestrator.delta_sync(account.id)

    assert sorted(m.id for m in result.messages) == ["imap-acc1-INBOX-2", "imap-acc1-INBOX-3"]
    assert db.get_message("acc1", "imap-acc1-INBOX-2") is not None
    state = db.get_folder_sync_state("acc1", "INBOX")
    assert state is not None
    assert state.last_uid == 3


@pytest.mark.asyncio
async def test_delta_refetches_folder_on_uidvalidity_change(
    db: StateDb,
    account: AccountRow,
    transport: FakeTransport,
    settings: AppSettings,
    caplog: pytest.LogCaptureFixture,
) -> None:
    """A changed UIDVALIDITY triggers a full refetch of that folder only."""
    _seed_mailbox(transport)
    orchestrator = _orchestrator(db, transport, settings)
    await orchestrator.initial_sync(account.id)
    transport.fetch_calls.clear()
    transport.renumber("INBOX", uidvalidity=101, offset=10)

    with caplog.at_level(logging.WARNING, logger="mailmirror.pipeline.orchestrator"):
        result = await orchestrator.delta_sync(account.id)

    assert "UIDVALIDITY changed" in caplog.text
    assert sorted(m.id for m in result.messages) == [
        "imap-acc1-INBOX-11",
        "imap-acc1-INBOX-12",
        "imap-acc1-INBOX-13",
    ]
    assert {folder for folder, _ in transport.fetch_calls} == {"INBOX"}

    state = db.get_folder_sync_state("acc1", "INBOX")
    assert state is not None
    assert (state.uidvalidity, state.last_uid) == (101, 13)


@pytest.mark.asyncio
async def test_delta_records_new_uidvalidity_when_refetch_stores_nothing(
    db: StateDb,
    account: AccountRow,
    transport: FakeTransport,
    settings: AppSettings,
) -> None:
    """The new epoch is saved even when every refetched message is outside the window."""
    transport.add_folder("Old", uidvalidity=5)
    transport.add_message(imap_message(1, "Old", message_id="<ancient@x>", date=NOW - 400 * DAY))
    orchestrator = _orchestrator(db, transport, settings)
    await orchestrator.initial_sync(account.id)
    token = db.get_account("acc1").history_id  # type: ignore[union-attr]
    transport.renumber("Old", uidvalidity=6, offset=10)

    result = await orchestrator.delta_sync(account.id)

    assert result.messages == []
    assert db.counts_by_table("acc1")["messages"] == 0
    state = db.get_folder_sync_state("acc1", "Old")
    assert state is not None
    assert (state.uidvalidity, state.last_uid) == (6, 11)
    assert db.get_account("acc1").history_id == token  # type: ignore[union-attr]

    transport.fetch_calls.clear()
    await orchestrator.delta_sync(account.id)
    assert transport.fetch_calls == []


@pytest.mark.asyncio
async def test_delta_picks_up_new_folder(
    db: StateDb,
    account: AccountRow,
    transport: FakeTransport,
    settings: AppSettings,
) -> None:
    """A folder without a cursor is fetched in full during delta."""
    _seed_mailbox(transport)
    orchestrator = _orchestrator(db, transport, settings)
    await orchestrator.initial_sync(account.id)

    transport.add_folder("Receipts", uidvalidity=9)
    transport.add_message(imap_message(1, "Receipts", message_id="<r@x>"))
    result = await orchestrator.delta_sync(account.id)

    assert [m.id for m in result.messages] == ["imap-acc1-Receipts-1"]
    assert result.messages[0].label_ids == ["folder-Receipts"]
    state = db.get_folder_sync_state("acc1", "Receipts")
    assert state is not None
    assert (state.uidvalidity, state.last_uid) == (9, 1)


@pytest.mark.asyncio
async def test_folder_error_is_isolated(
    db: StateDb,
    account: AccountRow,
    transport: FakeTransport,
    settings: AppSettings,
) -> None:
    """A failing folder is skipped and the rest of the account still syncs."""
    _seed_mailbox(transport)
    transport.failing.add("Projects/Alpha")

    result = await _orchestrator(db, transport, settings).initial_sync(account.id)

    assert result.failed_folders == ["Projects/Alpha"]
    assert len(result.messages) == 4
    assert db.get_folder_sync_state("acc1", "Projects/Alpha") is None


@pytest.mark.asyncio
async def test_unknown_account_fails_before_fetching(
    db: StateDb,
    settings: AppSettings,
) -> None:
    """A missing account raises without building a transport."""
    built: list[AccountRow] = []

    def _factory(account: AccountRow) -> FakeTransport:
        built.append(account)
        return FakeTransport()

    orchestrator = SyncOrchestrator(db=db, transport_factory=_factory, settings=settings)
    with pytest.raises(AccountNotFoundError):
        await orchestrator.initial_sync("nope")
    with pytest.raises(AccountNotFoundError):
        await orchestrator.delta_sync("nope")
    assert built == []


@pytest.mark.asyncio
async def test_retry_async_retries_then_succeeds() -> None:
    """retry_async retries failures until an attempt succeeds."""
    calls = 0

    async def _flaky() -> str:
        nonlocal calls
        calls += 1
        if calls < 3:
            raise OSError("reset")
        return "ok"

    assert await retry_async(_flaky, attempts=3, base_delay_s=0, jitter_s=0) == "ok"
    assert calls == 3


@pytest.mark.asyncio
async def test_retry_async_reraises_last_error() -> None:
    """retry_async gives up after the configured attempts."""

    async def _broken() -> None:
        raise TimeoutError("slow")

    with pytest.raises(TimeoutError):
        await retry_async(_broken, attempts=2, base_delay_s=0, jitter_s=0)
