"""Shared pytest fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from factories import FakeTransport

from mailmirror.config.settings import AppSettings, StorageSettings, SyncSettings
from mailmirror.models.state import AccountRow
from mailmirror.storage.state_db import StateDb


@pytest.fixture
def db(tmp_path: Path) -> Iterator[StateDb]:
    """Initialized state database in a temporary directory."""
    state = StateDb(sqlite_path=tmp_path / "state.sqlite3")
    state.init_schema()
    yield state
    state.close()


@pytest.fixture
def account(db: StateDb) -> AccountRow:
    """Registered IMAP account ``acc1``."""
    return db.upsert_account(
        account_id="acc1",
        email="bob@example.com",
        imap_host="imap.example.com",
        imap_port=993,
        imap_security="ssl",
        imap_username=None,
        imap_password="secret",
    )


@pytest.fixture
def settings(tmp_path: Path) -> AppSettings:
    """Settings with small batches and no transport retries."""
    return AppSettings(
        storage=StorageSettings(root_dir=tmp_path),
        sync=SyncSettings(batch_size=2, retry_attempts=1),
    )


@pytest.fixture
def transport() -> FakeTransport:
    """Empty in-memory transport."""
    return FakeTransport()
