"""Tests for the Typer CLI."""

from __future__ import annotations

from pathlib import Path

import pytest
from typer.testing import CliRunner

from mailmirror.cli.app import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def _isolated_storage(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("MAILMIRROR_STORAGE__ROOT_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("MAILMIRROR_LOGGING__JSON_LOGS", "false")


def test_add_account_then_status() -> None:
    """A registered account shows up in the status counts."""
    result = runner.invoke(
        app,
        [
            "add-account",
            "--account-id",
            "acc1",
            "--email",
            "bob@example.com",
            "--host",
            "imap.example.com",
            "--password",
            "secret",
        ],
    )
    assert result.exit_code == 0, result.output
    assert "Account saved: acc1" in result.output

    result = runner.invoke(app, ["status", "--account-id", "acc1"])
    assert result.exit_code == 0, result.output
    assert "accounts:" in result.output


@pytest.mark.parametrize("command", ["sync", "delta", "threads", "status"])
def test_missing_account_exits_with_code_2(command: str) -> None:
    """Commands targeting an unknown account exit with code 2."""
    result = runner.invoke(app, [command, "--account-id", "nope"])
    assert result.exit_code == 2
