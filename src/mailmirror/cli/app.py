"""Typer CLI for the IMAP mail mirror."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from mailmirror.config.settings import AppSettings, load_settings
from mailmirror.models.types import SecurityType, SyncPhase, SyncProgress, SyncSummary
from mailmirror.pipeline.orchestrator import (
    AccountNotFoundError,
    ProgressCallback,
    SyncOrchestrator,
    SyncResult,
    imap_transport_factory,
)
from mailmirror.storage.state_db import StateDb
from mailmirror.utils.logging import configure_logging

logger = logging.getLogger(__name__)

app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help="Mirror IMAP mailboxes into a local sqlite cache with conversation threading.",
)

_ENV_FILE_OPTION = typer.Option(
    default=None,
    exists=True,
    dir_okay=False,
    help="Optional path to a .env file (in addition to environment variables).",
)
_ACCOUNT_OPTION = typer.Option(..., "--account-id", "-a", help="Local account id.")


def load_app_settings(*, env_file: Path | None) -> AppSettings:
    """Load application settings, exiting with code 2 on invalid configuration.

    Args:
        env_file: Optional path to a .env file to load in addition to environment variables.

    Returns:
        Validated application settings.
    """
    try:
        return load_settings(env_file=env_file)
    except ValidationError as exc:
        typer.echo(f"Invalid configuration:\n{exc}", err=True)
        raise typer.Exit(code=2) from None


@contextmanager
def open_db(settings: AppSettings) -> Iterator[StateDb]:
    """Open the state database, creating its directory and schema."""
    settings.storage.sqlite_path.parent.mkdir(parents=True, exist_ok=True)
    db = StateDb(sqlite_path=settings.storage.sqlite_path)
    try:
        db.init_schema()
        yield db
    finally:
        db.close()


@contextmanager
def _progress_reporter(console: Console) -> Iterator[ProgressCallback]:
    """Render orchestrator progress events as a single Rich progress bar."""
    progress = Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TaskProgressColumn(),
        TimeElapsedColumn(),
        console=console,
        expand=True,
    )
    task = progress.add_task("[bold magenta]Listing folders", total=None)

    def _on_progress(event: SyncProgress) -> None:
        match event.phase:
            case SyncPhase.folders:
                description = "[bold magenta]Listing folders"
            case SyncPhase.messages:
                description = f"[cyan]Fetching {event.folder or ''}"
            case SyncPhase.threading:
                description = "[bold yellow]Threading"
            case _:
                description = "[bold green]Done"
        progress.update(
            task,
            description=description,
            completed=event.current,
            total=event.total or None,
        )

    with progress:
        yield _on_progress


def _print_result(console: Console, result: SyncResult) -> None:
    """Print the outcome of a sync run."""
    threads = {m.thread_id for m in result.messages}
    console.print(
        f"[green]✔[/green] Stored {len(result.messages)} messages in {len(threads)} threads "
        f"from {result.folders_synced} folders",
    )
    for folder in result.failed_folders:
        console.print(f"[yellow]⚠[/yellow] Folder failed: {folder}")


def _run_sync(settings: AppSettings, account_id: str, *, days_back: int | None, delta: bool) -> None:
    """Run an initial or delta sync for one account."""
    console = Console()
    console.print(f"  [dim]Database:[/dim] {settings.storage.sqlite_path}")
    with open_db(settings) as db:
        orchestrator = SyncOrchestrator(
            db=db,
            transport_factory=imap_transport_factory(settings),
            settings=settings,
        )
        try:
            with _progress_reporter(console) as on_progress:
                if delta:
                    result = asyncio.run(
                        orchestrator.delta_sync(account_id, on_progress=on_progress),
                    )
                else:
                    result = asyncio.run(
                        orchestrator.initial_sync(
                            account_id,
                            days_back=days_back,
                            on_progress=on_progress,
                        ),
                    )
        except AccountNotFoundError as exc:
            typer.echo(str(exc), err=True)
            raise typer.Exit(code=2) from None
        except KeyboardInterrupt:
            raise typer.Exit(code=130) from None
    _print_result(console, result)


@app.command("add-account")
def add_account_cmd(
    *,
    account_id: str = _ACCOUNT_OPTION,
    email: str = typer.Option(..., help="Mailbox address."),
    host: str = typer.Option(..., help="IMAP server host."),
    port: int | None = typer.Option(default=None, help="IMAP port (993 for TLS, 143 otherwise)."),
    security: SecurityType = typer.Option(default=SecurityType.tls, help="Connection security."),
    username: str | None = typer.Option(default=None, help="Login name (defaults to the email)."),
    password: str = typer.Option(..., prompt=True, hide_input=True, help="IMAP password."),
    env_file: Path | None = _ENV_FILE_OPTION,
) -> None:
    """Register or update an IMAP account.

    Args:
        account_id: Local account id.
        email: Mailbox address.
        host: IMAP server host.
        port: IMAP port.
        security: Connection security.
        username: Login name.
        password: IMAP password.
        env_file: Optional path to a .env file to load configuration from.
    """
    settings = load_app_settings(env_file=env_file)
    configure_logging(settings=settings.logging)
    with open_db(settings) as db:
        try:
            account = db.upsert_account(
                account_id=account_id,
                email=email,
                imap_host=host,
                imap_port=port,
                imap_security=security.value,
                imap_username=username,
                imap_password=password,
            )
        except ValidationError as exc:
            typer.echo(f"Invalid account:\n{exc}", err=True)
            raise typer.Exit(code=2) from None
    typer.echo(f"Account saved: {account.id} <{account.email}>")


@app.command("sync")
def sync_cmd(
    *,
    account_id: str = _ACCOUNT_OPTION,
    days_back: int | None = typer.Option(
        default=None,
        min=1,
        help="Only keep messages from the last N days (defaults to MAILMIRROR_SYNC__DAYS_BACK).",
    ),
    env_file: Path | None = _ENV_FILE_OPTION,
) -> None:
    """Run a full initial sync of every folder.

    Args:
        account_id: Local account id.
        days_back: Age limit in days.
        env_file: Optional path to a .env file to load configuration from.
    """
    settings = load_app_settings(env_file=env_file)
    configure_logging(settings=settings.logging)
    _run_sync(settings, account_id, days_back=days_back, delta=False)


@app.command("delta")
def delta_cmd(
    *,
    account_id: str = _ACCOUNT_OPTION,
    env_file: Path | None = _ENV_FILE_OPTION,
) -> None:
    """Fetch only messages that arrived since the last sync.

    Args:
        account_id: Local account id.
        env_file: Optional path to a .env file to load configuration from.
    """
    settings = load_app_settings(env_file=env_file)
    configure_logging(settings=settings.logging)
    _run_sync(settings, account_id, days_back=None, delta=True)


@app.command("status")
def status_cmd(
    *,
    account_id: str | None = typer.Option(None, "--account-id", "-a", help="Local account id."),
    env_file: Path | None = _ENV_FILE_OPTION,
) -> None:
    """Show folder sync cursors and row counts.

    Args:
        account_id: Restrict output to one account.
        env_file: Optional path to a .env file to load configuration from.
    """
    settings = load_app_settings(env_file=env_file)
    console = Console()
    with open_db(settings) as db:
        if account_id is not None and db.get_account(account_id) is None:
            typer.echo(f"Account not found: {account_id}", err=True)
            raise typer.Exit(code=2)

        summary = SyncSummary(
            created_at=datetime.now(tz=UTC),
            sqlite_path=str(settings.storage.sqlite_path),
            counts=db.counts_by_table(account_id),
        )
        states = db.get_all_folder_sync_states(account_id) if account_id is not None else []

    console.print(f"[bold blue]{summary.sqlite_path}[/bold blue]")
    for table, count in summary.counts.items():
        console.print(f"  [dim]{table}:[/dim] [bold]{count}[/bold]")

    if states:
        table = Table("Folder", "UIDVALIDITY", "Last UID", "Last sync")
        for state in states:
            last_sync = (
                datetime.fromtimestamp(state.last_sync_at, tz=UTC).isoformat(timespec="seconds")
                if state.last_sync_at
                else "-"
            )
            table.add_row(
                state.folder_path,
                str(state.uidvalidity) if state.uidvalidity is not None else "-",
                str(state.last_uid),
                last_sync,
            )
        console.print(table)


@app.command("threads")
def threads_cmd(
    *,
    account_id: str = _ACCOUNT_OPTION,
    limit: int = typer.Option(default=20, min=1, help="Number of threads to show."),
    env_file: Path | None = _ENV_FILE_OPTION,
) -> None:
    """List the most recent threads of an account.

    Args:
        account_id: Local account id.
        limit: Number of threads to show.
        env_file: Optional path to a .env file to load configuration from.
    """
    settings = load_app_settings(env_file=env_file)
    with open_db(settings) as db:
        if db.get_account(account_id) is None:
            typer.echo(f"Account not found: {account_id}", err=True)
            raise typer.Exit(code=2)
        threads = db.list_threads(account_id, limit=limit)

    table = Table("Last message", "Msgs", "Subject", "Labels")
    for thread in threads:
        table.add_row(
            datetime.fromtimestamp(thread.last_message_at, tz=UTC).strftime("%Y-%m-%d %H:%M"),
            str(thread.message_count),
            thread.subject or "(no subject)",
            ", ".join(thread.label_ids),
            style=None if thread.is_read else "bold",
        )
    Console().print(table)
