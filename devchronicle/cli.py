"""CLI entry point for devchronicle."""

from __future__ import annotations

import logging
import signal
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date
from pathlib import Path

import anthropic
import typer
from rich import print as rprint
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from devchronicle.activity import ActivityLog, read_activity_log
from devchronicle.config import ACTIVITY_LOG_NAME, Config
from devchronicle.diary.manifest import ManifestOptions
from devchronicle.diary.sync import DiarySynchronizer
from devchronicle.errors import DevChronicleError, InvalidStatusTransition
from devchronicle.mining.orchestrator import MiningMode, MiningOrchestrator
from devchronicle.models import AuthorFilter, OperationOutcome, OutcomeStatus, RefScope, Session
from devchronicle.storage.db import get_connection
from devchronicle.storage.repository import Repository
from devchronicle.summarize.summarizer import DaySummarizer

app = typer.Typer(help="Turn local git history into a reviewed developer diary.")
session_app = typer.Typer(help="Create and inspect mining sessions.")
diary_app = typer.Typer(help="Create and synchronize managed diary documents.")
app.add_typer(session_app, name="session")
app.add_typer(diary_app, name="diary")

DB_PATH_HELP = "Database file path (default: DEVCHRONICLE_DB_PATH or devchronicle.db)"


def setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    setup_logging(verbose)


def _load_config() -> Config:
    config = Config.load()
    issues = config.validate()
    if issues:
        for issue in issues:
            rprint(f"[red]Config error: {issue}[/red]")
        raise typer.Exit(1)
    return config


def _connect(config: Config, db_path: str | None) -> sqlite3.Connection:
    db = Path(db_path) if db_path else config.db_path
    if not db.exists():
        rprint(f"[red]Database not found at {db}. Run 'devchronicle init' first.[/red]")
        raise typer.Exit(1)
    return get_connection(db)


def _activity(config: Config, db_path: str | None) -> ActivityLog:
    if db_path and config.log_path is None:
        return ActivityLog(Path(db_path).parent / ACTIVITY_LOG_NAME)
    return ActivityLog(config.activity_log_path)


@contextmanager
def _cancel_on_interrupt() -> Iterator[threading.Event]:
    """Turn Ctrl+C into a cooperative cancellation signal for the block."""
    cancel = threading.Event()

    def handler(signum, frame):
        rprint("\n[yellow]Canceling...[/yellow]")
        cancel.set()

    previous = signal.signal(signal.SIGINT, handler)
    try:
        yield cancel
    finally:
        signal.signal(signal.SIGINT, previous)


def _parse_day(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        rprint(f"[red]Invalid date {value!r}, expected YYYY-MM-DD[/red]")
        raise typer.Exit(1)


def _report_outcome(outcome: OperationOutcome, label: str) -> None:
    if outcome.status is OutcomeStatus.CANCELED:
        rprint(f"[yellow]{label} canceled. Nothing was changed.[/yellow]")
        raise typer.Exit(130)
    if outcome.status is OutcomeStatus.FAILED:
        rprint(f"[red]{label} failed: {outcome.reason}[/red]")
        command = outcome.detail.get("command")
        if command:
            rprint(f"  Command: {' '.join(command)}")
        raise typer.Exit(1)


def _write_env(project_dir: Path, db_path: str, anthropic_key: str) -> None:
    """Write or update .env file with devchronicle settings."""
    env_path = project_dir / ".env"
    lines: list[str] = [f"DEVCHRONICLE_DB_PATH={db_path}"]
    if anthropic_key:
        lines.append(f"ANTHROPIC_API_KEY={anthropic_key}")

    our_keys = {"DEVCHRONICLE_DB_PATH", "ANTHROPIC_API_KEY"}
    if env_path.exists():
        for line in env_path.read_text().splitlines():
            key = line.split("=")[0].strip()
            if key and key not in our_keys:
                lines.append(line)

    env_path.write_text("\n".join(lines) + "\n")
    rprint(f"Settings saved to {env_path}")


def _update_gitignore(project_dir: Path, db_path: str) -> None:
    """Ensure .gitignore includes devchronicle files that shouldn't be committed."""
    gitignore_path = project_dir / ".gitignore"
    entries_to_add = [db_path, ".env", "*.bak"]

    existing_lines: set[str] = set()
    if gitignore_path.exists():
        existing_lines = set(gitignore_path.read_text().splitlines())

    new_entries = [e for e in entries_to_add if e not in existing_lines]
    if new_entries:
        with open(gitignore_path, "a") as f:
            if existing_lines and not gitignore_path.read_text().endswith("\n"):
                f.write("\n")
            f.write("\n# devchronicle\n")
            for entry in new_entries:
                f.write(f"{entry}\n")
        rprint(f"Added {', '.join(new_entries)} to .gitignore")


@app.command()
def init(
    db_path: str = typer.Option("devchronicle.db", help="Database file to create"),
    anthropic_key: str = typer.Option(
        "", "--anthropic-key", help="Anthropic API key (omit for offline summaries)"
    ),
) -> None:
    """Initialize devchronicle in the current directory.

    Creates the evidence database, saves settings to .env and keeps both
    out of version control.
    """
    project_dir = Path.cwd()
    _write_env(project_dir, db_path, anthropic_key or "")
    _update_gitignore(project_dir, db_path)
    get_connection(project_dir / db_path).close()

    rprint("\n[green bold]devchronicle initialized[/green bold]")
    rprint("\nNext steps:")
    rprint("  1. Run [bold]devchronicle session create NAME REPO_PATH[/bold]")
    rprint("  2. Run [bold]devchronicle mine SESSION_ID[/bold] to collect commit evidence")
    rprint("  3. Run [bold]devchronicle summarize SESSION_ID[/bold], then [bold]devchronicle diary create[/bold]")


# Sessions


@session_app.command("create")
def session_create(
    name: str = typer.Argument(help="Session name"),
    repo_path: Path = typer.Argument(help="Path to a local git working copy"),
    author: list[str] = typer.Option(
        [], "--author", "-a", help='Author filter, "Name <email>" (repeatable; any match counts)'
    ),
    merges: bool = typer.Option(False, "--merges/--no-merges", help="Include merge commits"),
    refs: RefScope = typer.Option(RefScope.LOCAL, help="Which refs to walk"),
    since: str = typer.Option(None, help="First day to include (YYYY-MM-DD)"),
    until: str = typer.Option(None, help="Last day to include (YYYY-MM-DD)"),
    tz: str = typer.Option("", "--timezone", help="IANA timezone for day boundaries (default: local)"),
    max_bullets: int = typer.Option(None, help="Max bullets per day summary"),
    db_path: str = typer.Option(None, help=DB_PATH_HELP),
) -> None:
    """Create a mining session for one repository."""
    config = _load_config()
    session = Session(
        id=None,
        name=name,
        repo_path=str(repo_path.expanduser().resolve()),
        author_filters=[AuthorFilter.parse(a) for a in author],
        include_merges=merges,
        ref_scope=refs,
        range_start=_parse_day(since),
        range_end=_parse_day(until),
        timezone=tz,
        max_bullets=max_bullets or config.max_bullets,
    )
    if session.range_start and session.range_end and session.range_end < session.range_start:
        rprint("[red]--until must not be before --since[/red]")
        raise typer.Exit(1)

    conn = _connect(config, db_path)
    try:
        session_id = Repository(conn).create_session(session)
        rprint(f"[green]Created session {session_id}[/green] ({name}, {session.repo_path})")
    finally:
        conn.close()


@session_app.command("list")
def session_list(db_path: str = typer.Option(None, help=DB_PATH_HELP)) -> None:
    """List mining sessions."""
    conn = _connect(_load_config(), db_path)
    try:
        sessions = Repository(conn).list_sessions()
    finally:
        conn.close()
    if not sessions:
        rprint("[yellow]No sessions yet. Create one with 'devchronicle session create'.[/yellow]")
        return

    table = Table(title="Sessions")
    table.add_column("ID", justify="right", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Repository")
    table.add_column("Range")
    table.add_column("Refs")
    for s in sessions:
        table.add_row(
            str(s.id),
            s.name,
            s.repo_path,
            f"{s.range_start or '...'} to {s.range_end or '...'}",
            s.ref_scope.value,
        )
    rprint(table)


@session_app.command("show")
def session_show(
    session_id: int = typer.Argument(help="Session ID"),
    db_path: str = typer.Option(None, help=DB_PATH_HELP),
) -> None:
    """Show a session's mining contract."""
    conn = _connect(_load_config(), db_path)
    try:
        repo_store = Repository(conn)
        session = repo_store.get_session(session_id)
        if session is None:
            rprint(f"[red]Session {session_id} not found[/red]")
            raise typer.Exit(1)

        rprint(f"[bold]Session {session.id}: {session.name}[/bold]")
        rprint(f"  Repository: {session.repo_path}")
        authors = ", ".join(f"{a.name} <{a.email}>".strip() for a in session.author_filters)
        rprint(f"  Authors:    {authors or 'everyone'}")
        rprint(f"  Range:      {session.range_start or 'beginning'} to {session.range_end or 'now'}")
        rprint(f"  Refs:       {session.ref_scope.value}, merges {'included' if session.include_merges else 'excluded'}")
        rprint(f"  Timezone:   {session.timezone or 'local'}")
        rprint(f"  Bullets:    up to {session.max_bullets} per day")
        days = repo_store.get_days(session_id)
        rprint(f"  Days mined: {len(days)}, commits: {sum(d.commit_count for d in days)}")
    finally:
        conn.close()


# Mining and review


@app.command()
def mine(
    session_id: int = typer.Argument(help="Session ID"),
    mode: MiningMode = typer.Option(MiningMode.INCREMENTAL, help="Mining procedure"),
    db_path: str = typer.Option(None, help=DB_PATH_HELP),
) -> None:
    """Collect commit evidence for a session from its repository."""
    config = _load_config()
    conn = _connect(config, db_path)
    orchestrator = MiningOrchestrator(Repository(conn), activity=_activity(config, db_path))

    try:
        with _cancel_on_interrupt() as cancel, Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
        ) as progress:
            progress.add_task(f"Mining session {session_id} ({mode.value})...", total=None)
            outcome = orchestrator.mine(session_id, mode, cancel)
    finally:
        conn.close()

    _report_outcome(outcome, "Mining")
    detail = outcome.detail
    rprint(
        f"Enumerated [bold]{detail['enumerated_commits']}[/bold] commits, "
        f"stored [bold]{detail['stored_commits']}[/bold] new"
    )
    rprint(f"  Days touched: {len(detail['days'])}")
    if detail["downgraded_days"]:
        rprint(
            f"  [yellow]Evidence changed for {', '.join(detail['downgraded_days'])}; "
            "those days need summarizing again[/yellow]"
        )
    if detail["deleted"]:
        rprint(f"  Deleted before mining: {detail['deleted']}")


@app.command()
def days(
    session_id: int = typer.Argument(help="Session ID"),
    since: str = typer.Option(None, help="First day to show (YYYY-MM-DD)"),
    until: str = typer.Option(None, help="Last day to show (YYYY-MM-DD)"),
    db_path: str = typer.Option(None, help=DB_PATH_HELP),
) -> None:
    """Show mined days with their status and latest summary."""
    start, end = _parse_day(since), _parse_day(until)
    conn = _connect(_load_config(), db_path)
    try:
        repo_store = Repository(conn)
        day_rows = repo_store.get_days(session_id, start, end)
        summaries = repo_store.get_latest_summaries([session_id], start, end)
    finally:
        conn.close()
    if not day_rows:
        rprint("[yellow]No mined days in range.[/yellow]")
        return

    for d in day_rows:
        rprint(
            f"[bold]{d.day.isoformat()}[/bold] ({d.status.value}) "
            f"{d.commit_count} commits, +{d.additions}/-{d.deletions}"
        )
        summary = summaries.get((session_id, d.day))
        if summary:
            for line in summary.bullets_text.splitlines():
                rprint(f"    {line}")


@app.command()
def summarize(
    session_id: int = typer.Argument(help="Session ID"),
    day: list[str] = typer.Option([], "--day", "-d", help="Day to summarize (repeatable; default: all mined days)"),
    offline: bool = typer.Option(False, help="Summarize without calling Claude"),
    db_path: str = typer.Option(None, help=DB_PATH_HELP),
) -> None:
    """Summarize mined days into diary bullets."""
    config = _load_config()
    selected = [_parse_day(d) for d in day] or None

    client = None
    if not offline:
        if not config.anthropic_api_key:
            rprint("[yellow]ANTHROPIC_API_KEY not set, using offline summaries[/yellow]")
        else:
            client = anthropic.Anthropic(api_key=config.anthropic_api_key)

    conn = _connect(config, db_path)
    summarizer = DaySummarizer(
        Repository(conn),
        client=client,
        model=config.model,
        activity=_activity(config, db_path),
    )
    try:
        with _cancel_on_interrupt() as cancel, Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
        ) as progress:
            progress.add_task(f"Summarizing session {session_id}...", total=None)
            outcome = summarizer.summarize_session(session_id, selected, cancel)
    finally:
        conn.close()

    _report_outcome(outcome, "Summarization")
    detail = outcome.detail
    rprint(f"Summarized [bold]{len(detail['summarized_days'])}[/bold] day(s)")
    if detail["truncated_days"]:
        rprint(f"  [yellow]Output truncated for {', '.join(detail['truncated_days'])}[/yellow]")
    if detail["failed_days"]:
        rprint(f"  [red]Failed: {', '.join(detail['failed_days'])}[/red]")
        raise typer.Exit(1)


@app.command()
def approve(
    session_id: int = typer.Argument(help="Session ID"),
    day: list[str] = typer.Argument(help="Day(s) to approve (YYYY-MM-DD)"),
    db_path: str = typer.Option(None, help=DB_PATH_HELP),
) -> None:
    """Mark summarized days as reviewed."""
    conn = _connect(_load_config(), db_path)
    repo_store = Repository(conn)
    try:
        for value in day:
            try:
                repo_store.approve_day(session_id, _parse_day(value))
            except InvalidStatusTransition as e:
                rprint(f"[red]{e}[/red]")
                raise typer.Exit(1)
            rprint(f"[green]Approved {value}[/green]")
    finally:
        conn.close()


# Diary documents


def _diary_options(show_paths: bool, placeholders: bool) -> ManifestOptions:
    return ManifestOptions(hide_local_paths=not show_paths, include_placeholders=placeholders)


def _print_diff(detail: dict) -> None:
    rprint(
        f"  {detail['new']} new, {detail['updated']} updated, "
        f"{detail['unchanged']} unchanged, {detail['extra']} extra"
    )
    for warning in detail.get("warnings", []):
        rprint(f"  [yellow]{warning}[/yellow]")
    if detail.get("backup"):
        rprint(f"  Backup: {detail['backup']}")


@diary_app.command("create")
def diary_create(
    path: Path = typer.Argument(help="Diary file to create"),
    session: list[int] = typer.Option(..., "--session", "-s", help="Session ID (repeatable)"),
    show_paths: bool = typer.Option(False, help="Show full repository paths in entry headings"),
    placeholders: bool = typer.Option(True, help="Write a placeholder for days without a summary"),
    force: bool = typer.Option(False, help="Overwrite an existing file (a backup is kept)"),
    db_path: str = typer.Option(None, help=DB_PATH_HELP),
) -> None:
    """Create a managed diary for one or more sessions."""
    config = _load_config()
    conn = _connect(config, db_path)
    synchronizer = DiarySynchronizer(Repository(conn), activity=_activity(config, db_path))
    try:
        with _cancel_on_interrupt() as cancel:
            outcome = synchronizer.create(
                path, session, _diary_options(show_paths, placeholders), overwrite=force, cancel=cancel
            )
    finally:
        conn.close()
    _report_outcome(outcome, "Diary creation")
    rprint(f"[green]Created {path}[/green]")
    _print_diff(outcome.detail)


@diary_app.command("sync")
def diary_sync(
    path: Path = typer.Argument(help="Managed diary file"),
    db_path: str = typer.Option(None, help=DB_PATH_HELP),
) -> None:
    """Merge new and updated summaries into a managed diary in place."""
    config = _load_config()
    conn = _connect(config, db_path)
    synchronizer = DiarySynchronizer(Repository(conn), activity=_activity(config, db_path))
    try:
        with _cancel_on_interrupt() as cancel:
            outcome = synchronizer.sync(path, cancel)
    finally:
        conn.close()
    _report_outcome(outcome, "Diary sync")
    rprint(f"[green]Synchronized {path}[/green]")
    _print_diff(outcome.detail)


@diary_app.command("status")
def diary_status(
    path: Path = typer.Argument(help="Managed diary file"),
    db_path: str = typer.Option(None, help=DB_PATH_HELP),
) -> None:
    """Show what a sync would change, without writing."""
    conn = _connect(_load_config(), db_path)
    synchronizer = DiarySynchronizer(Repository(conn))
    try:
        stale = synchronizer.is_stale(path)
        plan = synchronizer.plan(path)
    except (DevChronicleError, OSError) as e:
        rprint(f"[red]{e}[/red]")
        raise typer.Exit(1)
    finally:
        conn.close()

    manifest = plan.document.manifest
    rprint(f"[bold]{path}[/bold] ({manifest.kind.value}, sessions {', '.join(map(str, manifest.sessions))})")
    rprint(f"  Last synced: {manifest.last_synced_at or 'never'}")
    if stale:
        rprint("  [yellow]Newer summaries exist than the last sync[/yellow]")
    _print_diff({**plan.diff.to_dict(), "warnings": plan.warnings})


@diary_app.command("convert")
def diary_convert(
    source: Path = typer.Argument(help="Existing unmanaged Markdown file"),
    dest: Path = typer.Argument(help="New managed diary file"),
    session: list[int] = typer.Option(..., "--session", "-s", help="Session ID (repeatable)"),
    show_paths: bool = typer.Option(False, help="Show full repository paths in entry headings"),
    placeholders: bool = typer.Option(True, help="Write a placeholder for days without a summary"),
    db_path: str = typer.Option(None, help=DB_PATH_HELP),
) -> None:
    """Write a managed copy of an existing document, keeping its text as a preamble."""
    config = _load_config()
    conn = _connect(config, db_path)
    synchronizer = DiarySynchronizer(Repository(conn), activity=_activity(config, db_path))
    try:
        with _cancel_on_interrupt() as cancel:
            outcome = synchronizer.convert(
                source, dest, session, _diary_options(show_paths, placeholders), cancel=cancel
            )
    finally:
        conn.close()
    _report_outcome(outcome, "Conversion")
    rprint(f"[green]Wrote {dest}[/green] ({source} was not modified)")
    _print_diff(outcome.detail)


# Reporting


@app.command()
def stats(db_path: str = typer.Option(None, help=DB_PATH_HELP)) -> None:
    """Show statistics about stored evidence."""
    conn = _connect(_load_config(), db_path)
    try:
        s = Repository(conn).get_stats()
        rprint("[bold]devchronicle statistics:[/bold]")
        rprint(f"  Sessions:   {s['total_sessions']}")
        rprint(f"  Commits:    {s['total_commits']}")
        rprint(f"  Days:       {s['total_days']}")
        rprint(
            f"    mined {s['mined_days']}, summarized {s['summarized_days']}, "
            f"approved {s['approved_days']}"
        )
        rprint(f"  Summaries:  {s['total_summaries']}")
    finally:
        conn.close()


@app.command()
def activity(
    limit: int = typer.Option(20, help="Number of entries to show"),
    operation: str = typer.Option(None, help="Only show this operation (e.g. diary:sync)"),
    db_path: str = typer.Option(None, help=DB_PATH_HELP),
) -> None:
    """Show recent mining, summarization and diary operations."""
    config = _load_config()
    entries = read_activity_log(_activity(config, db_path).path, limit=limit, operation=operation)
    if not entries:
        rprint("[yellow]No activity recorded yet.[/yellow]")
        return
    for entry in entries:
        color = {"succeeded": "green", "canceled": "yellow"}.get(entry.get("status"), "red")
        rprint(
            f"{entry.get('timestamp', '')[:19]} [{color}]{entry.get('status')}[/{color}] "
            f"{entry.get('operation')} sessions={','.join(map(str, entry.get('session_ids', [])))} "
            f"({entry.get('duration_ms', 0)}ms)"
        )
        if entry.get("reason"):
            rprint(f"    {entry['reason']}")


if __name__ == "__main__":
    app()
