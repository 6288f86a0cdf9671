"""
wani - offline WaniKani lessons and reviews from the terminal.

Sessions run against a local cache; answers are queued and sent to WaniKani
whenever it is reachable.

Usage:
    wani                   # Summary of available lessons and reviews
    wani init              # Create the cache and download everything
    wani sync              # Pull updates, push queued answers
    wani sync --force      # Re-download everything
    wani review            # Review session
    wani lesson            # Lesson session
    wani outcomes          # Queued answers and their sync state
    wani cache-info        # Cursors, counts and quarantined records
"""

from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Annotated

import typer
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from config import get_settings
from wani import __version__
from wani.api.wanikani_client import WaniKaniGateway
from wani.cli.markup import KIND_STYLES, render
from wani.core.models import PromptType, SessionKind, SyncState
from wani.core.srs import STAGE_NAMES
from wani.session.engine import SessionEngine
from wani.session.events import (
    Abort,
    Answer,
    AnswerResult,
    HelpRequested,
    ItemPresented,
    ItemRetired,
    SessionAborted,
    SessionCompleted,
    SessionEvent,
    Skip,
    UserInput,
)
from wani.session.grading import Verdict
from wani.store.local_store import LocalStore
from wani.sync.coordinator import SyncCoordinator

# =============================================================================
# CLI Setup
# =============================================================================

app = typer.Typer(
    name="wani",
    help="Offline WaniKani lessons and reviews",
    add_completion=False,
    rich_markup_mode="rich",
)

console = Console()

UNGRADED_MESSAGES: dict[Verdict, str] = {
    Verdict.KANA_WHEN_MEANING: "We want the meaning, not the reading.",
    Verdict.MATCHES_NON_ACCEPTED: "That answer is not accepted for this item. Try another.",
    Verdict.BAD_FORMATTING: "That doesn't look like an answer. Try again.",
}

SESSION_COMMANDS = {
    "/skip": Skip,
    "/help": HelpRequested,
    "/quit": Abort,
}


@dataclass
class CliOptions:
    """Global options, resolved against settings once per invocation."""

    token: str
    data_path: Path
    accessible: bool
    console: Console

    @property
    def database_path(self) -> Path:
        return self.data_path / get_settings().cache_db_name

    def open_store(self) -> LocalStore:
        return LocalStore(db_path=self.database_path)

    def require_token(self) -> str:
        if not self.token:
            self.console.print(
                "[red]No WaniKani API token. Pass --auth or set WANIKANI_API_TOKEN.[/]\n"
                "See: https://www.wanikani.com/settings/personal_access_tokens"
            )
            raise typer.Exit(1)
        return self.token


def _options(ctx: typer.Context) -> CliOptions:
    return ctx.obj


def _now() -> datetime:
    return datetime.now(UTC)


def _fmt_time(value: datetime | None) -> str:
    return value.astimezone().strftime("%Y-%m-%d %H:%M") if value else "-"


# =============================================================================
# Summary
# =============================================================================


@app.command()
def summary(ctx: typer.Context) -> None:
    """Lessons and reviews available now, from the local cache."""
    opts = _options(ctx)
    store = opts.open_store()
    try:
        counts = store.summary(_now())
    finally:
        store.close()

    opts.console.print(f"Lessons: {counts['lessons']}")
    opts.console.print(f"Reviews: {counts['reviews']}")
    if counts["pending_outcomes"]:
        opts.console.print(f"[yellow]Answers waiting to sync: {counts['pending_outcomes']}[/]")
    if counts["errored_outcomes"]:
        opts.console.print(
            f"[red]Answers rejected by WaniKani: {counts['errored_outcomes']} (see `wani outcomes`)[/]"
        )
    if counts["quarantined"]:
        opts.console.print(f"[yellow]Unreadable cache records set aside: {counts['quarantined']}[/]")


app.command("s", hidden=True, help="Shorthand for 'summary'")(summary)


# =============================================================================
# Sync Commands
# =============================================================================


@app.command()
def init(ctx: typer.Context) -> None:
    """First-time setup: create the cache and download subjects and progress."""
    opts = _options(ctx)
    store = opts.open_store()
    store.close()
    opts.console.print(f"[green]Cache ready at {opts.database_path}[/]")

    if not opts.token:
        opts.console.print("[yellow]No API token configured; run `wani sync` once you have one.[/]")
        return
    asyncio.run(_run_sync(opts, force=True))


@app.command()
def sync(
    ctx: typer.Context,
    force: Annotated[
        bool, typer.Option("--force", "-f", help="Re-download everything instead of only changes")
    ] = False,
) -> None:
    """
    Sync the local cache with WaniKani.

    Pushes queued answers and downloads new subjects and progress.
    """
    opts = _options(ctx)
    opts.require_token()
    asyncio.run(_run_sync(opts, force))


async def _run_sync(opts: CliOptions, force: bool) -> None:
    """Execute one full sync pass."""
    store = opts.open_store()
    gateway = WaniKaniGateway(api_token=opts.token)
    coordinator = SyncCoordinator(store, gateway)
    results = {}
    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=opts.console,
            transient=True,
        ) as progress:
            task = progress.add_task("Downloading subjects...", total=None)
            results["subjects"] = await coordinator.pull_catalog(force=force)

            progress.update(task, description="Downloading progress...")
            results["assignments"] = await coordinator.pull_progress(force=force)

            progress.update(task, description="Sending answers...")
            results["push"] = await coordinator.push_outcomes()
    finally:
        await gateway.close()
        store.close()

    status = coordinator.status
    table = Table(title="Sync Results")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Subjects Updated", str(results["subjects"].get("written", 0)))
    table.add_row("Assignments Updated", str(results["assignments"].get("written", 0)))
    table.add_row("Answers Confirmed", str(status.outcomes_confirmed))
    table.add_row("Answers Rejected", str(status.outcomes_errored))
    table.add_row("Status", "✓ Success" if status.last_sync_success and not status.halted else "✗ Failed")
    opts.console.print(table)

    if status.halted:
        opts.console.print(f"[red]Sync halted: {status.auth_error}[/]")
        raise typer.Exit(1)
    if status.error_message:
        opts.console.print(f"[yellow]{status.error_message}[/]")
    for error in status.errors:
        opts.console.print(f"[red]Rejected: {error}[/]")


@app.command("cache-info")
def cache_info(ctx: typer.Context) -> None:
    """Show sync cursors, cache counts and quarantined records."""
    opts = _options(ctx)
    store = opts.open_store()
    try:
        cursors = store.list_cursors()
        subjects = store.count_subjects()
        counts = store.summary(_now())
        quarantined = store.list_quarantined()
    finally:
        store.close()

    table = Table(title=f"Cache: {opts.database_path}")
    table.add_column("Resource", style="cyan")
    table.add_column("Updated After", style="green")
    table.add_column("ETag")
    for cursor in cursors:
        table.add_row(cursor.resource, _fmt_time(cursor.updated_after), cursor.etag or "-")
    opts.console.print(table)

    opts.console.print(f"Subjects cached: {subjects}")
    opts.console.print(f"Answers waiting to sync: {counts['pending_outcomes']}")
    if quarantined:
        q_table = Table(title="Quarantined Records")
        q_table.add_column("Table", style="cyan")
        q_table.add_column("Key")
        q_table.add_column("Error", style="red")
        q_table.add_column("Re-fetched")
        for record in quarantined:
            q_table.add_row(record["table"], record["key"], record["error"] or "", "yes" if record["resolved"] else "no")
        opts.console.print(q_table)


@app.command()
def outcomes(
    ctx: typer.Context,
    state: Annotated[
        SyncState | None, typer.Option("--state", "-s", help="Only show answers in this state")
    ] = None,
) -> None:
    """List queued answers and whether WaniKani has them yet."""
    opts = _options(ctx)
    store = opts.open_store()
    try:
        rows = store.list_outcomes(state)
    finally:
        store.close()

    if not rows:
        opts.console.print("[dim]No answers recorded.[/]")
        return

    table = Table(title="Recorded Answers")
    table.add_column("#", justify="right")
    table.add_column("Subject", justify="right")
    table.add_column("Kind")
    table.add_column("Stage")
    table.add_column("Completed")
    table.add_column("State")
    table.add_column("Error", style="red")
    state_styles = {
        SyncState.PENDING: "yellow",
        SyncState.SUBMITTED: "cyan",
        SyncState.CONFIRMED: "green",
        SyncState.ERRORED: "red",
    }
    for o in rows:
        table.add_row(
            str(o.local_id),
            str(o.subject_id),
            o.session_kind.value,
            f"{STAGE_NAMES.get(o.starting_srs_stage, o.starting_srs_stage)} → "
            f"{STAGE_NAMES.get(o.expected_srs_stage, o.expected_srs_stage)}",
            _fmt_time(o.completed_at),
            f"[{state_styles[o.sync_state]}]{o.sync_state.value}[/]",
            o.error or "",
        )
    opts.console.print(table)


# =============================================================================
# Study Commands
# =============================================================================


@app.command()
def review(ctx: typer.Context) -> None:
    """
    Start a review session.

    Type the answer and press Enter. /skip, /help and /quit are also understood.
    """
    _start_session(_options(ctx), SessionKind.REVIEW)


@app.command()
def lesson(ctx: typer.Context) -> None:
    """Start a lesson session (the lesson quiz)."""
    _start_session(_options(ctx), SessionKind.LESSON)


def _start_session(opts: CliOptions, kind: SessionKind) -> None:
    try:
        asyncio.run(_run_session(opts, kind))
    except KeyboardInterrupt:
        opts.console.print("\n[yellow]Session interrupted. Finished items are saved.[/]")


def parse_input(text: str) -> UserInput:
    command = SESSION_COMMANDS.get(text.strip().lower())
    if command is not None:
        return command()
    return Answer(text)


async def _run_session(opts: CliOptions, kind: SessionKind) -> None:
    """Run a session, syncing in the background when a token is configured."""
    store = opts.open_store()
    gateway: WaniKaniGateway | None = None
    coordinator: SyncCoordinator | None = None
    stop = asyncio.Event()
    sync_task: asyncio.Task | None = None

    if opts.token:
        gateway = WaniKaniGateway(api_token=opts.token)
        coordinator = SyncCoordinator(store, gateway)
        sync_task = asyncio.create_task(coordinator.run(stop))

    engine = SessionEngine(
        store,
        on_outcome=(lambda _outcome: coordinator.trigger_push()) if coordinator else None,
    )
    try:
        if not engine.load(kind):
            opts.console.print(f"[yellow]No {kind.value}s available right now.[/]")
            return

        events = engine.start()
        while True:
            for event in events:
                _render_event(opts, event)
            if engine.is_finished:
                break
            try:
                text = await asyncio.to_thread(opts.console.input, "[bold]> [/]")
            except EOFError:
                events = engine.handle(Abort())
                continue
            events = engine.handle(parse_input(text))
    finally:
        stop.set()
        if sync_task is not None:
            await sync_task
        if coordinator is not None and not coordinator.status.halted:
            await coordinator.push_outcomes()
            if coordinator.status.halted:
                opts.console.print(f"[red]Sync halted: {coordinator.status.auth_error}[/]")
        if gateway is not None:
            await gateway.close()
        store.close()


def _render_event(opts: CliOptions, event: SessionEvent) -> None:
    out = opts.console
    if isinstance(event, ItemPresented):
        subject = event.subject
        label = "Meaning" if event.prompt is PromptType.MEANING else "Reading"
        kind = subject.kind.value.replace("_", " ").title()
        if opts.accessible:
            out.print(f"{kind} {subject.display}: type the {label.lower()}. {event.remaining_items} items left.")
        else:
            out.print(
                Panel(
                    f"[{KIND_STYLES[subject.kind]}] {subject.display} [/]",
                    title=f"{kind} {label}",
                    subtitle=f"{event.remaining_items} left",
                    border_style="cyan" if event.prompt is PromptType.MEANING else "magenta",
                    expand=False,
                )
            )
        if event.help:
            out.print(render(event.help, accessible=opts.accessible))
        elif event.help is not None:
            out.print("[dim]No hint for this item.[/]")

    elif isinstance(event, AnswerResult):
        if event.verdict is Verdict.CORRECT:
            out.print("[green]Correct[/]")
        elif event.verdict is Verdict.INCORRECT:
            out.print(f"[red]Incorrect.[/] Accepted: {', '.join(event.expected)}")
        else:
            out.print(f"[yellow]{UNGRADED_MESSAGES[event.verdict]}[/]")

    elif isinstance(event, ItemRetired):
        outcome = event.outcome
        out.print(
            f"[dim]{event.subject.display}: {STAGE_NAMES[outcome.starting_srs_stage]} → "
            f"{STAGE_NAMES[outcome.expected_srs_stage]}[/]"
        )

    elif isinstance(event, SessionCompleted):
        out.print(f"[bold green]Session complete: {event.retired} items done.[/]")

    elif isinstance(event, SessionAborted):
        out.print(
            f"[yellow]Session ended: {event.retired} items saved, {event.discarded} not finished.[/]"
        )


# =============================================================================
# Entry Point
# =============================================================================


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"wani {__version__}")
        raise typer.Exit()


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    auth: Annotated[
        str | None, typer.Option("--auth", "-a", help="WaniKani API personal access token")
    ] = None,
    datapath: Annotated[
        Path | None, typer.Option("--datapath", "-d", help="Directory of the local cache (default ~/.wani)")
    ] = None,
    accessible: Annotated[
        bool | None, typer.Option("--accessible/--no-accessible", help="Plain output without colour or markup")
    ] = None,
    version: Annotated[
        bool, typer.Option("--version", callback=_version_callback, is_eager=True, help="Show version")
    ] = False,
) -> None:
    """
    Offline WaniKani lessons and reviews.

    Runs `summary` when no command is given.
    """
    settings = get_settings()
    plain = settings.accessibility_mode if accessible is None else accessible
    ctx.obj = CliOptions(
        token=auth or settings.wanikani_api_token,
        data_path=datapath or settings.data_path,
        accessible=plain,
        console=Console(no_color=True, highlight=False, emoji=False) if plain else console,
    )
    if ctx.invoked_subcommand is None:
        summary(ctx)


def main() -> None:
    """CLI entry point."""
    settings = get_settings()
    logger.remove()
    logger.add(
        sys.stderr,
        level=settings.log_level,
        format="<level>{message}</level>",
    )
    if settings.log_file:
        logger.add(settings.log_file, level="DEBUG", rotation="10 MB", retention=3)

    app()


if __name__ == "__main__":
    main()
