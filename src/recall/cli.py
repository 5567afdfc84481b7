"""CLI for recall."""

import logging
import sqlite3
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn

from recall import __version__
from recall.config import Config
from recall.errors import CorruptIndex
from recall.models import IndexComplete, IndexProgress, Scope, SourceKind

app = typer.Typer(
    name="recall",
    help="Search Claude, Codex, Factory and OpenCode conversation history.",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


def version_callback(value: bool) -> None:
    if value:
        console.print(f"recall {__version__}")
        raise typer.Exit()


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option("--version", callback=version_callback, is_eager=True),
    ] = None,
    verbose: Annotated[
        bool, typer.Option("--verbose", "-v", help="Log debug details to stderr")
    ] = False,
) -> None:
    """Search AI assistant session history."""
    setup_logging(verbose)


def open_index_or_exit(config: Config) -> sqlite3.Connection:
    """Open the index, turning corruption into an actionable error."""
    from recall.storage import open_index

    try:
        return open_index(config.index_path)
    except CorruptIndex as e:
        err_console.print(f"[red]Error: {e}[/red]", soft_wrap=True)
        raise typer.Exit(1) from e


def run_indexer(config: Config, force: bool = False, quiet: bool = False) -> IndexComplete | None:
    """Run a background index pass, rendering its progress until it finishes."""
    from recall.indexer import BackgroundIndexer

    indexer = BackgroundIndexer(config.index_path, config.roots, force=force)
    indexer.start()

    complete: IndexComplete | None = None
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        console=err_console,
        transient=True,
        disable=quiet,
    ) as progress:
        task = progress.add_task("Scanning sessions...", total=None)
        while True:
            finished = indexer.wait(0.1)
            # Take everything queued since the last tick
            for event in indexer.drain():
                if isinstance(event, IndexProgress):
                    progress.update(
                        task,
                        completed=event.files_done,
                        total=event.files_total,
                        description=event.current_label,
                    )
                else:
                    complete = event
            if finished:
                break

    if isinstance(indexer.error, CorruptIndex):
        err_console.print(f"[red]Error: {indexer.error}[/red]", soft_wrap=True)
        raise typer.Exit(1)
    if indexer.error is not None:
        err_console.print(f"[yellow]Indexing failed: {indexer.error}[/yellow]")
        return None
    return complete


def build_scope(
    config: Config,
    everywhere: bool = False,
    cwd: str | None = None,
    source: SourceKind | None = None,
    since: str | None = None,
    until: str | None = None,
) -> Scope:
    """Scope from the shared filter options; --cwd wins over --everywhere."""
    from recall.searcher import parse_time

    if cwd:
        scope = Scope.project(cwd)
    elif everywhere:
        scope = Scope.everywhere()
    else:
        scope = Scope.project(config.launch_cwd)

    try:
        since_dt = parse_time(since) if since else None
        until_dt = parse_time(until) if until else None
    except ValueError as e:
        raise typer.BadParameter(str(e)) from e
    return scope.narrow(source_kind=source, since=since_dt, until=until_dt)


@app.command()
def search(
    query: Annotated[str, typer.Argument(help="Search query (empty lists recent sessions)")] = "",
    everywhere: Annotated[
        bool, typer.Option("--everywhere", "-e", help="Search all projects, not just the current one")
    ] = False,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Number of results")] = 10,
    source: Annotated[
        SourceKind | None, typer.Option("--source", "-s", help="Only sessions from this tool")
    ] = None,
    since: Annotated[
        str | None,
        typer.Option("--since", help="Only sessions active after (e.g. 1w, 3 days ago, 2025-01-01)"),
    ] = None,
    until: Annotated[
        str | None, typer.Option("--until", help="Only sessions active before this time")
    ] = None,
    cwd: Annotated[
        str | None, typer.Option("--cwd", help="Only sessions started in this directory")
    ] = None,
    session_id: Annotated[
        str | None, typer.Option("--session", help="Search within one session (ID or native ID)")
    ] = None,
    context: Annotated[
        int, typer.Option("--context", "-C", min=0, help="Messages to show around each match")
    ] = 0,
    json_output: Annotated[bool, typer.Option("--json", help="Output as JSON")] = False,
    paths_only: Annotated[bool, typer.Option("--paths", help="Only output session paths")] = False,
    no_index: Annotated[
        bool, typer.Option("--no-index", help="Search the existing index without updating it")
    ] = False,
    no_wait: Annotated[
        bool,
        typer.Option("--no-wait", help="Query right away while indexing continues in the background"),
    ] = False,
) -> None:
    """Search sessions for a query."""
    from recall.indexer import BackgroundIndexer
    from recall.searcher import (
        format_human_output,
        format_json_output,
        format_paths_output,
        search as run_search,
    )
    from recall.storage import find_session

    config = Config.from_env()
    # A single-session search ignores the project scope
    scope = build_scope(config, everywhere or session_id is not None, cwd, source, since, until)

    conn = open_index_or_exit(config)
    try:
        if no_wait and not no_index:
            BackgroundIndexer(config.index_path, config.roots).start()
        elif not no_index:
            run_indexer(config, quiet=json_output or paths_only)

        if session_id is not None:
            session = find_session(conn, session_id)
            if session is None:
                err_console.print(f"[red]Session not found: {session_id}[/red]")
                raise typer.Exit(1)
            scope = scope.narrow(session_id=session.id)

        outcome = run_search(conn, query, scope, limit=limit, context=context)
    finally:
        conn.close()

    if outcome.diagnostic and not json_output:
        err_console.print(f"[yellow]Search failed: {outcome.diagnostic}[/yellow]")

    if paths_only:
        format_paths_output(outcome.results)
    elif json_output:
        format_json_output(
            outcome.results,
            query,
            outcome.search_time_ms,
            scope,
            diagnostic=outcome.diagnostic,
            resume_overrides=config.resume_overrides,
        )
    else:
        format_human_output(
            outcome.results, query, outcome.search_time_ms, scope, config.resume_overrides
        )


@app.command()
def index(
    force: Annotated[bool, typer.Option("--force", "-f", help="Reindex all sessions")] = False,
    reset: Annotated[
        bool, typer.Option("--reset", help="Delete the index and rebuild it from scratch")
    ] = False,
) -> None:
    """Build or update the search index."""
    from recall.storage import reset_index

    config = Config.from_env()

    if reset:
        reset_index(config.index_path)
        console.print(f"[yellow]Deleted index at {config.index_path}[/yellow]")

    open_index_or_exit(config).close()
    complete = run_indexer(config, force=force)
    if complete is None:
        raise typer.Exit(1)

    for skip in complete.diagnostics:
        console.print(f"[yellow]Skipped {skip.path}: {skip.reason}[/yellow]", soft_wrap=True)

    if complete.indexed == 0 and complete.removed == 0 and not complete.diagnostics:
        console.print(f"[green]Index is up to date ({complete.total_sessions} sessions)[/green]")
    else:
        console.print(
            f"[green]Indexed {complete.indexed} sessions[/green] "
            f"({complete.skipped} skipped, {complete.removed} removed, "
            f"{complete.total_sessions} total)"
        )


@app.command("list")
def list_sessions(
    everywhere: Annotated[
        bool, typer.Option("--everywhere", "-e", help="List sessions from all projects")
    ] = False,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Number of sessions")] = 20,
    source: Annotated[
        SourceKind | None, typer.Option("--source", "-s", help="Only sessions from this tool")
    ] = None,
    since: Annotated[
        str | None, typer.Option("--since", help="Only sessions active after this time")
    ] = None,
    until: Annotated[
        str | None, typer.Option("--until", help="Only sessions active before this time")
    ] = None,
    cwd: Annotated[
        str | None, typer.Option("--cwd", help="Only sessions started in this directory")
    ] = None,
    json_output: Annotated[bool, typer.Option("--json", help="Output as JSON")] = False,
) -> None:
    """List the most recent sessions."""
    from recall.searcher import format_session_list
    from recall.storage import recent_sessions

    config = Config.from_env()
    scope = build_scope(config, everywhere, cwd, source, since, until)

    conn = open_index_or_exit(config)
    try:
        sessions = recent_sessions(conn, scope, limit)
    finally:
        conn.close()

    format_session_list(sessions, config.resume_overrides, json_output=json_output)


@app.command()
def read(
    session_id: Annotated[str, typer.Argument(help="Session ID, native ID, or a unique prefix")],
    json_output: Annotated[bool, typer.Option("--json", help="Output as JSON")] = False,
    path_only: Annotated[bool, typer.Option("--path", help="Only output session path")] = False,
) -> None:
    """Show the full conversation of a session."""
    from recall.searcher import display_session
    from recall.storage import find_session

    config = Config.from_env()
    conn = open_index_or_exit(config)
    try:
        session = find_session(conn, session_id)
        if session is None:
            err_console.print(f"[red]Session not found: {session_id}[/red]")
            raise typer.Exit(1)

        if path_only:
            console.print(str(session.file_path), highlight=False, soft_wrap=True)
        else:
            display_session(conn, session, config.resume_overrides, json_output=json_output)
    finally:
        conn.close()


@app.command()
def status(
    check: Annotated[
        bool, typer.Option("--check", help="Run a full integrity check of the index")
    ] = False,
    json_output: Annotated[bool, typer.Option("--json", help="Output as JSON")] = False,
) -> None:
    """Show index statistics."""
    from recall.storage import check_integrity, get_index_stats

    config = Config.from_env()
    conn = open_index_or_exit(config)
    try:
        if check:
            try:
                check_integrity(conn, config.index_path)
            except CorruptIndex as e:
                err_console.print(f"[red]Error: {e}[/red]", soft_wrap=True)
                raise typer.Exit(1) from e
        stats = get_index_stats(conn, config.index_path)
    finally:
        conn.close()

    if json_output:
        console.print_json(data=stats)
        return

    console.print(f"Sessions indexed: {stats['session_count']}")
    console.print(f"Messages indexed: {stats['message_count']}")
    for source, count in sorted(stats["by_source"].items()):
        console.print(f"  [cyan]{source}[/cyan]: {count} sessions")
    console.print(f"Index path: {stats['index_path']}", highlight=False, soft_wrap=True)
    console.print(f"Index size: {stats['index_size_human']}")
    if stats["last_indexed"]:
        console.print(f"Last indexed: {stats['last_indexed']}")
    if check:
        console.print("[green]Integrity check passed[/green]")


@app.command()
def projects(
    json_output: Annotated[bool, typer.Option("--json", help="Output as JSON")] = False,
) -> None:
    """List all indexed projects."""
    from recall.storage import get_all_projects, index_exists

    config = Config.from_env()
    if not index_exists(config.index_path):
        console.print("[yellow]No index found. Run 'recall index' first.[/yellow]")
        raise typer.Exit(1)

    conn = open_index_or_exit(config)
    try:
        project_list = get_all_projects(conn)
    finally:
        conn.close()

    if json_output:
        console.print_json(data={"projects": project_list})
        return

    if not project_list:
        console.print("[yellow]No projects indexed.[/yellow]")
        return

    for proj in project_list:
        console.print(f"[cyan]{proj['project']}[/cyan] ({proj['sessions']} sessions)")


if __name__ == "__main__":
    app()
