"""Search pipeline and result rendering."""

import logging
import re
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from recall.errors import QueryFailed
from recall.models import (
    Message,
    Role,
    Scope,
    SearchResult,
    SessionRef,
    SourceKind,
    resume_command,
)
from recall.ranking import HALF_LIFE_DAYS, rank
from recall.snippets import DEFAULT_MAX_CHARS, extract_snippet
from recall.storage import (
    build_match_expression,
    get_last_message,
    get_message,
    get_message_window,
    get_messages,
    get_sessions,
    highlight_message,
    query,
    recent_sessions,
)

logger = logging.getLogger(__name__)

console = Console()

ROLE_STYLES = {
    Role.USER: "cyan",
    Role.ASSISTANT: "green",
    Role.SYSTEM: "magenta",
    Role.TOOL: "dim",
}

# Width of each neighbouring message shown with --context
CONTEXT_LINE_CHARS = 100

# Relative times: "7d", "2w" or "3 days ago"; a bare "m" means months
_SHORT_AGO = re.compile(r"^(\d+)([hdwmy])$")
_LONG_AGO = re.compile(r"^(\d+)\s*([a-z]+?)s?\s+ago$")

TIME_UNITS = {
    "min": timedelta(minutes=1),
    "minute": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "hr": timedelta(hours=1),
    "hour": timedelta(hours=1),
    "d": timedelta(days=1),
    "day": timedelta(days=1),
    "w": timedelta(weeks=1),
    "wk": timedelta(weeks=1),
    "week": timedelta(weeks=1),
    "m": timedelta(days=30),
    "mo": timedelta(days=30),
    "month": timedelta(days=30),
    "y": timedelta(days=365),
    "year": timedelta(days=365),
}


@dataclass
class SearchOutcome:
    """Results of one query, plus a message when the query itself failed."""

    results: list[SearchResult] = field(default_factory=list)
    diagnostic: str | None = None
    search_time_ms: int = 0


def search(
    conn: sqlite3.Connection,
    text: str,
    scope: Scope,
    limit: int = 20,
    now: datetime | None = None,
    half_life_days: float = HALF_LIFE_DAYS,
    snippet_chars: int = DEFAULT_MAX_CHARS,
    context: int = 0,
) -> SearchOutcome:
    """Run a query and return ranked, highlighted session results.

    A query with no searchable terms lists the most recent sessions instead.
    With ``context`` each result also carries that many messages on either
    side of its anchor. Failures are reported in ``diagnostic`` with an empty
    result list.
    """
    start_time = time.time()
    now = now or datetime.now(tz=timezone.utc)

    try:
        if build_match_expression(text) is None:
            results = _recent_results(conn, scope, limit, snippet_chars)
        else:
            results = _ranked_results(conn, text, scope, limit, now, half_life_days, snippet_chars)
        if context > 0:
            for result in results:
                result.context = get_message_window(
                    conn, result.session.id, result.anchor.sequence_index, context
                )
    except (QueryFailed, sqlite3.Error) as e:
        logger.warning("Query %r failed: %s", text, e)
        return SearchOutcome(
            results=[],
            diagnostic=str(e),
            search_time_ms=int((time.time() - start_time) * 1000),
        )

    return SearchOutcome(results=results, search_time_ms=int((time.time() - start_time) * 1000))


def _ranked_results(
    conn: sqlite3.Connection,
    text: str,
    scope: Scope,
    limit: int,
    now: datetime,
    half_life_days: float,
    snippet_chars: int,
) -> list[SearchResult]:
    # Every match is streamed so each session keeps its latest match as anchor
    ranked = rank(query(conn, text, scope), now, half_life_days)[:limit]
    sessions = get_sessions(conn, [r.session_id for r in ranked])

    results: list[SearchResult] = []
    for match in ranked:
        session = sessions.get(match.session_id)
        anchor = get_message(conn, match.anchor.message_id)
        if session is None or anchor is None:
            continue
        full_text, spans = highlight_message(conn, text, match.anchor.message_id)
        results.append(
            SearchResult(
                session=session,
                anchor=anchor,
                relevance_score=match.relevance_score,
                final_score=match.final_score,
                highlights=spans,
                snippet=extract_snippet(full_text, spans, snippet_chars),
                match_count=match.match_count,
            )
        )
    return results


def _recent_results(
    conn: sqlite3.Connection, scope: Scope, limit: int, snippet_chars: int
) -> list[SearchResult]:
    results: list[SearchResult] = []
    for session in recent_sessions(conn, scope, limit):
        anchor = get_last_message(conn, session.id)
        if anchor is None:
            continue
        results.append(
            SearchResult(
                session=session,
                anchor=anchor,
                relevance_score=0.0,
                final_score=0.0,
                snippet=extract_snippet(anchor.text, [], snippet_chars),
                match_count=0,
            )
        )
    return results


def parse_time(value: str, now: datetime | None = None) -> datetime:
    """Parse a --since/--until value into a UTC-aware datetime.

    Supports:
    - Relative: "1w", "7d", "2h", "3 days ago", "2 weeks ago"
    - Named: "today", "yesterday"
    - Absolute: "2025-01-01", "2025-01-01T12:00:00Z"

    Raises:
        ValueError: the value matches none of these forms.
    """
    text = value.strip().lower()
    now = now or datetime.now(tz=timezone.utc)

    if text == "today":
        return now
    if text == "yesterday":
        return now - timedelta(days=1)

    match = _SHORT_AGO.match(text) or _LONG_AGO.match(text)
    if match:
        unit = TIME_UNITS.get(match.group(2))
        if unit is None:
            raise ValueError(
                f"Unknown time unit in {value!r}. Use minutes, hours, days, weeks, months or years"
            )
        return now - unit * int(match.group(1))

    try:
        dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        raise ValueError(
            f"Invalid time {value!r}. Try '1w', '3 days ago', 'yesterday' or '2025-01-01'"
        ) from None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def relative_age(timestamp: datetime, now: datetime | None = None) -> str:
    """Human readable age such as "3 days ago"."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    age = (now or datetime.now(tz=timezone.utc)) - timestamp
    if age.days < 0:
        return "just now"
    elif age.days > 0:
        return f"{age.days} days ago"
    elif age.seconds >= 3600:
        return f"{age.seconds // 3600} hours ago"
    return f"{age.seconds // 60} minutes ago"


def highlighted_text(text: str, spans: list[tuple[int, int]]) -> Text:
    """Rich Text with the given codepoint spans emphasized."""
    rendered = Text(text)
    for start, end in spans:
        rendered.stylize("bold yellow", start, end)
    return rendered


def result_timestamp(result: SearchResult) -> datetime:
    return result.anchor.timestamp or result.session.updated_at


def format_human_output(
    results: list[SearchResult],
    query_text: str,
    search_time_ms: int,
    scope: Scope,
    resume_overrides: dict[SourceKind, str] | None = None,
) -> None:
    """Format results for human-readable output."""
    if not results:
        if scope.is_everywhere:
            console.print("[yellow]No results found. Try a different query.[/yellow]")
        else:
            console.print(
                f"[yellow]No results in {scope.project_path}. "
                "Try --everywhere to search all projects.[/yellow]"
            )
        return

    # Calculate max score for percentage normalization
    max_score = max(r.final_score for r in results)

    for i, result in enumerate(results, 1):
        session = result.session

        header = Text()
        header.append(f"[{i}] ", style="bold cyan")
        header.append(session.source_kind.display_name, style="bold")
        header.append(f" | {session.project_name}", style="green")
        if session.git_branch:
            header.append(f" ({session.git_branch})", style="dim green")
        header.append(f" | {relative_age(result_timestamp(result))}", style="dim")
        if max_score > 0:
            header.append(f" | {int(result.final_score / max_score * 100)}%", style="dim")
        if result.match_count > 1:
            header.append(f" | {result.match_count} matches", style="dim")

        body = Text()
        body.append(f"{result.anchor.role.value}: ", style=ROLE_STYLES[result.anchor.role])
        snippet = result.snippet or extract_snippet(result.anchor.text, result.highlights)
        body.append_text(highlighted_text(snippet.text, snippet.highlights))
        for msg in result.context:
            if msg.sequence_index == result.anchor.sequence_index:
                continue
            line = extract_snippet(msg.text, [], CONTEXT_LINE_CHARS).text
            body.append(f"\n  {msg.sequence_index}. {msg.role.value}: ", style="dim")
            body.append(line, style="dim")

        command = " ".join(resume_command(session.source_kind, session.native_id, resume_overrides))
        panel = Panel(
            body,
            title=header,
            title_align="left",
            subtitle=f"→ {command}",
            subtitle_align="left",
        )
        console.print(panel)

    console.print("─" * 50)
    console.print(f"Found {len(results)} sessions in {search_time_ms}ms")


def result_to_dict(
    result: SearchResult,
    rank_position: int,
    resume_overrides: dict[SourceKind, str] | None = None,
) -> dict[str, Any]:
    session = result.session
    snippet = result.snippet
    timestamp = result.anchor.timestamp
    return {
        "rank": rank_position,
        "session_id": session.id,
        "native_id": session.native_id,
        "source": session.source_kind.value,
        "project_path": session.project_path,
        "git_branch": session.git_branch,
        "file_path": str(session.file_path),
        "updated_at": session.updated_at.isoformat(),
        "relevance_score": round(result.relevance_score, 4),
        "final_score": round(result.final_score, 4),
        "match_count": result.match_count,
        "anchor": {
            "sequence_index": result.anchor.sequence_index,
            "role": result.anchor.role.value,
            "timestamp": timestamp.isoformat() if timestamp else None,
        },
        "snippet": snippet.text if snippet else None,
        "highlights": [list(span) for span in (snippet.highlights if snippet else [])],
        "resume_command": resume_command(session.source_kind, session.native_id, resume_overrides),
        "context": [_message_dict(m) for m in result.context],
    }


def format_json_output(
    results: list[SearchResult],
    query_text: str,
    search_time_ms: int,
    scope: Scope,
    diagnostic: str | None = None,
    resume_overrides: dict[SourceKind, str] | None = None,
) -> None:
    """Format results as JSON for programmatic use."""
    output = {
        "results": [result_to_dict(r, i, resume_overrides) for i, r in enumerate(results, 1)],
        "query": query_text,
        "scope": "everywhere" if scope.is_everywhere else scope.project_path,
        "total_results": len(results),
        "search_time_ms": search_time_ms,
        "error": diagnostic,
    }
    console.print_json(data=output)


def format_paths_output(results: list[SearchResult]) -> None:
    """Print only unique session paths."""
    paths = sorted(set(str(r.session.file_path) for r in results))
    for path in paths:
        console.print(path, highlight=False, soft_wrap=True)


def format_session_list(
    sessions: list[SessionRef],
    resume_overrides: dict[SourceKind, str] | None = None,
    json_output: bool = False,
) -> None:
    """Print a listing of sessions, most recent first."""
    if json_output:
        console.print_json(
            data={
                "sessions": [
                    {
                        "session_id": s.id,
                        "native_id": s.native_id,
                        "source": s.source_kind.value,
                        "project_path": s.project_path,
                        "git_branch": s.git_branch,
                        "file_path": str(s.file_path),
                        "updated_at": s.updated_at.isoformat(),
                        "message_count": s.message_count,
                        "resume_command": resume_command(s.source_kind, s.native_id, resume_overrides),
                    }
                    for s in sessions
                ]
            }
        )
        return

    if not sessions:
        console.print("[yellow]No sessions indexed yet.[/yellow]")
        return

    for s in sessions:
        line = Text()
        line.append(f"{s.id}  ", style="bold cyan")
        line.append(f"{s.source_kind.display_name:<9}", style="bold")
        line.append(f"{s.project_name}", style="green")
        line.append(f"  {s.message_count} messages", style="dim")
        line.append(f"  {relative_age(s.updated_at)}", style="dim")
        console.print(line)


def display_session(
    conn: sqlite3.Connection,
    session: SessionRef,
    resume_overrides: dict[SourceKind, str] | None = None,
    json_output: bool = False,
) -> None:
    """Print every message of a session."""
    messages = get_messages(conn, session.id)
    command = resume_command(session.source_kind, session.native_id, resume_overrides)

    if json_output:
        console.print_json(
            data={
                "session_id": session.id,
                "native_id": session.native_id,
                "source": session.source_kind.value,
                "project_path": session.project_path,
                "git_branch": session.git_branch,
                "file_path": str(session.file_path),
                "resume_command": command,
                "messages": [_message_dict(m) for m in messages],
            }
        )
        return

    header = Text()
    header.append(session.source_kind.display_name, style="bold")
    header.append(f" | {session.project_path}", style="green")
    header.append(f" | {relative_age(session.updated_at)}", style="dim")

    body = Text()
    for i, msg in enumerate(messages):
        if i:
            body.append("\n\n")
        body.append(f"{msg.role.value}:", style=f"bold {ROLE_STYLES[msg.role]}")
        body.append(f"\n{msg.text}")

    console.print(
        Panel(
            body,
            title=header,
            title_align="left",
            subtitle=f"→ {' '.join(command)}",
            subtitle_align="left",
        )
    )


def _message_dict(msg: Message) -> dict[str, Any]:
    return {
        "sequence_index": msg.sequence_index,
        "role": msg.role.value,
        "timestamp": msg.timestamp.isoformat() if msg.timestamp else None,
        "text": msg.text,
    }
