"""SQLite storage for the recall index.

One database file holds the sessions, their messages and an FTS5 index over
message text. Only the background indexer writes; every other caller opens
its own connection and reads WAL snapshots, so a query never waits on more
than a single commit.
"""

import re
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from recall.errors import CorruptIndex, QueryFailed, WriteFailed
from recall.models import (
    Candidate,
    Message,
    Role,
    Scope,
    Session,
    SessionRef,
    SourceKind,
)

SCHEMA_VERSION = "2"

# Milliseconds a connection waits for the writer's lock before failing
BUSY_TIMEOUT_MS = 5000

# Private-use markers wrapped around matches by FTS5 highlight()
HIGHLIGHT_OPEN = "\ue000"
HIGHLIGHT_CLOSE = "\ue001"

_TOKEN_RE = re.compile(r"\w+")


@dataclass
class IndexedFile:
    """Last-indexed state of one transcript file."""

    session_id: str
    last_modified: float
    file_size: int


def connect(index_path: Path) -> sqlite3.Connection:
    """Open a connection to the index database.

    Connections run in autocommit mode; writes go through ``transaction``.
    """
    index_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(index_path), timeout=BUSY_TIMEOUT_MS / 1000, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute(f"PRAGMA busy_timeout = {BUSY_TIMEOUT_MS}")
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def init_schema(conn: sqlite3.Connection) -> None:
    """Initialize the database schema."""
    conn.executescript("""
        PRAGMA journal_mode = WAL;
        PRAGMA synchronous = NORMAL;

        -- Sessions table; also the last-indexed state of every file
        CREATE TABLE IF NOT EXISTS sessions (
            id TEXT PRIMARY KEY,
            native_id TEXT NOT NULL,
            source_kind TEXT NOT NULL,
            file_path TEXT NOT NULL UNIQUE,
            project_path TEXT NOT NULL,
            git_branch TEXT,
            last_modified REAL NOT NULL,
            file_size INTEGER NOT NULL,
            updated_at TEXT NOT NULL,
            message_count INTEGER NOT NULL,
            indexed_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_sessions_project ON sessions(project_path);
        CREATE INDEX IF NOT EXISTS idx_sessions_native ON sessions(native_id);
        CREATE INDEX IF NOT EXISTS idx_sessions_updated ON sessions(updated_at DESC);

        -- Messages table
        CREATE TABLE IF NOT EXISTS messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
            seq INTEGER NOT NULL,
            role TEXT NOT NULL,
            timestamp TEXT,
            text TEXT NOT NULL
        );

        CREATE UNIQUE INDEX IF NOT EXISTS idx_messages_session_seq ON messages(session_id, seq);

        -- FTS5 for keyword search
        CREATE VIRTUAL TABLE IF NOT EXISTS messages_fts USING fts5(
            text,
            content='messages',
            content_rowid='id',
            tokenize='unicode61 remove_diacritics 2'
        );

        -- Triggers to keep FTS in sync
        CREATE TRIGGER IF NOT EXISTS messages_ai AFTER INSERT ON messages BEGIN
            INSERT INTO messages_fts(rowid, text) VALUES (new.id, new.text);
        END;

        CREATE TRIGGER IF NOT EXISTS messages_ad AFTER DELETE ON messages BEGIN
            INSERT INTO messages_fts(messages_fts, rowid, text) VALUES('delete', old.id, old.text);
        END;

        CREATE TRIGGER IF NOT EXISTS messages_au AFTER UPDATE ON messages BEGIN
            INSERT INTO messages_fts(messages_fts, rowid, text) VALUES('delete', old.id, old.text);
            INSERT INTO messages_fts(rowid, text) VALUES (new.id, new.text);
        END;

        -- Metadata table for tracking index state
        CREATE TABLE IF NOT EXISTS metadata (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );
    """)
    conn.execute(
        "INSERT OR IGNORE INTO metadata (key, value) VALUES ('schema_version', ?)",
        (SCHEMA_VERSION,),
    )


def open_index(index_path: Path) -> sqlite3.Connection:
    """Open (creating on first use) and validate the index.

    Raises:
        CorruptIndex: the file is not a usable recall index.
    """
    conn = None
    try:
        conn = connect(index_path)
        init_schema(conn)
        version = get_metadata(conn, "schema_version")
        if version != SCHEMA_VERSION:
            raise CorruptIndex(index_path, f"schema version {version}, expected {SCHEMA_VERSION}")
        # Touch the content table and the FTS structure so a damaged file fails here
        conn.execute("SELECT id FROM messages ORDER BY id DESC LIMIT 1").fetchall()
        conn.execute("SELECT rowid FROM messages_fts WHERE messages_fts MATCH 'recall' LIMIT 1").fetchall()
    except sqlite3.DatabaseError as e:
        if conn is not None:
            conn.close()
        raise CorruptIndex(index_path, str(e)) from e
    except CorruptIndex:
        if conn is not None:
            conn.close()
        raise
    return conn


def check_integrity(conn: sqlite3.Connection, index_path: Path) -> None:
    """Full consistency check of the database and its FTS index."""
    try:
        result = conn.execute("PRAGMA quick_check").fetchone()[0]
        if result != "ok":
            raise CorruptIndex(index_path, result)
        conn.execute("INSERT INTO messages_fts(messages_fts, rank) VALUES('integrity-check', 1)")
    except sqlite3.DatabaseError as e:
        raise CorruptIndex(index_path, str(e)) from e


def index_exists(index_path: Path) -> bool:
    """Check if the index database exists."""
    return index_path.exists()


def reset_index(index_path: Path) -> None:
    """Delete the index database and its WAL side files."""
    for suffix in ("", "-wal", "-shm"):
        Path(f"{index_path}{suffix}").unlink(missing_ok=True)


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block as one write transaction; roll back on any error."""
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


def _iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def _parse_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def upsert_session(conn: sqlite3.Connection, session: Session) -> None:
    """Insert or replace every record belonging to a session, atomically.

    Records owned by the same file under another identity are replaced too,
    so one file always maps to exactly one session.
    """
    now = datetime.now(tz=timezone.utc).isoformat()
    try:
        with transaction(conn):
            conn.execute(
                "DELETE FROM messages WHERE session_id IN "
                "(SELECT id FROM sessions WHERE id = ? OR file_path = ?)",
                (session.id, str(session.file_path)),
            )
            conn.execute(
                "DELETE FROM sessions WHERE id = ? OR file_path = ?",
                (session.id, str(session.file_path)),
            )
            conn.execute(
                """
                INSERT INTO sessions (
                    id, native_id, source_kind, file_path, project_path, git_branch,
                    last_modified, file_size, updated_at, message_count, indexed_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session.id,
                    session.native_id,
                    session.source_kind.value,
                    str(session.file_path),
                    session.project_path,
                    session.git_branch,
                    session.last_modified,
                    session.file_size,
                    _iso(session.updated_at),
                    len(session.messages),
                    now,
                ),
            )
            conn.executemany(
                """
                INSERT INTO messages (session_id, seq, role, timestamp, text)
                VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (session.id, m.sequence_index, m.role.value, _iso(m.timestamp), m.text)
                    for m in session.messages
                ],
            )
    except (sqlite3.Error, UnicodeError) as e:
        raise WriteFailed(f"Failed to index session {session.id} ({session.file_path}): {e}") from e


def remove_session(conn: sqlite3.Connection, session_id: str) -> None:
    """Delete all records for a session identity."""
    try:
        with transaction(conn):
            conn.execute("DELETE FROM messages WHERE session_id = ?", (session_id,))
            conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
    except sqlite3.Error as e:
        raise WriteFailed(f"Failed to remove session {session_id}: {e}") from e


def last_indexed_state(conn: sqlite3.Connection, session_id: str) -> float | None:
    """The file mtime recorded when the session was last indexed."""
    row = conn.execute(
        "SELECT last_modified FROM sessions WHERE id = ?", (session_id,)
    ).fetchone()
    return row["last_modified"] if row else None


def indexed_files(conn: sqlite3.Connection) -> dict[Path, IndexedFile]:
    """Last-indexed state of every file in the index, keyed by path."""
    rows = conn.execute("SELECT id, file_path, last_modified, file_size FROM sessions").fetchall()
    return {
        Path(row["file_path"]): IndexedFile(
            session_id=row["id"],
            last_modified=row["last_modified"],
            file_size=row["file_size"],
        )
        for row in rows
    }


def _scope_filter(scope: Scope, alias: str = "s") -> tuple[str, list[Any]]:
    """SQL conditions (each prefixed with AND) restricting sessions to a scope."""
    clauses: list[str] = []
    params: list[Any] = []
    if not scope.is_everywhere:
        clauses.append(f"{alias}.project_path = ?")
        params.append(scope.project_path)
    if scope.source_kind is not None:
        clauses.append(f"{alias}.source_kind = ?")
        params.append(scope.source_kind.value)
    if scope.since is not None:
        clauses.append(f"julianday({alias}.updated_at) >= julianday(?)")
        params.append(_iso(scope.since))
    if scope.until is not None:
        clauses.append(f"julianday({alias}.updated_at) <= julianday(?)")
        params.append(_iso(scope.until))
    if scope.session_id is not None:
        clauses.append(f"{alias}.id = ?")
        params.append(scope.session_id)
    return "".join(f" AND {clause}" for clause in clauses), params


def build_match_expression(text: str, prefix: bool = True) -> str | None:
    """Turn free text into an FTS5 MATCH expression.

    Terms are quoted so punctuation never reaches the FTS5 parser. Any term
    may match; a multi-term query also matches the exact phrase, which adds
    to the BM25 score of messages containing it. With ``prefix`` the last
    term also matches words it begins, for search-as-you-type.
    """
    tokens = _TOKEN_RE.findall(text)
    if not tokens:
        return None
    terms = [f'"{t}"' for t in tokens]
    if prefix:
        terms[-1] += "*"
    if len(tokens) == 1:
        return terms[0]
    phrase = '"' + " ".join(tokens) + '"'
    return " OR ".join([phrase, *terms])


def query(
    conn: sqlite3.Connection,
    text: str,
    scope: Scope,
    limit: int | None = None,
    prefix: bool = True,
) -> Iterator[Candidate]:
    """Lexical search over message text.

    Returns a lazy sequence with every matching message in scope. Scores
    are negated so that larger is better. With ``limit`` only the best
    scoring messages are returned, best first.

    Raises:
        QueryFailed: the expression or the database rejected the query.
    """
    expression = build_match_expression(text, prefix=prefix)
    if expression is None:
        return iter(())

    sql = """
        SELECT m.id, m.session_id, m.seq, m.timestamp, s.last_modified,
               bm25(messages_fts) AS score
        FROM messages_fts
        JOIN messages m ON messages_fts.rowid = m.id
        JOIN sessions s ON m.session_id = s.id
        WHERE messages_fts MATCH ?
    """
    filters, filter_params = _scope_filter(scope)
    sql += filters
    params: list[Any] = [expression, *filter_params]

    if limit is not None:
        sql += " ORDER BY score LIMIT ?"
        params.append(limit)

    try:
        cursor = conn.execute(sql, params)
    except sqlite3.Error as e:
        raise QueryFailed(f"Search for {text!r} failed: {e}") from e
    return _iter_candidates(cursor, text)


def _iter_candidates(cursor: sqlite3.Cursor, text: str) -> Iterator[Candidate]:
    try:
        for row in cursor:
            timestamp = _parse_iso(row["timestamp"]) or datetime.fromtimestamp(
                row["last_modified"], tz=timezone.utc
            )
            yield Candidate(
                session_id=row["session_id"],
                message_id=row["id"],
                sequence_index=row["seq"],
                timestamp=timestamp,
                # BM25 scores are negative (lower is better), so negate them
                raw_score=-row["score"],
            )
    except sqlite3.Error as e:
        raise QueryFailed(f"Search for {text!r} failed: {e}") from e
    finally:
        cursor.close()


def highlight_message(
    conn: sqlite3.Connection, text: str, message_id: int, prefix: bool = True
) -> tuple[str, list[tuple[int, int]]]:
    """Message text plus the codepoint spans FTS5 matched for a query."""
    expression = build_match_expression(text, prefix=prefix)
    original = conn.execute("SELECT text FROM messages WHERE id = ?", (message_id,)).fetchone()
    if original is None:
        return "", []
    if expression is None:
        return original["text"], []

    try:
        row = conn.execute(
            "SELECT highlight(messages_fts, 0, ?, ?) AS marked FROM messages_fts "
            "WHERE messages_fts MATCH ? AND rowid = ?",
            (HIGHLIGHT_OPEN, HIGHLIGHT_CLOSE, expression, message_id),
        ).fetchone()
    except sqlite3.Error as e:
        raise QueryFailed(f"Highlighting {text!r} failed: {e}") from e
    if row is None:
        return original["text"], []
    return original["text"], parse_highlight_spans(original["text"], row["marked"])


def parse_highlight_spans(original: str, marked: str) -> list[tuple[int, int]]:
    """Recover (start, end) codepoint spans from highlight() output.

    ``marked`` is ``original`` with markers inserted; walking both strings
    together keeps offsets right even if the text itself contains a marker.
    """
    spans: list[tuple[int, int]] = []
    start: int | None = None
    j = 0
    for ch in marked:
        if j < len(original) and ch == original[j]:
            j += 1
        elif ch == HIGHLIGHT_OPEN:
            start = j
        elif ch == HIGHLIGHT_CLOSE and start is not None:
            if j > start:
                spans.append((start, j))
            start = None
    return spans


def _session_ref(row: sqlite3.Row) -> SessionRef:
    return SessionRef(
        id=row["id"],
        source_kind=SourceKind(row["source_kind"]),
        native_id=row["native_id"],
        file_path=Path(row["file_path"]),
        project_path=row["project_path"],
        last_modified=row["last_modified"],
        updated_at=datetime.fromisoformat(row["updated_at"]),
        message_count=row["message_count"],
        git_branch=row["git_branch"],
    )


def _message(row: sqlite3.Row) -> Message:
    return Message(
        role=Role(row["role"]),
        text=row["text"],
        timestamp=_parse_iso(row["timestamp"]),
        sequence_index=row["seq"],
    )


def get_session(conn: sqlite3.Connection, session_id: str) -> SessionRef | None:
    """Get a session by ID."""
    row = conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
    return _session_ref(row) if row else None


def get_sessions(conn: sqlite3.Connection, session_ids: list[str]) -> dict[str, SessionRef]:
    """Get several sessions by ID in one query."""
    if not session_ids:
        return {}
    placeholders = ",".join("?" * len(session_ids))
    rows = conn.execute(
        f"SELECT * FROM sessions WHERE id IN ({placeholders})", session_ids
    ).fetchall()
    return {row["id"]: _session_ref(row) for row in rows}


def find_session(conn: sqlite3.Connection, ident: str) -> SessionRef | None:
    """Find a session by recall ID, native tool ID, or a unique prefix of either."""
    row = conn.execute(
        "SELECT * FROM sessions WHERE id = ? OR native_id = ? ORDER BY updated_at DESC LIMIT 1",
        (ident, ident),
    ).fetchone()
    if row is not None:
        return _session_ref(row)

    rows = conn.execute(
        "SELECT * FROM sessions WHERE id LIKE ? OR native_id LIKE ? LIMIT 2",
        (f"{ident}%", f"{ident}%"),
    ).fetchall()
    return _session_ref(rows[0]) if len(rows) == 1 else None


def get_message(conn: sqlite3.Connection, message_id: int) -> Message | None:
    row = conn.execute("SELECT * FROM messages WHERE id = ?", (message_id,)).fetchone()
    return _message(row) if row else None


def get_messages(conn: sqlite3.Connection, session_id: str) -> list[Message]:
    """All messages of a session in sequence order."""
    rows = conn.execute(
        "SELECT * FROM messages WHERE session_id = ? ORDER BY seq", (session_id,)
    ).fetchall()
    return [_message(row) for row in rows]


def get_message_window(
    conn: sqlite3.Connection, session_id: str, sequence_index: int, radius: int
) -> list[Message]:
    """A message plus up to ``radius`` neighbours on each side, in order."""
    rows = conn.execute(
        "SELECT * FROM messages WHERE session_id = ? AND seq BETWEEN ? AND ? ORDER BY seq",
        (session_id, sequence_index - radius, sequence_index + radius),
    ).fetchall()
    return [_message(row) for row in rows]


def get_last_message(conn: sqlite3.Connection, session_id: str) -> Message | None:
    row = conn.execute(
        "SELECT * FROM messages WHERE session_id = ? ORDER BY seq DESC LIMIT 1", (session_id,)
    ).fetchone()
    return _message(row) if row else None


def count_messages(conn: sqlite3.Connection, session_id: str) -> int:
    return conn.execute(
        "SELECT COUNT(*) FROM messages WHERE session_id = ?", (session_id,)
    ).fetchone()[0]


def recent_sessions(conn: sqlite3.Connection, scope: Scope, limit: int = 50) -> list[SessionRef]:
    """Most recently updated non-empty sessions."""
    filters, params = _scope_filter(scope)
    sql = f"SELECT * FROM sessions s WHERE s.message_count > 0{filters}"
    sql += " ORDER BY s.updated_at DESC, s.id LIMIT ?"
    params.append(limit)
    return [_session_ref(row) for row in conn.execute(sql, params).fetchall()]


def set_metadata(conn: sqlite3.Connection, key: str, value: str) -> None:
    """Set a metadata value."""
    conn.execute(
        "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)",
        (key, value),
    )


def get_metadata(conn: sqlite3.Connection, key: str) -> str | None:
    """Get a metadata value."""
    row = conn.execute("SELECT value FROM metadata WHERE key = ?", (key,)).fetchone()
    return row["value"] if row else None


def get_index_stats(conn: sqlite3.Connection, index_path: Path) -> dict[str, Any]:
    """Get index statistics."""
    session_count = conn.execute("SELECT COUNT(*) FROM sessions").fetchone()[0]
    message_count = conn.execute("SELECT COUNT(*) FROM messages").fetchone()[0]
    by_source = {
        row["source_kind"]: row["n"]
        for row in conn.execute(
            "SELECT source_kind, COUNT(*) AS n FROM sessions GROUP BY source_kind"
        ).fetchall()
    }
    index_size = sum(
        Path(f"{index_path}{suffix}").stat().st_size
        for suffix in ("", "-wal")
        if Path(f"{index_path}{suffix}").exists()
    )
    return {
        "session_count": session_count,
        "message_count": message_count,
        "by_source": by_source,
        "index_path": str(index_path),
        "index_size_human": _format_size(index_size),
        "last_indexed": get_metadata(conn, "last_indexed"),
    }


def get_all_projects(conn: sqlite3.Connection) -> list[dict[str, Any]]:
    """Get all unique projects with their session counts."""
    rows = conn.execute("""
        SELECT project_path, COUNT(*) as session_count, MAX(updated_at) as last_updated
        FROM sessions
        WHERE message_count > 0
        GROUP BY project_path
        ORDER BY last_updated DESC
    """).fetchall()
    return [
        {
            "project": row["project_path"],
            "sessions": row["session_count"],
            "last_updated": row["last_updated"],
        }
        for row in rows
    ]


def _format_size(size_bytes: int) -> str:
    """Format byte size as human-readable string."""
    size = float(size_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"
