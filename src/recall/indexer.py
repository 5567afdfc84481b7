"""Incremental transcript indexer.

Discovers transcript files for every source format, reparses the ones
whose mtime or size changed since they were last indexed (most recently
modified first) and drops sessions whose file disappeared.
"""

import logging
import os
import queue
import sqlite3
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from recall.errors import IndexStoreError, ParseError
from recall.models import IndexComplete, IndexEvent, IndexProgress, IndexSkip, SourceKind
from recall.parsers import parse_session_file
from recall.storage import (
    IndexedFile,
    indexed_files,
    open_index,
    remove_session,
    set_metadata,
    upsert_session,
)

logger = logging.getLogger(__name__)

# Glob patterns below each format's root directory
DISCOVERY_PATTERNS: dict[SourceKind, str] = {
    SourceKind.CLAUDE: "*/*.jsonl",
    SourceKind.CODEX: "**/*.jsonl",
    SourceKind.FACTORY: "**/*.jsonl",
    SourceKind.OPENCODE: "*/ses_*.json",
}

EVENT_QUEUE_SIZE = 256


@dataclass
class DiscoveredFile:
    path: Path
    source_kind: SourceKind
    mtime: float
    size: int


def _walk(root: Path, pattern: str) -> Iterator[Path]:
    try:
        yield from root.glob(pattern)
    except OSError as e:
        logger.warning("Cannot scan %s: %s", root, e)


def discover_sessions(roots: dict[SourceKind, Path]) -> list[DiscoveredFile]:
    """Find every transcript file under the configured roots.

    Files that vanish or cannot be stat'ed during the scan are skipped.
    """
    found: list[DiscoveredFile] = []
    seen: set[Path] = set()

    for kind, root in roots.items():
        if not root.is_dir():
            logger.debug("No %s transcripts at %s", kind.display_name, root)
            continue
        for path in _walk(root, DISCOVERY_PATTERNS[kind]):
            # Claude side-chain transcripts belong to their parent session
            if kind is SourceKind.CLAUDE and path.name.startswith("agent-"):
                continue
            path = Path(os.path.abspath(path))
            if path in seen:
                continue
            try:
                st = path.stat()
            except OSError as e:
                logger.warning("Cannot stat %s: %s", path, e)
                continue
            if not path.is_file():
                continue
            seen.add(path)
            found.append(DiscoveredFile(path, kind, st.st_mtime, st.st_size))

    return found


def sessions_to_index(
    discovered: list[DiscoveredFile],
    indexed: dict[Path, IndexedFile],
    force: bool = False,
) -> list[DiscoveredFile]:
    """Files that are new or changed, most recently modified first."""
    pending = []
    for f in discovered:
        state = indexed.get(f.path)
        if force or state is None or state.last_modified != f.mtime or state.file_size != f.size:
            pending.append(f)
    pending.sort(key=lambda f: str(f.path))
    pending.sort(key=lambda f: f.mtime, reverse=True)
    return pending


def _label(f: DiscoveredFile) -> str:
    return f"{f.source_kind.display_name}: {f.path.parent.name}/{f.path.name}"


def run_index_pass(
    conn: sqlite3.Connection,
    roots: dict[SourceKind, Path],
    force: bool = False,
    on_event: Callable[[IndexEvent], None] | None = None,
) -> IndexComplete:
    """Bring the index up to date with the files on disk.

    A file that cannot be parsed or stored is skipped and reported in the
    completion event; it never stops the pass.
    """
    emit = on_event or (lambda event: None)

    discovered = discover_sessions(roots)
    indexed = indexed_files(conn)
    pending = sessions_to_index(discovered, indexed, force=force)
    logger.info("Found %d transcript files, %d to index", len(discovered), len(pending))

    diagnostics: list[IndexSkip] = []
    indexed_count = 0

    for done, f in enumerate(pending, 1):
        try:
            session = parse_session_file(f.path)
            upsert_session(conn, session)
            indexed_count += 1
        except (ParseError, IndexStoreError) as e:
            logger.warning("Skipping %s: %s", f.path, e)
            diagnostics.append(IndexSkip(path=f.path, reason=str(e)))
        emit(IndexProgress(files_done=done, files_total=len(pending), current_label=_label(f)))

    on_disk = {f.path for f in discovered}
    removed = 0
    for path, state in indexed.items():
        if path in on_disk:
            continue
        try:
            remove_session(conn, state.session_id)
            removed += 1
            logger.debug("Removed session %s (%s no longer exists)", state.session_id, path)
        except IndexStoreError as e:
            logger.warning("Could not remove %s: %s", path, e)
            diagnostics.append(IndexSkip(path=path, reason=str(e)))

    set_metadata(conn, "last_indexed", datetime.now(tz=timezone.utc).isoformat())
    total = conn.execute("SELECT COUNT(*) FROM sessions").fetchone()[0]

    complete = IndexComplete(
        total_sessions=total,
        indexed=indexed_count,
        skipped=len(diagnostics),
        removed=removed,
        diagnostics=diagnostics,
    )
    logger.info(
        "Index pass complete: %d indexed, %d skipped, %d removed",
        indexed_count,
        len(diagnostics),
        removed,
    )
    emit(complete)
    return complete


class BackgroundIndexer:
    """Runs one index pass on a daemon thread.

    The thread owns its own connection, so it is the only writer; callers
    keep querying through theirs. Events arrive through a bounded queue in
    processing order. When the queue is nearly full, progress events are
    dropped rather than blocking the pass, but the completion event is
    always delivered.
    """

    def __init__(
        self,
        index_path: Path,
        roots: dict[SourceKind, Path],
        force: bool = False,
        maxsize: int = EVENT_QUEUE_SIZE,
    ):
        if maxsize < 2:
            raise ValueError(f"Event queue needs room for at least 2 events, got {maxsize}")
        self._index_path = index_path
        self._roots = roots
        self._force = force
        self._events: queue.Queue[IndexEvent] = queue.Queue(maxsize=maxsize)
        self._done = threading.Event()
        self._thread: threading.Thread | None = None
        self.result: IndexComplete | None = None
        self.error: Exception | None = None

    def start(self) -> None:
        """Start the background indexing thread."""
        if self._thread is not None:
            logger.warning("Indexer already started")
            return
        self._thread = threading.Thread(
            target=self._run,
            name="recall-indexer",
            daemon=True,
        )
        self._thread.start()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the pass finishes; returns False on timeout."""
        return self._done.wait(timeout)

    def drain(self) -> list[IndexEvent]:
        """Take every pending event at once."""
        events: list[IndexEvent] = []
        while True:
            try:
                events.append(self._events.get_nowait())
            except queue.Empty:
                return events

    def _publish(self, event: IndexEvent) -> None:
        if isinstance(event, IndexComplete):
            # Reserved slot: progress never fills the last one
            self._events.put(event)
            return
        if self._events.qsize() < self._events.maxsize - 1:
            self._events.put_nowait(event)

    def _run(self) -> None:
        logger.debug("Indexer thread started")
        conn = None
        try:
            conn = open_index(self._index_path)
            self.result = run_index_pass(conn, self._roots, force=self._force, on_event=self._publish)
        except Exception as e:
            logger.exception("Indexing failed")
            self.error = e
            self._events.put(IndexComplete(total_sessions=0, indexed=0, skipped=0, removed=0))
        finally:
            if conn is not None:
                conn.close()
            self._done.set()
            logger.debug("Indexer thread stopped")
