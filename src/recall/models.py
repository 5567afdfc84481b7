"""Data models for recall."""

import hashlib
import os
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path


class SourceKind(str, Enum):
    """The CLI tool a transcript was written by."""

    CLAUDE = "claude"
    CODEX = "codex"
    FACTORY = "factory"
    OPENCODE = "opencode"

    @property
    def display_name(self) -> str:
        return {
            SourceKind.CLAUDE: "Claude",
            SourceKind.CODEX: "Codex",
            SourceKind.FACTORY: "Factory",
            SourceKind.OPENCODE: "OpenCode",
        }[self]


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


def derive_session_id(file_path: Path, source_kind: SourceKind) -> str:
    """Stable session identity: a pure function of the file path and format."""
    digest = hashlib.sha1(str(file_path).encode("utf-8")).hexdigest()[:16]
    return f"{source_kind.value}-{digest}"


def normalize_project_path(project_path: str) -> str:
    """Canonical spelling of a working directory for scope comparisons."""
    if not project_path or project_path == ".":
        return "."
    return os.path.normpath(project_path)


@dataclass(frozen=True)
class Scope:
    """Which sessions a query or listing may return.

    ``project_path`` restricts to one working directory (None means every
    project). The other fields narrow further when set; ``since`` and
    ``until`` bound the session's last activity.
    """

    project_path: str | None = None
    source_kind: SourceKind | None = None
    since: datetime | None = None
    until: datetime | None = None
    session_id: str | None = None

    @classmethod
    def everywhere(cls) -> "Scope":
        return cls(None)

    @classmethod
    def project(cls, path: str) -> "Scope":
        return cls(normalize_project_path(path))

    @property
    def is_everywhere(self) -> bool:
        return self.project_path is None

    def narrow(self, **filters) -> "Scope":
        """Copy with every filter that is not None applied."""
        return replace(self, **{k: v for k, v in filters.items() if v is not None})


@dataclass
class Message:
    """A single message within a session."""

    role: Role
    text: str
    timestamp: datetime | None
    sequence_index: int = 0


@dataclass
class Session:
    """A conversation transcript normalized from any supported format."""

    id: str
    source_kind: SourceKind
    native_id: str
    file_path: Path
    project_path: str
    last_modified: float  # file mtime (epoch seconds) observed before reading
    file_size: int = 0
    git_branch: str | None = None
    messages: list[Message] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def updated_at(self) -> datetime:
        """Latest message timestamp, falling back to the file mtime."""
        stamps = [m.timestamp for m in self.messages if m.timestamp is not None]
        if stamps:
            return max(stamps)
        return datetime.fromtimestamp(self.last_modified, tz=timezone.utc)


@dataclass
class SessionRef:
    """An indexed session as stored in the index (no messages loaded)."""

    id: str
    source_kind: SourceKind
    native_id: str
    file_path: Path
    project_path: str
    last_modified: float
    updated_at: datetime
    message_count: int = 0
    git_branch: str | None = None

    @property
    def project_name(self) -> str:
        return Path(self.project_path).name or self.project_path


@dataclass
class Candidate:
    """One matching message reported by the index, with its raw BM25 score."""

    session_id: str
    message_id: int
    sequence_index: int
    timestamp: datetime
    raw_score: float


@dataclass
class Snippet:
    """A bounded excerpt of a message with highlight spans in codepoints."""

    text: str
    highlights: list[tuple[int, int]] = field(default_factory=list)


@dataclass
class SearchResult:
    """A ranked session with its anchor message and highlighted excerpt."""

    session: SessionRef
    anchor: Message
    relevance_score: float
    final_score: float
    highlights: list[tuple[int, int]] = field(default_factory=list)
    snippet: Snippet | None = None
    match_count: int = 1
    context: list[Message] = field(default_factory=list)


@dataclass
class IndexProgress:
    """Emitted after each file the background indexer processes."""

    files_done: int
    files_total: int
    current_label: str


@dataclass
class IndexSkip:
    """A file the indexer could not parse or store."""

    path: Path
    reason: str


@dataclass
class IndexComplete:
    """Final event of an indexing pass."""

    total_sessions: int
    indexed: int
    skipped: int
    removed: int
    diagnostics: list[IndexSkip] = field(default_factory=list)


IndexEvent = IndexProgress | IndexComplete


# Default argv used by each tool to reopen a conversation; {id} is the native id
RESUME_COMMANDS: dict[SourceKind, str] = {
    SourceKind.CLAUDE: "claude --resume {id}",
    SourceKind.CODEX: "codex resume {id}",
    SourceKind.FACTORY: "droid --resume {id}",
    SourceKind.OPENCODE: "opencode --session {id}",
}


def resume_command(
    source_kind: SourceKind,
    native_id: str,
    overrides: dict[SourceKind, str] | None = None,
) -> list[str]:
    """Build the argv that resumes a session in its own CLI tool.

    The command is only returned; recall never runs it.
    """
    template = (overrides or {}).get(source_kind) or RESUME_COMMANDS[source_kind]
    parts = template.split()
    if not parts:
        parts = RESUME_COMMANDS[source_kind].split()
    return [part.replace("{id}", native_id) for part in parts]
