"""Configuration for recall.

Resolved once at startup from environment variables and passed down
explicitly; nothing below the CLI looks up the environment on its own.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from recall.models import SourceKind

# Default transcript locations relative to the home directory
SOURCE_ROOTS: dict[SourceKind, str] = {
    SourceKind.CLAUDE: ".claude/projects",
    SourceKind.CODEX: ".codex/sessions",
    SourceKind.FACTORY: ".factory/sessions",
    SourceKind.OPENCODE: ".local/share/opencode/storage/session",
}

INDEX_FILENAME = "index.db"


@dataclass
class Config:
    """Application configuration."""

    home: Path
    cache_dir: Path
    launch_cwd: str
    roots: dict[SourceKind, Path] = field(default_factory=dict)
    resume_overrides: dict[SourceKind, str] = field(default_factory=dict)

    @property
    def index_path(self) -> Path:
        return self.cache_dir / INDEX_FILENAME

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables.

        RECALL_HOME_OVERRIDE replaces the home directory (used by tests),
        RECALL_CACHE_DIR relocates the index and RECALL_CWD_OVERRIDE sets
        the directory used for project-scoped search. RECALL_CLAUDE_CMD,
        RECALL_CODEX_CMD, RECALL_FACTORY_CMD and RECALL_OPENCODE_CMD replace
        the resume command ("{id}" is substituted).
        """
        override = os.getenv("RECALL_HOME_OVERRIDE")
        home = Path(override).expanduser() if override else Path.home()

        cache_env = os.getenv("RECALL_CACHE_DIR")
        if cache_env:
            cache_dir = Path(cache_env).expanduser()
        elif override:
            cache_dir = home / ".cache" / "recall"
        else:
            xdg = os.getenv("XDG_CACHE_HOME")
            cache_dir = (Path(xdg) if xdg else home / ".cache") / "recall"

        launch_cwd = os.getenv("RECALL_CWD_OVERRIDE") or os.getcwd()

        return cls(
            home=home,
            cache_dir=cache_dir,
            launch_cwd=launch_cwd,
            roots={kind: home / rel for kind, rel in SOURCE_ROOTS.items()},
            resume_overrides={
                kind: cmd
                for kind in SourceKind
                if (cmd := os.getenv(f"RECALL_{kind.name}_CMD", "").strip())
            },
        )
