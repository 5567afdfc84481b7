"""Transcript parsers and format auto-detection."""

import logging
from pathlib import Path

from recall.errors import UnrecognizedFormat
from recall.models import Session
from recall.parsers.base import TranscriptParser
from recall.parsers.claude import ClaudeParser
from recall.parsers.codex import CodexParser
from recall.parsers.factory import FactoryParser
from recall.parsers.opencode import OpenCodeParser

logger = logging.getLogger(__name__)

# Detection order: most distinctive schema first. OpenCode is the only
# whole-document JSON format, Codex wraps everything in typed payloads,
# Factory opens with session_start, and Claude's bare user/assistant
# records are the most generic.
PARSERS: tuple[TranscriptParser, ...] = (
    OpenCodeParser(),
    CodexParser(),
    FactoryParser(),
    ClaudeParser(),
)


def parse_session_file(path: Path) -> Session:
    """Parse a transcript, auto-detecting its format.

    Raises:
        Unreadable: the file cannot be read.
        UnrecognizedFormat: no parser accepted the file.
    """
    for parser in PARSERS:
        try:
            session = parser.parse(path)
        except UnrecognizedFormat:
            continue
        if session.warnings:
            logger.debug("%s: skipped %d malformed records", path, len(session.warnings))
        return session
    raise UnrecognizedFormat(Path(path), "no known transcript format matched")


__all__ = [
    "PARSERS",
    "ClaudeParser",
    "CodexParser",
    "FactoryParser",
    "OpenCodeParser",
    "TranscriptParser",
    "parse_session_file",
]
