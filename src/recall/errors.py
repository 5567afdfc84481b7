"""Exception hierarchy for recall."""

from pathlib import Path


class RecallError(Exception):
    """Base class for all recall errors."""


class ParseError(RecallError):
    """A transcript file could not be turned into a Session."""

    def __init__(self, path: Path, message: str):
        super().__init__(f"{path}: {message}")
        self.path = path


class Unreadable(ParseError):
    """The file could not be opened or read."""


class UnrecognizedFormat(ParseError):
    """The file does not match the schema of the parser that tried it."""


class MalformedRecord(ParseError):
    """A single record inside a transcript is invalid.

    Raised and handled inside the parsers; never escapes ``parse()``.
    """

    def __init__(self, path: Path, line_number: int, message: str):
        super().__init__(path, f"line {line_number}: {message}")
        self.line_number = line_number


class IndexStoreError(RecallError):
    """Base class for failures of the persisted search index."""


class WriteFailed(IndexStoreError):
    """An upsert or removal could not be committed."""


class CorruptIndex(IndexStoreError):
    """The on-disk index is unusable and must be rebuilt."""

    def __init__(self, path: Path, detail: str):
        super().__init__(
            f"Search index at {path} is corrupt ({detail}). "
            "Run 'recall index --reset' to rebuild it."
        )
        self.path = path


class QueryFailed(IndexStoreError):
    """A search could not be executed against the index."""
