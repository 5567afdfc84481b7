"""Shared decoding helpers for the transcript parsers."""

import json
import logging
import os
import re
from collections.abc import Iterator
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from recall.errors import MalformedRecord, Unreadable, UnrecognizedFormat
from recall.models import (
    Message,
    Role,
    Session,
    SourceKind,
    derive_session_id,
    normalize_project_path,
)

logger = logging.getLogger(__name__)

# A JSONL file whose first few valid records all belong to another schema
# is rejected early instead of being decoded to the end.
SNIFF_RECORDS = 8

# A \uD800-\uDFFF escape can decode to a lone surrogate, which is not valid UTF-8
_SURROGATE_ESCAPE = re.compile(r"\\u[dD][89a-fA-F]")


class TranscriptParser:
    """Base class for the format-specific parsers.

    Subclasses set ``kind`` and implement ``parse``; parsers hold no state
    between calls.
    """

    kind: SourceKind

    def parse(self, path: Path) -> Session:
        raise NotImplementedError

    def new_session(
        self,
        path: Path,
        file_state: tuple[float, int],
        native_id: str | None,
        project_path: str | None,
    ) -> Session:
        """Build the Session shell; ``file_state`` must be taken before reading."""
        mtime, size = file_state
        return Session(
            id=derive_session_id(path, self.kind),
            source_kind=self.kind,
            native_id=native_id or path.stem,
            file_path=path,
            project_path=normalize_project_path(project_path or "."),
            last_modified=mtime,
            file_size=size,
        )


def absolute(path: Path | str) -> Path:
    return Path(os.path.abspath(path))


def stat_file(path: Path) -> tuple[float, int]:
    """Return (mtime, size) for a transcript file."""
    try:
        st = path.stat()
    except OSError as e:
        raise Unreadable(path, str(e)) from e
    return st.st_mtime, st.st_size


def iter_jsonl(path: Path, warnings: list[str]) -> Iterator[tuple[int, dict[str, Any]]]:
    """Yield (line_number, record) for every valid JSON object line.

    Malformed lines are recorded in ``warnings`` and skipped.
    """
    try:
        f = open(path, "rb")
    except OSError as e:
        raise Unreadable(path, str(e)) from e

    with f:
        line_num = 0
        while True:
            try:
                raw = f.readline()
            except OSError as e:
                raise Unreadable(path, str(e)) from e
            if not raw:
                break
            line_num += 1
            if not raw.strip():
                continue
            try:
                yield line_num, decode_record(path, line_num, raw)
            except MalformedRecord as e:
                warnings.append(str(e))
                logger.debug("Skipping malformed record: %s", e)


def _scrub(value: Any) -> Any:
    if isinstance(value, str):
        return value.encode("utf-8", "replace").decode("utf-8")
    if isinstance(value, list):
        return [_scrub(v) for v in value]
    if isinstance(value, dict):
        return {_scrub(k): _scrub(v) for k, v in value.items()}
    return value


def load_json_text(text: str) -> Any:
    """Decode a JSON document into values that can always be stored.

    Lone surrogates are replaced with "?".

    Raises:
        ValueError: invalid JSON, or nesting too deep to decode.
    """
    try:
        value = json.loads(text)
        if _SURROGATE_ESCAPE.search(text):
            value = _scrub(value)
    except RecursionError as e:
        raise ValueError("nesting too deep") from e
    return value


def decode_record(path: Path, line_num: int, raw: bytes) -> dict[str, Any]:
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise MalformedRecord(path, line_num, f"invalid UTF-8 ({e.reason})") from e
    try:
        record = load_json_text(text)
    except json.JSONDecodeError as e:
        raise MalformedRecord(path, line_num, f"invalid JSON ({e.msg})") from e
    except ValueError as e:
        raise MalformedRecord(path, line_num, f"invalid JSON ({e})") from e
    if not isinstance(record, dict):
        raise MalformedRecord(path, line_num, "record is not an object")
    return record


class SchemaSniffer:
    """Tracks whether a file has shown any record of the expected schema."""

    def __init__(self, path: Path, kind: SourceKind):
        self.path = path
        self.kind = kind
        self.seen = 0
        self.recognized = 0

    def observe(self, recognized: bool) -> None:
        self.seen += 1
        if recognized:
            self.recognized += 1
        elif self.recognized == 0 and self.seen >= SNIFF_RECORDS:
            raise UnrecognizedFormat(self.path, f"not a {self.kind.display_name} transcript")

    def finish(self) -> None:
        if self.recognized == 0:
            raise UnrecognizedFormat(self.path, f"not a {self.kind.display_name} transcript")


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an RFC 3339 string or epoch milliseconds into an aware datetime."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str) and value:
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    return None


def flatten_tool_use(name: str, tool_input: Any) -> str:
    """Text form of a tool invocation."""
    if tool_input in (None, {}, ""):
        return f"[tool: {name}]"
    if isinstance(tool_input, str):
        return f"[tool: {name}] {tool_input}"
    return f"[tool: {name}] {json.dumps(tool_input, ensure_ascii=False, sort_keys=True)}"


def flatten_blocks_text(content: Any) -> str:
    """Text of a tool result, which is a string or a list of text blocks."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = []
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text":
                text = block.get("text")
                if isinstance(text, str) and text:
                    texts.append(text)
            elif isinstance(block, str) and block:
                texts.append(block)
        return "\n".join(texts)
    return ""


def join_consecutive(messages: list[Message]) -> list[Message]:
    """Merge runs of same-role messages and assign contiguous indices."""
    joined: list[Message] = []
    for msg in messages:
        if joined and joined[-1].role == msg.role:
            prev = joined[-1]
            prev.text = f"{prev.text}\n{msg.text}"
            if msg.timestamp is not None and (prev.timestamp is None or msg.timestamp > prev.timestamp):
                prev.timestamp = msg.timestamp
        else:
            joined.append(Message(role=msg.role, text=msg.text, timestamp=msg.timestamp))

    for i, msg in enumerate(joined):
        msg.sequence_index = i
    return joined


def role_from_label(label: Any) -> Role | None:
    """Map a source-specific role label onto the canonical roles."""
    if not isinstance(label, str):
        return None
    return {
        "user": Role.USER,
        "human": Role.USER,
        "assistant": Role.ASSISTANT,
        "model": Role.ASSISTANT,
        "system": Role.SYSTEM,
        "developer": Role.SYSTEM,
        "tool": Role.TOOL,
    }.get(label.lower())
