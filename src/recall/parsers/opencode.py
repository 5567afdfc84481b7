"""OpenCode sessions.

Layout under ~/.local/share/opencode/storage/:
    session/<project_id>/ses_*.json   session metadata (the indexed file)
    message/<session_id>/msg_*.json   one file per message
    part/<message_id>/prt_*.json      message content parts
"""

import logging
from pathlib import Path
from typing import Any

from recall.errors import MalformedRecord, Unreadable, UnrecognizedFormat
from recall.models import Message, Session, SourceKind
from recall.parsers.base import (
    TranscriptParser,
    absolute,
    flatten_tool_use,
    join_consecutive,
    load_json_text,
    parse_timestamp,
    role_from_label,
    stat_file,
)

logger = logging.getLogger(__name__)


def storage_root(session_path: Path) -> Path:
    """storage/session/<project>/ses_*.json -> storage/"""
    return session_path.parent.parent.parent


def _load_json(path: Path) -> Any:
    with open(path, encoding="utf-8") as f:
        return load_json_text(f.read())


def _load_record(path: Path, warnings: list[str]) -> dict[str, Any] | None:
    """Load a message or part file; invalid files are recorded and skipped."""
    try:
        data = _load_json(path)
    except (OSError, ValueError) as e:
        error = MalformedRecord(path, 1, str(e))
    else:
        if isinstance(data, dict):
            return data
        error = MalformedRecord(path, 1, "record is not an object")
    warnings.append(str(error))
    logger.debug("Skipping malformed record: %s", error)
    return None


def _created(record: dict[str, Any]) -> int:
    time_info = record.get("time")
    if isinstance(time_info, dict) and isinstance(time_info.get("created"), (int, float)):
        return int(time_info["created"])
    return 0


def part_text(part: dict[str, Any]) -> str:
    part_type = part.get("type")
    if part_type == "text":
        if part.get("synthetic"):
            return ""
        text = part.get("text")
        return text if isinstance(text, str) else ""
    if part_type == "tool":
        state = part.get("state") if isinstance(part.get("state"), dict) else {}
        text = flatten_tool_use(str(part.get("tool", "unknown")), state.get("input"))
        output = state.get("output")
        if isinstance(output, str) and output:
            text = f"{text}\n{output}"
        return text
    # step-start, step-finish, reasoning, snapshot and patch parts are not indexed
    return ""


def read_message_text(root: Path, message_id: str, warnings: list[str]) -> str:
    parts_dir = root / "part" / message_id
    if not parts_dir.is_dir():
        return ""
    texts = []
    # prt_* ids sort in creation order
    for part_path in sorted(parts_dir.glob("*.json")):
        part = _load_record(part_path, warnings)
        if part is None:
            continue
        text = part_text(part)
        if text:
            texts.append(text)
    return "\n".join(texts)


class OpenCodeParser(TranscriptParser):
    kind = SourceKind.OPENCODE

    def parse(self, path: Path) -> Session:
        path = absolute(path)
        if path.suffix != ".json":
            raise UnrecognizedFormat(path, "not an OpenCode session file")
        file_state = stat_file(path)

        try:
            meta = _load_json(path)
        except OSError as e:
            raise Unreadable(path, str(e)) from e
        except ValueError as e:
            raise UnrecognizedFormat(path, f"not an OpenCode session file ({e})") from e

        if (
            not isinstance(meta, dict)
            or not isinstance(meta.get("id"), str)
            or "type" in meta
            or not ({"time", "directory", "projectID"} & meta.keys())
        ):
            raise UnrecognizedFormat(path, "not an OpenCode session file")

        warnings: list[str] = []
        root = storage_root(path)
        cwd = meta.get("directory") if isinstance(meta.get("directory"), str) else None

        records: list[tuple[int, str, dict[str, Any]]] = []
        message_dir = root / "message" / meta["id"]
        if message_dir.is_dir():
            for msg_path in message_dir.glob("*.json"):
                record = _load_record(msg_path, warnings)
                if record is not None:
                    records.append((_created(record), msg_path.name, record))
        records.sort(key=lambda r: (r[0], r[1]))

        messages: list[Message] = []
        for created, _, record in records:
            if cwd is None and isinstance(record.get("path"), dict):
                path_cwd = record["path"].get("cwd")
                if isinstance(path_cwd, str):
                    cwd = path_cwd

            role = role_from_label(record.get("role"))
            if role is None or not isinstance(record.get("id"), str):
                continue
            text = read_message_text(root, record["id"], warnings)
            if not text.strip():
                continue
            messages.append(Message(role=role, text=text, timestamp=parse_timestamp(created or None)))

        session = self.new_session(path, file_state, meta["id"], cwd)
        session.messages = join_consecutive(messages)
        session.warnings = warnings
        return session
