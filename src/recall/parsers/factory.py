"""Factory droid sessions (~/.factory/sessions/<encoded-cwd>/<id>.jsonl)."""

from pathlib import Path
from typing import Any

from recall.models import Message, Role, Session, SourceKind
from recall.parsers.base import (
    SchemaSniffer,
    TranscriptParser,
    absolute,
    flatten_blocks_text,
    flatten_tool_use,
    iter_jsonl,
    join_consecutive,
    parse_timestamp,
    role_from_label,
    stat_file,
)

FACTORY_RECORD_TYPES = {"session_start", "message", "todo_state"}


def decode_cwd_dir(name: str) -> str | None:
    """Decode "-Users-zippo-code-recall" into "/Users/zippo/code/recall"."""
    if not name.startswith("-"):
        return None
    return name.replace("-", "/")


def is_system_reminder(text: str) -> bool:
    trimmed = text.strip()
    return trimmed.startswith("<system-reminder>") and trimmed.endswith("</system-reminder>")


def extract_content(content: Any) -> tuple[str, bool]:
    """Flatten Factory content blocks; flag records made only of tool results."""
    if isinstance(content, str):
        return ("" if is_system_reminder(content) else content), False
    if not isinstance(content, list):
        return "", False

    texts: list[str] = []
    saw_result = False
    saw_other = False
    for block in content:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type == "text":
            text = block.get("text")
            if isinstance(text, str) and text and not is_system_reminder(text):
                texts.append(text)
                saw_other = True
        elif block_type == "tool_use":
            texts.append(flatten_tool_use(str(block.get("name", "unknown")), block.get("input")))
            saw_other = True
        elif block_type == "tool_result":
            saw_result = True
            text = flatten_blocks_text(block.get("content"))
            if text:
                texts.append(text)
    return "\n".join(texts), saw_result and not saw_other


class FactoryParser(TranscriptParser):
    kind = SourceKind.FACTORY

    def parse(self, path: Path) -> Session:
        path = absolute(path)
        file_state = stat_file(path)
        sniffer = SchemaSniffer(path, self.kind)
        warnings: list[str] = []
        messages: list[Message] = []

        session_id: str | None = None
        cwd: str | None = None

        for _, record in iter_jsonl(path, warnings):
            record_type = record.get("type")
            msg_data = record.get("message")
            sniffer.observe(record_type in FACTORY_RECORD_TYPES and "payload" not in record)

            if record_type == "session_start":
                if session_id is None and isinstance(record.get("id"), str):
                    session_id = record["id"]
                if cwd is None and isinstance(record.get("cwd"), str):
                    cwd = record["cwd"]
                continue

            if record_type != "message" or not isinstance(msg_data, dict):
                continue

            role = role_from_label(msg_data.get("role"))
            if role is None:
                continue
            text, tool_only = extract_content(msg_data.get("content"))
            if not text.strip():
                continue
            if tool_only:
                role = Role.TOOL
            messages.append(
                Message(role=role, text=text, timestamp=parse_timestamp(record.get("timestamp")))
            )

        sniffer.finish()

        if cwd is None:
            cwd = decode_cwd_dir(path.parent.name)

        session = self.new_session(path, file_state, session_id, cwd)
        session.messages = join_consecutive(messages)
        session.warnings = warnings
        return session
