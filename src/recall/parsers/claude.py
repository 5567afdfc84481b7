"""Claude Code transcripts (~/.claude/projects/<encoded-cwd>/<session>.jsonl)."""

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

CLAUDE_RECORD_TYPES = {"user", "assistant", "system", "summary", "file-history-snapshot"}


def decode_project_dir(name: str) -> str | None:
    """Decode a project folder name back into the original cwd.

    "-Users-bob--config-nvim" -> "/Users/bob/.config/nvim"
    """
    if not name.startswith("-"):
        return None
    return name.replace("--", "\x00").replace("-", "/").replace("\x00", "/.")


def extract_content(content: Any) -> tuple[str, bool]:
    """Flatten Claude message content into text.

    Returns (text, tool_results_only) where the flag is set when every block
    was a tool result, i.e. the record is tool output rather than user input.
    """
    if isinstance(content, str):
        return content, False
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
            if isinstance(text, str) and text:
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
        # thinking, image and other blocks are not indexed

    return "\n".join(texts), saw_result and not saw_other


def _is_synthetic(record: dict[str, Any]) -> bool:
    """Compaction summaries and slash-command prompt expansions."""
    return bool(
        record.get("isCompactSummary")
        or record.get("isVisibleInTranscriptOnly")
        or record.get("isMeta")
    )


class ClaudeParser(TranscriptParser):
    kind = SourceKind.CLAUDE

    def parse(self, path: Path) -> Session:
        path = absolute(path)
        file_state = stat_file(path)
        sniffer = SchemaSniffer(path, self.kind)
        warnings: list[str] = []
        messages: list[Message] = []

        session_id: str | None = None
        cwd: str | None = None
        git_branch: str | None = None

        for _, record in iter_jsonl(path, warnings):
            record_type = record.get("type")
            sniffer.observe(record_type in CLAUDE_RECORD_TYPES and "payload" not in record)

            if record_type not in ("user", "assistant", "system"):
                continue
            if _is_synthetic(record):
                continue

            if session_id is None and isinstance(record.get("sessionId"), str):
                session_id = record["sessionId"]
            if cwd is None and isinstance(record.get("cwd"), str):
                cwd = record["cwd"]
            if git_branch is None and isinstance(record.get("gitBranch"), str):
                git_branch = record["gitBranch"] or None

            timestamp = parse_timestamp(record.get("timestamp"))

            msg_data = record.get("message")
            if isinstance(msg_data, dict):
                role = role_from_label(msg_data.get("role")) or role_from_label(record_type)
                text, tool_only = extract_content(msg_data.get("content"))
            elif record_type == "system" and isinstance(record.get("content"), str):
                role, text, tool_only = Role.SYSTEM, record["content"], False
            else:
                continue

            if role is None or not text.strip():
                continue
            trimmed = text.lstrip()
            if trimmed.startswith("<command-message>") or trimmed.startswith("<command-name>"):
                continue
            if tool_only:
                role = Role.TOOL

            messages.append(Message(role=role, text=text, timestamp=timestamp))

        sniffer.finish()

        if cwd is None:
            cwd = decode_project_dir(path.parent.name)

        session = self.new_session(path, file_state, session_id, cwd)
        session.git_branch = git_branch
        session.messages = join_consecutive(messages)
        session.warnings = warnings
        return session
