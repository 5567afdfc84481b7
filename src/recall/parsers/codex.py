"""Codex CLI rollouts (~/.codex/sessions/YYYY/MM/DD/rollout-*.jsonl)."""

from pathlib import Path
from typing import Any

from recall.models import Message, Role, Session, SourceKind
from recall.parsers.base import (
    SchemaSniffer,
    TranscriptParser,
    absolute,
    flatten_tool_use,
    iter_jsonl,
    join_consecutive,
    parse_timestamp,
    role_from_label,
    stat_file,
)

CODEX_RECORD_TYPES = {"session_meta", "response_item", "event_msg", "turn_context", "compacted"}

# Context the CLI injects into the first user turn
INJECTED_PREFIXES = ("<environment_context>", "<user_instructions>")


def extract_message_text(content: Any) -> str:
    if not isinstance(content, list):
        return ""
    texts = []
    for block in content:
        if not isinstance(block, dict):
            continue
        if block.get("type") not in ("input_text", "output_text", "text"):
            continue
        text = block.get("text")
        if not isinstance(text, str) or not text:
            continue
        if text.lstrip().startswith(INJECTED_PREFIXES):
            continue
        texts.append(text)
    return "\n".join(texts)


def infer_role(payload: dict[str, Any]) -> Role | None:
    role = role_from_label(payload.get("role"))
    if role is not None:
        return role
    content = payload.get("content")
    if not isinstance(content, list):
        return None
    types = {b.get("type") for b in content if isinstance(b, dict)}
    if "input_text" in types:
        return Role.USER
    if "output_text" in types:
        return Role.ASSISTANT
    return None


def payload_message(payload: dict[str, Any]) -> tuple[Role, str] | None:
    """Turn a response_item payload into (role, text), or None to skip it."""
    item_type = payload.get("type", "message")

    if item_type == "message":
        role = infer_role(payload)
        if role is None:
            return None
        return role, extract_message_text(payload.get("content"))

    if item_type in ("function_call", "custom_tool_call", "local_shell_call"):
        name = str(payload.get("name") or item_type)
        arguments = payload.get("arguments", payload.get("input", payload.get("action")))
        return Role.TOOL, flatten_tool_use(name, arguments)

    if item_type in ("function_call_output", "custom_tool_call_output"):
        output = payload.get("output")
        if isinstance(output, dict):
            output = output.get("content") or output.get("output")
        return Role.TOOL, output if isinstance(output, str) else ""

    # reasoning items are not indexed
    return None


class CodexParser(TranscriptParser):
    kind = SourceKind.CODEX

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
            payload = record.get("payload")
            sniffer.observe(record_type in CODEX_RECORD_TYPES and isinstance(payload, dict))
            if not isinstance(payload, dict):
                continue

            if record_type == "session_meta":
                # first session_meta wins
                if session_id is None and isinstance(payload.get("id"), str):
                    session_id = payload["id"]
                if cwd is None and isinstance(payload.get("cwd"), str):
                    cwd = payload["cwd"]
                git = payload.get("git")
                if git_branch is None and isinstance(git, dict) and isinstance(git.get("branch"), str):
                    git_branch = git["branch"]
                continue

            if record_type != "response_item":
                continue

            decoded = payload_message(payload)
            if decoded is None:
                continue
            role, text = decoded
            if not text.strip():
                continue
            messages.append(
                Message(role=role, text=text, timestamp=parse_timestamp(record.get("timestamp")))
            )

        sniffer.finish()

        session = self.new_session(path, file_state, session_id, cwd)
        session.git_branch = git_branch
        session.messages = join_consecutive(messages)
        session.warnings = warnings
        return session
