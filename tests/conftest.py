"""Pytest fixtures for recall tests."""

import json
import os
import tempfile
from pathlib import Path

import pytest

from recall.config import SOURCE_ROOTS, Config
from recall.models import SourceKind
from recall.storage import open_index

PROJECT_DIR = "/work/app"


def _write_jsonl(path: Path, records: list[dict], mtime: float | None = None) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        for record in records:
            f.write(json.dumps(record) + "\n")
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


def _write_json(path: Path, data: dict) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


def _claude_records(
    turns: list[tuple[str, str, str]],
    session_id: str = "claude-session-1",
    cwd: str = PROJECT_DIR,
    git_branch: str | None = "main",
) -> list[dict]:
    """Build Claude Code records from (role, text, timestamp) turns."""
    records = []
    for i, (role, text, timestamp) in enumerate(turns):
        content = text if role == "user" else [{"type": "text", "text": text}]
        record = {
            "type": role,
            "uuid": f"msg-{i:03d}",
            "sessionId": session_id,
            "cwd": cwd,
            "timestamp": timestamp,
            "message": {"role": role, "content": content},
        }
        if git_branch is not None:
            record["gitBranch"] = git_branch
        records.append(record)
    return records


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def write_jsonl():
    """Write records as a JSONL file, optionally setting its mtime."""
    return _write_jsonl


@pytest.fixture
def claude_records():
    """Build Claude Code records from (role, text, timestamp) turns."""
    return _claude_records


@pytest.fixture
def home(temp_dir):
    """An empty home directory with no transcripts."""
    path = temp_dir / "home"
    path.mkdir()
    return path


@pytest.fixture
def config(home, temp_dir):
    return Config(
        home=home,
        cache_dir=temp_dir / "cache",
        launch_cwd=PROJECT_DIR,
        roots={kind: home / rel for kind, rel in SOURCE_ROOTS.items()},
    )


@pytest.fixture
def conn(config):
    """An open, empty index."""
    connection = open_index(config.index_path)
    yield connection
    connection.close()


@pytest.fixture
def make_claude_session(config):
    """Write a Claude Code transcript below the Claude root."""

    def _make(
        name: str,
        turns: list[tuple[str, str, str]],
        cwd: str = PROJECT_DIR,
        mtime: float | None = None,
        **kwargs,
    ) -> Path:
        folder = cwd.replace("/", "-")
        path = config.roots[SourceKind.CLAUDE] / folder / f"{name}.jsonl"
        return _write_jsonl(path, _claude_records(turns, session_id=name, cwd=cwd, **kwargs), mtime)

    return _make


@pytest.fixture
def sample_claude_session(temp_dir):
    """A Claude Code transcript with tool use, thinking and a meta record."""
    session_file = temp_dir / "-work-app" / "test-session-123.jsonl"

    records = [
        {
            "type": "user",
            "uuid": "msg-001",
            "sessionId": "test-session-123",
            "cwd": "/work/app",
            "gitBranch": "feature/auth",
            "timestamp": "2024-01-15T10:00:00Z",
            "message": {"role": "user", "content": "How do I implement authentication?"},
        },
        {
            "type": "assistant",
            "uuid": "msg-002",
            "sessionId": "test-session-123",
            "timestamp": "2024-01-15T10:00:05Z",
            "message": {
                "role": "assistant",
                "content": [
                    {"type": "thinking", "thinking": "Let me think about a good example..."},
                    {"type": "text", "text": "For authentication, you can use JWT tokens..."},
                    {"type": "tool_use", "id": "t1", "name": "Read", "input": {"path": "auth.py"}},
                ],
            },
        },
        {
            "type": "user",
            "uuid": "msg-003",
            "sessionId": "test-session-123",
            "timestamp": "2024-01-15T10:00:06Z",
            "message": {
                "role": "user",
                "content": [
                    {"type": "tool_result", "tool_use_id": "t1", "content": "def login(): ..."},
                ],
            },
        },
        {
            "type": "user",
            "uuid": "msg-004",
            "isMeta": True,
            "sessionId": "test-session-123",
            "timestamp": "2024-01-15T10:00:07Z",
            "message": {"role": "user", "content": "Caveat: generated by a slash command"},
        },
        {
            "type": "user",
            "uuid": "msg-005",
            "sessionId": "test-session-123",
            "timestamp": "2024-01-15T10:01:00Z",
            "message": {"role": "user", "content": "Can you show me an example?"},
        },
        {
            "type": "user",
            "uuid": "msg-006",
            "sessionId": "test-session-123",
            "timestamp": "2024-01-15T10:01:02Z",
            "message": {"role": "user", "content": "With refresh tokens please."},
        },
    ]
    return _write_jsonl(session_file, records)


@pytest.fixture
def sample_codex_session(temp_dir):
    """A Codex rollout with injected context and a function call."""
    session_file = temp_dir / "2025" / "01" / "15" / "rollout-2025-01-15T10-00-00-abc.jsonl"
    records = [
        {
            "type": "session_meta",
            "timestamp": "2025-01-15T10:00:00Z",
            "payload": {"id": "0194-codex-id", "cwd": "/work/api", "git": {"branch": "dev"}},
        },
        {
            "type": "response_item",
            "timestamp": "2025-01-15T10:00:01Z",
            "payload": {
                "type": "message",
                "role": "user",
                "content": [
                    {"type": "input_text", "text": "<environment_context>cwd=/work/api</environment_context>"},
                ],
            },
        },
        {
            "type": "response_item",
            "timestamp": "2025-01-15T10:00:02Z",
            "payload": {
                "type": "message",
                "role": "user",
                "content": [{"type": "input_text", "text": "Fix the flaky pagination test"}],
            },
        },
        {
            "type": "response_item",
            "timestamp": "2025-01-15T10:00:03Z",
            "payload": {"type": "reasoning", "summary": []},
        },
        {
            "type": "response_item",
            "timestamp": "2025-01-15T10:00:04Z",
            "payload": {
                "type": "function_call",
                "name": "shell",
                "arguments": "{\"command\": [\"pytest\", \"-k\", \"pagination\"]}",
            },
        },
        {
            "type": "response_item",
            "timestamp": "2025-01-15T10:00:05Z",
            "payload": {"type": "function_call_output", "output": "1 failed"},
        },
        {
            "type": "response_item",
            "timestamp": "2025-01-15T10:00:06Z",
            "payload": {
                "type": "message",
                "content": [{"type": "output_text", "text": "The cursor was off by one."}],
            },
        },
    ]
    return _write_jsonl(session_file, records)


@pytest.fixture
def sample_factory_session(temp_dir):
    """A Factory droid session with a system reminder."""
    session_file = temp_dir / "-work-web" / "5f2c-factory.jsonl"
    records = [
        {"type": "session_start", "id": "5f2c-factory", "title": "Styling", "cwd": "/work/web"},
        {
            "type": "message",
            "id": "m1",
            "timestamp": "2025-02-01T09:00:00Z",
            "message": {
                "role": "user",
                "content": [
                    {"type": "text", "text": "<system-reminder>be terse</system-reminder>"},
                    {"type": "text", "text": "Make the navbar sticky"},
                ],
            },
        },
        {
            "type": "message",
            "id": "m2",
            "timestamp": "2025-02-01T09:00:05Z",
            "message": {
                "role": "assistant",
                "content": [{"type": "text", "text": "Added position: sticky to the header."}],
            },
        },
        {"type": "todo_state", "id": "t1", "todos": []},
    ]
    return _write_jsonl(session_file, records)


@pytest.fixture
def sample_opencode_session(temp_dir):
    """An OpenCode session spread over session, message and part files."""
    storage = temp_dir / "storage"
    session_file = _write_json(
        storage / "session" / "proj123" / "ses_abc.json",
        {
            "id": "ses_abc",
            "projectID": "proj123",
            "directory": "/work/cli",
            "title": "Argument parsing",
            "time": {"created": 1736935200000, "updated": 1736935260000},
        },
    )
    # Written out of order; created time decides
    _write_json(
        storage / "message" / "ses_abc" / "msg_b.json",
        {"id": "msg_b", "sessionID": "ses_abc", "role": "assistant", "time": {"created": 1736935230000}},
    )
    _write_json(
        storage / "message" / "ses_abc" / "msg_a.json",
        {"id": "msg_a", "sessionID": "ses_abc", "role": "user", "time": {"created": 1736935200000}},
    )
    _write_json(
        storage / "part" / "msg_a" / "prt_1.json",
        {"id": "prt_1", "messageID": "msg_a", "type": "text", "text": "Add a --dry-run flag"},
    )
    _write_json(
        storage / "part" / "msg_b" / "prt_1.json",
        {"id": "prt_1", "messageID": "msg_b", "type": "step-start"},
    )
    _write_json(
        storage / "part" / "msg_b" / "prt_2.json",
        {"id": "prt_2", "messageID": "msg_b", "type": "text", "text": "Done, see parse_args."},
    )
    _write_json(
        storage / "part" / "msg_b" / "prt_3.json",
        {
            "id": "prt_3",
            "messageID": "msg_b",
            "type": "tool",
            "tool": "edit",
            "state": {"status": "completed", "input": {"file": "cli.py"}, "output": "ok"},
        },
    )
    return session_file
