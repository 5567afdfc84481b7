"""Integration tests for the CLI."""

import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

SRC_DIR = Path(__file__).resolve().parents[2] / "src"


def write_claude_transcript(home: Path, name: str, text: str, cwd: str = "/work/app") -> Path:
    path = home / ".claude" / "projects" / cwd.replace("/", "-") / f"{name}.jsonl"
    path.parent.mkdir(parents=True, exist_ok=True)
    records = [
        {
            "type": "user",
            "sessionId": name,
            "cwd": cwd,
            "timestamp": "2025-01-15T10:00:00Z",
            "message": {"role": "user", "content": text},
        },
        {
            "type": "assistant",
            "sessionId": name,
            "cwd": cwd,
            "timestamp": "2025-01-15T10:00:05Z",
            "message": {"role": "assistant", "content": [{"type": "text", "text": "Sure thing."}]},
        },
    ]
    path.write_text("".join(json.dumps(r) + "\n" for r in records), encoding="utf-8")
    return path


def write_codex_transcript(home: Path, native_id: str, text: str, cwd: str = "/work/app") -> Path:
    path = home / ".codex" / "sessions" / "2025" / "01" / "15" / f"rollout-2025-01-15T10-00-00-{native_id}.jsonl"
    path.parent.mkdir(parents=True, exist_ok=True)
    records = [
        {"type": "session_meta", "timestamp": "2025-01-15T10:00:00Z", "payload": {"id": native_id, "cwd": cwd}},
        {
            "type": "response_item",
            "timestamp": "2025-01-15T10:00:01Z",
            "payload": {"type": "message", "role": "user", "content": [{"type": "input_text", "text": text}]},
        },
    ]
    path.write_text("".join(json.dumps(r) + "\n" for r in records), encoding="utf-8")
    return path


@pytest.fixture
def run_cli(home):
    """Run the CLI against a temporary home directory."""

    def _run(*args: str, cwd: str = "/work/app", extra_env: dict | None = None):
        env = dict(os.environ)
        env.update(
            {
                "RECALL_HOME_OVERRIDE": str(home),
                "RECALL_CWD_OVERRIDE": cwd,
                "PYTHONPATH": os.pathsep.join(filter(None, [str(SRC_DIR), env.get("PYTHONPATH")])),
                "COLUMNS": "200",
            }
        )
        env.pop("RECALL_CACHE_DIR", None)
        env.update(extra_env or {})
        return subprocess.run(
            [sys.executable, "-m", "recall.cli", *args],
            capture_output=True,
            text=True,
            env=env,
            timeout=120,
        )

    return _run


def test_cli_help(run_cli):
    """Test that --help works."""
    result = run_cli("--help")
    assert result.returncode == 0
    assert "search" in result.stdout
    assert "index" in result.stdout
    assert "status" in result.stdout


def test_cli_version(run_cli):
    """Test that --version works."""
    result = run_cli("--version")
    assert result.returncode == 0
    assert "recall" in result.stdout


def test_cli_status_on_fresh_home(run_cli, home):
    """Test that status creates an empty index on first run."""
    result = run_cli("status")
    assert result.returncode == 0
    assert "Sessions indexed: 0" in result.stdout
    assert "Index path:" in result.stdout
    assert (home / ".cache" / "recall" / "index.db").exists()


def test_index_then_search_json(run_cli, home):
    write_claude_transcript(home, "abc-123", "Why does the websocket reconnect loop spin?")

    indexed = run_cli("index")
    assert indexed.returncode == 0
    assert "Indexed 1 sessions" in indexed.stdout

    result = run_cli("search", "websocket", "--json")
    assert result.returncode == 0
    data = json.loads(result.stdout)
    assert data["query"] == "websocket"
    assert data["scope"] == "/work/app"
    assert data["total_results"] == 1
    hit = data["results"][0]
    assert hit["native_id"] == "abc-123"
    assert hit["resume_command"] == ["claude", "--resume", "abc-123"]
    assert any(hit["snippet"][s:e] == "websocket" for s, e in hit["highlights"])


def test_search_indexes_on_demand(run_cli, home):
    write_claude_transcript(home, "fresh", "tokenizer benchmark results")

    result = run_cli("search", "tokenizer", "--json")
    assert result.returncode == 0
    assert json.loads(result.stdout)["total_results"] == 1


def test_search_scope(run_cli, home):
    write_claude_transcript(home, "elsewhere", "flamegraph profiling", cwd="/work/other")

    scoped = run_cli("search", "flamegraph", "--json")
    everywhere = run_cli("search", "flamegraph", "--json", "--everywhere")

    assert json.loads(scoped.stdout)["total_results"] == 0
    assert json.loads(everywhere.stdout)["total_results"] == 1


def test_resume_command_override(run_cli, home):
    write_claude_transcript(home, "abc-123", "override the resume command")

    result = run_cli(
        "search", "override", "--json", extra_env={"RECALL_CLAUDE_CMD": "my-claude --continue {id}"}
    )
    hit = json.loads(result.stdout)["results"][0]
    assert hit["resume_command"] == ["my-claude", "--continue", "abc-123"]


def test_search_paths(run_cli, home):
    path = write_claude_transcript(home, "abc-123", "paths only output")

    result = run_cli("search", "paths", "--paths")
    assert result.returncode == 0
    assert result.stdout.strip() == str(path)


def test_read_and_list(run_cli, home):
    write_claude_transcript(home, "abc-123", "read me back")
    run_cli("index")

    read = run_cli("read", "abc-123", "--json")
    assert read.returncode == 0
    data = json.loads(read.stdout)
    assert [m["text"] for m in data["messages"]] == ["read me back", "Sure thing."]

    listed = run_cli("list", "--json")
    assert [s["native_id"] for s in json.loads(listed.stdout)["sessions"]] == ["abc-123"]

    missing = run_cli("read", "does-not-exist")
    assert missing.returncode == 1


def test_projects(run_cli, home):
    write_claude_transcript(home, "abc-123", "projects listing")
    run_cli("index")

    result = run_cli("projects", "--json")
    assert result.returncode == 0
    assert json.loads(result.stdout)["projects"][0]["project"] == "/work/app"


def test_corrupt_index_is_reported(run_cli, home):
    index_path = home / ".cache" / "recall" / "index.db"
    index_path.parent.mkdir(parents=True)
    index_path.write_bytes(b"not a database" * 500)

    result = run_cli("search", "anything")
    assert result.returncode == 1
    assert "recall index --reset" in result.stderr

    reset = run_cli("index", "--reset")
    assert reset.returncode == 0
    assert run_cli("status", "--check").returncode == 0


def test_search_source_filter(run_cli, home):
    write_claude_transcript(home, "from-claude", "terraform drift")
    write_codex_transcript(home, "from-codex", "terraform drift")

    both = run_cli("search", "terraform", "--json")
    codex = run_cli("search", "terraform", "--json", "--source", "codex")

    assert json.loads(both.stdout)["total_results"] == 2
    assert [r["native_id"] for r in json.loads(codex.stdout)["results"]] == ["from-codex"]

    listed = run_cli("list", "--json", "--source", "claude")
    assert [s["native_id"] for s in json.loads(listed.stdout)["sessions"]] == ["from-claude"]


def test_search_time_filters(run_cli, home):
    write_claude_transcript(home, "january", "cron schedule")

    after = run_cli("search", "cron", "--json", "--since", "2025-01-10")
    before = run_cli("search", "cron", "--json", "--until", "2025-01-10")

    assert json.loads(after.stdout)["total_results"] == 1
    assert json.loads(before.stdout)["total_results"] == 0


def test_invalid_time_is_a_usage_error(run_cli, home):
    result = run_cli("search", "anything", "--since", "whenever")
    assert result.returncode == 2
    assert "Invalid time" in result.stderr


def test_search_within_one_session(run_cli, home):
    write_claude_transcript(home, "first", "grpc deadline exceeded")
    write_claude_transcript(home, "second", "grpc deadline exceeded", cwd="/work/other")

    result = run_cli("search", "grpc", "--json", "--session", "second")
    assert result.returncode == 0
    assert [r["native_id"] for r in json.loads(result.stdout)["results"]] == ["second"]

    missing = run_cli("search", "grpc", "--session", "third")
    assert missing.returncode == 1
    assert "Session not found" in missing.stderr


def test_search_cwd_filter(run_cli, home):
    write_claude_transcript(home, "other", "helm chart values", cwd="/work/other")

    result = run_cli("search", "helm", "--json", "--cwd", "/work/other")
    data = json.loads(result.stdout)
    assert data["scope"] == "/work/other"
    assert [r["native_id"] for r in data["results"]] == ["other"]


def test_search_context(run_cli, home):
    write_claude_transcript(home, "ctx", "why is the linker slow")

    result = run_cli("search", "linker", "--json", "--context", "1")
    hit = json.loads(result.stdout)["results"][0]
    assert [m["text"] for m in hit["context"]] == ["why is the linker slow", "Sure thing."]
