"""Pytest configuration and shared fixtures."""

import json

import pytest
from pathlib import Path
import tempfile
import shutil

from codex_warp.core.session_store import SessionStore


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    path = Path(tempfile.mkdtemp())
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def store(temp_dir):
    """A session store rooted in the temporary directory."""
    return SessionStore(temp_dir)


def _jsonl(*payloads: dict) -> list[str]:
    """Serialize payloads the way the supervisor writes them."""
    return [json.dumps(p, ensure_ascii=False) for p in payloads]


@pytest.fixture
def exec_run_lines():
    """A short ``codex exec --json`` run with a prompt, a command and a reply."""
    return _jsonl(
        {"type": "app.prompt", "prompt": "List the files", "_ts_ms": 1_000},
        {"type": "thread.started", "thread_id": "thread-123", "_ts_ms": 1_001},
        {"type": "turn.started", "_ts_ms": 1_002},
        {
            "type": "item.started",
            "item": {"id": "item_1", "type": "command_execution", "command": "bash -lc ls", "status": "in_progress"},
            "_ts_ms": 1_003,
        },
        {
            "type": "item.completed",
            "item": {
                "id": "item_1",
                "type": "command_execution",
                "command": "bash -lc ls",
                "aggregated_output": "README.md\nsrc\n",
                "exit_code": 0,
                "status": "completed",
            },
            "_ts_ms": 1_004,
        },
        {
            "type": "item.completed",
            "item": {"id": "item_2", "type": "agent_message", "text": "Two entries.\n\n- [ ] check src"},
            "_ts_ms": 1_005,
        },
        {
            "type": "turn.completed",
            "usage": {"input_tokens": 1200, "cached_input_tokens": 200, "output_tokens": 80},
            "_ts_ms": 1_006,
        },
        {"type": "app.run_finished", "exit_code": 0, "success": True, "_ts_ms": 1_007},
    )


@pytest.fixture
def session_with_history(store, exec_run_lines):
    """A finished session whose events log holds ``exec_run_lines``."""
    meta = store.create("List the files", cwd="/work")
    for line in exec_run_lines:
        store.append_event_line(meta.id, line)
    store.append_stderr(meta.id, "warning: sandbox is read-only")
    store.write_conclusion(meta.id, "Two entries.")
    return store.update_meta(meta.id, status="done", codex_session_id="thread-123")


NATIVE_SESSION_ID = "0199a1b2-c3d4-7e5f-8a9b-0c1d2e3f4a5b"


def write_rollout(codex_home: Path, session_id: str, records: list[dict], stamp: str = "2025-01-02T10-00-00",
                  folder: str = "sessions/2025/01/02") -> Path:
    """Write a codex rollout file the way the codex CLI names them."""
    path = codex_home / folder / f"rollout-{stamp}-{session_id}.jsonl"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(line + "\n" for line in _jsonl(*records)))
    return path


def rollout_records(prompt: str = "Refactor the parser", originator: str = "codex_cli_rs") -> list[dict]:
    """A native interactive session: meta, injected context, a prompt and a reply."""
    return [
        {
            "timestamp": "2025-01-02T10:00:00.000Z",
            "type": "session_meta",
            "payload": {"id": NATIVE_SESSION_ID, "cwd": "/proj", "originator": originator, "source": "cli"},
        },
        {
            "timestamp": "2025-01-02T10:00:01.000Z",
            "type": "response_item",
            "payload": {
                "type": "message",
                "role": "user",
                "content": [{"type": "input_text", "text": "<environment_context>cwd</environment_context>"}],
            },
        },
        {
            "timestamp": "2025-01-02T10:00:02.000Z",
            "type": "event_msg",
            "payload": {"type": "user_message", "message": prompt},
        },
        {
            "timestamp": "2025-01-02T10:00:03.000Z",
            "type": "response_item",
            "payload": {
                "type": "message",
                "role": "assistant",
                "content": [{"type": "output_text", "text": "Parser refactored."}],
            },
        },
    ]


@pytest.fixture
def codex_home(temp_dir):
    """An empty codex home inside the temporary directory."""
    path = temp_dir / "codex"
    path.mkdir()
    return path


@pytest.fixture
def native_session(codex_home):
    """Id of one native codex session with a rollout under ``codex_home``."""
    write_rollout(codex_home, NATIVE_SESSION_ID, rollout_records())
    return NATIVE_SESSION_ID


@pytest.fixture
def rollout_writer(codex_home):
    """``write(session_id, records, **kw)`` for extra rollout files."""

    def write(session_id: str, records: list[dict], **kwargs) -> Path:
        return write_rollout(codex_home, session_id, records, **kwargs)

    return write
