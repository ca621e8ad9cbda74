"""Tests for the sidecar HTTP API."""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from codex_warp.agents.supervisor import RunSupervisor
from codex_warp.core.config import Settings
from codex_warp.core.multiplexer import RunControlError
from codex_warp.core.native_sessions import SessionCatalog
from codex_warp.core.usage import UsageLedger, UsageRecord
from codex_warp.core.events import Event, RunFinished
from codex_warp.sidecar.api.routes.stream import build_backlog, format_sse, resolve_tail, skip_backlogged
from codex_warp.sidecar.api.server import create_app


@pytest.fixture
def settings(temp_dir):
    return Settings(data_dir=temp_dir, codex_path=str(temp_dir / "no-codex-here"), codex_home=temp_dir / "codex")


@pytest.fixture
def client(settings):
    with TestClient(create_app(settings)) as test_client:
        yield test_client


class TestServer:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_root(self, client):
        body = client.get("/").json()
        assert body["name"] == "codex-warp Backend"
        assert body["docs"] == "/docs"


class TestSessionRoutes:
    def test_list_sessions(self, client, session_with_history):
        response = client.get("/api/sessions")
        assert response.status_code == 200
        [row] = response.json()
        assert row["id"] == session_with_history.id
        assert row["status"] == "done"
        assert row["codex_session_id"] == "thread-123"

    def test_get_unknown_session(self, client):
        assert client.get("/api/sessions/unknown").status_code == 404

    def test_rename(self, client, session_with_history):
        response = client.patch(f"/api/sessions/{session_with_history.id}", json={"title": "Listing"})
        assert response.status_code == 200
        assert response.json()["title"] == "Listing"

    def test_delete(self, client, session_with_history):
        response = client.delete(f"/api/sessions/{session_with_history.id}")
        assert response.json() == {"success": True}
        assert client.get(f"/api/sessions/{session_with_history.id}").status_code == 404

    def test_raw_logs(self, client, session_with_history, exec_run_lines):
        session_id = session_with_history.id

        events = client.get(f"/api/sessions/{session_id}/events", params={"limit": 2}).json()
        assert events["lines"] == exec_run_lines[-2:]

        stderr = client.get(f"/api/sessions/{session_id}/stderr").json()
        assert stderr["lines"] == ["warning: sandbox is read-only"]

        conclusion = client.get(f"/api/sessions/{session_id}/conclusion").json()
        assert conclusion == {"session_id": session_id, "text": "Two entries."}

    def test_negative_limit_rejected(self, client, session_with_history):
        response = client.get(f"/api/sessions/{session_with_history.id}/events", params={"limit": -1})
        assert response.status_code == 422

    def test_timeline(self, client, session_with_history):
        body = client.get(f"/api/sessions/{session_with_history.id}/timeline").json()

        titles = [block["title"] for block in body["blocks"]]
        assert titles[0] == "Prompt"
        assert "Command" in titles
        assert "Assistant" in titles
        assert body["status"] == "done"
        assert body["conclusion"] == "Two entries."
        assert {"text": "check src", "status": "pending", "source": "todo"} in body["plan"]

    def test_timeline_filters(self, client, session_with_history):
        url = f"/api/sessions/{session_with_history.id}/timeline"

        commands = client.get(url, params={"kind": "command"}).json()["blocks"]
        assert [block["kind"] for block in commands] == ["command"]

        matches = client.get(url, params={"q": "README"}).json()["blocks"]
        assert [block["kind"] for block in matches] == ["command"]


class TestRunControlRoutes:
    def test_empty_prompt(self, client):
        response = client.post("/api/sessions", json={"prompt": "   "})
        assert response.status_code == 400

    def test_codex_missing(self, client):
        response = client.post("/api/sessions", json={"prompt": "hello"})
        assert response.status_code == 503
        assert "not executable" in response.json()["detail"]

    def test_start(self, client, store):
        meta = store.create("hello", cwd="/repo")
        with patch.object(RunSupervisor, "start", AsyncMock(return_value=meta)) as start:
            response = client.post("/api/sessions", json={"prompt": "hello", "cwd": "/repo"})

        assert response.status_code == 200
        assert response.json()["id"] == meta.id
        start.assert_awaited_once_with("hello", "/repo")
        assert meta.id in client.app.state.warp.multiplexer.sessions

    def test_continue_busy(self, client, session_with_history):
        error = RunControlError("Session is already running", reason="busy")
        with patch.object(RunSupervisor, "continue_run", AsyncMock(side_effect=error)):
            response = client.post(f"/api/sessions/{session_with_history.id}/continue", json={"prompt": "more"})
        assert response.status_code == 409
        assert response.json()["detail"] == "Session is already running"

    def test_continue_unknown_session(self, client):
        response = client.post("/api/sessions/unknown/continue", json={"prompt": "more"})
        assert response.status_code == 404

    def test_stop_idle_session(self, client, session_with_history):
        response = client.post(f"/api/sessions/{session_with_history.id}/stop")
        assert response.status_code == 200
        assert response.json()["status"] == "done"


class TestUsageRoutes:
    def test_usage_and_rollup(self, client, temp_dir):
        ledger = UsageLedger(temp_dir / "usage.json")
        ledger.append(UsageRecord(ts_ms=1_704_103_200_000, session_id="a", total_tokens=10))
        ledger.append(UsageRecord(ts_ms=1_704_103_260_000, session_id="b", total_tokens=5))

        body = client.get("/api/usage").json()
        assert [r["session_id"] for r in body["records"]] == ["a", "b"]
        assert sum(day["total_tokens"] for day in body["daily"]) == 15

        limited = client.get("/api/usage", params={"limit": 1}).json()
        assert [r["session_id"] for r in limited["records"]] == ["b"]
        assert sum(day["runs"] for day in limited["daily"]) == 1


class TestSettingsRoutes:
    def test_settings(self, client, temp_dir):
        body = client.get("/api/settings").json()
        assert body["data_dir"] == str(temp_dir)
        assert body["remote_url"] == "http://127.0.0.1:8765"
        assert "transport" not in body

    def test_update_saves_and_applies(self, client, temp_dir):
        new_home = temp_dir / "other-codex"
        response = client.put(
            "/api/settings",
            json={"codex_path": "", "codex_home": str(new_home), "remote_url": "http://box:9000", "context_window": 1000},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["codex_path"] is None
        assert body["codex_home"] == str(new_home)

        stored = json.loads((temp_dir / "settings.json").read_text())
        assert stored["remote_url"] == "http://box:9000"
        assert stored["context_window"] == 1000
        assert "data_dir" not in stored

        state = client.app.state.warp
        assert state.supervisor.settings.context_window == 1000
        assert state.history.native.codex_home == new_home
        assert client.get("/api/settings").json()["remote_url"] == "http://box:9000"

    def test_update_keeps_omitted_fields(self, client, settings):
        body = client.put("/api/settings", json={"default_cwd": "/work"}).json()
        assert body["default_cwd"] == "/work"
        assert body["codex_path"] == settings.codex_path
        assert body["stream_tail_lines"] == settings.stream_tail_lines

    @pytest.mark.parametrize("payload", [{"remote_url": ""}, {"context_window": -1}, {"codex_home": None}])
    def test_update_rejects_invalid_values(self, client, temp_dir, payload):
        assert client.put("/api/settings", json=payload).status_code == 422
        assert not (temp_dir / "settings.json").exists()

    def test_codex_paths(self, client):
        with patch("codex_warp.sidecar.api.routes.settings.detect_codex_paths", return_value=["/usr/bin/codex"]):
            body = client.get("/api/settings/codex-paths").json()
        assert body["candidates"] == ["/usr/bin/codex"]
        assert body["resolved"] is None
        assert "not executable" in body["error"]


class TestStreamHelpers:
    """Tests for the SSE backlog and framing."""

    @pytest.mark.parametrize(
        "tail,expected",
        [(None, 4000), (0, 0), (-3, 0), (10, 50), (100, 100), (10**6, 50_000)],
    )
    def test_resolve_tail(self, tail, expected):
        assert resolve_tail(tail) == expected

    def test_format_sse(self):
        assert format_sse("run_finished", {"ok": True}) == 'event: run_finished\ndata: {"ok": true}\n\n'

    def test_backlog_orders_and_trims(self, store, session_with_history, exec_run_lines):
        state = SimpleNamespace(history=SessionCatalog(store))
        backlog = build_backlog(state, session_with_history.id, 3)

        assert [event.stream for event in backlog] == ["stdout", "stdout", "stderr"]
        assert [event.raw for event in backlog[:2]] == exec_run_lines[-2:]
        assert json.loads(backlog[1].raw)["type"] == "app.run_finished"
        assert build_backlog(state, session_with_history.id, 0) == []

    def test_stream_unknown_session(self, client):
        assert client.get("/api/sessions/unknown/stream").status_code == 404

    def test_queued_records_already_in_backlog_are_skipped(self):
        backlog = [
            Event("s", 1, "stdout", '{"type":"turn.started"}'),
            Event("s", 2, "stdout", "ok"),
            Event("s", 3, "stderr", "warn"),
        ]
        queued = [
            Event("s", 2, "stdout", "ok"),
            Event("s", 3, "stderr", "warn"),
            Event("s", 4, "stdout", "ok"),
            RunFinished("s", 5, exit_code=0, success=True),
        ]

        fresh = skip_backlogged(backlog, queued)

        assert fresh == queued[2:]

    def test_queued_records_without_backlog_pass_through(self):
        queued = [Event("s", 1, "stdout", "ok")]
        assert skip_backlogged([], queued) == queued


class TestNativeSessionRoutes:
    """Native codex sessions served next to warp sessions."""

    def test_listed_and_folded(self, native_session, client):
        ids = [row["id"] for row in client.get("/api/sessions").json()]
        assert native_session in ids

        body = client.get(f"/api/sessions/{native_session}/timeline").json()
        bodies = [block["body"] for block in body["blocks"]]
        assert "Parser refactored." in bodies
        assert body["status"] == "done"

        events = client.get(f"/api/sessions/{native_session}/events").json()
        assert len(events["lines"]) == 4

    def test_continue_adopts_native_session(self, native_session, client, store):
        resume = AsyncMock(side_effect=lambda sid, prompt, cwd: store.read_meta(sid))
        with patch.object(RunSupervisor, "continue_run", resume) as run:
            response = client.post(f"/api/sessions/{native_session}/continue", json={"prompt": "And tests"})

        assert response.status_code == 200
        assert response.json()["codex_session_id"] == native_session
        run.assert_awaited_once_with(native_session, "And tests", None)
        assert store.exists(native_session)

    def test_stop_native_session(self, native_session, client, store):
        response = client.post(f"/api/sessions/{native_session}/stop")
        assert response.status_code == 200
        assert response.json()["status"] == "done"
        assert not store.exists(native_session)
