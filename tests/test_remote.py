"""Tests for the sidecar client and the SSE decoding."""

import json
from unittest.mock import MagicMock

import pytest
import requests

from codex_warp.agents.remote import RemoteClient, SSEStreamTransport, decode_record, iter_sse
from codex_warp.core.events import ContextMetrics, Event, RunFinished
from codex_warp.core.multiplexer import RunControlError


def response(payload=None, status_code: int = 200) -> MagicMock:
    mock = MagicMock()
    mock.status_code = status_code
    mock.json.return_value = payload
    if status_code >= 400:
        mock.raise_for_status.side_effect = requests.HTTPError(f"HTTP {status_code}")
    return mock


def meta_payload(session_id: str = "s1", status: str = "running") -> dict:
    return {
        "id": session_id,
        "title": "Fix it",
        "created_at_ms": 1,
        "status": status,
        "events_path": "",
        "stderr_path": "",
        "conclusion_path": "",
    }


class TestIterSSE:
    """Tests for iter_sse."""

    def test_named_events_and_keepalives(self):
        lines = [
            ": keepalive",
            "",
            "event: codex_event",
            'data: {"a": 1}',
            "",
            "data: first",
            "data:second",
            "",
            "event: run_finished",
            "data: {}",
        ]
        assert list(iter_sse(lines)) == [
            ("codex_event", '{"a": 1}'),
            ("message", "first\nsecond"),
            ("run_finished", "{}"),
        ]


class TestDecodeRecord:
    """Tests for decode_record."""

    def test_known_events(self):
        event = decode_record("codex_event", json.dumps({"session_id": "s", "ts_ms": 3, "stream": "stdout", "raw": "x"}))
        assert event == Event(session_id="s", ts_ms=3, stream="stdout", raw="x")

        metrics = decode_record(
            "context_metrics",
            json.dumps({"session_id": "s", "ts_ms": 4, "context_left_pct": 70, "context_used_tokens": 30, "context_window": 100}),
        )
        assert metrics == ContextMetrics("s", 4, 70, 30, 100)

        finished = decode_record("run_finished", json.dumps({"session_id": "s", "ts_ms": 5, "exit_code": 1, "success": False}))
        assert finished == RunFinished("s", 5, exit_code=1, success=False)

    @pytest.mark.parametrize(
        "event,data",
        [("message", "{}"), ("codex_event", "{broken"), ("codex_event", "[1, 2]")],
    )
    def test_ignored(self, event, data):
        assert decode_record(event, data) is None


class TestRemoteClient:
    """Tests for RemoteClient over a mocked requests session."""

    def setup_method(self):
        self.http = MagicMock()
        self.client = RemoteClient("http://sidecar:8765/", session=self.http, timeout=5)

    def test_list_sessions(self):
        self.http.get.return_value = response([meta_payload("a"), "junk", meta_payload("b")])
        assert [m.id for m in self.client.list_sessions()] == ["a", "b"]
        self.http.get.assert_called_once_with("http://sidecar:8765/api/sessions", params=None, timeout=5)

    def test_read_events_with_limit(self):
        self.http.get.return_value = response({"lines": ["one", "two"]})
        assert self.client.read_events("s1", max_lines=10) == ["one", "two"]
        self.http.get.assert_called_once_with(
            "http://sidecar:8765/api/sessions/s1/events", params={"limit": 10}, timeout=5
        )

    def test_read_conclusion_and_usage(self):
        self.http.get.side_effect = [
            response({"text": "done"}),
            response({"records": [{"ts_ms": 1, "session_id": "s1", "total_tokens": 9}, {"bad": True}]}),
        ]
        assert self.client.read_conclusion("s1") == "done"
        [record] = self.client.list_usage(limit=50)
        assert record.total_tokens == 9

    def test_http_errors_propagate_from_reads(self):
        self.http.get.return_value = response({"detail": "nope"}, status_code=500)
        with pytest.raises(requests.HTTPError):
            self.client.read_stderr("s1")

    @pytest.mark.asyncio
    async def test_start_posts_prompt(self):
        self.http.post.return_value = response(meta_payload("new"))
        meta = await self.client.start("Fix it", cwd="/repo")
        assert meta.id == "new"
        self.http.post.assert_called_once_with(
            "http://sidecar:8765/api/sessions", json={"prompt": "Fix it", "cwd": "/repo"}, timeout=5
        )

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status_code,reason",
        [(404, "not_found"), (409, "busy"), (503, "codex_missing"), (400, "failed")],
    )
    async def test_error_status_maps_to_reason(self, status_code, reason):
        self.http.post.return_value = response({"detail": "Session is already running"}, status_code=status_code)
        with pytest.raises(RunControlError) as excinfo:
            await self.client.continue_run("s1", "more")
        assert excinfo.value.reason == reason
        assert str(excinfo.value) == "Session is already running"

    @pytest.mark.asyncio
    async def test_unreachable_sidecar(self):
        self.http.post.side_effect = requests.ConnectionError("refused")
        with pytest.raises(RunControlError) as excinfo:
            await self.client.stop("s1")
        assert "Sidecar unreachable" in str(excinfo.value)


class TestSSEStreamTransport:
    """Tests for the single-connection live transport."""

    @pytest.mark.asyncio
    async def test_attach_replaces_connection(self):
        http = MagicMock()
        first, second = MagicMock(), MagicMock()
        first.iter_lines.return_value = iter([])
        second.iter_lines.return_value = iter([])
        http.get.side_effect = [first, second]
        errors = []

        transport = SSEStreamTransport("http://sidecar:8765", session=http)
        await transport.open(lambda record: None, lambda sid, exc: errors.append(sid))

        await transport.attach("A")
        await transport.attach("B")

        assert transport.attached_session == "B"
        assert transport.connections_opened == 2
        first.close.assert_called()
        assert http.get.call_args.kwargs["params"] == {"tail": 0}
        assert http.get.call_args.args[0] == "http://sidecar:8765/api/sessions/B/stream"

        await transport.close()
        assert transport.attached_session is None
