"""Tests for the terminal client."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner

from codex_warp.cli import cli
from codex_warp.cli.display import BlockPrinter, format_block_header, format_daily_usage, format_sessions
from codex_warp.core.events import Block
from codex_warp.core.session_store import SessionMeta
from codex_warp.core.usage import DailyUsage, UsageRecord


def meta(session_id: str, last_used_at_ms: int, status: str = "done") -> SessionMeta:
    return SessionMeta(
        id=session_id,
        title=f"Title {session_id}",
        created_at_ms=1,
        last_used_at_ms=last_used_at_ms,
        status=status,
        events_path="",
        stderr_path="",
        conclusion_path="",
    )


def block(body: str, status: str | None = None, streamed: bool = False) -> Block:
    return Block(id="b", key="item:m", kind="assistant", title="Assistant", body=body, status=status, streamed=streamed)


class TestFormatting:
    def test_sessions_table(self):
        output = format_sessions([meta("abc", 1_700_000_000_000)])
        assert "Status" in output.splitlines()[0]
        assert "abc" in output
        assert "Title abc" in output

    def test_sessions_json(self):
        data = json.loads(format_sessions([meta("abc", 5)], "json"))
        assert data[0]["id"] == "abc"

    def test_empty(self):
        assert format_sessions([]) == "No sessions yet."
        assert format_daily_usage([]) == "No usage recorded."

    def test_daily_usage_table(self):
        output = format_daily_usage([DailyUsage(day="2024-01-01", runs=2, total_tokens=12345)])
        assert "2024-01-01" in output
        assert "12,345" in output

    def test_block_header(self):
        header = format_block_header(
            Block(id="c", key="item:c", kind="command", title="Command", subtitle="ls (exit 0)", status="completed")
        )
        assert header == "[command] Command - ls (exit 0) (completed)"


class TestBlockPrinter:
    def setup_method(self):
        self.lines = []
        self.printer = BlockPrinter(self.lines.append)

    def test_streamed_body_prints_complete_lines(self):
        self.printer.render([block("first line\nsec", streamed=True)])
        assert self.lines == ["[assistant] Assistant", "    first line"]

        self.printer.render([block("first line\nsecond\nthi", streamed=True)])
        assert self.lines[-1] == "    second"

        self.printer.render([block("first line\nsecond\nthird", streamed=True)], final=True)
        assert self.lines[-1] == "    third"
        assert self.lines.count("[assistant] Assistant") == 1

    def test_status_change_reprints(self):
        self.printer.render([block("working", status="in_progress")])
        self.printer.render([block("working", status="completed")])
        assert self.lines == [
            "[assistant] Assistant (in_progress)",
            "    working",
            "[assistant] Assistant (completed)",
            "    working",
        ]

    def test_unchanged_block_is_silent(self):
        self.printer.render([block("same")])
        self.printer.render([block("same")])
        assert len(self.lines) == 2


class TestCommands:
    @pytest.fixture(autouse=True)
    def isolated_settings(self, monkeypatch, temp_dir):
        monkeypatch.setenv("CODEX_WARP_HOME", str(temp_dir))
        monkeypatch.delenv("CODEX_WARP_REMOTE_URL", raising=False)

    def test_sessions_most_recent_first(self):
        client = MagicMock()
        client.list_sessions.return_value = [meta("old", 5), meta("new", 50)]
        with patch("codex_warp.cli.main.RemoteClient", return_value=client) as remote:
            result = CliRunner().invoke(cli, ["sessions", "--url", "http://sidecar:1", "-f", "json"])

        assert result.exit_code == 0
        assert [row["id"] for row in json.loads(result.output)] == ["new", "old"]
        remote.assert_called_once_with("http://sidecar:1")

    def test_url_from_environment(self):
        client = MagicMock()
        client.list_sessions.return_value = []
        with patch("codex_warp.cli.main.RemoteClient", return_value=client) as remote:
            result = CliRunner().invoke(cli, ["sessions"], env={"CODEX_WARP_REMOTE_URL": "http://elsewhere:9"})

        assert result.exit_code == 0
        assert "No sessions yet." in result.output
        remote.assert_called_once_with("http://elsewhere:9")

    def test_url_from_settings_file(self, temp_dir):
        (temp_dir / "settings.json").write_text(json.dumps({"remote_url": "http://saved:7"}))
        client = MagicMock()
        client.list_sessions.return_value = []
        with patch("codex_warp.cli.main.RemoteClient", return_value=client) as remote:
            result = CliRunner().invoke(cli, ["sessions"])

        assert result.exit_code == 0
        remote.assert_called_once_with("http://saved:7")

    def test_default_url(self):
        client = MagicMock()
        client.list_sessions.return_value = []
        with patch("codex_warp.cli.main.RemoteClient", return_value=client) as remote:
            CliRunner().invoke(cli, ["sessions"])
        remote.assert_called_once_with("http://127.0.0.1:8765")

    def test_usage(self):
        client = MagicMock()
        client.list_usage.return_value = [UsageRecord(ts_ms=1_704_103_200_000, session_id="a", total_tokens=42)]
        with patch("codex_warp.cli.main.RemoteClient", return_value=client):
            result = CliRunner().invoke(cli, ["usage", "--limit", "10", "-f", "json"])

        assert result.exit_code == 0
        [day] = json.loads(result.output)
        assert day["total_tokens"] == 42
        client.list_usage.assert_called_once_with(10)

    def test_stop(self):
        client = MagicMock()
        client.stop = AsyncMock(return_value=meta("abc", 5, status="running"))
        with patch("codex_warp.cli.main.RemoteClient", return_value=client):
            result = CliRunner().invoke(cli, ["stop", "abc"])

        assert result.exit_code == 0
        assert result.output.strip() == "abc: running"
