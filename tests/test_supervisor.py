"""Tests for supervised codex runs."""

import asyncio
import json
import signal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from codex_warp.agents.channel import EventChannel
from codex_warp.agents.supervisor import (
    CodexRun,
    RunSupervisor,
    build_exec_command,
    detect_codex_paths,
    resolve_codex_executable,
)
from codex_warp.core.config import Settings
from codex_warp.core.events import ContextMetrics, Event, RunFinished
from codex_warp.core.multiplexer import RunControlError
from codex_warp.core.usage import UsageLedger


def make_stream(*lines: str) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    for line in lines:
        reader.feed_data((line + "\n").encode())
    reader.feed_eof()
    return reader


class FakeProcess:
    """Stands in for ``asyncio.subprocess.Process``."""

    def __init__(self, stdout=(), stderr=(), exit_code: int = 0, hold: bool = False):
        self.stdout = make_stream(*stdout)
        self.stderr = make_stream(*stderr)
        self.pid = 4242
        self.returncode = None
        self.signals = []
        self._exit_code = exit_code
        self._exited = asyncio.Event()
        if not hold:
            self._exited.set()

    async def wait(self):
        await self._exited.wait()
        self.returncode = self._exit_code
        return self.returncode

    def send_signal(self, sig):
        self.signals.append(sig)
        self._exit_code = -sig
        self._exited.set()

    def terminate(self):
        self.send_signal(signal.SIGTERM)

    def kill(self):
        self.send_signal(signal.SIGKILL)


async def drain(subscription) -> list:
    subscription.close()
    return [record async for record in subscription]


def exec_stdout() -> list[str]:
    return [
        json.dumps({"type": "thread.started", "thread_id": "thread-x"}),
        json.dumps({"type": "item.completed", "item": {"id": "i1", "type": "agent_message", "text": "All set."}}),
        json.dumps({"type": "turn.completed", "usage": {"input_tokens": 100, "output_tokens": 20}}),
        "plain progress line",
    ]


class TestBuildExecCommand:
    """Tests for codex argument lists."""

    def test_fresh_run(self):
        command = build_exec_command("/bin/codex", "do it", "/tmp/out.md", cwd="/repo")
        assert command == [
            "/bin/codex", "exec", "--json", "--full-auto", "--skip-git-repo-check",
            "--output-last-message", "/tmp/out.md", "--cd", "/repo", "--", "do it",
        ]

    def test_fresh_run_without_cwd(self):
        command = build_exec_command("/bin/codex", "-rf", "/tmp/out.md")
        assert "--cd" not in command
        assert command[-2:] == ["--", "-rf"]

    def test_resume(self):
        command = build_exec_command("/bin/codex", "more", "/tmp/out.md", cwd="/repo", thread_id="t-1")
        assert command == [
            "/bin/codex", "exec", "resume", "--json", "--full-auto", "--skip-git-repo-check",
            "t-1", "--", "more",
        ]


class TestCodexDiscovery:
    """Tests for locating the codex executable."""

    def test_path_first(self):
        with patch("codex_warp.agents.supervisor.shutil.which", return_value="/usr/bin/codex"):
            with patch("codex_warp.agents.supervisor._is_executable", return_value=False):
                assert detect_codex_paths() == ["/usr/bin/codex"]

    def test_configured_path(self, temp_dir):
        codex = temp_dir / "codex"
        codex.write_text("#!/bin/sh\n")
        codex.chmod(0o755)
        assert resolve_codex_executable(str(codex)) == str(codex)

    def test_configured_path_not_executable(self, temp_dir):
        with pytest.raises(RunControlError) as excinfo:
            resolve_codex_executable(str(temp_dir / "missing"))
        assert excinfo.value.reason == "codex_missing"

    def test_nothing_found(self):
        with patch("codex_warp.agents.supervisor.detect_codex_paths", return_value=[]):
            with pytest.raises(RunControlError) as excinfo:
                resolve_codex_executable(None)
        assert excinfo.value.reason == "codex_missing"


class TestCodexRun:
    """Tests for one supervised child process."""

    @pytest.mark.asyncio
    async def test_successful_run(self, store, temp_dir):
        channel = EventChannel()
        usage = UsageLedger(temp_dir / "usage.json")
        meta = store.create("ship it", cwd=str(temp_dir))
        subscription = channel.subscribe(meta.id)
        proc = FakeProcess(stdout=exec_stdout(), stderr=["warn: slow disk"])
        spawn = AsyncMock(return_value=proc)

        run = CodexRun(store, channel, meta, "ship it", "/bin/codex", usage=usage, default_context_window=1000)
        with patch("codex_warp.agents.supervisor.asyncio.create_subprocess_exec", spawn):
            await run.launch()
            assert await run.wait() == 0

        assert spawn.call_args.args == tuple(build_exec_command("/bin/codex", "ship it", meta.conclusion_path, cwd=str(temp_dir)))
        assert spawn.call_args.kwargs["cwd"] == str(temp_dir)

        lines = store.read_events(meta.id)
        payloads = [json.loads(line) for line in lines if line.startswith("{")]
        assert payloads[0]["type"] == "app.prompt"
        assert payloads[0]["prompt"] == "ship it"
        assert all("_ts_ms" in p for p in payloads)
        assert payloads[-1] == {"type": "app.run_finished", "exit_code": 0, "success": True, "_ts_ms": payloads[-1]["_ts_ms"]}
        assert "plain progress line" in lines
        assert store.read_stderr(meta.id) == ["warn: slow disk"]
        assert store.read_conclusion(meta.id) == "All set."

        final = store.read_meta(meta.id)
        assert final.status == "done"
        assert final.codex_session_id == "thread-x"
        assert final.context_left_pct == 88

        [record] = usage.list_usage()
        assert record.total_tokens == 120
        assert record.thread_id == "thread-x"

        published = await drain(subscription)
        assert isinstance(published[-1], RunFinished)
        assert published[-1].success is True
        assert any(isinstance(r, ContextMetrics) and r.context_left_pct == 88 for r in published)
        assert any(isinstance(r, Event) and r.stream == "stderr" for r in published)

    @pytest.mark.asyncio
    async def test_failed_exit(self, store):
        channel = EventChannel()
        meta = store.create("break it")
        subscription = channel.subscribe(meta.id)
        proc = FakeProcess(stderr=["fatal"], exit_code=2)

        run = CodexRun(store, channel, meta, "break it", "/bin/codex")
        with patch("codex_warp.agents.supervisor.asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            await run.launch()
            assert await run.wait() == 2

        assert store.read_meta(meta.id).status == "error"
        finished = (await drain(subscription))[-1]
        assert finished == RunFinished(meta.id, finished.ts_ms, exit_code=2, success=False)

    @pytest.mark.asyncio
    async def test_spawn_failure_finishes_run(self, store):
        channel = EventChannel()
        meta = store.create("nothing")
        subscription = channel.subscribe(meta.id)
        spawn = AsyncMock(side_effect=FileNotFoundError("no such file: codex"))

        run = CodexRun(store, channel, meta, "nothing", "/missing/codex")
        with patch("codex_warp.agents.supervisor.asyncio.create_subprocess_exec", spawn):
            await run.launch()

        assert await run.wait() is None
        assert store.read_meta(meta.id).status == "error"
        assert store.read_stderr(meta.id)[0].startswith("Failed to start codex")
        assert store.read_conclusion(meta.id).startswith("# Error")
        types = [json.loads(line)["type"] for line in store.read_events(meta.id)]
        assert types == ["app.prompt", "error", "app.run_finished"]
        published = await drain(subscription)
        assert published[-1].exit_code is None
        assert published[-1].success is False

    @pytest.mark.asyncio
    async def test_launch_only_once(self, store):
        meta = store.create("once")
        run = CodexRun(store, EventChannel(), meta, "once", "/bin/codex")
        with patch("codex_warp.agents.supervisor.asyncio.create_subprocess_exec", AsyncMock(return_value=FakeProcess())):
            await run.launch()
            with pytest.raises(RuntimeError):
                await run.launch()
            await run.wait()

    @pytest.mark.asyncio
    async def test_stop_interrupts_child(self, store):
        meta = store.create("long job")
        proc = FakeProcess(hold=True)
        run = CodexRun(store, EventChannel(), meta, "long job", "/bin/codex", stop_grace_seconds=0.1)
        with patch("codex_warp.agents.supervisor.asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            await run.launch()
            assert run.is_running is True

            assert run.stop() is True
            assert run.stop() is False
            await run.wait()

        assert proc.signals == [signal.SIGINT]
        assert run.is_running is False
        assert store.read_meta(meta.id).status == "error"


class TestRunSupervisor:
    """Tests for in-process run control."""

    def make_supervisor(self, store, temp_dir, **settings):
        return RunSupervisor(store, EventChannel(), Settings(data_dir=temp_dir, **settings))

    @pytest.mark.asyncio
    async def test_empty_prompt_rejected(self, store, temp_dir):
        supervisor = self.make_supervisor(store, temp_dir)
        with pytest.raises(RunControlError):
            await supervisor.start("   ")

    @pytest.mark.asyncio
    async def test_missing_codex(self, store, temp_dir):
        supervisor = self.make_supervisor(store, temp_dir, codex_path=str(temp_dir / "nope"))
        with pytest.raises(RunControlError) as excinfo:
            await supervisor.start("hello")
        assert excinfo.value.reason == "codex_missing"
        assert store.list_sessions() == []

    @pytest.mark.asyncio
    async def test_start_uses_default_cwd(self, store, temp_dir):
        supervisor = self.make_supervisor(store, temp_dir, default_cwd="/srv/project")
        spawn = AsyncMock(return_value=FakeProcess())
        with patch("codex_warp.agents.supervisor.resolve_codex_executable", return_value="/bin/codex"):
            with patch("codex_warp.agents.supervisor.asyncio.create_subprocess_exec", spawn):
                meta = await supervisor.start("hello")
                await supervisor.runs[meta.id].wait()

        assert meta.cwd == "/srv/project"
        assert spawn.call_args.kwargs["cwd"] == "/srv/project"

    @pytest.mark.asyncio
    async def test_continue_unknown_session(self, store, temp_dir):
        supervisor = self.make_supervisor(store, temp_dir)
        with pytest.raises(RunControlError) as excinfo:
            await supervisor.continue_run("missing", "hello")
        assert excinfo.value.reason == "not_found"

    @pytest.mark.asyncio
    async def test_continue_busy_session(self, store, temp_dir):
        supervisor = self.make_supervisor(store, temp_dir)
        supervisor.runs["busy"] = MagicMock(is_running=True)
        with pytest.raises(RunControlError) as excinfo:
            await supervisor.continue_run("busy", "hello")
        assert excinfo.value.reason == "busy"

    @pytest.mark.asyncio
    async def test_continue_resumes_thread(self, store, temp_dir, session_with_history):
        supervisor = self.make_supervisor(store, temp_dir)
        spawn = AsyncMock(return_value=FakeProcess())
        with patch("codex_warp.agents.supervisor.resolve_codex_executable", return_value="/bin/codex"):
            with patch("codex_warp.agents.supervisor.asyncio.create_subprocess_exec", spawn):
                meta = await supervisor.continue_run(session_with_history.id, "and again")
                assert meta.status == "running"
                await supervisor.runs[meta.id].wait()

        args = spawn.call_args.args
        assert args[1:3] == ("exec", "resume")
        assert "thread-123" in args
        assert spawn.call_args.kwargs["cwd"] == "/work"
        assert store.read_meta(meta.id).status == "done"

    @pytest.mark.asyncio
    async def test_stop(self, store, temp_dir, session_with_history):
        supervisor = self.make_supervisor(store, temp_dir)
        with pytest.raises(RunControlError):
            await supervisor.stop("missing")
        meta = await supervisor.stop(session_with_history.id)
        assert meta.status == "done"

    @pytest.mark.asyncio
    async def test_shutdown_cancels_runs(self, store, temp_dir):
        supervisor = self.make_supervisor(store, temp_dir, stop_grace_seconds=0.1)
        proc = FakeProcess(hold=True)
        with patch("codex_warp.agents.supervisor.resolve_codex_executable", return_value="/bin/codex"):
            with patch("codex_warp.agents.supervisor.asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
                meta = await supervisor.start("forever")
                assert supervisor.is_running(meta.id)
                await asyncio.sleep(0.01)
                await supervisor.shutdown()

        assert supervisor.runs == {}
        assert proc.signals == [signal.SIGTERM]
        assert store.read_meta(meta.id).status == "error"
