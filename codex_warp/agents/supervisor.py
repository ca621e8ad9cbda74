"""Supervised ``codex exec --json`` runs.

Each run streams the child's stdout and stderr line by line. Every stdout
line is stamped with ``_ts_ms``, appended to the session's events log and
published on the ``EventChannel``; stderr goes to ``stderr.log``. When the
child exits the run writes the conclusion, records token usage and publishes
``RunFinished``.

Uses asyncio.create_subprocess_exec, which passes arguments directly without
shell interpretation.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import signal
from dataclasses import replace
from pathlib import Path

from ..core.config import Settings
from ..core.events import ContextMetrics, RunFinished, TokenUsageSnapshot
from ..core.multiplexer import RunControlError
from ..core.normalizer import extract_token_usage, parse_line
from ..core.session_store import SessionMeta, SessionStore
from ..core.usage import UsageLedger, UsageRecord
from ..utils import now_ms, try_parse_json
from .channel import EventChannel

logger = logging.getLogger(__name__)

STREAM_LIMIT = 16 * 1024 * 1024
COMMON_CODEX_PATHS = (
    "/opt/homebrew/bin/codex",
    "/usr/local/bin/codex",
    "/usr/bin/codex",
    "~/.asdf/shims/codex",
    "~/.local/bin/codex",
    "~/Library/pnpm/codex",
)


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


def detect_codex_paths() -> list[str]:
    """Candidate codex executables: PATH first, then common install locations."""
    found: list[str] = []
    on_path = shutil.which("codex")
    if on_path:
        found.append(on_path)
    for candidate in COMMON_CODEX_PATHS:
        path = Path(candidate).expanduser()
        if _is_executable(path) and str(path) not in found:
            found.append(str(path))
    return found


def resolve_codex_executable(configured: str | None = None) -> str:
    """Return the codex executable to run, or raise ``RunControlError``."""
    if configured:
        path = Path(configured).expanduser()
        if _is_executable(path):
            return str(path)
        raise RunControlError(f"Configured codex_path is not executable: {path}", reason="codex_missing")
    candidates = detect_codex_paths()
    if candidates:
        return candidates[0]
    raise RunControlError(
        "codex executable not found. Install the codex CLI or set codex_path.",
        reason="codex_missing",
    )


def build_exec_command(
    codex_path: str,
    prompt: str,
    conclusion_path: str,
    cwd: str | None = None,
    thread_id: str | None = None,
) -> list[str]:
    """Argument list for a fresh ``codex exec`` or a ``codex exec resume``."""
    if thread_id:
        return [
            codex_path, "exec", "resume", "--json", "--full-auto", "--skip-git-repo-check",
            thread_id, "--", prompt,
        ]
    command = [
        codex_path, "exec", "--json", "--full-auto", "--skip-git-repo-check",
        "--output-last-message", conclusion_path,
    ]
    if cwd:
        command.extend(["--cd", cwd])
    command.extend(["--", prompt])
    return command


class CodexRun:
    """One codex child process bound to a warp session."""

    def __init__(
        self,
        store: SessionStore,
        channel: EventChannel,
        meta: SessionMeta,
        prompt: str,
        codex_path: str,
        usage: UsageLedger | None = None,
        thread_id: str | None = None,
        default_context_window: int = 0,
        stop_grace_seconds: float = 5.0,
    ):
        self.store = store
        self.channel = channel
        self.meta = meta
        self.prompt = prompt.strip()
        self.codex_path = codex_path
        self.usage = usage
        self.thread_id = thread_id
        self.default_context_window = default_context_window
        self.stop_grace_seconds = stop_grace_seconds

        self.last_usage: TokenUsageSnapshot | None = None
        self.last_message: str | None = None
        self.exit_code: int | None = None
        self.stopping = False

        self._proc: asyncio.subprocess.Process | None = None
        self._task: asyncio.Task | None = None
        self._stop_task: asyncio.Task | None = None
        self._launched = False

    @property
    def session_id(self) -> str:
        return self.meta.id

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def command(self) -> list[str]:
        return build_exec_command(
            self.codex_path,
            self.prompt,
            self.meta.conclusion_path,
            cwd=self.meta.cwd,
            thread_id=self.thread_id,
        )

    async def launch(self) -> None:
        """Record the prompt, spawn the child and start supervising it.

        A child that cannot be spawned finishes the run immediately as a
        failure instead of raising.
        """
        if self._launched:
            raise RuntimeError("Run already launched")
        self._launched = True

        # the prompt goes on record first so the timeline is never empty
        self._record({"type": "app.prompt", "prompt": self.prompt})

        try:
            self._proc = await asyncio.create_subprocess_exec(
                *self.command,
                cwd=self.meta.cwd or None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except OSError as exc:
            message = f"Failed to start codex: {exc}"
            logger.warning("%s (session %s)", message, self.session_id)
            self.store.append_stderr(self.session_id, message)
            self.store.write_conclusion(self.session_id, f"# Error\n\n{message}\n")
            self._record({"type": "error", "message": message})
            self._finish(exit_code=None, success=False)
            return

        logger.info("Started codex for %s (pid %s)", self.session_id, self._proc.pid)
        self._task = asyncio.get_running_loop().create_task(self._supervise())

    async def wait(self) -> int | None:
        if self._task is not None:
            await self._task
        return self.exit_code

    async def _supervise(self) -> None:
        assert self._proc is not None
        proc = self._proc
        try:
            await asyncio.gather(
                self._pump(proc.stdout, self._on_stdout),
                self._pump(proc.stderr, self._on_stderr),
            )
            await proc.wait()
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.terminate()
                try:
                    await asyncio.wait_for(proc.wait(), timeout=self.stop_grace_seconds)
                except TimeoutError:
                    proc.kill()
                    await proc.wait()
            self._finish(exit_code=proc.returncode, success=False)
            raise
        self._finish(exit_code=proc.returncode, success=proc.returncode == 0)

    async def _pump(self, stream: asyncio.StreamReader | None, handle) -> None:
        if stream is None:
            return
        while True:
            try:
                line_bytes = await stream.readline()
            except ValueError as exc:
                # over-long line; the reader already discarded it
                logger.warning("Dropped over-long output line for %s: %s", self.session_id, exc)
                continue
            if not line_bytes:
                break
            line = line_bytes.decode("utf-8", errors="replace").rstrip("\n\r")
            if line.strip():
                handle(line)

    def _on_stdout(self, line: str) -> None:
        payload = try_parse_json(line)
        if not isinstance(payload, dict):
            self.store.append_event_line(self.session_id, line)
            self.channel.publish(parse_line(self.session_id, line, "stdout"))
            return
        self._track(payload)
        self._record(payload)

    def _on_stderr(self, line: str) -> None:
        self.store.append_stderr(self.session_id, line)
        self.channel.publish(parse_line(self.session_id, line, "stderr"))

    def _record(self, payload: dict) -> None:
        """Stamp, persist and publish one structured stdout record."""
        ts = now_ms()
        payload = {**payload, "_ts_ms": ts}
        line = self.store.append_event(self.session_id, payload)
        self.channel.publish(parse_line(self.session_id, line, "stdout", ts))

    def _track(self, payload: dict) -> None:
        kind = payload.get("type")
        if kind == "thread.started" and isinstance(payload.get("thread_id"), str):
            self.thread_id = payload["thread_id"]
            if self.meta.codex_session_id is None:
                self._update_meta(codex_session_id=self.thread_id)
        elif kind in ("item.completed", "item.updated"):
            item = payload.get("item")
            if isinstance(item, dict) and item.get("type") == "agent_message" and isinstance(item.get("text"), str):
                self.last_message = item["text"]

        snapshot = extract_token_usage(payload)
        if snapshot is not None:
            self._on_usage(snapshot)

    def _on_usage(self, snapshot: TokenUsageSnapshot) -> None:
        if snapshot.window <= 0 and self.default_context_window > 0:
            snapshot = replace(snapshot, window=self.default_context_window)
        self.last_usage = snapshot
        pct_left = snapshot.pct_left
        if pct_left is None:
            return
        self._update_meta(
            context_window=snapshot.window,
            context_used_tokens=snapshot.total_tokens,
            context_left_pct=pct_left,
        )
        self.channel.publish(
            ContextMetrics(
                session_id=self.session_id,
                ts_ms=now_ms(),
                context_left_pct=pct_left,
                context_used_tokens=snapshot.total_tokens,
                context_window=snapshot.window,
            )
        )

    def _finish(self, exit_code: int | None, success: bool) -> None:
        self.exit_code = exit_code
        ts = now_ms()
        if self.last_message:
            self.store.write_conclusion(self.session_id, self.last_message)
        self._record_usage(ts)
        self._record({"type": "app.run_finished", "exit_code": exit_code, "success": success})
        self._update_meta(status="done" if success else "error", last_used_at_ms=ts)
        logger.info("codex for %s finished (exit %s)", self.session_id, exit_code)
        self.channel.publish(
            RunFinished(session_id=self.session_id, ts_ms=ts, exit_code=exit_code, success=success)
        )

    def _record_usage(self, ts_ms: int) -> None:
        snapshot = self.last_usage
        if snapshot is None or self.usage is None:
            return
        self.usage.append(
            UsageRecord(
                ts_ms=ts_ms,
                session_id=self.session_id,
                total_tokens=snapshot.total_tokens,
                input_tokens=snapshot.input_tokens,
                output_tokens=snapshot.output_tokens,
                reasoning_output_tokens=snapshot.reasoning_output_tokens,
                cached_input_tokens=snapshot.cached_input_tokens,
                context_window=snapshot.window,
                thread_id=self.thread_id,
            )
        )

    def _update_meta(self, **changes) -> None:
        updated = self.store.update_meta(self.session_id, **changes)
        self.meta = updated or replace(self.meta, **changes)

    def stop(self) -> bool:
        """Interrupt the child, escalating to terminate and kill if it lingers."""
        proc = self._proc
        if proc is None or proc.returncode is not None or self.stopping:
            return False
        self.stopping = True
        try:
            proc.send_signal(signal.SIGINT)
        except ProcessLookupError:
            return False
        self._stop_task = asyncio.get_running_loop().create_task(self._escalate(proc))
        return True

    async def _escalate(self, proc: asyncio.subprocess.Process) -> None:
        for action in (proc.terminate, proc.kill):
            try:
                await asyncio.wait_for(proc.wait(), timeout=self.stop_grace_seconds)
                return
            except TimeoutError:
                logger.info("codex for %s ignored the stop request; escalating", self.session_id)
                try:
                    action()
                except ProcessLookupError:
                    return

    async def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        proc = self._proc
        if proc is not None and proc.returncode is None:
            # cancelled before supervision started
            try:
                proc.kill()
            except ProcessLookupError:
                pass
        if self._stop_task is not None:
            self._stop_task.cancel()


class RunSupervisor:
    """Run control for the in-process mode: at most one run per session."""

    def __init__(
        self,
        store: SessionStore,
        channel: EventChannel,
        settings: Settings,
        usage: UsageLedger | None = None,
    ):
        self.store = store
        self.channel = channel
        self.settings = settings
        self.usage = usage
        self.runs: dict[str, CodexRun] = {}

    def is_running(self, session_id: str) -> bool:
        run = self.runs.get(session_id)
        return run is not None and run.is_running

    def _resolve_cwd(self, cwd: str | None, meta: SessionMeta | None = None) -> str | None:
        cwd = (cwd or "").strip() or None
        if cwd is None and meta is not None:
            cwd = meta.cwd
        return cwd or self.settings.default_cwd

    async def _launch(self, meta: SessionMeta, prompt: str, codex_path: str, thread_id: str | None) -> SessionMeta:
        run = CodexRun(
            self.store,
            self.channel,
            meta,
            prompt,
            codex_path,
            usage=self.usage,
            thread_id=thread_id,
            default_context_window=self.settings.context_window,
            stop_grace_seconds=self.settings.stop_grace_seconds,
        )
        self.runs[meta.id] = run
        await run.launch()
        return run.meta

    async def start(self, prompt: str, cwd: str | None = None) -> SessionMeta:
        if not prompt.strip():
            raise RunControlError("Prompt is empty")
        codex_path = resolve_codex_executable(self.settings.codex_path)
        meta = self.store.create(prompt, cwd=self._resolve_cwd(cwd))
        return await self._launch(meta, prompt, codex_path, thread_id=None)

    async def continue_run(self, session_id: str, prompt: str, cwd: str | None = None) -> SessionMeta:
        if not prompt.strip():
            raise RunControlError("Prompt is empty")
        if self.is_running(session_id):
            raise RunControlError("Session is already running", reason="busy")
        meta = self.store.read_meta(session_id)
        if meta is None:
            raise RunControlError(f"Session not found: {session_id}", reason="not_found")
        codex_path = resolve_codex_executable(self.settings.codex_path)

        thread_id = meta.codex_session_id or self.store.find_thread_id(session_id)
        meta = replace(
            meta,
            status="running",
            cwd=self._resolve_cwd(cwd, meta),
            codex_session_id=thread_id,
            last_used_at_ms=now_ms(),
        )
        self.store.write_meta(meta)
        return await self._launch(meta, prompt, codex_path, thread_id=thread_id)

    async def stop(self, session_id: str) -> SessionMeta:
        meta = self.store.read_meta(session_id)
        if meta is None:
            raise RunControlError(f"Session not found: {session_id}", reason="not_found")
        run = self.runs.get(session_id)
        if run is not None and run.is_running:
            run.stop()
            return run.meta
        return meta

    async def shutdown(self) -> None:
        """Cancel every live run; used on server shutdown."""
        for run in list(self.runs.values()):
            await run.cancel()
        self.runs.clear()
