"""Session multiplexer: replay-then-attach routing of live records.

The multiplexer owns one ``SessionTimeline`` per tracked session. Activation
folds the session's persisted history into a fresh timeline and only then
attaches the live transport; live records that arrive while the fold is in
progress are buffered and flushed once it commits.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Callable
from dataclasses import replace
from typing import Literal, Protocol

from ..utils import now_ms
from .blocks import IdSource
from .events import Block, ContextMetrics, Event, LiveRecord, Notice, RunFinished
from .session_store import SessionMeta, SessionStatus, safe_title
from .timeline import SessionTimeline
from .usage import DailyUsage, UsageRecord, daily_rollup

logger = logging.getLogger(__name__)

TransportMode = Literal["in_process", "remote"]
ChangeListener = Callable[[str, str], None]

PLACEHOLDER_PREFIX = "pending-"
NOTICE_HISTORY = "history"
NOTICE_RUN_CONTROL = "run_control"
NOTICE_RECONNECTING = "reconnecting"
NOTICE_USAGE = "usage"


class RunControlError(Exception):
    """A start, continue or stop request could not be carried out.

    ``reason`` is one of ``not_found``, ``busy``, ``codex_missing`` or
    ``failed``; the sidecar maps it to an HTTP status.
    """

    def __init__(self, message: str, reason: str = "failed"):
        super().__init__(message)
        self.reason = reason


class HistorySource(Protocol):
    def list_sessions(self) -> list[SessionMeta]: ...

    def read_events(self, session_id: str, max_lines: int | None = None) -> list[str]: ...

    def read_stderr(self, session_id: str, max_lines: int | None = None) -> list[str]: ...

    def read_conclusion(self, session_id: str) -> str: ...


class RunControl(Protocol):
    async def start(self, prompt: str, cwd: str | None = None) -> SessionMeta: ...

    async def continue_run(self, session_id: str, prompt: str) -> SessionMeta: ...

    async def stop(self, session_id: str) -> SessionMeta: ...


class UsageSource(Protocol):
    def list_usage(self, limit: int | None = None) -> list[UsageRecord]: ...


class LiveTransport(Protocol):
    """Delivers live records to the multiplexer.

    ``open`` is called once with the delivery callbacks. In-process transports
    deliver every session's records; remote transports hold at most one
    session attached at a time.
    """

    mode: TransportMode

    async def open(
        self,
        deliver: Callable[[LiveRecord], None],
        on_error: Callable[[str, BaseException], None],
    ) -> None: ...

    async def attach(self, session_id: str) -> None: ...

    async def detach(self, session_id: str) -> None: ...

    async def close(self) -> None: ...


def replayed_overlap(lines: list[str], buffered: list[LiveRecord], stream: str = "stdout") -> int:
    """Count the leading buffered ``stream`` records that close out ``lines``.

    Records persisted before the history read are both in the log and at the
    head of the buffer, in the same order. A plain line that repeats
    earlier output only matches when it also repeats the end of the log.
    """
    raws = [r.raw for r in buffered if isinstance(r, Event) and r.stream == stream]
    for count in range(min(len(lines), len(raws)), 0, -1):
        if lines[len(lines) - count:] == raws[:count]:
            return count
    return 0


class SessionMultiplexer:
    """Routes live records to per-session timelines.

    Every mutation happens on the event loop thread. Boundary calls to the
    history and usage sources run in worker threads.
    """

    def __init__(
        self,
        history: HistorySource,
        transport: LiveTransport,
        run_control: RunControl | None = None,
        usage: UsageSource | None = None,
        history_max_lines: int | None = 2000,
        usage_max_records: int = 5000,
        reconnect_delay_seconds: float = 3.0,
        tick_seconds: float = 1.0,
        ids_factory: Callable[[str], IdSource] | None = None,
    ):
        self.history = history
        self.transport = transport
        self.run_control = run_control
        self.usage = usage
        self.history_max_lines = history_max_lines
        self.usage_max_records = usage_max_records
        self.reconnect_delay_seconds = reconnect_delay_seconds
        self.tick_seconds = tick_seconds
        self.ids_factory = ids_factory

        self.timelines: dict[str, SessionTimeline] = {}
        self.sessions: dict[str, SessionMeta] = {}
        self.active_id: str | None = None
        self.notices: list[Notice] = []
        self.usage_records: list[UsageRecord] = []
        self.daily_usage: list[DailyUsage] = []
        self.run_started_ms: dict[str, int] = {}

        self._replaying: dict[str, list[LiveRecord]] = {}
        self._folded: set[str] = set()
        self._timers: dict[str, asyncio.Task] = {}
        self._tasks: set[asyncio.Task] = set()
        self._reconnect: asyncio.Task | None = None
        self._listeners: list[ChangeListener] = []
        self._placeholders = itertools.count(1)
        self._opened = False
        self._closed = False

    @property
    def mode(self) -> TransportMode:
        return self.transport.mode

    # -- lifecycle ------------------------------------------------------------

    async def open(self) -> None:
        """Connect the transport and load the session list and usage."""
        if self._opened:
            return
        self._opened = True
        await self.transport.open(self.ingest, self._on_transport_error)
        await self.refresh_sessions()
        await self.refresh_usage()

    async def close(self) -> None:
        """Cancel timers and background work, then close the transport."""
        self._closed = True
        for session_id in list(self._timers):
            self._stop_timer(session_id)
        if self._reconnect is not None:
            self._reconnect.cancel()
            self._reconnect = None
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        await self.transport.close()

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """Register ``listener(session_id, what)``; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # -- activation -------------------------------------------------------------

    async def activate(self, session_id: str, reload: bool = False) -> SessionTimeline | None:
        """Make ``session_id`` the viewed session.

        In-process mode folds history only the first time a session is
        activated (or on ``reload``) since its live records keep flowing in the
        background. A timeline that only ever saw live records or a follow-up
        prompt has not been folded yet. Remote mode always re-folds because
        records that arrived while the session was detached were never
        received.
        """
        previous = self.active_id
        self.active_id = session_id
        if self.mode == "remote" and previous and previous != session_id:
            await self.transport.detach(previous)

        if self.mode == "in_process" and session_id in self._folded and not reload:
            self._changed(session_id, "activated")
            return self.timelines[session_id]

        if await self._replay(session_id) and self.active_id == session_id:
            await self._attach(session_id)
        return self.timelines.get(session_id)

    async def deactivate(self) -> None:
        """Stop viewing the active session. In-process ingestion continues."""
        previous, self.active_id = self.active_id, None
        if previous and self.mode == "remote":
            await self.transport.detach(previous)

    async def _attach(self, session_id: str) -> bool:
        try:
            await self.transport.attach(session_id)
        except OSError as exc:
            self._on_transport_error(session_id, exc)
            return False
        self._dismiss_for(NOTICE_RECONNECTING, None)
        return True

    async def _replay(self, session_id: str) -> bool:
        if session_id in self._replaying:
            logger.debug("Replay of %s already in progress", session_id)
            return False

        self._replaying[session_id] = []
        try:
            lines, stderr_lines, conclusion = await asyncio.gather(
                asyncio.to_thread(self.history.read_events, session_id, self.history_max_lines),
                asyncio.to_thread(self.history.read_stderr, session_id, self.history_max_lines),
                asyncio.to_thread(self.history.read_conclusion, session_id),
            )
        except (OSError, ValueError) as exc:
            logger.warning("Failed to load history for %s: %s", session_id, exc)
            self._notify(NOTICE_HISTORY, f"Could not load session history: {exc}", session_id=session_id)
            for record in self._replaying.pop(session_id, []):
                self._route(record)
            return False

        fresh = SessionTimeline.replay(
            session_id,
            lines,
            stderr_lines,
            conclusion,
            ids=self._ids_for(session_id),
        )
        timeline = self.timelines.get(session_id)
        if timeline is None:
            self.timelines[session_id] = fresh
        else:
            timeline.adopt(fresh)
        self._folded.add(session_id)

        # commit done; flush what arrived during the fold, skipping the
        # records the fold already read from the end of the log
        buffered = self._replaying.pop(session_id, [])
        skip = replayed_overlap(lines, buffered)
        for record in buffered:
            if skip and isinstance(record, Event) and record.stream == "stdout":
                skip -= 1
                continue
            self._route(record)

        self._dismiss_for(NOTICE_HISTORY, session_id)
        logger.debug(
            "Replayed %s: %d lines, %d stderr lines, %d buffered",
            session_id,
            len(lines),
            len(stderr_lines),
            len(buffered),
        )
        self._changed(session_id, "replayed")
        return True

    # -- live records -----------------------------------------------------------

    def ingest(self, record: LiveRecord) -> None:
        """Entry point for every live record, from any transport."""
        buffer = self._replaying.get(record.session_id)
        if buffer is not None:
            buffer.append(record)
            return
        self._route(record)

    def _route(self, record: LiveRecord) -> None:
        session_id = record.session_id
        if isinstance(record, ContextMetrics):
            self._apply_metrics(record)
            self._changed(session_id, "metrics")
            return
        if isinstance(record, RunFinished):
            self._apply_finished(record)
            self._changed(session_id, "finished")
            return

        timeline = self._live_timeline(session_id)
        if timeline is None:
            logger.debug("Dropping live record for untracked session %s", session_id)
            return
        try:
            timeline.apply_event(record)
        except ValueError as exc:
            logger.warning("Misrouted event for %s: %s", session_id, exc)
            return
        self._changed(session_id, "event")

    def _live_timeline(self, session_id: str) -> SessionTimeline | None:
        timeline = self.timelines.get(session_id)
        if timeline is not None:
            return timeline
        if self.mode != "in_process":
            return None
        # background runs accumulate even before anyone views them
        timeline = self.timelines[session_id] = self._new_timeline(session_id)
        return timeline

    def _new_timeline(self, session_id: str) -> SessionTimeline:
        return SessionTimeline(session_id, ids=self._ids_for(session_id))

    def _ids_for(self, session_id: str) -> IdSource | None:
        return self.ids_factory(session_id) if self.ids_factory else None

    def _apply_metrics(self, record: ContextMetrics) -> None:
        meta = self.sessions.get(record.session_id)
        if meta is None:
            return
        self.sessions[record.session_id] = replace(
            meta,
            context_left_pct=record.context_left_pct,
            context_used_tokens=record.context_used_tokens,
            context_window=record.context_window,
        )

    def _apply_finished(self, record: RunFinished) -> None:
        session_id = record.session_id
        self._set_status(session_id, "done" if record.success else "error", record.ts_ms)
        if self._closed:
            return
        self._spawn(self._refresh_after_run(session_id))

    async def _refresh_after_run(self, session_id: str) -> None:
        try:
            conclusion = await asyncio.to_thread(self.history.read_conclusion, session_id)
        except (OSError, ValueError) as exc:
            logger.warning("Failed to load conclusion for %s: %s", session_id, exc)
        else:
            timeline = self.timelines.get(session_id)
            if timeline is not None:
                timeline.conclusion = conclusion
                self._changed(session_id, "conclusion")
        await self.refresh_usage()

    # -- session list and usage ------------------------------------------------------

    async def refresh_sessions(self) -> None:
        try:
            metas = await asyncio.to_thread(self.history.list_sessions)
        except (OSError, ValueError) as exc:
            logger.warning("Failed to list sessions: %s", exc)
            self._notify(NOTICE_HISTORY, f"Could not load sessions: {exc}")
            return
        placeholders = {k: v for k, v in self.sessions.items() if k.startswith(PLACEHOLDER_PREFIX)}
        self.sessions = {meta.id: meta for meta in metas}
        self.sessions.update(placeholders)
        for meta in metas:
            self._sync_timer(meta.id, meta.status, meta.last_used_at_ms)
        self._changed("", "sessions")

    async def refresh_usage(self) -> None:
        if self.usage is None:
            return
        try:
            records = await asyncio.to_thread(self.usage.list_usage, self.usage_max_records)
        except (OSError, ValueError) as exc:
            logger.warning("Failed to load usage: %s", exc)
            self._notify(NOTICE_USAGE, f"Could not load usage: {exc}")
            return
        self.usage_records = records
        self.daily_usage = daily_rollup(records)
        self._dismiss_for(NOTICE_USAGE, None)
        self._changed("", "usage")

    def track_session(self, meta: SessionMeta) -> None:
        """Record fresh metadata for a session and sync its elapsed timer."""
        self.sessions[meta.id] = meta
        self._sync_timer(meta.id, meta.status, meta.last_used_at_ms)

    def forget(self, session_id: str) -> None:
        """Drop a deleted session's timeline, metadata and timer."""
        self._stop_timer(session_id)
        self.timelines.pop(session_id, None)
        self._folded.discard(session_id)
        self.sessions.pop(session_id, None)
        if self.active_id == session_id:
            self.active_id = None
        self._changed(session_id, "sessions")

    # -- run control ------------------------------------------------------------------

    async def start(self, prompt: str, cwd: str | None = None) -> SessionMeta | None:
        """Start a new run behind an optimistic placeholder session."""
        if self.run_control is None:
            self._notify(NOTICE_RUN_CONTROL, "Run control is not available")
            return None

        placeholder_id = f"{PLACEHOLDER_PREFIX}{next(self._placeholders)}"
        ts = now_ms()
        self.sessions[placeholder_id] = SessionMeta(
            id=placeholder_id,
            title=safe_title(prompt),
            created_at_ms=ts,
            last_used_at_ms=ts,
            cwd=cwd,
            status="running",
            events_path="",
            stderr_path="",
            conclusion_path="",
        )
        previous_active = self.active_id
        self.active_id = placeholder_id
        self._changed(placeholder_id, "sessions")

        try:
            meta = await self.run_control.start(prompt, cwd)
        except (RunControlError, OSError) as exc:
            logger.warning("Failed to start run: %s", exc)
            self.sessions.pop(placeholder_id, None)
            if self.active_id == placeholder_id:
                self.active_id = previous_active
            self._notify(NOTICE_RUN_CONTROL, f"Could not start run: {exc}")
            self._changed(placeholder_id, "sessions")
            return None

        self.sessions.pop(placeholder_id, None)
        self.track_session(meta)
        self._dismiss_for(NOTICE_RUN_CONTROL, None)
        if self.active_id == placeholder_id:
            await self.activate(meta.id)
        self._changed(meta.id, "sessions")
        return meta

    async def continue_run(self, session_id: str, prompt: str) -> SessionMeta | None:
        """Send a follow-up prompt; the prompt block shows until the run accepts it."""
        if self.run_control is None:
            self._notify(NOTICE_RUN_CONTROL, "Run control is not available", session_id=session_id)
            return None

        timeline = self.timelines.get(session_id)
        if timeline is None:
            timeline = self.timelines[session_id] = self._new_timeline(session_id)
        previous_meta = self.sessions.get(session_id)
        placeholder_key = f"{PLACEHOLDER_PREFIX}prompt:{next(self._placeholders)}"
        timeline.add_block(
            Block(
                id=placeholder_key,
                key=placeholder_key,
                kind="status",
                title="Prompt",
                body=prompt,
                ts_ms=now_ms(),
                subtitle="sending",
            )
        )
        if previous_meta is not None:
            self.sessions[session_id] = replace(previous_meta, status="running")
        self._changed(session_id, "event")

        try:
            meta = await self.run_control.continue_run(session_id, prompt)
        except (RunControlError, OSError) as exc:
            logger.warning("Failed to continue %s: %s", session_id, exc)
            timeline.remove_block(placeholder_key)
            if previous_meta is not None:
                self.sessions[session_id] = previous_meta
            self._notify(NOTICE_RUN_CONTROL, f"Could not continue run: {exc}", session_id=session_id)
            self._changed(session_id, "event")
            return None

        # the run records the prompt itself; the real block arrives live
        timeline.remove_block(placeholder_key)
        self.track_session(meta)
        self._dismiss_for(NOTICE_RUN_CONTROL, session_id)
        self._changed(session_id, "sessions")
        return meta

    async def stop(self, session_id: str) -> SessionMeta | None:
        """Ask the run to stop. Blocks stay; the finished record settles the status."""
        if self.run_control is None:
            self._notify(NOTICE_RUN_CONTROL, "Run control is not available", session_id=session_id)
            return None
        try:
            meta = await self.run_control.stop(session_id)
        except (RunControlError, OSError) as exc:
            logger.warning("Failed to stop %s: %s", session_id, exc)
            self._notify(NOTICE_RUN_CONTROL, f"Could not stop run: {exc}", session_id=session_id)
            return None
        self.track_session(meta)
        self._changed(session_id, "sessions")
        return meta

    # -- status and timers ---------------------------------------------------------------

    def _set_status(self, session_id: str, status: SessionStatus, ts_ms: int | None = None) -> None:
        meta = self.sessions.get(session_id)
        if meta is not None and meta.status != status:
            meta = replace(meta, status=status, last_used_at_ms=ts_ms or meta.last_used_at_ms)
            self.sessions[session_id] = meta
        self._sync_timer(session_id, status, ts_ms)

    def _sync_timer(self, session_id: str, status: SessionStatus, started_ms: int | None = None) -> None:
        if status == "running":
            if session_id not in self._timers and not self._closed:
                self.run_started_ms[session_id] = started_ms or now_ms()
                self._timers[session_id] = asyncio.get_running_loop().create_task(self._tick(session_id))
        else:
            self._stop_timer(session_id)

    def _stop_timer(self, session_id: str) -> None:
        task = self._timers.pop(session_id, None)
        if task is not None:
            task.cancel()
        self.run_started_ms.pop(session_id, None)

    async def _tick(self, session_id: str) -> None:
        while True:
            await asyncio.sleep(self.tick_seconds)
            self._changed(session_id, "tick")

    def elapsed_ms(self, session_id: str) -> int | None:
        started = self.run_started_ms.get(session_id)
        if started is None:
            return None
        return max(0, now_ms() - started)

    def running_timers(self) -> list[str]:
        return [sid for sid, task in self._timers.items() if not task.done()]

    # -- transport errors ---------------------------------------------------------------

    def _on_transport_error(self, session_id: str, exc: BaseException) -> None:
        logger.warning("Live stream for %s failed: %s", session_id, exc)
        self._notify(
            NOTICE_RECONNECTING,
            f"Live updates interrupted, reconnecting: {exc}",
            sticky=True,
            session_id=session_id,
        )
        if self._closed or self._reconnect is not None:
            return
        self._reconnect = self._spawn(self._reconnect_after_delay(session_id))

    async def _reconnect_after_delay(self, session_id: str) -> None:
        await asyncio.sleep(self.reconnect_delay_seconds)
        self._reconnect = None
        if self._closed:
            return
        if self.active_id != session_id:
            self._dismiss_for(NOTICE_RECONNECTING, None)
            return
        await self.transport.detach(session_id)
        if not await self._replay(session_id):
            # history is unreachable too; keep the notice and try again later
            self._reconnect = self._spawn(self._reconnect_after_delay(session_id))
            return
        if self.active_id == session_id:
            await self._attach(session_id)

    # -- notices ------------------------------------------------------------------

    def _notify(self, kind: str, message: str, sticky: bool = False, session_id: str | None = None) -> None:
        self.notices = [n for n in self.notices if n.kind != kind]
        self.notices.append(Notice(kind=kind, message=message, sticky=sticky, session_id=session_id))
        self._changed(session_id or "", "notice")

    def dismiss_notice(self, kind: str) -> bool:
        """Dismiss a non-sticky notice. Sticky notices clear when the condition recovers."""
        before = len(self.notices)
        self.notices = [n for n in self.notices if n.kind != kind or n.sticky]
        return len(self.notices) != before

    def _dismiss_for(self, kind: str, session_id: str | None) -> None:
        before = len(self.notices)
        self.notices = [
            n for n in self.notices
            if n.kind != kind or (session_id is not None and n.session_id not in (None, session_id))
        ]
        if len(self.notices) != before:
            self._changed(session_id or "", "notice")

    # -- helpers ------------------------------------------------------------------

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _changed(self, session_id: str, what: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(session_id, what)
            except Exception:
                logger.exception("Change listener failed for %s (%s)", session_id, what)

    def timeline(self, session_id: str) -> SessionTimeline | None:
        return self.timelines.get(session_id)

    def session_list(self) -> list[SessionMeta]:
        """Sessions most recently used first."""
        return sorted(
            self.sessions.values(),
            key=lambda m: max(m.last_used_at_ms, m.created_at_ms),
            reverse=True,
        )
