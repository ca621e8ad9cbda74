"""
SSE streaming routes - live codex records for one session.

A client connecting to ``/api/sessions/{id}/stream`` first receives a backlog
of the newest ``tail`` log lines as ``codex_event`` messages, then live
``codex_event``, ``context_metrics`` and ``run_finished`` messages as the run
produces them.
"""

import asyncio
import json
import logging
from typing import AsyncGenerator

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse

from ....core.events import ContextMetrics, Event, LiveRecord, RunFinished
from ....core.multiplexer import replayed_overlap
from ....core.normalizer import parse_line
from ..state import SidecarState, get_state, require_session

router = APIRouter()
logger = logging.getLogger(__name__)

DEFAULT_TAIL = 4000
MIN_TAIL = 50
MAX_TAIL = 50_000
KEEPALIVE_SECONDS = 15.0


def resolve_tail(tail: int | None, default: int = DEFAULT_TAIL) -> int:
    """0 disables the backlog; other values are clamped to a sane range."""
    if tail is None:
        return default
    if tail <= 0:
        return 0
    return max(MIN_TAIL, min(tail, MAX_TAIL))


def event_name(record: LiveRecord) -> str:
    if isinstance(record, ContextMetrics):
        return "context_metrics"
    if isinstance(record, RunFinished):
        return "run_finished"
    return "codex_event"


def format_sse(event: str, payload: dict) -> str:
    """Format one named SSE message."""
    return f"event: {event}\ndata: {json.dumps(payload, ensure_ascii=False)}\n\n"


def build_backlog(state: SidecarState, session_id: str, tail: int) -> list[Event]:
    """Newest ``tail`` stdout and stderr lines, ordered by (timestamp, read order).

    Lines without a timestamp of their own (all of stderr) are stamped with
    the read time, so they sort after the stamped history.
    """
    if tail <= 0:
        return []
    stdout_lines = state.history.read_events(session_id, tail)
    stderr_lines = state.history.read_stderr(session_id, tail)

    backlog: list[tuple[int, int, Event]] = []
    seq = 0
    for raw in stdout_lines:
        event = parse_line(session_id, raw, "stdout")
        backlog.append((event.ts_ms, seq, event))
        seq += 1
    for raw in stderr_lines:
        event = parse_line(session_id, raw, "stderr")
        backlog.append((event.ts_ms, seq, event))
        seq += 1

    backlog.sort(key=lambda item: (item[0], item[1]))
    events = [event for _, _, event in backlog]
    if len(events) > tail:
        events = events[-tail:]
    return events


def skip_backlogged(backlog: list[Event], queued: list[LiveRecord]) -> list[LiveRecord]:
    """Drop queued records that were persisted in time to be in the backlog."""
    skip = {
        stream: replayed_overlap([e.raw for e in backlog if e.stream == stream], queued, stream)
        for stream in ("stdout", "stderr")
    }
    fresh: list[LiveRecord] = []
    for record in queued:
        if isinstance(record, Event) and skip[record.stream]:
            skip[record.stream] -= 1
            continue
        fresh.append(record)
    return fresh


@router.get("/{session_id}/stream")
async def stream_session(
    session_id: str,
    tail: int | None = Query(default=None),
    state: SidecarState = Depends(get_state),
) -> StreamingResponse:
    """SSE endpoint for one session's live records.

    Event format:
    ```
    event: codex_event
    data: {"session_id":"...","ts_ms":1700000000000,"stream":"stdout","raw":"...","json":{...}}

    event: context_metrics
    data: {"session_id":"...","ts_ms":...,"context_left_pct":87,"context_used_tokens":16000,"context_window":128000}

    event: run_finished
    data: {"session_id":"...","ts_ms":...,"exit_code":0,"success":true}
    ```

    A ``: keepalive`` comment is sent after 15 seconds of silence.
    """
    require_session(state, session_id)
    tail_lines = resolve_tail(tail, state.settings.stream_tail_lines)

    # subscribe before reading the backlog so nothing falls in between
    subscription = state.channel.subscribe(session_id)
    try:
        backlog = await asyncio.to_thread(build_backlog, state, session_id, tail_lines)
    except OSError as exc:
        subscription.close()
        logger.warning("Failed to read backlog for %s: %s", session_id, exc)
        raise HTTPException(status_code=500, detail="Could not read session log") from exc
    queued = skip_backlogged(backlog, subscription.take_pending())

    async def event_generator() -> AsyncGenerator[str, None]:
        try:
            for event in backlog:
                yield format_sse("codex_event", event.to_dict())
            for record in queued:
                yield format_sse(event_name(record), record.to_dict())
            while True:
                try:
                    record = await asyncio.wait_for(subscription.get(), timeout=KEEPALIVE_SECONDS)
                except TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                if record is None:
                    break
                yield format_sse(event_name(record), record.to_dict())
        finally:
            subscription.close()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )
