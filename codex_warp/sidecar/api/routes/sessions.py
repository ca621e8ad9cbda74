"""
Session API routes - list, start, continue, stop, rename and delete codex
sessions, plus raw log access and the folded timeline.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from ....core.blocks import filter_blocks
from ....core.multiplexer import RunControlError
from ....core.session_store import SessionMeta
from ..state import SidecarState, get_state, http_error, require_session

router = APIRouter()
logger = logging.getLogger(__name__)

MAX_LOG_LINES = 50_000


# =========================================================================
# Pydantic models
# =========================================================================

class SessionMetaResponse(BaseModel):
    id: str
    title: str
    created_at_ms: int
    last_used_at_ms: int = 0
    cwd: str | None = None
    status: str
    codex_session_id: str | None = None
    context_window: int | None = None
    context_used_tokens: int | None = None
    context_left_pct: int | None = None
    events_path: str
    stderr_path: str
    conclusion_path: str

    @classmethod
    def from_meta(cls, meta: SessionMeta) -> "SessionMetaResponse":
        return cls(**meta.to_dict())


class StartRequest(BaseModel):
    prompt: str
    cwd: str | None = None


class ContinueRequest(BaseModel):
    prompt: str
    cwd: str | None = None


class RenameRequest(BaseModel):
    title: str


class LinesResponse(BaseModel):
    session_id: str
    lines: list[str]


class ConclusionResponse(BaseModel):
    session_id: str
    text: str


class DeleteResponse(BaseModel):
    success: bool


class BlockResponse(BaseModel):
    id: str
    key: str
    kind: str
    title: str
    subtitle: str | None = None
    body: str
    ts_ms: int
    status: str | None = None
    collapsed: bool | None = None


class PlanRowResponse(BaseModel):
    text: str
    status: str
    source: str


class TimelineResponse(BaseModel):
    session_id: str
    status: str
    elapsed_ms: int | None = None
    blocks: list[BlockResponse]
    plan_hint: str | None = None
    plan: list[PlanRowResponse]
    plan_completed: int
    conclusion: str
    activity: list[str]


def _clamp_limit(limit: int | None) -> int | None:
    if limit is None:
        return None
    return max(0, min(limit, MAX_LOG_LINES))


# =========================================================================
# Routes
# =========================================================================

@router.get("")
def list_sessions(state: SidecarState = Depends(get_state)) -> list[SessionMetaResponse]:
    """All sessions, most recently used first."""
    return [SessionMetaResponse.from_meta(meta) for meta in state.history.list_sessions()]


@router.post("")
async def start_session(request: StartRequest, state: SidecarState = Depends(get_state)) -> SessionMetaResponse:
    """Create a session and launch codex with the prompt."""
    if not request.prompt.strip():
        raise HTTPException(status_code=400, detail="Prompt is empty")
    try:
        meta = await state.supervisor.start(request.prompt, request.cwd)
    except RunControlError as exc:
        raise http_error(exc) from exc
    state.multiplexer.track_session(meta)
    return SessionMetaResponse.from_meta(meta)


@router.get("/{session_id}")
def get_session(session_id: str, state: SidecarState = Depends(get_state)) -> SessionMetaResponse:
    return SessionMetaResponse.from_meta(require_session(state, session_id))


@router.post("/{session_id}/continue")
async def continue_session(
    session_id: str,
    request: ContinueRequest,
    state: SidecarState = Depends(get_state),
) -> SessionMetaResponse:
    """Resume the session's codex thread with a follow-up prompt."""
    require_session(state, session_id)
    if not request.prompt.strip():
        raise HTTPException(status_code=400, detail="Prompt is empty")
    state.history.adopt(session_id)
    try:
        meta = await state.supervisor.continue_run(session_id, request.prompt, request.cwd)
    except RunControlError as exc:
        raise http_error(exc) from exc
    state.multiplexer.track_session(meta)
    return SessionMetaResponse.from_meta(meta)


@router.post("/{session_id}/stop")
async def stop_session(session_id: str, state: SidecarState = Depends(get_state)) -> SessionMetaResponse:
    """Ask a running session to stop. The stream reports when it has."""
    current = require_session(state, session_id)
    if not state.store.exists(session_id):
        # native sessions never run here
        return SessionMetaResponse.from_meta(current)
    try:
        meta = await state.supervisor.stop(session_id)
    except RunControlError as exc:
        raise http_error(exc) from exc
    return SessionMetaResponse.from_meta(meta)


@router.patch("/{session_id}")
def rename_session(
    session_id: str,
    request: RenameRequest,
    state: SidecarState = Depends(get_state),
) -> SessionMetaResponse:
    require_session(state, session_id)
    meta = state.history.rename(session_id, request.title)
    if meta is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return SessionMetaResponse.from_meta(meta)


@router.delete("/{session_id}")
def delete_session(session_id: str, state: SidecarState = Depends(get_state)) -> DeleteResponse:
    require_session(state, session_id)
    if state.supervisor.is_running(session_id):
        raise HTTPException(status_code=409, detail="Session is running; stop it first")
    deleted = state.history.delete(session_id)
    state.multiplexer.forget(session_id)
    return DeleteResponse(success=deleted)


@router.get("/{session_id}/events")
def read_events(
    session_id: str,
    limit: int | None = Query(default=None, ge=0),
    state: SidecarState = Depends(get_state),
) -> LinesResponse:
    """Raw events log lines, the newest ``limit`` of them."""
    require_session(state, session_id)
    return LinesResponse(session_id=session_id, lines=state.history.read_events(session_id, _clamp_limit(limit)))


@router.get("/{session_id}/stderr")
def read_stderr(
    session_id: str,
    limit: int | None = Query(default=None, ge=0),
    state: SidecarState = Depends(get_state),
) -> LinesResponse:
    require_session(state, session_id)
    return LinesResponse(session_id=session_id, lines=state.history.read_stderr(session_id, _clamp_limit(limit)))


@router.get("/{session_id}/conclusion")
def read_conclusion(session_id: str, state: SidecarState = Depends(get_state)) -> ConclusionResponse:
    require_session(state, session_id)
    return ConclusionResponse(session_id=session_id, text=state.history.read_conclusion(session_id))


@router.get("/{session_id}/timeline")
async def get_timeline(
    session_id: str,
    kind: str = Query(default="all"),
    q: str = Query(default=""),
    state: SidecarState = Depends(get_state),
) -> TimelineResponse:
    """The folded timeline: blocks, plan and todos, conclusion, activity.

    ``kind`` and ``q`` filter the returned blocks only.
    """
    meta = require_session(state, session_id)
    multiplexer = state.multiplexer
    timeline = await multiplexer.activate(session_id)
    if timeline is None:
        raise HTTPException(status_code=503, detail="Session history could not be loaded")

    view = timeline.plan_view()
    return TimelineResponse(
        session_id=session_id,
        status=meta.status,
        elapsed_ms=multiplexer.elapsed_ms(session_id),
        blocks=[BlockResponse(**block.to_dict()) for block in filter_blocks(timeline.blocks, kind, q)],
        plan_hint=view.hint,
        plan=[PlanRowResponse(text=row.text, status=row.status, source=row.source) for row in view.rows],
        plan_completed=view.completed,
        conclusion=timeline.conclusion,
        activity=list(timeline.activity),
    )
