"""
Settings API routes - effective settings, edits and codex executable detection.
"""

import logging
from dataclasses import replace
from pathlib import Path

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from ....agents.supervisor import detect_codex_paths, resolve_codex_executable
from ....core.multiplexer import RunControlError
from ..state import SidecarState, get_state

router = APIRouter()
logger = logging.getLogger(__name__)


# =========================================================================
# Pydantic response models
# =========================================================================

class SettingsResponse(BaseModel):
    data_dir: str
    codex_path: str | None = None
    codex_home: str
    default_cwd: str | None = None
    remote_url: str
    history_max_lines: int
    stream_tail_lines: int
    usage_max_records: int
    context_window: int
    reconnect_delay_seconds: float
    elapsed_tick_seconds: float
    stop_grace_seconds: float


class SettingsUpdate(BaseModel):
    """Editable settings; omitted fields keep their value, empty strings clear optional paths."""

    codex_path: str | None = None
    codex_home: str | None = None
    default_cwd: str | None = None
    remote_url: str | None = None
    history_max_lines: int | None = Field(default=None, ge=0)
    context_window: int | None = Field(default=None, ge=0)
    stop_grace_seconds: float | None = Field(default=None, ge=0)


class CodexPathsResponse(BaseModel):
    candidates: list[str]
    resolved: str | None = None
    error: str | None = None


# =========================================================================
# Routes
# =========================================================================

@router.get("")
def get_settings(state: SidecarState = Depends(get_state)) -> SettingsResponse:
    """Effective settings after file, environment and command line overrides."""
    return SettingsResponse(**state.settings.to_dict())


@router.get("/codex-paths")
def get_codex_paths(state: SidecarState = Depends(get_state)) -> CodexPathsResponse:
    """Executable candidates found on this machine and the one runs would use."""
    candidates = detect_codex_paths()
    try:
        resolved = resolve_codex_executable(state.settings.codex_path)
    except RunControlError as exc:
        return CodexPathsResponse(candidates=candidates, error=str(exc))
    return CodexPathsResponse(candidates=candidates, resolved=resolved)


@router.put("")
def update_settings(request: SettingsUpdate, state: SidecarState = Depends(get_state)) -> SettingsResponse:
    """Save edited settings to ``settings.json`` and apply them to this sidecar."""
    changes = request.model_dump(exclude_unset=True)
    for name in ("codex_path", "default_cwd"):
        if name in changes and not (changes[name] or "").strip():
            changes[name] = None
    for name in ("codex_home", "remote_url", "history_max_lines", "context_window", "stop_grace_seconds"):
        if name in changes and changes[name] in (None, ""):
            raise HTTPException(status_code=422, detail=f"{name} cannot be empty")
    if "codex_home" in changes:
        changes["codex_home"] = Path(changes["codex_home"]).expanduser()

    updated = replace(state.settings, **changes)
    if not updated.save():
        raise HTTPException(status_code=500, detail="Failed to save settings")
    state.apply_settings(updated)
    logger.info("Settings updated: %s", ", ".join(sorted(changes)) or "no changes")
    return SettingsResponse(**updated.to_dict())
