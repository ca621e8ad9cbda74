"""Shared runtime storage helpers."""

from __future__ import annotations

import os
import re
import tempfile
import uuid
from pathlib import Path

SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]{1,128}$")


def _is_writable_dir(path: Path) -> bool:
    """Return whether path exists and accepts create/write/delete operations."""
    try:
        path.mkdir(parents=True, exist_ok=True)
        marker = path / f".cw-write-check-{uuid.uuid4().hex}"
        marker.write_text("ok")
        marker.unlink(missing_ok=True)
        return True
    except OSError:
        return False


def resolve_data_dir(configured: str | Path | None = None) -> Path:
    """Resolve the data directory with a writable fallback for restricted envs."""
    candidate = configured or os.environ.get("CODEX_WARP_HOME")
    if candidate:
        path = Path(candidate).expanduser()
        if _is_writable_dir(path):
            return path

    preferred = Path.home() / ".codex-warp"
    if _is_writable_dir(preferred):
        return preferred

    fallback = Path(tempfile.gettempdir()) / "codex-warp-runtime"
    fallback.mkdir(parents=True, exist_ok=True)
    return fallback


def default_codex_home() -> Path:
    configured = os.environ.get("CODEX_HOME")
    if configured:
        return Path(configured).expanduser()
    return Path.home() / ".codex"


def is_valid_session_id(session_id: str) -> bool:
    return bool(SESSION_ID_PATTERN.match(session_id)) and session_id not in (".", "..")


def sessions_root(data_dir: Path) -> Path:
    return data_dir / "sessions"


def session_dir(data_dir: Path, session_id: str) -> Path:
    if not is_valid_session_id(session_id):
        raise ValueError(f"Invalid session id: {session_id!r}")
    return sessions_root(data_dir) / session_id


def usage_file_path(data_dir: Path | None = None) -> Path:
    return (data_dir or resolve_data_dir()) / "usage.json"


def new_session_id() -> str:
    return uuid.uuid4().hex
