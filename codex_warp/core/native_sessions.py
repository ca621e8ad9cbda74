"""Native codex sessions read from rollout logs under ``$CODEX_HOME``.

Codex keeps one ``rollout-<YYYY-MM-DDTHH-MM-SS>-<session id>.jsonl`` file per
session (resumed sessions may have several) below ``sessions/`` and
``archived_sessions/``. ``SessionCatalog`` merges them with the warp sessions
in a ``SessionStore`` so both show up in one list and fold the same way.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from dataclasses import dataclass, replace
from pathlib import Path

from ..utils import JSONLParser, now_ms, try_parse_json
from .normalizer import rollout_user_text
from .runtime import is_valid_session_id
from .session_store import SessionMeta, SessionStore, safe_title

logger = logging.getLogger(__name__)

ROLLOUT_PREFIX = "rollout-"
ROLLOUT_SUFFIX = ".jsonl"
ROLLOUT_DIRS = ("sessions", "archived_sessions")
TITLES_FILENAME = ".codex-global-state.json"
RESCAN_SECONDS = 3.0
PROMPT_TAIL_BYTES = 96 * 1024

# sessions started by ``codex exec`` belong to warp runs
EXEC_SOURCES = {"exec"}
EXEC_ORIGINATORS = {"codex_exec"}


def parse_rollout_session_id(file_name: str) -> str | None:
    """Session id from a rollout file name, or None for other files."""
    if not file_name.startswith(ROLLOUT_PREFIX) or not file_name.endswith(ROLLOUT_SUFFIX):
        return None
    base = file_name[len(ROLLOUT_PREFIX):-len(ROLLOUT_SUFFIX)]
    # "YYYY-MM-DDTHH-MM-SS-<id>"
    if len(base) <= 20 or base[19] != "-":
        return None
    session_id = base[20:].strip()
    return session_id or None


def scan_rollouts(root: Path) -> dict[str, list[Path]]:
    """Rollout files below ``root`` grouped by session id, oldest file first."""
    found: dict[str, list[Path]] = {}
    if not root.is_dir():
        return found
    for dirpath, _, filenames in os.walk(root):
        for name in filenames:
            session_id = parse_rollout_session_id(name)
            if session_id is not None:
                found.setdefault(session_id, []).append(Path(dirpath) / name)
    for paths in found.values():
        paths.sort(key=lambda p: p.name)
    return found


def load_thread_titles(codex_home: Path) -> dict[str, str]:
    """Titles the codex app stored for its threads."""
    path = codex_home / TITLES_FILENAME
    try:
        data = json.loads(path.read_text())
    except FileNotFoundError:
        return {}
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Ignoring unreadable %s: %s", path, exc)
        return {}
    titles = (data.get("thread-titles") or {}).get("titles") if isinstance(data, dict) else None
    if not isinstance(titles, dict):
        return {}
    return {
        key: value.strip()
        for key, value in titles.items()
        if isinstance(value, str) and key.strip() and value.strip()
    }


def _mtime_ms(path: Path) -> int | None:
    try:
        return int(path.stat().st_mtime * 1000)
    except OSError:
        return None


@dataclass(frozen=True)
class RolloutInfo:
    """What the newest rollout file says about its session."""

    path: Path
    mtime_ms: int
    cwd: str | None = None
    originator: str | None = None
    source: str | None = None
    last_prompt: str | None = None

    @property
    def is_exec(self) -> bool:
        return self.source in EXEC_SOURCES or self.originator in EXEC_ORIGINATORS

    @classmethod
    def read(cls, path: Path, mtime_ms: int) -> "RolloutInfo":
        cwd = originator = source = None
        last_prompt = None
        with open(path, "rb") as f:
            first = try_parse_json(f.readline().decode("utf-8", errors="replace"))
            if isinstance(first, dict) and first.get("type") == "session_meta":
                payload = first.get("payload") or {}
                if isinstance(payload, dict):
                    cwd = payload.get("cwd") if isinstance(payload.get("cwd"), str) else None
                    originator = payload.get("originator") if isinstance(payload.get("originator"), str) else None
                    source = payload.get("source") if isinstance(payload.get("source"), str) else None

            f.seek(0, 2)
            size = f.tell()
            start = max(0, size - PROMPT_TAIL_BYTES)
            f.seek(start)
            lines = f.read().decode("utf-8", errors="replace").splitlines()
            if start > 0 and lines:
                # partial line from seeking into the middle
                lines = lines[1:]
        for line in reversed(lines):
            text = rollout_user_text(try_parse_json(line.strip()))
            if text:
                last_prompt = text
                break
        return cls(path, mtime_ms, cwd, originator, source, last_prompt)


class NativeSessionIndex:
    """Cached view of the rollout files under a codex home.

    The directory scan is reused for ``rescan_seconds``; per-session details
    are re-read only when the newest rollout file changes.
    """

    def __init__(self, codex_home: Path, rescan_seconds: float = RESCAN_SECONDS):
        self.codex_home = codex_home
        self.rescan_seconds = rescan_seconds
        self._lock = threading.Lock()
        self._rollouts: dict[str, list[Path]] = {}
        self._scanned_at: float | None = None
        self._info: dict[str, RolloutInfo] = {}

    def rollouts(self) -> dict[str, list[Path]]:
        with self._lock:
            now = time.monotonic()
            if self._scanned_at is None or now - self._scanned_at >= self.rescan_seconds:
                merged: dict[str, list[Path]] = {}
                for name in ROLLOUT_DIRS:
                    for session_id, paths in scan_rollouts(self.codex_home / name).items():
                        merged.setdefault(session_id, []).extend(paths)
                for paths in merged.values():
                    paths.sort(key=lambda p: p.name)
                self._rollouts = merged
                self._info = {k: v for k, v in self._info.items() if k in merged}
                self._scanned_at = now
            return dict(self._rollouts)

    def invalidate(self) -> None:
        with self._lock:
            self._scanned_at = None

    def has(self, session_id: str) -> bool:
        return session_id in self.rollouts()

    def _info_for(self, session_id: str, latest: Path) -> RolloutInfo | None:
        mtime = _mtime_ms(latest)
        if mtime is None:
            return None
        with self._lock:
            cached = self._info.get(session_id)
        if cached is not None and cached.path == latest and cached.mtime_ms == mtime:
            return cached
        try:
            info = RolloutInfo.read(latest, mtime)
        except OSError as exc:
            logger.warning("Failed to read rollout %s: %s", latest, exc)
            return None
        with self._lock:
            self._info[session_id] = info
        return info

    def _meta(self, session_id: str, paths: list[Path], titles: dict[str, str]) -> SessionMeta | None:
        info = self._info_for(session_id, paths[-1])
        if info is None or info.is_exec:
            return None
        title = titles.get(session_id) or (safe_title(info.last_prompt) if info.last_prompt else None)
        if title is None:
            # nothing the user typed; the codex app hides these too
            return None
        return SessionMeta(
            id=session_id,
            title=title,
            created_at_ms=_mtime_ms(paths[0]) or info.mtime_ms,
            last_used_at_ms=info.mtime_ms,
            cwd=info.cwd,
            status="done",
            codex_session_id=session_id,
            events_path=str(info.path),
            stderr_path="",
            conclusion_path="",
        )

    def meta(self, session_id: str) -> SessionMeta | None:
        paths = self.rollouts().get(session_id)
        if not paths:
            return None
        return self._meta(session_id, paths, load_thread_titles(self.codex_home))

    def list_sessions(self) -> list[SessionMeta]:
        titles = load_thread_titles(self.codex_home)
        metas = []
        for session_id, paths in self.rollouts().items():
            meta = self._meta(session_id, paths, titles) if paths else None
            if meta is not None:
                metas.append(meta)
        return metas

    def read_events(self, session_id: str, max_lines: int | None = None) -> list[str]:
        """Rollout lines across every file of the session, the newest ``max_lines``."""
        if max_lines is not None and max_lines <= 0:
            return []
        lines: list[str] = []
        for path in self.rollouts().get(session_id, []):
            lines.extend(JSONLParser(path).tail(max_lines))
        if max_lines is not None:
            lines = lines[-max_lines:]
        return lines

    def rename(self, session_id: str, title: str) -> bool:
        """Store a thread title the way the codex app does."""
        if not self.has(session_id):
            return False
        path = self.codex_home / TITLES_FILENAME
        try:
            root = json.loads(path.read_text())
        except FileNotFoundError:
            root = {}
        except json.JSONDecodeError:
            logger.warning("Replacing unreadable %s", path)
            root = {}
        if not isinstance(root, dict):
            root = {}
        section = root.get("thread-titles")
        if not isinstance(section, dict):
            section = root["thread-titles"] = {}
        titles = section.get("titles")
        if not isinstance(titles, dict):
            titles = section["titles"] = {}
        titles[session_id] = title
        order = section.get("order")
        if not isinstance(order, list):
            order = section["order"] = []
        if session_id not in order:
            order.insert(0, session_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(root, indent=2))
        return True

    def delete(self, session_id: str) -> bool:
        paths = self.rollouts().get(session_id)
        if not paths:
            return False
        for path in paths:
            try:
                path.unlink()
            except FileNotFoundError:
                pass
        self.invalidate()
        return True


class SessionCatalog:
    """Warp sessions and native codex sessions behind one history source.

    A native session that was continued from warp has both a rollout and a
    warp log; its history is the rollout followed by the warp log.
    """

    def __init__(self, store: SessionStore, native: NativeSessionIndex | None = None):
        self.store = store
        self.native = native

    def list_sessions(self) -> list[SessionMeta]:
        """All sessions, most recently used first."""
        merged = {meta.id: meta for meta in self.store.list_sessions()}
        if self.native is not None:
            for native in self.native.list_sessions():
                own = merged.get(native.id)
                if own is None:
                    merged[native.id] = native
                    continue
                merged[native.id] = replace(
                    own,
                    cwd=own.cwd or native.cwd,
                    created_at_ms=min(own.created_at_ms, native.created_at_ms),
                    last_used_at_ms=max(own.last_used_at_ms, native.last_used_at_ms),
                )
        return sorted(merged.values(), key=lambda m: max(m.last_used_at_ms, m.created_at_ms), reverse=True)

    def is_native(self, session_id: str) -> bool:
        return self.native is not None and is_valid_session_id(session_id) and self.native.has(session_id)

    def read_meta(self, session_id: str) -> SessionMeta | None:
        meta = self.store.read_meta(session_id)
        if meta is None and self.is_native(session_id):
            meta = self.native.meta(session_id)
        return meta

    def read_events(self, session_id: str, max_lines: int | None = None) -> list[str]:
        own = self.store.read_events(session_id, max_lines)
        if not self.is_native(session_id):
            return own
        lines = self.native.read_events(session_id, max_lines) + own
        if max_lines is not None:
            lines = lines[-max_lines:] if max_lines > 0 else []
        return lines

    def read_stderr(self, session_id: str, max_lines: int | None = None) -> list[str]:
        return self.store.read_stderr(session_id, max_lines)

    def read_conclusion(self, session_id: str) -> str:
        return self.store.read_conclusion(session_id)

    def rename(self, session_id: str, title: str) -> SessionMeta | None:
        title = title.strip()
        if self.store.exists(session_id):
            return self.store.rename(session_id, title)
        if title and self.is_native(session_id):
            self.native.rename(session_id, title)
        return self.read_meta(session_id)

    def delete(self, session_id: str) -> bool:
        deleted = self.store.delete(session_id)
        if self.is_native(session_id):
            deleted = self.native.delete(session_id) or deleted
        return deleted

    def adopt(self, session_id: str) -> SessionMeta | None:
        """Give a native session a warp directory so it can be continued.

        The codex thread id is the native session id; earlier turns stay in
        the rollout.
        """
        meta = self.store.read_meta(session_id)
        if meta is not None or not self.is_native(session_id):
            return meta
        native = self.native.meta(session_id)
        if native is None:
            return None
        paths = self.store.paths(session_id)
        meta = replace(
            native,
            last_used_at_ms=max(native.last_used_at_ms, now_ms()),
            events_path=str(paths["events"]),
            stderr_path=str(paths["stderr"]),
            conclusion_path=str(paths["conclusion"]),
        )
        self.store.write_meta(meta)
        return meta
