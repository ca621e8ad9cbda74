"""File-backed session metadata and logs."""

from __future__ import annotations

import json
import logging
import shutil
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Literal

from ..utils import JSONLParser, append_jsonl, now_ms
from .runtime import is_valid_session_id, new_session_id, session_dir, sessions_root

logger = logging.getLogger(__name__)

SessionStatus = Literal["running", "done", "error"]

EVENTS_FILENAME = "events.jsonl"
STDERR_FILENAME = "stderr.log"
CONCLUSION_FILENAME = "conclusion.md"
META_FILENAME = "meta.json"
TITLE_MAX = 60


@dataclass(frozen=True)
class SessionMeta:
    id: str
    title: str
    created_at_ms: int
    status: SessionStatus
    events_path: str
    stderr_path: str
    conclusion_path: str
    last_used_at_ms: int = 0
    cwd: str | None = None
    codex_session_id: str | None = None
    context_window: int | None = None
    context_used_tokens: int | None = None
    context_left_pct: int | None = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "SessionMeta":
        status = data.get("status")
        return cls(
            id=str(data["id"]),
            title=str(data.get("title") or "New session"),
            created_at_ms=int(data.get("created_at_ms") or 0),
            status=status if status in ("running", "done", "error") else "error",
            events_path=str(data.get("events_path") or ""),
            stderr_path=str(data.get("stderr_path") or ""),
            conclusion_path=str(data.get("conclusion_path") or ""),
            last_used_at_ms=int(data.get("last_used_at_ms") or 0),
            cwd=data.get("cwd"),
            codex_session_id=data.get("codex_session_id"),
            context_window=data.get("context_window"),
            context_used_tokens=data.get("context_used_tokens"),
            context_left_pct=data.get("context_left_pct"),
        )


def safe_title(prompt: str) -> str:
    """The prompt on one line, trimmed to a list-friendly length."""
    title = " ".join(prompt.split())
    if not title:
        return "New session"
    if len(title) > TITLE_MAX:
        return title[:TITLE_MAX] + "…"
    return title


class SessionStore:
    """Sessions under ``<data_dir>/sessions/<id>/``.

    Also serves as the historical log source for the multiplexer.
    """

    def __init__(self, data_dir: Path):
        self.data_dir = data_dir
        self.root = sessions_root(data_dir)

    def paths(self, session_id: str) -> dict[str, Path]:
        base = session_dir(self.data_dir, session_id)
        return {
            "dir": base,
            "meta": base / META_FILENAME,
            "events": base / EVENTS_FILENAME,
            "stderr": base / STDERR_FILENAME,
            "conclusion": base / CONCLUSION_FILENAME,
        }

    def create(self, prompt: str, cwd: str | None = None, session_id: str | None = None) -> SessionMeta:
        session_id = session_id or new_session_id()
        paths = self.paths(session_id)
        paths["dir"].mkdir(parents=True, exist_ok=True)
        ts = now_ms()
        meta = SessionMeta(
            id=session_id,
            title=safe_title(prompt),
            created_at_ms=ts,
            last_used_at_ms=ts,
            cwd=cwd,
            status="running",
            events_path=str(paths["events"]),
            stderr_path=str(paths["stderr"]),
            conclusion_path=str(paths["conclusion"]),
        )
        self.write_meta(meta)
        return meta

    def exists(self, session_id: str) -> bool:
        if not is_valid_session_id(session_id):
            return False
        return self.paths(session_id)["meta"].exists()

    def read_meta(self, session_id: str) -> SessionMeta | None:
        if not is_valid_session_id(session_id):
            return None
        path = self.paths(session_id)["meta"]
        try:
            return SessionMeta.from_dict(json.loads(path.read_text()))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Failed to read session meta %s: %s", path, exc)
            return None

    def write_meta(self, meta: SessionMeta) -> None:
        path = self.paths(meta.id)["meta"]
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(meta.to_dict(), indent=2))
        tmp.replace(path)

    def update_meta(self, session_id: str, **changes) -> SessionMeta | None:
        meta = self.read_meta(session_id)
        if meta is None:
            return None
        updated = replace(meta, **changes)
        self.write_meta(updated)
        return updated

    def list_sessions(self) -> list[SessionMeta]:
        """All sessions, most recently used first."""
        if not self.root.exists():
            return []
        metas = []
        for child in self.root.iterdir():
            if child.is_dir() and (child / META_FILENAME).exists():
                meta = self.read_meta(child.name)
                if meta is not None:
                    metas.append(meta)
        metas.sort(key=lambda m: max(m.last_used_at_ms, m.created_at_ms), reverse=True)
        return metas

    def rename(self, session_id: str, title: str) -> SessionMeta | None:
        title = title.strip()
        if not title:
            return self.read_meta(session_id)
        return self.update_meta(session_id, title=title)

    def delete(self, session_id: str) -> bool:
        if not self.exists(session_id):
            return False
        shutil.rmtree(self.paths(session_id)["dir"], ignore_errors=True)
        return True

    # -- logs ----------------------------------------------------------------

    def append_event(self, session_id: str, payload: dict) -> str:
        return append_jsonl(self.paths(session_id)["events"], payload)

    def append_event_line(self, session_id: str, line: str) -> None:
        """Append a stdout line that is not a JSON object, as received."""
        self._append_text(self.paths(session_id)["events"], line)

    def append_stderr(self, session_id: str, line: str) -> None:
        self._append_text(self.paths(session_id)["stderr"], line)

    @staticmethod
    def _append_text(path: Path, line: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as handle:
            handle.write(line.rstrip("\n") + "\n")

    def write_conclusion(self, session_id: str, text: str) -> None:
        self.paths(session_id)["conclusion"].write_text(text, encoding="utf-8")

    def read_events(self, session_id: str, max_lines: int | None = None) -> list[str]:
        return JSONLParser(self.paths(session_id)["events"]).tail(max_lines)

    def read_stderr(self, session_id: str, max_lines: int | None = None) -> list[str]:
        return JSONLParser(self.paths(session_id)["stderr"]).tail(max_lines)

    def find_thread_id(self, session_id: str) -> str | None:
        """Codex thread id announced by ``thread.started`` in the events log."""
        for entry in JSONLParser(self.paths(session_id)["events"]).iter_entries():
            if entry.type == "thread.started":
                thread_id = entry.get("thread_id")
                if isinstance(thread_id, str) and thread_id:
                    return thread_id
        return None

    def last_assistant_message(self, session_id: str) -> str | None:
        """Text of the last completed ``agent_message`` item in the events log."""
        last = None
        for entry in JSONLParser(self.paths(session_id)["events"]).iter_entries():
            if not (entry.type or "").startswith("item."):
                continue
            item = entry.get("item")
            if isinstance(item, dict) and item.get("type") == "agent_message":
                text = item.get("text")
                if isinstance(text, str):
                    last = text
        return last

    def read_conclusion(self, session_id: str) -> str:
        path = self.paths(session_id)["conclusion"]
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""
