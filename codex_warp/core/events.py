"""Event, block and plan data model shared by the timeline engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Union

Stream = Literal["stdout", "stderr"]
BlockKind = Literal["assistant", "command", "thought", "status", "error", "event"]
StepStatus = Literal["pending", "in_progress", "completed"]
ItemKind = Literal["assistant", "thought", "command", "tool", "other"]
ItemPhase = Literal["started", "updated", "completed"]
DeltaChannel = Literal["assistant", "thought", "command"]


@dataclass(frozen=True)
class Event:
    """One raw record from a session, before normalization.

    ``json`` is the parsed payload when ``raw`` was a JSON value, else None.
    """

    session_id: str
    ts_ms: int
    stream: Stream
    raw: str
    json: Any = None

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "ts_ms": self.ts_ms,
            "stream": self.stream,
            "raw": self.raw,
            "json": self.json,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Event":
        stream = "stderr" if data.get("stream") == "stderr" else "stdout"
        return cls(
            session_id=str(data.get("session_id") or ""),
            ts_ms=int(data.get("ts_ms") or 0),
            stream=stream,
            raw=str(data.get("raw") or ""),
            json=data.get("json"),
        )


@dataclass(frozen=True)
class ContextMetrics:
    """Context-window usage reported while a run is in flight."""

    session_id: str
    ts_ms: int
    context_left_pct: int
    context_used_tokens: int
    context_window: int

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "ts_ms": self.ts_ms,
            "context_left_pct": self.context_left_pct,
            "context_used_tokens": self.context_used_tokens,
            "context_window": self.context_window,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ContextMetrics":
        return cls(
            session_id=str(data.get("session_id") or ""),
            ts_ms=int(data.get("ts_ms") or 0),
            context_left_pct=int(data.get("context_left_pct") or 0),
            context_used_tokens=int(data.get("context_used_tokens") or 0),
            context_window=int(data.get("context_window") or 0),
        )


@dataclass(frozen=True)
class RunFinished:
    """Terminal notification for one run of a session."""

    session_id: str
    ts_ms: int
    exit_code: int | None
    success: bool

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "ts_ms": self.ts_ms,
            "exit_code": self.exit_code,
            "success": self.success,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RunFinished":
        exit_code = data.get("exit_code")
        return cls(
            session_id=str(data.get("session_id") or ""),
            ts_ms=int(data.get("ts_ms") or 0),
            exit_code=int(exit_code) if isinstance(exit_code, int) else None,
            success=bool(data.get("success")),
        )


LiveRecord = Union[Event, ContextMetrics, RunFinished]


@dataclass(frozen=True)
class Block:
    """A displayable timeline entry. ``key`` is its merge identity."""

    id: str
    key: str
    kind: BlockKind
    title: str
    body: str = ""
    ts_ms: int = 0
    subtitle: str | None = None
    status: str | None = None
    collapsed: bool | None = None
    streamed: bool = False  # body has grown through deltas

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "key": self.key,
            "kind": self.kind,
            "title": self.title,
            "subtitle": self.subtitle,
            "body": self.body,
            "ts_ms": self.ts_ms,
            "status": self.status,
            "collapsed": self.collapsed,
        }


@dataclass(frozen=True)
class PlanStep:
    text: str
    status: StepStatus = "pending"


@dataclass(frozen=True)
class PlanState:
    """Latest structured plan snapshot for a session. Replaced whole."""

    ts_ms: int
    steps: tuple[PlanStep, ...] = ()
    explanation: str | None = None

    def to_dict(self) -> dict:
        return {
            "ts_ms": self.ts_ms,
            "explanation": self.explanation,
            "steps": [{"text": s.text, "status": s.status} for s in self.steps],
        }


@dataclass(frozen=True)
class TodoItem:
    text: str
    done: bool = False


@dataclass(frozen=True)
class TokenUsageSnapshot:
    """Token accounting extracted from a usage record of any wire shape."""

    window: int
    total_tokens: int
    input_tokens: int = 0
    output_tokens: int = 0
    reasoning_output_tokens: int = 0
    cached_input_tokens: int = 0

    @property
    def pct_left(self) -> int | None:
        if self.window <= 0:
            return None
        remaining = max(self.window - self.total_tokens, 0)
        return min((remaining * 100 + self.window // 2) // self.window, 100)


# ---------------------------------------------------------------------------
# Canonical events produced by the normalizer
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ItemPayload:
    """Wire-independent view of an agent item.

    Fields left as None are unknown and must not overwrite what a block
    already shows (a tool output record does not repeat the command).
    """

    kind: ItemKind
    text: str | None = None
    title: str | None = None
    command: str | None = None
    output: str | None = None
    status: str | None = None
    exit_code: int | None = None


@dataclass(frozen=True)
class RawLine:
    stream: Stream
    text: str


@dataclass(frozen=True)
class TextDelta:
    item_id: str
    channel: DeltaChannel
    delta: str


@dataclass(frozen=True)
class ItemUpdate:
    item_id: str | None  # None when the wire record carries no id
    phase: ItemPhase
    item: ItemPayload


@dataclass(frozen=True)
class StatusNote:
    title: str
    body: str
    key: str | None = None


@dataclass(frozen=True)
class ErrorNotice:
    message: str


@dataclass(frozen=True)
class Lifecycle:
    name: str


@dataclass(frozen=True)
class Suppressed:
    name: str
    usage: TokenUsageSnapshot | None = None


@dataclass(frozen=True)
class PlanUpdate:
    steps: tuple[PlanStep, ...]
    explanation: str | None = None


@dataclass(frozen=True)
class GenericDump:
    title: str
    body: str
    item_id: str | None = None


@dataclass(frozen=True)
class RunOutcome:
    success: bool
    exit_code: int | None = None


CanonicalEvent = Union[
    RawLine,
    TextDelta,
    ItemUpdate,
    StatusNote,
    ErrorNotice,
    Lifecycle,
    Suppressed,
    PlanUpdate,
    GenericDump,
    RunOutcome,
]


@dataclass
class Notice:
    """A user-facing, dismissible problem report."""

    kind: str
    message: str
    sticky: bool = False
    session_id: str | None = None
    details: dict = field(default_factory=dict)
