"""Per-session timeline projection."""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable

from .blocks import BlockReducer, BlockSequence, CounterIds, IdSource
from .events import (
    Block,
    CanonicalEvent,
    ErrorNotice,
    Event,
    ItemUpdate,
    PlanState,
    PlanUpdate,
    RawLine,
    RunOutcome,
    StatusNote,
    Suppressed,
    TodoItem,
    TokenUsageSnapshot,
)
from .normalizer import normalize_event, parse_line
from .plans import PlanView, apply_plan, combined_view, extract_todos, plan_state_from_update

logger = logging.getLogger(__name__)

ACTIVITY_CAPACITY = 120
ACTIVITY_TEXT_MAX = 80


class SessionTimeline:
    """Blocks, plan, todos, conclusion and recent activity of one session.

    This is a rebuildable projection of the session's log plus the live
    records seen since; it is never persisted. Only the multiplexer mutates
    it, always from the event loop thread.
    """

    def __init__(self, session_id: str, ids: IdSource | None = None):
        self.session_id = session_id
        self.reducer = BlockReducer(ids or CounterIds(f"{session_id}"))
        self.blocks = BlockSequence()
        self.plan: PlanState | None = None
        self.conclusion = ""
        self.activity: deque[str] = deque(maxlen=ACTIVITY_CAPACITY)
        self.last_usage: TokenUsageSnapshot | None = None
        self.events_applied = 0
        self._todos_cache: tuple[BlockSequence, list[TodoItem]] | None = None

    @classmethod
    def replay(
        cls,
        session_id: str,
        lines: Iterable[str],
        stderr_lines: Iterable[str] = (),
        conclusion: str = "",
        base_ts_ms: int = 0,
        ids: IdSource | None = None,
    ) -> "SessionTimeline":
        """Fold a persisted log into a fresh timeline.

        Lines without an embedded timestamp get ``base_ts_ms + index`` so
        replay order is stable.
        """
        timeline = cls(session_id, ids=ids)
        idx = 0
        for idx, raw in enumerate(lines):
            timeline.apply_event(parse_line(session_id, raw, "stdout", base_ts_ms + idx))
        for offset, raw in enumerate(stderr_lines, start=idx + 1):
            timeline.apply_event(parse_line(session_id, raw, "stderr", base_ts_ms + offset))
        timeline.conclusion = conclusion
        return timeline

    # -- mutation -------------------------------------------------------------

    def apply_event(self, event: Event) -> None:
        """Normalize and fold one event."""
        if event.session_id and event.session_id != self.session_id:
            raise ValueError(f"Event for {event.session_id} routed to {self.session_id}")
        for canonical in normalize_event(event):
            self.apply_canonical(canonical, event.ts_ms)
        self.events_applied += 1

    def apply_canonical(self, canonical: CanonicalEvent, ts_ms: int) -> None:
        if isinstance(canonical, PlanUpdate):
            self.apply_plan(plan_state_from_update(canonical, ts_ms))
        elif isinstance(canonical, Suppressed) and canonical.usage is not None:
            self.last_usage = canonical.usage
        self.blocks = self.reducer.apply(self.blocks, canonical, ts_ms)
        note = describe_activity(canonical)
        if note:
            self.record_activity(note)

    def apply_plan(self, incoming: PlanState) -> bool:
        """Replace the plan snapshot; returns False when ``incoming`` is stale."""
        updated = apply_plan(self.plan, incoming)
        if updated is not incoming:
            logger.debug(
                "Dropping stale plan update for %s (%s < %s)",
                self.session_id,
                incoming.ts_ms,
                self.plan.ts_ms if self.plan else None,
            )
            return False
        self.plan = updated
        return True

    def record_activity(self, text: str) -> None:
        self.activity.append(text)

    def set_collapsed(self, key: str, collapsed: bool) -> None:
        self.blocks = self.blocks.set_collapsed(key, collapsed)

    def add_block(self, block: Block) -> None:
        self.blocks = self.blocks.upsert(block)

    def remove_block(self, key: str) -> None:
        self.blocks = self.blocks.remove(key)

    def adopt(self, other: "SessionTimeline") -> None:
        """Take over the state of a freshly replayed timeline."""
        self.reducer = other.reducer
        self.blocks = other.blocks
        self.plan = other.plan
        self.conclusion = other.conclusion
        self.activity = deque(other.activity, maxlen=ACTIVITY_CAPACITY)
        self.last_usage = other.last_usage
        self.events_applied = other.events_applied
        self._todos_cache = None

    # -- derived views ----------------------------------------------------------

    @property
    def todos(self) -> list[TodoItem]:
        """Markdown todos, recomputed whenever the block sequence changes."""
        cached = self._todos_cache
        if cached is not None and cached[0] is self.blocks:
            return cached[1]
        todos = extract_todos(self.blocks)
        self._todos_cache = (self.blocks, todos)
        return todos

    def plan_view(self) -> PlanView:
        return combined_view(self.plan, self.todos)

    def snapshot(self) -> dict:
        return {
            "session_id": self.session_id,
            "blocks": [b.to_dict() for b in self.blocks],
            "plan": self.plan.to_dict() if self.plan else None,
            "todos": [{"text": t.text, "done": t.done} for t in self.todos],
            "conclusion": self.conclusion,
            "activity": list(self.activity),
        }


def describe_activity(canonical: CanonicalEvent) -> str | None:
    """Short human description of an event for the activity ring."""
    if isinstance(canonical, ItemUpdate):
        item = canonical.item
        label = item.command or item.title or item.kind
        return _clip(f"{item.kind} {canonical.phase}: {label}")
    if isinstance(canonical, StatusNote):
        return _clip(f"{canonical.title}: {canonical.body.splitlines()[0] if canonical.body else ''}")
    if isinstance(canonical, ErrorNotice):
        return _clip(f"error: {canonical.message}")
    if isinstance(canonical, PlanUpdate):
        return f"plan updated ({len(canonical.steps)} steps)"
    if isinstance(canonical, RunOutcome):
        return "run finished" if canonical.success else "run failed"
    if isinstance(canonical, RawLine) and canonical.stream == "stderr":
        return _clip(f"stderr: {canonical.text}")
    # deltas and noise would flood the ring
    return None


def _clip(text: str) -> str:
    text = " ".join(text.split())
    if len(text) <= ACTIVITY_TEXT_MAX:
        return text
    return text[: ACTIVITY_TEXT_MAX - 1] + "…"
