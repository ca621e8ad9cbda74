"""Plan snapshots and markdown todo extraction."""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from .events import Block, PlanState, PlanUpdate, StepStatus, TodoItem

MAX_TODOS = 100
SCANNED_KINDS = frozenset({"assistant", "thought"})

CHECKBOX_PATTERN = re.compile(r"^\s*[-*+]\s*\[([ xX])\]\s+(.*)$")
KEYWORD_PATTERN = re.compile(
    r"^\s*(?:[-*+]\s+)?(?:\*\*)?"
    r"(?:todo|next steps?|next|tbd|待办事项|待办|下一步|待定|后续)"
    r"(?:\*\*)?\s*[:：](?:\*\*)?\s*(.+)$",
    re.IGNORECASE,
)
PLAN_HEADER_PATTERN = re.compile(r"^\s*(?:#{1,6}\s*)?(?:\*\*)?(?:plan|计划)(?:\*\*)?\s*[:：]?\s*(?:\*\*)?\s*$", re.IGNORECASE)
NUMBERED_PATTERN = re.compile(r"^\s*\d+\s*[.)、]\s*(.+)$")

# Placeholder answers that are not real tasks ("Next: none")
STOPLIST = frozenset({
    "none",
    "n/a",
    "na",
    "nothing",
    "tbd",
    "-",
    "无",
    "暂无",
    "没有",
    "无。",
})

_STATUS_ALIASES: dict[str, StepStatus] = {
    "pending": "pending",
    "todo": "pending",
    "not_started": "pending",
    "in_progress": "in_progress",
    "inprogress": "in_progress",
    "in-progress": "in_progress",
    "active": "in_progress",
    "running": "in_progress",
    "completed": "completed",
    "complete": "completed",
    "done": "completed",
}


def normalize_step_status(value: Any) -> StepStatus:
    """Map the status spellings seen across protocols onto three states."""
    if not isinstance(value, str):
        return "pending"
    return _STATUS_ALIASES.get(value.strip().lower(), "pending")


def parse_markdown_todos(text: str) -> list[TodoItem]:
    """Scan markdown for checklist items, keyword markers and plan sections."""
    out: list[TodoItem] = []
    in_plan = False

    for line in text.split("\n"):
        if in_plan:
            if not line.strip():
                in_plan = False
                continue
            numbered = NUMBERED_PATTERN.match(line)
            if numbered:
                out.append(TodoItem(numbered.group(1).strip(), False))
                continue
            # a checklist or keyword line inside the section still counts

        checkbox = CHECKBOX_PATTERN.match(line)
        if checkbox:
            out.append(TodoItem(checkbox.group(2).strip(), checkbox.group(1).lower() == "x"))
            continue

        keyword = KEYWORD_PATTERN.match(line)
        if keyword:
            out.append(TodoItem(keyword.group(1).strip(), False))
            continue

        if PLAN_HEADER_PATTERN.match(line):
            in_plan = True

    return out


def merge_todos(candidates: Iterable[TodoItem], limit: int = MAX_TODOS) -> list[TodoItem]:
    """Dedup by trimmed text, keeping first-seen order; ``done`` is sticky."""
    merged: dict[str, TodoItem] = {}
    for item in candidates:
        key = item.text.strip()
        if not key or key.lower() in STOPLIST:
            continue
        existing = merged.get(key)
        if existing is None:
            merged[key] = TodoItem(key, item.done)
        elif item.done and not existing.done:
            merged[key] = TodoItem(key, True)
    return list(merged.values())[:limit]


def extract_todos(blocks: Iterable[Block]) -> list[TodoItem]:
    """Derive the todo list from assistant and thought blocks."""
    candidates: list[TodoItem] = []
    for block in blocks:
        if block.kind in SCANNED_KINDS:
            candidates.extend(parse_markdown_todos(block.body))
    return merge_todos(candidates)


def plan_state_from_update(update: PlanUpdate, ts_ms: int) -> PlanState:
    return PlanState(ts_ms=ts_ms, steps=tuple(update.steps), explanation=update.explanation)


def apply_plan(current: PlanState | None, incoming: PlanState) -> PlanState | None:
    """Replace the plan snapshot unless ``incoming`` is older than ``current``."""
    if current is not None and incoming.ts_ms < current.ts_ms:
        return current
    return incoming


@dataclass(frozen=True)
class PlanRow:
    """One line of the combined plan/todo panel."""

    text: str
    status: StepStatus
    source: str  # "plan" or "todo"


@dataclass(frozen=True)
class PlanView:
    hint: str | None
    rows: tuple[PlanRow, ...]

    @property
    def completed(self) -> int:
        return sum(1 for row in self.rows if row.status == "completed")


def combined_view(plan: PlanState | None, todos: Iterable[TodoItem]) -> PlanView:
    """Structured plan steps first, then markdown-derived todos."""
    rows: list[PlanRow] = []
    if plan is not None:
        rows.extend(PlanRow(step.text, step.status, "plan") for step in plan.steps)
    rows.extend(PlanRow(todo.text, "completed" if todo.done else "pending", "todo") for todo in todos)
    return PlanView(hint=plan.explanation if plan is not None else None, rows=tuple(rows))
