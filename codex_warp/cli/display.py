"""Terminal formatting for sessions, usage and timeline blocks."""

import json
from collections.abc import Iterable
from datetime import datetime

from ..core.events import Block
from ..core.session_store import SessionMeta
from ..core.usage import DailyUsage


def format_sessions(sessions: list[SessionMeta], output_format: str = "table") -> str:
    """Format a session list for display.

    Args:
        sessions: Session metadata, in display order.
        output_format: Either "table" or "json".

    Returns:
        Formatted string ready for printing.
    """
    if output_format == "json":
        return json.dumps([meta.to_dict() for meta in sessions], indent=2)

    if not sessions:
        return "No sessions yet."

    lines = []
    header = f"{'Id':<38} {'Status':<9} {'Last used':<16} {'Title':<40}"
    lines.append(header)
    lines.append("-" * len(header))
    for meta in sessions:
        used = _format_ts(max(meta.last_used_at_ms, meta.created_at_ms))
        lines.append(f"{meta.id:<38} {meta.status:<9} {used:<16} {meta.title[:40]:<40}")
    return "\n".join(lines)


def format_daily_usage(days: list[DailyUsage], output_format: str = "table") -> str:
    """Format per-day token totals, newest day first."""
    if output_format == "json":
        return json.dumps([day.to_dict() for day in days], indent=2)

    if not days:
        return "No usage recorded."

    lines = []
    header = f"{'Day':<12} {'Runs':>5} {'Total':>12} {'Input':>12} {'Cached':>12} {'Output':>12} {'Reasoning':>10}"
    lines.append(header)
    lines.append("-" * len(header))
    for day in days:
        lines.append(
            f"{day.day:<12} {day.runs:>5} {day.total_tokens:>12,} {day.input_tokens:>12,} "
            f"{day.cached_input_tokens:>12,} {day.output_tokens:>12,} {day.reasoning_output_tokens:>10,}"
        )
    return "\n".join(lines)


def format_block_header(block: Block) -> str:
    parts = [f"[{block.kind}] {block.title}"]
    if block.subtitle:
        parts.append(f"- {block.subtitle}")
    if block.status:
        parts.append(f"({block.status})")
    return " ".join(parts)


class BlockPrinter:
    """Incrementally renders a timeline to a line-oriented terminal.

    New blocks print with a header. Streaming bodies print whole lines as they
    complete; the rest is flushed by a final render. A block whose status
    changed, or whose body was rewritten, is printed again.
    """

    def __init__(self, echo):
        self.echo = echo
        self._printed: dict[str, tuple[str, str | None]] = {}

    def render(self, blocks: Iterable[Block], final: bool = False) -> None:
        for block in blocks:
            previous = self._printed.get(block.key)
            if previous is None or previous[1] != block.status or not block.body.startswith(previous[0]):
                self.echo(format_block_header(block))
                printed = ""
            else:
                printed = previous[0]
            pending = block.body[len(printed):]
            if block.streamed and not final:
                cut = pending.rfind("\n")
                pending = pending[:cut + 1] if cut >= 0 else ""
            if pending.strip():
                self.echo(_indent(pending.strip("\n")))
            self._printed[block.key] = (printed + pending, block.status)


def _indent(text: str) -> str:
    return "\n".join(f"    {line}" for line in text.splitlines())


def _format_ts(ts_ms: int) -> str:
    if ts_ms <= 0:
        return "-"
    return datetime.fromtimestamp(ts_ms / 1000).strftime("%Y-%m-%d %H:%M")
