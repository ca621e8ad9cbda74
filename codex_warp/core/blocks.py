"""Block reduction: fold canonical events into an ordered, keyed block list.

Positioning rule: a block keeps its position while it grows through deltas
or appended lines, and moves to the tail only on a discrete state
transition, i.e. an item lifecycle update that changes the block's status
(``in_progress`` -> ``completed``). Keyed status notes (usage, session
metadata) are updated in place.
"""

from __future__ import annotations

import itertools
import uuid
from collections.abc import Callable, Iterable, Iterator
from dataclasses import replace

from .events import (
    Block,
    BlockKind,
    CanonicalEvent,
    ErrorNotice,
    GenericDump,
    ItemPayload,
    ItemUpdate,
    RawLine,
    RunOutcome,
    StatusNote,
    TextDelta,
)

IdSource = Callable[[], str]

STDERR_KEY = "stderr"
STDOUT_RAW_KEY = "stdout_raw"
TURN_SUMMARY_KEY = "turn_summary"
COMMAND_SUMMARY_MAX = 120
AUTO_COLLAPSE_CHARS = 1400


class CounterIds:
    """Deterministic id source: ``<prefix>-1``, ``<prefix>-2``, ..."""

    def __init__(self, prefix: str = "b"):
        self.prefix = prefix
        self._counter = itertools.count(1)

    def __call__(self) -> str:
        return f"{self.prefix}-{next(self._counter)}"


def uuid_ids() -> str:
    return uuid.uuid4().hex


class BlockSequence:
    """Immutable ordered blocks with a key -> index map.

    Every operation returns a new sequence; the receiver is never changed,
    so a sequence can be handed to readers while the next one is built.
    """

    __slots__ = ("_blocks", "_index")

    def __init__(self, blocks: Iterable[Block] = ()):
        self._blocks: tuple[Block, ...] = tuple(blocks)
        self._index: dict[str, int] = {}
        for idx, block in enumerate(self._blocks):
            if block.key in self._index:
                raise ValueError(f"Duplicate block key: {block.key}")
            self._index[block.key] = idx

    def __len__(self) -> int:
        return len(self._blocks)

    def __iter__(self) -> Iterator[Block]:
        return iter(self._blocks)

    def __getitem__(self, idx: int) -> Block:
        return self._blocks[idx]

    def __eq__(self, other: object) -> bool:
        if isinstance(other, BlockSequence):
            return self._blocks == other._blocks
        return NotImplemented

    def __repr__(self) -> str:
        return f"BlockSequence({len(self._blocks)} blocks)"

    @property
    def blocks(self) -> tuple[Block, ...]:
        return self._blocks

    def keys(self) -> list[str]:
        return [b.key for b in self._blocks]

    def get(self, key: str) -> Block | None:
        idx = self._index.get(key)
        return self._blocks[idx] if idx is not None else None

    def index_of(self, key: str) -> int | None:
        return self._index.get(key)

    # -- primitives -------------------------------------------------------

    def upsert(self, block: Block, move_to_end: bool = False) -> "BlockSequence":
        """Append ``block``, or merge it into the block sharing its key.

        Incoming fields win except: ``id`` and ``key`` are preserved, an
        existing explicit ``collapsed`` preference is kept, and a streamed
        body is never replaced by a shorter one.
        """
        idx = self._index.get(block.key)
        if idx is None:
            return self._with_appended(block)

        prev = self._blocks[idx]
        body = block.body
        if prev.streamed and len(body) < len(prev.body):
            body = prev.body
        merged = replace(
            block,
            id=prev.id,
            key=prev.key,
            body=body,
            collapsed=prev.collapsed if prev.collapsed is not None else block.collapsed,
            streamed=prev.streamed or block.streamed,
        )
        if move_to_end and idx != len(self._blocks) - 1:
            return self._without(idx)._with_appended(merged)
        return self._with_replaced(idx, merged)

    def append_line(self, key: str, factory: Callable[[], Block], line: str, ts_ms: int) -> "BlockSequence":
        """Grow a block line by line (newline separator)."""
        idx = self._index.get(key)
        if idx is None:
            return self._with_appended(factory())
        prev = self._blocks[idx]
        body = f"{prev.body}\n{line}" if prev.body else line
        return self._with_replaced(idx, replace(prev, body=body, ts_ms=ts_ms))

    def append_delta(self, key: str, factory: Callable[[], Block], delta: str, ts_ms: int) -> "BlockSequence":
        """Grow a block character-wise (no separator)."""
        idx = self._index.get(key)
        if idx is None:
            return self._with_appended(replace(factory(), streamed=True))
        prev = self._blocks[idx]
        return self._with_replaced(idx, replace(prev, body=prev.body + delta, ts_ms=ts_ms, streamed=True))

    def remove(self, key: str) -> "BlockSequence":
        idx = self._index.get(key)
        if idx is None:
            return self
        return self._without(idx)

    def set_collapsed(self, key: str, collapsed: bool) -> "BlockSequence":
        idx = self._index.get(key)
        if idx is None:
            return self
        return self._with_replaced(idx, replace(self._blocks[idx], collapsed=collapsed))

    # -- internals ----------------------------------------------------------

    def _with_appended(self, block: Block) -> "BlockSequence":
        out = BlockSequence.__new__(BlockSequence)
        out._blocks = self._blocks + (block,)
        out._index = dict(self._index)
        out._index[block.key] = len(self._blocks)
        return out

    def _with_replaced(self, idx: int, block: Block) -> "BlockSequence":
        out = BlockSequence.__new__(BlockSequence)
        out._blocks = self._blocks[:idx] + (block,) + self._blocks[idx + 1:]
        out._index = self._index
        return out

    def _without(self, idx: int) -> "BlockSequence":
        return BlockSequence(self._blocks[:idx] + self._blocks[idx + 1:])


def summarize_command(command: str) -> str:
    normalized = " ".join(command.split())
    if len(normalized) <= COMMAND_SUMMARY_MAX:
        return normalized
    return f"{normalized[:COMMAND_SUMMARY_MAX]}…"


class BlockReducer:
    """Applies canonical events to a BlockSequence.

    ``ids`` supplies identities for blocks that have no natural key (errors,
    prompts, dumps). Give each fold its own ``CounterIds`` to make replays
    reproducible.
    """

    def __init__(self, ids: IdSource | None = None):
        self.ids = ids or CounterIds()

    def fold(self, canonical: Iterable[tuple[CanonicalEvent, int]], start: BlockSequence | None = None) -> BlockSequence:
        blocks = start if start is not None else BlockSequence()
        for event, ts_ms in canonical:
            blocks = self.apply(blocks, event, ts_ms)
        return blocks

    def apply(self, blocks: BlockSequence, event: CanonicalEvent, ts_ms: int) -> BlockSequence:
        if isinstance(event, RawLine):
            return self._raw_line(blocks, event, ts_ms)
        if isinstance(event, TextDelta):
            return self._delta(blocks, event, ts_ms)
        if isinstance(event, ItemUpdate):
            return self._item(blocks, event, ts_ms)
        if isinstance(event, StatusNote):
            key = event.key or f"status:{self.ids()}"
            return blocks.upsert(self._new(key, "status", event.title, event.body, ts_ms))
        if isinstance(event, ErrorNotice):
            key = f"error:{self.ids()}"
            return blocks.upsert(self._new(key, "error", "Error", event.message, ts_ms))
        if isinstance(event, GenericDump):
            key = f"item:{event.item_id}" if event.item_id else f"event:{self.ids()}"
            return blocks.upsert(self._new(key, "event", event.title, event.body, ts_ms))
        if isinstance(event, RunOutcome):
            kind: BlockKind = "status" if event.success else "error"
            title = "Run finished" if event.success else "Run failed"
            body = "exit_code: null" if event.exit_code is None else f"exit_code: {event.exit_code}"
            return blocks.upsert(self._new(f"run_finished:{ts_ms}:{self.ids()}", kind, title, body, ts_ms))
        # Lifecycle, Suppressed and PlanUpdate leave the timeline untouched
        return blocks

    def _new(self, key: str, kind: BlockKind, title: str, body: str, ts_ms: int, **extra) -> Block:
        return Block(id=self.ids(), key=key, kind=kind, title=title, body=body, ts_ms=ts_ms, **extra)

    def _raw_line(self, blocks: BlockSequence, event: RawLine, ts_ms: int) -> BlockSequence:
        if event.stream == "stderr":
            key, kind, title = STDERR_KEY, "error", "stderr"
        else:
            key, kind, title = STDOUT_RAW_KEY, "event", "stdout"
        return blocks.append_line(
            key,
            lambda: self._new(key, kind, title, event.text, ts_ms, collapsed=True),
            event.text,
            ts_ms,
        )

    def _delta(self, blocks: BlockSequence, event: TextDelta, ts_ms: int) -> BlockSequence:
        key = f"item:{event.item_id}"
        if event.channel == "assistant":
            factory = lambda: self._new(key, "assistant", "Assistant", event.delta, ts_ms)
        elif event.channel == "thought":
            factory = lambda: self._new(key, "thought", "Thought", event.delta, ts_ms, collapsed=True)
        else:
            factory = lambda: self._new(
                key, "command", "Command (running)", event.delta, ts_ms, status="in_progress"
            )
        return blocks.append_delta(key, factory, event.delta, ts_ms)

    def _item(self, blocks: BlockSequence, event: ItemUpdate, ts_ms: int) -> BlockSequence:
        key = f"item:{event.item_id}" if event.item_id else f"item:{self.ids()}"
        prev = blocks.get(key)
        block = self._item_block(key, prev, event.item, ts_ms)
        transition = prev is not None and block.status is not None and block.status != prev.status
        return blocks.upsert(block, move_to_end=transition)

    def _item_block(self, key: str, prev: Block | None, item: ItemPayload, ts_ms: int) -> Block:
        """Build the merge patch; unknown fields fall back to what ``prev`` shows."""
        kind = prev.kind if prev is not None else _block_kind(item)
        block_id = prev.id if prev is not None else self.ids()

        def keep(value, fallback):
            return value if value is not None else fallback

        prev_body = prev.body if prev is not None else ""
        prev_title = prev.title if prev is not None else None
        prev_subtitle = prev.subtitle if prev is not None else None
        prev_status = prev.status if prev is not None else None

        if kind == "assistant":
            return Block(block_id, key, "assistant", "Assistant", keep(item.text, prev_body), ts_ms)

        if kind == "thought":
            return Block(block_id, key, "thought", "Thought", keep(item.text, prev_body), ts_ms, collapsed=True)

        if kind == "command":
            status = keep(item.status, prev_status)
            body = keep(item.output, prev_body)
            subtitle = prev_subtitle
            if item.command is not None:
                subtitle = summarize_command(item.command)
            if item.exit_code is not None:
                base = subtitle.split(" (exit ")[0] if subtitle else ""
                subtitle = f"{base} (exit {item.exit_code})".strip()
            auto_collapse = True if status and status != "in_progress" and len(body) > AUTO_COLLAPSE_CHARS else None
            title = "Command (running)" if status == "in_progress" else "Command"
            return Block(block_id, key, "command", title, body, ts_ms, subtitle=subtitle, status=status, collapsed=auto_collapse)

        # tools and unknown items render as event blocks
        status = keep(item.status, prev_status)
        title = keep(item.title, prev_title) or "Tool"
        parts = [p for p in (item.text, item.output) if p]
        if parts and prev is not None and item.text is None:
            # an output record completes a call whose arguments are already shown
            body = f"{prev_body}\n\n{item.output}" if prev_body else item.output or ""
        else:
            body = "\n\n".join(parts) if parts else prev_body
        return Block(block_id, key, "event", title, body, ts_ms, status=status)


def _block_kind(item: ItemPayload) -> BlockKind:
    if item.kind in ("assistant", "thought", "command"):
        return item.kind
    return "event"


def filter_blocks(blocks: Iterable[Block], kind: str = "all", query: str = "") -> list[Block]:
    """Kind filter plus case-insensitive search over title, subtitle and body."""
    needle = query.strip().lower()
    out = []
    for block in blocks:
        if kind != "all" and block.kind != kind:
            continue
        if needle:
            hay = f"{block.title}\n{block.subtitle or ''}\n{block.body}".lower()
            if needle not in hay:
                continue
        out.append(block)
    return out
