"""JSONL event log reading."""

import json
from collections import deque
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any


@dataclass
class JSONLEntry:
    """A single line from a JSONL file.

    Unlike a strict JSONL reader, malformed lines are kept: ``data`` is None
    and ``raw`` holds the text so callers can still display it.
    """

    raw: str
    line_number: int
    data: Any = None

    def get(self, key: str, default: Any = None) -> Any:
        """Get a value from the entry data."""
        if not isinstance(self.data, dict):
            return default
        return self.data.get(key, default)

    @property
    def type(self) -> str | None:
        """Get the entry type if present."""
        value = self.get("type")
        return value if isinstance(value, str) else None


def try_parse_json(raw: str) -> Any:
    """Strict JSON parse; returns None for anything that is not valid JSON."""
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError, ValueError):
        return None


class JSONLParser:
    """Reader for append-only JSON Lines logs.

    The warp events log and codex rollout files both use this format; either
    may end in a partially written line while a run is still active.
    """

    def __init__(self, path: Path):
        self.path = path

    def iter_lines(self) -> Iterator[str]:
        """Iterate over non-empty raw lines."""
        if not self.path.exists():
            return

        with open(self.path, encoding="utf-8", errors="replace") as f:
            for line in f:
                line = line.rstrip("\n\r")
                if line.strip():
                    yield line

    def iter_entries(self) -> Iterator[JSONLEntry]:
        """Iterate over entries in the file, malformed lines included."""
        for line_num, line in enumerate(self.iter_lines(), start=1):
            yield JSONLEntry(raw=line, line_number=line_num, data=try_parse_json(line))

    def tail(self, max_lines: int | None) -> list[str]:
        """Return the last ``max_lines`` non-empty lines (all when None)."""
        if max_lines is not None and max_lines <= 0:
            return []
        return list(deque(self.iter_lines(), maxlen=max_lines))


def append_jsonl(path: Path, payload: dict) -> str:
    """Append one JSON object as a line and return the line written."""
    line = json.dumps(payload, ensure_ascii=False)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a", encoding="utf-8") as handle:
        handle.write(line + "\n")
    return line
