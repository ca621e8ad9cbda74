"""Token usage persistence and daily aggregation."""

from __future__ import annotations

import fcntl
import json
import logging
from collections.abc import Iterable
from dataclasses import asdict, dataclass
from datetime import tzinfo
from pathlib import Path

from ..utils import local_day_key
from .runtime import usage_file_path

logger = logging.getLogger(__name__)

MAX_USAGE_RECORDS = 5000


@dataclass(frozen=True)
class UsageRecord:
    """Token usage of one completed run. Never mutated once written."""

    ts_ms: int
    session_id: str
    total_tokens: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    reasoning_output_tokens: int = 0
    cached_input_tokens: int = 0
    context_window: int = 0
    thread_id: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "UsageRecord | None":
        try:
            return cls(
                ts_ms=int(data["ts_ms"]),
                session_id=str(data["session_id"]),
                total_tokens=int(data.get("total_tokens") or 0),
                input_tokens=int(data.get("input_tokens") or 0),
                output_tokens=int(data.get("output_tokens") or 0),
                reasoning_output_tokens=int(data.get("reasoning_output_tokens") or 0),
                cached_input_tokens=int(data.get("cached_input_tokens") or 0),
                context_window=int(data.get("context_window") or 0),
                thread_id=data.get("thread_id") if isinstance(data.get("thread_id"), str) else None,
            )
        except (KeyError, TypeError, ValueError):
            return None


@dataclass
class DailyUsage:
    """Aggregated totals for one calendar day."""

    day: str
    runs: int = 0
    total_tokens: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    reasoning_output_tokens: int = 0
    cached_input_tokens: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


def daily_rollup(records: Iterable[UsageRecord], tz: tzinfo | None = None) -> list[DailyUsage]:
    """Group records by local calendar day, newest day first.

    Recomputed from the full list every time; the result does not depend on
    record order.
    """
    by_day: dict[str, DailyUsage] = {}
    for record in records:
        day = local_day_key(record.ts_ms, tz)
        totals = by_day.setdefault(day, DailyUsage(day=day))
        totals.runs += 1
        totals.total_tokens += record.total_tokens
        totals.input_tokens += record.input_tokens
        totals.output_tokens += record.output_tokens
        totals.reasoning_output_tokens += record.reasoning_output_tokens
        totals.cached_input_tokens += record.cached_input_tokens
    return sorted(by_day.values(), key=lambda d: d.day, reverse=True)


class UsageLedger:
    """Append-only usage records with file locking for concurrent writers."""

    def __init__(self, usage_file: Path | None = None, max_records: int = MAX_USAGE_RECORDS):
        self.usage_file = usage_file or usage_file_path()
        self.max_records = max_records

    def append(self, record: UsageRecord) -> bool:
        try:
            self.usage_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.usage_file, "a+") as handle:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
                try:
                    handle.seek(0)
                    content = handle.read()
                    data = json.loads(content) if content.strip() else {"records": []}
                    records = data.setdefault("records", [])
                    records.append(record.to_dict())
                    data["records"] = records[-self.max_records:]
                    handle.seek(0)
                    handle.truncate()
                    handle.write(json.dumps(data, indent=2))
                finally:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
            return True
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Failed to record usage: %s", exc)
            return False

    def list_usage(self, limit: int | None = None) -> list[UsageRecord]:
        """Return records oldest first, at most the newest ``limit``."""
        data = self._load_raw()
        rows = data.get("records", []) if isinstance(data, dict) else []
        if not isinstance(rows, list):
            return []
        records = [r for r in (UsageRecord.from_dict(row) for row in rows if isinstance(row, dict)) if r]
        if limit is not None:
            records = records[-limit:] if limit > 0 else []
        return records

    def _load_raw(self) -> dict:
        if not self.usage_file.exists():
            return {"records": []}

        try:
            with open(self.usage_file) as handle:
                fcntl.flock(handle.fileno(), fcntl.LOCK_SH)
                try:
                    raw = handle.read()
                    return json.loads(raw) if raw.strip() else {"records": []}
                finally:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Failed to load usage file %s: %s", self.usage_file, exc)
            return {"records": []}
