"""Timeline engine for codex-warp."""

from .blocks import BlockReducer, BlockSequence, CounterIds, filter_blocks, uuid_ids
from .config import Settings, load_settings
from .events import (
    Block,
    CanonicalEvent,
    ContextMetrics,
    Event,
    LiveRecord,
    Notice,
    PlanState,
    PlanStep,
    RunFinished,
    TodoItem,
    TokenUsageSnapshot,
)
from .multiplexer import (
    HistorySource,
    LiveTransport,
    RunControl,
    RunControlError,
    SessionMultiplexer,
    UsageSource,
)
from .normalizer import extract_token_usage, normalize_event, parse_line
from .plans import PlanView, combined_view, extract_todos, parse_markdown_todos
from .session_store import SessionMeta, SessionStore
from .timeline import SessionTimeline
from .usage import DailyUsage, UsageLedger, UsageRecord, daily_rollup

__all__ = [
    "Block",
    "BlockReducer",
    "BlockSequence",
    "CounterIds",
    "filter_blocks",
    "uuid_ids",
    "Settings",
    "load_settings",
    "CanonicalEvent",
    "ContextMetrics",
    "Event",
    "LiveRecord",
    "Notice",
    "PlanState",
    "PlanStep",
    "RunFinished",
    "TodoItem",
    "TokenUsageSnapshot",
    "HistorySource",
    "LiveTransport",
    "RunControl",
    "RunControlError",
    "SessionMultiplexer",
    "UsageSource",
    "extract_token_usage",
    "normalize_event",
    "parse_line",
    "PlanView",
    "combined_view",
    "extract_todos",
    "parse_markdown_todos",
    "SessionMeta",
    "SessionStore",
    "SessionTimeline",
    "DailyUsage",
    "UsageLedger",
    "UsageRecord",
    "daily_rollup",
]
