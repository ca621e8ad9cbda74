"""Shared utilities for codex-warp."""

from .datetime_utils import local_day_key, now_ms, parse_rfc3339_ms
from .jsonl_parser import JSONLEntry, JSONLParser, append_jsonl, try_parse_json

__all__ = [
    "JSONLEntry",
    "JSONLParser",
    "append_jsonl",
    "try_parse_json",
    "local_day_key",
    "now_ms",
    "parse_rfc3339_ms",
]
