"""codex CLI supervision and live transports."""

from .channel import EventChannel, InProcessTransport, Subscription
from .remote import RemoteClient, SSEStreamTransport, decode_record, iter_sse
from .supervisor import (
    CodexRun,
    RunSupervisor,
    build_exec_command,
    detect_codex_paths,
    resolve_codex_executable,
)

__all__ = [
    "EventChannel",
    "InProcessTransport",
    "Subscription",
    "RemoteClient",
    "SSEStreamTransport",
    "decode_record",
    "iter_sse",
    "CodexRun",
    "RunSupervisor",
    "build_exec_command",
    "detect_codex_paths",
    "resolve_codex_executable",
]
