"""Protocol normalization: raw codex output lines to canonical events.

codex has written its event stream in several incompatible shapes over
time, and a single session directory can hold more than one of them:

- JSON-RPC notifications from ``codex app-server`` (``{"method": ...}``)
- the flat ``codex exec --json`` protocol (``{"type": "item.completed"}``)
- native rollout logs (``{"type": "response_item", "payload": {...}}``)
- the legacy proto envelope (``{"id": "0", "msg": {"type": ...}}``)

Everything is mapped onto the closed set of variants in ``core.events`` so
the block reducer never looks at wire shapes. Nothing here raises on bad
input: malformed lines become ``RawLine`` and unknown payloads become a
``GenericDump`` of their JSON.
"""

from __future__ import annotations

import json
import logging
import shlex
from typing import Any

from ..utils import now_ms, parse_rfc3339_ms, try_parse_json
from .events import (
    CanonicalEvent,
    ErrorNotice,
    Event,
    GenericDump,
    ItemPayload,
    ItemUpdate,
    Lifecycle,
    PlanStep,
    PlanUpdate,
    RawLine,
    RunOutcome,
    StatusNote,
    Stream,
    Suppressed,
    TextDelta,
    TokenUsageSnapshot,
)
from .plans import normalize_step_status

logger = logging.getLogger(__name__)

# app-server notifications
DELTA_METHODS = {
    "item/agentMessage/delta": "assistant",
    "item/reasoning/textDelta": "thought",
    "item/reasoning/summaryTextDelta": "thought",
    "item/commandExecution/outputDelta": "command",
    "item/fileChange/outputDelta": "command",
}
ITEM_METHODS = {
    "item/started": "started",
    "item/updated": "updated",
    "item/completed": "completed",
}
LIFECYCLE_METHODS = frozenset({
    "thread/started",
    "turn/started",
    "turn/completed",
})
SUPPRESSED_METHODS = frozenset({
    "thread/tokenUsage/updated",
    "account/rateLimits/updated",
    "account/updated",
    "item/reasoning/summaryPartAdded",
    "sessionConfigured",
    "authStatusChange",
    "loginChatGptComplete",
})
# app-server also mirrors every proto event as codex/event/<type>
SUPPRESSED_METHOD_PREFIXES = ("codex/event/",)

# codex exec --json
EXEC_LIFECYCLE_TYPES = frozenset({"thread.started", "turn.started"})
EXEC_ITEM_TYPES = {
    "item.started": "started",
    "item.updated": "updated",
    "item.completed": "completed",
}

# rollout logs
ROLLOUT_SUPPRESSED_TYPES = frozenset({"turn_context", "compacted"})
LIFECYCLE_MSG_TYPES = frozenset({"task_started", "task_complete", "turn_aborted"})
ERROR_MSG_TYPES = frozenset({"error", "stream_error"})
# event_msg payloads that repeat what a response_item already recorded
ROLLOUT_ECHO_TYPES = frozenset({
    "agent_message",
    "agent_message_delta",
    "agent_reasoning",
    "agent_reasoning_delta",
    "agent_reasoning_raw_content",
    "agent_reasoning_raw_content_delta",
    "agent_reasoning_section_break",
    "exec_command_begin",
    "exec_command_output_delta",
    "exec_command_end",
    "patch_apply_begin",
    "patch_apply_end",
    "mcp_tool_call_begin",
    "mcp_tool_call_end",
    "web_search_begin",
    "web_search_end",
    "turn_diff",
    "background_event",
    "get_history_entry_response",
    "entered_review_mode",
    "exited_review_mode",
    "user_message_echo",
})
PROTO_SUPPRESSED_TYPES = frozenset({
    "agent_reasoning_section_break",
    "agent_reasoning_raw_content",
    "agent_reasoning_raw_content_delta",
    "turn_diff",
    "background_event",
    "get_history_entry_response",
    "token_count",
})

SHELL_TOOL_NAMES = frozenset({"shell", "container.exec", "exec_command", "local_shell", "shell_command"})
PLAN_TOOL_NAME = "update_plan"


def parse_line(
    session_id: str,
    raw: str,
    stream: Stream = "stdout",
    fallback_ts_ms: int | None = None,
) -> Event:
    """Build an Event from one raw line.

    A structured stdout line may carry its own timestamp: an integer
    ``_ts_ms`` (stamped by the supervisor) or an RFC 3339 ``timestamp``
    (rollout logs). Stderr is never parsed.
    """
    ts_ms = fallback_ts_ms if fallback_ts_ms is not None else now_ms()
    if stream == "stderr":
        return Event(session_id=session_id, ts_ms=ts_ms, stream="stderr", raw=raw)

    text = raw.strip()
    payload = try_parse_json(text) if text else None
    if isinstance(payload, dict):
        embedded = payload.get("_ts_ms")
        if isinstance(embedded, int) and not isinstance(embedded, bool) and embedded > 0:
            ts_ms = embedded
        else:
            parsed = parse_rfc3339_ms(payload.get("timestamp"))
            if parsed is not None:
                ts_ms = parsed
    return Event(session_id=session_id, ts_ms=ts_ms, stream="stdout", raw=raw, json=payload)


def normalize_event(event: Event) -> list[CanonicalEvent]:
    """Map one Event to its canonical events. Never empty, never raises."""
    if event.stream == "stderr":
        return [RawLine("stderr", event.raw)]

    payload = event.json
    if isinstance(payload, list):
        return [GenericDump("event", _dump(payload))]
    if not isinstance(payload, dict):
        return [RawLine("stdout", event.raw)]

    try:
        return normalize_payload(payload)
    except (TypeError, ValueError, AttributeError) as exc:
        logger.warning("Failed to normalize payload, dumping raw: %s", exc)
        return [GenericDump(_title_for(payload), _dump(payload))]


def normalize_payload(payload: dict) -> list[CanonicalEvent]:
    """Dispatch a parsed JSON object on its discriminator."""
    result: list[CanonicalEvent] | None = None

    method = payload.get("method")
    kind = payload.get("type")
    envelope = payload.get("msg")
    if isinstance(method, str):
        result = _from_method(method, _obj(payload.get("params")), payload)
    elif isinstance(kind, str):
        result = _from_flat(kind, payload)
    elif isinstance(envelope, dict) and isinstance(envelope.get("type"), str):
        result = _from_proto_msg(envelope, _str(payload.get("id")) or "0")
    elif "id" in payload and ("result" in payload or "error" in payload):
        result = _from_rpc_response(payload)

    if not result:
        return [GenericDump(_title_for(payload), _dump(payload))]
    return result


# ---------------------------------------------------------------------------
# JSON-RPC notifications (codex app-server)
# ---------------------------------------------------------------------------


def _from_method(method: str, params: dict, payload: dict) -> list[CanonicalEvent] | None:
    channel = DELTA_METHODS.get(method)
    if channel is not None:
        delta = params.get("delta")
        if not isinstance(delta, str):
            return None
        item_id = _str(params.get("itemId")) or f"current-{channel}"
        return [TextDelta(item_id=item_id, channel=channel, delta=delta)]

    phase = ITEM_METHODS.get(method)
    if phase is not None:
        item = params.get("item")
        if not isinstance(item, dict):
            return None
        return _from_app_item(item, phase)

    if method == "error":
        error = _obj(params.get("error"))
        message = _str(error.get("message")) or _str(params.get("message")) or "Unknown error"
        if params.get("willRetry") is True:
            message = f"{message} (retrying)"
        return [ErrorNotice(message)]

    if method == "turn/plan/updated":
        return [_plan_update_from(params)]

    if method in LIFECYCLE_METHODS:
        out: list[CanonicalEvent] = [Lifecycle(method)]
        if method == "turn/completed":
            turn = _obj(params.get("turn"))
            if turn.get("status") == "failed":
                message = _str(_obj(turn.get("error")).get("message")) or "Turn failed"
                out.append(ErrorNotice(message))
        return out

    if method in SUPPRESSED_METHODS or method.startswith(SUPPRESSED_METHOD_PREFIXES):
        return _suppress(method, payload)

    return None


def _from_app_item(item: dict, phase: str) -> list[CanonicalEvent]:
    item_id = _str(item.get("id"))
    item_type = _str(item.get("type")) or "item"
    status = _status(item.get("status"))

    if item_type == "agentMessage":
        return [ItemUpdate(item_id, phase, ItemPayload("assistant", text=_str(item.get("text"))))]

    if item_type == "reasoning":
        text = _join_texts(item.get("summary")) or _join_texts(item.get("content"))
        return [ItemUpdate(item_id, phase, ItemPayload("thought", text=text or None))]

    if item_type == "commandExecution":
        payload = ItemPayload(
            "command",
            command=_command_text(item.get("command")),
            output=_str(item.get("aggregatedOutput")),
            status=status or ("in_progress" if phase == "started" else None),
            exit_code=_int(item.get("exitCode")),
        )
        return [ItemUpdate(item_id, phase, payload)]

    if item_type == "fileChange":
        payload = ItemPayload(
            "tool",
            title="File change",
            text=_describe_changes(item.get("changes")),
            status=status,
        )
        return [ItemUpdate(item_id, phase, payload)]

    if item_type == "mcpToolCall":
        server = _str(item.get("server")) or "mcp"
        tool = _str(item.get("tool")) or "tool"
        result = item.get("result") if item.get("result") is not None else item.get("error")
        payload = ItemPayload(
            "tool",
            title=f"{server}.{tool}",
            text=_dump(item.get("arguments")) if item.get("arguments") is not None else None,
            output=_dump(result) if result is not None else None,
            status=status,
        )
        return [ItemUpdate(item_id, phase, payload)]

    if item_type == "webSearch":
        payload = ItemPayload("tool", title="Web search", text=_str(item.get("query")), status=status)
        return [ItemUpdate(item_id, phase, payload)]

    if item_type == "userMessage":
        # the prompt is already on record as an app.prompt line
        return [Suppressed("userMessage")]

    return [ItemUpdate(item_id, phase, ItemPayload("other", title=item_type, text=_dump(item)))]


def _from_rpc_response(payload: dict) -> list[CanonicalEvent]:
    error = payload.get("error")
    if isinstance(error, dict):
        return [ErrorNotice(_str(error.get("message")) or "Request failed")]
    return _suppress("response", payload)


# ---------------------------------------------------------------------------
# Flat ``type`` shapes
# ---------------------------------------------------------------------------


def _from_flat(kind: str, payload: dict) -> list[CanonicalEvent] | None:
    if kind == "app.prompt":
        return [StatusNote("Prompt", _str(payload.get("prompt")) or "")]
    if kind == "app.run_finished":
        exit_code = payload.get("exit_code")
        if not isinstance(exit_code, int):
            exit_code = None
        return [RunOutcome(success=bool(payload.get("success")), exit_code=exit_code)]

    if kind in EXEC_LIFECYCLE_TYPES:
        return [Lifecycle(kind)]
    if kind == "turn.completed":
        return [StatusNote("Usage", _usage_summary(_obj(payload.get("usage"))), key="turn_summary")]
    if kind == "turn.failed":
        message = _str(_obj(payload.get("error")).get("message")) or "Turn failed"
        return [ErrorNotice(message)]
    if kind == "error":
        return [ErrorNotice(_str(payload.get("message")) or "Unknown error")]

    phase = EXEC_ITEM_TYPES.get(kind)
    if phase is not None:
        item = payload.get("item")
        if not isinstance(item, dict):
            return None
        return _from_exec_item(item, phase)

    if kind == "session_meta":
        return [StatusNote("Session", _session_summary(_obj(payload.get("payload"))), key="session_meta")]
    if kind in ROLLOUT_SUPPRESSED_TYPES:
        return _suppress(kind, payload)
    if kind == "response_item":
        return _from_response_item(_obj(payload.get("payload")))
    if kind == "event_msg":
        return _from_rollout_event(_obj(payload.get("payload")))

    return None


def _from_exec_item(item: dict, phase: str) -> list[CanonicalEvent]:
    item_id = _str(item.get("id"))
    item_type = _str(item.get("type")) or "item"
    status = _status(item.get("status"))

    if item_type == "agent_message":
        return [ItemUpdate(item_id, phase, ItemPayload("assistant", text=_str(item.get("text"))))]

    if item_type == "reasoning":
        return [ItemUpdate(item_id, phase, ItemPayload("thought", text=_str(item.get("text"))))]

    if item_type == "command_execution":
        payload = ItemPayload(
            "command",
            command=_command_text(item.get("command")),
            output=_str(item.get("aggregated_output")),
            status=status,
            exit_code=_int(item.get("exit_code")),
        )
        return [ItemUpdate(item_id, phase, payload)]

    if item_type == "file_change":
        payload = ItemPayload(
            "tool",
            title="File change",
            text=_describe_changes(item.get("changes")),
            status=status,
        )
        return [ItemUpdate(item_id, phase, payload)]

    if item_type == "mcp_tool_call":
        server = _str(item.get("server")) or "mcp"
        tool = _str(item.get("tool")) or "tool"
        return [ItemUpdate(item_id, phase, ItemPayload("tool", title=f"{server}.{tool}", status=status))]

    if item_type == "web_search":
        return [ItemUpdate(item_id, phase, ItemPayload("tool", title="Web search", text=_str(item.get("query"))))]

    if item_type == "todo_list":
        steps = []
        for entry in item.get("items") or []:
            if not isinstance(entry, dict):
                continue
            text = (_str(entry.get("text")) or "").strip()
            if text:
                steps.append(PlanStep(text, "completed" if entry.get("completed") else "pending"))
        return [PlanUpdate(steps=tuple(steps))]

    if item_type == "error":
        return [ErrorNotice(_str(item.get("message")) or "Unknown error")]

    return [ItemUpdate(item_id, phase, ItemPayload("other", title=item_type, text=_dump(item)))]


def _from_response_item(payload: dict) -> list[CanonicalEvent] | None:
    ptype = _str(payload.get("type"))
    if ptype is None:
        return None

    if ptype == "message":
        if payload.get("role") != "assistant":
            # prompts are taken from event_msg/user_message
            return _suppress(f"message:{payload.get('role')}", payload)
        text = _content_text(payload.get("content"))
        return [ItemUpdate(_str(payload.get("id")), "completed", ItemPayload("assistant", text=text))]

    if ptype == "reasoning":
        text = _join_texts(payload.get("summary")) or _join_texts(payload.get("content"))
        if not text:
            return _suppress("reasoning", payload)
        return [ItemUpdate(_str(payload.get("id")), "completed", ItemPayload("thought", text=text))]

    if ptype == "function_call":
        name = _str(payload.get("name")) or "tool"
        call_id = _str(payload.get("call_id")) or _str(payload.get("id"))
        arguments = payload.get("arguments")
        args = try_parse_json(arguments) if isinstance(arguments, str) else arguments
        if name in SHELL_TOOL_NAMES:
            command = _command_text(_obj(args).get("command") if isinstance(args, dict) else args)
            return [ItemUpdate(call_id, "started", ItemPayload("command", command=command, status="in_progress"))]
        out: list[CanonicalEvent] = [
            ItemUpdate(
                call_id,
                "started",
                ItemPayload("tool", title=name, text=_dump(args) if args is not None else None, status="in_progress"),
            )
        ]
        if name == PLAN_TOOL_NAME and isinstance(args, dict):
            out.append(_plan_update_from(args))
        return out

    if ptype == "custom_tool_call":
        name = _str(payload.get("name")) or "tool"
        payload_item = ItemPayload("tool", title=name, text=_str(payload.get("input")), status="in_progress")
        return [ItemUpdate(_str(payload.get("call_id")), "started", payload_item)]

    if ptype == "local_shell_call":
        action = _obj(payload.get("action"))
        payload_item = ItemPayload(
            "command",
            command=_command_text(action.get("command")),
            status=_status(payload.get("status")) or "in_progress",
        )
        return [ItemUpdate(_str(payload.get("call_id")) or _str(payload.get("id")), "started", payload_item)]

    if ptype in ("function_call_output", "custom_tool_call_output"):
        output, exit_code = _tool_output(payload.get("output"))
        status = "completed" if exit_code in (None, 0) else "failed"
        payload_item = ItemPayload("tool", output=output, status=status, exit_code=exit_code)
        return [ItemUpdate(_str(payload.get("call_id")), "completed", payload_item)]

    if ptype == "web_search_call":
        action = _obj(payload.get("action"))
        payload_item = ItemPayload(
            "tool",
            title="Web search",
            text=_str(action.get("query")),
            status=_status(payload.get("status")),
        )
        return [ItemUpdate(_str(payload.get("id")), "completed", payload_item)]

    return [GenericDump(ptype, _dump(payload))]


def _from_rollout_event(payload: dict) -> list[CanonicalEvent] | None:
    ptype = _str(payload.get("type"))
    if ptype is None:
        return None

    if ptype == "user_message":
        message = _str(payload.get("message")) or ""
        if not should_show_user_text(message):
            return _suppress("user_message", payload)
        return [StatusNote("Prompt", message.strip())]
    if ptype == "token_count":
        return _suppress(ptype, payload, usage=extract_token_usage(payload))
    if ptype in LIFECYCLE_MSG_TYPES:
        return [Lifecycle(ptype)]
    if ptype in ERROR_MSG_TYPES:
        return [ErrorNotice(_str(payload.get("message")) or "Unknown error")]
    if ptype == "plan_update":
        return [_plan_update_from(payload)]
    if ptype in ROLLOUT_ECHO_TYPES:
        return _suppress(ptype, payload)

    return [GenericDump(ptype, _dump(payload))]


# ---------------------------------------------------------------------------
# Legacy proto envelope: {"id": "<submission>", "msg": {...}}
# ---------------------------------------------------------------------------


def _from_proto_msg(msg: dict, sub_id: str) -> list[CanonicalEvent] | None:
    mtype = msg["type"]

    if mtype == "agent_message_delta":
        return [TextDelta(f"{sub_id}:message", "assistant", _str(msg.get("delta")) or "")]
    if mtype == "agent_message":
        return [ItemUpdate(f"{sub_id}:message", "completed", ItemPayload("assistant", text=_str(msg.get("message"))))]
    if mtype == "agent_reasoning_delta":
        return [TextDelta(f"{sub_id}:reasoning", "thought", _str(msg.get("delta")) or "")]
    if mtype == "agent_reasoning":
        return [ItemUpdate(f"{sub_id}:reasoning", "completed", ItemPayload("thought", text=_str(msg.get("text"))))]

    if mtype == "exec_command_begin":
        payload = ItemPayload("command", command=_command_text(msg.get("command")), status="in_progress")
        return [ItemUpdate(_str(msg.get("call_id")), "started", payload)]
    if mtype == "exec_command_output_delta":
        return [TextDelta(_str(msg.get("call_id")) or f"{sub_id}:exec", "command", _chunk_text(msg.get("chunk")))]
    if mtype == "exec_command_end":
        exit_code = _int(msg.get("exit_code"))
        output = _str(msg.get("aggregated_output"))
        if output is None:
            output = "".join(part for part in (_str(msg.get("stdout")), _str(msg.get("stderr"))) if part)
        payload = ItemPayload(
            "command",
            output=output,
            status="completed" if exit_code in (None, 0) else "failed",
            exit_code=exit_code,
        )
        return [ItemUpdate(_str(msg.get("call_id")), "completed", payload)]

    if mtype == "patch_apply_begin":
        payload = ItemPayload("tool", title="Patch", text=_describe_changes(msg.get("changes")), status="in_progress")
        return [ItemUpdate(_str(msg.get("call_id")), "started", payload)]
    if mtype == "patch_apply_end":
        output = "".join(part for part in (_str(msg.get("stdout")), _str(msg.get("stderr"))) if part)
        payload = ItemPayload("tool", output=output, status="completed" if msg.get("success") else "failed")
        return [ItemUpdate(_str(msg.get("call_id")), "completed", payload)]

    if mtype == "mcp_tool_call_begin":
        invocation = _obj(msg.get("invocation"))
        title = f"{_str(invocation.get('server')) or 'mcp'}.{_str(invocation.get('tool')) or 'tool'}"
        args = invocation.get("arguments")
        payload = ItemPayload("tool", title=title, text=_dump(args) if args is not None else None, status="in_progress")
        return [ItemUpdate(_str(msg.get("call_id")), "started", payload)]
    if mtype == "mcp_tool_call_end":
        payload = ItemPayload("tool", output=_dump(msg.get("result")), status="completed")
        return [ItemUpdate(_str(msg.get("call_id")), "completed", payload)]

    if mtype == "session_configured":
        return [StatusNote("Session", _session_summary(msg), key="session_meta")]
    if mtype == "plan_update":
        return [_plan_update_from(msg)]
    if mtype in ERROR_MSG_TYPES:
        return [ErrorNotice(_str(msg.get("message")) or "Unknown error")]
    if mtype in LIFECYCLE_MSG_TYPES:
        return [Lifecycle(mtype)]
    if mtype in PROTO_SUPPRESSED_TYPES:
        return _suppress(mtype, msg, usage=extract_token_usage(msg) if mtype == "token_count" else None)

    return None


# ---------------------------------------------------------------------------
# Token usage
# ---------------------------------------------------------------------------


def extract_token_usage(payload: Any) -> TokenUsageSnapshot | None:
    """Pull a token usage snapshot out of any known usage record."""
    if not isinstance(payload, dict):
        return None

    if payload.get("method") == "thread/tokenUsage/updated":
        params = _obj(payload.get("params"))
        usage = _obj(params.get("tokenUsage"))
        window = _int(params.get("modelContextWindow")) or _int(usage.get("modelContextWindow")) or 0
        last = usage.get("last") if isinstance(usage.get("last"), dict) else usage.get("total")
        if not isinstance(last, dict):
            return None
        return _snapshot(
            window,
            total=_int(last.get("totalTokens")),
            input_tokens=_int(last.get("inputTokens")) or 0,
            cached=_int(last.get("cachedInputTokens")) or 0,
            output=_int(last.get("outputTokens")) or 0,
            reasoning=_int(last.get("reasoningOutputTokens")) or 0,
        )

    kind = payload.get("type")
    if kind == "turn.completed":
        usage = payload.get("usage")
        if not isinstance(usage, dict):
            return None
        return _snapshot(
            0,
            total=_int(usage.get("total_tokens")),
            input_tokens=_int(usage.get("input_tokens")) or 0,
            cached=_int(usage.get("cached_input_tokens")) or 0,
            output=_int(usage.get("output_tokens")) or 0,
            reasoning=_int(usage.get("reasoning_output_tokens")) or 0,
        )
    if kind == "event_msg":
        return extract_token_usage(payload.get("payload"))
    if isinstance(payload.get("msg"), dict):
        return extract_token_usage(payload["msg"])
    if kind == "token_count":
        info = _obj(payload.get("info"))
        last = info.get("last_token_usage") if isinstance(info.get("last_token_usage"), dict) else info.get("total_token_usage")
        if not isinstance(last, dict):
            return None
        return _snapshot(
            _int(info.get("model_context_window")) or 0,
            total=_int(last.get("total_tokens")),
            input_tokens=_int(last.get("input_tokens")) or 0,
            cached=_int(last.get("cached_input_tokens")) or 0,
            output=_int(last.get("output_tokens")) or 0,
            reasoning=_int(last.get("reasoning_output_tokens")) or 0,
        )
    return None


def _snapshot(
    window: int,
    total: int | None,
    input_tokens: int,
    cached: int,
    output: int,
    reasoning: int,
) -> TokenUsageSnapshot:
    if total is None:
        total = input_tokens + output + reasoning
    return TokenUsageSnapshot(
        window=window,
        total_tokens=total,
        input_tokens=input_tokens,
        output_tokens=output,
        reasoning_output_tokens=reasoning,
        cached_input_tokens=cached,
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def should_show_user_text(text: str) -> bool:
    """Filter out the instruction/environment preambles codex injects as user turns."""
    t = text.strip()
    if not t:
        return False
    if t.startswith("# AGENTS.md") or t.startswith("<environment_context"):
        return False
    return "<INSTRUCTIONS>" not in t


def rollout_user_text(record: Any) -> str | None:
    """The user prompt carried by one rollout record, if it is worth showing."""
    if not isinstance(record, dict) or not isinstance(record.get("payload"), dict):
        return None
    payload = record["payload"]
    text = None
    if record.get("type") == "event_msg" and payload.get("type") == "user_message":
        text = _str(payload.get("message"))
    elif record.get("type") == "response_item" and payload.get("type") == "message" and payload.get("role") == "user":
        text = _content_text(payload.get("content"))
    if text and should_show_user_text(text):
        return text.strip()
    return None


def _suppress(name: str, payload: Any, usage: TokenUsageSnapshot | None = None) -> list[CanonicalEvent]:
    out: list[CanonicalEvent] = [Suppressed(name, usage)]
    plan = _scan_plan(payload)
    if plan is not None:
        out.append(plan)
    return out


def _scan_plan(value: Any, depth: int = 0) -> PlanUpdate | None:
    """Find a ``{"plan": [{"step": ..., "status": ...}]}`` shape inside a payload."""
    if depth > 4:
        return None
    if isinstance(value, dict):
        plan = value.get("plan")
        if isinstance(plan, list) and any(isinstance(s, dict) and "step" in s for s in plan):
            return _plan_update_from(value)
        for child in value.values():
            found = _scan_plan(child, depth + 1)
            if found is not None:
                return found
    elif isinstance(value, list):
        for child in value:
            found = _scan_plan(child, depth + 1)
            if found is not None:
                return found
    return None


def _plan_update_from(obj: dict) -> PlanUpdate:
    steps = []
    for entry in obj.get("plan") or []:
        if isinstance(entry, str):
            text, status = entry, "pending"
        elif isinstance(entry, dict):
            text = _str(entry.get("step")) or _str(entry.get("text")) or _str(entry.get("content")) or ""
            status = entry.get("status")
        else:
            continue
        text = text.strip()
        if text:
            steps.append(PlanStep(text, normalize_step_status(status)))
    explanation = _str(obj.get("explanation"))
    return PlanUpdate(steps=tuple(steps), explanation=explanation.strip() if explanation and explanation.strip() else None)


def _usage_summary(usage: dict) -> str:
    lines = ["Turn completed."]
    for name in ("input_tokens", "cached_input_tokens", "output_tokens"):
        value = _int(usage.get(name))
        if value is not None:
            lines.append(f"{name}: {value}")
    return "\n".join(lines)


def _session_summary(meta: dict) -> str:
    lines = []
    for label, key in (
        ("session", "id"),
        ("session", "session_id"),
        ("model", "model"),
        ("cwd", "cwd"),
        ("originator", "originator"),
        ("cli_version", "cli_version"),
    ):
        value = _str(meta.get(key))
        if value:
            lines.append(f"{label}: {value}")
    branch = _str(_obj(meta.get("git")).get("branch"))
    if branch:
        lines.append(f"branch: {branch}")
    return "\n".join(lines) or "Session started."


def _tool_output(raw: Any) -> tuple[str, int | None]:
    """Unwrap a tool output, which rollouts store as a JSON string envelope."""
    if isinstance(raw, dict):
        parsed = raw
    elif isinstance(raw, str):
        parsed = try_parse_json(raw)
        if not isinstance(parsed, dict):
            return raw, None
    else:
        return (_dump(raw) if raw is not None else ""), None

    output = parsed.get("output")
    if not isinstance(output, str):
        output = _str(parsed.get("content")) or (raw if isinstance(raw, str) else _dump(raw))
    exit_code = _int(_obj(parsed.get("metadata")).get("exit_code"))
    return output, exit_code


def _describe_changes(changes: Any) -> str | None:
    if isinstance(changes, dict):
        changes = [{"path": path, "kind": detail} for path, detail in changes.items()]
    if not isinstance(changes, list):
        return None
    lines = []
    for change in changes:
        if not isinstance(change, dict):
            continue
        path = _str(change.get("path")) or "?"
        kind = change.get("kind")
        if isinstance(kind, dict):
            kind = kind.get("type") or next(iter(kind), None)
        lines.append(f"{kind or 'update'}: {path}")
    return "\n".join(lines) or None


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    parts = []
    for part in content:
        if isinstance(part, dict) and part.get("type") in ("input_text", "output_text", "text"):
            text = part.get("text")
            if isinstance(text, str):
                parts.append(text)
    return "".join(parts)


def _join_texts(value: Any) -> str:
    if isinstance(value, str):
        return value
    if not isinstance(value, list):
        return ""
    parts = []
    for part in value:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and isinstance(part.get("text"), str):
            parts.append(part["text"])
    return "\n\n".join(p for p in parts if p)


def _command_text(value: Any) -> str | None:
    if isinstance(value, str):
        return value
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        # unwrap ["bash", "-lc", "<script>"]
        if len(value) == 3 and value[1] in ("-lc", "-c"):
            return value[2]
        return shlex.join(value)
    return None


def _chunk_text(chunk: Any) -> str:
    if isinstance(chunk, str):
        return chunk
    if isinstance(chunk, list) and all(isinstance(b, int) for b in chunk):
        return bytes(b & 0xFF for b in chunk).decode("utf-8", errors="replace")
    return ""


def _status(value: Any) -> str | None:
    """Status strings arrive as camelCase or snake_case; store snake_case."""
    if not isinstance(value, str) or not value:
        return None
    out = []
    for ch in value:
        if ch.isupper():
            out.append("_" + ch.lower())
        else:
            out.append(ch)
    return "".join(out).replace("-", "_").lstrip("_")


def _title_for(payload: dict) -> str:
    for key in ("method", "type"):
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    msg_type = _obj(payload.get("msg")).get("type")
    if isinstance(msg_type, str) and msg_type:
        return msg_type
    return "event"


def _dump(value: Any) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False)


def _obj(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None
