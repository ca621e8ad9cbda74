"""Client for a codex-warp sidecar running elsewhere.

``RemoteClient`` covers history, run control and usage over plain HTTP.
``SSEStreamTransport`` holds the single live stream for the viewed session.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from collections.abc import Callable, Iterable, Iterator

import requests

from ..core.events import ContextMetrics, Event, LiveRecord, RunFinished
from ..core.multiplexer import RunControlError
from ..core.session_store import SessionMeta
from ..core.usage import UsageRecord

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30
STREAM_CONNECT_TIMEOUT = 10
# the server sends a keepalive comment every 15s
STREAM_READ_TIMEOUT = 60

RECORD_DECODERS: dict[str, Callable[[dict], LiveRecord]] = {
    "codex_event": Event.from_dict,
    "context_metrics": ContextMetrics.from_dict,
    "run_finished": RunFinished.from_dict,
}


class RemoteClient:
    """History source, run control and usage source backed by the sidecar API.

    The HTTP calls block; the multiplexer runs the sync ones in worker
    threads and the run-control coroutines do the same here.
    """

    def __init__(self, base_url: str, session: requests.Session | None = None, timeout: float = DEFAULT_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.http = session or requests.Session()
        self.timeout = timeout

    def _url(self, path: str) -> str:
        return f"{self.base_url}/api{path}"

    def _get(self, path: str, **params) -> object:
        response = self.http.get(self._url(path), params=params or None, timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    # -- history ------------------------------------------------------------

    def list_sessions(self) -> list[SessionMeta]:
        rows = self._get("/sessions")
        return [SessionMeta.from_dict(row) for row in rows if isinstance(row, dict)]

    def read_events(self, session_id: str, max_lines: int | None = None) -> list[str]:
        data = self._get(f"/sessions/{session_id}/events", **_limit(max_lines))
        return list(data.get("lines", [])) if isinstance(data, dict) else []

    def read_stderr(self, session_id: str, max_lines: int | None = None) -> list[str]:
        data = self._get(f"/sessions/{session_id}/stderr", **_limit(max_lines))
        return list(data.get("lines", [])) if isinstance(data, dict) else []

    def read_conclusion(self, session_id: str) -> str:
        data = self._get(f"/sessions/{session_id}/conclusion")
        return str(data.get("text") or "") if isinstance(data, dict) else ""

    # -- usage ----------------------------------------------------------------

    def list_usage(self, limit: int | None = None) -> list[UsageRecord]:
        data = self._get("/usage", **_limit(limit))
        rows = data.get("records", []) if isinstance(data, dict) else []
        return [r for r in (UsageRecord.from_dict(row) for row in rows if isinstance(row, dict)) if r]

    # -- run control ------------------------------------------------------------

    async def start(self, prompt: str, cwd: str | None = None) -> SessionMeta:
        return await asyncio.to_thread(self._post_meta, "/sessions", {"prompt": prompt, "cwd": cwd})

    async def continue_run(self, session_id: str, prompt: str) -> SessionMeta:
        return await asyncio.to_thread(self._post_meta, f"/sessions/{session_id}/continue", {"prompt": prompt})

    async def stop(self, session_id: str) -> SessionMeta:
        return await asyncio.to_thread(self._post_meta, f"/sessions/{session_id}/stop", {})

    def _post_meta(self, path: str, body: dict) -> SessionMeta:
        try:
            response = self.http.post(self._url(path), json=body, timeout=self.timeout)
        except requests.RequestException as exc:
            raise RunControlError(f"Sidecar unreachable: {exc}") from exc
        if response.status_code >= 400:
            raise RunControlError(_error_detail(response), reason=_reason_for(response.status_code))
        try:
            return SessionMeta.from_dict(response.json())
        except (ValueError, KeyError, TypeError) as exc:
            raise RunControlError(f"Unexpected sidecar response: {exc}") from exc


def _limit(value: int | None) -> dict:
    return {} if value is None else {"limit": value}


def _reason_for(status_code: int) -> str:
    return {404: "not_found", 409: "busy", 503: "codex_missing"}.get(status_code, "failed")


def _error_detail(response: requests.Response) -> str:
    try:
        detail = response.json().get("detail")
    except (ValueError, AttributeError):
        detail = None
    return str(detail or f"HTTP {response.status_code}")


def iter_sse(lines: Iterable[str]) -> Iterator[tuple[str, str]]:
    """Parse Server-Sent Events into ``(event, data)`` pairs.

    Comment lines (keepalives) are skipped; multi-line data is joined with
    newlines; an event without a name is reported as ``message``.
    """
    event = ""
    data: list[str] = []
    for line in lines:
        if line == "":
            if data:
                yield event or "message", "\n".join(data)
            event, data = "", []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            event = value
        elif field == "data":
            data.append(value)
    if data:
        yield event or "message", "\n".join(data)


def decode_record(event: str, data: str) -> LiveRecord | None:
    decoder = RECORD_DECODERS.get(event)
    if decoder is None:
        return None
    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        logger.warning("Skipping malformed %s record", event)
        return None
    if not isinstance(payload, dict):
        return None
    return decoder(payload)


class _Connection:
    def __init__(self, session_id: str, response: requests.Response):
        self.session_id = session_id
        self.response = response
        self.closed = False
        self.thread: threading.Thread | None = None


class SSEStreamTransport:
    """Remote live transport: one SSE connection for the attached session.

    Attaching another session closes the current connection first. The
    reader runs in a daemon thread and hands records to the event loop with
    ``call_soon_threadsafe``. A connection that drops without being detached
    is reported through ``on_error``.
    """

    mode = "remote"

    def __init__(self, base_url: str, session: requests.Session | None = None, tail: int = 0):
        self.base_url = base_url.rstrip("/")
        self.http = session or requests.Session()
        self.tail = tail
        self.connections_opened = 0
        self._current: _Connection | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._deliver: Callable[[LiveRecord], None] | None = None
        self._on_error: Callable[[str, BaseException], None] | None = None

    @property
    def attached_session(self) -> str | None:
        return self._current.session_id if self._current else None

    async def open(
        self,
        deliver: Callable[[LiveRecord], None],
        on_error: Callable[[str, BaseException], None],
    ) -> None:
        self._loop = asyncio.get_running_loop()
        self._deliver = deliver
        self._on_error = on_error

    async def attach(self, session_id: str) -> None:
        if self._current is not None:
            await self.detach(self._current.session_id)
        response = await asyncio.to_thread(self._connect, session_id)
        conn = _Connection(session_id, response)
        conn.thread = threading.Thread(
            target=self._read,
            args=(conn,),
            name=f"codex-warp-sse-{session_id}",
            daemon=True,
        )
        self._current = conn
        self.connections_opened += 1
        conn.thread.start()
        logger.debug("Attached live stream for %s", session_id)

    def _connect(self, session_id: str) -> requests.Response:
        response = self.http.get(
            f"{self.base_url}/api/sessions/{session_id}/stream",
            params={"tail": self.tail},
            headers={"Accept": "text/event-stream"},
            stream=True,
            timeout=(STREAM_CONNECT_TIMEOUT, STREAM_READ_TIMEOUT),
        )
        try:
            response.raise_for_status()
        except requests.HTTPError:
            response.close()
            raise
        return response

    def _read(self, conn: _Connection) -> None:
        try:
            lines = conn.response.iter_lines(decode_unicode=True)
            for event, data in iter_sse(line or "" for line in lines):
                if conn.closed:
                    return
                record = decode_record(event, data)
                if record is not None:
                    self._emit(self._deliver, record)
        except (requests.RequestException, OSError, ValueError) as exc:
            if not conn.closed:
                self._emit(self._on_error, conn.session_id, exc)
            return
        if not conn.closed:
            self._emit(self._on_error, conn.session_id, ConnectionError("live stream closed by server"))

    def _emit(self, callback, *args) -> None:
        if callback is None or self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(callback, *args)

    async def detach(self, session_id: str) -> None:
        conn = self._current
        if conn is None or conn.session_id != session_id:
            return
        self._current = None
        conn.closed = True
        conn.response.close()
        if conn.thread is not None and conn.thread.is_alive():
            await asyncio.to_thread(conn.thread.join, 2.0)
        logger.debug("Detached live stream for %s", session_id)

    async def close(self) -> None:
        if self._current is not None:
            await self.detach(self._current.session_id)
