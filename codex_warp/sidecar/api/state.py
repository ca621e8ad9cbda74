"""Process-wide objects shared by the sidecar routes."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import HTTPException, Request

from ...agents.channel import EventChannel, InProcessTransport
from ...agents.supervisor import RunSupervisor
from ...core.config import Settings
from ...core.multiplexer import RunControlError, SessionMultiplexer
from ...core.native_sessions import NativeSessionIndex, SessionCatalog
from ...core.session_store import SessionMeta, SessionStore
from ...core.usage import UsageLedger
from ...core.runtime import is_valid_session_id, usage_file_path

logger = logging.getLogger(__name__)

RUN_CONTROL_STATUS = {
    "not_found": 404,
    "busy": 409,
    "codex_missing": 503,
}


@dataclass
class SidecarState:
    settings: Settings
    store: SessionStore
    history: SessionCatalog
    usage: UsageLedger
    channel: EventChannel
    supervisor: RunSupervisor
    multiplexer: SessionMultiplexer

    @classmethod
    def build(cls, settings: Settings) -> "SidecarState":
        store = SessionStore(settings.data_dir)
        history = SessionCatalog(store, NativeSessionIndex(settings.codex_home))
        usage = UsageLedger(usage_file_path(settings.data_dir), max_records=settings.usage_max_records)
        channel = EventChannel()
        supervisor = RunSupervisor(store, channel, settings, usage=usage)
        multiplexer = SessionMultiplexer(
            history=history,
            transport=InProcessTransport(channel),
            run_control=supervisor,
            usage=usage,
            history_max_lines=settings.history_max_lines,
            usage_max_records=settings.usage_max_records,
            reconnect_delay_seconds=settings.reconnect_delay_seconds,
            tick_seconds=settings.elapsed_tick_seconds,
        )
        return cls(settings, store, history, usage, channel, supervisor, multiplexer)

    def apply_settings(self, settings: Settings) -> None:
        """Swap in edited settings for runs, history and the native session index."""
        if settings.codex_home != self.settings.codex_home:
            self.history.native = NativeSessionIndex(settings.codex_home)
        self.settings = settings
        self.supervisor.settings = settings
        self.multiplexer.history_max_lines = settings.history_max_lines

    async def startup(self) -> None:
        await self.multiplexer.open()

    async def shutdown(self) -> None:
        await self.supervisor.shutdown()
        await self.multiplexer.close()
        self.channel.close()


def get_state(request: Request) -> SidecarState:
    return request.app.state.warp


def require_session(state: SidecarState, session_id: str) -> SessionMeta:
    """Session metadata or a 404."""
    if not is_valid_session_id(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    meta = state.history.read_meta(session_id)
    if meta is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return meta


def http_error(exc: RunControlError) -> HTTPException:
    status = RUN_CONTROL_STATUS.get(exc.reason, 400)
    return HTTPException(status_code=status, detail=str(exc))
