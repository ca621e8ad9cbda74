"""
codex-warp Backend - FastAPI Server

Runs the codex supervisor and session multiplexer in-process and exposes
session control, raw logs, folded timelines, live SSE streams and usage to
desktop or terminal clients.
"""

import argparse
import logging
from contextlib import asynccontextmanager
from dataclasses import replace
from pathlib import Path

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ... import __version__
from ...core.config import Settings, load_settings
from .routes import sessions, settings, stream, usage
from .state import SidecarState

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8765


def create_app(config: Settings | None = None) -> FastAPI:
    """Build the sidecar app. Settings are loaded on startup when not given."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Own the supervisor and multiplexer; stop running codex processes on exit."""
        state = SidecarState.build(config or load_settings())
        app.state.warp = state
        await state.startup()
        logger.info("codex-warp sidecar ready (data dir %s)", state.settings.data_dir)
        try:
            yield
        finally:
            await state.shutdown()

    app = FastAPI(
        title="codex-warp Backend",
        description="Session supervisor and live event stream for the codex CLI",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "tauri://localhost",
            "http://tauri.localhost",
            "https://tauri.localhost",
            "http://localhost",
            "http://127.0.0.1",
        ],
        allow_origin_regex=r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(sessions.router, prefix="/api/sessions", tags=["sessions"])
    app.include_router(stream.router, prefix="/api/sessions", tags=["stream"])
    app.include_router(usage.router, prefix="/api", tags=["usage"])
    app.include_router(settings.router, prefix="/api/settings", tags=["settings"])

    @app.get("/health")
    def health():
        """Health check endpoint"""
        return {"status": "ok"}

    @app.get("/")
    def root():
        """Root endpoint with API info"""
        return {
            "name": "codex-warp Backend",
            "version": __version__,
            "docs": "/docs",
        }

    return app


app = create_app()


def main():
    """Main entry point for the sidecar"""
    parser = argparse.ArgumentParser(description="codex-warp Backend Server")
    parser.add_argument(
        "--port",
        type=int,
        default=DEFAULT_PORT,
        help=f"Port to run the server on (default: {DEFAULT_PORT})",
    )
    parser.add_argument(
        "--host",
        type=str,
        default=DEFAULT_HOST,
        help=f"Host to bind to (default: {DEFAULT_HOST})",
    )
    parser.add_argument("--data-dir", type=str, default=None, help="Data directory (default: ~/.codex-warp)")
    parser.add_argument("--codex-path", type=str, default=None, help="codex executable to run")
    parser.add_argument("--codex-home", type=str, default=None, help="codex home directory (default: ~/.codex)")
    parser.add_argument("--cwd", type=str, default=None, help="Working directory for new runs")
    args = parser.parse_args()

    config = load_settings(args.data_dir)
    overrides = {}
    if args.codex_path:
        overrides["codex_path"] = args.codex_path
    if args.codex_home:
        overrides["codex_home"] = Path(args.codex_home).expanduser()
    if args.cwd:
        overrides["default_cwd"] = args.cwd
    config = replace(config, **overrides)

    print(f"Starting codex-warp backend on {args.host}:{args.port}")

    log_config = uvicorn.config.LOGGING_CONFIG
    log_config["formatters"]["access"]["fmt"] = "%(asctime)s %(levelprefix)s %(client_addr)s - \"%(request_line)s\" %(status_code)s"
    log_config["formatters"]["default"]["fmt"] = "%(asctime)s %(levelprefix)s %(message)s"
    log_config["formatters"]["access"]["datefmt"] = "%H:%M:%S"
    log_config["formatters"]["default"]["datefmt"] = "%H:%M:%S"

    # one worker: runs and subscribers live in this process
    uvicorn.run(create_app(config), host=args.host, port=args.port, log_level="info", log_config=log_config)


if __name__ == "__main__":
    main()
