"""FastAPI sidecar exposing codex sessions over HTTP and SSE."""
