"""Terminal client for a running codex-warp sidecar."""

from .main import cli

__all__ = ["cli"]
