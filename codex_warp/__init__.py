"""codex-warp: timeline viewer for codex agent runs."""

__version__ = "0.4.0"
