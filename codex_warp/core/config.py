"""Settings for codex-warp.

Values come from ``settings.json`` in the data directory and are overridden
by ``CODEX_WARP_*`` environment variables. The sidecar's command line flags
override both.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path

from .runtime import default_codex_home, resolve_data_dir

logger = logging.getLogger(__name__)

SETTINGS_FILENAME = "settings.json"

_ENV_PREFIX = "CODEX_WARP_"


@dataclass(frozen=True)
class Settings:
    data_dir: Path = field(default_factory=resolve_data_dir)
    codex_path: str | None = None
    codex_home: Path = field(default_factory=default_codex_home)
    default_cwd: str | None = None
    remote_url: str = "http://127.0.0.1:8765"
    history_max_lines: int = 2000
    stream_tail_lines: int = 4000
    usage_max_records: int = 5000
    context_window: int = 0  # used when codex does not report one
    reconnect_delay_seconds: float = 3.0
    elapsed_tick_seconds: float = 1.0
    stop_grace_seconds: float = 5.0

    @property
    def settings_path(self) -> Path:
        return self.data_dir / SETTINGS_FILENAME

    def to_dict(self) -> dict:
        data = asdict(self)
        data["data_dir"] = str(self.data_dir)
        data["codex_home"] = str(self.codex_home)
        return data

    def save(self) -> bool:
        """Persist user-editable settings (everything except ``data_dir``)."""
        data = self.to_dict()
        data.pop("data_dir", None)
        try:
            self.settings_path.parent.mkdir(parents=True, exist_ok=True)
            self.settings_path.write_text(json.dumps(data, indent=2))
            return True
        except OSError as exc:
            logger.warning("Failed to save settings to %s: %s", self.settings_path, exc)
            return False


def _coerce(name: str, raw: object) -> object:
    """Convert a JSON/env value to the type of the named field."""
    if raw is None:
        return None
    if name in ("data_dir", "codex_home"):
        return Path(str(raw)).expanduser()
    if name in ("history_max_lines", "stream_tail_lines", "usage_max_records", "context_window"):
        return int(raw)
    if name in ("reconnect_delay_seconds", "elapsed_tick_seconds", "stop_grace_seconds"):
        return float(raw)
    return str(raw)


def load_settings(data_dir: Path | str | None = None, environ: dict[str, str] | None = None) -> Settings:
    """Load settings from disk, then apply environment overrides.

    Invalid values are logged and skipped; loading never fails.
    """
    env = os.environ if environ is None else environ
    resolved_dir = resolve_data_dir(data_dir or env.get(f"{_ENV_PREFIX}HOME"))
    settings = Settings(data_dir=resolved_dir)

    overrides: dict[str, object] = {}
    known = {f.name for f in fields(Settings)} - {"data_dir"}

    path = settings.settings_path
    if path.exists():
        try:
            stored = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable settings file %s: %s", path, exc)
            stored = {}
        if isinstance(stored, dict):
            for name, value in stored.items():
                if name in known:
                    overrides[name] = value

    for name in known:
        value = env.get(f"{_ENV_PREFIX}{name.upper()}")
        if value is not None and value != "":
            overrides[name] = value

    coerced: dict[str, object] = {}
    for name, value in overrides.items():
        try:
            coerced[name] = _coerce(name, value)
        except (TypeError, ValueError) as exc:
            logger.warning("Ignoring invalid setting %s=%r: %s", name, value, exc)

    return replace(settings, **coerced)
