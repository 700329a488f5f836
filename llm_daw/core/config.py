"""User settings stored as JSON under ``~/.llm_daw/config.json``.

Keys are addressed with dot paths (``"midi.last_device"``).  A file written
by an older release is deep-merged over ``DEFAULT_CONFIG`` on load, so new
settings appear with their defaults.  ``LLM_DAW_DATABASE_URL`` takes
precedence over ``database.url``.
"""

from __future__ import annotations

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any

from .constants import (
    AUTOSAVE_DELAY,
    BPM_DEFAULT,
    DEFAULT_PROJECT_NAME,
    DEFAULT_SAMPLE_RATE,
    DEVICE_POLL_INTERVAL,
    MIN_NOTE_BEATS,
)

log = logging.getLogger(__name__)

DATABASE_URL_ENV = "LLM_DAW_DATABASE_URL"
CONFIG_FILENAME = "config.json"
DEFAULT_DB_FILENAME = "projects.db"

DEFAULT_CONFIG: dict[str, Any] = {
    "version": "1.0",
    "database": {
        "url": "",  # empty: sqlite file next to config.json
        "echo": False,
    },
    "persistence": {
        "autosave": True,
        "autosave_delay": AUTOSAVE_DELAY,  # seconds of quiet before saving
    },
    "recording": {
        "min_note_beats": MIN_NOTE_BEATS,
    },
    "midi": {
        "last_device": "",
        "poll_interval": DEVICE_POLL_INTERVAL,  # seconds
        "output_port": "",
    },
    "project": {
        "name": DEFAULT_PROJECT_NAME,
        "bpm": BPM_DEFAULT,
        "sample_rate": DEFAULT_SAMPLE_RATE,
        "last_project_id": "",
    },
}


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = _deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def _walk(tree: dict[str, Any], path: list[str]) -> Any:
    """Follow *path* through nested dicts; ``None`` when any step is missing."""
    node: Any = tree
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
        if node is None:
            return None
    return node


class ConfigManager:
    """Dot-path access to a JSON settings file, saved on every ``set``."""

    def __init__(self, config_dir: Path | None = None) -> None:
        self.config_dir = config_dir if config_dir is not None else Path.home() / ".llm_daw"
        self.config_file = self.config_dir / CONFIG_FILENAME
        self.config_dir.mkdir(parents=True, exist_ok=True)

        stored = self._read_file()
        if stored is None:
            self._config = copy.deepcopy(DEFAULT_CONFIG)
            if not self.config_file.exists():
                self._write_file()
        else:
            self._config = _deep_merge(DEFAULT_CONFIG, stored)

    # ── File I/O ─────────────────────────────────────────────

    def _read_file(self) -> dict[str, Any] | None:
        if not self.config_file.exists():
            return None
        try:
            data = json.loads(self.config_file.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            log.warning("Ignoring unreadable config %s: %s", self.config_file, e)
            return None
        if not isinstance(data, dict):
            log.warning("Ignoring config %s: top level is not an object", self.config_file)
            return None
        return data

    def _write_file(self) -> None:
        try:
            self.config_file.write_text(
                json.dumps(self._config, indent=2, ensure_ascii=False), encoding="utf-8",
            )
        except OSError as e:
            log.warning("Could not write config %s: %s", self.config_file, e)

    # ── Access ───────────────────────────────────────────────

    def get(self, key_path: str, default: Any = None) -> Any:
        """Value at *key_path*, e.g. ``config.get("persistence.autosave_delay", 2.0)``."""
        value = _walk(self._config, key_path.split("."))
        return default if value is None else value

    def set(self, key_path: str, value: Any) -> None:
        """Store *value* at *key_path*, creating sections as needed, and save."""
        *sections, leaf = key_path.split(".")
        node = self._config
        for key in sections:
            child = node.get(key)
            if not isinstance(child, dict):
                child = node[key] = {}
            node = child
        node[leaf] = value
        self._write_file()

    def get_all(self) -> dict[str, Any]:
        return copy.deepcopy(self._config)

    def reset(self) -> None:
        self._config = copy.deepcopy(DEFAULT_CONFIG)
        self._write_file()

    def database_url(self) -> str:
        """Environment override, then ``database.url``, then a sqlite file in the config dir."""
        url = os.environ.get(DATABASE_URL_ENV) or self.get("database.url")
        if url:
            return url
        return f"sqlite:///{(self.config_dir / DEFAULT_DB_FILENAME).as_posix()}"


_global_config: ConfigManager | None = None


def get_config() -> ConfigManager:
    """Process-wide config, created on first use."""
    global _global_config
    if _global_config is None:
        _global_config = ConfigManager()
    return _global_config
