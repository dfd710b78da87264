"""Settings storage for application configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "CYC_CLONER_SETTINGS_PATH",
        Path.home() / ".config" / "cyc-cloner" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_BACKUP_DIR = "/root/images"
DEFAULT_MOUNT_ROOT = "/mnt"
DEFAULT_PARALLEL_JOBS = 8
DEFAULT_TIMEOUT_SECONDS = 30
DEFAULT_STAGGER_SECONDS = 2.0

DEFAULT_SETTINGS: dict[str, Any] = {
    "backup_dir": DEFAULT_BACKUP_DIR,
    "mount_root": DEFAULT_MOUNT_ROOT,
    "log_dir": None,
    "parallel_jobs": DEFAULT_PARALLEL_JOBS,
    "compression": "gzip",
    "timeout_seconds": DEFAULT_TIMEOUT_SECONDS,
    "mount_timeout_seconds": 10,
    "settle_timeout_seconds": 30,
    "stagger_seconds": DEFAULT_STAGGER_SECONDS,
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_SETTINGS))
    path: Path = SETTINGS_PATH

    def get(self, key: str, default: Any | None = None) -> Any:
        return self.values.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.values[key] = value
        save_settings(self)


def load_settings(path: Path | None = None) -> SettingsStore:
    """Load settings from ``path``, falling back to defaults.

    An unreadable or malformed file leaves the defaults in place.
    """
    store = SettingsStore(path=path or SETTINGS_PATH)
    if not store.path.exists():
        return store
    try:
        data = json.loads(store.path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return store
    if isinstance(data, dict):
        store.values.update(data)
    return store


def save_settings(store: SettingsStore) -> None:
    store.path.parent.mkdir(parents=True, exist_ok=True)
    store.path.write_text(
        json.dumps(store.values, indent=2, sort_keys=True),
        encoding="utf-8",
    )
