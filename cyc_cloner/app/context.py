from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from cyc_cloner.config.settings import SettingsStore
from cyc_cloner.storage.tools import ToolRunner


@dataclass
class RunContext:
    """Configuration and capabilities handed to every component.

    Built once at start-up from settings and CLI overrides; nothing reads
    configuration from module globals.
    """

    backup_dir: Path
    mount_root: Path = Path("/mnt")
    log_dir: Optional[Path] = None
    parallel_jobs: int = 8
    compression: str = "gzip"
    timeout_seconds: int = 30
    mount_timeout_seconds: int = 10
    settle_timeout_seconds: int = 30
    stagger_seconds: float = 2.0
    firmware_path: Path = Path("/sys/firmware/efi")
    runner: ToolRunner = field(default_factory=ToolRunner)

    @classmethod
    def from_settings(cls, store: SettingsStore, **overrides: Any) -> RunContext:
        values = dict(store.values)
        values.update({key: value for key, value in overrides.items() if value is not None})
        log_dir = values.get("log_dir")
        kwargs: dict[str, Any] = dict(
            backup_dir=Path(values["backup_dir"]),
            mount_root=Path(values["mount_root"]),
            log_dir=Path(log_dir) if log_dir else None,
            parallel_jobs=max(1, int(values["parallel_jobs"])),
            compression=str(values["compression"]),
            timeout_seconds=int(values["timeout_seconds"]),
            mount_timeout_seconds=int(values["mount_timeout_seconds"]),
            settle_timeout_seconds=int(values["settle_timeout_seconds"]),
            stagger_seconds=float(values["stagger_seconds"]),
        )
        if "runner" in overrides and overrides["runner"] is not None:
            kwargs["runner"] = overrides["runner"]
        if "firmware_path" in overrides and overrides["firmware_path"] is not None:
            kwargs["firmware_path"] = Path(overrides["firmware_path"])
        return cls(**kwargs)
