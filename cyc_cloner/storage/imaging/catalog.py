"""Backup set catalog: on-disk layout and metadata.

Each backup set is one directory under the backup root named
``<disk>_<YYYYmmdd_HHMMSS>``::

    sda_20260118_101500/
        metadata.txt              KEY=VALUE record, written by finalize
        partition-table.sgdisk    GPT snapshot (GPT disks only)
        partition-table.sfdisk    legacy dump
        mbr-backup.bin            first 446 bytes of the disk
        disk-geometry.txt         diagnostic only
        partition_1.img.gz        image
        partition_1.fstype        filesystem kind
        partition_2.type          "swap" marker, no image
        partition_3.img.gz
        partition_3.fstype
        partition_3.codec         "dd" when captured raw
        partition_3.failed        diagnostic of a failed capture

A set without ``metadata.txt`` was never finalized and is not loadable.
Ordinals are contiguous from 1; a failed capture keeps its ordinal.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from cyc_cloner.domain.models import (
    BackupSet,
    BootMode,
    CodecKind,
    FilesystemKind,
    PartitionRecord,
)
from cyc_cloner.logging import get_logger
from cyc_cloner.storage.exceptions import BackupSetCorruptError, BackupSetNotFoundError

from .codecs import select_codec
from .compression import image_suffix


log = get_logger(source="catalog")

METADATA_FILE = "metadata.txt"
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
REQUIRED_KEYS = ("SOURCE_DISK", "BACKUP_DATE", "BOOT_MODE", "PARTITION_COUNT")


@dataclass(frozen=True)
class CodecResult:
    """Outcome of capturing one partition."""

    codec: CodecKind
    ok: bool = True
    image_path: Optional[Path] = None
    diagnostic: str = ""


def _sidecar(path: Path, ordinal: int, suffix: str) -> Path:
    return path / f"partition_{ordinal}.{suffix}"


def image_path_for(backup_set: BackupSet, ordinal: int) -> Path:
    return backup_set.path / f"partition_{ordinal}{image_suffix(backup_set.compression)}"


def create_backup_set(
    backup_dir: Path,
    source_disk_id: str,
    boot_mode: BootMode,
    *,
    compression: str = "gzip",
    now: Optional[datetime] = None,
) -> BackupSet:
    """Allocate a new, empty backup set directory."""
    image_suffix(compression)  # reject unsupported compression before touching disk
    created_at = (now or datetime.now()).replace(microsecond=0)
    base = f"{source_disk_id}_{created_at.strftime(TIMESTAMP_FORMAT)}"
    backup_dir.mkdir(parents=True, exist_ok=True)
    path = backup_dir / base
    suffix = 2
    while path.exists():
        path = backup_dir / f"{base}_{suffix}"
        suffix += 1
    path.mkdir()
    log.info(f"Created backup set {path}")
    return BackupSet(
        source_disk_id=source_disk_id,
        created_at=created_at,
        path=path,
        boot_mode=boot_mode,
        compression=compression,
    )


def append_partition(
    backup_set: BackupSet,
    ordinal: int,
    filesystem_kind: FilesystemKind,
    result: CodecResult,
) -> PartitionRecord:
    """Record one partition's capture outcome.

    A failed capture is recorded with a failure marker rather than omitted.

    Raises:
        ValueError: ``ordinal`` is not the next contiguous ordinal, or the
            set is already finalized
    """
    if backup_set.finalized:
        raise ValueError(f"Backup set {backup_set.name} is already finalized")
    expected = backup_set.partition_count + 1
    if ordinal != expected:
        raise ValueError(f"Expected partition ordinal {expected}, got {ordinal}")

    if filesystem_kind is FilesystemKind.SWAP:
        _sidecar(backup_set.path, ordinal, "type").write_text("swap\n", encoding="utf-8")
        record = PartitionRecord(ordinal, filesystem_kind, None, CodecKind.SKIP_SWAP)
    else:
        image_path = result.image_path or image_path_for(backup_set, ordinal)
        _sidecar(backup_set.path, ordinal, "fstype").write_text(
            f"{filesystem_kind.value}\n", encoding="utf-8"
        )
        if result.codec is CodecKind.RAW:
            _sidecar(backup_set.path, ordinal, "codec").write_text("dd\n", encoding="utf-8")
        error = None
        if not result.ok:
            error = result.diagnostic or "capture failed"
            _sidecar(backup_set.path, ordinal, "failed").write_text(
                f"{error}\n", encoding="utf-8"
            )
        record = PartitionRecord(
            ordinal,
            filesystem_kind,
            image_path,
            result.codec,
            failed=not result.ok,
            error=error,
        )
    backup_set.partitions.append(record)
    return record


def write_metadata(backup_set: BackupSet) -> None:
    lines = [
        f"SOURCE_DISK={backup_set.source_disk_id}",
        f"BACKUP_DATE={backup_set.created_at.isoformat()}",
        f"BOOT_MODE={backup_set.boot_mode.value}",
        f"PARTITION_COUNT={backup_set.partition_count}",
        f"FAILED_PARTITIONS={backup_set.failed_partition_count}",
        f"COMPRESSION={backup_set.compression}",
    ]
    backup_set.metadata_path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def finalize_backup_set(backup_set: BackupSet) -> BackupSet:
    """Write the failed count and boot mode; the set becomes loadable."""
    backup_set.failed_partition_count = sum(1 for r in backup_set.partitions if r.failed)
    backup_set.finalized = True
    write_metadata(backup_set)
    if backup_set.failed_partition_count:
        log.warning(
            f"Backup set {backup_set.name} finalized with "
            f"{backup_set.failed_partition_count} failed partitions"
        )
    else:
        log.info(f"Backup set {backup_set.name} finalized ({backup_set.partition_count} partitions)")
    return backup_set


def read_metadata(path: Path) -> dict[str, str]:
    values: dict[str, str] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if sep:
            values[key.strip()] = value.strip()
    return values


def _discovered_ordinals(path: Path) -> set[int]:
    ordinals = set()
    for entry in path.glob("partition_*.*"):
        stem = entry.name.split(".", 1)[0]
        number = stem[len("partition_"):]
        if number.isdigit():
            ordinals.add(int(number))
    return ordinals


def _find_image(path: Path, ordinal: int, compression: str) -> Path:
    expected = path / f"partition_{ordinal}{image_suffix(compression)}"
    if expected.exists():
        return expected
    for candidate in sorted(path.glob(f"partition_{ordinal}.img*")):
        return candidate
    return expected


def _load_record(path: Path, ordinal: int, compression: str) -> PartitionRecord:
    type_marker = _sidecar(path, ordinal, "type")
    if type_marker.exists() and type_marker.read_text(encoding="utf-8").strip() == "swap":
        return PartitionRecord(ordinal, FilesystemKind.SWAP, None, CodecKind.SKIP_SWAP)

    fstype_file = _sidecar(path, ordinal, "fstype")
    if not fstype_file.exists():
        raise BackupSetCorruptError(str(path), f"partition {ordinal} has no filesystem record")
    kind = FilesystemKind.from_probe(fstype_file.read_text(encoding="utf-8").strip())

    codec_file = _sidecar(path, ordinal, "codec")
    if codec_file.exists() and codec_file.read_text(encoding="utf-8").strip() == "dd":
        codec = CodecKind.RAW
    else:
        codec = select_codec(kind).kind

    image = _find_image(path, ordinal, compression)
    failed_file = _sidecar(path, ordinal, "failed")
    if failed_file.exists():
        error = failed_file.read_text(encoding="utf-8").strip() or "capture failed"
        return PartitionRecord(ordinal, kind, image, codec, failed=True, error=error)
    if not image.exists():
        raise BackupSetCorruptError(str(path), f"image for partition {ordinal} is missing")
    return PartitionRecord(ordinal, kind, image, codec)


def load_backup_set(path: Path) -> BackupSet:
    """Load a finalized backup set.

    Raises:
        BackupSetNotFoundError: Directory or metadata missing
        BackupSetCorruptError: Metadata incomplete or disagreeing with the
            artifacts present
    """
    path = Path(path)
    metadata_path = path / METADATA_FILE
    if not path.is_dir() or not metadata_path.is_file():
        raise BackupSetNotFoundError(str(path))

    metadata = read_metadata(metadata_path)
    missing = [key for key in REQUIRED_KEYS if key not in metadata]
    if missing:
        raise BackupSetCorruptError(str(path), f"metadata lacks {', '.join(missing)}")
    try:
        declared = int(metadata["PARTITION_COUNT"])
        declared_failed = int(metadata.get("FAILED_PARTITIONS", "0"))
        boot_mode = BootMode(metadata["BOOT_MODE"].upper())
        created_at = datetime.fromisoformat(metadata["BACKUP_DATE"])
    except ValueError as error:
        raise BackupSetCorruptError(str(path), f"invalid metadata: {error}") from error
    compression = metadata.get("COMPRESSION", "gzip")

    discovered = _discovered_ordinals(path)
    if discovered != set(range(1, declared + 1)):
        raise BackupSetCorruptError(
            str(path),
            f"declares {declared} partitions but artifacts exist for {sorted(discovered)}",
        )

    partitions = [_load_record(path, ordinal, compression) for ordinal in range(1, declared + 1)]
    failed = sum(1 for record in partitions if record.failed)
    if failed != declared_failed:
        raise BackupSetCorruptError(
            str(path), f"declares {declared_failed} failed partitions but {failed} are marked"
        )

    return BackupSet(
        source_disk_id=metadata["SOURCE_DISK"],
        created_at=created_at,
        path=path,
        boot_mode=boot_mode,
        partitions=partitions,
        failed_partition_count=failed,
        compression=compression,
        finalized=True,
    )


def list_backup_sets(backup_dir: Path) -> list[BackupSet]:
    """All loadable backup sets under ``backup_dir``, newest first."""
    if not backup_dir.is_dir():
        return []
    sets = []
    for entry in sorted(backup_dir.iterdir()):
        if not (entry / METADATA_FILE).is_file():
            continue
        try:
            sets.append(load_backup_set(entry))
        except BackupSetCorruptError as error:
            log.warning(str(error))
    sets.sort(key=lambda backup_set: backup_set.created_at, reverse=True)
    return sets


def resolve_backup_path(backup_dir: Path, name_or_path: str) -> Path:
    """Treat a bare name as relative to ``backup_dir``."""
    candidate = Path(name_or_path)
    if candidate.is_absolute() or candidate.exists():
        return candidate
    return backup_dir / name_or_path
