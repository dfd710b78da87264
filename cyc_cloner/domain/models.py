"""Domain model for partition-level backup and restore.

Type-safe objects for backup sets, block devices read from lsblk and
in-flight restore jobs, replacing dicts and parsed tool output.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional


# ==============================================================================
# Enumerations
# ==============================================================================


class FilesystemKind(Enum):
    """Filesystem detected on a partition."""

    EXT2 = "ext2"
    EXT3 = "ext3"
    EXT4 = "ext4"
    NTFS = "ntfs"
    VFAT = "vfat"
    FAT16 = "fat16"
    FAT32 = "fat32"
    SWAP = "swap"
    XFS = "xfs"
    BTRFS = "btrfs"
    UNKNOWN = "unknown"

    @classmethod
    def from_probe(cls, raw: Optional[str]) -> FilesystemKind:
        """Map a raw lsblk/blkid FSTYPE string to a kind.

        Anything unrecognised (including an empty probe) is UNKNOWN.
        """
        if not raw:
            return cls.UNKNOWN
        value = raw.strip().lower()
        aliases = {
            "linux-swap": cls.SWAP,
            "swsuspend": cls.SWAP,
            "fat": cls.VFAT,
            "msdos": cls.VFAT,
            "ntfs-3g": cls.NTFS,
        }
        if value in aliases:
            return aliases[value]
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_ext(self) -> bool:
        return self in (FilesystemKind.EXT2, FilesystemKind.EXT3, FilesystemKind.EXT4)

    @property
    def is_fat(self) -> bool:
        return self in (FilesystemKind.VFAT, FilesystemKind.FAT16, FilesystemKind.FAT32)

    @property
    def is_linux_native(self) -> bool:
        return self.is_ext or self in (FilesystemKind.XFS, FilesystemKind.BTRFS)


class BootMode(Enum):
    """Firmware interface of the running environment."""

    BIOS = "BIOS"
    UEFI = "UEFI"


class OsType(Enum):
    """Operating systems found on a disk."""

    WINDOWS = "WINDOWS"
    LINUX = "LINUX"
    MIXED = "MIXED"
    UNKNOWN = "UNKNOWN"


class CodecKind(Enum):
    """How a partition's content is captured and restored."""

    BLOCK_COPIER = "partclone"  # filesystem-aware, used blocks only
    RAW = "dd"  # full partition sector copy
    SKIP_SWAP = "swap"  # no data, re-initialised on restore


class JobState(Enum):
    """State of a single-disk restore job."""

    PENDING = "pending"
    RESTORING_TABLE = "restoring_table"
    RESTORING_PARTITIONS = "restoring_partitions"
    INSTALLING_BOOTLOADER = "installing_bootloader"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED)


_ALLOWED_TRANSITIONS: dict[JobState, tuple[JobState, ...]] = {
    JobState.PENDING: (JobState.RESTORING_TABLE, JobState.FAILED),
    JobState.RESTORING_TABLE: (JobState.RESTORING_PARTITIONS, JobState.FAILED),
    JobState.RESTORING_PARTITIONS: (JobState.INSTALLING_BOOTLOADER, JobState.FAILED),
    JobState.INSTALLING_BOOTLOADER: (JobState.SUCCEEDED, JobState.FAILED),
    JobState.SUCCEEDED: (),
    JobState.FAILED: (),
}


# ==============================================================================
# Backup Set Domain
# ==============================================================================


@dataclass(frozen=True)
class PartitionRecord:
    """One partition within a backup set.

    Swap partitions carry no image; every other kind references the image
    file it was (or was meant to be) captured into. A failed capture keeps
    its ordinal so restore indexing stays aligned.
    """

    ordinal: int
    filesystem_kind: FilesystemKind
    image_path: Optional[Path] = None
    codec: CodecKind = CodecKind.BLOCK_COPIER
    failed: bool = False
    error: Optional[str] = None

    def __post_init__(self) -> None:
        if self.ordinal < 1:
            raise ValueError(f"Partition ordinal must start at 1, got {self.ordinal}")
        if self.is_swap and self.image_path is not None:
            raise ValueError(f"Swap partition {self.ordinal} must not have an image")
        if not self.is_swap and self.image_path is None:
            raise ValueError(f"Partition {self.ordinal} requires an image path")

    @property
    def is_swap(self) -> bool:
        return self.filesystem_kind is FilesystemKind.SWAP


@dataclass
class BackupSet:
    """One backup of one source disk, stored as a directory."""

    source_disk_id: str
    created_at: datetime
    path: Path
    boot_mode: BootMode
    partitions: list[PartitionRecord] = field(default_factory=list)
    failed_partition_count: int = 0
    compression: str = "gzip"
    finalized: bool = False

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def partition_count(self) -> int:
        return len(self.partitions)

    @property
    def is_restore_eligible(self) -> bool:
        """True when every partition was captured without failure."""
        return self.finalized and self.failed_partition_count == 0

    @property
    def sgdisk_table_path(self) -> Path:
        return self.path / "partition-table.sgdisk"

    @property
    def sfdisk_table_path(self) -> Path:
        return self.path / "partition-table.sfdisk"

    @property
    def boot_sector_path(self) -> Path:
        return self.path / "mbr-backup.bin"

    @property
    def metadata_path(self) -> Path:
        return self.path / "metadata.txt"

    def get_partition(self, ordinal: int) -> PartitionRecord:
        for record in self.partitions:
            if record.ordinal == ordinal:
                return record
        raise KeyError(ordinal)


# ==============================================================================
# Block Device Domain
# ==============================================================================

_PARTITION_NUMBER_RE = re.compile(r"(\d+)$")


@dataclass(frozen=True)
class BlockPartition:
    """A partition as enumerated by lsblk."""

    name: str  # e.g., "sdb1" or "nvme0n1p1"
    size_bytes: int
    filesystem_kind: FilesystemKind = FilesystemKind.UNKNOWN
    fstype: Optional[str] = None  # raw probe string
    parttype: Optional[str] = None  # GPT type GUID or MBR type code
    partuuid: Optional[str] = None
    label: Optional[str] = None
    mountpoint: Optional[str] = None

    @property
    def device_path(self) -> str:
        return f"/dev/{self.name}"

    @property
    def is_mounted(self) -> bool:
        return bool(self.mountpoint)

    @property
    def number(self) -> Optional[int]:
        """Kernel partition number (sdb2 -> 2, nvme0n1p3 -> 3)."""
        match = _PARTITION_NUMBER_RE.search(self.name)
        return int(match.group(1)) if match else None

    @classmethod
    def from_lsblk_dict(cls, data: dict[str, Any]) -> BlockPartition:
        fstype = data.get("fstype")
        mountpoint = data.get("mountpoint")
        if not mountpoint:
            points = [p for p in data.get("mountpoints") or [] if p]
            mountpoint = points[0] if points else None
        return cls(
            name=data["name"],
            size_bytes=int(data.get("size") or 0),
            filesystem_kind=FilesystemKind.from_probe(fstype),
            fstype=fstype,
            parttype=(data.get("parttype") or None),
            partuuid=(data.get("partuuid") or None),
            label=(data.get("label") or None),
            mountpoint=mountpoint,
        )


@dataclass(frozen=True)
class BlockDevice:
    """A whole disk and its partitions in enumeration order."""

    name: str  # e.g., "sdb"
    size_bytes: int
    partitions: tuple[BlockPartition, ...] = ()
    model: Optional[str] = None
    mountpoint: Optional[str] = None
    pttype: Optional[str] = None  # "gpt" or "dos"

    @property
    def device_path(self) -> str:
        return f"/dev/{self.name}"

    @property
    def is_mounted(self) -> bool:
        return bool(self.mountpoint) or any(p.is_mounted for p in self.partitions)

    @property
    def mounted_partitions(self) -> list[BlockPartition]:
        return [p for p in self.partitions if p.is_mounted]

    def partition_for_ordinal(self, ordinal: int) -> Optional[BlockPartition]:
        """The Nth enumerated partition, 1-based."""
        if 1 <= ordinal <= len(self.partitions):
            return self.partitions[ordinal - 1]
        return None

    @classmethod
    def from_lsblk_dict(cls, data: dict[str, Any]) -> BlockDevice:
        children = [
            BlockPartition.from_lsblk_dict(child)
            for child in data.get("children") or []
            if child.get("type", "part") == "part"
        ]
        model = data.get("model")
        return cls(
            name=data["name"],
            size_bytes=int(data.get("size") or 0),
            partitions=tuple(children),
            model=model.strip() if model else None,
            mountpoint=data.get("mountpoint") or None,
            pttype=data.get("pttype") or None,
        )


@dataclass(frozen=True)
class DiskTarget:
    """A destination disk for one restore."""

    disk_id: str
    currently_mounted: bool = False
    detected_os_type: Optional[OsType] = None

    @property
    def device_path(self) -> str:
        return f"/dev/{self.disk_id}"

    @classmethod
    def from_block_device(cls, device: BlockDevice) -> DiskTarget:
        return cls(disk_id=device.name, currently_mounted=device.is_mounted)


# ==============================================================================
# Restore Job Domain
# ==============================================================================


class InvalidTransitionError(ValueError):
    """A restore job was moved to a state it cannot reach."""


@dataclass
class RestoreJob:
    """One in-flight restore of a backup set onto one disk."""

    backup_set: BackupSet
    target: DiskTarget
    state: JobState = JobState.PENDING
    partition_failures: int = 0
    restored_ordinals: list[int] = field(default_factory=list)
    failed_ordinals: list[int] = field(default_factory=list)
    os_type: Optional[OsType] = None
    boot_mode: Optional[BootMode] = None
    bootloader_actions: list[str] = field(default_factory=list)
    bootloader_warnings: list[str] = field(default_factory=list)
    error: Optional[str] = None
    job_id: str = field(default_factory=lambda: f"restore-{uuid.uuid4().hex[:8]}")

    @property
    def succeeded(self) -> bool:
        return self.state is JobState.SUCCEEDED

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def transition(self, new_state: JobState) -> None:
        if new_state not in _ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Cannot move restore job from {self.state.value} to {new_state.value}"
            )
        self.state = new_state

    def record_partition(self, ordinal: int, ok: bool) -> None:
        if ok:
            self.restored_ordinals.append(ordinal)
        else:
            self.failed_ordinals.append(ordinal)
            self.partition_failures += 1

    def fail(self, error: str) -> None:
        """Move to FAILED from any non-terminal state."""
        if self.is_terminal:
            return
        self.error = error
        self.transition(JobState.FAILED)
