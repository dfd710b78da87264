"""Domain models for backup and restore operations.

This package contains type-safe domain objects for backup sets, enumerated
block devices and restore jobs.
"""

from __future__ import annotations

from .models import (
    BackupSet,
    BlockDevice,
    BlockPartition,
    BootMode,
    CodecKind,
    DiskTarget,
    FilesystemKind,
    InvalidTransitionError,
    JobState,
    OsType,
    PartitionRecord,
    RestoreJob,
)


__all__ = [
    "BackupSet",
    "BlockDevice",
    "BlockPartition",
    "BootMode",
    "CodecKind",
    "DiskTarget",
    "FilesystemKind",
    "InvalidTransitionError",
    "JobState",
    "OsType",
    "PartitionRecord",
    "RestoreJob",
]
