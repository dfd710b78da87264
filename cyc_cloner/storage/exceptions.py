"""Custom exceptions for backup and restore operations.

This module defines a hierarchy of exceptions so callers can decide, by type,
whether a failure aborts a job before anything destructive happens, is
recorded against a single partition, or is downgraded to a warning.

Exception Hierarchy:
    StorageError (base)
        ├── ValidationError
        │   ├── DeviceNotFoundError
        │   ├── DeviceBusyError
        │   ├── DeviceClaimedError
        │   ├── DuplicateTargetError
        │   ├── BackupSetNotFoundError
        │   └── BackupSetCorruptError
        ├── ToolInvocationError
        │   ├── IntegrityError
        │   ├── PartitionTableError
        │   └── BootloaderError
        ├── MountError
        │   └── UnmountFailedError
        └── PartialFailureError

Usage:
    from cyc_cloner.storage.exceptions import DeviceBusyError

    if disk.is_mounted:
        raise DeviceBusyError(disk.name, "partition sdb1 is mounted")
"""

from __future__ import annotations

from typing import Sequence


class StorageError(Exception):
    """Base exception for all storage operations."""


class ValidationError(StorageError):
    """Preconditions failed; raised before any destructive step."""


class DeviceNotFoundError(ValidationError):
    """Device was not found or does not exist."""

    def __init__(self, device_name: str):
        self.device_name = device_name
        super().__init__(f"Device not found: {device_name}")


class DeviceBusyError(ValidationError):
    """Device is currently in use or mounted."""

    def __init__(self, device_name: str, reason: str = ""):
        self.device_name = device_name
        self.reason = reason
        msg = f"Device {device_name} is busy"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class DeviceClaimedError(ValidationError):
    """Device is already owned by another running pipeline."""

    def __init__(self, device_name: str, owner: str):
        self.device_name = device_name
        self.owner = owner
        super().__init__(f"Device {device_name} is already claimed by {owner}")


class DuplicateTargetError(ValidationError):
    """The same disk was requested more than once as a restore target."""

    def __init__(self, device_names: Sequence[str]):
        self.device_names = list(device_names)
        super().__init__(
            "Restore targets must be distinct, duplicated: "
            + ", ".join(self.device_names)
        )


class BackupSetNotFoundError(ValidationError):
    """Backup set directory or its metadata record is missing."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Backup set not found: {path}")


class BackupSetCorruptError(ValidationError):
    """Backup set metadata disagrees with the artifacts on disk."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Backup set {path} is corrupt: {reason}")


class ToolInvocationError(StorageError):
    """An external collaborator reported failure."""

    def __init__(self, command: Sequence[str], returncode: int, diagnostic: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.diagnostic = diagnostic
        name = self.command[0] if self.command else "<none>"
        msg = f"{name} failed with exit code {returncode}"
        if diagnostic:
            msg += f": {diagnostic}"
        super().__init__(msg)


class IntegrityError(ToolInvocationError):
    """A stored image is missing, empty or does not decode."""

    def __init__(self, path: str, reason: str, command: Sequence[str] = (), returncode: int = 1):
        self.path = path
        self.reason = reason
        super().__init__(command or ["verify", path], returncode, f"{path}: {reason}")


class PartitionTableError(ToolInvocationError):
    """Partition table could not be restored in any supported format."""


class BootloaderError(ToolInvocationError):
    """A bootloader repair step failed."""


class MountError(StorageError):
    """Base exception for mount-related errors."""

    def __init__(self, device: str, mountpoint: str, reason: str = ""):
        self.device = device
        self.mountpoint = mountpoint
        self.reason = reason
        msg = f"Failed to mount {device} at {mountpoint}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class UnmountFailedError(MountError):
    """Failed to detach a mountpoint, even lazily."""

    def __init__(self, mountpoint: str, reason: str = ""):
        self.device = ""
        self.mountpoint = mountpoint
        self.reason = reason
        msg = f"Failed to unmount {mountpoint}"
        if reason:
            msg += f": {reason}"
        StorageError.__init__(self, msg)


class PartialFailureError(StorageError):
    """At least one partition of a job failed."""

    def __init__(self, device_name: str, failed: int, total: int):
        self.device_name = device_name
        self.failed = failed
        self.total = total
        super().__init__(
            f"{failed} of {total} partitions failed on {device_name}"
        )
