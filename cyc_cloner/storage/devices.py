"""Block device enumeration using lsblk.

Device Detection:
    Uses lsblk with JSON output (sizes in bytes) to enumerate whole disks and
    their partitions in kernel enumeration order, returned as typed
    ``BlockDevice``/``BlockPartition`` records. Partitions whose filesystem
    lsblk cannot report are probed again with blkid.

Hot-swap:
    ``DeviceEnumerator.rescan()`` asks every SCSI host to rescan, re-reads
    partition tables and waits for udev so freshly inserted target disks
    become visible before a restore starts.

Example:
    >>> enumerator = DeviceEnumerator(ToolRunner())
    >>> disk = enumerator.get_disk("sdb")
    >>> [p.name for p in disk.partitions]
    ['sdb1', 'sdb2']
"""

from __future__ import annotations

import dataclasses
import json
import os
from pathlib import Path
from typing import Optional

from cyc_cloner.domain.models import BlockDevice, BlockPartition, FilesystemKind
from cyc_cloner.logging import LoggerFactory

from .exceptions import DeviceNotFoundError, ToolInvocationError
from .tools import ToolRunner


log = LoggerFactory.for_system()

LSBLK_COLUMNS = "NAME,TYPE,SIZE,FSTYPE,PARTTYPE,PARTUUID,LABEL,MOUNTPOINT,MODEL,PTTYPE"
SCSI_HOST_ROOT = Path("/sys/class/scsi_host")
PROC_MOUNTS = Path("/proc/mounts")


def normalize_disk_id(device: str) -> str:
    """Accept ``/dev/sdb`` or ``sdb`` and return ``sdb``."""
    device = device.strip()
    if device.startswith("/dev/"):
        return device[len("/dev/"):]
    return device


def human_size(size_bytes):
    if size_bytes is None:
        return "0B"
    size = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024.0:
            return f"{size:.1f}{unit}"
        size /= 1024.0
    return f"{size:.1f}PB"


def is_mountpoint_active(mountpoint: str, proc_mounts: Path = PROC_MOUNTS) -> bool:
    try:
        with open(proc_mounts, "r", encoding="utf-8") as mounts_file:
            for line in mounts_file:
                parts = line.split()
                if len(parts) > 1 and parts[1] == mountpoint:
                    return True
    except FileNotFoundError:
        return os.path.ismount(mountpoint)
    return False


def list_active_mountpoints(proc_mounts: Path = PROC_MOUNTS) -> list[str]:
    """Mountpoints currently listed by the kernel, in mount order."""
    mountpoints: list[str] = []
    try:
        with open(proc_mounts, "r", encoding="utf-8") as mounts_file:
            for line in mounts_file:
                parts = line.split()
                if len(parts) > 1:
                    # /proc/mounts escapes spaces as \040
                    mountpoints.append(parts[1].replace("\\040", " "))
    except FileNotFoundError:
        return []
    return mountpoints


class DeviceEnumerator:
    """Structured view of the host's block devices."""

    def __init__(self, runner: ToolRunner, *, scsi_host_root: Path = SCSI_HOST_ROOT):
        self.runner = runner
        self.scsi_host_root = scsi_host_root

    def _lsblk(self) -> list[dict]:
        result = self.runner.run(["lsblk", "-J", "-b", "-o", LSBLK_COLUMNS])
        result.check()
        try:
            data = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as error:
            raise ToolInvocationError(result.command, 0, f"unparseable lsblk output: {error}") from error
        return data.get("blockdevices", [])

    def list_block_devices(self) -> list[BlockDevice]:
        """All whole disks, partitions in enumeration order."""
        return [
            BlockDevice.from_lsblk_dict(entry)
            for entry in self._lsblk()
            if entry.get("type") == "disk"
        ]

    def list_disks(self) -> list[BlockDevice]:
        return sorted(self.list_block_devices(), key=lambda disk: disk.name)

    def find_disk(self, device: str) -> Optional[BlockDevice]:
        disk_id = normalize_disk_id(device)
        for disk in self.list_block_devices():
            if disk.name == disk_id:
                return disk
        return None

    def get_disk(self, device: str, *, probe: bool = True) -> BlockDevice:
        """Look up one disk.

        With ``probe`` set, partitions lsblk reported without a filesystem
        are probed again with blkid.

        Raises:
            DeviceNotFoundError: No whole disk with that name exists
        """
        disk = self.find_disk(device)
        if disk is None:
            raise DeviceNotFoundError(normalize_disk_id(device))
        if not probe:
            return disk
        partitions = []
        for partition in disk.partitions:
            if partition.filesystem_kind is FilesystemKind.UNKNOWN and not partition.fstype:
                raw = self.probe_filesystem(partition.device_path)
                if raw:
                    partition = dataclasses.replace(
                        partition,
                        fstype=raw,
                        filesystem_kind=FilesystemKind.from_probe(raw),
                    )
            partitions.append(partition)
        return dataclasses.replace(disk, partitions=tuple(partitions))

    def probe_filesystem(self, node: str) -> Optional[str]:
        """Raw filesystem type from blkid, or None if undetectable."""
        result = self.runner.run(["blkid", "-o", "value", "-s", "TYPE", node])
        if not result.ok:
            return None
        value = result.stdout.strip()
        return value or None

    def disk_sectors(self, device: str) -> Optional[int]:
        """Disk size in 512-byte sectors."""
        node = f"/dev/{normalize_disk_id(device)}"
        result = self.runner.run(["blockdev", "--getsz", node])
        if not result.ok:
            return None
        try:
            return int(result.stdout.strip())
        except ValueError:
            return None

    def rescan(self) -> None:
        """Refresh device list so hot-swapped disks show up."""
        log.debug("Rescanning block devices")
        if self.scsi_host_root.is_dir():
            for host in sorted(self.scsi_host_root.iterdir()):
                scan = host / "scan"
                try:
                    scan.write_text("- - -", encoding="utf-8")
                except OSError as error:
                    log.debug(f"SCSI rescan of {host.name} skipped: {error}")
        self.runner.run(["partprobe"])
        self.runner.run(["udevadm", "trigger"])
        self.runner.run(["udevadm", "settle", "--timeout=10"])
