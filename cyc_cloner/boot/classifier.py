"""OS and boot-mode classification of a disk.

OS classification looks at every partition:

- an NTFS partition counts as Windows only if, mounted read-only, it holds a
  Windows system directory or a boot manager file. The first such
  partition wins. A partition that cannot be mounted is simply not a match.
- any Linux-native filesystem (ext2/3/4, xfs, btrfs) counts as Linux by its
  presence alone.

Both found gives MIXED, neither gives UNKNOWN.

Boot mode is a property of the running environment, not of the disk: UEFI
when the kernel exposes EFI firmware variables, BIOS otherwise.

Partition selection for bootloader repair deliberately uses different
rules: the Windows partition there is the *largest* NTFS partition, while
classification uses the *first* one carrying a Windows marker.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from cyc_cloner.domain.models import BlockDevice, BlockPartition, BootMode, FilesystemKind, OsType
from cyc_cloner.logging import LoggerFactory
from cyc_cloner.storage.exceptions import MountError
from cyc_cloner.storage.mount import Mounter


log = LoggerFactory.for_bootloader()

EFI_FIRMWARE_PATH = Path("/sys/firmware/efi")
EFI_PARTTYPE_GUID = "c12a7328-f81f-11d2-ba4b-00a0c93ec93b"
EFI_MBR_TYPES = ("0xef", "ef")
WINDOWS_MARKERS = ("Windows", "WINDOWS", "bootmgr", "BOOTMGR")


def detect_boot_mode(firmware_path: Path = EFI_FIRMWARE_PATH) -> BootMode:
    return BootMode.UEFI if firmware_path.exists() else BootMode.BIOS


def has_windows_marker(root: Path) -> bool:
    return any((root / marker).exists() for marker in WINDOWS_MARKERS)


def is_efi_partition(partition: BlockPartition) -> bool:
    parttype = (partition.parttype or "").lower()
    return parttype == EFI_PARTTYPE_GUID or parttype in EFI_MBR_TYPES


def find_efi_partition(disk: BlockDevice) -> Optional[BlockPartition]:
    """EFI system partition by type marker, else the first FAT partition."""
    for partition in disk.partitions:
        if is_efi_partition(partition):
            return partition
    for partition in disk.partitions:
        if partition.filesystem_kind.is_fat:
            return partition
    return None


def find_windows_partition(disk: BlockDevice) -> Optional[BlockPartition]:
    """Largest NTFS partition."""
    candidates = [p for p in disk.partitions if p.filesystem_kind is FilesystemKind.NTFS]
    if not candidates:
        return None
    return max(candidates, key=lambda p: p.size_bytes)


def find_linux_root_partition(disk: BlockDevice) -> Optional[BlockPartition]:
    """Largest partition with a Linux-native filesystem."""
    candidates = [p for p in disk.partitions if p.filesystem_kind.is_linux_native]
    if not candidates:
        return None
    return max(candidates, key=lambda p: p.size_bytes)


@dataclass(frozen=True)
class Classification:
    os_type: OsType
    windows_partition: Optional[BlockPartition] = None
    linux_partition: Optional[BlockPartition] = None


class OsClassifier:
    """Infers the OS layout of a disk, mounting NTFS candidates read-only."""

    def __init__(self, mounter: Mounter):
        self.mounter = mounter

    def windows_marker_present(self, partition: BlockPartition) -> bool:
        try:
            with self.mounter.mounted(
                partition.device_path, "probe", read_only=True
            ) as mountpoint:
                return has_windows_marker(mountpoint)
        except MountError as error:
            log.debug(f"{partition.name} not inspectable, treated as non-Windows: {error}")
            return False

    def first_windows_partition(self, disk: BlockDevice) -> Optional[BlockPartition]:
        for partition in disk.partitions:
            if partition.filesystem_kind is not FilesystemKind.NTFS:
                continue
            if self.windows_marker_present(partition):
                return partition
        return None

    def classify(self, disk: BlockDevice) -> Classification:
        windows = self.first_windows_partition(disk)
        linux = next(
            (p for p in disk.partitions if p.filesystem_kind.is_linux_native), None
        )
        if windows and linux:
            os_type = OsType.MIXED
        elif windows:
            os_type = OsType.WINDOWS
        elif linux:
            os_type = OsType.LINUX
        else:
            os_type = OsType.UNKNOWN
        log.info(
            f"{disk.name} classified as {os_type.value}"
            + (f" (Windows on {windows.name})" if windows else "")
            + (f" (Linux on {linux.name})" if linux else "")
        )
        return Classification(os_type, windows, linux)
