"""Partition table snapshot and restore.

Backup captures:
    - partition-table.sfdisk: legacy sfdisk dump (always attempted)
    - partition-table.sgdisk: sgdisk binary backup, GPT disks only
    - mbr-backup.bin: first 446 bytes of the disk (BIOS boot code)
    - disk-geometry.txt: parted output, diagnostic only

sgdisk --load-backup converts whatever it loads to GPT, so the structured
snapshot is only taken when the legacy dump reports a GPT label. An MBR
disk is therefore always restored from its sfdisk dump and keeps its
MBR layout.

Restore runs four steps: wipe (GPT headers at both ends of the disk),
load (structured snapshot, else legacy dump; fatal if neither loads),
randomize identifiers, then re-read and wait for the kernel to enumerate
the new partitions within a bounded time.
"""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from cyc_cloner.domain.models import BackupSet, BlockDevice
from cyc_cloner.logging import get_logger
from cyc_cloner.storage.devices import DeviceEnumerator
from cyc_cloner.storage.exceptions import DeviceNotFoundError, PartitionTableError
from cyc_cloner.storage.tools import ToolResult, ToolRunner


log = get_logger(source="partition-table")

SGDISK_FILE = "partition-table.sgdisk"
SFDISK_FILE = "partition-table.sfdisk"
BOOT_SECTOR_FILE = "mbr-backup.bin"
GEOMETRY_FILE = "disk-geometry.txt"

BOOT_CODE_BYTES = 446
WIPE_MIB = 10
SECTOR_SIZE = 512


@dataclass(frozen=True)
class TableSnapshot:
    label: Optional[str]  # "gpt", "dos" or None when unknown
    structured: Optional[Path] = None
    legacy: Optional[Path] = None
    boot_sector: Optional[Path] = None
    geometry: Optional[Path] = None

    @property
    def captured(self) -> bool:
        return self.structured is not None or self.legacy is not None


def parse_label(sfdisk_dump: str) -> Optional[str]:
    """Extract the ``label:`` value from an sfdisk dump."""
    for line in sfdisk_dump.splitlines():
        key, sep, value = line.partition(":")
        if sep and key.strip() == "label":
            return value.strip() or None
    return None


def snapshot_partition_table(
    runner: ToolRunner, disk_node: str, directory: Path
) -> TableSnapshot:
    """Save the disk's partition table and boot code into ``directory``.

    Raises:
        PartitionTableError: Neither table format could be saved
    """
    legacy: Optional[Path] = None
    structured: Optional[Path] = None
    boot_sector: Optional[Path] = None
    geometry: Optional[Path] = None

    dump = runner.run(["sfdisk", "-d", disk_node])
    label = None
    if dump.ok and dump.stdout.strip():
        legacy = directory / SFDISK_FILE
        legacy.write_text(dump.stdout, encoding="utf-8")
        label = parse_label(dump.stdout)
        log.debug(f"Saved sfdisk dump of {disk_node} (label {label})")
    else:
        log.warning(f"sfdisk dump of {disk_node} failed: {dump.diagnostic}")

    if label in (None, "gpt"):
        target = directory / SGDISK_FILE
        result = runner.run(["sgdisk", f"--backup={target}", disk_node])
        if result.ok and target.exists() and target.stat().st_size > 0:
            structured = target
            label = label or "gpt"
            log.debug(f"Saved sgdisk backup of {disk_node}")
        else:
            log.warning(f"sgdisk backup of {disk_node} failed: {result.diagnostic}")
            target.unlink(missing_ok=True)

    target = directory / BOOT_SECTOR_FILE
    result = runner.run(
        ["dd", f"if={disk_node}", f"of={target}", f"bs={BOOT_CODE_BYTES}", "count=1", "status=none"]
    )
    if result.ok:
        boot_sector = target
    else:
        log.warning(f"Boot sector backup of {disk_node} failed: {result.diagnostic}")

    result = runner.run(["parted", "-s", disk_node, "unit", "s", "print"])
    if result.ok:
        geometry = directory / GEOMETRY_FILE
        geometry.write_text(result.stdout, encoding="utf-8")

    snapshot = TableSnapshot(label, structured, legacy, boot_sector, geometry)
    if not snapshot.captured:
        raise PartitionTableError(
            ["sgdisk", "sfdisk"], 1, f"no partition table of {disk_node} could be saved"
        )
    return snapshot


def wipe_partition_table(
    runner: ToolRunner, disk_node: str, disk_sectors: Optional[int]
) -> None:
    """Destroy the existing table, including the GPT backup header at the end.

    Raises:
        PartitionTableError: The start of the disk could not be zeroed
    """
    zap = runner.run(["sgdisk", "--zap-all", disk_node])
    if not zap.ok:
        log.debug(f"sgdisk --zap-all on {disk_node}: {zap.diagnostic}")

    runner.run_checked(
        ["dd", "if=/dev/zero", f"of={disk_node}", "bs=1M", f"count={WIPE_MIB}", "conv=fsync", "status=none"],
        error_cls=PartitionTableError,
    )

    wipe_sectors = WIPE_MIB * 1024 * 1024 // SECTOR_SIZE
    if disk_sectors and disk_sectors > wipe_sectors:
        tail = runner.run(
            [
                "dd",
                "if=/dev/zero",
                f"of={disk_node}",
                f"bs={SECTOR_SIZE}",
                f"seek={disk_sectors - wipe_sectors}",
                f"count={wipe_sectors}",
                "conv=fsync",
                "status=none",
            ]
        )
        if not tail.ok:
            log.warning(f"Could not zero the end of {disk_node}: {tail.diagnostic}")
    else:
        log.warning(f"Size of {disk_node} unknown, backup GPT header left in place")


def load_partition_table(
    runner: ToolRunner, disk_node: str, backup_set: BackupSet
) -> str:
    """Write the saved table onto ``disk_node``.

    Returns:
        The label type written ("gpt" or "dos")

    Raises:
        PartitionTableError: Neither snapshot could be loaded
    """
    failures: list[str] = []
    if backup_set.sgdisk_table_path.exists():
        result = runner.run(
            ["sgdisk", f"--load-backup={backup_set.sgdisk_table_path}", disk_node]
        )
        if result.ok:
            log.info(f"Loaded GPT table onto {disk_node}")
            return "gpt"
        failures.append(f"sgdisk: {result.diagnostic}")
        log.warning(f"sgdisk load onto {disk_node} failed, trying sfdisk: {result.diagnostic}")

    if backup_set.sfdisk_table_path.exists():
        dump = backup_set.sfdisk_table_path.read_text(encoding="utf-8")
        result = runner.run(["sfdisk", "--force", disk_node], input_text=dump)
        if result.ok:
            label = parse_label(dump) or "dos"
            log.info(f"Loaded {label} table onto {disk_node} from sfdisk dump")
            return label
        failures.append(f"sfdisk: {result.diagnostic}")

    if not failures:
        failures.append("no partition table snapshot in backup set")
    raise PartitionTableError(["sgdisk", "sfdisk"], 1, "; ".join(failures))


def randomize_identifiers(runner: ToolRunner, disk_node: str, label: str) -> None:
    """Give the clone fresh disk and partition identifiers."""
    if label == "gpt":
        result = runner.run(["sgdisk", "-G", disk_node])
    else:
        disk_id = f"0x{secrets.randbits(32) | 1:08x}"
        result = runner.run(["sfdisk", "--disk-id", disk_node, disk_id])
    if result.ok:
        log.debug(f"Randomized identifiers on {disk_node}")
    else:
        log.warning(f"Could not randomize identifiers on {disk_node}: {result.diagnostic}")


def reread_partition_table(runner: ToolRunner, disk_node: str) -> None:
    """Force kernel to re-read partition table."""
    result = runner.run(["partprobe", disk_node])
    if not result.ok:
        runner.run(["blockdev", "--rereadpt", disk_node])
    runner.run(["udevadm", "settle", "--timeout=10"])


def wait_for_partitions(
    enumerator: DeviceEnumerator,
    disk_id: str,
    expected: int,
    *,
    timeout_seconds: float,
    poll_interval: float = 0.5,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> BlockDevice:
    """Wait until ``disk_id`` shows ``expected`` partitions.

    Gives up at the deadline and returns whatever was enumerated last; the
    caller treats missing ordinals as failed partitions.

    Raises:
        DeviceNotFoundError: The disk vanished during the wait
    """
    deadline = clock() + timeout_seconds
    last: Optional[BlockDevice] = None
    while True:
        last = enumerator.find_disk(disk_id)
        if last is not None and len(last.partitions) >= expected:
            return last
        if clock() >= deadline:
            break
        log.trace(f"Waiting for partitions on {disk_id}")
        sleep(poll_interval)
    if last is None:
        raise DeviceNotFoundError(disk_id)
    log.warning(
        f"Partition table applied but only {len(last.partitions)} of {expected} "
        f"partitions appeared on {disk_id}"
    )
    return last


def write_boot_code(runner: ToolRunner, disk_node: str, boot_sector: Path) -> ToolResult:
    """Write saved BIOS boot code back without touching the partition entries."""
    return runner.run(
        [
            "dd",
            f"if={boot_sector}",
            f"of={disk_node}",
            f"bs={BOOT_CODE_BYTES}",
            "count=1",
            "conv=notrunc,fsync",
            "status=none",
        ]
    )


def restore_partition_table(
    runner: ToolRunner,
    enumerator: DeviceEnumerator,
    backup_set: BackupSet,
    disk_id: str,
    *,
    settle_timeout: float,
    sleep: Callable[[float], None] = time.sleep,
) -> BlockDevice:
    """Wipe, load, re-identify and re-enumerate the target's table.

    Returns:
        The target disk as enumerated after the new table settled

    Raises:
        PartitionTableError: Wipe or load failed
    """
    disk_node = f"/dev/{disk_id}"
    log.info(f"Wiping partition table on {disk_node}")
    wipe_partition_table(runner, disk_node, enumerator.disk_sectors(disk_id))
    reread_partition_table(runner, disk_node)

    label = load_partition_table(runner, disk_node, backup_set)
    randomize_identifiers(runner, disk_node, label)
    reread_partition_table(runner, disk_node)
    return wait_for_partitions(
        enumerator,
        disk_id,
        backup_set.partition_count,
        timeout_seconds=settle_timeout,
        sleep=sleep,
    )
