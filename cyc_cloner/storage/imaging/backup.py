"""Partition-level backup of a whole disk."""

from __future__ import annotations

import shutil
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from cyc_cloner.app.context import RunContext
from cyc_cloner.boot.classifier import detect_boot_mode
from cyc_cloner.domain.models import BackupSet, BlockPartition, CodecKind, FilesystemKind
from cyc_cloner.logging import EventLogger, get_logger, operation_context
from cyc_cloner.storage.devices import DeviceEnumerator
from cyc_cloner.storage.exceptions import IntegrityError, PartitionTableError
from cyc_cloner.storage.mount import Mounter

from .catalog import CodecResult, append_partition, create_backup_set, finalize_backup_set, image_path_for
from .codecs import capture_command, resolve_capture_codec, select_codec
from .compression import compress_command
from .partition_table import snapshot_partition_table
from .verification import verify_image_file


log = get_logger(source="backup")


@dataclass
class BackupResult:
    """Result of a backup operation."""

    backup_set: BackupSet
    elapsed_seconds: float
    failed_ordinals: list[int] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed_ordinals


def capture_partition(
    context: RunContext, backup_set: BackupSet, ordinal: int, partition: BlockPartition
) -> CodecResult:
    """Image one partition into the set and verify the artifact."""
    runner = context.runner
    if partition.filesystem_kind is FilesystemKind.SWAP:
        return CodecResult(CodecKind.SKIP_SWAP)

    selection = resolve_capture_codec(partition.filesystem_kind, runner)
    image = image_path_for(backup_set, ordinal)
    stages = [capture_command(selection, partition.device_path)]
    compressor = compress_command(runner, backup_set.compression)
    if compressor:
        stages.append(compressor)

    log.info(
        f"Capturing {partition.name} ({partition.filesystem_kind.value}) "
        f"with {selection.tool} to {image.name}"
    )
    result = runner.pipeline(stages, stdout_path=image)
    if not result.ok:
        return CodecResult(selection.kind, False, image, result.diagnostic)
    try:
        verify_image_file(runner, image, timeout=context.timeout_seconds)
    except IntegrityError as error:
        return CodecResult(selection.kind, False, image, error.reason)
    return CodecResult(selection.kind, True, image)


def create_backup(
    context: RunContext,
    source_disk: str,
    *,
    enumerator: Optional[DeviceEnumerator] = None,
    mounter: Optional[Mounter] = None,
    now: Optional[datetime] = None,
) -> BackupResult:
    """Back up every partition of ``source_disk`` into a new backup set.

    A single partition failing is recorded in the set and does not stop the
    backup. Failing to save the partition table in any format aborts and
    removes the partial set.

    Raises:
        DeviceNotFoundError: ``source_disk`` does not exist
        PartitionTableError: No partition table snapshot could be taken
    """
    enumerator = enumerator or DeviceEnumerator(context.runner)
    mounter = mounter or Mounter(
        context.runner, context.mount_root, timeout=context.mount_timeout_seconds
    )
    start = time.monotonic()
    with operation_context("backup", disk=source_disk) as op_log:
        disk = enumerator.get_disk(source_disk)
        boot_mode = detect_boot_mode(context.firmware_path)
        backup_set = create_backup_set(
            context.backup_dir,
            disk.name,
            boot_mode,
            compression=context.compression,
            now=now,
        )
        try:
            snapshot_partition_table(context.runner, disk.device_path, backup_set.path)
        except PartitionTableError:
            cleanup_partial_backup(backup_set.path)
            raise

        failed: list[int] = []
        for ordinal, partition in enumerate(disk.partitions, start=1):
            if partition.is_mounted and partition.filesystem_kind is not FilesystemKind.SWAP:
                remaining = mounter.unmount_device_mounts([partition.mountpoint])
                if remaining:
                    result = CodecResult(
                        select_codec(partition.filesystem_kind).kind,
                        False,
                        None,
                        f"{partition.name} is still mounted at {partition.mountpoint}",
                    )
                    record = append_partition(backup_set, ordinal, partition.filesystem_kind, result)
                    failed.append(ordinal)
                    EventLogger.log_partition_result(op_log, ordinal, partition.name, False, record.error or "")
                    continue
            result = capture_partition(context, backup_set, ordinal, partition)
            record = append_partition(backup_set, ordinal, partition.filesystem_kind, result)
            if record.failed:
                failed.append(ordinal)
            EventLogger.log_partition_result(
                op_log, ordinal, partition.name, not record.failed, record.error or ""
            )

        finalize_backup_set(backup_set)
        enumerator.rescan()
        return BackupResult(backup_set, round(time.monotonic() - start, 2), failed)


def cleanup_partial_backup(image_dir: Path) -> None:
    """Remove a partial/failed backup directory.

    Args:
        image_dir: Backup set directory to remove
    """
    if image_dir.exists() and image_dir.is_dir():
        try:
            shutil.rmtree(image_dir)
            log.info(f"Cleaned up partial backup: {image_dir}")
        except OSError as e:
            log.error(f"Failed to clean up partial backup {image_dir}: {e}")
