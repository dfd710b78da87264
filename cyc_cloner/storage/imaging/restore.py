"""Single-disk restore pipeline.

Strict order for one target disk:

1. validate: target exists and nothing on it is mounted, backup set is
   finalized and carries a partition table snapshot, disk is not claimed by
   another pipeline. Nothing destructive has happened yet.
2. restore the partition table. Failure here fails the job.
3. restore every partition in ordinal order onto the Nth enumerated target
   partition. A failing partition is counted and the loop carries on.
4. any partition failure fails the job and bootloader installation is
   skipped; partitions already written are left in place.
5. otherwise classify the restored disk and run the bootloader installer.
   Its warnings never fail the job.

Cancellation is honoured between steps and between partitions, never in
the middle of a write.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Optional

from cyc_cloner.app.context import RunContext
from cyc_cloner.boot.bootloader import BootloaderInstaller
from cyc_cloner.boot.classifier import OsClassifier, detect_boot_mode
from cyc_cloner.domain.models import (
    BackupSet,
    BlockPartition,
    BootMode,
    DiskTarget,
    JobState,
    PartitionRecord,
    RestoreJob,
)
from cyc_cloner.logging import EventLogger, LoggerFactory
from cyc_cloner.storage.device_lock import DeviceClaimRegistry, get_registry
from cyc_cloner.storage.devices import DeviceEnumerator, normalize_disk_id
from cyc_cloner.storage.exceptions import (
    BackupSetCorruptError,
    DeviceBusyError,
    IntegrityError,
    PartialFailureError,
    StorageError,
)
from cyc_cloner.storage.mount import Mounter

from .codecs import codec_for_record, restore_command, swap_command
from .compression import decompress_command
from .partition_table import restore_partition_table
from .verification import verify_image_file


CANCELLED = "cancelled by operator"


class RestoreCancelled(Exception):
    """Raised inside the pipeline when a cancel request is seen between steps."""


class RestorePipeline:
    """Restores one backup set onto one disk."""

    def __init__(
        self,
        context: RunContext,
        *,
        enumerator: Optional[DeviceEnumerator] = None,
        mounter: Optional[Mounter] = None,
        installer: Optional[BootloaderInstaller] = None,
        classifier: Optional[OsClassifier] = None,
        claims: Optional[DeviceClaimRegistry] = None,
        cancel_event: Optional[threading.Event] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.context = context
        self.runner = context.runner
        self.enumerator = enumerator or DeviceEnumerator(self.runner)
        self.mounter = mounter or Mounter(
            self.runner, context.mount_root, timeout=context.mount_timeout_seconds
        )
        self.installer = installer or BootloaderInstaller(
            self.runner, self.mounter, firmware_path=context.firmware_path
        )
        self.classifier = classifier or OsClassifier(self.mounter)
        self.claims = claims or get_registry()
        self.cancel_event = cancel_event or threading.Event()
        self.sleep = sleep

    def run(
        self,
        backup_set: BackupSet,
        target_disk_id: str,
        *,
        boot_mode: Optional[BootMode] = None,
    ) -> RestoreJob:
        """Run the whole pipeline; always returns a job in a terminal state."""
        disk_id = normalize_disk_id(target_disk_id)
        job = RestoreJob(backup_set, DiskTarget(disk_id))
        log = LoggerFactory.for_restore(disk_id, job_id=job.job_id)
        EventLogger.log_restore_started(log, backup_set.name, disk_id, backup_set.partition_count)
        try:
            with self.claims.claim(disk_id, job.job_id):
                self._run(job, log, boot_mode)
        except RestoreCancelled:
            log.warning(f"Restore onto {disk_id} cancelled in state {job.state.value}")
            job.fail(CANCELLED)
        except StorageError as error:
            log.error(f"Restore onto {disk_id} failed: {error}")
            job.fail(str(error))
        EventLogger.log_job_finished(log, disk_id, job.state.value, job.partition_failures)
        return job

    def _checkpoint(self) -> None:
        if self.cancel_event.is_set():
            raise RestoreCancelled()

    def validate(self, backup_set: BackupSet, disk_id: str) -> DiskTarget:
        """Preconditions checked before anything is written.

        Raises:
            DeviceNotFoundError: Target disk missing
            DeviceBusyError: Target or one of its partitions is mounted
            BackupSetCorruptError: Set not finalized or without a table snapshot
        """
        disk = self.enumerator.get_disk(disk_id, probe=False)
        if disk.is_mounted:
            mounted = ", ".join(
                f"{p.name} on {p.mountpoint}" for p in disk.mounted_partitions
            ) or f"{disk.name} on {disk.mountpoint}"
            raise DeviceBusyError(disk_id, f"mounted: {mounted}")
        if not backup_set.finalized:
            raise BackupSetCorruptError(str(backup_set.path), "backup set was never finalized")
        if not (backup_set.sgdisk_table_path.exists() or backup_set.sfdisk_table_path.exists()):
            raise BackupSetCorruptError(str(backup_set.path), "no partition table snapshot")
        return DiskTarget.from_block_device(disk)

    def _run(self, job: RestoreJob, log, boot_mode: Optional[BootMode]) -> None:
        backup_set = job.backup_set
        disk_id = job.target.disk_id
        job.target = self.validate(backup_set, disk_id)
        if backup_set.failed_partition_count:
            log.warning(
                f"Backup set {backup_set.name} has {backup_set.failed_partition_count} "
                "failed partitions; this restore cannot succeed fully"
            )
        self._checkpoint()

        job.transition(JobState.RESTORING_TABLE)
        log.info(f"Restoring partition table onto {disk_id}")
        disk = restore_partition_table(
            self.runner,
            self.enumerator,
            backup_set,
            disk_id,
            settle_timeout=self.context.settle_timeout_seconds,
            sleep=self.sleep,
        )
        self._checkpoint()

        job.transition(JobState.RESTORING_PARTITIONS)
        for record in backup_set.partitions:
            self._checkpoint()
            target = disk.partition_for_ordinal(record.ordinal)
            ok, detail = self.restore_partition(record, target)
            job.record_partition(record.ordinal, ok)
            EventLogger.log_partition_result(
                log, record.ordinal, target.name if target else "-", ok, detail
            )

        if job.partition_failures:
            error = PartialFailureError(disk_id, job.partition_failures, backup_set.partition_count)
            log.error(f"{error}; bootloader installation skipped")
            job.fail(str(error))
            return

        self._checkpoint()
        job.transition(JobState.INSTALLING_BOOTLOADER)
        self._install_bootloader(job, log, boot_mode)
        job.transition(JobState.SUCCEEDED)

    def restore_partition(
        self, record: PartitionRecord, target: Optional[BlockPartition]
    ) -> tuple[bool, str]:
        """Write one stored partition onto ``target``.

        Returns:
            (ok, diagnostic)
        """
        if target is None:
            return False, f"partition {record.ordinal} did not appear on the target"
        if record.failed:
            return False, f"partition {record.ordinal} was not captured: {record.error}"
        node = target.device_path
        if record.is_swap:
            result = self.runner.run(swap_command(node))
            return result.ok, "" if result.ok else result.diagnostic

        try:
            verify_image_file(self.runner, record.image_path, timeout=self.context.timeout_seconds)
        except IntegrityError as error:
            return False, error.reason

        selection = codec_for_record(record.filesystem_kind, record.codec)
        writer = restore_command(selection, node)
        decoder = decompress_command(self.runner, record.image_path)
        if decoder:
            result = self.runner.pipeline([decoder, writer])
        else:
            result = self.runner.pipeline([writer], stdin_path=record.image_path)
        return result.ok, "" if result.ok else result.diagnostic

    def _install_bootloader(self, job: RestoreJob, log, boot_mode: Optional[BootMode]) -> None:
        disk_id = job.target.disk_id
        try:
            disk = self.enumerator.get_disk(disk_id)
            classification = self.classifier.classify(disk)
        except (StorageError, OSError, ValueError) as error:
            warning = f"could not inspect restored disk: {error}"
            log.warning(f"Bootloader installation skipped, {warning}")
            job.bootloader_warnings.append(warning)
            return
        job.os_type = classification.os_type
        job.boot_mode = boot_mode or detect_boot_mode(self.context.firmware_path)
        job.target = DiskTarget(disk_id, disk.is_mounted, classification.os_type)
        boot_sector = job.backup_set.boot_sector_path
        try:
            report = self.installer.install(
                disk,
                classification.os_type,
                job.boot_mode,
                boot_sector=boot_sector if boot_sector.exists() else None,
            )
        except Exception as error:
            # Partitions are written; installer faults only degrade to warnings.
            warning = f"bootloader installation aborted: {error}"
            log.exception(f"Bootloader installation on {disk_id} raised")
            job.bootloader_warnings.append(warning)
            return
        job.bootloader_actions.extend(report.actions)
        job.bootloader_warnings.extend(report.warnings)
