"""Parallel restore of one backup set onto several disks.

Each target gets its own ``RestorePipeline`` running in its own worker
thread. Launches are staggered so the table wipes do not all hit the bus at
once. Pipelines share nothing mutable except the read-only backup set and
the cancel flag, so one disk failing (even by crashing) never changes the
outcome of another.

Usage:
    coordinator = RestoreCoordinator(context)
    result = coordinator.run(backup_set, ["sdb", "sdc", "sdd"])
    sys.exit(result.exit_code)
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from cyc_cloner.app.context import RunContext
from cyc_cloner.domain.models import BackupSet, BootMode, DiskTarget, RestoreJob
from cyc_cloner.logging import EventLogger, LoggerFactory
from cyc_cloner.storage.devices import normalize_disk_id
from cyc_cloner.storage.exceptions import DuplicateTargetError
from cyc_cloner.storage.imaging.restore import CANCELLED, RestorePipeline


PipelineFactory = Callable[[threading.Event], RestorePipeline]


@dataclass
class MultiRestoreResult:
    """Terminal jobs keyed by disk, in the order targets were given."""

    jobs: dict[str, RestoreJob] = field(default_factory=dict)

    @property
    def succeeded(self) -> list[str]:
        return [disk for disk, job in self.jobs.items() if job.succeeded]

    @property
    def failed(self) -> list[str]:
        return [disk for disk, job in self.jobs.items() if not job.succeeded]

    @property
    def exit_code(self) -> int:
        return 1 if self.failed else 0


class RestoreCoordinator:
    def __init__(
        self,
        context: RunContext,
        *,
        pipeline_factory: Optional[PipelineFactory] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.context = context
        self.pipeline_factory = pipeline_factory or (
            lambda cancel_event: RestorePipeline(context, cancel_event=cancel_event)
        )
        self.sleep = sleep
        self._cancel_event = threading.Event()

    def cancel(self) -> None:
        """Ask every running pipeline to stop at its next step boundary."""
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def run(
        self,
        backup_set: BackupSet,
        targets: Sequence[str],
        *,
        boot_mode: Optional[BootMode] = None,
    ) -> MultiRestoreResult:
        """Restore ``backup_set`` onto every target and wait for all of them.

        Raises:
            DuplicateTargetError: A disk appears more than once in ``targets``
            ValueError: ``targets`` is empty
        """
        disk_ids = [normalize_disk_id(target) for target in targets]
        if not disk_ids:
            raise ValueError("at least one restore target is required")
        duplicates = sorted({disk for disk in disk_ids if disk_ids.count(disk) > 1})
        if duplicates:
            raise DuplicateTargetError(duplicates)

        log = LoggerFactory.for_coordinator()
        log.info(
            f"Restoring {backup_set.name} onto {len(disk_ids)} disks: {', '.join(disk_ids)}"
        )
        jobs: dict[str, RestoreJob] = {}
        workers = max(1, min(len(disk_ids), self.context.parallel_jobs))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="restore") as executor:
            futures = {}
            try:
                for index, disk_id in enumerate(disk_ids):
                    if index and self.context.stagger_seconds > 0:
                        self.sleep(self.context.stagger_seconds)
                    if self.cancelled:
                        job = RestoreJob(backup_set, DiskTarget(disk_id))
                        job.fail(CANCELLED)
                        jobs[disk_id] = job
                        continue
                    pipeline = self.pipeline_factory(self._cancel_event)
                    future = executor.submit(pipeline.run, backup_set, disk_id, boot_mode=boot_mode)
                    futures[future] = disk_id
                    log.debug(f"Launched restore pipeline for {disk_id}")

                for future in as_completed(futures):
                    disk_id = futures[future]
                    try:
                        job = future.result()
                    except Exception as e:
                        log.error(f"Restore pipeline for {disk_id} crashed: {e}")
                        job = RestoreJob(backup_set, DiskTarget(disk_id))
                        job.fail(f"unexpected error: {e}")
                    jobs[disk_id] = job
                    log.info(f"{disk_id}: {job.state.value}")
            except KeyboardInterrupt:
                log.warning("Interrupted, waiting for running pipelines to reach a safe point")
                self.cancel()
                raise

        result = MultiRestoreResult({disk_id: jobs[disk_id] for disk_id in disk_ids})
        self._log_summary(log, result)
        return result

    @staticmethod
    def _log_summary(log, result: MultiRestoreResult) -> None:
        for disk_id, job in result.jobs.items():
            line = f"  {disk_id}: {job.state.value.upper()}"
            if job.partition_failures:
                line += f" ({job.partition_failures} partition failures)"
            if job.error and not job.partition_failures:
                line += f" ({job.error})"
            if job.bootloader_warnings:
                line += f" [{len(job.bootloader_warnings)} bootloader warnings]"
            if job.succeeded:
                log.success(line)
            else:
                log.error(line)
        EventLogger.log_multi_summary(log, len(result.succeeded), len(result.failed))
