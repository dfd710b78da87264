"""Integrity checks for stored partition images.

Used on both sides: right after a capture during backup, and before each
partition is written during restore. A compressed image is tested with the
compressor's own test mode, which decodes without writing anything.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from cyc_cloner.domain.models import BackupSet
from cyc_cloner.logging import get_logger
from cyc_cloner.storage.exceptions import IntegrityError
from cyc_cloner.storage.tools import ToolRunner

from .compression import integrity_test_command


log = get_logger(source="verify")


def verify_image_file(
    runner: ToolRunner, image_file: Path, *, timeout: Optional[float] = 30
) -> None:
    """Check that ``image_file`` exists, is non-empty and decodes.

    Raises:
        IntegrityError: Any of the checks failed
    """
    if not image_file.is_file():
        raise IntegrityError(str(image_file), "file does not exist")
    if image_file.stat().st_size == 0:
        raise IntegrityError(str(image_file), "file is empty")
    command = integrity_test_command(runner, image_file)
    if command is None:
        return
    result = runner.run(command, timeout=timeout)
    if not result.ok:
        raise IntegrityError(
            str(image_file),
            f"compressed stream test failed: {result.diagnostic}",
            result.command,
            result.returncode,
        )
    log.debug(f"Verified {image_file.name}")


@dataclass
class VerificationReport:
    backup_set: str
    checked: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    failed: dict[int, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


def verify_backup_set(
    runner: ToolRunner, backup_set: BackupSet, *, timeout: Optional[float] = 30
) -> VerificationReport:
    """Verify every image of ``backup_set``; swap partitions are skipped.

    Partitions whose capture already failed are reported as failed without
    being tested.
    """
    report = VerificationReport(backup_set.name)
    for record in backup_set.partitions:
        if record.is_swap:
            report.skipped.append(record.ordinal)
            continue
        if record.failed:
            report.failed[record.ordinal] = record.error or "capture failed"
            continue
        try:
            verify_image_file(runner, record.image_path, timeout=timeout)
        except IntegrityError as error:
            log.error(f"Partition {record.ordinal}: {error.reason}")
            report.failed[record.ordinal] = error.reason
        else:
            report.checked.append(record.ordinal)
    if report.ok:
        log.success(f"Backup set {backup_set.name}: {len(report.checked)} images verified")
    else:
        log.error(
            f"Backup set {backup_set.name}: {len(report.failed)} of "
            f"{backup_set.partition_count} partitions failed verification"
        )
    return report
