from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "CYC_CLONER_LOG_DIR",
        Path.home() / ".local" / "state" / "cyc-cloner" / "logs",
    )
)


def _should_log_command_output(record) -> bool:
    """Keep raw external-tool output off the console unless tracing."""
    tags = record["extra"].get("tags", [])

    if record["level"].no >= logger.level("WARNING").no:
        return True

    if "command" in tags:
        return record["level"].no <= logger.level("TRACE").no

    return True


def _should_log_poll(record) -> bool:
    """Filter partition enumeration polling chatter - TRACE only."""
    message = record["message"].lower()

    if "waiting for partitions" in message or "still settling" in message:
        return record["level"].no <= logger.level("TRACE").no

    return True


def _combined_filter(record) -> bool:
    """Combined filter for all console suppression rules."""
    return _should_log_command_output(record) and _should_log_poll(record)


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Setup multi-tier logging with separate sinks for different log levels.

    Logging Tiers:
    - CRITICAL/ERROR: Failed restores, unrecoverable errors
    - SUCCESS/INFO: Jobs, state transitions, per-disk results
    - DEBUG: Detailed diagnostics, command execution
    - TRACE: Ultra-verbose (raw tool output, enumeration polling)

    Log Files:
    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when --debug is enabled (3 day retention)
    - trace.log: TRACE+ events when --trace is enabled (1 day retention)
    - structured.jsonl: Structured JSON logs for analysis (7 day retention)

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Custom log directory (defaults to ~/.local/state/cyc-cloner/logs)
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    # SINK 1: Console (stderr) - operator-facing, filtered
    logger.add(
        sys.stderr,
        level=console_level,
        enqueue=True,
        backtrace=False,
        diagnose=False,
        filter=_combined_filter,
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <15}</cyan> | "
            "<blue>{extra[job_id]: <15}</blue> | "
            "{message}"
        ),
    )

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    # SINK 2: Operations Log - INFO+
    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
        backtrace=False,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <15} | "
            "{extra[job_id]: <15} | "
            "{message}"
        ),
    )

    # SINK 3: Debug Log
    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            enqueue=True,
            backtrace=True,
            diagnose=True,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <15} | "
                "{extra[job_id]: <15} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    # SINK 4: Trace Log
    if trace:
        logger.add(
            log_dir / "trace.log",
            level="TRACE",
            rotation="50 MB",
            retention="1 day",
            compression="zip",
            enqueue=True,
            backtrace=False,
            diagnose=False,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{extra[source]: <15} | "
                "{extra[job_id]: <15} | "
                "{message}"
            ),
        )

    # SINK 5: Structured JSON Log
    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
        serialize=True,
        format="{message}",
    )

    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        job_id: Job identifier for tracking operations
        tags: Tags for filtering (e.g., ["restore", "storage"])
        source: Source component (e.g., "restore", "boot")

    Returns:
        Logger with bound context
    """
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


@contextmanager
def operation_context(operation: str, **details):
    """
    Context manager for tracking long-running operations with automatic timing.

    Logs operation start, completion, and failure with duration tracking.

    Args:
        operation: Operation name (e.g., "backup", "restore", "repair-boot")
        **details: Operation-specific details to log

    Yields:
        Logger bound with job_id and operation context

    Example:
        with operation_context("backup", disk="sda") as log:
            log.debug("Snapshotting partition table")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])

        log.info(f"{operation.capitalize()} started", **details)

        try:
            yield log
            duration = time.time() - start_time
            log.success(
                f"{operation.capitalize()} completed", duration_seconds=round(duration, 2)
            )
        except Exception as e:
            duration = time.time() - start_time
            log.error(
                f"{operation.capitalize()} failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            )
            raise


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.

    Each factory method returns a logger pre-configured with appropriate
    source, tags, and context for the domain.
    """

    @staticmethod
    def for_restore(disk: str, job_id: str | None = None) -> Logger:
        """Logger for one single-disk restore pipeline."""
        if job_id is None:
            job_id = f"restore-{disk}-{uuid.uuid4().hex[:6]}"
        return logger.bind(
            job_id=job_id, source="restore", tags=["restore", "storage"], disk=disk
        )

    @staticmethod
    def for_bootloader(disk: str | None = None) -> Logger:
        """Logger for classification and bootloader installation."""
        return logger.bind(source="boot", tags=["boot"], disk=disk or "-")

    @staticmethod
    def for_coordinator(job_id: str | None = None) -> Logger:
        """Logger for parallel multi-disk restores."""
        if job_id is None:
            job_id = f"multi-{uuid.uuid4().hex[:8]}"
        return logger.bind(
            job_id=job_id, source="coordinator", tags=["restore", "parallel"]
        )

    @staticmethod
    def for_command() -> Logger:
        """Logger for raw external tool invocations."""
        return logger.bind(source="command", tags=["command"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for system operations (startup, shutdown, config, mounts)."""
        return logger.bind(source="system", tags=["system"])


class EventLogger:
    """
    Structured event logger using standardized schemas.

    Provides methods for logging restore events with consistent
    structure and fields, picked up by the structured.jsonl sink.
    """

    @staticmethod
    def log_restore_started(
        log: Logger, backup: str, target: str, partitions: int, **extra
    ) -> None:
        """Log single-disk restore start."""
        log.info(
            f"Restore of {backup} onto {target} started",
            event_type="restore_started",
            backup_set=backup,
            target_device=target,
            partition_count=partitions,
            **extra,
        )

    @staticmethod
    def log_partition_result(
        log: Logger, ordinal: int, node: str, ok: bool, detail: str = "", **extra
    ) -> None:
        """Log the outcome of a single partition restore or capture."""
        if ok:
            log.info(
                f"Partition {ordinal} ({node}) done",
                event_type="partition_result",
                ordinal=ordinal,
                node=node,
                ok=True,
                **extra,
            )
        else:
            log.error(
                "Partition {ordinal} ({node}) failed: {detail}",
                event_type="partition_result",
                ordinal=ordinal,
                node=node,
                ok=False,
                detail=detail,
                **extra,
            )

    @staticmethod
    def log_job_finished(
        log: Logger, target: str, state: str, failures: int, **extra
    ) -> None:
        """Log the terminal state of a restore job."""
        method = log.success if state == "succeeded" else log.error
        method(
            f"Restore onto {target} finished: {state} ({failures} partition failures)",
            event_type="job_finished",
            target_device=target,
            state=state,
            partition_failures=failures,
            **extra,
        )

    @staticmethod
    def log_multi_summary(
        log: Logger, succeeded: int, failed: int, **extra
    ) -> None:
        """Log the aggregate tally of a multi-disk restore."""
        method = log.success if failed == 0 else log.warning
        method(
            f"Multi-disk restore finished: {succeeded} succeeded, {failed} failed",
            event_type="multi_restore_summary",
            succeeded=succeeded,
            failed=failed,
            **extra,
        )
