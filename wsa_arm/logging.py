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
        "WSA_ARM_LOG_DIR",
        Path.home() / ".local" / "state" / "wsa-arm" / "logs",
    )
)


def _should_log_command_output(record) -> bool:
    """Hide raw command stdout/stderr unless TRACE is enabled."""
    tags = record["extra"].get("tags", [])

    # Always log warnings and errors
    if record["level"].no >= logger.level("WARNING").no:
        return True

    if "output" in tags:
        return record["level"].no <= logger.level("TRACE").no

    return True


def _should_log_metadata(record) -> bool:
    """Per-file chown/chmod/label logs are noisy, only show them in TRACE mode."""
    tags = record["extra"].get("tags", [])
    if "metadata" in tags and record["level"].no < logger.level("WARNING").no:
        return record["level"].no <= logger.level("TRACE").no
    return True


def _combined_filter(record) -> bool:
    """Combined filter for all log suppression rules."""
    return _should_log_command_output(record) and _should_log_metadata(record)


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Setup multi-tier logging with separate sinks for different log levels.

    Logging Tiers:
    - CRITICAL/ERROR: Aborted runs, unrecoverable filesystem damage
    - SUCCESS/INFO: Pipeline stages, sizes, mounts, installed entries
    - DEBUG: Command lines, retry decisions, layout probes
    - TRACE: Raw command output, per-file metadata changes

    Log Files:
    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when --debug is enabled (3 day retention)
    - trace.log: TRACE+ events when --trace is enabled (1 day retention)
    - structured.jsonl: Structured JSON logs for analysis (7 day retention)

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Custom log directory (defaults to ~/.local/state/wsa-arm/logs)
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    # SINK 1: Console (stderr) - User-facing, filtered
    logger.add(
        sys.stderr,
        level=console_level,
        backtrace=False,
        diagnose=False,
        filter=_combined_filter,
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <10}</cyan> | "
            "{message}"
        ),
    )

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    # SINK 2: Operations Log - Important events only (INFO+)
    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        backtrace=False,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <10} | "
            "{extra[job_id]: <20} | "
            "{message}"
        ),
    )

    # SINK 3: Debug Log - Detailed diagnostics (DEBUG+ when debug=True)
    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            backtrace=True,
            diagnose=True,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <10} | "
                "{extra[job_id]: <20} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    # SINK 4: Trace Log - Ultra-verbose (TRACE only, when trace=True)
    if trace:
        logger.add(
            log_dir / "trace.log",
            level="TRACE",
            rotation="50 MB",
            retention="1 day",
            compression="zip",
            backtrace=False,
            diagnose=False,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{extra[source]: <10} | "
                "{extra[job_id]: <20} | "
                "{message}"
            ),
        )

    # SINK 5: Structured JSON Log - For analysis tools (INFO+)
    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="7 days",
        compression="zip",
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
        job_id: Job identifier for tracking a pipeline run
        tags: Tags for filtering (e.g., ["fsck", "storage"])
        source: Source component (e.g., "resize", "mount", "install")

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

    Automatically logs operation start, completion, and failure with duration tracking.

    Args:
        operation: Operation name (e.g., "expand", "mount", "finalize")
        **details: Operation-specific details to log

    Yields:
        Logger bound with job_id and operation context

    Example:
        with operation_context("expand", image="/work/vendor.img") as log:
            log.debug("Running resize2fs")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(
        job_id=job_id,
        operation=operation,
        **details,
    ):
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
    source and tags for the component.
    """

    @staticmethod
    def for_pipeline(job_id: str | None = None) -> Logger:
        """Logger for the top-level install pipeline."""
        if job_id is None:
            job_id = f"install-{uuid.uuid4().hex[:8]}"
        return logger.bind(job_id=job_id, source="pipeline", tags=["pipeline"])

    @staticmethod
    def for_command() -> Logger:
        """Logger for external command execution."""
        return logger.bind(source="command", tags=["command"])

    @staticmethod
    def for_fsck() -> Logger:
        """Logger for filesystem integrity checks."""
        return logger.bind(source="fsck", tags=["fsck", "storage"])

    @staticmethod
    def for_resize() -> Logger:
        """Logger for image grow/shrink operations."""
        return logger.bind(source="resize", tags=["resize", "storage"])

    @staticmethod
    def for_unshare() -> Logger:
        """Logger for copy-on-write block materialization."""
        return logger.bind(source="unshare", tags=["unshare", "storage"])

    @staticmethod
    def for_convert() -> Logger:
        """Logger for VHDX <-> raw conversion."""
        return logger.bind(source="convert", tags=["convert", "storage"])

    @staticmethod
    def for_mount() -> Logger:
        """Logger for loopback mount handling."""
        return logger.bind(source="mount", tags=["mount", "storage"])

    @staticmethod
    def for_planner() -> Logger:
        """Logger for image size planning."""
        return logger.bind(source="planner", tags=["planner"])

    @staticmethod
    def for_install() -> Logger:
        """Logger for payload copy and config patching."""
        return logger.bind(source="install", tags=["install", "payload"])

    @staticmethod
    def for_finalize() -> Logger:
        """Logger for unmount/shrink/repackage."""
        return logger.bind(source="finalize", tags=["finalize"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for system operations (startup, config, archive)."""
        return logger.bind(source="system", tags=["system"])
