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
        "PI_NVME_BOOT_LOG_DIR",
        Path.home() / ".local" / "state" / "pi-nvme-boot" / "logs",
    )
)


def _should_log_progress(record) -> bool:
    """Keep rsync progress chatter out of the console unless tracing."""
    tags = record["extra"].get("tags", [])
    if "progress" in tags:
        return record["level"].no <= logger.level("TRACE").no
    return True


def escape_braces(text: str) -> str:
    """Escape curly braces for loguru formatting."""
    return text.replace("{", "{{").replace("}", "}}")


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Setup logging with separate sinks for the console and the log directory.

    Log Files:
    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when --debug is enabled (3 day retention)
    - structured.jsonl: Structured JSON logs for analysis (7 day retention)

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Custom log directory (defaults to ~/.local/state/pi-nvme-boot/logs)
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    # Console (stderr) - operator-facing
    logger.add(
        sys.stderr,
        level=console_level,
        backtrace=False,
        diagnose=False,
        filter=_should_log_progress,
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <12}</cyan> | "
            "{message}"
        ),
    )

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

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
            "{extra[source]: <12} | "
            "{extra[job_id]: <20} | "
            "{message}"
        ),
    )

    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="TRACE" if trace else "DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            backtrace=True,
            diagnose=True,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <12} | "
                "{extra[job_id]: <20} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

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
        job_id: Job identifier for tracking a migration run
        tags: Tags for filtering (e.g., ["partition", "storage"])
        source: Source component (e.g., "clone", "firmware")
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
    Context manager for tracking a migration step with automatic timing.

    Logs the step start, completion, and failure with its duration.

    Example:
        with operation_context("partition", device="/dev/nvme0n1") as log:
            log.debug("Writing GPT")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])

        log.info(f"{operation.capitalize()} started")

        try:
            yield log
            duration = time.time() - start_time
            log.success(
                f"{operation.capitalize()} completed",
                duration_seconds=round(duration, 2),
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
    Factory for creating component loggers with automatic context.

    Each factory method returns a logger pre-configured with the source and
    tags of one migration component.
    """

    @staticmethod
    def for_preflight() -> Logger:
        """Logger for privilege, device, and tool checks."""
        return logger.bind(source="preflight", tags=["preflight"])

    @staticmethod
    def for_firmware() -> Logger:
        """Logger for EEPROM status, update, and boot order."""
        return logger.bind(source="firmware", tags=["firmware", "eeprom"])

    @staticmethod
    def for_partition() -> Logger:
        """Logger for partitioning and formatting."""
        return logger.bind(source="partition", tags=["partition", "storage"])

    @staticmethod
    def for_clone(job_id: str | None = None) -> Logger:
        """Logger for filesystem copy operations."""
        if job_id is None:
            job_id = f"clone-{uuid.uuid4().hex[:8]}"
        return logger.bind(job_id=job_id, source="clone", tags=["clone", "storage"])

    @staticmethod
    def for_mount() -> Logger:
        """Logger for mount sessions."""
        return logger.bind(source="mount", tags=["mount", "storage"])

    @staticmethod
    def for_boot_config() -> Logger:
        """Logger for fstab and cmdline.txt rewriting."""
        return logger.bind(source="boot-config", tags=["boot", "config"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for system operations (startup, shutdown, config)."""
        return logger.bind(source="system", tags=["system"])
