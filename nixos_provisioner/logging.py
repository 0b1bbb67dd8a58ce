from __future__ import annotations

import sys
import time
import uuid
from contextlib import contextmanager
from typing import TYPE_CHECKING, Iterable, TextIO

if TYPE_CHECKING:
    from loguru import Logger
    from nixos_provisioner.app.context import ExecutionContext

from loguru import logger

# Custom level for pipeline step banners, between INFO (20) and SUCCESS (25)
STEP_LEVEL = "STEP"
STEP_LEVEL_NO = 22

LEVEL_GLYPHS = {
    "CRITICAL": "💥",
    "ERROR": "💥",
    "WARNING": "⚠️ ",
    "SUCCESS": "✨",
    "STEP": "🚀",
    "INFO": "🔵",
    "DEBUG": "🔍",
    "TRACE": "🔍",
}

# Durable log uses the short names operators grep for
LEVEL_LABELS = {"WARNING": "WARN", "CRITICAL": "ERROR"}


def _ensure_step_level() -> None:
    try:
        logger.level(STEP_LEVEL)
    except ValueError:
        logger.level(STEP_LEVEL, no=STEP_LEVEL_NO, color="<magenta><bold>")


_ensure_step_level()


def level_label(level_name: str) -> str:
    """Return the label written to the durable log for a loguru level."""
    return LEVEL_LABELS.get(level_name, level_name)


def _durable_format(record) -> str:
    label = level_label(record["level"].name)
    return "[{time:YYYY-MM-DD HH:mm:ss}] [" + label + "] {message}\n{exception}"


def _console_filter(record) -> bool:
    """Records bound with console=False go to the durable log only."""
    return record["extra"].get("console", True)


def _console_format(record) -> str:
    name = record["level"].name
    glyph = LEVEL_GLYPHS.get(name, "")
    return "<level>" + glyph + " " + level_label(name) + "</level> {message}\n{exception}"


def setup_logging(
    ctx: ExecutionContext,
    *,
    console: TextIO | None = None,
) -> Logger:
    """
    Configure the durable log file and the interactive console stream.

    Sinks:
    - Durable log at ``ctx.log_path``: ``[timestamp] [LEVEL] message``, always
      written, DEBUG records only when ``ctx.debug`` is set.
    - Console (stderr by default): glyph-annotated, colorized unless
      ``ctx.no_color`` is set or the stream is not a terminal. Omitted
      entirely in quiet mode.

    Args:
        ctx: Execution context for this run
        console: Stream for the interactive sink (defaults to sys.stderr)
    """
    logger.remove()
    logger.configure(extra={"tags": [], "source": "APP"})
    _ensure_step_level()

    level = "DEBUG" if ctx.debug else "INFO"

    ctx.log_path.parent.mkdir(parents=True, exist_ok=True)
    logger.add(
        ctx.log_path,
        level=level,
        mode="a",
        encoding="utf-8",
        backtrace=False,
        diagnose=False,
        colorize=False,
        format=_durable_format,
    )

    if not ctx.quiet:
        stream = console or sys.stderr
        isatty = getattr(stream, "isatty", None)
        colorize = not ctx.no_color and bool(isatty and isatty())
        logger.add(
            stream,
            level=level,
            backtrace=False,
            diagnose=False,
            colorize=colorize,
            format=_console_format,
            filter=_console_filter,
        )

    return logger


def get_logger(
    *,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        tags: Tags for filtering (e.g., ["disk", "storage"])
        source: Source component (e.g., "disk", "repo", "build")
    """
    extras: dict[str, object] = {}
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


def durable_only(log: Logger | None = None) -> Logger:
    """Logger whose records skip the console sink."""
    return (log or logger).bind(console=False)


def log_step(log: Logger, message: str) -> None:
    """Emit a record at the STEP level."""
    log.log(STEP_LEVEL, message)


@contextmanager
def operation_context(operation: str, **details):
    """
    Context manager for pipeline stages with automatic timing.

    Logs completion at DEBUG with the elapsed time and failures at ERROR,
    then re-raises.

    Example:
        with operation_context("partition", disk="/dev/sda") as log:
            log.debug("Probing disk")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"
    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=operation, tags=[operation])
        log.debug(f"{operation.capitalize()} started")
        try:
            yield log
        except Exception as e:
            duration = time.time() - start_time
            log.error(
                f"{operation.capitalize()} failed after {duration:.1f}s "
                f"({type(e).__name__}): {e}"
            )
            raise
        duration = time.time() - start_time
        log.debug(f"{operation.capitalize()} completed in {duration:.1f}s")


class LoggerFactory:
    """
    Factory for creating component loggers with automatic context.

    Each factory method returns a logger pre-configured with the source and
    tags of one pipeline component.
    """

    @staticmethod
    def for_env() -> Logger:
        """Logger for environment validation."""
        return logger.bind(source="env", tags=["env", "preflight"])

    @staticmethod
    def for_deps() -> Logger:
        """Logger for dependency resolution."""
        return logger.bind(source="deps", tags=["deps", "preflight"])

    @staticmethod
    def for_repo() -> Logger:
        """Logger for repository staging."""
        return logger.bind(source="repo", tags=["repo", "git"])

    @staticmethod
    def for_catalog() -> Logger:
        """Logger for machine discovery and user identity resolution."""
        return logger.bind(source="catalog", tags=["catalog", "config"])

    @staticmethod
    def for_disk() -> Logger:
        """Logger for disk probing, partitioning and formatting."""
        return logger.bind(source="disk", tags=["disk", "storage"])

    @staticmethod
    def for_build() -> Logger:
        """Logger for build validation."""
        return logger.bind(source="build", tags=["build", "nix"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for process-level events (startup, command execution)."""
        return logger.bind(source="system", tags=["system"])
