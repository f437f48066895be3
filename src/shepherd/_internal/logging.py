"""Structured logging setup for Shepherd."""

from __future__ import annotations

import json
import logging
import os
import sys
import time
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from shepherd._internal.config import LogSettings

VERBOSE = 5
SILENT = logging.CRITICAL + 10

logging.addLevelName(VERBOSE, "VERBOSE")
logging.addLevelName(SILENT, "SILENT")

# Rotated files kept before retention pruning kicks in.
_BACKUP_COUNT = 32


class _JsonFormatter(logging.Formatter):
    """Structured JSON log formatter.

    Emits one-line JSON objects with keys: timestamp, level, logger, pid,
    message.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as a JSON string.

        Args:
            record: The log record to format.

        Returns:
            A single-line JSON string.
        """
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "pid": record.process,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


class RetainingFileHandler(RotatingFileHandler):
    """Size-rotating file handler with day-based retention and optional fsync.

    On every rollover, rotated siblings of the log file whose modification
    time is older than ``retention_days`` are deleted. When ``fsync`` is
    enabled every record is flushed to stable storage before ``emit``
    returns.
    """

    def __init__(
        self,
        filename: str | Path,
        *,
        max_bytes: int,
        retention_days: int = 0,
        fsync: bool = False,
    ) -> None:
        Path(filename).parent.mkdir(parents=True, exist_ok=True)
        super().__init__(
            filename,
            maxBytes=max_bytes,
            backupCount=_BACKUP_COUNT,
            encoding="utf-8",
        )
        self.retention_days = retention_days
        self.fsync = fsync

    def emit(self, record: logging.LogRecord) -> None:
        super().emit(record)
        if self.fsync and self.stream is not None:
            try:
                os.fsync(self.stream.fileno())
            except OSError:
                self.handleError(record)

    def doRollover(self) -> None:  # noqa: N802
        super().doRollover()
        self.prune()

    def prune(self) -> list[Path]:
        """Delete rotated files older than the retention window.

        Returns:
            Paths that were removed.
        """
        if self.retention_days <= 0:
            return []
        base = Path(self.baseFilename)
        cutoff = time.time() - self.retention_days * 86400
        removed: list[Path] = []
        for path in base.parent.glob(f"{base.name}.*"):
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed.append(path)
            except FileNotFoundError:
                continue
        return removed

    def reopen(self) -> None:
        """Close and reopen the underlying stream (after external rotation)."""
        self.acquire()
        try:
            if self.stream is not None:
                self.stream.close()
            self.stream = self._open()
        finally:
            self.release()


def parse_log_level(name: str | None) -> int:
    """Map a configured level name onto a logging level.

    Args:
        name: One of VERBOSE, DEBUG, INFO, WARN, ERROR, FATAL, SILENT
            (case-insensitive). Anything else maps to INFO.

    Returns:
        The numeric logging level.
    """
    levels = {
        "VERBOSE": VERBOSE,
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARN": logging.WARNING,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "FATAL": logging.CRITICAL,
        "SILENT": SILENT,
    }
    return levels.get((name or "").strip().upper(), logging.INFO)


def setup_logging(
    level: int = logging.INFO,
    *,
    json_format: bool = False,
) -> logging.Logger:
    """Configure and return the root Shepherd logger.

    Sets up a stderr handler on the ``shepherd`` logger namespace.
    Subsequent calls only update levels; handlers are not duplicated.

    Args:
        level: Logging level (e.g., ``logging.DEBUG``). Defaults to INFO.
        json_format: If True, emit structured JSON logs. If False, emit
            human-readable logs.

    Returns:
        The configured ``shepherd`` root logger.
    """
    logger = logging.getLogger("shepherd")
    logger.setLevel(level)

    # Idempotent: update existing handler levels and return early
    if logger.handlers:
        for handler in logger.handlers:
            handler.setLevel(level)
        return logger

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(_make_formatter(json_format=json_format))
    logger.addHandler(handler)

    # Prevent propagation to root logger to avoid duplicate output
    logger.propagate = False

    return logger


def apply_log_settings(settings: LogSettings, *, json_format: bool = False) -> logging.Logger:
    """Apply a snapshot's log settings to the ``shepherd`` logger.

    Replaces any previously attached file handler so that a reload can
    move the log file or change rotation parameters.

    Args:
        settings: Log settings from the active configuration snapshot.
        json_format: Emit JSON lines to the log file.

    Returns:
        The configured ``shepherd`` root logger.
    """
    logger = setup_logging(level=settings.level, json_format=json_format)

    for handler in list(logger.handlers):
        if isinstance(handler, RetainingFileHandler):
            logger.removeHandler(handler)
            handler.close()

    if settings.logfile is not None:
        file_handler = RetainingFileHandler(
            settings.logfile,
            max_bytes=settings.max_size,
            retention_days=settings.retention_days,
            fsync=settings.fsync,
        )
        file_handler.setLevel(settings.level)
        file_handler.setFormatter(_make_formatter(json_format=json_format))
        logger.addHandler(file_handler)

    return logger


def reopen_log_files() -> int:
    """Reopen every Shepherd file handler.

    Returns:
        Number of handlers reopened.
    """
    count = 0
    for handler in logging.getLogger("shepherd").handlers:
        if isinstance(handler, RetainingFileHandler):
            handler.reopen()
            count += 1
    return count


def get_logger(name: str) -> logging.Logger:
    """Return a child logger under the ``shepherd`` namespace.

    Args:
        name: Logger name, appended to ``shepherd.`` prefix.
            Example: ``get_logger("engine.worker")`` returns
            ``logging.getLogger("shepherd.engine.worker")``.

    Returns:
        A configured child logger.
    """
    return logging.getLogger(f"shepherd.{name}")


def _make_formatter(*, json_format: bool) -> logging.Formatter:
    if json_format:
        return _JsonFormatter()
    return logging.Formatter(
        "%(asctime)s [%(levelname)-8s] %(name)s[%(process)d]: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
