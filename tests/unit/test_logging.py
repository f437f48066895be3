"""Tests for logging setup, file rotation and retention."""

from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path

from shepherd._internal.config import LogSettings
from shepherd._internal.logging import (
    RetainingFileHandler,
    _JsonFormatter,
    apply_log_settings,
    get_logger,
    parse_log_level,
    reopen_log_files,
    setup_logging,
)


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_idempotent(self):
        logger = setup_logging()
        count = len(logger.handlers)
        setup_logging(logging.DEBUG)
        assert len(logger.handlers) == count
        assert logger.level == logging.DEBUG
        assert logger.propagate is False

    def test_get_logger_namespace(self):
        assert get_logger("engine.worker").name == "shepherd.engine.worker"


def test_parse_log_level_aliases():
    assert parse_log_level("warn") == logging.WARNING
    assert parse_log_level("WARNING") == logging.WARNING
    assert parse_log_level(None) == logging.INFO


def test_json_formatter_includes_pid():
    record = logging.LogRecord("shepherd.x", logging.INFO, __file__, 1, "hello %s", ("w",), None)
    data = json.loads(_JsonFormatter().format(record))
    assert data["message"] == "hello w"
    assert data["level"] == "INFO"
    assert data["pid"] == os.getpid()


class TestApplyLogSettings:
    """Tests for attaching the file handler from a snapshot."""

    def _file_handlers(self) -> list[RetainingFileHandler]:
        return [
            h for h in logging.getLogger("shepherd").handlers
            if isinstance(h, RetainingFileHandler)
        ]

    def test_writes_to_logfile(self, tmp_path: Path):
        logfile = tmp_path / "logs" / "app.log"
        apply_log_settings(LogSettings(logfile=logfile))
        get_logger("test").info("written to file")
        for handler in self._file_handlers():
            handler.flush()
        assert "written to file" in logfile.read_text()

    def test_replaces_previous_file_handler(self, tmp_path: Path):
        apply_log_settings(LogSettings(logfile=tmp_path / "a.log"))
        apply_log_settings(LogSettings(logfile=tmp_path / "b.log"))
        handlers = self._file_handlers()
        assert len(handlers) == 1
        assert Path(handlers[0].baseFilename) == tmp_path / "b.log"

    def test_no_logfile_removes_handler(self, tmp_path: Path):
        apply_log_settings(LogSettings(logfile=tmp_path / "a.log"))
        apply_log_settings(LogSettings(logfile=None))
        assert self._file_handlers() == []

    def test_reopen_counts_handlers(self, tmp_path: Path):
        apply_log_settings(LogSettings(logfile=tmp_path / "a.log"))
        assert reopen_log_files() == 1


class TestRetainingFileHandler:
    """Tests for size rotation and day-based retention."""

    def test_rotates_at_max_size(self, tmp_path: Path):
        logfile = tmp_path / "r.log"
        handler = RetainingFileHandler(logfile, max_bytes=200)
        try:
            for i in range(20):
                record = logging.LogRecord("x", logging.INFO, __file__, 1, "line %d " * 4, (i,) * 4, None)
                handler.emit(record)
        finally:
            handler.close()
        assert (tmp_path / "r.log.1").exists()

    def test_prune_removes_old_rotations(self, tmp_path: Path):
        logfile = tmp_path / "p.log"
        old = tmp_path / "p.log.3"
        fresh = tmp_path / "p.log.1"
        old.write_text("old")
        fresh.write_text("fresh")
        two_days_ago = time.time() - 2 * 86400
        os.utime(old, (two_days_ago, two_days_ago))

        handler = RetainingFileHandler(logfile, max_bytes=1024, retention_days=1)
        try:
            removed = handler.prune()
        finally:
            handler.close()

        assert removed == [old]
        assert not old.exists()
        assert fresh.exists()

    def test_zero_retention_keeps_everything(self, tmp_path: Path):
        old = tmp_path / "k.log.1"
        old.write_text("old")
        os.utime(old, (0, 0))
        handler = RetainingFileHandler(tmp_path / "k.log", max_bytes=1024, retention_days=0)
        try:
            assert handler.prune() == []
        finally:
            handler.close()
        assert old.exists()

    def test_fsync_emit(self, tmp_path: Path):
        logfile = tmp_path / "f.log"
        handler = RetainingFileHandler(logfile, max_bytes=1024, fsync=True)
        try:
            handler.emit(logging.LogRecord("x", logging.INFO, __file__, 1, "synced", (), None))
        finally:
            handler.close()
        assert "synced" in logfile.read_text()
