"""Tests for pid-file handling."""

from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path

from shepherd._internal.pidfile import (
    is_process_alive,
    read_pidfile,
    remove_pidfile,
    running_pid,
    write_pidfile,
)


def _dead_pid() -> int:
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid


class TestPidfile:
    """Tests for write/read/remove."""

    def test_write_defaults_to_current_pid(self, tmp_path: Path):
        path = tmp_path / "logs" / "x.pid"
        assert write_pidfile(path) == os.getpid()
        assert read_pidfile(path) == os.getpid()

    def test_write_explicit_pid(self, tmp_path: Path):
        path = tmp_path / "x.pid"
        write_pidfile(path, 1234)
        assert path.read_text().strip() == "1234"

    def test_read_missing(self, tmp_path: Path):
        assert read_pidfile(tmp_path / "none.pid") is None

    def test_read_garbage(self, tmp_path: Path):
        path = tmp_path / "x.pid"
        path.write_text("not-a-pid\n")
        assert read_pidfile(path) is None

    def test_remove_owned(self, tmp_path: Path):
        path = tmp_path / "x.pid"
        write_pidfile(path, 42)
        assert remove_pidfile(path, 42) is True
        assert not path.exists()

    def test_remove_keeps_foreign_file(self, tmp_path: Path):
        path = tmp_path / "x.pid"
        write_pidfile(path, 42)
        assert remove_pidfile(path, 43) is False
        assert path.exists()

    def test_remove_missing(self, tmp_path: Path):
        assert remove_pidfile(tmp_path / "x.pid") is False


class TestLiveness:
    """Tests for process liveness probing."""

    def test_current_process_alive(self):
        assert is_process_alive(os.getpid()) is True

    def test_dead_process(self):
        assert is_process_alive(_dead_pid()) is False

    def test_non_positive_pid(self):
        assert is_process_alive(0) is False

    def test_running_pid(self, tmp_path: Path):
        path = tmp_path / "x.pid"
        write_pidfile(path)
        assert running_pid(path) == os.getpid()

    def test_stale_pidfile(self, tmp_path: Path):
        path = tmp_path / "x.pid"
        write_pidfile(path, _dead_pid())
        assert running_pid(path) is None
