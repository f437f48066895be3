"""Tests for the control channel.

A throwaway Python child stands in for the master, so the channel delivers
real signals to a real process.
"""

from __future__ import annotations

import os
import signal
import subprocess
import sys
from typing import TYPE_CHECKING

import pytest

from shepherd._internal.errors import ControlError
from shepherd._internal.pidfile import write_pidfile
from shepherd.engine.control import ControlChannel
from shepherd.engine.protocol import ControlCommand, StatusReport, WorkerInfo, WorkerStatus

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

_IGNORE_STATUS = (
    "import signal, time\n"
    "signal.signal(signal.SIGUSR2, signal.SIG_IGN)\n"
    "print('ready', flush=True)\n"
    "time.sleep(30)\n"
)


@pytest.fixture
def channel(tmp_path: Path) -> ControlChannel:
    logs = tmp_path / "logs"
    return ControlChannel(
        "shepherd",
        logs / "shepherd.pid",
        logs / "shepherd.pid.status",
        status_timeout=0.3,
        poll_interval=0.02,
    )


@pytest.fixture
def fake_master(channel: ControlChannel) -> Iterator[subprocess.Popen[bytes]]:
    """A sleeping child process recorded in the channel's pid file."""
    proc = subprocess.Popen([sys.executable, "-c", _IGNORE_STATUS], stdout=subprocess.PIPE)
    assert proc.stdout is not None
    assert proc.stdout.readline().strip() == b"ready"
    write_pidfile(channel.pidfile, proc.pid)
    yield proc
    if proc.poll() is None:
        proc.kill()
    proc.wait()
    proc.stdout.close()


class TestWithoutMaster:
    """Commands when no master is running."""

    def test_start_asks_to_launch(self, channel: ControlChannel):
        result = channel.send(ControlCommand.START)
        assert result.launch is True
        assert result.pid is None
        assert result.message == "shepherd start"

    @pytest.mark.parametrize("command", ["stop", "restart", "reload", "status"])
    def test_other_commands_fail(self, channel: ControlChannel, command: str):
        with pytest.raises(ControlError, match=f"not running, cannot {command}"):
            channel.send(command)

    def test_stale_pidfile_treated_as_absent(self, channel: ControlChannel):
        proc = subprocess.Popen([sys.executable, "-c", "pass"])
        proc.wait()
        write_pidfile(channel.pidfile, proc.pid)
        assert channel.master_pid() is None
        assert channel.send("start").launch is True

    def test_unknown_command(self, channel: ControlChannel):
        with pytest.raises(ControlError, match="Unknown signal"):
            channel.send("explode")


@pytest.mark.timeout(30)
class TestWithMaster:
    """Commands delivered to a running master."""

    def test_start_reports_running(
        self, channel: ControlChannel, fake_master: subprocess.Popen[bytes]
    ):
        result = channel.send("start")
        assert result.launch is False
        assert result.pid == fake_master.pid
        assert "already running" in result.message

    @pytest.mark.parametrize(
        ("command", "expected"),
        [("stop", signal.SIGTERM), ("reload", signal.SIGUSR1), ("restart", signal.SIGHUP)],
    )
    def test_command_delivers_signal(
        self,
        channel: ControlChannel,
        fake_master: subprocess.Popen[bytes],
        command: str,
        expected: signal.Signals,
    ):
        result = channel.send(command)
        assert result.message == f"Sent {command} to shepherd, pid={fake_master.pid}"
        # The stand-in master has no handler, so the signal's default action kills it.
        assert fake_master.wait(timeout=10) == -expected

    def test_status_reads_report(
        self, channel: ControlChannel, fake_master: subprocess.Popen[bytes]
    ):
        StatusReport(
            master_pid=fake_master.pid,
            program="shepherd",
            port=8080,
            worker_process_count=2,
            worker_thread_count=0,
            workers=(
                WorkerInfo(0, 11, WorkerStatus.RUNNING, 0),
                WorkerInfo(1, 12, WorkerStatus.RUNNING, 0),
            ),
        ).write(channel.status_file)

        result = channel.send("status")
        assert result.report is not None
        assert result.report.live_workers == 2
        assert result.message == (
            f"shepherd is running, pid={fake_master.pid}, workers=2/2, threads=0, port=8080"
        )
        assert fake_master.poll() is None

    def test_status_ignores_foreign_report(
        self, channel: ControlChannel, fake_master: subprocess.Popen[bytes]
    ):
        StatusReport(
            master_pid=os.getpid(),
            program="shepherd",
            port=1,
            worker_process_count=1,
            worker_thread_count=0,
        ).write(channel.status_file)

        result = channel.send("status")
        assert result.report is None
        assert result.message == f"shepherd is running, pid={fake_master.pid}"
