"""Control channel: deliver start/stop/restart/status/reload to a running master."""

from __future__ import annotations

import os
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from shepherd._internal.errors import ControlError
from shepherd._internal.logging import get_logger
from shepherd._internal.pidfile import is_process_alive, running_pid
from shepherd.engine.protocol import COMMAND_SIGNALS, ControlCommand, StatusReport

if TYPE_CHECKING:
    from pathlib import Path

    from shepherd.engine.context import ServiceContext

logger = get_logger("engine.control")


@dataclass(frozen=True)
class ControlResult:
    """Outcome of a control request.

    Attributes:
        command: The command that was handled.
        pid: Pid of the master addressed, None if none was running.
        launch: True when the caller should go on to start a new master.
        message: Human-readable summary.
        report: Status report, for ``status`` only (best effort).
    """

    command: ControlCommand
    pid: int | None
    launch: bool = False
    message: str = ""
    report: StatusReport | None = None


class ControlChannel:
    """Addresses a running master through its pid file.

    Delivery is fire-and-forget for ``stop``, ``restart`` and ``reload``.
    ``status`` asks the master to republish its status file and waits a
    short, bounded time for it; the result is best effort.

    Attributes:
        program_name: Name used in messages.
        pidfile: Pid file naming the running master.
        status_file: Where the master publishes status reports.
    """

    def __init__(
        self,
        program_name: str,
        pidfile: Path,
        status_file: Path,
        *,
        status_timeout: float = 2.0,
        poll_interval: float = 0.05,
    ) -> None:
        self.program_name = program_name
        self.pidfile = pidfile
        self.status_file = status_file
        self._status_timeout = status_timeout
        self._poll_interval = poll_interval

    @classmethod
    def for_context(cls, context: ServiceContext, **kwargs: float) -> ControlChannel:
        return cls(context.program_name, context.pidfile, context.status_file, **kwargs)

    def master_pid(self) -> int | None:
        """Pid of the running master, None if the pid file is absent or stale."""
        return running_pid(self.pidfile)

    def send(self, command: ControlCommand | str, target_pid: int | None = None) -> ControlResult:
        """Deliver ``command`` to the master.

        Args:
            command: Command or its name.
            target_pid: Explicit master pid; read from the pid file if None.

        Returns:
            What happened, and whether the caller should launch a master.

        Raises:
            ControlError: If the command is unknown, needs a running master
                and there is none, or the signal cannot be delivered.
        """
        try:
            command = ControlCommand(command)
        except ValueError:
            valid = ", ".join(c.value for c in ControlCommand)
            msg = f"Unknown signal {command!r}, expected one of: {valid}"
            raise ControlError(msg) from None

        pid = target_pid if target_pid is not None else self.master_pid()
        if pid is not None and not is_process_alive(pid):
            pid = None

        if command is ControlCommand.START:
            if pid is not None:
                return ControlResult(
                    command, pid, message=f"{self.program_name} is already running, pid={pid}"
                )
            return ControlResult(command, None, launch=True, message=f"{self.program_name} start")

        if pid is None:
            msg = f"{self.program_name} is not running, cannot {command.value}"
            raise ControlError(msg)

        if command is ControlCommand.STATUS:
            return self._status(pid)

        self._signal(pid, command)
        verbs = {
            ControlCommand.STOP: "stop",
            ControlCommand.RESTART: "restart",
            ControlCommand.RELOAD: "reload",
        }
        return ControlResult(
            command,
            pid,
            message=f"Sent {verbs[command]} to {self.program_name}, pid={pid}",
        )

    def _status(self, pid: int) -> ControlResult:
        before = self._status_mtime()
        self._signal(pid, ControlCommand.STATUS)

        deadline = time.monotonic() + self._status_timeout
        while self._status_mtime() == before and time.monotonic() < deadline:
            time.sleep(self._poll_interval)

        report = StatusReport.read(self.status_file)
        if report is not None and report.master_pid != pid:
            logger.debug("Ignoring status file from pid %d", report.master_pid)
            report = None

        message = f"{self.program_name} is running, pid={pid}"
        if report is not None:
            message += (
                f", workers={report.live_workers}/{report.worker_process_count}"
                f", threads={report.worker_thread_count}, port={report.port}"
            )
        return ControlResult(ControlCommand.STATUS, pid, message=message, report=report)

    def _signal(self, pid: int, command: ControlCommand) -> None:
        sig = COMMAND_SIGNALS[command]
        try:
            os.kill(pid, sig)
        except ProcessLookupError:
            msg = f"{self.program_name} (pid={pid}) exited before {command.value} was delivered"
            raise ControlError(msg) from None
        except PermissionError:
            msg = f"Not permitted to signal {self.program_name} (pid={pid})"
            raise ControlError(msg) from None
        logger.debug("Sent %s (%s) to pid %d", command.value, sig.name, pid)

    def _status_mtime(self) -> int | None:
        try:
            return self.status_file.stat().st_mtime_ns
        except FileNotFoundError:
            return None
