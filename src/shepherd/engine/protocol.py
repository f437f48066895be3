"""Protocol types shared by the master, its workers and the control channel."""

from __future__ import annotations

import json
import os
import signal
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


class ControlCommand(str, Enum):
    """External control request addressed to a master."""

    START = "start"
    STOP = "stop"
    RESTART = "restart"
    STATUS = "status"
    RELOAD = "reload"


class Role(str, Enum):
    MASTER = "master"
    WORKER = "worker"


class WorkerStatus(str, Enum):
    """Lifecycle state of a supervised worker slot."""

    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


# Signal delivered to a running master for each command. ``start`` has no
# signal: it either launches a new master or finds one already running.
COMMAND_SIGNALS: dict[ControlCommand, signal.Signals] = {
    ControlCommand.STOP: signal.SIGTERM,
    ControlCommand.RELOAD: signal.SIGUSR1,
    ControlCommand.RESTART: signal.SIGHUP,
    ControlCommand.STATUS: signal.SIGUSR2,
}

# Reverse mapping used by the master's signal handler.
SIGNAL_COMMANDS: dict[signal.Signals, ControlCommand] = {
    signal.SIGTERM: ControlCommand.STOP,
    signal.SIGINT: ControlCommand.STOP,
    signal.SIGQUIT: ControlCommand.STOP,
    signal.SIGUSR1: ControlCommand.RELOAD,
    signal.SIGHUP: ControlCommand.RESTART,
    signal.SIGUSR2: ControlCommand.STATUS,
}

RELOAD_SIGNAL = COMMAND_SIGNALS[ControlCommand.RELOAD]


@dataclass(frozen=True)
class ProcessIdentity:
    """Who a process is within the service.

    Attributes:
        pid: OS process id.
        role: Master or worker.
        start_time: Wall-clock time (``time.time()``) the process was started.
    """

    pid: int
    role: Role
    start_time: float


@dataclass(frozen=True)
class WorkerInfo:
    """Per-worker line of a status report."""

    index: int
    pid: int | None
    status: WorkerStatus
    threads: int


@dataclass(frozen=True)
class StatusReport:
    """Point-in-time view of a master and its workers.

    Attributes:
        master_pid: Pid of the reporting master.
        program: Program name.
        port: Configured listen port.
        worker_process_count: Target number of worker processes.
        worker_thread_count: Threads per worker process.
        config_version: Version of the active configuration snapshot.
        inline: True if the master runs the workload itself.
        workers: One entry per supervised slot.
    """

    master_pid: int
    program: str
    port: int
    worker_process_count: int
    worker_thread_count: int
    config_version: int = 1
    inline: bool = False
    workers: tuple[WorkerInfo, ...] = field(default_factory=tuple)

    @property
    def live_workers(self) -> int:
        """Number of workers currently starting or running."""
        return sum(
            1
            for w in self.workers
            if w.status in (WorkerStatus.STARTING, WorkerStatus.RUNNING)
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["workers"] = [
            {**asdict(w), "status": w.status.value} for w in self.workers
        ]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StatusReport:
        workers = tuple(
            WorkerInfo(
                index=int(w["index"]),
                pid=w.get("pid"),
                status=WorkerStatus(w["status"]),
                threads=int(w["threads"]),
            )
            for w in data.get("workers", [])
        )
        return cls(
            master_pid=int(data["master_pid"]),
            program=str(data["program"]),
            port=int(data["port"]),
            worker_process_count=int(data["worker_process_count"]),
            worker_thread_count=int(data["worker_thread_count"]),
            config_version=int(data.get("config_version", 1)),
            inline=bool(data.get("inline", False)),
            workers=workers,
        )

    def write(self, path: str | Path) -> None:
        """Write the report as JSON, replacing ``path`` atomically."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f".{path.name}.{os.getpid()}")
        tmp.write_text(json.dumps(self.to_dict(), indent=2), encoding="utf-8")
        tmp.replace(path)

    @classmethod
    def read(cls, path: str | Path) -> StatusReport | None:
        """Load a report written by :meth:`write`; None if missing or corrupt."""
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
            return cls.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError):
            return None
