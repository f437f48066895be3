"""Explicit service context shared by the loader, orchestrator and control channel."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from shepherd._internal.config import ConfigSnapshot, load_snapshot
from shepherd._internal.errors import ConfigError
from shepherd._internal.logging import get_logger

logger = get_logger("engine.context")

DEFAULT_PROGRAM = "shepherd"


@dataclass
class ServiceContext:
    """Everything a running service needs to know about itself.

    Built once at startup and handed by reference to every component. Only
    the master's supervision loop replaces ``snapshot``.

    Attributes:
        program_name: Used for file names and process titles.
        run_dir: Base directory for ``etc/`` and ``logs/``.
        confile: Configuration file path.
        pidfile: Pid-file path.
        port_override: Port given on the command line, if any.
        cpu_count: CPU count override for ``worker_processes = auto``.
        snapshot: Active configuration snapshot, once loaded.
        pid: Pid of the master (updated after daemonizing).
    """

    program_name: str
    run_dir: Path
    confile: Path
    pidfile: Path
    port_override: int | None = None
    cpu_count: int | None = None
    snapshot: ConfigSnapshot | None = None
    pid: int = field(default_factory=os.getpid)

    @classmethod
    def create(
        cls,
        program_name: str = DEFAULT_PROGRAM,
        *,
        run_dir: str | Path | None = None,
        confile: str | Path | None = None,
        pidfile: str | Path | None = None,
        port_override: int | None = None,
        cpu_count: int | None = None,
    ) -> ServiceContext:
        """Build a context, filling defaults from the environment.

        Environment variables:
            SHEPHERD_RUN_DIR: Base directory (default: current directory).
            SHEPHERD_PIDFILE: Pid-file path (default: ``<run_dir>/logs/<program>.pid``).

        Returns:
            A context with no snapshot loaded yet.
        """
        base = Path(run_dir or os.environ.get("SHEPHERD_RUN_DIR") or Path.cwd()).resolve()
        pid_path = pidfile or os.environ.get("SHEPHERD_PIDFILE")
        return cls(
            program_name=program_name,
            run_dir=base,
            confile=Path(confile) if confile else base / "etc" / f"{program_name}.conf",
            pidfile=Path(pid_path) if pid_path else base / "logs" / f"{program_name}.pid",
            port_override=port_override if port_override and port_override > 0 else None,
            cpu_count=cpu_count,
        )

    @property
    def default_logfile(self) -> Path:
        return self.run_dir / "logs" / f"{self.program_name}.log"

    @property
    def status_file(self) -> Path:
        """Where the master publishes its latest status report."""
        return self.pidfile.with_name(f"{self.pidfile.name}.status")

    def load_snapshot(self) -> ConfigSnapshot:
        """Parse the config file and make the result the active snapshot.

        Raises:
            ConfigError: If the file cannot be loaded or a value is invalid.
        """
        self.snapshot = self.read_snapshot()
        return self.snapshot

    def read_snapshot(self) -> ConfigSnapshot:
        """Parse the config file without touching the active snapshot.

        The result is numbered one past the active snapshot, if any.

        Raises:
            ConfigError: If the file cannot be loaded or a value is invalid.
        """
        snapshot = load_snapshot(
            self.confile,
            port_override=self.port_override,
            default_logfile=self.default_logfile,
            cpu_count=self.cpu_count,
        )
        if self.snapshot is not None:
            snapshot = snapshot.next_version(self.snapshot)
        return snapshot

    def try_read_snapshot(self) -> ConfigSnapshot | None:
        """Like :meth:`read_snapshot` but log and return None on failure."""
        try:
            return self.read_snapshot()
        except ConfigError as exc:
            logger.error("Reload of %s failed, keeping current config: %s", self.confile, exc)
            return None
