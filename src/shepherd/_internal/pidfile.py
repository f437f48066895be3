"""Pid-file handling used to address a running master."""

from __future__ import annotations

import contextlib
import os
from pathlib import Path

from shepherd._internal.logging import get_logger

logger = get_logger("pidfile")


def write_pidfile(path: str | Path, pid: int | None = None) -> int:
    """Write ``pid`` (default: the current process) to ``path`` atomically.

    Args:
        path: Pid-file location. Parent directories are created.
        pid: Process id to record.

    Returns:
        The pid that was written.
    """
    path = Path(path)
    pid = pid if pid is not None else os.getpid()
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{os.getpid()}")
    tmp.write_text(f"{pid}\n", encoding="ascii")
    tmp.replace(path)
    logger.debug("Wrote pid file %s (pid=%d)", path, pid)
    return pid


def read_pidfile(path: str | Path) -> int | None:
    """Return the pid stored in ``path``, or None if absent or garbage."""
    try:
        raw = Path(path).read_text(encoding="ascii").strip()
    except (OSError, UnicodeDecodeError):
        return None
    try:
        pid = int(raw)
    except ValueError:
        logger.warning("Ignoring malformed pid file %s: %r", path, raw)
        return None
    return pid if pid > 0 else None


def is_process_alive(pid: int) -> bool:
    """Probe ``pid`` with signal 0.

    A process owned by another user still counts as alive.
    """
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def running_pid(path: str | Path) -> int | None:
    """Return the pid from ``path`` if that process is alive.

    A stale pid file (recorded process gone) yields None.
    """
    pid = read_pidfile(path)
    if pid is None:
        return None
    if not is_process_alive(pid):
        logger.debug("Stale pid file %s (pid=%d not running)", path, pid)
        return None
    return pid


def remove_pidfile(path: str | Path, pid: int | None = None) -> bool:
    """Remove the pid file if it still belongs to ``pid``.

    Args:
        path: Pid-file location.
        pid: Expected owner. When given and the file records a different
            pid (a newer master took over), the file is left alone.

    Returns:
        True if the file was removed.
    """
    path = Path(path)
    if pid is not None and read_pidfile(path) != pid:
        return False
    with contextlib.suppress(FileNotFoundError):
        path.unlink()
        logger.debug("Removed pid file %s", path)
        return True
    return False
