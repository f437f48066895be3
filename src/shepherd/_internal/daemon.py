"""Detach the master from its controlling terminal."""

from __future__ import annotations

import os
import sys

from shepherd._internal.errors import DaemonizeError


def daemonize() -> int:
    """Fork into the background and start a new session.

    Mirrors ``daemon(nochdir=1, noclose=1)``: the working directory and all
    file descriptors are left untouched. The parent exits immediately.

    Returns:
        The pid of the detached child, which is the caller from now on.

    Raises:
        DaemonizeError: If ``fork`` or ``setsid`` fails.
    """
    sys.stdout.flush()
    sys.stderr.flush()

    try:
        pid = os.fork()
    except OSError as exc:
        msg = f"daemon error: fork failed: {exc}"
        raise DaemonizeError(msg) from exc

    if pid > 0:
        os._exit(0)

    try:
        os.setsid()
    except OSError as exc:
        msg = f"daemon error: setsid failed: {exc}"
        raise DaemonizeError(msg) from exc

    return os.getpid()
