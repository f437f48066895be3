"""Worker runtime: runs the user entry function inside a worker process."""

from __future__ import annotations

import collections
import signal
import sys
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from setproctitle import setproctitle

from shepherd._internal.logging import get_logger, reopen_log_files
from shepherd.engine.protocol import RELOAD_SIGNAL

if TYPE_CHECKING:
    from collections.abc import Mapping

    from shepherd._internal.types import Callback, EntryFunction

logger = get_logger("engine.worker")

EXIT_SIGNALS = (signal.SIGTERM, signal.SIGINT, signal.SIGQUIT)

# Signals that mean something to a master but nothing to a worker.
_MASTER_ONLY_SIGNALS = (signal.SIGHUP, signal.SIGUSR2)


class _Shutdown(BaseException):
    """Raised on the main thread by an exit signal.

    Derives from BaseException so an entry function's ``except Exception``
    cannot swallow it.
    """


@dataclass(frozen=True)
class WorkerSpec:
    """Everything a worker process needs to run.

    Attributes:
        entry: User entry function, called as ``entry(arg)``.
        arg: Opaque argument for ``entry``.
        thread_count: Threads running ``entry``; 0 runs it on the main thread.
        index: Slot index assigned by the master.
        program_name: Used in the process title.
        on_reload: Optional extra hook run after log files are reopened.
    """

    entry: EntryFunction
    arg: Any = None
    thread_count: int = 0
    index: int = 0
    program_name: str = "shepherd"
    on_reload: Callback | None = None


class WorkerRuntime:
    """Runs an entry function until it finishes or an exit signal arrives.

    Exit signals (SIGTERM, SIGINT, SIGQUIT) stop the runtime on the main
    thread. Any signal listed in ``deferred`` only records that it arrived;
    a background control thread later runs the matching callback, so no
    real work ever happens in signal context.

    Attributes:
        entry: User entry function.
        arg: Argument passed to ``entry``.
        thread_count: Number of worker threads, 0 for main-thread mode.
    """

    def __init__(
        self,
        entry: EntryFunction,
        arg: Any = None,
        *,
        thread_count: int = 0,
        name: str = "worker",
        deferred: Mapping[signal.Signals, Callback] | None = None,
        poll_interval: float = 0.2,
    ) -> None:
        """Initialize the runtime.

        Args:
            entry: User entry function, called as ``entry(arg)``.
            arg: Opaque argument for ``entry``.
            thread_count: Threads running ``entry``; 0 runs it on the main thread.
            name: Prefix for thread names.
            deferred: Signal → callback map handled off the signal path.
            poll_interval: How often the control thread checks for work.
        """
        self.entry = entry
        self.arg = arg
        self.thread_count = thread_count
        self._name = name
        self._deferred = dict(deferred or {})
        self._poll_interval = poll_interval
        self._pending: collections.deque[int] = collections.deque(maxlen=16)
        self._crashed: list[str] = []
        self._done = threading.Event()

    def run(self) -> int:
        """Run the entry function and return a process exit code.

        Must be called from the main thread, which owns signal handling.

        Returns:
            0 on a clean finish or exit signal, 1 if every worker thread has
            finished and at least one of them raised.

        Raises:
            Exception: Whatever ``entry`` raises in main-thread mode.
        """
        self._install_signals()
        control = threading.Thread(
            target=self._control_loop, name=f"{self._name}-control", daemon=True
        )
        control.start()
        try:
            if self.thread_count <= 0:
                self.entry(self.arg)
                return 0
            return self._run_threads()
        except _Shutdown:
            logger.info("%s: exit signal received, shutting down", self._name)
            return 0
        finally:
            self._done.set()

    def _install_signals(self) -> None:
        signal.set_wakeup_fd(-1)
        signal.signal(signal.SIGCHLD, signal.SIG_DFL)
        for sig in EXIT_SIGNALS:
            signal.signal(sig, self._handle_exit)
        for sig in _MASTER_ONLY_SIGNALS:
            signal.signal(sig, signal.SIG_IGN)
        for sig in self._deferred:
            signal.signal(sig, self._handle_deferred)
        # A forking master blocks these around fork(); deliver anything queued now.
        signal.pthread_sigmask(
            signal.SIG_UNBLOCK, {*EXIT_SIGNALS, *_MASTER_ONLY_SIGNALS, *self._deferred}
        )

    def _handle_exit(self, signum: int, _frame: object) -> None:
        raise _Shutdown

    def _handle_deferred(self, signum: int, _frame: object) -> None:
        self._pending.append(signum)

    def _control_loop(self) -> None:
        while not self._done.wait(self._poll_interval):
            while self._pending:
                signum = self._pending.popleft()
                callback = self._deferred.get(signal.Signals(signum))
                if callback is None:
                    continue
                try:
                    callback()
                except Exception:
                    logger.exception(
                        "%s: handler for %s failed", self._name, signal.Signals(signum).name
                    )

    def _run_threads(self) -> int:
        threads = [
            threading.Thread(
                target=self._thread_main,
                name=f"{self._name}-thread-{i}",
                daemon=True,
            )
            for i in range(self.thread_count)
        ]
        for t in threads:
            t.start()
        logger.debug("%s: started %d threads", self._name, len(threads))

        for t in threads:
            while t.is_alive():
                t.join(self._poll_interval)

        if self._crashed:
            logger.error(
                "%s: all threads finished, %d crashed", self._name, len(self._crashed)
            )
            return 1
        return 0

    def _thread_main(self) -> None:
        try:
            self.entry(self.arg)
        except Exception:
            self._crashed.append(threading.current_thread().name)
            logger.exception("%s: %s crashed", self._name, threading.current_thread().name)


def run_worker_process(spec: WorkerSpec) -> None:
    """Entry point for a forked worker process.

    Sets the process title, installs the worker's own reload handler (which
    reopens log files and then calls ``spec.on_reload``) and runs the entry
    function. A crash surfaces to the master only as a non-zero exit status.

    Args:
        spec: What to run and how.
    """
    setproctitle(f"{spec.program_name}: worker process")

    def _on_reload() -> None:
        reopened = reopen_log_files()
        logger.info("Worker %d: reload signal handled (%d log files reopened)", spec.index, reopened)
        if spec.on_reload is not None:
            spec.on_reload()

    runtime = WorkerRuntime(
        spec.entry,
        spec.arg,
        thread_count=spec.thread_count,
        name=f"worker-{spec.index}",
        deferred={RELOAD_SIGNAL: _on_reload},
    )

    try:
        code = runtime.run()
    except Exception:
        logger.exception("Worker %d: failed", spec.index)
        code = 1

    sys.stdout.flush()
    sys.stderr.flush()
    if code:
        sys.exit(code)
