"""Master orchestrator: owns the worker topology and reacts to control commands."""

from __future__ import annotations

import collections
import contextlib
import multiprocessing
import multiprocessing.connection
import os
import signal
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from setproctitle import setproctitle

from shepherd._internal.errors import OrchestratorError
from shepherd._internal.logging import apply_log_settings, get_logger, reopen_log_files
from shepherd.engine.protocol import (
    COMMAND_SIGNALS,
    RELOAD_SIGNAL,
    SIGNAL_COMMANDS,
    ControlCommand,
    ProcessIdentity,
    Role,
    StatusReport,
    WorkerInfo,
    WorkerStatus,
)
from shepherd.engine.respawn import RespawnPolicy
from shepherd.engine.worker import WorkerRuntime, WorkerSpec, run_worker_process

if TYPE_CHECKING:
    import multiprocessing.process

    from shepherd._internal.config import ConfigSnapshot
    from shepherd._internal.types import Callback, EntryFunction
    from shepherd.engine.context import ServiceContext

logger = get_logger("engine.orchestrator")

# Pending control commands beyond this are dropped.
SIG_QUEUE_MAX = 5

# Time a SIGKILLed worker gets to be reaped.
_KILL_REAP_TIMEOUT = 5.0


@dataclass
class WorkerSlot:
    """One supervised worker position.

    A slot outlives the processes that fill it: when its worker dies the
    slot is respawned in place, keeping its index.

    Attributes:
        index: Stable slot number.
        thread_count: Threads the slot's worker runs.
        process: Current worker process, None when nothing is running.
        status: Lifecycle state.
        pid: Pid of the most recent worker (kept after it exits for logging).
        start_time: Wall-clock spawn time of the current worker.
        started_at: Monotonic spawn time, used for uptime.
        consecutive_failures: Quick exits in a row.
        next_spawn_at: Monotonic time a respawn is due, None if not scheduled.
        parked: True once the respawn policy gave up on this slot.
        last_exitcode: Exit code of the previous worker.
    """

    index: int
    thread_count: int
    process: multiprocessing.process.BaseProcess | None = None
    status: WorkerStatus = WorkerStatus.STOPPED
    pid: int | None = None
    start_time: float = 0.0
    started_at: float = 0.0
    consecutive_failures: int = 0
    next_spawn_at: float | None = None
    parked: bool = False
    last_exitcode: int | None = None

    @property
    def is_alive(self) -> bool:
        return self.process is not None and self.process.is_alive()

    @property
    def identity(self) -> ProcessIdentity | None:
        if not self.is_alive or self.pid is None:
            return None
        return ProcessIdentity(pid=self.pid, role=Role.WORKER, start_time=self.start_time)


class MasterOrchestrator:
    """Supervises a pool of worker processes for one service.

    The orchestrator is single-threaded. Signal handlers only append a
    ControlCommand to a bounded queue and wake the loop through a pipe
    registered with ``signal.set_wakeup_fd``; the loop then applies the
    command. Once a stop has been dequeued no later command can bring
    workers back until the next ``launch``.

    Attributes:
        context: Shared service context; ``context.snapshot`` is the active config.
        policy: Crash-loop respawn policy.
        identity: The master's own process identity.
    """

    def __init__(
        self,
        context: ServiceContext,
        *,
        policy: RespawnPolicy | None = None,
        poll_interval: float = 1.0,
        confirm_timeout: float = 0.5,
        on_worker_reload: Callback | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            context: Service context holding a loaded snapshot.
            policy: Respawn policy. Defaults to ``RespawnPolicy()``.
            poll_interval: Longest the loop sleeps without an event.
            confirm_timeout: How long a new worker must stay alive before a
                rolling replacement stops the worker it replaces.
            on_worker_reload: Run inside each worker after it handles the
                reload signal and reopens its log files.

        Raises:
            OrchestratorError: If the context has no snapshot loaded.
        """
        if context.snapshot is None:
            msg = "ServiceContext has no configuration snapshot loaded"
            raise OrchestratorError(msg)

        self.context = context
        self.policy = policy or RespawnPolicy()
        self.identity = ProcessIdentity(pid=os.getpid(), role=Role.MASTER, start_time=time.time())
        self._poll_interval = poll_interval
        self._confirm_timeout = confirm_timeout
        self._on_worker_reload = on_worker_reload

        self._ctx = multiprocessing.get_context("fork")
        self._slots: list[WorkerSlot] = []
        self._next_index = 0
        self._pending: collections.deque[ControlCommand] = collections.deque()
        self._stop_requested = False
        self._entry: EntryFunction | None = None
        self._arg: Any = None
        self._stopping = False
        self._inline = False
        self._wakeup: tuple[int, int] | None = None
        self._saved_handlers: dict[signal.Signals, Any] = {}

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> ConfigSnapshot:
        """The active configuration snapshot."""
        if self.context.snapshot is None:
            msg = "ServiceContext lost its configuration snapshot"
            raise OrchestratorError(msg)
        return self.context.snapshot

    @property
    def slots(self) -> tuple[WorkerSlot, ...]:
        return tuple(self._slots)

    @property
    def worker_count(self) -> int:
        """Number of live worker processes."""
        return sum(1 for s in self._slots if s.is_alive)

    @property
    def stopping(self) -> bool:
        return self._stopping

    @property
    def inline(self) -> bool:
        return self._inline

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(
        self,
        entry: EntryFunction,
        arg: Any = None,
        snapshot: ConfigSnapshot | None = None,
    ) -> int:
        """Spawn the configured workers and supervise them until stopped.

        With ``worker_process_count == 0`` the master runs the workload
        itself (inline mode) and returns when the workload ends or an exit
        signal arrives.

        Args:
            entry: User entry function, called as ``entry(arg)``.
            arg: Opaque argument for ``entry``.
            snapshot: Optional snapshot replacing the context's one.

        Returns:
            Process exit code for the master.
        """
        if snapshot is not None:
            self.context.snapshot = snapshot
        setproctitle(f"{self.context.program_name}: master process")

        if self.snapshot.worker_process_count == 0:
            return self._run_inline(entry, arg)

        self._install_signals()
        try:
            self.launch(entry, arg)
            while not self._stopping:
                self.supervise_once()
        finally:
            self.stop()
            self._restore_signals()

        logger.info("Master %d exiting", self.identity.pid)
        return 0

    def launch(self, entry: EntryFunction, arg: Any = None) -> None:
        """Spawn the configured topology without blocking.

        Raises:
            OrchestratorError: If workers from an earlier launch are alive.
        """
        if self.worker_count:
            msg = f"{self.worker_count} workers are already running"
            raise OrchestratorError(msg)

        self._entry = entry
        self._arg = arg
        self._stopping = False
        self._stop_requested = False
        self._slots = []
        self._spawn_topology()

        snap = self.snapshot
        logger.info(
            "Started %d worker processes x %d threads (port=%d, config v%d)",
            snap.worker_process_count,
            snap.worker_thread_count,
            snap.listen_port,
            snap.version,
        )
        self._publish_status()

    def supervise_once(self, timeout: float | None = None) -> None:
        """Run one scheduling step of the supervision loop.

        Waits for a worker exit, a control command or ``timeout``, then
        applies pending commands, reaps dead workers and starts any
        respawn that has come due.

        Args:
            timeout: Longest wait in seconds. Defaults to the poll interval,
                shortened when a respawn is due sooner.
        """
        self._wait_for_event(timeout)
        self._dispatch_pending()
        if self._stopping:
            return

        changed = self._reap_workers()
        changed = self._spawn_due() or changed
        self._promote_started()
        if changed:
            self._publish_status()

    def request(self, command: ControlCommand) -> None:
        """Queue a control command for the supervision loop.

        Safe to call from a signal handler: it only appends to a bounded
        queue and pokes the wakeup pipe. A stop is recorded in a flag that
        the queue bound never applies to.
        """
        self._enqueue(command)
        if self._wakeup is not None:
            with contextlib.suppress(BlockingIOError, OSError):
                os.write(self._wakeup[1], b"\0")

    def reload(self, snapshot: ConfigSnapshot) -> bool:
        """Swap in a new snapshot and converge the topology to it.

        Excess workers are stopped first, then workers whose thread count
        changed are replaced one at a time (the replacement must come up
        before its predecessor is stopped), then missing workers are
        spawned. Live workers that survive the reload get the reload
        signal so they can reopen their logs.

        Args:
            snapshot: Fully validated replacement snapshot.

        Returns:
            False if the reload was ignored because a stop is in progress.
        """
        if self._stopping:
            logger.warning("Ignoring reload to config v%d: stop in progress", snapshot.version)
            return False

        previous = self.snapshot
        self.context.snapshot = snapshot
        if snapshot.log != previous.log:
            apply_log_settings(snapshot.log)

        if self._inline:
            reopen_log_files()
            if not snapshot.same_topology(previous):
                logger.warning(
                    "Inline mode: worker_processes/worker_threads changes need a restart"
                )
            self._publish_status()
            return True

        survivors = {s.pid for s in self._slots if s.is_alive}
        for slot in self._slots:
            if slot.parked:
                slot.parked = False
                slot.consecutive_failures = 0
                slot.next_spawn_at = time.monotonic()

        if self._entry is not None:
            self._converge(snapshot)

        for slot in self._slots:
            if slot.is_alive and slot.pid in survivors:
                with contextlib.suppress(ProcessLookupError):
                    os.kill(slot.pid, RELOAD_SIGNAL)

        logger.info(
            "Reloaded config v%d: %d worker processes x %d threads",
            snapshot.version,
            snapshot.worker_process_count,
            snapshot.worker_thread_count,
        )
        self._publish_status()
        return True

    def stop(self) -> None:
        """Stop every worker: SIGTERM, bounded wait, then SIGKILL.

        Sets the stop intent, which blocks further reloads and respawns.
        """
        self._stopping = True
        live = [s for s in self._slots if s.is_alive]
        if live:
            logger.info("Stopping %d workers", len(live))
        self._stop_slots(self._slots)
        self._publish_status()

    def restart(self) -> None:
        """Stop all workers and start a fresh set with the current snapshot."""
        if self._stopping:
            logger.warning("Ignoring restart: stop in progress")
            return
        if self._entry is None:
            msg = "restart() called before launch()"
            raise OrchestratorError(msg)

        logger.info("Restarting %d workers", len(self._slots))
        self._stop_slots(self._slots)
        self._slots = []
        self._spawn_topology()
        self._publish_status()

    def status(self) -> StatusReport:
        """Return a read-only view of the master and its workers."""
        snap = self.snapshot
        return StatusReport(
            master_pid=self.identity.pid,
            program=self.context.program_name,
            port=snap.listen_port,
            worker_process_count=snap.worker_process_count,
            worker_thread_count=snap.worker_thread_count,
            config_version=snap.version,
            inline=self._inline,
            workers=tuple(
                WorkerInfo(
                    index=s.index,
                    pid=s.pid if s.is_alive else None,
                    status=s.status,
                    threads=s.thread_count,
                )
                for s in self._slots
            ),
        )

    # ------------------------------------------------------------------
    # Command dispatch
    # ------------------------------------------------------------------

    def _enqueue(self, command: ControlCommand) -> None:
        if command is ControlCommand.STOP:
            self._stop_requested = True
        elif len(self._pending) < SIG_QUEUE_MAX:
            self._pending.append(command)

    def _dispatch_pending(self) -> None:
        commands: list[ControlCommand] = []
        while self._pending:
            commands.append(self._pending.popleft())

        if self._stop_requested and not self._stopping:
            if commands:
                logger.info("Stop requested, discarding %d other pending commands", len(commands))
            self.stop()
            return

        for command in commands:
            if self._stopping or self._stop_requested:
                logger.info("Ignoring %s: stop in progress", command.value)
            elif command is ControlCommand.RELOAD:
                self._reload_from_config()
            elif command is ControlCommand.RESTART:
                self.restart()
            elif command is ControlCommand.STATUS:
                report = self.status()
                logger.info(
                    "Status: %d/%d workers alive, %d threads each, port %d",
                    report.live_workers,
                    report.worker_process_count,
                    report.worker_thread_count,
                    report.port,
                )
                self._publish_status()
            else:
                logger.debug("Ignoring %s: master already running", command.value)

        # A stop may arrive while the batch above is being applied.
        if self._stop_requested and not self._stopping:
            self.stop()

    def _reload_from_config(self) -> None:
        logger.info("Reload confile [%s]", self.context.confile)
        snapshot = self.context.try_read_snapshot()
        if snapshot is not None:
            self.reload(snapshot)

    # ------------------------------------------------------------------
    # Topology
    # ------------------------------------------------------------------

    def _new_slot(self, thread_count: int, index: int | None = None) -> WorkerSlot:
        if index is None:
            index = self._next_index
            self._next_index += 1
        return WorkerSlot(index=index, thread_count=thread_count)

    def _spawn_topology(self) -> None:
        snap = self.snapshot
        for _ in range(snap.worker_process_count):
            slot = self._new_slot(snap.worker_thread_count)
            self._slots.append(slot)
            self._spawn(slot)

    def _converge(self, snapshot: ConfigSnapshot) -> None:
        target = snapshot.worker_process_count

        if len(self._slots) > target:
            # Keep live workers in preference to dead or parked ones.
            ranked = sorted(self._slots, key=lambda s: (not s.is_alive, s.index))
            keep = {id(s) for s in ranked[:target]}
            excess = [s for s in self._slots if id(s) not in keep]
            self._slots = [s for s in self._slots if id(s) in keep]
            logger.info("Scaling down: stopping %d workers", len(excess))
            self._stop_slots(excess)

        for position, slot in enumerate(list(self._slots)):
            if slot.thread_count != snapshot.worker_thread_count:
                self._replace_slot(position, slot, snapshot.worker_thread_count)

        if len(self._slots) < target:
            logger.info("Scaling up: starting %d workers", target - len(self._slots))
        while len(self._slots) < target:
            slot = self._new_slot(snapshot.worker_thread_count)
            self._slots.append(slot)
            self._spawn(slot)

    def _replace_slot(self, position: int, old: WorkerSlot, thread_count: int) -> None:
        replacement = self._new_slot(thread_count, index=old.index)
        self._spawn(replacement)

        if not self._confirm(replacement):
            logger.error(
                "Replacement for worker %d exited on startup (code %s), keeping pid %s",
                old.index,
                replacement.last_exitcode,
                old.pid,
            )
            return

        self._slots[position] = replacement
        self._stop_slots([old])
        logger.info(
            "Replaced worker %d: pid %s -> %s (%d threads)",
            old.index,
            old.pid,
            replacement.pid,
            thread_count,
        )

    def _confirm(self, slot: WorkerSlot) -> bool:
        """Wait ``confirm_timeout`` and report whether the worker is still up."""
        process = slot.process
        if process is None:
            return False
        process.join(self._confirm_timeout)
        if process.exitcode is None:
            slot.status = WorkerStatus.RUNNING
            return True
        self._release(slot)
        return False

    def _spawn(self, slot: WorkerSlot) -> None:
        if self._entry is None:
            msg = "Cannot spawn a worker before launch()"
            raise OrchestratorError(msg)
        spec = WorkerSpec(
            entry=self._entry,
            arg=self._arg,
            thread_count=slot.thread_count,
            index=slot.index,
            program_name=self.context.program_name,
            on_reload=self._on_worker_reload,
        )
        process = self._ctx.Process(
            target=run_worker_process,
            args=(spec,),
            name=f"{self.context.program_name}-worker-{slot.index}",
            daemon=False,
        )

        # Keep handled signals pending across fork until the worker has
        # installed its own handlers.
        handled = set(SIGNAL_COMMANDS)
        signal.pthread_sigmask(signal.SIG_BLOCK, handled)
        try:
            process.start()
        finally:
            signal.pthread_sigmask(signal.SIG_UNBLOCK, handled)

        slot.process = process
        slot.pid = process.pid
        slot.status = WorkerStatus.STARTING
        slot.start_time = time.time()
        slot.started_at = time.monotonic()
        slot.next_spawn_at = None
        logger.debug(
            "Spawned worker %d: pid=%s threads=%d", slot.index, process.pid, slot.thread_count
        )

    def _stop_slots(self, slots: list[WorkerSlot]) -> None:
        timeout = self.snapshot.graceful_timeout
        live = [(s, s.process) for s in slots if s.process is not None and s.process.is_alive()]
        for slot, process in live:
            slot.status = WorkerStatus.STOPPING
            process.terminate()

        deadline = time.monotonic() + timeout
        for _slot, process in live:
            process.join(max(0.0, deadline - time.monotonic()))

        for slot, process in live:
            if process.is_alive():
                logger.warning(
                    "Worker %d (pid %s) did not exit within %.1fs, killing",
                    slot.index,
                    slot.pid,
                    timeout,
                )
                process.kill()
                process.join(_KILL_REAP_TIMEOUT)

        for slot in slots:
            self._release(slot)
            slot.status = WorkerStatus.STOPPED
            slot.next_spawn_at = None

    def _release(self, slot: WorkerSlot) -> None:
        """Forget a finished worker process, keeping its exit code."""
        process = slot.process
        if process is None or process.exitcode is None:
            return
        slot.last_exitcode = process.exitcode
        slot.status = WorkerStatus.STOPPED
        slot.process = None
        process.close()

    # ------------------------------------------------------------------
    # Supervision
    # ------------------------------------------------------------------

    def _reap_workers(self) -> bool:
        now = time.monotonic()
        reaped = False
        for slot in self._slots:
            if slot.process is None or slot.process.is_alive():
                continue

            uptime = now - slot.started_at
            self._release(slot)
            reaped = True
            slot.consecutive_failures = self.policy.failures_after_exit(
                slot.consecutive_failures, uptime
            )

            if self.policy.exhausted(slot.consecutive_failures):
                slot.parked = True
                slot.next_spawn_at = None
                logger.error(
                    "Worker %d (pid %s) failed %d times in a row, not respawning until reload",
                    slot.index,
                    slot.pid,
                    slot.consecutive_failures,
                )
                continue

            delay = self.policy.delay(slot.consecutive_failures)
            slot.next_spawn_at = now + delay
            logger.warning(
                "Worker %d (pid %s) exited with code %s after %.1fs, respawning in %.1fs",
                slot.index,
                slot.pid,
                slot.last_exitcode,
                uptime,
                delay,
            )
        return reaped

    def _spawn_due(self) -> bool:
        now = time.monotonic()
        spawned = False
        for slot in self._slots:
            if (
                slot.process is None
                and not slot.parked
                and slot.next_spawn_at is not None
                and slot.next_spawn_at <= now
            ):
                self._spawn(slot)
                spawned = True
        return spawned

    def _promote_started(self) -> None:
        now = time.monotonic()
        for slot in self._slots:
            if (
                slot.status is WorkerStatus.STARTING
                and slot.is_alive
                and now - slot.started_at >= self._confirm_timeout
            ):
                slot.status = WorkerStatus.RUNNING

    def _wait_for_event(self, timeout: float | None) -> None:
        if self._pending or (self._stop_requested and not self._stopping):
            timeout = 0.0
        elif timeout is None:
            timeout = self._poll_interval
            now = time.monotonic()
            for slot in self._slots:
                if slot.next_spawn_at is not None and slot.process is None and not slot.parked:
                    timeout = min(timeout, max(0.0, slot.next_spawn_at - now))
                if slot.status is WorkerStatus.STARTING:
                    timeout = min(timeout, self._confirm_timeout)

        waitables: list[Any] = [s.process.sentinel for s in self._slots if s.process is not None]
        if self._wakeup is not None:
            waitables.append(self._wakeup[0])

        if not waitables:
            time.sleep(timeout)
            return

        ready = multiprocessing.connection.wait(waitables, timeout)
        if self._wakeup is not None and self._wakeup[0] in ready:
            self._drain_wakeup()

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def _install_signals(self) -> None:
        read_fd, write_fd = os.pipe()
        os.set_blocking(read_fd, False)
        os.set_blocking(write_fd, False)
        self._wakeup = (read_fd, write_fd)
        signal.set_wakeup_fd(write_fd)
        for sig in SIGNAL_COMMANDS:
            self._saved_handlers[sig] = signal.signal(sig, self._handle_signal)

    def _restore_signals(self) -> None:
        for sig, handler in self._saved_handlers.items():
            signal.signal(sig, handler)
        self._saved_handlers.clear()
        if self._wakeup is not None:
            signal.set_wakeup_fd(-1)
            for fd in self._wakeup:
                os.close(fd)
            self._wakeup = None

    def _handle_signal(self, signum: int, _frame: object) -> None:
        command = SIGNAL_COMMANDS.get(signal.Signals(signum))
        if command is not None:
            self._enqueue(command)

    def _drain_wakeup(self) -> None:
        if self._wakeup is None:
            return
        read_fd = self._wakeup[0]
        while True:
            try:
                if not os.read(read_fd, 512):
                    return
            except BlockingIOError:
                return

    # ------------------------------------------------------------------
    # Inline mode
    # ------------------------------------------------------------------

    def _run_inline(self, entry: EntryFunction, arg: Any) -> int:
        self._inline = True
        self._entry = entry
        self._arg = arg
        logger.info(
            "worker_processes = 0: running workload in master pid %d with %d threads",
            self.identity.pid,
            self.snapshot.worker_thread_count,
        )
        self._publish_status()
        runtime = WorkerRuntime(
            entry,
            arg,
            thread_count=self.snapshot.worker_thread_count,
            name="master",
            deferred={
                RELOAD_SIGNAL: self._reload_from_config,
                # The workload lives in this process, so restart re-reads the
                # configuration the same way reload does.
                COMMAND_SIGNALS[ControlCommand.RESTART]: self._reload_from_config,
                COMMAND_SIGNALS[ControlCommand.STATUS]: self._publish_status,
            },
        )
        code = runtime.run()
        logger.info("Master %d exiting (inline workload finished)", self.identity.pid)
        return code

    def _publish_status(self) -> None:
        try:
            self.status().write(self.context.status_file)
        except OSError as exc:
            logger.warning("Could not write status file %s: %s", self.context.status_file, exc)
