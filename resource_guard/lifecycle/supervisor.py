"""
Process Supervisor
==================

Tracks spawned subprocesses for one guard and owns the escalating
termination protocol:

    RUNNING ──terminate──▶ TERM_REQUESTED ──exit within grace──▶ EXITED
                                   │
                                   └──still alive──kill──▶ FORCE_KILLED

A forced kill (the deadline path) skips the graceful step entirely. Each
process gets one exit watcher and at most one deadline timer; both are torn
down together when the process leaves the active set, whichever way it goes.

Handles may be ``asyncio.subprocess.Process`` or ``subprocess.Popen``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

import psutil

from resource_guard.config.base_config import GuardConfig
from resource_guard.core.error_handling import describe_error
from resource_guard.lifecycle.stats import ActiveProcess, ResourceStats

logger = logging.getLogger(__name__)


# ============================================================================
# STATES
# ============================================================================

class TerminationState(str, Enum):
    """Per-process termination states."""

    RUNNING = "running"
    TERM_REQUESTED = "term_requested"
    EXITED = "exited"
    FORCE_KILLED = "force_killed"


class ExitStatus(str, Enum):
    """Terminal status reported by the exit watcher."""

    EXITED = "exited"
    ERRORED = "errored"


@dataclass
class TrackedProcess:
    """A supervised process and its timers."""

    pid: int
    process: Any
    command: str
    timeout: float = 0.0
    state: TerminationState = TerminationState.RUNNING
    deadline: Optional[asyncio.TimerHandle] = None
    watcher: Optional[asyncio.Task] = None
    termination: Optional[asyncio.Future] = None
    started_at: float = field(default_factory=time.monotonic)

    @property
    def duration(self) -> float:
        return time.monotonic() - self.started_at


# ============================================================================
# PROCESS PROBES AND SIGNALS
# ============================================================================

def get_returncode(proc: Any) -> Optional[int]:
    """Return the exit code if the handle already knows it (reaps Popen)."""
    poll: Optional[Callable[[], Optional[int]]] = getattr(proc, "poll", None)
    if callable(poll):
        return poll()
    return getattr(proc, "returncode", None)


def pid_exists(pid: int) -> bool:
    """Zero-effect existence check; zombies count as gone."""
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True


def is_process_alive(proc: Any) -> bool:
    if get_returncode(proc) is not None:
        return False
    return pid_exists(proc.pid)


async def wait_for_exit(proc: Any, timeout: float, poll_interval: float = 0.05) -> bool:
    """Wait up to ``timeout`` seconds for the process to go away."""
    deadline = time.monotonic() + timeout
    while True:
        if not is_process_alive(proc):
            return True
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        await asyncio.sleep(min(poll_interval, remaining))


def _descendants(pid: int) -> List[psutil.Process]:
    try:
        return psutil.Process(pid).children(recursive=True)
    except psutil.Error:
        return []


def force_kill(proc: Any, kill_tree: bool = True) -> int:
    """
    Deliver the forced signal, optionally to the whole process tree.

    Children are collected before the parent dies, otherwise they are
    reparented and can no longer be found. Returns the number of descendants
    signalled.
    """
    children = _descendants(proc.pid) if kill_tree else []
    proc.kill()

    for child in children:
        try:
            child.kill()
        except psutil.NoSuchProcess:
            pass
        except psutil.Error as e:
            logger.warning(f"Could not kill child process {child.pid}: {e}")

    if children:
        logger.debug(f"Killed {len(children)} descendant(s) of process {proc.pid}")
    return len(children)


async def terminate_with_escalation(
    proc: Any,
    grace_period: float,
    *,
    force: bool = False,
    poll_interval: float = 0.05,
    kill_tree: bool = True,
) -> TerminationState:
    """
    Terminate a process gracefully, escalating to a forced kill.

    Raises whatever the signal delivery raises, except ProcessLookupError
    which means the process is already gone.
    """
    if not is_process_alive(proc):
        return TerminationState.EXITED

    try:
        if not force:
            proc.terminate()
            if await wait_for_exit(proc, grace_period, poll_interval):
                return TerminationState.EXITED
            if not is_process_alive(proc):
                return TerminationState.EXITED

        force_kill(proc, kill_tree=kill_tree)
        return TerminationState.FORCE_KILLED

    except ProcessLookupError:
        return TerminationState.EXITED


# ============================================================================
# SUPERVISOR
# ============================================================================

class ProcessSupervisor:
    """
    Supervises the processes spawned during one unit of work.

    The active set is keyed by pid; a pid appears at most once.
    """

    def __init__(self, stats: ResourceStats, config: Optional[GuardConfig] = None):
        self._stats = stats
        self._config = config or GuardConfig()
        self._processes: Dict[int, TrackedProcess] = {}
        self._longest_lived: Optional[ActiveProcess] = None

        # Strong references for fire-and-forget deadline kills
        self._background_tasks: Set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # Tracking
    # -------------------------------------------------------------------------

    def track(self, proc: Any, command: str, timeout: Optional[float] = None) -> bool:
        """
        Start supervising ``proc``.

        Args:
            proc: Process handle exposing ``pid``, ``terminate()`` and ``kill()``
            command: Command line, for diagnostics
            timeout: Seconds before a forced kill; 0 disables the deadline

        Returns:
            True if the process is now tracked
        """
        pid = getattr(proc, "pid", None)
        if not pid:
            logger.warning(f"Cannot track process without PID: {command}")
            return False

        if pid in self._processes:
            logger.debug(f"Process {pid} is already tracked, ignoring")
            return False

        if timeout is None:
            timeout = self._config.process_timeout

        tracked = TrackedProcess(pid=pid, process=proc, command=command, timeout=timeout)
        self._processes[pid] = tracked
        self._stats.processes_tracked += 1

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(
                f"No running event loop; process {pid} will be probed at teardown"
            )
            return True

        tracked.watcher = loop.create_task(
            self._watch_exit(tracked), name=f"resource-guard-watch-{pid}"
        )
        if timeout > 0:
            tracked.deadline = loop.call_later(timeout, self._on_deadline, pid)

        logger.debug(f"Tracking process {pid}: {command} (timeout={timeout}s)")
        return True

    def untrack(self, pid: int) -> bool:
        """Drop a process whose exit the caller observed itself."""
        if pid not in self._processes:
            return False
        self._handle_exit(pid)
        return True

    def is_tracking(self, pid: int) -> bool:
        return pid in self._processes

    def active_processes(self) -> List[ActiveProcess]:
        return [
            ActiveProcess(pid=pid, command=tracked.command, duration=tracked.duration)
            for pid, tracked in self._processes.items()
        ]

    @property
    def longest_lived(self) -> Optional[ActiveProcess]:
        """Longest lifetime observed among processes that left the active set."""
        return self._longest_lived

    def reset(self) -> None:
        self._longest_lived = None

    # -------------------------------------------------------------------------
    # Observers
    # -------------------------------------------------------------------------

    async def _watch_exit(self, tracked: TrackedProcess) -> None:
        """Fire once with a terminal status when the process ends on its own."""
        status = ExitStatus.EXITED
        try:
            if isinstance(tracked.process, asyncio.subprocess.Process):
                await tracked.process.wait()
            else:
                while is_process_alive(tracked.process):
                    await asyncio.sleep(self._config.poll_interval)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            status = ExitStatus.ERRORED
            logger.error(f"Process {tracked.pid} error: {e}")

        self._handle_exit(tracked.pid, status)

    def _on_deadline(self, pid: int) -> None:
        tracked = self._processes.get(pid)
        if tracked is None:
            return

        logger.warning(f"Process {pid} ({tracked.command}) exceeded timeout, terminating...")
        task = asyncio.ensure_future(self.kill(pid, force=True))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        task.add_done_callback(lambda t, pid=pid: self._on_deadline_kill_done(pid, t))

    def _on_deadline_kill_done(self, pid: int, task: asyncio.Future) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._stats.record_error(f"Timeout kill failed for {pid}: {describe_error(error)}")

    def _handle_exit(self, pid: int, status: ExitStatus = ExitStatus.EXITED) -> None:
        """Remove the process and stop its deadline and watcher."""
        tracked = self._processes.pop(pid, None)
        if tracked is None:
            return

        if tracked.deadline is not None:
            tracked.deadline.cancel()

        watcher = tracked.watcher
        if watcher is not None and not watcher.done() and watcher is not _current_task():
            watcher.cancel()

        duration = tracked.duration
        if self._longest_lived is None or duration > self._longest_lived.duration:
            self._longest_lived = ActiveProcess(pid=pid, command=tracked.command, duration=duration)

        logger.debug(f"Process {pid} ({tracked.command}) {status.value} after {duration:.2f}s")

    # -------------------------------------------------------------------------
    # Termination
    # -------------------------------------------------------------------------

    async def kill(self, pid: int, force: bool = False) -> Optional[TerminationState]:
        """
        Terminate one tracked process.

        Concurrent calls for the same pid share a single termination.

        Returns:
            Final state, or None if the pid is not tracked
        """
        tracked = self._processes.get(pid)
        if tracked is None:
            return None

        if tracked.termination is None:
            tracked.termination = asyncio.ensure_future(self._terminate(tracked, force))
        return await asyncio.shield(tracked.termination)

    async def _terminate(self, tracked: TrackedProcess, force: bool) -> TerminationState:
        pid = tracked.pid
        try:
            if not force:
                tracked.state = TerminationState.TERM_REQUESTED

            tracked.state = await terminate_with_escalation(
                tracked.process,
                self._config.grace_period,
                force=force,
                poll_interval=self._config.poll_interval,
                kill_tree=self._config.kill_process_tree,
            )

            if tracked.state is TerminationState.FORCE_KILLED:
                self._stats.processes_killed += 1
                logger.info(f"Force killed process {pid} ({tracked.command})")

        except Exception as e:
            self._stats.record_error(f"Failed to kill process {pid}: {describe_error(e)}")
            logger.error(f"Failed to kill process {pid}: {e}")
        finally:
            self._handle_exit(pid)

        return tracked.state

    async def kill_all(self) -> None:
        """Terminate every tracked process; one failure never delays another."""
        pids = list(self._processes)
        if not pids:
            return

        logger.info(f"Terminating {len(pids)} tracked process(es)...")
        results = await asyncio.gather(
            *[self.kill(pid) for pid in pids],
            return_exceptions=True,
        )

        for pid, result in zip(pids, results):
            if isinstance(result, Exception):
                self._stats.record_error(f"Failed to kill process {pid}: {describe_error(result)}")
                self._handle_exit(pid)


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None
