# tests/test_supervisor.py
"""Tests for the process supervisor.

Covers tracking, exit observation, deadline kills and the escalating
terminate-then-kill protocol, using real child processes.
"""

from __future__ import annotations

import asyncio
import logging
import os
import subprocess

import pytest

from resource_guard.lifecycle.stats import ResourceStats
from resource_guard.lifecycle.supervisor import (
    ProcessSupervisor,
    TerminationState,
    is_process_alive,
    pid_exists,
    terminate_with_escalation,
)


# =========================================================================
# Helpers
# =========================================================================

IGNORES_TERM = "trap '' TERM; echo ready; while true; do sleep 0.1; done"


async def _spawn(*argv, **kwargs):
    kwargs.setdefault("stdout", asyncio.subprocess.DEVNULL)
    return await asyncio.create_subprocess_exec(*argv, **kwargs)


async def _spawn_term_ignoring():
    """Start a shell that ignores SIGTERM and wait until the trap is set."""
    proc = await asyncio.create_subprocess_exec(
        "sh", "-c", IGNORES_TERM, stdout=asyncio.subprocess.PIPE
    )
    await asyncio.wait_for(proc.stdout.readline(), timeout=5)
    return proc


async def _wait_untracked(supervisor, pid, timeout=5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while supervisor.is_tracking(pid):
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"process {pid} still tracked after {timeout}s")
        await asyncio.sleep(0.02)


class _NoPid:
    pid = None


class _UnkillableHandle:
    """Looks alive, but refuses every signal."""

    def __init__(self):
        self.pid = os.getpid()

    def poll(self):
        return None

    def terminate(self):
        raise PermissionError("operation not permitted")

    def kill(self):
        raise PermissionError("operation not permitted")


@pytest.fixture
def stats():
    return ResourceStats()


@pytest.fixture
def supervisor(stats, fast_config):
    return ProcessSupervisor(stats, fast_config)


# =========================================================================
# Probes
# =========================================================================

class TestProbes:
    """Verify the zero-effect liveness checks."""

    def test_current_process_exists(self):
        assert pid_exists(os.getpid()) is True

    def test_reaped_process_is_gone(self):
        proc = subprocess.Popen(["true"])
        proc.wait()

        assert is_process_alive(proc) is False
        assert pid_exists(proc.pid) is False


# =========================================================================
# Tracking
# =========================================================================

class TestTracking:
    """Verify what gets into the active set."""

    @pytest.mark.asyncio
    async def test_tracks_process(self, supervisor, stats):
        proc = await _spawn("sleep", "5")

        assert supervisor.track(proc, "sleep 5", timeout=0) is True
        assert supervisor.is_tracking(proc.pid)
        assert stats.processes_tracked == 1

        active = supervisor.active_processes()
        assert len(active) == 1
        assert active[0].pid == proc.pid
        assert active[0].command == "sleep 5"
        assert active[0].duration >= 0

        await supervisor.kill_all()
        await proc.wait()

    @pytest.mark.asyncio
    async def test_rejects_handle_without_pid(self, supervisor, stats, caplog):
        caplog.set_level(logging.WARNING)

        assert supervisor.track(_NoPid(), "ghost") is False
        assert stats.processes_tracked == 0
        assert "Cannot track process without PID: ghost" in caplog.text

    @pytest.mark.asyncio
    async def test_duplicate_pid_tracked_once(self, supervisor, stats):
        proc = await _spawn("sleep", "5")

        assert supervisor.track(proc, "sleep 5", timeout=0) is True
        assert supervisor.track(proc, "sleep 5", timeout=0) is False
        assert stats.processes_tracked == 1
        assert len(supervisor.active_processes()) == 1

        await supervisor.kill_all()
        await proc.wait()

    def test_untrack_after_external_wait(self, supervisor):
        proc = subprocess.Popen(["true"])
        supervisor.track(proc, "true")
        proc.wait()

        assert supervisor.untrack(proc.pid) is True
        assert supervisor.untrack(proc.pid) is False
        assert supervisor.active_processes() == []
        assert supervisor.longest_lived.pid == proc.pid

    def test_tracks_without_running_loop(self, supervisor, stats):
        proc = subprocess.Popen(["sleep", "5"])

        assert supervisor.track(proc, "sleep 5") is True
        assert stats.processes_tracked == 1

        asyncio.run(supervisor.kill_all())

        assert proc.returncode is not None
        assert not supervisor.is_tracking(proc.pid)


# =========================================================================
# Exit observation
# =========================================================================

class TestExitObservation:
    """Verify natural exits leave the active set on their own."""

    @pytest.mark.asyncio
    async def test_natural_exit_removes_process(self, supervisor, stats):
        proc = await _spawn("echo", "hello")
        supervisor.track(proc, "echo hello", timeout=10)

        await proc.wait()
        await _wait_untracked(supervisor, proc.pid)

        assert supervisor.active_processes() == []
        assert stats.processes_killed == 0
        assert stats.errors == []

    @pytest.mark.asyncio
    async def test_natural_exit_cancels_deadline(self, supervisor, stats):
        proc = await _spawn("true")
        supervisor.track(proc, "true", timeout=0.3)

        await proc.wait()
        await _wait_untracked(supervisor, proc.pid)
        await asyncio.sleep(0.5)

        assert stats.processes_killed == 0

    @pytest.mark.asyncio
    async def test_records_longest_lived(self, supervisor):
        proc = await _spawn("sleep", "0.2")
        supervisor.track(proc, "sleep 0.2", timeout=0)

        await proc.wait()
        await _wait_untracked(supervisor, proc.pid)

        longest = supervisor.longest_lived
        assert longest is not None
        assert longest.pid == proc.pid
        assert longest.duration >= 0.1


# =========================================================================
# Deadlines
# =========================================================================

class TestDeadline:
    """Verify a process that outlives its timeout is force killed."""

    @pytest.mark.asyncio
    async def test_deadline_force_kills(self, supervisor, stats, caplog):
        caplog.set_level(logging.WARNING)
        proc = await _spawn("sleep", "10")

        supervisor.track(proc, "sleep 10", timeout=0.1)
        await _wait_untracked(supervisor, proc.pid)
        await asyncio.wait_for(proc.wait(), timeout=5)

        assert stats.processes_killed == 1
        assert proc.returncode is not None
        assert "exceeded timeout, terminating" in caplog.text

    @pytest.mark.asyncio
    async def test_deadline_skips_graceful_signal(self, supervisor, stats):
        proc = await _spawn_term_ignoring()

        supervisor.track(proc, "sh", timeout=0.1)
        await _wait_untracked(supervisor, proc.pid)
        await asyncio.wait_for(proc.wait(), timeout=5)

        assert stats.processes_killed == 1


# =========================================================================
# Termination
# =========================================================================

class TestTermination:
    """Verify the terminate, grace window, kill escalation."""

    @pytest.mark.asyncio
    async def test_graceful_exit_is_not_counted_as_kill(self, supervisor, stats):
        proc = await _spawn("sleep", "10")
        supervisor.track(proc, "sleep 10", timeout=0)

        state = await supervisor.kill(proc.pid)
        await proc.wait()

        assert state is TerminationState.EXITED
        assert stats.processes_killed == 0
        assert not supervisor.is_tracking(proc.pid)

    @pytest.mark.asyncio
    async def test_escalates_when_term_is_ignored(self, supervisor, stats):
        proc = await _spawn_term_ignoring()
        supervisor.track(proc, "sh", timeout=0)

        state = await supervisor.kill(proc.pid)
        await asyncio.wait_for(proc.wait(), timeout=5)

        assert state is TerminationState.FORCE_KILLED
        assert stats.processes_killed == 1

    @pytest.mark.asyncio
    async def test_force_skips_grace_window(self, supervisor, stats):
        proc = await _spawn("sleep", "10")
        supervisor.track(proc, "sleep 10", timeout=0)

        state = await supervisor.kill(proc.pid, force=True)
        await proc.wait()

        assert state is TerminationState.FORCE_KILLED
        assert stats.processes_killed == 1

    @pytest.mark.asyncio
    async def test_already_exited_process(self, supervisor, stats):
        proc = await _spawn("true")
        supervisor.track(proc, "true", timeout=0)
        await proc.wait()

        state = await supervisor.kill(proc.pid)

        assert state is TerminationState.EXITED
        assert stats.processes_killed == 0
        assert stats.errors == []

    @pytest.mark.asyncio
    async def test_unknown_pid_returns_none(self, supervisor):
        assert await supervisor.kill(999999) is None

    @pytest.mark.asyncio
    async def test_concurrent_kills_share_termination(self, supervisor, stats):
        proc = await _spawn_term_ignoring()
        supervisor.track(proc, "sh", timeout=0)

        first, second = await asyncio.gather(
            supervisor.kill(proc.pid),
            supervisor.kill(proc.pid),
        )
        await asyncio.wait_for(proc.wait(), timeout=5)

        assert first is second is TerminationState.FORCE_KILLED
        assert stats.processes_killed == 1

    @pytest.mark.asyncio
    async def test_signal_failure_is_recorded(self, supervisor, stats):
        handle = _UnkillableHandle()
        supervisor.track(handle, "stubborn", timeout=0)

        await supervisor.kill(handle.pid)

        assert not supervisor.is_tracking(handle.pid)
        assert stats.processes_killed == 0
        assert len(stats.errors) == 1
        assert stats.errors[0].startswith(f"Failed to kill process {handle.pid}:")

    @pytest.mark.asyncio
    async def test_kill_all_isolates_failures(self, supervisor, stats):
        handle = _UnkillableHandle()
        proc = await _spawn("sleep", "10")
        supervisor.track(handle, "stubborn", timeout=0)
        supervisor.track(proc, "sleep 10", timeout=0)

        await supervisor.kill_all()
        await asyncio.wait_for(proc.wait(), timeout=5)

        assert supervisor.active_processes() == []
        assert proc.returncode is not None
        assert len(stats.errors) == 1


class TestTerminateWithEscalation:
    """Verify the standalone escalation helper on Popen handles."""

    @pytest.mark.asyncio
    async def test_popen_handle(self):
        proc = subprocess.Popen(["sleep", "10"])

        state = await terminate_with_escalation(proc, 1.0, poll_interval=0.02)

        assert state is TerminationState.EXITED
        assert proc.returncode is not None
