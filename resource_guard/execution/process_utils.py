"""
Safe Process Execution Utilities
================================

Wrappers around "run a command and capture its output" with built-in
timeouts, output limits and escalating termination. When a guard is passed
in, every spawned process is registered with it so teardown finds it even
if the caller forgets.

Failures here are first-class and propagate to the caller (unless
``throw_on_error=False`` is requested for the blocking variant).
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import shutil
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Optional, Sequence, Tuple, Union

from resource_guard.config.base_config import GuardConfig
from resource_guard.core.error_handling import (
    CommandFailedError,
    CommandTimeoutError,
    OutputLimitExceededError,
    ProcessError,
    ProcessExecutionError,
    ProcessTimeoutError,
)
from resource_guard.lifecycle.supervisor import terminate_with_escalation
from resource_guard.utils.async_helpers import async_retry

if TYPE_CHECKING:
    from resource_guard.lifecycle.coordinator import ResourceGuard

logger = logging.getLogger(__name__)

Output = Union[bytes, str]

_POSIX = os.name == "posix"


@dataclass(frozen=True)
class ExecResult:
    """Captured output of an asynchronous execution (stripped text)."""

    stdout: str
    stderr: str
    exit_code: Optional[int]

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def format_command(command: str, args: Sequence[str] = ()) -> str:
    return shlex.join([command, *args]) if args else command


# ============================================================================
# BLOCKING EXECUTION
# ============================================================================

_CHUNK_SIZE = 65536
_FORCE_SIGNAL = getattr(signal, "SIGKILL", signal.SIGTERM)


def exec_sync_safe(
    command: str,
    *,
    timeout: Optional[float] = None,
    kill_signal: int = signal.SIGTERM,
    max_buffer: Optional[int] = None,
    throw_on_error: bool = True,
    text: bool = False,
    guard: Optional["ResourceGuard"] = None,
    config: Optional[GuardConfig] = None,
    **popen_kwargs: Any,
) -> Output:
    """
    Run a shell command to completion and return its stdout.

    Output is read as it is produced; once stdout or stderr passes
    ``max_buffer`` bytes the command is stopped the same way as on timeout.

    Args:
        command: Shell command line
        timeout: Seconds before ``kill_signal`` is sent (0 disables)
        kill_signal: Signal delivered on timeout or overflow (to the process
            group when the command leads one)
        max_buffer: Maximum bytes of stdout or stderr
        throw_on_error: If False, return empty output instead of raising
        text: Decode output as text
        guard: Optional guard that should track the process while it runs
        **popen_kwargs: Passed through to ``subprocess.Popen``

    Raises:
        CommandTimeoutError, OutputLimitExceededError, CommandFailedError,
        ProcessExecutionError
    """
    cfg = config or GuardConfig()
    timeout = cfg.exec_timeout if timeout is None else timeout
    max_buffer = cfg.max_buffer if max_buffer is None else max_buffer

    try:
        return _run_blocking(
            command,
            timeout=timeout,
            kill_signal=kill_signal,
            max_buffer=max_buffer,
            text=text,
            guard=guard,
            grace_period=cfg.exec_grace_period,
            poll_interval=cfg.poll_interval,
            popen_kwargs=popen_kwargs,
        )
    except ProcessError as e:
        if not throw_on_error:
            logger.debug(f"Ignoring failure of '{command}': {e}")
            return "" if text else b""
        raise


class _BoundedReader(threading.Thread):
    """Drain one pipe into memory, stopping once ``limit`` bytes are passed."""

    def __init__(self, stream: Any, limit: int, overflow: threading.Event, name: str):
        super().__init__(name=name, daemon=True)
        self._stream = stream
        self._limit = limit
        self._overflow = overflow
        self.data = bytearray()

    def run(self) -> None:
        read = getattr(self._stream, "read1", self._stream.read)
        try:
            while True:
                chunk = read(_CHUNK_SIZE)
                if not chunk:
                    break
                self.data.extend(chunk)
                if len(self.data) > self._limit:
                    self._overflow.set()
                    break
        except OSError as e:
            logger.debug(f"{self.name} stopped reading: {e}")
        finally:
            # A child still writing gets a broken pipe from here on
            self._stream.close()


def _run_blocking(
    command: str,
    *,
    timeout: float,
    kill_signal: int,
    max_buffer: int,
    text: bool,
    guard: Optional["ResourceGuard"],
    grace_period: float,
    poll_interval: float,
    popen_kwargs: dict,
) -> Output:
    encoding = popen_kwargs.pop("encoding", None)
    errors = popen_kwargs.pop("errors", None) or "replace"
    text = bool(text or encoding or popen_kwargs.pop("universal_newlines", False))
    encoding = encoding or "utf-8"

    popen_kwargs.setdefault("stdout", subprocess.PIPE)
    popen_kwargs.setdefault("stderr", subprocess.PIPE)
    if _POSIX:
        # Own process group so the timeout signal reaches pipelines too
        popen_kwargs.setdefault("start_new_session", True)

    try:
        proc = subprocess.Popen(command, shell=True, **popen_kwargs)
    except OSError as e:
        raise ProcessExecutionError(f"Process execution failed: {e}", command) from e

    if guard is not None:
        # The blocking call enforces its own timeout
        guard.track_process(proc, command, timeout=0)

    try:
        raw_stdout, raw_stderr = _collect_output(
            proc,
            command,
            timeout=timeout,
            kill_signal=kill_signal,
            max_buffer=max_buffer,
            grace_period=grace_period,
            poll_interval=poll_interval,
        )
    finally:
        if guard is not None and proc.poll() is not None:
            guard.untrack_process(proc.pid)

    stdout: Output = raw_stdout.decode(encoding, errors) if text else raw_stdout
    stderr: Output = raw_stderr.decode(encoding, errors) if text else raw_stderr

    if proc.returncode != 0:
        raise CommandFailedError(
            f"Command failed with exit code {proc.returncode}: {command}",
            command,
            returncode=proc.returncode,
            stdout=stdout,
            stderr=stderr,
        )

    return stdout


def _collect_output(
    proc: subprocess.Popen,
    command: str,
    *,
    timeout: float,
    kill_signal: int,
    max_buffer: int,
    grace_period: float,
    poll_interval: float,
) -> Tuple[bytes, bytes]:
    """Wait for exit while reading both pipes; stop the command on timeout or overflow."""
    own_group = _leads_process_group(proc)
    overflow = threading.Event()
    readers: Dict[str, _BoundedReader] = {}
    for name, stream in (("stdout", proc.stdout), ("stderr", proc.stderr)):
        if stream is not None:
            readers[name] = _BoundedReader(stream, max_buffer, overflow, f"{name}-reader-{proc.pid}")
            readers[name].start()

    deadline = time.monotonic() + timeout if timeout > 0 else None

    while not overflow.is_set():
        if proc.poll() is not None and not any(r.is_alive() for r in readers.values()):
            break

        if deadline is not None and time.monotonic() >= deadline:
            logger.warning(
                f"Command timed out after {timeout}s, sending {_signal_name(kill_signal)}: {command}"
            )
            _stop(proc, command, kill_signal, grace_period, own_group)
            _join_readers(readers, grace_period)
            raise CommandTimeoutError(
                f"Command timed out after {timeout}s: {command}", command, timeout
            )

        # Wakes early when a reader overflows
        overflow.wait(poll_interval)

    if overflow.is_set():
        logger.warning(
            f"Command output exceeded {max_buffer} bytes, sending {_signal_name(kill_signal)}: {command}"
        )
        _stop(proc, command, kill_signal, grace_period, own_group)
        _join_readers(readers, grace_period)
        raise OutputLimitExceededError(
            f"Output exceeded max buffer of {max_buffer} bytes: {command}", command, max_buffer
        )

    def output(name: str) -> bytes:
        reader = readers.get(name)
        return bytes(reader.data) if reader is not None else b""

    return output("stdout"), output("stderr")


def _join_readers(readers: Dict[str, _BoundedReader], timeout: float) -> None:
    for reader in readers.values():
        reader.join(timeout)
        if reader.is_alive():
            logger.debug(f"{reader.name} still open; a descendant holds the pipe")


def _leads_process_group(proc: subprocess.Popen) -> bool:
    if not _POSIX:
        return False
    try:
        return os.getpgid(proc.pid) == proc.pid
    except ProcessLookupError:
        return False


def _signal_group(proc: subprocess.Popen, sig: int, own_group: bool) -> None:
    """Signal the whole group when the command leads one, else just the child."""
    try:
        if own_group:
            os.killpg(proc.pid, sig)
        elif proc.poll() is None:
            proc.send_signal(sig)
    except ProcessLookupError:
        pass


def _stop(
    proc: subprocess.Popen,
    command: str,
    kill_signal: int,
    grace_period: float,
    own_group: bool,
) -> None:
    """Send ``kill_signal``, then the forced signal; every wait is bounded."""
    _signal_group(proc, kill_signal, own_group)
    try:
        proc.wait(timeout=grace_period)
        return
    except subprocess.TimeoutExpired:
        pass

    _signal_group(proc, _FORCE_SIGNAL, own_group)
    try:
        proc.wait(timeout=max(grace_period, 1.0))
    except subprocess.TimeoutExpired:
        logger.error(f"Process {proc.pid} did not exit after kill: {command}")


def _signal_name(sig: int) -> str:
    try:
        return signal.Signals(sig).name
    except ValueError:
        return str(sig)


def exec_sync_test(command: str, **options: Any) -> str:
    """Blocking execution with test defaults; always returns text."""
    options.setdefault("text", True)
    options.setdefault("throw_on_error", True)
    result = exec_sync_safe(command, **options)
    return result if isinstance(result, str) else result.decode("utf-8", errors="replace")


def exec_sync_quiet(command: str, **options: Any) -> bool:
    """Run a command discarding its output; True if it succeeded."""
    options.setdefault("stdout", subprocess.DEVNULL)
    options.setdefault("stderr", subprocess.DEVNULL)
    options["throw_on_error"] = True
    try:
        exec_sync_safe(command, **options)
        return True
    except ProcessError:
        return False


def is_command_available(command: str) -> bool:
    """Check whether an executable is on PATH."""
    return shutil.which(command) is not None


# ============================================================================
# ASYNCHRONOUS EXECUTION
# ============================================================================

async def spawn_safe(
    command: str,
    args: Sequence[str] = (),
    *,
    timeout: Optional[float] = None,
    guard: Optional["ResourceGuard"] = None,
    **kwargs: Any,
) -> asyncio.subprocess.Process:
    """
    Spawn a process and register it with ``guard``.

    ``timeout`` is the guard deadline for the process (defaults to the
    guard's configured process timeout).
    """
    proc = await asyncio.create_subprocess_exec(command, *args, **kwargs)

    if guard is not None and proc.pid:
        guard.track_process(proc, format_command(command, args), timeout)

    return proc


async def _drain(stream: Optional[asyncio.StreamReader], buffer: bytearray) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(65536)
        if not chunk:
            break
        buffer.extend(chunk)


def _decode(buffer: bytearray) -> str:
    return buffer.decode("utf-8", errors="replace")


async def exec_with_timeout(
    command: str,
    args: Sequence[str] = (),
    timeout: Optional[float] = None,
    guard: Optional["ResourceGuard"] = None,
    *,
    check: bool = False,
    cwd: Optional[Union[str, os.PathLike]] = None,
    env: Optional[dict] = None,
    config: Optional[GuardConfig] = None,
) -> ExecResult:
    """
    Execute a command, capturing output, with an explicit deadline.

    On timeout the process is terminated (graceful signal, grace window,
    forced signal) and ProcessTimeoutError is raised with the partial output.

    Raises:
        ProcessExecutionError: The command could not be started
        ProcessTimeoutError: The deadline passed
        CommandFailedError: ``check`` is set and the exit code is non-zero
    """
    cfg = config or (guard.config if guard is not None else GuardConfig())
    timeout = cfg.exec_timeout if timeout is None else timeout
    display = format_command(command, args)

    # The guard deadline only backstops our own escalation
    guard_timeout = timeout + cfg.exec_grace_period if timeout > 0 else 0

    try:
        proc = await spawn_safe(
            command,
            args,
            timeout=guard_timeout,
            guard=guard,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=env,
        )
    except OSError as e:
        raise ProcessExecutionError(f"Process execution failed: {e}", display) from e

    stdout = bytearray()
    stderr = bytearray()
    collect = asyncio.gather(
        _drain(proc.stdout, stdout),
        _drain(proc.stderr, stderr),
        proc.wait(),
    )

    try:
        await asyncio.wait_for(collect, timeout=timeout if timeout > 0 else None)
    except asyncio.TimeoutError:
        logger.warning(f"Process {proc.pid} ({display}) timed out after {timeout}s, terminating...")
        await terminate_with_escalation(
            proc,
            cfg.exec_grace_period,
            poll_interval=cfg.poll_interval,
            kill_tree=cfg.kill_process_tree,
        )
        try:
            await asyncio.wait_for(proc.wait(), timeout=cfg.exec_grace_period)
        except asyncio.TimeoutError:
            logger.error(f"Process {proc.pid} ({display}) did not exit after kill")
        raise ProcessTimeoutError(
            f"Process timed out after {timeout}s",
            display,
            timeout,
            stdout=_decode(stdout),
            stderr=_decode(stderr),
        )
    except asyncio.CancelledError:
        if proc.returncode is None:
            await asyncio.shield(
                terminate_with_escalation(proc, 0, force=True, kill_tree=cfg.kill_process_tree)
            )
        raise

    result = ExecResult(
        stdout=_decode(stdout).strip(),
        stderr=_decode(stderr).strip(),
        exit_code=proc.returncode,
    )

    if check and result.exit_code != 0:
        raise CommandFailedError(
            f"Command failed with exit code {result.exit_code}: {display}",
            display,
            returncode=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
        )

    return result


async def exec_with_retry(
    command: str,
    args: Sequence[str] = (),
    *,
    retries: Optional[int] = None,
    retry_delay: Optional[float] = None,
    timeout: Optional[float] = None,
    guard: Optional["ResourceGuard"] = None,
    check: bool = False,
    config: Optional[GuardConfig] = None,
) -> ExecResult:
    """
    Run ``exec_with_timeout`` up to ``retries`` times with a fixed delay.

    The last error is raised once every attempt has failed. With no
    attempts at all, nothing is run and ProcessExecutionError is raised.
    """
    cfg = config or (guard.config if guard is not None else GuardConfig())
    attempts = cfg.retry_attempts if retries is None else retries
    delay = cfg.retry_delay if retry_delay is None else retry_delay

    if attempts < 1:
        raise ProcessExecutionError("All retry attempts failed", format_command(command, args))

    @async_retry(attempts=attempts, delay=delay, backoff=1.0, exceptions=(ProcessError,))
    async def execute() -> ExecResult:
        return await exec_with_timeout(command, args, timeout, guard, check=check, config=cfg)

    return await execute()


# ============================================================================
# BOUND EXECUTOR
# ============================================================================

class ProcessExecutor:
    """Execution helpers bound to one guard."""

    def __init__(self, guard: Optional["ResourceGuard"] = None):
        self.guard = guard

    def exec_sync(self, command: str, **options: Any) -> str:
        options.setdefault("guard", self.guard)
        return exec_sync_test(command, **options)

    def exec_quiet(self, command: str, **options: Any) -> bool:
        options.setdefault("guard", self.guard)
        return exec_sync_quiet(command, **options)

    async def exec(
        self,
        command: str,
        args: Sequence[str] = (),
        timeout: Optional[float] = None,
        **options: Any,
    ) -> ExecResult:
        return await exec_with_timeout(command, args, timeout, self.guard, **options)

    async def exec_retry(self, command: str, args: Sequence[str] = (), **options: Any) -> ExecResult:
        return await exec_with_retry(command, args, guard=self.guard, **options)

    async def spawn(self, command: str, args: Sequence[str] = (), **kwargs: Any) -> asyncio.subprocess.Process:
        kwargs.setdefault("guard", self.guard)
        return await spawn_safe(command, args, **kwargs)

    def is_available(self, command: str) -> bool:
        return is_command_available(command)
