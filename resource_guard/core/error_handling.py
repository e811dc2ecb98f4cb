"""
Error Types for Resource Guard
==============================

Typed error hierarchy shared by the supervisor and the execution helpers.

Teardown failures never surface as exceptions: they are converted to text
with ``describe_error`` and recorded in the guard statistics. Execution
helper failures are first-class operations and propagate to the caller as
the exceptions below.
"""

from __future__ import annotations

from typing import Optional, Union

Output = Union[bytes, str]


# =============================================================================
# ERROR HIERARCHY
# =============================================================================


class ResourceGuardError(Exception):
    """Base class for all resource guard errors."""


class ProcessError(ResourceGuardError):
    """Base class for errors raised while running an external command."""

    def __init__(self, message: str, command: str = ""):
        super().__init__(message)
        self.command = command


class ProcessExecutionError(ProcessError):
    """The process could not be started or failed while being observed."""


class ProcessTimeoutError(ProcessError, TimeoutError):
    """An asynchronous execution exceeded its deadline."""

    def __init__(
        self,
        message: str,
        command: str = "",
        timeout: float = 0.0,
        stdout: str = "",
        stderr: str = "",
    ):
        super().__init__(message, command)
        self.timeout = timeout
        self.stdout = stdout
        self.stderr = stderr


class CommandFailedError(ProcessError):
    """The command exited with a non-zero status."""

    def __init__(
        self,
        message: str,
        command: str = "",
        returncode: Optional[int] = None,
        stdout: Output = b"",
        stderr: Output = b"",
    ):
        super().__init__(message, command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class CommandTimeoutError(ProcessError, TimeoutError):
    """A blocking execution exceeded its timeout and was signalled."""

    def __init__(self, message: str, command: str = "", timeout: float = 0.0):
        super().__init__(message, command)
        self.timeout = timeout


class OutputLimitExceededError(ProcessError):
    """A blocking execution produced more output than allowed."""

    def __init__(self, message: str, command: str = "", limit: int = 0):
        super().__init__(message, command)
        self.limit = limit


# =============================================================================
# BOUNDARY CONVERSION
# =============================================================================


def describe_error(error: BaseException) -> str:
    """Describe a foreign exception as text for the statistics error list."""
    message = str(error)
    if message:
        return message
    return type(error).__name__


__all__ = [
    "ResourceGuardError",
    "ProcessError",
    "ProcessExecutionError",
    "ProcessTimeoutError",
    "CommandFailedError",
    "CommandTimeoutError",
    "OutputLimitExceededError",
    "describe_error",
]
