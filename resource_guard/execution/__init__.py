"""
Safe execution helpers that register spawned processes with a guard.
"""

from resource_guard.execution.process_utils import (
    ExecResult,
    ProcessExecutor,
    exec_sync_quiet,
    exec_sync_safe,
    exec_sync_test,
    exec_with_retry,
    exec_with_timeout,
    format_command,
    is_command_available,
    spawn_safe,
)

__all__ = [
    "ExecResult",
    "ProcessExecutor",
    "exec_sync_safe",
    "exec_sync_test",
    "exec_sync_quiet",
    "exec_with_timeout",
    "exec_with_retry",
    "spawn_safe",
    "format_command",
    "is_command_available",
]
