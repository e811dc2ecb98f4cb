"""
Resource Guard - Resource lifecycle and process supervision for tests
"""

__version__ = "1.0.0"

from resource_guard.config import GuardConfig, load_config
from resource_guard.core import (
    CommandFailedError,
    CommandTimeoutError,
    OutputLimitExceededError,
    ProcessError,
    ProcessExecutionError,
    ProcessTimeoutError,
    ResourceGuardError,
)
from resource_guard.execution import (
    ExecResult,
    ProcessExecutor,
    exec_sync_quiet,
    exec_sync_safe,
    exec_sync_test,
    exec_with_retry,
    exec_with_timeout,
    is_command_available,
    spawn_safe,
)
from resource_guard.lifecycle import (
    ActiveProcess,
    ResourceGuard,
    StatsSnapshot,
    TerminationState,
)

__all__ = [
    "ResourceGuard",
    "GuardConfig",
    "load_config",
    "StatsSnapshot",
    "ActiveProcess",
    "TerminationState",
    "ExecResult",
    "ProcessExecutor",
    "exec_sync_safe",
    "exec_sync_test",
    "exec_sync_quiet",
    "exec_with_timeout",
    "exec_with_retry",
    "spawn_safe",
    "is_command_available",
    "ResourceGuardError",
    "ProcessError",
    "ProcessExecutionError",
    "ProcessTimeoutError",
    "CommandFailedError",
    "CommandTimeoutError",
    "OutputLimitExceededError",
    "__version__",
]
