"""
Resource Guard - Core Module
============================

Error types shared across the guard and the execution helpers.
"""

from __future__ import annotations

from resource_guard.core.error_handling import (
    CommandFailedError,
    CommandTimeoutError,
    OutputLimitExceededError,
    ProcessError,
    ProcessExecutionError,
    ProcessTimeoutError,
    ResourceGuardError,
    describe_error,
)

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
