"""
Resource lifecycle: registry, process supervisor, coordinator and statistics.
"""

from resource_guard.lifecycle.coordinator import ResourceGuard
from resource_guard.lifecycle.registry import CleanupEntry, ResourceRegistry
from resource_guard.lifecycle.stats import (
    ActiveProcess,
    ResourceStats,
    StatsSnapshot,
    print_report,
    render_report,
)
from resource_guard.lifecycle.supervisor import (
    ExitStatus,
    ProcessSupervisor,
    TerminationState,
    TrackedProcess,
    terminate_with_escalation,
)

__all__ = [
    # Coordinator
    "ResourceGuard",
    # Registry
    "CleanupEntry",
    "ResourceRegistry",
    # Supervisor
    "ProcessSupervisor",
    "TrackedProcess",
    "TerminationState",
    "ExitStatus",
    "terminate_with_escalation",
    # Statistics
    "ActiveProcess",
    "ResourceStats",
    "StatsSnapshot",
    "render_report",
    "print_report",
]
