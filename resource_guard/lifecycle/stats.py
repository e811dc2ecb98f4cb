"""
Statistics and reporting for the resource guard.

Counters only ever grow during the life of a guard; ``ResourceGuard.reset()``
is the single place that clears them.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

REPORT_TITLE = "Resource Guard Report"
REPORT_RULE = "=" * 40


@dataclass(frozen=True)
class ActiveProcess:
    """A tracked process that has not terminated yet."""

    pid: int
    command: str
    duration: float = 0.0


@dataclass(frozen=True)
class StatsSnapshot:
    """Immutable copy of the guard counters at one point in time."""

    processes_tracked: int = 0
    processes_killed: int = 0
    timers_cleared: int = 0
    temp_dirs_removed: int = 0
    custom_cleanups: int = 0
    errors: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["errors"] = list(self.errors)
        return data


@dataclass
class ResourceStats:
    """Mutable counters owned by a single guard instance."""

    processes_tracked: int = 0
    processes_killed: int = 0
    timers_cleared: int = 0
    temp_dirs_removed: int = 0
    custom_cleanups: int = 0
    errors: List[str] = field(default_factory=list)

    def record_error(self, message: str) -> None:
        self.errors.append(message)

    def snapshot(self) -> StatsSnapshot:
        return StatsSnapshot(
            processes_tracked=self.processes_tracked,
            processes_killed=self.processes_killed,
            timers_cleared=self.timers_cleared,
            temp_dirs_removed=self.temp_dirs_removed,
            custom_cleanups=self.custom_cleanups,
            errors=tuple(self.errors),
        )

    def reset(self) -> None:
        self.processes_tracked = 0
        self.processes_killed = 0
        self.timers_cleared = 0
        self.temp_dirs_removed = 0
        self.custom_cleanups = 0
        self.errors = []


def render_report(stats: StatsSnapshot, active: Sequence[ActiveProcess]) -> str:
    """Render a deterministic, human-readable summary."""
    lines = [
        REPORT_TITLE,
        REPORT_RULE,
        f"Processes Tracked: {stats.processes_tracked}",
        f"Processes Killed: {stats.processes_killed}",
        f"Timers Cleared: {stats.timers_cleared}",
        f"Temp Dirs Removed: {stats.temp_dirs_removed}",
        f"Custom Cleanups: {stats.custom_cleanups}",
        f"Active Processes: {len(active)}",
    ]

    if stats.errors:
        lines.append("")
        lines.append(f"Errors ({len(stats.errors)}):")
        lines.extend(f"  - {error}" for error in stats.errors)

    if active:
        lines.append("")
        lines.append("Still Active:")
        lines.extend(f"  - PID {proc.pid}: {proc.command}" for proc in active)

    return "\n".join(lines) + "\n"


def print_report(guard: Any, console: Optional[Any] = None) -> None:
    """Print the guard statistics as a rich table."""
    from rich.console import Console
    from rich.markup import escape
    from rich.table import Table

    console = console or Console()
    stats: StatsSnapshot = guard.get_stats()
    active: List[ActiveProcess] = guard.get_active_processes()

    table = Table(title=REPORT_TITLE)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Processes Tracked", str(stats.processes_tracked))
    table.add_row("Processes Killed", str(stats.processes_killed))
    table.add_row("Timers Cleared", str(stats.timers_cleared))
    table.add_row("Temp Dirs Removed", str(stats.temp_dirs_removed))
    table.add_row("Custom Cleanups", str(stats.custom_cleanups))
    table.add_row("Active Processes", str(len(active)))

    for error in stats.errors:
        table.add_row("Error", f"[red]{escape(error)}[/red]")

    for proc in active:
        table.add_row(
            "Still Active",
            f"[yellow]PID {proc.pid}: {escape(proc.command)} ({proc.duration:.2f}s)[/yellow]",
        )

    console.print(table)
