"""
Resource Guard Coordinator
==========================

Tracks the resources created during one unit of work and releases all of
them, in a fixed order, when the work is done.

Teardown phases (in order):
1. Custom cleanup callbacks (highest priority first)
2. Tracked processes (terminated concurrently, each isolated)
3. Timers, then intervals
4. Temporary directories
5. File handles

Teardown never raises. Every failure is recorded in the statistics and the
remaining resources are still released. A second ``cleanup()`` while one is
in flight is a logged no-op.

Usage:
    guard = ResourceGuard()
    guard.register_cleanup("db", db.close, priority=100)
    guard.track_process(proc, "ruff check .")
    guard.track_temp_dir(workdir)
    ...
    await guard.cleanup()
    print(guard.generate_report())
"""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Any, List, Optional, Set

from resource_guard.config.base_config import GuardConfig
from resource_guard.core.error_handling import describe_error
from resource_guard.lifecycle.registry import CleanupCallback, PathLike, ResourceRegistry
from resource_guard.lifecycle.stats import (
    ActiveProcess,
    ResourceStats,
    StatsSnapshot,
    render_report,
)
from resource_guard.lifecycle.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)


class ResourceGuard:
    """
    Coordinator for deterministic, failure-isolated resource teardown.

    Each unit of work gets its own instance; nothing is shared between
    guards.
    """

    def __init__(self, config: Optional[GuardConfig] = None):
        self._config = config or GuardConfig()
        self._stats = ResourceStats()
        self._registry = ResourceRegistry(self._stats)
        self._supervisor = ProcessSupervisor(self._stats, self._config)
        self._is_cleaning_up = False

        self._signal_handlers_installed = False
        self._signal_loop: Optional[asyncio.AbstractEventLoop] = None
        self._background_tasks: Set[asyncio.Task] = set()

    @property
    def config(self) -> GuardConfig:
        return self._config

    @property
    def is_cleaning_up(self) -> bool:
        return self._is_cleaning_up

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def register_cleanup(self, name: str, fn: CleanupCallback, priority: int = 0) -> None:
        """Register a custom cleanup. Higher priority runs first."""
        self._registry.register_cleanup(name, fn, priority)

    def track_process(self, proc: Any, command: str, timeout: Optional[float] = None) -> None:
        """Track a spawned process; ``timeout`` defaults to the configured deadline."""
        self._supervisor.track(proc, command, timeout)

    def untrack_process(self, pid: int) -> bool:
        """Forget a tracked process that is known to have exited."""
        return self._supervisor.untrack(pid)

    def track_timer(self, timer: Any) -> Any:
        return self._registry.track_timer(timer)

    def track_interval(self, interval: Any) -> Any:
        return self._registry.track_interval(interval)

    def track_temp_dir(self, path: PathLike) -> PathLike:
        return self._registry.track_temp_dir(path)

    def track_file_handle(self, handle: Any) -> Any:
        return self._registry.track_file_handle(handle)

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    async def cleanup(self) -> bool:
        """
        Release every tracked resource.

        Returns:
            True if this call ran the teardown, False if one was already running
        """
        if self._is_cleaning_up:
            logger.warning("Cleanup already in progress, skipping duplicate call")
            return False

        self._is_cleaning_up = True
        self._registry.lock()

        try:
            await self._registry.run_cleanups()
            await self._supervisor.kill_all()
            self._registry.clear_timers()
            await self._registry.remove_temp_dirs()
            await self._registry.close_file_handles()
        except Exception as e:
            self._stats.record_error(f"Cleanup failed: {describe_error(e)}")
            logger.error(f"Resource guard cleanup failed: {e}", exc_info=True)
        finally:
            self._registry.unlock()
            self._is_cleaning_up = False

        if self._stats.errors:
            logger.debug(f"Cleanup finished with {len(self._stats.errors)} recorded error(s)")
        return True

    async def reset(self) -> bool:
        """
        Clean up, then clear statistics and custom cleanups for reuse.

        Returns:
            False, with nothing cleared, if another cleanup was in flight
        """
        if not await self.cleanup():
            logger.warning("Reset skipped: cleanup already in progress")
            return False

        self._registry.clear_entries()
        self._stats.reset()
        self._supervisor.reset()
        return True

    async def __aenter__(self) -> "ResourceGuard":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.cleanup()

    # -------------------------------------------------------------------------
    # Signal handling
    # -------------------------------------------------------------------------

    def install_signal_handlers(self) -> bool:
        """
        Run ``cleanup()`` when SIGINT or SIGTERM arrives.

        Must be called from a running event loop. Returns False where the
        platform has no loop signal support.
        """
        if self._signal_handlers_installed:
            return True

        loop = asyncio.get_running_loop()

        def signal_handler(sig: signal.Signals) -> None:
            logger.info(f"Received {sig.name}, cleaning up tracked resources...")
            task = asyncio.ensure_future(self.cleanup())
            self._background_tasks.add(task)
            task.add_done_callback(self._background_tasks.discard)

        try:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, signal_handler, sig)
        except (NotImplementedError, RuntimeError):
            # Windows and non-main threads have no loop signal handlers
            logger.warning("Signal handlers not supported on this platform")
            return False

        self._signal_handlers_installed = True
        self._signal_loop = loop
        logger.debug("Signal handlers installed (SIGINT, SIGTERM)")
        return True

    def remove_signal_handlers(self) -> None:
        if not self._signal_handlers_installed or self._signal_loop is None:
            return

        for sig in (signal.SIGINT, signal.SIGTERM):
            self._signal_loop.remove_signal_handler(sig)

        self._signal_handlers_installed = False
        self._signal_loop = None

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    def get_stats(self) -> StatsSnapshot:
        return self._stats.snapshot()

    def get_active_processes(self) -> List[ActiveProcess]:
        return self._supervisor.active_processes()

    @property
    def longest_lived_process(self) -> Optional[ActiveProcess]:
        return self._supervisor.longest_lived

    def generate_report(self) -> str:
        return render_report(self.get_stats(), self.get_active_processes())
