"""
Resource Registry
=================

Holds the custom teardown callbacks and the simple resource collections
(timers, intervals, temporary directories, file handles) for one guard.

Every drain step is isolated per resource: a failure is recorded in the
shared statistics and the next resource is still released.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from resource_guard.core.error_handling import describe_error
from resource_guard.lifecycle.stats import ResourceStats

logger = logging.getLogger(__name__)

CleanupCallback = Callable[[], Union[None, Awaitable[None]]]
PathLike = Union[str, "os.PathLike[str]"]


@dataclass
class CleanupEntry:
    """A named teardown callback. Higher priority runs first."""

    name: str
    callback: CleanupCallback
    priority: int = 0


class ResourceRegistry:
    """
    Registry of custom cleanups and simple resources.

    Collections are keyed by object identity so unhashable handles can be
    tracked, and insertion order is preserved for teardown.
    """

    def __init__(self, stats: ResourceStats):
        self._stats = stats
        self._entries: List[CleanupEntry] = []
        self._timers: Dict[int, Any] = {}
        self._intervals: Dict[int, Any] = {}
        self._temp_dirs: Dict[str, None] = {}
        self._file_handles: Dict[int, Any] = {}
        self._locked = False

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def lock(self) -> None:
        """Reject new cleanup registrations until ``unlock()``."""
        self._locked = True

    def unlock(self) -> None:
        self._locked = False

    @property
    def locked(self) -> bool:
        return self._locked

    def register_cleanup(
        self,
        name: str,
        callback: CleanupCallback,
        priority: int = 0,
    ) -> bool:
        """Store a cleanup entry; returns False when rejected during teardown."""
        if self._locked:
            logger.warning(f"Cannot register cleanup '{name}' during cleanup phase")
            return False

        self._entries.append(CleanupEntry(name=name, callback=callback, priority=priority))
        logger.debug(f"Registered cleanup '{name}' (priority={priority})")
        return True

    def track_timer(self, timer: Any) -> Any:
        self._timers[id(timer)] = timer
        return timer

    def track_interval(self, interval: Any) -> Any:
        self._intervals[id(interval)] = interval
        return interval

    def track_temp_dir(self, path: PathLike) -> PathLike:
        self._temp_dirs[os.fspath(path)] = None
        return path

    def track_file_handle(self, handle: Any) -> Any:
        self._file_handles[id(handle)] = handle
        return handle

    def ordered_entries(self) -> List[CleanupEntry]:
        """Entries by descending priority; equal priorities keep registration order."""
        return sorted(self._entries, key=lambda entry: -entry.priority)

    def clear_entries(self) -> None:
        self._entries = []

    @property
    def pending_counts(self) -> Dict[str, int]:
        return {
            "cleanups": len(self._entries),
            "timers": len(self._timers),
            "intervals": len(self._intervals),
            "temp_dirs": len(self._temp_dirs),
            "file_handles": len(self._file_handles),
        }

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    async def run_cleanups(self) -> None:
        """Run and consume every custom cleanup, highest priority first."""
        entries = self.ordered_entries()
        self._entries = []

        for entry in entries:
            try:
                result = entry.callback()
                if inspect.isawaitable(result):
                    await result
                self._stats.custom_cleanups += 1
            except Exception as e:
                self._stats.record_error(
                    f"Custom cleanup '{entry.name}' failed: {describe_error(e)}"
                )
                logger.error(f"Custom cleanup '{entry.name}' failed: {e}", exc_info=True)

    def clear_timers(self) -> None:
        """Cancel timers, then intervals."""
        for kind, handles in (("timer", self._timers), ("interval", self._intervals)):
            for handle in list(handles.values()):
                try:
                    if _already_cancelled(handle):
                        continue
                    handle.cancel()
                    self._stats.timers_cleared += 1
                except Exception as e:
                    self._stats.record_error(f"Failed to clear {kind}: {describe_error(e)}")
                    logger.error(f"Failed to clear {kind}: {e}")
            handles.clear()

    async def remove_temp_dirs(self) -> None:
        """Remove every tracked directory that still exists, concurrently."""
        paths = list(self._temp_dirs)
        self._temp_dirs.clear()

        if paths:
            await asyncio.gather(
                *[self._remove_temp_dir(path) for path in paths],
                return_exceptions=True,
            )

    async def _remove_temp_dir(self, path: str) -> None:
        try:
            if not os.path.lexists(path):
                return
            await asyncio.to_thread(_remove_path, path)
            self._stats.temp_dirs_removed += 1
            logger.debug(f"Removed temp dir {path}")
        except Exception as e:
            self._stats.record_error(f"Failed to remove temp dir {path}: {describe_error(e)}")
            logger.error(f"Failed to remove temp dir {path}: {e}")

    async def close_file_handles(self) -> None:
        """Close handles via close(), falling back to destroy()."""
        handles = list(self._file_handles.values())
        self._file_handles.clear()

        for handle in handles:
            try:
                close: Optional[Callable[[], Any]] = getattr(handle, "close", None)
                destroy: Optional[Callable[[], Any]] = getattr(handle, "destroy", None)
                if callable(close):
                    result = close()
                elif callable(destroy):
                    result = destroy()
                else:
                    continue
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self._stats.record_error(f"Failed to close file handle: {describe_error(e)}")
                logger.error(f"Failed to close file handle: {e}")


def _already_cancelled(handle: Any) -> bool:
    cancelled = getattr(handle, "cancelled", None)
    return callable(cancelled) and bool(cancelled())


def _remove_path(path: str) -> None:
    target = Path(path)
    if target.is_dir() and not target.is_symlink():
        shutil.rmtree(target)
    else:
        target.unlink()
