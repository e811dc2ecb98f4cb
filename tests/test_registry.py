# tests/test_registry.py
"""Tests for the resource registry.

Verifies custom cleanup ordering, registration locking and the per-resource
isolation of timer, directory and handle teardown.
"""

from __future__ import annotations

import asyncio
import threading
from unittest.mock import AsyncMock, MagicMock

import pytest

from resource_guard.lifecycle.registry import ResourceRegistry
from resource_guard.lifecycle.stats import ResourceStats


# =========================================================================
# Fixtures
# =========================================================================

@pytest.fixture
def stats():
    return ResourceStats()


@pytest.fixture
def registry(stats):
    return ResourceRegistry(stats)


class _BrokenTimer:
    def cancel(self):
        raise RuntimeError("timer is wedged")


# =========================================================================
# Custom cleanups
# =========================================================================

class TestCustomCleanups:
    """Verify ordering, async support and failure isolation."""

    def test_orders_by_priority_then_registration(self, registry):
        noop = lambda: None  # noqa: E731
        registry.register_cleanup("low", noop, priority=0)
        registry.register_cleanup("high", noop, priority=100)
        registry.register_cleanup("mid", noop, priority=50)
        registry.register_cleanup("low-2", noop)

        names = [entry.name for entry in registry.ordered_entries()]
        assert names == ["high", "mid", "low", "low-2"]

    @pytest.mark.asyncio
    async def test_runs_sync_and_async_callbacks(self, registry, stats):
        calls = []

        async def close_pool():
            await asyncio.sleep(0)
            calls.append("pool")

        registry.register_cleanup("cache", lambda: calls.append("cache"), priority=10)
        registry.register_cleanup("pool", close_pool)

        await registry.run_cleanups()

        assert calls == ["cache", "pool"]
        assert stats.custom_cleanups == 2

    @pytest.mark.asyncio
    async def test_async_mock_callback_is_awaited(self, registry, stats):
        shutdown = AsyncMock()
        registry.register_cleanup("server", shutdown)

        await registry.run_cleanups()

        shutdown.assert_awaited_once()
        assert stats.custom_cleanups == 1

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_later_cleanups(self, registry, stats):
        calls = []

        def explode():
            raise ValueError("boom")

        registry.register_cleanup("bad", explode, priority=10)
        registry.register_cleanup("good", lambda: calls.append("good"))

        await registry.run_cleanups()

        assert calls == ["good"]
        assert stats.custom_cleanups == 1
        assert stats.errors == ["Custom cleanup 'bad' failed: boom"]

    @pytest.mark.asyncio
    async def test_entries_are_consumed(self, registry, stats):
        registry.register_cleanup("once", lambda: None)

        await registry.run_cleanups()
        await registry.run_cleanups()

        assert stats.custom_cleanups == 1
        assert registry.pending_counts["cleanups"] == 0

    def test_locked_registry_rejects_registration(self, registry, caplog):
        registry.lock()

        assert registry.register_cleanup("late", lambda: None) is False
        assert registry.pending_counts["cleanups"] == 0
        assert "Cannot register cleanup 'late' during cleanup phase" in caplog.text

        registry.unlock()
        assert registry.register_cleanup("late", lambda: None) is True


# =========================================================================
# Timers
# =========================================================================

class TestTimers:
    """Verify timers and intervals are cancelled exactly once."""

    @pytest.mark.asyncio
    async def test_cancels_timers_and_intervals(self, registry, stats):
        loop = asyncio.get_running_loop()
        fired = []

        async def tick():
            while True:
                await asyncio.sleep(0.01)

        timer = registry.track_timer(loop.call_later(10, fired.append, "timer"))
        interval = registry.track_interval(asyncio.ensure_future(tick()))

        registry.clear_timers()
        await asyncio.gather(interval, return_exceptions=True)

        assert timer.cancelled()
        assert interval.cancelled()
        assert stats.timers_cleared == 2
        assert fired == []

    def test_thread_timer(self, registry, stats):
        timer = registry.track_timer(threading.Timer(10, lambda: None))
        timer.start()

        registry.clear_timers()
        timer.join(timeout=5)

        assert not timer.is_alive()
        assert stats.timers_cleared == 1

    @pytest.mark.asyncio
    async def test_already_cancelled_timer_is_skipped(self, registry, stats):
        handle = asyncio.get_running_loop().call_later(10, lambda: None)
        handle.cancel()
        registry.track_timer(handle)

        registry.clear_timers()

        assert stats.timers_cleared == 0
        assert stats.errors == []

    def test_cancel_failure_is_recorded(self, registry, stats):
        registry.track_timer(_BrokenTimer())
        registry.track_interval(threading.Timer(10, lambda: None))

        registry.clear_timers()

        assert stats.timers_cleared == 1
        assert stats.errors == ["Failed to clear timer: timer is wedged"]
        assert registry.pending_counts["timers"] == 0


# =========================================================================
# Temp dirs and file handles
# =========================================================================

class TestTempDirs:
    """Verify tracked paths are removed when they still exist."""

    @pytest.mark.asyncio
    async def test_removes_directory_tree(self, registry, stats, tmp_path):
        workdir = tmp_path / "work"
        (workdir / "nested").mkdir(parents=True)
        (workdir / "nested" / "file.txt").write_text("data")

        assert registry.track_temp_dir(workdir) is workdir
        await registry.remove_temp_dirs()

        assert not workdir.exists()
        assert stats.temp_dirs_removed == 1

    @pytest.mark.asyncio
    async def test_missing_directory_is_not_an_error(self, registry, stats, tmp_path):
        registry.track_temp_dir(str(tmp_path / "never-created"))

        await registry.remove_temp_dirs()

        assert stats.temp_dirs_removed == 0
        assert stats.errors == []

    @pytest.mark.asyncio
    async def test_same_path_tracked_once(self, registry, stats, tmp_path):
        workdir = tmp_path / "dup"
        workdir.mkdir()
        registry.track_temp_dir(workdir)
        registry.track_temp_dir(str(workdir))

        await registry.remove_temp_dirs()

        assert stats.temp_dirs_removed == 1


class TestFileHandles:
    """Verify close() is preferred and destroy() is the fallback."""

    @pytest.mark.asyncio
    async def test_closes_file(self, registry, tmp_path):
        handle = registry.track_file_handle(open(tmp_path / "log.txt", "w"))

        await registry.close_file_handles()

        assert handle.closed

    @pytest.mark.asyncio
    async def test_awaits_async_close(self, registry):
        writer = MagicMock()
        writer.close = AsyncMock()
        registry.track_file_handle(writer)

        await registry.close_file_handles()

        writer.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_falls_back_to_destroy(self, registry):
        class Stream:
            destroyed = False

            def destroy(self):
                self.destroyed = True

        stream = registry.track_file_handle(Stream())

        await registry.close_file_handles()

        assert stream.destroyed

    @pytest.mark.asyncio
    async def test_close_failure_is_recorded(self, registry, stats, tmp_path):
        class Broken:
            def close(self):
                raise OSError("bad descriptor")

        registry.track_file_handle(Broken())
        good = registry.track_file_handle(open(tmp_path / "ok.txt", "w"))

        await registry.close_file_handles()

        assert good.closed
        assert stats.errors == ["Failed to close file handle: bad descriptor"]
