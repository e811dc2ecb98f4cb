# tests/test_utils.py
"""Tests for the retry decorator and logging setup."""

from __future__ import annotations

import logging

import pytest

from resource_guard.utils import async_retry, setup_logging


class TestAsyncRetry:
    """Verify retry counts and exception filtering."""

    @pytest.mark.asyncio
    async def test_retries_until_success(self):
        calls = []

        @async_retry(attempts=3, delay=0)
        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionError("not yet")
            return "done"

        assert await flaky() == "done"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_raises_last_error(self):
        calls = []

        @async_retry(attempts=2, delay=0)
        async def always_fails():
            calls.append(1)
            raise ConnectionError(f"attempt {len(calls)}")

        with pytest.raises(ConnectionError, match="attempt 2"):
            await always_fails()

    @pytest.mark.asyncio
    async def test_other_exceptions_are_not_retried(self):
        calls = []

        @async_retry(attempts=3, delay=0, exceptions=(ConnectionError,))
        async def wrong_error():
            calls.append(1)
            raise KeyError("nope")

        with pytest.raises(KeyError):
            await wrong_error()
        assert len(calls) == 1

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            async_retry(attempts=0)


class TestSetupLogging:
    """Verify verbosity controls the package logger level."""

    def test_verbose_enables_debug(self):
        package_logger = logging.getLogger("resource_guard")
        previous = package_logger.level
        try:
            setup_logging(verbose=True)
            assert package_logger.level == logging.DEBUG

            setup_logging(verbose=False)
            assert package_logger.level == logging.INFO
        finally:
            package_logger.setLevel(previous)
