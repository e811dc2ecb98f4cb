# tests/conftest.py
"""Shared fixtures for the resource guard test suite."""

from __future__ import annotations

import pytest

from resource_guard.config import GuardConfig
from resource_guard.testing.pytest_plugin import process_executor, resource_guard  # noqa: F401


@pytest.fixture
def fast_config():
    """Config with short grace windows so escalation tests finish quickly."""
    return GuardConfig(
        process_timeout=0,
        grace_period=0.2,
        poll_interval=0.02,
        exec_timeout=5.0,
        exec_grace_period=0.5,
        retry_attempts=2,
        retry_delay=0.0,
    )
