"""
Utility modules for Resource Guard.
"""

from resource_guard.utils.async_helpers import async_retry
from resource_guard.utils.logging_setup import setup_logging

__all__ = [
    "async_retry",
    "setup_logging",
]
