"""
Configuration module for Resource Guard.

Provides dataclass-based configuration with:
- YAML file loading
- Environment variable interpolation
- Type coercion and validation
- Sensible defaults
"""

from resource_guard.config.base_config import (
    BaseConfig,
    GuardConfig,
    load_config,
)

__all__ = [
    "BaseConfig",
    "GuardConfig",
    "load_config",
]
