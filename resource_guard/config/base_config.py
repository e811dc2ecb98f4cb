"""
Base configuration system for Resource Guard.

Features:
- Dataclass-based configuration with type hints
- YAML file loading with environment variable interpolation
- Environment-only configuration with a key prefix
- Validation and defaults
"""

from __future__ import annotations

import os
import re
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Type, TypeVar, Union
import logging

logger = logging.getLogger(__name__)

T = TypeVar("T", bound="BaseConfig")

ENV_PREFIX = "RESOURCE_GUARD_"


# ============================================================================
# VALUE INTERPOLATION AND COERCION
# ============================================================================

def _interpolate_env_vars(value: Any) -> Any:
    """
    Recursively interpolate environment variables in config values.

    Supports formats:
    - ${VAR_NAME} - Required, raises if not set
    - ${VAR_NAME:-default} - Optional with default
    - ${VAR_NAME:?error message} - Required with custom error
    """
    if isinstance(value, str):
        pattern = r"\$\{([A-Z_][A-Z0-9_]*)(?:(:-)([^}]*))?(?:(:\?)([^}]*))?\}"

        def replace_var(match: re.Match) -> str:
            var_name = match.group(1)
            has_default = match.group(2) is not None
            default_value = match.group(3) or ""
            has_error = match.group(4) is not None
            error_msg = match.group(5) or f"Required environment variable {var_name} is not set"

            env_value = os.environ.get(var_name)

            if env_value is not None:
                return env_value
            elif has_default:
                return default_value
            elif has_error:
                raise ValueError(error_msg)
            else:
                if match.group(0) == value:
                    raise ValueError(f"Environment variable {var_name} is not set")
                return match.group(0)

        return re.sub(pattern, replace_var, value)

    elif isinstance(value, dict):
        return {k: _interpolate_env_vars(v) for k, v in value.items()}

    elif isinstance(value, list):
        return [_interpolate_env_vars(item) for item in value]

    return value


def _coerce_type(value: Any, target_type: Any) -> Any:
    """Coerce a value to the target type (annotations arrive as strings)."""
    if value is None:
        return None

    type_name = target_type if isinstance(target_type, str) else getattr(target_type, "__name__", "")

    # bool("false") is True, so strings need an explicit check
    if type_name == "bool":
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.strip().lower() in ("true", "1", "yes", "on")
        return bool(value)

    if type_name == "int":
        return int(float(value)) if value != "" else 0
    if type_name == "float":
        return float(value) if value != "" else 0.0

    return value


# ============================================================================
# BASE CONFIG
# ============================================================================

@dataclass
class BaseConfig:
    """
    Base configuration class with YAML loading and env var interpolation.
    """

    @classmethod
    def from_dict(cls: Type[T], data: Dict[str, Any]) -> T:
        """Create config from dictionary with env var interpolation."""
        interpolated = _interpolate_env_vars(data)

        field_types = {f.name: f.type for f in cls.__dataclass_fields__.values()}

        filtered = {}
        for key, value in interpolated.items():
            if key in field_types:
                filtered[key] = _coerce_type(value, field_types[key])
            else:
                logger.debug(f"[Config] Ignoring unknown key: {key}")

        config = cls(**filtered)
        config.validate()
        return config

    @classmethod
    def from_yaml(cls: Type[T], path: Union[str, Path]) -> T:
        """Load config from YAML file with env var interpolation."""
        import yaml

        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ValueError(f"Config file must contain a mapping: {path}")

        return cls.from_dict(data)

    @classmethod
    def from_env(cls: Type[T], prefix: str = ENV_PREFIX) -> T:
        """Create config entirely from environment variables."""
        data = {}

        for field_info in cls.__dataclass_fields__.values():
            env_key = f"{prefix}{field_info.name}".upper()
            env_value = os.environ.get(env_key)

            if env_value is not None:
                data[field_info.name] = env_value

        return cls.from_dict(data) if data else cls()

    def validate(self) -> None:
        """Hook for subclasses; raise ValueError on invalid settings."""

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary."""
        return asdict(self)

    def merge(self: T, other: Dict[str, Any]) -> T:
        """Create new config with overrides merged in."""
        current = self.to_dict()
        current.update(_interpolate_env_vars(other))
        return self.__class__.from_dict(current)


# ============================================================================
# GUARD CONFIG
# ============================================================================

@dataclass
class GuardConfig(BaseConfig):
    """Timeouts and limits for the guard and the execution helpers (seconds)."""

    # Supervisor
    process_timeout: float = field(
        default_factory=lambda: float(os.getenv("RESOURCE_GUARD_PROCESS_TIMEOUT", "30.0"))
    )
    grace_period: float = field(
        default_factory=lambda: float(os.getenv("RESOURCE_GUARD_GRACE_PERIOD", "1.0"))
    )
    poll_interval: float = field(
        default_factory=lambda: float(os.getenv("RESOURCE_GUARD_POLL_INTERVAL", "0.05"))
    )
    kill_process_tree: bool = field(
        default_factory=lambda: os.getenv("RESOURCE_GUARD_KILL_PROCESS_TREE", "true").lower() == "true"
    )

    # Execution helpers
    exec_timeout: float = field(
        default_factory=lambda: float(os.getenv("RESOURCE_GUARD_EXEC_TIMEOUT", "30.0"))
    )
    exec_grace_period: float = field(
        default_factory=lambda: float(os.getenv("RESOURCE_GUARD_EXEC_GRACE_PERIOD", "5.0"))
    )
    max_buffer: int = field(
        default_factory=lambda: int(os.getenv("RESOURCE_GUARD_MAX_BUFFER", str(10 * 1024 * 1024)))
    )
    retry_attempts: int = field(
        default_factory=lambda: int(os.getenv("RESOURCE_GUARD_RETRY_ATTEMPTS", "3"))
    )
    retry_delay: float = field(
        default_factory=lambda: float(os.getenv("RESOURCE_GUARD_RETRY_DELAY", "1.0"))
    )

    def validate(self) -> None:
        if self.process_timeout < 0:
            raise ValueError("process_timeout must be >= 0 (0 disables the deadline)")
        if self.grace_period < 0 or self.exec_grace_period < 0:
            raise ValueError("grace periods must be >= 0")
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be > 0")
        if self.max_buffer <= 0:
            raise ValueError("max_buffer must be > 0")
        if self.retry_attempts < 1:
            raise ValueError("retry_attempts must be >= 1")
        if self.retry_delay < 0:
            raise ValueError("retry_delay must be >= 0")


def load_config(path: Optional[Union[str, Path]] = None) -> GuardConfig:
    """
    Load the guard configuration.

    Reads a YAML file when a path is given (or RESOURCE_GUARD_CONFIG is set),
    otherwise builds the config from RESOURCE_GUARD_* environment variables.
    """
    config_path = path or os.getenv("RESOURCE_GUARD_CONFIG")
    if config_path:
        logger.debug(f"[Config] Loading guard config from {config_path}")
        return GuardConfig.from_yaml(config_path)
    return GuardConfig.from_env()
