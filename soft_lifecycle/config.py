"""
Configuration module for the soft lifecycle toolkit.

Provides centralized configuration for timestamps, cascades, counter caches,
default scoping and logging.
"""

import json
import logging
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union, get_args, get_origin

from pydantic import BaseModel, Field, field_validator


class TimestampPrecision(str, Enum):
    """Precision that destruction instants are normalized to before storage."""

    MICROSECOND = "microsecond"
    MILLISECOND = "millisecond"
    SECOND = "second"


class LifecycleConfig(BaseModel):
    """Central configuration for destroy/restore lifecycle behaviour.

    Configuration Sources (in order of precedence):
        1. Programmatic settings (highest priority)
        2. Environment variables (SOFT_LIFECYCLE_ prefix)
        3. Configuration files (JSON or YAML)
        4. Default values (lowest priority)

    Example:
        >>> config = LifecycleConfig(timestamp_precision="second")
        >>> set_config(config)

        Loading from environment:

        >>> import os
        >>> os.environ["SOFT_LIFECYCLE_TIMEZONE_AWARE"] = "true"
        >>> config = LifecycleConfig.from_env()

    Note:
        The timestamp precision must not be coarser than what the database
        column stores, otherwise restore correlation compares values that
        were rounded differently. Microsecond matches SQLite and PostgreSQL.
    """

    # Timestamps
    timestamp_precision: TimestampPrecision = Field(
        TimestampPrecision.MICROSECOND,
        description="Precision destruction instants are truncated to",
    )
    timezone_aware: bool = Field(
        False, description="Write timezone-aware UTC instants instead of naive UTC"
    )

    # Cascades
    cascade_enabled: bool = Field(
        True, description="Propagate destroy/restore to declared dependents"
    )
    counter_cache_enabled: bool = Field(
        True, description="Maintain declared counter caches"
    )

    # Scoping
    include_destroyed_option: str = Field(
        "include_destroyed",
        description="Execution option that bypasses the default scope",
        min_length=1,
    )

    # Logging
    log_level: str = Field("WARNING", description="Level for the package logger")

    # Tooling
    database_url: Optional[str] = Field(
        None, description="Database URL used by the command-line tools"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure the log level is a standard logging level name."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {', '.join(sorted(valid_levels))}")
        return v.upper()

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return self.model_dump(mode="json")

    @classmethod
    def from_env(cls, prefix: str = "SOFT_LIFECYCLE_") -> "LifecycleConfig":
        """
        Load configuration from environment variables.

        Args:
            prefix: Prefix for environment variables

        Returns:
            Configuration instance
        """
        import os

        config_dict: Dict[str, Any] = {}

        for field_name, field_info in cls.model_fields.items():
            env_var = f"{prefix}{field_name.upper()}"
            if env_var in os.environ:
                value = os.environ[env_var]

                field_type = field_info.annotation

                # Handle Optional types
                if get_origin(field_type) is Union:
                    args = get_args(field_type)
                    field_type = next(
                        (arg for arg in args if arg is not type(None)), str
                    )

                try:
                    if field_type == bool:
                        config_dict[field_name] = value.lower() in (
                            "true",
                            "1",
                            "yes",
                            "on",
                        )
                    elif field_type == int:
                        config_dict[field_name] = int(value)
                    elif isinstance(field_type, type) and issubclass(field_type, Enum):
                        config_dict[field_name] = field_type(value.lower())
                    else:
                        config_dict[field_name] = value
                except (ValueError, TypeError):
                    # Let model validation report the bad value
                    config_dict[field_name] = value

        return cls.model_validate(config_dict)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "LifecycleConfig":
        """
        Load configuration from a JSON or YAML file.

        Args:
            path: Path to a ``.json``, ``.yaml`` or ``.yml`` file

        Returns:
            Configuration instance
        """
        path = Path(path)
        text = path.read_text(encoding="utf-8")

        if path.suffix.lower() in (".yaml", ".yml"):
            import yaml

            data = yaml.safe_load(text) or {}
        else:
            data = json.loads(text)

        return cls.model_validate(data)


# Global configuration instance
_config: Optional[LifecycleConfig] = None


def get_config() -> LifecycleConfig:
    """
    Get the global configuration instance.

    Returns:
        Global configuration
    """
    global _config

    if _config is None:
        _config = LifecycleConfig.from_env()

    return _config


def set_config(config: Optional[LifecycleConfig]) -> None:
    """
    Set the global configuration instance.

    Passing ``None`` resets to environment/default configuration on next use.

    Args:
        config: Configuration to set
    """
    global _config
    _config = config


def configure(**kwargs: Any) -> LifecycleConfig:
    """
    Configure the toolkit with keyword arguments.

    Args:
        **kwargs: Configuration parameters

    Returns:
        Updated configuration
    """
    global _config

    if _config is None:
        _config = LifecycleConfig(**kwargs)
    else:
        config_dict = _config.model_dump()
        config_dict.update(kwargs)
        _config = LifecycleConfig(**config_dict)

    configure_logging(_config)
    return _config


def configure_logging(config: Optional[LifecycleConfig] = None) -> None:
    """Apply the configured level to the package logger."""
    config = config or get_config()
    logging.getLogger("soft_lifecycle").setLevel(config.log_level)
