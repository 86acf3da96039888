"""
Relive Configuration

Settings for the migration engine with:
- Environment-based configuration
- Type-safe settings with Pydantic
- Runtime configuration updates
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class LogLevel(str, Enum):
    """Logging levels for relive."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class ReliveConfig(BaseSettings):
    """
    Migration engine configuration.

    Loads configuration from environment variables.
    Environment variables are prefixed with RELIVE_ (e.g., RELIVE_TRACE_PATHS=true)
    """

    # Diagnostics
    trace_paths: bool = Field(
        default=False,
        description="Record the reference path of every visited instance",
    )
    trace_roots: bool = Field(
        default=False,
        description="Record which static field or watched instance each timing sample came from",
    )
    include_type_timings: bool = Field(
        default=False,
        description="Collect per-type timing buckets",
    )
    include_upgrader_timings: bool = Field(
        default=False,
        description="Collect per-upgrader timing buckets",
    )

    # Logging
    log_entries: bool = Field(
        default=True,
        description="Mirror result entries to the structlog logger",
    )
    log_level: LogLevel = LogLevel.INFO

    # Upgraders
    add_default_upgraders: bool = Field(
        default=True,
        description="Register the built-in upgraders when an engine is created",
    )
    warn_on_suspended_generators: bool = Field(
        default=True,
        description="Warn when a started generator keeps running outgoing code",
    )

    model_config = {
        "env_prefix": "RELIVE_",
        "case_sensitive": False,
    }

    @property
    def tracing(self) -> bool:
        """Whether reference paths must be built at all."""
        return self.trace_paths or self.trace_roots


# Global config
_config: Optional[ReliveConfig] = None


def get_config() -> ReliveConfig:
    """Get the global relive configuration instance."""
    global _config
    if _config is None:
        _config = ReliveConfig()
    return _config


def set_config(config: ReliveConfig) -> None:
    """Set the global relive configuration instance."""
    global _config
    _config = config


def reset_config() -> None:
    """Reset the global configuration to default."""
    global _config
    _config = None
