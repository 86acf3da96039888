"""Relive Core Module - engine, configuration, results and markers."""

from relive.core.config import ReliveConfig, get_config, reset_config, set_config
from relive.core.engine import MigrationEngine, ModuleSwap
from relive.core.errors import (
    DefaultRecoveryError,
    ReliveError,
    SwapCycleError,
    UpgraderNotFoundError,
    UpgraderOrderingError,
    UpgraderRegistrationError,
)
from relive.core.markers import (
    HotloadManaged,
    InstanceState,
    SkipHotload,
    initialized_by,
    skip_hotload,
    skip_hotload_fields,
)
from relive.core.result import EntrySeverity, PassResult, ResultEntry

__all__ = [
    "ReliveConfig",
    "get_config",
    "set_config",
    "reset_config",
    "MigrationEngine",
    "ModuleSwap",
    "ReliveError",
    "UpgraderRegistrationError",
    "UpgraderOrderingError",
    "UpgraderNotFoundError",
    "SwapCycleError",
    "DefaultRecoveryError",
    "HotloadManaged",
    "InstanceState",
    "SkipHotload",
    "initialized_by",
    "skip_hotload",
    "skip_hotload_fields",
    "EntrySeverity",
    "PassResult",
    "ResultEntry",
]
