"""
Relive - live object-graph migration for hot reload

Moves the state of a running program onto freshly reloaded modules:
- Type resolution across module versions, synthesized classes included
- Default-value recovery for newly added fields
- Pluggable upgraders for objects, collections, functions and closures
- Reference paths and timings for every pass
"""

__version__ = "0.1.0"
__author__ = "Relive Team"

from relive.core.config import ReliveConfig
from relive.core.engine import MigrationEngine
from relive.core.logging import setup_logging
from relive.core.markers import (
    HotloadManaged,
    InstanceState,
    SkipHotload,
    initialized_by,
    skip_hotload,
    skip_hotload_fields,
)
from relive.core.result import EntrySeverity, PassResult

__all__ = [
    "MigrationEngine",
    "ReliveConfig",
    "PassResult",
    "EntrySeverity",
    "HotloadManaged",
    "InstanceState",
    "SkipHotload",
    "initialized_by",
    "skip_hotload",
    "skip_hotload_fields",
    "setup_logging",
    "__version__",
]
