"""
Instance Upgrader Interface

Every strategy for migrating a category of runtime values implements this
interface. Migration is two-phase:

1. ``try_create_new_instance`` claims the old value and returns a
   replacement, possibly still empty. The engine caches it for the old value
   right away, so cycles and aliases converge on it.
2. ``try_upgrade_instance`` copies the old state into the replacement, or
   schedules a task doing so; queued tasks reach ``process_instance``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import IntEnum
from typing import TYPE_CHECKING, Any, ClassVar, Optional, Sequence, Tuple

import structlog

from relive.core.members import FieldKind, FieldRef
from relive.core.result import EntrySeverity, TaskOutcome

if TYPE_CHECKING:
    from relive.core.engine import MigrationEngine

logger = structlog.get_logger(__name__)

#: Reference path markers for container contents.
ELEMENT = "[]"
KEY = "{key}"
VALUE = "{value}"

_TPFLAGS_HEAPTYPE = 1 << 9


class GroupOrder(IntEnum):
    """Coarse position of an upgrader inside its group."""

    FIRST = 0
    DEFAULT = 1
    LAST = 2


class InstanceUpgrader(ABC):
    """
    Base class for upgraders.

    Class attributes:
        upgrader_group: Group class the upgrader belongs to (``None``: root)
        group_order: Coarse position inside the group
        attempt_before: Upgrader classes this one must be tried before
        attempt_after: Upgrader classes this one must be tried after
        auto_create: Discovered by ``add_upgraders_from_module``; only read
            from the class's own namespace, so it isn't inherited
        caches_instances: Whether replacements are stored in the identity map
    """

    upgrader_group: ClassVar[Optional[type]] = None
    group_order: ClassVar[GroupOrder] = GroupOrder.DEFAULT
    attempt_before: ClassVar[Sequence[type]] = ()
    attempt_after: ClassVar[Sequence[type]] = ()
    auto_create: ClassVar[bool] = True
    caches_instances: ClassVar[bool] = True

    def __init__(self):
        self._engine: Optional["MigrationEngine"] = None

    @property
    def name(self) -> str:
        return type(self).__name__

    @property
    def engine(self) -> "MigrationEngine":
        if self._engine is None:
            raise RuntimeError(f"Upgrader {self.name} isn't registered with an engine")
        return self._engine

    def __repr__(self) -> str:
        return f"<{self.name}>"

    # === Lifecycle ===

    def initialize(self, engine: "MigrationEngine") -> None:
        """Called once when the upgrader is registered."""
        self._engine = engine

    def pass_started(self) -> None:
        pass

    def pass_completed(self) -> None:
        pass

    def clear_cache(self) -> None:
        """Drop anything kept across instances of one pass."""

    # === Upgrading ===

    def should_process_type(self, cls: type) -> bool:
        """Whether instances of ``cls`` are offered to this upgrader at all."""
        return True

    @abstractmethod
    def try_create_new_instance(self, old: Any) -> Tuple[bool, Any]:
        """
        Claim ``old`` and produce its replacement.

        Returns:
            ``(False, None)`` to pass ``old`` on to the next upgrader,
            ``(True, new)`` otherwise; ``new`` may be ``old`` itself for
            values migrated in place, or ``None`` for removed ones
        """

    def try_upgrade_instance(self, old: Any, new: Any, created_elsewhere: bool = False) -> bool:
        """
        Populate ``new`` from ``old``, now or through a queued task.

        ``created_elsewhere`` is set when ``new`` wasn't produced by this
        upgrader, like the value a reloaded module already assigned to a
        ``Final`` name.
        """
        return False

    def process_instance(self, old: Any, new: Any) -> TaskOutcome:
        """Entry point for queued tasks; failures are returned, not raised."""
        try:
            instances = self.upgrade_instance(old, new)
        except Exception as e:
            return TaskOutcome.failed(e)
        return TaskOutcome(instances=instances if instances is not None else 1)

    def upgrade_instance(self, old: Any, new: Any) -> Optional[int]:
        """Deferred population work. Returns the number of instances handled."""
        raise NotImplementedError(f"{self.name} doesn't queue tasks")

    # === Helpers ===

    def get_new_type(self, old: Any) -> Any:
        return self.engine.get_new_type(old)

    def get_new_instance(self, old: Any, src_field: Any = None, dst_field: Any = None) -> Any:
        return self.engine.get_new_instance(old, src_field, dst_field)

    def add_cached_instance(self, old: Any, new: Any) -> None:
        self.engine.add_cached_instance(old, new)

    def schedule_process_instance(self, old: Any, new: Any) -> None:
        self.engine.scheduler.schedule(self, old, new)

    def schedule_late_process_instance(self, old: Any, new: Any) -> None:
        self.engine.scheduler.schedule(self, old, new, late=True)

    def ensure_processed(self, new: Any) -> None:
        self.engine.scheduler.ensure_processed(new)

    def try_get_default_value(self, cls: type, name: str) -> Tuple[bool, Any]:
        return self.engine.defaults.try_get_default_value(cls, name)

    def log(
        self,
        severity: EntrySeverity,
        message: str,
        exception: Optional[BaseException] = None,
        member: Any = None,
    ) -> None:
        self.engine.log(severity, message, exception=exception, member=member)

    def migrate_attributes(self, old: Any, new: Any) -> None:
        """Migrate the instance ``__dict__`` of container subclasses."""
        namespace = getattr(old, "__dict__", None)
        if not isinstance(namespace, dict):
            return
        cls = type(new)
        for name, value in list(namespace.items()):
            ref = FieldRef(cls, name, FieldKind.INSTANCE)
            new_value = self.get_new_instance(value, ref, ref)
            if old is not new or new_value is not value:
                new.__dict__[name] = new_value


def builtin_base(cls: type) -> type:
    """Closest base implemented in C, whose methods skip Python overrides."""
    for klass in cls.__mro__:
        if not klass.__flags__ & _TPFLAGS_HEAPTYPE:
            return klass
    return object


def is_auto_created(cls: type) -> bool:
    """``auto_create`` as declared by ``cls`` itself."""
    return cls.__dict__.get("auto_create", True) is not False
