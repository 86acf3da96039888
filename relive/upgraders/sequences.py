"""
Sequence Upgraders

Lists and deques are migrated element by element through a queued task;
tuples are immutable and rebuilt eagerly.
"""

from __future__ import annotations

from collections import deque
from typing import Any, List, Tuple

import structlog

from relive.core.members import FieldKind, FieldRef
from relive.core.result import EntrySeverity
from relive.upgraders.base import ELEMENT, InstanceUpgrader, builtin_base
from relive.upgraders.default import allocate_instance
from relive.upgraders.groups import CollectionsUpgraderGroup

logger = structlog.get_logger(__name__)


def is_namedtuple_type(cls: type) -> bool:
    return issubclass(cls, tuple) and isinstance(cls.__dict__.get("_fields"), tuple)


class SequenceUpgrader(InstanceUpgrader):
    """``list``, ``collections.deque`` and their subclasses."""

    upgrader_group = CollectionsUpgraderGroup

    def should_process_type(self, cls: type) -> bool:
        return issubclass(cls, (list, deque))

    def try_create_new_instance(self, old: Any) -> Tuple[bool, Any]:
        old_cls = type(old)
        new_cls = self.get_new_type(old_cls)
        if new_cls is None:
            return True, None
        if new_cls is old_cls:
            return True, old

        new = allocate_instance(new_cls, old)
        if isinstance(old, deque):
            deque.__init__(new, maxlen=old.maxlen)
        return True, new

    def try_upgrade_instance(self, old: Any, new: Any, created_elsewhere: bool = False) -> bool:
        self.schedule_process_instance(old, new)
        return True

    def upgrade_instance(self, old: Any, new: Any) -> int:
        items = list(old)
        migrated = [self.get_new_instance(item, ELEMENT, ELEMENT) for item in items]

        if old is new:
            for i, (item, new_item) in enumerate(zip(items, migrated)):
                if new_item is not item:
                    new[i] = new_item
        else:
            base = builtin_base(type(new))
            base.clear(new)
            base.extend(new, migrated)

        self.migrate_attributes(old, new)
        return len(items) + 1


class TupleUpgrader(InstanceUpgrader):
    """
    Tuples and named tuples, rebuilt right away.

    Named tuples whose class was replaced are mapped by field name; new
    fields take the class's field defaults.
    """

    upgrader_group = CollectionsUpgraderGroup

    def should_process_type(self, cls: type) -> bool:
        return issubclass(cls, tuple)

    def try_create_new_instance(self, old: Any) -> Tuple[bool, Any]:
        old_cls = type(old)
        new_cls = self.get_new_type(old_cls)
        if new_cls is None:
            return True, None

        if new_cls is not old_cls and is_namedtuple_type(old_cls) and is_namedtuple_type(new_cls):
            return True, self._remap_fields(old, new_cls)

        values = [self.get_new_instance(item, ELEMENT, ELEMENT) for item in old]
        if new_cls is old_cls and all(a is b for a, b in zip(values, old)):
            return True, old
        if new_cls is tuple:
            return True, tuple(values)
        return True, tuple.__new__(new_cls, values)

    def try_upgrade_instance(self, old: Any, new: Any, created_elsewhere: bool = False) -> bool:
        # Populated on creation
        return True

    def _remap_fields(self, old: Any, new_cls: type) -> Any:
        old_cls = type(old)
        old_values = dict(zip(old_cls._fields, old))
        defaults = new_cls._field_defaults
        values: List[Any] = []

        for name in new_cls._fields:
            if name in old_values:
                src = FieldRef(old_cls, name, FieldKind.INSTANCE)
                dst = FieldRef(new_cls, name, FieldKind.INSTANCE)
                values.append(self.get_new_instance(old_values[name], src, dst))
            elif name in defaults:
                values.append(defaults[name])
            else:
                self.log(
                    EntrySeverity.WARNING,
                    f"New field {new_cls.__qualname__}.{name} has no default, set to None",
                    member=new_cls,
                )
                values.append(None)

        return tuple.__new__(new_cls, values)
