"""
Reflection Upgraders

References to modules, classes, type descriptors, descriptor objects, enum
members and weak references. None of these are populated field by field;
they are looked up in the replacement module.
"""

from __future__ import annotations

import enum
import types
import typing
import weakref
from typing import Any, Tuple

import structlog

from relive.core.members import NAMED_TYPE_OBJECTS
from relive.core.result import EntrySeverity
from relive.upgraders.base import InstanceUpgrader
from relive.upgraders.groups import ReflectionUpgraderGroup

logger = structlog.get_logger(__name__)

_ALIAS_TYPES: Tuple[type, ...] = tuple({
    types.GenericAlias,
    types.UnionType,
    type(typing.List[int]),
    type(typing.Optional[int]),
    type(typing.Annotated[int, None]),
})


class _LookupUpgrader(InstanceUpgrader):
    """Replacements are complete when created."""

    upgrader_group = ReflectionUpgraderGroup

    def try_upgrade_instance(self, old: Any, new: Any, created_elsewhere: bool = False) -> bool:
        return True


class ModuleUpgrader(_LookupUpgrader):
    """Outgoing modules are replaced by their swap target."""

    def should_process_type(self, cls: type) -> bool:
        return issubclass(cls, types.ModuleType)

    def try_create_new_instance(self, old: Any) -> Tuple[bool, Any]:
        engine = self.engine
        if engine.is_outgoing_module(old):
            return True, engine.get_swap_target(old)
        return True, old


class TypeUpgrader(_LookupUpgrader):
    """Classes, generic aliases, unions, type variables and type aliases."""

    def should_process_type(self, cls: type) -> bool:
        return issubclass(cls, type) or issubclass(cls, _ALIAS_TYPES + NAMED_TYPE_OBJECTS)

    def try_create_new_instance(self, old: Any) -> Tuple[bool, Any]:
        return True, self.get_new_type(old)


class DescriptorUpgrader(_LookupUpgrader):
    """``property``, ``staticmethod`` and ``classmethod`` objects held outside a class body."""

    def should_process_type(self, cls: type) -> bool:
        return issubclass(cls, (property, staticmethod, classmethod))

    def try_create_new_instance(self, old: Any) -> Tuple[bool, Any]:
        new_cls = self.get_new_type(type(old))
        if new_cls is None:
            return True, None

        if isinstance(old, property):
            parts = (old.fget, old.fset, old.fdel)
            new_parts = tuple(self.get_new_instance(p) for p in parts)
            if new_cls is type(old) and all(a is b for a, b in zip(parts, new_parts)):
                return True, old
            return True, new_cls(*new_parts, old.__doc__)

        func = old.__func__
        new_func = self.get_new_instance(func)
        if new_cls is type(old) and new_func is func:
            return True, old
        return True, new_cls(new_func)


class EnumMemberUpgrader(_LookupUpgrader):
    """Members of replaced enums, matched by name first and by value second."""

    def should_process_type(self, cls: type) -> bool:
        return issubclass(cls, enum.Enum)

    def try_create_new_instance(self, old: Any) -> Tuple[bool, Any]:
        old_cls = type(old)
        new_cls = self.get_new_type(old_cls)
        if new_cls is None:
            return True, None
        if new_cls is old_cls:
            return True, old

        member = new_cls.__members__.get(old.name) if old.name is not None else None
        if member is not None:
            return True, member

        try:
            return True, new_cls(old.value)
        except ValueError:
            self.log(
                EntrySeverity.WARNING,
                f"Enum member {old_cls.__qualname__}.{old.name} no longer exists",
                member=new_cls,
            )
            return True, None


class WeakrefUpgrader(_LookupUpgrader):
    """Weak references are re-created to the referent's replacement."""

    def should_process_type(self, cls: type) -> bool:
        return issubclass(cls, weakref.ReferenceType)

    def try_create_new_instance(self, old: Any) -> Tuple[bool, Any]:
        target = old()
        if target is None:
            return True, old

        new_target = self.get_new_instance(target)
        callback = old.__callback__
        new_callback = self.get_new_instance(callback) if callback is not None else None
        new_cls = self.get_new_type(type(old))

        if new_target is target and new_callback is callback and new_cls is type(old):
            return True, old
        if new_target is None or new_cls is None:
            return True, None

        try:
            return True, new_cls(new_target, new_callback)
        except TypeError as e:
            self.log(
                EntrySeverity.WARNING,
                f"Can't create a weak reference to {type(new_target).__qualname__}: {e}",
                exception=e,
                member=type(new_target),
            )
            return True, None
