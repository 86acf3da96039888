"""
Upgrader Groups

A group is an upgrader made of upgraders. It orders its members, decides
per type which of them apply, and dispatches the two-phase contract to the
first member that claims a value.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog

from relive.upgraders.base import InstanceUpgrader
from relive.upgraders.ordering import order_upgraders

logger = structlog.get_logger(__name__)


class UpgraderGroup(InstanceUpgrader):
    """
    Ordered collection of upgraders.

    The applicable leaf upgraders are cached per type; nested groups are
    flattened into the list of their parent.
    """

    auto_create = False
    caches_instances = False

    def __init__(self):
        super().__init__()
        self._members: List[InstanceUpgrader] = []
        self._ordered: List[InstanceUpgrader] = []
        self._type_cache: Dict[int, Tuple[type, List[InstanceUpgrader]]] = {}
        self._parent: Optional[UpgraderGroup] = None

    @property
    def members(self) -> List[InstanceUpgrader]:
        """Members in the order they are tried."""
        return list(self._ordered)

    def add_member(self, upgrader: InstanceUpgrader) -> None:
        """
        Add ``upgrader`` and re-sort.

        Raises:
            UpgraderOrderingError: If the new member's constraints contradict
                the existing ones; the group is left unchanged
        """
        members = self._members + [upgrader]
        ordered = order_upgraders(members)

        self._members = members
        self._ordered = ordered
        if isinstance(upgrader, UpgraderGroup):
            upgrader._parent = self
        self.invalidate()

    def invalidate(self) -> None:
        """Forget per-type decisions here and in every enclosing group."""
        group: Optional[UpgraderGroup] = self
        while group is not None:
            group._type_cache.clear()
            group = group._parent

    def get_upgraders(self, cls: type) -> List[InstanceUpgrader]:
        """Leaf upgraders applicable to instances of ``cls``, in order."""
        cached = self._type_cache.get(id(cls))
        if cached is not None and cached[0] is cls:
            return cached[1]

        upgraders: List[InstanceUpgrader] = []
        for member in self._ordered:
            if not member.should_process_type(cls):
                continue
            if isinstance(member, UpgraderGroup):
                upgraders.extend(member.get_upgraders(cls))
            else:
                upgraders.append(member)

        self._type_cache[id(cls)] = (cls, upgraders)
        return upgraders

    def set_upgraders_for_type(self, cls: type, upgraders: Sequence[InstanceUpgrader]) -> None:
        """Pin the upgraders used for ``cls`` for the rest of the pass."""
        self._type_cache[id(cls)] = (cls, list(upgraders))

    # === Dispatch ===

    def try_create_new_instance(self, old: Any) -> Tuple[bool, Any]:
        engine = self.engine
        for upgrader in self.get_upgraders(type(old)):
            handled, new = upgrader.try_create_new_instance(old)
            if not handled:
                continue
            if upgrader.caches_instances:
                engine.add_cached_instance(old, new)
            if new is not None:
                upgrader.try_upgrade_instance(old, new)
            return True, new
        return False, None

    def try_upgrade_instance(self, old: Any, new: Any, created_elsewhere: bool = False) -> bool:
        for upgrader in self.get_upgraders(type(old)):
            if upgrader.try_upgrade_instance(old, new, created_elsewhere):
                return True
        return False

    # === Lifecycle ===

    def pass_started(self) -> None:
        for member in self._ordered:
            member.pass_started()

    def pass_completed(self) -> None:
        for member in self._ordered:
            member.pass_completed()

    def clear_cache(self) -> None:
        self._type_cache.clear()
        for member in self._ordered:
            member.clear_cache()


class RootUpgraderGroup(UpgraderGroup):
    """The group owned by the engine; every other upgrader descends from it."""


class ReflectionUpgraderGroup(UpgraderGroup):
    """Modules, classes, type descriptors, descriptors, enum members and weak references."""

    upgrader_group = RootUpgraderGroup


class FunctionUpgraderGroup(UpgraderGroup):
    """Functions, closures, bound methods, partials and generators."""

    upgrader_group = RootUpgraderGroup
    attempt_after = (ReflectionUpgraderGroup,)


class CollectionsUpgraderGroup(UpgraderGroup):
    """Builtin sequences, tuples, mappings and sets."""

    upgrader_group = RootUpgraderGroup
    attempt_after = (FunctionUpgraderGroup,)
