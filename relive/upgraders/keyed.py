"""
Keyed Collection Upgraders

Dictionaries and sets hash their keys, so migrated keys can only be
inserted once their own migration finished. Keys and values are migrated by
a default task; re-insertion happens in a late task, after every other
instance of the pass was populated.
"""

from __future__ import annotations

from abc import abstractmethod
from collections import defaultdict
from typing import Any, Dict, List, Tuple

import structlog

from relive.core.result import EntrySeverity
from relive.upgraders.base import ELEMENT, KEY, VALUE, InstanceUpgrader, builtin_base
from relive.upgraders.default import allocate_instance
from relive.upgraders.groups import CollectionsUpgraderGroup

logger = structlog.get_logger(__name__)


def _allocate_container(new_cls: type, old: Any) -> Any:
    new = allocate_instance(new_cls, old)
    builtin_base(new_cls).__init__(new)
    return new


class _KeyedUpgrader(InstanceUpgrader):
    """Shared two-stage population for hashed containers."""

    def __init__(self):
        super().__init__()
        self._pending: Dict[int, Tuple[Any, Any]] = {}

    def clear_cache(self) -> None:
        self._pending.clear()

    def try_create_new_instance(self, old: Any) -> Tuple[bool, Any]:
        old_cls = type(old)
        new_cls = self.get_new_type(old_cls)
        if new_cls is None:
            return True, None
        if new_cls is old_cls:
            return True, old
        return True, _allocate_container(new_cls, old)

    def try_upgrade_instance(self, old: Any, new: Any, created_elsewhere: bool = False) -> bool:
        self.schedule_process_instance(old, new)
        return True

    def upgrade_instance(self, old: Any, new: Any) -> int:
        pending = self._pending.pop(id(new), None)
        if pending is not None and pending[0] is new:
            return self.insert(old, new, pending[1])

        entries = self.migrate_entries(old, new)
        self._pending[id(new)] = (new, entries)
        self.schedule_late_process_instance(old, new)
        return len(entries) + 1

    @abstractmethod
    def migrate_entries(self, old: Any, new: Any) -> Any:
        """Migrate keys and values, returning what :meth:`insert` needs later."""

    @abstractmethod
    def insert(self, old: Any, new: Any, entries: Any) -> int:
        """Insert migrated entries into ``new``. Returns the number of entries."""

    def _report_removed(self, container: Any, key: Any) -> None:
        self.log(
            EntrySeverity.WARNING,
            f"Key {key!r} of a {type(container).__qualname__} was removed by the reload, entry dropped",
            member=type(key),
        )

    def _report_collision(self, container: Any, key: Any) -> None:
        self.log(
            EntrySeverity.WARNING,
            f"Migrated keys of a {type(container).__qualname__} collide on {key!r}, "
            f"keeping the first entry",
            member=type(key),
        )


class DictUpgrader(_KeyedUpgrader):
    """``dict``, ``OrderedDict``, ``defaultdict``, ``Counter`` and other subclasses."""

    upgrader_group = CollectionsUpgraderGroup

    def should_process_type(self, cls: type) -> bool:
        return issubclass(cls, dict)

    def migrate_entries(self, old: Any, new: Any) -> List[Tuple[Any, Any, Any, Any]]:
        entries = []
        for key, value in list(old.items()):
            new_key = self.get_new_instance(key, KEY, KEY)
            new_value = self.get_new_instance(value, VALUE, VALUE)
            entries.append((key, new_key, value, new_value))

        if isinstance(old, defaultdict):
            new.default_factory = self.get_new_instance(old.default_factory)

        self.migrate_attributes(old, new)
        return entries

    def insert(self, old: Any, new: Any, entries: List[Tuple[Any, Any, Any, Any]]) -> int:
        base = builtin_base(type(new))
        keys_changed = any(k is not nk for k, nk, _, _ in entries)

        if old is new and not keys_changed:
            for key, _, value, new_value in entries:
                if new_value is not value:
                    base.__setitem__(new, key, new_value)
            return len(entries)

        if old is new:
            base.clear(new)

        for key, new_key, _, new_value in entries:
            if new_key is None and key is not None:
                self._report_removed(old, key)
                continue
            self.ensure_processed(new_key)
            if base.__contains__(new, new_key):
                self._report_collision(old, new_key)
                continue
            base.__setitem__(new, new_key, new_value)
        return len(entries)


class SetUpgrader(_KeyedUpgrader):
    """``set`` and subclasses."""

    upgrader_group = CollectionsUpgraderGroup

    def should_process_type(self, cls: type) -> bool:
        return issubclass(cls, set)

    def migrate_entries(self, old: Any, new: Any) -> List[Tuple[Any, Any]]:
        entries = [(item, self.get_new_instance(item, ELEMENT, ELEMENT)) for item in list(old)]
        self.migrate_attributes(old, new)
        return entries

    def insert(self, old: Any, new: Any, entries: List[Tuple[Any, Any]]) -> int:
        if old is new and all(item is new_item for item, new_item in entries):
            return len(entries)

        base = builtin_base(type(new))
        if old is new:
            base.clear(new)

        for item, new_item in entries:
            if new_item is None and item is not None:
                self._report_removed(old, item)
                continue
            self.ensure_processed(new_item)
            if base.__contains__(new, new_item):
                self._report_collision(old, new_item)
                continue
            base.add(new, new_item)
        return len(entries)


class FrozenSetUpgrader(InstanceUpgrader):
    """``frozenset``, rebuilt right away from fully migrated elements."""

    upgrader_group = CollectionsUpgraderGroup

    def should_process_type(self, cls: type) -> bool:
        return issubclass(cls, frozenset)

    def try_create_new_instance(self, old: Any) -> Tuple[bool, Any]:
        old_cls = type(old)
        new_cls = self.get_new_type(old_cls)
        if new_cls is None:
            return True, None

        changed = new_cls is not old_cls
        items = []
        seen = set()
        for item in old:
            new_item = self.get_new_instance(item, ELEMENT, ELEMENT)
            if new_item is not item:
                changed = True
            if new_item is None and item is not None:
                self.log(
                    EntrySeverity.WARNING,
                    f"Element {item!r} of a frozenset was removed by the reload, element dropped",
                    member=type(item),
                )
                continue
            self.ensure_processed(new_item)
            if new_item in seen:
                self.log(
                    EntrySeverity.WARNING,
                    f"Migrated elements of a frozenset collide on {new_item!r}",
                    member=type(new_item),
                )
                continue
            seen.add(new_item)
            items.append(new_item)

        if not changed:
            return True, old
        if new_cls is frozenset:
            return True, frozenset(items)
        return True, frozenset.__new__(new_cls, items)

    def try_upgrade_instance(self, old: Any, new: Any, created_elsewhere: bool = False) -> bool:
        # Populated on creation
        return True
