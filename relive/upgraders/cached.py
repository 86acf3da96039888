"""
Identity map from old values to their replacements, kept for one pass.
"""

from __future__ import annotations

from typing import Any, Dict, Tuple

from relive.upgraders.base import GroupOrder, InstanceUpgrader
from relive.upgraders.skip import SkipUpgrader


class CachedUpgrader(InstanceUpgrader):
    """
    Answers with the replacement already produced for an old value.

    Every value reached twice converges on one replacement: aliases stay
    aliases and cycles terminate.
    """

    group_order = GroupOrder.FIRST
    attempt_after = (SkipUpgrader,)
    caches_instances = False

    def __init__(self):
        super().__init__()
        # Old values are kept alive so their ids can't be reused mid-pass
        self._instances: Dict[int, Tuple[Any, Any]] = {}

    def clear_cache(self) -> None:
        self._instances.clear()

    def try_create_new_instance(self, old: Any) -> Tuple[bool, Any]:
        entry = self._instances.get(id(old))
        if entry is not None and entry[0] is old:
            return True, entry[1]
        return False, None

    def add(self, old: Any, new: Any) -> None:
        self._instances[id(old)] = (old, new)

    def get(self, old: Any) -> Tuple[bool, Any]:
        return self.try_create_new_instance(old)

    def __contains__(self, old: Any) -> bool:
        entry = self._instances.get(id(old))
        return entry is not None and entry[0] is old

    def __len__(self) -> int:
        return len(self._instances)
