"""
Skip Upgraders

Values that are kept as they are: immutable scalars, synchronization
primitives, weak containers, skip-marked types and types that can be proven
immutable and reference-free.
"""

from __future__ import annotations

import dataclasses
import enum
import threading
import types
import typing
import weakref
from typing import Any, Dict, Set, Tuple

import structlog

from relive.core.markers import is_type_skipped
from relive.core.members import unwrap_annotation
from relive.upgraders.base import GroupOrder, InstanceUpgrader

logger = structlog.get_logger(__name__)

#: Immutable values without references to other objects.
SCALAR_TYPES: Tuple[type, ...] = (
    type(None),
    bool,
    int,
    float,
    complex,
    str,
    bytes,
    range,
    slice,
    types.EllipsisType,
    types.NotImplementedType,
)

_OPAQUE_TYPES: Tuple[type, ...] = (
    bytearray,
    memoryview,
    types.CodeType,
    types.FrameType,
    types.TracebackType,
)

_WEAK_CONTAINERS: Tuple[type, ...] = (
    weakref.WeakValueDictionary,
    weakref.WeakKeyDictionary,
    weakref.WeakSet,
    weakref.ProxyType,
    weakref.CallableProxyType,
)

_SYNC_TYPES: Tuple[type, ...] = (
    type(threading.Lock()),
    type(threading.RLock()),
    threading.Condition,
    threading.Event,
    threading.Semaphore,
    threading.Barrier,
)

_TPFLAGS_HEAPTYPE = 1 << 9
_TPFLAGS_HAVE_GC = 1 << 14


class SkipUpgrader(InstanceUpgrader):
    """Returns values of skipped types unchanged."""

    group_order = GroupOrder.FIRST
    caches_instances = False

    def should_process_type(self, cls: type) -> bool:
        if issubclass(cls, SCALAR_TYPES + _OPAQUE_TYPES + _WEAK_CONTAINERS + _SYNC_TYPES):
            return True
        if is_type_skipped(cls):
            return True

        engine = self.engine
        if engine.is_module_ignored(cls.__module__):
            return True
        if issubclass(cls, enum.Enum) and not engine.type_resolver.is_swapped_type(cls):
            return True
        return False

    def try_create_new_instance(self, old: Any) -> Tuple[bool, Any]:
        return True, old


class AutoSkipUpgrader(InstanceUpgrader):
    """
    Skips types verified to be immutable and free of references.

    That is C types without garbage collector support, and frozen
    dataclasses whose fields are all of such types. Verified types are
    reported on the pass result and pinned to :class:`SkipUpgrader`.
    """

    group_order = GroupOrder.LAST
    auto_create = False
    caches_instances = False

    def __init__(self):
        super().__init__()
        self._decisions: Dict[int, Tuple[type, bool]] = {}
        self._pinned: Set[int] = set()

    def clear_cache(self) -> None:
        self._decisions.clear()
        self._pinned.clear()

    def should_process_type(self, cls: type) -> bool:
        return self.is_immutable_type(cls)

    def try_create_new_instance(self, old: Any) -> Tuple[bool, Any]:
        cls = type(old)
        if id(cls) not in self._pinned:
            self._pinned.add(id(cls))
            engine = self.engine
            engine.result.auto_skipped_types.append(f"{cls.__module__}.{cls.__qualname__}")
            engine.root.set_upgraders_for_type(cls, [engine.get_upgrader(SkipUpgrader)])
        return True, old

    def is_immutable_type(self, cls: type) -> bool:
        cached = self._decisions.get(id(cls))
        if cached is not None and cached[0] is cls:
            return cached[1]

        # Assume the best while recursing through self-referencing records
        self._decisions[id(cls)] = (cls, True)
        decision = self._check_type(cls)
        self._decisions[id(cls)] = (cls, decision)
        return decision

    def _check_type(self, cls: type) -> bool:
        if issubclass(cls, SCALAR_TYPES):
            return True

        if not cls.__flags__ & _TPFLAGS_HEAPTYPE:
            return not cls.__flags__ & _TPFLAGS_HAVE_GC

        if not dataclasses.is_dataclass(cls) or not cls.__dataclass_params__.frozen:
            return False
        if self.engine.type_resolver.is_swapped_type(cls):
            return False
        try:
            hints = typing.get_type_hints(cls)
        except Exception:
            # Unresolvable forward references
            return False

        return all(
            self._is_immutable_annotation(hints.get(f.name))
            for f in dataclasses.fields(cls)
        )

    def _is_immutable_annotation(self, annotation: Any) -> bool:
        annotation = unwrap_annotation(annotation)
        if annotation is None:
            return False
        if isinstance(annotation, type):
            return self.is_immutable_type(annotation)

        origin = typing.get_origin(annotation)
        args = typing.get_args(annotation)

        if origin is typing.Literal:
            return all(isinstance(a, SCALAR_TYPES) for a in args)
        if origin in (typing.Union, types.UnionType):
            return all(self._is_immutable_annotation(a) for a in args)
        if origin in (tuple, frozenset):
            return all(a is Ellipsis or self._is_immutable_annotation(a) for a in args)
        return False

