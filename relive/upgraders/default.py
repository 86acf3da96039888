"""
Default Upgrader

Catch-all for instances of user classes. A replacement is allocated without
running ``__init__`` and receives the old instance's fields by name; fields
the new class introduced get their default from the new initializer.
"""

from __future__ import annotations

import types
import typing
from dataclasses import dataclass, fields, is_dataclass
from typing import Any, Dict, List, Optional, Tuple

import structlog

from relive.core.errors import DefaultRecoveryError
from relive.core.markers import InstanceState, get_initializers, skipped_names
from relive.core.members import (
    FieldKind,
    FieldRef,
    get_annotations,
    is_classvar_annotation,
    unwrap_annotation,
)
from relive.core.result import EntrySeverity
from relive.defaults.actions import assigned_attributes
from relive.defaults.recoverer import INITIALIZERS
from relive.resolver.type_resolver import is_type_like
from relive.upgraders.base import GroupOrder, InstanceUpgrader
from relive.upgraders.skip import AutoSkipUpgrader

logger = structlog.get_logger(__name__)

#: Immutable builtin bases, with the slot returning the plain base value.
_IMMUTABLE_BASES = (
    (int, int.__int__),
    (float, float.__float__),
    (complex, complex.__complex__),
    (str, str.__str__),
    (bytes, bytes.__bytes__),
)


@dataclass
class InstanceLayout:
    """Where instances of a class keep their fields, and which fields it declares."""

    cls: type
    has_dict: bool
    slots: Dict[str, FieldRef]
    declared: Tuple[str, ...]
    annotations: Dict[str, Any]
    skipped: frozenset
    initializers: Dict[str, Optional[str]]

    def field(self, name: str) -> FieldRef:
        """Storage for ``name`` on instances of this class."""
        slot = self.slots.get(name)
        if slot is not None:
            return slot
        return FieldRef(self.cls, name, FieldKind.INSTANCE, self.annotations.get(name))

    def read_fields(self, instance: Any) -> List[Tuple[str, Any]]:
        """Snapshot of every field set on ``instance``."""
        values: List[Tuple[str, Any]] = []
        if self.has_dict:
            namespace = getattr(instance, "__dict__", None)
            if isinstance(namespace, dict):
                values.extend(namespace.items())
        for name, slot in self.slots.items():
            if slot.has_value(instance):
                values.append((name, slot.get(instance)))
        return values


def mangle(class_name: str, name: str) -> str:
    """Private name mangling as applied to ``__slots__`` entries."""
    if not name.startswith("__") or name.endswith("__"):
        return name
    return f"_{class_name.lstrip('_')}{name}"


def build_layout(cls: type) -> InstanceLayout:
    slots: Dict[str, FieldRef] = {}
    declared: Dict[str, None] = {}
    annotations: Dict[str, Any] = {}
    skipped = set()

    for klass in reversed(cls.__mro__):
        if klass is object:
            continue

        own = get_annotations(klass)
        annotations.update(own)
        skipped.update(skipped_names(klass))

        for name, annotation in own.items():
            if not is_classvar_annotation(annotation):
                declared[name] = None

        names = klass.__dict__.get("__slots__", ())
        if isinstance(names, str):
            names = (names,)
        for name in names:
            if name in ("__dict__", "__weakref__"):
                continue
            mangled = mangle(klass.__name__, name)
            if isinstance(klass.__dict__.get(mangled), types.MemberDescriptorType):
                slots[mangled] = FieldRef(klass, mangled, FieldKind.SLOT, own.get(name))
                declared[mangled] = None

        for attr in INITIALIZERS:
            init = klass.__dict__.get(attr)
            if isinstance(init, types.FunctionType):
                for name in assigned_attributes(init.__code__):
                    declared[name] = None

    if is_dataclass(cls):
        for f in fields(cls):
            declared[f.name] = None

    return InstanceLayout(
        cls=cls,
        has_dict=cls.__dictoffset__ != 0,
        slots=slots,
        declared=tuple(declared),
        annotations=annotations,
        skipped=frozenset(skipped),
        initializers=get_initializers(cls),
    )


def allocate_instance(cls: type, old: Any) -> Any:
    """Create an instance of ``cls`` without running any Python ``__new__`` or ``__init__``."""
    for base, plain in _IMMUTABLE_BASES:
        if issubclass(cls, base) and isinstance(old, base):
            return base.__new__(cls, plain(old))

    for klass in cls.__mro__:
        constructor = klass.__dict__.get("__new__")
        if constructor is None or isinstance(constructor, (staticmethod, types.FunctionType)):
            continue
        return klass.__new__(cls)
    return object.__new__(cls)


class DefaultUpgrader(InstanceUpgrader):
    """
    Migrates arbitrary objects field by field.

    Instances of unchanged classes are migrated in place. Instances of
    replaced classes are re-allocated as the new class; old values are
    discarded when the field's annotation changed incompatibly, and new
    fields get recovered defaults or run their ``initialized_by`` method.

    Classes may implement the :class:`~relive.core.markers.HotloadManaged`
    hooks to take part.
    """

    group_order = GroupOrder.LAST
    attempt_after = (AutoSkipUpgrader,)

    def __init__(self):
        super().__init__()
        self._layouts: Dict[int, Tuple[type, InstanceLayout]] = {}
        self._accepts: List[Tuple[Any, InstanceState]] = []

    def clear_cache(self) -> None:
        self._layouts.clear()
        self._accepts.clear()

    def get_layout(self, cls: type) -> InstanceLayout:
        cached = self._layouts.get(id(cls))
        if cached is not None and cached[0] is cls:
            return cached[1]
        layout = build_layout(cls)
        self._layouts[id(cls)] = (cls, layout)
        return layout

    # === Two-phase contract ===

    def try_create_new_instance(self, old: Any) -> Tuple[bool, Any]:
        old_cls = type(old)
        new_cls = self.get_new_type(old_cls)

        if new_cls is None:
            self._notify_failed(old)
            return True, None
        if new_cls is old_cls:
            return True, old
        return True, allocate_instance(new_cls, old)

    def try_upgrade_instance(self, old: Any, new: Any, created_elsewhere: bool = False) -> bool:
        self.schedule_process_instance(old, new)
        return True

    def upgrade_instance(self, old: Any, new: Any) -> int:
        if old is new:
            self._migrate_in_place(old)
        else:
            self._migrate(old, new, type(old))
        return 1

    def upgrade_watched_instance(self, obj: Any) -> bool:
        """
        Migrate a watched instance without replacing it.

        When its class was replaced, the instance is re-classed. Returns
        ``False`` if the class was removed or the layouts are incompatible.
        """
        old_cls = type(obj)
        new_cls = self.get_new_type(old_cls)

        if new_cls is None:
            self._notify_failed(obj)
            return False

        self.add_cached_instance(obj, obj)
        if new_cls is old_cls:
            self._migrate_in_place(obj)
            return True

        snapshot = self.get_layout(old_cls).read_fields(obj)
        try:
            obj.__class__ = new_cls
        except TypeError as e:
            self.log(
                EntrySeverity.WARNING,
                f"Watched instance of {old_cls.__qualname__} can't take the layout of "
                f"its replacement: {e}",
                exception=e,
                member=old_cls,
            )
            return False

        self._migrate(obj, obj, old_cls, snapshot)
        return True

    # === Migration ===

    def _migrate_in_place(self, obj: Any) -> None:
        cls = type(obj)
        layout = self.get_layout(cls)

        for name, value in layout.read_fields(obj):
            if name in layout.skipped:
                continue
            ref = layout.field(name)
            new_value = self.get_new_instance(value, ref, ref)
            if new_value is not value:
                ref.set(new_value, obj)

        persisted = getattr(cls, "hotload_persisted", None)
        if callable(persisted):
            self._call_hook(cls, "hotload_persisted", persisted, obj)

    def _migrate(
        self,
        old: Any,
        new: Any,
        old_cls: type,
        snapshot: Optional[List[Tuple[str, Any]]] = None,
    ) -> None:
        new_cls = type(new)
        old_layout = self.get_layout(old_cls)
        new_layout = self.get_layout(new_cls)

        state = None
        dispose = getattr(old_cls, "hotload_dispose", None)
        if callable(dispose):
            state = InstanceState(owner=f"{old_cls.__module__}.{old_cls.__qualname__}")
            self._call_hook(old_cls, "hotload_dispose", dispose, old, state)

        if snapshot is None:
            snapshot = old_layout.read_fields(old)
        present = set()
        recover = []

        for name, value in snapshot:
            present.add(name)
            dst = new_layout.field(name)
            if dst.kind is FieldKind.INSTANCE and not new_layout.has_dict:
                self.log(
                    EntrySeverity.WARNING,
                    f"{new_cls.__qualname__} has no storage for field {name}, value dropped",
                    member=dst,
                )
                continue

            if name in new_layout.skipped:
                dst.set(value, new)
                continue

            if not self._is_compatible(old_layout.annotations.get(name), new_layout.annotations.get(name)):
                self.log(
                    EntrySeverity.WARNING,
                    f"Type of field {new_cls.__qualname__}.{name} changed from "
                    f"{old_layout.annotations.get(name)!r} to {new_layout.annotations.get(name)!r}, "
                    f"old value discarded",
                    member=dst,
                )
                recover.append(name)
                continue

            src = old_layout.field(name)
            dst.set(self.get_new_instance(value, src, dst), new)

        if isinstance(old, BaseException) and old is not new:
            new.args = self.get_new_instance(old.args)

        old_declared = set(old_layout.declared)
        for name in new_layout.declared:
            if name not in present and name not in old_declared:
                recover.append(name)

        for name in recover:
            self._initialize_field(new, new_layout, name)

        if state is not None:
            self._accepts.append((new, state))

    def _initialize_field(self, new: Any, layout: InstanceLayout, name: str) -> None:
        cls = layout.cls

        if name in layout.initializers:
            method_name = layout.initializers[name]
            if method_name is None:
                return
            method = getattr(new, method_name, None)
            if not callable(method):
                error = DefaultRecoveryError(cls, name, f"initializer {method_name!r} is not a method")
                self.log(EntrySeverity.ERROR, str(error), exception=error, member=cls)
                return
            try:
                method()
            except Exception as e:
                self.log(
                    EntrySeverity.ERROR,
                    f"Initializer {cls.__qualname__}.{method_name} for field {name} failed: {e}",
                    exception=e,
                    member=cls,
                )
            return

        ok, value = self.try_get_default_value(cls, name)
        if ok:
            layout.field(name).set(value, new)
        else:
            logger.debug("No default value for new field", type=cls.__qualname__, field=name)

    def _is_compatible(self, old_annotation: Any, new_annotation: Any) -> bool:
        old_type = unwrap_annotation(old_annotation)
        new_type = unwrap_annotation(new_annotation)
        if old_type is None or new_type is None:
            return True
        if isinstance(old_type, str) or isinstance(new_type, str):
            return True
        if not is_type_like(old_type):
            return True

        resolved = self.get_new_type(old_type)
        if resolved is None:
            return False
        if self.engine.type_resolver.are_equivalent_types(resolved, new_type):
            return True

        resolved_origin = typing.get_origin(resolved) or resolved
        new_origin = typing.get_origin(new_type) or new_type
        if isinstance(resolved_origin, type) and isinstance(new_origin, type):
            return issubclass(resolved_origin, new_origin)
        return True

    # === Lifecycle hooks ===

    def _notify_failed(self, old: Any) -> None:
        failed = getattr(type(old), "hotload_failed", None)
        if callable(failed):
            self._call_hook(type(old), "hotload_failed", failed, old)

    def _call_hook(self, cls: type, name: str, hook: Any, instance: Any, *args: Any) -> None:
        try:
            hook(instance, *args)
        except Exception as e:
            self.log(
                EntrySeverity.ERROR,
                f"{cls.__qualname__}.{name} raised {type(e).__name__}: {e}",
                exception=e,
                member=cls,
            )

    def pass_completed(self) -> None:
        accepts, self._accepts = self._accepts, []
        for new, state in accepts:
            accept = getattr(type(new), "hotload_accept", None)
            if callable(accept):
                self._call_hook(type(new), "hotload_accept", accept, new, state)
