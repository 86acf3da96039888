"""
Hotload Markers

Opt-in annotations that user code places on its classes and modules to steer
migration, and the managed lifecycle protocol with its state container.
"""

from __future__ import annotations

import inspect
import time
import typing
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Optional, Protocol, runtime_checkable

#: Attribute holding skip information. On a class, ``True`` skips the whole
#: type; on a class or module, a collection of names skips those fields.
SKIP_ATTR = "__hotload_skip__"

#: Attribute holding ``{field name: initializer method name or None}``.
INITIALIZERS_ATTR = "__hotload_initializers__"


class _SkipHotloadMarker:
    """Annotation metadata marking a field as skipped: ``Annotated[T, SkipHotload]``."""

    _instance: Optional["_SkipHotloadMarker"] = None

    def __new__(cls) -> "_SkipHotloadMarker":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "SkipHotload"


SkipHotload = _SkipHotloadMarker()


def skip_hotload(cls: type) -> type:
    """
    Class decorator: instances of this type are never migrated.

    References to them are kept as-is, even when the owning module is swapped.
    """
    setattr(cls, SKIP_ATTR, True)
    return cls


def skip_hotload_fields(*names: str) -> Callable[[type], type]:
    """Class decorator: the named class attributes and instance fields are left alone."""

    def decorator(cls: type) -> type:
        existing = cls.__dict__.get(SKIP_ATTR)
        merged = set(names)
        if isinstance(existing, (set, frozenset, list, tuple)):
            merged.update(existing)
        setattr(cls, SKIP_ATTR, frozenset(merged))
        return cls

    return decorator


def initialized_by(field_name: str, method: Optional[str] = None) -> Callable[[type], type]:
    """
    Class decorator controlling how a newly added field gets its first value.

    With a method name, that method is called on the migrated instance to
    initialize the field. Without one, the field is deliberately left unset
    and no default-value recovery is attempted.
    """

    def decorator(cls: type) -> type:
        initializers = dict(cls.__dict__.get(INITIALIZERS_ATTR, {}))
        initializers[field_name] = method
        setattr(cls, INITIALIZERS_ATTR, initializers)
        return cls

    return decorator


def is_type_skipped(cls: type) -> bool:
    """Check whether a class or one of its bases was marked with :func:`skip_hotload`."""
    return any(klass.__dict__.get(SKIP_ATTR) is True for klass in cls.__mro__)


def skipped_names(owner: Any) -> frozenset:
    """Names skipped on a class or module, including ``Annotated[..., SkipHotload]`` fields."""
    namespace = vars(owner)
    names = set()

    marked = namespace.get(SKIP_ATTR)
    if isinstance(marked, (set, frozenset, list, tuple)):
        names.update(marked)

    try:
        annotations = inspect.get_annotations(owner)
    except NameError:
        annotations = {}
    for name, annotation in annotations.items():
        if is_skip_annotation(annotation):
            names.add(name)

    return frozenset(names)


def is_skip_annotation(annotation: Any) -> bool:
    """Check for ``Annotated[..., SkipHotload]``."""
    if typing.get_origin(annotation) is not typing.Annotated:
        return False
    return any(meta is SkipHotload for meta in annotation.__metadata__)


def get_initializers(cls: type) -> Dict[str, Optional[str]]:
    """Collect ``initialized_by`` declarations along the MRO, most derived first."""
    result: Dict[str, Optional[str]] = {}
    for klass in reversed(cls.__mro__):
        result.update(klass.__dict__.get(INITIALIZERS_ATTR, {}))
    return result


@dataclass
class InstanceState:
    """
    State container for an instance during a migration pass.

    The outgoing instance stores data in ``hotload_dispose`` and the
    replacement restores it in ``hotload_accept``.
    """

    owner: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def get(self, key: str, default: Any = None) -> Any:
        """Get state value."""
        return self.data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set state value."""
        self.data[key] = value

    def update(self, data: dict[str, Any]) -> None:
        """Update state with multiple values."""
        self.data.update(data)

    def clear(self) -> None:
        """Clear all state."""
        self.data.clear()

    def __contains__(self, key: str) -> bool:
        return key in self.data

    def keys(self) -> Iterable[str]:
        return self.data.keys()


@runtime_checkable
class HotloadManaged(Protocol):
    """
    Lifecycle callbacks for instances that want to take part in a pass.

    Example:
        class Cache:
            def hotload_dispose(self, state: InstanceState):
                state.set("entries", self.entries)

            def hotload_accept(self, state: InstanceState):
                self.entries = state.get("entries", {})
    """

    def hotload_persisted(self) -> None:
        """The instance was migrated in place, its type didn't change."""

    def hotload_dispose(self, state: InstanceState) -> None:
        """The instance is being replaced; save anything to hand over."""

    def hotload_accept(self, state: InstanceState) -> None:
        """The instance replaces an outgoing one; restore handed over state."""

    def hotload_failed(self) -> None:
        """The instance's type was removed and references to it are cleared."""
