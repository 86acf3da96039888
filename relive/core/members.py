"""
Field References

Uniform access to the places a value can live: module globals, class
attributes, instance ``__dict__`` entries and ``__slots__`` members.
"""

from __future__ import annotations

import enum
import functools
import inspect
import types
import typing
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, Optional

from relive.core.markers import skipped_names

#: Synthesized objects that only carry a plain ``__name__``.
NAMED_TYPE_OBJECTS = tuple(
    t for t in (
        typing.TypeVar,
        typing.ParamSpec,
        typing.TypeVarTuple,
        getattr(typing, "TypeAliasType", None),
        typing.NewType,
    )
    if isinstance(t, type)
)


class FieldKind(str, Enum):
    """Where a field stores its value."""

    GLOBAL = "global"
    CLASS_ATTRIBUTE = "class_attribute"
    INSTANCE = "instance"
    SLOT = "slot"


@dataclass(frozen=True)
class FieldRef:
    """A named storage location on a module, class or instance."""

    owner: Any
    name: str
    kind: FieldKind
    annotation: Any = field(default=None, compare=False, hash=False)

    @property
    def is_static(self) -> bool:
        return self.kind in (FieldKind.GLOBAL, FieldKind.CLASS_ATTRIBUTE)

    @property
    def is_final(self) -> bool:
        """``Final`` annotated fields can't be reassigned, only migrated in place."""
        return is_final_annotation(self.annotation)

    @property
    def display_name(self) -> str:
        owner = self.owner
        if isinstance(owner, types.ModuleType):
            prefix = owner.__name__
        else:
            prefix = getattr(owner, "__qualname__", repr(owner))
        return f"{prefix}.{self.name}"

    def has_value(self, instance: Any = None) -> bool:
        if self.kind is FieldKind.SLOT:
            try:
                self._slot().__get__(instance, type(instance))
            except AttributeError:
                return False
            return True
        return self.name in self._namespace(instance)

    def get(self, instance: Any = None) -> Any:
        if self.kind is FieldKind.SLOT:
            return self._slot().__get__(instance, type(instance))
        return self._namespace(instance)[self.name]

    def set(self, value: Any, instance: Any = None) -> None:
        if self.kind is FieldKind.GLOBAL:
            vars(self.owner)[self.name] = value
        elif self.kind is FieldKind.CLASS_ATTRIBUTE:
            setattr(self.owner, self.name, value)
        elif self.kind is FieldKind.SLOT:
            self._slot().__set__(instance, value)
        else:
            instance.__dict__[self.name] = value

    def _namespace(self, instance: Any) -> Any:
        if self.kind is FieldKind.INSTANCE:
            return instance.__dict__
        return vars(self.owner)

    def _slot(self) -> Any:
        return self.owner.__dict__[self.name]

    def __str__(self) -> str:
        return self.display_name


# === Annotations ===


def get_annotations(owner: Any) -> Dict[str, Any]:
    """Own annotations of a class or module, evaluated where possible."""
    try:
        return dict(inspect.get_annotations(owner))
    except NameError:
        # Forward references that can't be evaluated yet
        return {}


def is_final_annotation(annotation: Any) -> bool:
    if annotation is None:
        return False
    if isinstance(annotation, str):
        return annotation.startswith(("Final", "typing.Final"))
    return annotation is typing.Final or typing.get_origin(annotation) is typing.Final


def is_classvar_annotation(annotation: Any) -> bool:
    if isinstance(annotation, str):
        return annotation.startswith(("ClassVar", "typing.ClassVar"))
    return annotation is typing.ClassVar or typing.get_origin(annotation) is typing.ClassVar


def unwrap_annotation(annotation: Any) -> Any:
    """Strip ``Annotated``, ``Final`` and ``ClassVar`` wrappers."""
    while True:
        origin = typing.get_origin(annotation)
        if origin is typing.Annotated:
            annotation = annotation.__origin__
        elif origin in (typing.Final, typing.ClassVar):
            args = typing.get_args(annotation)
            if not args:
                return None
            annotation = args[0]
        else:
            return annotation


# === Static fields ===

_DESCRIPTOR_TYPES = (
    property,
    staticmethod,
    classmethod,
    functools.cached_property,
    functools.partialmethod,
    types.MemberDescriptorType,
    types.GetSetDescriptorType,
)


def is_dunder(name: str) -> bool:
    return len(name) > 4 and name.startswith("__") and name.endswith("__")


def is_sunder(name: str) -> bool:
    return len(name) > 2 and name[0] == name[-1] == "_" and name[1] != "_" and name[-2] != "_"


#: Bookkeeping attributes written by the named tuple factory.
_RECORD_ATTRIBUTES = frozenset({"_fields", "_field_defaults"})


def is_generated_attribute(cls: type, name: str) -> bool:
    """Class attributes the enum and named tuple machinery derive from the class body."""
    if isinstance(cls, enum.EnumMeta):
        return is_sunder(name)
    return name in _RECORD_ATTRIBUTES and issubclass(cls, tuple)


def is_constant_name(name: str) -> bool:
    """PEP 8 constants: ``MAX_SIZE``, ``DEFAULT``."""
    stripped = name.lstrip("_")
    return bool(stripped) and stripped.isupper()


def is_definition(container: Any, name: str, value: Any) -> bool:
    """
    Whether ``container.name`` is where ``value`` was defined.

    Classes, functions, type variables and enum members bound under their own
    name are replaced by re-executing the module, not migrated.
    """
    if isinstance(container, types.ModuleType):
        expected = name
        module_name = container.__name__
    else:
        if isinstance(container, enum.EnumMeta) and isinstance(value, container):
            return True
        expected = f"{container.__qualname__}.{name}"
        module_name = container.__module__

    label = definition_name(value)
    return label == expected and getattr(value, "__module__", None) == module_name


def definition_name(value: Any) -> Optional[str]:
    """Qualified name a class, function or synthesized named object was defined under."""
    if isinstance(value, (type, types.FunctionType, types.BuiltinFunctionType)):
        return value.__qualname__
    if isinstance(value, NAMED_TYPE_OBJECTS):
        name = getattr(value, "__qualname__", None) or getattr(value, "__name__", None)
        return name if isinstance(name, str) else None

    # functools.wraps style wrapper objects keep the name in their own __dict__
    namespace = getattr(value, "__dict__", None)
    if isinstance(namespace, dict) and "__wrapped__" in namespace:
        name = namespace.get("__qualname__")
        return name if isinstance(name, str) else None
    return None


def iter_static_fields(container: Any) -> Iterator[FieldRef]:
    """
    Static fields declared by a module or class.

    Skips dunder names, skip-marked names, definitions, and for classes the
    descriptors and annotated instance field defaults.
    """
    is_module = isinstance(container, types.ModuleType)
    kind = FieldKind.GLOBAL if is_module else FieldKind.CLASS_ATTRIBUTE
    skipped = skipped_names(container)
    annotations = get_annotations(container)

    for name, value in list(vars(container).items()):
        if is_dunder(name) or name in skipped:
            continue

        if is_definition(container, name, value):
            continue

        annotation = annotations.get(name)

        if not is_module:
            if inspect.isroutine(value) or isinstance(value, _DESCRIPTOR_TYPES):
                continue
            # Accessors installed by class factories, like named tuple fields
            if hasattr(type(value), "__get__"):
                continue
            if isinstance(value, type) or is_generated_attribute(container, name):
                continue
            # Annotated without ClassVar: default value of an instance field
            if name in annotations and not is_classvar_annotation(annotation):
                continue

        yield FieldRef(container, name, kind, annotation)


def lookup_qualname(namespace_owner: Any, qualname: str) -> Any:
    """Resolve a dotted qualified name through module and class namespaces only."""
    obj = namespace_owner
    for part in qualname.split("."):
        try:
            namespace = vars(obj)
        except TypeError:
            return None
        if part not in namespace:
            return None
        obj = namespace[part]
    return obj
