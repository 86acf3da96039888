"""
Module Index

Establishes which module object owns a class, function, generator or
synthesized named object. Old and new versions of a module share a
``__name__``, so ownership is decided by identity: the globals dictionary a
function closes over, or reachability from a module namespace.
"""

from __future__ import annotations

import dataclasses
import functools
import sys
import types
from collections import defaultdict
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Set, Tuple

import structlog

from relive.core.members import NAMED_TYPE_OBJECTS, lookup_qualname
from relive.resolver.names import LOCALS

logger = structlog.get_logger(__name__)

# Functions generated by dataclasses and namedtuple are exec'd without a file
_GENERATED_FILENAMES = frozenset({"<string>"})

_GENERATOR_TYPES = (types.GeneratorType, types.CoroutineType, types.AsyncGeneratorType)


def iter_functions(value: Any) -> Iterator[Tuple[str, types.FunctionType]]:
    """
    Functions reachable from a class attribute, with their accessor role.

    Roles tell apart functions sharing one qualified name, like the getter
    and setter of a property.
    """
    seen: Set[int] = set()

    def unwrap(role: str, func: Any) -> Iterator[Tuple[str, types.FunctionType]]:
        depth = 0
        while func is not None and id(func) not in seen:
            seen.add(id(func))
            if isinstance(func, types.FunctionType):
                yield (role if depth == 0 else f"{role}~{depth}", func)
            func = getattr(func, "__wrapped__", None) if isinstance(func, types.FunctionType) else None
            depth += 1

    if isinstance(value, (staticmethod, classmethod)):
        yield from unwrap("", value.__func__)
    elif isinstance(value, property):
        yield from unwrap("fget", value.fget)
        yield from unwrap("fset", value.fset)
        yield from unwrap("fdel", value.fdel)
    elif isinstance(value, types.FunctionType):
        yield from unwrap("", value)
    elif isinstance(value, (functools.cached_property, functools.partialmethod)):
        yield from unwrap("", value.func)
    else:
        # Callable wrapper objects such as functools.lru_cache
        namespace = getattr(value, "__dict__", None)
        if isinstance(namespace, dict) and isinstance(namespace.get("__wrapped__"), types.FunctionType):
            yield from unwrap("~1", namespace["__wrapped__"])


def is_record_type(cls: Any) -> bool:
    """namedtuple classes and dataclasses: records fingerprinted by field names."""
    if not isinstance(cls, type):
        return False
    if issubclass(cls, tuple) and isinstance(cls.__dict__.get("_fields"), tuple):
        return True
    return dataclasses.is_dataclass(cls)


def record_fingerprint(cls: type) -> Tuple[str, ...]:
    """Ordered field names of a record class."""
    if issubclass(cls, tuple) and hasattr(cls, "_fields"):
        return tuple(cls._fields)
    return tuple(f.name for f in dataclasses.fields(cls))


class ModuleIndex:
    """
    Ownership lookups over the modules an engine knows about.

    Lookups are cached until :meth:`refresh` is called, which the engine does
    at the start and the end of every pass and whenever registrations change.
    """

    def __init__(self, modules: Callable[[], Iterable[types.ModuleType]]):
        self._modules_provider = modules
        self._by_globals: Dict[int, types.ModuleType] = {}
        self._by_name: Dict[str, List[types.ModuleType]] = defaultdict(list)
        self._class_owners: Dict[int, Tuple[type, Optional[types.ModuleType]]] = {}
        self._namespace_classes: Dict[int, Dict[int, type]] = {}
        self._named_objects: Dict[int, Dict[int, Any]] = {}
        self._instance_types: Dict[int, Dict[int, type]] = {}
        self._stale = True

    def refresh(self) -> None:
        """Forget cached ownership and re-read the set of known modules."""
        self._stale = True

    def _ensure(self) -> None:
        if not self._stale:
            return
        self._by_globals.clear()
        self._by_name.clear()
        self._class_owners.clear()
        self._namespace_classes.clear()
        self._named_objects.clear()
        self._instance_types.clear()

        for module in self._modules_provider():
            self._by_globals[id(vars(module))] = module
            self._by_name[module.__name__].append(module)

        self._stale = False

    # === Ownership ===

    def module_for_globals(self, namespace: Any) -> Optional[types.ModuleType]:
        self._ensure()
        return self._by_globals.get(id(namespace))

    def modules_named(self, name: str) -> List[types.ModuleType]:
        self._ensure()
        return list(self._by_name.get(name, ()))

    def owner_of(self, obj: Any) -> Optional[types.ModuleType]:
        """The known module object that defined ``obj``, if any."""
        self._ensure()

        if isinstance(obj, types.ModuleType):
            return obj if id(vars(obj)) in self._by_globals else None
        if isinstance(obj, type):
            return self._class_owner(obj)
        if isinstance(obj, types.FunctionType):
            return self._by_globals.get(id(obj.__globals__))
        if isinstance(obj, types.MethodType):
            return self.owner_of(obj.__func__)
        if isinstance(obj, _GENERATOR_TYPES):
            frame = generator_frame(obj)
            return self._by_globals.get(id(frame.f_globals)) if frame is not None else None
        if isinstance(obj, NAMED_TYPE_OBJECTS):
            return self._named_owner(obj)
        return None

    def _class_owner(self, cls: type) -> Optional[types.ModuleType]:
        cached = self._class_owners.get(id(cls))
        if cached is not None and cached[0] is cls:
            return cached[1]

        owner = self._method_owner(cls, generated=False)
        if owner is None:
            owner = self._namespace_owner(cls)
        if owner is None and LOCALS in cls.__qualname__:
            owner = self._instance_owner(cls)
        if owner is None:
            # dataclass methods close over the module that was importing at creation
            owner = self._method_owner(cls, generated=True)

        self._class_owners[id(cls)] = (cls, owner)
        return owner

    def _method_owner(self, cls: type, generated: bool) -> Optional[types.ModuleType]:
        for value in list(vars(cls).values()):
            for _, func in iter_functions(value):
                if (func.__code__.co_filename in _GENERATED_FILENAMES) != generated:
                    continue
                owner = self._by_globals.get(id(func.__globals__))
                if owner is not None:
                    return owner
        return None

    def _namespace_owner(self, cls: type) -> Optional[types.ModuleType]:
        modules = self._by_name.get(getattr(cls, "__module__", None), ())
        if self._is_stray_record(cls):
            modules = list(self._by_globals.values())
        for module in modules:
            if id(cls) in self.namespace_classes(module):
                return module
        return None

    def _instance_owner(self, cls: type) -> Optional[types.ModuleType]:
        matches = [
            module for module in self._by_name.get(cls.__module__, ())
            if id(cls) in self.bound_instance_types(module)
        ]
        return matches[0] if len(matches) == 1 else None

    def _is_stray_record(self, cls: Any) -> bool:
        """
        Records whose ``__module__`` names neither a known module nor one binding them.

        ``dataclasses.make_dataclass`` names ``types`` as the module before
        Python 3.12, so such records belong to whichever module binds them.
        """
        if not is_record_type(cls) or LOCALS in cls.__qualname__:
            return False
        if cls.__module__ in self._by_name:
            return False
        return lookup_qualname(sys.modules.get(cls.__module__), cls.__qualname__) is not cls

    def _named_owner(self, obj: Any) -> Optional[types.ModuleType]:
        for module in self._by_name.get(getattr(obj, "__module__", None), ()):
            if id(obj) in self.named_objects(module):
                return module
        return None

    # === Namespaces ===

    def namespace_classes(self, module: types.ModuleType) -> Dict[int, type]:
        """Classes defined by ``module`` and reachable from its namespace, nested ones included."""
        self._ensure()
        found = self._namespace_classes.get(id(module))
        if found is not None:
            return found

        found = {}
        pending = [
            value for value in list(vars(module).values())
            if isinstance(value, type)
            and (value.__module__ == module.__name__ or self._is_stray_record(value))
        ]
        while pending:
            cls = pending.pop()
            if id(cls) in found:
                continue
            found[id(cls)] = cls
            prefix = cls.__qualname__ + "."
            for value in list(vars(cls).values()):
                if isinstance(value, type) and value.__qualname__.startswith(prefix):
                    pending.append(value)

        self._namespace_classes[id(module)] = found
        return found

    def bound_instance_types(self, module: types.ModuleType) -> Dict[int, type]:
        """Local classes with an instance bound directly in ``module``'s namespace."""
        self._ensure()
        found = self._instance_types.get(id(module))
        if found is None:
            found = {}
            for value in list(vars(module).values()):
                cls = type(value)
                if LOCALS in cls.__qualname__:
                    found[id(cls)] = cls
            self._instance_types[id(module)] = found
        return found

    def iter_classes(self, module: types.ModuleType) -> List[type]:
        return list(self.namespace_classes(module).values())

    def iter_records(self, module: types.ModuleType) -> List[type]:
        """Record classes (namedtuples, dataclasses) discoverable in ``module``."""
        return [cls for cls in self.iter_classes(module) if is_record_type(cls)]

    def named_objects(self, module: types.ModuleType) -> Dict[int, Any]:
        """Type variables and aliases bound in ``module`` or used as class type parameters."""
        self._ensure()
        found = self._named_objects.get(id(module))
        if found is not None:
            return found

        found = {}
        for value in list(vars(module).values()):
            if isinstance(value, NAMED_TYPE_OBJECTS):
                found[id(value)] = value
        for cls in self.iter_classes(module):
            for param in getattr(cls, "__type_params__", ()):
                found[id(param)] = param

        self._named_objects[id(module)] = found
        return found


def generator_frame(obj: Any) -> Optional[types.FrameType]:
    """Frame of a generator, coroutine or async generator (``None`` once finished)."""
    for attr in ("gi_frame", "cr_frame", "ag_frame"):
        frame = getattr(obj, attr, None)
        if frame is not None:
            return frame
    return None


def generator_code(obj: Any) -> Optional[types.CodeType]:
    for attr in ("gi_code", "cr_code", "ag_code"):
        code = getattr(obj, attr, None)
        if code is not None:
            return code
    return None
