"""
Function Upgraders

Functions of a replaced module are looked up in the replacement: named
functions by qualified name and accessor role, local functions and lambdas
by their position inside the scope function that defines them. Closures
keep their cell objects, so state shared with other closures stays shared.

A function that can't be matched is replaced by an error callable raising
:class:`NotImplementedError`, so stale callbacks fail loudly instead of
running outgoing code.
"""

from __future__ import annotations

import functools
import inspect
import types
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog

from relive.core.members import lookup_qualname
from relive.core.result import EntrySeverity
from relive.resolver.modules import generator_code, generator_frame, iter_functions
from relive.resolver.names import GeneratedName, GeneratedNameKind, try_decode_qualname
from relive.upgraders.base import InstanceUpgrader
from relive.upgraders.groups import FunctionUpgraderGroup

logger = structlog.get_logger(__name__)

#: Attribute carrying the :class:`FunctionErrorKind` of an error callable.
ERROR_ATTR = "__hotload_error__"


class FunctionErrorKind(str, Enum):
    """Why a function couldn't be migrated."""

    NO_DECLARING_SCOPE = "no_declaring_scope"
    NO_MATCH_FUNCTION = "no_match_function"
    NO_MATCH_LAMBDA = "no_match_lambda"
    NO_RETROACTIVE_CAPTURE = "no_retroactive_capture"
    SIGNATURE_CHANGED = "signature_changed"
    TARGET_REMOVED = "target_removed"


def make_error_callable(old: types.FunctionType, kind: FunctionErrorKind, message: str) -> Callable[..., Any]:
    """Stand-in for ``old`` that raises ``NotImplementedError(message)`` when called."""

    def error_callable(*args, **kwargs):
        raise NotImplementedError(message)

    error_callable.__name__ = old.__name__
    error_callable.__qualname__ = old.__qualname__
    error_callable.__module__ = old.__module__
    error_callable.__doc__ = message
    setattr(error_callable, ERROR_ATTR, kind)
    return error_callable


def get_error_kind(func: Any) -> Optional[FunctionErrorKind]:
    """Kind of an error callable, ``None`` for regular functions."""
    namespace = getattr(func, "__dict__", None)
    if not isinstance(namespace, dict):
        return None
    return namespace.get(ERROR_ATTR)


def _find_binding(container: Any, func: Any, preferred: str) -> Tuple[Optional[str], str]:
    """Attribute of ``container`` through which ``func`` is reachable, and its role."""
    try:
        namespace = vars(container)
    except TypeError:
        return None, ""

    value = namespace.get(preferred)
    if value is not None:
        for role, candidate in iter_functions(value):
            if candidate is func:
                return preferred, role

    for attr, value in list(namespace.items()):
        for role, candidate in iter_functions(value):
            if candidate is func:
                return attr, role
    return None, ""


class FunctionUpgrader(InstanceUpgrader):
    """Plain functions, closures and lambdas."""

    upgrader_group = FunctionUpgraderGroup

    def __init__(self):
        super().__init__()
        self._rebuilt: Dict[int, types.FunctionType] = {}

    def clear_cache(self) -> None:
        self._rebuilt.clear()

    def should_process_type(self, cls: type) -> bool:
        return issubclass(cls, types.FunctionType)

    def try_create_new_instance(self, old: Any) -> Tuple[bool, Any]:
        engine = self.engine
        owner = engine.module_index.owner_of(old)

        if owner is None or not engine.is_outgoing_module(owner):
            return True, old

        new_module = engine.get_swap_target(owner)
        if new_module is None:
            return True, self._error(
                old, FunctionErrorKind.TARGET_REMOVED,
                f"{old.__qualname__} was defined by module {owner.__name__}, which was removed",
            )

        name = try_decode_qualname(old.__qualname__)
        if name is not None and name.is_local:
            return True, self._resolve_local(old, name, owner, new_module)
        return True, self._resolve_named(old, name, owner, new_module)

    def try_upgrade_instance(self, old: Any, new: Any, created_elsewhere: bool = False) -> bool:
        if old is new or id(new) in self._rebuilt:
            self.schedule_process_instance(old, new)
        return True

    def upgrade_instance(self, old: Any, new: Any) -> int:
        self._rebuilt.pop(id(new), None)

        if old.__defaults__:
            defaults = tuple(self.get_new_instance(d) for d in old.__defaults__)
            if old is not new or any(a is not b for a, b in zip(defaults, old.__defaults__)):
                new.__defaults__ = defaults

        if old.__kwdefaults__:
            kwonly = set(new.__code__.co_varnames[
                new.__code__.co_argcount:new.__code__.co_argcount + new.__code__.co_kwonlyargcount
            ])
            kwdefaults = {
                k: self.get_new_instance(v)
                for k, v in old.__kwdefaults__.items()
                if k in kwonly
            }
            if old is not new or any(kwdefaults[k] is not old.__kwdefaults__[k] for k in kwdefaults):
                new.__kwdefaults__ = kwdefaults

        if old is new:
            for cell in old.__closure__ or ():
                self.get_new_instance(cell)

        self.migrate_attributes(old, new)
        return 1

    # === Named functions ===

    def _resolve_named(
        self,
        old: types.FunctionType,
        name: Optional[GeneratedName],
        owner: types.ModuleType,
        new_module: types.ModuleType,
    ) -> Any:
        container_name = name.container if name is not None else None
        leaf = name.leaf if name is not None else old.__name__

        old_container = lookup_qualname(owner, container_name) if container_name else owner
        new_container = lookup_qualname(new_module, container_name) if container_name else new_module

        attr, role = _find_binding(old_container, old, leaf) if old_container is not None else (None, "")
        if attr is None:
            attr = leaf

        value = None
        if new_container is not None:
            try:
                value = vars(new_container).get(attr)
            except TypeError:
                value = None

        candidates = list(iter_functions(value)) if value is not None else []
        for candidate_role, candidate in candidates:
            if candidate_role == role:
                return candidate
        if len(candidates) == 1:
            return candidates[0][1]

        return self._error(
            old, FunctionErrorKind.TARGET_REMOVED,
            f"{old.__qualname__} no longer exists in module {new_module.__name__}",
        )

    # === Local functions and lambdas ===

    def _resolve_local(
        self,
        old: types.FunctionType,
        name: GeneratedName,
        owner: types.ModuleType,
        new_module: types.ModuleType,
    ) -> Any:
        scopes = self.engine.type_resolver.scopes
        is_lambda = name.kind is GeneratedNameKind.LAMBDA

        location = scopes.locate(old.__code__, owner)
        if location is None:
            return self._error(
                old, FunctionErrorKind.NO_DECLARING_SCOPE,
                f"Can't find the function declaring {old.__qualname__}",
            )

        resolved = scopes.resolve(location, new_module)
        if resolved is None:
            kind = FunctionErrorKind.NO_MATCH_LAMBDA if is_lambda else FunctionErrorKind.NO_MATCH_FUNCTION
            return self._error(old, kind, f"{old.__qualname__} ({location}) has no counterpart after the reload")

        new_code, _ = resolved

        cells = dict(zip(old.__code__.co_freevars, old.__closure__ or ()))
        missing = [var for var in new_code.co_freevars if var not in cells]
        if missing:
            return self._error(
                old, FunctionErrorKind.NO_RETROACTIVE_CAPTURE,
                f"{old.__qualname__} now captures {', '.join(missing)}, "
                f"which the existing closure doesn't have",
            )

        closure = tuple(self.get_new_instance(cells[var]) for var in new_code.co_freevars)
        defaults = old.__defaults__
        if defaults and len(defaults) > new_code.co_argcount:
            return self._error(
                old, FunctionErrorKind.SIGNATURE_CHANGED,
                f"{old.__qualname__} lost parameters that had default values",
            )

        try:
            new = types.FunctionType(new_code, vars(new_module), old.__name__, None, closure or None)
        except (TypeError, ValueError) as e:
            return self._error(
                old, FunctionErrorKind.SIGNATURE_CHANGED,
                f"{old.__qualname__} can't be rebuilt: {e}",
            )

        new.__qualname__ = new_code.co_qualname
        self._rebuilt[id(new)] = new
        return new

    def _error(self, old: types.FunctionType, kind: FunctionErrorKind, message: str) -> Any:
        self.log(EntrySeverity.WARNING, message, member=old)
        return make_error_callable(old, kind, message)


class CellUpgrader(InstanceUpgrader):
    """Closure cells are kept; their contents are migrated."""

    upgrader_group = FunctionUpgraderGroup

    def should_process_type(self, cls: type) -> bool:
        return issubclass(cls, types.CellType)

    def try_create_new_instance(self, old: Any) -> Tuple[bool, Any]:
        return True, old

    def try_upgrade_instance(self, old: Any, new: Any, created_elsewhere: bool = False) -> bool:
        self.schedule_process_instance(old, new)
        return True

    def upgrade_instance(self, old: Any, new: Any) -> int:
        try:
            contents = old.cell_contents
        except ValueError:
            # Empty cell
            return 1
        new_contents = self.get_new_instance(contents)
        if new_contents is not contents:
            new.cell_contents = new_contents
        return 1


class MethodUpgrader(InstanceUpgrader):
    """Bound methods, including methods bound to builtin containers."""

    upgrader_group = FunctionUpgraderGroup

    def should_process_type(self, cls: type) -> bool:
        return issubclass(cls, (types.MethodType, types.BuiltinMethodType, types.MethodWrapperType))

    def try_create_new_instance(self, old: Any) -> Tuple[bool, Any]:
        if isinstance(old, types.MethodType):
            func = old.__func__
            bound = old.__self__
            new_func = self.get_new_instance(func)
            new_self = self.get_new_instance(bound)
            if new_func is func and new_self is bound:
                return True, old
            if new_func is None or new_self is None:
                return True, None
            return True, types.MethodType(new_func, new_self)

        bound = getattr(old, "__self__", None)
        if bound is None or isinstance(bound, types.ModuleType):
            return True, old

        new_self = self.get_new_instance(bound)
        if new_self is bound:
            return True, old
        if new_self is None:
            return True, None
        return True, getattr(new_self, old.__name__)

    def try_upgrade_instance(self, old: Any, new: Any, created_elsewhere: bool = False) -> bool:
        return True


class PartialUpgrader(InstanceUpgrader):
    """``functools.partial`` objects, migrated in place."""

    upgrader_group = FunctionUpgraderGroup

    def should_process_type(self, cls: type) -> bool:
        return issubclass(cls, functools.partial)

    def try_create_new_instance(self, old: Any) -> Tuple[bool, Any]:
        new_cls = self.get_new_type(type(old))
        if new_cls is None:
            return True, None
        if new_cls is type(old):
            return True, old
        return True, new_cls(old.func, *old.args, **old.keywords)

    def try_upgrade_instance(self, old: Any, new: Any, created_elsewhere: bool = False) -> bool:
        self.schedule_process_instance(old, new)
        return True

    def upgrade_instance(self, old: Any, new: Any) -> int:
        func = self.get_new_instance(old.func)
        args = tuple(self.get_new_instance(a) for a in old.args)
        keywords = {k: self.get_new_instance(v) for k, v in old.keywords.items()}

        if func is None:
            self.log(
                EntrySeverity.WARNING,
                f"Target of partial {old!r} was removed, partial left unchanged",
                member=type(old),
            )
            return 1

        unchanged = (
            old is new
            and func is old.func
            and all(a is b for a, b in zip(args, old.args))
            and all(keywords[k] is old.keywords[k] for k in keywords)
        )
        if not unchanged:
            namespace = getattr(old, "__dict__", None) or None
            new.__setstate__((func, args, keywords, namespace))
        if old is not new:
            self.migrate_attributes(old, new)
        return 1


class GeneratorUpgrader(InstanceUpgrader):
    """
    Generators and coroutines of replaced modules.

    One that hasn't started yet is re-created by calling the replacement
    function with the same arguments. One that is already running keeps
    executing the outgoing code.
    """

    upgrader_group = FunctionUpgraderGroup

    def should_process_type(self, cls: type) -> bool:
        return issubclass(cls, (types.GeneratorType, types.CoroutineType))

    def try_create_new_instance(self, old: Any) -> Tuple[bool, Any]:
        engine = self.engine
        owner = engine.module_index.owner_of(old)
        if owner is None or not engine.is_outgoing_module(owner):
            return True, old

        frame = generator_frame(old)
        if frame is None:
            # Finished
            return True, old

        if not _is_unstarted(old):
            if engine.config.warn_on_suspended_generators:
                self.log(
                    EntrySeverity.WARNING,
                    f"{old.__qualname__} already started and keeps running the code of "
                    f"outgoing module {owner.__name__}",
                    member=old,
                )
            return True, old

        new_module = engine.get_swap_target(owner)
        if new_module is None:
            return True, None

        func = self._find_function(old, new_module)
        if func is None:
            self.log(
                EntrySeverity.WARNING,
                f"{old.__qualname__} has no counterpart after the reload, generator kept",
                member=old,
            )
            return True, old

        args, kwargs = _call_arguments(generator_code(old), frame.f_locals)
        args = [self.get_new_instance(a) for a in args]
        kwargs = {k: self.get_new_instance(v) for k, v in kwargs.items()}

        try:
            new = func(*args, **kwargs)
        except TypeError as e:
            self.log(
                EntrySeverity.WARNING,
                f"Can't re-create {old.__qualname__} with its original arguments: {e}",
                exception=e,
                member=old,
            )
            return True, old

        if isinstance(old, types.CoroutineType):
            old.close()
        return True, new

    def try_upgrade_instance(self, old: Any, new: Any, created_elsewhere: bool = False) -> bool:
        return True

    def _find_function(self, old: Any, new_module: types.ModuleType) -> Optional[types.FunctionType]:
        code = generator_code(old)
        name = try_decode_qualname(code.co_qualname)
        if name is None or name.is_local:
            return None

        container = lookup_qualname(new_module, name.container) if name.container else new_module
        if container is None:
            return None
        try:
            value = vars(container).get(name.leaf)
        except TypeError:
            return None
        if value is None:
            return None

        for _, func in iter_functions(value):
            if func.__code__.co_qualname == code.co_qualname:
                return func
        return None


def _is_unstarted(obj: Any) -> bool:
    if isinstance(obj, types.GeneratorType):
        return inspect.getgeneratorstate(obj) == inspect.GEN_CREATED
    return inspect.getcoroutinestate(obj) == inspect.CORO_CREATED


def _call_arguments(code: types.CodeType, values: Dict[str, Any]) -> Tuple[List[Any], Dict[str, Any]]:
    """Rebuild call arguments from the parameters stored in a fresh frame."""
    names = code.co_varnames
    positional = code.co_argcount
    kwonly = code.co_kwonlyargcount

    args = [values[n] for n in names[:positional]]
    kwargs = {n: values[n] for n in names[positional:positional + kwonly]}

    index = positional + kwonly
    if code.co_flags & inspect.CO_VARARGS:
        args.extend(values.get(names[index], ()))
        index += 1
    if code.co_flags & inspect.CO_VARKEYWORDS:
        kwargs.update(values.get(names[index], {}))

    return args, kwargs
