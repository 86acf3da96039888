"""
Type Resolver

Maps a class or type descriptor from an outgoing module to its replacement.
``None`` means the type was removed and holders of its instances should be
cleared, it is never an error.
"""

from __future__ import annotations

import functools
import operator
import types
import typing
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

import structlog

from relive.core.members import NAMED_TYPE_OBJECTS, lookup_qualname
from relive.core.result import EntrySeverity
from relive.resolver.modules import is_record_type
from relive.resolver.names import try_decode_qualname
from relive.resolver.scopes import ScopeLocator
from relive.resolver.synthesized import SynthesizedTypeResolver

if TYPE_CHECKING:
    from relive.core.engine import MigrationEngine

logger = structlog.get_logger(__name__)

_UNION_ORIGINS = (typing.Union, types.UnionType)


def is_type_alias(obj: Any) -> bool:
    """Parameterized generics, unions and ``Annotated`` forms."""
    if isinstance(obj, type):
        return False
    try:
        return typing.get_origin(obj) is not None
    except TypeError:
        return False


def is_type_like(obj: Any) -> bool:
    return isinstance(obj, type) or isinstance(obj, NAMED_TYPE_OBJECTS) or is_type_alias(obj)


class TypeResolver:
    """
    Resolves old types to their replacements.

    Precedence:
    - generic aliases, unions and ``Annotated``: resolve the parts, rebuild
    - local classes and anonymous records: structural matching
    - type variables and aliases: matched by name
    - named classes: qualified name lookup, then dependency validation

    Every result is memoized until :meth:`clear_cache`.
    """

    def __init__(self, engine: "MigrationEngine"):
        self._engine = engine
        self._cache: Dict[int, Tuple[Any, Any]] = {}
        self.scopes = ScopeLocator(engine)
        self.synthesized = SynthesizedTypeResolver(engine)

    def clear_cache(self) -> None:
        self._cache.clear()
        self.scopes.clear_cache()
        self.synthesized.clear_cache()

    def get_new_type(self, old: Any) -> Any:
        """Replacement for ``old``, ``old`` itself if unaffected, or ``None`` if removed."""
        if old is None:
            return None

        cached = self._cache.get(id(old))
        if cached is not None and cached[0] is old:
            return cached[1]

        new = self._resolve(old)
        self._cache[id(old)] = (old, new)
        return new

    def _resolve(self, old: Any) -> Any:
        if is_type_alias(old):
            return self._resolve_alias(old)
        if isinstance(old, type):
            return self._resolve_class(old)
        if isinstance(old, NAMED_TYPE_OBJECTS):
            return self._resolve_named_object(old)
        return old

    # === Aliases ===

    def _resolve_alias(self, old: Any) -> Any:
        origin = typing.get_origin(old)

        if origin is typing.Literal:
            return old

        if origin is typing.Annotated:
            inner = old.__origin__
            new_inner = self.get_new_type(inner)
            if new_inner is None:
                return None
            if new_inner is inner:
                return old
            return typing.Annotated[(new_inner, *old.__metadata__)]

        new_origin = origin
        if isinstance(origin, type):
            new_origin = self.get_new_type(origin)
            if new_origin is None:
                return None

        args = getattr(old, "__args__", ())
        new_args: List[Any] = []
        changed = new_origin is not origin

        for arg in args:
            new_arg = self._resolve_argument(arg)
            if new_arg is None and arg is not None:
                return None
            changed = changed or new_arg is not arg
            new_args.append(new_arg)

        if not changed:
            return old

        try:
            return self._rebuild_alias(old, origin, new_origin, tuple(new_args))
        except TypeError as e:
            self._engine.log(
                EntrySeverity.WARNING,
                f"Unable to rebuild {old!r} with replaced arguments: {e}",
                exception=e,
            )
            return None

    def _resolve_argument(self, arg: Any) -> Any:
        if isinstance(arg, (list, tuple)):
            items = [self._resolve_argument(a) for a in arg]
            if any(n is None and a is not None for n, a in zip(items, arg)):
                return None
            if all(n is a for n, a in zip(items, arg)):
                return arg
            return type(arg)(items)
        if is_type_like(arg):
            return self.get_new_type(arg)
        return arg

    @staticmethod
    def _rebuild_alias(old: Any, origin: Any, new_origin: Any, args: Tuple[Any, ...]) -> Any:
        if origin in _UNION_ORIGINS:
            if origin is types.UnionType:
                return functools.reduce(operator.or_, args)
            return typing.Union[args]

        if isinstance(old, types.GenericAlias):
            return types.GenericAlias(new_origin, args)

        copy_with = getattr(old, "copy_with", None)
        if new_origin is origin and copy_with is not None:
            return copy_with(args)

        return new_origin[args if len(args) != 1 else args[0]]

    # === Classes ===

    def _resolve_class(self, old: type) -> Optional[type]:
        engine = self._engine
        owner = engine.module_index.owner_of(old)

        if owner is None and self.synthesized.defined_by_outgoing_scope(old):
            engine.log(
                EntrySeverity.WARNING,
                f"Can't tell which version of {old.__module__} defined local class "
                f"{old.__qualname__}, treating it as removed",
                member=old,
            )
            return None

        if owner is None or not engine.is_outgoing_module(owner):
            return old if self.validate_type(old) else None

        new_module = engine.get_swap_target(owner)
        if new_module is None:
            return None

        name = try_decode_qualname(old.__qualname__)

        if name is not None and name.is_local:
            new = self.synthesized.resolve_local_class(old, name, new_module)
        elif is_record_type(old) and self.synthesized.is_anonymous_record(old, owner):
            new = self.synthesized.match_record(old, new_module)
        else:
            new = lookup_qualname(new_module, old.__qualname__)
            if not isinstance(new, type):
                new = None

        if new is None:
            logger.debug("Type removed", type=old.__qualname__, module=owner.__name__)
            return None

        return new if self.validate_type(new) else None

    def validate_type(self, cls: type) -> bool:
        """
        Check that no base class of ``cls`` comes from an outgoing module.

        Such a class would keep the old definitions alive after the swap.
        """
        engine = self._engine
        for base in cls.__mro__[1:]:
            owner = engine.module_index.owner_of(base)
            if owner is not None and engine.is_outgoing_module(owner):
                engine.log(
                    EntrySeverity.WARNING,
                    f"Type {cls.__module__}.{cls.__qualname__} depends on {base.__qualname__} "
                    f"from outgoing module {owner.__name__}",
                    member=cls,
                )
                return False
        return True

    def _resolve_named_object(self, old: Any) -> Any:
        engine = self._engine
        owner = engine.module_index.owner_of(old)
        if owner is None or not engine.is_outgoing_module(owner):
            return old

        new_module = engine.get_swap_target(owner)
        if new_module is None:
            return None
        return self.synthesized.resolve_named_object(old, owner, new_module)

    # === Queries ===

    def is_swapped_type(self, cls: Any) -> bool:
        """Whether ``cls`` (or any part of an alias) is defined by an outgoing module."""
        if is_type_alias(cls):
            origin = typing.get_origin(cls)
            if isinstance(origin, type) and self.is_swapped_type(origin):
                return True
            return any(
                self.is_swapped_type(a) for a in getattr(cls, "__args__", ()) if is_type_like(a)
            )

        owner = self._engine.module_index.owner_of(cls)
        return owner is not None and self._engine.is_outgoing_module(owner)

    def are_equivalent_types(self, a: Any, b: Any) -> bool:
        """Same type, or same qualified name with equivalent type arguments."""
        if a is b:
            return True

        if is_type_alias(a) and is_type_alias(b):
            args_a = getattr(a, "__args__", ())
            args_b = getattr(b, "__args__", ())
            return (
                self.are_equivalent_types(typing.get_origin(a), typing.get_origin(b))
                and len(args_a) == len(args_b)
                and all(self.are_equivalent_types(x, y) for x, y in zip(args_a, args_b))
            )

        if isinstance(a, type) and isinstance(b, type):
            return a.__module__ == b.__module__ and a.__qualname__ == b.__qualname__

        return a == b
