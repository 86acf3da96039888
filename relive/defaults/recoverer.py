"""
Default-Value Recoverer

Recovers the initial value of a field that was added by a reload. Old
instances never ran the new initializer, so the value is rebuilt either from
dataclass metadata or from the initializer's own bytecode: the instructions
computing an unconditional, parameter-free ``self.field = <expr>`` are
spliced into a standalone function.

Recipes are cached per (declaring class, field name); values never are,
since initializers may have side effects and must run once per instance.
"""

from __future__ import annotations

import dataclasses
import dis
import inspect
import types
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple

import structlog

from relive.core.members import get_annotations
from relive.core.result import EntrySeverity
from relive.defaults.actions import ActionKind, ConstructorAction, parameter_count, scan_actions

if TYPE_CHECKING:
    from relive.core.engine import MigrationEngine

logger = structlog.get_logger(__name__)

#: Initializers scanned for field stores, in preference order on ties.
INITIALIZERS = ("__init__", "__post_init__")

_NOP = dis.opmap["NOP"]
_RESUME = dis.opmap["RESUME"]
_RETURN_VALUE = dis.opmap["RETURN_VALUE"]

_CLEARED_FLAGS = inspect.CO_VARARGS | inspect.CO_VARKEYWORDS | inspect.CO_NESTED

Recipe = Callable[[], Any]


class DefaultValueRecoverer:
    """
    Finds and runs default-value recipes for newly added fields.

    Not safe for concurrent passes.
    """

    def __init__(self, engine: "MigrationEngine"):
        self._engine = engine
        self._recipes: Dict[Tuple[int, str], Tuple[type, Optional[Recipe]]] = {}

    def clear_cache(self) -> None:
        self._recipes.clear()

    def try_get_default_value(self, cls: type, name: str) -> Tuple[bool, Any]:
        """
        Run the default recipe for ``cls.name``.

        The most derived class along the MRO with a recipe wins.

        Returns:
            ``(True, value)`` on success, ``(False, None)`` if no recipe was
            found or the recipe raised
        """
        for klass in cls.__mro__:
            if klass is object:
                break
            recipe = self.get_recipe(klass, name)
            if recipe is None:
                continue
            try:
                return True, recipe()
            except Exception as e:
                self._engine.log(
                    EntrySeverity.WARNING,
                    f"Default value for {klass.__qualname__}.{name} raised {type(e).__name__}: {e}",
                    exception=e,
                    member=klass,
                )
                return False, None
        return False, None

    def get_recipe(self, owner: type, name: str) -> Optional[Recipe]:
        """Recipe declared by ``owner`` itself for field ``name``."""
        key = (id(owner), name)
        cached = self._recipes.get(key)
        if cached is not None and cached[0] is owner:
            return cached[1]

        recipe = dataclass_recipe(owner, name)
        if recipe is None:
            recipe = self._bytecode_recipe(owner, name)

        self._recipes[key] = (owner, recipe)
        return recipe

    def _bytecode_recipe(self, owner: type, name: str) -> Optional[Recipe]:
        candidates: List[Tuple[int, int, types.FunctionType, ConstructorAction]] = []

        for order, attr in enumerate(INITIALIZERS):
            init = owner.__dict__.get(attr)
            if not isinstance(init, types.FunctionType):
                continue

            action = find_field_store(init.__code__, name, owner.__name__)
            if action is None:
                continue
            candidates.append((parameter_count(init.__code__), order, init, action))

        if not candidates:
            return None

        candidates.sort(key=lambda c: (c[0], c[1]))
        _, _, init, action = candidates[0]

        try:
            code = splice_value(init.__code__, action, f"{owner.__qualname__}.{name}")
        except (TypeError, ValueError) as e:
            self._engine.log(
                EntrySeverity.WARNING,
                f"Unable to extract default value of {owner.__qualname__}.{name}: {e}",
                exception=e,
                member=owner,
            )
            return None

        logger.debug(
            "Recovered default value recipe",
            owner=owner.__qualname__,
            field=name,
            initializer=init.__name__,
        )
        return types.FunctionType(code, init.__globals__, code.co_name)


def dataclass_recipe(owner: type, name: str) -> Optional[Recipe]:
    """Recipe from a dataclass field's ``default`` or ``default_factory`` declared by ``owner``."""
    if not dataclasses.is_dataclass(owner):
        return None
    if name not in get_annotations(owner):
        return None

    fields = owner.__dict__.get("__dataclass_fields__", {})
    f = fields.get(name)
    if f is None:
        return None

    if f.default_factory is not dataclasses.MISSING:
        return f.default_factory
    if f.default is not dataclasses.MISSING:
        default = f.default
        return lambda: default
    return None


def find_field_store(code: types.CodeType, name: str, class_name: Optional[str] = None) -> Optional[ConstructorAction]:
    """
    First unconditional store of ``self.name`` computed without parameters or locals.

    ``None`` if the initializer chains to another initializer of the same
    instance first, or if the first store of the field depends on anything
    but globals and constants.
    """
    for action in scan_actions(code, class_name):
        if action.kind is ActionKind.SELF_INIT_CALL:
            return None
        if action.kind is ActionKind.FIELD_STORE and action.field_name == name:
            if action.references_locals or action.has_jumps:
                return None
            return action
    return None


def splice_value(code: types.CodeType, action: ConstructorAction, label: str) -> types.CodeType:
    """
    Standalone code object evaluating the value of a field store.

    Instructions before the action are blanked out (``RESUME`` is kept) so
    offsets, and with them the line table, stay valid; the value
    instructions are followed by ``RETURN_VALUE``.
    """
    raw = code.co_code
    start = action.start
    end = action.value_end

    if end <= start:
        raise ValueError(f"Empty value for {label}")

    prefix = bytearray()
    for offset in range(0, start, 2):
        if raw[offset] == _RESUME:
            prefix += raw[offset:offset + 2]
        else:
            prefix += bytes((_NOP, 0))

    body = prefix + raw[start:end] + bytes((_RETURN_VALUE, 0))

    leaf = f"<default:{label.rpartition('.')[2]}>"
    qualname = f"{label.rpartition('.')[0]}.{leaf}"

    return code.replace(
        co_code=bytes(body),
        co_argcount=0,
        co_posonlyargcount=0,
        co_kwonlyargcount=0,
        co_flags=code.co_flags & ~_CLEARED_FLAGS,
        co_freevars=(),
        co_cellvars=(),
        co_exceptiontable=b"",
        co_name=leaf,
        co_qualname=qualname,
    )
