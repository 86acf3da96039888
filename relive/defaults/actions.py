"""
Constructor Actions

Splits the compiled body of an initializer into actions: runs of
instructions that start and end with an empty evaluation stack, which is
what one simple statement compiles to.
"""

from __future__ import annotations

import dis
import inspect
import types
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Set

_PROLOGUE = frozenset({"NOP", "RESUME", "CACHE", "MAKE_CELL", "COPY_FREE_VARS", "NOT_TAKEN"})

_TERMINATORS = frozenset({
    "RETURN_VALUE",
    "RETURN_CONST",
    "RAISE_VARARGS",
    "RERAISE",
    "YIELD_VALUE",
})

_JUMPS = frozenset(dis.hasjrel) | frozenset(dis.hasjabs)

_LOCAL_OPS = frozenset({
    "STORE_FAST",
    "DELETE_FAST",
    "LOAD_DEREF",
    "STORE_DEREF",
    "DELETE_DEREF",
    "LOAD_CLOSURE",
    "LOAD_CLASSDEREF",
    "LOAD_FROM_DICT_OR_DEREF",
})


def _is_local_load(instr: dis.Instruction) -> bool:
    return instr.opname.startswith("LOAD_FAST")


def _loaded_names(instr: dis.Instruction) -> tuple:
    # Fused instructions (LOAD_FAST_LOAD_FAST) carry a pair of names
    if isinstance(instr.argval, tuple):
        return instr.argval
    return (instr.argval,)


def _loads_self(instr: dis.Instruction, self_name: Optional[str]) -> bool:
    if self_name is None or not _is_local_load(instr):
        return False
    return _loaded_names(instr)[-1] == self_name


class ActionKind(str, Enum):
    """What a constructor action does."""

    FIELD_STORE = "field_store"
    SELF_INIT_CALL = "self_init_call"
    OTHER = "other"


@dataclass
class ConstructorAction:
    """
    One statement of an initializer.

    For a field store, ``self_load`` is the instruction loading the store
    target and everything before it computes the stored value.
    """

    kind: ActionKind
    instructions: List[dis.Instruction] = field(default_factory=list)
    field_name: Optional[str] = None
    self_load: Optional[dis.Instruction] = None
    references_locals: bool = False
    has_jumps: bool = False
    escapes: bool = False

    @property
    def start(self) -> int:
        first = self.instructions[0]
        return getattr(first, "start_offset", first.offset)

    @property
    def value_end(self) -> int:
        """Offset where the stored value is complete."""
        if self.self_load is None:
            return self.instructions[-1].offset
        return getattr(self.self_load, "start_offset", self.self_load.offset)


def self_name(code: types.CodeType) -> Optional[str]:
    """Name of the first positional parameter."""
    if code.co_argcount == 0 and code.co_posonlyargcount == 0:
        return None
    return code.co_varnames[0]


def parameter_count(code: types.CodeType) -> int:
    """Parameters besides ``self``, variadic ones counted once each."""
    count = code.co_argcount + code.co_kwonlyargcount
    if code.co_flags & inspect.CO_VARARGS:
        count += 1
    if code.co_flags & inspect.CO_VARKEYWORDS:
        count += 1
    return max(count - 1, 0)


def scan_actions(code: types.CodeType, class_name: Optional[str] = None) -> List[ConstructorAction]:
    """
    Actions of ``code`` up to the first control flow leaving straight-line code.

    Scanning stops at returns, raises and yields, and at the first action
    that jumps outside itself.
    """
    me = self_name(code)
    actions: List[ConstructorAction] = []
    current: List[dis.Instruction] = []
    depth = 0

    for instr in dis.get_instructions(code):
        if not current and instr.opname in _PROLOGUE:
            continue
        if instr.opname in _TERMINATORS:
            break

        current.append(instr)
        if instr.opname == "EXTENDED_ARG":
            continue

        arg = instr.arg if instr.opcode >= dis.HAVE_ARGUMENT else None
        try:
            depth += dis.stack_effect(instr.opcode, arg, jump=False)
        except ValueError:
            break

        if depth < 0:
            break
        if depth > 0:
            continue

        action = _classify(current, me, class_name)
        current = []
        actions.append(action)
        if action.escapes:
            break

    return actions


def _classify(
    instructions: List[dis.Instruction],
    me: Optional[str],
    class_name: Optional[str],
) -> ConstructorAction:
    start = getattr(instructions[0], "start_offset", instructions[0].offset)
    end = instructions[-1].offset
    jumps = [instr for instr in instructions if instr.opcode in _JUMPS]
    escapes = any(not (start <= instr.argval <= end) for instr in jumps)

    last = instructions[-1]
    previous = instructions[-2] if len(instructions) > 1 else None

    if last.opname == "STORE_ATTR" and previous is not None and _loads_self(previous, me):
        value = instructions[:-2]
        # Fused loads bring the value operand along with self
        fused_extra = isinstance(previous.argval, tuple) and len(previous.argval) > 1
        return ConstructorAction(
            kind=ActionKind.FIELD_STORE,
            instructions=instructions,
            field_name=last.argval,
            self_load=previous,
            references_locals=fused_extra or _references_locals(value),
            has_jumps=bool(jumps),
            escapes=escapes,
        )

    if _is_self_init_call(instructions, me, class_name):
        kind = ActionKind.SELF_INIT_CALL
    else:
        kind = ActionKind.OTHER

    return ConstructorAction(
        kind=kind,
        instructions=instructions,
        references_locals=_references_locals(instructions),
        has_jumps=bool(jumps),
        escapes=escapes,
    )


def _references_locals(instructions: List[dis.Instruction]) -> bool:
    return any(_is_local_load(i) or i.opname in _LOCAL_OPS for i in instructions)


def _is_self_init_call(
    instructions: List[dis.Instruction],
    me: Optional[str],
    class_name: Optional[str],
) -> bool:
    """``self.__init__(...)``, ``type(self).__init__(...)`` or ``Cls.__init__(self, ...)``."""
    loads_type = any(
        i.opname == "LOAD_GLOBAL" and i.argval == "type" for i in instructions
    )
    for i, instr in enumerate(instructions):
        if instr.opname not in ("LOAD_ATTR", "LOAD_METHOD") or instr.argval != "__init__":
            continue
        if i == 0:
            continue
        previous = instructions[i - 1]
        if _loads_self(previous, me):
            return True
        if previous.opname == "LOAD_GLOBAL" and class_name is not None and previous.argval == class_name:
            return True
        if previous.opname in ("CALL", "PRECALL") and loads_type:
            return True
    return False


def assigned_attributes(code: types.CodeType) -> List[str]:
    """Attribute names stored on ``self`` anywhere in ``code``, in order."""
    me = self_name(code)
    names: List[str] = []
    seen: Set[str] = set()
    previous = None
    for instr in dis.get_instructions(code):
        if instr.opname == "STORE_ATTR" and previous is not None and _loads_self(previous, me):
            if instr.argval not in seen:
                seen.add(instr.argval)
                names.append(instr.argval)
        if instr.opname != "EXTENDED_ARG":
            previous = instr
    return names
