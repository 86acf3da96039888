"""
Generated Names

Decoder for the qualified names CPython gives to compiler-synthesized code:
local functions and classes, lambdas, comprehensions and generator
expressions. Everything that depends on the naming scheme lives here.

Grammar::

    qualname  := segment ("." segment)*
    segment   := identifier | "<locals>" | "<lambda>" | "<genexpr>"
               | "<listcomp>" | "<dictcomp>" | "<setcomp>" | "<module>"

A ``<locals>`` segment separates a scope from the names defined inside it.
Ordinals aren't part of the name; two lambdas in the same scope share
``<lambda>`` and are told apart by their position among the scope's code
constants (see :mod:`relive.resolver.scopes`).
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

LOCALS = "<locals>"

_SEGMENT = re.compile(
    r"^(?:[^\W\d]\w*|<locals>|<lambda>|<genexpr>|<listcomp>|<dictcomp>|<setcomp>|<module>)$"
)


class GeneratedNameKind(str, Enum):
    """What kind of code a qualified name refers to."""

    NAMED = "named"
    LOCAL = "local"
    LAMBDA = "lambda"
    GENERATOR_EXPRESSION = "genexpr"
    COMPREHENSION = "comprehension"
    MODULE = "module"


_LEAF_KINDS = {
    "<lambda>": GeneratedNameKind.LAMBDA,
    "<genexpr>": GeneratedNameKind.GENERATOR_EXPRESSION,
    "<listcomp>": GeneratedNameKind.COMPREHENSION,
    "<dictcomp>": GeneratedNameKind.COMPREHENSION,
    "<setcomp>": GeneratedNameKind.COMPREHENSION,
    "<module>": GeneratedNameKind.MODULE,
}


@dataclass(frozen=True)
class GeneratedName:
    """
    Decoded qualified name.

    ``scope`` is the qualified name of the outermost user-written function
    the code is nested in (``None`` when there's no ``<locals>`` segment).
    ``local_path`` lists the names between that scope and the leaf, leaf
    included. ``container`` is the class or module-level prefix for names
    that aren't local.
    """

    qualname: str
    kind: GeneratedNameKind
    scope: Optional[str]
    local_path: Tuple[str, ...]
    container: Optional[str]
    leaf: str

    @property
    def is_synthesized(self) -> bool:
        return self.kind is not GeneratedNameKind.NAMED

    @property
    def is_local(self) -> bool:
        return self.scope is not None


def decode_qualname(qualname: str) -> GeneratedName:
    """
    Decode a ``__qualname__`` / ``co_qualname``.

    Raises:
        ValueError: If a segment isn't a valid identifier or marker
    """
    if not qualname:
        raise ValueError("Empty qualified name")

    parts = qualname.split(".")
    for part in parts:
        if not _SEGMENT.match(part):
            raise ValueError(f"Invalid segment {part!r} in qualified name {qualname!r}")

    leaf = parts[-1]
    leaf_kind = _LEAF_KINDS.get(leaf)

    if LOCALS not in parts:
        container = ".".join(parts[:-1]) or None
        kind = leaf_kind or GeneratedNameKind.NAMED
        return GeneratedName(qualname, kind, None, (), container, leaf)

    first = parts.index(LOCALS)
    if first == 0 or parts[-1] == LOCALS:
        raise ValueError(f"Misplaced {LOCALS} in qualified name {qualname!r}")

    scope = ".".join(parts[:first])
    local_path = tuple(p for p in parts[first + 1:] if p != LOCALS)
    kind = leaf_kind or GeneratedNameKind.LOCAL

    return GeneratedName(qualname, kind, scope, local_path, None, leaf)


def try_decode_qualname(qualname: Optional[str]) -> Optional[GeneratedName]:
    if not isinstance(qualname, str):
        return None
    try:
        return decode_qualname(qualname)
    except ValueError:
        return None
