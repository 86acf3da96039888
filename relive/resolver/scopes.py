"""
Scope Functions

Locates compiler-synthesized code (lambdas, local functions, local class
bodies, comprehensions) relative to the user-written function that owns it,
and finds the matching code in a replacement module.

A location is the owning scope's qualified name, the accessor role of the
scope function, and a chain of ``(co_name, ordinal)`` steps through nested
code constants. The ordinal counts earlier siblings with the same name, so
the second lambda of a function is ``("<lambda>", 1)``.
"""

from __future__ import annotations

import types
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Iterator, List, Optional, Sequence, Tuple

import structlog

from relive.core.members import lookup_qualname
from relive.core.result import EntrySeverity
from relive.resolver.modules import iter_functions
from relive.resolver.names import try_decode_qualname

if TYPE_CHECKING:
    from relive.core.engine import MigrationEngine

logger = structlog.get_logger(__name__)

Chain = Tuple[Tuple[str, int], ...]


@dataclass(frozen=True)
class CodeLocation:
    """Where a piece of synthesized code sits inside its scope function."""

    scope: str
    role: str
    chain: Chain

    def __str__(self) -> str:
        steps = "/".join(f"{name}#{ordinal}" for name, ordinal in self.chain)
        role = f"[{self.role}]" if self.role else ""
        return f"{self.scope}{role}/{steps}"


# === Code constant chains ===


def nested_chain(root: types.CodeType, target: types.CodeType) -> Optional[Chain]:
    """Chain of steps from ``root`` down to ``target``, or ``None`` if not nested in it."""
    if root is target:
        return ()

    counts: Dict[str, int] = {}
    for const in root.co_consts:
        if not isinstance(const, types.CodeType):
            continue
        ordinal = counts.get(const.co_name, 0)
        counts[const.co_name] = ordinal + 1

        if const is target:
            return ((const.co_name, ordinal),)

        below = nested_chain(const, target)
        if below is not None:
            return ((const.co_name, ordinal),) + below

    return None


def follow_chain(root: types.CodeType, chain: Chain) -> Optional[types.CodeType]:
    """Walk ``chain`` down from ``root``."""
    code = root
    for name, ordinal in chain:
        matches = [
            const for const in code.co_consts
            if isinstance(const, types.CodeType) and const.co_name == name
        ]
        if ordinal >= len(matches):
            return None
        code = matches[ordinal]
    return code


def chain_for_names(root: types.CodeType, names: Sequence[str]) -> Tuple[Optional[Chain], bool]:
    """
    Chain through the first nested code with each name.

    Returns the chain (``None`` if a step is missing) and whether any step had
    several candidates with the same name.
    """
    code = root
    chain = []
    ambiguous = False
    for name in names:
        matches = [
            const for const in code.co_consts
            if isinstance(const, types.CodeType) and const.co_name == name
        ]
        if not matches:
            return None, ambiguous
        ambiguous = ambiguous or len(matches) > 1
        chain.append((name, 0))
        code = matches[0]
    return tuple(chain), ambiguous


# === Scope functions ===


def scope_functions(module: types.ModuleType, scope: str) -> List[Tuple[str, types.FunctionType]]:
    """Functions bound at ``scope`` in ``module``, with their accessor roles."""
    prefix, _, attr = scope.rpartition(".")
    container = lookup_qualname(module, prefix) if prefix else module
    if container is None:
        return []
    try:
        value = vars(container).get(attr)
    except TypeError:
        return []
    if value is None:
        return []
    return list(iter_functions(value))


def iter_module_functions(module: types.ModuleType, classes: Sequence[type]) -> Iterator[Tuple[str, types.FunctionType]]:
    """Every function defined at module level or in one of ``classes``."""
    for value in list(vars(module).values()):
        if isinstance(value, types.FunctionType) and value.__globals__ is vars(module):
            yield from iter_functions(value)
    for cls in classes:
        for value in list(vars(cls).values()):
            yield from iter_functions(value)


class ScopeLocator:
    """
    Finds scope functions for synthesized code and maps locations across versions.

    Results are cached for one pass.
    """

    def __init__(self, engine: "MigrationEngine"):
        self._engine = engine
        self._locations: Dict[int, Tuple[types.CodeType, Optional[CodeLocation]]] = {}

    def clear_cache(self) -> None:
        self._locations.clear()

    def locate(self, code: types.CodeType, module: types.ModuleType) -> Optional[CodeLocation]:
        """Location of ``code`` inside ``module``, or ``None`` if no scope function holds it."""
        cached = self._locations.get(id(code))
        if cached is not None and cached[0] is code:
            return cached[1]

        location = self._locate(code, module)
        self._locations[id(code)] = (code, location)
        return location

    def _locate(self, code: types.CodeType, module: types.ModuleType) -> Optional[CodeLocation]:
        name = try_decode_qualname(code.co_qualname)
        if name is None or name.scope is None:
            # Module and class body code isn't kept around after execution
            return None

        matches = []
        for role, func in scope_functions(module, name.scope):
            chain = nested_chain(func.__code__, code)
            if chain is not None:
                matches.append(CodeLocation(name.scope, role, chain))

        if not matches:
            # Scope isn't bound under its qualified name (decorated away,
            # registered elsewhere), scan every function body for the code
            classes = self._engine.module_index.iter_classes(module)
            for role, func in iter_module_functions(module, classes):
                chain = nested_chain(func.__code__, code)
                if chain is not None:
                    matches.append(CodeLocation(func.__qualname__, role, chain))

        if not matches:
            return None

        if len({(m.scope, m.role) for m in matches}) > 1:
            self._engine.log(
                EntrySeverity.INFORMATION,
                f"Code {code.co_qualname} is referenced by {len(matches)} scope functions, "
                f"using {matches[0]}",
            )

        return matches[0]

    def resolve(self, location: CodeLocation, module: types.ModuleType) -> Optional[Tuple[types.CodeType, types.FunctionType]]:
        """
        Code at ``location`` in a replacement module, with the scope function it came from.
        """
        candidates = scope_functions(module, location.scope)
        if not candidates:
            return None

        scope_func = None
        for role, func in candidates:
            if role == location.role:
                scope_func = func
                break

        if scope_func is None:
            if len(candidates) > 1:
                self._engine.log(
                    EntrySeverity.WARNING,
                    f"Can't tell which of {len(candidates)} functions at {location.scope} "
                    f"replaces the {location.role or 'plain'} scope",
                )
                return None
            scope_func = candidates[0][1]

        code = follow_chain(scope_func.__code__, location.chain)
        if code is None:
            return None
        return code, scope_func
