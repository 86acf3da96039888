"""
Synthesized Types

Resolution of classes and type objects whose names don't identify them:
classes defined inside functions, anonymous records, and type variables or
aliases created by the compiler.
"""

from __future__ import annotations

import gc
import types
from collections import defaultdict
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

import structlog

from relive.core.members import lookup_qualname
from relive.core.result import EntrySeverity
from relive.resolver.modules import is_record_type, record_fingerprint
from relive.resolver.names import LOCALS, GeneratedName, try_decode_qualname
from relive.resolver.scopes import chain_for_names, scope_functions

if TYPE_CHECKING:
    from relive.core.engine import MigrationEngine

logger = structlog.get_logger(__name__)


class SynthesizedTypeResolver:
    """
    Matches synthesized classes between two versions of a module.

    Caches are per pass: the live class index and record fingerprints.
    """

    def __init__(self, engine: "MigrationEngine"):
        self._engine = engine
        self._local_classes: Optional[Dict[str, List[type]]] = None
        self._records: Dict[int, Dict[Tuple[bool, Tuple[str, ...]], List[type]]] = {}

    def clear_cache(self) -> None:
        self._local_classes = None
        self._records.clear()

    # === Local classes ===

    def resolve_local_class(
        self,
        old: type,
        name: GeneratedName,
        new_module: types.ModuleType,
    ) -> Optional[type]:
        """
        Replacement for a class defined inside a function.

        The replacement scope function must still define the class; the class
        object itself only exists if the new scope already ran, so it's
        looked up among live classes.
        """
        found_scope = False
        ambiguous = False
        for _, func in scope_functions(new_module, name.scope):
            chain, ambiguous = chain_for_names(func.__code__, name.local_path)
            if chain is not None:
                found_scope = True
                break

        if not found_scope:
            logger.debug("Local class removed from scope", qualname=old.__qualname__)
            return None

        if ambiguous:
            self._engine.log(
                EntrySeverity.INFORMATION,
                f"Scope {name.scope} defines several classes named like {old.__qualname__}",
                member=old,
            )

        index = self._engine.module_index
        candidates = [
            cls for cls in self._live_local_classes().get(old.__qualname__, ())
            if cls is not old
            and cls.__module__ == old.__module__
            and index.owner_of(cls) is new_module
        ]

        if len(candidates) == 1:
            return candidates[0]

        if not candidates:
            self._engine.log(
                EntrySeverity.WARNING,
                f"No live replacement for local class {old.__qualname__}, "
                f"its scope hasn't run since the reload",
                member=old,
            )
        else:
            self._engine.log(
                EntrySeverity.WARNING,
                f"Found {len(candidates)} live replacements for local class {old.__qualname__}",
                member=old,
            )
        return None

    def defined_by_outgoing_scope(self, cls: type) -> bool:
        """Whether a scope function of an outgoing module named ``cls.__module__`` defines ``cls``."""
        if LOCALS not in cls.__qualname__:
            return False
        name = try_decode_qualname(cls.__qualname__)
        if name is None or not name.is_local:
            return False

        engine = self._engine
        for module in engine.module_index.modules_named(cls.__module__):
            if not engine.is_outgoing_module(module):
                continue
            for _, func in scope_functions(module, name.scope):
                chain, _ = chain_for_names(func.__code__, name.local_path)
                if chain is not None:
                    return True
        return False

    def _live_local_classes(self) -> Dict[str, List[type]]:
        if self._local_classes is None:
            index: Dict[str, List[type]] = defaultdict(list)
            for obj in gc.get_objects():
                if isinstance(obj, type) and LOCALS in obj.__qualname__:
                    index[obj.__qualname__].append(obj)
            self._local_classes = index
        return self._local_classes

    # === Anonymous records ===

    def is_anonymous_record(self, cls: type, module: types.ModuleType) -> bool:
        """Records that aren't bound under their own qualified name."""
        return is_record_type(cls) and lookup_qualname(module, cls.__qualname__) is not cls

    def match_record(self, old: type, new_module: types.ModuleType) -> Optional[type]:
        """Match an anonymous record by its ordered field names."""
        key = (issubclass(old, tuple), record_fingerprint(old))
        candidates = self._record_index(new_module).get(key, [])

        if not candidates:
            return None

        for cls in candidates:
            if cls.__qualname__ == old.__qualname__:
                return cls

        if len(candidates) > 1:
            self._engine.log(
                EntrySeverity.INFORMATION,
                f"{len(candidates)} records match the fields of {old.__qualname__}, "
                f"using {candidates[0].__qualname__}",
                member=old,
            )
        return candidates[0]

    def _record_index(self, module: types.ModuleType) -> Dict[Tuple[bool, Tuple[str, ...]], List[type]]:
        index = self._records.get(id(module))
        if index is None:
            index = defaultdict(list)
            for cls in self._engine.module_index.iter_records(module):
                index[(issubclass(cls, tuple), record_fingerprint(cls))].append(cls)
            self._records[id(module)] = index
        return index

    # === Type variables and aliases ===

    def resolve_named_object(
        self,
        obj: Any,
        old_module: types.ModuleType,
        new_module: types.ModuleType,
    ) -> Optional[Any]:
        """Type variables and aliases are matched by name, their names are stable."""
        name = getattr(obj, "__name__", None)

        if name is not None and vars(old_module).get(name) is obj:
            new = vars(new_module).get(name)
            return new if type(new) is type(obj) else None

        for cls in self._engine.module_index.iter_classes(old_module):
            params = getattr(cls, "__type_params__", ())
            if not any(p is obj for p in params):
                continue

            new_cls = lookup_qualname(new_module, cls.__qualname__)
            new_params = getattr(new_cls, "__type_params__", ())
            for param in new_params:
                if getattr(param, "__name__", None) == name and type(param) is type(obj):
                    return param
            return None

        return None
