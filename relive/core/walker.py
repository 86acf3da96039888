"""
Static Field Walker

Entry points of a migration pass: the static fields of watched, swapped and
newly loaded modules and of the classes they own. Values are migrated through
the engine's upgraders and written to the matching field of the replacement
module or class.
"""

from __future__ import annotations

import types
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Optional, Set

import structlog

from relive.core.members import FieldRef, get_annotations, is_constant_name, iter_static_fields
from relive.core.result import EntrySeverity
from relive.upgraders.skip import SCALAR_TYPES

if TYPE_CHECKING:
    from relive.core.engine import MigrationEngine

logger = structlog.get_logger(__name__)

#: Decides whether a module or class of a watched module is walked.
ContainerFilter = Callable[[Any], bool]


@dataclass
class WalkTarget:
    """A module to walk; ``swapped`` modules write into their replacement."""

    module: types.ModuleType
    filter: Optional[ContainerFilter] = None
    swapped: bool = False


def is_initializing(module: types.ModuleType) -> bool:
    """Whether ``module`` is still executing its body."""
    spec = getattr(module, "__spec__", None)
    return bool(getattr(spec, "_initializing", False))


class StaticFieldWalker:
    """
    Visits static fields and hands their values to the upgrader framework.

    Fields of a swapped module are read from the outgoing module and written
    to the replacement. Constant-named fields of a swapped module keep the
    replacement's value, so edited constants take effect; ``Final`` fields
    keep the replacement's object and receive the old state in place.
    """

    def __init__(self, engine: "MigrationEngine"):
        self._engine = engine
        self._references: Dict[str, Set[str]] = {}

    def walk(self, targets: Iterable[WalkTarget]) -> int:
        """Walk every target. Returns the number of fields visited."""
        self._references.clear()
        visited = 0
        for target in targets:
            visited += self._walk_module(target)
        self._report_references()
        return visited

    def _walk_module(self, target: WalkTarget) -> int:
        engine = self._engine
        module = target.module

        if target.swapped:
            destination = engine.get_swap_target(module)
            if destination is None:
                logger.debug("Module removed, fields dropped", module=module.__name__)
                return 0
            if is_initializing(destination):
                engine.log(
                    EntrySeverity.WARNING,
                    f"Module {destination.__name__} is still initializing, its static fields "
                    f"were not migrated",
                    member=destination,
                )
                return 0
        else:
            destination = module

        visited = 0
        for container in self._containers(module, target.filter):
            if container is module:
                new_container = destination
            else:
                new_container = engine.get_new_type(container) if target.swapped else container
                if new_container is None:
                    logger.debug("Class removed, fields dropped", cls=container.__qualname__)
                    continue
            visited += self._walk_container(container, new_container, target.swapped)
        return visited

    def _containers(self, module: types.ModuleType, filter: Optional[ContainerFilter]) -> List[Any]:
        containers = [module] + self._engine.module_index.iter_classes(module)
        if filter is None:
            return containers
        return [c for c in containers if filter(c)]

    def _walk_container(self, container: Any, new_container: Any, swapped: bool) -> int:
        engine = self._engine
        annotations = get_annotations(new_container) if new_container is not container else None
        visited = 0

        for ref in iter_static_fields(container):
            value = ref.get()
            if value is None:
                continue
            if swapped and is_constant_name(ref.name):
                continue
            if not swapped and type(value) in SCALAR_TYPES:
                continue

            if new_container is container:
                dst = ref
            else:
                dst = FieldRef(new_container, ref.name, ref.kind, annotations.get(ref.name))
                if not dst.has_value():
                    logger.debug("Field removed", field=ref.display_name)
                    continue

            if not swapped:
                self._note_reference(container, value)

            visited += 1
            try:
                self._migrate_field(ref, dst, value)
            except Exception as e:
                engine.log(
                    EntrySeverity.ERROR,
                    f"Failed to migrate static field {ref.display_name}: {type(e).__name__}: {e}",
                    exception=e,
                    member=ref,
                )
        return visited

    def _migrate_field(self, src: FieldRef, dst: FieldRef, value: Any) -> None:
        engine = self._engine

        if dst is not src and (dst.is_final or src.is_final):
            current = dst.get()
            if current is value or engine.is_cached(value):
                return
            engine.add_cached_instance(value, current)
            engine.root.try_upgrade_instance(value, current, created_elsewhere=True)
            return

        new_value = engine.get_new_instance(value, src, dst)
        if dst is not src or new_value is not value:
            dst.set(new_value)

    # === Cross-module references ===

    def _note_reference(self, container: Any, value: Any) -> None:
        engine = self._engine
        subject = value if isinstance(value, (type, types.ModuleType, types.FunctionType)) else type(value)
        owner = engine.module_index.owner_of(subject)
        if owner is None:
            return

        if engine.is_outgoing_module(owner):
            side = "old"
        elif engine.is_incoming_module(owner):
            side = "new"
        else:
            return

        module_name = container.__name__ if isinstance(container, types.ModuleType) else container.__module__
        key = f"{module_name}\0{owner.__name__}"
        self._references.setdefault(key, set()).add(side)

    def _report_references(self) -> None:
        engine = self._engine
        for key, sides in self._references.items():
            module_name, referenced = key.split("\0")
            if sides == {"old", "new"}:
                engine.log(
                    EntrySeverity.INFORMATION,
                    f"Module {module_name} references both the old and the new version of {referenced}",
                )
            elif "old" in sides:
                engine.log(
                    EntrySeverity.INFORMATION,
                    f"Module {module_name} isn't reloaded but references outgoing module {referenced}",
                )
