"""
Migration Engine

Owns every registry of the hot-reload facility: watched modules and
instances, queued module replacements and the upgrader tree. A migration
pass walks the static fields of affected modules and the watched instances,
migrates everything reachable from them, and swaps the watches over to the
replacement modules.

Usage:
    engine = MigrationEngine()
    engine.watch_module(app_module)

    new_module = importlib.reload(...)
    engine.replacing_module(old_module, new_module)
    result = engine.run_migration_pass()
"""

from __future__ import annotations

import inspect
import time
import types
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Type, TypeVar, Union

import structlog

from relive.core.config import ReliveConfig, get_config
from relive.core.errors import (
    ReliveError,
    SwapCycleError,
    UpgraderNotFoundError,
    UpgraderRegistrationError,
)
from relive.core.paths import ReferencePath, ReferencePathCache, describe_member
from relive.core.result import EntrySeverity, PassResult, ResultEntry
from relive.core.scheduler import TaskScheduler
from relive.core.walker import ContainerFilter, StaticFieldWalker, WalkTarget
from relive.defaults.recoverer import DefaultValueRecoverer
from relive.resolver.modules import ModuleIndex
from relive.resolver.type_resolver import TypeResolver
from relive.upgraders import DEFAULT_UPGRADERS
from relive.upgraders.base import InstanceUpgrader, is_auto_created
from relive.upgraders.cached import CachedUpgrader
from relive.upgraders.default import DefaultUpgrader
from relive.upgraders.groups import RootUpgraderGroup, UpgraderGroup

logger = structlog.get_logger(__name__)

U = TypeVar("U", bound=InstanceUpgrader)

#: Diagnostic context: source field, destination field, reference path.
Context = Tuple[Any, Any, Optional[ReferencePath]]

_LOG_METHODS = {
    EntrySeverity.TRACE: "debug",
    EntrySeverity.INFORMATION: "info",
    EntrySeverity.WARNING: "warning",
    EntrySeverity.ERROR: "error",
}


@dataclass(frozen=True)
class ModuleSwap:
    """A queued module replacement. ``old`` is ``None`` for a newly loaded module."""

    old: Optional[types.ModuleType]
    new: Optional[types.ModuleType]

    @property
    def is_removal(self) -> bool:
        return self.new is None

    @property
    def is_addition(self) -> bool:
        return self.old is None


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000


class MigrationEngine:
    """
    Live object-graph migration for reloaded modules.

    One engine serves one host. Passes are synchronous and run one at a time
    on the calling thread; the engine assumes nothing else mutates watched
    state while a pass runs.
    """

    def __init__(
        self,
        config: Optional[ReliveConfig] = None,
        modules: Optional[Callable[[], Iterable[types.ModuleType]]] = None,
    ):
        self.config = config or get_config()

        self._watched_modules: Dict[int, Tuple[types.ModuleType, Optional[ContainerFilter]]] = {}
        self._watched_instances: Dict[int, Any] = {}
        self._ignored_modules: set[str] = {"relive"}
        self._swaps: Dict[int, Tuple[types.ModuleType, Optional[types.ModuleType]]] = {}
        self._added_modules: Dict[int, types.ModuleType] = {}
        self._intermediates: set[int] = set()

        self.module_index = ModuleIndex(modules or self._known_modules)
        self.paths = ReferencePathCache()
        self.type_resolver = TypeResolver(self)
        self.defaults = DefaultValueRecoverer(self)
        self.scheduler = TaskScheduler(self)
        self.walker = StaticFieldWalker(self)
        self.result = PassResult()
        self._running = False

        self._src_field: Any = None
        self._dst_field: Any = None
        self._path: Optional[ReferencePath] = None

        self.root = RootUpgraderGroup()
        self.root.initialize(self)
        self._upgraders: Dict[type, InstanceUpgrader] = {RootUpgraderGroup: self.root}

        if self.config.add_default_upgraders:
            for cls in DEFAULT_UPGRADERS:
                self.add_upgrader(cls())

    def _known_modules(self) -> List[types.ModuleType]:
        modules = [module for module, _ in self._watched_modules.values()]
        for old, new in self._swaps.values():
            modules.append(old)
            if new is not None:
                modules.append(new)
        modules.extend(self._added_modules.values())
        return modules

    # === Registration ===

    def watch_module(self, module: types.ModuleType, filter: Optional[ContainerFilter] = None) -> None:
        """
        Migrate references held by ``module`` in every pass.

        ``filter`` receives the module and each class it owns and decides
        whether their static fields are walked.
        """
        self._watched_modules[id(module)] = (module, filter)
        self.module_index.refresh()
        logger.debug("Module watched", module=module.__name__)

    def unwatch_module(self, module: types.ModuleType) -> bool:
        removed = self._watched_modules.pop(id(module), None) is not None
        if removed:
            self.module_index.refresh()
        return removed

    def is_module_watched(self, module: types.ModuleType) -> bool:
        return id(module) in self._watched_modules

    def watch_instance(self, obj: Any) -> None:
        """Migrate ``obj`` in place in every pass, whether or not it's reachable."""
        self._watched_instances[id(obj)] = obj

    def unwatch_instance(self, obj: Any) -> bool:
        entry = self._watched_instances.get(id(obj))
        if entry is not obj:
            return False
        del self._watched_instances[id(obj)]
        return True

    def ignore_module(self, module: Union[types.ModuleType, str]) -> None:
        """Never migrate instances of types from ``module`` or its submodules."""
        name = module.__name__ if isinstance(module, types.ModuleType) else module
        self._ignored_modules.add(name)

    def is_module_ignored(self, module: Union[types.ModuleType, str, Any]) -> bool:
        name = module.__name__ if isinstance(module, types.ModuleType) else module
        if not isinstance(name, str):
            return False
        return any(name == ignored or name.startswith(ignored + ".") for ignored in self._ignored_modules)

    # === Module swaps ===

    def replacing_module(
        self,
        old: Optional[types.ModuleType],
        new: Optional[types.ModuleType],
    ) -> bool:
        """
        Queue a module replacement for the next pass.

        ``old=None`` announces a newly loaded module, ``new=None`` a removed
        one. Returns ``True`` if the replacement wasn't queued already.
        """
        if old is None and new is None:
            raise ValueError("A module replacement needs an old or a new module")

        if old is None:
            if id(new) in self._added_modules:
                return False
            self._added_modules[id(new)] = new
            self.module_index.refresh()
            logger.debug("Module added", module=new.__name__)
            return True

        existing = self._swaps.get(id(old))
        if existing is not None and existing[1] is new:
            return False

        self._swaps[id(old)] = (old, new)
        self.module_index.refresh()
        logger.debug(
            "Module replacement queued",
            module=old.__name__,
            removed=new is None,
        )
        return existing is None

    def get_outgoing_modules(self) -> List[types.ModuleType]:
        return [old for old, _ in self._swaps.values()]

    def get_queued_module_replacements(self) -> List[ModuleSwap]:
        swaps = [ModuleSwap(old, new) for old, new in self._swaps.values()]
        swaps.extend(ModuleSwap(None, new) for new in self._added_modules.values())
        return swaps

    def is_outgoing_module(self, module: Any) -> bool:
        entry = self._swaps.get(id(module))
        return entry is not None and entry[0] is module

    def is_incoming_module(self, module: Any) -> bool:
        if self._added_modules.get(id(module)) is module:
            return True
        return any(new is module for _, new in self._swaps.values())

    def get_swap_target(self, module: types.ModuleType) -> Optional[types.ModuleType]:
        """Replacement of an outgoing module (``None`` if removed), or the module itself."""
        entry = self._swaps.get(id(module))
        if entry is None or entry[0] is not module:
            return module
        return entry[1]

    def _collapse_swaps(self) -> None:
        """
        Turn chains ``A -> B -> C`` into ``A -> C`` and ``B -> C``.

        Raises:
            SwapCycleError: If following replacements leads back to a module
        """
        self._intermediates = {
            id(new) for _, new in self._swaps.values() if new is not None and id(new) in self._swaps
        }
        collapsed: Dict[int, Tuple[types.ModuleType, Optional[types.ModuleType]]] = {}
        for key, (old, new) in self._swaps.items():
            seen = {id(old)}
            target = new
            while target is not None and id(target) in self._swaps:
                if id(target) in seen:
                    raise SwapCycleError(old.__name__)
                seen.add(id(target))
                target = self._swaps[id(target)][1]
            collapsed[key] = (old, target)
        self._swaps = collapsed

        for key, module in list(self._added_modules.items()):
            if key in self._swaps:
                del self._added_modules[key]
                target = self._swaps[key][1]
                if target is not None:
                    self._added_modules[id(target)] = target

    # === Upgraders ===

    def add_upgrader(self, upgrader: U) -> U:
        """
        Register ``upgrader`` in its group.

        Raises:
            UpgraderRegistrationError: If an upgrader of the same type is
                already registered or its group isn't
            UpgraderOrderingError: If its ordering constraints contradict
                the group's members
        """
        cls = type(upgrader)
        if cls in self._upgraders:
            raise UpgraderRegistrationError(f"Upgrader {cls.__qualname__} is already registered")

        group_cls = upgrader.upgrader_group or RootUpgraderGroup
        group = self._upgraders.get(group_cls)
        if not isinstance(group, UpgraderGroup):
            raise UpgraderRegistrationError(
                f"Group {group_cls.__qualname__} of upgrader {cls.__qualname__} isn't registered"
            )

        group.add_member(upgrader)
        upgrader.initialize(self)
        self._upgraders[cls] = upgrader

        logger.debug("Upgrader registered", upgrader=upgrader.name, group=group.name)
        return upgrader

    def add_upgraders_from_module(self, module: types.ModuleType) -> List[InstanceUpgrader]:
        """
        Register every concrete upgrader class defined in ``module``.

        Groups are registered before their members. Classes opting out with
        ``auto_create = False`` are ignored.

        Raises:
            UpgraderRegistrationError: Once, with every failure, if any
                class couldn't be instantiated or registered
        """
        candidates = [
            value for value in vars(module).values()
            if isinstance(value, type)
            and issubclass(value, InstanceUpgrader)
            and value.__module__ == module.__name__
            and not inspect.isabstract(value)
            and is_auto_created(value)
            and value not in self._upgraders
        ]
        candidates.sort(key=lambda c: (not issubclass(c, UpgraderGroup), _group_depth(c)))

        registered: List[InstanceUpgrader] = []
        errors: List[Exception] = []
        for cls in candidates:
            try:
                upgrader = cls()
            except TypeError as e:
                errors.append(UpgraderRegistrationError(
                    f"Upgrader {cls.__qualname__} has no parameterless constructor: {e}"
                ))
                continue
            except Exception as e:
                errors.append(UpgraderRegistrationError(
                    f"Upgrader {cls.__qualname__} failed to construct: {type(e).__name__}: {e}"
                ))
                continue

            try:
                registered.append(self.add_upgrader(upgrader))
            except ReliveError as e:
                errors.append(e)

        if errors:
            raise UpgraderRegistrationError.aggregate(errors)
        return registered

    def get_upgrader(self, cls: Type[U]) -> U:
        """
        Raises:
            UpgraderNotFoundError: If no upgrader of type ``cls`` is registered
        """
        upgrader = self.try_get_upgrader(cls)
        if upgrader is None:
            raise UpgraderNotFoundError(cls)
        return upgrader

    def try_get_upgrader(self, cls: Type[U]) -> Optional[U]:
        upgrader = self._upgraders.get(cls)
        if upgrader is not None:
            return upgrader
        for candidate in self._upgraders.values():
            if isinstance(candidate, cls):
                return candidate
        return None

    @property
    def upgraders(self) -> List[InstanceUpgrader]:
        return list(self._upgraders.values())

    # === Migration services ===

    def get_new_type(self, old: Any) -> Any:
        return self.type_resolver.get_new_type(old)

    def get_new_instance(self, old: Any, src_field: Any = None, dst_field: Any = None) -> Any:
        """
        Replacement for ``old``, created through the upgrader tree on first use.

        ``src_field`` and ``dst_field`` describe where the value was found and
        where it goes; they extend the reference path when tracing.
        """
        if old is None:
            return None

        saved = self.capture_context()
        self._src_field = src_field
        self._dst_field = dst_field
        if self.config.tracing and src_field is not None:
            self._path = self._path.child(src_field) if self._path is not None else self.paths.get_root(src_field)

        try:
            handled, new = self.root.try_create_new_instance(old)
        finally:
            self.restore_context(saved)

        return new if handled else old

    def add_cached_instance(self, old: Any, new: Any) -> None:
        cached = self.try_get_upgrader(CachedUpgrader)
        if cached is not None:
            cached.add(old, new)

    def is_cached(self, old: Any) -> bool:
        cached = self.try_get_upgrader(CachedUpgrader)
        return cached is not None and old in cached

    def capture_context(self) -> Context:
        return self._src_field, self._dst_field, self._path

    def restore_context(self, context: Context) -> None:
        self._src_field, self._dst_field, self._path = context

    def log(
        self,
        severity: EntrySeverity,
        message: str,
        exception: Optional[BaseException] = None,
        member: Any = None,
        path: Optional[ReferencePath] = None,
    ) -> ResultEntry:
        """Add an entry to the current result, mirrored to the logger when enabled."""
        start = time.perf_counter()
        if path is None:
            path = self._path

        entry = ResultEntry(severity, message, exception, member, path)
        self.result.add_entry(entry)

        if self.config.log_entries:
            fields: Dict[str, Any] = {}
            if member is not None:
                fields["member"] = describe_member(member)
            if path is not None:
                fields["path"] = str(path)
            if exception is not None:
                fields["error"] = f"{type(exception).__name__}: {exception}"
            getattr(logger, _LOG_METHODS[severity])(entry.message, **fields)

        self.result.diagnostics_time += _elapsed_ms(start)
        return entry

    # === Passes ===

    def run_migration_pass(self) -> PassResult:
        """
        Migrate everything affected by the queued module replacements.

        Returns the shared no-action result when nothing is queued. Failures
        of single values are reported as entries; the pass itself only
        raises for invalid state.

        Raises:
            SwapCycleError: If the queued replacements form a cycle
            RuntimeError: If called while a pass is running
        """
        if self._running:
            raise RuntimeError("A migration pass is already running")
        if not self._swaps and not self._added_modules:
            return PassResult.no_action_result()

        self._collapse_swaps()
        result = self.result = PassResult()
        start = time.perf_counter()
        self._running = True

        logger.info(
            "Migration pass started",
            outgoing=[m.__name__ for m in self.get_outgoing_modules()],
            added=[m.__name__ for m in self._added_modules.values()],
        )

        try:
            self.module_index.refresh()
            self.root.pass_started()

            stage = time.perf_counter()
            self.walker.walk(self._walk_targets())
            result.static_field_time = _elapsed_ms(stage)

            stage = time.perf_counter()
            self._walk_watched_instances()
            result.watched_instance_time = _elapsed_ms(stage)

            stage = time.perf_counter()
            self.scheduler.drain()
            result.instance_queue_time = _elapsed_ms(stage)
        finally:
            try:
                self.root.pass_completed()
            finally:
                self._end_pass()
                # Entries logged between passes never reach a returned result
                self.result = PassResult()

        result.processing_time = _elapsed_ms(start)
        logger.info("Migration pass completed", **result.get_stats())
        return result

    def _walk_targets(self) -> List[WalkTarget]:
        # Intermediate versions first, so the live state of the oldest version wins
        swapped = sorted(self._swaps.values(), key=lambda swap: id(swap[0]) not in self._intermediates)
        targets = []
        for old, _ in swapped:
            entry = self._watched_modules.get(id(old))
            targets.append(WalkTarget(old, entry[1] if entry else None, swapped=True))

        for module, filter in self._watched_modules.values():
            if not self.is_outgoing_module(module):
                targets.append(WalkTarget(module, filter))

        for module in self._added_modules.values():
            if id(module) not in self._watched_modules:
                targets.append(WalkTarget(module))
        return targets

    def _walk_watched_instances(self) -> None:
        default = self.try_get_upgrader(DefaultUpgrader)
        cached = self.try_get_upgrader(CachedUpgrader)

        for key, obj in list(self._watched_instances.items()):
            found, new = cached.get(obj) if cached is not None else (False, None)
            if found:
                # Already replaced through a static field, follow that replacement
                if new is not obj:
                    del self._watched_instances[key]
                    if new is not None:
                        self._watched_instances[id(new)] = new
                continue

            path = self.paths.get_root(type(obj)) if self.config.tracing else None
            saved = self.capture_context()
            self.restore_context((None, None, path))
            try:
                if default is not None:
                    default.upgrade_watched_instance(obj)
                    continue
                new = self.get_new_instance(obj)
                if new is not obj:
                    del self._watched_instances[key]
                    if new is not None:
                        self._watched_instances[id(new)] = new
            except Exception as e:
                self.log(
                    EntrySeverity.ERROR,
                    f"Failed to migrate watched instance of {type(obj).__qualname__}: "
                    f"{type(e).__name__}: {e}",
                    exception=e,
                    member=type(obj),
                )
            finally:
                self.restore_context(saved)

    def _end_pass(self) -> None:
        """Clear pass-scoped state and move watches to the replacement modules."""
        try:
            self.scheduler.clear()
            self.type_resolver.clear_cache()
            self.defaults.clear_cache()
            self.paths.clear()
            self.root.clear_cache()
            self._rewatch()
        finally:
            self._swaps.clear()
            self._added_modules.clear()
            self._intermediates.clear()
            self.module_index.refresh()
            self.restore_context((None, None, None))
            self._running = False

    def _rewatch(self) -> None:
        for old, new in self._swaps.values():
            entry = self._watched_modules.pop(id(old), None)
            if new is not None:
                self._watched_modules[id(new)] = (new, entry[1] if entry else None)

        for module in self._added_modules.values():
            self._watched_modules.setdefault(id(module), (module, None))


def _group_depth(cls: type) -> int:
    depth = 0
    group = cls.upgrader_group
    while group is not None and group is not RootUpgraderGroup:
        depth += 1
        group = group.upgrader_group
    return depth
