"""
Migration Engine Tests

End-to-end passes over modules built from source: registrations, module
swaps, instance migration and the lifecycle hooks.
"""

import pytest

from relive.core.config import ReliveConfig
from relive.core.engine import MigrationEngine, ModuleSwap
from relive.core.errors import SwapCycleError
from relive.core.result import EntrySeverity, PassResult
from relive.upgraders.base import InstanceUpgrader
from relive.upgraders.cached import CachedUpgrader


# === Test Fixtures ===


COUNTER_V1 = """
class Counter:
    def __init__(self):
        self.x = 1

current = Counter()
current.x = 5
"""

COUNTER_V2 = """
class Counter:
    def __init__(self):
        self.x = 1
        self.y = 2

current = Counter()
"""


class LifecycleUpgrader(InstanceUpgrader):
    """Counts completed passes, optionally failing when one starts."""

    auto_create = False

    def __init__(self, fail_on_start=False):
        super().__init__()
        self.fail_on_start = fail_on_start
        self.completed = 0

    def try_create_new_instance(self, old):
        return False, None

    def pass_started(self):
        if self.fail_on_start:
            raise RuntimeError("start failed")

    def pass_completed(self):
        self.completed += 1


@pytest.fixture
def counter_module(make_module):
    """First version of a module holding a modified instance."""
    return make_module("app_counter", COUNTER_V1)


# === Registration ===


class TestRegistration:
    """Test watch and swap registration."""

    def test_no_action_pass(self, engine):
        """A pass without queued replacements returns the shared no-action result."""
        result = engine.run_migration_pass()
        assert result is PassResult.no_action_result()
        assert result.no_action
        assert result.success

    def test_watch_and_unwatch_module(self, engine, make_module):
        """Modules can be watched and unwatched."""
        module = make_module("app_watch", "value = [1]")
        engine.watch_module(module)
        assert engine.is_module_watched(module)
        assert engine.unwatch_module(module)
        assert not engine.is_module_watched(module)
        assert not engine.unwatch_module(module)

    def test_watch_and_unwatch_instance(self, engine):
        """Only instances that were watched can be unwatched."""
        obj = object()
        engine.watch_instance(obj)
        assert engine.unwatch_instance(obj)
        assert not engine.unwatch_instance(obj)

    def test_ignore_module(self, engine):
        """Ignoring a module covers its submodules."""
        engine.ignore_module("vendor")
        assert engine.is_module_ignored("vendor")
        assert engine.is_module_ignored("vendor.http")
        assert not engine.is_module_ignored("vendored")
        assert engine.is_module_ignored("relive.core")

    def test_replacing_module_queues_once(self, engine, make_module):
        """Queuing the same replacement twice reports it as already queued."""
        old = make_module("app_queue", "")
        new = make_module("app_queue", "")

        assert engine.replacing_module(old, new)
        assert not engine.replacing_module(old, new)
        assert engine.is_outgoing_module(old)
        assert engine.is_incoming_module(new)
        assert engine.get_swap_target(old) is new
        assert engine.get_swap_target(new) is new
        assert engine.get_outgoing_modules() == [old]
        assert engine.get_queued_module_replacements() == [ModuleSwap(old, new)]

    def test_replacing_module_addition_and_removal(self, engine, make_module):
        """Added and removed modules are queued as one-sided swaps."""
        added = make_module("app_added", "")
        removed = make_module("app_removed", "")

        assert engine.replacing_module(None, added)
        assert not engine.replacing_module(None, added)
        assert engine.replacing_module(removed, None)

        swaps = engine.get_queued_module_replacements()
        assert any(s.is_addition and s.new is added for s in swaps)
        assert any(s.is_removal and s.old is removed for s in swaps)
        assert engine.get_swap_target(removed) is None

    def test_replacing_module_needs_a_module(self, engine):
        """Old and new can't both be missing."""
        with pytest.raises(ValueError):
            engine.replacing_module(None, None)


# === Module Swaps ===


class TestModuleSwap:
    """Test migration of static fields across a module swap."""

    def test_new_field_gets_default(self, engine, counter_module, reload):
        """Old field values survive and new fields get the initializer's value."""
        new = reload(counter_module, COUNTER_V2)

        result = engine.run_migration_pass()

        assert result.success
        assert isinstance(new.current, new.Counter)
        assert new.current.x == 5
        assert new.current.y == 2
        assert result.instances_processed > 0

    def test_aliases_stay_aliases(self, engine, make_module, reload):
        """Two fields holding one object hold one replacement afterwards."""
        source = """
        class Thing:
            pass

        a = Thing()
        b = a
        """
        old = make_module("app_alias", source)
        new = reload(old, source)

        engine.run_migration_pass()

        assert new.a is new.b
        assert new.a is not old.a
        assert type(new.a) is new.Thing

    def test_cycles_converge(self, engine, make_module, reload):
        """Cyclic references are rebuilt with the same shape."""
        source = """
        class Node:
            def __init__(self):
                self.other = None

        a = Node()
        b = Node()
        a.other = b
        b.other = a
        """
        old = make_module("app_cycle", source)
        new = reload(old, source)

        engine.run_migration_pass()

        assert new.a.other is new.b
        assert new.b.other is new.a
        assert type(new.b) is new.Node

    def test_constants_take_new_value(self, engine, make_module, reload):
        """Constant-named fields of a swapped module keep the reloaded value."""
        old = make_module("app_const", "LIMITS = [1, 2]\nlimits = [1, 2]")
        new = reload(old, "LIMITS = [3]\nlimits = [3]")

        engine.run_migration_pass()

        assert new.LIMITS == [3]
        assert new.limits == [1, 2]

    def test_final_field_migrated_in_place(self, engine, make_module, reload):
        """The reloaded object of a Final field is kept and receives the old state."""
        source = """
        import typing

        class Registry:
            def __init__(self):
                self.items = []

        registry: typing.Final = Registry()
        """
        old = make_module("app_final", source)
        old.registry.items.append("a")
        new = reload(old, source)
        reloaded = new.registry

        result = engine.run_migration_pass()

        assert result.success
        assert new.registry is reloaded
        assert new.registry.items == ["a"]

    def test_removed_type_clears_field(self, engine, make_module, reload):
        """Instances of removed classes are dropped after hotload_failed."""
        old = make_module("app_removed_type", """
        class Gone:
            failed = False

            def hotload_failed(self):
                type(self).failed = True

        instance = Gone()
        """)
        new = reload(old, "instance = None")

        engine.run_migration_pass()

        assert new.instance is None
        assert old.Gone.failed is True

    def test_changed_annotation_discards_value(self, engine, make_module, reload):
        """A field whose declared type changed incompatibly is re-initialized."""
        old = make_module("app_annotation", """
        class Box:
            value: int

            def __init__(self):
                self.value = 1

        box = Box()
        box.value = 7
        """)
        new = reload(old, """
        class Box:
            value: str

            def __init__(self):
                self.value = "empty"

        box = Box()
        """)

        result = engine.run_migration_pass()

        assert new.box.value == "empty"
        assert result.has_warnings

    def test_enum_member_by_name(self, engine, make_module, reload):
        """Enum members map to the member of the same name."""
        old = make_module("app_enum", """
        import enum

        class Color(enum.Enum):
            RED = 1
            GREEN = 2

        current = Color.GREEN
        """)
        new = reload(old, """
        import enum

        class Color(enum.Enum):
            RED = 10
            GREEN = 20

        current = Color.RED
        """)

        engine.run_migration_pass()

        assert new.current is new.Color.GREEN
        assert new.Color(20) is new.Color.GREEN

    def test_class_attribute_state(self, engine, make_module, reload):
        """Mutable class attributes carry their state to the new class."""
        source = """
        class Service:
            instances = []

        Service.instances.append("first")
        """
        old = make_module("app_class_attr", source)
        old.Service.instances.append("second")
        new = reload(old, source)

        engine.run_migration_pass()

        assert new.Service.instances == ["first", "second"]

    def test_chain_keeps_oldest_state(self, engine, make_module):
        """Replacing A with B and B with C migrates A's state into C."""
        first = make_module("app_chain", "store = []")
        first.store.append(1)
        second = make_module("app_chain", "store = []")
        third = make_module("app_chain", "store = []")
        engine.replacing_module(first, second)
        engine.replacing_module(second, third)

        engine.run_migration_pass()

        assert third.store is first.store
        assert third.store == [1]

    def test_swap_cycle_raises(self, engine, make_module):
        """Replacements leading back to a module are rejected."""
        first = make_module("app_swap_cycle", "")
        second = make_module("app_swap_cycle", "")
        engine.replacing_module(first, second)
        engine.replacing_module(second, first)

        with pytest.raises(SwapCycleError):
            engine.run_migration_pass()

    def test_rewatch_after_pass(self, engine, make_module, reload):
        """Watches and filters move to the replacement module."""
        old = make_module("app_rewatch", "")
        added = make_module("app_brand_new", "")

        def only_module(container):
            return container is not None

        engine.watch_module(old, only_module)
        new = reload(old, "")
        engine.replacing_module(None, added)

        engine.run_migration_pass()

        assert not engine.is_module_watched(old)
        assert engine.is_module_watched(new)
        assert engine.is_module_watched(added)
        assert engine._watched_modules[id(new)][1] is only_module
        assert engine.get_queued_module_replacements() == []

    def test_watch_filter_limits_containers(self, engine, make_module, reload):
        """Containers rejected by the filter aren't walked."""
        source = """
        class Holder:
            cache = []

        items = []
        """
        old = make_module("app_filter", source)
        old.Holder.cache.append(1)
        old.items.append(1)
        engine.watch_module(old, lambda container: not isinstance(container, type))
        new = reload(old, source)

        engine.run_migration_pass()

        assert new.items == [1]
        assert new.Holder.cache == []


class TestUnchangedModules:
    """Test modules that aren't reloaded but reference reloaded code."""

    def test_reference_to_outgoing_instance(self, engine, make_module, reload):
        """Watched modules get replacements for instances of swapped classes."""
        lib = make_module("lib_widgets", "class Widget:\n    pass\n")
        user = make_module("app_user", "")
        user.current = lib.Widget()
        engine.watch_module(user)
        new_lib = reload(lib, "class Widget:\n    pass\n")

        result = engine.run_migration_pass()

        assert isinstance(user.current, new_lib.Widget)
        assert any(
            entry.severity is EntrySeverity.INFORMATION
            and "references outgoing module lib_widgets" in entry.message
            for entry in result.entries
        )

    def test_persisted_hook(self, engine, make_module, reload):
        """Instances migrated in place get hotload_persisted."""
        stable = make_module("app_stable", """
        class Keeper:
            def __init__(self):
                self.persist_calls = 0

            def hotload_persisted(self):
                self.persist_calls += 1

        keeper = Keeper()
        """)
        engine.watch_module(stable)
        reload(make_module("app_other", ""), "")

        engine.run_migration_pass()

        assert stable.keeper.persist_calls == 1


# === Instances ===


class TestInstances:
    """Test instance-level migration behavior."""

    def test_watched_instance_is_reclassed(self, engine, make_module, reload):
        """A watched instance keeps its identity and takes the new class."""
        old = make_module("app_config", """
        class Config:
            def __init__(self):
                self.name = "svc"
        """)
        obj = old.Config()
        engine.watch_instance(obj)
        new = reload(old, """
        class Config:
            def __init__(self):
                self.name = "svc"
                self.retries = 3
        """)

        result = engine.run_migration_pass()

        assert result.success
        assert type(obj) is new.Config
        assert obj.name == "svc"
        assert obj.retries == 3

    def test_watched_instance_held_by_module_global(self, engine, make_module, reload):
        """A watched instance that a global also holds gets a single replacement."""
        source = """
        class Thing:
            def __init__(self):
                self.value = 1

        holder = Thing()
        """
        old = make_module("app_shared", source)
        obj = old.holder
        obj.value = 7
        engine.watch_instance(obj)
        new = reload(old, source)

        result = engine.run_migration_pass()

        assert result.success
        assert type(new.holder) is new.Thing
        assert new.holder.value == 7
        assert type(obj) is old.Thing
        assert engine.unwatch_instance(new.holder)
        assert not engine.unwatch_instance(obj)

    def test_dispose_and_accept(self, engine, make_module, reload):
        """State handed over in hotload_dispose reaches hotload_accept."""
        old = make_module("app_cache", """
        class Cache:
            def __init__(self):
                self.entries = {}

            def hotload_dispose(self, state):
                state.set("entries", dict(self.entries))

        cache = Cache()
        cache.entries["k"] = 1
        """)
        new = reload(old, """
        class Cache:
            def __init__(self):
                self.items = {}

            def hotload_accept(self, state):
                self.items = state.get("entries", {})

        cache = Cache()
        """)

        engine.run_migration_pass()

        assert new.cache.items == {"k": 1}

    def test_failing_hook_is_reported(self, engine, make_module, reload):
        """Exceptions from hooks become error entries and the pass completes."""
        old = make_module("app_fragile", """
        class Fragile:
            def hotload_dispose(self, state):
                raise RuntimeError("boom")

        fragile = Fragile()
        """)
        old_cls = old.Fragile
        new = reload(old, """
        class Fragile:
            pass

        fragile = Fragile()
        """)

        result = engine.run_migration_pass()

        assert not result.success
        assert result.errors[0].member is old_cls
        assert "boom" in result.errors[0].message
        assert type(new.fragile) is new.Fragile

    def test_initialized_by_method(self, engine, make_module, reload):
        """New fields can be initialized by a method of the new class."""
        old = make_module("app_init_by", """
        class Index:
            def __init__(self):
                self.name = "main"

        index = Index()
        """)
        new = reload(old, """
        import relive

        @relive.initialized_by("lookup", "build_lookup")
        @relive.initialized_by("lazy")
        class Index:
            def __init__(self, size=10):
                self.name = "main"
                self.lookup = {}
                self.lazy = [0] * size

            def build_lookup(self):
                self.lookup = {"name": self.name}

        index = Index()
        """)

        engine.run_migration_pass()

        assert new.index.lookup == {"name": "main"}
        assert "lazy" not in vars(new.index)

    def test_skipped_type_kept(self, engine, make_module, reload):
        """Instances of skip-marked types are never replaced."""
        source = """
        import relive

        @relive.skip_hotload
        class Handle:
            pass

        handle = Handle()
        """
        old = make_module("app_skip_type", source)
        new = reload(old, source)

        engine.run_migration_pass()

        assert new.handle is old.handle

    def test_skipped_field_kept(self, engine, make_module, reload):
        """Skip-marked fields keep their exact value."""
        source = """
        import relive

        class Payload:
            pass

        @relive.skip_hotload_fields("raw")
        class Holder:
            def __init__(self):
                self.raw = Payload()
                self.cooked = Payload()

        holder = Holder()
        """
        old = make_module("app_skip_field", source)
        new = reload(old, source)

        engine.run_migration_pass()

        assert new.holder.raw is old.holder.raw
        assert type(new.holder.cooked) is new.Payload

    def test_slots_instances(self, engine, make_module, reload):
        """Slot values are copied between slotted classes."""
        source = """
        class Point:
            __slots__ = ("x", "__y")

            def __init__(self):
                self.x = 1
                self.__y = 2

            def y(self):
                return self.__y

        point = Point()
        point.x = 10
        """
        old = make_module("app_slots", source)
        new = reload(old, source)

        engine.run_migration_pass()

        assert type(new.point) is new.Point
        assert new.point.x == 10
        assert new.point.y() == 2


class TestPassResult:
    """Test the result reported by a pass."""

    def test_timings_recorded(self, make_module):
        """Per-type timings are collected when enabled."""
        engine = MigrationEngine(config=ReliveConfig(log_entries=False, include_type_timings=True))
        old = make_module("app_timing", COUNTER_V1)
        new = make_module("app_timing", COUNTER_V2)
        engine.replacing_module(old, new)

        result = engine.run_migration_pass()

        assert "app_timing.Counter" in result.type_timings
        assert result.type_timings["app_timing.Counter"].instances >= 1
        assert result.processing_time >= result.static_field_time

    def test_entries_carry_paths_when_tracing(self, make_module):
        """With path tracing the entry names the static field it came from."""
        engine = MigrationEngine(config=ReliveConfig(log_entries=False, trace_paths=True))
        old = make_module("app_paths", """
        class Fragile:
            def hotload_dispose(self, state):
                raise RuntimeError("boom")

        holder = [Fragile()]
        """)
        new = make_module("app_paths", "class Fragile:\n    pass\n\nholder = []\n")
        engine.replacing_module(old, new)

        result = engine.run_migration_pass()

        path = result.errors[0].path
        assert path is not None
        assert str(path.root) == "app_paths.holder"

    def test_caches_cleared_after_pass(self, engine, counter_module, reload):
        """Pass-scoped caches don't survive the pass."""
        reload(counter_module, COUNTER_V2)

        engine.run_migration_pass()

        assert len(engine.scheduler) == 0
        assert len(engine.paths) == 0
        assert len(engine.get_upgrader(CachedUpgrader)) == 0

    def test_pass_completed_after_failure(self, engine, counter_module, reload):
        """Upgraders hear about the end of a pass that raised."""
        upgrader = engine.add_upgrader(LifecycleUpgrader(fail_on_start=True))
        reload(counter_module, COUNTER_V2)

        with pytest.raises(RuntimeError, match="start failed"):
            engine.run_migration_pass()

        assert upgrader.completed == 1
        assert engine.run_migration_pass() is PassResult.no_action_result()

    def test_pass_completed_after_success(self, engine, counter_module, reload):
        """Upgraders hear about the end of every pass."""
        upgrader = engine.add_upgrader(LifecycleUpgrader())
        reload(counter_module, COUNTER_V2)

        engine.run_migration_pass()

        assert upgrader.completed == 1

    def test_returned_result_is_final(self, engine, counter_module, reload):
        """Entries logged after a pass don't change the result it returned."""
        reload(counter_module, COUNTER_V2)
        result = engine.run_migration_pass()
        entries = list(result.entries)

        engine.log(EntrySeverity.WARNING, "between passes")

        assert result.entries == entries
        assert engine.result is not result
        assert [e.message for e in engine.result.warnings] == ["between passes"]
