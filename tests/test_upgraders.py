"""
Upgrader Framework Tests

Registration, ordering and dispatch of upgraders through the engine's root
group.
"""

import inspect
from typing import Any, Tuple

import pytest

from relive.core.config import ReliveConfig
from relive.core.engine import MigrationEngine
from relive.core.errors import (
    UpgraderNotFoundError,
    UpgraderOrderingError,
    UpgraderRegistrationError,
)
from relive.upgraders import (
    AutoSkipUpgrader,
    CachedUpgrader,
    CollectionsUpgraderGroup,
    DefaultUpgrader,
    FunctionUpgraderGroup,
    GroupOrder,
    InstanceUpgrader,
    ReflectionUpgraderGroup,
    SkipUpgrader,
    UpgraderGroup,
)
from relive.upgraders.keyed import _KeyedUpgrader
from relive.upgraders.ordering import order_upgraders


# === Test Fixtures ===


class Token:
    def __init__(self, value):
        self.value = value


class TokenUpgrader(InstanceUpgrader):
    """Replaces tokens with upper-cased copies."""

    auto_create = False

    def __init__(self):
        super().__init__()
        self.created = 0

    def should_process_type(self, cls: type) -> bool:
        return issubclass(cls, Token)

    def try_create_new_instance(self, old: Any) -> Tuple[bool, Any]:
        self.created += 1
        return True, Token(old.value.upper())


class _Declining(InstanceUpgrader):
    auto_create = False

    def try_create_new_instance(self, old: Any) -> Tuple[bool, Any]:
        return False, None


class Alpha(_Declining):
    group_order = GroupOrder.LAST


class Beta(_Declining):
    attempt_after = (Alpha,)


class Gamma(_Declining):
    attempt_before = (Alpha,)


class _CycleCloser(_Declining):
    """Must run after Beta but before Alpha, which Beta follows."""

    attempt_after = (Beta,)
    attempt_before = (Alpha,)


class Orphan(_Declining):
    upgrader_group = UpgraderGroup


UPGRADER_MODULE = """
from relive.upgraders.base import InstanceUpgrader
from relive.upgraders.groups import RootUpgraderGroup, UpgraderGroup


class AuditMember(InstanceUpgrader):
    def try_create_new_instance(self, old):
        return False, None


class AuditGroup(UpgraderGroup):
    upgrader_group = RootUpgraderGroup


AuditMember.upgrader_group = AuditGroup


class ManualUpgrader(InstanceUpgrader):
    auto_create = False

    def try_create_new_instance(self, old):
        return False, None
"""


BROKEN_MODULE = """
from relive.upgraders.base import InstanceUpgrader


class NeedsHost(InstanceUpgrader):
    def __init__(self, host):
        super().__init__()

    def try_create_new_instance(self, old):
        return False, None


class NeedsPort(InstanceUpgrader):
    def __init__(self, port):
        super().__init__()

    def try_create_new_instance(self, old):
        return False, None


class NeedsNetwork(InstanceUpgrader):
    def __init__(self):
        super().__init__()
        raise RuntimeError("offline")

    def try_create_new_instance(self, old):
        return False, None
"""


@pytest.fixture
def bare_engine():
    """Engine without the built-in upgraders."""
    return MigrationEngine(config=ReliveConfig(log_entries=False, add_default_upgraders=False))


class TestDefaultUpgraders:
    """Test the built-in upgrader tree."""

    def test_root_order(self, engine):
        """Root members are tried in a fixed order."""
        assert [type(m) for m in engine.root.members] == [
            SkipUpgrader,
            CachedUpgrader,
            ReflectionUpgraderGroup,
            FunctionUpgraderGroup,
            CollectionsUpgraderGroup,
            AutoSkipUpgrader,
            DefaultUpgrader,
        ]

    def test_lookup_by_type(self, engine):
        """Registered upgraders are found by their type or a base type."""
        assert isinstance(engine.get_upgrader(DefaultUpgrader), DefaultUpgrader)
        assert isinstance(engine.get_upgrader(UpgraderGroup), UpgraderGroup)

    def test_scalars_skipped(self, engine):
        """Scalars come back unchanged."""
        assert engine.get_new_instance(42) == 42
        assert engine.get_new_instance("text") == "text"
        assert engine.get_new_instance(None) is None

    def test_keyed_base_is_abstract(self):
        """The shared base of the dict and set upgraders can't be instantiated."""
        assert inspect.isabstract(_KeyedUpgrader)
        with pytest.raises(TypeError):
            _KeyedUpgrader()


class TestRegistration:
    """Test adding upgraders."""

    def test_duplicate_rejected(self, engine):
        """Two upgraders of the same type can't be registered."""
        with pytest.raises(UpgraderRegistrationError):
            engine.add_upgrader(SkipUpgrader())

    def test_unregistered_group_rejected(self, engine):
        """Upgraders need their group to be registered first."""
        with pytest.raises(UpgraderRegistrationError, match="isn't registered"):
            engine.add_upgrader(Orphan())

    def test_not_found(self, bare_engine):
        """Missing upgraders raise a KeyError."""
        with pytest.raises(UpgraderNotFoundError):
            bare_engine.get_upgrader(DefaultUpgrader)
        with pytest.raises(KeyError):
            bare_engine.get_upgrader(CachedUpgrader)
        assert bare_engine.try_get_upgrader(DefaultUpgrader) is None

    def test_bare_engine_has_only_root(self, bare_engine):
        """Without defaults only the root group exists."""
        assert bare_engine.upgraders == [bare_engine.root]
        assert bare_engine.root.members == []

    def test_upgraders_from_module(self, engine, make_module):
        """Groups are registered before their members and opt-outs are ignored."""
        module = make_module("upg_audit", UPGRADER_MODULE)

        registered = engine.add_upgraders_from_module(module)

        assert [type(u) for u in registered] == [module.AuditGroup, module.AuditMember]
        group = engine.get_upgrader(module.AuditGroup)
        assert [type(m) for m in group.members] == [module.AuditMember]
        assert engine.try_get_upgrader(module.ManualUpgrader) is None

    def test_upgraders_from_module_aggregates_errors(self, engine, make_module):
        """Every failing class is reported in one error."""
        module = make_module("upg_broken", BROKEN_MODULE)

        with pytest.raises(UpgraderRegistrationError, match="Failed to register 3 upgrader") as info:
            engine.add_upgraders_from_module(module)
        assert len(info.value.errors) == 3
        assert any("RuntimeError: offline" in str(e) for e in info.value.errors)
        assert engine.try_get_upgrader(module.NeedsNetwork) is None


class TestOrdering:
    """Test ordering constraints inside a group."""

    def test_group_order(self):
        """Without constraints members sort by group order, then registration."""
        alpha, beta = Alpha(), _Declining()
        assert order_upgraders([alpha, beta]) == [beta, alpha]

    def test_attempt_before_overrides_group_order(self):
        """Explicit constraints win over the coarse group order."""
        alpha, gamma = Alpha(), Gamma()
        assert order_upgraders([alpha, gamma]) == [gamma, alpha]

    def test_attempt_after(self):
        """attempt_after places a member behind its target."""
        beta, alpha = Beta(), Alpha()
        assert order_upgraders([beta, alpha]) == [alpha, beta]

    def test_contradiction(self):
        """Contradicting constraints are rejected."""
        with pytest.raises(UpgraderOrderingError):
            order_upgraders([Alpha(), Beta(), _CycleCloser()])

    def test_contradiction_leaves_group_unchanged(self, bare_engine):
        """A rejected member isn't added."""
        bare_engine.add_upgrader(Alpha())
        bare_engine.add_upgrader(Beta())

        with pytest.raises(UpgraderOrderingError):
            bare_engine.add_upgrader(_CycleCloser())

        assert [type(m) for m in bare_engine.root.members] == [Alpha, Beta]
        assert bare_engine.try_get_upgrader(_CycleCloser) is None


class TestDispatch:
    """Test how values travel through the tree."""

    def test_custom_upgrader_claims_values(self, engine):
        """A custom upgrader in the root group sees its values first."""
        upgrader = engine.add_upgrader(TokenUpgrader())

        new = engine.get_new_instance(Token("abc"))

        assert isinstance(new, Token)
        assert new.value == "ABC"
        assert upgrader.created == 1

    def test_replacements_are_cached(self, engine):
        """The same old value always gets the same replacement."""
        upgrader = engine.add_upgrader(TokenUpgrader())
        token = Token("abc")

        first = engine.get_new_instance(token)
        second = engine.get_new_instance(token)

        assert first is second
        assert upgrader.created == 1
        assert engine.is_cached(token)

    def test_custom_upgrader_ordered_before_catch_all(self, engine):
        """Default-order members come before the last-resort upgraders."""
        engine.add_upgrader(TokenUpgrader())
        types = [type(m) for m in engine.root.members]

        assert types.index(TokenUpgrader) < types.index(AutoSkipUpgrader)
        assert types.index(TokenUpgrader) > types.index(CollectionsUpgraderGroup)

    def test_frozen_dataclass_auto_skipped(self, engine, make_module, reload):
        """Frozen dataclasses of scalars are skipped and reported."""
        make_module("upg_lib", """
        import dataclasses

        @dataclasses.dataclass(frozen=True)
        class Version:
            major: int
            minor: int
        """)
        source = "from upg_lib import Version\n\ncurrent = Version(1, 2)\n"
        old = make_module("upg_app", source)
        old_version = old.current
        new = reload(old, source)

        result = engine.run_migration_pass()

        assert result.auto_skipped_types == ["upg_lib.Version"]
        assert new.current is old_version
