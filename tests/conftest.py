"""
Shared fixtures for relive tests.

Modules under test are built from source strings, so every test can create
an "old" and a "new" version of the same module without touching disk.
"""

import sys
import textwrap
import types

import pytest

from relive.core.config import ReliveConfig
from relive.core.engine import MigrationEngine


def build_module(name: str, source: str) -> types.ModuleType:
    """Execute ``source`` as the body of a fresh module called ``name``."""
    module = types.ModuleType(name)
    module.__file__ = f"{name}.py"
    # dataclasses and typing look the module up while the body runs
    sys.modules[name] = module
    code = compile(textwrap.dedent(source), module.__file__, "exec")
    exec(code, module.__dict__)
    return module


@pytest.fixture
def make_module():
    """Factory building modules from source; they are unregistered afterwards."""
    created = []

    def factory(name: str, source: str) -> types.ModuleType:
        created.append(name)
        return build_module(name, source)

    yield factory

    for name in created:
        sys.modules.pop(name, None)


@pytest.fixture
def config():
    """Configuration with entries kept off the log output."""
    return ReliveConfig(log_entries=False)


@pytest.fixture
def engine(config):
    """An engine with the built-in upgraders."""
    return MigrationEngine(config=config)


@pytest.fixture
def reload(engine, make_module):
    """Build a new version of a module and queue it as the replacement."""

    def swap(old: types.ModuleType, source: str) -> types.ModuleType:
        new = make_module(old.__name__, source)
        engine.replacing_module(old, new)
        return new

    return swap
