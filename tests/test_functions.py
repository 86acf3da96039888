"""
Function Upgrader Tests

Named functions, closures, lambdas, bound methods, partials and generators
held by static fields across a reload.
"""

import functools

import pytest

from relive.core.config import ReliveConfig
from relive.core.engine import MigrationEngine
from relive.upgraders.functions import (
    FunctionErrorKind,
    get_error_kind,
    make_error_callable,
)


# === Test Fixtures ===


@pytest.fixture
def run_pass(engine):
    """Run a pass and return its result."""

    def run():
        return engine.run_migration_pass()

    return run


class TestErrorCallables:
    """Test the stand-ins for functions that can't be migrated."""

    def test_error_callable_raises(self):
        """Calling an error callable raises with its message."""

        def original(a, b):
            return a + b

        stub = make_error_callable(original, FunctionErrorKind.TARGET_REMOVED, "original was removed")

        with pytest.raises(NotImplementedError, match="original was removed"):
            stub(1, 2)
        assert stub.__name__ == "original"
        assert stub.__qualname__ == original.__qualname__
        assert stub.__doc__ == "original was removed"
        assert get_error_kind(stub) is FunctionErrorKind.TARGET_REMOVED

    def test_regular_function_has_no_error_kind(self):
        """Regular functions report no error kind."""
        assert get_error_kind(len) is None
        assert get_error_kind(lambda: None) is None


class TestNamedFunctions:
    """Test functions looked up by qualified name."""

    def test_module_function(self, make_module, reload, run_pass):
        """References to module functions point to the new definition."""
        old = make_module("fn_named", """
        def handler():
            return 1

        callbacks = [handler]
        """)
        new = reload(old, """
        def handler():
            return 2

        callbacks = []
        """)

        result = run_pass()

        assert result.success
        assert new.callbacks == [new.handler]
        assert new.callbacks[0]() == 2

    def test_method_and_property_accessor(self, make_module, reload, run_pass):
        """Methods and property accessors are matched by their role."""
        source = """
        class Gauge:
            def __init__(self):
                self._value = 0

            def read(self):
                return "{version}"

            @property
            def value(self):
                return self._value

        hooks = {{}}
        hooks["read"] = Gauge.read
        hooks["getter"] = Gauge.value.fget
        """
        old = make_module("fn_methods", source.format(version="old"))
        new = reload(old, source.format(version="new"))

        run_pass()

        assert new.hooks["read"] is new.Gauge.read
        assert new.hooks["getter"] is new.Gauge.value.fget

    def test_removed_function(self, make_module, reload, run_pass):
        """Removed functions become error callables and a warning is logged."""
        old = make_module("fn_removed", """
        def obsolete():
            return 1

        callbacks = [obsolete]
        """)
        new = reload(old, "callbacks = []")

        result = run_pass()

        stub = new.callbacks[0]
        assert get_error_kind(stub) is FunctionErrorKind.TARGET_REMOVED
        with pytest.raises(NotImplementedError):
            stub()
        assert result.has_warnings

    def test_removed_module(self, engine, make_module, run_pass):
        """Functions of a removed module become error callables."""
        lib = make_module("fn_lib", "def handler():\n    return 1\n")
        user = make_module("fn_user", "")
        user.callback = lib.handler
        engine.watch_module(user)
        engine.replacing_module(lib, None)

        run_pass()

        assert get_error_kind(user.callback) is FunctionErrorKind.TARGET_REMOVED

    def test_unrelated_function_untouched(self, engine, make_module, reload, run_pass):
        """Functions of modules that weren't reloaded are kept."""
        user = make_module("fn_unrelated", "")
        user.callback = functools.reduce
        engine.watch_module(user)
        reload(make_module("fn_trigger", ""), "")

        run_pass()

        assert user.callback is functools.reduce


class TestClosures:
    """Test lambdas and local functions."""

    def test_lambda_keeps_captured_state(self, make_module, reload, run_pass):
        """A rebuilt lambda runs the new code over the old closure."""
        old = make_module("fn_lambda", """
        def make_adder(n):
            return lambda x: x + n

        add_two = make_adder(2)
        """)
        new = reload(old, """
        def make_adder(n):
            return lambda x: x + n + 100

        add_two = make_adder(5)
        """)

        result = run_pass()

        assert result.success
        assert new.add_two(1) == 103
        assert new.add_two.__globals__ is vars(new)

    def test_shared_cells_stay_shared(self, make_module, reload, run_pass):
        """Closures sharing a variable keep sharing it."""
        source = """
        def make_counter():
            count = 0

            def increment():
                nonlocal count
                count += {step}
                return count

            def peek():
                return count

            return increment, peek

        increment, peek = make_counter()
        """
        old = make_module("fn_cells", source.format(step=1))
        old.increment()
        new = reload(old, source.format(step=10))

        run_pass()

        assert new.peek() == 1
        assert new.increment() == 11
        assert new.peek() == 11

    def test_new_capture_fails(self, make_module, reload, run_pass):
        """A local function capturing a variable it didn't capture before can't be rebuilt."""
        old = make_module("fn_capture", """
        def make(n):
            def inner():
                return 1
            return inner

        fn = make(1)
        """)
        new = reload(old, """
        def make(n):
            def inner():
                return n
            return inner

        fn = make(1)
        """)

        run_pass()

        assert get_error_kind(new.fn) is FunctionErrorKind.NO_RETROACTIVE_CAPTURE

    def test_missing_scope_fails(self, make_module, reload, run_pass):
        """A lambda whose declaring function is gone has no counterpart."""
        old = make_module("fn_scope", """
        def make():
            return lambda: 1

        fn = make()
        """)
        new = reload(old, "fn = None")

        run_pass()

        assert get_error_kind(new.fn) is FunctionErrorKind.NO_MATCH_LAMBDA

    def test_closure_defaults_migrated(self, make_module, reload, run_pass):
        """Default values of rebuilt functions are carried over."""
        old = make_module("fn_defaults", """
        def make():
            def inner(value=[1]):
                return value
            return inner

        fn = make()
        """)
        old_default = old.fn()
        new = reload(old, """
        def make():
            def inner(value=[2]):
                return value
            return inner

        fn = make()
        """)

        run_pass()

        assert new.fn() is old_default


class TestMethodsAndPartials:
    """Test bound methods and partials."""

    def test_bound_method_rebound(self, make_module, reload, run_pass):
        """Bound methods are rebuilt from the new function and the new instance."""
        source = """
        class Greeter:
            def __init__(self):
                self.name = "world"

            def greet(self):
                return "{greeting} " + self.name

        greeter = Greeter()
        handlers = [greeter.greet]
        """
        old = make_module("fn_bound", source.format(greeting="hello"))
        new = reload(old, source.format(greeting="hi"))

        run_pass()

        handler = new.handlers[0]
        assert handler.__self__ is new.greeter
        assert handler() == "hi world"

    def test_builtin_method_rebound(self, make_module, reload, run_pass):
        """Builtin methods bound to migrated containers follow their owner."""
        source = """
        class Sink:
            def __init__(self):
                self.items = []

        sink = Sink()
        append = sink.items.append
        """
        old = make_module("fn_builtin_bound", source)
        new = reload(old, source)

        run_pass()

        new.append("x")
        assert new.sink.items == ["x"]

    def test_partial_migrated(self, make_module, reload, run_pass):
        """Partials get the new function and migrated arguments."""
        source = """
        import functools

        class Target:
            pass

        def send(target, message):
            return "{prefix}" + message

        target = Target()
        notify = functools.partial(send, target, message="ping")
        """
        old = make_module("fn_partial", source.format(prefix="old:"))
        old_partial = old.notify
        new = reload(old, source.format(prefix="new:"))

        run_pass()

        assert new.notify is old_partial
        assert new.notify.func is new.send
        assert new.notify.args[0] is new.target
        assert new.notify() == "new:ping"


class TestGenerators:
    """Test generators and coroutines."""

    def test_unstarted_generator_recreated(self, make_module, reload, run_pass):
        """Generators that didn't start yet run the new code with the same arguments."""
        old = make_module("fn_gen", """
        def count(start):
            yield start

        pending = count(3)
        """)
        new = reload(old, """
        def count(start):
            yield start * 10

        pending = count(0)
        """)

        run_pass()

        assert next(new.pending) == 30

    def test_started_generator_kept(self, make_module, reload, run_pass):
        """Running generators keep the old code and a warning is logged."""
        source = """
        def count():
            yield 1
            yield 2

        running = count()
        """
        old = make_module("fn_gen_started", source)
        next(old.running)
        new = reload(old, source)

        result = run_pass()

        assert new.running is old.running
        assert next(new.running) == 2
        assert result.has_warnings

    def test_started_generator_warning_disabled(self, make_module):
        """The warning for running generators can be turned off."""
        engine = MigrationEngine(config=ReliveConfig(log_entries=False, warn_on_suspended_generators=False))
        source = "def count():\n    yield 1\n    yield 2\n\nrunning = count()\n"
        old = make_module("fn_gen_quiet", source)
        next(old.running)
        engine.replacing_module(old, make_module("fn_gen_quiet", source))

        result = engine.run_migration_pass()

        assert not result.has_warnings

    def test_unstarted_coroutine_recreated(self, make_module, reload, run_pass):
        """Coroutines that weren't awaited are re-created and the old one closed."""
        old = make_module("fn_coro", """
        async def fetch(key):
            return key

        pending = fetch("a")
        """)
        old_coro = old.pending
        new = reload(old, """
        async def fetch(key):
            return key.upper()

        pending = None
        """)

        run_pass()

        with pytest.raises(StopIteration) as info:
            new.pending.send(None)
        assert info.value.value == "A"
        assert old_coro.cr_frame is None
