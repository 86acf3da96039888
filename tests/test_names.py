"""
Qualified Name Decoder Tests
"""

import pytest

from relive.resolver.names import GeneratedNameKind, decode_qualname, try_decode_qualname


class TestDecodeQualname:
    """Test decoding of compiler-generated qualified names."""

    def test_plain_name(self):
        """Module level names have no scope and no container."""
        name = decode_qualname("handler")
        assert name.kind is GeneratedNameKind.NAMED
        assert name.scope is None
        assert name.container is None
        assert name.leaf == "handler"
        assert not name.is_local
        assert not name.is_synthesized

    def test_method_name(self):
        """Methods keep their class as container."""
        name = decode_qualname("Outer.Inner.method")
        assert name.kind is GeneratedNameKind.NAMED
        assert name.container == "Outer.Inner"
        assert name.leaf == "method"

    def test_local_function(self):
        """Names after <locals> belong to the enclosing scope."""
        name = decode_qualname("make.<locals>.inner")
        assert name.kind is GeneratedNameKind.LOCAL
        assert name.scope == "make"
        assert name.local_path == ("inner",)
        assert name.is_local

    def test_nested_locals(self):
        """Every <locals> marker is dropped from the local path."""
        name = decode_qualname("Cls.build.<locals>.helper.<locals>.<lambda>")
        assert name.kind is GeneratedNameKind.LAMBDA
        assert name.scope == "Cls.build"
        assert name.local_path == ("helper", "<lambda>")

    def test_module_level_lambda(self):
        """A lambda at module level is synthesized but not local."""
        name = decode_qualname("<lambda>")
        assert name.kind is GeneratedNameKind.LAMBDA
        assert name.is_synthesized
        assert not name.is_local

    def test_comprehension_and_genexpr(self):
        """Comprehensions and generator expressions are told apart."""
        assert decode_qualname("f.<locals>.<listcomp>").kind is GeneratedNameKind.COMPREHENSION
        assert decode_qualname("f.<locals>.<genexpr>").kind is GeneratedNameKind.GENERATOR_EXPRESSION

    def test_local_class(self):
        """Classes defined in functions are local names."""
        name = decode_qualname("factory.<locals>.Product")
        assert name.kind is GeneratedNameKind.LOCAL
        assert name.local_path == ("Product",)

    @pytest.mark.parametrize("qualname", ["", "a..b", "<locals>.f", "f.<locals>", "f.<weird>"])
    def test_invalid_names(self, qualname):
        """Malformed names raise ValueError."""
        with pytest.raises(ValueError):
            decode_qualname(qualname)

    def test_try_decode(self):
        """try_decode_qualname returns None instead of raising."""
        assert try_decode_qualname("f.<locals>") is None
        assert try_decode_qualname(None) is None
        assert try_decode_qualname("f").leaf == "f"
