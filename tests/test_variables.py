# tests/test_variables.py
"""
Tests for the ``type [= value]`` declaration grammar.
"""

import pytest

from waspect import variables
from waspect.errors import GrammarError, ModuleMutationError


class TestDeclarations:

    @pytest.mark.parametrize("text,typ", [
        ("i32", "i32"),
        ("i64", "i64"),
        ("f32", "f32"),
        ("  f64  ", "f64"),
        ("string", "string"),
        ("map[i32]", "map[i32]"),
        ("[]i32", "[]i32"),
    ])
    def test_types(self, text, typ):
        assert variables.parse(text).type == typ

    def test_no_value(self):
        decl = variables.parse("i32")
        assert decl.value is None
        assert decl.get_value("0") == "0"

    @pytest.mark.parametrize("text,value", [
        ("i32 = 42", "42"),
        ("i64 = -7", "-7"),
        ("f64 = 1.5", "1.5"),
        ("f32 = 2.0", "2"),
    ])
    def test_numeric_values(self, text, value):
        assert variables.parse(text).get_value() == value

    def test_zero_renders_empty(self):
        assert variables.parse("i32 = 0").get_value() == ""

    def test_string_value(self):
        decl = variables.parse('string = "hello"')
        assert decl.value.kind == "string"
        assert decl.get_value() == "hello"

    def test_array_value(self):
        decl = variables.parse("[]i32 = [1, 2, 3]")
        assert decl.value.kind == "array"
        assert decl.get_value() == "[1,2,3]"


class TestPrimitives:

    def test_value_types_are_primitive(self):
        assert variables.parse("f32").is_primitive
        assert variables.parse("i64 = 3").require_primitive("local") == "i64"

    @pytest.mark.parametrize("text", ["string", "map[i32]", "[]i32"])
    def test_composites_are_rejected(self, text):
        decl = variables.parse(text)
        assert not decl.is_primitive
        with pytest.raises(ModuleMutationError, match="composite"):
            decl.require_primitive("global")


class TestErrors:

    @pytest.mark.parametrize("text", ["", "u32", "i32 =", "i32 = abc", "i32i64"])
    def test_invalid(self, text):
        with pytest.raises(GrammarError):
            variables.parse(text)

    def test_simple_type_cannot_have_subtypes(self):
        with pytest.raises(GrammarError, match="subtypes"):
            variables.parse("i32[]")
