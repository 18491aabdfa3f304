# tests/test_template.py
"""
Tests for template parsing, searching, inbound operations and the
values exposed to advice code.
"""

import pytest

from waspect import keywords
from waspect.errors import GrammarError, ResolutionError
from waspect.template import (
    ReplaceArg,
    TemplateContext,
    TemplateResults,
    TemplateValue,
    parse_template,
)

ADD = "(i32.add (local.get 0) (local.get 1))"


def _context(key, **sources):
    templates = {name: parse_template(name, value) for name, value in sources.items()}
    return TemplateContext(templates[key], templates), templates


class TestParse:

    @pytest.mark.parametrize("value,pattern", [
        ("(i32.add %x% %y%)", "(i32.add :[x] :[y])"),
        ("(call %f:includes(inner)% ?)", "(call :[f] :[_])"),
        ("(i32.const \\?)", "(i32.const ?)"),
        ("  (nop)\n  (drop %v%) ", "(nop) (drop :[v])"),
    ])
    def test_pattern(self, value, pattern):
        assert parse_template("t", value).pattern() == pattern

    def test_operations(self):
        template = parse_template("t", "(block %b:not_includes(loop)% %c:includes_one(x, y)%)")
        assert [(op.name, op.args) for op in template.variables["b"].operations] == [
            ("not_", []), ("includes", ["loop"]),
        ]
        assert template.variables["c"].operations[0].args == ["x", "y"]

    @pytest.mark.parametrize("value,message", [
        ("(nop %x:defines(a)%)", "must be after"),
        ("(nop %x:bogus(a)%)", "unknown template operation"),
        ("(nop %x:includes(a):not_defines(v)%)", "must not be wrapped"),
        ("(nop %x:includes(a, b)%)", "exactly one argument"),
    ])
    def test_invalid_operations(self, value, message):
        with pytest.raises(GrammarError, match=message):
            _context("t", t=value, a="(a %v%)", b="(b)")

    def test_unknown_include(self):
        with pytest.raises(ResolutionError, match="not found"):
            _context("t", t="(nop %x:includes(missing)%)")

    def test_defines_must_be_known(self):
        _context("t", t="(nop %x:includes(a):defines(v)%)", a="(a %v%)")
        with pytest.raises(ResolutionError, match="was not defined"):
            _context("t", t="(nop %x:includes(a):defines(zz)%)", a="(a %v%)")


class TestEvaluate:

    def test_placeholders_are_bound(self):
        ctx, _ = _context("add", add="(i32.add %x% %y%)")
        results = ctx.evaluate(ADD)
        assert len(results) == 1
        assert results[0].found == ADD
        assert results[0].get("x").found == "(local.get 0)"
        assert results[0].get("y").found == "(local.get 1)"

    def test_no_match(self):
        ctx, _ = _context("mul", mul="(i32.mul %x% %y%)")
        assert ctx.evaluate(ADD) == []

    def test_includes(self):
        ctx, _ = _context("outer", outer="(call %f% %arg:includes(const)%)", const="(i32.const %n%)")
        results = ctx.evaluate("(call $f (i32.const 3))")
        assert len(results) == 1
        assert results[0].get("n").found == "3"
        assert ctx.evaluate("(call $f (local.get 0))") == []

    def test_not_includes(self):
        ctx, _ = _context("outer", outer="(call %f% %arg:not_includes(const)%)", const="(i32.const %n%)")
        assert ctx.evaluate("(call $f (i32.const 3))") == []
        results = ctx.evaluate("(call $f (local.get 0))")
        assert [r.get("arg").found for r in results] == ["(local.get 0)"]

    def test_includes_all_and_one(self):
        sources = dict(
            c="(i32.const %n%)",
            g="(local.get %i%)",
            all="(i32.add %a:includes_all(c, g)%)",
            one="(i32.add %a:includes_one(c, g)%)",
        )
        templates = {name: parse_template(name, value) for name, value in sources.items()}
        code = "(i32.add (local.get 0) (i32.const 1))"
        assert TemplateContext(templates["one"], templates).evaluate(code)
        assert TemplateContext(templates["all"], templates).evaluate(code)
        assert TemplateContext(templates["all"], templates).evaluate(ADD) == []


class TestValues:

    @pytest.fixture
    def value(self):
        ctx, _ = _context("add", add="(i32.add %x% %y%)")
        return TemplateValue(ctx.evaluate(ADD), ctx.known_variables)

    def test_select(self, value):
        assert value.select("x").found == "(local.get 0)"
        assert keywords.prop(value, "y") == "(local.get 1)"

    def test_unknown_selector(self, value):
        with pytest.raises(ResolutionError, match="invalid selector"):
            value.select("z")

    def test_remove(self, value):
        assert value.remove("x").found == "(i32.add (local.get 1))"
        assert value.found == ADD

    def test_replace_reference(self, value):
        res = value.replace(ReplaceArg("x", True), ReplaceArg("(i32.const 9)", False))
        assert res.found == "(i32.add (i32.const 9) (local.get 1))"

    def test_replace_with_other_placeholder(self, value):
        res = value.replace(ReplaceArg("x", True), ReplaceArg("y", True))
        assert res.found == "(i32.add (local.get 1) (local.get 1))"

    def test_replace_text(self, value):
        res = value.replace(ReplaceArg("local.get", False), ReplaceArg("local.tee", False))
        assert res.found == "(i32.add (local.tee 0) (local.tee 1))"
        assert keywords.to_string(res) == res.found


class TestResults:

    def test_lookup(self):
        ctx, templates = _context("add", add="(i32.add %x% %y%)")
        results = TemplateResults({"add": ctx}, templates, {"add": ctx.evaluate(ADD)})
        assert results.get("add").value == ADD
        assert results.get("y") == "(local.get 1)"
        assert results.get("missing") is None

    def test_empty_results(self):
        ctx, templates = _context("add", add="(i32.add %x% %y%)")
        results = TemplateResults({"add": ctx}, templates, {"add": []})
        assert results.get("add") is None
