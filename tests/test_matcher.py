# tests/test_matcher.py
"""
Tests for the structural hole matcher.
"""

import pytest

from waspect import matcher


def _env(match):
    return {e.variable: e.value for e in match.environment}


class TestClearString:

    @pytest.mark.parametrize("raw,clean", [
        ("  ( i32.add   (local.get 0) ;; c\n )  ", "(i32.add (local.get 0))"),
        ("(nop) (; block ;) (nop)", "(nop)(nop)"),
        ("(call $f\n\t(i32.const 1))", "(call $f (i32.const 1))"),
    ])
    def test_clear_string(self, raw, clean):
        assert matcher.clear_string(raw) == clean


class TestCompile:

    def test_tokens(self):
        assert matcher.compile_pattern("(call :[f]  :[_])") == [
            ("literal", "(call"), ("space", " "), ("hole", "f"),
            ("space", " "), ("hole", "_"), ("literal", ")"),
        ]


class TestExecute:

    def test_single_hole_takes_the_group(self):
        text = "(i32.add (local.get 0) (i32.const 1))"
        matches = matcher.execute(":[x]", text)
        assert len(matches) == 1
        assert _env(matches[0]) == {"x": text}

    def test_holes_bind_balanced_text(self):
        matches = matcher.execute("(i32.add :[a] :[b])", "(i32.add (local.get 0) (local.get 1))")
        assert len(matches) == 1
        assert _env(matches[0]) == {"a": "(local.get 0)", "b": "(local.get 1)"}

    def test_matches_do_not_overlap(self):
        matches = matcher.execute("(local.get :[n])", "(i32.add (local.get 0) (local.get 1))")
        assert [m.matched for m in matches] == ["(local.get 0)", "(local.get 1)"]
        assert [_env(m)["n"] for m in matches] == ["0", "1"]

    def test_repeated_hole_must_bind_same_text(self):
        assert matcher.execute("(i32.add :[a] :[a])", "(i32.add (local.get 0) (local.get 0))")
        assert matcher.execute("(i32.add :[a] :[a])", "(i32.add (local.get 0) (local.get 1))") == []

    def test_anonymous_hole_never_binds(self):
        matches = matcher.execute("(call :[_])", "(call $f)")
        assert len(matches) == 1
        assert matches[0].environment == []

    def test_trailing_hole_runs_to_end_of_group(self):
        matches = matcher.execute("(call $f :[rest]", "(call $f (i32.const 1) (i32.const 2))")
        assert _env(matches[0]) == {"rest": "(i32.const 1) (i32.const 2)"}

    def test_strings_are_atomic(self):
        matches = matcher.execute("(data :[s])", '(data ")")')
        assert _env(matches[0]) == {"s": '")"'}

    def test_whitespace_is_flexible(self):
        assert matcher.execute("(nop) (nop)", "(nop)\n   (nop)")

    @pytest.mark.parametrize("pattern,text,count", [
        ("5", "5", 1),
        ("5", "15", 0),
        ("", "(nop)", 0),
        ("(drop)", "(nop)", 0),
    ])
    def test_edge_patterns(self, pattern, text, count):
        assert len(matcher.execute(pattern, text)) == count
