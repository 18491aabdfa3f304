# tests/test_context.py
"""
Tests for join-points, the template manager and pointcut contexts.
"""

import pytest

from waspect import search
from waspect.context import (
    JoinPoint,
    PointcutContext,
    TemplateManager,
    filter_search,
)
from waspect.errors import ResolutionError
from waspect.keywords import KeywordStack
from waspect.module import ModuleContext
from waspect.search import JoinPointBlock
from tests.conftest import CALLS_WAT

ADD = "(i32.add (local.get 0) (local.get 1))"


@pytest.fixture
def calls_module():
    return ModuleContext.from_text(CALLS_WAT)


def _call_blocks(ctx, fn_name):
    return search.find_calls(ctx, ctx.function(fn_name).instr, search.accept_all)


class TestJoinPoint:

    def test_duplicates_are_dropped(self, calls_module):
        blocks = _call_blocks(calls_module, "$common")
        jp = JoinPoint(blocks + [blocks[0]])
        assert len(jp) == 2
        assert jp.function_symbol == "$common"
        assert jp.func_definition() is calls_module.function("$common")
        assert jp.instr_string() == "(call $a (i32.const 1)) (call $b)"

    def test_clone_copies_blocks(self, calls_module):
        jp = JoinPoint(_call_blocks(calls_module, "$common"))
        other = jp.clone()
        other.blocks[0].metadata["Extra"] = 1
        assert "Extra" not in jp.blocks[0].metadata
        assert other.blocks[0] == jp.blocks[0]

    def test_empty(self):
        jp = JoinPoint([])
        assert jp.function_symbol == ""
        assert jp.func_definition() is None


class TestTemplateManager:

    @pytest.fixture
    def manager(self):
        return TemplateManager.from_sources({"add": "(i32.add %x% %y%)", "get": "(local.get %n%)"})

    def test_evaluate(self, manager):
        results, pattern = manager.evaluate("add", ADD)
        assert pattern == "(i32.add :[x] :[y])"
        assert [r.found for r in results] == [ADD]
        assert manager.evaluate("add", "") == ([], "")

    def test_unknown_template(self, manager):
        with pytest.raises(ResolutionError, match="template not found"):
            manager.evaluate("nope", ADD)

    def test_results_of_unknown_function(self, manager):
        assert manager.get_results("$f", 0, KeywordStack()) == (None, True)

    def test_results_narrowed_by_keywords(self, manager):
        results, _ = manager.evaluate("get", "(local.get 0)")
        manager.add_results("$f", "get", results)
        found, ok = manager.get_results("$f", 0, KeywordStack())
        assert ok and found.get("n") == "0"
        found, ok = manager.get_results("$f", 0, KeywordStack([{"n": "0"}]))
        assert ok and found.get("get").value == "(local.get 0)"
        assert manager.get_results("$f", 0, KeywordStack([{"n": "9"}])) == (None, False)

    def test_index_past_results_keeps_everything(self, manager):
        results, _ = manager.evaluate("get", "(local.get 0)")
        manager.add_results("$f", "get", results)
        found, ok = manager.get_results("$f", 4, KeywordStack([{"n": "9"}]))
        assert ok and found.get("n") == "0"

    def test_clone_and_merge(self, manager):
        results, _ = manager.evaluate("get", "(local.get 0)")
        manager.add_results("$f", "get", results)
        other = manager.clone()
        other.add_results("$g", "get", results)
        assert "$g" not in manager.results
        assert other.contexts is manager.contexts
        manager.merge(other)
        assert sorted(manager.results) == ["$f", "$g"]

    def test_filter_search_ignores_non_string_keywords(self, manager):
        results, _ = manager.evaluate("get", "(local.get 0)")
        assert filter_search(results, KeywordStack([{"n": ["0"]}])) != []

    def test_filter_search_uses_later_string_keyword(self, manager):
        results, _ = manager.evaluate("get", "(local.get 0)")
        assert filter_search(results, KeywordStack([{"n": {"Name": "x"}}, {"n": "0"}])) != []
        assert filter_search(results, KeywordStack([{"n": ["0"]}, {"n": "9"}])) == []


class TestPointcutContext:

    def test_initial_has_one_join_point_per_function(self, calls_module):
        ctx = PointcutContext.initial(calls_module, TemplateManager({}))
        assert [jp.function_symbol for jp in ctx.join_points] == [
            "$a", "$b", "$common", "$only_a", "$only_b",
        ]

    def test_append_merges_by_function(self, calls_module):
        common = _call_blocks(calls_module, "$common")
        left = PointcutContext(calls_module, [
            JoinPoint([common[0]]), JoinPoint(_call_blocks(calls_module, "$only_a")),
        ], TemplateManager({}))
        right = PointcutContext(calls_module, [
            JoinPoint([JoinPointBlock(calls_module, common[0].block), common[1]]),
            JoinPoint(_call_blocks(calls_module, "$only_b")),
        ], TemplateManager({}))
        merged = left.append(right)
        assert [jp.function_symbol for jp in merged.join_points] == ["$common", "$only_a", "$only_b"]
        assert [b.block for b in merged.join_points[0].blocks] == [common[0].block, common[1].block]
        assert len(left.join_points[0]) == 1

    def test_append_with_empty_side(self, calls_module):
        full = PointcutContext.initial(calls_module, TemplateManager({}))
        empty = full.with_join_points([])
        assert len(empty.append(full).join_points) == 5
        assert len(full.append(empty).join_points) == 5
