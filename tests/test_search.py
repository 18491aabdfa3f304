# tests/test_search.py
"""
Tests for join-point blocks, module searches and block set operations.
"""

import logging

import pytest

from waspect import search
from waspect.module import ModuleContext
from waspect.search import JoinPointBlock
from waspect.wat import Instruction
from tests.conftest import ARGS_WAT, CALLS_WAT, RETURNS_WAT, TEMPLATE_WAT


SMART_WAT = '''
(module
  (func $f (result i32)
    (i32.add (call $g) (i32.const 1)))
  (func $g (result i32)
    (i32.const 2)))
'''


def _fn_node(ctx, name):
    return ctx.function(name).instr


def _calls(ctx, name):
    return [n for n in _fn_node(ctx, name).walk() if isinstance(n, Instruction) and n.name == "call"]


class TestRecords:

    def test_func_data(self):
        ctx = ModuleContext.from_text(ARGS_WAT)
        data = search.func_data(ctx, ctx.function("$caller"))
        assert data.index == "$caller"
        assert data.name == "caller"
        assert data.order == 1
        assert data.params == ["$x", "$z"]
        assert data.param_types == ["i32", "i32"]
        assert data.locals == ["$y", "$w"]
        assert data.total_locals == 2
        assert data.result_type == ""
        assert not data.is_exported and not data.is_imported

    def test_function_name_prefers_export_name(self):
        ctx = ModuleContext.from_text(
            '(module (import "env" "log" (func $log (param i32))) (func $main (export "run")))'
        )
        assert search.function_name(ctx.function("$main")) == "run"
        assert search.function_name(ctx.function("$log")) == "env.log"

    def test_call_data(self):
        ctx = ModuleContext.from_text(CALLS_WAT)
        call = _calls(ctx, "$only_a")[0]
        data = search.call_data(ctx, call, ctx.function("$a"))
        assert data.callee.index == "$a"
        assert data.caller.index == "$only_a"
        assert data.total_args == 1
        assert data.args[0].type == "i32"
        assert data.args[0].instr == "(i32.const 2)"


class TestFinders:

    def test_init_search_one_block_per_defined_function(self):
        ctx = ModuleContext.from_text(
            '(module (import "env" "log" (func $log (param i32))) (func $a) (func $b))'
        )
        blocks = search.init_search(ctx)
        assert [b.function_symbol for b in blocks] == ["$a", "$b"]
        assert all(b.metadata["Func"].index == b.function_symbol for b in blocks)

    def test_find_functions_with_predicate(self):
        ctx = ModuleContext.from_text(CALLS_WAT)
        blocks = search.find_functions(
            ctx, ctx.module, lambda c, data: ({"name": data.name}, data.name.startswith("only"))
        )
        assert [b.function_symbol for b in blocks] == ["$only_a", "$only_b"]
        assert blocks[0].get("name") == "only_a"

    def test_find_calls(self):
        ctx = ModuleContext.from_text(CALLS_WAT)
        blocks = search.find_calls(ctx, ctx.module, search.accept_all)
        assert [b.function_symbol for b in blocks] == ["$common", "$common", "$only_a", "$only_b"]
        assert blocks[0].get("call").callee.index == "$a"

    def test_find_args_requires_variable_reads(self):
        ctx = ModuleContext.from_text(ARGS_WAT)
        blocks = search.find_args(ctx, ctx.module, search.accept_all)
        assert [b.block.render() for b in blocks] == [
            "(call $target (local.get $x) (local.get $y))",
            "(call $target (local.get $y) (local.get $x))",
            "(call $target (local.get $z) (local.get $y))",
        ]

    def test_find_returns_uses_last_expression(self):
        ctx = ModuleContext.from_text(RETURNS_WAT)
        blocks = search.find_returns(ctx, _fn_node(ctx, "$value"), search.accept_all)
        assert len(blocks) == 1
        assert blocks[0].block.render() == "(local.get 0)"
        assert blocks[0].get("returns").type == "i32"

    def test_find_returns_defers_implicit_return(self):
        ctx = ModuleContext.from_text(RETURNS_WAT)
        blocks = search.find_returns(ctx, _fn_node(ctx, "$effect"), search.accept_all)
        assert len(blocks) == 1
        assert blocks[0].block.render() == "(return)"
        assert blocks[0].block.parent is None
        assert blocks[0].function_symbol == "$effect"
        assert ctx.function("$effect").code() == "(drop (local.get 0))"

        blocks[0].attach()
        blocks[0].attach()
        assert ctx.function("$effect").code() == "(drop (local.get 0)) (return)"

    def test_find_returns_reuses_pending_implicit_return(self):
        ctx = ModuleContext.from_text(RETURNS_WAT)
        first = search.find_returns(ctx, _fn_node(ctx, "$effect"), search.accept_all)
        second = search.find_returns(ctx, _fn_node(ctx, "$effect"), search.accept_all)
        assert first[0] == second[0]

    def test_find_returns_leaves_rejected_functions_alone(self):
        ctx = ModuleContext.from_text(RETURNS_WAT)
        before = ctx.render()
        blocks = search.find_returns(
            ctx, ctx.module, lambda c, data: ({}, data.type == "i32")
        )
        assert [b.function_symbol for b in blocks] == ["$value"]
        assert ctx.render() == before

    def test_find_instructions_continues_among_siblings(self):
        ctx = ModuleContext.from_text(TEMPLATE_WAT)
        blocks = search.find_instructions(ctx, _fn_node(ctx, "$sum"), "(local.get 0) (local.get 1)")
        assert [b.block.render() for b in blocks] == ["(local.get 0)", "(local.get 1)"]
        assert blocks[0].block.parent is blocks[1].block.parent

    def test_find_instructions_no_match(self):
        ctx = ModuleContext.from_text(TEMPLATE_WAT)
        assert search.find_instructions(ctx, _fn_node(ctx, "$sum"), "(i32.const 9)") == []

    def test_find_instructions_skips_claimed_nodes(self):
        ctx = ModuleContext.from_text(
            "(module (func $f (param i32) (param i32) (result i32)"
            " (i32.mul (i32.add (local.get 0) (local.get 1)) (i32.add (local.get 0) (local.get 1)))))"
        )
        claimed = set()
        first = search.find_instructions(ctx, _fn_node(ctx, "$f"), "(i32.add (local.get 0) (local.get 1))", claimed)
        second = search.find_instructions(ctx, _fn_node(ctx, "$f"), "(i32.add (local.get 0) (local.get 1))", claimed)
        assert len(first) == 1 and len(second) == 1
        assert first[0].block is not second[0].block
        assert first[0].block.parent is second[0].block.parent

    def test_find_instructions_pairs_are_disjoint(self):
        ctx = ModuleContext.from_text(
            "(module (func $f (drop (i32.const 1)) (drop (i32.const 1)) (drop (i32.const 1)) (drop (i32.const 1))))"
        )
        root = _fn_node(ctx, "$f")
        claimed = set()
        pairs = [search.find_instructions(ctx, root, "(drop (i32.const 1)) (drop (i32.const 1))", claimed)
                 for _ in range(2)]
        nodes = [b.block for pair in pairs for b in pair]
        assert len(nodes) == 4
        assert len({id(n) for n in nodes}) == 4
        indices = [nodes[0].parent.child_index(n) for n in nodes]
        assert indices == sorted(indices)

    def test_find_instructions_later_instructions_follow_the_first(self):
        ctx = ModuleContext.from_text(
            "(module (func $f (drop (i32.const 2)) (drop (i32.const 1)) (drop (i32.const 2))))"
        )
        blocks = search.find_instructions(ctx, _fn_node(ctx, "$f"), "(drop (i32.const 1)) (drop (i32.const 2))")
        parent = blocks[0].block.parent
        assert [b.block.render() for b in blocks] == ["(drop (i32.const 1))", "(drop (i32.const 2))"]
        assert parent.child_index(blocks[1].block) == parent.child_index(blocks[0].block) + 1


class TestBlocks:

    def test_equality_is_node_identity(self):
        ctx = ModuleContext.from_text(CALLS_WAT)
        call = _calls(ctx, "$only_a")[0]
        clone = call.clone()
        _fn_node(ctx, "$only_a").append(clone)
        assert JoinPointBlock(ctx, call) == JoinPointBlock(ctx, call)
        assert JoinPointBlock(ctx, call) != JoinPointBlock(ctx, clone)

    def test_environment_keys_are_capitalized(self):
        ctx = ModuleContext.from_text(CALLS_WAT)
        block = JoinPointBlock(ctx, _calls(ctx, "$only_a")[0], {"Call": 1}, {"fn": "a"})
        assert block.environment == {"Fn": "a"}
        assert block.get("fn") == "a"
        assert block.get("call") == 1

    def test_join_keeps_own_values_first(self):
        ctx = ModuleContext.from_text(CALLS_WAT)
        node = _calls(ctx, "$only_a")[0]
        left = JoinPointBlock(ctx, node, {"Call": "left"}, {"x": 1})
        right = JoinPointBlock(ctx, node, {"Call": "right", "Func": "f"}, {"x": 2, "y": 3})
        left.join(right)
        assert left.metadata == {"Call": "left", "Func": "f"}
        assert left.environment == {"X": 1, "Y": 3}

    def test_function_block_string_is_its_body(self):
        ctx = ModuleContext.from_text(CALLS_WAT)
        block = JoinPointBlock(ctx, _fn_node(ctx, "$only_a"))
        assert block.instr_string() == "(call $a (i32.const 2))"

    def test_func_definition(self):
        ctx = ModuleContext.from_text(CALLS_WAT)
        block = JoinPointBlock(ctx, _calls(ctx, "$only_b")[0])
        assert block.func_definition() is ctx.function("$only_b")
        assert block.depth == 1


class TestApply:

    def test_function_block_replaces_body(self):
        ctx = ModuleContext.from_text(CALLS_WAT)
        block = JoinPointBlock(ctx, _fn_node(ctx, "$b"))
        block.apply("(nop) (i32.const 3)")
        assert _fn_node(ctx, "$b").render() == "(func $b (result i32) (nop) (i32.const 3))"

    def test_single_instruction_replaces_node(self):
        ctx = ModuleContext.from_text(SMART_WAT)
        block = JoinPointBlock(ctx, _calls(ctx, "$f")[0])
        block.apply("(i32.const 9)")
        assert ctx.function("$f").code() == "(i32.add (i32.const 9) (i32.const 1))"

    def test_target_wrappers_are_removed(self):
        ctx = ModuleContext.from_text(SMART_WAT)
        block = JoinPointBlock(ctx, _calls(ctx, "$f")[0])
        block.apply("(target (call $g))")
        assert ctx.function("$f").code() == "(i32.add (call $g) (i32.const 1))"

    def test_plain_mode_warns_on_typed_operand(self, caplog):
        ctx = ModuleContext.from_text(SMART_WAT)
        block = JoinPointBlock(ctx, _calls(ctx, "$f")[0])
        with caplog.at_level(logging.WARNING, logger="waspect.search"):
            block.apply("(nop) (call $g)")
        assert "requires a result type i32" in caplog.text
        assert ctx.function("$f").code() == "(i32.add (nop) (call $g) (i32.const 1))"

    @pytest.mark.parametrize("code", ["(nop) (target (call $g))", "(nop) (call $g)"])
    def test_smart_mode_hoists_through_a_local(self, code):
        ctx = ModuleContext.from_text(SMART_WAT)
        block = JoinPointBlock(ctx, _calls(ctx, "$f")[0])
        block.apply(code, smart=True)
        fn = ctx.function("$f")
        assert fn.locals_list()[0].name == "$wmr_l0"
        assert fn.code() == (
            "(nop) (local.set $wmr_l0 (call $g)) "
            "(i32.add (local.get $wmr_l0) (i32.const 1))"
        )

    def test_smart_mode_on_statement_is_plain(self):
        ctx = ModuleContext.from_text(ARGS_WAT)
        block = JoinPointBlock(ctx, _calls(ctx, "$caller")[0])
        block.apply("(nop) (target (call $target (local.get $x) (local.get $y)))", smart=True)
        assert ctx.function("$caller").code().startswith(
            "(nop) (call $target (local.get $x) (local.get $y)) (call $target (local.get $y)"
        )
        assert ctx.function("$caller").locals_list()[-1].name == "$w"

    def test_extent_replaces_the_whole_run(self):
        ctx = ModuleContext.from_text(TEMPLATE_WAT)
        blocks = search.find_instructions(ctx, _fn_node(ctx, "$sum"), "(local.get 0) (local.get 1)")
        merged = search.rearrange_blocks(blocks, 2)
        assert len(merged) == 1
        merged[0].apply("(i32.const 4)")
        assert ctx.function("$sum").code() == "(i32.add (i32.const 4))"


class TestSetOperations:

    def test_remove_duplicates_keeps_first(self):
        ctx = ModuleContext.from_text(CALLS_WAT)
        node = _calls(ctx, "$only_a")[0]
        first = JoinPointBlock(ctx, node, {"Call": 1})
        second = JoinPointBlock(ctx, node, {"Call": 2})
        kept, dup = search.remove_duplicates([first, second])
        assert dup is True
        assert kept == [first] and kept[0].metadata == {"Call": 1}

    def test_union_merges_bindings(self):
        ctx = ModuleContext.from_text(CALLS_WAT)
        calls = _calls(ctx, "$common")
        a = [JoinPointBlock(ctx, calls[0], {"Call": "a"})]
        b = [JoinPointBlock(ctx, calls[0], {"Args": "b"}), JoinPointBlock(ctx, calls[1])]
        merged = search.union(a, b)
        assert [blk.block for blk in merged] == calls
        assert merged[0].metadata == {"Call": "a", "Args": "b"}

    def test_rearrange_groups_adjacent_siblings(self):
        ctx = ModuleContext.from_text("(module (func $f (nop) (nop) (nop) (drop (i32.const 1)) (nop)))")
        body = ctx.function("$f").body()
        blocks = [JoinPointBlock(ctx, n) for n in (body[0], body[1], body[2], body[4])]
        res = search.rearrange_blocks(blocks, 2)
        assert [(b.block is body[i], b.extent) for b, i in zip(res, (0, 2, 4))] == [
            (True, 2), (True, 1), (True, 1),
        ]

    @pytest.mark.parametrize("code,count", [
        ("", 0),
        ("(nop)", 1),
        ("(i32.add (local.get 0) (i32.const 1)) (drop)", 2),
    ])
    def test_count_instructions(self, code, count):
        assert search.count_instructions(code) == count
