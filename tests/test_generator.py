# tests/test_generator.py
"""
Tests for generated module items and the JavaScript glue.
"""

import pytest

from waspect import generator, wat
from waspect.generator import GlueFunction


class TestItems:

    def test_symbol(self):
        assert generator.symbol("g", 3) == "$wmr_g3"

    @pytest.mark.parametrize("code,expected", [
        (generator.global_code("$g", "i32"), "(global $g (mut i32) (i32.const 0))"),
        (generator.global_code("$g", "f64", "1.5"), "(global $g (mut f64) (f64.const 1.5))"),
        (generator.type_code("$t", ["i32", "i64"], "f32"),
         "(type $t (func (param i32 i64) (result f32)))"),
        (generator.type_code("$t", []), "(type $t (func))"),
        (generator.import_function_code("$f", "$t", "env", "log"),
         '(import "env" "log" (func $f (type $t)))'),
        (generator.export_function_code("$f", "run"), '(export "run" (func $f))'),
        (generator.start_code("$f"), "(start $f)"),
        (generator.local_code("$l", "i32"), "(local $l i32)"),
        (generator.set_local_code("$l", "i32", "4"), "(local.set $l (i32.const 4))"),
        (generator.get_variable_code("$l", True), "(local.get $l)"),
        (generator.get_variable_code("$g", False), "(global.get $g)"),
    ])
    def test_item_code(self, code, expected):
        assert code == expected

    def test_function_code_parses(self):
        code = generator.function_code("$f", "$t", [("a", "i32")], "i32", "  (local.get $a)  ")
        nodes = wat.parse_code(code)
        assert len(nodes) == 1
        assert nodes[0].render() == "(func $f (type $t) (param $a i32) (result i32) (local.get $a))"


class TestEmitter:

    def test_blocks_indent(self):
        out = generator.CodeEmitter()
        with out.block("f() {"):
            out.emit("x;")
        out.emit("")
        assert out.get_code() == "f() {\n  x;\n}\n\n"

    def test_dedent_never_goes_negative(self):
        out = generator.CodeEmitter()
        out.dedent()
        out.emit("a")
        assert out.get_code() == "a\n"


class TestGlue:

    def test_nothing_to_wire(self):
        assert generator.generate_glue([]) is None
        assert generator.generate_glue([GlueFunction("$f", imported=False)]) is None

    def test_forced_glue(self):
        glue = generator.generate_glue([], force=True)
        assert "const declaredImports = [" in glue
        assert "const declaredExports = [];" in glue

    def test_imports_and_exports(self):
        glue = generator.generate_glue([
            GlueFunction("$wmr_f3", imported=True, module="env", field_name="log", params=["i32"]),
            GlueFunction("$wmr_f4", imported=False, export_name="bump", params=["i32"], result="i32"),
        ])
        assert '{ module: "env", field: "log", params: ["i32"], result: null },' in glue
        assert 'const declaredExports = ["bump"];' in glue
        assert "export async function instantiate(source, imports = {}) {" in glue
