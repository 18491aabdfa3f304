# waspect/generator.py
"""
Code generation for items the weaver adds to a module, and the JavaScript
glue that instantiates the woven module.

Every symbol the engine invents carries the :data:`CODE_INDEX_PREFIX` so it
can never collide with names produced by ``wasm2wat --generate-names``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from io import StringIO
from typing import Any, List, Optional, Sequence

logger = logging.getLogger(__name__)

__all__ = [
    "CODE_INDEX_PREFIX",
    "CodeEmitter",
    "GlueFunction",
    "generate_glue",
    "global_code",
    "type_code",
    "function_code",
    "import_function_code",
    "export_function_code",
    "start_code",
    "local_code",
    "set_local_code",
    "set_local_instruction_code",
    "get_variable_code",
]

CODE_INDEX_PREFIX = "wmr_"


def symbol(kind: str, index: int) -> str:
    """``$wmr_<kind><index>``; *kind* is one of ``g f l t``."""
    return f"${CODE_INDEX_PREFIX}{kind}{index}"


# ═══════════════════════════════════════════════════════════════════════════
# MODULE ITEMS
# ═══════════════════════════════════════════════════════════════════════════

def global_code(name: str, typ: str, value: str = "") -> str:
    return f"(global {name} (mut {typ}) ({typ}.const {value or '0'}))"


def type_code(name: str, params: Sequence[str], result: str = "") -> str:
    parts = [f"(type {name} (func"]
    if params:
        parts.append(" (param " + " ".join(params) + ")")
    if result:
        parts.append(f" (result {result})")
    parts.append("))")
    return "".join(parts)


def function_code(
    name: str,
    type_name: str,
    params: Sequence[tuple],
    result: str,
    code: str,
) -> str:
    """Function definition; *params* holds ``(name, type)`` pairs, names
    without the ``$`` sigil."""
    header = [f"(func {name} (type {type_name})"]
    header += [f"(param ${pname} {ptype})" for pname, ptype in params]
    if result:
        header.append(f"(result {result})")
    return " ".join(header) + "\n  " + code.strip() + "\n)"


def import_function_code(name: str, type_name: str, module: str, field_name: str) -> str:
    return f'(import "{module}" "{field_name}" (func {name} (type {type_name})))'


def export_function_code(name: str, export_name: str) -> str:
    return f'(export "{export_name}" (func {name}))'


def start_code(name: str) -> str:
    return f"(start {name})"


def local_code(name: str, typ: str) -> str:
    return f"(local {name} {typ})"


def set_local_code(name: str, typ: str, value: str) -> str:
    return f"(local.set {name} ({typ}.const {value}))"


def set_local_instruction_code(name: str, instruction: str) -> str:
    return f"(local.set {name} {instruction})"


def get_variable_code(name: str, is_local: bool) -> str:
    if is_local:
        return f"(local.get {name})"
    return f"(global.get {name})"


# ═══════════════════════════════════════════════════════════════════════════
# CODE EMITTER
# ═══════════════════════════════════════════════════════════════════════════

class CodeEmitter:
    """Line-oriented emission with indentation management."""

    def __init__(self, indent_str: str = "  ") -> None:
        self._buffer = StringIO()
        self._indent_str = indent_str
        self._indent_level = 0

    def emit(self, code: str) -> None:
        if code.strip():
            self._buffer.write(self._indent_str * self._indent_level)
            self._buffer.write(code)
        self._buffer.write("\n")

    def emit_blank(self) -> None:
        self._buffer.write("\n")

    def indent(self) -> None:
        self._indent_level += 1

    def dedent(self) -> None:
        self._indent_level = max(0, self._indent_level - 1)

    def block(self, header: str, footer: str = "}") -> "CodeEmitter._BlockContext":
        return self._BlockContext(self, header, footer)

    class _BlockContext:

        def __init__(self, emitter: "CodeEmitter", header: str, footer: str) -> None:
            self._emitter = emitter
            self._header = header
            self._footer = footer

        def __enter__(self) -> "CodeEmitter":
            self._emitter.emit(self._header)
            self._emitter.indent()
            return self._emitter

        def __exit__(self, *args: Any) -> None:
            self._emitter.dedent()
            self._emitter.emit(self._footer)

    def get_code(self) -> str:
        return self._buffer.getvalue()


# ═══════════════════════════════════════════════════════════════════════════
# JAVASCRIPT GLUE
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(slots=True)
class GlueFunction:
    """A user-declared function that crosses the host boundary."""

    name: str
    imported: bool
    module: str = ""
    field_name: str = ""
    export_name: str = ""
    params: List[str] = field(default_factory=list)
    result: str = ""


def generate_glue(functions: Sequence[GlueFunction], force: bool = False) -> Optional[str]:
    """ES module wiring the declared imports and exports.

    Returns ``None`` when there is nothing to wire, unless *force* is set.
    """
    imports = [fn for fn in functions if fn.imported]
    exports = [fn for fn in functions if not fn.imported and fn.export_name]
    if not imports and not exports and not force:
        return None

    out = CodeEmitter()
    out.emit("// Generated by waspect.")
    out.emit("const declaredImports = [")
    out.indent()
    for fn in imports:
        out.emit(
            "{ module: %s, field: %s, params: %s, result: %s },"
            % (json.dumps(fn.module), json.dumps(fn.field_name), json.dumps(fn.params),
               json.dumps(fn.result or None))
        )
    out.dedent()
    out.emit("];")
    out.emit("const declaredExports = %s;" % json.dumps([fn.export_name for fn in exports]))
    out.emit_blank()
    with out.block("function resolveImports(imports) {"):
        out.emit("const resolved = Object.assign({}, imports);")
        with out.block("for (const decl of declaredImports) {"):
            out.emit("const scope = resolved[decl.module] = Object.assign({}, resolved[decl.module]);")
            with out.block("if (typeof scope[decl.field] !== 'function') {"):
                out.emit("throw new Error(`missing import ${decl.module}.${decl.field}`);")
        out.emit("return resolved;")
    out.emit_blank()
    with out.block("export async function instantiate(source, imports = {}) {"):
        out.emit("const { instance } = await WebAssembly.instantiate(source, resolveImports(imports));")
        out.emit("const exports = {};")
        with out.block("for (const name of declaredExports) {"):
            out.emit("exports[name] = instance.exports[name];")
        out.emit("return { instance, exports };")
    logger.debug("glue: %d imports, %d exports", len(imports), len(exports))
    return out.get_code()
