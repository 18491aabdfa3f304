# waspect/variables.py
"""
Declared-variable grammar.

Context variables, function variables and advice variables are declared as
``type [= value]``::

    i32
    i64 = 42
    f64 = 1.5
    string = "hello"
    map[i32]
    [] = [1, 2, 3]

Only the numeric value types can be placed in the module; the composite
forms are parsed so that the error message can name them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from parsimonious.exceptions import IncompleteParseError, ParseError
from parsimonious.grammar import Grammar
from parsimonious.nodes import NodeVisitor

from . import lang
from .errors import GrammarError, ModuleMutationError

logger = logging.getLogger(__name__)

SIMPLE_TYPES = frozenset({lang.I32, lang.I64, lang.F32, lang.F64, "string"})


VARIABLE_GRAMMAR = Grammar(r'''
    declaration     = _ type_part+ initializer? _
    type_part       = map_type / array_type / simple_type
    simple_type     = ~r'(i32|i64|f32|f64|string)'
    map_type        = ~r'map\[(i32|i64|f32|f64|string)\]'
    array_type      = "[]"
    initializer     = _ "=" _ value
    value           = string / number / array / empty_array
    array           = "[" _ value (_ "," _ value)* _ "]"
    empty_array     = "[]"
    string          = ~r'"(\\"|[^"])*"'
    number          = ~r'-?(\d*\.)?\d+'
    _               = ~r'\s*'
''')


@dataclass(frozen=True, slots=True)
class Value:
    """Initializer literal.  ``kind`` is ``string``, ``number`` or ``array``."""

    kind: str
    text: str = ""
    items: tuple = ()

    def render(self, nested: bool = False) -> str:
        if self.kind == "string":
            return self.text if nested else self.text.strip('"')
        if self.kind == "number":
            value = _format_number(self.text)
            return "" if value == "0" else value
        if self.kind == "array":
            return "[" + ",".join(item.render(True).strip() for item in self.items) + "]"
        return ""


@dataclass(frozen=True, slots=True)
class Declaration:
    """A parsed ``type [= value]`` declaration."""

    types: tuple
    value: Optional[Value] = None

    @property
    def type(self) -> str:
        return "".join(self.types)

    @property
    def is_primitive(self) -> bool:
        return len(self.types) == 1 and self.types[0] in lang.VALUE_TYPES

    def get_value(self, default: str = "") -> str:
        if self.value is None:
            return default
        return self.value.render()

    def require_primitive(self, what: str) -> str:
        """Value type of a declaration that must live in the module."""
        if not self.is_primitive:
            raise ModuleMutationError(
                f"{what}: host-evaluated composite values are not supported ({self.type})"
            )
        return self.types[0]


def _format_number(text: str) -> str:
    # Same shortest form for 1, 1.0 and 01.
    value = float(text)
    if value.is_integer():
        return str(int(value))
    return repr(value)


class _DeclarationBuilder(NodeVisitor):

    unwrapped_exceptions = (GrammarError,)

    def generic_visit(self, node, visited_children):
        return visited_children or node

    def visit_declaration(self, node, visited_children):
        _, types, initializer, _ = visited_children
        value = None
        if isinstance(initializer, list) and initializer:
            value = initializer[0]
        types = tuple(types)
        for previous in types[:-1]:
            if previous in SIMPLE_TYPES:
                raise GrammarError("simple type cannot have subtypes", node.text, 0)
        return Declaration(types, value)

    def visit_type_part(self, node, visited_children):
        return node.text

    def visit_initializer(self, node, visited_children):
        _, _, _, value = visited_children
        return value

    def visit_value(self, node, visited_children):
        return visited_children[0]

    def visit_string(self, node, visited_children):
        return Value("string", node.text)

    def visit_number(self, node, visited_children):
        return Value("number", node.text)

    def visit_empty_array(self, node, visited_children):
        return Value("array")

    def visit_array(self, node, visited_children):
        _, _, first, rest, _, _ = visited_children
        items: List[Value] = [first]
        if isinstance(rest, list):
            for part in rest:
                items.append(part[3])
        return Value("array", node.text, tuple(items))


def parse(text: str) -> Declaration:
    """Parse a declaration; raises :class:`GrammarError` on bad input."""
    try:
        tree = VARIABLE_GRAMMAR.parse(text)
    except (ParseError, IncompleteParseError) as exc:
        raise GrammarError("invalid variable declaration", text, exc.pos) from exc
    return _DeclarationBuilder().visit(tree)
