# waspect/grammar.py
"""
Pointcut grammar.

Two forms share one instruction language::

    (i32.param[0] counter, local[$tmp] aux) => func(* %fn% (..), exported) && args(counter)
    (i32 counter) => call(i32 $log (i32)) || template(loop_body, true)

The first (*with context*) binds join-point parameters to concrete
function params/locals; it is the form of an advice pointcut.  The second
(*without context*) only declares typed names and is the form of a
reusable pointcut listed under ``pointcuts`` in the transformation.

Methods are combined by ``&&`` (tighter) and ``||``, both
left-associative, and grouped with parentheses.

A bare name is short for any result and any parameters:
``call($log)`` reads as ``call(* $log (..))``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Pattern, Union

from parsimonious.exceptions import ParseError, VisitationError
from parsimonious.grammar import Grammar
from parsimonious.nodes import NodeVisitor

from . import lang
from .errors import GrammarError

logger = logging.getLogger(__name__)

AND = "&&"
OR = "||"

ANY_INDEX = ""


# ── Enums ────────────────────────────────────────────────────────

class FunctionScope(Enum):
    ANY = "any"
    INTERNAL = "internal"
    IMPORTED = "imported"
    EXPORTED = "exported"
    START = "start"


# ═══════════════════════════════════════════════════════════════════════════
# AST
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(slots=True)
class ContextArgument:
    """``[type "."] (param|local) "[" index "]" name``.

    ``index`` is a number, a ``$symbol``, a user alias, or
    :data:`ANY_INDEX` for ``?``.
    """
    name: str
    variable: str
    index: str
    type: str = ""


@dataclass(slots=True)
class PlainArgument:
    name: str
    type: str = ""


@dataclass(slots=True)
class FunctionName:
    """Selector for the name part of a function definition.

    At most one of ``name``/``symbol``/``index``/``regex`` is set; none
    means any function.  ``variable`` binds the matched name.
    """
    variable: Optional[str] = None
    name: Optional[str] = None
    symbol: Optional[str] = None
    index: Optional[int] = None
    regex: Optional[Pattern[str]] = None


@dataclass(slots=True)
class FunctionParam:
    type: Optional[str] = None
    variable: Optional[str] = None


@dataclass(slots=True)
class FuncDefinition:
    """``result name (params) [, scope]``.

    ``result`` is ``None`` for ``*`` and ``""`` for ``void``.
    ``params`` is ``None`` for ``..``.
    """
    result: Optional[str] = None
    result_variable: Optional[str] = None
    name: FunctionName = field(default_factory=FunctionName)
    params: Optional[List[FunctionParam]] = field(default_factory=list)
    scope: FunctionScope = FunctionScope.ANY


@dataclass(slots=True)
class FuncMethod:
    definition: FuncDefinition


@dataclass(slots=True)
class CallMethod:
    definition: FuncDefinition


@dataclass(slots=True)
class ArgsMethod:
    names: List[str] = field(default_factory=list)


@dataclass(slots=True)
class ReturnsMethod:
    """``type`` is ``None`` for ``*`` and ``""`` for ``void``."""
    type: Optional[str] = None


@dataclass(slots=True)
class TemplateMethod:
    name: str
    just_check: bool = False


@dataclass(slots=True)
class UserMethod:
    name: str
    arguments: List[str] = field(default_factory=list)


Method = Union[FuncMethod, CallMethod, ArgsMethod, ReturnsMethod, TemplateMethod, UserMethod]


@dataclass(slots=True)
class Operation:
    op: str
    left: "Instr"
    right: "Instr"


Instr = Union[Method, Operation]


@dataclass(slots=True)
class PointcutExpression:
    arguments: List[Union[ContextArgument, PlainArgument]]
    body: Instr


# ═══════════════════════════════════════════════════════════════════════════
# GRAMMAR
# ═══════════════════════════════════════════════════════════════════════════

_COMMON_RULES = r'''
    instrs          = and_expr (ws "||" ws and_expr)*
    and_expr        = atom (ws "&&" ws atom)*
    atom            = group / method
    group           = "(" ws instrs ws ")"
    method          = func_method / call_method / args_method / returns_method
                    / template_method / user_method

    func_method     = "func" ws "(" ws fdef ws ")"
    call_method     = "call" ws "(" ws fdef ws ")"
    args_method     = "args" ws "(" ws names? ws ")"
    returns_method  = "returns" ws "(" ws return_value ws ")"
    template_method = "template" ws "(" ws identifier just_check? ws ")"
    just_check      = ws "," ws boolean
    user_method     = !builtin_method identifier ws "(" ws names? ws ")"
    builtin_method  = ~r"(func|call|args|returns|template)\b"
    names           = identifier (ws "," ws identifier)*
    return_value    = any / void / wasm_type

    fdef            = full_fdef / short_fdef
    full_fdef       = fresult ws fname ws "(" ws fparams? ws ")" fscope?
    short_fdef      = fname fscope?
    fresult         = any / void / wasm_type / typed_variable / variable
    typed_variable  = "%" identifier ":" wasm_type "%"
    variable        = "%" identifier "%"
    fname           = any / regex / symbol / ordinal / refined_variable / identifier
    refined_variable = "%" identifier refinement? "%"
    refinement      = ":" (regex / symbol / ordinal / identifier)
    ordinal         = "[" ws number ws "]"
    fparams         = any_params / param_list
    any_params      = ".."
    param_list      = fparam (ws "," ws fparam)*
    fparam          = param_type param_name?
    param_type      = any / wasm_type
    param_name      = ws (any / variable)
    fscope          = ws "," ws scope

    scope           = "imported" / "exported" / "internal" / "start"
    boolean         = "true" / "false"
    any             = "*"
    void            = "void"
    wasm_type       = ~r"(i32|i64|f32|f64)\b"
    symbol          = ~r"\$[a-zA-Z][\w]*"
    regex           = ~r"/((?:\\/|[^/])*)/"
    number          = ~r"\d+"
    identifier      = ~r"[a-zA-Z][\w]*"
    ws              = ~r"\s*"
'''

POINTCUT_GRAMMAR = Grammar(r'''
    pointcut        = ws "(" ws context_args? ws ")" ws "=>" ws instrs ws
    context_args    = context_arg (ws "," ws context_arg)*
    context_arg     = arg_type? locality ws "[" ws arg_index ws "]" ws identifier
    arg_type        = wasm_type ws "." ws
    locality        = "param" / "local"
    arg_index       = symbol / number / identifier / "?"
''' + _COMMON_RULES)

PLAIN_POINTCUT_GRAMMAR = Grammar(r'''
    pointcut        = ws "(" ws plain_args? ws ")" ws "=>" ws instrs ws
    plain_args      = plain_arg (ws "," ws plain_arg)*
    plain_arg       = plain_type? identifier
    plain_type      = wasm_type ws
''' + _COMMON_RULES)


def _optional(value):
    """Unwrap a visited ``x?``: the value or ``None``."""
    if isinstance(value, list):
        return value[0]
    return None


def _repeated(value) -> list:
    return value if isinstance(value, list) else []


class PointcutBuilder(NodeVisitor):
    """Parse tree → :class:`PointcutExpression`."""

    unwrapped_exceptions = (GrammarError,)

    def generic_visit(self, node, visited_children):
        return visited_children or node

    def visit_pointcut(self, node, visited_children):
        _, _, _, args, _, _, _, _, _, body, _ = visited_children
        return PointcutExpression(_optional(args) or [], body)

    # ── arguments ────────────────────────────────────────────────────

    def visit_context_args(self, node, visited_children):
        first, rest = visited_children
        return [first] + [arg for _, _, _, arg in _repeated(rest)]

    visit_plain_args = visit_context_args

    def visit_context_arg(self, node, visited_children):
        typ, locality, _, _, _, index, _, _, _, name = visited_children
        return ContextArgument(name=name, variable=locality, index=index, type=_optional(typ) or "")

    def visit_arg_type(self, node, visited_children):
        return visited_children[0]

    def visit_locality(self, node, visited_children):
        return node.text

    def visit_arg_index(self, node, visited_children):
        return ANY_INDEX if node.text == "?" else node.text

    def visit_plain_arg(self, node, visited_children):
        typ, name = visited_children
        return PlainArgument(name=name, type=_optional(typ) or "")

    def visit_plain_type(self, node, visited_children):
        return visited_children[0]

    # ── boolean structure ────────────────────────────────────────────

    def visit_instrs(self, node, visited_children):
        first, rest = visited_children
        result = first
        for _, op, _, right in _repeated(rest):
            result = Operation(op.text, result, right)
        return result

    visit_and_expr = visit_instrs

    def visit_atom(self, node, visited_children):
        return visited_children[0]

    def visit_group(self, node, visited_children):
        _, _, instrs, _, _ = visited_children
        return instrs

    def visit_method(self, node, visited_children):
        return visited_children[0]

    # ── methods ──────────────────────────────────────────────────────

    def visit_func_method(self, node, visited_children):
        return FuncMethod(visited_children[4])

    def visit_call_method(self, node, visited_children):
        return CallMethod(visited_children[4])

    def visit_args_method(self, node, visited_children):
        return ArgsMethod(_optional(visited_children[4]) or [])

    def visit_returns_method(self, node, visited_children):
        value = visited_children[4]
        return ReturnsMethod(None if value == lang.ANY else value)

    def visit_template_method(self, node, visited_children):
        _, _, _, _, name, just_check, _, _ = visited_children
        return TemplateMethod(name, bool(_optional(just_check)))

    def visit_just_check(self, node, visited_children):
        return visited_children[3]

    def visit_user_method(self, node, visited_children):
        _, name, _, _, _, args, _, _ = visited_children
        return UserMethod(name, _optional(args) or [])

    def visit_names(self, node, visited_children):
        first, rest = visited_children
        return [first] + [name for _, _, _, name in _repeated(rest)]

    def visit_return_value(self, node, visited_children):
        return visited_children[0]

    # ── function definitions ─────────────────────────────────────────

    def visit_fdef(self, node, visited_children):
        return visited_children[0]

    def visit_short_fdef(self, node, visited_children):
        name, scope = visited_children
        return FuncDefinition(result=None, name=name, params=None, scope=_optional(scope) or FunctionScope.ANY)

    def visit_full_fdef(self, node, visited_children):
        (result, result_variable), _, name, _, _, _, params, _, _, scope = visited_children
        params = _optional(params)
        return FuncDefinition(
            result=result,
            result_variable=result_variable,
            name=name,
            params=[] if params is None else (None if params == lang.ANY else params),
            scope=_optional(scope) or FunctionScope.ANY,
        )

    def visit_fresult(self, node, visited_children):
        value = visited_children[0]
        if isinstance(value, tuple):
            return value
        if isinstance(value, _Variable):
            return None, value.name
        return (None if value == lang.ANY else value), None

    def visit_typed_variable(self, node, visited_children):
        _, name, _, typ, _ = visited_children
        return typ, name

    def visit_variable(self, node, visited_children):
        return _Variable(visited_children[1])

    def visit_fname(self, node, visited_children):
        value = visited_children[0]
        if isinstance(value, FunctionName):
            return value
        if value == lang.ANY:
            return FunctionName()
        return _name_selector(FunctionName(), value)

    def visit_refined_variable(self, node, visited_children):
        _, name, refinement, _ = visited_children
        refinement = _optional(refinement)
        selector = FunctionName(variable=name)
        return selector if refinement is None else _name_selector(selector, refinement)

    def visit_refinement(self, node, visited_children):
        _, (value,) = visited_children
        return value

    def visit_ordinal(self, node, visited_children):
        return _Ordinal(int(visited_children[2]))

    def visit_fparams(self, node, visited_children):
        return visited_children[0]

    def visit_any_params(self, node, visited_children):
        return lang.ANY

    def visit_param_list(self, node, visited_children):
        first, rest = visited_children
        return [first] + [param for _, _, _, param in _repeated(rest)]

    def visit_fparam(self, node, visited_children):
        typ, name = visited_children
        name = _optional(name)
        return FunctionParam(
            type=None if typ == lang.ANY else typ,
            variable=name.name if isinstance(name, _Variable) else None,
        )

    def visit_param_type(self, node, visited_children):
        return visited_children[0]

    def visit_param_name(self, node, visited_children):
        _, (value,) = visited_children
        return value

    def visit_fscope(self, node, visited_children):
        return visited_children[3]

    # ── terminals ────────────────────────────────────────────────────

    def visit_scope(self, node, visited_children):
        return FunctionScope(node.text)

    def visit_boolean(self, node, visited_children):
        return node.text == "true"

    def visit_any(self, node, visited_children):
        return lang.ANY

    def visit_void(self, node, visited_children):
        return ""

    def visit_regex(self, node, visited_children):
        source = node.match.group(1).replace("\\/", "/")
        try:
            return re.compile(source)
        except re.error as exc:
            raise GrammarError(f"invalid regex {source!r}: {exc}", node.full_text, node.start) from exc

    def visit_symbol(self, node, visited_children):
        return _Symbol(node.text)

    def visit_wasm_type(self, node, visited_children):
        return node.text

    def visit_number(self, node, visited_children):
        return node.text

    def visit_identifier(self, node, visited_children):
        return node.text


@dataclass(slots=True)
class _Variable:
    name: str


@dataclass(slots=True)
class _Symbol:
    value: str


@dataclass(slots=True)
class _Ordinal:
    value: int


def _name_selector(selector: FunctionName, value) -> FunctionName:
    if isinstance(value, _Symbol):
        selector.symbol = value.value
    elif isinstance(value, _Ordinal):
        selector.index = value.value
    elif isinstance(value, re.Pattern):
        selector.regex = value
    else:
        selector.name = value
    return selector


# ═══════════════════════════════════════════════════════════════════════════
# ENTRY POINTS
# ═══════════════════════════════════════════════════════════════════════════

def _parse(grammar: Grammar, text: str, what: str) -> PointcutExpression:
    try:
        tree = grammar.parse(text)
    except ParseError as exc:
        raise GrammarError(f"parsing {what} pointcut expression", text, exc.pos) from exc
    try:
        return PointcutBuilder().visit(tree)
    except VisitationError as exc:
        raise GrammarError(f"parsing {what} pointcut expression: {exc}", text) from exc


def parse_with_context(text: str) -> PointcutExpression:
    """Parse an advice pointcut (arguments bound to params/locals)."""
    return _parse(POINTCUT_GRAMMAR, text, "advice")


def parse_without_context(text: str) -> PointcutExpression:
    """Parse a reusable pointcut (typed names only)."""
    return _parse(PLAIN_POINTCUT_GRAMMAR, text, "reusable")


def methods(instr: Instr) -> List[Method]:
    """Leaf methods of an instruction tree, left to right."""
    if isinstance(instr, Operation):
        return methods(instr.left) + methods(instr.right)
    return [instr]
