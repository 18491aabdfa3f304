# waspect/lexer.py
"""
Keyword substitution.

Advice code, function code and start code may contain keywords::

    (call $log (i32.const %func.order%))
    %this%
    %args:map((a) => '(local.get ' + a.index + ')'):join(' ')%

:func:`substitute` replaces each ``%expr%`` by the text of the evaluated
expression.  The closing ``%`` of a keyword is the first one outside of
parentheses and string literals, so the remainder operator is only
available inside parentheses.  A keyword whose identifiers cannot be
resolved is left untouched; a failed ``:assert`` empties it.

Expressions are parsed with a parsimonious grammar into a small AST and
evaluated against a :class:`~waspect.keywords.KeywordStack`.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from parsimonious.exceptions import ParseError, VisitationError
from parsimonious.grammar import Grammar
from parsimonious.nodes import NodeVisitor

from . import keywords
from .errors import AssertionFailed, GrammarError, ResolutionError
from .keywords import KeywordStack
from .template import ReplaceArg, TemplateValue

logger = logging.getLogger(__name__)

KEYWORD = "%"
TRUE = "true"
FALSE = "false"
NAN = "NaN"

TYPE_STRING = "string"
TYPE_STRING_SLICE = "string_slice"
TYPE_SEARCH = "template_search"
TYPE_OBJECT = "object"

_QUOTES = "'\"`"


# ═══════════════════════════════════════════════════════════════════════════
# SCANNING
# ═══════════════════════════════════════════════════════════════════════════

def _skip_quoted(text: str, i: int) -> int:
    quote = text[i]
    i += 1
    while i < len(text):
        if text[i] == "\\":
            i += 2
            continue
        if text[i] == quote:
            return i + 1
        i += 1
    return -1


def _keyword_end(text: str, start: int) -> int:
    """Index of the ``%`` closing the keyword opened at *start*, or -1."""
    depth = 0
    i = start + 1
    while i < len(text):
        ch = text[i]
        if ch in _QUOTES:
            i = _skip_quoted(text, i)
            if i == -1:
                return -1
            continue
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        elif ch == KEYWORD and depth <= 0:
            return i
        i += 1
    return -1


def scan(text: str) -> List[Tuple[bool, str]]:
    """Split *text* into ``(is_keyword, chunk)`` pairs.

    Keyword chunks keep their delimiters.
    """
    chunks: List[Tuple[bool, str]] = []
    pos = 0
    plain = 0
    while True:
        start = text.find(KEYWORD, pos)
        if start == -1:
            break
        end = _keyword_end(text, start)
        if end == -1 or end == start + 1:
            pos = start + 1
            continue
        if start > plain:
            chunks.append((False, text[plain:start]))
        chunks.append((True, text[start:end + 1]))
        pos = plain = end + 1
    if plain < len(text):
        chunks.append((False, text[plain:]))
    return chunks


# ═══════════════════════════════════════════════════════════════════════════
# AST
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(slots=True)
class Literal:
    value: str


@dataclass(slots=True)
class StringLiteral:
    """Quoted text; may itself contain keywords."""
    raw: str


@dataclass(slots=True)
class Identifier:
    name: str


@dataclass(slots=True)
class Property:
    target: Any
    name: str


@dataclass(slots=True)
class Index:
    target: Any
    index: Any


@dataclass(slots=True)
class Method:
    target: Any
    name: str
    args: List[Any] = field(default_factory=list)


@dataclass(slots=True)
class Lambda:
    params: List[str]
    body: Any


@dataclass(slots=True)
class Negation:
    operand: Any


@dataclass(slots=True)
class Binary:
    op: str
    left: Any
    right: Any


@dataclass(slots=True)
class Sequence_:
    items: List[Any]


# ═══════════════════════════════════════════════════════════════════════════
# GRAMMAR
# ═══════════════════════════════════════════════════════════════════════════

EXPRESSION_GRAMMAR = Grammar(r'''
    expression  = ws sequence ws
    sequence    = or_expr (ws ";" ws or_expr)*
    or_expr     = and_expr (ws "||" ws and_expr)*
    and_expr    = equality (ws "&&" ws equality)*
    equality    = comparison (ws eq_op ws comparison)*
    comparison  = shift (ws cmp_op ws shift)*
    shift       = additive (ws shift_op ws additive)*
    additive    = term (ws add_op ws term)*
    term        = unary (ws mul_op ws unary)*
    unary       = negation / postfix
    negation    = "!" ws unary
    postfix     = primary suffix*
    suffix      = property / index / method
    property    = "." name
    index       = "[" ws sequence ws "]"
    method      = ":" name "(" ws arguments? ws ")"
    arguments   = argument (ws "," ws argument)*
    argument    = lambda / sequence
    lambda      = "(" ws name (ws "," ws name)? ws ")" ws "=>" ws sequence
    primary     = group / string / number / identifier
    group       = "(" ws sequence ws ")"
    string      = sq_string / dq_string / bt_string
    sq_string   = ~r"'((?:[^'\\]|\\.)*)'"s
    dq_string   = ~r'"((?:[^"\\]|\\.)*)"'s
    bt_string   = ~r"`((?:[^`\\]|\\.)*)`"s
    number      = ~r"-?\d+(?:\.\d+)?"
    identifier  = ~r"[A-Za-z_][A-Za-z0-9_]*"
    name        = ~r"[A-Za-z_][A-Za-z0-9_]*"
    eq_op       = "==" / "!="
    cmp_op      = ">=" / "<=" / ">" / "<"
    shift_op    = "<<" / ">>"
    add_op      = "+" / "-"
    mul_op      = "*" / "/" / "%"
    ws          = ~r"\s*"
''')


def _unescape(text: str, quote: str) -> str:
    return text.replace("\\" + quote, quote).replace("\\\\", "\\")


class _ExpressionBuilder(NodeVisitor):
    """Parse tree → AST."""

    def generic_visit(self, node, visited_children):
        return visited_children or node

    def visit_expression(self, node, visited_children):
        _, expr, _ = visited_children
        return expr

    def visit_or_expr(self, node, visited_children):
        first, rest = visited_children
        if not isinstance(rest, list):
            return first
        result = first
        for _, op, _, operand in rest:
            result = Binary(_text(op), result, operand)
        return result

    def visit_sequence(self, node, visited_children):
        first, rest = visited_children
        if not isinstance(rest, list):
            return first
        return Sequence_([first] + [item for _, _, _, item in rest])

    visit_and_expr = visit_equality = visit_comparison = visit_or_expr
    visit_shift = visit_additive = visit_term = visit_or_expr

    def visit_unary(self, node, visited_children):
        return visited_children[0]

    def visit_negation(self, node, visited_children):
        _, _, operand = visited_children
        return Negation(operand)

    def visit_postfix(self, node, visited_children):
        target, suffixes = visited_children
        if not isinstance(suffixes, list):
            return target
        for build in suffixes:
            target = build[0](target)
        return target

    def visit_property(self, node, visited_children):
        _, name = visited_children
        return lambda target: Property(target, name)

    def visit_index(self, node, visited_children):
        _, _, expr, _, _ = visited_children
        return lambda target: Index(target, expr)

    def visit_method(self, node, visited_children):
        _, name, _, _, args, _, _ = visited_children
        arguments = args[0] if isinstance(args, list) else []
        return lambda target: Method(target, name, arguments)

    def visit_arguments(self, node, visited_children):
        first, rest = visited_children
        args = [first]
        if isinstance(rest, list):
            args.extend(arg for _, _, _, arg in rest)
        return args

    def visit_argument(self, node, visited_children):
        return visited_children[0]

    def visit_lambda(self, node, visited_children):
        _, _, first, rest, _, _, _, _, _, body = visited_children
        params = [first]
        if isinstance(rest, list):
            params.append(rest[0][3])
        return Lambda(params, body)

    def visit_primary(self, node, visited_children):
        return visited_children[0]

    def visit_group(self, node, visited_children):
        _, _, expr, _, _ = visited_children
        return expr

    def visit_string(self, node, visited_children):
        return visited_children[0]

    def visit_sq_string(self, node, visited_children):
        return StringLiteral(_unescape(node.match.group(1), "'"))

    def visit_dq_string(self, node, visited_children):
        return StringLiteral(_unescape(node.match.group(1), '"'))

    def visit_bt_string(self, node, visited_children):
        return StringLiteral(_unescape(node.match.group(1), "`"))

    def visit_number(self, node, visited_children):
        return Literal(format_number(float(node.text)))

    def visit_identifier(self, node, visited_children):
        return Identifier(node.text)

    def visit_name(self, node, visited_children):
        return node.text

    def visit_eq_op(self, node, visited_children):
        return node.text

    visit_cmp_op = visit_shift_op = visit_add_op = visit_mul_op = visit_eq_op


def _text(value: Any) -> str:
    if isinstance(value, list):
        return _text(value[0])
    if isinstance(value, str):
        return value
    return value.text


@lru_cache(maxsize=1024)
def parse_expression(source: str) -> Any:
    """Parse the inside of a keyword (without the ``%`` delimiters)."""
    try:
        tree = EXPRESSION_GRAMMAR.parse(source)
    except ParseError as exc:
        raise GrammarError(f"invalid keyword expression {source!r}", source, exc.pos) from exc
    try:
        return _ExpressionBuilder().visit(tree)
    except VisitationError as exc:
        raise GrammarError(f"invalid keyword expression {source!r}: {exc}", source) from exc


# ═══════════════════════════════════════════════════════════════════════════
# VALUES
# ═══════════════════════════════════════════════════════════════════════════

def format_number(value: float) -> str:
    if math.isnan(value) or math.isinf(value):
        return NAN
    if value.is_integer():
        return str(int(value))
    return repr(value)


def _to_number(value: Any) -> Optional[float]:
    try:
        return float(text_of(value))
    except ValueError:
        return None


def bool_text(value: bool) -> str:
    return TRUE if value else FALSE


def text_of(value: Any) -> str:
    """The text a value contributes to the output."""
    if isinstance(value, (list, tuple)):
        return "".join(text_of(v) for v in value)
    return keywords.to_string(value)


def truthy(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (list, tuple)):
        return len(value) > 0
    if keywords.is_object(value):
        return keywords.length(value) > 0
    text = text_of(value)
    return len(text) > 0 and text != FALSE


def type_of(value: Any) -> str:
    if isinstance(value, TemplateValue):
        return TYPE_SEARCH
    if isinstance(value, (list, tuple)):
        return TYPE_STRING_SLICE
    if keywords.is_object(value):
        return TYPE_OBJECT
    return TYPE_STRING


def _items(value: Any) -> List[Any]:
    if isinstance(value, TemplateValue):
        return [value.found]
    return keywords.to_list(value)


# ═══════════════════════════════════════════════════════════════════════════
# EVALUATION
# ═══════════════════════════════════════════════════════════════════════════

class _Unresolved(Exception):
    def __init__(self, name: str):
        super().__init__(name)
        self.name = name


class Evaluator:
    """Evaluates keyword ASTs against a keyword stack."""

    def __init__(self, stack: KeywordStack, order_map: Optional[Mapping[str, int]] = None):
        self.stack = stack
        self.order_map = order_map or {}

    def with_bindings(self, bindings: Dict[str, Any]) -> "Evaluator":
        return Evaluator(self.stack.push(bindings), self.order_map)

    def evaluate(self, node: Any) -> Any:
        method = getattr(self, "_eval_" + type(node).__name__.rstrip("_"))
        return method(node)

    def _eval_Literal(self, node: Literal) -> Any:
        return node.value

    def _eval_StringLiteral(self, node: StringLiteral) -> Any:
        return substitute_stack(node.raw, self.stack, self.order_map)

    def _eval_Identifier(self, node: Identifier) -> Any:
        value = self.stack.get(node.name)
        if value is None:
            raise _Unresolved(node.name)
        return value

    def _eval_Property(self, node: Property) -> Any:
        target = self.evaluate(node.target)
        value = keywords.prop(target, node.name)
        if value is None:
            raise _Unresolved(node.name)
        return value

    def _eval_Index(self, node: Index) -> Any:
        target = self.evaluate(node.target)
        i = self._int(self.evaluate(node.index), "index")
        if isinstance(target, TemplateValue):
            target = target.found
        return keywords.index(target, i)

    def _eval_Negation(self, node: Negation) -> Any:
        return bool_text(not truthy(self.evaluate(node.operand)))

    def _eval_Sequence(self, node: Sequence_) -> Any:
        return "".join(text_of(self.evaluate(item)) for item in node.items)

    def _eval_Lambda(self, node: Lambda) -> Any:
        raise ResolutionError("lambdas are only valid as method arguments")

    def _eval_Binary(self, node: Binary) -> Any:
        op = node.op
        if op == "&&":
            left = truthy(self.evaluate(node.left))
            return bool_text(left and truthy(self.evaluate(node.right)))
        if op == "||":
            left = truthy(self.evaluate(node.left))
            return bool_text(left or truthy(self.evaluate(node.right)))

        left = self.evaluate(node.left)
        right = self.evaluate(node.right)
        if op == "==":
            return bool_text(text_of(left) == text_of(right))
        if op == "!=":
            return bool_text(text_of(left) != text_of(right))

        a, b = _to_number(left), _to_number(right)
        if op == "+" and (a is None or b is None):
            return text_of(left) + text_of(right)
        if a is None or b is None:
            return FALSE if op in (">=", "<=", ">", "<") else NAN
        if op == ">=":
            return bool_text(a >= b)
        if op == "<=":
            return bool_text(a <= b)
        if op == ">":
            return bool_text(a > b)
        if op == "<":
            return bool_text(a < b)
        if op == "+":
            return format_number(a + b)
        if op == "-":
            return format_number(a - b)
        if op == "*":
            return format_number(a * b)
        if op == "/":
            return format_number(a / b) if b else NAN
        if op == "%":
            return str(int(a) % int(b)) if int(b) else NAN
        if op == "<<":
            return str(int(a) << int(b))
        if op == ">>":
            return str(int(a) >> int(b))
        raise GrammarError(f"unknown operator {op!r}")

    def _eval_Method(self, node: Method) -> Any:
        impl = _METHODS.get(node.name)
        if impl is None:
            raise ResolutionError(f"unknown method name {node.name!r}")
        target = self.evaluate(node.target)
        return impl(self, target, node.args)

    # ── helpers for methods ──────────────────────────────────────────────

    def call_lambda(self, fn: Any, *values: Any) -> Any:
        if not isinstance(fn, Lambda):
            raise ResolutionError("method argument must be a lambda")
        if len(fn.params) > len(values):
            raise ResolutionError(
                f"lambda expects {len(fn.params)} arguments but only got {len(values)}"
            )
        bindings = dict(zip(fn.params, values))
        return self.with_bindings(bindings).evaluate(fn.body)

    def text_arg(self, args: Sequence[Any], i: int, method: str) -> str:
        if i >= len(args):
            raise ResolutionError(f"method {method}: missing argument {i + 1}")
        return text_of(self.evaluate(args[i]))

    def _int(self, value: Any, what: str) -> int:
        number = _to_number(value)
        if number is None:
            raise ResolutionError(f"{what} must be a number, got {text_of(value)!r}")
        return int(number)

    def int_arg(self, args: Sequence[Any], i: int, method: str) -> int:
        if i >= len(args):
            raise ResolutionError(f"method {method}: missing argument {i + 1}")
        return self._int(self.evaluate(args[i]), f"method {method} argument {i + 1}")

    def reference_arg(self, args: Sequence[Any], i: int, method: str) -> ReplaceArg:
        """Bare identifiers are template variable references, anything else
        is literal text."""
        if i >= len(args):
            raise ResolutionError(f"method {method}: missing argument {i + 1}")
        arg = args[i]
        if isinstance(arg, Identifier):
            return ReplaceArg(arg.name, True)
        return ReplaceArg(text_of(self.evaluate(arg)), False)


# ── methods ──────────────────────────────────────────────────────────────

def _no_args(name: str, args: Sequence[Any]) -> None:
    if args:
        raise ResolutionError(f"method {name}: must have no arguments")


def _m_string(ev: Evaluator, value: Any, args) -> Any:
    _no_args("string", args)
    return text_of(value)


def _m_type(ev: Evaluator, value: Any, args) -> Any:
    _no_args("type", args)
    return type_of(value)


def _m_map(ev: Evaluator, value: Any, args) -> Any:
    if len(args) != 1:
        raise ResolutionError("method map: must have one argument")
    if isinstance(value, str):
        return ev.call_lambda(args[0], value, "0")
    return [ev.call_lambda(args[0], item, str(i)) for i, item in enumerate(_items(value))]


def _m_filter(ev: Evaluator, value: Any, args) -> Any:
    if len(args) != 1:
        raise ResolutionError("method filter: must have one argument")
    if isinstance(value, TemplateValue):
        value = value.found
    if isinstance(value, str):
        return "".join(
            ch for i, ch in enumerate(value) if truthy(ev.call_lambda(args[0], ch, str(i)))
        )
    return [
        item for i, item in enumerate(_items(value))
        if truthy(ev.call_lambda(args[0], item, str(i)))
    ]


def _m_assert(ev: Evaluator, value: Any, args) -> Any:
    if len(args) != 1:
        raise ResolutionError("method assert: must have one argument")
    if not truthy(ev.call_lambda(args[0], value, "0")):
        raise AssertionFailed()
    return value


def _m_repeat(ev: Evaluator, value: Any, args) -> Any:
    times = ev.int_arg(args, 0, "repeat")
    items = [value] if isinstance(value, str) else _items(value)
    return items * max(0, times)


def _m_join(ev: Evaluator, value: Any, args) -> Any:
    separator = ev.text_arg(args, 0, "join")
    if isinstance(value, (str, TemplateValue)):
        return text_of(value)
    return separator.join(text_of(item) for item in _items(value))


def _m_split(ev: Evaluator, value: Any, args) -> Any:
    separator = ev.text_arg(args, 0, "split")
    if isinstance(value, (list, tuple)):
        raise ResolutionError("method split: cannot be called in string slice values")
    if keywords.is_object(value):
        raise ResolutionError("method split: cannot be called in arrays/maps")
    text = text_of(value)
    return list(text) if separator == "" else text.split(separator)


def _m_count(ev: Evaluator, value: Any, args) -> Any:
    _no_args("count", args)
    if isinstance(value, TemplateValue):
        value = value.found
    if isinstance(value, str):
        return str(len(value))
    return str(len(_items(value)))


def _m_contains(ev: Evaluator, value: Any, args) -> Any:
    wanted = ev.text_arg(args, 0, "contains")
    if isinstance(value, (list, tuple)):
        return bool_text(any(text_of(v) == wanted for v in value))
    if keywords.is_object(value):
        return bool_text(any(k == wanted for k, _ in keywords.fields(value)))
    return bool_text(wanted in text_of(value))


def _m_replace(ev: Evaluator, value: Any, args) -> Any:
    if len(args) != 2:
        raise ResolutionError("method replace: must have two arguments")
    if isinstance(value, TemplateValue):
        return value.replace(ev.reference_arg(args, 0, "replace"), ev.reference_arg(args, 1, "replace"))
    old = ev.text_arg(args, 0, "replace")
    new = ev.text_arg(args, 1, "replace")
    if isinstance(value, (list, tuple)):
        return [new if text_of(v) == old else v for v in value]
    if isinstance(value, Mapping):
        res = dict(value)
        res[keywords.capitalize(old)] = new
        return res
    return text_of(value).replace(old, new)


def _m_remove(ev: Evaluator, value: Any, args) -> Any:
    if isinstance(value, TemplateValue):
        return value.remove(ev.reference_arg(args, 0, "remove").value)
    wanted = ev.text_arg(args, 0, "remove")
    if isinstance(value, (list, tuple)):
        return [v for v in value if text_of(v) != wanted]
    if isinstance(value, Mapping):
        return {k: v for k, v in value.items() if k != keywords.capitalize(wanted)}
    return text_of(value).replace(wanted, "")


def _m_select(ev: Evaluator, value: Any, args) -> Any:
    if not isinstance(value, TemplateValue):
        raise ResolutionError(f"method select: cannot be called in {type_of(value)} values")
    return value.select(ev.reference_arg(args, 0, "select").value)


def _m_order(ev: Evaluator, value: Any, args) -> Any:
    _no_args("order", args)
    order = ev.order_map.get(text_of(value))
    return "" if order is None else str(order + 1)


def _m_reverse(ev: Evaluator, value: Any, args) -> Any:
    _no_args("reverse", args)
    if isinstance(value, (list, tuple)) or keywords.is_object(value):
        return list(reversed(_items(value)))
    return text_of(value)[::-1]


def _slice_bounds(ev: Evaluator, args, name: str) -> Tuple[int, Optional[int]]:
    start = ev.int_arg(args, 0, name)
    end = ev.int_arg(args, 1, name) if len(args) > 1 else None
    return start, end


def _sliceable(value: Any) -> Any:
    if isinstance(value, (list, tuple)) or keywords.is_object(value):
        return _items(value)
    return text_of(value)


def _m_slice(ev: Evaluator, value: Any, args) -> Any:
    start, end = _slice_bounds(ev, args, "slice")
    seq = _sliceable(value)
    return seq[start:] if end is None else seq[start:end]


def _m_splice(ev: Evaluator, value: Any, args) -> Any:
    start, end = _slice_bounds(ev, args, "splice")
    seq = _sliceable(value)
    return seq[:start] if end is None else seq[:start] + seq[end:]


def _m_index(ev: Evaluator, value: Any, args) -> Any:
    i = ev.int_arg(args, 0, "index")
    if isinstance(value, TemplateValue):
        value = value.found
    return keywords.index(value, i)


_METHODS: Dict[str, Callable[[Evaluator, Any, Sequence[Any]], Any]] = {
    "string": _m_string,
    "type": _m_type,
    "map": _m_map,
    "filter": _m_filter,
    "assert": _m_assert,
    "repeat": _m_repeat,
    "join": _m_join,
    "split": _m_split,
    "count": _m_count,
    "contains": _m_contains,
    "replace": _m_replace,
    "remove": _m_remove,
    "select": _m_select,
    "order": _m_order,
    "reverse": _m_reverse,
    "slice": _m_slice,
    "splice": _m_splice,
    "index": _m_index,
}

METHOD_NAMES = frozenset(_METHODS)


# ═══════════════════════════════════════════════════════════════════════════
# SUBSTITUTION
# ═══════════════════════════════════════════════════════════════════════════

def _evaluate_keyword(chunk: str, evaluator: Evaluator) -> str:
    expr = parse_expression(chunk[1:-1])
    try:
        return text_of(evaluator.evaluate(expr))
    except AssertionFailed:
        return ""
    except _Unresolved as exc:
        logger.debug("keyword %s left as is: %r not found", chunk, exc.name)
        return chunk


def substitute_stack(text: str, stack: KeywordStack, order_map: Optional[Mapping[str, int]] = None) -> str:
    evaluator = Evaluator(stack, order_map)
    out: List[str] = []
    for is_keyword, chunk in scan(text):
        out.append(_evaluate_keyword(chunk, evaluator) if is_keyword else chunk)
    return "".join(out)


def substitute(text: str, order_map: Optional[Mapping[str, int]] = None, *maps: Any) -> str:
    """Replace every keyword of *text*, resolving names in *maps* in order."""
    return substitute_stack(text, KeywordStack(maps), order_map)
