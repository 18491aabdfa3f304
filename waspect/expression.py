# waspect/expression.py
"""
Pointcut expression tree.

The parsed pointcut is compiled into filter nodes.  Every node maps a
:class:`~waspect.context.PointcutContext` to a new one:

* ``func``/``call``/``args``/``returns`` replace each block by the
  matching sites found under it, carrying the block's bindings along;
* ``template`` replaces each block by the instructions a template matched
  (or keeps it, when only checking);
* ``&&`` feeds the left result to the right node;
* ``||`` evaluates both sides on copies and merges them per function;
* user methods delegate to the tree compiled from a reusable pointcut.

Join-points left without blocks are dropped.
"""

from __future__ import annotations

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from . import grammar, lang, search
from .context import JoinPoint, PointcutContext, TemplateManager
from .errors import GrammarError, ResolutionError
from .grammar import (
    ArgsMethod,
    CallMethod,
    ContextArgument,
    FuncDefinition,
    FuncMethod,
    FunctionScope,
    Instr,
    Operation,
    PointcutExpression,
    ReturnsMethod,
    TemplateMethod,
    UserMethod,
)
from .search import FuncData, JoinPointBlock
from .template import Template
from .zones import resolve_symbol

if TYPE_CHECKING:
    from .module import FunctionDefinition, ModuleContext

logger = logging.getLogger(__name__)

_VARIABLE_GET_RE = re.compile(r"^\((local|global)\.get\s+([^)\s]+)\)$")

Environment = Dict[str, Any]


class Node:
    """Base filter node."""

    name = "node"

    def filter(self, ctx: PointcutContext) -> PointcutContext:
        raise NotImplementedError

    def children(self) -> List["Node"]:
        return []

    def describe(self, indent: str = "") -> str:
        """Indented tree dump, for debug logging."""
        lines = [indent + self.name]
        for child in self.children():
            lines.append(child.describe(indent + "  "))
        return "\n".join(lines)


# ═══════════════════════════════════════════════════════════════════════════
# FUNCTION MATCHING
# ═══════════════════════════════════════════════════════════════════════════

def _scope_matches(scope: FunctionScope, data: FuncData) -> bool:
    if scope is FunctionScope.INTERNAL:
        return not data.is_imported and not data.is_exported
    if scope is FunctionScope.EXPORTED:
        return data.is_exported
    if scope is FunctionScope.IMPORTED:
        return data.is_imported
    if scope is FunctionScope.START:
        return data.is_start
    return True


def match_function(definition: FuncDefinition, data: Optional[FuncData]) -> Tuple[Environment, bool]:
    """Check *data* against a ``result name (params), scope`` definition.

    Returns the bindings of the definition's ``%var%`` placeholders.
    """
    if data is None:
        return {}, False
    name = definition.name
    if name.index is not None and data.order != name.index:
        return {}, False
    if name.name is not None and data.name != name.name:
        return {}, False
    if name.symbol is not None and data.index != name.symbol:
        return {}, False
    if name.regex is not None and name.regex.search(data.name) is None:
        return {}, False

    if definition.result is not None and definition.result != data.result_type:
        return {}, False

    if definition.params is not None:
        if len(definition.params) != data.total_params:
            return {}, False
        for param, typ in zip(definition.params, data.param_types):
            if param.type is not None and param.type != typ:
                return {}, False

    if not _scope_matches(definition.scope, data):
        return {}, False

    env: Environment = {}
    if name.variable is not None:
        env[name.variable] = data.name
    if definition.result_variable is not None:
        env[definition.result_variable] = data.result_type
    for i, param in enumerate(definition.params or []):
        if i >= data.total_params:
            break
        if param.variable is not None:
            env[param.variable] = {"Name": data.params[i], "Type": data.param_types[i]}
    return env, True


# ═══════════════════════════════════════════════════════════════════════════
# SEARCH NODES
# ═══════════════════════════════════════════════════════════════════════════

Finder = Callable[["ModuleContext", Any, search.Predicate], List[JoinPointBlock]]


class SearchNode(Node):
    """Replaces every block by the sites ``find`` accepts under it."""

    find: Finder

    def predicate(self, module: "ModuleContext", data: Any) -> Tuple[Environment, bool]:
        raise NotImplementedError

    def filter(self, ctx: PointcutContext) -> PointcutContext:
        join_points: List[JoinPoint] = []
        for jp in ctx.join_points:
            blocks: List[JoinPointBlock] = []
            for block in jp.blocks:
                for root in block.nodes():
                    found, _ = search.remove_duplicates(self.find(ctx.module, root, self.predicate))
                    for new_block in found:
                        new_block.join(block)
                        blocks.append(new_block)
            if blocks:
                join_points.append(JoinPoint(blocks))
        logger.debug("%s: %d -> %d join-point(s)", self.name, len(ctx.join_points), len(join_points))
        return ctx.with_join_points(join_points)


class FuncNode(SearchNode):
    name = "func"
    find = staticmethod(search.find_functions)

    def __init__(self, definition: FuncDefinition):
        self.definition = definition

    def predicate(self, module, data: FuncData):
        return match_function(self.definition, data)


class CallNode(SearchNode):
    name = "call"
    find = staticmethod(search.find_calls)

    def __init__(self, definition: FuncDefinition):
        self.definition = definition

    def predicate(self, module, data: search.CallData):
        return match_function(self.definition, data.callee)


@dataclass(slots=True)
class ArgValue:
    """Keyword bound to each named argument of ``args``."""
    el_type: str
    index: str
    type: str


def _variable_symbol(fn: "FunctionDefinition", ref: str) -> Optional[Tuple[str, str, str]]:
    """``(symbol, locality, type)`` of a ``local.get`` operand."""
    if ref.isdigit():
        params = fn.parameters()
        i = int(ref)
        if i < len(params):
            return params[i].name, lang.PARAM, params[i].type
        locals_ = fn.locals_list()
        i -= len(params)
        if i < len(locals_):
            return locals_[i].name, lang.LOCAL, locals_[i].type
        return None
    if ref in fn.params:
        return ref, lang.PARAM, fn.params[ref].type
    if ref in fn.locals:
        return ref, lang.LOCAL, fn.locals[ref].type
    return None


class ArgsNode(SearchNode):
    """Calls whose arguments read the variables bound to the named
    pointcut arguments, in order."""

    name = "args"
    find = staticmethod(search.find_args)

    def __init__(self, arguments: List[ContextArgument]):
        self.arguments = arguments

    def predicate(self, module, data: search.ArgsData):
        env: Environment = {}
        if len(self.arguments) > data.total_args or data.caller is None:
            return {}, False
        caller = module.function(data.caller.index)
        if caller is None:
            return {}, False
        for arg, actual in zip(self.arguments, data.args):
            m = _VARIABLE_GET_RE.match(actual.instr)
            if m is None or m.group(1) != lang.LOCAL:
                return {}, False
            variable = _variable_symbol(caller, m.group(2))
            if variable is None:
                return {}, False
            symbol, locality, typ = variable
            if locality != arg.variable or (arg.type and arg.type != typ):
                return {}, False
            if arg.index:
                try:
                    expected = resolve_symbol(caller, arg)
                except ResolutionError:
                    return {}, False
                if expected != symbol:
                    return {}, False
            env[arg.name] = ArgValue(el_type=typ, index=symbol, type=locality)
        return env, True


class ReturnsNode(SearchNode):
    name = "returns"
    find = staticmethod(search.find_returns)

    def __init__(self, typ: Optional[str]):
        self.type = typ

    def predicate(self, module, data: search.ReturnsData):
        if self.type is not None and data.type != self.type:
            return {}, False
        return {}, True


# ═══════════════════════════════════════════════════════════════════════════
# TEMPLATE NODE
# ═══════════════════════════════════════════════════════════════════════════

class TemplateNode(Node):
    """Blocks whose code a template matches.

    Blocks of one join-point are searched concurrently.  Unless only
    checking, each block is replaced by the matched instructions, grouped
    into runs as long as the template's instruction count.
    """

    name = "template"

    def __init__(self, template: str, just_check: bool = False, max_workers: Optional[int] = None):
        self.template = template
        self.just_check = just_check
        self.max_workers = max_workers

    def filter(self, ctx: PointcutContext) -> PointcutContext:
        join_points: List[JoinPoint] = []
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            for jp in ctx.join_points:
                tables = list(pool.map(lambda b: self._find_results(ctx, b), jp.blocks))
                blocks = [b for table in tables for b in table]
                if not blocks:
                    continue
                join_points.append(JoinPoint(jp.blocks) if self.just_check else JoinPoint(blocks))
        logger.debug("template %s: %d -> %d join-point(s)",
                     self.template, len(ctx.join_points), len(join_points))
        return ctx.with_join_points(join_points)

    def _find_results(self, ctx: PointcutContext, block: JoinPointBlock) -> List[JoinPointBlock]:
        results, pattern = ctx.templates.evaluate(self.template, block.instr_string())
        if not results or not results[0].iter:
            return []
        if self.just_check:
            return [block]
        ctx.templates.add_results(block.function_symbol, self.template, results)

        found: List[JoinPointBlock] = []
        claimed: Set[int] = set()
        for result in results:
            for it in result.iter:
                for root in block.nodes():
                    hits = search.find_instructions(ctx.module, root, it.found, claimed)
                    if hits:
                        found.extend(hits)
                        break
        found, _ = search.remove_duplicates(found)
        for new_block in found:
            new_block.join(block)
        return search.rearrange_blocks(found, search.count_instructions(pattern))


# ═══════════════════════════════════════════════════════════════════════════
# COMPOSITE NODES
# ═══════════════════════════════════════════════════════════════════════════

class OperationNode(Node):
    def __init__(self, op: str, left: Node, right: Node):
        self.op = op
        self.left = left
        self.right = right
        self.name = "and" if op == grammar.AND else "or"

    def children(self) -> List[Node]:
        return [self.left, self.right]

    def filter(self, ctx: PointcutContext) -> PointcutContext:
        if self.op == grammar.AND:
            return self.right.filter(self.left.filter(ctx))
        left = self.left.filter(ctx.clone())
        right = self.right.filter(ctx.clone())
        return left.append(right)


class UserMethodNode(Node):
    """A call to a reusable pointcut of the transformation."""

    def __init__(self, name: str, expr: Node):
        self.name = name
        self.expr = expr

    def children(self) -> List[Node]:
        return [self.expr]

    def filter(self, ctx: PointcutContext) -> PointcutContext:
        return self.expr.filter(ctx)


# ═══════════════════════════════════════════════════════════════════════════
# COMPILATION
# ═══════════════════════════════════════════════════════════════════════════

class ExpressionBuilder:
    """Compiles pointcut ASTs; reusable pointcuts are parsed on demand."""

    def __init__(self, pointcuts: Mapping[str, str], max_workers: Optional[int] = None):
        self.pointcuts = pointcuts
        self.max_workers = max_workers

    def build(
        self,
        instr: Instr,
        params: Mapping[str, ContextArgument],
        stack: Sequence[str] = (),
    ) -> Node:
        if isinstance(instr, Operation):
            return OperationNode(
                instr.op,
                self.build(instr.left, params, stack),
                self.build(instr.right, params, stack),
            )
        if isinstance(instr, FuncMethod):
            return FuncNode(instr.definition)
        if isinstance(instr, CallMethod):
            return CallNode(instr.definition)
        if isinstance(instr, ArgsMethod):
            return ArgsNode([self._param(params, name, "args") for name in instr.names])
        if isinstance(instr, ReturnsMethod):
            return ReturnsNode(instr.type)
        if isinstance(instr, TemplateMethod):
            return TemplateNode(instr.name, instr.just_check, self.max_workers)
        if isinstance(instr, UserMethod):
            return self._user_method(instr, params, stack)
        raise GrammarError(f"unknown pointcut method {instr!r}")

    @staticmethod
    def _param(params: Mapping[str, ContextArgument], name: str, where: str) -> ContextArgument:
        param = params.get(name)
        if param is None:
            raise ResolutionError(f"resolving {where} parameters: parameter {name!r} not found on inputs")
        return param

    def _user_method(
        self,
        method: UserMethod,
        params: Mapping[str, ContextArgument],
        stack: Sequence[str],
    ) -> Node:
        source = self.pointcuts.get(method.name)
        if source is None:
            raise ResolutionError(f"unknown pointcut {method.name!r}")
        if method.name in stack:
            raise ResolutionError(f"pointcut {method.name!r} calls itself ({' -> '.join([*stack, method.name])})")
        expr = grammar.parse_without_context(source)
        if len(expr.arguments) != len(method.arguments):
            raise ResolutionError(
                f"creating pointcut node {method.name}: expects {len(expr.arguments)} "
                f"arguments but got {len(method.arguments)}"
            )
        inner: Dict[str, ContextArgument] = {}
        for position, (declared, name) in enumerate(zip(expr.arguments, method.arguments)):
            param = self._param(params, name, method.name)
            if declared.type != param.type:
                raise ResolutionError(
                    f"creating pointcut node {method.name}: argument type at position {position} "
                    f"does not match the expected: expected {declared.type!r} but got {param.type!r}"
                )
            inner[declared.name] = param
        return UserMethodNode(method.name, self.build(expr.body, inner, [*stack, method.name]))


# ═══════════════════════════════════════════════════════════════════════════
# PARSED POINTCUT
# ═══════════════════════════════════════════════════════════════════════════

class ParsedPointcut:
    """An advice pointcut: its parameters and, once initiated, its tree and
    starting context."""

    def __init__(
        self,
        expression: PointcutExpression,
        pointcuts: Optional[Mapping[str, str]] = None,
        templates: Optional[Mapping[str, Template]] = None,
        max_workers: Optional[int] = None,
    ):
        self.expression = expression
        self.params: Dict[str, ContextArgument] = {
            arg.name: arg for arg in expression.arguments if isinstance(arg, ContextArgument)
        }
        self.pointcuts = pointcuts or {}
        self.templates = templates or {}
        self.max_workers = max_workers
        self.initiated = False
        self.context: Optional[PointcutContext] = None
        self.expr: Optional[Node] = None

    @classmethod
    def parse(cls, source: str, **kwargs) -> "ParsedPointcut":
        return cls(grammar.parse_with_context(source), **kwargs)

    def init(self, module: "ModuleContext") -> "ParsedPointcut":
        """Build the filter tree and the starting context over *module*."""
        self.context = PointcutContext.initial(module, TemplateManager(self.templates))
        self.expr = ExpressionBuilder(self.pointcuts, self.max_workers).build(
            self.expression.body, self.params
        )
        self.initiated = True
        logger.debug("pointcut tree:\n%s", self.expr.describe())
        return self

    def execute(self) -> PointcutContext:
        if not self.initiated:
            raise ResolutionError("pointcut executed before being initiated")
        return self.expr.filter(self.context)

    def __repr__(self) -> str:
        return f"ParsedPointcut(params={sorted(self.params)}, initiated={self.initiated})"
