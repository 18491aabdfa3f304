# waspect/search.py
"""
Join-point blocks and the module searches that produce them.

A :class:`JoinPointBlock` references one node of the module tree, the
``func`` node that owns it, and a metadata record captured by the filter
that selected it (``{"Func": FuncData}``, ``{"Call": CallData}``, ...).
Two blocks are equal when they share the owning function and the node.

The ``find_*`` functions walk the subtree of a block and return the blocks
accepted by a predicate ``(ctx, data) -> (environment, ok)``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from . import generator, keywords, lang, wat
from .wat import Container, Element, Instruction, Node, Text

if TYPE_CHECKING:
    from .module import FunctionDefinition, ModuleContext

logger = logging.getLogger(__name__)

TARGET = "target"


# ═══════════════════════════════════════════════════════════════════════════
# KEYWORD RECORDS
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(slots=True)
class FuncData:
    """What ``%func.…%`` exposes about a function."""

    index: str
    order: int
    name: str
    params: List[str]
    param_types: List[str]
    total_params: int
    locals: List[str]
    local_types: List[str]
    total_locals: int
    result_type: str
    code: str
    is_imported: bool
    is_exported: bool
    is_start: bool


@dataclass(slots=True)
class ArgData:
    type: str
    order: int
    instr: str


@dataclass(slots=True)
class CallData:
    callee: Optional[FuncData]
    caller: Optional[FuncData]
    args: List[ArgData]
    total_args: int


ArgsData = CallData


@dataclass(slots=True)
class ReturnsData:
    func: FuncData
    instr: str
    type: str


def function_name(fn: "FunctionDefinition") -> str:
    if fn.export_name is not None:
        return fn.export_name
    if fn.imported is not None:
        return f"{fn.imported.module}.{fn.imported.field_name}"
    return fn.name.strip("$")


def func_data(ctx: "ModuleContext", fn: "FunctionDefinition") -> FuncData:
    params = fn.parameters()
    locals_ = fn.locals_list()
    return FuncData(
        index=fn.name,
        order=ctx.index_of(fn),
        name=function_name(fn),
        params=[p.name for p in params],
        param_types=[p.type for p in params],
        total_params=len(params),
        locals=[v.name for v in locals_],
        local_types=[v.type for v in locals_],
        total_locals=len(locals_),
        result_type=fn.result,
        code=fn.code(),
        is_imported=fn.is_imported,
        is_exported=fn.is_exported,
        is_start=fn.is_start,
    )


def call_data(ctx: "ModuleContext", instr: Instruction, callee: "FunctionDefinition") -> CallData:
    caller = None
    func_instr = instr.owning_function()
    if func_instr is not None:
        caller_def = ctx.function_of(func_instr)
        if caller_def is not None:
            caller = func_data(ctx, caller_def)
    params = callee.parameters()
    args = [
        ArgData(type=params[i].type, order=i, instr=value.render())
        for i, value in enumerate(instr.values[1:])
        if i < len(params)
    ]
    return CallData(
        callee=func_data(ctx, callee),
        caller=caller,
        args=args,
        total_args=len(args),
    )


# ═══════════════════════════════════════════════════════════════════════════
# JOIN-POINT BLOCK
# ═══════════════════════════════════════════════════════════════════════════

class JoinPointBlock:
    """One selected site: a node, its function and captured metadata."""

    __slots__ = ("context", "block", "function", "metadata", "environment", "depth", "extent", "host")

    def __init__(
        self,
        context: "ModuleContext",
        block: Node,
        metadata: Optional[Dict[str, Any]] = None,
        environment: Optional[Dict[str, Any]] = None,
        host: Optional[Instruction] = None,
    ):
        self.context = context
        self.block = block
        self.metadata: Dict[str, Any] = dict(metadata or {})
        self.environment: Dict[str, Any] = {
            keywords.capitalize(k): v for k, v in (environment or {}).items()
        }
        # ``func`` node a detached block is appended to when applied.
        self.host = host if block.parent is None else None
        if self.host is not None:
            self.function: Optional[Instruction] = self.host
            self.depth = 1
        else:
            self.function = block.owning_function()
            self.depth = block.depth_in_function()
        # Number of consecutive siblings (starting at ``block``) covered.
        self.extent = 1

    def copy(self) -> "JoinPointBlock":
        other = JoinPointBlock(self.context, self.block, self.metadata, host=self.host)
        other.environment = dict(self.environment)
        other.extent = self.extent
        return other

    @property
    def key(self) -> Tuple[int, int]:
        return (id(self.function), id(self.block))

    def __eq__(self, other: object) -> bool:
        return isinstance(other, JoinPointBlock) and self.key == other.key

    def __hash__(self) -> int:
        return hash(self.key)

    def __repr__(self) -> str:
        return f"JoinPointBlock(fn={self.function_symbol}, depth={self.depth})"

    @property
    def function_symbol(self) -> str:
        if self.function is None or not self.function.values:
            return ""
        first = self.function.values[0]
        return first.value if isinstance(first, Text) else ""

    def func_definition(self) -> Optional["FunctionDefinition"]:
        if self.function is None:
            return None
        return self.context.function_of(self.function)

    def nodes(self) -> List[Node]:
        """The covered nodes: ``block`` plus ``extent - 1`` following siblings."""
        parent = self.block.parent
        if self.extent == 1 or parent is None:
            return [self.block]
        index = parent.child_index(self.block)
        return parent.values[index:index + self.extent]

    def instr_string(self) -> str:
        """Code of the covered nodes; for a whole function, its body."""
        if _is_internal_function(self.block):
            return wat.function_code(self.block)
        return wat.render_all(self.nodes())

    def get(self, key: str) -> Any:
        """Keyword lookup: metadata first, then the filter environment."""
        caps = keywords.capitalize(key)
        value = self.metadata.get(caps)
        if value is not None:
            return value
        return self.environment.get(caps)

    def join(self, other: "JoinPointBlock") -> None:
        if self.host is None and other.host is not None and self.block is other.block \
                and self.block.parent is None:
            self.host = self.function = other.host
            self.depth = 1
        self.metadata = keywords.join_metadata(self.metadata, other.metadata)
        for k, v in other.environment.items():
            self.environment.setdefault(k, v)

    # ── applying advice ──────────────────────────────────────────────────

    def apply(self, code: str, smart: bool = False) -> None:
        """Replace the block with *code*.

        In smart mode, multi-instruction advice that replaces an operand is
        split: the leading instructions are hoisted before the enclosing
        statement and the value flows through a fresh local.
        """
        nodes = wat.parse_code(code)
        self.attach()
        parent = self.block.parent
        if parent is None:
            logger.debug("block already detached, skipping")
            return

        if isinstance(self.block, Instruction) and self.block.name == lang.FUNC \
                and isinstance(parent, Instruction) and parent.name == lang.MODULE:
            _unwrap_targets(nodes)
            start = wat.body_start(self.block)
            self.block.replace_range(start, len(self.block.values) - start, nodes)
            return

        fn = self.func_definition()
        if len(nodes) == 1 or fn is None:
            _unwrap_targets(nodes)
            self._replace(nodes)
            return

        if not smart:
            result_type = resolve_result_type(self.context, fn, self.block)
            if result_type and result_type != lang.ANY:
                logger.warning(
                    "Applying advice on instruction that requires a result type %s (code: %s)",
                    result_type, " ".join(code.split()),
                )
            _unwrap_targets(nodes)
            self._replace(nodes)
            return

        self._apply_smart(fn, nodes)

    def attach(self) -> None:
        """Append a detached block to its host function, once."""
        if self.host is None or self.block.parent is not None:
            return
        fn = self.func_definition()
        if fn is None:
            self.host.append(self.block)
            return
        with fn.lock:
            if self.block.parent is None:
                self.host.append(self.block)

    def _replace(self, nodes: List[Node]) -> None:
        parent = self.block.parent
        index = parent.child_index(self.block)
        if index == -1:
            return
        parent.replace_range(index, self.extent, nodes)

    def _apply_smart(self, fn: "FunctionDefinition", nodes: List[Node]) -> None:
        parent = self.block.parent
        result_type = resolve_result_type(self.context, fn, self.block)
        if not result_type or result_type == lang.ANY or _is_statement_parent(parent):
            _unwrap_targets(nodes)
            self._replace(nodes)
            return

        statement = _enclosing_statement(self.block)
        if statement is None:
            _unwrap_targets(nodes)
            self._replace(nodes)
            return

        local = self.context.add_local(result_type, fn)
        targets = [
            n for root in nodes for n in root.walk()
            if isinstance(n, Instruction) and n.name == TARGET and n.values
        ]
        if targets:
            for target in targets[:-1]:
                _unwrap_target(nodes, target)
            last = targets[-1]
            last.name = lang.LOCAL_SET
            last.insert(0, [Text(local.name)])
        else:
            original = self.block.render()
            found = _find_equal(nodes, original)
            if found is None:
                logger.warning("Target not found on smart mode, applying advice as is")
                _unwrap_targets(nodes)
                self._replace(nodes)
                return
            replacement = wat.parse_code(generator.set_local_instruction_code(local.name, original))
            _replace_node(nodes, found, replacement[0])

        # Roots that are themselves targets were renamed in place.
        statement.parent.insert_before(statement, nodes)
        get_local = wat.parse_code(generator.get_variable_code(local.name, True))
        self._replace(get_local)


def _is_statement_parent(parent: Container) -> bool:
    if isinstance(parent, Element):
        return True
    return isinstance(parent, Instruction) and (
        parent.name == lang.FUNC or parent.name in lang.STRUCTURED and parent.name != lang.IF
    )


def _enclosing_statement(node: Node) -> Optional[Node]:
    while node.parent is not None:
        if _is_statement_parent(node.parent):
            return node
        node = node.parent
    return None


def _unwrap_target(nodes: List[Node], target: Instruction) -> None:
    """Splice the children of one ``(target …)`` wrapper into its place."""
    children = list(target.values)
    if target.parent is not None:
        target.parent.replace_child(target, children)
        return
    for child in children:
        child.parent = None
    for i, node in enumerate(nodes):
        if node is target:
            nodes[i:i + 1] = children
            return


def _unwrap_targets(nodes: List[Node]) -> None:
    """Replace every ``(target …)`` wrapper by its children."""
    targets = [
        n for root in list(nodes) for n in root.walk()
        if isinstance(n, Instruction) and n.name == TARGET
    ]
    for target in targets:
        _unwrap_target(nodes, target)


def _find_equal(roots: List[Node], text: str) -> Optional[Node]:
    for root in roots:
        rendered, spans = wat.render_spans(root)
        for node in root.walk():
            start, end = spans[id(node)]
            if rendered[start:end] == text:
                return node
    return None


def _replace_node(roots: List[Node], old: Node, new: Node) -> None:
    if old.parent is not None:
        old.parent.replace_child(old, [new])
        return
    for i, root in enumerate(roots):
        if root is old:
            roots[i] = new
            return


def resolve_result_type(ctx: "ModuleContext", fn: "FunctionDefinition", node: Optional[Node]) -> str:
    """Value type *node* must produce for its context (``""`` for none)."""
    if not isinstance(node, Instruction):
        return ""
    name = node.name
    if name in (lang.FUNC, lang.RETURN):
        return fn.result
    if name == lang.CALL:
        callee = ctx.resolve_function(_first_text(node))
        return callee.result if callee is not None else ""
    if name in (lang.LOCAL_GET, lang.LOCAL_TEE):
        var = fn.variable(_first_text(node))
        return var.type if var is not None else ""
    if name == lang.GLOBAL_GET:
        glob = ctx.global_(_first_text(node))
        return glob.type if glob is not None else ""
    if name in (lang.LOCAL_SET, lang.GLOBAL_SET):
        return ""

    sig = lang.signature(name)
    if sig is None or not sig.returns:
        return ""
    if sig.returns[0] != lang.ANY:
        return sig.returns[0]

    parent = node.parent
    if not isinstance(parent, Instruction) or lang.is_control_flow(parent.name):
        return lang.ANY
    if parent.name in (lang.FUNC, lang.RETURN):
        return fn.result
    parent_sig = lang.signature(parent.name)
    if parent_sig is None:
        return ""
    i = parent.child_index(node)
    if 0 <= i < len(parent_sig.args) and parent_sig.args[i] != lang.ANY:
        return parent_sig.args[i]
    return resolve_result_type(ctx, fn, parent)


def _first_text(instr: Instruction) -> str:
    first = instr.child(0)
    return first.value if isinstance(first, Text) else ""


# ═══════════════════════════════════════════════════════════════════════════
# SEARCHES
# ═══════════════════════════════════════════════════════════════════════════

Predicate = Callable[["ModuleContext", Any], Tuple[Dict[str, Any], bool]]


def accept_all(ctx: "ModuleContext", data: Any) -> Tuple[Dict[str, Any], bool]:
    return {}, True


def _is_internal_function(node: Node) -> bool:
    return (
        isinstance(node, Instruction)
        and node.name == lang.FUNC
        and isinstance(node.parent, Instruction)
        and node.parent.name == lang.MODULE
    )


def init_search(ctx: "ModuleContext") -> List[JoinPointBlock]:
    """One block per defined function of the module."""
    return find_functions(ctx, ctx.module, accept_all)


def find_functions(ctx: "ModuleContext", root: Node, predicate: Predicate) -> List[JoinPointBlock]:
    found: List[JoinPointBlock] = []
    for node in root.walk():
        if not _is_internal_function(node):
            continue
        fn = ctx.function_of(node)
        if fn is None or fn.is_imported:
            continue
        data = func_data(ctx, fn)
        env, ok = predicate(ctx, data)
        if ok:
            found.append(JoinPointBlock(ctx, node, {"Func": data}, env))
    return found


def resolve_callee(ctx: "ModuleContext", instr: Instruction) -> Optional["FunctionDefinition"]:
    ref = _first_text(instr)
    fn = ctx.resolve_function(ref)
    if fn is None:
        symbol = ctx.alias_key(ref.strip("%"))
        if symbol is not None:
            fn = ctx.function(symbol)
    return fn


def find_calls(ctx: "ModuleContext", root: Node, predicate: Predicate) -> List[JoinPointBlock]:
    found: List[JoinPointBlock] = []
    for node in root.walk():
        if not isinstance(node, Instruction) or node.name != lang.CALL or not node.values:
            continue
        callee = resolve_callee(ctx, node)
        if callee is None:
            continue
        data = call_data(ctx, node, callee)
        env, ok = predicate(ctx, data)
        if ok:
            found.append(JoinPointBlock(ctx, node, {"Call": data}, env))
    return found


def _is_variable_reference(node: Node) -> bool:
    return (
        isinstance(node, Instruction)
        and len(node.values) == 1
        and (node.name.startswith(lang.GLOBAL) or node.name.startswith(lang.LOCAL))
    )


def find_args(ctx: "ModuleContext", root: Node, predicate: Predicate) -> List[JoinPointBlock]:
    """Calls whose every argument is a direct variable read."""
    found: List[JoinPointBlock] = []
    for node in root.walk():
        if not isinstance(node, Instruction) or node.name != lang.CALL or not node.values:
            continue
        callee = ctx.resolve_function(_first_text(node))
        if callee is None:
            continue
        if not all(_is_variable_reference(arg) for arg in node.values[1:]):
            continue
        data = call_data(ctx, node, callee)
        env, ok = predicate(ctx, data)
        if ok:
            found.append(JoinPointBlock(ctx, node, {"Args": data}, env))
    return found


def find_returns(ctx: "ModuleContext", root: Node, predicate: Predicate) -> List[JoinPointBlock]:
    """Return instructions plus the implicit return at the end of each body.

    A void function whose body does not end with ``return`` yields a
    detached ``(return)``; it joins the body only when advice is applied.
    """
    found: List[JoinPointBlock] = []
    for node in list(root.walk()):
        if not _is_internal_function(node):
            continue
        fn = ctx.function_of(node)
        if fn is None or fn.is_imported:
            continue
        returns: List[Node] = [
            n for n in node.walk() if isinstance(n, Instruction) and n.name == lang.RETURN
        ]
        body = fn.body()
        last = body[-1] if body else None
        implicit: Optional[Instruction] = None
        if last is None or not returns or last is not returns[-1]:
            if not fn.result:
                with fn.lock:
                    pending = fn.pending_return
                    if pending is None or pending.parent is not None:
                        pending = fn.pending_return = Instruction(lang.RETURN)
                implicit = last = pending
            if last is not None:
                returns.append(last)
        data_func = func_data(ctx, fn)
        for ret in returns:
            data = ReturnsData(func=data_func, instr=ret.render(), type=fn.result)
            env, ok = predicate(ctx, data)
            if not ok:
                continue
            host = node if ret is implicit else None
            found.append(JoinPointBlock(ctx, ret, {"Returns": data}, env, host=host))
    return found


def find_instructions(
    ctx: "ModuleContext",
    root: Node,
    code: str,
    claimed: Optional[Set[int]] = None,
) -> List[JoinPointBlock]:
    """Nodes under *root* structurally equal to the instructions of *code*.

    The first instruction may match anywhere under *root*; each following
    one is searched among the siblings after the previous hit.  Node ids in
    *claimed* are skipped, and the nodes of a complete match are added to
    it, so repeated searches sharing one set find disjoint sites.  Without
    a complete match the longest partial one is returned.
    """
    wanted = [w.render() for w in wat.parse_code(code)]
    if not wanted:
        return []
    if claimed is None:
        claimed = set()
    rendered, spans = wat.render_spans(root)
    best: List[Node] = []
    for node in root.walk():
        if id(node) in claimed:
            continue
        start, end = spans[id(node)]
        if rendered[start:end] != wanted[0]:
            continue
        hits = _match_siblings(node, wanted[1:], claimed)
        if len(hits) == len(wanted):
            best = hits
            break
        if len(hits) > len(best):
            best = hits
    if len(best) == len(wanted):
        claimed.update(id(node) for node in best)
    return [JoinPointBlock(ctx, node) for node in best]


def _match_siblings(first: Node, wanted: List[str], claimed: Set[int]) -> List[Node]:
    hits = [first]
    parent = first.parent
    if not wanted or not isinstance(parent, Container):
        return hits
    rendered, spans = wat.render_spans(parent)
    pos = parent.child_index(first) + 1
    for target in wanted:
        while pos < len(parent.values):
            node = parent.values[pos]
            pos += 1
            if id(node) in claimed:
                continue
            start, end = spans[id(node)]
            if rendered[start:end] == target:
                hits.append(node)
                break
        else:
            break
    return hits


# ═══════════════════════════════════════════════════════════════════════════
# SET OPERATIONS
# ═══════════════════════════════════════════════════════════════════════════

Collision = Callable[[JoinPointBlock, JoinPointBlock], JoinPointBlock]


def remove_duplicates(
    blocks: Iterable[JoinPointBlock],
    collision: Optional[Collision] = None,
) -> Tuple[List[JoinPointBlock], bool]:
    """Drop blocks equal under ``(function, node)``; the first one wins by
    default.  Order of first appearance is kept."""
    kept: Dict[Tuple[int, int], JoinPointBlock] = {}
    has_duplicates = False
    for block in blocks:
        current = kept.get(block.key)
        if current is None:
            kept[block.key] = block
            continue
        has_duplicates = True
        if collision is not None:
            kept[block.key] = collision(current, block)
    return list(kept.values()), has_duplicates


def _deeper_wins(old: JoinPointBlock, new: JoinPointBlock) -> JoinPointBlock:
    if new.depth > old.depth:
        new.join(old)
        return new
    old.join(new)
    return old


def union(a: Iterable[JoinPointBlock], b: Iterable[JoinPointBlock]) -> List[JoinPointBlock]:
    """Merge two block lists; on collision the deeper block wins and keeps
    its own bindings first."""
    merged, _ = remove_duplicates(list(a) + list(b), _deeper_wins)
    return merged


def rearrange_blocks(blocks: List[JoinPointBlock], max_in_a_row: int) -> List[JoinPointBlock]:
    """Group consecutive sibling blocks of one match into a single block.

    A template spanning ``n`` top-level instructions yields ``n`` blocks;
    runs of up to *max_in_a_row* adjacent siblings become one block whose
    ``extent`` covers them all.
    """
    if not blocks:
        return blocks
    res: List[JoinPointBlock] = []
    group = [blocks[0]]
    for block in blocks[1:]:
        last = group[-1]
        if len(group) < max_in_a_row and _follows(last, block):
            group.append(block)
            continue
        res.append(_merge_group(group))
        group = [block]
    res.append(_merge_group(group))
    return res


def _follows(prev: JoinPointBlock, block: JoinPointBlock) -> bool:
    parent = prev.block.parent
    if parent is None or block.block.parent is not parent or block.depth != prev.depth:
        return False
    return parent.child_index(block.block) == parent.child_index(prev.block) + prev.extent


def _merge_group(group: List[JoinPointBlock]) -> JoinPointBlock:
    first = group[0]
    for other in group[1:]:
        first.extent += other.extent
        first.join(other)
    return first


def count_instructions(code: str) -> int:
    """Number of top-level parenthesized groups in *code*."""
    count = depth = 0
    for ch in code:
        if ch == "(":
            if depth == 0:
                count += 1
            depth += 1
        elif ch == ")":
            depth = max(0, depth - 1)
    return count
