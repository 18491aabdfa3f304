# waspect/wat.py
"""
Textual WebAssembly reader and code tree.

The reader accepts the S-expression text format (folded or flat), drops
comments, and produces a tree of :class:`Element` / :class:`Instruction` /
:class:`Text` nodes with parent links.  Flat instruction sequences inside
code containers are folded while reading, so ``local.get 0`` becomes the
node ``(local.get 0)`` and ``block ... end`` becomes ``(block ...)``.

Rendering is canonical: every list renders as ``(name v1 v2 ...)`` with
single spaces.  :func:`render_spans` additionally reports the offsets of
every node inside the canonical text, which the template matcher uses to
map matches back to tree nodes.

Keyword atoms (``%expr%``) are accepted anywhere an atom is, so advice
code can be stored before substitution runs.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from parsimonious.exceptions import IncompleteParseError, ParseError
from parsimonious.grammar import Grammar
from parsimonious.nodes import NodeVisitor

from . import lang
from .errors import GrammarError

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  TREE
# ═══════════════════════════════════════════════════════════════════════════

class Node:
    """Base class of every code-tree node.  Identity is node identity."""

    __slots__ = ("parent",)

    def __init__(self) -> None:
        self.parent: Optional[Container] = None

    def render(self) -> str:
        return render_spans(self)[0]

    def __str__(self) -> str:
        return self.render()

    def clone(self) -> "Node":
        raise NotImplementedError

    def walk(self) -> Iterator["Node"]:
        """Pre-order traversal including this node."""
        yield self

    def owning_function(self) -> Optional["Instruction"]:
        """The nearest ``func`` instruction at or above this node."""
        node: Optional[Node] = self
        while node is not None:
            if isinstance(node, Instruction) and node.name == lang.FUNC:
                return node
            node = node.parent
        return None

    def depth_in_function(self) -> int:
        """Number of parent steps between this node and its function."""
        depth, node = 0, self
        while node is not None:
            if isinstance(node, Instruction) and node.name == lang.FUNC:
                return depth
            node = node.parent
            depth += 1
        return -1


class Text(Node):
    """A single atom: identifier, number, string or keyword."""

    __slots__ = ("value",)

    def __init__(self, value: str):
        super().__init__()
        self.value = value

    @property
    def quoted(self) -> bool:
        return self.value.startswith('"')

    def unquoted(self) -> str:
        return self.value[1:-1] if self.quoted else self.value

    def clone(self) -> "Text":
        return Text(self.value)

    def __repr__(self) -> str:
        return f"Text({self.value!r})"


class Container(Node):
    """Node with ordered children."""

    __slots__ = ("values",)

    def __init__(self, values: Optional[Sequence[Node]] = None):
        super().__init__()
        self.values: List[Node] = []
        if values:
            self.extend(values)

    def walk(self) -> Iterator[Node]:
        stack: List[Node] = [self]
        while stack:
            node = stack.pop()
            yield node
            if isinstance(node, Container):
                stack.extend(reversed(node.values))

    def child_index(self, child: Node) -> int:
        for i, value in enumerate(self.values):
            if value is child:
                return i
        return -1

    def _adopt(self, nodes: Sequence[Node]) -> List[Node]:
        for node in nodes:
            node.parent = self
        return list(nodes)

    def append(self, node: Node) -> None:
        node.parent = self
        self.values.append(node)

    def extend(self, nodes: Sequence[Node]) -> None:
        self.values.extend(self._adopt(nodes))

    def insert(self, index: int, nodes: Sequence[Node]) -> None:
        index = max(0, min(index, len(self.values)))
        self.values[index:index] = self._adopt(nodes)

    def insert_before(self, child: Node, nodes: Sequence[Node]) -> None:
        index = self.child_index(child)
        if index == -1:
            raise ValueError("child not found")
        self.insert(index, nodes)

    def replace_child(self, child: Node, nodes: Sequence[Node]) -> None:
        index = self.child_index(child)
        if index == -1:
            raise ValueError("child not found")
        self.replace_range(index, 1, nodes)

    def replace_range(self, index: int, count: int, nodes: Sequence[Node]) -> None:
        for old in self.values[index:index + count]:
            old.parent = None
        self.values[index:index + count] = self._adopt(nodes)

    def remove_child(self, child: Node) -> None:
        self.replace_child(child, [])

    def remove_children(self, start: Node, count: int) -> None:
        index = self.child_index(start)
        if index == -1:
            raise ValueError("child not found")
        self.replace_range(index, count, [])


class Instruction(Container):
    """A parenthesized list; ``name`` is its leading atom."""

    __slots__ = ("name",)

    def __init__(self, name: str, values: Optional[Sequence[Node]] = None):
        super().__init__(values)
        self.name = name

    def child(self, index: int) -> Optional[Node]:
        if 0 <= index < len(self.values):
            return self.values[index]
        return None

    def clone(self) -> "Instruction":
        return Instruction(self.name, [v.clone() for v in self.values])

    def __repr__(self) -> str:
        return f"Instruction({self.name!r}, {len(self.values)} values)"


class Element(Container):
    """Root sequence of nodes (a module file or a code fragment)."""

    __slots__ = ()

    def clone(self) -> "Element":
        return Element([v.clone() for v in self.values])

    def module(self) -> Optional[Instruction]:
        for value in self.values:
            if isinstance(value, Instruction) and value.name == lang.MODULE:
                return value
        return None

    def __repr__(self) -> str:
        return f"Element({len(self.values)} values)"


# ═══════════════════════════════════════════════════════════════════════════
#  RENDERING
# ═══════════════════════════════════════════════════════════════════════════

Span = Tuple[int, int]


def render_spans(root: Node) -> Tuple[str, Dict[int, Span]]:
    """Render *root* canonically and return ``(text, {id(node): (start, end)})``."""
    parts: List[str] = []
    spans: Dict[int, Span] = {}
    pos = 0

    def emit(s: str) -> None:
        nonlocal pos
        parts.append(s)
        pos += len(s)

    def visit(node: Node) -> None:
        start = pos
        if isinstance(node, Text):
            emit(node.value)
        elif isinstance(node, Instruction):
            emit("(")
            emit(node.name)
            for i, value in enumerate(node.values):
                if node.name or i > 0:
                    emit(" ")
                visit(value)
            emit(")")
        elif isinstance(node, Element):
            for i, value in enumerate(node.values):
                if i > 0:
                    emit(" ")
                visit(value)
        spans[id(node)] = (start, pos)

    visit(root)
    return "".join(parts), spans


def render_all(nodes: Sequence[Node]) -> str:
    return " ".join(n.render() for n in nodes)


def pretty(node: Node, indent: str = "") -> str:
    """Multi-line rendering used for output files."""
    if not isinstance(node, Container):
        return node.render()
    if isinstance(node, Element):
        return "\n".join(pretty(v, indent) for v in node.values) + "\n"
    if node.name == lang.MODULE:
        inner = indent + "  "
        lines = ["(module" + "".join(" " + v.render() for v in node.values if isinstance(v, Text))]
        lines += [inner + pretty(v, inner) for v in node.values if not isinstance(v, Text)]
        return "\n".join(lines) + ")"
    if node.name == lang.FUNC or node.name in lang.STRUCTURED:
        start = body_start(node)
        if start >= len(node.values):
            return node.render()
        head = "(" + " ".join([node.name] + [v.render() for v in node.values[:start]])
        inner = indent + "  "
        body = [inner + pretty(v, inner) for v in node.values[start:]]
        return head + "\n" + "\n".join(body) + ")"
    return node.render()


# ═══════════════════════════════════════════════════════════════════════════
#  FUNCTION LAYOUT
# ═══════════════════════════════════════════════════════════════════════════

def body_start(instr: Instruction) -> int:
    """Index of the first code value of a function or structured block."""
    values = instr.values
    i = 0
    if i < len(values) and isinstance(values[i], Text) and values[i].value.startswith("$"):
        i += 1
    header = lang.FUNC_HEADER if instr.name == lang.FUNC else {lang.TYPE, lang.PARAM, lang.RESULT}
    while i < len(values):
        value = values[i]
        if isinstance(value, Instruction) and value.name in header:
            i += 1
            continue
        break
    return i


def function_body(instr: Instruction) -> List[Node]:
    return instr.values[body_start(instr):]


def function_code(instr: Node) -> str:
    """Code of a function (header excluded) or the rendering of any node."""
    if isinstance(instr, Instruction) and instr.name == lang.FUNC:
        return render_all(function_body(instr))
    return instr.render()


# ═══════════════════════════════════════════════════════════════════════════
#  READER
# ═══════════════════════════════════════════════════════════════════════════

WAT_GRAMMAR = Grammar(r'''
    document        = ws item*
    item            = (sexp / atom) ws
    sexp            = "(" ws item* ")"
    atom            = string / token
    string          = ~r'"(?:[^"\\\n]|\\.)*"'
    token           = ~r'(?:[^\s()";%]+|%(?:[^%"\'`]|"[^"]*"|\'[^\']*\'|`[^`]*`)*%)+'
    ws              = (spaces / line_comment / block_comment)*
    spaces          = ~r'\s+'
    line_comment    = ~r';;[^\n]*'
    block_comment   = ~r'\(;.*?;\)'s
''')


class _TreeBuilder(NodeVisitor):
    """Turns the parse tree into :class:`Node` objects."""

    def generic_visit(self, node, visited_children):
        return visited_children

    def visit_document(self, node, visited_children):
        _, items = visited_children
        return Element(_fold(list(items)))

    def visit_item(self, node, visited_children):
        value, _ = visited_children
        return value[0]

    def visit_sexp(self, node, visited_children):
        _, _, items, _ = visited_children
        items = list(items)
        if items and isinstance(items[0], Text) and not items[0].quoted:
            name, values = items[0].value, items[1:]
        else:
            name, values = "", items
        if name == lang.FUNC:
            start = body_start(Instruction(name, values))
            values = values[:start] + _fold(values[start:])
        elif name in lang.STRUCTURED:
            start = body_start(Instruction(name, values))
            values = values[:start] + _fold(values[start:])
        return Instruction(name, values)

    def visit_atom(self, node, visited_children):
        return visited_children[0]

    def visit_string(self, node, visited_children):
        return Text(node.text)

    def visit_token(self, node, visited_children):
        return Text(node.text)


def _fold(values: List[Node]) -> List[Node]:
    """Fold flat instruction atoms into instruction nodes."""
    out: List[Node] = []
    i = 0
    while i < len(values):
        node, i = _fold_one(values, i)
        out.append(node)
    return out


def _fold_one(values: List[Node], i: int) -> Tuple[Node, int]:
    value = values[i]
    if not isinstance(value, Text) or not lang.is_instruction_name(value.value):
        return value, i + 1
    name = value.value
    i += 1
    if name in (lang.BLOCK, lang.LOOP, lang.IF):
        return _fold_structured(name, values, i)
    args: List[Node] = []
    while i < len(values):
        nxt = values[i]
        if isinstance(nxt, Text) and lang.is_immediate(nxt.value):
            args.append(nxt)
        elif isinstance(nxt, Instruction) and nxt.name in (lang.TYPE, lang.PARAM, lang.RESULT) \
                and name in (lang.CALL_INDIRECT, "select"):
            args.append(nxt)
        else:
            break
        i += 1
    return Instruction(name, args), i


def _fold_structured(name: str, values: List[Node], i: int) -> Tuple[Node, int]:
    head: List[Node] = []
    if i < len(values) and isinstance(values[i], Text) and values[i].value.startswith("$"):
        head.append(values[i])
        i += 1
    while i < len(values) and isinstance(values[i], Instruction) \
            and values[i].name in (lang.TYPE, lang.PARAM, lang.RESULT):
        head.append(values[i])
        i += 1

    branches: List[List[Node]] = [[]]
    while i < len(values):
        value = values[i]
        if isinstance(value, Text) and value.value == lang.END:
            i += 1
            if i < len(values) and isinstance(values[i], Text) and values[i].value.startswith("$"):
                i += 1
            break
        if isinstance(value, Text) and value.value == lang.ELSE and name == lang.IF:
            branches.append([])
            i += 1
            if i < len(values) and isinstance(values[i], Text) and values[i].value.startswith("$"):
                i += 1
            continue
        node, i = _fold_one(values, i)
        branches[-1].append(node)

    if name != lang.IF:
        return Instruction(name, head + branches[0]), i
    parts = head + [Instruction(lang.THEN, branches[0])]
    if len(branches) > 1:
        parts.append(Instruction(lang.ELSE, branches[1]))
    return Instruction(name, parts), i


def _raise_grammar_error(exc: ParseError, text: str, what: str) -> None:
    pos = exc.pos
    line_start = text.rfind("\n", 0, pos) + 1
    line_end = text.find("\n", pos)
    line = text[line_start:line_end if line_end != -1 else len(text)]
    lineno = text.count("\n", 0, pos) + 1
    raise GrammarError(f"invalid {what} at line {lineno}", line, pos - line_start) from exc


def parse(text: str) -> Element:
    """Parse a module or a code fragment into an :class:`Element`."""
    try:
        tree = WAT_GRAMMAR.parse(text)
    except (ParseError, IncompleteParseError) as exc:
        _raise_grammar_error(exc, text, "WebAssembly text")
    return _TreeBuilder().visit(tree)


def parse_code(text: str) -> List[Node]:
    """Parse a code fragment and detach its top-level nodes."""
    element = parse(text)
    nodes = list(element.values)
    for node in nodes:
        node.parent = None
    return nodes


def find(root: Node, predicate: Callable[[Node], bool]) -> List[Node]:
    return [node for node in root.walk() if predicate(node)]
