# waspect/module.py
"""
Module context: the in-memory model of a textual WebAssembly module.

:class:`ModuleContext` wraps the code tree produced by :mod:`waspect.wat`
and keeps typed records for its functions, types and globals in sync with
it.  Every mutation the weaver performs (adding globals, types, functions,
imports, exports, a start function, locals, code at the start or end of a
function) goes through this class so the records never drift from the tree.

Symbols
───────
A function's *symbol* is its ``$name`` in the text.  Functions without one
receive ``$f<index>`` (the names ``wasm2wat --generate-names`` would give).
Unnamed parameters and locals are keyed by their decimal index, which is
what ``local.get N`` references.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from . import generator, lang, variables, wat
from .errors import ModuleMutationError, ResolutionError
from .wat import Element, Instruction, Node, Text

logger = logging.getLogger(__name__)

RuntimeTransform = Callable[["ModuleContext"], None]


# ═══════════════════════════════════════════════════════════════════════════
# DEFINITIONS
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(slots=True)
class ParamDefinition:
    name: str
    type: str
    order: int


@dataclass(slots=True)
class LocalDefinition:
    name: str
    type: str
    order: int
    value: str = ""
    instr: Optional[Instruction] = field(default=None, repr=False, compare=False)


@dataclass(frozen=True, slots=True)
class ImportedDefinition:
    module: str
    field_name: str


@dataclass(slots=True)
class TypeDefinition:
    name: str
    params: List[str] = field(default_factory=list)
    result: str = ""
    added: bool = False

    @property
    def signature(self) -> str:
        return type_signature(self.params, self.result)


@dataclass(slots=True)
class GlobalDefinition:
    name: str
    type: str = ""
    mutable: bool = False
    value: str = ""
    imported: Optional[ImportedDefinition] = None
    export_name: Optional[str] = None


def type_signature(params: Sequence[str], result: str) -> str:
    return f"{result}_{'_'.join(params)}"


class FunctionDefinition:
    """Typed view over one ``func`` node of the module."""

    def __init__(self, instr: Instruction, name: str, order: int):
        self.instr = instr
        self.name = name
        self.order = order
        self.type_name = ""
        self.params: Dict[str, ParamDefinition] = {}
        self.result = ""
        self.locals: Dict[str, LocalDefinition] = {}
        self.imported: Optional[ImportedDefinition] = None
        self.export_name: Optional[str] = None
        self.is_start = False
        self.alias: Dict[str, str] = {}
        # Implicit ``(return)`` handed out by a search, appended on first use.
        self.pending_return: Optional[Instruction] = None
        self.lock = threading.RLock()

    def __repr__(self) -> str:
        return f"FunctionDefinition({self.name!r}, order={self.order})"

    @property
    def is_imported(self) -> bool:
        return self.imported is not None

    @property
    def is_exported(self) -> bool:
        return self.export_name is not None

    def parameters(self) -> List[ParamDefinition]:
        return sorted(self.params.values(), key=lambda p: p.order)

    def locals_list(self) -> List[LocalDefinition]:
        return sorted(self.locals.values(), key=lambda v: v.order)

    def variable(self, name: str) -> Optional[ParamDefinition | LocalDefinition]:
        """Parameter or local by symbol or decimal index."""
        return self.locals.get(name) or self.params.get(name)

    def alias_value(self, key: str) -> Optional[str]:
        return self.alias.get(key)

    def alias_key(self, value: str) -> Optional[str]:
        for k, v in self.alias.items():
            if v == value:
                return k
        return None

    def set_alias(self, symbol: str, name: str) -> None:
        """Bind user *name* to *symbol*; the mapping stays one-to-one."""
        with self.lock:
            previous = self.alias_key(name)
            if previous is not None and previous != symbol:
                del self.alias[previous]
            self.alias[symbol] = name

    def body(self) -> List[Node]:
        return wat.function_body(self.instr)

    def code(self) -> str:
        return wat.function_code(self.instr)

    def add_code(self, code: str) -> None:
        self.add_instrs_at_end(wat.parse_code(code))

    def add_instrs_at_start(self, instrs: Sequence[Node]) -> None:
        with self.lock:
            values = self.instr.values
            index = wat.body_start(self.instr)
            # Skip the constant initializers written for declared locals.
            while index < len(values) and _is_static_local_set(values[index]):
                index += 1
            self.instr.insert(index, list(instrs))

    def add_instrs_at_end(self, instrs: Sequence[Node]) -> None:
        """Insert *instrs* before every ``return`` and at the end of the body."""
        with self.lock:
            returns = [
                node for node in self.instr.walk()
                if isinstance(node, Instruction) and node.name == lang.RETURN
            ]
            for ret in returns:
                parent = ret.parent
                if parent is not None:
                    parent.insert_before(ret, [n.clone() for n in instrs])
            body = self.body()
            if not returns or not body or body[-1] is not returns[-1]:
                self.instr.extend([n.clone() for n in instrs])


def _is_static_local_set(node: Node) -> bool:
    if not isinstance(node, Instruction) or node.name != lang.LOCAL_SET or len(node.values) != 2:
        return False
    value = node.values[1]
    return isinstance(value, Instruction) and value.name.endswith(".const") and len(value.values) == 1


def _text(node: Optional[Node]) -> str:
    return node.value if isinstance(node, Text) else ""


def _parent_name(node: Node) -> str:
    parent = node.parent
    return parent.name if isinstance(parent, Instruction) else ""


# ═══════════════════════════════════════════════════════════════════════════
# MODULE CONTEXT
# ═══════════════════════════════════════════════════════════════════════════

class ModuleContext:
    """Typed records over a module tree plus the mutations the weaver needs."""

    def __init__(self, root: Element):
        self.root = root
        self.function_alias: Dict[str, str] = {}
        self.global_alias: Dict[str, str] = {}
        self._functions: Dict[str, FunctionDefinition] = {}
        self._export_functions: Dict[str, FunctionDefinition] = {}
        self._import_functions: Dict[Tuple[str, str], FunctionDefinition] = {}
        self._start: Optional[FunctionDefinition] = None
        self._types: Dict[str, TypeDefinition] = {}
        self._globals: Dict[str, GlobalDefinition] = {}
        self._runtime_transforms: Dict[str, RuntimeTransform] = {}
        self._applied_transforms: set = set()
        self._lock = threading.RLock()
        self._ensure_module()
        self._fill(self.module)

    @classmethod
    def from_text(cls, text: str) -> "ModuleContext":
        return cls(wat.parse(text))

    def _ensure_module(self) -> None:
        if self.root.module() is None:
            values = list(self.root.values)
            self.root.replace_range(0, len(values), [])
            self.root.append(Instruction(lang.MODULE, values))

    @property
    def module(self) -> Instruction:
        return self.root.module()

    # ── rendering ────────────────────────────────────────────────────────

    def render(self) -> str:
        return self.root.render()

    def pretty(self) -> str:
        return wat.pretty(self.root)

    __str__ = render

    # ── lookups ──────────────────────────────────────────────────────────

    def function(self, name: str) -> Optional[FunctionDefinition]:
        return self._functions.get(name)

    def functions(self) -> List[FunctionDefinition]:
        return list(self._functions.values())

    def function_of(self, instr: Instruction) -> Optional[FunctionDefinition]:
        """Definition of a ``func`` node."""
        for fn in self._functions.values():
            if fn.instr is instr:
                return fn
        return None

    def resolve_function(self, ref: str) -> Optional[FunctionDefinition]:
        """Function referenced by symbol or by numeric index."""
        fn = self._functions.get(ref)
        if fn is None and ref.isdigit():
            fn = self.function_by_index(int(ref))
        return fn

    def function_by_index(self, index: int) -> Optional[FunctionDefinition]:
        for fn in self._functions.values():
            if self.index_of(fn) == index:
                return fn
        return None

    def index_of(self, fn: FunctionDefinition) -> int:
        if fn.is_imported:
            return fn.order
        return fn.order + len(self._import_functions)

    def export_function(self, export_name: str) -> Optional[FunctionDefinition]:
        return self._export_functions.get(export_name)

    def import_function(self, module: str, field_name: str) -> Optional[FunctionDefinition]:
        return self._import_functions.get((module, field_name))

    @property
    def start_function(self) -> Optional[FunctionDefinition]:
        return self._start

    def types(self) -> List[TypeDefinition]:
        return list(self._types.values())

    def type(self, name: str) -> Optional[TypeDefinition]:
        return self._types.get(name)

    def globals(self) -> List[GlobalDefinition]:
        return list(self._globals.values())

    def global_(self, name: str) -> Optional[GlobalDefinition]:
        return self._globals.get(name)

    def order_map(self) -> Dict[str, int]:
        """Function symbol and user alias → function index."""
        res = {fn.name: self.index_of(fn) for fn in self._functions.values()}
        for symbol, alias in self.function_alias.items():
            fn = self._functions.get(symbol)
            if fn is not None:
                res[alias] = self.index_of(fn)
        return res

    def alias_value(self, key: str) -> Optional[str]:
        if key in self.global_alias:
            return self.global_alias[key]
        return self.function_alias.get(key)

    def alias_key(self, value: str) -> Optional[str]:
        for aliases in (self.global_alias, self.function_alias):
            for k, v in aliases.items():
                if v == value:
                    return k
        return None

    # ── filling ──────────────────────────────────────────────────────────

    def _fill(self, block: Node) -> None:
        nodes = [n for n in block.walk() if isinstance(n, Instruction)]
        for instr in nodes:
            if instr.name == lang.TYPE and _parent_name(instr) == lang.MODULE:
                self._fill_type(instr)
        for instr in nodes:
            if instr.name == lang.FUNC and _parent_name(instr) in (lang.MODULE, lang.IMPORT):
                self._fill_function(instr)
        for instr in nodes:
            if instr.name == lang.GLOBAL and _parent_name(instr) in (lang.MODULE, lang.IMPORT):
                self._fill_global(instr)
        for instr in nodes:
            if instr.name == lang.EXPORT and _parent_name(instr) == lang.MODULE:
                self._fill_export(instr)
        for instr in nodes:
            if instr.name == lang.START and _parent_name(instr) == lang.MODULE:
                self._fill_start(instr)

    def _fill_type(self, instr: Instruction) -> None:
        values = instr.values
        if values and isinstance(values[0], Text):
            name = values[0].value
        else:
            name = str(len(self._types))
        typ = TypeDefinition(name)
        for value in values:
            if isinstance(value, Instruction) and value.name == lang.FUNC:
                typ.params, typ.result = _signature_of(value.values)
        self._types[name] = typ

    def _fill_function(self, instr: Instruction) -> None:
        first = instr.values[0] if instr.values else None
        if isinstance(first, Text) and first.value.startswith("$"):
            name = first.value
        else:
            name = f"$f{len(self._functions)}"
            instr.insert(0, [Text(name)])

        imported = None
        parent = instr.parent
        if isinstance(parent, Instruction) and parent.name == lang.IMPORT:
            imported = ImportedDefinition(
                _unquote(parent.child(0)), _unquote(parent.child(1))
            )
        for value in instr.values:
            if isinstance(value, Instruction) and value.name == lang.IMPORT:
                imported = ImportedDefinition(_unquote(value.child(0)), _unquote(value.child(1)))

        if imported is not None:
            order = len(self._import_functions)
        else:
            order = len(self._functions) - len(self._import_functions)
        fn = FunctionDefinition(instr, name, order)
        fn.imported = imported

        param_types: List[str] = []
        for value in instr.values[:wat.body_start(instr)]:
            if not isinstance(value, Instruction):
                continue
            if value.name == lang.TYPE:
                fn.type_name = _text(value.child(0))
            elif value.name == lang.PARAM:
                for pname, ptype in _named_types(value, len(fn.params)):
                    fn.params[pname] = ParamDefinition(pname, ptype, len(fn.params))
                    param_types.append(ptype)
            elif value.name == lang.RESULT:
                fn.result = " ".join(_text(v) for v in value.values)
            elif value.name == lang.LOCAL:
                for lname, ltype in _named_types(value, len(fn.params) + len(fn.locals)):
                    fn.locals[lname] = LocalDefinition(lname, ltype, len(fn.locals), instr=value)
            elif value.name == lang.EXPORT and fn.export_name is None:
                fn.export_name = _unquote(value.child(0))

        typ = self._types.get(fn.type_name) if fn.type_name else None
        if typ is not None and not fn.params:
            for i, ptype in enumerate(typ.params):
                fn.params[str(i)] = ParamDefinition(str(i), ptype, i)
            fn.result = fn.result or typ.result

        self._functions[name] = fn
        if imported is not None:
            self._import_functions[(imported.module, imported.field_name)] = fn
        if fn.export_name is not None:
            self._export_functions[fn.export_name] = fn
        logger.debug("function %s (order=%d, params=%d, result=%r)",
                     name, order, len(fn.params), fn.result)

    def _fill_global(self, instr: Instruction) -> None:
        values = list(instr.values)
        if values and isinstance(values[0], Text) and values[0].value.startswith("$"):
            name = values.pop(0).value
        else:
            name = f"$g{len(self._globals)}"
            instr.insert(0, [Text(name)])
        glob = GlobalDefinition(name)
        parent = instr.parent
        if isinstance(parent, Instruction) and parent.name == lang.IMPORT:
            glob.imported = ImportedDefinition(_unquote(parent.child(0)), _unquote(parent.child(1)))
        for value in values:
            if isinstance(value, Instruction) and value.name == lang.EXPORT:
                glob.export_name = _unquote(value.child(0))
            elif isinstance(value, Instruction) and value.name == lang.IMPORT:
                glob.imported = ImportedDefinition(_unquote(value.child(0)), _unquote(value.child(1)))
            elif isinstance(value, Instruction) and value.name == lang.MUT:
                glob.mutable = True
                glob.type = _text(value.child(0))
            elif isinstance(value, Text) and not glob.type:
                glob.type = value.value
            elif isinstance(value, Instruction) and value.name.endswith(".const"):
                glob.value = "".join(_text(v) for v in value.values)
        self._globals[name] = glob

    def _fill_export(self, instr: Instruction) -> None:
        export_name = _unquote(instr.child(0))
        target = instr.child(1)
        if not isinstance(target, Instruction):
            return
        ref = _text(target.child(0))
        if target.name == lang.FUNC:
            fn = self.resolve_function(ref)
            if fn is None:
                raise ResolutionError(f"exported function {ref} not found in module")
            if fn.export_name is None:
                fn.export_name = export_name
            self._export_functions[export_name] = fn
        elif target.name == lang.GLOBAL:
            glob = self._globals.get(ref)
            if glob is None and ref.isdigit():
                items = list(self._globals.values())
                glob = items[int(ref)] if int(ref) < len(items) else None
            if glob is not None:
                glob.export_name = export_name

    def _fill_start(self, instr: Instruction) -> None:
        ref = _text(instr.child(0))
        fn = self.resolve_function(ref)
        if fn is None:
            raise ResolutionError(f"start function {ref} not found in module")
        self.set_start_function(fn)

    # ── mutations ────────────────────────────────────────────────────────

    def _add_blocks(self, code: str) -> List[Node]:
        """Parse *code* and insert its fields into the module by field order."""
        nodes = wat.parse_code(code)
        if not nodes:
            raise ModuleMutationError(f"parsed code is empty: {code!r}")
        with self._lock:
            module = self.module
            for node in nodes:
                weight = lang.field_order(node.name) if isinstance(node, Instruction) else -1
                index = 0
                for value in module.values:
                    if isinstance(value, Instruction) and lang.field_order(value.name) > weight:
                        break
                    index += 1
                module.insert(index, [node])
                self._fill(node)
        return nodes

    def _fresh_symbol(self, kind: str, start: int, taken) -> str:
        index = start
        while generator.symbol(kind, index) in taken:
            index += 1
        return generator.symbol(kind, index)

    def add_global(self, declaration: str) -> GlobalDefinition:
        """Add a mutable global from a ``type [= value]`` declaration."""
        decl = variables.parse(declaration)
        typ = decl.require_primitive(f"global {declaration!r}")
        with self._lock:
            name = self._fresh_symbol("g", len(self._globals), self._globals)
            self._add_blocks(generator.global_code(name, typ, decl.get_value("0")))
            logger.debug("added global %s %s", name, typ)
            return self._globals[name]

    def add_type(self, params: Sequence[str], result: str = "") -> TypeDefinition:
        with self._lock:
            name = self._fresh_symbol("t", len(self._types), self._types)
            self._add_blocks(generator.type_code(name, list(params), result))
            typ = self._types[name]
            typ.added = True
            return typ

    def resolve_type(self, params: Sequence[str], result: str = "") -> TypeDefinition:
        """Existing type with the same signature, or a new one."""
        signature = type_signature(params, result)
        with self._lock:
            for typ in self._types.values():
                if typ.signature == signature:
                    return typ
            return self.add_type(params, result)

    def add_function(
        self,
        args: Sequence[Tuple[str, str]] = (),
        result: str = "",
        code: str = "",
    ) -> FunctionDefinition:
        """Add a function; *args* holds ``(name, type)`` pairs."""
        with self._lock:
            typ = self.resolve_type([t for _, t in args], result)
            name = self._fresh_symbol("f", len(self._functions), self._functions)
            try:
                self._add_blocks(generator.function_code(name, typ.name, args, result, code))
            except Exception as exc:
                raise ModuleMutationError(f"adding function {name}: {exc}") from exc
            return self._functions[name]

    def add_import_function(
        self,
        args: Sequence[Tuple[str, str]],
        result: str,
        module: str,
        field_name: str,
    ) -> FunctionDefinition:
        with self._lock:
            typ = self.resolve_type([t for _, t in args], result)
            name = self._fresh_symbol("f", len(self._functions), self._functions)
            self._add_blocks(generator.import_function_code(name, typ.name, module, field_name))
            fn = self._functions[name]
            for i, (arg_name, _) in enumerate(args):
                fn.set_alias(str(i), arg_name)
            return fn

    def add_export_function(self, fn: FunctionDefinition, export_name: str) -> FunctionDefinition:
        if export_name in self._export_functions:
            raise ModuleMutationError(f"export name {export_name!r} already in use")
        self._add_blocks(generator.export_function_code(fn.name, export_name))
        return fn

    def add_start_function(self, fn: FunctionDefinition) -> FunctionDefinition:
        if self._start is not None and self._start is not fn:
            raise ModuleMutationError(f"module already has start function {self._start.name}")
        self._add_blocks(generator.start_code(fn.name))
        return fn

    def set_start_function(self, fn: FunctionDefinition) -> None:
        if fn.name not in self._functions:
            raise ModuleMutationError(f"start function {fn.name} is not part of the module")
        fn.is_start = True
        self._start = fn

    def remove_function(self, fn: FunctionDefinition) -> None:
        """Remove a function together with its exports and start field."""
        with self._lock:
            module = self.module
            for node in list(module.values):
                if not isinstance(node, Instruction):
                    continue
                if node is fn.instr:
                    module.remove_child(node)
                elif node.name == lang.START and _text(node.child(0)) == fn.name:
                    module.remove_child(node)
                elif node.name == lang.EXPORT and isinstance(node.child(1), Instruction) \
                        and node.child(1).name == lang.FUNC and _text(node.child(1).child(0)) == fn.name:
                    module.remove_child(node)
            self._functions.pop(fn.name, None)
            if fn.export_name is not None:
                self._export_functions.pop(fn.export_name, None)
            if self._start is fn:
                self._start = None

    def remove_type(self, typ: TypeDefinition) -> None:
        with self._lock:
            for node in list(self.module.values):
                if isinstance(node, Instruction) and node.name == lang.TYPE \
                        and _text(node.child(0)) == typ.name:
                    self.module.remove_child(node)
            self._types.pop(typ.name, None)

    def add_local(self, declaration: str, fn: FunctionDefinition) -> LocalDefinition:
        """Add a local from a ``type [= value]`` declaration."""
        decl = variables.parse(declaration)
        typ = decl.require_primitive(f"local {declaration!r}")
        with fn.lock:
            name = self._fresh_symbol("l", len(fn.locals), fn.locals)
            return self.add_raw_local(name, typ, decl.get_value(""), fn)

    def add_raw_local(self, name: str, typ: str, value: str, fn: FunctionDefinition) -> LocalDefinition:
        with fn.lock:
            existing = fn.locals.get(name)
            if existing is not None:
                return existing
            local_instr = wat.parse_code(generator.local_code(name, typ))[0]
            instrs: List[Node] = [local_instr]
            if value and typ in lang.VALUE_TYPES:
                instrs += wat.parse_code(generator.set_local_code(name, typ, value))
            fn.instr.insert(wat.body_start(fn.instr), instrs)
            local = LocalDefinition(name, typ, len(fn.locals), value, local_instr)
            fn.locals[name] = local
            return local

    def add_code_at_start(self, code: str, fn: FunctionDefinition) -> None:
        nodes = wat.parse_code(code)
        if not nodes:
            raise ModuleMutationError("parsing code to add on function start")
        fn.add_instrs_at_start(nodes)

    def add_code_at_end(self, code: str, fn: FunctionDefinition) -> None:
        nodes = wat.parse_code(code)
        if not nodes:
            raise ModuleMutationError("parsing code to add on function end")
        fn.add_instrs_at_end(nodes)

    def replace_function_body(self, fn: FunctionDefinition, code: str) -> None:
        nodes = wat.parse_code(code)
        with fn.lock:
            start = wat.body_start(fn.instr)
            fn.instr.replace_range(start, len(fn.instr.values) - start, nodes)

    # ── runtime transforms ───────────────────────────────────────────────

    def queue_runtime_transform(self, name: str, transform: RuntimeTransform) -> None:
        """Queue a named idempotent transform; re-queuing a name is a no-op."""
        with self._lock:
            if name not in self._runtime_transforms:
                self._runtime_transforms[name] = transform

    def apply_runtime_transforms(self) -> None:
        logger.info("Applying runtime modifications")
        for name, transform in list(self._runtime_transforms.items()):
            if name in self._applied_transforms:
                continue
            logger.debug("runtime transform %s", name)
            transform(self)
            self._applied_transforms.add(name)

    def walk_functions(self) -> Iterator[FunctionDefinition]:
        """Defined (non-imported) functions in declaration order."""
        for fn in list(self._functions.values()):
            if not fn.is_imported:
                yield fn


# ═══════════════════════════════════════════════════════════════════════════
# HELPERS
# ═══════════════════════════════════════════════════════════════════════════

def _unquote(node: Optional[Node]) -> str:
    return node.unquoted() if isinstance(node, Text) else ""


def _named_types(instr: Instruction, first_index: int) -> List[Tuple[str, str]]:
    """``(param $x i32)`` → ``[("$x", "i32")]``; ``(param i32 i64)`` → indices."""
    values = [v for v in instr.values if isinstance(v, Text)]
    if values and values[0].value.startswith("$"):
        return [(values[0].value, values[1].value if len(values) > 1 else "")]
    return [(str(first_index + i), v.value) for i, v in enumerate(values)]


def _signature_of(values: Sequence[Node]) -> Tuple[List[str], str]:
    params: List[str] = []
    results: List[str] = []
    for value in values:
        if not isinstance(value, Instruction):
            continue
        if value.name == lang.PARAM:
            params += [t for _, t in _named_types(value, len(params))]
        elif value.name == lang.RESULT:
            results += [_text(v) for v in value.values]
    return params, " ".join(results)


# ── built-in runtime transforms ─────────────────────────────────────────────

def drop_empty_start(ctx: ModuleContext) -> None:
    """Remove a start function the weaver created whose body stayed empty."""
    fn = ctx.start_function
    if fn is None or not fn.name.startswith("$" + generator.CODE_INDEX_PREFIX):
        return
    if any(not (isinstance(n, Instruction) and n.name == lang.RETURN and not n.values)
           for n in fn.body()):
        return
    logger.debug("dropping empty start function %s", fn.name)
    ctx.remove_function(fn)


def dedupe_types(ctx: ModuleContext) -> None:
    """Remove type declarations the weaver added twice with one signature."""
    seen: Dict[str, TypeDefinition] = {}
    for typ in ctx.types():
        if typ.signature not in seen:
            seen[typ.signature] = typ
            continue
        if not typ.added:
            continue
        keep = seen[typ.signature]
        for node in ctx.root.walk():
            if isinstance(node, Instruction) and node.name == lang.TYPE \
                    and _text(node.child(0)) == typ.name and _parent_name(node) != lang.MODULE:
                node.values[0].value = keep.name
        for fn in ctx.functions():
            if fn.type_name == typ.name:
                fn.type_name = keep.name
        ctx.remove_type(typ)
