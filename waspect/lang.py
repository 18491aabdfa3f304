# waspect/lang.py
"""WebAssembly vocabulary used by the reader, the module context and the
smart advice mode: value types, module field names, and the operand/result
signatures of the instructions the weaver reasons about."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

# ═══════════════════════════════════════════════════════════════════════════
#  TYPES
# ═══════════════════════════════════════════════════════════════════════════

I32 = "i32"
I64 = "i64"
F32 = "f32"
F64 = "f64"
ANY = "*"

VALUE_TYPES: Tuple[str, ...] = (I32, I64, F32, F64)

# ═══════════════════════════════════════════════════════════════════════════
#  INSTRUCTION AND FIELD NAMES
# ═══════════════════════════════════════════════════════════════════════════

MODULE = "module"
FUNC = "func"
GLOBAL = "global"
MUT = "mut"
IMPORT = "import"
EXPORT = "export"
TABLE = "table"
MEMORY = "memory"
DATA = "data"
ELEM = "elem"
START = "start"
TYPE = "type"
PARAM = "param"
RESULT = "result"
LOCAL = "local"

CALL = "call"
CALL_INDIRECT = "call_indirect"
RETURN = "return"
LOCAL_GET = "local.get"
LOCAL_SET = "local.set"
LOCAL_TEE = "local.tee"
GLOBAL_GET = "global.get"
GLOBAL_SET = "global.set"

BLOCK = "block"
LOOP = "loop"
IF = "if"
THEN = "then"
ELSE = "else"
END = "end"

# Header items of a function; everything after them is code.
FUNC_HEADER = frozenset({TYPE, PARAM, RESULT, LOCAL, EXPORT, IMPORT})

# Sort weight of module fields; new fields are inserted after every field
# of lower or equal weight.
MODULE_FIELD_ORDER: Dict[str, int] = {
    TYPE: 0,
    IMPORT: 1,
    FUNC: 2,
    TABLE: 3,
    MEMORY: 4,
    GLOBAL: 5,
    EXPORT: 6,
    START: 7,
    ELEM: 8,
    DATA: 9,
}

# Instructions whose operands are unconstrained; smart weaving stops here.
CONTROL_FLOW = frozenset({BLOCK, LOOP, THEN, ELSE, "unreachable", "drop"})

# Folded containers whose children are instruction sequences.
STRUCTURED = frozenset({BLOCK, LOOP, IF, THEN, ELSE})


def is_control_flow(name: str) -> bool:
    return name in CONTROL_FLOW


def field_order(name: str) -> int:
    return MODULE_FIELD_ORDER.get(name, len(MODULE_FIELD_ORDER))


# ═══════════════════════════════════════════════════════════════════════════
#  SIGNATURES
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True, slots=True)
class InstructionSignature:
    """Operand and result types of one instruction (``*`` = any)."""
    name: str
    args: Tuple[str, ...]
    returns: Tuple[str, ...]


_SIGNATURES: Dict[str, InstructionSignature] = {}


def _sig(name: str, args: Tuple[str, ...], returns: Tuple[str, ...]) -> None:
    _SIGNATURES[name] = InstructionSignature(name, args, returns)


def _build_signatures() -> None:
    # control flow
    for name in (BLOCK, LOOP, "unreachable", "nop"):
        _sig(name, (), ())
    for name in ("br", "br_if", THEN, ELSE, END, "drop"):
        _sig(name, (ANY,), ())
    _sig("br_table", (ANY, I32), ())
    _sig(IF, (I32, ANY, ANY), ())
    _sig(RETURN, (ANY,), (ANY,))
    _sig("select", (ANY, ANY, I32), (ANY,))
    _sig(CALL, (), ())
    _sig(CALL_INDIRECT, (), ())

    # variables
    _sig(LOCAL_GET, (), (ANY,))
    _sig(LOCAL_SET, (ANY,), ())
    _sig(LOCAL_TEE, (ANY,), (ANY,))
    _sig(GLOBAL_GET, (), (ANY,))
    _sig(GLOBAL_SET, (ANY,), ())

    for t in VALUE_TYPES:
        _sig(f"{t}.const", (), (t,))
        _sig(f"{t}.load", (ANY,), (t,))
        _sig(f"{t}.store", (ANY, t), ())

    # integer arithmetic and comparison
    for t in (I32, I64):
        for op in ("add", "sub", "mul", "div_s", "div_u", "rem_s", "rem_u",
                   "and", "or", "xor", "shl", "shr_s", "shr_u", "rotl", "rotr"):
            _sig(f"{t}.{op}", (t, t), (t,))
        for op in ("clz", "ctz", "popcnt"):
            _sig(f"{t}.{op}", (t,), (t,))
        _sig(f"{t}.eqz", (t,), (I32,))
        for op in ("eq", "ne", "lt_s", "lt_u", "le_s", "le_u",
                   "gt_s", "gt_u", "ge_s", "ge_u"):
            _sig(f"{t}.{op}", (t, t), (I32,))

    # float arithmetic and comparison
    for t in (F32, F64):
        for op in ("add", "sub", "mul", "div", "min", "max", "copysign"):
            _sig(f"{t}.{op}", (t, t), (t,))
        for op in ("sqrt", "ceil", "floor", "trunc", "nearest", "abs", "neg"):
            _sig(f"{t}.{op}", (t,), (t,))
        for op in ("eq", "ne", "lt", "le", "gt", "ge"):
            _sig(f"{t}.{op}", (t, t), (I32,))

    # conversions
    _sig("i32.wrap_i64", (I64,), (I32,))
    _sig("i64.extend_i32_s", (I32,), (I64,))
    _sig("i64.extend_i32_u", (I32,), (I64,))
    for it in (I32, I64):
        for ft in (F32, F64):
            for sign in ("s", "u"):
                _sig(f"{it}.trunc_{ft}_{sign}", (ft,), (it,))
                _sig(f"{ft}.convert_{it}_{sign}", (it,), (ft,))
    _sig("f32.demote_f64", (F64,), (F32,))
    _sig("f64.promote_f32", (F32,), (F64,))
    _sig("i32.reinterpret_f32", (F32,), (I32,))
    _sig("i64.reinterpret_f64", (F64,), (I64,))
    _sig("f32.reinterpret_i32", (I32,), (F32,))
    _sig("f64.reinterpret_i64", (I64,), (F64,))
    _sig("i32.extend8_s", (I32,), (I32,))
    _sig("i32.extend16_s", (I32,), (I32,))
    for bits in ("8", "16", "32"):
        _sig(f"i64.extend{bits}_s", (I64,), (I64,))

    # narrow memory access
    for it, widths in ((I32, ("8", "16")), (I64, ("8", "16", "32"))):
        for w in widths:
            for sign in ("s", "u"):
                _sig(f"{it}.load{w}_{sign}", (ANY,), (it,))
            _sig(f"{it}.store{w}", (ANY, it), ())
    _sig("memory.size", (), (I32,))
    _sig("memory.grow", (I32,), (I32,))


_build_signatures()


def signature(name: str) -> Optional[InstructionSignature]:
    """Return the signature of instruction *name*, if known."""
    return _SIGNATURES.get(name)


# ═══════════════════════════════════════════════════════════════════════════
#  LEXICAL CLASSES
# ═══════════════════════════════════════════════════════════════════════════

_INSTRUCTION_NAME_RE = re.compile(r"[a-z][a-z0-9_]*(?:\.[a-z0-9_]+)*")
_IMMEDIATE_WORDS = frozenset({"nan", "inf", "func", "extern"})
_LANE_SHAPE_RE = re.compile(r"[if](?:8|16|32|64)x\d+")


def is_immediate(atom: str) -> bool:
    """True when *atom* is an operand of the preceding instruction."""
    if not atom:
        return False
    if atom[0] in '$"+-%' or atom[0].isdigit():
        return True
    if "=" in atom or atom.startswith("nan:"):
        return True
    return atom in _IMMEDIATE_WORDS or bool(_LANE_SHAPE_RE.fullmatch(atom))


def is_instruction_name(atom: str) -> bool:
    return bool(_INSTRUCTION_NAME_RE.fullmatch(atom)) and not is_immediate(atom)
