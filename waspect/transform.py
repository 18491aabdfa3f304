# waspect/transform.py
"""
Transformation description.

A YAML document with three sections::

    templates:            # name -> template pattern
      inc: "(i32.add %a% (i32.const 1))"
    pointcuts:            # name -> reusable pointcut (without context)
      exported: "() => func(* * (..), exported)"
    aspects:
      start: "(call $init)"
      context:
        variables: {counter: "i32 = 0"}
        functions:
          log:
            args: [{name: value, type: i32}]
            imported: {module: env, field: log}
      advices:
        count_calls:
          pointcut: "() => exported() && call(* * (..))"
          advice: "(global.set %counter% (i32.add (global.get %counter%) (i32.const 1))) %this%"

Advice order in the document is significant and kept.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml

from .errors import TransformationError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Argument:
    name: str
    type: str


@dataclass(slots=True)
class ImportSpec:
    module: str
    field: str


@dataclass(slots=True)
class FunctionDefinitionSpec:
    """A function declared in the aspect context."""
    name: str
    args: List[Argument] = field(default_factory=list)
    result: str = ""
    code: str = ""
    variables: Dict[str, str] = field(default_factory=dict)
    imported: Optional[ImportSpec] = None
    exported: Optional[str] = None


@dataclass(slots=True)
class ContextDefinition:
    variables: Dict[str, str] = field(default_factory=dict)
    functions: Dict[str, FunctionDefinitionSpec] = field(default_factory=dict)

    def count_imported_functions(self) -> int:
        return sum(1 for fn in self.functions.values() if fn.imported is not None)


@dataclass(slots=True)
class AdviceDefinition:
    name: str
    pointcut: str = ""
    advice: str = ""
    variables: Dict[str, str] = field(default_factory=dict)
    order: Optional[int] = None
    all: bool = False
    smart: bool = False


@dataclass(slots=True)
class Aspect:
    start: str = ""
    context: ContextDefinition = field(default_factory=ContextDefinition)
    advices: Dict[str, AdviceDefinition] = field(default_factory=dict)


@dataclass(slots=True)
class Transformation:
    templates: Dict[str, str] = field(default_factory=dict)
    pointcuts: Dict[str, str] = field(default_factory=dict)
    aspects: Aspect = field(default_factory=Aspect)


# ═══════════════════════════════════════════════════════════════════════════
# LOADING
# ═══════════════════════════════════════════════════════════════════════════

def _where(path: str) -> str:
    return path or "<root>"


def _mapping(value: Any, path: str) -> Mapping[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise TransformationError(f"{_where(path)}: expected a mapping, got {type(value).__name__}")
    return value


def _known(data: Mapping[str, Any], keys: tuple, path: str) -> None:
    for key in data:
        if key not in keys:
            logger.debug("%s: ignoring unknown key %r", _where(path), key)


def _text(value: Any, path: str, default: str = "") -> str:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise TransformationError(f"{path}: expected a string, got {type(value).__name__}")
    return str(value)


def _flag(value: Any, path: str) -> bool:
    if value is None:
        return False
    if not isinstance(value, bool):
        raise TransformationError(f"{path}: expected a boolean, got {value!r}")
    return value


def _strings(value: Any, path: str) -> Dict[str, str]:
    return {str(k): _text(v, f"{path}.{k}") for k, v in _mapping(value, path).items()}


def _function(name: str, value: Any, path: str) -> FunctionDefinitionSpec:
    data = _mapping(value, path)
    _known(data, ("variables", "args", "result", "code", "imported", "exported"), path)

    raw_args = data.get("args") or []
    if not isinstance(raw_args, list):
        raise TransformationError(f"{path}.args: expected a list")
    args = []
    for i, arg in enumerate(raw_args):
        arg = _mapping(arg, f"{path}.args[{i}]")
        args.append(Argument(
            name=_text(arg.get("name"), f"{path}.args[{i}].name"),
            type=_text(arg.get("type"), f"{path}.args[{i}].type"),
        ))

    imported = None
    if data.get("imported") is not None:
        imp = _mapping(data["imported"], f"{path}.imported")
        imported = ImportSpec(
            module=_text(imp.get("module"), f"{path}.imported.module"),
            field=_text(imp.get("field"), f"{path}.imported.field"),
        )

    exported = data.get("exported")
    return FunctionDefinitionSpec(
        name=name,
        args=args,
        result=_text(data.get("result"), f"{path}.result"),
        code=_text(data.get("code"), f"{path}.code"),
        variables=_strings(data.get("variables"), f"{path}.variables"),
        imported=imported,
        exported=None if exported is None else _text(exported, f"{path}.exported"),
    )


def _advice(name: str, value: Any, path: str) -> AdviceDefinition:
    data = _mapping(value, path)
    _known(data, ("variables", "pointcut", "advice", "order", "all", "smart"), path)
    order = data.get("order")
    if order is not None and (isinstance(order, bool) or not isinstance(order, int)):
        raise TransformationError(f"{path}.order: expected an integer, got {order!r}")
    return AdviceDefinition(
        name=name,
        pointcut=_text(data.get("pointcut"), f"{path}.pointcut"),
        advice=_text(data.get("advice"), f"{path}.advice"),
        variables=_strings(data.get("variables"), f"{path}.variables"),
        order=order,
        all=_flag(data.get("all"), f"{path}.all"),
        smart=_flag(data.get("smart"), f"{path}.smart"),
    )


def from_dict(data: Any) -> Transformation:
    """Build a :class:`Transformation` from already-parsed YAML data."""
    root = _mapping(data, "")
    _known(root, ("templates", "pointcuts", "aspects"), "")

    aspects = _mapping(root.get("aspects"), "aspects")
    _known(aspects, ("start", "context", "advices"), "aspects")
    context = _mapping(aspects.get("context"), "aspects.context")
    _known(context, ("variables", "functions"), "aspects.context")

    functions = {
        str(name): _function(str(name), value, f"aspects.context.functions.{name}")
        for name, value in _mapping(context.get("functions"), "aspects.context.functions").items()
    }
    advices = {
        str(name): _advice(str(name), value, f"aspects.advices.{name}")
        for name, value in _mapping(aspects.get("advices"), "aspects.advices").items()
    }
    return Transformation(
        templates=_strings(root.get("templates"), "templates"),
        pointcuts=_strings(root.get("pointcuts"), "pointcuts"),
        aspects=Aspect(
            start=_text(aspects.get("start"), "aspects.start"),
            context=ContextDefinition(
                variables=_strings(context.get("variables"), "aspects.context.variables"),
                functions=functions,
            ),
            advices=advices,
        ),
    )


def parse_transformation(text: str) -> Transformation:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise TransformationError(f"invalid transformation YAML: {exc}") from exc
    return from_dict(data)


def load_transformation(path: Union[str, Path]) -> Transformation:
    path = Path(path)
    logger.info("Parsing transformation %s", path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise TransformationError(f"reading transformation {path}: {exc}") from exc
    return parse_transformation(text)
