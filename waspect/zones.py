# waspect/zones.py
"""
Context-variable zones and the pointcut-parameter keyword map.

Zones chain child → parent.  The global zone holds the globals and
functions declared in the transformation ``context``; each declared
function gets a child zone for its parameter names and locals; advice
weaving adds one more child zone per join-point function for the
advice's own locals.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Iterable, Optional, Union

from . import lang
from .errors import ResolutionError
from .grammar import ContextArgument

if TYPE_CHECKING:
    from .module import FunctionDefinition

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class FunctionZoneValue:
    index: int
    symbol: str


class Zone:
    """One level of context variables."""

    def __init__(self, parent: Optional["Zone"] = None):
        self.parent = parent
        self.variables: Dict[str, str] = {}
        self.functions: Dict[str, FunctionZoneValue] = {}

    def add_variable(self, name: str, symbol: str) -> None:
        self.variables[name] = symbol

    def add_function(self, name: str, value: FunctionZoneValue) -> None:
        self.functions[name] = value

    def value(self, name: str) -> Optional[str]:
        """Symbol bound to *name* in this zone or the nearest ancestor."""
        zone: Optional[Zone] = self
        while zone is not None:
            if name in zone.variables:
                return zone.variables[name]
            if name in zone.functions:
                return zone.functions[name].symbol
            zone = zone.parent
        return None

    def child(self) -> "Zone":
        return Zone(self)

    def __repr__(self) -> str:
        depth, zone = 0, self.parent
        while zone is not None:
            depth, zone = depth + 1, zone.parent
        return f"Zone(depth={depth}, variables={len(self.variables)}, functions={len(self.functions)})"


class ContextVariables:
    """Keyword map over a zone chain; resolved names are cached."""

    def __init__(self, zone: Zone):
        self.zone = zone
        self._cache: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            cached = self._cache.get(key)
            if cached is not None:
                return cached
            value = self.zone.value(key)
            if value is not None:
                self._cache[key] = value
            return value

    def __repr__(self) -> str:
        return f"ContextVariables({self.zone!r})"


# ═══════════════════════════════════════════════════════════════════════════
# POINTCUT PARAMETERS
# ═══════════════════════════════════════════════════════════════════════════

def resolve_symbol(fn: "FunctionDefinition", arg: ContextArgument) -> str:
    is_param = arg.variable == lang.PARAM
    kind = "parameter" if is_param else "local"
    table = fn.params if is_param else fn.locals

    if arg.index.isdigit():
        ordered = fn.parameters() if is_param else fn.locals_list()
        index = int(arg.index)
        if index >= len(ordered):
            raise ResolutionError(
                f"finding {kind} for function {fn.name}: {kind} index out of range "
                f"(index: {index}, maximum: {len(ordered) - 1})"
            )
        return ordered[index].name

    symbol = arg.index
    if not symbol.startswith("$"):
        aliased = fn.alias_key(symbol)
        if aliased is None:
            raise ResolutionError(f"finding {kind} for function {fn.name}: {kind} named {symbol} not found")
        symbol = aliased
    if symbol not in table:
        raise ResolutionError(f"finding {kind} for function {fn.name}: {kind} index {symbol} not found")
    return table[symbol].name


class PointcutParameters:
    """Keyword map from pointcut argument names to the symbols they bind
    in one function.

    Building it registers each binding as an alias of the function.
    Arguments declared with ``?`` stay unbound.
    """

    def __init__(
        self,
        fn: "FunctionDefinition",
        arguments: Union[Dict[str, ContextArgument], Iterable[ContextArgument]],
    ):
        self.fn = fn
        if isinstance(arguments, dict):
            arguments = arguments.values()
        self.symbols: Dict[str, str] = {}
        for arg in arguments:
            if not arg.index:
                continue
            symbol = resolve_symbol(fn, arg)
            fn.set_alias(symbol, arg.name)
            self.symbols[arg.name] = symbol

    def get(self, key: str) -> Optional[str]:
        return self.symbols.get(key)

    def __repr__(self) -> str:
        return f"PointcutParameters({self.fn.name}, {self.symbols})"
