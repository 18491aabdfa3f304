# waspect/context.py
"""
Pointcut evaluation state.

A :class:`PointcutContext` is what flows through the expression tree: the
module, the current join-points (blocks grouped by function) and the
:class:`TemplateManager` holding the template results found so far.
Filters never mutate their input; they return a new context.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Dict, Iterable, List, Mapping, Optional, Tuple

from . import search
from .errors import ResolutionError
from .keywords import KeywordStack
from .search import JoinPointBlock
from .template import (
    SearchIteration,
    SearchValue,
    Template,
    TemplateContext,
    TemplateResults,
    parse_template,
)

if TYPE_CHECKING:
    from .module import FunctionDefinition, ModuleContext

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# JOIN-POINTS
# ═══════════════════════════════════════════════════════════════════════════

class JoinPoint:
    """Non-empty set of blocks of one function; duplicates are dropped."""

    def __init__(self, blocks: Iterable[JoinPointBlock]):
        self.blocks, _ = search.remove_duplicates(blocks)

    @property
    def function_symbol(self) -> str:
        return self.blocks[0].function_symbol if self.blocks else ""

    def func_definition(self) -> Optional["FunctionDefinition"]:
        if not self.blocks:
            return None
        return self.blocks[0].func_definition()

    def instr_string(self) -> str:
        return " ".join(s for s in (b.instr_string() for b in self.blocks) if s)

    def clone(self) -> "JoinPoint":
        return JoinPoint(b.copy() for b in self.blocks)

    def __len__(self) -> int:
        return len(self.blocks)

    def __repr__(self) -> str:
        return f"JoinPoint({self.function_symbol}, blocks={len(self.blocks)})"


# ═══════════════════════════════════════════════════════════════════════════
# TEMPLATE MANAGER
# ═══════════════════════════════════════════════════════════════════════════

# function symbol -> template name -> results
ResultsMap = Dict[str, Dict[str, List[SearchValue]]]


class TemplateManager:
    """Parsed templates, their memoized contexts, and the results found
    per function."""

    def __init__(
        self,
        templates: Mapping[str, Template],
        contexts: Optional[Dict[str, TemplateContext]] = None,
        results: Optional[ResultsMap] = None,
    ):
        self.templates: Dict[str, Template] = dict(templates)
        self.contexts: Dict[str, TemplateContext] = contexts if contexts is not None else {}
        self.results: ResultsMap = results if results is not None else {}
        self._lock = threading.RLock()

    @classmethod
    def from_sources(cls, sources: Mapping[str, str]) -> "TemplateManager":
        return cls({name: parse_template(name, value) for name, value in sources.items()})

    def context(self, name: str) -> TemplateContext:
        with self._lock:
            ctx = self.contexts.get(name)
            if ctx is not None:
                return ctx
            template = self.templates.get(name)
            if template is None:
                raise ResolutionError(f"template not found {name!r}")
            ctx = TemplateContext(template, self.templates, self.contexts)
            self.contexts[name] = ctx
            return ctx

    def evaluate(self, name: str, code: str) -> Tuple[List[SearchValue], str]:
        """Valid results of template *name* on *code*, plus its match pattern."""
        if not code:
            return [], ""
        ctx = self.context(name)
        return ctx.evaluate(code), ctx.template.pattern()

    def add_results(self, fn_symbol: str, name: str, results: List[SearchValue]) -> None:
        with self._lock:
            self.results.setdefault(fn_symbol, {})[name] = results

    def get_results(
        self,
        fn_symbol: str,
        instr_index: int,
        keyword_maps: KeywordStack,
    ) -> Tuple[Optional[TemplateResults], bool]:
        """Template results of one site, narrowed by the known keywords.

        ``(None, True)`` when the function has no template results;
        ``(None, False)`` when every result was filtered out.
        """
        with self._lock:
            current = self.results.get(fn_symbol)
            if not current:
                return None, True
            filtered: Dict[str, List[SearchValue]] = {}
            for key, found in current.items():
                if instr_index >= len(found):
                    filtered.setdefault(key, found)
                    continue
                narrowed = filter_search([found[instr_index]], keyword_maps)
                if narrowed:
                    filtered[key] = narrowed
        if not filtered:
            return None, False
        return TemplateResults(self.contexts, self.templates, filtered), True

    def merge(self, other: "TemplateManager") -> None:
        """Add the results of *other* that this manager does not have."""
        with self._lock:
            for fn_symbol, by_template in other.results.items():
                mine = self.results.setdefault(fn_symbol, {})
                for name, found in by_template.items():
                    mine.setdefault(name, [v.clone() for v in found])

    def clone(self) -> "TemplateManager":
        """Results are copied; templates and contexts are shared."""
        with self._lock:
            results = {
                fn: {name: [v.clone() for v in found] for name, found in by_template.items()}
                for fn, by_template in self.results.items()
            }
        return TemplateManager(self.templates, self.contexts, results)


def filter_search(current: List[SearchValue], keyword_maps: KeywordStack) -> List[SearchValue]:
    """Keep the iterations agreeing with string keywords of the same name.

    An iteration with children survives only if some child does; if any
    child list empties out the whole filter fails.
    """
    res: List[SearchValue] = []
    for value in current:
        kept = SearchValue(value.key, value.templ, [])
        known = keyword_maps.get_string(value.key)
        for it in value.iter:
            if known is not None and known != it.found:
                continue
            if not it.values:
                kept.iter.append(SearchIteration(it.found, it.values))
                continue
            children = filter_search(it.values, keyword_maps)
            if not children:
                return []
            kept.iter.append(SearchIteration(it.found, children))
        if kept.iter:
            res.append(kept)
    return res


# ═══════════════════════════════════════════════════════════════════════════
# POINTCUT CONTEXT
# ═══════════════════════════════════════════════════════════════════════════

class PointcutContext:
    """Module, join-points and template state of one pointcut evaluation."""

    def __init__(
        self,
        module: "ModuleContext",
        join_points: List[JoinPoint],
        templates: TemplateManager,
    ):
        self.module = module
        self.join_points = join_points
        self.templates = templates

    @classmethod
    def initial(cls, module: "ModuleContext", templates: TemplateManager) -> "PointcutContext":
        """One join-point per defined function."""
        join_points = [JoinPoint([block]) for block in search.init_search(module)]
        return cls(module, join_points, templates)

    def with_join_points(self, join_points: List[JoinPoint]) -> "PointcutContext":
        res = self.clone()
        res.join_points = join_points
        return res

    def template_results(
        self,
        fn_symbol: str,
        instr_index: int,
        keyword_maps: KeywordStack,
    ) -> Tuple[Optional[TemplateResults], bool]:
        return self.templates.get_results(fn_symbol, instr_index, keyword_maps)

    def append(self, other: "PointcutContext") -> "PointcutContext":
        """Union by function: blocks of the same function are merged."""
        if not other.join_points:
            res = self.clone()
            res.templates.merge(other.templates)
            return res
        if not self.join_points:
            res = other.clone()
            res.templates.merge(self.templates)
            return res

        res = self.clone()
        res.templates.merge(other.templates)
        by_function: Dict[str, JoinPoint] = {}
        order: List[str] = []
        for jp in res.join_points:
            by_function[jp.function_symbol] = jp
            order.append(jp.function_symbol)
        for jp in other.join_points:
            symbol = jp.function_symbol
            current = by_function.get(symbol)
            if current is None:
                by_function[symbol] = jp.clone()
                order.append(symbol)
                continue
            current.blocks = search.union(current.blocks, [b.copy() for b in jp.blocks])
        res.join_points = [by_function[symbol] for symbol in order]
        return res

    def clone(self) -> "PointcutContext":
        return PointcutContext(
            self.module,
            [jp.clone() for jp in self.join_points],
            self.templates.clone(),
        )

    def __repr__(self) -> str:
        return f"PointcutContext(join_points={len(self.join_points)})"
