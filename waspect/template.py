# waspect/template.py
"""
Template engine.

A template is a code pattern with named placeholders::

    (i32.add %x% %y%)
    (call %f:includes(callee)% ?)
    (block %body:not_includes(loop)%)

``%name%`` becomes a hole of the structural matcher, ``?`` an anonymous
hole (``\\?`` is a literal question mark).  Text after the first ``:`` of
a placeholder is free-form except for *operations* ``op(args)``:

``includes(T)`` / ``includes_one(T, …)`` / ``includes_all(T, …)``
    the text bound to the placeholder must also match template ``T``.
``defines(v, …)``
    placed right after an include operation; the variables must be known
    to the included templates.
``not_op(…)``
    negates the operation that follows.

Searching produces a forest of :class:`SearchValue`: one per match, each
iteration holding the matched text and the values of the placeholders,
recursively for included templates.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from . import matcher
from .errors import GrammarError, ResolutionError
from .matcher import clear_string

logger = logging.getLogger(__name__)

DEFINES = "defines"
INCLUDES = "includes"
INCLUDES_ONE = "includes_one"
INCLUDES_ALL = "includes_all"
NOT = "not_"

TEMPLATE_OPERATIONS = (INCLUDES, INCLUDES_ONE, INCLUDES_ALL)

_VARIABLE_RE = re.compile(r"%[a-zA-Z][^%]*%")
_OPERATION_RE = re.compile(r":!?[a-zA-Z][\w\d]*\([^)]*\)")

_PLACEHOLDER_RE = re.compile(r"%[^%]+%")
_WILDCARD_RE = re.compile(r"(?<!\\)\?")
_ESCAPED_WILDCARD_RE = re.compile(r"\\\?")


class _NotFound(Exception):
    pass


class _NotMatch(Exception):
    pass


# ═══════════════════════════════════════════════════════════════════════════
# SEARCH RESULTS
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(slots=True)
class SearchIteration:
    found: str
    values: List["SearchValue"] = field(default_factory=list)

    def clone(self) -> "SearchIteration":
        return SearchIteration(self.found, [v.clone() for v in self.values])


@dataclass(slots=True)
class SearchValue:
    """A matched placeholder (or template) and its iterations."""

    key: str
    templ: str
    iter: List[SearchIteration] = field(default_factory=list)

    @property
    def found(self) -> str:
        return self.iter[0].found if self.iter else ""

    def clone(self) -> "SearchValue":
        return SearchValue(self.key, self.templ, [it.clone() for it in self.iter])

    def get(self, key: str) -> Optional["SearchValue"]:
        """First value bound to *key*, depth first."""
        if self.key == key:
            return self
        for it in self.iter:
            for value in it.values:
                found = value.get(key)
                if found is not None:
                    return found
        return None

    def remove(self, key: str) -> Optional["SearchValue"]:
        """Drop *key* and its text, in place.  ``None`` when *key* is this value."""
        child, removed = _remove_search(self, key)
        if removed and child is None:
            return None
        return self

    def replace(self, old: "ReplaceArg", new: "ReplaceArg") -> "SearchValue":
        """Replace a placeholder value or a piece of text, in place."""
        value = new.value
        if new.is_reference:
            result = self.get(value)
            if result is None or not result.iter:
                return self
            value = result.found
        if old.is_reference:
            _replace_by_reference(self, old.value, value)
        else:
            _replace_by_string(self, old.value, value)
        return self


@dataclass(slots=True)
class ReplaceArg:
    value: str
    is_reference: bool


def _span(it: SearchIteration, value: SearchValue, offset: int):
    start = it.found.find(value.found, offset)
    if start == -1:
        start = offset
    return start, start + len(value.found)


def _remove_search(s: SearchValue, key: str):
    if s.key == key:
        return None, True
    for it in s.iter:
        offset = 0
        for i, value in enumerate(it.values):
            if not value.iter:
                continue
            start, end = _span(it, value, offset)
            offset = end
            child, removed = _remove_search(value, key)
            if not removed:
                continue
            if child is None:
                del it.values[i]
                it.found = clear_string(it.found[:start] + it.found[end:])
            else:
                it.found = clear_string(it.found[:start] + value.found + it.found[end:])
            return value, True
    return s, False


def _replace_by_reference(s: SearchValue, key: str, new_value: str) -> bool:
    if not s.iter:
        return False
    if s.key == key:
        s.iter[0].found = new_value
        s.iter[0].values = []
        return True
    it = s.iter[0]
    changed = False
    offset = 0
    for value in it.values:
        if not value.iter:
            continue
        start, end = _span(it, value, offset)
        if _replace_by_reference(value, key, new_value):
            it.found = it.found[:start] + value.found + it.found[end:]
            changed = True
        offset = start + len(value.found)
    return changed


def _replace_by_string(s: SearchValue, old: str, new: str) -> bool:
    if not s.iter:
        return False
    it = s.iter[0]
    if not it.values:
        previous = it.found
        it.found = it.found.replace(old, new)
        return previous != it.found
    changed = False
    offset = 0
    for value in it.values:
        if not value.iter:
            continue
        start, end = _span(it, value, offset)
        if _replace_by_string(value, old, new):
            it.found = it.found[:start] + value.found + it.found[end:]
            changed = True
        offset = start + len(value.found)
    return changed


# ═══════════════════════════════════════════════════════════════════════════
# TEMPLATES
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(slots=True)
class VariableOperation:
    name: str
    args: List[str] = field(default_factory=list)


@dataclass(slots=True)
class TemplateVariable:
    name: str
    operations: List[VariableOperation] = field(default_factory=list)


@dataclass(slots=True)
class TemplateInclude:
    template: "Template"
    included: bool = True


class Template:
    """A named pattern with placeholders and nested template references."""

    def __init__(self, key: str, value: str):
        self.key = key
        self.value = value
        self.variables: Dict[str, TemplateVariable] = {}
        # placeholder -> template key -> include
        self.children: Dict[str, Dict[str, TemplateInclude]] = {}

    def __repr__(self) -> str:
        return f"Template({self.key!r}, {self.value!r})"

    def add_variable(self, name: str) -> None:
        self.variables.setdefault(name, TemplateVariable(name))

    def add_operation(self, name: str, op_name: str, args: List[str]) -> None:
        self.add_variable(name)
        self.variables[name].operations.append(VariableOperation(op_name, list(args)))

    def add_child(self, variable: str, child: "Template", included: bool = True) -> TemplateInclude:
        include = TemplateInclude(child, included)
        self.children.setdefault(variable, {})[child.key] = include
        return include

    def pattern(self) -> str:
        """The matcher pattern for this template."""

        def hole(m: re.Match) -> str:
            text = m.group(0)[1:-1]
            return f":[{text.split(':', 1)[0]}]"

        value = _PLACEHOLDER_RE.sub(hole, self.value)
        value = _WILDCARD_RE.sub(f":[{matcher.ANONYMOUS}]", value)
        value = _ESCAPED_WILDCARD_RE.sub("?", value)
        return clear_string(value)

    # ── searching ────────────────────────────────────────────────────────

    def search(self, parent: "Template", id_: str, key: str, target: str) -> List[SearchValue]:
        try:
            return self._search(parent, id_, key, target)
        except (_NotFound, _NotMatch):
            return []

    def _search(self, parent: "Template", id_: str, key: str, target: str) -> List[SearchValue]:
        iterations = self._resolve(parent, id_, key, self.pattern(), target)
        if not iterations:
            raise _NotFound()
        return [SearchValue(id_, self.key, [it]) for it in iterations]

    def _resolve(self, parent: "Template", id_: str, key: str, pattern: str, target: str) -> List[SearchIteration]:
        matches = matcher.execute(pattern, target)
        include = parent.children.get(id_, {}).get(key)
        if not matches:
            if include is not None and include.included:
                raise _NotMatch()
            raise _NotFound()
        if include is not None and not include.included:
            raise _NotMatch()

        found: List[SearchIteration] = []
        for match in matches:
            try:
                values = self._environment_values(match.environment)
            except _NotFound:
                if not match.matched:
                    continue
                try:
                    found.extend(self._resolve(parent, id_, key, pattern, match.matched[1:]))
                except (_NotFound, _NotMatch):
                    continue
                continue
            found.append(SearchIteration(clear_string(match.matched), values))
        return found

    def _environment_values(self, environment: List[matcher.MatchEnvironment]) -> List[SearchValue]:
        found: List[SearchValue] = []
        for env in environment:
            value = SearchValue(env.variable, self.key, [SearchIteration(clear_string(env.value))])
            found.append(value)
            children = self.children.get(env.variable)
            if not children:
                continue
            invalid = 0
            for include in children.values():
                child = include.template
                try:
                    values = child._search(self, env.variable, child.key, env.value)
                except _NotFound:
                    continue
                except _NotMatch:
                    invalid += 1
                    continue
                value.iter[0].values.extend(values)
            if invalid and invalid == len(children):
                raise _NotFound()
        return found


def parse_template(name: str, value: str) -> Template:
    """Read the placeholders and operations of a template body."""
    template = Template(name, value)
    for variable in _VARIABLE_RE.findall(value):
        var_name = variable.split(":", 1)[0].strip("%")
        template.add_variable(var_name)
        for op in _OPERATION_RE.findall(variable):
            op_name = op[1:op.index("(")]
            args = [a.strip() for a in op[op.index("(") + 1:-1].split(",") if a.strip()]
            if op_name.startswith(NOT):
                template.add_operation(var_name, NOT, [])
                template.add_operation(var_name, op_name[len(NOT):], args)
            else:
                template.add_operation(var_name, op_name, args)
    return template


# ═══════════════════════════════════════════════════════════════════════════
# INBOUND OPERATIONS
# ═══════════════════════════════════════════════════════════════════════════

class InboundOperation:
    """A constraint on the children of a search result."""

    name = ""

    def __init__(self, template: Template, variable: str, keys: List[str], definitions: List[str]):
        self.template = template
        self.variable = variable
        self.keys = keys
        self.definitions = definitions

    def execute(self, ctx: "TemplateContext") -> Dict[str, TemplateInclude]:
        """Register the referenced templates as children of the placeholder."""
        res: Dict[str, TemplateInclude] = {}
        for key in self.keys:
            other = ctx.context_for(key)
            for definition in self.definitions:
                if definition not in other.known_variables:
                    raise ResolutionError(
                        f"variable {definition} on template {key} was not defined on dependent templates"
                    )
            res[other.template.key] = ctx.template.add_child(self.variable, other.template, True)
        return res

    def validate(self, search: SearchValue) -> bool:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{self.name}({', '.join(self.keys)})"


class IncludesOperation(InboundOperation):
    name = INCLUDES

    def __init__(self, template, variable, keys, definitions):
        if len(keys) != 1:
            raise GrammarError(f"operation {INCLUDES!r} must have exactly one argument")
        super().__init__(template, variable, keys, definitions)

    def validate(self, search: SearchValue) -> bool:
        return includes_variable(search, self.variable, self.keys[0])


class IncludesOneOperation(InboundOperation):
    name = INCLUDES_ONE

    def validate(self, search: SearchValue) -> bool:
        return any(includes_variable(search, self.variable, k) for k in self.keys)


class IncludesAllOperation(InboundOperation):
    name = INCLUDES_ALL

    def validate(self, search: SearchValue) -> bool:
        return all(includes_variable(search, self.variable, k) for k in self.keys)


class NotOperation(InboundOperation):
    name = NOT

    def __init__(self, op: InboundOperation):
        super().__init__(op.template, op.variable, op.keys, op.definitions)
        self.op = op

    def execute(self, ctx: "TemplateContext") -> Dict[str, TemplateInclude]:
        res = self.op.execute(ctx)
        for include in res.values():
            include.included = False
        return res

    def validate(self, search: SearchValue) -> bool:
        return not self.op.validate(search)

    def __repr__(self) -> str:
        return f"not({self.op!r})"


_INCLUDE_CLASSES = {
    INCLUDES: IncludesOperation,
    INCLUDES_ONE: IncludesOneOperation,
    INCLUDES_ALL: IncludesAllOperation,
}


def includes_variable(s: SearchValue, variable: str, template_key: str) -> bool:
    for it in s.iter:
        for value in it.values:
            if value.templ == template_key:
                return True
            if value.key == variable and includes_variable(value, variable, template_key):
                return True
    return False


# ═══════════════════════════════════════════════════════════════════════════
# CONTEXT
# ═══════════════════════════════════════════════════════════════════════════

class TemplateContext:
    """A template prepared for searching: operations resolved, children
    linked.  Contexts of included templates are memoized in
    ``contexts``, shared by every context built from the same table."""

    def __init__(
        self,
        template: Template,
        templates: Dict[str, Template],
        contexts: Optional[Dict[str, "TemplateContext"]] = None,
    ):
        self.template = template
        self.templates = templates
        self.contexts: Dict[str, TemplateContext] = contexts if contexts is not None else {}
        self.variable_operations: Dict[str, List[InboundOperation]] = {}
        self.known_variables: Set[str] = set()
        self._build()

    def context_for(self, key: str) -> "TemplateContext":
        ctx = self.contexts.get(key)
        if ctx is not None:
            return ctx
        template = self.templates.get(key)
        if template is None:
            raise ResolutionError(f"template {key!r} not found")
        ctx = TemplateContext(template, self.templates, self.contexts)
        self.contexts[template.key] = ctx
        return ctx

    def _build(self) -> None:
        for name, variable in self.template.variables.items():
            ops = variable.operations
            definitions: List[str] = []
            i = len(ops) - 1
            while i >= 0:
                op = ops[i]
                negated = i > 0 and ops[i - 1].name == NOT
                if op.name == DEFINES:
                    if negated:
                        raise GrammarError(f"operation {DEFINES!r} must not be wrapped with {NOT!r}")
                    if i == 0 or ops[i - 1].name not in TEMPLATE_OPERATIONS:
                        raise GrammarError(
                            f"operation {DEFINES!r} must be after some template operation "
                            f"(e.g. {INCLUDES!r}, {INCLUDES_ONE!r}, ...)"
                        )
                    self.known_variables.update(op.args)
                    definitions.extend(op.args)
                elif op.name in _INCLUDE_CLASSES:
                    inbound = _INCLUDE_CLASSES[op.name](self.template, name, op.args, definitions)
                    if negated:
                        inbound = NotOperation(inbound)
                        i -= 1
                    inbound.execute(self)
                    self.variable_operations.setdefault(name, []).append(inbound)
                    definitions = []
                elif op.name == NOT:
                    follow = ops[i + 1].name if i + 1 < len(ops) else ""
                    raise GrammarError(f"operation {NOT!r} cannot be used with {follow!r}")
                else:
                    raise GrammarError(f"unknown template operation {op.name!r}", self.template.value)
                i -= 1
            self.known_variables.add(name)

    def search(self, code: str) -> List[SearchValue]:
        key = self.template.key
        return self.template.search(self.template, key, key, code)

    def validate_children(self, searches: List[SearchValue]) -> bool:
        for search in searches:
            for name, operations in self.variable_operations.items():
                for op in operations:
                    if not op.validate(search):
                        logger.debug("template %s: %r failed on %s", self.template.key, op, name)
                        return False
        return True

    def validate_values(self, searches: List[SearchValue], seen: Optional[Dict[str, str]] = None) -> bool:
        """Every placeholder bound twice must bind the same text."""
        seen = {} if seen is None else seen
        for search in searches:
            if not search.iter:
                continue
            if search.key in seen:
                if seen[search.key] != search.found:
                    return False
                continue
            seen[search.key] = search.found
            for it in search.iter:
                if not self.validate_values(it.values, seen):
                    return False
        return True

    def evaluate(self, code: str) -> List[SearchValue]:
        """Search *code* and keep only the valid results."""
        results = self.search(code)
        if not results or not self.validate_children(results):
            return []
        return [r for r in results if self.validate_values([r])]


# ═══════════════════════════════════════════════════════════════════════════
# OUTBOUND OPERATIONS AND KEYWORDS
# ═══════════════════════════════════════════════════════════════════════════

class TemplateValue:
    """A search result seen from keyword code.

    ``select``, ``remove`` and ``replace`` return new values; the result
    text is the first iteration of the first remaining result.
    """

    def __init__(self, search: List[SearchValue], known_variables: Set[str]):
        self.search = search
        self.known_variables = known_variables

    def _check(self, selector: str, op: str) -> None:
        if selector not in self.known_variables:
            raise ResolutionError(
                f"invalid selector executing {op} operation: {selector!r} is not registered as a known variable"
            )

    def select(self, selector: str) -> "TemplateValue":
        self._check(selector, "select")
        found = [v for v in (s.get(selector) for s in self.search) if v is not None]
        return TemplateValue(found, self.known_variables)

    def remove(self, selector: str) -> "TemplateValue":
        self._check(selector, "remove")
        res = [v for v in (s.clone().remove(selector) for s in self.search) if v is not None]
        return TemplateValue(res, self.known_variables)

    def replace(self, old: ReplaceArg, new: ReplaceArg) -> "TemplateValue":
        if old.is_reference:
            self._check(old.value, "replace")
        if new.is_reference:
            self._check(new.value, "replace")
        res = [s.clone().replace(old, new) for s in self.search]
        return TemplateValue(res, self.known_variables)

    @property
    def found(self) -> str:
        if not self.search or not self.search[0].iter:
            return ""
        return self.search[0].found

    def keyword_text(self) -> str:
        return self.found

    def keyword_prop(self, key: str) -> str:
        return self.select(key).found

    def __repr__(self) -> str:
        return f"TemplateValue({self.found!r})"


class TemplateKeyword(TemplateValue):
    """The keyword bound to a template name in advice code."""

    def __init__(self, key: str, results: List[SearchValue], context: TemplateContext):
        super().__init__(results, context.known_variables)
        self.key = key
        self.context = context

    @property
    def value(self) -> str:
        return self.found


class TemplateResults:
    """Keyword map over the template results of one instruction site.

    Template names resolve to :class:`TemplateKeyword`; placeholder names
    resolve to the text they bound in the first result holding them.
    """

    def __init__(
        self,
        contexts: Dict[str, TemplateContext],
        templates: Dict[str, Template],
        results: Dict[str, List[SearchValue]],
    ):
        self.contexts = contexts
        self.templates = templates
        self.results = results

    def get(self, key: str):
        if key in self.templates:
            result = self.results.get(key)
            if not result or not result[0].iter:
                return None
            return TemplateKeyword(key, result, self.contexts[key])
        for result in self.results.values():
            for search in result:
                value = search.get(key)
                if value is not None and value is not search and value.iter:
                    return value.found
        return None

    def __repr__(self) -> str:
        return f"TemplateResults({sorted(self.results)})"
