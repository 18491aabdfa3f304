# waspect/weaver.py
"""
Weaving driver.

Order of work for one transformation:

    1. advices are filtered (include/exclude), their pointcuts parsed and,
       unless ``all`` is set, initiated on the untouched module;
    2. advices are sorted: explicit ``order`` first, input order otherwise;
    3. the global context is added (globals, user functions, start code);
    4. each advice is woven into its join-points, one task per join-point;
    5. keywords left in user-added functions are resolved;
    6. queued runtime transforms run once.

Initiating pointcuts before step 3 keeps user-added functions out of the
join-points of regular advices.
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, List, Optional, Union

from . import generator, module as modulelib, transform, wasmio
from .config import WeaveOptions
from .context import JoinPoint, PointcutContext
from .errors import ModuleIOError, SiteError
from .expression import ParsedPointcut
from .generator import GlueFunction
from .keywords import KeywordStack
from .lexer import substitute_stack
from .module import FunctionDefinition, ModuleContext
from .template import Template, parse_template
from .transform import AdviceDefinition, Transformation
from .zones import ContextVariables, FunctionZoneValue, PointcutParameters, Zone

logger = logging.getLogger(__name__)

RUNTIME_DROP_EMPTY_START = "drop-empty-start"
RUNTIME_DEDUPE_TYPES = "dedupe-types"


@dataclass(slots=True)
class Advice:
    """An advice with its parsed pointcut."""
    definition: AdviceDefinition
    pointcut: ParsedPointcut

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def order(self) -> Optional[int]:
        return self.definition.order


def filter_advices(
    advices: Dict[str, AdviceDefinition],
    include: List[str],
    exclude: List[str],
) -> List[AdviceDefinition]:
    """Advices kept by the include/exclude lists, in input order."""
    for name in include:
        if name not in advices:
            logger.warning("included advice %r is not defined", name)
    keep = set(include) if include else set(advices)
    return [adv for name, adv in advices.items() if name in keep and name not in exclude]


def sort_advices(advices: List[Advice]) -> List[Advice]:
    """Stable sort: ordered advices first, ascending."""
    return sorted(advices, key=lambda a: (a.order is None, a.order or 0))


class TransformationResult:
    """The woven module plus what the glue needs."""

    def __init__(self, module: ModuleContext, functions: List[GlueFunction], woven: bool):
        self.module = module
        self.functions = functions
        self.woven = woven

    @property
    def text(self) -> str:
        return self.module.render()

    def glue(self, force: bool = False) -> Optional[str]:
        return generator.generate_glue(self.functions, force)

    def __repr__(self) -> str:
        return f"TransformationResult(woven={self.woven}, functions={len(self.functions)})"


class Weaver:
    """Applies one :class:`Transformation` to one module."""

    def __init__(
        self,
        transformation: Transformation,
        module: ModuleContext,
        options: Optional[WeaveOptions] = None,
        max_workers: Optional[int] = None,
    ):
        self.transformation = transformation
        self.module = module
        self.options = options or WeaveOptions()
        self.max_workers = max_workers
        self.templates: Dict[str, Template] = {
            name: parse_template(name, value) for name, value in transformation.templates.items()
        }
        self.global_zone = Zone()
        # user function name -> zone with its parameters and locals
        self.function_zones: Dict[str, Zone] = {}
        self.glue_functions: List[GlueFunction] = []

    # ── advices ──────────────────────────────────────────────────────────

    def collect_advices(self) -> List[Advice]:
        logger.info("Parsing and filling up the advices")
        definitions = filter_advices(
            self.transformation.aspects.advices, self.options.include, self.options.exclude
        )
        advices: List[Advice] = []
        for definition in definitions:
            if not definition.pointcut:
                logger.warning("Pointcut not defined for advice %s, skipping it", definition.name)
                continue
            pointcut = ParsedPointcut.parse(
                definition.pointcut,
                pointcuts=self.transformation.pointcuts,
                templates=self.templates,
                max_workers=self.max_workers,
            )
            if not definition.all:
                pointcut.init(self.module)
            advices.append(Advice(definition, pointcut))
        if not self.options.ignore_order:
            advices = sort_advices(advices)
        return advices

    # ── global context ───────────────────────────────────────────────────

    def apply_global_context(self) -> List[str]:
        """Add the declared globals and functions; return the new symbols."""
        context = self.transformation.aspects.context
        logger.info(
            "Applying module modifications from global context (globals: %d, functions: %d)",
            len(context.variables), len(context.functions),
        )
        for name, declaration in context.variables.items():
            glob = self.module.add_global(declaration)
            self.module.global_alias[glob.name] = name
            self.global_zone.add_variable(name, glob.name)
            logger.debug("global %s -> %s", name, glob.name)

        fns: List[str] = []
        for name, spec in context.functions.items():
            args = [(arg.name, arg.type) for arg in spec.args]
            params = [arg.type for arg in spec.args]

            if spec.imported is not None:
                fn = self.module.add_import_function(
                    args, spec.result, spec.imported.module, spec.imported.field
                )
                self.glue_functions.append(GlueFunction(
                    name, True, module=spec.imported.module, field_name=spec.imported.field,
                    params=params, result=spec.result,
                ))
            else:
                fn = self.module.add_function(args, spec.result, spec.code)
                if spec.exported is not None:
                    self.module.add_export_function(fn, spec.exported)
                    self.glue_functions.append(GlueFunction(
                        name, False, export_name=spec.exported, params=params, result=spec.result,
                    ))
                self.function_zones[name] = self._function_zone(fn, spec)

            fns.append(fn.name)
            self.module.function_alias[fn.name] = name
            self.global_zone.add_function(name, FunctionZoneValue(self.module.index_of(fn), fn.name))
            logger.debug("function %s -> %s", name, fn.name)
        return fns

    def _function_zone(self, fn: FunctionDefinition, spec: transform.FunctionDefinitionSpec) -> Zone:
        zone = self.global_zone.child()
        for var_name, declaration in spec.variables.items():
            local = self.module.add_local(declaration, fn)
            fn.set_alias(local.name, var_name)
            zone.add_variable(var_name, local.name)
        for param, arg in zip(fn.parameters(), spec.args):
            zone.add_variable(arg.name, param.name)
            fn.set_alias(param.name, arg.name)
        return zone

    def add_start_code(self, code: str) -> str:
        logger.info("Adding starting code")
        fn = self.module.start_function
        if fn is None:
            fn = self.module.add_function()
            self.module.add_start_function(fn)
            self.module.set_start_function(fn)
            logger.debug("added start function %s", fn.name)
        fn.add_code(code)
        return fn.name

    # ── advice weaving ───────────────────────────────────────────────────

    def apply_advice(self, advice: Advice, fns: List[str]) -> None:
        pointcut = advice.pointcut
        if not pointcut.initiated:
            pointcut.init(self.module)
        ctx = pointcut.execute()
        join_points = ctx.join_points
        if not advice.definition.all:
            added = set(fns)
            join_points = [jp for jp in join_points if jp.function_symbol not in added]

        logger.info("Applying advice %s to %d join-points", advice.name, len(join_points))
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = [pool.submit(self._weave_join_point, advice, ctx, jp) for jp in join_points]
            for future in futures:
                future.result()

    def _weave_join_point(self, advice: Advice, ctx: PointcutContext, join_point: JoinPoint) -> None:
        fn = join_point.func_definition()
        if fn is None:
            return
        try:
            self._weave_blocks(advice, ctx, join_point, fn)
        except SiteError as exc:
            exc.advice = exc.advice or advice.name
            exc.function = exc.function or fn.name
            exc.join_point = exc.join_point or " ".join(join_point.instr_string().split())[:80]
            raise

    def _weave_blocks(
        self,
        advice: Advice,
        ctx: PointcutContext,
        join_point: JoinPoint,
        fn: FunctionDefinition,
    ) -> None:
        parent = self.function_zones.get(self.module.function_alias.get(fn.name, ""))
        zone = (parent or self.global_zone).child()
        for name, declaration in advice.definition.variables.items():
            local = self.module.add_local(declaration, fn)
            fn.set_alias(local.name, name)
            zone.add_variable(name, local.name)

        params = PointcutParameters(fn, advice.pointcut.params)
        variables = ContextVariables(zone)
        for i, block in enumerate(join_point.blocks):
            this = {"this": block.instr_string()}
            stack = KeywordStack([this, params, variables, block])
            results, ok = ctx.template_results(fn.name, i, stack)
            if not ok:
                logger.info(
                    "Join-point of %s in %s aborted: template unmatched after filtering with context variables",
                    advice.name, fn.name,
                )
                return
            if results is not None:
                stack = stack.extend([results])
            code = substitute_stack(advice.definition.advice, stack, self.module.order_map())
            logger.debug("advice %s on %s: %s", advice.name, fn.name, " ".join(code.split()))
            block.apply(code, advice.definition.smart)

    # ── added functions ──────────────────────────────────────────────────

    def resolve_added_functions(self, fns: List[str]) -> None:
        """Substitute the keywords still present in user-added functions."""
        logger.info("Applying static transformations to %d added functions", len(fns))
        added = set(fns)
        targets = [fn for fn in self.module.walk_functions() if fn.name in added]
        order_map = self.module.order_map()
        with ThreadPoolExecutor(max_workers=os.cpu_count()) as pool:
            for future in [pool.submit(self._resolve_function, fn, order_map) for fn in targets]:
                future.result()

    def _resolve_function(self, fn: FunctionDefinition, order_map: Dict[str, int]) -> None:
        zone = self.function_zones.get(self.module.function_alias.get(fn.name, fn.name), self.global_zone)
        code = fn.code()
        output = substitute_stack(code, KeywordStack([ContextVariables(zone)]), order_map)
        if output != code:
            logger.debug("resolved keywords in %s", fn.name)
            self.module.replace_function_body(fn, output)

    # ── driver ───────────────────────────────────────────────────────────

    def run(self) -> TransformationResult:
        advices = self.collect_advices()
        if not advices and not self.options.allow_empty:
            logger.info(
                "Aborted transformations because no advices were defined (original: %d, filtered: 0)",
                len(self.transformation.aspects.advices),
            )
            return TransformationResult(self.module, self.glue_functions, False)

        fns = self.apply_global_context()
        if self.transformation.aspects.start:
            fns.append(self.add_start_code(self.transformation.aspects.start))

        for advice in advices:
            self.apply_advice(advice, fns)

        self.resolve_added_functions(fns)
        self.module.queue_runtime_transform(RUNTIME_DROP_EMPTY_START, modulelib.drop_empty_start)
        self.module.queue_runtime_transform(RUNTIME_DEDUPE_TYPES, modulelib.dedupe_types)
        self.module.apply_runtime_transforms()
        return TransformationResult(self.module, self.glue_functions, True)


def weave(
    transformation: Transformation,
    module: Union[str, ModuleContext],
    options: Optional[WeaveOptions] = None,
    max_workers: Optional[int] = None,
) -> TransformationResult:
    """Weave *transformation* into *module* (text or parsed context)."""
    if isinstance(module, str):
        logger.info("Parsing input module")
        module = ModuleContext.from_text(module)
    return Weaver(transformation, module, options, max_workers).run()


# ═══════════════════════════════════════════════════════════════════════════
# FILE PIPELINE
# ═══════════════════════════════════════════════════════════════════════════

def run(options: WeaveOptions) -> TransformationResult:
    """Read the inputs named by *options*, weave, and write the outputs."""
    options = options.resolved()
    logger.info("Reading module %s", options.in_module)
    code = wasmio.read_module(options.in_module, options.dependencies_dir)

    if options.out_module_orig:
        logger.info("Printing untouched module to %s", options.out_module_orig)
        try:
            wasmio.write_module(options.out_module_orig, code, options.dependencies_dir)
        except ModuleIOError as exc:
            logger.error("could not print the original module: %s", exc)

    transformation = transform.load_transformation(options.in_transform)
    result = weave(transformation, code, options)
    if not result.woven:
        return result

    glue = result.glue(force=options.print_js)
    if glue is not None and options.out_js:
        try:
            wasmio.write_text(options.out_js, glue)
            logger.info("Glue written to %s", options.out_js)
        except ModuleIOError as exc:
            logger.warning("could not write the glue file: %s", exc)

    wasmio.write_module(options.out_module, result.module.pretty(), options.dependencies_dir)
    return result


__all__ = [
    "Advice",
    "TransformationResult",
    "Weaver",
    "filter_advices",
    "sort_advices",
    "weave",
    "run",
]
