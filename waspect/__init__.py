"""
waspect: aspect-oriented weaving for WebAssembly modules.

A transformation names *advices*: pieces of WebAssembly code woven into
the sites (*join-points*) that a *pointcut* expression selects::

    from waspect import load_transformation, weave

    result = weave(load_transformation("trace.yml"), open("app.wat").read())
    print(result.module.pretty())
"""

__version__ = "0.1.0"

from .config import WeaveOptions, load_options
from .errors import (
    GrammarError,
    ModuleIOError,
    ModuleMutationError,
    ResolutionError,
    SiteError,
    TransformationError,
    WaspectError,
)
from .module import ModuleContext
from .transform import Transformation, load_transformation, parse_transformation
from .weaver import TransformationResult, Weaver, weave

__all__ = [
    "__version__",
    "WeaveOptions",
    "load_options",
    "GrammarError",
    "ModuleIOError",
    "ModuleMutationError",
    "ResolutionError",
    "SiteError",
    "TransformationError",
    "WaspectError",
    "ModuleContext",
    "Transformation",
    "load_transformation",
    "parse_transformation",
    "TransformationResult",
    "Weaver",
    "weave",
]
