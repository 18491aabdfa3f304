# waspect/errors.py
"""
Error types raised by the weaving engine.

Hierarchy
─────────
    WaspectError (base)
    ├── GrammarError         - pointcut / template / keyword / WAT syntax
    ├── SiteError            - carries advice / function / join-point
    │   ├── ResolutionError      - unknown names, indices out of range, arity
    │   └── ModuleMutationError  - adding globals, locals, functions failed
    ├── ModuleIOError        - reading, writing, converting module files
    └── TransformationError  - malformed transformation description

Template match failures are *not* errors: they yield empty results and the
affected join-point is dropped.
"""

from __future__ import annotations

from typing import Optional


class WaspectError(Exception):
    """Base class for every error raised by :mod:`waspect`."""


class GrammarError(WaspectError):
    """A source text could not be parsed.

    Carries the offending ``text`` and the parser ``position`` so the
    rendered message can point at the failure.
    """

    def __init__(self, message: str, text: str = "", position: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.text = text
        self.position = position

    def __str__(self) -> str:
        if not self.text:
            return self.message
        lines = [self.message, f"  {self.text}"]
        if self.position is not None:
            lines.append("  " + " " * max(0, min(self.position, len(self.text))) + "^")
        return "\n".join(lines)


class SiteError(WaspectError):
    """An error that can name the advice, function and join-point it hit."""

    def __init__(
        self,
        message: str,
        *,
        advice: Optional[str] = None,
        function: Optional[str] = None,
        join_point: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.advice = advice
        self.function = function
        self.join_point = join_point

    def __str__(self) -> str:
        where = [
            f"{label}={value}"
            for label, value in (
                ("advice", self.advice),
                ("function", self.function),
                ("join-point", self.join_point),
            )
            if value
        ]
        if not where:
            return self.message
        return f"{self.message} ({', '.join(where)})"


class ResolutionError(SiteError):
    """A reference inside the transformation could not be resolved."""


class ModuleMutationError(SiteError):
    """Adding or changing an item of the module failed."""


class ModuleIOError(WaspectError):
    """Reading, writing or converting a module file failed."""


class TransformationError(WaspectError):
    """The transformation description is malformed."""


class AssertionFailed(Exception):
    """Raised by the keyword ``:assert`` method.

    Never escapes the substitution lexer: the enclosing keyword is replaced
    by an empty string instead.
    """
