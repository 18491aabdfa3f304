# waspect/matcher.py
"""
Structural hole matcher over instruction text.

A pattern is literal text with *holes* ``:[name]``.  A hole matches any
text that is balanced with respect to parentheses and string literals, as
little of it as possible; a hole that ends the pattern extends to the end
of the enclosing group.  Whitespace in the pattern matches one or more
whitespace characters in the input.  A hole name used twice must bind the
same text both times; ``_`` is anonymous and never binds.

Matches are reported leftmost first and never overlap.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

logger = logging.getLogger(__name__)

ANONYMOUS = "_"

_HOLE_RE = re.compile(r":\[([^\]\s]+)\]")

_COMMENT_RE = re.compile(r"(\s*;;[^\n]*|\s*\(;[\s\S]*?;\)\s*)")
_EDGE_SPACES_RE = re.compile(r"^\s+|\s+$")
_LPAREN_SPACES_RE = re.compile(r"\(\s+")
_RPAREN_SPACES_RE = re.compile(r"\s+\)")
_INNER_SPACES_RE = re.compile(r"\s{2,}")


def clear_string(value: str) -> str:
    """Normalize code: drop comments and redundant whitespace."""
    value = _COMMENT_RE.sub("", value)
    value = _EDGE_SPACES_RE.sub("", value)
    value = _LPAREN_SPACES_RE.sub("(", value)
    value = _RPAREN_SPACES_RE.sub(")", value)
    return _INNER_SPACES_RE.sub(" ", value)


@dataclass(slots=True)
class MatchEnvironment:
    variable: str
    value: str
    start: int
    end: int


@dataclass(slots=True)
class Match:
    start: int
    end: int
    matched: str
    environment: List[MatchEnvironment] = field(default_factory=list)


# ═══════════════════════════════════════════════════════════════════════════
# PATTERN COMPILATION
# ═══════════════════════════════════════════════════════════════════════════

_LITERAL, _SPACE, _HOLE = "literal", "space", "hole"

Token = Tuple[str, str]


def compile_pattern(pattern: str) -> List[Token]:
    tokens: List[Token] = []

    def literal(text: str) -> None:
        for i, chunk in enumerate(re.split(r"\s+", text)):
            if i > 0 and (not tokens or tokens[-1][0] != _SPACE):
                tokens.append((_SPACE, " "))
            if chunk:
                tokens.append((_LITERAL, chunk))

    pos = 0
    for m in _HOLE_RE.finditer(pattern):
        literal(pattern[pos:m.start()])
        tokens.append((_HOLE, m.group(1)))
        pos = m.end()
    literal(pattern[pos:])
    return tokens


# ═══════════════════════════════════════════════════════════════════════════
# BALANCED SCANNING
# ═══════════════════════════════════════════════════════════════════════════

def _skip_string(text: str, i: int) -> int:
    """Index after the string literal opening at *i*, or -1."""
    quote = text[i]
    i += 1
    while i < len(text):
        ch = text[i]
        if ch == "\\":
            i += 2
            continue
        if ch == quote:
            return i + 1
        i += 1
    return -1


def _skip_group(text: str, i: int) -> int:
    """Index after the parenthesized group opening at *i*, or -1."""
    depth = 0
    while i < len(text):
        ch = text[i]
        if ch == '"':
            i = _skip_string(text, i)
            if i == -1:
                return -1
            continue
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0:
                return i + 1
        i += 1
    return -1


def _unit_end(text: str, i: int) -> int:
    """End of the balanced unit starting at *i*; -1 at a closing paren."""
    ch = text[i]
    if ch == "(":
        return _skip_group(text, i)
    if ch == '"':
        return _skip_string(text, i)
    if ch == ")":
        return -1
    return i + 1


def _hole_ends(text: str, start: int) -> Iterator[int]:
    """Candidate end offsets for a hole starting at *start*, shortest first."""
    yield start
    i = start
    while i < len(text):
        end = _unit_end(text, i)
        if end == -1:
            return
        i = end
        yield i


def _group_end(text: str, start: int) -> int:
    end = start
    for end in _hole_ends(text, start):
        pass
    while end > start and text[end - 1].isspace():
        end -= 1
    return end


# ═══════════════════════════════════════════════════════════════════════════
# MATCHING
# ═══════════════════════════════════════════════════════════════════════════

def _match_at(
    tokens: List[Token],
    ti: int,
    text: str,
    pos: int,
    env: Dict[str, Tuple[int, int]],
) -> Optional[int]:
    if ti == len(tokens):
        return pos
    kind, value = tokens[ti]

    if kind == _LITERAL:
        if text.startswith(value, pos):
            return _match_at(tokens, ti + 1, text, pos + len(value), env)
        return None

    if kind == _SPACE:
        end = pos
        while end < len(text) and text[end].isspace():
            end += 1
        if end == pos:
            return None
        return _match_at(tokens, ti + 1, text, end, env)

    bound = env.get(value) if value != ANONYMOUS else None
    if bound is not None:
        expected = text[bound[0]:bound[1]]
        if not text.startswith(expected, pos):
            return None
        return _match_at(tokens, ti + 1, text, pos + len(expected), env)

    if ti == len(tokens) - 1:
        ends: Iterator[int] = iter([_group_end(text, pos)])
    else:
        ends = _hole_ends(text, pos)
    for end in ends:
        if value != ANONYMOUS:
            env[value] = (pos, end)
        result = _match_at(tokens, ti + 1, text, end, env)
        if result is not None:
            return result
        if value != ANONYMOUS:
            del env[value]
    return None


def _is_number(text: str) -> bool:
    try:
        int(text)
    except ValueError:
        return False
    return True


def execute(pattern: str, text: str) -> List[Match]:
    """All leftmost, non-overlapping matches of *pattern* in *text*.

    A numeric pattern only matches an identical input.
    """
    if _is_number(pattern):
        return [Match(0, len(text), text)] if pattern == text else []

    tokens = compile_pattern(pattern)
    if not tokens:
        return []
    matches: List[Match] = []
    pos = 0
    while pos < len(text):
        if text[pos].isspace():
            pos += 1
            continue
        env: Dict[str, Tuple[int, int]] = {}
        end = _match_at(tokens, 0, text, pos, env)
        if end is None or end == pos:
            pos = _next_start(text, pos)
            continue
        environment = [
            MatchEnvironment(name, text[s:e], s, e)
            for name, (s, e) in env.items()
        ]
        matches.append(Match(pos, end, text[pos:end], environment))
        pos = end
    logger.debug("pattern %r: %d match(es)", pattern, len(matches))
    return matches


def _next_start(text: str, pos: int) -> int:
    """Skip string literals whole; everything else advances one character."""
    if text[pos] == '"':
        end = _skip_string(text, pos)
        return end if end != -1 else pos + 1
    return pos + 1
