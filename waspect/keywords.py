# waspect/keywords.py
"""
Keyword layer.

A *keyword map* is anything with a ``get(key)`` method returning the bound
value or ``None``; plain dicts qualify.  Values are strings, lists, dicts
(objects with capitalized field names), dataclass records (fields are
reached through their camel-case spelling, ``resultType`` → ``result_type``)
or template keywords.

:class:`KeywordStack` composes several maps; the first map that knows a key
wins.
"""

from __future__ import annotations

import dataclasses
import logging
import re
from typing import Any, Iterable, List, Mapping, Optional, Sequence

from .errors import ResolutionError

logger = logging.getLogger(__name__)

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def capitalize(key: str) -> str:
    return key[:1].upper() + key[1:]


def lower_first(key: str) -> str:
    return key[:1].lower() + key[1:]


def snake_case(key: str) -> str:
    return _CAMEL_RE.sub("_", key).lower()


def camel_case(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


# ═══════════════════════════════════════════════════════════════════════════
# VALUES
# ═══════════════════════════════════════════════════════════════════════════

def is_object(value: Any) -> bool:
    return isinstance(value, Mapping) or (
        dataclasses.is_dataclass(value) and not isinstance(value, type)
    )


def is_array(value: Any) -> bool:
    return isinstance(value, (list, tuple))


def fields(value: Any) -> List[tuple]:
    """``(Name, value)`` pairs of an object, in declaration order."""
    if isinstance(value, Mapping):
        return [(str(k), v) for k, v in value.items()]
    return [
        (capitalize(camel_case(f.name)), getattr(value, f.name))
        for f in dataclasses.fields(value)
        if not f.name.startswith("_") and f.repr
    ]


def to_string(value: Any) -> str:
    """Text form of a keyword value as substituted into code."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    if hasattr(value, "keyword_text"):
        return value.keyword_text()
    if is_array(value):
        return "[" + ",".join(to_string(v) for v in value) + "]"
    if is_object(value):
        return "{" + ",".join(f"{k}:{to_string(v)}" for k, v in fields(value)) + "}"
    return str(value)


def to_list(value: Any) -> List[Any]:
    """Items of a value: array items, object field values, or the value."""
    if value is None:
        return []
    if is_array(value):
        return list(value)
    if is_object(value):
        return [v for _, v in fields(value)]
    if hasattr(value, "keyword_items"):
        return value.keyword_items()
    return [value]


def prop(value: Any, key: str) -> Any:
    """Field *key* of an object; the first letter is case-insensitive."""
    if isinstance(value, Mapping):
        for candidate in (key, capitalize(key), lower_first(key)):
            if candidate in value:
                return value[candidate]
        return None
    if is_object(value):
        name = snake_case(lower_first(key))
        if name.startswith("_"):
            return None
        return getattr(value, name, None)
    if hasattr(value, "keyword_prop"):
        return value.keyword_prop(key)
    raise ResolutionError(f"accessing property {key!r} in non-object value {to_string(value)!r}")


def index(value: Any, i: int) -> Any:
    if is_array(value):
        return value[i] if 0 <= i < len(value) else None
    if isinstance(value, str):
        if not 0 <= i < len(value):
            raise ResolutionError(
                f"accessing index in string value: index out of range (length={len(value)}, index={i})"
            )
        return value[i]
    if hasattr(value, "keyword_items"):
        items = value.keyword_items()
        return items[i] if 0 <= i < len(items) else None
    raise ResolutionError(f"accessing index {i} in non-array value {to_string(value)!r}")


def length(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, str) or is_array(value):
        return len(value)
    if is_object(value):
        return len(fields(value))
    return len(to_list(value))


def join_metadata(left: Optional[dict], right: Optional[dict]) -> dict:
    """Merge two metadata records; *left* wins on key collisions."""
    merged = dict(right or {})
    merged.update(left or {})
    return merged


# ═══════════════════════════════════════════════════════════════════════════
# MAPS
# ═══════════════════════════════════════════════════════════════════════════

class KeywordStack:
    """Ordered keyword maps; lookup returns the first hit."""

    def __init__(self, maps: Iterable[Any] = ()):
        self.maps: List[Any] = [m for m in maps if m is not None]

    def get(self, key: str) -> Any:
        for keywords in self.maps:
            value = keywords.get(key)
            if value is not None:
                return value
        return None

    def get_string(self, key: str) -> Optional[str]:
        """First string value of *key*; other kinds of value are skipped."""
        for keywords in self.maps:
            value = keywords.get(key)
            if isinstance(value, str):
                return value
        return None

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def push(self, keywords: Any) -> "KeywordStack":
        """New stack with *keywords* consulted first."""
        return KeywordStack([keywords] + self.maps)

    def extend(self, maps: Sequence[Any]) -> "KeywordStack":
        return KeywordStack(self.maps + list(maps))

    def __repr__(self) -> str:
        return f"KeywordStack({len(self.maps)} maps)"
