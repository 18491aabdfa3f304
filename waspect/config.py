# waspect/config.py
"""
Weaving options.

Resolution order, lowest first: defaults, a YAML options file, the
``WASPECT_<KEY>`` environment variables, explicit overrides (the CLI
flags).  Lists are comma-separated in the environment; booleans accept
``1/true/yes/on``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml

from .errors import TransformationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "WASPECT_"

_TRUE = frozenset({"1", "true", "yes", "on"})
_FALSE = frozenset({"0", "false", "no", "off", ""})

# Options naming files; ``data_dir`` is prefixed to them when relative.
_PATH_KEYS = ("in_module", "in_transform", "out_module", "out_js", "out_module_orig", "log_file")


@dataclass(slots=True)
class WeaveOptions:
    """Settled options of one weaving run."""
    in_module: str = "input.wasm"
    in_transform: str = "input.yml"
    out_module: str = "output.wasm"
    out_js: str = ""
    out_module_orig: str = ""
    log_file: str = ""
    data_dir: str = ""
    dependencies_dir: str = ""
    include: List[str] = field(default_factory=list)
    exclude: List[str] = field(default_factory=list)
    print_js: bool = False
    allow_empty: bool = False
    verbose: bool = False
    ignore_order: bool = False

    def validate(self) -> List[str]:
        """Return a list of validation warnings (empty if valid)."""
        warnings: List[str] = []
        overlap = set(self.include) & set(self.exclude)
        if overlap:
            warnings.append(f"advices both included and excluded: {', '.join(sorted(overlap))}")
        if self.out_module and self.out_module == self.in_module:
            warnings.append("output module overwrites the input module")
        return warnings

    def resolved(self) -> "WeaveOptions":
        """Copy with ``data_dir`` applied and the glue path defaulted."""
        res = replace(self, include=list(self.include), exclude=list(self.exclude))
        if not res.out_js and res.out_module:
            res.out_js = str(Path(res.out_module).with_suffix(".js"))
        if res.data_dir:
            base = Path(res.data_dir)
            for key in _PATH_KEYS:
                value = getattr(res, key)
                if value and not Path(value).is_absolute():
                    setattr(res, key, str(base / value))
        return res


def _field_types() -> Dict[str, Any]:
    return {f.name: f.default_factory() if callable(f.default_factory) else f.default
            for f in fields(WeaveOptions)}


def _convert(key: str, value: Any) -> Any:
    default = _field_types()[key]
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise TransformationError(f"option {key}: expected a boolean, got {value!r}")
    if isinstance(default, list):
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple)):
            return [str(item) for item in value]
        raise TransformationError(f"option {key}: expected a list, got {value!r}")
    if value is None:
        return ""
    return str(value)


def from_mapping(data: Mapping[str, Any], base: Optional[WeaveOptions] = None) -> WeaveOptions:
    """Apply the known keys of *data* over *base*."""
    known = _field_types()
    values = {}
    for key, value in data.items():
        if key not in known:
            logger.debug("ignoring unknown option %r", key)
            continue
        values[key] = _convert(key, value)
    return replace(base or WeaveOptions(), **values)


def from_environment(
    base: Optional[WeaveOptions] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> WeaveOptions:
    environ = os.environ if environ is None else environ
    data = {}
    for key in _field_types():
        value = environ.get(ENV_PREFIX + key.upper())
        if value is not None:
            data[key] = value
    return from_mapping(data, base)


def load_file(path: Union[str, Path], base: Optional[WeaveOptions] = None) -> WeaveOptions:
    try:
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    except OSError as exc:
        raise TransformationError(f"reading options file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise TransformationError(f"invalid options file {path}: {exc}") from exc
    if data is None:
        data = {}
    if not isinstance(data, Mapping):
        raise TransformationError(f"options file {path}: expected a mapping")
    return from_mapping(data, base)


def load_options(
    config_file: Optional[Union[str, Path]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> WeaveOptions:
    """Defaults < *config_file* < environment < *overrides*."""
    options = WeaveOptions()
    if config_file:
        options = load_file(config_file, options)
    options = from_environment(options, environ)
    if overrides:
        options = from_mapping({k: v for k, v in overrides.items() if v is not None}, options)
    for warning in options.validate():
        logger.warning("%s", warning)
    return options
