# waspect/wasmio.py
"""
Reading and writing modules.

``.wat`` files are plain text.  ``.wasm`` files go through the WABT tools:
``wasm2wat`` on input (names generated, expressions folded) and
``wat2wasm`` on output.  Both run with ``--no-check`` since woven code is
validated by the runtime that loads it.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import List, Optional, Union

from .errors import ModuleIOError

logger = logging.getLogger(__name__)

WASM2WAT = "wasm2wat"
WAT2WASM = "wat2wasm"

TEXT_SUFFIX = ".wat"
BINARY_SUFFIX = ".wasm"

PathLike = Union[str, Path]


def find_tool(name: str, dependencies_dir: Optional[PathLike] = None) -> str:
    """Absolute path of a WABT tool; *dependencies_dir* is searched first."""
    if dependencies_dir:
        base = Path(dependencies_dir)
        for candidate in (base / name, base / "bin" / name, base / "wabt" / name):
            if candidate.is_file() and os.access(candidate, os.X_OK):
                return str(candidate)
    found = shutil.which(name)
    if found is None:
        raise ModuleIOError(f"{name} not found (install WABT or set dependencies_dir)")
    return found


def _run(args: List[str]) -> None:
    logger.debug("running %s", " ".join(args))
    try:
        result = subprocess.run(args, capture_output=True, text=True)
    except OSError as exc:
        raise ModuleIOError(f"running {args[0]}: {exc}") from exc
    if result.stdout.strip():
        logger.debug("%s: %s", Path(args[0]).name, result.stdout.strip())
    if result.returncode != 0:
        raise ModuleIOError(
            f"{Path(args[0]).name} failed with exit code {result.returncode}: {result.stderr.strip()}"
        )


def read_text(path: PathLike) -> str:
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ModuleIOError(f"reading {path}: {exc}") from exc


def write_text(path: PathLike, text: str) -> None:
    path = Path(path)
    try:
        if path.parent and not path.parent.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
    except OSError as exc:
        raise ModuleIOError(f"writing {path}: {exc}") from exc


def wasm_to_wat(path: PathLike, dependencies_dir: Optional[PathLike] = None, fold: bool = True) -> str:
    """Text of the binary module at *path*."""
    tool = find_tool(WASM2WAT, dependencies_dir)
    with tempfile.TemporaryDirectory(prefix="waspect-") as tmp:
        out = Path(tmp) / (Path(path).stem + TEXT_SUFFIX)
        args = [tool, str(path), "--no-check", "--generate-names"]
        if fold:
            args.append("--fold-exprs")
        _run(args + ["-o", str(out)])
        return read_text(out)


def wat_to_wasm(text: str, out_path: PathLike, dependencies_dir: Optional[PathLike] = None) -> None:
    """Assemble *text* into the binary module *out_path*."""
    tool = find_tool(WAT2WASM, dependencies_dir)
    with tempfile.TemporaryDirectory(prefix="waspect-") as tmp:
        src = Path(tmp) / "module.wat"
        write_text(src, text)
        Path(out_path).parent.mkdir(parents=True, exist_ok=True)
        _run([tool, str(src), "--no-check", "-o", str(out_path)])


def read_module(path: PathLike, dependencies_dir: Optional[PathLike] = None) -> str:
    """Module text; the extension selects the decode path."""
    path = Path(path)
    if not path.is_file():
        raise ModuleIOError(f"module {path} does not exist")
    suffix = path.suffix.lower()
    if suffix == BINARY_SUFFIX:
        return wasm_to_wat(path, dependencies_dir)
    if suffix != TEXT_SUFFIX:
        logger.warning("unknown module extension %r, reading %s as text", suffix, path)
    return read_text(path)


def write_module(path: PathLike, text: str, dependencies_dir: Optional[PathLike] = None) -> None:
    path = Path(path)
    if path.suffix.lower() == BINARY_SUFFIX:
        wat_to_wasm(text, path, dependencies_dir)
    else:
        write_text(path, text)
    logger.info("Module written to %s", path)
