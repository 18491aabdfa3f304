#!/usr/bin/env python3
"""waspect/main.py: CLI entry-point for the waspect weaver.

Usage examples
--------------
    # Weave a transformation into a binary module
    python -m waspect weave --in-module app.wasm --in-transform trace.yml \\
        --out-module app.traced.wasm

    # Same, with the options taken from a YAML file
    python -m waspect weave --config weave.yml -v

    # Parse a pointcut and dump its AST (debugging aid)
    python -m waspect parse "(i32.param[0] p) => call(\\$log) && args(p)" --format sexp

    # Show version and exit
    python -m waspect --version

Exit codes
----------
    0   Success (including "no advices to apply").
    1   The transformation could not be applied.
    2   Infrastructure failure (missing file, missing WABT tool, etc.).

Every option of ``weave`` can also be set through a ``WASPECT_<KEY>``
environment variable (see :mod:`waspect.config`).
"""

from __future__ import annotations

import argparse
import dataclasses
import enum
import json
import logging
import re
import sys
import textwrap
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, TextIO

import sexpdata

from . import __version__, config, grammar, weaver
from .errors import GrammarError, ModuleIOError, WaspectError

_log = logging.getLogger("waspect")

# Exit codes ----------------------------------------------------------------

EXIT_OK: int = 0
EXIT_ERROR: int = 1
EXIT_INFRA: int = 2

_LOG_FORMAT = "%(asctime)s [%(levelname)-5.5s] %(name)s: %(message)s"
_LOG_DATEFMT = "%H:%M:%S"


# ===========================================================================
# Utility helpers
# ===========================================================================

def _configure_logging(verbosity: int, log_file: str = "") -> None:
    """Set up the ``waspect`` logger.

    Parameters
    ----------
    verbosity:
        0 → WARNING, 1 → INFO, 2+ → DEBUG.
    log_file:
        Optional file receiving the same records.
    """
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    formatter = logging.Formatter(fmt=_LOG_FORMAT, datefmt=_LOG_DATEFMT)
    root = logging.getLogger("waspect")
    root.setLevel(level)
    if not any(getattr(h, "_waspect_cli", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(formatter)
        handler._waspect_cli = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
        _log.info("Logging to %s", path)


def _resolve_path(raw: str, label: str = "file") -> Path:
    """Resolve *raw* to an absolute ``Path``, raising on missing files."""
    p = Path(raw).expanduser().resolve()
    if not p.exists():
        _log.error("%s not found: %s", label, p)
        raise SystemExit(EXIT_INFRA)
    return p


def _open_output(dest: Optional[str]) -> TextIO:
    """Return a writable text stream.

    *dest* ``None`` or ``"-"`` → ``sys.stdout``; otherwise open the path
    for writing (creating parent directories as needed).
    """
    if dest is None or dest == "-":
        return sys.stdout
    p = Path(dest).expanduser().resolve()
    p.parent.mkdir(parents=True, exist_ok=True)
    return open(p, "w", encoding="utf-8")


def _split_list(raw: Optional[str]) -> Optional[list]:
    if raw is None:
        return None
    return [item.strip() for item in raw.split(",") if item.strip()]


# ---------------------------------------------------------------------------
# AST dumping
# ---------------------------------------------------------------------------

def to_data(value: Any) -> Any:
    """JSON-ready form of a pointcut AST."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        data: Dict[str, Any] = {"node": type(value).__name__}
        for f in dataclasses.fields(value):
            data[f.name] = to_data(getattr(value, f.name))
        return data
    if isinstance(value, enum.Enum):
        return value.name.lower()
    if isinstance(value, re.Pattern):
        return value.pattern
    if isinstance(value, (list, tuple)):
        return [to_data(v) for v in value]
    return value


def to_sexp(value: Any) -> Any:
    """sexpdata form of :func:`to_data` output."""
    if isinstance(value, dict):
        items = [sexpdata.Symbol(value.get("node", "map"))]
        for key, item in value.items():
            if key != "node":
                items.append([sexpdata.Symbol(key), to_sexp(item)])
        return items
    if isinstance(value, list):
        return [to_sexp(v) for v in value]
    if value is None:
        return sexpdata.Symbol("nil")
    if isinstance(value, bool):
        return sexpdata.Symbol("true" if value else "false")
    return value


# ===========================================================================
# Commands
# ===========================================================================

# ---------------------------------------------------------------------------
# weave
# ---------------------------------------------------------------------------

def _weave_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {
        "in_module": args.in_module,
        "in_transform": args.in_transform,
        "out_module": args.out_module,
        "out_js": args.out_js,
        "out_module_orig": args.out_module_orig,
        "log_file": args.log_file,
        "data_dir": args.data_dir,
        "dependencies_dir": args.dependencies_dir,
        "include": _split_list(args.include),
        "exclude": _split_list(args.exclude),
    }
    # store_true flags only override when given
    for key in ("print_js", "allow_empty", "ignore_order"):
        if getattr(args, key):
            overrides[key] = True
    if args.verbose:
        overrides["verbose"] = True
    return overrides


def cmd_weave(args: argparse.Namespace) -> int:
    """Apply a transformation to a module and write the results."""
    config_file = _resolve_path(args.config, "options file") if args.config else None
    options = config.load_options(config_file, _weave_overrides(args))
    if options.verbose and args.verbose == 0:
        logging.getLogger("waspect").setLevel(logging.INFO)
    if options.log_file:
        _configure_logging(args.verbose or int(options.verbose), options.resolved().log_file)

    try:
        result = weaver.run(options)
    except ModuleIOError as exc:
        _log.error("%s", exc)
        return EXIT_INFRA
    except WaspectError as exc:
        _log.error("%s", exc)
        return EXIT_ERROR

    if not result.woven:
        _log.warning("Nothing woven, no output written")
    _log.info("Finishing execution")
    return EXIT_OK


# ---------------------------------------------------------------------------
# parse (pointcut AST dump)
# ---------------------------------------------------------------------------

def cmd_parse(args: argparse.Namespace) -> int:
    """Parse a pointcut and pretty-print its AST.

    Useful for debugging pointcuts without a module at hand.
    """
    try:
        if args.without_context:
            ast = grammar.parse_without_context(args.pointcut)
        else:
            ast = grammar.parse_with_context(args.pointcut)
    except GrammarError as exc:
        _log.error("Parse error: %s", exc)
        return EXIT_ERROR

    out = _open_output(args.output)
    try:
        if args.format == "sexp":
            out.write(sexpdata.dumps(to_sexp(to_data(ast))) + "\n")
        elif args.format == "json":
            out.write(json.dumps(to_data(ast), indent=2) + "\n")
        else:
            out.write(repr(ast) + "\n")
    finally:
        if out is not sys.stdout:
            out.close()
    return EXIT_OK


# ===========================================================================
# Argument parser
# ===========================================================================

def _build_parser() -> argparse.ArgumentParser:
    """Construct the full CLI argument parser with subcommands."""

    # --- Top-level parser --------------------------------------------------
    parser = argparse.ArgumentParser(
        prog="waspect",
        description=(
            "waspect: aspect-oriented weaving for WebAssembly modules.\n\n"
            "Selects join-points in a module with pointcut expressions and\n"
            "weaves advice code into them."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            examples:
              waspect weave --in-module app.wasm --in-transform trace.yml
              waspect weave --config weave.yml --include count_calls -v
              waspect parse '() => func(* * (..), exported)' --format json
        """),
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v info, -vv debug).",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        title="commands",
        metavar="<command>",
    )

    # --- weave ---------------------------------------------------------------
    p_weave = subparsers.add_parser(
        "weave",
        help="Weave a transformation into a module.",
        description="Weave the advices of a transformation into a module.",
    )
    g = p_weave.add_argument_group("files")
    g.add_argument("--in-module", default=None, metavar="FILE",
                   help="Input module, .wat or .wasm (default: input.wasm).")
    g.add_argument("--in-transform", default=None, metavar="FILE",
                   help="Transformation description (default: input.yml).")
    g.add_argument("--out-module", default=None, metavar="FILE",
                   help="Output module, .wat or .wasm (default: output.wasm).")
    g.add_argument("--out-js", default=None, metavar="FILE",
                   help="JavaScript glue (default: output module with .js).")
    g.add_argument("--out-module-orig", default=None, metavar="FILE",
                   help="Copy of the decoded input module.")
    g.add_argument("--log-file", default=None, metavar="FILE",
                   help="Also write the log to FILE.")
    g.add_argument("--data-dir", default=None, metavar="DIR",
                   help="Base directory of relative file options.")
    g.add_argument("--dependencies-dir", default=None, metavar="DIR",
                   help="Directory searched for wasm2wat/wat2wasm.")
    g.add_argument("--config", default=None, metavar="FILE",
                   help="YAML file with weaving options.")

    g = p_weave.add_argument_group("advices")
    g.add_argument("--include", default=None, metavar="A,B",
                   help="Only apply these advices.")
    g.add_argument("--exclude", default=None, metavar="A,B",
                   help="Skip these advices.")
    g.add_argument("--print-js", action="store_true",
                   help="Always write the JavaScript glue.")
    g.add_argument("--allow-empty", action="store_true",
                   help="Write the output even when no advice applies.")
    g.add_argument("--ignore-order", action="store_true",
                   help="Apply advices in input order, ignoring 'order'.")
    p_weave.set_defaults(func=cmd_weave)

    # --- parse ---------------------------------------------------------------
    p_parse = subparsers.add_parser(
        "parse",
        help="Parse a pointcut and dump its AST.",
        description="Parse a pointcut expression and print its AST.",
    )
    p_parse.add_argument("pointcut", help="Pointcut source text.")
    p_parse.add_argument(
        "-f", "--format",
        choices=["sexp", "json", "repr"],
        default="sexp",
        help="AST output format (default: sexp).",
    )
    p_parse.add_argument(
        "-o", "--output",
        default=None,
        metavar="FILE",
        help='Output file ("-" or omit for stdout).',
    )
    p_parse.add_argument(
        "--without-context",
        action="store_true",
        help="Use the grammar of reusable pointcuts (no typed arguments).",
    )
    p_parse.set_defaults(func=cmd_parse)

    return parser


# ===========================================================================
# Main entry-point
# ===========================================================================

def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the waspect CLI.

    Parameters
    ----------
    argv:
        Command-line arguments.  ``None`` → ``sys.argv[1:]``.

    Returns
    -------
    int
        Exit code (see module docstring for semantics).
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    _configure_logging(args.verbose)

    if not hasattr(args, "func"):
        parser.print_help(sys.stderr)
        return EXIT_INFRA

    try:
        return args.func(args)
    except KeyboardInterrupt:
        _log.info("Interrupted by user.")
        return 130
    except SystemExit as exc:
        return exc.code if isinstance(exc.code, int) else EXIT_INFRA
    except Exception as exc:
        _log.error("Unhandled exception: %s", exc, exc_info=True)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
