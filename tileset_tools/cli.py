from __future__ import annotations

import argparse
import math
import re
import sys
from typing import Any, Callable, Sequence

from .errors import TilesetError


EXIT_OK = 0
EXIT_FATAL = 1


def _kebab(flag: str) -> str:
    return re.sub(r"(?<=[a-z0-9])([A-Z])", lambda m: "-" + m.group(1).lower(), flag)


def finite_number(value: str) -> float:
    try:
        parsed = float(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Not a number: {value}") from exc
    if not math.isfinite(parsed):
        raise argparse.ArgumentTypeError(f"Not a finite number: {value}")
    return parsed


def positive_number(value: str) -> float:
    parsed = finite_number(value)
    if parsed <= 0:
        raise argparse.ArgumentTypeError(f"Must be > 0: {value}")
    return parsed


def positive_int(value: str) -> int:
    parsed = round(finite_number(value))
    if parsed <= 0:
        raise argparse.ArgumentTypeError(f"Must be a positive integer: {value}")
    return parsed


def unit_fraction(value: str) -> float:
    parsed = finite_number(value)
    if not 0 < parsed < 1:
        raise argparse.ArgumentTypeError(f"Must be between 0 and 1 (exclusive): {value}")
    return parsed


def new_parser(description: str, *, prog: str | None = None) -> argparse.ArgumentParser:
    return argparse.ArgumentParser(prog=prog, description=description, allow_abbrev=False)


def add_option(parser: argparse.ArgumentParser, flag: str, **kwargs: Any) -> argparse.Action:
    """Register ``--camelCase`` together with its ``--kebab-case`` spelling."""
    names = [flag]
    alias = _kebab(flag)
    if alias != flag:
        names.append(alias)
    return parser.add_argument(*names, **kwargs)


def add_source_option(parser: argparse.ArgumentParser) -> None:
    add_option(parser, "--source", required=True, help="3D Tiles directory or tileset.json path")


def parse_args(parser: argparse.ArgumentParser, argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse ``argv``; unknown flags are reported on stderr and ignored."""
    args, unknown = parser.parse_known_args(argv)
    for token in unknown:
        if token.startswith("-"):
            print(f"warning: unknown argument {token.split('=', 1)[0]} (ignored)", file=sys.stderr)
    return args


def run_tool(main: Callable[[Sequence[str] | None], int], argv: Sequence[str] | None = None) -> int:
    try:
        return main(argv)
    except (TilesetError, OSError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_FATAL


def print_limited(lines: Sequence[str], limit: int, *, indent: str = "  ") -> None:
    for index, line in enumerate(lines[:limit], start=1):
        print(f"{indent}[{index}] {line}")
    if len(lines) > limit:
        print(f"{indent}... {len(lines) - limit} more not shown")


def add_backup_option(parser: argparse.ArgumentParser) -> None:
    add_option(
        parser,
        "--backup",
        default=True,
        action=argparse.BooleanOptionalAction,
        help="Back up tileset.json before overwriting it in place (default: True)",
    )
