"""Attach ``boundingVolume.region`` to every box-only tile and repair parent regions.

Two passes over the tree:

* top-down, carrying the composed world transform, converting each ``box``
  (on the tile, its ``content`` and every ``contents`` entry) into a
  geographic region;
* bottom-up, filling a tile's missing region from the union of its children
  or widening it when it does not contain that union.

Conversion failures are counted per tile and never abort the traversal.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Sequence

from . import cli
from .bounding_volume import Region, encode_region, get_region, region_encoding, region_union
from .errors import GeometryError
from .geometry import box_to_region, compose_transforms, crosses_antimeridian
from .tile_tree import children_of, format_path, iter_contents, rebase_content_uris
from .tileset_io import TILESET_FILENAME, generated_at, load_tileset, timestamp_ms, write_backup, write_json


DEFAULT_MAX_WARNINGS = 10


@dataclass
class NormalizeStats:
    converted: int = 0
    failed: int = 0
    antimeridian_suspect: int = 0
    parent_region_filled: int = 0
    parent_region_expanded: int = 0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _ensure_region(
    target: dict[str, Any],
    path: str,
    stats: NormalizeStats,
    world: list[float],
    *,
    remove_box: bool,
) -> None:
    bv = target.get("boundingVolume")
    if not isinstance(bv, dict) or "box" not in bv or "region" in bv:
        return
    try:
        region = box_to_region(bv["box"], world)
    except GeometryError as exc:
        stats.failed += 1
        stats.errors.append(f"{path}: {exc}")
        return

    west, east = region[0], region[2]
    if crosses_antimeridian(west, east):
        stats.antimeridian_suspect += 1
        stats.warnings.append(f"{path}: box straddles the antimeridian; region spans {east - west:.6f} rad")

    bv["region"] = list(region)
    stats.converted += 1
    if remove_box:
        del bv["box"]


def convert_boxes(
    tile: dict[str, Any],
    stats: NormalizeStats,
    *,
    remove_box: bool = False,
    parent_transform: list[float] | None = None,
    indices: tuple[int, ...] = (),
) -> None:
    path = format_path(indices)
    try:
        world = compose_transforms(parent_transform, tile.get("transform"))
    except GeometryError as exc:
        # Nothing below a broken transform can be placed; skip the subtree.
        stats.failed += 1
        stats.errors.append(f"{path}: {exc}")
        return

    _ensure_region(tile, path, stats, world, remove_box=remove_box)
    for label, content in iter_contents(tile):
        _ensure_region(content, f"{path}.{label}", stats, world, remove_box=remove_box)

    for index, child in enumerate(children_of(tile)):
        convert_boxes(child, stats, remove_box=remove_box, parent_transform=world, indices=indices + (index,))


def propagate_regions(tile: dict[str, Any], stats: NormalizeStats) -> Region | None:
    """Make every tile's region contain its children's; returns the tile's final region."""
    child_regions = [propagate_regions(child, stats) for child in children_of(tile)]
    own = get_region(tile.get("boundingVolume"))
    children_union = region_union(child_regions)
    if children_union is None:
        return own

    bv = tile.get("boundingVolume")
    if not isinstance(bv, dict):
        bv = tile["boundingVolume"] = {}

    if own is None:
        bv["region"] = encode_region(children_union, region_encoding(bv))
        stats.parent_region_filled += 1
        return children_union

    if not own.contains(children_union):
        expanded = own.union(children_union)
        bv["region"] = encode_region(expanded, region_encoding(bv))
        stats.parent_region_expanded += 1
        return expanded

    return own


def normalize_tileset(tileset: dict[str, Any], *, remove_box: bool = False) -> NormalizeStats:
    stats = NormalizeStats()
    root = tileset["root"]
    convert_boxes(root, stats, remove_box=remove_box)
    propagate_regions(root, stats)
    return stats


def build_report(stats: NormalizeStats, *, source: Path, output: Path, backup: Path | None) -> dict[str, Any]:
    return {
        "generatedAt": generated_at(),
        "source": str(source),
        "output": str(output),
        "backup": str(backup) if backup else None,
        "summary": {
            "converted": stats.converted,
            "failed": stats.failed,
            "parentRegionFilled": stats.parent_region_filled,
            "parentRegionExpanded": stats.parent_region_expanded,
            "antimeridianSuspect": stats.antimeridian_suspect,
            "warnings": len(stats.warnings),
        },
        "errors": stats.errors,
        "warnings": stats.warnings,
    }


def print_summary(stats: NormalizeStats, *, max_warnings: int) -> None:
    if stats.converted == 0:
        print("No boundingVolume.box needed conversion.")
    else:
        print(f"Converted {stats.converted} boundingVolume.box -> region.")
    if stats.failed:
        print(f"{stats.failed} conversion(s) failed:")
        cli.print_limited(stats.errors, max_warnings)
    if stats.warnings:
        print(f"{len(stats.warnings)} warning(s):")
        cli.print_limited(stats.warnings, max_warnings)
    if stats.parent_region_filled or stats.parent_region_expanded:
        print(
            f"Parent regions: {stats.parent_region_filled} filled from children, "
            f"{stats.parent_region_expanded} expanded."
        )


def parse_args(argv: Sequence[str] | None = None):
    parser = cli.new_parser(
        "Add boundingVolume.region to tiles that only carry a box, and expand parent regions to cover their children.",
        prog="tileset-box-to-region",
    )
    cli.add_source_option(parser)
    cli.add_option(
        parser,
        "--output",
        type=Path,
        default=None,
        help="Output tileset file, or a directory (any path without a suffix) to write tileset.json into "
        "(default: overwrite source)",
    )
    cli.add_option(parser, "--removeBox", action="store_true", help="Drop boundingVolume.box after conversion")
    cli.add_backup_option(parser)
    cli.add_option(
        parser,
        "--maxWarnings",
        type=cli.positive_int,
        default=DEFAULT_MAX_WARNINGS,
        help=f"Errors/warnings shown on the console (default: {DEFAULT_MAX_WARNINGS})",
    )
    return cli.parse_args(parser, argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    loaded = load_tileset(args.source)
    tileset_path = loaded.source.tileset_path

    stats = normalize_tileset(loaded.tileset, remove_box=args.removeBox)
    print_summary(stats, max_warnings=args.maxWarnings)

    output_path = tileset_path
    if args.output is not None:
        output_path = args.output.expanduser().resolve()
        # A path without a file suffix names a directory, existing or not.
        if output_path.is_dir() or not output_path.suffix:
            output_path = output_path / TILESET_FILENAME

    if output_path.parent != loaded.source.tileset_dir:
        rebased = rebase_content_uris(loaded.tileset["root"], loaded.source.tileset_dir, output_path.parent)
        if rebased:
            print(f"Rebased {rebased} content URI(s) onto {output_path.parent}")

    backup_path = None
    if output_path == tileset_path and args.backup:
        backup_path = write_backup(tileset_path, loaded.raw)
        print(f"Backup written: {backup_path}")

    write_json(output_path, loaded.tileset)
    print(f"Written: {output_path}")

    report_path = output_path.parent / f"box-to-region-report-{timestamp_ms()}.json"
    write_json(report_path, build_report(stats, source=tileset_path, output=output_path, backup=backup_path))
    print(f"Report written: {report_path}")
    return cli.EXIT_OK


def entrypoint() -> None:
    raise SystemExit(cli.run_tool(main))


if __name__ == "__main__":
    entrypoint()
