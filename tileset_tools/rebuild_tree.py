"""Re-bucket the content tiles of a tileset into a balanced geographic quadtree."""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Sequence

from . import cli
from .bounding_volume import Region, encode_region, get_region, quadrant_index, region_union
from .errors import GeometryError, TilesetError
from .geometry import WGS84_A, box_to_region, compose_transforms, mat4_is_identity
from .tile_tree import children_of, clone_tile, format_path, has_content, iter_contents, rebase_content_uris, resolve_refine
from .tileset_io import (
    CopyStats,
    check_output_dir,
    copy_directory,
    generated_at,
    load_tileset,
    reset_output_dir,
    timestamp_ms,
    write_backup,
    write_json,
)


DEFAULT_MAX_TILES_PER_NODE = 64
DEFAULT_MAX_DEPTH = 8
DEFAULT_GEOMETRIC_ERROR_SCALE = 0.5
DEFAULT_REFINE = "ADD"
EARTH_RADIUS = WGS84_A


@dataclass(frozen=True)
class RebuildOptions:
    max_tiles_per_node: int = DEFAULT_MAX_TILES_PER_NODE
    max_depth: int = DEFAULT_MAX_DEPTH
    geometric_error_scale: float = DEFAULT_GEOMETRIC_ERROR_SCALE
    root_geometric_error: float | None = None


@dataclass(frozen=True)
class ContentTile:
    path: str
    tile: dict[str, Any]
    region: Region | None

    @property
    def center(self) -> tuple[float, float] | None:
        if self.region is None:
            return None
        lon, lat, _height = self.region.center()
        return (lon, lat)


@dataclass
class RebuildStats:
    content_tiles: int = 0
    partitioned_tiles: int = 0
    fallback_tiles: int = 0
    synthetic_nodes: int = 0
    max_depth: int = 0
    oversized_buckets: int = 0
    root_geometric_error: float = 0.0
    root_geometric_error_estimated: bool = False
    warnings: list[str] = field(default_factory=list)


def _region_from_bounding_volume(bv: Any, world: list[float]) -> Region | None:
    if not isinstance(bv, dict):
        return None
    region = get_region(bv)
    if region is not None:
        return region
    box = bv.get("box")
    if isinstance(box, dict) and "value" in box:
        box = box["value"]
    if box is not None:
        return Region.from_sequence(box_to_region(box, world))
    return None


def effective_region(tile: dict[str, Any], world: list[float]) -> Region | None:
    """The tile's own region, else its box under ``world``, else the first usable content volume."""
    region = _region_from_bounding_volume(tile.get("boundingVolume"), world)
    if region is not None:
        return region
    for _label, content in iter_contents(tile):
        region = _region_from_bounding_volume(content.get("boundingVolume"), world)
        if region is not None:
            return region
    return None


def _collect(
    tile: dict[str, Any],
    parent_world: list[float] | None,
    indices: tuple[int, ...],
    inherited_refine: str | None,
    out: list[ContentTile],
    stats: RebuildStats,
) -> None:
    path = format_path(indices)
    try:
        world = compose_transforms(parent_world, tile.get("transform"))
    except GeometryError as exc:
        stats.warnings.append(f"{path}: {exc}; transform ignored")
        world = compose_transforms(parent_world, None)
    refine = resolve_refine(tile, inherited_refine)

    if has_content(tile):
        try:
            region = effective_region(tile, world)
        except GeometryError as exc:
            stats.warnings.append(f"{path}: {exc}")
            region = None

        clone = clone_tile(tile, with_children=False)
        clone.pop("transform", None)
        if not mat4_is_identity(world):
            clone["transform"] = world
        if refine is not None and "refine" not in clone:
            clone["refine"] = refine
        out.append(ContentTile(path=path, tile=clone, region=region))

    for index, child in enumerate(children_of(tile)):
        _collect(child, world, indices + (index,), refine, out, stats)


def collect_content_tiles(root: dict[str, Any], stats: RebuildStats | None = None) -> list[ContentTile]:
    out: list[ContentTile] = []
    _collect(root, None, (), None, out, stats if stats is not None else RebuildStats())
    return out


def estimate_root_geometric_error(region: Region | None) -> float:
    if region is None:
        return 500.0
    horizontal_span = max(region.lon_span, region.lat_span) * EARTH_RADIUS
    return max(horizontal_span, 1.0)


def geometric_error_at(root_error: float, scale: float, depth: int) -> float:
    return root_error * scale**depth


def build_hierarchy(
    entries: list[ContentTile],
    region: Region,
    depth: int,
    *,
    options: RebuildOptions,
    root_error: float,
    refine: str,
    stats: RebuildStats,
) -> list[dict[str, Any]]:
    if not entries:
        return []
    if depth >= options.max_depth or len(entries) <= options.max_tiles_per_node:
        return _leaf_bucket(entries, depth, options, stats)

    buckets: list[list[ContentTile]] = [[], [], [], []]
    fallback: list[ContentTile] = []
    for entry in entries:
        center = entry.center
        index = quadrant_index(center, region) if center is not None else -1
        if index < 0:
            fallback.append(entry)
        else:
            buckets[index].append(entry)

    # No quadrant shrinks the input: splitting again would never terminate.
    if not any(0 < len(bucket) < len(entries) for bucket in buckets):
        return _leaf_bucket(entries, depth, options, stats)

    children: list[dict[str, Any]] = []
    for bucket in buckets:
        if not bucket:
            continue
        bucket_region = region_union(entry.region for entry in bucket)
        stats.synthetic_nodes += 1
        stats.max_depth = max(stats.max_depth, depth + 1)
        children.append(
            {
                "boundingVolume": {"region": encode_region(bucket_region)},
                "geometricError": geometric_error_at(root_error, options.geometric_error_scale, depth + 1),
                "refine": refine,
                "children": build_hierarchy(
                    bucket,
                    bucket_region,
                    depth + 1,
                    options=options,
                    root_error=root_error,
                    refine=refine,
                    stats=stats,
                ),
            }
        )

    return children + [entry.tile for entry in fallback]


def _leaf_bucket(
    entries: list[ContentTile],
    depth: int,
    options: RebuildOptions,
    stats: RebuildStats,
) -> list[dict[str, Any]]:
    if len(entries) > options.max_tiles_per_node:
        stats.oversized_buckets += 1
        reason = "maxDepth reached" if depth >= options.max_depth else "tile centers cannot be separated"
        stats.warnings.append(
            f"bucket at depth {depth} keeps {len(entries)} tiles (> maxTilesPerNode {options.max_tiles_per_node}): {reason}"
        )
    return [entry.tile for entry in entries]


def _finite_or_none(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        return None
    return float(value)


def _root_region(root: dict[str, Any], stats: RebuildStats) -> Region | None:
    try:
        world = compose_transforms(None, root.get("transform"))
        return effective_region(root, world)
    except GeometryError as exc:
        stats.warnings.append(f"root: {exc}")
        return None


def rebuild_tileset(tileset: dict[str, Any], options: RebuildOptions) -> tuple[dict[str, Any], RebuildStats]:
    stats = RebuildStats()
    source_root = tileset["root"]

    entries = collect_content_tiles(source_root, stats)
    if not entries:
        raise TilesetError("No tiles with content found; nothing to rebuild")
    stats.content_tiles = len(entries)

    regional = [entry for entry in entries if entry.region is not None]
    fallback = [entry.tile for entry in entries if entry.region is None]
    stats.partitioned_tiles = len(regional)
    stats.fallback_tiles = len(fallback)
    if fallback:
        stats.warnings.append(f"{len(fallback)} tile(s) have no derivable region and stay directly under root")

    root_region = region_union([_root_region(source_root, stats), *(entry.region for entry in regional)])
    if root_region is None:
        raise TilesetError("Cannot derive boundingVolume.region for the root tile")

    refine = resolve_refine(source_root, None) or DEFAULT_REFINE

    source_error = _finite_or_none(source_root.get("geometricError"))
    if options.root_geometric_error is not None and options.root_geometric_error > 0:
        root_error = options.root_geometric_error
    elif source_error is not None and source_error > 0:
        root_error = source_error
    else:
        root_error = estimate_root_geometric_error(root_region)
        stats.root_geometric_error_estimated = True
        stats.warnings.append(f"root geometricError estimated from region span: {root_error}")
    stats.root_geometric_error = root_error

    hierarchy = build_hierarchy(
        regional,
        root_region,
        0,
        options=options,
        root_error=root_error,
        refine=refine,
        stats=stats,
    )

    skipped_keys = ("boundingVolume", "children", "content", "contents", "transform")
    new_root = {key: value for key, value in source_root.items() if key not in skipped_keys}
    new_root["boundingVolume"] = {"region": encode_region(root_region)}
    new_root["refine"] = refine
    new_root["geometricError"] = root_error
    new_root["children"] = hierarchy + fallback

    rebuilt = {key: value for key, value in tileset.items() if key != "root"}
    top_error = _finite_or_none(rebuilt.get("geometricError"))
    if top_error is None or top_error < root_error:
        rebuilt["geometricError"] = root_error
    rebuilt["root"] = new_root
    return rebuilt, stats


def build_report(
    stats: RebuildStats,
    *,
    source: Path,
    output: Path,
    backup: Path | None,
    copy_stats: CopyStats | None,
) -> dict[str, Any]:
    return {
        "generatedAt": generated_at(),
        "source": str(source),
        "output": str(output),
        "backup": str(backup) if backup else None,
        "summary": {
            "contentTiles": stats.content_tiles,
            "partitionedTiles": stats.partitioned_tiles,
            "fallbackTiles": stats.fallback_tiles,
            "syntheticNodes": stats.synthetic_nodes,
            "maxDepth": stats.max_depth,
            "oversizedBuckets": stats.oversized_buckets,
            "rootGeometricError": stats.root_geometric_error,
            "rootGeometricErrorEstimated": stats.root_geometric_error_estimated,
            "copiedFiles": copy_stats.copied if copy_stats else 0,
            "skippedFiles": copy_stats.skipped if copy_stats else 0,
            "warnings": len(stats.warnings),
        },
        "warnings": stats.warnings,
        "copyErrors": copy_stats.errors if copy_stats else [],
    }


def parse_args(argv: Sequence[str] | None = None):
    parser = cli.new_parser(
        "Rebuild a flat or irregular tileset into a balanced geographic quadtree.",
        prog="tileset-rebuild",
    )
    cli.add_source_option(parser)
    cli.add_option(parser, "--output", type=Path, required=True, help="Output directory (created if missing)")
    cli.add_option(
        parser,
        "--maxTilesPerNode",
        type=cli.positive_int,
        default=DEFAULT_MAX_TILES_PER_NODE,
        help=f"Max tiles kept under one node (default: {DEFAULT_MAX_TILES_PER_NODE})",
    )
    cli.add_option(
        parser,
        "--maxDepth",
        type=cli.positive_int,
        default=DEFAULT_MAX_DEPTH,
        help=f"Max depth of synthetic quadtree nodes; content tiles sit one level below (default: {DEFAULT_MAX_DEPTH})",
    )
    cli.add_option(
        parser,
        "--geometricErrorScale",
        type=cli.unit_fraction,
        default=DEFAULT_GEOMETRIC_ERROR_SCALE,
        help=f"Per-level geometricError factor (default: {DEFAULT_GEOMETRIC_ERROR_SCALE})",
    )
    cli.add_option(
        parser,
        "--rootGeometricError",
        type=cli.positive_number,
        default=None,
        help="Root geometricError (default: source root's, else estimated from the region)",
    )
    cli.add_option(parser, "--copyContent", action="store_true", help="Copy every source file into the output directory")
    cli.add_option(parser, "--force", action="store_true", help="Overwrite an existing output directory")
    cli.add_backup_option(parser)
    return cli.parse_args(parser, argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    loaded = load_tileset(args.source)
    source_dir = loaded.source.tileset_dir
    output_dir: Path = args.output.expanduser().resolve()
    same_dir = output_dir == source_dir

    if not same_dir:
        check_output_dir(output_dir, force=args.force, source_dir=source_dir)

    options = RebuildOptions(
        max_tiles_per_node=args.maxTilesPerNode,
        max_depth=args.maxDepth,
        geometric_error_scale=args.geometricErrorScale,
        root_geometric_error=args.rootGeometricError,
    )
    rebuilt, stats = rebuild_tileset(loaded.tileset, options)

    backup_path = None
    copy_stats = None
    if same_dir:
        output_path = loaded.source.tileset_path
        if args.backup:
            backup_path = write_backup(output_path, loaded.raw)
            print(f"Backup written: {backup_path}")
    else:
        output_path = output_dir / loaded.source.tileset_path.name
        reset_output_dir(output_dir)
        if args.copyContent:
            print("Copying source content, this may take a while...")
            copy_stats = copy_directory(source_dir, output_dir)
        else:
            rebase_content_uris(rebuilt["root"], source_dir, output_dir)

    write_json(output_path, rebuilt)

    report_path = output_dir / f"rebuild-report-{timestamp_ms()}.json"
    write_json(
        report_path,
        build_report(stats, source=loaded.source.tileset_path, output=output_path, backup=backup_path, copy_stats=copy_stats),
    )

    print("Rebuild finished:")
    print(f"  content tiles: {stats.content_tiles}")
    print(f"  partitioned tiles: {stats.partitioned_tiles}, under root without region: {stats.fallback_tiles}")
    print(f"  synthetic nodes: {stats.synthetic_nodes}, depth: {stats.max_depth}")
    print(f"  root geometricError: {stats.root_geometric_error}")
    if copy_stats is not None:
        print(f"  copied files: {copy_stats.copied}, skipped: {copy_stats.skipped}")
    if stats.warnings:
        print(f"  warnings: {len(stats.warnings)}")
        cli.print_limited(stats.warnings, 10, indent="    ")
    print(f"  output: {output_path}")
    print(f"  report: {report_path}")
    return cli.EXIT_OK


def entrypoint() -> None:
    raise SystemExit(cli.run_tool(main))


if __name__ == "__main__":
    entrypoint()
