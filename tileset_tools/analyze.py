"""Read-only statistics and invariant checks over a tileset document.

The analyzer walks the tile tree once, depth first, and never mutates it:
running it twice over the same document yields identical statistics. Every
problem it finds becomes an :class:`Issue` tagged with the tile path
(``root/0/3``); the console display may be truncated but the report always
carries the full count.
"""
from __future__ import annotations

import math
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Sequence

from . import cli
from .bounding_volume import Region, classify, parse_region, region_violations
from .errors import BoundingVolumeError, GeometryError
from .geometry import parse_transform
from .tile_tree import children_of, classify_content, content_uri, format_path, has_content, iter_contents, resolve_refine
from .tileset_io import generated_at, load_tileset, timestamp_ms, write_json


DEFAULT_MAX_WARNINGS = 50
DEFAULT_TOP_DUPLICATE_CONTENTS = 10
DEFAULT_WARN_LIMIT = 20

SIDE_MESSAGES = {
    "west": "west bound is outside the parent region",
    "south": "south bound is outside the parent region",
    "east": "east bound is outside the parent region",
    "north": "north bound is outside the parent region",
    "minHeight": "minimum height is below the parent region",
    "maxHeight": "maximum height is above the parent region",
}


@dataclass(frozen=True)
class Issue:
    path: str
    kind: str
    message: str

    def as_dict(self) -> dict[str, str]:
        return {"path": self.path, "kind": self.kind, "message": self.message}

    def __str__(self) -> str:
        return f"{self.path}: {self.message}"


@dataclass
class RegionStats:
    tiles_with_region: int = 0
    invalid: int = 0
    extent: Region | None = None
    lon_span: tuple[float, float] | None = None
    lat_span: tuple[float, float] | None = None
    height_span: tuple[float, float] | None = None

    def add(self, region: Region) -> None:
        self.tiles_with_region += 1
        self.extent = region if self.extent is None else self.extent.union(region)
        self.lon_span = _widen(self.lon_span, region.lon_span)
        self.lat_span = _widen(self.lat_span, region.lat_span)
        self.height_span = _widen(self.height_span, region.height_span)


@dataclass
class GeometricErrorStats:
    count: int = 0
    missing: int = 0
    invalid: int = 0
    non_positive_with_children: int = 0
    increases: int = 0
    minimum: float | None = None
    maximum: float | None = None
    total: float = 0.0

    def add(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.minimum = value if self.minimum is None else min(self.minimum, value)
        self.maximum = value if self.maximum is None else max(self.maximum, value)

    @property
    def average(self) -> float | None:
        return self.total / self.count if self.count else None


@dataclass
class TilesetStats:
    total_tiles: int = 0
    leaf_tiles: int = 0
    internal_tiles: int = 0
    max_depth: int = 0
    depth_counts: Counter = field(default_factory=Counter)
    child_counts: Counter = field(default_factory=Counter)
    bounding_volume_types: Counter = field(default_factory=Counter)
    missing_bounding_volume: int = 0
    refine_counts: Counter = field(default_factory=Counter)
    with_transform: int = 0
    without_transform: int = 0
    tiles_with_content: int = 0
    tiles_with_contents_array: int = 0
    external_tilesets: int = 0
    content_types: Counter = field(default_factory=Counter)
    content_uri_counts: Counter = field(default_factory=Counter)
    regions: RegionStats = field(default_factory=RegionStats)
    geometric_error: GeometricErrorStats = field(default_factory=GeometricErrorStats)
    issues: list[Issue] = field(default_factory=list)

    def warn(self, path: str, kind: str, message: str) -> None:
        self.issues.append(Issue(path, kind, message))

    def duplicate_contents(self, top: int | None = None) -> list[tuple[str, int]]:
        duplicates = [(uri, count) for uri, count in self.content_uri_counts.items() if count > 1]
        duplicates.sort(key=lambda item: (-item[1], item[0]))
        return duplicates if top is None else duplicates[:top]

    def issues_by_kind(self) -> dict[str, list[Issue]]:
        grouped: dict[str, list[Issue]] = {}
        for issue in self.issues:
            grouped.setdefault(issue.kind, []).append(issue)
        return grouped


def _widen(span: tuple[float, float] | None, value: float) -> tuple[float, float]:
    if span is None:
        return (value, value)
    return (min(span[0], value), max(span[1], value))


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _check_region(
    stats: TilesetStats,
    raw: Any,
    path: str,
    parent_region: Region | None,
    *,
    count: bool,
) -> Region | None:
    try:
        region = parse_region(raw).region
    except BoundingVolumeError as exc:
        if count:
            stats.regions.invalid += 1
        stats.warn(path, "invalidRegion", f"invalid region: {exc}")
        return None

    if region.west > region.east:
        stats.warn(path, "antimeridianRegion", "region west > east (antimeridian crossing is not supported)")
    if region.south > region.north or region.min_height > region.max_height:
        if count:
            stats.regions.invalid += 1
        stats.warn(path, "invalidRegion", "invalid region: bounds are inverted")
        return None

    if count:
        stats.regions.add(region)
    if parent_region is not None:
        for side in region_violations(parent_region, region):
            stats.warn(path, "regionNotContained", SIDE_MESSAGES[side])
    return region


def _check_geometric_error(
    stats: TilesetStats,
    tile: dict[str, Any],
    path: str,
    parent_error: float | None,
    has_children: bool,
) -> float | None:
    value = tile.get("geometricError")
    if value is None:
        stats.geometric_error.missing += 1
        stats.warn(path, "missingGeometricError", "geometricError is missing")
        return None
    if not _is_number(value) or not math.isfinite(value):
        stats.geometric_error.invalid += 1
        stats.warn(path, "invalidGeometricError", f"geometricError is not a finite number ({value!r})")
        return None

    value = float(value)
    stats.geometric_error.add(value)
    if value <= 0 and has_children:
        stats.geometric_error.non_positive_with_children += 1
        stats.warn(path, "nonPositiveGeometricError", "geometricError <= 0 but the tile has children")
    if parent_error is not None and value > parent_error:
        stats.geometric_error.increases += 1
        stats.warn(path, "geometricErrorIncrease", f"geometricError {value} exceeds parent's {parent_error}")
    return value


def _analyze_tile(
    stats: TilesetStats,
    tile: dict[str, Any],
    depth: int,
    indices: tuple[int, ...],
    parent_region: Region | None,
    parent_error: float | None,
    inherited_refine: str | None,
) -> None:
    path = format_path(indices)
    children = children_of(tile)

    stats.total_tiles += 1
    stats.max_depth = max(stats.max_depth, depth)
    stats.depth_counts[depth] += 1
    stats.child_counts[len(children)] += 1
    if children:
        stats.internal_tiles += 1
    else:
        stats.leaf_tiles += 1

    if "transform" in tile:
        stats.with_transform += 1
        try:
            parse_transform(tile["transform"])
        except GeometryError as exc:
            stats.warn(path, "invalidTransform", str(exc))
    else:
        stats.without_transform += 1

    refine = resolve_refine(tile, inherited_refine)
    stats.refine_counts[refine or "unspecified"] += 1

    bv = tile.get("boundingVolume")
    bv_type = classify(bv)
    stats.bounding_volume_types[bv_type] += 1

    contents = list(iter_contents(tile))
    current_region: Region | None = None
    if bv_type in ("none", "unknown"):
        stats.missing_bounding_volume += 1
        if not any(isinstance(content.get("boundingVolume"), dict) for _label, content in contents):
            stats.warn(path, "missingBoundingVolume", "no boundingVolume on the tile or its content")
    elif isinstance(bv, dict) and "region" in bv:
        current_region = _check_region(stats, bv["region"], path, parent_region, count=True)

    error = _check_geometric_error(stats, tile, path, parent_error, bool(children))

    if "content" not in tile and "contents" not in tile:
        stats.content_types["none"] += 1
    if isinstance(tile.get("contents"), list) and tile["contents"]:
        stats.tiles_with_contents_array += 1
    if has_content(tile):
        stats.tiles_with_content += 1

    for label, content in contents:
        content_path = f"{path}.{label}"
        kind = classify_content(content)
        stats.content_types[kind if label == "content" else f"contents:{kind}"] += 1
        if kind == "external":
            stats.external_tilesets += 1

        uri = content_uri(content)
        if isinstance(uri, str) and uri:
            stats.content_uri_counts[uri] += 1
        elif uri is not None:
            stats.warn(content_path, "invalidContentUri", f"content uri is not a non-empty string ({uri!r})")

        content_bv = content.get("boundingVolume")
        if label != "content" and not isinstance(content_bv, dict):
            stats.warn(content_path, "contentMissingBoundingVolume", "contents entry has no boundingVolume")
        if isinstance(content_bv, dict) and "region" in content_bv:
            _check_region(stats, content_bv["region"], content_path, current_region or parent_region, count=False)

    for index, child in enumerate(children):
        _analyze_tile(
            stats,
            child,
            depth + 1,
            indices + (index,),
            current_region or parent_region,
            error if error is not None else parent_error,
            refine,
        )


def analyze_tileset(tileset: dict[str, Any]) -> TilesetStats:
    stats = TilesetStats()
    root = tileset.get("root")
    if isinstance(root, dict):
        _analyze_tile(stats, root, 0, (), None, None, None)
    return stats


def _sorted_counter(counter: Counter) -> list[dict[str, Any]]:
    return [{"key": key, "value": counter[key]} for key in sorted(counter)]


def build_report(
    stats: TilesetStats,
    *,
    source: Path | str,
    top_duplicate_contents: int = DEFAULT_TOP_DUPLICATE_CONTENTS,
    warn_limit: int = DEFAULT_WARN_LIMIT,
) -> dict[str, Any]:
    ge = stats.geometric_error
    regions = stats.regions
    return {
        "generatedAt": generated_at(),
        "source": str(source),
        "summary": {
            "totalTiles": stats.total_tiles,
            "leafTiles": stats.leaf_tiles,
            "internalTiles": stats.internal_tiles,
            "maxDepth": stats.max_depth,
            "tilesWithContent": stats.tiles_with_content,
            "tilesWithRegion": regions.tiles_with_region,
            "geometricErrorRange": [ge.minimum, ge.maximum] if ge.count else None,
            "warnings": len(stats.issues),
        },
        "depthDistribution": _sorted_counter(stats.depth_counts),
        "childCountDistribution": _sorted_counter(stats.child_counts),
        "boundingVolumeTypes": _sorted_counter(stats.bounding_volume_types),
        "boundingVolumeMissing": stats.missing_bounding_volume,
        "refineCounts": _sorted_counter(stats.refine_counts),
        "transformUsage": {"withTransform": stats.with_transform, "withoutTransform": stats.without_transform},
        "regions": {
            "tilesWithRegion": regions.tiles_with_region,
            "invalid": regions.invalid,
            "extent": regions.extent.as_list() if regions.extent else None,
            "lonSpan": list(regions.lon_span) if regions.lon_span else None,
            "latSpan": list(regions.lat_span) if regions.lat_span else None,
            "heightSpan": list(regions.height_span) if regions.height_span else None,
        },
        "geometricError": {
            "counted": ge.count,
            "missing": ge.missing,
            "invalid": ge.invalid,
            "nonPositiveWithChildren": ge.non_positive_with_children,
            "increases": ge.increases,
            "min": ge.minimum,
            "max": ge.maximum,
            "average": ge.average,
        },
        "contentTypes": _sorted_counter(stats.content_types),
        "tilesWithContentsArray": stats.tiles_with_contents_array,
        "externalTilesets": stats.external_tilesets,
        "uniqueContentUris": len(stats.content_uri_counts),
        "duplicateContents": [
            {"uri": uri, "count": count} for uri, count in stats.duplicate_contents(top_duplicate_contents)
        ],
        "warningsByKind": {
            kind: {"count": len(issues), "samples": [issue.path for issue in issues[:warn_limit]]}
            for kind, issues in sorted(stats.issues_by_kind().items())
        },
        "warnings": [issue.as_dict() for issue in stats.issues],
    }


def print_summary(stats: TilesetStats, *, max_warnings: int, top_duplicate_contents: int) -> None:
    ge = stats.geometric_error
    regions = stats.regions
    print("Tileset analysis:")
    print(f"  tiles: {stats.total_tiles} (leaf {stats.leaf_tiles}, internal {stats.internal_tiles})")
    print(f"  max depth: {stats.max_depth}")
    print(f"  tiles with content: {stats.tiles_with_content}")
    print(f"  tiles using contents[]: {stats.tiles_with_contents_array}")
    print(f"  tiles missing boundingVolume: {stats.missing_bounding_volume}")
    print(f"  external tilesets: {stats.external_tilesets}")

    print("\nDepth distribution:")
    for depth in sorted(stats.depth_counts):
        print(f"  depth {depth}: {stats.depth_counts[depth]}")

    print("\nboundingVolume types:")
    for key, value in stats.bounding_volume_types.most_common():
        print(f"  {key}: {value}")

    print("\nRegions:")
    print(f"  tiles with region: {regions.tiles_with_region}")
    print(f"  invalid regions: {regions.invalid}")
    if regions.extent is not None:
        extent = regions.extent
        print(f"  longitude: {extent.west} ~ {extent.east}")
        print(f"  latitude: {extent.south} ~ {extent.north}")
        print(f"  height: {extent.min_height} ~ {extent.max_height}")

    print("\ngeometricError:")
    print(f"  valid: {ge.count}, missing: {ge.missing}, non-finite: {ge.invalid}")
    print(f"  <= 0 with children: {ge.non_positive_with_children}, larger than parent: {ge.increases}")
    if ge.count:
        print(f"  range: {ge.minimum} ~ {ge.maximum}, average {ge.average}")

    print("\nrefine:")
    for key, value in stats.refine_counts.most_common():
        print(f"  {key}: {value}")

    print("\nContent types:")
    for key, value in stats.content_types.most_common():
        print(f"  {key}: {value}")

    duplicates = stats.duplicate_contents()
    print(f"\nContent URIs: {len(stats.content_uri_counts)} unique, {len(duplicates)} duplicated")
    for uri, count in duplicates[:top_duplicate_contents]:
        print(f"  {uri}: {count}")

    if stats.issues:
        print(f"\nWarnings ({len(stats.issues)} total, showing up to {max_warnings}):")
        cli.print_limited([str(issue) for issue in stats.issues], max_warnings)
    else:
        print("\nNo problems detected.")


def parse_args(argv: Sequence[str] | None = None):
    parser = cli.new_parser(
        "Analyze a 3D Tiles tileset: structure statistics and bounding-volume / geometricError checks.",
        prog="tileset-analyze",
    )
    cli.add_source_option(parser)
    cli.add_option(parser, "--report", type=Path, default=None, help="Report path (default: next to tileset.json)")
    cli.add_option(
        parser,
        "--maxWarnings",
        type=cli.positive_int,
        default=DEFAULT_MAX_WARNINGS,
        help=f"Warnings shown on the console (default: {DEFAULT_MAX_WARNINGS})",
    )
    cli.add_option(
        parser,
        "--topDuplicateContents",
        type=cli.positive_int,
        default=DEFAULT_TOP_DUPLICATE_CONTENTS,
        help=f"Duplicated content URIs listed (default: {DEFAULT_TOP_DUPLICATE_CONTENTS})",
    )
    cli.add_option(
        parser,
        "--warnLimit",
        type=cli.positive_int,
        default=DEFAULT_WARN_LIMIT,
        help=f"Sample paths kept per warning kind in the report (default: {DEFAULT_WARN_LIMIT})",
    )
    return cli.parse_args(parser, argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    loaded = load_tileset(args.source)

    stats = analyze_tileset(loaded.tileset)
    print_summary(stats, max_warnings=args.maxWarnings, top_duplicate_contents=args.topDuplicateContents)

    report = build_report(
        stats,
        source=loaded.source.tileset_path,
        top_duplicate_contents=args.topDuplicateContents,
        warn_limit=args.warnLimit,
    )
    report_path = args.report or loaded.source.tileset_dir / f"tileset-analysis-{timestamp_ms()}.json"
    write_json(report_path, report)
    print(f"\nReport written: {report_path}")
    return cli.EXIT_OK


def entrypoint() -> None:
    raise SystemExit(cli.run_tool(main))


if __name__ == "__main__":
    entrypoint()
