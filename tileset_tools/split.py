"""Split a tileset at a given depth into several tileset documents.

``external`` keeps a master tileset whose depth-``L`` tiles become stubs that
reference a child tileset each; ``standalone`` writes every depth-``L``
subtree as an independent tileset; ``groups`` chunks ``root.children``.
Tiles are addressed by their index path, never by object identity.
"""
from __future__ import annotations

import copy
import posixpath
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Sequence

from . import cli
from .bounding_volume import encode_region, get_region, region_union
from .errors import GeometryError, TilesetError
from .geometry import mat4_is_identity, world_transform
from .tile_tree import (
    TileVisit,
    children_of,
    clone_tile,
    iter_contents,
    iter_tiles,
    node_at,
    rebase_content_uris,
    replace_at,
)
from .tileset_io import (
    TILESET_FILENAME,
    check_output_dir,
    generated_at,
    load_tileset,
    reset_output_dir,
    write_backup,
    write_json,
)


MODES = ("external", "standalone", "groups")
DEFAULT_MODE = "external"
DEFAULT_SPLIT_LEVEL = 2
DEFAULT_GROUP_SIZE = 256
MASTER_DIRNAME = "master"
MANIFEST_FILENAME = "manifest.json"


@dataclass(frozen=True)
class SplitPart:
    node_path: str
    relative_path: str
    document: dict[str, Any]
    child_range: tuple[int, int] | None = None


@dataclass
class SplitPlan:
    mode: str
    split_level: int | None
    parts: list[SplitPart] = field(default_factory=list)
    master: dict[str, Any] | None = None
    warnings: list[str] = field(default_factory=list)


def collect_nodes_at_level(root: dict[str, Any], level: int) -> list[TileVisit]:
    """Every tile at exactly ``level`` (root is 0), in depth-first order."""
    return [visit for visit in iter_tiles(root) if visit.depth == level]


def _child_document(template: dict[str, Any], root: dict[str, Any]) -> dict[str, Any]:
    document: dict[str, Any] = {"asset": copy.deepcopy(template.get("asset", {"version": "1.0"}))}
    if "properties" in template:
        document["properties"] = copy.deepcopy(template["properties"])
    document["geometricError"] = template.get("geometricError", root.get("geometricError"))
    document["root"] = root
    return document


def _part_path(dirname: str) -> str:
    return posixpath.join(dirname, TILESET_FILENAME)


def _ancestor_world(root: dict[str, Any], visit: TileVisit) -> list[float]:
    chain = [node_at(root, visit.indices[:depth]).get("transform") for depth in range(len(visit.indices) + 1)]
    return world_transform(chain)


def _targets(root: dict[str, Any], level: int) -> list[TileVisit]:
    if level < 1:
        raise TilesetError(f"--splitLevel must be >= 1 (got {level})")
    targets = collect_nodes_at_level(root, level)
    if not targets:
        raise TilesetError(f"No tiles found at depth {level}; nothing to split")
    return targets


def plan_external(tileset: dict[str, Any], level: int, *, source_dir: Path, output_dir: Path) -> SplitPlan:
    plan = SplitPlan(mode="external", split_level=level)
    master = copy.deepcopy(tileset)
    master_root = master["root"]
    targets = _targets(master_root, level)
    master_dir = output_dir / MASTER_DIRNAME

    stubs: list[tuple[tuple[int, ...], dict[str, Any]]] = []
    for number, visit in enumerate(targets, start=1):
        node = visit.node
        dirname = f"tileset-level{level}-{number:04d}"
        relative_path = _part_path(dirname)

        child_root = clone_tile(node)
        # The stub applies the transform; repeating it on the child root would apply it twice.
        child_root.pop("transform", None)
        if visit.refine is not None:
            child_root["refine"] = visit.refine
        rebase_content_uris(child_root, source_dir, output_dir / dirname)
        plan.parts.append(SplitPart(visit.path, relative_path, _child_document(tileset, child_root)))

        stub: dict[str, Any] = {}
        if "boundingVolume" in node:
            stub["boundingVolume"] = copy.deepcopy(node["boundingVolume"])
        else:
            plan.warnings.append(f"{visit.path}: no boundingVolume to carry onto the external stub")
        if visit.refine is not None:
            stub["refine"] = visit.refine
        if "geometricError" in node:
            stub["geometricError"] = node["geometricError"]
        if "transform" in node:
            stub["transform"] = copy.deepcopy(node["transform"])
        stub["content"] = {"uri": posixpath.relpath(relative_path, MASTER_DIRNAME)}
        stubs.append((visit.indices, stub))

    rebase_content_uris(master_root, source_dir, master_dir)
    for indices, stub in stubs:
        replace_at(master_root, indices, stub)
    plan.master = master
    return plan


def plan_standalone(tileset: dict[str, Any], level: int, *, source_dir: Path, output_dir: Path) -> SplitPlan:
    plan = SplitPlan(mode="standalone", split_level=level)
    root = tileset["root"]
    for number, visit in enumerate(_targets(root, level), start=1):
        dirname = f"tileset-standalone-level{level}-{number:04d}"
        child_root = clone_tile(visit.node)
        try:
            world = _ancestor_world(root, visit)
        except GeometryError as exc:
            plan.warnings.append(f"{visit.path}: {exc}; local transform kept")
        else:
            child_root.pop("transform", None)
            if not mat4_is_identity(world):
                child_root["transform"] = world
        if visit.refine is not None:
            child_root["refine"] = visit.refine
        rebase_content_uris(child_root, source_dir, output_dir / dirname)
        plan.parts.append(SplitPart(visit.path, _part_path(dirname), _child_document(tileset, child_root)))
    return plan


def _group_region(group: list[dict[str, Any]]):
    regions = []
    for child in group:
        region = get_region(child.get("boundingVolume"))
        if region is None:
            for _label, content in iter_contents(child):
                region = get_region(content.get("boundingVolume"))
                if region is not None:
                    break
        regions.append(region)
    return region_union(regions)


def plan_groups(tileset: dict[str, Any], group_size: int, *, source_dir: Path, output_dir: Path) -> SplitPlan:
    plan = SplitPlan(mode="groups", split_level=None)
    root = tileset["root"]
    children = children_of(root)
    if not children:
        raise TilesetError("root.children is empty; nothing to split into groups")

    for number, start in enumerate(range(0, len(children), group_size), start=1):
        group = children[start : start + group_size]
        dirname = f"tileset-part-{number:03d}"
        bv = copy.deepcopy(root.get("boundingVolume", {}))
        merged = _group_region(group)
        if merged is not None:
            bv["region"] = encode_region(merged)
        group_root: dict[str, Any] = {"boundingVolume": bv, "geometricError": root.get("geometricError")}
        if root.get("refine") is not None:
            group_root["refine"] = root["refine"]
        if "transform" in root:
            group_root["transform"] = copy.deepcopy(root["transform"])
        group_root["children"] = [clone_tile(child) for child in group]
        rebase_content_uris(group_root, source_dir, output_dir / dirname)
        plan.parts.append(
            SplitPart("root", _part_path(dirname), _child_document(tileset, group_root), (start, start + len(group)))
        )
    return plan


def plan_split(
    tileset: dict[str, Any],
    *,
    mode: str,
    split_level: int,
    group_size: int,
    source_dir: Path,
    output_dir: Path,
) -> SplitPlan:
    if mode == "external":
        return plan_external(tileset, split_level, source_dir=source_dir, output_dir=output_dir)
    if mode == "standalone":
        return plan_standalone(tileset, split_level, source_dir=source_dir, output_dir=output_dir)
    if mode == "groups":
        return plan_groups(tileset, group_size, source_dir=source_dir, output_dir=output_dir)
    raise TilesetError(f"Unsupported split mode: {mode} (expected one of {', '.join(MODES)})")


def write_plan(plan: SplitPlan, *, source: Path, output_dir: Path) -> dict[str, Any]:
    """Write every document of ``plan`` plus the manifest; returns the manifest."""
    outputs = []
    for part in plan.parts:
        part_path = write_json(output_dir / part.relative_path, part.document)
        entry: dict[str, Any] = {"nodePath": part.node_path, "output": str(part_path)}
        if part.child_range is not None:
            entry["childRange"] = list(part.child_range)
        outputs.append(entry)

    master_path = None
    if plan.master is not None:
        master_path = write_json(output_dir / MASTER_DIRNAME / TILESET_FILENAME, plan.master)

    manifest = {
        "generatedAt": generated_at(),
        "source": str(source),
        "mode": plan.mode,
        "splitLevel": plan.split_level,
        "master": str(master_path) if master_path else None,
        "outputs": outputs,
        "summary": {"count": len(outputs), "warnings": len(plan.warnings)},
        "warnings": plan.warnings,
    }
    write_json(output_dir / MANIFEST_FILENAME, manifest)
    return manifest


def parse_args(argv: Sequence[str] | None = None):
    parser = cli.new_parser(
        "Split a tileset at a given depth into external-reference or standalone child tilesets.",
        prog="tileset-split",
    )
    cli.add_source_option(parser)
    cli.add_option(parser, "--output", type=Path, required=True, help="Output directory for the split tilesets")
    cli.add_option(parser, "--mode", default=DEFAULT_MODE, choices=MODES, help=f"Split mode (default: {DEFAULT_MODE})")
    cli.add_option(
        parser,
        "--splitLevel",
        type=cli.positive_int,
        default=DEFAULT_SPLIT_LEVEL,
        help=f"Depth whose tiles become child tilesets, root is 0 (default: {DEFAULT_SPLIT_LEVEL})",
    )
    cli.add_option(
        parser,
        "--groupSize",
        type=cli.positive_int,
        default=DEFAULT_GROUP_SIZE,
        help=f"root.children per tileset in groups mode (default: {DEFAULT_GROUP_SIZE})",
    )
    cli.add_option(parser, "--force", action="store_true", help="Overwrite an existing output directory")
    cli.add_option(
        parser,
        "--writeBack",
        action="store_true",
        help="external mode: also replace the source tileset.json with the master tileset",
    )
    cli.add_backup_option(parser)
    return cli.parse_args(parser, argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    loaded = load_tileset(args.source)
    source_dir = loaded.source.tileset_dir
    output_dir: Path = args.output.expanduser().resolve()
    check_output_dir(output_dir, force=args.force, source_dir=source_dir)
    if args.writeBack and args.mode != "external":
        print(f"warning: --writeBack only applies to external mode (ignored in {args.mode} mode)", file=sys.stderr)

    plan = plan_split(
        loaded.tileset,
        mode=args.mode,
        split_level=args.splitLevel,
        group_size=args.groupSize,
        source_dir=source_dir,
        output_dir=output_dir,
    )

    reset_output_dir(output_dir)
    manifest = write_plan(plan, source=loaded.source.tileset_path, output_dir=output_dir)

    if args.writeBack and plan.master is not None:
        if args.backup:
            backup_path = write_backup(loaded.source.tileset_path, loaded.raw)
            print(f"Backup written: {backup_path}")
        written_back = copy.deepcopy(plan.master)
        rebase_content_uris(written_back["root"], output_dir / MASTER_DIRNAME, source_dir)
        write_json(loaded.source.tileset_path, written_back)
        print(f"Master tileset written back to {loaded.source.tileset_path}")

    print(f"Split finished ({plan.mode} mode):")
    if plan.split_level is not None:
        print(f"  split level: {plan.split_level}")
    print(f"  child tilesets: {len(plan.parts)}")
    if manifest["master"]:
        print(f"  master: {manifest['master']}")
    if plan.warnings:
        print(f"  warnings: {len(plan.warnings)}")
        cli.print_limited(plan.warnings, 10, indent="    ")
    print(f"  manifest: {output_dir / MANIFEST_FILENAME}")
    return cli.EXIT_OK


def entrypoint() -> None:
    raise SystemExit(cli.run_tool(main))


if __name__ == "__main__":
    entrypoint()
