from __future__ import annotations

import copy
import os
import posixpath
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator

from .geometry import compose_transforms, mat4_identity


REFINE_MODES = ("ADD", "REPLACE")

CONTENT_SUFFIXES: tuple[tuple[str, str], ...] = (
    (".b3dm", "b3dm"),
    (".i3dm", "i3dm"),
    (".pnts", "pnts"),
    (".cmpt", "cmpt"),
    (".json", "external"),
    (".glb", "glb"),
    (".gltf", "glb"),
)


@dataclass(frozen=True)
class TileVisit:
    node: dict[str, Any]
    depth: int
    indices: tuple[int, ...]
    refine: str | None
    transform: list[float] | None = None

    @property
    def path(self) -> str:
        return format_path(self.indices)


def format_path(indices: tuple[int, ...]) -> str:
    return "/".join(["root", *(str(i) for i in indices)])


def children_of(tile: Any) -> list[dict[str, Any]]:
    if not isinstance(tile, dict):
        return []
    children = tile.get("children")
    if not isinstance(children, list):
        return []
    return [child for child in children if isinstance(child, dict)]


def iter_contents(tile: dict[str, Any]) -> Iterator[tuple[str, dict[str, Any]]]:
    """Yield ``(label, content)`` for ``content`` and every ``contents`` entry."""
    content = tile.get("content")
    if isinstance(content, dict):
        yield "content", content
    contents = tile.get("contents")
    if isinstance(contents, list):
        for index, entry in enumerate(contents):
            if isinstance(entry, dict):
                yield f"contents[{index}]", entry


def content_uri(content: Any) -> Any:
    if not isinstance(content, dict):
        return None
    return content.get("uri", content.get("url"))


def has_content(tile: dict[str, Any]) -> bool:
    content = tile.get("content")
    if isinstance(content, dict) and content_uri(content):
        return True
    contents = tile.get("contents")
    return isinstance(contents, list) and len(contents) > 0


def classify_content(content: Any) -> str:
    if not isinstance(content, dict):
        return "none"
    uri = content_uri(content)
    if not isinstance(uri, str) or not uri:
        return "unknown"
    lower = uri.split("?", 1)[0].lower()
    for suffix, kind in CONTENT_SUFFIXES:
        if lower.endswith(suffix):
            return kind
    return "other"


def resolve_refine(tile: dict[str, Any], inherited: str | None) -> str | None:
    refine = tile.get("refine")
    if isinstance(refine, str) and refine.upper() in REFINE_MODES:
        return refine.upper()
    return inherited


def iter_tiles(root: dict[str, Any], *, with_transforms: bool = False) -> Iterator[TileVisit]:
    """Depth-first pre-order walk assigning each tile its index path.

    With ``with_transforms`` each visit carries the composed world transform;
    a malformed ``transform`` raises :class:`GeometryError` from the walk.
    """
    root_transform = compose_transforms(mat4_identity(), root.get("transform")) if with_transforms else None
    stack = [TileVisit(root, 0, (), resolve_refine(root, None), root_transform)]
    while stack:
        visit = stack.pop()
        yield visit
        children = children_of(visit.node)
        for index in range(len(children) - 1, -1, -1):
            child = children[index]
            child_transform = None
            if with_transforms:
                child_transform = compose_transforms(visit.transform, child.get("transform"))
            stack.append(
                TileVisit(
                    child,
                    visit.depth + 1,
                    visit.indices + (index,),
                    resolve_refine(child, visit.refine),
                    child_transform,
                )
            )


def node_at(root: dict[str, Any], indices: tuple[int, ...]) -> dict[str, Any]:
    node = root
    for index in indices:
        node = node["children"][index]
    return node


def replace_at(root: dict[str, Any], indices: tuple[int, ...], replacement: dict[str, Any]) -> None:
    if not indices:
        raise ValueError("The root tile cannot be replaced in place")
    parent = node_at(root, indices[:-1])
    parent["children"][indices[-1]] = replacement


def clone_tile(tile: dict[str, Any], *, with_children: bool = True) -> dict[str, Any]:
    if with_children:
        return copy.deepcopy(tile)
    return copy.deepcopy({key: value for key, value in tile.items() if key != "children"})


def _is_relative_uri(uri: str) -> bool:
    if not uri or uri.startswith(("/", "\\", "#", "data:")):
        return False
    return "://" not in uri and not (len(uri) > 1 and uri[1] == ":")


def rebase_uri(uri: str, from_dir: Path, to_dir: Path) -> str:
    if not _is_relative_uri(uri):
        return uri
    target = os.path.normpath(os.path.join(os.path.abspath(from_dir), uri))
    relative = os.path.relpath(target, os.path.abspath(to_dir))
    return posixpath.join(*relative.split(os.sep))


def rebase_content_uris(tile: dict[str, Any], from_dir: Path, to_dir: Path) -> int:
    """Rewrite relative content URIs of a subtree written to ``to_dir``. Returns the number rewritten."""
    if os.path.abspath(from_dir) == os.path.abspath(to_dir):
        return 0
    rewritten = 0
    for visit in iter_tiles(tile):
        for _label, content in iter_contents(visit.node):
            key = "uri" if "uri" in content else "url"
            uri = content.get(key)
            if not isinstance(uri, str):
                continue
            rebased = rebase_uri(uri, from_dir, to_dir)
            if rebased != uri:
                content[key] = rebased
                rewritten += 1
    return rewritten
