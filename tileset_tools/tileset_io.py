from __future__ import annotations

import json
import os
import shutil
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .errors import TilesetError


TILESET_FILENAME = "tileset.json"


@dataclass(frozen=True)
class TilesetSource:
    tileset_path: Path
    tileset_dir: Path


@dataclass(frozen=True)
class LoadedTileset:
    source: TilesetSource
    raw: str
    tileset: dict[str, Any]


@dataclass
class CopyStats:
    copied: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)


def timestamp_ms() -> int:
    return int(time.time() * 1000)


def generated_at() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def resolve_tileset_path(source: str | Path) -> TilesetSource:
    """A directory implies ``<dir>/tileset.json``; anything else is taken as the file itself."""
    resolved = Path(source).expanduser().resolve()
    if resolved.is_dir():
        tileset_path = resolved / TILESET_FILENAME
    else:
        tileset_path = resolved
    if not tileset_path.is_file():
        raise TilesetError(f"tileset.json not found: {tileset_path}")
    return TilesetSource(tileset_path=tileset_path, tileset_dir=tileset_path.parent)


def load_tileset(source: str | Path) -> LoadedTileset:
    resolved = resolve_tileset_path(source)
    try:
        raw = resolved.tileset_path.read_text("utf-8-sig")
        data = json.loads(raw)
    except (OSError, ValueError) as exc:
        raise TilesetError(f"Failed to read JSON: {resolved.tileset_path} ({exc})") from exc
    if not isinstance(data, dict):
        raise TilesetError(f"JSON root must be an object: {resolved.tileset_path}")
    if not isinstance(data.get("root"), dict):
        raise TilesetError(f"tileset.root missing or invalid: {resolved.tileset_path}")
    return LoadedTileset(source=resolved, raw=raw, tileset=data)


def dump_json(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False, indent=2) + "\n"


def write_json(path: Path, data: Any) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dump_json(data), encoding="utf-8")
    return path


def write_backup(path: Path, raw: str, *, stamp: int | None = None) -> Path:
    """Write ``raw`` (the untouched source text) next to ``path`` as ``<stem>.<ms>.bak.json``."""
    stamp = stamp if stamp is not None else timestamp_ms()
    backup_path = path.with_name(f"{path.stem}.{stamp}.bak.json")
    backup_path.write_text(raw, encoding="utf-8")
    return backup_path


def _is_within(path: Path, parent: Path) -> bool:
    try:
        path.resolve().relative_to(parent.resolve())
    except ValueError:
        return False
    return True


def check_output_dir(output_dir: Path, *, force: bool, source_dir: Path | None = None) -> None:
    """Validate an output directory before any write happens."""
    if output_dir.exists() and not output_dir.is_dir():
        raise TilesetError(f"Output path is not a directory: {output_dir}")
    if output_dir.exists() and not force:
        raise TilesetError(f"Output directory already exists: {output_dir} (pass --force to overwrite)")
    if output_dir.exists() and source_dir is not None and _is_within(source_dir, output_dir):
        raise TilesetError(f"Refusing to clear {output_dir}: it contains the source tileset")


def reset_output_dir(output_dir: Path) -> None:
    if output_dir.exists():
        shutil.rmtree(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)


def copy_directory(source_dir: Path, target_dir: Path, *, stats: CopyStats | None = None) -> CopyStats:
    """Recursively copy ``source_dir`` file by file.

    Files that cannot be read or written (locks, permissions) are skipped and
    recorded in the returned stats. ``target_dir`` itself is never descended
    into when it lives inside ``source_dir``.
    """
    stats = stats if stats is not None else CopyStats()
    target_dir.mkdir(parents=True, exist_ok=True)
    target_resolved = target_dir.resolve()
    try:
        entries = sorted(os.scandir(source_dir), key=lambda entry: entry.name)
    except OSError as exc:
        stats.skipped += 1
        stats.errors.append(f"{source_dir}: {exc}")
        print(f"warning: skipped directory {source_dir} ({exc})", file=sys.stderr)
        return stats

    for entry in entries:
        source_path = Path(entry.path)
        target_path = target_dir / entry.name
        if entry.is_dir(follow_symlinks=False):
            if source_path.resolve() == target_resolved:
                continue
            copy_directory(source_path, target_path, stats=stats)
        elif entry.is_file():
            try:
                shutil.copy2(source_path, target_path)
            except OSError as exc:
                stats.skipped += 1
                stats.errors.append(f"{source_path}: {exc}")
                print(f"warning: skipped {source_path} ({exc})", file=sys.stderr)
                continue
            stats.copied += 1
    return stats
