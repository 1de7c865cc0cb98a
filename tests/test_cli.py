import argparse
import shutil

import pytest

from tileset_tools import analyze, box_to_region, cli, rebuild_tree, split, tileset_io
from tileset_tools.errors import TilesetError
from tileset_tools.tileset_io import check_output_dir, copy_directory, load_tileset, write_backup


def test_camel_and_kebab_flags_share_a_destination():
    args = analyze.parse_args(["--source", "x", "--max-warnings", "5", "--topDuplicateContents", "3"])
    assert args.maxWarnings == 5
    assert args.topDuplicateContents == 3

    args = rebuild_tree.parse_args(["--source", "x", "--output", "y", "--geometric-error-scale", "0.25"])
    assert args.geometricErrorScale == 0.25
    assert args.backup is True


def test_unknown_flags_warn_and_are_ignored(capsys):
    args = split.parse_args(["--source", "x", "--output", "y", "--verbose", "--levels=3"])
    assert args.splitLevel == split.DEFAULT_SPLIT_LEVEL
    err = capsys.readouterr().err
    assert "warning: unknown argument --verbose (ignored)" in err
    assert "warning: unknown argument --levels (ignored)" in err


def test_missing_required_flag_exits_with_usage_error():
    with pytest.raises(SystemExit) as excinfo:
        rebuild_tree.parse_args(["--source", "x"])
    assert excinfo.value.code == 2


@pytest.mark.parametrize(
    "parse, argv",
    [
        (rebuild_tree.parse_args, ["--maxTilesPerNode", "0"]),
        (rebuild_tree.parse_args, ["--maxDepth", "0.4"]),
        (rebuild_tree.parse_args, ["--geometricErrorScale", "1.5"]),
        (rebuild_tree.parse_args, ["--rootGeometricError", "inf"]),
        (split.parse_args, ["--mode", "shards"]),
    ],
)
def test_invalid_values_are_rejected(parse, argv):
    with pytest.raises(SystemExit):
        parse(["--source", "x", "--output", "y", *argv])


def test_number_validators():
    assert cli.positive_int("2.6") == 3
    with pytest.raises(argparse.ArgumentTypeError):
        cli.positive_int("0.4")
    assert cli.unit_fraction("0.5") == 0.5
    with pytest.raises(argparse.ArgumentTypeError):
        cli.finite_number("nan")
    with pytest.raises(argparse.ArgumentTypeError):
        cli.positive_number("-1")


def test_no_backup_flag():
    assert box_to_region.parse_args(["--source", "x", "--no-backup"]).backup is False


@pytest.mark.parametrize("tool", [analyze.main, box_to_region.main])
def test_missing_source_is_fatal(tool, tmp_path, capsys):
    assert cli.run_tool(tool, ["--source", str(tmp_path / "nowhere")]) == cli.EXIT_FATAL
    assert "error: tileset.json not found" in capsys.readouterr().err


def test_malformed_json_is_fatal(tmp_path, capsys):
    (tmp_path / "tileset.json").write_text("{not json", encoding="utf-8")
    assert cli.run_tool(analyze.main, ["--source", str(tmp_path)]) == cli.EXIT_FATAL
    assert "Failed to read JSON" in capsys.readouterr().err


def test_load_tileset_requires_root(write_tileset):
    path = write_tileset({"asset": {"version": "1.0"}})
    with pytest.raises(TilesetError, match="root"):
        load_tileset(path)


def test_load_tileset_tolerates_bom(write_tileset):
    path = write_tileset({"root": {"geometricError": 1}}, bom=True)
    loaded = load_tileset(path.parent)
    assert loaded.source.tileset_path == path.resolve()
    assert loaded.tileset["root"] == {"geometricError": 1}


def test_backup_name(tmp_path):
    path = tmp_path / "tileset.json"
    backup = write_backup(path, "{}", stamp=1700000000000)
    assert backup.name == "tileset.1700000000000.bak.json"
    assert backup.read_text(encoding="utf-8") == "{}"


def test_output_dir_checks(tmp_path):
    source = tmp_path / "data" / "source"
    source.mkdir(parents=True)
    check_output_dir(tmp_path / "new", force=False, source_dir=source)

    with pytest.raises(TilesetError, match="already exists"):
        check_output_dir(tmp_path / "data", force=False, source_dir=source)
    with pytest.raises(TilesetError, match="contains the source"):
        check_output_dir(tmp_path / "data", force=True, source_dir=source)

    (tmp_path / "file.txt").write_text("x", encoding="utf-8")
    with pytest.raises(TilesetError, match="not a directory"):
        check_output_dir(tmp_path / "file.txt", force=True)


def test_copy_directory_skips_its_own_target(tmp_path):
    source = tmp_path / "source"
    (source / "tiles").mkdir(parents=True)
    (source / "tileset.json").write_text("{}", encoding="utf-8")
    (source / "tiles" / "0.b3dm").write_bytes(b"0")
    target = source / "copy"

    stats = copy_directory(source, target)

    assert stats.copied == 2
    assert stats.skipped == 0
    assert (target / "tiles" / "0.b3dm").read_bytes() == b"0"
    assert not (target / "copy").exists()


def test_copy_directory_skips_files_it_cannot_copy(tmp_path, monkeypatch, capsys):
    source = tmp_path / "source"
    source.mkdir()
    (source / "a.b3dm").write_bytes(b"a")
    (source / "b.b3dm").write_bytes(b"b")
    copy2 = shutil.copy2

    def locked_copy2(src, dst, *args, **kwargs):
        if src.name == "a.b3dm":
            raise PermissionError(13, "Permission denied", str(src))
        return copy2(src, dst, *args, **kwargs)

    monkeypatch.setattr(tileset_io.shutil, "copy2", locked_copy2)

    stats = copy_directory(source, tmp_path / "copy")

    assert stats.copied == 1
    assert stats.skipped == 1
    assert len(stats.errors) == 1
    assert not (tmp_path / "copy" / "a.b3dm").exists()
    assert (tmp_path / "copy" / "b.b3dm").read_bytes() == b"b"
    assert "a.b3dm" in capsys.readouterr().err
