import math

import pytest

from tileset_tools import box_to_region
from tileset_tools.bounding_volume import RegionEncoding, get_region, parse_region, region_contains
from tileset_tools.geometry import enu_to_ecef_matrix
from tileset_tools.tile_tree import children_of, iter_tiles

DEG = math.pi / 180
ORIGIN_LON, ORIGIN_LAT = 116.39 * DEG, 39.91 * DEG


def local_box(east, north, half=20.0, up=10.0):
    return [east, north, up, half, 0, 0, 0, half, 0, 0, 0, up]


@pytest.fixture
def box_tileset():
    return {
        "asset": {"version": "1.0"},
        "geometricError": 200,
        "root": {
            "transform": enu_to_ecef_matrix(ORIGIN_LON, ORIGIN_LAT, 0.0),
            "boundingVolume": {"box": local_box(0, 0, half=500, up=50)},
            "geometricError": 200,
            "refine": "ADD",
            "children": [
                {
                    "boundingVolume": {"box": local_box(100, 100)},
                    "geometricError": 20,
                    "content": {"uri": "tiles/a.b3dm", "boundingVolume": {"box": local_box(100, 100, half=10)}},
                },
                {
                    "boundingVolume": {"box": local_box(-300, 250)},
                    "geometricError": 20,
                    "children": [
                        {
                            "boundingVolume": {"box": [-310, 260, 10, 5, 0, 0, 0, 5, 0, 0, 0, 5]},
                            "geometricError": 0,
                            "content": {"uri": "tiles/b.b3dm"},
                        }
                    ],
                },
                {
                    # far outside the root box: its parent region must grow
                    "boundingVolume": {"box": local_box(2000, 0)},
                    "geometricError": 20,
                    "contents": [{"uri": "tiles/c.pnts", "boundingVolume": {"box": local_box(2000, 0, half=3)}}],
                },
            ],
        },
    }


def assert_regions_nested(root):
    for visit in iter_tiles(root):
        parent = get_region(visit.node.get("boundingVolume"))
        for child in children_of(visit.node):
            child_region = get_region(child.get("boundingVolume"))
            assert region_contains(parent, child_region), visit.path


def test_every_box_gets_a_nested_region(box_tileset):
    stats = box_to_region.normalize_tileset(box_tileset)

    assert stats.converted == 7
    assert stats.failed == 0
    assert stats.parent_region_expanded == 1
    assert stats.parent_region_filled == 0
    assert_regions_nested(box_tileset["root"])

    root_region = get_region(box_tileset["root"]["boundingVolume"])
    assert root_region.west < ORIGIN_LON < root_region.east
    assert "box" in box_tileset["root"]["boundingVolume"]
    content_bv = box_tileset["root"]["children"][2]["contents"][0]["boundingVolume"]
    assert get_region(content_bv) is not None


def test_remove_box(box_tileset):
    box_to_region.normalize_tileset(box_tileset, remove_box=True)
    assert all("box" not in visit.node["boundingVolume"] for visit in iter_tiles(box_tileset["root"]))


def test_existing_region_is_kept():
    region = [0.1, 0.1, 0.2, 0.2, 0.0, 10.0]
    tileset = {"root": {"boundingVolume": {"region": list(region), "box": [0] * 12}, "geometricError": 1}}
    stats = box_to_region.normalize_tileset(tileset)
    assert stats.converted == 0
    assert tileset["root"]["boundingVolume"]["region"] == region


def test_tighter_parent_is_expanded_once_in_its_own_encoding():
    parent = {"west": 0.0, "south": 0.0, "east": 0.01, "north": 0.01, "minHeight": 0.0, "maxHeight": 10.0}
    tileset = {
        "root": {
            "boundingVolume": {"region": parent},
            "geometricError": 100,
            "children": [
                {"boundingVolume": {"region": [-0.001, 0.002, 0.011, 0.008, 0.0, 20.0]}, "geometricError": 0},
            ],
        }
    }

    stats = box_to_region.normalize_tileset(tileset)

    assert stats.parent_region_expanded == 1
    parsed = parse_region(tileset["root"]["boundingVolume"]["region"])
    assert parsed.encoding is RegionEncoding.NAMED
    assert parsed.region.as_list() == [-0.001, 0.0, 0.011, 0.01, 0.0, 20.0]
    assert_regions_nested(tileset["root"])


def test_missing_parent_region_is_filled_from_children():
    tileset = {
        "root": {
            "geometricError": 100,
            "children": [
                {"boundingVolume": {"region": [0.0, 0.0, 0.1, 0.1, 0.0, 5.0]}, "geometricError": 0},
                {"boundingVolume": {"region": {"value": [0.1, 0.0, 0.2, 0.1, 2.0, 8.0]}}, "geometricError": 0},
            ],
        }
    }

    stats = box_to_region.normalize_tileset(tileset)

    assert stats.parent_region_filled == 1
    assert tileset["root"]["boundingVolume"]["region"] == [0.0, 0.0, 0.2, 0.1, 0.0, 8.0]


def test_failures_are_counted_and_traversal_continues(box_tileset):
    children = box_tileset["root"]["children"]
    children[0]["boundingVolume"]["box"] = [1, 2, 3]
    children[1]["transform"] = [1, 0, 0, 1]

    stats = box_to_region.normalize_tileset(box_tileset)

    assert stats.failed == 2
    assert any(error.startswith("root/0: Invalid boundingVolume.box") for error in stats.errors)
    assert any(error.startswith("root/1: ") for error in stats.errors)
    # root/1 and its subtree are skipped, root/2 still converts
    assert "region" not in children[1]["boundingVolume"]
    assert "region" not in children[1]["children"][0]["boundingVolume"]
    assert "region" in children[2]["boundingVolume"]


def test_antimeridian_boxes_are_flagged_not_inverted():
    tileset = {
        "root": {
            "transform": enu_to_ecef_matrix(math.pi, 0.0, 0.0),
            "boundingVolume": {"box": [0, 0, 0, 1000, 0, 0, 0, 1000, 0, 0, 0, 10]},
            "geometricError": 10,
        }
    }

    stats = box_to_region.normalize_tileset(tileset)

    assert stats.antimeridian_suspect == 1
    west, _south, east, *_rest = tileset["root"]["boundingVolume"]["region"]
    assert west < east
    assert "antimeridian" in stats.warnings[0]


def test_main_overwrites_in_place_with_backup(write_tileset, read_json, box_tileset):
    path = write_tileset(box_tileset)

    assert box_to_region.main(["--source", str(path.parent)]) == 0

    written = read_json(path)
    assert "region" in written["root"]["boundingVolume"]
    backups = list(path.parent.glob("tileset.*.bak.json"))
    assert len(backups) == 1
    assert "region" not in read_json(backups[0])["root"]["boundingVolume"]
    reports = list(path.parent.glob("box-to-region-report-*.json"))
    assert read_json(reports[0])["summary"]["converted"] == 7


def test_main_without_backup(write_tileset, box_tileset):
    path = write_tileset(box_tileset)
    assert box_to_region.main(["--source", str(path), "--no-backup", "--remove-box"]) == 0
    assert not list(path.parent.glob("*.bak.json"))


def test_main_to_other_directory_rebases_content(write_tileset, read_json, tmp_path, box_tileset):
    path = write_tileset(box_tileset)
    output = tmp_path / "normalized" / "tileset.json"

    assert box_to_region.main(["--source", str(path), "--output", str(output)]) == 0

    written = read_json(output)
    assert written["root"]["children"][0]["content"]["uri"] == "../source/tiles/a.b3dm"
    assert read_json(path) == box_tileset
    assert not list(path.parent.glob("*.bak.json"))


def test_main_output_without_suffix_is_a_new_directory(write_tileset, read_json, tmp_path, box_tileset):
    path = write_tileset(box_tileset)
    output = tmp_path / "normalized"

    assert box_to_region.main(["--source", str(path), "--output", str(output)]) == 0

    assert (output / "tileset.json").is_file()
    assert "region" in read_json(output / "tileset.json")["root"]["boundingVolume"]
    assert list(output.glob("box-to-region-report-*.json"))
