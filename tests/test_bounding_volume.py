import math

import pytest

from tileset_tools.bounding_volume import (
    Region,
    RegionEncoding,
    classify,
    encode_region,
    get_region,
    parse_region,
    quadrant_index,
    region_contains,
    region_encoding,
    region_union,
    region_violations,
)
from tileset_tools.errors import BoundingVolumeError

VALUES = [0.1, 0.2, 0.3, 0.4, -5.0, 25.0]


@pytest.mark.parametrize(
    "raw, encoding",
    [
        (list(VALUES), RegionEncoding.ARRAY),
        ({"value": list(VALUES)}, RegionEncoding.VALUE),
        (
            {"west": 0.1, "south": 0.2, "east": 0.3, "north": 0.4, "minHeight": -5.0, "maxHeight": 25.0},
            RegionEncoding.NAMED,
        ),
    ],
)
def test_region_encodings_round_trip(raw, encoding):
    parsed = parse_region(raw)
    assert parsed.encoding is encoding
    assert parsed.region.as_list() == VALUES
    assert encode_region(parsed.region, parsed.encoding) == raw


@pytest.mark.parametrize(
    "raw, message",
    [
        (None, "missing"),
        ([0.1, 0.2, 0.3], "3 entries"),
        ([0.1, 0.2, 0.3, 0.4, "low", 25.0], r"region\[4\]"),
        ([0.1, 0.2, 0.3, 0.4, math.inf, 25.0], "finite"),
        ({"west": 0.1, "south": 0.2}, "missing east"),
        ("0.1,0.2,0.3,0.4,0,1", "unsupported type"),
        ({"value": True}, "not an array"),
    ],
)
def test_parse_region_rejects_malformed_input(raw, message):
    with pytest.raises(BoundingVolumeError, match=message):
        parse_region(raw)


def test_get_region_and_encoding_from_bounding_volume():
    assert get_region({"region": VALUES}) == Region.from_sequence(VALUES)
    assert get_region({"box": [0] * 12}) is None
    assert get_region({"region": [1, 2]}) is None
    assert get_region(None) is None

    assert region_encoding({"region": {"value": VALUES}}) is RegionEncoding.VALUE
    assert region_encoding({"box": [0] * 12}) is RegionEncoding.ARRAY


def test_region_union_skips_missing_regions():
    a = Region(0.0, 0.0, 1.0, 1.0, 0.0, 10.0)
    b = Region(0.5, -1.0, 2.0, 0.5, -3.0, 5.0)
    assert region_union([None, a, None, b]) == Region(0.0, -1.0, 2.0, 1.0, -3.0, 10.0)
    assert region_union([]) is None
    assert region_union([None]) is None


def test_region_violations_name_each_side():
    parent = Region(0.0, 0.0, 1.0, 1.0, 0.0, 10.0)
    child = Region(-0.1, 0.2, 1.1, 0.8, 0.0, 20.0)
    assert region_violations(parent, child) == ["west", "east", "maxHeight"]
    assert not parent.contains(child)
    assert parent.union(child).contains(child)


def test_containment_tolerates_epsilon():
    parent = Region(0.0, 0.0, 1.0, 1.0, 0.0, 10.0)
    assert parent.contains(Region(-1e-11, 0.0, 1.0 + 1e-11, 1.0, -1e-6, 10.0 + 1e-6))
    assert not parent.contains(Region(-1e-9, 0.0, 1.0, 1.0, 0.0, 10.0))
    assert region_contains(parent, parent)
    assert not region_contains(None, parent)
    assert not region_contains(parent, None)


def test_quadrants_split_at_midpoints():
    region = Region(0.0, 0.0, 2.0, 2.0, 0.0, 1.0)
    sw, se, nw, ne = region.quadrants()
    assert sw == Region(0.0, 0.0, 1.0, 1.0, 0.0, 1.0)
    assert se == Region(1.0, 0.0, 2.0, 1.0, 0.0, 1.0)
    assert nw == Region(0.0, 1.0, 1.0, 2.0, 0.0, 1.0)
    assert ne == Region(1.0, 1.0, 2.0, 2.0, 0.0, 1.0)
    assert region_union(region.quadrants()) == region


def test_quadrant_index():
    region = Region(0.0, 0.0, 2.0, 2.0, 0.0, 1.0)
    assert quadrant_index((0.5, 0.5), region) == 0
    assert quadrant_index((1.5, 0.5), region) == 1
    assert quadrant_index((0.5, 1.5), region) == 2
    assert quadrant_index((1.5, 1.5), region) == 3
    # centers on a midpoint fall to the west/south side
    assert quadrant_index((1.0, 1.0), region) == 0
    assert quadrant_index((2.5, 0.5), region) == -1


def test_classify_bounding_volume():
    assert classify({"region": VALUES}) == "region"
    assert classify({"box": [0] * 12}) == "box"
    assert classify({"sphere": [0, 0, 0, 1]}) == "sphere"
    assert classify({}) == "unknown"
    assert classify(None) == "none"
