from __future__ import annotations

import enum
import math
from dataclasses import dataclass
from typing import Any, Iterable

from .errors import BoundingVolumeError


EPS_LON_LAT = 1e-10
EPS_HEIGHT = 1e-5

REGION_FIELDS = ("west", "south", "east", "north", "minHeight", "maxHeight")


class RegionEncoding(enum.Enum):
    ARRAY = "array"  # [w, s, e, n, minH, maxH]
    VALUE = "value"  # {"value": [...]}
    NAMED = "named"  # {"west": ..., "maxHeight": ...}


@dataclass(frozen=True)
class Region:
    west: float
    south: float
    east: float
    north: float
    min_height: float
    max_height: float

    @staticmethod
    def from_sequence(values: Iterable[float]) -> "Region":
        west, south, east, north, min_height, max_height = (float(v) for v in values)
        return Region(west, south, east, north, min_height, max_height)

    def as_list(self) -> list[float]:
        return [self.west, self.south, self.east, self.north, self.min_height, self.max_height]

    @property
    def lon_span(self) -> float:
        return abs(self.east - self.west)

    @property
    def lat_span(self) -> float:
        return abs(self.north - self.south)

    @property
    def height_span(self) -> float:
        return abs(self.max_height - self.min_height)

    def center(self) -> tuple[float, float, float]:
        return (
            (self.west + self.east) / 2,
            (self.south + self.north) / 2,
            (self.min_height + self.max_height) / 2,
        )

    def union(self, other: "Region") -> "Region":
        return Region(
            min(self.west, other.west),
            min(self.south, other.south),
            max(self.east, other.east),
            max(self.north, other.north),
            min(self.min_height, other.min_height),
            max(self.max_height, other.max_height),
        )

    def contains(self, other: "Region", eps_lon_lat: float = EPS_LON_LAT, eps_height: float = EPS_HEIGHT) -> bool:
        return not region_violations(self, other, eps_lon_lat=eps_lon_lat, eps_height=eps_height)

    def quadrants(self) -> list["Region"]:
        mid_lon = (self.west + self.east) / 2
        mid_lat = (self.south + self.north) / 2
        return [
            Region(self.west, self.south, mid_lon, mid_lat, self.min_height, self.max_height),  # SW
            Region(mid_lon, self.south, self.east, mid_lat, self.min_height, self.max_height),  # SE
            Region(self.west, mid_lat, mid_lon, self.north, self.min_height, self.max_height),  # NW
            Region(mid_lon, mid_lat, self.east, self.north, self.min_height, self.max_height),  # NE
        ]


@dataclass(frozen=True)
class EncodedRegion:
    region: Region
    encoding: RegionEncoding


def _region_values(values: Any) -> list[float]:
    if not isinstance(values, list):
        raise BoundingVolumeError("region is not an array")
    if len(values) != 6:
        raise BoundingVolumeError(f"region has {len(values)} entries, expected 6")
    for index, value in enumerate(values):
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            raise BoundingVolumeError(f"region[{index}] is not a finite number")
    return values


def parse_region(raw: Any) -> EncodedRegion:
    """Normalize any of the three region encodings.

    Raises :class:`BoundingVolumeError` describing why ``raw`` is not a region.
    """
    if raw is None:
        raise BoundingVolumeError("region is missing")
    if isinstance(raw, list):
        return EncodedRegion(Region.from_sequence(_region_values(raw)), RegionEncoding.ARRAY)
    if isinstance(raw, dict):
        if "value" in raw:
            return EncodedRegion(Region.from_sequence(_region_values(raw["value"])), RegionEncoding.VALUE)
        if all(key in raw for key in REGION_FIELDS):
            values = _region_values([raw[key] for key in REGION_FIELDS])
            return EncodedRegion(Region.from_sequence(values), RegionEncoding.NAMED)
        missing = [key for key in REGION_FIELDS if key not in raw]
        raise BoundingVolumeError(f"region object is missing {', '.join(missing)}")
    raise BoundingVolumeError(f"region has unsupported type {type(raw).__name__}")


def encode_region(region: Region, encoding: RegionEncoding = RegionEncoding.ARRAY) -> Any:
    values = region.as_list()
    if encoding is RegionEncoding.VALUE:
        return {"value": values}
    if encoding is RegionEncoding.NAMED:
        return dict(zip(REGION_FIELDS, values))
    return values


def get_region(bv: Any) -> Region | None:
    if not isinstance(bv, dict) or "region" not in bv:
        return None
    try:
        return parse_region(bv["region"]).region
    except BoundingVolumeError:
        return None


def region_encoding(bv: Any) -> RegionEncoding:
    """Encoding used by ``bv.region``, defaulting to the plain array."""
    if isinstance(bv, dict) and "region" in bv:
        try:
            return parse_region(bv["region"]).encoding
        except BoundingVolumeError:
            pass
    return RegionEncoding.ARRAY


def region_union(regions: Iterable[Region | None]) -> Region | None:
    out: Region | None = None
    for region in regions:
        if region is None:
            continue
        out = region if out is None else out.union(region)
    return out


def region_violations(
    parent: Region,
    child: Region,
    *,
    eps_lon_lat: float = EPS_LON_LAT,
    eps_height: float = EPS_HEIGHT,
) -> list[str]:
    """Names of the sides along which ``child`` pokes out of ``parent``."""
    sides: list[str] = []
    if child.west + eps_lon_lat < parent.west:
        sides.append("west")
    if child.south + eps_lon_lat < parent.south:
        sides.append("south")
    if child.east - eps_lon_lat > parent.east:
        sides.append("east")
    if child.north - eps_lon_lat > parent.north:
        sides.append("north")
    if child.min_height + eps_height < parent.min_height:
        sides.append("minHeight")
    if child.max_height - eps_height > parent.max_height:
        sides.append("maxHeight")
    return sides


def region_contains(
    parent: Region | None,
    child: Region | None,
    eps_lon_lat: float = EPS_LON_LAT,
    eps_height: float = EPS_HEIGHT,
) -> bool:
    if parent is None or child is None:
        return False
    return parent.contains(child, eps_lon_lat=eps_lon_lat, eps_height=eps_height)


def classify(bv: Any) -> str:
    if not isinstance(bv, dict):
        return "none"
    for kind in ("region", "box", "sphere"):
        if bv.get(kind):
            return kind
    return "unknown"


def quadrant_index(center: tuple[float, float], region: Region) -> int:
    lon, lat = center
    if not (region.west <= lon <= region.east and region.south <= lat <= region.north):
        return -1
    mid_lon = (region.west + region.east) / 2
    mid_lat = (region.south + region.north) / 2
    east = lon > mid_lon
    north = lat > mid_lat
    if not east and not north:
        return 0  # SW
    if east and not north:
        return 1  # SE
    if not east and north:
        return 2  # NW
    return 3  # NE
