from __future__ import annotations

import math
from typing import Any, Iterable

from .errors import GeometryError


WGS84_A = 6378137.0
WGS84_F = 1 / 298.257223563
WGS84_E2 = WGS84_F * (2 - WGS84_F)

# Squared distance from the ellipsoid center below which geodetic coordinates are undefined.
CENTER_TOLERANCE_SQUARED = 0.1

GEODETIC_MAX_ITERATIONS = 16
GEODETIC_LATITUDE_TOLERANCE = 1e-15

BOX_SIGNS: tuple[tuple[int, int, int], ...] = (
    (1, 1, 1),
    (1, 1, -1),
    (1, -1, 1),
    (1, -1, -1),
    (-1, 1, 1),
    (-1, 1, -1),
    (-1, -1, 1),
    (-1, -1, -1),
)

Vec3 = tuple[float, float, float]


def mat4_identity() -> list[float]:
    return [1.0, 0.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0, 0.0, 1.0]


def mat4_multiply(a: list[float], b: list[float]) -> list[float]:
    out = [0.0] * 16
    for col in range(4):
        for row in range(4):
            out[col * 4 + row] = (
                a[0 * 4 + row] * b[col * 4 + 0]
                + a[1 * 4 + row] * b[col * 4 + 1]
                + a[2 * 4 + row] * b[col * 4 + 2]
                + a[3 * 4 + row] * b[col * 4 + 3]
            )
    return out


def mat4_transform_point(m: list[float], p: Vec3) -> Vec3:
    x, y, z = p
    tx = m[0] * x + m[4] * y + m[8] * z + m[12]
    ty = m[1] * x + m[5] * y + m[9] * z + m[13]
    tz = m[2] * x + m[6] * y + m[10] * z + m[14]
    tw = m[3] * x + m[7] * y + m[11] * z + m[15]
    if tw not in (0.0, 1.0):
        tx /= tw
        ty /= tw
        tz /= tw
    return (tx, ty, tz)


def mat4_is_identity(m: list[float] | None) -> bool:
    if m is None:
        return True
    return all(value == expected for value, expected in zip(m, mat4_identity()))


def _finite_numbers(values: Iterable[Any], count: int, name: str) -> list[float]:
    out: list[float] = []
    for index, value in enumerate(values):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise GeometryError(f"{name}[{index}] must be a number")
        if not math.isfinite(value):
            raise GeometryError(f"{name}[{index}] must be finite")
        out.append(float(value))
    if len(out) != count:
        raise GeometryError(f"Invalid {name}, expected {count} numbers (got {len(out)})")
    return out


def parse_transform(raw: Any) -> list[float] | None:
    """Read a tile ``transform`` (column-major 4x4).

    Returns ``None`` when the tile carries no transform. Both the plain
    16-number array and the legacy ``{"elements": [...]}`` wrapper are accepted.
    """
    if raw is None:
        return None
    if isinstance(raw, dict) and "elements" in raw:
        raw = raw["elements"]
    if not isinstance(raw, list):
        raise GeometryError("Invalid transform, expected an array of 16 numbers")
    return _finite_numbers(raw, 16, "transform")


def compose_transforms(parent: list[float] | None, local_raw: Any) -> list[float]:
    parent = parent if parent is not None else mat4_identity()
    local = parse_transform(local_raw)
    if local is None:
        return parent
    return mat4_multiply(parent, local)


def world_transform(chain: Iterable[Any]) -> list[float]:
    """Compose raw ``transform`` values ordered from the root down to a tile."""
    world = mat4_identity()
    for raw in chain:
        world = compose_transforms(world, raw)
    return world


def geodetic_to_ecef(lon: float, lat: float, height: float) -> Vec3:
    sin_lat = math.sin(lat)
    cos_lat = math.cos(lat)
    n = WGS84_A / math.sqrt(1.0 - WGS84_E2 * sin_lat * sin_lat)
    x = (n + height) * cos_lat * math.cos(lon)
    y = (n + height) * cos_lat * math.sin(lon)
    z = ((1.0 - WGS84_E2) * n + height) * sin_lat
    return (x, y, z)


def ecef_to_geodetic(x: float, y: float, z: float) -> Vec3:
    """Convert an earth-fixed point to (longitude, latitude, height) in radians/meters."""
    if x * x + y * y + z * z < CENTER_TOLERANCE_SQUARED:
        raise GeometryError(f"Point ({x}, {y}, {z}) is at the ellipsoid center; it has no geographic position")

    p = math.hypot(x, y)
    lon = math.atan2(y, x)
    lat = math.atan2(z, p * (1.0 - WGS84_E2))
    for _ in range(GEODETIC_MAX_ITERATIONS):
        sin_lat = math.sin(lat)
        n = WGS84_A / math.sqrt(1.0 - WGS84_E2 * sin_lat * sin_lat)
        next_lat = math.atan2(z + WGS84_E2 * n * sin_lat, p)
        if abs(next_lat - lat) < GEODETIC_LATITUDE_TOLERANCE:
            lat = next_lat
            break
        lat = next_lat

    sin_lat = math.sin(lat)
    height = p * math.cos(lat) + z * sin_lat - WGS84_A * math.sqrt(1.0 - WGS84_E2 * sin_lat * sin_lat)
    return (lon, lat, height)


def enu_to_ecef_matrix(lon: float, lat: float, height: float) -> list[float]:
    """East-north-up frame at a geographic origin (radians), as a column-major matrix."""
    sin_lat = math.sin(lat)
    cos_lat = math.cos(lat)
    sin_lon = math.sin(lon)
    cos_lon = math.cos(lon)

    x, y, z = geodetic_to_ecef(lon, lat, height)

    east = (-sin_lon, cos_lon, 0.0)
    north = (-sin_lat * cos_lon, -sin_lat * sin_lon, cos_lat)
    up = (cos_lat * cos_lon, cos_lat * sin_lon, sin_lat)

    return [
        east[0],
        east[1],
        east[2],
        0.0,
        north[0],
        north[1],
        north[2],
        0.0,
        up[0],
        up[1],
        up[2],
        0.0,
        x,
        y,
        z,
        1.0,
    ]


def box_corners(box: Any) -> list[Vec3]:
    if not isinstance(box, list) or len(box) != 12:
        length = len(box) if isinstance(box, list) else type(box).__name__
        raise GeometryError(f"Invalid boundingVolume.box, expected an array of 12 numbers (got {length})")
    values = _finite_numbers(box, 12, "box")
    cx, cy, cz = values[0:3]
    axis_x = values[3:6]
    axis_y = values[6:9]
    axis_z = values[9:12]

    corners: list[Vec3] = []
    for sx, sy, sz in BOX_SIGNS:
        corners.append(
            (
                cx + sx * axis_x[0] + sy * axis_y[0] + sz * axis_z[0],
                cy + sx * axis_x[1] + sy * axis_y[1] + sz * axis_z[1],
                cz + sx * axis_x[2] + sy * axis_y[2] + sz * axis_z[2],
            )
        )
    return corners


def box_to_region(box: Any, transform: list[float] | None = None) -> tuple[float, float, float, float, float, float]:
    """Geographic envelope ``(west, south, east, north, minHeight, maxHeight)`` of an oriented box.

    ``transform`` is the tile's world transform (identity when ``None``). The
    envelope is the plain min/max over the eight corners; boxes straddling the
    antimeridian are not special-cased (see :func:`crosses_antimeridian`).
    """
    matrix = transform if transform is not None else mat4_identity()
    cartographics = [ecef_to_geodetic(*mat4_transform_point(matrix, corner)) for corner in box_corners(box)]

    lons = [c[0] for c in cartographics]
    lats = [c[1] for c in cartographics]
    heights = [c[2] for c in cartographics]
    return (min(lons), min(lats), max(lons), max(lats), min(heights), max(heights))


def crosses_antimeridian(west: float, east: float) -> bool:
    # Corners on both sides of +-pi produce an envelope spanning almost the whole globe.
    return east - west > math.pi and west < -math.pi / 2 and east > math.pi / 2
