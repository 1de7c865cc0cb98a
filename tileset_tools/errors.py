from __future__ import annotations


class TilesetError(RuntimeError):
    pass


class GeometryError(TilesetError):
    pass


class BoundingVolumeError(TilesetError):
    pass
