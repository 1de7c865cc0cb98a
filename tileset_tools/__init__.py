"""Batch tools that inspect, repair and restructure 3D Tiles tileset documents."""
from __future__ import annotations

from .errors import BoundingVolumeError, GeometryError, TilesetError

__version__ = "0.3.0"

__all__ = ["BoundingVolumeError", "GeometryError", "TilesetError", "__version__"]
