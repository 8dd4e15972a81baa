"""Data models shared by the rasterizer, shading engine and pyramid builder."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Iterator

import numpy as np


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned rectangle in projection units."""

    min_x: float
    min_y: float
    max_x: float
    max_y: float

    def __post_init__(self) -> None:
        if self.min_x > self.max_x or self.min_y > self.max_y:
            raise ValueError(f"Bounding box minimum exceeds maximum: {self.as_tuple()}")

    def as_tuple(self) -> tuple[float, float, float, float]:
        return (self.min_x, self.min_y, self.max_x, self.max_y)

    @property
    def width(self) -> float:
        return self.max_x - self.min_x

    @property
    def height(self) -> float:
        return self.max_y - self.min_y

    @property
    def center(self) -> tuple[float, float]:
        return ((self.min_x + self.max_x) / 2.0, (self.min_y + self.max_y) / 2.0)

    def expanded(self, margin: float) -> "BoundingBox":
        """Return the box grown by `margin` on every side."""
        return BoundingBox(
            self.min_x - margin,
            self.min_y - margin,
            self.max_x + margin,
            self.max_y + margin,
        )

    def intersects(self, other: "BoundingBox") -> bool:
        """Return True when the boxes overlap or touch."""
        return (
            self.min_x <= other.max_x
            and other.min_x <= self.max_x
            and self.min_y <= other.max_y
            and other.min_y <= self.max_y
        )

    def contains_points(self, xs: np.ndarray, ys: np.ndarray) -> np.ndarray:
        """Return a boolean mask of points inside the box (edges inclusive)."""
        return (xs >= self.min_x) & (xs <= self.max_x) & (ys >= self.min_y) & (ys <= self.max_y)


@dataclass(frozen=True, order=True)
class TileCoord:
    """XYZ tile address; y grows southward."""

    zoom: int
    x: int
    y: int

    def __post_init__(self) -> None:
        if self.zoom < 0:
            raise ValueError(f"Zoom level must be >= 0: {self.zoom}")
        limit = 1 << self.zoom
        if not (0 <= self.x < limit and 0 <= self.y < limit):
            raise ValueError(f"Tile {self} is outside the zoom {self.zoom} grid")

    def __str__(self) -> str:
        return f"{self.zoom}/{self.x}/{self.y}"

    def parent(self) -> "TileCoord":
        """Return the tile one zoom level up that contains this tile."""
        if self.zoom == 0:
            raise ValueError("Zoom 0 tile has no parent")
        return TileCoord(self.zoom - 1, self.x >> 1, self.y >> 1)

    def children(self) -> tuple["TileCoord", "TileCoord", "TileCoord", "TileCoord"]:
        """Return the four children in NW, NE, SW, SE order."""
        zoom = self.zoom + 1
        x = self.x << 1
        y = self.y << 1
        return (
            TileCoord(zoom, x, y),
            TileCoord(zoom, x + 1, y),
            TileCoord(zoom, x, y + 1),
            TileCoord(zoom, x + 1, y + 1),
        )

    def quadrant(self) -> int:
        """Return this tile's index among its siblings (NW=0, NE=1, SW=2, SE=3)."""
        return (self.x & 1) | ((self.y & 1) << 1)

    def quadkey(self) -> str:
        """Return the Bing-style quadkey, which sorts tiles in Morton order."""
        digits = []
        for level in range(self.zoom, 0, -1):
            mask = 1 << (level - 1)
            digit = 0
            if self.x & mask:
                digit += 1
            if self.y & mask:
                digit += 2
            digits.append(str(digit))
        return "".join(digits)

    def descendants(self, zoom: int) -> Iterator["TileCoord"]:
        """Yield every tile at `zoom` below this tile in row-major order."""
        if zoom < self.zoom:
            raise ValueError(f"Zoom {zoom} is above tile {self}")
        shift = zoom - self.zoom
        size = 1 << shift
        for y in range(self.y << shift, (self.y << shift) + size):
            for x in range(self.x << shift, (self.x << shift) + size):
                yield TileCoord(zoom, x, y)


@dataclass(frozen=True)
class GridSpec:
    """Placement of a raster grid in tile space; row 0 is the northern edge."""

    bounds: BoundingBox
    width: int
    height: int
    resolution: float


@dataclass(frozen=True)
class ProcessingUnit:
    """A unit-zoom tile whose points are loaded and rasterized in one batch."""

    coord: TileCoord
    base_zoom: int
    tile_size: int
    buffer: int
    bounds: BoundingBox
    grid: GridSpec

    @property
    def extent(self) -> int:
        """Return the unbuffered pixel size of the unit along one axis."""
        return self.tile_size << (self.base_zoom - self.coord.zoom)


@dataclass(frozen=True)
class ElevationGrid:
    """Dense elevation samples plus a mask of cells that hold real data."""

    elevation: np.ndarray
    valid: np.ndarray
    spec: GridSpec

    @property
    def shape(self) -> tuple[int, int]:
        return self.elevation.shape


@dataclass(frozen=True)
class ShadedRaster:
    """Straight-alpha RGBA float raster with channel values in [0, 1]."""

    rgba: np.ndarray
    spec: GridSpec


class NodeState(str, enum.Enum):
    """How a pyramid node's content is obtained."""

    RENDERED = "rendered"
    STORED = "stored"
    FAILED = "failed"


@dataclass(frozen=True)
class PyramidNode:
    """A finished tile offered to the aggregation graph."""

    coord: TileCoord
    state: NodeState
    pixels: np.ndarray | None = None

    @classmethod
    def rendered(cls, coord: TileCoord, pixels: np.ndarray) -> "PyramidNode":
        return cls(coord, NodeState.RENDERED, pixels)

    @classmethod
    def stored(cls, coord: TileCoord) -> "PyramidNode":
        return cls(coord, NodeState.STORED)

    @classmethod
    def failed(cls, coord: TileCoord) -> "PyramidNode":
        return cls(coord, NodeState.FAILED)


@dataclass(frozen=True)
class OutputRecord:
    """Encoded tile bytes ready to be persisted."""

    coord: TileCoord
    data: bytes
