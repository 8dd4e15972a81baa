"""Web Mercator tile math and processing-unit layout."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterator

from laz2hillshade.models import BoundingBox, GridSpec, ProcessingUnit, TileCoord

EARTH_RADIUS = 6378137.0
WORLD_HALF = math.pi * EARTH_RADIUS
WORLD_SIZE = 2.0 * WORLD_HALF
WORLD_BOUNDS = BoundingBox(-WORLD_HALF, -WORLD_HALF, WORLD_HALF, WORLD_HALF)

# Fractional tile positions this close to an integer are treated as on the edge.
_SNAP = 1e-9


def tile_span(zoom: int) -> float:
    """Return the width of one tile at `zoom` in EPSG:3857 metres."""
    return WORLD_SIZE / (1 << zoom)


def pixel_size(zoom: int, tile_size: int) -> float:
    """Return the EPSG:3857 size of one pixel at `zoom`."""
    return WORLD_SIZE / (tile_size << zoom)


def ground_resolution(zoom: int, tile_size: int, y: float) -> float:
    """Return the true ground size of a pixel at mercator northing `y`."""
    latitude = math.atan(math.sinh(y / EARTH_RADIUS))
    return pixel_size(zoom, tile_size) * math.cos(latitude)


def tile_bounds(coord: TileCoord) -> BoundingBox:
    """Return the EPSG:3857 bounds of a tile."""
    span = tile_span(coord.zoom)
    min_x = -WORLD_HALF + coord.x * span
    max_y = WORLD_HALF - coord.y * span
    return BoundingBox(min_x, max_y - span, min_x + span, max_y)


def _snap(value: float) -> float:
    nearest = round(value)
    if abs(value - nearest) < _SNAP:
        return float(nearest)
    return value


@dataclass(frozen=True)
class TileRange:
    """Inclusive rectangle of tiles at one zoom level."""

    zoom: int
    min_x: int
    min_y: int
    max_x: int
    max_y: int

    def __contains__(self, coord: object) -> bool:
        if not isinstance(coord, TileCoord) or coord.zoom != self.zoom:
            return False
        return self.min_x <= coord.x <= self.max_x and self.min_y <= coord.y <= self.max_y

    def __iter__(self) -> Iterator[TileCoord]:
        for y in range(self.min_y, self.max_y + 1):
            for x in range(self.min_x, self.max_x + 1):
                yield TileCoord(self.zoom, x, y)

    def __len__(self) -> int:
        return (self.max_x - self.min_x + 1) * (self.max_y - self.min_y + 1)

    def intersection(self, other: "TileRange") -> "TileRange | None":
        """Return the overlapping tiles of two ranges at the same zoom."""
        if other.zoom != self.zoom:
            raise ValueError("Tile ranges must share a zoom level")
        min_x = max(self.min_x, other.min_x)
        min_y = max(self.min_y, other.min_y)
        max_x = min(self.max_x, other.max_x)
        max_y = min(self.max_y, other.max_y)
        if min_x > max_x or min_y > max_y:
            return None
        return TileRange(self.zoom, min_x, min_y, max_x, max_y)

    @classmethod
    def of_tile(cls, coord: TileCoord, zoom: int) -> "TileRange":
        """Return the tiles at `zoom` covered by `coord`."""
        shift = zoom - coord.zoom
        if shift < 0:
            raise ValueError(f"Zoom {zoom} is above tile {coord}")
        size = 1 << shift
        return cls(
            zoom,
            coord.x << shift,
            coord.y << shift,
            (coord.x << shift) + size - 1,
            (coord.y << shift) + size - 1,
        )


def tiles_for_bbox(bbox: BoundingBox, zoom: int) -> TileRange:
    """Return the minimal tile range covering `bbox` at `zoom`.

    A coordinate lying exactly on a tile edge belongs to the tile to its east
    (or south), so a box ending on an edge does not pull in the next tile.
    """
    span = tile_span(zoom)
    limit = (1 << zoom) - 1
    fx0 = _snap((bbox.min_x + WORLD_HALF) / span)
    fx1 = _snap((bbox.max_x + WORLD_HALF) / span)
    fy0 = _snap((WORLD_HALF - bbox.max_y) / span)
    fy1 = _snap((WORLD_HALF - bbox.min_y) / span)
    min_x = math.floor(fx0)
    min_y = math.floor(fy0)
    max_x = max(min_x, math.ceil(fx1) - 1)
    max_y = max(min_y, math.ceil(fy1) - 1)
    return TileRange(
        zoom,
        min(max(min_x, 0), limit),
        min(max(min_y, 0), limit),
        min(max(max_x, 0), limit),
        min(max(max_y, 0), limit),
    )


def processing_unit(
    coord: TileCoord,
    *,
    base_zoom: int,
    tile_size: int,
    buffer: int,
) -> ProcessingUnit:
    """Lay out the buffered raster grid for a unit tile."""
    if base_zoom < coord.zoom:
        raise ValueError(f"Base zoom {base_zoom} is above unit {coord}")
    bounds = tile_bounds(coord)
    resolution = pixel_size(base_zoom, tile_size)
    extent = tile_size << (base_zoom - coord.zoom)
    grid = GridSpec(
        bounds=bounds.expanded(buffer * resolution),
        width=extent + 2 * buffer,
        height=extent + 2 * buffer,
        resolution=resolution,
    )
    return ProcessingUnit(
        coord=coord,
        base_zoom=base_zoom,
        tile_size=tile_size,
        buffer=buffer,
        bounds=bounds,
        grid=grid,
    )
