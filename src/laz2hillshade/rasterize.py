"""Elevation gridding from streamed point batches."""

from __future__ import annotations

import logging
from typing import Iterable

import numpy as np
from rasterio.fill import fillnodata

from laz2hillshade.crs import Reprojector
from laz2hillshade.models import ElevationGrid, GridSpec
from laz2hillshade.sources.base import PointBatch

LOGGER = logging.getLogger(__name__)

FILL_POLICIES = ("none", "interpolate")

# Elevations are summed as integer millimetres so that the per-cell mean does
# not depend on the order in which points arrive.
_MM_PER_UNIT = 1000.0


class ElevationAccumulator:
    """Bin points into grid cells, keeping a running sum and count per cell."""

    def __init__(self, spec: GridSpec) -> None:
        self.spec = spec
        cells = spec.width * spec.height
        self._sums = np.zeros(cells, dtype=np.int64)
        self._counts = np.zeros(cells, dtype=np.int64)
        self.points_seen = 0
        self.points_used = 0

    def cell_indices(self, xs: np.ndarray, ys: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """Return flat cell indices and a mask of points that fall on the grid."""
        spec = self.spec
        cols = np.floor((xs - spec.bounds.min_x) / spec.resolution).astype(np.int64)
        rows = np.floor((spec.bounds.max_y - ys) / spec.resolution).astype(np.int64)
        inside = (cols >= 0) & (cols < spec.width) & (rows >= 0) & (rows < spec.height)
        return rows[inside] * spec.width + cols[inside], inside

    def add(self, xs: np.ndarray, ys: np.ndarray, zs: np.ndarray) -> None:
        """Accumulate one batch of tile-space points."""
        self.points_seen += len(xs)
        if len(xs) == 0:
            return
        indices, inside = self.cell_indices(xs, ys)
        if not inside.any():
            return
        millimetres = np.rint(np.asarray(zs)[inside] * _MM_PER_UNIT).astype(np.int64)
        np.add.at(self._sums, indices, millimetres)
        np.add.at(self._counts, indices, 1)
        self.points_used += int(indices.size)

    def finish(self) -> ElevationGrid:
        """Return the mean elevation grid and its validity mask."""
        shape = (self.spec.height, self.spec.width)
        valid = self._counts > 0
        elevation = np.zeros(self._sums.shape, dtype=np.float64)
        elevation[valid] = self._sums[valid] / self._counts[valid] / _MM_PER_UNIT
        return ElevationGrid(
            elevation=elevation.reshape(shape),
            valid=valid.reshape(shape),
            spec=self.spec,
        )


def fill_gaps(grid: ElevationGrid, *, max_search_distance: float) -> ElevationGrid:
    """Interpolate unsampled cells from sampled neighbours within reach."""
    if grid.valid.all() or not grid.valid.any():
        return grid
    filled = fillnodata(
        grid.elevation.copy(),
        mask=grid.valid.astype(np.uint8),
        max_search_distance=max_search_distance,
        smoothing_iterations=0,
    )
    # fillnodata leaves unreachable cells untouched; a 0/1 probe marks them.
    reached = fillnodata(
        np.where(grid.valid, 0.0, 1.0),
        mask=grid.valid.astype(np.uint8),
        max_search_distance=max_search_distance,
        smoothing_iterations=0,
    )
    valid = grid.valid | (reached < 0.5)
    elevation = np.where(valid, filled, 0.0)
    return ElevationGrid(elevation=elevation, valid=valid, spec=grid.spec)


def rasterize_points(
    batches: Iterable[PointBatch],
    spec: GridSpec,
    *,
    reprojector: Reprojector,
    fill: str = "interpolate",
    fill_distance: float = 100.0,
) -> ElevationGrid:
    """Build an elevation grid from a point stream in a single pass."""
    if fill not in FILL_POLICIES:
        raise ValueError(f"Unknown fill policy: {fill}")
    accumulator = ElevationAccumulator(spec)
    for batch in batches:
        xs, ys = reprojector.to_tile_space(batch.x, batch.y)
        accumulator.add(xs, ys, batch.z)
    grid = accumulator.finish()
    LOGGER.debug(
        "Gridded %d of %d points into %d cells",
        accumulator.points_used,
        accumulator.points_seen,
        int(grid.valid.sum()),
    )
    if fill == "interpolate":
        grid = fill_gaps(grid, max_search_distance=fill_distance)
    return grid
