"""CRS normalization and reprojection into tile space."""

from __future__ import annotations

import threading

import numpy as np
from pyproj import CRS, Transformer

from laz2hillshade.models import BoundingBox

TILE_CRS = "EPSG:3857"
GEOGRAPHIC_CRS = "EPSG:4326"


def normalize_crs(value: str | CRS) -> CRS:
    """Normalize CRS input into a pyproj CRS object."""
    return CRS.from_user_input(value)


def transformer(src: str | CRS, dst: str | CRS) -> Transformer:
    """Return a transformer that respects lon/lat axis order."""
    return Transformer.from_crs(normalize_crs(src), normalize_crs(dst), always_xy=True)


def _linspace(start: float, stop: float, count: int) -> list[float]:
    """Return evenly spaced values between start and stop inclusive."""
    if count <= 1:
        return [start]
    step = (stop - start) / (count - 1)
    return [start + step * index for index in range(count)]


def transform_bbox(
    bbox: BoundingBox,
    tx: Transformer,
    *,
    densify_pts: int = 0,
) -> BoundingBox:
    """Transform a box by sampling its edges and taking the envelope."""
    if densify_pts > 0:
        steps = densify_pts + 2
        xs: list[float] = []
        ys: list[float] = []
        for x in _linspace(bbox.min_x, bbox.max_x, steps):
            xs.extend([x, x])
            ys.extend([bbox.min_y, bbox.max_y])
        for y in _linspace(bbox.min_y, bbox.max_y, steps):
            xs.extend([bbox.min_x, bbox.max_x])
            ys.extend([y, y])
    else:
        xs = [bbox.min_x, bbox.min_x, bbox.max_x, bbox.max_x]
        ys = [bbox.min_y, bbox.max_y, bbox.min_y, bbox.max_y]
    out_xs, out_ys = tx.transform(xs, ys)
    return BoundingBox(min(out_xs), min(out_ys), max(out_xs), max(out_ys))


class Reprojector:
    """Move coordinates between a point source projection and tile space.

    Transformers are created lazily and kept per thread because pyproj
    transformer objects must not be shared between threads.
    """

    def __init__(self, source_projection: str | CRS = TILE_CRS) -> None:
        self.source_crs = normalize_crs(source_projection)
        self.tile_crs = normalize_crs(TILE_CRS)
        self.identity = self.source_crs == self.tile_crs
        self._local = threading.local()

    def _transformer(self, key: str, src: CRS, dst: CRS) -> Transformer:
        cache = getattr(self._local, "transformers", None)
        if cache is None:
            cache = {}
            self._local.transformers = cache
        tx = cache.get(key)
        if tx is None:
            tx = transformer(src, dst)
            cache[key] = tx
        return tx

    def to_tile_space(self, xs: np.ndarray, ys: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """Project source coordinates into EPSG:3857."""
        if self.identity:
            return xs, ys
        tx = self._transformer("to_tile", self.source_crs, self.tile_crs)
        out_x, out_y = tx.transform(xs, ys)
        return np.asarray(out_x, dtype=np.float64), np.asarray(out_y, dtype=np.float64)

    def bbox_to_source(self, bbox: BoundingBox) -> BoundingBox:
        """Return the source-projection envelope of a tile-space box."""
        if self.identity:
            return bbox
        tx = self._transformer("to_source", self.tile_crs, self.source_crs)
        return transform_bbox(bbox, tx, densify_pts=21)

    def bbox_from_source(self, bbox: BoundingBox) -> BoundingBox:
        """Return the tile-space envelope of a source-projection box."""
        if self.identity:
            return bbox
        tx = self._transformer("to_tile", self.source_crs, self.tile_crs)
        return transform_bbox(bbox, tx, densify_pts=21)

    def bbox_to_geographic(self, bbox: BoundingBox) -> BoundingBox:
        """Return the WGS84 lon/lat envelope of a tile-space box."""
        tx = self._transformer("to_geographic", self.tile_crs, normalize_crs(GEOGRAPHIC_CRS))
        return transform_bbox(bbox, tx, densify_pts=21)
