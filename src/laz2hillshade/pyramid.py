"""Base-tile cutting, quad downsampling and the cross-unit aggregation table."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, Sequence

import numpy as np

from laz2hillshade.errors import AggregationInconsistency
from laz2hillshade.models import NodeState, ProcessingUnit, PyramidNode, ShadedRaster, TileCoord
from laz2hillshade.tiling import TileRange


def to_pixels(rgba: np.ndarray) -> np.ndarray:
    """Quantize a [0, 1] float RGBA array to uint8."""
    return np.rint(np.clip(rgba, 0.0, 1.0) * 255.0).astype(np.uint8)


def empty_tile(tile_size: int) -> np.ndarray:
    """Return a fully transparent tile."""
    return np.zeros((tile_size, tile_size, 4), dtype=np.uint8)


def cut_base_tiles(
    shaded: ShadedRaster,
    unit: ProcessingUnit,
    *,
    coverage: TileRange | None = None,
) -> list[PyramidNode]:
    """Crop the buffer off a unit raster and split it into base-zoom tiles.

    Tiles outside `coverage` are not produced.
    """
    expected = (unit.grid.height, unit.grid.width, 4)
    if shaded.rgba.shape != expected:
        raise AggregationInconsistency(
            f"Shaded raster for unit {unit.coord} has shape {shaded.rgba.shape}, expected {expected}"
        )
    size = unit.tile_size
    buffer = unit.buffer
    nodes: list[PyramidNode] = []
    for coord in unit.coord.descendants(unit.base_zoom):
        if coverage is not None and coord not in coverage:
            continue
        col = (coord.x - (unit.coord.x << (unit.base_zoom - unit.coord.zoom))) * size + buffer
        row = (coord.y - (unit.coord.y << (unit.base_zoom - unit.coord.zoom))) * size + buffer
        window = shaded.rgba[row : row + size, col : col + size]
        nodes.append(PyramidNode.rendered(coord, to_pixels(window)))
    return nodes


def downsample_quad(children: Sequence[np.ndarray | None], tile_size: int) -> np.ndarray:
    """Merge four child tiles (NW, NE, SW, SE) into one parent tile.

    Each 2x2 block is averaged with alpha weighting, so transparent pixels
    carry no colour into the parent. Missing children are transparent.
    """
    if len(children) != 4:
        raise AggregationInconsistency(f"Expected 4 children, got {len(children)}")
    mosaic = np.zeros((2 * tile_size, 2 * tile_size, 4), dtype=np.float64)
    for index, child in enumerate(children):
        if child is None:
            continue
        if child.shape != (tile_size, tile_size, 4) or child.dtype != np.uint8:
            raise AggregationInconsistency(
                f"Child tile has shape {child.shape} ({child.dtype}), "
                f"expected ({tile_size}, {tile_size}, 4) uint8"
            )
        row = (index >> 1) * tile_size
        col = (index & 1) * tile_size
        mosaic[row : row + tile_size, col : col + tile_size] = child
    blocks = mosaic.reshape(tile_size, 2, tile_size, 2, 4)
    alpha = blocks[..., 3]
    alpha_sum = alpha.sum(axis=(1, 3))
    weighted = (blocks[..., :3] * alpha[..., None]).sum(axis=(1, 3))
    parent = np.zeros((tile_size, tile_size, 4), dtype=np.float64)
    np.divide(
        weighted,
        alpha_sum[..., None],
        out=parent[..., :3],
        where=alpha_sum[..., None] > 0,
    )
    parent[..., 3] = alpha_sum / 4.0
    return np.rint(parent).astype(np.uint8)


@dataclass
class _PendingParent:
    """Children collected so far for one parent tile."""

    coord: TileCoord
    slots: list[PyramidNode | None]
    filled: list[bool]
    placeholders: int

    @property
    def complete(self) -> bool:
        return all(self.filled)


@dataclass(frozen=True)
class SiblingGroup:
    """A parent coordinate with all four of its children resolved.

    `children` is in NW, NE, SW, SE order; None marks a placeholder outside
    the requested coverage.
    """

    parent: TileCoord
    children: tuple[PyramidNode | None, PyramidNode | None, PyramidNode | None, PyramidNode | None]

    @property
    def present(self) -> list[PyramidNode]:
        return [child for child in self.children if child is not None]

    @property
    def failed(self) -> bool:
        return any(child.state is NodeState.FAILED for child in self.present)

    @property
    def all_stored(self) -> bool:
        return all(child.state is NodeState.STORED for child in self.present)


@dataclass
class AggregationStats:
    """Counters describing aggregation progress."""

    emitted: int = 0


class AggregationState:
    """Reduce-by-arrival table of parents waiting for their children.

    `covered(coord)` decides whether a child is expected at all; children
    outside the coverage are counted as transparent placeholders as soon as
    their parent's entry is created. All mutation happens under one lock so a
    parent is handed out exactly once, to whichever caller delivers its
    fourth child.
    """

    def __init__(self, covered: Callable[[TileCoord], bool], *, min_zoom: int = 0) -> None:
        self._covered = covered
        self.min_zoom = min_zoom
        self._pending: dict[TileCoord, _PendingParent] = {}
        self._lock = threading.Lock()
        self.stats = AggregationStats()

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def pending(self) -> list[TileCoord]:
        """Return parents still waiting for children."""
        with self._lock:
            return sorted(self._pending)

    def _new_entry(self, parent: TileCoord) -> _PendingParent:
        filled = [not self._covered(child) for child in parent.children()]
        return _PendingParent(
            coord=parent,
            slots=[None, None, None, None],
            filled=filled,
            placeholders=sum(filled),
        )

    def offer(self, node: PyramidNode) -> SiblingGroup | None:
        """Record an arrived child; return its sibling group if now complete."""
        coord = node.coord
        if coord.zoom <= self.min_zoom:
            return None
        if not self._covered(coord):
            raise AggregationInconsistency(f"Tile {coord} arrived outside the requested coverage")
        parent = coord.parent()
        quadrant = coord.quadrant()
        with self._lock:
            entry = self._pending.get(parent)
            if entry is None:
                entry = self._new_entry(parent)
                self._pending[parent] = entry
            if entry.filled[quadrant]:
                raise AggregationInconsistency(f"Tile {coord} arrived twice")
            entry.slots[quadrant] = node
            entry.filled[quadrant] = True
            if not entry.complete:
                return None
            del self._pending[parent]
            self.stats.emitted += 1
        slots = entry.slots
        return SiblingGroup(parent=parent, children=(slots[0], slots[1], slots[2], slots[3]))
