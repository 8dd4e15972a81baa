"""Shared point-source types and protocol."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Protocol

import numpy as np

from laz2hillshade.models import BoundingBox

DEFAULT_CHUNK_SIZE = 1_000_000


@dataclass(frozen=True)
class PointBatch:
    """A chunk of point samples in the source projection."""

    x: np.ndarray
    y: np.ndarray
    z: np.ndarray

    def __len__(self) -> int:
        return len(self.x)

    def clipped(self, region: BoundingBox) -> "PointBatch":
        """Return the points that fall inside `region`."""
        mask = region.contains_points(self.x, self.y)
        if mask.all():
            return self
        return PointBatch(self.x[mask], self.y[mask], self.z[mask])


class PointSource(Protocol):
    """Protocol implemented by point-cloud backends."""

    name: str
    projection: str

    def query(self, region: BoundingBox) -> Iterator[PointBatch]:
        """Yield batches of points inside `region` (source projection)."""
        ...

    def close(self) -> None:
        ...

    def __enter__(self) -> "PointSource":
        ...

    def __exit__(self, *exc_info: object) -> None:
        ...
