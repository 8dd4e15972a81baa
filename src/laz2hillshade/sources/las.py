"""Streaming LAS/LAZ reads built on laspy."""

from __future__ import annotations

from pathlib import Path
from typing import BinaryIO, Collection, Iterator

import laspy
import numpy as np

from laz2hillshade.errors import SourceReadError
from laz2hillshade.models import BoundingBox
from laz2hillshade.sources.base import DEFAULT_CHUNK_SIZE, PointBatch


def iter_las_points(
    source: Path | BinaryIO,
    region: BoundingBox,
    *,
    classes: Collection[int] | None = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    label: str | None = None,
) -> Iterator[PointBatch]:
    """Yield point batches from a LAS/LAZ file, filtered to region and classes.

    Only one chunk is resident at a time.
    """
    name = label or str(source)
    try:
        reader = laspy.open(source)
    except FileNotFoundError as exc:
        raise SourceReadError(f"Point cloud file not found: {name}") from exc
    except Exception as exc:
        raise SourceReadError(f"Cannot open point cloud {name}: {exc}") from exc
    with reader:
        header = reader.header
        file_bounds = BoundingBox(
            float(header.mins[0]),
            float(header.mins[1]),
            float(header.maxs[0]),
            float(header.maxs[1]),
        )
        if header.point_count and not file_bounds.intersects(region):
            return
        class_filter = None if classes is None else np.asarray(sorted(classes))
        try:
            for points in reader.chunk_iterator(chunk_size):
                xs = np.asarray(points.x, dtype=np.float64)
                ys = np.asarray(points.y, dtype=np.float64)
                zs = np.asarray(points.z, dtype=np.float64)
                mask = region.contains_points(xs, ys)
                if class_filter is not None:
                    mask &= np.isin(np.asarray(points.classification), class_filter)
                if not mask.any():
                    continue
                yield PointBatch(xs[mask], ys[mask], zs[mask])
        except Exception as exc:
            raise SourceReadError(f"Corrupt point cloud {name}: {exc}") from exc
