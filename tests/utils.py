from __future__ import annotations

import io
import os
import sqlite3
import threading
import time
from pathlib import Path
from typing import Iterable, Iterator

import laspy
import numpy as np

from laz2hillshade.models import BoundingBox, TileCoord
from laz2hillshade.options import RenderOptions
from laz2hillshade.shading import parse_shadings
from laz2hillshade.sources.base import PointBatch
from laz2hillshade.tiling import tile_bounds

# A zoom 16 tile just north-east of (0, 0); every zoom 18 pixel is ~9.55 m.
AREA_TILE = TileCoord(16, 32768, 32767)
AREA = tile_bounds(AREA_TILE)


def las_data(
    xs: np.ndarray,
    ys: np.ndarray,
    zs: np.ndarray,
    *,
    classification: int | np.ndarray = 2,
) -> laspy.LasData:
    header = laspy.LasHeader(point_format=3, version="1.2")
    header.offsets = np.array([float(np.min(xs)), float(np.min(ys)), float(np.min(zs))])
    header.scales = np.array([0.001, 0.001, 0.001])
    las = laspy.LasData(header)
    las.x = np.asarray(xs, dtype=np.float64)
    las.y = np.asarray(ys, dtype=np.float64)
    las.z = np.asarray(zs, dtype=np.float64)
    las.classification = np.broadcast_to(
        np.asarray(classification, dtype=np.uint8), (len(xs),)
    ).copy()
    return las


def write_las(path: Path, xs, ys, zs, *, classification: int | np.ndarray = 2) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    las_data(xs, ys, zs, classification=classification).write(str(path))
    return path


def las_bytes(xs, ys, zs, *, classification: int | np.ndarray = 2) -> bytes:
    buffer = io.BytesIO()
    las_data(xs, ys, zs, classification=classification).write(buffer, do_compress=False)
    return buffer.getvalue()


def point_lattice(
    bounds: BoundingBox,
    *,
    spacing: float = 4.0,
    margin: float = 50.0,
) -> tuple[np.ndarray, np.ndarray]:
    """Return a regular lattice of x/y positions covering bounds plus margin."""
    xs = np.arange(bounds.min_x - margin, bounds.max_x + margin, spacing)
    ys = np.arange(bounds.min_y - margin, bounds.max_y + margin, spacing)
    grid_x, grid_y = np.meshgrid(xs, ys)
    return grid_x.ravel(), grid_y.ravel()


def write_index_db(path: Path, entries: Iterable[tuple[str, BoundingBox]]) -> Path:
    conn = sqlite3.connect(str(path))
    conn.execute(
        "CREATE TABLE laz_index (file TEXT, min_x REAL, min_y REAL, max_x REAL, max_y REAL)"
    )
    conn.executemany(
        "INSERT INTO laz_index VALUES (?, ?, ?, ?, ?)",
        [(name, *bbox.as_tuple()) for name, bbox in entries],
    )
    conn.commit()
    conn.close()
    return path


def write_tile_db(path: Path, zoom: int, blobs: dict[TileCoord, bytes]) -> Path:
    conn = sqlite3.connect(str(path))
    conn.execute("CREATE TABLE metadata (name TEXT, value TEXT)")
    conn.execute(
        "CREATE TABLE tiles (zoom_level INTEGER, tile_column INTEGER, "
        "tile_row INTEGER, tile_data BLOB)"
    )
    conn.execute("INSERT INTO metadata VALUES ('zoom', ?)", (str(zoom),))
    conn.executemany(
        "INSERT INTO tiles VALUES (?, ?, ?, ?)",
        [
            (coord.zoom, coord.x, (1 << coord.zoom) - 1 - coord.y, blob)
            for coord, blob in blobs.items()
        ],
    )
    conn.commit()
    conn.close()
    return path


def plane_index_db(
    root: Path,
    *,
    elevation=lambda xs, ys: np.full(xs.shape, 100.0),
    extra: Iterable[tuple[str, BoundingBox]] = (),
) -> Path:
    """Write two LAS files covering AREA (west and east halves) plus an index."""
    xs, ys = point_lattice(AREA)
    zs = elevation(xs, ys)
    mid = AREA.center[0]
    entries = []
    for name, mask in (("west.las", xs < mid), ("east.las", xs >= mid)):
        write_las(root / "laz" / name, xs[mask], ys[mask], zs[mask])
        entries.append(
            (
                os.path.join("laz", name),
                BoundingBox(
                    float(xs[mask].min()),
                    float(ys[mask].min()),
                    float(xs[mask].max()),
                    float(ys[mask].max()),
                ),
            )
        )
    entries.extend(extra)
    return write_index_db(root / "index.sqlite", entries)


def render_options(tmp_path: Path, **overrides) -> RenderOptions:
    values = dict(
        source_mode="laz-index-db",
        source_path=tmp_path / "index.sqlite",
        output_path=tmp_path / "out.mbtiles",
        bbox=AREA,
        zoom_level=18,
        unit_zoom_level=17,
        min_zoom_level=14,
        tile_size=16,
        buffer=4,
        tile_format="png",
        shadings=parse_shadings("oblique,315,45"),
        jobs=1,
    )
    values.update(overrides)
    return RenderOptions(**values)


class CountingSource:
    """Point source wrapper that records every query."""

    def __init__(self, inner) -> None:
        self.inner = inner
        self.name = inner.name
        self.projection = inner.projection
        self.queries: list[BoundingBox] = []

    def query(self, region: BoundingBox) -> Iterator[PointBatch]:
        self.queries.append(region)
        return self.inner.query(region)

    def close(self) -> None:
        self.inner.close()

    def __enter__(self) -> "CountingSource":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class BrokenSource(CountingSource):
    """Counting wrapper whose Nth query raises a non-source error.

    Other queries are delayed so the failure is observed first.
    """

    def __init__(self, inner, *, fail_on: int = 2, delay: float = 0.1) -> None:
        super().__init__(inner)
        self.fail_on = fail_on
        self.delay = delay
        self._lock = threading.Lock()

    def query(self, region: BoundingBox) -> Iterator[PointBatch]:
        with self._lock:
            self.queries.append(region)
            count = len(self.queries)
        if count == self.fail_on:
            raise RuntimeError("point store went away")
        time.sleep(self.delay)
        return self.inner.query(region)


class ListSource:
    """In-memory point source for unit tests."""

    name = "list"

    def __init__(self, batches: list[PointBatch], projection: str = "EPSG:3857") -> None:
        self.batches = batches
        self.projection = projection

    def query(self, region: BoundingBox) -> Iterator[PointBatch]:
        for batch in self.batches:
            clipped = batch.clipped(region)
            if len(clipped):
                yield clipped

    def close(self) -> None:
        pass

    def __enter__(self) -> "ListSource":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def tile_blobs(path: Path) -> dict[tuple[int, int, int], bytes]:
    """Return every stored tile keyed by XYZ coordinates."""
    conn = sqlite3.connect(str(path))
    rows = conn.execute("SELECT zoom_level, tile_column, tile_row, tile_data FROM tiles").fetchall()
    conn.close()
    return {(z, x, (1 << z) - 1 - row): bytes(data) for z, x, row, data in rows}
