"""Point source backed by a pre-tiled SQLite database of LAS/LAZ blobs."""

from __future__ import annotations

import io
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Collection, Iterator

from laz2hillshade.crs import Reprojector
from laz2hillshade.errors import SourceReadError
from laz2hillshade.models import BoundingBox
from laz2hillshade.sources.base import DEFAULT_CHUNK_SIZE, PointBatch
from laz2hillshade.sources.las import iter_las_points
from laz2hillshade.tiling import tiles_for_bbox

LOGGER = logging.getLogger(__name__)


class LazTileDbSource:
    """Read points from `tiles(zoom_level, tile_column, tile_row, tile_data)`.

    Each blob holds the points of one EPSG:3857 tile at a fixed zoom level.
    Rows use the TMS scheme like an MBTiles file.
    """

    name = "laz-tile-db"

    def __init__(
        self,
        path: Path,
        *,
        projection: str = "EPSG:3857",
        classes: Collection[int] | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        if not path.exists():
            raise SourceReadError(f"Point tile database not found: {path}")
        self.path = path
        self.projection = projection
        self.classes = classes
        self.chunk_size = chunk_size
        self._reprojector = Reprojector(projection)
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._lock = threading.Lock()
        self.zoom = self._detect_zoom()

    def _connection(self) -> sqlite3.Connection:
        """Return this thread's read-only connection."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            try:
                conn = sqlite3.connect(
                    f"file:{self.path}?mode=ro", uri=True, check_same_thread=False
                )
            except sqlite3.Error as exc:
                raise SourceReadError(f"Cannot open point tile database {self.path}: {exc}") from exc
            self._local.conn = conn
            with self._lock:
                self._connections.append(conn)
        return conn

    def _detect_zoom(self) -> int:
        """Return the tiling zoom from metadata or the tiles present."""
        conn = self._connection()
        try:
            row = conn.execute("SELECT value FROM metadata WHERE name = 'zoom'").fetchone()
            if row is not None:
                return int(row[0])
        except sqlite3.OperationalError:
            pass
        try:
            zooms = [r[0] for r in conn.execute("SELECT DISTINCT zoom_level FROM tiles")]
        except sqlite3.Error as exc:
            raise SourceReadError(f"Invalid point tile database {self.path}: {exc}") from exc
        if len(zooms) != 1:
            raise SourceReadError(
                f"Point tile database {self.path} must hold exactly one zoom level, found {zooms}"
            )
        return int(zooms[0])

    def query(self, region: BoundingBox) -> Iterator[PointBatch]:
        """Yield points inside `region` from every tile blob it touches."""
        tiles = tiles_for_bbox(self._reprojector.bbox_from_source(region), self.zoom)
        LOGGER.debug("Reading up to %d point tiles at zoom %d", len(tiles), self.zoom)
        flip = (1 << self.zoom) - 1
        conn = self._connection()
        for coord in tiles:
            try:
                row = conn.execute(
                    "SELECT tile_data FROM tiles WHERE zoom_level = ? AND tile_column = ? "
                    "AND tile_row = ?",
                    (coord.zoom, coord.x, flip - coord.y),
                ).fetchone()
            except sqlite3.Error as exc:
                raise SourceReadError(f"Cannot read point tile {coord}: {exc}") from exc
            if row is None:
                continue
            yield from iter_las_points(
                io.BytesIO(row[0]),
                region,
                classes=self.classes,
                chunk_size=self.chunk_size,
                label=f"{self.path.name}:{coord}",
            )

    def close(self) -> None:
        with self._lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()

    def __enter__(self) -> "LazTileDbSource":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

