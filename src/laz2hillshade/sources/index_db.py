"""Point source backed by an index of LAS/LAZ files and their extents."""

from __future__ import annotations

import logging
import sqlite3
import threading
from pathlib import Path
from typing import Collection, Iterator

from laz2hillshade.errors import SourceReadError
from laz2hillshade.models import BoundingBox
from laz2hillshade.sources.base import DEFAULT_CHUNK_SIZE, PointBatch
from laz2hillshade.sources.las import iter_las_points

LOGGER = logging.getLogger(__name__)

INDEX_QUERY = (
    "SELECT file FROM laz_index "
    "WHERE max_x >= ? AND min_x <= ? AND max_y >= ? AND min_y <= ? "
    "ORDER BY file"
)


class LazIndexDbSource:
    """Read points from files listed in `laz_index(file, min_x, min_y, max_x, max_y)`.

    Extents are stored in the source projection. Relative file paths are
    resolved against the directory holding the index database.
    """

    name = "laz-index-db"

    def __init__(
        self,
        path: Path,
        *,
        projection: str = "EPSG:3857",
        classes: Collection[int] | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        if not path.exists():
            raise SourceReadError(f"Point index database not found: {path}")
        self.path = path
        self.projection = projection
        self.classes = classes
        self.chunk_size = chunk_size
        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(
                f"file:{path}?mode=ro", uri=True, check_same_thread=False
            )
        except sqlite3.Error as exc:
            raise SourceReadError(f"Cannot open point index database {path}: {exc}") from exc

    def files_for(self, region: BoundingBox) -> list[Path]:
        """Return the indexed files whose extent intersects `region`."""
        try:
            with self._lock:
                rows = self._conn.execute(
                    INDEX_QUERY,
                    (region.min_x, region.max_x, region.min_y, region.max_y),
                ).fetchall()
        except sqlite3.Error as exc:
            raise SourceReadError(f"Cannot query point index {self.path}: {exc}") from exc
        files = []
        for (name,) in rows:
            candidate = Path(name)
            if not candidate.is_absolute():
                candidate = self.path.parent / candidate
            files.append(candidate)
        return files

    def query(self, region: BoundingBox) -> Iterator[PointBatch]:
        """Stream points inside `region` from every intersecting file."""
        files = self.files_for(region)
        LOGGER.debug("Reading %d point cloud files", len(files))
        for path in files:
            yield from iter_las_points(
                path,
                region,
                classes=self.classes,
                chunk_size=self.chunk_size,
            )

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> "LazIndexDbSource":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
