"""MBTiles output sink with serialized writes and resume support."""

from __future__ import annotations

import logging
import sqlite3
import threading
from pathlib import Path
from typing import Mapping

from laz2hillshade.errors import SinkWriteError
from laz2hillshade.models import TileCoord
from laz2hillshade.tiling import TileRange

LOGGER = logging.getLogger(__name__)

EXISTING_FILE_ACTIONS = ("overwrite", "continue")
DEFAULT_COMMIT_INTERVAL = 64

_SCHEMA = (
    "CREATE TABLE IF NOT EXISTS metadata (name TEXT PRIMARY KEY, value TEXT)",
    "CREATE TABLE IF NOT EXISTS tiles ("
    "zoom_level INTEGER, tile_column INTEGER, tile_row INTEGER, tile_data BLOB)",
    "CREATE UNIQUE INDEX IF NOT EXISTS tile_index ON tiles (zoom_level, tile_column, tile_row)",
)


def _tms_row(coord: TileCoord) -> int:
    """Return the MBTiles (TMS) row for an XYZ tile."""
    return (1 << coord.zoom) - 1 - coord.y


class MBTilesSink:
    """Single-connection MBTiles writer shared by all workers.

    Every call holds one lock, so writes are serialized and commits happen in
    arrival order: a parent is never committed before its children.
    """

    def __init__(
        self,
        path: Path,
        conn: sqlite3.Connection,
        *,
        existing_file_action: str | None,
        commit_interval: int = DEFAULT_COMMIT_INTERVAL,
    ) -> None:
        self.path = path
        self.existing_file_action = existing_file_action
        self.commit_interval = max(1, commit_interval)
        self._conn = conn
        self._lock = threading.Lock()
        self._uncommitted = 0
        self.tiles_written = 0

    @classmethod
    def open(
        cls,
        path: Path,
        *,
        existing_file_action: str | None = None,
        commit_interval: int = DEFAULT_COMMIT_INTERVAL,
    ) -> "MBTilesSink":
        """Open or create a tile database, honouring the existing-file policy."""
        if existing_file_action is not None and existing_file_action not in EXISTING_FILE_ACTIONS:
            raise SinkWriteError(f"Unknown existing-file action: {existing_file_action}")
        if path.exists() and existing_file_action is None:
            raise SinkWriteError(
                f"Output {path} already exists; choose overwrite or continue explicitly."
            )
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(path), check_same_thread=False)
            for statement in _SCHEMA:
                conn.execute(statement)
            conn.commit()
        except (OSError, sqlite3.Error) as exc:
            raise SinkWriteError(f"Cannot open tile database {path}: {exc}") from exc
        LOGGER.debug("Opened tile database %s (%s)", path, existing_file_action or "new")
        return cls(
            path,
            conn,
            existing_file_action=existing_file_action,
            commit_interval=commit_interval,
        )

    @property
    def resume(self) -> bool:
        """Return True when existing tiles should be kept instead of re-rendered."""
        return self.existing_file_action == "continue"

    def exists(self, coord: TileCoord) -> bool:
        try:
            with self._lock:
                row = self._conn.execute(
                    "SELECT 1 FROM tiles WHERE zoom_level = ? AND tile_column = ? "
                    "AND tile_row = ?",
                    (coord.zoom, coord.x, _tms_row(coord)),
                ).fetchone()
        except sqlite3.Error as exc:
            raise SinkWriteError(f"Cannot query tile {coord}: {exc}") from exc
        return row is not None

    def existing(self, tiles: TileRange) -> set[TileCoord]:
        """Return the stored tiles inside a tile range."""
        flip = (1 << tiles.zoom) - 1
        try:
            with self._lock:
                rows = self._conn.execute(
                    "SELECT tile_column, tile_row FROM tiles WHERE zoom_level = ? "
                    "AND tile_column BETWEEN ? AND ? AND tile_row BETWEEN ? AND ?",
                    (
                        tiles.zoom,
                        tiles.min_x,
                        tiles.max_x,
                        flip - tiles.max_y,
                        flip - tiles.min_y,
                    ),
                ).fetchall()
        except sqlite3.Error as exc:
            raise SinkWriteError(f"Cannot query tiles at zoom {tiles.zoom}: {exc}") from exc
        return {TileCoord(tiles.zoom, column, flip - row) for column, row in rows}

    def get(self, coord: TileCoord) -> bytes | None:
        try:
            with self._lock:
                row = self._conn.execute(
                    "SELECT tile_data FROM tiles WHERE zoom_level = ? AND tile_column = ? "
                    "AND tile_row = ?",
                    (coord.zoom, coord.x, _tms_row(coord)),
                ).fetchone()
        except sqlite3.Error as exc:
            raise SinkWriteError(f"Cannot read tile {coord}: {exc}") from exc
        return None if row is None else bytes(row[0])

    def put(self, coord: TileCoord, data: bytes) -> None:
        """Insert or replace one tile."""
        try:
            with self._lock:
                self._conn.execute(
                    "INSERT OR REPLACE INTO tiles (zoom_level, tile_column, tile_row, tile_data) "
                    "VALUES (?, ?, ?, ?)",
                    (coord.zoom, coord.x, _tms_row(coord), sqlite3.Binary(data)),
                )
                self.tiles_written += 1
                self._uncommitted += 1
                if self._uncommitted >= self.commit_interval:
                    self._conn.commit()
                    self._uncommitted = 0
        except sqlite3.Error as exc:
            raise SinkWriteError(f"Cannot write tile {coord}: {exc}") from exc

    def write_metadata(self, metadata: Mapping[str, object]) -> None:
        """Replace metadata entries and commit."""
        try:
            with self._lock:
                self._conn.executemany(
                    "INSERT OR REPLACE INTO metadata (name, value) VALUES (?, ?)",
                    [(name, str(value)) for name, value in metadata.items()],
                )
                self._conn.commit()
                self._uncommitted = 0
        except sqlite3.Error as exc:
            raise SinkWriteError(f"Cannot write metadata: {exc}") from exc

    def flush(self) -> None:
        try:
            with self._lock:
                self._conn.commit()
                self._uncommitted = 0
        except sqlite3.Error as exc:
            raise SinkWriteError(f"Cannot commit tiles: {exc}") from exc

    def close(self) -> None:
        """Commit outstanding writes and close the connection."""
        try:
            self.flush()
        finally:
            with self._lock:
                self._conn.close()

    def __enter__(self) -> "MBTilesSink":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
