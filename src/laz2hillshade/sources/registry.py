"""Point source selection by input mode."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Collection

from laz2hillshade.sources.base import PointSource
from laz2hillshade.sources.index_db import LazIndexDbSource
from laz2hillshade.sources.tile_db import LazTileDbSource

SourceFactory = Callable[..., PointSource]

LOGGER = logging.getLogger(__name__)

_SOURCES: dict[str, SourceFactory] = {
    LazTileDbSource.name: LazTileDbSource,
    LazIndexDbSource.name: LazIndexDbSource,
}


def source_names() -> tuple[str, ...]:
    """Return the registered source mode names."""
    return tuple(_SOURCES)


def open_point_source(
    mode: str,
    path: Path,
    *,
    projection: str,
    classes: Collection[int] | None = None,
) -> PointSource:
    """Return an opened point source for the given input mode."""
    try:
        factory = _SOURCES[mode]
    except KeyError as exc:
        raise KeyError(f"Unknown point source: {mode}") from exc
    LOGGER.debug("Opening %s source %s (%s)", mode, path, projection)
    return factory(path, projection=projection, classes=classes)
