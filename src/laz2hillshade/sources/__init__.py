"""Point source exports."""

from laz2hillshade.sources.base import PointBatch, PointSource
from laz2hillshade.sources.index_db import LazIndexDbSource
from laz2hillshade.sources.registry import open_point_source, source_names
from laz2hillshade.sources.tile_db import LazTileDbSource

__all__ = [
    "LazIndexDbSource",
    "LazTileDbSource",
    "PointBatch",
    "PointSource",
    "open_point_source",
    "source_names",
]
