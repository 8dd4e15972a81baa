"""Exception hierarchy shared by the rendering pipeline."""

from __future__ import annotations

from laz2hillshade.models import TileCoord


class Laz2HillshadeError(RuntimeError):
    """Base class for errors raised by laz2hillshade."""


class ConfigurationError(Laz2HillshadeError):
    """Invalid or conflicting options detected before any processing."""

    def __init__(self, flag: str, message: str) -> None:
        super().__init__(f"{flag}: {message}")
        self.flag = flag
        self.message = message


class SourceReadError(Laz2HillshadeError):
    """Point data for a processing unit could not be read."""

    def __init__(self, message: str, *, unit: TileCoord | None = None) -> None:
        super().__init__(message)
        self.unit = unit

    def with_unit(self, unit: TileCoord) -> "SourceReadError":
        """Return a copy of the error bound to a processing unit."""
        error = SourceReadError(str(self), unit=unit)
        error.__cause__ = self.__cause__
        return error


class AggregationInconsistency(Laz2HillshadeError):
    """Sibling tiles disagree or arrive in a way partitioning cannot produce."""


class SinkWriteError(Laz2HillshadeError):
    """The tile database rejected a write or cannot be opened as requested."""
