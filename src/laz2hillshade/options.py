"""Render options derived from CLI arguments, validated before any work."""

from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Sequence

from pyproj.exceptions import CRSError

from laz2hillshade.crs import normalize_crs
from laz2hillshade.encode import FORMATS
from laz2hillshade.errors import ConfigurationError
from laz2hillshade.models import BoundingBox
from laz2hillshade.rasterize import FILL_POLICIES
from laz2hillshade.shading import (
    KERNEL_RADIUS,
    ShadingComponent,
    parse_color,
    parse_shadings,
)
from laz2hillshade.sink import EXISTING_FILE_ACTIONS

LOGGER = logging.getLogger(__name__)

MAX_ZOOM = 30
GROUND_CLASS = 2


@dataclass(frozen=True)
class RenderOptions:
    """Structured render options derived from CLI arguments."""

    source_mode: str
    source_path: Path
    output_path: Path
    bbox: BoundingBox
    zoom_level: int
    shadings: tuple[ShadingComponent, ...]
    source_projection: str = "EPSG:3857"
    unit_zoom_level: int = 16
    min_zoom_level: int = 0
    contrast: float = 1.0
    brightness: float = 0.0
    z_factor: float = 1.0
    tile_size: int = 256
    buffer: int = 40
    tile_format: str = "jpeg"
    jpeg_quality: int = 80
    background_color: tuple[int, int, int] = (255, 255, 255)
    existing_file_action: str | None = None
    fill: str = "interpolate"
    fill_distance: float = 100.0
    point_classes: tuple[int, ...] | None = (GROUND_CLASS,)
    jobs: int = 0
    dry_run: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "source_mode": self.source_mode,
            "source_path": str(self.source_path),
            "output_path": str(self.output_path),
            "bbox": list(self.bbox.as_tuple()),
            "zoom_level": self.zoom_level,
            "shadings": len(self.shadings),
            "source_projection": self.source_projection,
            "unit_zoom_level": self.unit_zoom_level,
            "min_zoom_level": self.min_zoom_level,
            "contrast": self.contrast,
            "brightness": self.brightness,
            "z_factor": self.z_factor,
            "tile_size": self.tile_size,
            "buffer": self.buffer,
            "tile_format": self.tile_format,
            "jpeg_quality": self.jpeg_quality,
            "background_color": list(self.background_color),
            "existing_file_action": self.existing_file_action,
            "fill": self.fill,
            "fill_distance": self.fill_distance,
            "point_classes": None if self.point_classes is None else list(self.point_classes),
            "jobs": self.jobs,
            "dry_run": self.dry_run,
        }


def bbox_from_values(values: Sequence[float]) -> BoundingBox:
    """Build a bounding box from `min_x, min_y, max_x, max_y`."""
    if len(values) != 4:
        raise ValueError(f"expected four coordinates, got {len(values)}")
    min_x, min_y, max_x, max_y = (float(value) for value in values)
    if min_x > max_x or min_y > max_y:
        raise ValueError(f"minimum exceeds maximum in {min_x}, {min_y}, {max_x}, {max_y}")
    return BoundingBox(min_x, min_y, max_x, max_y)


def parse_point_classes(text: str) -> tuple[int, ...] | None:
    """Parse comma-separated LAS classification codes; `all` disables filtering."""
    if text.strip().lower() == "all":
        return None
    try:
        classes = tuple(sorted({int(part) for part in text.split(",") if part.strip()}))
    except ValueError as exc:
        raise ValueError(f"expected integers or 'all', got '{text}'") from exc
    if not classes or any(code < 0 or code > 255 for code in classes):
        raise ValueError(f"classification codes must be in 0-255, got '{text}'")
    return classes


def _require(condition: bool, flag: str, message: str) -> None:
    if not condition:
        raise ConfigurationError(flag, message)


def _parse(flag: str, parser: Any, value: Any) -> Any:
    try:
        return parser(value)
    except ValueError as exc:
        raise ConfigurationError(flag, str(exc)) from exc


def render_options_from_args(args: argparse.Namespace) -> RenderOptions:
    """Normalize and validate CLI args into RenderOptions."""
    sources = [
        (mode, path)
        for mode, path in (
            ("laz-tile-db", getattr(args, "laz_tile_db", None)),
            ("laz-index-db", getattr(args, "laz_index_db", None)),
        )
        if path
    ]
    _require(
        len(sources) == 1,
        "--laz-tile-db/--laz-index-db",
        "exactly one point source is required",
    )
    source_mode, source_path = sources[0]

    _require(args.bbox is not None, "--bbox", "is required")
    bbox = _parse("--bbox", bbox_from_values, args.bbox)
    _require(args.zoom_level is not None, "--zoom-level", "is required")
    _require(0 <= args.zoom_level <= MAX_ZOOM, "--zoom-level", f"must be in 0-{MAX_ZOOM}")
    _require(args.shadings is not None, "--shadings", "is required")
    shadings = _parse("--shadings", parse_shadings, args.shadings)

    _require(args.unit_zoom_level >= 0, "--unit-zoom-level", "must be >= 0")
    unit_zoom = args.unit_zoom_level
    if unit_zoom > args.zoom_level:
        LOGGER.warning(
            "--unit-zoom-level %d exceeds --zoom-level %d; using %d",
            unit_zoom,
            args.zoom_level,
            args.zoom_level,
        )
        unit_zoom = args.zoom_level
    _require(
        0 <= args.min_zoom_level <= args.zoom_level,
        "--min-zoom-level",
        "must be between 0 and --zoom-level",
    )
    _require(args.contrast > 0, "--contrast", "must be > 0")
    _require(-1.0 <= args.brightness <= 1.0, "--brightness", "must be in [-1, 1]")
    _require(args.z_factor > 0, "--z-factor", "must be > 0")
    tile_size = args.tile_size
    _require(
        tile_size > 0 and tile_size & (tile_size - 1) == 0,
        "--tile-size",
        "must be a positive power of two",
    )
    _require(
        args.buffer >= KERNEL_RADIUS,
        "--buffer",
        f"must be at least {KERNEL_RADIUS} pixel to cover the slope kernel",
    )
    _require(args.format in FORMATS, "--format", f"must be one of {', '.join(FORMATS)}")
    _require(0 <= args.jpeg_quality <= 100, "--jpeg-quality", "must be in 0-100")
    background = _parse("--background-color", parse_color, args.background_color)
    _require(args.fill in FILL_POLICIES, "--fill", f"must be one of {', '.join(FILL_POLICIES)}")
    _require(args.fill_distance > 0, "--fill-distance", "must be > 0")
    classes = _parse("--point-classes", parse_point_classes, args.point_classes)
    _require(args.jobs >= 0, "--jobs", "must be >= 0")
    try:
        normalize_crs(args.source_projection)
    except CRSError as exc:
        raise ConfigurationError("--source-projection", f"unknown CRS: {exc}") from exc

    output_path = Path(args.output)
    action = args.existing_file_action
    if action is not None:
        _require(
            action in EXISTING_FILE_ACTIONS,
            "--existing-file-action",
            f"must be one of {', '.join(EXISTING_FILE_ACTIONS)}",
        )
    _require(
        action is not None or not output_path.exists() or args.dry_run,
        "--existing-file-action",
        f"is required because {output_path} already exists",
    )
    _require(Path(source_path).exists(), f"--{source_mode}", f"{source_path} does not exist")

    return RenderOptions(
        source_mode=source_mode,
        source_path=Path(source_path),
        output_path=output_path,
        bbox=bbox,
        zoom_level=args.zoom_level,
        shadings=shadings,
        source_projection=args.source_projection,
        unit_zoom_level=unit_zoom,
        min_zoom_level=args.min_zoom_level,
        contrast=args.contrast,
        brightness=args.brightness,
        z_factor=args.z_factor,
        tile_size=tile_size,
        buffer=args.buffer,
        tile_format=args.format,
        jpeg_quality=args.jpeg_quality,
        background_color=tuple(round(channel * 255) for channel in background[:3]),
        existing_file_action=action,
        fill=args.fill,
        fill_distance=args.fill_distance,
        point_classes=classes,
        jobs=args.jobs,
        dry_run=bool(args.dry_run),
    )
