"""Command-line interface for laz2hillshade."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path

from laz2hillshade import __version__
from laz2hillshade.encode import FORMATS
from laz2hillshade.errors import ConfigurationError, Laz2HillshadeError
from laz2hillshade.logging_utils import LogOptions, configure_logging
from laz2hillshade.options import render_options_from_args
from laz2hillshade.pipeline import RenderResult, run_render
from laz2hillshade.rasterize import FILL_POLICIES
from laz2hillshade.sink import EXISTING_FILE_ACTIONS, MBTilesSink
from laz2hillshade.sources import open_point_source

LOGGER = logging.getLogger("laz2hillshade.cli")

SHADINGS_HELP = (
    "Shading components joined by '+'. Each is METHOD,PARAMS[,RRGGBB[AA]][,fixed|shadow] "
    "where METHOD is oblique,AZIMUTH,ALTITUDE | igor,AZIMUTH | slope,ALTITUDE "
    "(degrees), e.g. 'igor,315,00000080,shadow+oblique,315,45'."
)


def _add_source_arguments(parser: argparse.ArgumentParser) -> None:
    """Register the point source flags."""
    group = parser.add_argument_group("point source (exactly one)")
    group.add_argument(
        "--laz-tile-db",
        help="SQLite database of LAS/LAZ blobs keyed by tile at a fixed zoom level.",
    )
    group.add_argument(
        "--laz-index-db",
        help="SQLite index mapping LAS/LAZ files to their extents.",
    )
    group.add_argument(
        "--source-projection",
        default="EPSG:3857",
        help="CRS of the point coordinates (default: EPSG:3857).",
    )
    group.add_argument(
        "--point-classes",
        default="2",
        help="Comma-separated LAS classification codes to keep, or 'all' (default: 2).",
    )


def _add_render_arguments(parser: argparse.ArgumentParser) -> None:
    """Register the rendering and pyramid flags."""
    parser.add_argument(
        "--bbox",
        nargs=4,
        type=float,
        metavar=("MIN_X", "MIN_Y", "MAX_X", "MAX_Y"),
        help="Area to render in EPSG:3857 metres.",
    )
    parser.add_argument("--zoom-level", type=int, help="Maximum (base) zoom level.")
    parser.add_argument(
        "--min-zoom-level",
        type=int,
        default=0,
        help="Lowest zoom level to aggregate down to (default: 0).",
    )
    parser.add_argument(
        "--unit-zoom-level",
        type=int,
        default=16,
        help="Zoom level of processing units loaded as one batch (default: 16).",
    )
    parser.add_argument("--shadings", help=SHADINGS_HELP)
    parser.add_argument(
        "--contrast",
        type=float,
        default=1.0,
        help="Contrast factor, > 0 (default: 1.0).",
    )
    parser.add_argument(
        "--brightness",
        type=float,
        default=0.0,
        help="Brightness offset in [-1, 1] (default: 0.0).",
    )
    parser.add_argument(
        "--z-factor",
        type=float,
        default=1.0,
        help="Vertical exaggeration (default: 1.0).",
    )
    parser.add_argument(
        "--tile-size",
        type=int,
        default=256,
        help="Tile size in pixels (default: 256).",
    )
    parser.add_argument(
        "--buffer",
        type=int,
        default=40,
        help="Pixels rendered around each unit to avoid seams (default: 40).",
    )
    parser.add_argument(
        "--fill",
        choices=FILL_POLICIES,
        default="interpolate",
        help="How to treat cells without points (default: interpolate).",
    )
    parser.add_argument(
        "--fill-distance",
        type=float,
        default=100.0,
        help="Maximum interpolation search distance in pixels (default: 100).",
    )


def _add_output_arguments(parser: argparse.ArgumentParser) -> None:
    """Register output format and sink flags."""
    parser.add_argument("output", help="Output MBTiles file.")
    parser.add_argument(
        "--format",
        choices=FORMATS,
        default="jpeg",
        help="Tile image format (default: jpeg).",
    )
    parser.add_argument(
        "--jpeg-quality",
        type=int,
        default=80,
        help="JPEG quality 0-100 (default: 80).",
    )
    parser.add_argument(
        "--background-color",
        default="FFFFFF",
        help="Hex RGB used behind transparent pixels in JPEG tiles (default: FFFFFF).",
    )
    parser.add_argument(
        "--existing-file-action",
        choices=EXISTING_FILE_ACTIONS,
        help="What to do when the output exists: overwrite tiles or continue a previous run.",
    )
    parser.add_argument(
        "--jobs",
        type=int,
        default=0,
        help="Parallel unit workers (0 = auto).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Plan units and tiles without reading points or writing output.",
    )
    parser.add_argument(
        "--metrics-json",
        help="Optional path for a JSON run summary with stage timings.",
    )


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="laz2hillshade",
        description="Render LiDAR point clouds into an MBTiles hillshade pyramid.",
    )
    parser.add_argument("--version", action="version", version=__version__)
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase log verbosity (repeatable).",
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Reduce log output to warnings and errors.",
    )
    parser.add_argument(
        "--log-json",
        action="store_true",
        help="Emit logs as JSON on stderr.",
    )
    parser.add_argument(
        "--log-file",
        help="Optional path for JSON log output.",
    )
    _add_source_arguments(parser)
    _add_render_arguments(parser)
    _add_output_arguments(parser)
    return parser


def _write_metrics(path_value: str | None, result: RenderResult) -> None:
    """Write the run summary JSON when requested."""
    if not path_value:
        return
    path = Path(path_value)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(result.as_dict(), indent=2), encoding="utf-8")


def main(argv: list[str] | None = None) -> int:
    """Run the CLI entrypoint and return an exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)
    log_file_value = getattr(args, "log_file", None)
    configure_logging(
        LogOptions(
            verbose=args.verbose or 0,
            quiet=bool(args.quiet),
            log_file=Path(log_file_value) if log_file_value else None,
            json_console=bool(args.log_json),
        )
    )

    try:
        options = render_options_from_args(args)
    except ConfigurationError as exc:
        parser.error(str(exc))

    if options.dry_run:
        result = run_render(options, None, None)
        _write_metrics(args.metrics_json, result)
        return 0

    try:
        with open_point_source(
            options.source_mode,
            options.source_path,
            projection=options.source_projection,
            classes=options.point_classes,
        ) as source, MBTilesSink.open(
            options.output_path,
            existing_file_action=options.existing_file_action,
        ) as sink:
            result = run_render(options, source, sink)
    except Laz2HillshadeError as exc:
        LOGGER.error("Render failed: %s", exc)
        return 1

    _write_metrics(args.metrics_json, result)
    if not result.ok:
        LOGGER.error("%d units could not be rendered:", len(result.failures))
        for failure in result.failures:
            LOGGER.error(
                "  %s %s: %s",
                failure.unit,
                ",".join(f"{value:.2f}" for value in failure.bounds.as_tuple()),
                failure.error,
                extra={"unit": str(failure.unit)},
            )
        return 1
    LOGGER.info("Tile database written to %s", options.output_path)
    return 0
