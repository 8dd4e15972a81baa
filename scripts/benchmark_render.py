"""Benchmark hillshade pyramid rendering throughput."""

from __future__ import annotations

import argparse
import csv
import shutil
import tracemalloc
from pathlib import Path
from time import perf_counter

from laz2hillshade.options import RenderOptions, bbox_from_values
from laz2hillshade.pipeline import run_render
from laz2hillshade.shading import parse_shadings
from laz2hillshade.sink import MBTilesSink
from laz2hillshade.sources import open_point_source, source_names


def _resolve_output_dir(path_value: str) -> Path:
    """Resolve the benchmark output directory."""
    output_dir = Path(path_value)
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


def main() -> int:
    """CLI entrypoint for render benchmarks."""
    parser = argparse.ArgumentParser(description="Benchmark render performance.")
    parser.add_argument("--source", required=True, help="Point source database path.")
    parser.add_argument(
        "--source-mode",
        choices=source_names(),
        default="laz-index-db",
        help="Point source type.",
    )
    parser.add_argument("--source-projection", default="EPSG:3857", help="Point CRS.")
    parser.add_argument(
        "--bbox",
        nargs=4,
        type=float,
        required=True,
        metavar=("MIN_X", "MIN_Y", "MAX_X", "MAX_Y"),
        help="Area to render in EPSG:3857 metres.",
    )
    parser.add_argument("--zoom-level", type=int, default=17, help="Base zoom level.")
    parser.add_argument("--unit-zoom-level", type=int, default=15, help="Unit zoom level.")
    parser.add_argument(
        "--shadings",
        default="igor,315,00000080,shadow+oblique,315,45",
        help="Shading components.",
    )
    parser.add_argument(
        "--jobs",
        type=int,
        action="append",
        help="Worker counts to compare (repeatable, default: 1).",
    )
    parser.add_argument("--runs", type=int, default=3, help="Runs per worker count.")
    parser.add_argument(
        "--output-dir",
        default="benchmarks/render",
        help="Base output directory.",
    )
    parser.add_argument("--csv-path", help="Optional CSV output path override.")
    args = parser.parse_args()

    output_dir = _resolve_output_dir(args.output_dir)
    csv_path = Path(args.csv_path) if args.csv_path else output_dir / "render.csv"
    bbox = bbox_from_values(args.bbox)
    shadings = parse_shadings(args.shadings)

    rows: list[dict[str, object]] = []
    for jobs in args.jobs or [1]:
        for run in range(1, args.runs + 1):
            run_dir = output_dir / f"jobs_{jobs:02d}_run_{run:02d}"
            if run_dir.exists():
                shutil.rmtree(run_dir)
            run_dir.mkdir(parents=True, exist_ok=True)
            options = RenderOptions(
                source_mode=args.source_mode,
                source_path=Path(args.source),
                output_path=run_dir / "hillshade.mbtiles",
                bbox=bbox,
                zoom_level=args.zoom_level,
                unit_zoom_level=min(args.unit_zoom_level, args.zoom_level),
                shadings=shadings,
                source_projection=args.source_projection,
                jobs=jobs,
            )

            tracemalloc.start()
            start = perf_counter()
            with open_point_source(
                options.source_mode,
                options.source_path,
                projection=options.source_projection,
                classes=options.point_classes,
            ) as source, MBTilesSink.open(options.output_path) as sink:
                result = run_render(options, source, sink)
            elapsed = perf_counter() - start
            _, peak = tracemalloc.get_traced_memory()
            tracemalloc.stop()

            stages = result.timings.get("stages", {})
            rows.append(
                {
                    "jobs": jobs,
                    "run": run,
                    "units": result.units_total,
                    "tiles": sum(result.tiles_written.values()),
                    "failures": len(result.failures),
                    "seconds": round(elapsed, 6),
                    "rasterize_seconds": stages.get("rasterize", {}).get("seconds", 0.0),
                    "shade_seconds": stages.get("shade", {}).get("seconds", 0.0),
                    "peak_mb": round(peak / (1024 * 1024), 3),
                    "output_path": str(options.output_path),
                }
            )

    csv_path.parent.mkdir(parents=True, exist_ok=True)
    with csv_path.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.DictWriter(
            handle,
            fieldnames=[
                "jobs",
                "run",
                "units",
                "tiles",
                "failures",
                "seconds",
                "rasterize_seconds",
                "shade_seconds",
                "peak_mb",
                "output_path",
            ],
        )
        writer.writeheader()
        writer.writerows(rows)

    print(f"Wrote {len(rows)} rows to {csv_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
