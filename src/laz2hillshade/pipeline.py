"""Render orchestration: unit scheduling, base tiles and pyramid aggregation."""

from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Iterable

import numpy as np

from laz2hillshade.crs import Reprojector
from laz2hillshade.encode import decode_tile, encode_tile
from laz2hillshade.errors import AggregationInconsistency, SourceReadError
from laz2hillshade.models import (
    BoundingBox,
    NodeState,
    OutputRecord,
    ProcessingUnit,
    PyramidNode,
    TileCoord,
)
from laz2hillshade.options import RenderOptions
from laz2hillshade.perf import StageTimer
from laz2hillshade.pyramid import AggregationState, SiblingGroup, cut_base_tiles, downsample_quad
from laz2hillshade.rasterize import rasterize_points
from laz2hillshade.shading import shade
from laz2hillshade.sink import MBTilesSink
from laz2hillshade.sources.base import PointSource
from laz2hillshade.tiling import (
    TileRange,
    ground_resolution,
    processing_unit,
    tiles_for_bbox,
)

LOGGER = logging.getLogger(__name__)

IN_FLIGHT_FACTOR = 2
PROGRESS_EVERY = 25


@dataclass(frozen=True)
class RenderPlan:
    """Units to process and the tile coverage of every pyramid level."""

    units: tuple[ProcessingUnit, ...]
    coverage: dict[int, TileRange]

    def tile_counts(self) -> dict[int, int]:
        return {zoom: len(tiles) for zoom, tiles in sorted(self.coverage.items())}


@dataclass(frozen=True)
class UnitOutcome:
    """What happened to one processing unit."""

    unit: TileCoord
    status: str
    tiles: int = 0
    error: str | None = None


@dataclass(frozen=True)
class UnitFailure:
    """A unit skipped because its points could not be read."""

    unit: TileCoord
    bounds: BoundingBox
    error: str


@dataclass(frozen=True)
class RenderResult:
    """Summary of a render run."""

    units_total: int
    units_rendered: int
    units_resumed: int
    failures: tuple[UnitFailure, ...] = ()
    tiles_written: dict[int, int] = field(default_factory=dict)
    parents_failed: int = 0
    timings: dict[str, Any] = field(default_factory=dict)
    dry_run: bool = False

    @property
    def ok(self) -> bool:
        return not self.failures

    def as_dict(self) -> dict[str, Any]:
        return {
            "units_total": self.units_total,
            "units_rendered": self.units_rendered,
            "units_resumed": self.units_resumed,
            "failures": [
                {
                    "unit": str(failure.unit),
                    "bounds": list(failure.bounds.as_tuple()),
                    "error": failure.error,
                }
                for failure in self.failures
            ],
            "tiles_written": {str(zoom): count for zoom, count in sorted(self.tiles_written.items())},
            "parents_failed": self.parents_failed,
            "timings": self.timings,
            "dry_run": self.dry_run,
        }


def plan_render(options: RenderOptions) -> RenderPlan:
    """Tile the requested box into processing units, in Morton order."""
    coverage = {
        zoom: tiles_for_bbox(options.bbox, zoom)
        for zoom in range(options.min_zoom_level, options.zoom_level + 1)
    }
    unit_tiles = tiles_for_bbox(options.bbox, options.unit_zoom_level)
    units = tuple(
        processing_unit(
            coord,
            base_zoom=options.zoom_level,
            tile_size=options.tile_size,
            buffer=options.buffer,
        )
        for coord in sorted(unit_tiles, key=lambda coord: coord.quadkey())
    )
    return RenderPlan(units=units, coverage=coverage)


def _coerce_jobs(jobs: int, unit_count: int) -> int:
    """Normalize requested worker count for per-unit processing."""
    if unit_count <= 0:
        return 1
    if jobs < 0:
        raise ValueError("jobs must be >= 0")
    if jobs == 0:
        cpu_count = os.cpu_count() or 1
        return max(1, min(cpu_count, unit_count))
    return min(jobs, unit_count)


class PyramidRenderer:
    """Drive units through rasterization, shading and quad aggregation.

    Workers share one AggregationState; whichever worker delivers the last
    child of a parent builds and writes that parent, then keeps climbing.
    """

    def __init__(
        self,
        options: RenderOptions,
        source: PointSource | None,
        sink: MBTilesSink | None,
        *,
        reprojector: Reprojector | None = None,
        plan: RenderPlan | None = None,
    ) -> None:
        self.options = options
        self.source = source
        self.sink = sink
        self.reprojector = reprojector or Reprojector(options.source_projection)
        self.plan = plan or plan_render(options)
        self.state = AggregationState(self._covered, min_zoom=options.min_zoom_level)
        self.timer = StageTimer()
        self._lock = threading.Lock()
        self._written: dict[int, int] = {}
        self._parents_failed = 0

    def _covered(self, coord: TileCoord) -> bool:
        tiles = self.plan.coverage.get(coord.zoom)
        return tiles is not None and coord in tiles

    @property
    def resume(self) -> bool:
        return self.sink is not None and self.sink.resume

    def _encode(self, pixels: np.ndarray) -> bytes:
        options = self.options
        with self.timer.span("encode"):
            return encode_tile(
                pixels,
                fmt=options.tile_format,
                quality=options.jpeg_quality,
                background=options.background_color,
            )

    def _put(self, record: OutputRecord) -> None:
        with self.timer.span("write"):
            self.sink.put(record.coord, record.data)
        with self._lock:
            self._written[record.coord.zoom] = self._written.get(record.coord.zoom, 0) + 1

    def _child_pixels(self, child: PyramidNode | None) -> np.ndarray | None:
        """Return a child's pixels, reading stored tiles back from the sink."""
        if child is None:
            return None
        if child.state is NodeState.RENDERED:
            return child.pixels
        data = self.sink.get(child.coord)
        if data is None:
            raise AggregationInconsistency(f"Stored tile {child.coord} is missing from the sink")
        return decode_tile(data)

    def _resolve_group(self, group: SiblingGroup) -> PyramidNode:
        """Turn a complete sibling group into the parent node."""
        if group.failed:
            with self._lock:
                self._parents_failed += 1
            return PyramidNode.failed(group.parent)
        if group.all_stored and self.resume and self.sink.exists(group.parent):
            return PyramidNode.stored(group.parent)
        children = [self._child_pixels(child) for child in group.children]
        with self.timer.span("aggregate"):
            pixels = downsample_quad(children, self.options.tile_size)
        self._put(OutputRecord(group.parent, self._encode(pixels)))
        return PyramidNode.rendered(group.parent, pixels)

    def _propagate(self, nodes: Iterable[PyramidNode]) -> None:
        """Offer nodes to the aggregation table and build any parents they complete."""
        for node in nodes:
            pending = [node]
            while pending:
                group = self.state.offer(pending.pop())
                if group is not None:
                    pending.append(self._resolve_group(group))

    def process_unit(self, unit: ProcessingUnit) -> UnitOutcome:
        """Render one unit's base tiles and feed them to the pyramid."""
        options = self.options
        context = {"unit": str(unit.coord)}
        base_tiles = TileRange.of_tile(unit.coord, options.zoom_level).intersection(
            self.plan.coverage[options.zoom_level]
        )
        if base_tiles is None:
            return UnitOutcome(unit.coord, "empty")

        if self.resume:
            existing = self.sink.existing(base_tiles)
            if len(existing) == len(base_tiles):
                LOGGER.debug("All %d base tiles present; resuming", len(existing), extra=context)
                self._propagate(PyramidNode.stored(coord) for coord in base_tiles)
                return UnitOutcome(unit.coord, "resumed")

        LOGGER.debug("Rendering %d base tiles", len(base_tiles), extra=context)
        try:
            region = self.reprojector.bbox_to_source(unit.grid.bounds)
            with self.timer.span("rasterize"):
                grid = rasterize_points(
                    self.source.query(region),
                    unit.grid,
                    reprojector=self.reprojector,
                    fill=options.fill,
                    fill_distance=options.fill_distance,
                )
        except SourceReadError as exc:
            error = exc.with_unit(unit.coord)
            LOGGER.error(
                "Skipping unit %s (EPSG:3857 bounds %s): %s",
                unit.coord,
                ",".join(f"{value:.2f}" for value in unit.bounds.as_tuple()),
                error,
                extra=context,
            )
            self._propagate(PyramidNode.failed(coord) for coord in base_tiles)
            return UnitOutcome(unit.coord, "failed", error=str(error))

        with self.timer.span("shade"):
            shaded = shade(
                grid,
                options.shadings,
                z_factor=options.z_factor,
                resolution=ground_resolution(
                    options.zoom_level, options.tile_size, unit.bounds.center[1]
                ),
                contrast=options.contrast,
                brightness=options.brightness,
            )
        nodes = cut_base_tiles(shaded, unit, coverage=base_tiles)
        del grid, shaded
        for node in nodes:
            self._put(OutputRecord(node.coord, self._encode(node.pixels)))
        self._propagate(nodes)
        return UnitOutcome(unit.coord, "rendered", tiles=len(nodes))

    def _collect(self, done: Iterable[Future], outcomes: list[UnitOutcome]) -> BaseException | None:
        """Gather finished futures, returning the first fatal error."""
        fatal: BaseException | None = None
        for future in done:
            try:
                outcomes.append(future.result())
            except Exception as exc:
                LOGGER.error("Unit processing aborted: %s", exc)
                if fatal is None:
                    fatal = exc
        if outcomes and len(outcomes) % PROGRESS_EVERY == 0:
            LOGGER.info("Processed %d/%d units", len(outcomes), len(self.plan.units))
        return fatal

    def _run_units(self) -> list[UnitOutcome]:
        """Run units serially or on a bounded thread pool."""
        units = self.plan.units
        jobs = _coerce_jobs(self.options.jobs, len(units))
        outcomes: list[UnitOutcome] = []
        fatal: BaseException | None = None
        if jobs == 1:
            for unit in units:
                outcomes.append(self.process_unit(unit))
            return outcomes
        limit = jobs * IN_FLIGHT_FACTOR
        with ThreadPoolExecutor(max_workers=jobs) as executor:
            in_flight: set[Future] = set()
            for unit in units:
                if len(in_flight) >= limit:
                    done, in_flight = wait(in_flight, return_when=FIRST_COMPLETED)
                    error = self._collect(done, outcomes)
                    fatal = fatal or error
                if fatal is not None:
                    break
                in_flight.add(executor.submit(self.process_unit, unit))
            if in_flight:
                done, _ = wait(in_flight)
                error = self._collect(done, outcomes)
                fatal = fatal or error
        if fatal is not None:
            raise fatal
        return outcomes

    def _metadata(self) -> dict[str, object]:
        options = self.options
        geo = self.reprojector.bbox_to_geographic(options.bbox)
        center_x, center_y = geo.center
        return {
            "name": options.output_path.stem,
            "format": "jpg" if options.tile_format == "jpeg" else "png",
            "bounds": f"{geo.min_x:.6f},{geo.min_y:.6f},{geo.max_x:.6f},{geo.max_y:.6f}",
            "center": f"{center_x:.6f},{center_y:.6f},{options.min_zoom_level}",
            "minzoom": options.min_zoom_level,
            "maxzoom": options.zoom_level,
            "type": "baselayer",
            "description": "Shaded relief rendered from LiDAR point clouds",
        }

    def run(self) -> RenderResult:
        """Process every unit and return the run summary."""
        options = self.options
        units = self.plan.units
        LOGGER.info(
            "Rendering %d units (zoom %d) into zoom %d-%d tiles",
            len(units),
            options.unit_zoom_level,
            options.min_zoom_level,
            options.zoom_level,
        )
        if options.dry_run:
            for zoom, count in self.plan.tile_counts().items():
                LOGGER.info("Zoom %d: %d tiles", zoom, count)
            return RenderResult(
                units_total=len(units),
                units_rendered=0,
                units_resumed=0,
                dry_run=True,
            )
        if self.source is None or self.sink is None:
            raise ValueError("A point source and a sink are required unless dry_run is set.")

        try:
            outcomes = self._run_units()
        finally:
            self.sink.flush()

        bounds = {unit.coord: unit.bounds for unit in units}
        failures = tuple(
            UnitFailure(
                unit=outcome.unit,
                bounds=bounds[outcome.unit],
                error=outcome.error or "",
            )
            for outcome in outcomes
            if outcome.status == "failed"
        )
        leftover = self.state.pending()
        if leftover:
            raise AggregationInconsistency(
                f"{len(leftover)} parent tiles never received all children, e.g. {leftover[0]}"
            )
        LOGGER.debug("Aggregated %d parent tiles", self.state.stats.emitted)
        self.sink.write_metadata(self._metadata())
        result = RenderResult(
            units_total=len(units),
            units_rendered=sum(1 for outcome in outcomes if outcome.status == "rendered"),
            units_resumed=sum(1 for outcome in outcomes if outcome.status == "resumed"),
            failures=failures,
            tiles_written=dict(sorted(self._written.items())),
            parents_failed=self._parents_failed,
            timings=self.timer.summary(),
        )
        LOGGER.info(
            "Units: %d rendered, %d resumed, %d failed; %d tiles written",
            result.units_rendered,
            result.units_resumed,
            len(result.failures),
            sum(result.tiles_written.values()),
        )
        for stage, info in result.timings.get("stages", {}).items():
            LOGGER.debug("Stage %s: %.3fs over %d calls", stage, info["seconds"], info["count"])
        return result


def run_render(
    options: RenderOptions,
    source: PointSource | None,
    sink: MBTilesSink | None,
) -> RenderResult:
    """Render the hillshade pyramid described by `options`."""
    return PyramidRenderer(options, source, sink).run()
