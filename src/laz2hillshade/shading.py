"""Hillshading methods, layer compositing and tone adjustment.

Every shading component turns terrain slope and aspect into an illumination
value in [0, 1], maps it to an RGBA layer through its tint colour, and the
layers are painted over one another in the order they were declared.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import ClassVar, Sequence, Union

import numpy as np

from laz2hillshade.models import ElevationGrid, ShadedRaster

ALPHA_MODES = ("fixed", "shadow")
DEFAULT_TINT = (0.0, 0.0, 0.0, 1.0)
KERNEL_RADIUS = 1

Rgba = tuple[float, float, float, float]


@dataclass(frozen=True)
class TerrainDerivatives:
    """Per-cell slope and aspect in radians plus a full-neighbourhood mask.

    Aspect is the mathematical angle (counter-clockwise from east) of the
    downslope direction.
    """

    slope: np.ndarray
    aspect: np.ndarray
    valid: np.ndarray


def terrain_derivatives(
    grid: ElevationGrid,
    *,
    z_factor: float,
    resolution: float,
) -> TerrainDerivatives:
    """Estimate slope and aspect with Horn's 3x3 finite-difference kernel.

    Cells on the outer ring, or with any unsampled neighbour, are marked
    invalid instead of being clamped.
    """
    elevation = grid.elevation
    height, width = elevation.shape
    slope = np.zeros((height, width), dtype=np.float64)
    aspect = np.zeros((height, width), dtype=np.float64)
    valid = np.zeros((height, width), dtype=bool)
    if height < 3 or width < 3:
        return TerrainDerivatives(slope, aspect, valid)

    def window(dy: int, dx: int) -> np.ndarray:
        return elevation[1 + dy : height - 1 + dy, 1 + dx : width - 1 + dx]

    a, b, c = window(-1, -1), window(-1, 0), window(-1, 1)
    d, f = window(0, -1), window(0, 1)
    g, h, i = window(1, -1), window(1, 0), window(1, 1)
    scale = 8.0 * resolution
    dz_dx = ((c + 2.0 * f + i) - (a + 2.0 * d + g)) / scale
    # Rows run north to south, so this is the southward gradient.
    dz_dy = ((g + 2.0 * h + i) - (a + 2.0 * b + c)) / scale

    inner = np.ones((height - 2, width - 2), dtype=bool)
    for dy in (-1, 0, 1):
        for dx in (-1, 0, 1):
            inner &= grid.valid[1 + dy : height - 1 + dy, 1 + dx : width - 1 + dx]

    inner_slope = np.arctan(z_factor * np.hypot(dz_dx, dz_dy))
    inner_aspect = np.mod(np.arctan2(dz_dy, -dz_dx), 2.0 * math.pi)
    slope[1:-1, 1:-1] = np.where(inner, inner_slope, 0.0)
    aspect[1:-1, 1:-1] = np.where(inner, inner_aspect, 0.0)
    valid[1:-1, 1:-1] = inner
    return TerrainDerivatives(slope, aspect, valid)


def _light_angle(azimuth: float) -> float:
    """Convert a compass bearing in degrees to a mathematical angle in radians."""
    return math.radians(90.0 - azimuth) % (2.0 * math.pi)


def angular_difference(first: np.ndarray, second: float) -> np.ndarray:
    """Return the absolute difference between angles, folded into [0, pi]."""
    diff = np.abs(np.mod(first, 2.0 * math.pi) - (second % (2.0 * math.pi)))
    return np.where(diff > math.pi, 2.0 * math.pi - diff, diff)


@dataclass(frozen=True)
class ObliqueShading:
    """Classic hillshade lit from `azimuth` at sun `altitude`."""

    azimuth: float
    altitude: float

    name: ClassVar[str] = "oblique"
    params: ClassVar[tuple[str, ...]] = ("azimuth", "altitude")

    def illumination(self, terrain: TerrainDerivatives) -> np.ndarray:
        zenith = math.radians(90.0 - self.altitude)
        light = _light_angle(self.azimuth)
        return math.cos(zenith) * np.cos(terrain.slope) + math.sin(zenith) * np.sin(
            terrain.slope
        ) * np.cos(light - terrain.aspect)


@dataclass(frozen=True)
class IgorShading:
    """Darken slopes facing away from `azimuth`; flat ground stays fully lit."""

    azimuth: float

    name: ClassVar[str] = "igor"
    params: ClassVar[tuple[str, ...]] = ("azimuth",)

    def illumination(self, terrain: TerrainDerivatives) -> np.ndarray:
        away = _light_angle(self.azimuth) + math.pi
        strength = 1.0 - angular_difference(terrain.aspect, away) / math.pi
        return 1.0 - terrain.slope * 2.0 * strength


@dataclass(frozen=True)
class SlopeShading:
    """Illumination from steepness alone, ignoring aspect."""

    altitude: float

    name: ClassVar[str] = "slope"
    params: ClassVar[tuple[str, ...]] = ("altitude",)

    def illumination(self, terrain: TerrainDerivatives) -> np.ndarray:
        zenith = math.radians(90.0 - self.altitude)
        return math.cos(zenith) * np.cos(terrain.slope) + math.sin(zenith) * np.sin(
            terrain.slope
        )


ShadingMethod = Union[ObliqueShading, IgorShading, SlopeShading]

SHADING_METHODS: dict[str, type] = {
    ObliqueShading.name: ObliqueShading,
    IgorShading.name: IgorShading,
    SlopeShading.name: SlopeShading,
}


@dataclass(frozen=True)
class ShadingComponent:
    """One shading layer: a method, its tint and how alpha is derived."""

    method: ShadingMethod
    color: Rgba = DEFAULT_TINT
    alpha_mode: str = "fixed"

    def render(self, terrain: TerrainDerivatives) -> np.ndarray:
        """Return this component's straight-alpha RGBA layer."""
        light = np.clip(self.method.illumination(terrain), 0.0, 1.0)
        height, width = light.shape
        layer = np.empty((height, width, 4), dtype=np.float32)
        tint = np.asarray(self.color[:3], dtype=np.float64)
        if self.alpha_mode == "shadow":
            layer[..., :3] = tint
            layer[..., 3] = self.color[3] * (1.0 - light)
        else:
            layer[..., :3] = tint + (1.0 - tint) * light[..., None]
            layer[..., 3] = self.color[3]
        layer[~terrain.valid] = 0.0
        return layer


def composite_over(dst: np.ndarray, src: np.ndarray) -> np.ndarray:
    """Paint `src` over `dst` with the straight-alpha "over" operator."""
    src_alpha = src[..., 3:4]
    dst_alpha = dst[..., 3:4]
    out_alpha = src_alpha + dst_alpha * (1.0 - src_alpha)
    weight = np.divide(
        src_alpha,
        out_alpha,
        out=np.zeros_like(out_alpha),
        where=out_alpha > 0,
    )
    out = np.empty_like(dst)
    out[..., :3] = dst[..., :3] + (src[..., :3] - dst[..., :3]) * weight
    out[..., 3:4] = out_alpha
    return out


def adjust_levels(values: np.ndarray, contrast: float, brightness: float) -> np.ndarray:
    """Scale deviation from mid-gray by `contrast`, then add `brightness`."""
    if contrast <= 0:
        raise ValueError("contrast must be > 0")
    return np.clip(contrast * (values - 0.5) + 0.5 + brightness, 0.0, 1.0)


def shade(
    grid: ElevationGrid,
    components: Sequence[ShadingComponent],
    *,
    z_factor: float = 1.0,
    resolution: float | None = None,
    contrast: float = 1.0,
    brightness: float = 0.0,
) -> ShadedRaster:
    """Render and composite every component over an elevation grid."""
    if not components:
        raise ValueError("At least one shading component is required.")
    terrain = terrain_derivatives(
        grid,
        z_factor=z_factor,
        resolution=resolution if resolution is not None else grid.spec.resolution,
    )
    height, width = grid.shape
    result = np.zeros((height, width, 4), dtype=np.float32)
    for component in components:
        result = composite_over(result, component.render(terrain))
    transparent = result[..., 3] <= 0
    result[..., :3] = adjust_levels(result[..., :3], contrast, brightness)
    result[transparent] = 0.0
    return ShadedRaster(rgba=result, spec=grid.spec)


def parse_color(text: str) -> Rgba:
    """Parse `RRGGBB` or `RRGGBBAA` hex (optional leading '#') into floats."""
    value = text.strip().lstrip("#")
    if len(value) not in (6, 8):
        raise ValueError(f"Invalid color '{text}': expected RRGGBB or RRGGBBAA hex")
    try:
        channels = [int(value[index : index + 2], 16) for index in range(0, len(value), 2)]
    except ValueError as exc:
        raise ValueError(f"Invalid color '{text}': not hexadecimal") from exc
    if len(channels) == 3:
        channels.append(255)
    red, green, blue, alpha = (channel / 255.0 for channel in channels)
    return (red, green, blue, alpha)


def _is_color(token: str) -> bool:
    value = token.lstrip("#")
    return len(value) in (6, 8) and all(char in "0123456789abcdefABCDEF" for char in value)


def parse_shading(text: str) -> ShadingComponent:
    """Parse `method,p1[,p2][,COLOR][,fixed|shadow]` into a component."""
    tokens = [token.strip() for token in text.split(",")]
    method_name = tokens[0].lower()
    method_cls = SHADING_METHODS.get(method_name)
    if method_cls is None:
        known = ", ".join(sorted(SHADING_METHODS))
        raise ValueError(f"Unknown shading method '{tokens[0]}' (expected one of {known})")
    rest = tokens[1:]
    alpha_mode = "fixed"
    if rest and rest[-1].lower() in ALPHA_MODES:
        alpha_mode = rest.pop().lower()
    color = DEFAULT_TINT
    count = len(method_cls.params)
    if len(rest) == count + 1 and _is_color(rest[-1]):
        color = parse_color(rest.pop())
    if len(rest) != count:
        names = ",".join(method_cls.params)
        raise ValueError(f"Shading '{text}' expects {method_name},{names}[,COLOR][,MODE]")
    try:
        values = [float(token) for token in rest]
    except ValueError as exc:
        raise ValueError(f"Shading '{text}' has a non-numeric parameter") from exc
    if any(not math.isfinite(value) for value in values):
        raise ValueError(f"Shading '{text}' has a non-finite parameter")
    return ShadingComponent(method=method_cls(*values), color=color, alpha_mode=alpha_mode)


def parse_shadings(text: str) -> tuple[ShadingComponent, ...]:
    """Parse a `+`-separated list of shading components."""
    parts = text.split("+")
    if not text.strip() or any(not part.strip() for part in parts):
        raise ValueError(f"Malformed shading list '{text}'")
    return tuple(parse_shading(part) for part in parts)
