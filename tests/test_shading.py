from __future__ import annotations

import math

import numpy as np
import pytest

from laz2hillshade.models import BoundingBox, ElevationGrid, GridSpec
from laz2hillshade.shading import (
    IgorShading,
    ObliqueShading,
    ShadingComponent,
    SlopeShading,
    adjust_levels,
    angular_difference,
    composite_over,
    parse_color,
    parse_shading,
    parse_shadings,
    shade,
    terrain_derivatives,
)


def _grid(elevation: np.ndarray, valid: np.ndarray | None = None, resolution: float = 1.0):
    height, width = elevation.shape
    spec = GridSpec(BoundingBox(0.0, 0.0, width * resolution, height * resolution), width, height, resolution)
    if valid is None:
        valid = np.ones(elevation.shape, dtype=bool)
    return ElevationGrid(elevation.astype(np.float64), valid, spec)


def _plane(dx: float, dy: float, size: int = 9) -> ElevationGrid:
    """Plane rising `dx` per cell eastwards and `dy` per cell northwards."""
    rows, cols = np.mgrid[0:size, 0:size]
    return _grid(cols * dx - rows * dy)


def test_flat_terrain_is_uniform_for_every_light_direction() -> None:
    grid = _grid(np.full((8, 8), 250.0))
    for azimuth in (0.0, 90.0, 180.0, 315.0):
        raster = shade(grid, [ShadingComponent(ObliqueShading(azimuth, 45.0))])
        interior = raster.rgba[1:-1, 1:-1]
        assert np.allclose(interior[..., :3], math.cos(math.radians(45.0)), atol=1e-6)
        assert np.all(interior[..., 3] == 1.0)


def test_outer_ring_is_transparent() -> None:
    raster = shade(_grid(np.zeros((6, 6))), [ShadingComponent(ObliqueShading(315.0, 45.0))])
    alpha = raster.rgba[..., 3]
    assert np.all(alpha[0] == 0) and np.all(alpha[-1] == 0)
    assert np.all(alpha[:, 0] == 0) and np.all(alpha[:, -1] == 0)
    assert np.all(raster.rgba[0] == 0)


def test_unsampled_neighbours_make_pixels_transparent() -> None:
    valid = np.ones((7, 7), dtype=bool)
    valid[3, 3] = False
    raster = shade(_grid(np.zeros((7, 7)), valid), [ShadingComponent(ObliqueShading(315.0, 45.0))])
    alpha = raster.rgba[..., 3]
    assert np.all(alpha[2:5, 2:5] == 0)
    assert alpha[1, 1] == 1.0
    assert alpha[5, 5] == 1.0


def test_aspect_of_a_plane_rising_east_faces_west() -> None:
    terrain = terrain_derivatives(_plane(1.0, 0.0), z_factor=1.0, resolution=1.0)
    assert terrain.slope[4, 4] == pytest.approx(math.pi / 4)
    assert terrain.aspect[4, 4] == pytest.approx(math.pi)


def test_aspect_of_a_plane_rising_north_faces_south() -> None:
    terrain = terrain_derivatives(_plane(0.0, 1.0), z_factor=1.0, resolution=1.0)
    assert terrain.aspect[4, 4] == pytest.approx(3 * math.pi / 2)


def test_slopes_facing_the_light_are_brighter() -> None:
    grid = _plane(0.5, 0.0)
    from_west = shade(grid, [ShadingComponent(ObliqueShading(270.0, 45.0))]).rgba[4, 4, 0]
    from_east = shade(grid, [ShadingComponent(ObliqueShading(90.0, 45.0))]).rgba[4, 4, 0]
    assert from_west > from_east


def test_z_factor_and_resolution_scale_the_slope() -> None:
    grid = _plane(1.0, 0.0)
    steep = terrain_derivatives(grid, z_factor=2.0, resolution=1.0)
    coarse = terrain_derivatives(grid, z_factor=1.0, resolution=2.0)
    assert steep.slope[4, 4] == pytest.approx(math.atan(2.0))
    assert coarse.slope[4, 4] == pytest.approx(math.atan(0.5))


def test_slope_shading_ignores_aspect() -> None:
    component = ShadingComponent(SlopeShading(60.0))
    east = shade(_plane(0.7, 0.0), [component]).rgba[4, 4]
    north = shade(_plane(0.0, 0.7), [component]).rgba[4, 4]
    assert east == pytest.approx(north, abs=1e-6)


def test_igor_keeps_flat_ground_lit_and_darkens_averted_slopes() -> None:
    method = IgorShading(270.0)
    flat = terrain_derivatives(_grid(np.zeros((5, 5))), z_factor=1.0, resolution=1.0)
    assert method.illumination(flat)[2, 2] == pytest.approx(1.0)
    facing = terrain_derivatives(_plane(0.3, 0.0), z_factor=1.0, resolution=1.0)
    averted = terrain_derivatives(_plane(-0.3, 0.0), z_factor=1.0, resolution=1.0)
    assert method.illumination(facing)[4, 4] > method.illumination(averted)[4, 4]
    assert method.illumination(averted)[4, 4] == pytest.approx(1.0 - 2.0 * math.atan(0.3))


def test_shadow_mode_is_transparent_on_lit_ground() -> None:
    component = ShadingComponent(IgorShading(315.0), (0.0, 0.0, 0.0, 0.5), "shadow")
    raster = shade(_grid(np.zeros((5, 5))), [component])
    assert raster.rgba[2, 2, 3] == 0.0
    assert np.all(raster.rgba[2, 2] == 0.0)


def test_fixed_mode_tints_toward_the_colour() -> None:
    component = ShadingComponent(SlopeShading(0.0), (1.0, 0.0, 0.0, 1.0), "fixed")
    # Altitude 0 and flat ground: zero illumination leaves the pure tint.
    raster = shade(_grid(np.zeros((5, 5))), [component])
    assert raster.rgba[2, 2] == pytest.approx([1.0, 0.0, 0.0, 1.0], abs=1e-6)


def test_fully_transparent_layer_changes_nothing() -> None:
    grid = _plane(0.4, 0.2)
    base = ShadingComponent(ObliqueShading(315.0, 45.0))
    invisible = ShadingComponent(IgorShading(45.0), (1.0, 0.0, 0.0, 0.0), "fixed")
    alone = shade(grid, [base]).rgba
    layered = shade(grid, [base, invisible]).rgba
    assert np.array_equal(alone, layered)


def test_layers_are_composited_in_declared_order() -> None:
    grid = _grid(np.zeros((5, 5)))
    red = ShadingComponent(SlopeShading(0.0), (1.0, 0.0, 0.0, 1.0))
    blue = ShadingComponent(SlopeShading(0.0), (0.0, 0.0, 1.0, 1.0))
    assert shade(grid, [red, blue]).rgba[2, 2, 2] == pytest.approx(1.0)
    assert shade(grid, [blue, red]).rgba[2, 2, 0] == pytest.approx(1.0)


def test_composite_over() -> None:
    dst = np.array([[[0.0, 0.0, 1.0, 1.0]]])
    half_red = np.array([[[1.0, 0.0, 0.0, 0.5]]])
    out = composite_over(dst, half_red)
    assert out[0, 0] == pytest.approx([0.5, 0.0, 0.5, 1.0])
    empty = np.zeros((1, 1, 4))
    assert composite_over(empty, empty)[0, 0] == pytest.approx([0.0, 0.0, 0.0, 0.0])
    out = composite_over(empty, half_red)
    assert out[0, 0] == pytest.approx([1.0, 0.0, 0.0, 0.5])


def test_adjust_levels_pivots_on_mid_gray() -> None:
    values = np.array([0.5, 0.6, 0.4, 0.9])
    out = adjust_levels(values, 2.0, 0.0)
    assert out[0] == pytest.approx(0.5)
    assert out[1] == pytest.approx(0.7)
    assert out[2] == pytest.approx(0.3)
    assert out[3] == 1.0
    assert adjust_levels(np.array([0.5]), 1.0, 0.25)[0] == pytest.approx(0.75)
    with pytest.raises(ValueError):
        adjust_levels(values, 0.0, 0.0)


def test_contrast_leaves_transparent_pixels_untouched() -> None:
    raster = shade(
        _grid(np.zeros((5, 5))),
        [ShadingComponent(ObliqueShading(315.0, 45.0))],
        brightness=0.5,
    )
    assert np.all(raster.rgba[0, 0] == 0.0)


def test_shade_requires_a_component() -> None:
    with pytest.raises(ValueError):
        shade(_grid(np.zeros((5, 5))), [])


def test_angular_difference_folds_into_half_turn() -> None:
    values = angular_difference(np.array([0.1, 2 * math.pi - 0.1, math.pi]), 0.0)
    assert values == pytest.approx([0.1, 0.1, math.pi])


def test_parse_color() -> None:
    assert parse_color("FF0000") == (1.0, 0.0, 0.0, 1.0)
    assert parse_color("#00000080") == pytest.approx((0.0, 0.0, 0.0, 128 / 255))
    for bad in ("FFF", "GG0000", "", "FF00000"):
        with pytest.raises(ValueError):
            parse_color(bad)


def test_parse_shading_forms() -> None:
    oblique = parse_shading("oblique,315,45")
    assert oblique.method == ObliqueShading(315.0, 45.0)
    assert oblique.color == (0.0, 0.0, 0.0, 1.0)
    assert oblique.alpha_mode == "fixed"
    igor = parse_shading("igor,315,00000080,shadow")
    assert igor.method == IgorShading(315.0)
    assert igor.color[3] == pytest.approx(128 / 255)
    assert igor.alpha_mode == "shadow"
    assert parse_shading("slope,30,shadow").alpha_mode == "shadow"
    assert parse_shading("Slope,30,#FF8000").color[:3] == pytest.approx((1.0, 128 / 255, 0.0))


@pytest.mark.parametrize(
    "text",
    [
        "oblique,315",
        "oblique,315,45,60",
        "emboss,315",
        "igor,north",
        "igor,315,GGGGGG",
        "oblique,nan,45",
        "slope,45,FF0000,dark",
    ],
)
def test_parse_shading_rejects_malformed_components(text: str) -> None:
    with pytest.raises(ValueError):
        parse_shading(text)


def test_parse_shadings_splits_on_plus() -> None:
    components = parse_shadings("igor,315,00000080,shadow+oblique,315,45")
    assert [component.method.name for component in components] == ["igor", "oblique"]
    for text in ("", "oblique,315,45+", "+igor,315"):
        with pytest.raises(ValueError):
            parse_shadings(text)
