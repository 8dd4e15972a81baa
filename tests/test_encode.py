from __future__ import annotations

import io

import numpy as np
import pytest
from PIL import Image

from laz2hillshade.encode import decode_tile, encode_tile, flatten


def _pixels() -> np.ndarray:
    pixels = np.zeros((8, 8, 4), dtype=np.uint8)
    pixels[:4] = (40, 80, 120, 255)
    pixels[4:] = (0, 0, 0, 0)
    return pixels


def test_flatten_blends_over_background() -> None:
    pixels = np.array([[[100, 100, 100, 255], [0, 0, 0, 0], [200, 0, 0, 128]]], dtype=np.uint8)
    flat = flatten(pixels, (255, 255, 255))
    assert flat.shape == (1, 3, 3)
    assert flat[0, 0].tolist() == [100, 100, 100]
    assert flat[0, 1].tolist() == [255, 255, 255]
    assert flat[0, 2].tolist() == [227, 127, 127]


def test_png_keeps_alpha() -> None:
    data = encode_tile(_pixels(), fmt="png")
    assert data.startswith(b"\x89PNG")
    assert np.array_equal(decode_tile(data), _pixels())


def test_jpeg_flattens_transparency_onto_background() -> None:
    data = encode_tile(_pixels(), fmt="jpeg", quality=95, background=(255, 0, 0))
    assert data.startswith(b"\xff\xd8")
    with Image.open(io.BytesIO(data)) as image:
        assert image.mode == "RGB"
        assert image.size == (8, 8)
    decoded = decode_tile(data)
    assert decoded[..., 3].min() == 255
    bottom = decoded[6, 4].astype(int)
    assert bottom[0] > 230 and bottom[1] < 30 and bottom[2] < 30


def test_jpeg_quality_changes_size() -> None:
    rng = np.random.default_rng(0)
    pixels = rng.integers(0, 256, (64, 64, 4), dtype=np.uint8)
    pixels[..., 3] = 255
    assert len(encode_tile(pixels, quality=10)) < len(encode_tile(pixels, quality=95))


def test_unknown_format_is_rejected() -> None:
    with pytest.raises(ValueError):
        encode_tile(_pixels(), fmt="webp")
