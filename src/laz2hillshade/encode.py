"""Tile image encoding with Pillow."""

from __future__ import annotations

import io

import numpy as np
from PIL import Image

FORMATS = ("jpeg", "png")
DEFAULT_BACKGROUND = (255, 255, 255)


def flatten(pixels: np.ndarray, background: tuple[int, int, int]) -> np.ndarray:
    """Composite RGBA pixels over an opaque background colour."""
    alpha = pixels[..., 3:4].astype(np.float64) / 255.0
    rgb = pixels[..., :3].astype(np.float64)
    backdrop = np.asarray(background, dtype=np.float64)
    return np.rint(rgb * alpha + backdrop * (1.0 - alpha)).astype(np.uint8)


def encode_tile(
    pixels: np.ndarray,
    *,
    fmt: str = "jpeg",
    quality: int = 80,
    background: tuple[int, int, int] = DEFAULT_BACKGROUND,
) -> bytes:
    """Encode an RGBA uint8 tile as JPEG or PNG bytes."""
    buffer = io.BytesIO()
    if fmt == "jpeg":
        image = Image.fromarray(flatten(pixels, background))
        image.save(buffer, format="JPEG", quality=quality)
    elif fmt == "png":
        image = Image.fromarray(np.ascontiguousarray(pixels))
        image.save(buffer, format="PNG", optimize=True)
    else:
        raise ValueError(f"Unsupported tile format: {fmt}")
    return buffer.getvalue()


def decode_tile(data: bytes) -> np.ndarray:
    """Decode stored tile bytes into an RGBA uint8 array."""
    with Image.open(io.BytesIO(data)) as image:
        return np.asarray(image.convert("RGBA"), dtype=np.uint8).copy()
