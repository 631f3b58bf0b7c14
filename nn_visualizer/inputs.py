"""
inputs.py
~~~~~~~~~

Conversion of raw pixel data into network input vectors.

Both sources of pixels, stacked dataset images and bitmaps rendered by the
drawing surface, carry 8-bit intensities. They share ``normalize_intensity``
so identical pictures always produce identical input vectors.
"""

import math
from typing import Sequence, Tuple, Union

import numpy as np

MAX_INTENSITY = 255.0

PixelData = Union[bytes, bytearray, memoryview, Sequence[int], np.ndarray]


def normalize_intensity(values: PixelData) -> np.ndarray:
    """
    Scale 8-bit intensities (0-255) to floats in [0, 1].

    Raises:
        ValueError: If any value lies outside 0-255
    """
    if isinstance(values, (bytes, bytearray, memoryview)):
        values = np.frombuffer(values, dtype=np.uint8)
    values = np.asarray(values, dtype=np.float64)
    if values.size and not (values.min() >= 0 and values.max() <= MAX_INTENSITY):
        raise ValueError(
            f"pixel intensities must lie in 0-255, got range "
            f"[{values.min()}, {values.max()}]"
        )
    return values / MAX_INTENSITY


def blank_input(width: int) -> np.ndarray:
    """All-zero input vector, used when the drawing is cleared."""
    return np.zeros(width, dtype=np.float64)


def dataset_sample(buffer: PixelData, index: int, width: int) -> np.ndarray:
    """
    Extract image ``index`` from a buffer of stacked images.

    Args:
        buffer: Flat bytes, ``width`` bytes per image
        index: Position of the image in the stack
        width: Pixels per image (the network's input width)

    Returns:
        Normalized input vector of length ``width``
    """
    if isinstance(buffer, (bytes, bytearray, memoryview)):
        buffer = np.frombuffer(buffer, dtype=np.uint8)
    start = index * width
    pixels = np.asarray(buffer)[start:start + width]
    if index < 0 or pixels.size != width:
        raise IndexError(
            f"image {index} is outside a buffer of {np.asarray(buffer).size} bytes"
        )
    return normalize_intensity(pixels)


def drawing_input(bitmap: PixelData, width: int, channel: int = 0,
                  channels: int = 4) -> np.ndarray:
    """
    Read one channel of a rendered bitmap as a normalized input vector.

    Strokes are drawn in gray, so any colour channel carries the intensity.
    ``bitmap`` may be a flat interleaved buffer with ``channels`` bytes per
    pixel (what a canvas hands back), an ``(H, W, C)`` array or a
    single-channel ``(H, W)`` array.
    """
    if isinstance(bitmap, (bytes, bytearray, memoryview)):
        bitmap = np.frombuffer(bitmap, dtype=np.uint8)
    pixels = np.asarray(bitmap)

    if pixels.ndim == 1:
        if pixels.size % channels:
            raise ValueError(
                f"buffer of {pixels.size} values is not a whole number "
                f"of {channels}-channel pixels"
            )
        pixels = pixels.reshape(-1, channels)[:, channel]
    elif pixels.ndim == 3:
        pixels = pixels[:, :, channel]
    elif pixels.ndim != 2:
        raise ValueError(f"unsupported bitmap shape {pixels.shape}")

    pixels = pixels.reshape(-1)
    if pixels.size != width:
        raise ValueError(
            f"bitmap has {pixels.size} pixels, network expects {width}"
        )
    return normalize_intensity(pixels)


def image_shape(width: int) -> Tuple[int, int]:
    """Square (side, side) when possible, otherwise a single row."""
    side = math.isqrt(width)
    if side * side == width:
        return side, side
    return 1, width


def to_rgba(vector: Sequence[float]) -> np.ndarray:
    """
    Render an input vector as an opaque gray RGBA buffer.

    The inverse of ``drawing_input``: reading any colour channel of the
    result gives back the same vector, up to 8-bit rounding.
    """
    gray = np.clip(np.rint(np.asarray(vector, dtype=np.float64) * MAX_INTENSITY),
                   0, MAX_INTENSITY).astype(np.uint8)
    rgba = np.empty((gray.size, 4), dtype=np.uint8)
    rgba[:, :3] = gray[:, None]
    rgba[:, 3] = 255
    return rgba.reshape(-1)
