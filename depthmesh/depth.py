"""Monocular depth estimation kernel.

This module implements the per-pixel depth heuristic that turns a colour
image into a relative depth field in [0, 1] (closer = higher). The kernel
combines three local cues:

    - local contrast: mean absolute luminance difference to the 8 neighbours
      (edges read as "further")
    - colour warmth: 0.6R + 0.3G + 0.1B (warm colours read as "closer")
    - image position: 1 - distance to the image centre in normalised UV

followed by a deterministic sine/fract hash noise and a contrast boost.

All arithmetic is carried out in float32, matching the GPU shader.
`depth_kernel` accepts either scalar pixel coordinates or index arrays of
any shape, so the same function serves as the per-thread reference and as
the body of the vectorised host dispatch.
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple, Union

import numpy as np

logger = logging.getLogger(__name__)

# Fixed kernel constants
DEPTH_SCALE = np.float32(3.0)
EDGE_GAIN = np.float32(3.0)
CONTRAST_EXPONENT = np.float32(1.1)
NOISE_AMPLITUDE = 0.05

# Neighbour offsets in row-major order, centre excluded
NEIGHBOUR_OFFSETS: Tuple[Tuple[int, int], ...] = tuple(
    (dx, dy) for dy in (-1, 0, 1) for dx in (-1, 0, 1) if not (dx == 0 and dy == 0)
)

Coord = Union[int, np.ndarray]


def to_rgb_float(image: np.ndarray) -> np.ndarray:
    """Normalise an RGB(A) or grayscale image to a float32 HxWx3 array in [0, 1].

    Args:
        image: HxW, HxWx3 or HxWx4 array, integer in [0, 255] or floating
            point in [0, 1] or [0, 255] (taken as [0, 255] when any value
            exceeds 1.0). Alpha is dropped and the result is clipped.

    Returns:
        Contiguous float32 array of shape (H, W, 3)
    """
    image = np.asarray(image)
    if image.ndim == 2:
        image = np.stack([image, image, image], axis=2)
    elif image.ndim != 3 or image.shape[2] not in (1, 3, 4):
        raise ValueError(f"Expected an HxW, HxWx3 or HxWx4 image, got shape {image.shape}")
    elif image.shape[2] == 1:
        image = np.repeat(image, 3, axis=2)

    if image.shape[0] < 1 or image.shape[1] < 1:
        raise ValueError(f"Image must have at least one pixel, got shape {image.shape}")

    rgb = image[:, :, :3].astype(np.float32)
    # Integer images and float images above 1.0 are on the [0, 255] scale
    if np.issubdtype(image.dtype, np.integer) or float(np.nanmax(rgb)) > 1.0:
        rgb = rgb / np.float32(255.0)

    return np.ascontiguousarray(np.clip(rgb, 0.0, 1.0))


def luminance(rgb: np.ndarray) -> np.ndarray:
    """Rec. 601 luma of the last axis of an RGB array."""
    return (
        np.float32(0.299) * rgb[..., 0]
        + np.float32(0.587) * rgb[..., 1]
        + np.float32(0.114) * rgb[..., 2]
    )


def pseudo_noise(x: Coord, y: Coord) -> np.ndarray:
    """Deterministic hash noise in [0, 1) for integer pixel coordinates.

    frac(sin(dot((x, y), (12.9898, 78.233))) * 43758.5453)
    """
    xf = np.asarray(x, dtype=np.float32)
    yf = np.asarray(y, dtype=np.float32)
    h = np.sin(xf * np.float32(12.9898) + yf * np.float32(78.233)) * np.float32(43758.5453)
    return h - np.floor(h)


def depth_kernel(
    rgb: np.ndarray,
    x: Coord,
    y: Coord,
    noise_amplitude: float = NOISE_AMPLITUDE,
) -> np.ndarray:
    """Compute the depth of pixel(s) (x, y).

    Neighbour samples are clamped to the image bounds, never wrapped.

    Args:
        rgb: Float32 HxWx3 image in [0, 1] (see `to_rgb_float`)
        x: Column index, scalar or integer array
        y: Row index, scalar or integer array of the same shape as x
        noise_amplitude: Scale of the hash noise term (0 disables it)

    Returns:
        Float32 depth in [0, 1] with the shape of x
    """
    height, width = rgb.shape[:2]
    x = np.asarray(x, dtype=np.int64)
    y = np.asarray(y, dtype=np.int64)

    center = rgb[y, x]
    center_lum = luminance(center)

    lum_variance = np.zeros(center_lum.shape, dtype=np.float32)
    for dx, dy in NEIGHBOUR_OFFSETS:
        sx = np.clip(x + dx, 0, width - 1)
        sy = np.clip(y + dy, 0, height - 1)
        lum_variance = lum_variance + np.abs(luminance(rgb[sy, sx]) - center_lum)
    lum_variance = lum_variance / np.float32(8.0)

    color_depth = (
        center[..., 0] * np.float32(0.6)
        + center[..., 1] * np.float32(0.3)
        + center[..., 2] * np.float32(0.1)
    )

    u = x.astype(np.float32) / np.float32(width) - np.float32(0.5)
    v = y.astype(np.float32) / np.float32(height) - np.float32(0.5)
    position_depth = np.float32(1.0) - np.sqrt(u * u + v * v)

    edge_strength = lum_variance * EDGE_GAIN
    depth = (
        np.float32(0.5) * (np.float32(1.0) - np.clip(edge_strength * DEPTH_SCALE, 0.0, 1.0))
        + np.float32(0.3) * color_depth
        + np.float32(0.2) * position_depth
    )

    noise = pseudo_noise(x, y) * np.float32(noise_amplitude)
    depth = np.clip(depth + noise, 0.0, 1.0).astype(np.float32)

    return np.power(depth, CONTRAST_EXPONENT).astype(np.float32)


def luminance_depth(image: np.ndarray, logger: Optional[logging.Logger] = None) -> np.ndarray:
    """Serial-fallback depth: simple luminance inversion, depth = 1 - L.

    Args:
        image: Input image (any layout accepted by `to_rgb_float`)
        logger: Observability hook, defaults to the module logger

    Returns:
        HxW float32 depth field in [0, 1]
    """
    log = logger or logging.getLogger(__name__)
    rgb = to_rgb_float(image)
    depth = np.clip(np.float32(1.0) - luminance(rgb), 0.0, 1.0).astype(np.float32)
    log.debug(f"Luminance-inversion depth for {rgb.shape[1]}x{rgb.shape[0]} image")
    return depth


def depth_to_image(depth: np.ndarray) -> np.ndarray:
    """Convert a depth field to an 8-bit raster with the value replicated to RGB.

    Args:
        depth: HxW depth field in [0, 1]

    Returns:
        HxWx3 uint8 image
    """
    depth = np.asarray(depth, dtype=np.float32)
    if depth.ndim != 2:
        raise ValueError(f"Depth field must be 2-D, got shape {depth.shape}")
    gray = np.rint(np.clip(depth, 0.0, 1.0) * 255.0).astype(np.uint8)
    return np.stack([gray, gray, gray], axis=2)
