"""Subject mask generation.

Placeholder segmentation: a centred ellipse with radii W/3 and H/3, a
linear soft edge out to 1.3x the normalised radius, smoothed with a 3x3
box blur. Any HxW uint8 mask from another source can be used instead.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

import numpy as np
from scipy import ndimage

logger = logging.getLogger(__name__)

SOFT_EDGE = 1.3


def elliptical_mask(width: int, height: int) -> np.ndarray:
    """Unsmoothed HxW uint8 ellipse mask (255 inside, soft falloff, 0 outside)."""
    center_x = width / 2.0
    center_y = height / 2.0
    radius_x = width / 3.0
    radius_y = height / 3.0

    ys, xs = np.mgrid[0:height, 0:width].astype(np.float64)
    nx = (xs - center_x) / radius_x
    ny = (ys - center_y) / radius_y
    distance = nx * nx + ny * ny

    mask = np.zeros((height, width), dtype=np.uint8)
    edge = (distance > 1.0) & (distance <= SOFT_EDGE)
    falloff = 1.0 - (distance[edge] - 1.0) / (SOFT_EDGE - 1.0)
    mask[edge] = (falloff * 255.0).astype(np.uint8)
    mask[distance <= 1.0] = 255

    return mask


def smooth_mask(mask: np.ndarray) -> np.ndarray:
    """3x3 box blur of the interior pixels; the one-pixel border is kept as is."""
    smoothed = mask.copy()
    if mask.shape[0] < 3 or mask.shape[1] < 3:
        return smoothed

    sums = ndimage.convolve(mask.astype(np.int32), np.ones((3, 3), dtype=np.int32), mode="nearest")
    smoothed[1:-1, 1:-1] = (sums[1:-1, 1:-1] // 9).astype(np.uint8)
    return smoothed


def generate_subject_mask(
    image: np.ndarray,
    logger: Optional[logging.Logger] = None,
) -> np.ndarray:
    """Generate a subject mask the size of image.

    Args:
        image: Input image, only its height and width are used
        logger: Observability hook, defaults to the module logger

    Returns:
        HxW uint8 mask, 255 = subject
    """
    log = logger or logging.getLogger(__name__)
    start_time = time.perf_counter()
    height, width = image.shape[:2]

    mask = smooth_mask(elliptical_mask(width, height))

    elapsed_time = time.perf_counter() - start_time
    log.info(f"Subject mask generated using elliptical mask (elapsed time: {elapsed_time:.2f}s)")
    return mask
