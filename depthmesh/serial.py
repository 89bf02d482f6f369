"""Serial CPU fallback for when no compute device is in use.

The fallback is deliberately simpler than the device kernels:

    - depth is a plain luminance inversion (see `depth.luminance_depth`)
      instead of the full contrast/colour/position heuristic
    - the mesh is built one pixel at a time over an analytic surface,
      z = 0.5 + 0.3 * sin(6 pi x/W) * cos(6 pi y/H), rather than from the
      estimated depth field

The mesh topology (vertex order, UV layout, triangle winding, index
offsets) is identical to the device mesh kernel.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

import numpy as np
from tqdm import tqdm

from depthmesh import depth as depth_mod
from depthmesh.errors import BufferAllocationError
from depthmesh.mesh import (
    MeshBuffers,
    allocate_mesh_buffers,
    quad_indices,
    vertex_position,
    vertex_uv,
)

logger = logging.getLogger(__name__)


def synthetic_surface(width: int, height: int) -> np.ndarray:
    """Analytic HxW depth field used by the fallback mesh path."""
    x_norm = np.arange(width, dtype=np.float32) / np.float32(width)
    y_norm = np.arange(height, dtype=np.float32) / np.float32(height)
    waves = np.outer(
        np.cos(y_norm * np.float32(6.0 * np.pi)),
        np.sin(x_norm * np.float32(6.0 * np.pi)),
    )
    return (np.float32(0.5) + np.float32(0.3) * waves).astype(np.float32)


def estimate_depth(
    image: np.ndarray,
    max_bytes: Optional[int] = None,
    logger: Optional[logging.Logger] = None,
) -> np.ndarray:
    """Fallback depth estimation by luminance inversion.

    Raises:
        BufferAllocationError: If the depth field exceeds max_bytes
    """
    log = logger or logging.getLogger(__name__)
    height, width = np.shape(image)[:2]
    nbytes = width * height * 4
    if max_bytes is not None and nbytes > max_bytes:
        raise BufferAllocationError("depth texture", nbytes, f"exceeds limit of {max_bytes} bytes")

    start_time = time.perf_counter()
    depth = depth_mod.luminance_depth(image, logger=log)
    elapsed_time = time.perf_counter() - start_time
    log.info(f"Used CPU fallback for depth estimation (elapsed time: {elapsed_time:.2f}s)")
    return depth


def build_mesh(
    depth: np.ndarray,
    rgb: Optional[np.ndarray] = None,
    max_bytes: Optional[int] = None,
    progress: bool = False,
) -> MeshBuffers:
    """Build grid mesh buffers from a depth field, one pixel at a time.

    Args:
        depth: HxW float32 depth field
        rgb: Optional HxWx3 float32 colour image for vertex colours
        max_bytes: Per-buffer allocation limit
        progress: Show a tqdm progress bar over rows

    Returns:
        Filled MeshBuffers
    """
    height, width = depth.shape
    buffers = allocate_mesh_buffers(width, height, textured=rgb is not None, max_bytes=max_bytes)

    index_counter = 0
    for y in tqdm(range(height), desc="Serial mesh", disable=not progress):
        for x in range(width):
            i = y * width + x
            buffers.positions[i] = vertex_position(x, y, width, height, depth[y, x])
            buffers.uv[i] = vertex_uv(x, y, width, height)
            if rgb is not None:
                buffers.colors[i] = rgb[y, x]

            if x < width - 1 and y < height - 1:
                buffers.indices[index_counter:index_counter + 6] = quad_indices(x, y, width)
                index_counter += 6

    return buffers


def generate_mesh(
    width: int,
    height: int,
    rgb: Optional[np.ndarray] = None,
    max_bytes: Optional[int] = None,
    logger: Optional[logging.Logger] = None,
) -> MeshBuffers:
    """Fallback mesh generation over the synthetic surface.

    Args:
        width: Grid width in pixels
        height: Grid height in pixels
        rgb: Optional colour image for the textured variant
        max_bytes: Per-buffer allocation limit
        logger: Observability hook, defaults to the module logger

    Returns:
        Filled MeshBuffers
    """
    log = logger or logging.getLogger(__name__)
    start_time = time.perf_counter()

    buffers = build_mesh(
        synthetic_surface(width, height),
        rgb=rgb,
        max_bytes=max_bytes,
        progress=log.isEnabledFor(logging.INFO),
    )

    elapsed_time = time.perf_counter() - start_time
    log.info(
        f"Used CPU fallback for mesh generation: {buffers.vertex_count} vertices, "
        f"{buffers.triangle_count} triangles (elapsed time: {elapsed_time:.2f}s)"
    )
    return buffers
