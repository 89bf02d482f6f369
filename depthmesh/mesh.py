"""Grid mesh construction from a depth field.

Every pixel (x, y) of a W x H depth field becomes one vertex at linear
index i = y * W + x:

    position = (x / (W-1) * 2 - 1, (1 - y / (H-1)) * 2 - 1, depth * 2 - 1)
    uv       = (x / (W-1), y / (H-1))

and every pixel with x < W-1 and y < H-1 owns the quad (i0, i1, i2, i3)
with i1 = i0 + 1, i2 = i0 + W, i3 = i2 + 1, written as the two triangles
(i0, i2, i1) and (i1, i2, i3) at index-buffer offset (y * (W-1) + x) * 6.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Union

import numpy as np

from depthmesh.errors import BufferAllocationError

logger = logging.getLogger(__name__)

Coord = Union[int, np.ndarray]

FLOAT_BYTES = 4
INDEX_BYTES = 4


@dataclass
class MeshBuffers:
    """Vertex, UV, colour and index buffers for one converted image.

    positions, uv and colors are indexed by the linear pixel index
    i = y * width + x. colors is only present for textured meshes.
    """

    width: int
    height: int
    positions: np.ndarray
    uv: np.ndarray
    indices: np.ndarray
    colors: Optional[np.ndarray] = None

    @property
    def vertex_count(self) -> int:
        return self.width * self.height

    @property
    def triangle_count(self) -> int:
        return 2 * (self.width - 1) * (self.height - 1)

    @property
    def textured(self) -> bool:
        return self.colors is not None

    @property
    def triangles(self) -> np.ndarray:
        """Index buffer viewed as an Mx3 array of vertex-index triples."""
        return self.indices.reshape(-1, 3)

    def validate(self) -> None:
        """Check the buffer sizes, index bounds and colour range.

        Raises:
            ValueError: If any invariant is violated
        """
        n_vertices = self.vertex_count
        if self.positions.shape != (n_vertices, 3):
            raise ValueError(f"positions has shape {self.positions.shape}, expected ({n_vertices}, 3)")
        if self.uv.shape != (n_vertices, 2):
            raise ValueError(f"uv has shape {self.uv.shape}, expected ({n_vertices}, 2)")
        if self.colors is not None and self.colors.shape != (n_vertices, 3):
            raise ValueError(f"colors has shape {self.colors.shape}, expected ({n_vertices}, 3)")
        if self.indices.shape != (3 * self.triangle_count,):
            raise ValueError(
                f"indices has shape {self.indices.shape}, expected ({3 * self.triangle_count},)"
            )
        if self.indices.size and int(self.indices.max()) >= n_vertices:
            raise ValueError(f"index {int(self.indices.max())} out of range for {n_vertices} vertices")
        if self.colors is not None and self.colors.size and not (
            float(self.colors.min()) >= 0.0 and float(self.colors.max()) <= 1.0
        ):
            raise ValueError(
                f"colors span [{float(self.colors.min())}, {float(self.colors.max())}], expected [0, 1]"
            )


def check_grid_size(width: int, height: int) -> None:
    """Reject grids the mesh layout is undefined for (W or H below 2)."""
    if width < 2 or height < 2:
        raise ValueError(f"Mesh generation requires at least 2x2 pixels, got {width}x{height}")


def buffer_sizes(width: int, height: int, textured: bool = False) -> Dict[str, int]:
    """Byte size of each mesh buffer for a W x H grid."""
    n_vertices = width * height
    sizes = {
        "positions": n_vertices * 3 * FLOAT_BYTES,
        "uv": n_vertices * 2 * FLOAT_BYTES,
        "indices": max(width - 1, 0) * max(height - 1, 0) * 6 * INDEX_BYTES,
    }
    if textured:
        sizes["colors"] = n_vertices * 3 * FLOAT_BYTES
    return sizes


def allocate_mesh_buffers(
    width: int,
    height: int,
    textured: bool = False,
    max_bytes: Optional[int] = None,
) -> MeshBuffers:
    """Allocate zeroed host buffers for a W x H grid mesh.

    Args:
        width: Grid width in pixels
        height: Grid height in pixels
        textured: Whether to allocate the vertex-colour buffer
        max_bytes: Per-buffer size limit, None for no limit

    Returns:
        Fresh MeshBuffers

    Raises:
        ValueError: If the grid is smaller than 2x2
        BufferAllocationError: If a buffer exceeds max_bytes or cannot be allocated
    """
    check_grid_size(width, height)
    sizes = buffer_sizes(width, height, textured)

    for resource, nbytes in sizes.items():
        if max_bytes is not None and nbytes > max_bytes:
            raise BufferAllocationError(resource, nbytes, f"exceeds limit of {max_bytes} bytes")

    n_vertices = width * height
    arrays = {}
    shapes = {
        "positions": ((n_vertices, 3), np.float32),
        "uv": ((n_vertices, 2), np.float32),
        "indices": ((sizes["indices"] // INDEX_BYTES,), np.uint32),
        "colors": ((n_vertices, 3), np.float32),
    }
    for resource in sizes:
        shape, dtype = shapes[resource]
        try:
            arrays[resource] = np.zeros(shape, dtype=dtype)
        except MemoryError as e:
            raise BufferAllocationError(resource, sizes[resource], str(e)) from e

    return MeshBuffers(width=width, height=height, **arrays)


def vertex_position(x: Coord, y: Coord, width: int, height: int, depth_value) -> np.ndarray:
    """Position(s) of the vertex for pixel(s) (x, y), shape (..., 3), float32."""
    xf = np.asarray(x, dtype=np.float32)
    yf = np.asarray(y, dtype=np.float32)
    px = (xf / np.float32(width - 1)) * np.float32(2.0) - np.float32(1.0)
    py = (np.float32(1.0) - yf / np.float32(height - 1)) * np.float32(2.0) - np.float32(1.0)
    pz = np.asarray(depth_value, dtype=np.float32) * np.float32(2.0) - np.float32(1.0)
    return np.stack([px, py, pz], axis=-1).astype(np.float32)


def vertex_uv(x: Coord, y: Coord, width: int, height: int) -> np.ndarray:
    """Texture coordinate(s) for pixel(s) (x, y), shape (..., 2), float32."""
    xf = np.asarray(x, dtype=np.float32)
    yf = np.asarray(y, dtype=np.float32)
    return np.stack(
        [xf / np.float32(width - 1), yf / np.float32(height - 1)], axis=-1
    ).astype(np.float32)


def quad_indices(x: Coord, y: Coord, width: int) -> np.ndarray:
    """The six index writes (i0, i2, i1, i1, i2, i3) for quad(s) at (x, y)."""
    i0 = np.asarray(y, dtype=np.int64) * width + np.asarray(x, dtype=np.int64)
    i1 = i0 + 1
    i2 = i0 + width
    i3 = i2 + 1
    return np.stack([i0, i2, i1, i1, i2, i3], axis=-1).astype(np.uint32)


def quad_offset(x: Coord, y: Coord, width: int) -> np.ndarray:
    """Index-buffer offset of the quad owned by pixel(s) (x, y)."""
    return (np.asarray(y, dtype=np.int64) * (width - 1) + np.asarray(x, dtype=np.int64)) * 6


def mesh_kernel(
    depth: np.ndarray,
    tid: Coord,
    buffers: MeshBuffers,
    rgb: Optional[np.ndarray] = None,
) -> None:
    """Run the mesh kernel for thread id(s) tid, writing into buffers.

    Thread ids at or beyond W * H (work-group padding) write nothing.

    Args:
        depth: HxW float32 depth field
        tid: Linear pixel index, scalar or integer array
        buffers: Destination buffers sized for the depth field
        rgb: Optional HxWx3 float32 colour image, sampled into buffers.colors
    """
    height, width = depth.shape
    tid = np.atleast_1d(np.asarray(tid, dtype=np.int64))
    tid = tid[tid < width * height]
    if tid.size == 0:
        return

    x = tid % width
    y = tid // width

    buffers.positions[tid] = vertex_position(x, y, width, height, depth[y, x])
    buffers.uv[tid] = vertex_uv(x, y, width, height)
    if rgb is not None and buffers.colors is not None:
        buffers.colors[tid] = rgb[y, x]

    interior = (x < width - 1) & (y < height - 1)
    xi = x[interior]
    yi = y[interior]
    offsets = quad_offset(xi, yi, width)[:, None] + np.arange(6)
    buffers.indices[offsets] = quad_indices(xi, yi, width)
