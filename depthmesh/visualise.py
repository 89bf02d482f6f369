"""Preview rendering and mesh export utilities.

This module turns generated mesh buffers into a static 3D preview image
and converts them to Open3D meshes for export to binary formats.
"""

from __future__ import annotations

import logging
import math
import os
from typing import Optional

import matplotlib.pyplot as plt
import numpy as np
import open3d as o3d

from depthmesh.mesh import MeshBuffers

logger = logging.getLogger(__name__)


def to_open3d(buffers: MeshBuffers) -> o3d.geometry.TriangleMesh:
    """Convert mesh buffers to an Open3D triangle mesh.

    Per-corner UVs are attached with the V axis flipped, as in the OBJ
    output; vertex colours are attached for textured buffers.

    Args:
        buffers: Filled mesh buffers

    Returns:
        Open3D TriangleMesh
    """
    triangles = buffers.triangles.astype(np.int32)

    mesh = o3d.geometry.TriangleMesh()
    mesh.vertices = o3d.utility.Vector3dVector(buffers.positions.astype(np.float64))
    mesh.triangles = o3d.utility.Vector3iVector(triangles)

    corner_uv = buffers.uv[triangles.reshape(-1)].astype(np.float64)
    corner_uv[:, 1] = 1.0 - corner_uv[:, 1]
    mesh.triangle_uvs = o3d.utility.Vector2dVector(corner_uv)

    if buffers.colors is not None:
        mesh.vertex_colors = o3d.utility.Vector3dVector(
            np.clip(buffers.colors, 0.0, 1.0).astype(np.float64)
        )

    mesh.compute_vertex_normals()
    return mesh


def export_mesh(buffers: MeshBuffers, output_path: str) -> None:
    """Write mesh buffers in any format Open3D supports (ply, glb, stl, ...).

    Raises:
        OSError: If Open3D fails to write the file
    """
    os.makedirs(os.path.dirname(os.path.abspath(output_path)), exist_ok=True)
    mesh = to_open3d(buffers)
    if not o3d.io.write_triangle_mesh(output_path, mesh, write_vertex_colors=buffers.textured):
        raise OSError(f"Open3D could not write mesh to {output_path}")
    logger.info(f"Mesh exported to {output_path}")


def preview_stride(width: int, height: int, max_grid: int) -> int:
    """Sampling stride that keeps the preview grid within max_grid per side."""
    return max(1, math.ceil(max(width, height) / max(max_grid, 1)))


def render_preview(
    buffers: MeshBuffers,
    output_path: str,
    max_grid: int = 128,
    elevation: float = 30.0,
    azimuth: float = -60.0,
    title: Optional[str] = None,
) -> None:
    """Render a static 3D surface preview of the mesh to an image file.

    Large grids are subsampled so that at most max_grid samples per side
    are drawn.

    Args:
        buffers: Filled mesh buffers
        output_path: Destination image path
        max_grid: Maximum samples per side
        elevation: Camera elevation in degrees
        azimuth: Camera azimuth in degrees
        title: Optional figure title
    """
    stride = preview_stride(buffers.width, buffers.height, max_grid)
    grid = buffers.positions.reshape(buffers.height, buffers.width, 3)[::stride, ::stride]
    X, Y, Z = grid[..., 0], grid[..., 1], grid[..., 2]

    if buffers.colors is not None:
        facecolors = np.clip(
            buffers.colors.reshape(buffers.height, buffers.width, 3)[::stride, ::stride], 0.0, 1.0
        )
    else:
        facecolors = plt.get_cmap("viridis")((Z + 1.0) / 2.0)

    fig = plt.figure(figsize=(8, 8))
    ax = fig.add_subplot(projection="3d")
    ax.plot_surface(X, Z, Y, facecolors=facecolors, rstride=1, cstride=1, linewidth=0, antialiased=False, shade=False)
    ax.view_init(elev=elevation, azim=azimuth)
    ax.set_xlabel("x")
    ax.set_ylabel("depth")
    ax.set_zlabel("y")
    ax.set_title(title or f"{buffers.width}x{buffers.height} mesh ({buffers.triangle_count} triangles)")

    os.makedirs(os.path.dirname(os.path.abspath(output_path)), exist_ok=True)
    plt.savefig(output_path, dpi=100, bbox_inches='tight')
    plt.close(fig)

    logger.info(f"Mesh preview saved to {output_path}")
