"""Wavefront OBJ/MTL serialization of grid meshes.

The text layout is the integration contract with downstream preview and
export tools and is versioned independently of the in-memory buffers:

    # <title> generated by depthmesh
    # Format: depthmesh-obj <FORMAT_VERSION>
    # Vertices: <N>
    # Resolution: <W>x<H>
    mtllib <library>                  (textured only)

    v x y z                           (N lines)
    vt u 1-v                          (N lines, V flipped)
    vc r g b                          (N lines, textured only)
    usemtl <material>                 (textured only)
    f a/a b/b c/c                     (1-based, in index-buffer order)
"""

from __future__ import annotations

import io
import logging
import os
from dataclasses import dataclass
from typing import Optional

import numpy as np

from depthmesh.mesh import MeshBuffers

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1
GENERATOR = "depthmesh"
DEFAULT_MATERIAL_LIBRARY = "textured_mesh.mtl"
MATERIAL_NAME = "textured_material"

MATERIAL_TEMPLATE = (
    "# Material file for textured mesh\n"
    f"newmtl {MATERIAL_NAME}\n"
    "Ka 1.000 1.000 1.000\n"
    "Kd 1.000 1.000 1.000\n"
    "Ks 0.000 0.000 0.000\n"
    "d 1.0\n"
    "illum 2\n"
)


@dataclass
class ObjMesh:
    """Geometry recovered from an OBJ file. Face indices are 0-based."""

    vertices: np.ndarray
    tex_coords: np.ndarray
    faces: np.ndarray
    face_tex_coords: np.ndarray
    colors: Optional[np.ndarray] = None
    material_library: Optional[str] = None
    material: Optional[str] = None

    @property
    def vertex_count(self) -> int:
        return len(self.vertices)

    @property
    def face_count(self) -> int:
        return len(self.faces)


def write_obj(
    buffers: MeshBuffers,
    textured: Optional[bool] = None,
    material_library: str = DEFAULT_MATERIAL_LIBRARY,
) -> str:
    """Serialize mesh buffers to OBJ text.

    Args:
        buffers: Filled mesh buffers
        textured: Emit the textured variant (vertex colours and material
            references). Defaults to whether buffers carry colours.
        material_library: File name written in the mtllib directive

    Returns:
        OBJ file contents
    """
    if textured is None:
        textured = buffers.textured
    if textured and buffers.colors is None:
        raise ValueError("Textured OBJ requested for buffers without vertex colors")

    out = io.StringIO()
    title = "Textured 3D Mesh" if textured else "3D Mesh"
    out.write(f"# {title} generated by {GENERATOR}\n")
    out.write(f"# Format: {GENERATOR}-obj {FORMAT_VERSION}\n")
    out.write(f"# Vertices: {buffers.vertex_count}\n")
    out.write(f"# Resolution: {buffers.width}x{buffers.height}\n")
    if textured:
        out.write(f"mtllib {material_library}\n")
    out.write("\n")

    np.savetxt(out, buffers.positions, fmt="v %.6f %.6f %.6f")
    out.write("\n")

    tex_coords = np.column_stack([buffers.uv[:, 0], np.float32(1.0) - buffers.uv[:, 1]])
    np.savetxt(out, tex_coords, fmt="vt %.6f %.6f")
    out.write("\n")

    if textured:
        np.savetxt(out, buffers.colors, fmt="vc %.6f %.6f %.6f")
        out.write("\n")
        out.write(f"usemtl {MATERIAL_NAME}\n")

    faces = buffers.triangles.astype(np.int64) + 1
    np.savetxt(out, np.repeat(faces, 2, axis=1), fmt="f %d/%d %d/%d %d/%d")

    return out.getvalue()


def write_mtl() -> str:
    """Contents of the companion material file."""
    return MATERIAL_TEMPLATE


def parse_obj(text: str) -> ObjMesh:
    """Parse OBJ text produced by `write_obj` (v, vt, vc, f, mtllib, usemtl).

    Args:
        text: OBJ file contents

    Returns:
        Parsed ObjMesh
    """
    vertices = []
    tex_coords = []
    colors = []
    faces = []
    face_tex_coords = []
    material_library = None
    material = None

    for line in text.splitlines():
        parts = line.split()
        if not parts or parts[0].startswith("#"):
            continue

        tag = parts[0]
        if tag == "v" and len(parts) >= 4:
            vertices.append([float(p) for p in parts[1:4]])
        elif tag == "vt" and len(parts) >= 3:
            tex_coords.append([float(p) for p in parts[1:3]])
        elif tag == "vc" and len(parts) >= 4:
            colors.append([float(p) for p in parts[1:4]])
        elif tag == "f" and len(parts) >= 4:
            face = []
            face_uv = []
            for corner in parts[1:4]:
                fields = corner.split("/")
                face.append(int(fields[0]) - 1)
                face_uv.append(int(fields[1]) - 1 if len(fields) > 1 and fields[1] else -1)
            faces.append(face)
            face_tex_coords.append(face_uv)
        elif tag == "mtllib" and len(parts) >= 2:
            material_library = parts[1]
        elif tag == "usemtl" and len(parts) >= 2:
            material = parts[1]

    return ObjMesh(
        vertices=np.array(vertices, dtype=np.float32).reshape(-1, 3),
        tex_coords=np.array(tex_coords, dtype=np.float32).reshape(-1, 2),
        faces=np.array(faces, dtype=np.int64).reshape(-1, 3),
        face_tex_coords=np.array(face_tex_coords, dtype=np.int64).reshape(-1, 3),
        colors=np.array(colors, dtype=np.float32).reshape(-1, 3) if colors else None,
        material_library=material_library,
        material=material,
    )


def save_obj(
    buffers: MeshBuffers,
    output_path: str,
    textured: Optional[bool] = None,
    material_library: str = DEFAULT_MATERIAL_LIBRARY,
) -> int:
    """Write mesh buffers to an OBJ file.

    Args:
        buffers: Filled mesh buffers
        output_path: Destination file path
        textured: Emit the textured variant, defaults to buffers.textured
        material_library: File name written in the mtllib directive

    Returns:
        Number of bytes written

    Raises:
        OSError: If the file cannot be written
    """
    data = write_obj(buffers, textured=textured, material_library=material_library).encode("utf-8")
    os.makedirs(os.path.dirname(os.path.abspath(output_path)), exist_ok=True)
    with open(output_path, "wb") as f:
        f.write(data)
    logger.info(f"Mesh saved to {output_path} ({len(data)} bytes)")
    return len(data)


def save_mtl(output_path: str) -> None:
    """Write the companion material file.

    Raises:
        OSError: If the file cannot be written
    """
    os.makedirs(os.path.dirname(os.path.abspath(output_path)), exist_ok=True)
    with open(output_path, "w") as f:
        f.write(write_mtl())
    logger.info(f"Material file saved to {output_path}")
