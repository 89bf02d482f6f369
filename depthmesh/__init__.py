"""Single-image depth estimation and grid mesh synthesis.

Converts one 2D raster image into a textured 3D triangle mesh: a per-pixel
depth kernel estimates a relative depth field, a per-pixel mesh kernel
lifts it into vertex, UV, colour and index buffers, and the result is
written as Wavefront OBJ with a companion material file.
"""

from __future__ import annotations

__version__ = "0.1.0"
