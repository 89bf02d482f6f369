"""Tests for grid mesh construction and the serial fallback.

This module checks buffer sizes, vertex layout, triangle winding and
index bounds of the mesh kernel, and that the serial path builds the
same topology one pixel at a time.
"""

import sys
import unittest
from pathlib import Path

import numpy as np
import pytest

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from depthmesh import mesh, serial
from depthmesh.errors import BufferAllocationError


def run_kernel(depth, rgb=None):
    """Run the mesh kernel over every vertex of depth."""
    height, width = depth.shape
    buffers = mesh.allocate_mesh_buffers(width, height, textured=rgb is not None)
    mesh.mesh_kernel(depth, np.arange(width * height), buffers, rgb)
    return buffers


class TestMeshKernel(unittest.TestCase):
    """Test the mesh kernel."""

    def setUp(self):
        """Set up a reproducible 5x4 depth field and colour image."""
        rng = np.random.default_rng(3)
        self.width = 5
        self.height = 4
        self.depth = rng.random((self.height, self.width), dtype=np.float32)
        self.rgb = rng.random((self.height, self.width, 3), dtype=np.float32)

    def test_buffer_counts(self):
        """A W x H grid has W*H vertices and 2(W-1)(H-1) triangles."""
        buffers = run_kernel(self.depth)
        self.assertEqual(buffers.vertex_count, 20)
        self.assertEqual(buffers.triangle_count, 24)
        self.assertEqual(buffers.positions.shape, (20, 3))
        self.assertEqual(buffers.uv.shape, (20, 2))
        self.assertEqual(buffers.indices.shape, (72,))
        self.assertEqual(buffers.triangles.shape, (24, 3))
        self.assertFalse(buffers.textured)
        buffers.validate()

    def test_indices_in_range(self):
        buffers = run_kernel(self.depth)
        self.assertLess(int(buffers.indices.max()), buffers.vertex_count)
        # Every vertex is referenced by at least one triangle
        self.assertEqual(len(np.unique(buffers.indices)), buffers.vertex_count)

    def test_vertex_layout(self):
        """Corners map to the [-1, 1] square with y flipped and z from depth."""
        buffers = run_kernel(self.depth)

        np.testing.assert_allclose(
            buffers.positions[0], [-1.0, 1.0, self.depth[0, 0] * 2 - 1], atol=1e-6
        )
        last = self.width * self.height - 1
        np.testing.assert_allclose(
            buffers.positions[last], [1.0, -1.0, self.depth[-1, -1] * 2 - 1], atol=1e-6
        )
        np.testing.assert_allclose(buffers.uv[0], [0.0, 0.0])
        np.testing.assert_allclose(buffers.uv[last], [1.0, 1.0])

        # Pixel (x=2, y=1)
        i = 1 * self.width + 2
        np.testing.assert_allclose(buffers.uv[i], [0.5, 1.0 / 3.0], atol=1e-6)
        np.testing.assert_allclose(buffers.positions[i, :2], [0.0, 1.0 / 3.0], atol=1e-6)

    def test_winding_and_offsets(self):
        """Each interior pixel writes (i0, i2, i1), (i1, i2, i3) at its own offset."""
        buffers = run_kernel(self.depth)
        w = self.width
        for y in range(self.height - 1):
            for x in range(w - 1):
                i0 = y * w + x
                i1, i2 = i0 + 1, i0 + w
                i3 = i2 + 1
                offset = (y * (w - 1) + x) * 6
                np.testing.assert_array_equal(
                    buffers.indices[offset:offset + 6], [i0, i2, i1, i1, i2, i3]
                )

    def test_smallest_grid(self):
        """A 2x2 grid yields exactly one quad."""
        depth = np.full((2, 2), 0.5, dtype=np.float32)
        buffers = run_kernel(depth)
        np.testing.assert_array_equal(buffers.indices, [0, 2, 1, 1, 2, 3])
        np.testing.assert_allclose(buffers.positions[:, 2], 0.0)

    def test_padding_threads_write_nothing(self):
        """Thread ids beyond the vertex count are masked out."""
        buffers = mesh.allocate_mesh_buffers(self.width, self.height)
        mesh.mesh_kernel(self.depth, np.arange(20, 256), buffers)
        self.assertFalse(np.any(buffers.positions))
        self.assertFalse(np.any(buffers.indices))

    def test_scalar_thread(self):
        """A single thread id fills one vertex and its quad."""
        buffers = mesh.allocate_mesh_buffers(self.width, self.height)
        mesh.mesh_kernel(self.depth, 6, buffers)
        # Pixel (1, 1) owns the quad at offset (1 * 4 + 1) * 6
        np.testing.assert_array_equal(buffers.indices[30:36], [6, 11, 7, 7, 11, 12])
        self.assertFalse(np.any(buffers.indices[:6]))

    def test_vertex_colors(self):
        buffers = run_kernel(self.depth, self.rgb)
        self.assertTrue(buffers.textured)
        np.testing.assert_array_equal(buffers.colors, self.rgb.reshape(-1, 3))


class TestMeshBuffers(unittest.TestCase):
    """Test buffer allocation and validation."""

    def test_degenerate_grid_rejected(self):
        with self.assertRaises(ValueError):
            mesh.allocate_mesh_buffers(1, 5)
        with self.assertRaises(ValueError):
            mesh.allocate_mesh_buffers(5, 1)

    def test_buffer_sizes(self):
        sizes = mesh.buffer_sizes(4, 3, textured=True)
        self.assertEqual(sizes["positions"], 12 * 3 * 4)
        self.assertEqual(sizes["uv"], 12 * 2 * 4)
        self.assertEqual(sizes["indices"], 3 * 2 * 6 * 4)
        self.assertEqual(sizes["colors"], 12 * 3 * 4)
        self.assertNotIn("colors", mesh.buffer_sizes(4, 3))

    def test_allocation_limit(self):
        with self.assertRaises(BufferAllocationError) as ctx:
            mesh.allocate_mesh_buffers(10, 10, max_bytes=100)
        self.assertEqual(ctx.exception.resource, "positions")
        self.assertEqual(ctx.exception.nbytes, 1200)

    def test_validate_rejects_bad_index(self):
        buffers = run_kernel(np.zeros((3, 3), dtype=np.float32))
        buffers.indices[0] = 9
        with self.assertRaises(ValueError):
            buffers.validate()

    def test_validate_rejects_color_range(self):
        rgb = np.full((3, 3, 3), 0.5, dtype=np.float32)
        buffers = run_kernel(np.zeros((3, 3), dtype=np.float32), rgb)
        buffers.validate()
        buffers.colors[4] = [200.0, 0.0, 0.0]
        with self.assertRaises(ValueError):
            buffers.validate()


class TestSerialFallback(unittest.TestCase):
    """Test the serial CPU fallback."""

    def test_synthetic_surface(self):
        surface = serial.synthetic_surface(12, 8)
        self.assertEqual(surface.shape, (8, 12))
        self.assertEqual(surface.dtype, np.float32)
        self.assertGreaterEqual(float(surface.min()), 0.2 - 1e-6)
        self.assertLessEqual(float(surface.max()), 0.8 + 1e-6)
        # sin(0) = 0 along the first column
        np.testing.assert_allclose(surface[:, 0], 0.5)

    def test_serial_matches_kernel(self):
        """The per-pixel serial build equals the kernel over all threads."""
        depth = serial.synthetic_surface(7, 5)
        expected = run_kernel(depth)
        result = serial.build_mesh(depth)
        np.testing.assert_array_equal(result.positions, expected.positions)
        np.testing.assert_array_equal(result.uv, expected.uv)
        np.testing.assert_array_equal(result.indices, expected.indices)

    def test_generate_mesh_textured(self):
        rgb = np.random.default_rng(0).random((4, 6, 3), dtype=np.float32)
        buffers = serial.generate_mesh(6, 4, rgb=rgb)
        buffers.validate()
        np.testing.assert_array_equal(buffers.colors, rgb.reshape(-1, 3))
        np.testing.assert_allclose(
            buffers.positions[:, 2],
            serial.synthetic_surface(6, 4).reshape(-1) * 2 - 1,
            atol=1e-6,
        )

    def test_estimate_depth_is_inverted_luminance(self):
        image = np.zeros((3, 3, 3), dtype=np.uint8)
        image[1, 1] = 255
        result = serial.estimate_depth(image)
        self.assertAlmostEqual(float(result[0, 0]), 1.0, places=6)
        self.assertAlmostEqual(float(result[1, 1]), 0.0, places=6)

    def test_estimate_depth_buffer_limit(self):
        """The serial path enforces the same per-buffer limit as the devices."""
        image = np.zeros((8, 8, 3), dtype=np.uint8)
        with self.assertRaises(BufferAllocationError) as ctx:
            serial.estimate_depth(image, max_bytes=64)
        self.assertEqual(ctx.exception.resource, "depth texture")
        self.assertEqual(ctx.exception.nbytes, 256)
        self.assertEqual(serial.estimate_depth(image, max_bytes=256).shape, (8, 8))


if __name__ == "__main__":
    unittest.main()
