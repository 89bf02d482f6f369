"""Tests for the depth estimation kernel.

This module checks the per-pixel depth heuristic against hand-computed
values on small synthetic images, and the serial luminance fallback.
"""

import sys
import unittest
from pathlib import Path

import numpy as np
import pytest

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from depthmesh import depth


def full_grid(rgb, noise_amplitude=0.0):
    """Evaluate the kernel for every pixel of rgb."""
    height, width = rgb.shape[:2]
    ys, xs = np.mgrid[0:height, 0:width]
    return depth.depth_kernel(rgb, xs, ys, noise_amplitude)


class TestDepthKernel(unittest.TestCase):
    """Test the depth kernel."""

    def setUp(self):
        """Set up a reproducible random image."""
        rng = np.random.default_rng(7)
        self.random_rgb = rng.random((16, 20, 3), dtype=np.float32)

    def test_output_clamped(self):
        """Depth stays in [0, 1] for arbitrary colours, with and without noise."""
        for amplitude in (0.0, 0.05, 1.0):
            result = full_grid(self.random_rgb, amplitude)
            self.assertEqual(result.shape, (16, 20))
            self.assertEqual(result.dtype, np.float32)
            self.assertGreaterEqual(float(result.min()), 0.0)
            self.assertLessEqual(float(result.max()), 1.0)

    def test_solid_gray_radiates_from_center(self):
        """A flat gray image has no edge term, so depth depends only on position."""
        rgb = np.full((4, 4, 3), 0.5, dtype=np.float32)
        result = full_grid(rgb).astype(np.float64)

        ys, xs = np.mgrid[0:4, 0:4]
        distance = np.sqrt((xs / 4.0 - 0.5) ** 2 + (ys / 4.0 - 0.5) ** 2)
        expected = (0.5 + 0.3 * 0.5 + 0.2 * (1.0 - distance)) ** 1.1
        np.testing.assert_allclose(result, expected, rtol=1e-5, atol=1e-6)

        # Monotonic: closer to the centre means strictly larger depth
        order = np.argsort(distance, axis=None)
        flat_depth = result.reshape(-1)[order]
        flat_distance = distance.reshape(-1)[order]
        for a, b in zip(range(len(order) - 1), range(1, len(order))):
            if flat_distance[b] > flat_distance[a] + 1e-9:
                self.assertGreater(flat_depth[a], flat_depth[b])

        self.assertEqual(np.unravel_index(np.argmax(result), result.shape), (2, 2))

    def test_checkerboard_saturates_edge_term(self):
        """Strong local contrast pushes the edge term to its clamp."""
        ys, xs = np.mgrid[0:8, 0:8]
        white = ((xs + ys) % 2 == 0).astype(np.float32)
        rgb = np.repeat(white[:, :, None], 3, axis=2)

        result = depth.depth_kernel(rgb, 4, 4, noise_amplitude=0.0)

        # White centre pixel at uv (0.5, 0.5): 0.3 * 1 + 0.2 * 1
        self.assertAlmostEqual(float(result), 0.5 ** 1.1, places=6)

    def test_scalar_matches_vectorised(self):
        """Evaluating one pixel gives the same value as the whole-grid evaluation."""
        grid = full_grid(self.random_rgb)
        for x, y in [(0, 0), (19, 15), (3, 7), (19, 0), (10, 15)]:
            single = depth.depth_kernel(self.random_rgb, x, y, noise_amplitude=0.0)
            self.assertAlmostEqual(float(single), float(grid[y, x]), places=6)

    def test_border_samples_are_clamped(self):
        """A 1x1 image only ever samples itself."""
        rgb = np.array([[[1.0, 0.0, 0.0]]], dtype=np.float32)
        result = depth.depth_kernel(rgb, 0, 0, noise_amplitude=0.0)
        expected = (0.5 + 0.3 * 0.6 + 0.2 * (1.0 - np.sqrt(0.5))) ** 1.1
        self.assertAlmostEqual(float(result), expected, places=5)

    def test_noise_is_deterministic(self):
        """The hash noise is a pure function of the pixel coordinates."""
        xs = np.arange(64)
        ys = np.arange(64)[::-1]
        first = depth.pseudo_noise(xs, ys)
        second = depth.pseudo_noise(xs, ys)
        np.testing.assert_array_equal(first, second)
        self.assertTrue(np.all(first >= 0.0))
        self.assertTrue(np.all(first < 1.0))
        self.assertEqual(float(depth.pseudo_noise(0, 0)), 0.0)


class TestDepthHelpers(unittest.TestCase):
    """Test image normalisation, fallback depth and raster conversion."""

    def test_to_rgb_float_uint8(self):
        image = np.full((2, 3, 3), 255, dtype=np.uint8)
        rgb = depth.to_rgb_float(image)
        self.assertEqual(rgb.dtype, np.float32)
        np.testing.assert_allclose(rgb, 1.0)

    def test_to_rgb_float_drops_alpha_and_expands_gray(self):
        rgba = np.zeros((2, 2, 4), dtype=np.uint8)
        rgba[..., 3] = 255
        self.assertEqual(depth.to_rgb_float(rgba).shape, (2, 2, 3))
        np.testing.assert_allclose(depth.to_rgb_float(rgba), 0.0)

        gray = np.array([[0.25, 0.75]], dtype=np.float64)
        rgb = depth.to_rgb_float(gray)
        self.assertEqual(rgb.shape, (1, 2, 3))
        np.testing.assert_allclose(rgb[0, 1], [0.75, 0.75, 0.75])

    def test_to_rgb_float_scales_float_255_images(self):
        """Float images on the [0, 255] scale are normalised like uint8 ones."""
        image = np.full((4, 4, 3), 200.0, dtype=np.float32)
        rgb = depth.to_rgb_float(image)
        np.testing.assert_allclose(rgb, 200.0 / 255.0, rtol=1e-6)
        np.testing.assert_allclose(rgb, depth.to_rgb_float(image.astype(np.uint8)), rtol=1e-6)

    def test_to_rgb_float_clips(self):
        image = np.array([[[-0.5, 0.25, 1.0]]], dtype=np.float64)
        np.testing.assert_allclose(depth.to_rgb_float(image), [[[0.0, 0.25, 1.0]]])

    def test_to_rgb_float_rejects_bad_shapes(self):
        with self.assertRaises(ValueError):
            depth.to_rgb_float(np.zeros((2, 2, 2)))
        with self.assertRaises(ValueError):
            depth.to_rgb_float(np.zeros(5))

    def test_luminance_depth(self):
        """Fallback depth is inverted luminance."""
        image = np.array([[[255, 255, 255], [0, 0, 0]]], dtype=np.uint8)
        result = depth.luminance_depth(image)
        np.testing.assert_allclose(result, [[0.0, 1.0]], atol=1e-6)

    def test_depth_to_image(self):
        field = np.array([[0.0, 0.5, 1.0]], dtype=np.float32)
        image = depth.depth_to_image(field)
        self.assertEqual(image.shape, (1, 3, 3))
        self.assertEqual(image.dtype, np.uint8)
        np.testing.assert_array_equal(image[0, :, 0], [0, 128, 255])
        np.testing.assert_array_equal(image[..., 0], image[..., 2])

        with self.assertRaises(ValueError):
            depth.depth_to_image(np.zeros((2, 2, 3)))


if __name__ == "__main__":
    unittest.main()
