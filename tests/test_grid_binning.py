"""
Unit tests for grid binning and bilinear sampling.
"""

import os
import sys
import unittest

import numpy as np

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "skin_proj"))

from grid_binning import bin_points, cell_positions, resolve_resolution
from grid_sampling import sample_colors, sample_height, sample_heights
from skin_config import BinningConfig
from skin_errors import EmptyInputError


def _fixed(nx, ny, policy="average"):
    return BinningConfig(policy=policy, resolution="fixed", nx=nx, ny=ny)


class TestBinPoints(unittest.TestCase):
    def test_map_lengths_and_valid_cells(self):
        rng = np.random.default_rng(0)
        for n in (1, 2, 50, 1000):
            pts = rng.uniform(-1.0, 1.0, size=(n, 3))
            grid = bin_points(pts, config=_fixed(17, 9))
            self.assertEqual(grid.height.shape, (17 * 9,))
            self.assertEqual(grid.valid.shape, (17 * 9,))
            self.assertGreaterEqual(int(np.count_nonzero(grid.valid)), 1)
            self.assertTrue(np.all(np.isfinite(grid.height)))

    def test_single_point_fills_every_hole(self):
        grid = bin_points(np.array([[0.3, -0.2, 4.0]]), config=_fixed(4, 4))
        self.assertEqual(int(np.count_nonzero(grid.valid)), 1)
        np.testing.assert_allclose(grid.height, 4.0)
        # zero spans fall back to 1.0
        self.assertEqual(grid.width_x, 1.0)
        self.assertEqual(grid.height_y, 1.0)

    def test_empty_input_raises(self):
        with self.assertRaises(EmptyInputError):
            bin_points(np.zeros((0, 3)), config=_fixed(4, 4))
        with self.assertRaises(EmptyInputError):
            bin_points([], config=_fixed(4, 4))

    def test_average_policy(self):
        pts = np.array([[0.0, 0.0, 1.0], [0.0, 0.0, 3.0], [1.0, 1.0, 5.0]])
        cols = np.array([[10, 20, 30], [30, 40, 50], [255, 0, 0]], dtype=np.float64)
        grid = bin_points(pts, cols, config=_fixed(2, 2))
        np.testing.assert_array_equal(grid.valid, [True, False, False, True])
        np.testing.assert_allclose(grid.height, [2.0, 3.5, 3.5, 5.0])
        np.testing.assert_array_equal(grid.counts, [2, 0, 0, 1])
        np.testing.assert_allclose(grid.colors_rgb()[0], [20.0, 30.0, 40.0])
        self.assertTrue(np.all(np.isnan(grid.colors_rgb()[1])))
        self.assertEqual(grid.z_min, 1.0)
        self.assertEqual(grid.z_max, 5.0)

    def test_nearest_front_policy_keeps_highest_sample(self):
        pts = np.array([[0.0, 0.0, 1.0], [0.0, 0.0, 3.0], [1.0, 1.0, 5.0]])
        cols = np.array([[10, 20, 30], [30, 40, 50], [255, 0, 0]], dtype=np.float64)
        grid = bin_points(pts, cols, config=_fixed(2, 2, policy="nearest_front"))
        np.testing.assert_allclose(grid.height, [3.0, 1.0, 1.0, 5.0])
        np.testing.assert_allclose(grid.colors_rgb()[0], [30.0, 40.0, 50.0])

    def test_rgba_colors_accepted(self):
        pts = np.array([[0.0, 0.0, 1.0], [1.0, 1.0, 2.0]])
        rgba = np.array([[1, 2, 3, 255], [4, 5, 6, 255]], dtype=np.float64)
        grid = bin_points(pts, rgba.reshape(-1), config=_fixed(2, 2))
        np.testing.assert_allclose(grid.colors_rgb()[3], [4.0, 5.0, 6.0])

    def test_adaptive_resolution_is_clamped(self):
        pts = np.array([[0.0, 0.0, 0.0], [1.0, 0.4, 0.0]])
        cfg = BinningConfig(resolution="adaptive", target_cell_size=0.005, min_resolution=64, max_resolution=192)
        self.assertEqual(resolve_resolution(pts, cfg), (192, 80))
        cfg = BinningConfig(resolution="adaptive", target_cell_size=0.1, min_resolution=64, max_resolution=192)
        self.assertEqual(resolve_resolution(pts, cfg), (64, 64))

    def test_bad_config_rejected(self):
        with self.assertRaises(ValueError):
            BinningConfig(policy="median")
        with self.assertRaises(ValueError):
            BinningConfig(nx=0)


class TestSampling(unittest.TestCase):
    def setUp(self):
        rng = np.random.default_rng(1)
        pts = rng.uniform(0.0, 2.0, size=(400, 3))
        self.grid = bin_points(pts, config=_fixed(7, 5))
        self.h = rng.normal(size=7 * 5)

    def test_cell_positions_reproduce_stored_height(self):
        xs, ys = self.grid.cell_centers()
        np.testing.assert_allclose(sample_heights(self.h, self.grid, xs, ys), self.h, atol=1e-12)

    def test_bounded_by_corner_values(self):
        rng = np.random.default_rng(2)
        x = rng.uniform(self.grid.x_min, self.grid.x_max, size=500)
        y = rng.uniform(self.grid.y_min, self.grid.y_max, size=500)
        z = sample_heights(self.h, self.grid, x, y)
        self.assertTrue(np.all(z >= self.h.min() - 1e-12))
        self.assertTrue(np.all(z <= self.h.max() + 1e-12))

    def test_continuous_across_cell_boundary(self):
        x_node = float(self.grid.cell_x()[3])
        y = float(self.grid.cell_y()[2]) + 0.1
        left = sample_height(self.h, self.grid, x_node - 1e-9, y)
        right = sample_height(self.h, self.grid, x_node + 1e-9, y)
        self.assertAlmostEqual(left, right, places=6)

    def test_outside_the_grid_is_edge_clamped(self):
        z = sample_height(self.h, self.grid, self.grid.x_min - 5.0, self.grid.y_min - 5.0)
        self.assertAlmostEqual(z, float(self.h[0]))

    def test_wrong_map_length_raises(self):
        with self.assertRaises(ValueError):
            sample_heights(np.zeros(3), self.grid, np.zeros(1), np.zeros(1))

    def test_missing_colors_use_default(self):
        rgb = sample_colors(self.grid, np.array([1.0]), np.array([1.0]), (200, 160, 140))
        np.testing.assert_allclose(rgb, [[200.0, 160.0, 140.0]])

    def test_cell_positions_single_cell(self):
        np.testing.assert_allclose(cell_positions(1, 2.5, 3.0), [2.5])
        np.testing.assert_allclose(cell_positions(3, 0.0, 2.0), [0.0, 1.0, 2.0])


if __name__ == "__main__":
    unittest.main()
