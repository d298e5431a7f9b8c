"""
Unit tests for boundary loop extraction.
"""

import os
import sys
import unittest

import numpy as np

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "skin_proj"))

from boundary_extract import (
    chaikin_closed,
    close_loop,
    collect_boundary_cells,
    dilate_mask,
    extract_boundary,
    loop_area,
    sort_by_angle,
    trace_contour,
)
from grid_binning import bin_points
from skin_config import BinningConfig, BoundaryConfig


def _unit_grid(nx, ny):
    pts = np.array([[0.0, 0.0, 0.0], [1.0, 1.0, 1.0]])
    return bin_points(pts, config=BinningConfig(nx=nx, ny=ny))


def _block_mask(nx, ny, x0, x1, y0, y1):
    m = np.zeros((ny, nx), dtype=bool)
    m[y0:y1, x0:x1] = True
    return m.reshape(-1)


class TestBoundaryCells(unittest.TestCase):
    def test_collect_ring_of_block(self):
        cells = collect_boundary_cells(_block_mask(6, 6, 1, 4, 1, 4), 6, 6)
        self.assertEqual(cells.shape, (8, 2))
        self.assertNotIn([2, 2], cells.tolist())

    def test_cells_on_grid_edge_count_as_boundary(self):
        cells = collect_boundary_cells(np.ones(9, dtype=bool), 3, 3)
        self.assertEqual(cells.shape[0], 8)

    def test_trace_walks_block_outline(self):
        path = trace_contour(_block_mask(8, 8, 2, 6, 3, 5), 8, 8)
        self.assertEqual(path.shape[1], 2)
        self.assertEqual(tuple(path[0]), (2, 3))
        self.assertEqual(len({tuple(p) for p in path.tolist()}), path.shape[0])
        self.assertEqual(path.shape[0], 8)

    def test_trace_on_notched_disc_stays_in_mask(self):
        n = 12
        yy, xx = np.mgrid[0:n, 0:n]
        m = (xx - 5.5) ** 2 + (yy - 5.5) ** 2 <= 25.0
        m[6:, 6:] = False
        path = trace_contour(m.reshape(-1), n, n)
        self.assertGreaterEqual(path.shape[0], 3)
        self.assertTrue(np.all(m[path[:, 1], path[:, 0]]))
        self.assertEqual(len({tuple(p) for p in path.tolist()}), path.shape[0])

    def test_trace_empty_mask(self):
        self.assertEqual(trace_contour(np.zeros(16, dtype=bool), 4, 4).shape, (0, 2))

    def test_dilate(self):
        m = _block_mask(7, 7, 3, 4, 3, 4)
        out = dilate_mask(m, 7, 7, 1)
        self.assertEqual(int(np.count_nonzero(out)), 9)
        np.testing.assert_array_equal(dilate_mask(m, 7, 7, 0), m)


class TestLoopHelpers(unittest.TestCase):
    def test_close_loop(self):
        loop = close_loop(np.array([[0.0, 0.0], [1.0, 0.0], [1.0, 1.0]]))
        self.assertEqual(loop.shape, (4, 2))
        np.testing.assert_array_equal(loop[0], loop[-1])
        again = close_loop(loop)
        self.assertEqual(again.shape, (4, 2))

    def test_chaikin_doubles_points_and_keeps_hull(self):
        sq = np.array([[0.0, 0.0], [1.0, 0.0], [1.0, 1.0], [0.0, 1.0]])
        out = chaikin_closed(sq, 2)
        self.assertEqual(out.shape, (16, 2))
        self.assertTrue(np.all((out >= 0.0) & (out <= 1.0)))
        np.testing.assert_allclose(out[:2], [[0.375, 0.0], [0.625, 0.0]])

    def test_sort_by_angle_is_counter_clockwise(self):
        pts = np.array([[1.0, 1.0], [0.0, 0.0], [1.0, 0.0], [0.0, 1.0]])
        self.assertGreater(loop_area(sort_by_angle(pts)), 0.0)


class TestExtractBoundary(unittest.TestCase):
    def setUp(self):
        self.grid = _unit_grid(16, 16)
        self.mask = _block_mask(16, 16, 3, 12, 4, 11)

    def test_both_strategies_close_the_loop(self):
        for strategy in ("collect", "trace"):
            loop = extract_boundary(self.mask, self.grid, BoundaryConfig(strategy=strategy))
            self.assertGreater(loop.shape[0], 3, strategy)
            self.assertLessEqual(float(np.linalg.norm(loop[0] - loop[-1])), 1e-6, strategy)

    def test_loop_inside_mask_bounds(self):
        loop = extract_boundary(self.mask, self.grid, BoundaryConfig())
        gx = self.grid.cell_x()
        gy = self.grid.cell_y()
        self.assertTrue(np.all(loop[:, 0] >= gx[3] - 1e-12))
        self.assertTrue(np.all(loop[:, 0] <= gx[11] + 1e-12))
        self.assertTrue(np.all(loop[:, 1] >= gy[4] - 1e-12))
        self.assertTrue(np.all(loop[:, 1] <= gy[10] + 1e-12))

    def test_empty_mask(self):
        loop = extract_boundary(np.zeros(256, dtype=bool), self.grid)
        self.assertEqual(loop.shape, (0, 2))

    def test_single_cell_mask_still_closed(self):
        m = np.zeros(256, dtype=bool)
        m[5 * 16 + 5] = True
        for strategy in ("collect", "trace"):
            loop = extract_boundary(m, self.grid, BoundaryConfig(strategy=strategy))
            self.assertGreaterEqual(loop.shape[0], 2)
            np.testing.assert_allclose(loop[0], loop[-1])


if __name__ == "__main__":
    unittest.main()
