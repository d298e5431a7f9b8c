"""
Unit tests for mesh building and export.
"""

import os
import sys
import tempfile
import unittest
from pathlib import Path

import numpy as np

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "skin_proj"))

from boundary_extract import loop_area
from cloud_transform import TransformParams
from grid_binning import bin_points
from skin_config import BinningConfig, MeshConfig
from skin_mesh import (
    Mesh,
    build_boundary_mesh,
    build_grid_mesh,
    compact_mesh,
    faces_valid,
    triangulate_polygon,
    vertex_normals,
    write_obj,
)


def _lattice_grid(n, z=1.0, colors=None):
    """n x n grid whose cell positions are 0..n-1 on both axes."""
    g = np.arange(n, dtype=np.float64)
    xx, yy = np.meshgrid(g, g)
    pts = np.column_stack([xx.reshape(-1), yy.reshape(-1), np.full(n * n, z)])
    return bin_points(pts, colors, config=BinningConfig(nx=n, ny=n))


def _mesh(vertices, faces):
    v = np.asarray(vertices, dtype=np.float64)
    f = np.asarray(faces, dtype=np.int64)
    return Mesh(vertices=v, faces=f, normals=vertex_normals(v, f))


def _tri_area_sum(ring, faces):
    a, b, c = ring[faces[:, 0]], ring[faces[:, 1]], ring[faces[:, 2]]
    cross = (b[:, 0] - a[:, 0]) * (c[:, 1] - a[:, 1]) - (b[:, 1] - a[:, 1]) * (c[:, 0] - a[:, 0])
    return 0.5 * cross


class TestTriangulatePolygon(unittest.TestCase):
    def test_square(self):
        sq = np.array([[0.0, 0.0], [1.0, 0.0], [1.0, 1.0], [0.0, 1.0]])
        faces = triangulate_polygon(sq)
        self.assertEqual(faces.shape, (2, 3))
        self.assertAlmostEqual(float(_tri_area_sum(sq, faces).sum()), 1.0)

    def test_clockwise_input_gives_ccw_triangles(self):
        sq = np.array([[0.0, 0.0], [0.0, 1.0], [1.0, 1.0], [1.0, 0.0]])
        faces = triangulate_polygon(sq)
        self.assertTrue(np.all(_tri_area_sum(sq, faces) > 0.0))

    def test_concave_l_shape(self):
        ring = np.array([[0.0, 0.0], [2.0, 0.0], [2.0, 1.0], [1.0, 1.0], [1.0, 2.0], [0.0, 2.0]])
        faces = triangulate_polygon(ring)
        self.assertEqual(faces.shape, (4, 3))
        areas = _tri_area_sum(ring, faces)
        self.assertTrue(np.all(areas > 0.0))
        self.assertAlmostEqual(float(areas.sum()), loop_area(ring))

    def test_too_few_points(self):
        self.assertEqual(triangulate_polygon(np.array([[0.0, 0.0], [1.0, 0.0]])).shape, (0, 3))

    def test_collinear_ring_gives_nothing(self):
        ring = np.array([[0.0, 0.0], [1.0, 0.0], [2.0, 0.0], [3.0, 0.0]])
        self.assertEqual(triangulate_polygon(ring).shape, (0, 3))

    def test_self_intersecting_ring_terminates(self):
        bowtie = np.array([[0.0, 0.0], [1.0, 1.0], [1.0, 0.0], [0.0, 1.0]])
        faces = triangulate_polygon(bowtie)
        self.assertTrue(faces_valid(faces, 4))


class TestGridMesh(unittest.TestCase):
    def test_full_mask(self):
        grid = _lattice_grid(3)
        mesh = build_grid_mesh(grid.height, np.ones(9, dtype=bool), grid)
        self.assertEqual(mesh.n_vertices, 9)
        self.assertEqual(mesh.n_faces, 8)
        self.assertTrue(faces_valid(mesh.faces, mesh.n_vertices))
        np.testing.assert_allclose(mesh.normals, np.tile([0.0, 0.0, 1.0], (9, 1)), atol=1e-12)

    def test_invalid_cell_skips_its_quads(self):
        grid = _lattice_grid(3)
        mask = np.ones(9, dtype=bool)
        mask[0] = False
        self.assertEqual(build_grid_mesh(grid.height, mask, grid).n_faces, 6)
        mask[4] = False
        self.assertTrue(build_grid_mesh(grid.height, mask, grid).is_empty)

    def test_depth_gap_drops_steep_quads(self):
        grid = _lattice_grid(3)
        h = grid.height.copy()
        h[8] = 10.0
        mesh = build_grid_mesh(h, np.ones(9, dtype=bool), grid, MeshConfig(depth_gap=0.5))
        self.assertEqual(mesh.n_faces, 6)

    def test_default_color_without_color_data(self):
        grid = _lattice_grid(2)
        mesh = build_grid_mesh(grid.height, np.ones(4, dtype=bool), grid)
        np.testing.assert_allclose(mesh.colors, np.tile(np.array([200, 160, 140]) / 255.0, (4, 1)))

    def test_cell_colors_are_used(self):
        cols = np.tile([255.0, 0.0, 0.0], (4, 1))
        grid = _lattice_grid(2, colors=cols)
        mesh = build_grid_mesh(grid.height, np.ones(4, dtype=bool), grid)
        np.testing.assert_allclose(mesh.colors, np.tile([1.0, 0.0, 0.0], (4, 1)))

    def test_empty_mask(self):
        grid = _lattice_grid(3)
        mesh = build_grid_mesh(grid.height, np.zeros(9, dtype=bool), grid)
        self.assertTrue(mesh.is_empty)
        self.assertEqual(mesh.vertices.shape, (0, 3))
        self.assertEqual(mesh.faces.shape, (0, 3))


class TestBoundaryMesh(unittest.TestCase):
    def test_square_loop_lifted_to_height(self):
        grid = _lattice_grid(4, z=2.5)
        loop = np.array([[0.0, 0.0], [3.0, 0.0], [3.0, 3.0], [0.0, 3.0], [0.0, 0.0]])
        mesh = build_boundary_mesh(loop, grid.height, grid)
        self.assertEqual(mesh.n_vertices, 4)
        self.assertEqual(mesh.n_faces, 2)
        np.testing.assert_allclose(mesh.vertices[:, 2], 2.5)
        np.testing.assert_allclose(mesh.normals[:, 2], 1.0)
        self.assertTrue(faces_valid(mesh.faces, mesh.n_vertices))

    def test_too_few_points_is_empty(self):
        grid = _lattice_grid(3)
        mesh = build_boundary_mesh(np.array([[0.0, 0.0], [1.0, 1.0], [0.0, 0.0]]), grid.height, grid)
        self.assertTrue(mesh.is_empty)
        mesh = build_boundary_mesh(np.zeros((0, 2)), grid.height, grid)
        self.assertTrue(mesh.is_empty)


class TestMeshUtilities(unittest.TestCase):
    def test_vertex_normals_area_weighted(self):
        v = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [5.0, 5.0, 5.0]])
        f = np.array([[0, 1, 2]])
        n = vertex_normals(v, f)
        np.testing.assert_allclose(n[:3], np.tile([0.0, 0.0, 1.0], (3, 1)))
        # unreferenced vertex
        np.testing.assert_allclose(n[3], [0.0, 0.0, 1.0])

    def test_compact_drops_unused_vertices(self):
        mesh = _mesh([[0, 0, 0], [9, 9, 9], [1, 0, 0], [0, 1, 0]], [[0, 2, 3]])
        out = compact_mesh(mesh)
        self.assertEqual(out.n_vertices, 3)
        np.testing.assert_array_equal(out.faces, [[0, 1, 2]])

    def test_faces_valid(self):
        self.assertTrue(faces_valid(np.zeros((0, 3), dtype=np.int64), 0))
        self.assertTrue(faces_valid(np.array([[0, 1, 2]]), 3))
        self.assertFalse(faces_valid(np.array([[0, 1, 2]]), 1))
        self.assertFalse(faces_valid(np.array([[-1, 0, 1]]), 3))

    def test_transformed(self):
        mesh = _mesh([[0, 0, 0], [1, 0, 0], [0, 1, 0]], [[0, 1, 2]])
        out = mesh.transformed(TransformParams(scale_factor=2.0, center=(1.0, 1.0, 0.0)))
        np.testing.assert_allclose(out.vertices, [[-1, -1, 0], [1, -1, 0], [-1, 1, 0]])
        np.testing.assert_array_equal(out.faces, mesh.faces)

    def test_write_obj(self):
        grid = _lattice_grid(3)
        mesh = build_grid_mesh(grid.height, np.ones(9, dtype=bool), grid)
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "mesh.obj"
            write_obj(path, mesh)
            lines = path.read_text(encoding="utf-8").splitlines()
        self.assertEqual(sum(1 for ln in lines if ln.startswith("v ")), 9)
        self.assertEqual(sum(1 for ln in lines if ln.startswith("vn ")), 9)
        faces = [ln for ln in lines if ln.startswith("f ")]
        self.assertEqual(len(faces), 8)
        idx = [int(tok.split("//")[0]) for ln in faces for tok in ln.split()[1:]]
        self.assertGreaterEqual(min(idx), 1)
        self.assertLessEqual(max(idx), 9)

    def test_write_obj_empty_mesh(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "empty.obj"
            write_obj(path, Mesh.empty())
            text = path.read_text(encoding="utf-8")
        self.assertNotIn("\nf ", text)


if __name__ == "__main__":
    unittest.main()
