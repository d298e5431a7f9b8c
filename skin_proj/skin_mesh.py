from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional

import numpy as np

from boundary_extract import loop_area
from cloud_transform import TransformParams, apply_transform
from grid_sampling import sample_colors, sample_heights
from skin_config import MeshConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Mesh:
    vertices: np.ndarray  # (N,3) float64
    faces: np.ndarray  # (M,3) int64
    colors: Optional[np.ndarray] = None  # (N,3) float64 in 0..1
    normals: Optional[np.ndarray] = None  # (N,3) float64, unit length

    @classmethod
    def empty(cls) -> "Mesh":
        return cls(
            vertices=np.zeros((0, 3), dtype=np.float64),
            faces=np.zeros((0, 3), dtype=np.int64),
            colors=np.zeros((0, 3), dtype=np.float64),
            normals=np.zeros((0, 3), dtype=np.float64),
        )

    @property
    def is_empty(self) -> bool:
        """No triangles: nothing to render, which is not an error."""
        return int(self.faces.shape[0]) == 0

    @property
    def n_vertices(self) -> int:
        return int(self.vertices.shape[0])

    @property
    def n_faces(self) -> int:
        return int(self.faces.shape[0])

    def transformed(self, params: TransformParams) -> "Mesh":
        # uniform scale + translation leaves unit normals unchanged
        return replace(self, vertices=apply_transform(self.vertices, params).reshape(-1, 3))

    def to_open3d(self):
        import open3d as o3d

        m = o3d.geometry.TriangleMesh()
        m.vertices = o3d.utility.Vector3dVector(self.vertices.astype(np.float64))
        m.triangles = o3d.utility.Vector3iVector(self.faces.astype(np.int32))
        if self.colors is not None and self.colors.shape[0] == self.n_vertices:
            m.vertex_colors = o3d.utility.Vector3dVector(self.colors.astype(np.float64))
        if self.normals is not None and self.normals.shape[0] == self.n_vertices:
            m.vertex_normals = o3d.utility.Vector3dVector(self.normals.astype(np.float64))
        return m


def _dedupe_ring(loop: np.ndarray, eps: float = 1e-12) -> np.ndarray:
    """Drop the closing point and consecutive duplicates of a 2D loop."""
    pts = np.asarray(loop, dtype=np.float64).reshape(-1, 2)
    if pts.shape[0] == 0:
        return pts
    keep = np.ones(pts.shape[0], dtype=np.bool_)
    keep[1:] = np.linalg.norm(np.diff(pts, axis=0), axis=1) > eps
    pts = pts[keep]
    while pts.shape[0] > 1 and float(np.linalg.norm(pts[-1] - pts[0])) <= eps:
        pts = pts[:-1]
    return pts


def _cross(o: np.ndarray, a: np.ndarray, b: np.ndarray) -> np.ndarray:
    return (a[..., 0] - o[..., 0]) * (b[..., 1] - o[..., 1]) - (a[..., 1] - o[..., 1]) * (b[..., 0] - o[..., 0])


def triangulate_polygon(ring: np.ndarray, eps: float = 1e-14) -> np.ndarray:
    """Ear-clipping triangulation of a simple polygon; no Steiner points.

    ``ring`` is an open (K,2) ring (no repeated closing point). Returns (M,3)
    indices into it, counter-clockwise. Rings that are not simple (angular
    sorting can produce those) still terminate: when no proper ear exists the
    most convex vertex is clipped, or a collinear vertex is dropped.
    """
    pts = np.asarray(ring, dtype=np.float64).reshape(-1, 2)
    n = int(pts.shape[0])
    if n < 3:
        return np.zeros((0, 3), dtype=np.int64)

    idx = list(range(n))
    if loop_area(pts) < 0.0:
        idx.reverse()

    tris: list[tuple[int, int, int]] = []
    i = 0
    misses = 0
    while len(idx) > 3:
        m = len(idx)
        i %= m
        ia, ib, ic = idx[i - 1], idx[i], idx[(i + 1) % m]
        a, b, c = pts[ia], pts[ib], pts[ic]
        if float(_cross(a, b, c)) > eps and not _has_point_inside(pts, idx, ia, ib, ic):
            tris.append((ia, ib, ic))
            del idx[i]
            misses = 0
            continue
        i += 1
        misses += 1
        if misses < m:
            continue

        # no proper ear in a full pass
        ring_pts = pts[idx]
        turn = _cross(np.roll(ring_pts, 1, axis=0), ring_pts, np.roll(ring_pts, -1, axis=0))
        j = int(np.argmax(turn))
        if float(turn[j]) > eps:
            tris.append((idx[j - 1], idx[j], idx[(j + 1) % m]))
        del idx[j]
        misses = 0

    if len(idx) == 3 and float(_cross(pts[idx[0]], pts[idx[1]], pts[idx[2]])) > eps:
        tris.append((idx[0], idx[1], idx[2]))

    if not tris:
        return np.zeros((0, 3), dtype=np.int64)
    return np.array(tris, dtype=np.int64)


def _has_point_inside(pts: np.ndarray, idx: list, ia: int, ib: int, ic: int) -> bool:
    others = [k for k in idx if k != ia and k != ib and k != ic]
    if not others:
        return False
    p = pts[others]
    a, b, c = pts[ia], pts[ib], pts[ic]
    # points sitting on a triangle corner (duplicates) do not block the ear
    on_corner = (
        np.all(np.isclose(p, a), axis=1) | np.all(np.isclose(p, b), axis=1) | np.all(np.isclose(p, c), axis=1)
    )
    d1 = _cross(a, b, p)
    d2 = _cross(b, c, p)
    d3 = _cross(c, a, p)
    inside = (d1 >= 0.0) & (d2 >= 0.0) & (d3 >= 0.0)
    return bool(np.any(inside & ~on_corner))


def vertex_normals(vertices: np.ndarray, faces: np.ndarray) -> np.ndarray:
    """Area-weighted average of incident face normals, normalized.

    Vertices with no incident face get +z.
    """
    v = np.asarray(vertices, dtype=np.float64).reshape(-1, 3)
    f = np.asarray(faces, dtype=np.int64).reshape(-1, 3)
    acc = np.zeros_like(v)
    if f.shape[0]:
        # |cross| is twice the triangle area, so summing raw crosses weights by area
        fn = np.cross(v[f[:, 1]] - v[f[:, 0]], v[f[:, 2]] - v[f[:, 0]])
        for k in range(3):
            np.add.at(acc, f[:, k], fn)
    norm = np.linalg.norm(acc, axis=1, keepdims=True)
    out = np.zeros_like(v)
    out[:, 2] = 1.0
    ok = norm[:, 0] > 1e-20
    out[ok] = acc[ok] / norm[ok]
    return out


def build_boundary_mesh(
    loop: np.ndarray,
    height_map: np.ndarray,
    grid,
    config: MeshConfig = MeshConfig(),
) -> Mesh:
    """Triangulate a boundary loop and lift it onto the height map."""
    ring = _dedupe_ring(loop)
    if ring.shape[0] < 3:
        logger.warning("build_boundary_mesh: %d usable boundary points, returning an empty mesh", int(ring.shape[0]))
        return Mesh.empty()

    faces = triangulate_polygon(ring)
    if faces.shape[0] == 0:
        logger.warning("build_boundary_mesh: boundary is degenerate, returning an empty mesh")
        return Mesh.empty()

    z = sample_heights(height_map, grid, ring[:, 0], ring[:, 1])
    vertices = np.column_stack([ring, z])
    colors = sample_colors(grid, ring[:, 0], ring[:, 1], config.default_rgb) / 255.0
    return Mesh(vertices=vertices, faces=faces, colors=colors, normals=vertex_normals(vertices, faces))


def build_grid_mesh(
    height_map: np.ndarray,
    mask: np.ndarray,
    grid,
    config: MeshConfig = MeshConfig(),
) -> Mesh:
    """One vertex per cell; a quad becomes two triangles only if all four cells are in ``mask``."""
    nx = int(grid.nx)
    ny = int(grid.ny)
    h = np.asarray(height_map, dtype=np.float64).reshape(-1)
    m = np.asarray(mask, dtype=np.bool_).reshape(ny, nx)
    if nx < 2 or ny < 2 or not np.any(m):
        logger.warning("build_grid_mesh: no valid quads, returning an empty mesh")
        return Mesh.empty()

    grid_idx = np.arange(nx * ny, dtype=np.int64).reshape(ny, nx)
    a = grid_idx[:-1, :-1]
    b = grid_idx[:-1, 1:]
    c = grid_idx[1:, :-1]
    d = grid_idx[1:, 1:]
    ok = m[:-1, :-1] & m[:-1, 1:] & m[1:, :-1] & m[1:, 1:]

    if float(config.depth_gap) > 0.0:
        z00 = h[a]
        step = np.maximum(np.maximum(np.abs(h[b] - z00), np.abs(h[c] - z00)), np.abs(h[d] - z00))
        ok &= step <= float(config.depth_gap)

    if not np.any(ok):
        logger.warning("build_grid_mesh: no valid quads, returning an empty mesh")
        return Mesh.empty()

    a, b, c, d = a[ok], b[ok], c[ok], d[ok]
    faces = np.concatenate(
        [np.stack([c, a, b], axis=-1), np.stack([c, b, d], axis=-1)],
        axis=0,
    ).astype(np.int64)

    xs, ys = grid.cell_centers()
    vertices = np.column_stack([xs, ys, h])
    rgb = grid.colors_rgb()
    missing = ~np.isfinite(rgb).all(axis=1)
    rgb[missing] = np.asarray(config.default_rgb, dtype=np.float64)
    return Mesh(vertices=vertices, faces=faces, colors=rgb / 255.0, normals=vertex_normals(vertices, faces))


def compact_mesh(mesh: Mesh) -> Mesh:
    """Remove unused/non-finite vertices and remap faces."""
    if mesh.is_empty:
        return Mesh.empty()

    n = mesh.n_vertices
    finite = np.isfinite(mesh.vertices).all(axis=1)
    faces = mesh.faces[finite[mesh.faces].all(axis=1)]
    if faces.size == 0:
        return Mesh.empty()

    used = np.unique(faces.reshape(-1))
    remap = np.full((n,), -1, dtype=np.int64)
    remap[used] = np.arange(int(used.size), dtype=np.int64)
    return Mesh(
        vertices=mesh.vertices[used],
        faces=remap[faces],
        colors=mesh.colors[used] if mesh.colors is not None else None,
        normals=mesh.normals[used] if mesh.normals is not None else None,
    )


def write_obj(obj_path: Path, mesh: Mesh) -> None:
    """OBJ with per-vertex colors appended to ``v`` lines and ``vn`` normals."""
    if mesh.vertices.ndim != 2 or mesh.vertices.shape[1] != 3:
        raise ValueError("vertices must be (N,3)")
    if mesh.faces.ndim != 2 or mesh.faces.shape[1] != 3:
        raise ValueError("faces must be (M,3)")

    has_color = mesh.colors is not None and mesh.colors.shape[0] == mesh.n_vertices
    has_normals = mesh.normals is not None and mesh.normals.shape[0] == mesh.n_vertices
    with obj_path.open("w", encoding="utf-8") as f:
        f.write("# skin mesh generated\n")
        for i, v in enumerate(mesh.vertices):
            if has_color:
                c = mesh.colors[i]
                f.write(f"v {v[0]} {v[1]} {v[2]} {c[0]:.6f} {c[1]:.6f} {c[2]:.6f}\n")
            else:
                f.write(f"v {v[0]} {v[1]} {v[2]}\n")
        if has_normals:
            for vn in mesh.normals:
                f.write(f"vn {vn[0]:.6f} {vn[1]:.6f} {vn[2]:.6f}\n")
        # OBJ is 1-indexed
        for tri in mesh.faces:
            a, b, c = (int(tri[0]) + 1, int(tri[1]) + 1, int(tri[2]) + 1)
            if has_normals:
                f.write(f"f {a}//{a} {b}//{b} {c}//{c}\n")
            else:
                f.write(f"f {a} {b} {c}\n")


def write_ply(ply_path: Path, mesh: Mesh) -> None:
    import open3d as o3d

    if not o3d.io.write_triangle_mesh(str(ply_path), mesh.to_open3d(), write_ascii=False):
        raise RuntimeError(f"Failed to write mesh: {ply_path}")


def faces_valid(faces: np.ndarray, n_vertices: int) -> bool:
    f = np.asarray(faces)
    return bool(f.size == 0 or (int(f.min()) >= 0 and int(f.max()) < int(n_vertices)))
