from __future__ import annotations

import argparse
from pathlib import Path

import numpy as np
import open3d as o3d


def _read_geometry(p: Path):
    if p.suffix.lower() in {".ply", ".pcd"}:
        mesh = o3d.io.read_triangle_mesh(str(p))
        if mesh.has_triangles():
            if not mesh.has_vertex_normals():
                mesh.compute_vertex_normals()
            return mesh
        pcd = o3d.io.read_point_cloud(str(p))
        return None if pcd.is_empty() else pcd
    mesh = o3d.io.read_triangle_mesh(str(p))
    if mesh.is_empty():
        return None
    if not mesh.has_vertex_normals():
        mesh.compute_vertex_normals()
    return mesh


def _output_folder_geometries(out_dir: Path, show_mesh: bool, show_points: bool) -> list:
    geoms = []
    if show_mesh:
        for name in ("mesh.ply", "mesh.obj"):
            if (out_dir / name).exists():
                g = _read_geometry(out_dir / name)
                if g is not None:
                    geoms.append(g)
                    break
    pts_path = out_dir / "smoothed_points.ply"
    if show_points and pts_path.exists():
        pcd = o3d.io.read_point_cloud(str(pts_path))
        keep_path = out_dir / "keep_mask.npy"
        if keep_path.exists():
            keep = np.load(keep_path)
            # rejected points in red; only when the saved cloud still lines up with the mask
            if keep.shape[0] == len(pcd.points):
                cols = np.asarray(pcd.colors) if pcd.has_colors() else np.full((keep.shape[0], 3), 0.7)
                cols = cols.copy()
                cols[~keep] = (1.0, 0.0, 0.0)
                pcd.colors = o3d.utility.Vector3dVector(cols)
        geoms.append(pcd)
    return geoms


def main() -> None:
    ap = argparse.ArgumentParser(description="Viewer for skin reconstructions: a PLY/OBJ file or a whole output folder")
    ap.add_argument("path", type=Path)
    ap.add_argument("--mesh-only", action="store_true")
    ap.add_argument("--points-only", action="store_true")
    args = ap.parse_args()

    p = args.path
    if not p.exists():
        raise FileNotFoundError(p)

    if p.is_dir():
        geoms = _output_folder_geometries(p, show_mesh=not args.points_only, show_points=not args.mesh_only)
    else:
        g = _read_geometry(p)
        geoms = [] if g is None else [g]
    if not geoms:
        raise RuntimeError(f"Nothing to show in: {p}")

    o3d.visualization.draw_geometries(geoms, window_name=str(p))


if __name__ == "__main__":
    main()
