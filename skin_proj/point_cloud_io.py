from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Tuple

import numpy as np

from skin_errors import EmptyInputError


@dataclass(frozen=True)
class Sample:
    x: float
    y: float
    z: float
    r: Optional[int] = None
    g: Optional[int] = None
    b: Optional[int] = None


def samples_to_arrays(samples: Iterable[Sample]) -> Tuple[np.ndarray, Optional[np.ndarray]]:
    """Split Sample records into an (N,3) point array and an optional (N,3) color array.

    Colors are returned only when every sample carries all three channels.
    """
    samples = list(samples)
    pts = np.array([(s.x, s.y, s.z) for s in samples], dtype=np.float64).reshape(-1, 3)
    has_rgb = bool(samples) and all(s.r is not None and s.g is not None and s.b is not None for s in samples)
    cols = np.array([(s.r, s.g, s.b) for s in samples], dtype=np.float64) if has_rgb else None
    return pts, cols


def as_points(points) -> np.ndarray:
    """Validate and convert a point sequence to a float64 (N,3) array.

    Raises EmptyInputError for an empty sequence.
    """
    pts = np.asarray(points, dtype=np.float64)
    if pts.size == 0:
        raise EmptyInputError("Point sequence is empty")
    if pts.ndim != 2 or pts.shape[1] < 3:
        raise ValueError(f"points must be (N,3), got shape {pts.shape}")
    return pts[:, :3]


def as_colors(colors, n: int) -> Optional[np.ndarray]:
    """Convert an optional parallel color array to float64 (N,3) in 0..255.

    Accepts (N,3) RGB or (N,4) RGBA; alpha is dropped. A flat RGBA buffer of
    length 4*N (the layout image decoders hand out) is reshaped first.
    """
    if colors is None:
        return None
    cols = np.asarray(colors, dtype=np.float64)
    if cols.ndim == 1 and cols.size == 4 * n:
        cols = cols.reshape(n, 4)
    if cols.ndim != 2 or cols.shape[0] != n or cols.shape[1] not in (3, 4):
        raise ValueError(f"colors must be (N,3) or (N,4) with N={n}, got shape {cols.shape}")
    return np.clip(cols[:, :3], 0.0, 255.0)


def load_point_cloud(path: Path) -> Tuple[np.ndarray, Optional[np.ndarray]]:
    """Read (points, colors_0_255_or_None) from .ply/.pcd, .npy or .xyz/.txt."""
    if not path.exists():
        raise FileNotFoundError(path)
    suffix = path.suffix.lower()
    if suffix in {".ply", ".pcd"}:
        import open3d as o3d

        pcd = o3d.io.read_point_cloud(str(path))
        pts = np.asarray(pcd.points, dtype=np.float64)
        cols = np.asarray(pcd.colors, dtype=np.float64) * 255.0 if pcd.has_colors() else None
        return pts, cols
    if suffix == ".npy":
        arr = np.load(path)
    elif suffix in {".xyz", ".txt", ".csv"}:
        arr = np.loadtxt(path, delimiter="," if suffix == ".csv" else None, ndmin=2)
    else:
        raise ValueError(f"Unsupported point cloud format: {path.suffix}")
    arr = np.asarray(arr, dtype=np.float64)
    if arr.ndim != 2 or arr.shape[1] not in (3, 6, 7):
        raise ValueError(f"Expected an (N,3), (N,6) or (N,7) array in {path}, got {arr.shape}")
    pts = arr[:, :3]
    cols = arr[:, 3:6] if arr.shape[1] >= 6 else None
    return pts, cols


def save_point_cloud(path: Path, points: np.ndarray, colors: Optional[np.ndarray] = None) -> None:
    import open3d as o3d

    pcd = o3d.geometry.PointCloud()
    pcd.points = o3d.utility.Vector3dVector(np.asarray(points, dtype=np.float64))
    if colors is not None:
        pcd.colors = o3d.utility.Vector3dVector(np.clip(np.asarray(colors, dtype=np.float64) / 255.0, 0.0, 1.0))
    if not o3d.io.write_point_cloud(str(path), pcd):
        raise RuntimeError(f"Failed to write point cloud: {path}")

