from __future__ import annotations

from typing import Sequence, Tuple

import numpy as np

from grid_binning import cell_indices


def sample_heights(height_map: np.ndarray, grid, x: np.ndarray, y: np.ndarray) -> np.ndarray:
    """Bilinear height at world (x, y) over any map that shares ``grid``'s frame.

    ``grid`` needs nx, ny, x_min, y_min, width_x, height_y (a BinnedGrid fits).
    Neighbor indices are edge-clamped, so the result is always a convex blend of
    the four sampled corners.
    """
    nx = int(grid.nx)
    ny = int(grid.ny)
    h = np.asarray(height_map, dtype=np.float64).reshape(-1)
    if h.shape[0] != nx * ny:
        raise ValueError(f"height map has {h.shape[0]} cells, grid has {nx * ny}")

    u = (np.asarray(x, dtype=np.float64) - float(grid.x_min)) / float(grid.width_x)
    v = (np.asarray(y, dtype=np.float64) - float(grid.y_min)) / float(grid.height_y)
    gx = u * float(max(nx - 1, 0))
    gy = v * float(max(ny - 1, 0))

    fx = np.floor(gx)
    fy = np.floor(gy)
    tx = gx - fx
    ty = gy - fy

    x0 = np.clip(fx.astype(np.int64), 0, nx - 1)
    y0 = np.clip(fy.astype(np.int64), 0, ny - 1)
    x1 = np.clip(fx.astype(np.int64) + 1, 0, nx - 1)
    y1 = np.clip(fy.astype(np.int64) + 1, 0, ny - 1)

    h00 = h[y0 * nx + x0]
    h10 = h[y0 * nx + x1]
    h01 = h[y1 * nx + x0]
    h11 = h[y1 * nx + x1]

    hx0 = h00 * (1.0 - tx) + h10 * tx
    hx1 = h01 * (1.0 - tx) + h11 * tx
    return hx0 * (1.0 - ty) + hx1 * ty


def sample_height(height_map: np.ndarray, grid, x: float, y: float) -> float:
    return float(sample_heights(height_map, grid, np.array([x]), np.array([y]))[0])


def cell_of(grid, x: np.ndarray, y: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    return cell_indices(x, y, int(grid.nx), int(grid.ny), grid.x_min, grid.y_min, grid.width_x, grid.height_y)


def sample_colors(grid, x: np.ndarray, y: np.ndarray, default_rgb: Sequence[int]) -> np.ndarray:
    """Color map lookup at the cell under each (x, y); (N,3) in 0..255.

    Cells without color data get ``default_rgb``.
    """
    ix, iy = cell_of(grid, x, y)
    k = iy * int(grid.nx) + ix
    rgb = np.stack([grid.color_r[k], grid.color_g[k], grid.color_b[k]], axis=-1).astype(np.float64)
    missing = ~np.isfinite(rgb).all(axis=-1)
    rgb[missing] = np.asarray(default_rgb, dtype=np.float64)
    return rgb
