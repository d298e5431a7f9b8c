from __future__ import annotations

import logging
from typing import Optional, Tuple

import numpy as np

from grid_sampling import sample_heights
from skin_config import SmoothingConfig

logger = logging.getLogger(__name__)


def spatial_kernel(radius: int, sigma_space: float) -> np.ndarray:
    """Gaussian weights over the (2r+1)^2 neighborhood, indexed [dy+r, dx+r]."""
    r = int(radius)
    d = np.arange(-r, r + 1, dtype=np.float64)
    dx, dy = np.meshgrid(d, d)
    return np.exp(-(dx * dx + dy * dy) / (2.0 * float(sigma_space) ** 2))


def depth_sigma_from_range(height_map: np.ndarray, frac: float) -> float:
    h = np.asarray(height_map, dtype=np.float64)
    finite = h[np.isfinite(h)]
    h_range = float(finite.max() - finite.min()) if finite.size else 0.0
    if h_range <= 0.0:
        h_range = 1.0
    return float(frac) * h_range


def bilateral_filter_height(
    height_map: np.ndarray,
    valid: np.ndarray,
    nx: int,
    ny: int,
    radius: int,
    sigma_space: float,
    sigma_depth: float,
    iterations: int,
    min_weight: float = 1e-6,
) -> np.ndarray:
    """Edge-preserving smoothing of a flat height map.

    Each valid cell becomes the weighted mean of the valid cells within ``radius``,
    weight = spatial(offset) * exp(-dh^2 / (2 sigma_depth^2)). Invalid cells pass
    through unchanged; a cell whose total weight is <= min_weight keeps its value.
    Iterations read from one buffer and write to the other. The input is not modified.
    """
    nx = int(nx)
    ny = int(ny)
    src = np.asarray(height_map, dtype=np.float64).reshape(-1).copy()
    if src.shape[0] != nx * ny:
        raise ValueError(f"height map has {src.shape[0]} cells, expected {nx * ny}")
    mask = np.asarray(valid, dtype=np.bool_).reshape(ny, nx)
    if int(iterations) <= 0 or not np.any(mask):
        return src

    r = int(radius)
    kernel = spatial_kernel(r, sigma_space)
    two_sd2 = 2.0 * float(sigma_depth) ** 2
    mask_pad = np.pad(mask, r, mode="constant", constant_values=False)

    dst = np.empty_like(src)
    for it in range(int(iterations)):
        s2d = src.reshape(ny, nx)
        s_pad = np.pad(s2d, r, mode="edge")
        w_sum = np.zeros((ny, nx), dtype=np.float64)
        h_sum = np.zeros((ny, nx), dtype=np.float64)
        for dy in range(-r, r + 1):
            for dx in range(-r, r + 1):
                nb_h = s_pad[r + dy : r + dy + ny, r + dx : r + dx + nx]
                nb_ok = mask_pad[r + dy : r + dy + ny, r + dx : r + dx + nx]
                dh = nb_h - s2d
                w = kernel[dy + r, dx + r] * np.exp(-(dh * dh) / two_sd2)
                w = np.where(nb_ok, w, 0.0)
                w_sum += w
                h_sum += w * nb_h

        out = s2d.copy()
        ok = mask & (w_sum > float(min_weight))
        out[ok] = h_sum[ok] / w_sum[ok]
        dst[:] = out.reshape(-1)
        src, dst = dst, src
        logger.debug("bilateral iteration %d/%d done", it + 1, int(iterations))

    return src


def smooth_height_map(grid, config: SmoothingConfig = SmoothingConfig()) -> Tuple[np.ndarray, float]:
    """Smooth a BinnedGrid's height map; returns (filtered, sigma_depth_used)."""
    sigma_depth: Optional[float] = config.sigma_depth
    if sigma_depth is None:
        sigma_depth = depth_sigma_from_range(grid.height, config.depth_sigma_frac)
    filtered = bilateral_filter_height(
        grid.height,
        grid.valid,
        nx=grid.nx,
        ny=grid.ny,
        radius=int(config.radius),
        sigma_space=float(config.sigma_space),
        sigma_depth=float(sigma_depth),
        iterations=int(config.iterations),
        min_weight=float(config.min_weight),
    )
    return filtered, float(sigma_depth)


def resample_points(points: np.ndarray, height_map: np.ndarray, grid) -> np.ndarray:
    """Move every point's z onto the map; x, y and order are unchanged."""
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    out = pts.copy()
    if pts.shape[0]:
        out[:, 2] = sample_heights(height_map, grid, pts[:, 0], pts[:, 1])
    return out
