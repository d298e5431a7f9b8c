"""Region growing over a height map with local plane fits.

Starting from the valid cell nearest the grid center, the region expands over
4-connected neighbors. A candidate is accepted only when a least-squares plane
through the valid cells around it predicts a height close to the candidate's own
observation (or, for empty cells, to the running mean of the region). Accepted
cells store the plane prediction, so the grown surface is locally planar; cells
that were never reached or were rejected keep their input height and are flagged
False in the fitted mask.

The plane is fitted to window inliers only: samples farther than a few robust
standard deviations (median/MAD) from the window median, and then from the
current plane, are trimmed and the plane refitted until the inlier set settles.
A handful of spike cells in a window therefore cannot tilt or lift the plane.

Sparse windows and singular fits are common near the silhouette. They skip the
candidate and leave a hole instead of failing the run.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import NamedTuple, Optional, Tuple

import numpy as np

from grid_binning import cell_positions
from skin_config import GrowthConfig
from skin_errors import NoSeedFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FittedSurface:
    height: np.ndarray  # (nx*ny,) plane-predicted where grown, input height elsewhere
    mask: np.ndarray  # (nx*ny,) bool
    seed: Optional[Tuple[int, int]]
    accepted: int
    visited: int
    threshold: float

    @property
    def grown_fraction(self) -> float:
        return float(np.count_nonzero(self.mask)) / float(max(self.mask.shape[0], 1))


class RunningMean(NamedTuple):
    mean: float
    count: int

    def update(self, value: float) -> "RunningMean":
        n = self.count + 1
        return RunningMean(self.mean + (float(value) - self.mean) / n, n)


def _solve_3x3(a: list, b: list, pivot_eps: float) -> Optional[Tuple[float, float, float]]:
    """Gauss-Jordan elimination with partial pivoting; None if a pivot is < pivot_eps."""
    a = [row[:] for row in a]
    b = b[:]
    for i in range(3):
        p = max(range(i, 3), key=lambda r: abs(a[r][i]))
        if abs(a[p][i]) < pivot_eps:
            return None
        if p != i:
            a[i], a[p] = a[p], a[i]
            b[i], b[p] = b[p], b[i]
        piv = a[i][i]
        for c in range(i, 3):
            a[i][c] /= piv
        b[i] /= piv
        for r in range(3):
            if r == i:
                continue
            f = a[r][i]
            if f == 0.0:
                continue
            for c in range(i, 3):
                a[r][c] -= f * a[i][c]
            b[r] -= f * b[i]
    return float(b[0]), float(b[1]), float(b[2])


def fit_plane_ls(x: np.ndarray, y: np.ndarray, z: np.ndarray, pivot_eps: float = 1e-8) -> Optional[Tuple[float, float, float]]:
    """Least-squares plane z = a*x + b*y + c via the 3x3 normal equations.

    Returns (a, b, c), or None for fewer than 3 samples or a singular system.
    """
    x = np.asarray(x, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    z = np.asarray(z, dtype=np.float64)
    n = int(x.shape[0])
    if n < 3:
        return None
    sx, sy, sz = float(x.sum()), float(y.sum()), float(z.sum())
    sxx, syy, sxy = float((x * x).sum()), float((y * y).sum()), float((x * y).sum())
    sxz, syz = float((x * z).sum()), float((y * z).sum())
    a = [
        [sxx, sxy, sx],
        [sxy, syy, sy],
        [sx, sy, float(n)],
    ]
    return _solve_3x3(a, [sxz, syz, sz], float(pivot_eps))


def find_seed(valid: np.ndarray, nx: int, ny: int) -> Tuple[int, int]:
    """First valid cell on square rings of growing radius around the grid center."""
    m = np.asarray(valid, dtype=np.bool_).reshape(ny, nx)
    cx0 = (nx - 1) // 2
    cy0 = (ny - 1) // 2
    for r in range(max(nx, ny)):
        for dy in range(-r, r + 1):
            iy = cy0 + dy
            if iy < 0 or iy >= ny:
                continue
            for dx in range(-r, r + 1):
                # ring only: interior offsets were checked at smaller r
                if max(abs(dx), abs(dy)) != r:
                    continue
                ix = cx0 + dx
                if 0 <= ix < nx and m[iy, ix]:
                    return ix, iy
    raise NoSeedFoundError("No valid cell in the grid")


def _window(h2d: np.ndarray, v2d: np.ndarray, gx: np.ndarray, gy: np.ndarray, ix: int, iy: int, r: int) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    ny, nx = h2d.shape
    x0, x1 = max(ix - r, 0), min(ix + r + 1, nx)
    y0, y1 = max(iy - r, 0), min(iy + r + 1, ny)
    hw = h2d[y0:y1, x0:x1]
    ok = v2d[y0:y1, x0:x1] & np.isfinite(hw)
    xx, yy = np.meshgrid(gx[x0:x1], gy[y0:y1])
    return xx[ok], yy[ok], hw[ok]


def _inliers(values: np.ndarray, sigmas: float, floor: float) -> np.ndarray:
    """Samples within ``sigmas`` robust standard deviations (1.4826 * MAD) of the median."""
    dev = np.abs(values - float(np.median(values)))
    tol = max(float(sigmas) * 1.4826 * float(np.median(dev)), float(floor))
    return dev <= tol


def _predict(xs: np.ndarray, ys: np.ndarray, zs: np.ndarray, xc: float, yc: float, cfg: GrowthConfig, threshold: float) -> Optional[float]:
    # Fit around the candidate; the plane is the same, the system is better conditioned.
    dx = xs - xc
    dy = ys - yc
    min_samples = int(cfg.min_samples)
    if not cfg.robust_refit:
        plane = fit_plane_ls(dx, dy, zs, cfg.pivot_eps)
        return None if plane is None else float(plane[2])

    # Outliers must stay a minority of the window: the first trim is on z alone,
    # later trims on plane residuals until the inlier set stops changing.
    floor = float(cfg.trim_floor_frac) * threshold
    keep = _inliers(zs, cfg.trim_sigmas, floor)
    plane = None
    for _ in range(int(cfg.max_refits) + 1):
        if int(np.count_nonzero(keep)) < min_samples:
            return None
        plane = fit_plane_ls(dx[keep], dy[keep], zs[keep], cfg.pivot_eps)
        if plane is None:
            return None
        a, b, c = plane
        refined = _inliers(zs - (a * dx + b * dy + c), cfg.trim_sigmas, floor)
        if np.array_equal(refined, keep):
            break
        keep = refined
    return float(plane[2])


def grow_fitted_surface(
    height_map: np.ndarray,
    valid: np.ndarray,
    grid,
    config: GrowthConfig = GrowthConfig(),
) -> FittedSurface:
    """Grow the trusted surface region; see the module docstring.

    ``grid`` supplies the frame (nx, ny, x_min, y_min, width_x, height_y) and the
    cloud's z_min / z_max used to scale the acceptance threshold.
    """
    nx = int(grid.nx)
    ny = int(grid.ny)
    size = nx * ny
    src_h = np.asarray(height_map, dtype=np.float64).reshape(-1)
    src_m = np.asarray(valid, dtype=np.bool_).reshape(-1)
    if src_h.shape[0] != size or src_m.shape[0] != size:
        raise ValueError(f"height map and mask must have {size} cells")

    z_range = float(grid.z_max) - float(grid.z_min)
    if z_range <= 0.0:
        z_range = 1.0
    threshold = float(config.accept_frac) * z_range

    try:
        sx, sy = find_seed(src_m, nx, ny)
    except NoSeedFoundError:
        logger.warning("grow_fitted_surface: no seed cell found, returning the input surface")
        return FittedSurface(
            height=src_h.copy(),
            mask=src_m.copy(),
            seed=None,
            accepted=0,
            visited=0,
            threshold=threshold,
        )

    h2d = src_h.reshape(ny, nx)
    v2d = src_m.reshape(ny, nx)
    gx = cell_positions(nx, grid.x_min, grid.width_x)
    gy = cell_positions(ny, grid.y_min, grid.height_y)
    r = int(config.window_radius)
    min_samples = int(config.min_samples)

    fitted_h = np.zeros(size, dtype=np.float64)
    fitted_m = np.zeros(size, dtype=np.bool_)
    visited = np.zeros(size, dtype=np.bool_)

    seed_k = sy * nx + sx
    visited[seed_k] = True
    fitted_h[seed_k] = src_h[seed_k]
    fitted_m[seed_k] = _window(h2d, v2d, gx, gy, sx, sy, r)[2].shape[0] >= min_samples
    running = RunningMean(float(src_h[seed_k]), 1)
    n_visited = 1

    q = deque([(sx, sy)])
    while q:
        ix, iy = q.popleft()
        for jx, jy in ((ix + 1, iy), (ix - 1, iy), (ix, iy + 1), (ix, iy - 1)):
            if jx < 0 or jx >= nx or jy < 0 or jy >= ny:
                continue
            k = jy * nx + jx
            if visited[k]:
                continue
            visited[k] = True
            n_visited += 1

            xs, ys, zs = _window(h2d, v2d, gx, gy, jx, jy, r)
            if zs.shape[0] < min_samples:
                continue
            z_pred = _predict(xs, ys, zs, float(gx[jx]), float(gy[jy]), config, threshold)
            if z_pred is None:
                continue

            reference = float(src_h[k]) if src_m[k] else running.mean
            if abs(z_pred - reference) > threshold:
                continue

            fitted_h[k] = z_pred
            fitted_m[k] = True
            running = running.update(z_pred)
            q.append((jx, jy))

    untouched = ~fitted_m
    fitted_h[untouched] = src_h[untouched]

    accepted = int(np.count_nonzero(fitted_m))
    logger.info(
        "surface growth: seed=(%d,%d) visited=%d accepted=%d/%d threshold=%.4g",
        sx,
        sy,
        n_visited,
        accepted,
        int(np.count_nonzero(src_m)),
        threshold,
    )
    return FittedSurface(
        height=fitted_h,
        mask=fitted_m,
        seed=(int(sx), int(sy)),
        accepted=accepted,
        visited=int(n_visited),
        threshold=threshold,
    )
