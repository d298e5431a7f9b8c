"""Closed 2D silhouettes from a cell mask.

Two strategies, both returning an (K,2) array whose last point repeats the first:

  - collect (default): every mask cell with an empty or off-grid 4-neighbor,
    sorted by angle around their centroid, then corner-cut. Misorders strongly
    re-entrant shapes.
  - trace: walks mask cells from the first one in scan order, preferring to keep
    its heading. Can cut across concavities, and on filled regions with a
    re-entrant corner the walk can run through the interior and close early,
    giving a near-zero-area sliver.

Neither is treated as authoritative; pick with BoundaryConfig.strategy.
"""

from __future__ import annotations

import logging

import numpy as np
from scipy import ndimage

from grid_binning import cell_positions
from skin_config import BoundaryConfig

logger = logging.getLogger(__name__)

# right, down, left, up in (dx, dy)
_DIRS = ((1, 0), (0, 1), (-1, 0), (0, -1))
# forward, turn one way, turn the other, back
_TURN_ORDER = (0, 1, 3, 2)


def dilate_mask(mask: np.ndarray, nx: int, ny: int, radius: int) -> np.ndarray:
    m = np.asarray(mask, dtype=np.bool_).reshape(ny, nx)
    if int(radius) <= 0:
        return m.reshape(-1).copy()
    structure = np.ones((2 * int(radius) + 1, 2 * int(radius) + 1), dtype=np.bool_)
    return ndimage.binary_dilation(m, structure=structure).reshape(-1)


def close_loop(loop: np.ndarray, eps: float = 1e-6) -> np.ndarray:
    loop = np.asarray(loop, dtype=np.float64).reshape(-1, 2)
    if loop.shape[0] == 0:
        return loop
    if float(np.linalg.norm(loop[-1] - loop[0])) > float(eps) or loop.shape[0] == 1:
        loop = np.vstack([loop, loop[:1]])
    return loop


def trace_contour(mask: np.ndarray, nx: int, ny: int) -> np.ndarray:
    """Cell path (ix, iy) of the contour-following walk; shape (K,2) int64, not closed.

    Each cell is visited at most once and the walk always prefers going straight,
    so it only follows the outline of simple convex blobs. Elsewhere the path may
    cut through the region and enclose far less than the mask; check
    ``loop_area`` against the mask area before trusting it.
    """
    m = np.asarray(mask, dtype=np.bool_).reshape(ny, nx)
    ys, xs = np.nonzero(m)
    if ys.size == 0:
        return np.zeros((0, 2), dtype=np.int64)

    # np.nonzero is row-major, so the first hit is the first cell in scan order
    start = (int(xs[0]), int(ys[0]))
    path = [start]
    seen = {start}
    cx, cy = start
    heading = 0
    while True:
        step = None
        for turn in _TURN_ORDER:
            d = (heading + turn) % 4
            nx_, ny_ = cx + _DIRS[d][0], cy + _DIRS[d][1]
            if nx_ < 0 or nx_ >= nx or ny_ < 0 or ny_ >= ny or not m[ny_, nx_]:
                continue
            if (nx_, ny_) == start and len(path) > 2:
                step = "closed"
                break
            if (nx_, ny_) not in seen:
                step = (nx_, ny_, d)
                break
        if step is None or step == "closed":
            break
        cx, cy, heading = step
        path.append((cx, cy))
        seen.add((cx, cy))

    return np.array(path, dtype=np.int64)


def collect_boundary_cells(mask: np.ndarray, nx: int, ny: int) -> np.ndarray:
    """(ix, iy) of mask cells touching an empty or off-grid 4-neighbor, scan order."""
    m = np.asarray(mask, dtype=np.bool_).reshape(ny, nx)
    p = np.pad(m, 1, mode="constant", constant_values=False)
    interior = p[:-2, 1:-1] & p[2:, 1:-1] & p[1:-1, :-2] & p[1:-1, 2:]
    ys, xs = np.nonzero(m & ~interior)
    return np.stack([xs, ys], axis=-1).astype(np.int64)


def sort_by_angle(points: np.ndarray) -> np.ndarray:
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    if pts.shape[0] == 0:
        return pts
    c = pts.mean(axis=0)
    ang = np.arctan2(pts[:, 1] - c[1], pts[:, 0] - c[0])
    return pts[np.argsort(ang, kind="stable")]


def chaikin_closed(loop: np.ndarray, iterations: int) -> np.ndarray:
    """Corner cutting on an open ring: each edge (p0, p1) becomes its 1/4 and 3/4 points."""
    pts = np.asarray(loop, dtype=np.float64).reshape(-1, 2)
    if pts.shape[0] < 3:
        return pts
    for _ in range(int(iterations)):
        nxt = np.roll(pts, -1, axis=0)
        q = 0.75 * pts + 0.25 * nxt
        r = 0.25 * pts + 0.75 * nxt
        pts = np.stack([q, r], axis=1).reshape(-1, 2)
    return pts


def _to_world(cells: np.ndarray, grid) -> np.ndarray:
    gx = cell_positions(grid.nx, grid.x_min, grid.width_x)
    gy = cell_positions(grid.ny, grid.y_min, grid.height_y)
    return np.stack([gx[cells[:, 0]], gy[cells[:, 1]]], axis=-1)


def extract_boundary(mask: np.ndarray, grid, config: BoundaryConfig = BoundaryConfig()) -> np.ndarray:
    """World-space closed boundary loop of ``mask`` (shape (K,2); empty if the mask is)."""
    nx = int(grid.nx)
    ny = int(grid.ny)
    m = dilate_mask(mask, nx, ny, int(config.dilate_radius))

    if config.strategy == "trace":
        cells = trace_contour(m, nx, ny)
        loop = _to_world(cells, grid)
    elif config.strategy == "collect":
        cells = collect_boundary_cells(m, nx, ny)
        loop = chaikin_closed(sort_by_angle(_to_world(cells, grid)), int(config.smooth_iterations))
    else:
        raise ValueError(f"Unknown boundary strategy: {config.strategy}")

    if loop.shape[0] == 0:
        logger.warning("extract_boundary: mask is empty, no boundary")
        return np.zeros((0, 2), dtype=np.float64)
    return close_loop(loop, float(config.close_eps))


def loop_length(loop: np.ndarray) -> float:
    pts = np.asarray(loop, dtype=np.float64).reshape(-1, 2)
    if pts.shape[0] < 2:
        return 0.0
    return float(np.linalg.norm(np.diff(pts, axis=0), axis=1).sum())


def loop_area(loop: np.ndarray) -> float:
    """Signed shoelace area (positive when counter-clockwise)."""
    pts = np.asarray(loop, dtype=np.float64).reshape(-1, 2)
    if pts.shape[0] < 3:
        return 0.0
    x, y = pts[:, 0], pts[:, 1]
    return 0.5 * float(np.dot(x, np.roll(y, -1)) - np.dot(np.roll(x, -1), y))

