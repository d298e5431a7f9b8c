"""Project a point cloud onto a regular XY grid.

The grid is a set of flat arrays of length nx*ny addressed by ``iy*nx + ix``. Cell
``ix`` sits at ``x_min + ix/(nx-1) * width_x`` (one-cell axes sit at ``x_min``),
and ``grid_sampling`` uses the same mapping, so sampling at a cell position
returns the stored height exactly.

Two accumulation policies:
  - average: mean z and mean color of every sample landing in the cell
  - nearest_front: only the sample with the largest z (self-occluding clouds)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from point_cloud_io import as_colors, as_points
from skin_config import BinningConfig
from skin_errors import EmptyInputError


@dataclass(frozen=True)
class BinnedGrid:
    nx: int
    ny: int
    x_min: float
    x_max: float
    y_min: float
    y_max: float
    width_x: float
    height_y: float
    z_min: float
    z_max: float
    height: np.ndarray  # (nx*ny,) float64, holes filled
    valid: np.ndarray  # (nx*ny,) bool, True iff >= 1 sample landed there
    counts: np.ndarray  # (nx*ny,) int64
    color_r: np.ndarray  # (nx*ny,) float64 0..255, NaN where there is no color data
    color_g: np.ndarray
    color_b: np.ndarray
    policy: str = "average"

    @property
    def size(self) -> int:
        return int(self.nx * self.ny)

    def index(self, ix: int, iy: int) -> int:
        return int(iy) * int(self.nx) + int(ix)

    def cell_x(self) -> np.ndarray:
        return cell_positions(self.nx, self.x_min, self.width_x)

    def cell_y(self) -> np.ndarray:
        return cell_positions(self.ny, self.y_min, self.height_y)

    def cell_centers(self) -> Tuple[np.ndarray, np.ndarray]:
        """World (x, y) of every cell, flattened in grid order."""
        xx, yy = np.meshgrid(self.cell_x(), self.cell_y())
        return xx.reshape(-1), yy.reshape(-1)

    def colors_rgb(self) -> np.ndarray:
        return np.stack([self.color_r, self.color_g, self.color_b], axis=-1)


def cell_positions(n: int, lo: float, span: float) -> np.ndarray:
    if int(n) == 1:
        return np.array([float(lo)], dtype=np.float64)
    return float(lo) + (np.arange(int(n), dtype=np.float64) / float(n - 1)) * float(span)


def _span(lo: float, hi: float) -> float:
    s = float(hi) - float(lo)
    return s if s > 0.0 else 1.0


def resolve_resolution(points: np.ndarray, config: BinningConfig) -> Tuple[int, int]:
    """Grid size for the configured resolution policy.

    adaptive: n = round(span / target_cell_size) clamped to [min_resolution, max_resolution].
    """
    if config.resolution == "fixed":
        return int(config.nx), int(config.ny)

    pts = as_points(points)
    width = _span(pts[:, 0].min(), pts[:, 0].max())
    height = _span(pts[:, 1].min(), pts[:, 1].max())
    lo = int(config.min_resolution)
    hi = int(config.max_resolution)
    nx = int(round(width / float(config.target_cell_size)))
    ny = int(round(height / float(config.target_cell_size)))
    return min(hi, max(lo, nx)), min(hi, max(lo, ny))


def cell_indices(x: np.ndarray, y: np.ndarray, nx: int, ny: int, x_min: float, y_min: float, width_x: float, height_y: float) -> Tuple[np.ndarray, np.ndarray]:
    """Nearest cell (ix, iy) for world coordinates, clamped to the grid."""
    u = (np.asarray(x, dtype=np.float64) - float(x_min)) / float(width_x)
    v = (np.asarray(y, dtype=np.float64) - float(y_min)) / float(height_y)
    ix = np.floor(u * float(max(nx - 1, 0)) + 0.5).astype(np.int64)
    iy = np.floor(v * float(max(ny - 1, 0)) + 0.5).astype(np.int64)
    return np.clip(ix, 0, nx - 1), np.clip(iy, 0, ny - 1)


def bin_points(
    points: np.ndarray,
    colors: Optional[np.ndarray] = None,
    config: BinningConfig = BinningConfig(),
) -> BinnedGrid:
    """Build height map, valid mask and color map from a point cloud."""
    pts = as_points(points)
    cols = as_colors(colors, pts.shape[0])

    finite = np.isfinite(pts).all(axis=1)
    if not np.all(finite):
        pts = pts[finite]
        cols = cols[finite] if cols is not None else None
        if pts.shape[0] == 0:
            raise EmptyInputError("Point sequence has no finite points")

    nx, ny = resolve_resolution(pts, config)
    size = nx * ny

    x_min, x_max = float(pts[:, 0].min()), float(pts[:, 0].max())
    y_min, y_max = float(pts[:, 1].min()), float(pts[:, 1].max())
    z_min, z_max = float(pts[:, 2].min()), float(pts[:, 2].max())
    width_x = _span(x_min, x_max)
    height_y = _span(y_min, y_max)

    ix, iy = cell_indices(pts[:, 0], pts[:, 1], nx, ny, x_min, y_min, width_x, height_y)
    lin = iy * nx + ix
    z = pts[:, 2]

    counts = np.bincount(lin, minlength=size).astype(np.int64)
    valid = counts > 0
    height = np.empty(size, dtype=np.float64)
    rgb = np.full((size, 3), np.nan, dtype=np.float64)

    if config.policy == "average":
        z_sum = np.bincount(lin, weights=z, minlength=size)
        height[valid] = z_sum[valid] / counts[valid]
        if cols is not None:
            for c in range(3):
                c_sum = np.bincount(lin, weights=cols[:, c], minlength=size)
                rgb[valid, c] = c_sum[valid] / counts[valid]
        # smoothing needs a gap-free map; the valid mask still records true emptiness
        height[~valid] = float(height[valid].mean())
    elif config.policy == "nearest_front":
        front = np.full(size, -np.inf, dtype=np.float64)
        np.maximum.at(front, lin, z)
        winners = np.nonzero(z == front[lin])[0]
        cells, first = np.unique(lin[winners], return_index=True)
        pick = winners[first]
        height[cells] = z[pick]
        if cols is not None:
            rgb[cells] = cols[pick]
        height[~valid] = z_min
    else:
        raise ValueError(f"Unknown binning policy: {config.policy}")

    return BinnedGrid(
        nx=int(nx),
        ny=int(ny),
        x_min=x_min,
        x_max=x_max,
        y_min=y_min,
        y_max=y_max,
        width_x=width_x,
        height_y=height_y,
        z_min=z_min,
        z_max=z_max,
        height=height,
        valid=valid,
        counts=counts,
        color_r=rgb[:, 0].copy(),
        color_g=rgb[:, 1].copy(),
        color_b=rgb[:, 2].copy(),
        policy=str(config.policy),
    )
