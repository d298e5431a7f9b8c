"""Flag points that smoothing pushed away from their raw neighborhood.

Runs on (raw, smoothed) pairs of equal length and order. Neighbors come from a
uniform XY hash grid of its own resolution, independent of the height-map grid.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from skin_config import EdgeFilterConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EdgeFilterResult:
    keep_mask: np.ndarray  # (N,) bool
    removed_indices: np.ndarray  # (K,) int64, ascending

    @property
    def removed_fraction(self) -> float:
        n = int(self.keep_mask.shape[0])
        return float(self.removed_indices.shape[0]) / float(n) if n else 0.0


def _check_pair(raw: np.ndarray, smoothed: np.ndarray):
    r = np.asarray(raw, dtype=np.float64).reshape(-1, 3)
    s = np.asarray(smoothed, dtype=np.float64).reshape(-1, 3)
    if r.shape[0] != s.shape[0]:
        raise ValueError(f"raw and smoothed point counts differ: {r.shape[0]} != {s.shape[0]}")
    # non-finite rows have no neighborhood and are always rejected
    finite = np.isfinite(r).all(axis=1) & np.isfinite(s).all(axis=1)
    return r, s, finite


def _result(reject: np.ndarray) -> EdgeFilterResult:
    keep = ~reject
    return EdgeFilterResult(keep_mask=keep, removed_indices=np.flatnonzero(reject).astype(np.int64))


def _box_sum(a: np.ndarray, r: int) -> np.ndarray:
    """Sum over the (2r+1)^2 window of each cell, zero outside the grid."""
    if r <= 0:
        return a.copy()
    ny, nx = a.shape
    p = np.pad(a, r, mode="constant", constant_values=0)
    out = np.zeros_like(a)
    for dy in range(-r, r + 1):
        for dx in range(-r, r + 1):
            out += p[r + dy : r + dy + ny, r + dx : r + dx + nx]
    return out


def _hash_cells(pts: np.ndarray, grid_size: int):
    x_min, y_min = float(pts[:, 0].min()), float(pts[:, 1].min())
    span_x = float(pts[:, 0].max()) - x_min
    span_y = float(pts[:, 1].max()) - y_min
    span_x = span_x if span_x > 0.0 else 1.0
    span_y = span_y if span_y > 0.0 else 1.0
    ix = np.clip(np.floor((pts[:, 0] - x_min) / span_x * grid_size).astype(np.int64), 0, grid_size - 1)
    iy = np.clip(np.floor((pts[:, 1] - y_min) / span_y * grid_size).astype(np.int64), 0, grid_size - 1)
    return ix, iy


def mark_edge_outliers(raw: np.ndarray, smoothed: np.ndarray, config: EdgeFilterConfig = EdgeFilterConfig()) -> EdgeFilterResult:
    """Density-aware filter.

    For each point, the neighborhood is every raw point whose hash cell lies within
    ``radius_cells`` of its own (itself included). Then:

      count >= dense_factor * min_neighbors   keep (interior)
      count <  min_neighbors                  threshold = dz_threshold
      otherwise                               threshold = loose_factor * dz_threshold

    A point is rejected when its smoothed z is farther than the threshold from the
    neighbors' mean raw z and farther from it than its own raw z was. Rows with a
    non-finite coordinate are rejected and left out of every neighborhood.
    """
    raw_all, smoothed_all, finite = _check_pair(raw, smoothed)
    reject = ~finite
    if not np.any(finite):
        return _result(reject)
    r = raw_all[finite]
    s = smoothed_all[finite]
    n = int(r.shape[0])

    g = int(config.grid_size)
    ix, iy = _hash_cells(r, g)
    k = iy * g + ix
    counts = np.bincount(k, minlength=g * g).astype(np.float64).reshape(g, g)
    z_sums = np.bincount(k, weights=r[:, 2], minlength=g * g).reshape(g, g)

    rad = int(config.radius_cells)
    nb_count = _box_sum(counts, rad).reshape(-1)[k]
    nb_mean = _box_sum(z_sums, rad).reshape(-1)[k] / nb_count

    min_nb = float(config.min_neighbors)
    dense = nb_count >= float(config.dense_factor) * min_nb
    sparse = nb_count < min_nb
    threshold = np.where(sparse, float(config.dz_threshold), float(config.loose_factor) * float(config.dz_threshold))

    moved = np.abs(s[:, 2] - nb_mean)
    was = np.abs(r[:, 2] - nb_mean)
    reject[finite] = ~dense & (moved > threshold) & (moved > was)

    logger.info(
        "edge filter: %d/%d rejected (dense=%d sparse=%d non-finite=%d)",
        int(np.count_nonzero(reject)),
        int(reject.shape[0]),
        int(np.count_nonzero(dense)),
        int(np.count_nonzero(sparse)),
        int(reject.shape[0]) - n,
    )
    return _result(reject)


def mark_edge_outliers_simple(raw: np.ndarray, smoothed: np.ndarray, dz_threshold: float) -> EdgeFilterResult:
    """Reject points whose z moved by more than ``dz_threshold``; no spatial context."""
    r, s, finite = _check_pair(raw, smoothed)
    if float(dz_threshold) <= 0.0:
        raise ValueError("dz_threshold must be > 0")
    reject = ~finite
    reject[finite] = np.abs(s[finite, 2] - r[finite, 2]) > float(dz_threshold)
    return _result(reject)


def filter_edge_outliers(raw: np.ndarray, smoothed: np.ndarray, config: EdgeFilterConfig = EdgeFilterConfig()) -> EdgeFilterResult:
    if config.policy == "simple":
        return mark_edge_outliers_simple(raw, smoothed, config.dz_threshold)
    return mark_edge_outliers(raw, smoothed, config)
