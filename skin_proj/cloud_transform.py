from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

import numpy as np

from skin_errors import EmptyInputError


@dataclass(frozen=True)
class TransformParams:
    """Uniform scale + recentering shared by everything derived from one cloud.

    ``center`` is stored already scaled, so ``apply(p) = p * scale_factor - center``.
    """

    scale_factor: float
    center: Tuple[float, float, float]

    def apply(self, points: np.ndarray) -> np.ndarray:
        return apply_transform(points, self)

    def to_dict(self) -> dict:
        return {"scale_factor": float(self.scale_factor), "center": [float(c) for c in self.center]}


def _spans(pts: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    lo = pts.min(axis=0)
    hi = pts.max(axis=0)
    size = hi - lo
    # zero span on an axis would make the scale infinite
    size = np.where(size > 0.0, size, 1.0)
    return (lo + hi) * 0.5, size


def compute_transform(points: np.ndarray, target_size: float = 10.0, fit: str = "diagonal") -> TransformParams:
    """Scale the bounding box to ``target_size`` and move its center to the origin.

    fit:
      - diagonal: the 3D bounding-box diagonal becomes target_size
      - max_side: the longest bounding-box side becomes target_size
    """
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    if pts.shape[0] == 0:
        raise EmptyInputError("Cannot compute a transform for an empty point sequence")
    center, size = _spans(pts)
    if fit == "diagonal":
        extent = float(np.linalg.norm(size))
    elif fit == "max_side":
        extent = float(size.max())
    else:
        raise ValueError("fit must be 'diagonal' or 'max_side'")
    scale = float(target_size) / max(extent, 1e-12)
    scaled_center = center * scale
    return TransformParams(
        scale_factor=scale,
        center=(float(scaled_center[0]), float(scaled_center[1]), float(scaled_center[2])),
    )


def apply_transform(points: np.ndarray, params: TransformParams) -> np.ndarray:
    p = np.asarray(points, dtype=np.float64)
    if p.size == 0:
        return p.reshape(-1, 3)
    return p * float(params.scale_factor) - np.asarray(params.center, dtype=np.float64)


def apply_transform_2d(loop_xy: np.ndarray, params: TransformParams) -> np.ndarray:
    """Transform a 2D loop with the XY part of the dataset transform."""
    p = np.asarray(loop_xy, dtype=np.float64).reshape(-1, 2)
    return p * float(params.scale_factor) - np.asarray(params.center[:2], dtype=np.float64)
