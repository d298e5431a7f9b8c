"""Point cloud -> smoothed points + skin mesh, in one batch call.

Stages: binning, smoothing, growing, boundary, meshing and the optional edge filter.
Every grid buffer is allocated inside the call; only the returned
SkinReconstruction leaves it. Run it on a worker with ``submit_reconstruction`` to
keep a UI responsive.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
import time
from concurrent.futures import Executor, Future
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Optional

import numpy as np
from PIL import Image

from bilateral_smooth import resample_points, smooth_height_map
from boundary_extract import extract_boundary, loop_length
from cloud_transform import TransformParams, apply_transform, apply_transform_2d, compute_transform
from edge_filter import EdgeFilterResult, filter_edge_outliers
from grid_binning import BinnedGrid, bin_points
from point_cloud_io import as_colors, as_points, load_point_cloud, save_point_cloud
from skin_config import PipelineConfig
from skin_errors import ReconstructionCancelled
from skin_mesh import Mesh, build_boundary_mesh, build_grid_mesh, compact_mesh, write_obj, write_ply
from surface_grow import FittedSurface, grow_fitted_surface

logger = logging.getLogger(__name__)

STAGES = ("binning", "smoothing", "growing", "boundary", "meshing", "edge_filter")

ProgressFn = Callable[[str, float], None]


@dataclass(frozen=True)
class SkinReconstruction:
    transform: TransformParams
    grid: BinnedGrid
    smoothed_height: np.ndarray  # (nx*ny,) in the input frame
    sigma_depth: float
    fitted: FittedSurface  # in the input frame
    boundary: np.ndarray  # (K,2) closed loop, output frame
    mesh: Mesh  # output frame
    smoothed_points: np.ndarray  # (N,3) same order as the input, output frame
    keep_mask: np.ndarray  # (N,) bool
    removed_indices: np.ndarray
    timings: Dict[str, float] = field(default_factory=dict)

    def summary(self) -> dict:
        n_valid = int(np.count_nonzero(self.grid.valid))
        return {
            "nx": int(self.grid.nx),
            "ny": int(self.grid.ny),
            "valid_cells": n_valid,
            "grown_cells": int(self.fitted.accepted),
            "grown_fraction": self.fitted.grown_fraction,
            "seed": list(self.fitted.seed) if self.fitted.seed is not None else None,
            "accept_threshold": float(self.fitted.threshold),
            "sigma_depth": float(self.sigma_depth),
            "boundary_points": int(self.boundary.shape[0]),
            "boundary_length": loop_length(self.boundary),
            "mesh_vertices": int(self.mesh.n_vertices),
            "mesh_faces": int(self.mesh.n_faces),
            "points": int(self.keep_mask.shape[0]),
            "removed_points": int(self.removed_indices.shape[0]),
            "transform": self.transform.to_dict(),
            "timings_s": {k: round(float(v), 4) for k, v in self.timings.items()},
        }


def setup_logging(level: int = logging.INFO, log_file: Optional[str] = None) -> None:
    """Console (stdout) handler plus optional file handler on the root logger."""
    root = logging.getLogger()
    root.setLevel(level)
    if root.hasHandlers():
        root.handlers.clear()

    formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s", datefmt="%H:%M:%S")
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode="w", encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)


def reconstruct_skin(
    points,
    colors=None,
    config: PipelineConfig = PipelineConfig(),
    cancel: Optional[threading.Event] = None,
    progress: Optional[ProgressFn] = None,
) -> SkinReconstruction:
    """Run the full reconstruction.

    ``cancel`` is checked before each stage; when set, ReconstructionCancelled is
    raised and the partial buffers are dropped. ``progress(stage, fraction)`` is
    called as each stage starts and once with ("done", 1.0).

    Raises EmptyInputError for an empty point sequence.
    """
    pts = as_points(points)
    cols = as_colors(colors, pts.shape[0])
    timings: Dict[str, float] = {}
    clock = {"stage": None, "t0": 0.0}

    def checkpoint(stage: str) -> None:
        now = time.perf_counter()
        if clock["stage"] is not None:
            timings[clock["stage"]] = now - clock["t0"]
        if stage in STAGES and cancel is not None and cancel.is_set():
            logger.info("reconstruction cancelled before %s", stage)
            raise ReconstructionCancelled(stage)
        if progress is not None:
            progress(stage, STAGES.index(stage) / float(len(STAGES)) if stage in STAGES else 1.0)
        clock["stage"] = stage
        clock["t0"] = now

    checkpoint("binning")
    grid = bin_points(pts, cols, config.binning)
    finite = np.isfinite(pts).all(axis=1)
    transform = compute_transform(pts[finite], config.transform.target_size, config.transform.fit)
    logger.info(
        "binned %d points into %dx%d (%s), %d valid cells",
        int(pts.shape[0]),
        grid.nx,
        grid.ny,
        grid.policy,
        int(np.count_nonzero(grid.valid)),
    )

    checkpoint("smoothing")
    smoothed_height, sigma_depth = smooth_height_map(grid, config.smoothing)
    smoothed_pts = resample_points(pts, smoothed_height, grid)

    checkpoint("growing")
    if config.growth.enabled:
        fitted = grow_fitted_surface(smoothed_height, grid.valid, grid, config.growth)
    else:
        fitted = FittedSurface(
            height=smoothed_height.copy(),
            mask=grid.valid.copy(),
            seed=None,
            accepted=int(np.count_nonzero(grid.valid)),
            visited=0,
            threshold=0.0,
        )

    checkpoint("boundary")
    boundary = extract_boundary(fitted.mask, grid, config.boundary)

    checkpoint("meshing")
    if config.mesh.mode == "boundary":
        mesh = build_boundary_mesh(boundary, fitted.height, grid, config.mesh)
    else:
        mesh = build_grid_mesh(fitted.height, fitted.mask, grid, config.mesh)
    mesh = compact_mesh(mesh)

    checkpoint("edge_filter")
    if config.edge_filter.enabled:
        filtered = filter_edge_outliers(pts, smoothed_pts, config.edge_filter)
    else:
        filtered = EdgeFilterResult(keep_mask=np.ones(pts.shape[0], dtype=np.bool_), removed_indices=np.zeros(0, dtype=np.int64))

    if config.transform.apply:
        smoothed_pts = apply_transform(smoothed_pts, transform).reshape(-1, 3)
        mesh = mesh.transformed(transform)
        boundary = apply_transform_2d(boundary, transform)

    checkpoint("done")
    logger.info(
        "reconstruction done: %d grown cells, %d triangles, %d points removed (%s)",
        int(fitted.accepted),
        int(mesh.n_faces),
        int(filtered.removed_indices.shape[0]),
        ", ".join(f"{k}={v:.3f}s" for k, v in timings.items()),
    )
    return SkinReconstruction(
        transform=transform,
        grid=grid,
        smoothed_height=smoothed_height,
        sigma_depth=float(sigma_depth),
        fitted=fitted,
        boundary=boundary,
        mesh=mesh,
        smoothed_points=smoothed_pts,
        keep_mask=filtered.keep_mask,
        removed_indices=filtered.removed_indices,
        timings=timings,
    )


def submit_reconstruction(
    executor: Executor,
    points,
    colors=None,
    config: PipelineConfig = PipelineConfig(),
    cancel: Optional[threading.Event] = None,
    progress: Optional[ProgressFn] = None,
) -> "Future[SkinReconstruction]":
    """Run ``reconstruct_skin`` on ``executor``; the caller gets one Future back.

    Inputs are copied first so the worker never shares buffers with the caller.
    """
    pts = np.array(points, dtype=np.float64, copy=True)
    cols = None if colors is None else np.array(colors, dtype=np.float64, copy=True)
    return executor.submit(reconstruct_skin, pts, cols, config, cancel, progress)


def _mask_png(path: Path, mask: np.ndarray, nx: int, ny: int) -> None:
    # row 0 is y_min; flip so +y points up in the image
    img = np.flipud(np.asarray(mask, dtype=np.bool_).reshape(ny, nx)).astype(np.uint8) * 255
    Image.fromarray(img).save(path)


def _height_png(path: Path, height: np.ndarray, nx: int, ny: int) -> None:
    h = np.asarray(height, dtype=np.float64).reshape(ny, nx)
    lo, hi = float(np.nanmin(h)), float(np.nanmax(h))
    span = hi - lo if hi > lo else 1.0
    img = np.clip((h - lo) / span * 255.0, 0.0, 255.0)
    img = np.nan_to_num(img, nan=0.0).astype(np.uint8)
    Image.fromarray(np.flipud(img)).save(path)


def write_outputs(out_dir: Path, result: SkinReconstruction, colors=None) -> Dict[str, Path]:
    out_dir.mkdir(parents=True, exist_ok=True)
    paths = {
        "mesh_obj": out_dir / "mesh.obj",
        "mesh_ply": out_dir / "mesh.ply",
        "points": out_dir / "smoothed_points.ply",
        "keep_mask": out_dir / "keep_mask.npy",
        "fitted_height": out_dir / "fitted_height.npy",
        "valid_png": out_dir / "valid_mask.png",
        "fitted_png": out_dir / "fitted_mask.png",
        "height_png": out_dir / "smoothed_height.png",
        "meta": out_dir / "meta.json",
    }
    nx, ny = result.grid.nx, result.grid.ny

    write_obj(paths["mesh_obj"], result.mesh)
    if result.mesh.is_empty:
        logger.warning("mesh is empty, skipping %s", paths["mesh_ply"].name)
        del paths["mesh_ply"]
    else:
        write_ply(paths["mesh_ply"], result.mesh)

    finite = np.isfinite(result.smoothed_points).all(axis=1)
    cols = as_colors(colors, result.smoothed_points.shape[0])
    save_point_cloud(paths["points"], result.smoothed_points[finite], cols[finite] if cols is not None else None)
    np.save(paths["keep_mask"], result.keep_mask)
    np.save(paths["fitted_height"], result.fitted.height.reshape(ny, nx))
    _mask_png(paths["valid_png"], result.grid.valid, nx, ny)
    _mask_png(paths["fitted_png"], result.fitted.mask, nx, ny)
    _height_png(paths["height_png"], result.smoothed_height, nx, ny)
    paths["meta"].write_text(json.dumps(result.summary(), indent=2), encoding="utf-8")
    return paths


def _config_from_args(args: argparse.Namespace) -> PipelineConfig:
    cfg = PipelineConfig.from_json(args.config) if args.config is not None else PipelineConfig()

    # flag -> (section, field); flags left at None keep the config value
    mapping = {
        "binning_policy": ("binning", "policy"),
        "resolution": ("binning", "resolution"),
        "nx": ("binning", "nx"),
        "ny": ("binning", "ny"),
        "cell_size": ("binning", "target_cell_size"),
        "min_res": ("binning", "min_resolution"),
        "max_res": ("binning", "max_resolution"),
        "smooth_radius": ("smoothing", "radius"),
        "sigma_space": ("smoothing", "sigma_space"),
        "smooth_iters": ("smoothing", "iterations"),
        "depth_sigma_frac": ("smoothing", "depth_sigma_frac"),
        "sigma_depth": ("smoothing", "sigma_depth"),
        "window_radius": ("growth", "window_radius"),
        "accept_frac": ("growth", "accept_frac"),
        "boundary": ("boundary", "strategy"),
        "boundary_smooth_iters": ("boundary", "smooth_iterations"),
        "dilate": ("boundary", "dilate_radius"),
        "mesh_mode": ("mesh", "mode"),
        "depth_gap": ("mesh", "depth_gap"),
        "edge_policy": ("edge_filter", "policy"),
        "edge_grid": ("edge_filter", "grid_size"),
        "edge_radius": ("edge_filter", "radius_cells"),
        "edge_dz": ("edge_filter", "dz_threshold"),
        "edge_min_neighbors": ("edge_filter", "min_neighbors"),
        "target_size": ("transform", "target_size"),
        "fit": ("transform", "fit"),
    }
    overrides: Dict[str, dict] = {}
    for flag, (section, name) in mapping.items():
        value = getattr(args, flag)
        if value is not None:
            overrides.setdefault(section, {})[name] = value
    if args.no_growth:
        overrides.setdefault("growth", {})["enabled"] = False
    if args.no_robust_refit:
        overrides.setdefault("growth", {})["robust_refit"] = False
    if args.edge_filter:
        overrides.setdefault("edge_filter", {})["enabled"] = True
    if args.no_transform:
        overrides.setdefault("transform", {})["apply"] = False
    return cfg.with_overrides(**overrides)


def build_arg_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        description=(
            "Reconstruct a smoothed point set and a colored skin mesh from a noisy point cloud.\n"
            "Writes mesh.obj/.ply, smoothed_points.ply, masks and meta.json into --out."
        )
    )
    ap.add_argument("--input", type=Path, required=True, help="Point cloud (.ply/.pcd/.npy/.xyz/.txt/.csv)")
    ap.add_argument("--out", type=Path, default=None, help="Output folder (default: <input stem>_skin next to the input)")
    ap.add_argument("--config", type=Path, default=None, help="JSON config; flags below override it")
    ap.add_argument("--save-config", type=Path, default=None, help="Write the effective config as JSON")

    ap.add_argument("--binning-policy", choices=["average", "nearest_front"], default=None)
    ap.add_argument("--resolution", choices=["fixed", "adaptive"], default=None)
    ap.add_argument("--nx", type=int, default=None)
    ap.add_argument("--ny", type=int, default=None)
    ap.add_argument("--cell-size", type=float, default=None, help="Adaptive resolution: target cell size in input units")
    ap.add_argument("--min-res", type=int, default=None)
    ap.add_argument("--max-res", type=int, default=None)

    ap.add_argument("--smooth-radius", type=int, default=None, help="Bilateral radius in cells")
    ap.add_argument("--sigma-space", type=float, default=None)
    ap.add_argument("--smooth-iters", type=int, default=None, help="0 disables smoothing")
    ap.add_argument("--depth-sigma-frac", type=float, default=None, help="sigmaDepth as a fraction of the height range")
    ap.add_argument("--sigma-depth", type=float, default=None, help="Absolute sigmaDepth (overrides the fraction)")

    ap.add_argument("--no-growth", action="store_true", help="Skip region growing; mesh every valid cell")
    ap.add_argument("--window-radius", type=int, default=None, help="Plane-fit window radius in cells")
    ap.add_argument("--accept-frac", type=float, default=None, help="Acceptance threshold as a fraction of zMax-zMin")
    ap.add_argument("--no-robust-refit", action="store_true")

    ap.add_argument("--boundary", choices=["collect", "trace"], default=None)
    ap.add_argument("--boundary-smooth-iters", type=int, default=None)
    ap.add_argument("--dilate", type=int, default=None, help="Dilate the mask by N cells before extracting the boundary")

    ap.add_argument("--mesh-mode", choices=["grid", "boundary"], default=None)
    ap.add_argument("--depth-gap", type=float, default=None, help="Grid mode: drop quads spanning bigger height jumps (0 disables)")

    ap.add_argument("--edge-filter", action="store_true", help="Flag points pushed away from their raw neighborhood")
    ap.add_argument("--edge-policy", choices=["density", "simple"], default=None)
    ap.add_argument("--edge-grid", type=int, default=None)
    ap.add_argument("--edge-radius", type=int, default=None)
    ap.add_argument("--edge-dz", type=float, default=None)
    ap.add_argument("--edge-min-neighbors", type=int, default=None)

    ap.add_argument("--target-size", type=float, default=None)
    ap.add_argument("--fit", choices=["diagonal", "max_side"], default=None)
    ap.add_argument("--no-transform", action="store_true", help="Keep outputs in the input frame")

    ap.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    ap.add_argument("--log-file", default=None)
    return ap


def main(argv=None) -> None:
    args = build_arg_parser().parse_args(argv)
    setup_logging(getattr(logging, args.log_level), args.log_file)

    cfg = _config_from_args(args)
    if args.save_config is not None:
        cfg.to_json(args.save_config)

    points, colors = load_point_cloud(args.input)
    out_dir = args.out if args.out is not None else args.input.with_name(f"{args.input.stem}_skin")

    result = reconstruct_skin(points, colors, cfg)
    paths = write_outputs(out_dir, result, colors)

    print("Wrote:")
    for p in paths.values():
        print(f"- {p}")


if __name__ == "__main__":
    main()
