#!/usr/bin/env python3
"""Batch quality report for skin reconstructions.

Runs the reconstruction over every point cloud in a folder (or a list of files)
and compares the runs with a few report-friendly indicators.

Metrics (per cloud)
- valid_frac: cells that received at least one sample / all cells
- grown_frac: cells accepted by region growing / valid cells
- fit_dev_p95: p95 of |fitted - smoothed| over grown cells (how far the planes moved the surface)
- smooth_shift_p95: p95 of |smoothed z - raw z| over all points
- removed_frac: points flagged by the edge outlier filter
- boundary_length, mesh_faces, seconds

Run:
  python tools/analyze_skin_quality.py --inputs data/clouds --outdir reports/skin_quality
"""

from __future__ import annotations

import argparse
import math
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import List

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from point_cloud_io import load_point_cloud
from skin_config import PipelineConfig
from skin_pipeline import reconstruct_skin

CLOUD_SUFFIXES = {".ply", ".pcd", ".npy", ".xyz", ".txt", ".csv"}


@dataclass
class SkinQualityRow:
    stem: str
    points: int
    nx: int
    ny: int

    valid_frac: float
    grown_frac: float
    fit_dev_p95: float
    smooth_shift_p95: float
    removed_frac: float

    boundary_length: float
    mesh_faces: int
    seconds: float


def _quantile(x: np.ndarray, q: float) -> float:
    x = x[np.isfinite(x)]
    if x.size == 0:
        return float("nan")
    return float(np.quantile(x, q))


def analyze_cloud(path: Path, cfg: PipelineConfig) -> SkinQualityRow:
    points, colors = load_point_cloud(path)
    t0 = time.perf_counter()
    # stay in the input frame so deviations are in input units
    result = reconstruct_skin(points, colors, cfg.with_overrides(transform={"apply": False}, edge_filter={"enabled": True}))
    seconds = time.perf_counter() - t0

    grid = result.grid
    n_valid = int(np.count_nonzero(grid.valid))
    grown = result.fitted.mask
    fit_dev = np.abs(result.fitted.height[grown] - result.smoothed_height[grown])
    shift = np.abs(result.smoothed_points[:, 2] - np.asarray(points, dtype=np.float64)[:, 2])
    n = int(result.keep_mask.shape[0])

    return SkinQualityRow(
        stem=path.stem,
        points=n,
        nx=int(grid.nx),
        ny=int(grid.ny),
        valid_frac=float(n_valid) / float(grid.size),
        grown_frac=float(result.fitted.accepted) / float(max(n_valid, 1)),
        fit_dev_p95=_quantile(fit_dev, 0.95),
        smooth_shift_p95=_quantile(shift, 0.95),
        removed_frac=float(result.removed_indices.shape[0]) / float(max(n, 1)),
        boundary_length=float(result.summary()["boundary_length"]),
        mesh_faces=int(result.mesh.n_faces),
        seconds=float(seconds),
    )


def _collect_inputs(inputs: List[Path]) -> List[Path]:
    out: List[Path] = []
    for p in inputs:
        if p.is_dir():
            out.extend(sorted(q for q in p.iterdir() if q.suffix.lower() in CLOUD_SUFFIXES))
        elif p.exists():
            out.append(p)
        else:
            raise FileNotFoundError(p)
    return out


def _bar_plot(df: pd.DataFrame, col: str, out: Path, title: str, ascending: bool = False):
    s = df.sort_values(col, ascending=ascending)
    plt.figure(figsize=(10, 4))
    plt.bar(s["stem"], s[col])
    plt.title(title)
    plt.xticks(rotation=30, ha="right")
    plt.tight_layout()
    plt.savefig(out)
    plt.close()


def write_report(df: pd.DataFrame, outdir: Path) -> Path:
    view = df.sort_values("grown_frac", ascending=False).reset_index(drop=True).copy()
    for c in ["valid_frac", "grown_frac", "removed_frac"]:
        view[c] = view[c].map(lambda x: f"{100.0 * float(x):.2f}%")
    for c in ["fit_dev_p95", "smooth_shift_p95", "boundary_length"]:
        view[c] = view[c].map(lambda x: f"{float(x):.4f}" if math.isfinite(float(x)) else "nan")
    view["seconds"] = view["seconds"].map(lambda x: f"{float(x):.2f}")

    lines: list[str] = []
    lines.append("# Skin reconstruction quality")
    lines.append("")
    lines.append("- `grown_frac`: share of valid cells kept by region growing. Low values mean the plane test rejected most of the surface.")
    lines.append("- `fit_dev_p95`: how far the local planes moved grown cells away from the smoothed map.")
    lines.append("- `smooth_shift_p95`: how far smoothing moved the input points along z.")
    lines.append("- `removed_frac`: points flagged by the edge outlier filter.")
    lines.append("")
    lines.append("## Summary")
    lines.append("")
    lines.append(view.to_markdown(index=False))
    lines.append("")
    lines.append("## Plots")
    lines.append("")
    lines.append("- Grown fraction: ![](bar_grown_frac.png)")
    lines.append("- Fit deviation: ![](bar_fit_dev_p95.png)")
    lines.append("- Removed points: ![](bar_removed_frac.png)")
    lines.append("")

    report_path = outdir / "skin_quality_report.md"
    report_path.write_text("\n".join(lines), encoding="utf-8")
    return report_path


def main() -> int:
    ap = argparse.ArgumentParser(description="Compare skin reconstructions across point clouds.")
    ap.add_argument("--inputs", type=Path, nargs="+", required=True, help="Point cloud files and/or folders")
    ap.add_argument("--outdir", type=Path, default=Path("skin_quality"))
    ap.add_argument("--config", type=Path, default=None, help="Pipeline JSON config")
    args = ap.parse_args()

    outdir = args.outdir
    outdir.mkdir(parents=True, exist_ok=True)
    cfg = PipelineConfig.from_json(args.config) if args.config is not None else PipelineConfig()

    paths = _collect_inputs(args.inputs)
    if not paths:
        print("No point clouds found.")
        return 1

    rows = [analyze_cloud(p, cfg) for p in paths]
    df = pd.DataFrame([asdict(r) for r in rows])

    csv_path = outdir / "skin_quality_metrics.csv"
    df.to_csv(csv_path, index=False, encoding="utf-8")

    _bar_plot(df, "grown_frac", outdir / "bar_grown_frac.png", "Grown cells / valid cells (higher is better)")
    _bar_plot(df, "fit_dev_p95", outdir / "bar_fit_dev_p95.png", "|fitted - smoothed| p95 (lower is steadier)", ascending=True)
    _bar_plot(df, "removed_frac", outdir / "bar_removed_frac.png", "Edge outlier fraction", ascending=True)

    report_path = write_report(df, outdir)

    print(f"Wrote: {csv_path}")
    print(f"Wrote: {report_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
