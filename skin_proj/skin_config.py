"""Tunables for every reconstruction stage.

All empirically chosen constants live here as named, overridable fields. The
pipeline, the CLI flags and the JSON config file all read from these dataclasses,
so a value changed in one place is seen everywhere.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

BINNING_POLICIES = ("average", "nearest_front")
RESOLUTION_POLICIES = ("fixed", "adaptive")
BOUNDARY_STRATEGIES = ("collect", "trace")
MESH_MODES = ("grid", "boundary")
EDGE_FILTER_POLICIES = ("density", "simple")
TRANSFORM_FITS = ("diagonal", "max_side")

NEUTRAL_SKIN_RGB: Tuple[int, int, int] = (200, 160, 140)


def _check_choice(name: str, value: str, choices: Tuple[str, ...]) -> None:
    if value not in choices:
        raise ValueError(f"{name} must be one of: {', '.join(choices)} (got {value!r})")


@dataclass(frozen=True)
class BinningConfig:
    policy: str = "average"
    resolution: str = "fixed"
    nx: int = 128
    ny: int = 128
    # adaptive resolution: ~5mm cells when the cloud is in meters
    target_cell_size: float = 0.005
    min_resolution: int = 64
    max_resolution: int = 192

    def __post_init__(self) -> None:
        _check_choice("binning policy", self.policy, BINNING_POLICIES)
        _check_choice("resolution policy", self.resolution, RESOLUTION_POLICIES)
        if self.resolution == "fixed" and (int(self.nx) < 1 or int(self.ny) < 1):
            raise ValueError("nx and ny must be >= 1")
        if self.resolution == "adaptive":
            if float(self.target_cell_size) <= 0.0:
                raise ValueError("target_cell_size must be > 0")
            if int(self.min_resolution) < 1 or int(self.max_resolution) < int(self.min_resolution):
                raise ValueError("need 1 <= min_resolution <= max_resolution")


@dataclass(frozen=True)
class SmoothingConfig:
    radius: int = 2
    sigma_space: float = 1.8
    iterations: int = 2
    # sigma_depth = depth_sigma_frac * height range, unless sigma_depth is given
    depth_sigma_frac: float = 0.06
    sigma_depth: Optional[float] = None
    min_weight: float = 1e-6

    def __post_init__(self) -> None:
        if int(self.radius) < 0:
            raise ValueError("radius must be >= 0")
        if int(self.iterations) < 0:
            raise ValueError("iterations must be >= 0")
        if float(self.sigma_space) <= 0.0:
            raise ValueError("sigma_space must be > 0")
        if self.sigma_depth is not None and float(self.sigma_depth) <= 0.0:
            raise ValueError("sigma_depth must be > 0")


@dataclass(frozen=True)
class GrowthConfig:
    enabled: bool = True
    window_radius: int = 2
    # accept when |predicted - reference| <= accept_frac * (zMax - zMin)
    accept_frac: float = 0.12
    min_samples: int = 3
    pivot_eps: float = 1e-8
    robust_refit: bool = True
    # inliers lie within trim_sigmas * 1.4826 * MAD of the median, never closer than
    # trim_floor_frac * acceptance threshold
    trim_sigmas: float = 3.0
    trim_floor_frac: float = 0.1
    max_refits: int = 5

    def __post_init__(self) -> None:
        if int(self.window_radius) < 1:
            raise ValueError("window_radius must be >= 1")
        if float(self.accept_frac) <= 0.0:
            raise ValueError("accept_frac must be > 0")
        if int(self.min_samples) < 3:
            raise ValueError("a plane needs min_samples >= 3")
        if float(self.trim_sigmas) <= 0.0:
            raise ValueError("trim_sigmas must be > 0")
        if float(self.trim_floor_frac) < 0.0:
            raise ValueError("trim_floor_frac must be >= 0")
        if int(self.max_refits) < 0:
            raise ValueError("max_refits must be >= 0")


@dataclass(frozen=True)
class BoundaryConfig:
    strategy: str = "collect"
    smooth_iterations: int = 2
    dilate_radius: int = 0
    close_eps: float = 1e-6

    def __post_init__(self) -> None:
        _check_choice("boundary strategy", self.strategy, BOUNDARY_STRATEGIES)
        if int(self.smooth_iterations) < 0:
            raise ValueError("smooth_iterations must be >= 0")
        if int(self.dilate_radius) < 0:
            raise ValueError("dilate_radius must be >= 0")


@dataclass(frozen=True)
class MeshConfig:
    mode: str = "grid"
    # grid mode: skip quads spanning a larger height jump (0 disables)
    depth_gap: float = 0.0
    default_rgb: Tuple[int, int, int] = NEUTRAL_SKIN_RGB

    def __post_init__(self) -> None:
        _check_choice("mesh mode", self.mode, MESH_MODES)
        if float(self.depth_gap) < 0.0:
            raise ValueError("depth_gap must be >= 0")
        if len(tuple(self.default_rgb)) != 3:
            raise ValueError("default_rgb must have 3 channels")
        # JSON hands lists back; keep the field hashable.
        object.__setattr__(self, "default_rgb", tuple(int(c) for c in self.default_rgb))


@dataclass(frozen=True)
class EdgeFilterConfig:
    enabled: bool = False
    policy: str = "density"
    grid_size: int = 128
    radius_cells: int = 1
    dz_threshold: float = 0.015
    min_neighbors: int = 8
    dense_factor: float = 3.0
    loose_factor: float = 2.0

    def __post_init__(self) -> None:
        _check_choice("edge filter policy", self.policy, EDGE_FILTER_POLICIES)
        if int(self.grid_size) < 1:
            raise ValueError("grid_size must be >= 1")
        if int(self.radius_cells) < 0:
            raise ValueError("radius_cells must be >= 0")
        if float(self.dz_threshold) <= 0.0:
            raise ValueError("dz_threshold must be > 0")


@dataclass(frozen=True)
class TransformConfig:
    target_size: float = 10.0
    fit: str = "diagonal"
    apply: bool = True

    def __post_init__(self) -> None:
        _check_choice("transform fit", self.fit, TRANSFORM_FITS)
        if float(self.target_size) <= 0.0:
            raise ValueError("target_size must be > 0")


_SECTIONS = {
    "binning": BinningConfig,
    "smoothing": SmoothingConfig,
    "growth": GrowthConfig,
    "boundary": BoundaryConfig,
    "mesh": MeshConfig,
    "edge_filter": EdgeFilterConfig,
    "transform": TransformConfig,
}


@dataclass(frozen=True)
class PipelineConfig:
    binning: BinningConfig = field(default_factory=BinningConfig)
    smoothing: SmoothingConfig = field(default_factory=SmoothingConfig)
    growth: GrowthConfig = field(default_factory=GrowthConfig)
    boundary: BoundaryConfig = field(default_factory=BoundaryConfig)
    mesh: MeshConfig = field(default_factory=MeshConfig)
    edge_filter: EdgeFilterConfig = field(default_factory=EdgeFilterConfig)
    transform: TransformConfig = field(default_factory=TransformConfig)

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        return asdict(self)

    def to_json(self, path: Path) -> None:
        path.write_text(json.dumps(self.to_dict(), indent=2), encoding="utf-8")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineConfig":
        unknown = set(data) - set(_SECTIONS)
        if unknown:
            raise ValueError(f"Unknown config sections: {sorted(unknown)}")
        kwargs = {}
        for name, section_cls in _SECTIONS.items():
            values = dict(data.get(name) or {})
            allowed = {f.name for f in fields(section_cls)}
            bad = set(values) - allowed
            if bad:
                raise ValueError(f"Unknown keys in '{name}': {sorted(bad)}")
            kwargs[name] = section_cls(**values)
        return cls(**kwargs)

    @classmethod
    def from_json(cls, path: Path) -> "PipelineConfig":
        return cls.from_dict(json.loads(path.read_text(encoding="utf-8")))

    def with_overrides(self, **sections: Dict[str, Any]) -> "PipelineConfig":
        """Return a copy with some fields of some sections replaced.

        ``cfg.with_overrides(growth={"window_radius": 3})``
        """
        changes = {}
        for name, values in sections.items():
            if name not in _SECTIONS:
                raise ValueError(f"Unknown config section: {name}")
            changes[name] = replace(getattr(self, name), **values)
        return replace(self, **changes)
