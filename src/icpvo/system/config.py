from __future__ import annotations

import copy
import os
from dataclasses import dataclass

import numpy as np
import yaml

DEFAULT_CONFIG: dict = {
    "dataset": {
        "manifest": "depth.txt",
        "depth_factor": 1,
    },
    "camera": {
        "width": 1280,
        "height": 720,
        "fx": 608.6896362304688,
        "fy": 608.6896362304688,
        "cx": 640.839599609375,
        "cy": 369.6243591308594,
        "depth_scale": 1000.0,
    },
    "icp": {
        "iterations": [10, 5, 4],
        "dist_thresh": 0.10,
        "angle_thresh_deg": 20.0,
        "depth_cutoff": 20.0,
        "min_correspondences": 64,
    },
    "tracking": {
        "default_threads": 224,
        "default_blocks": 96,
    },
}


@dataclass(frozen=True)
class CameraIntrinsics:
    width: int
    height: int
    fx: float
    fy: float
    cx: float
    cy: float
    depth_scale: float = 1000.0  # raw depth units per metre

    @classmethod
    def from_cfg(cls, cfg: dict) -> "CameraIntrinsics":
        cam = cfg["camera"]
        intr = cls(
            width=int(cam["width"]),
            height=int(cam["height"]),
            fx=float(cam["fx"]),
            fy=float(cam["fy"]),
            cx=float(cam["cx"]),
            cy=float(cam["cy"]),
            depth_scale=float(cam.get("depth_scale", 1000.0)),
        )
        if intr.width <= 0 or intr.height <= 0:
            raise ValueError(f"camera width/height must be positive, got {intr.width}x{intr.height}")
        if intr.fx <= 0.0 or intr.fy <= 0.0 or intr.depth_scale <= 0.0:
            raise ValueError("camera fx, fy and depth_scale must be positive")
        return intr

    @property
    def K(self) -> np.ndarray:
        return np.array([[self.fx, 0.0, self.cx], [0.0, self.fy, self.cy], [0.0, 0.0, 1.0]], dtype=np.float64)

    def scaled(self, level: int) -> "CameraIntrinsics":
        """Intrinsics of pyramid level `level` (each level halves the resolution)."""
        s = float(1 << level)
        return CameraIntrinsics(
            width=self.width >> level,
            height=self.height >> level,
            fx=self.fx / s,
            fy=self.fy / s,
            cx=self.cx / s,
            cy=self.cy / s,
            depth_scale=self.depth_scale,
        )


def _merge(base: dict, override: dict) -> dict:
    out = copy.deepcopy(base)
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge(out[k], v)
        else:
            out[k] = v
    return out


def load_config(path: str | None) -> dict:
    """Load a YAML config on top of DEFAULT_CONFIG. `None` returns the defaults."""
    if path is None:
        return copy.deepcopy(DEFAULT_CONFIG)
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Missing config: {path}")
    with open(path, "r", encoding="utf-8") as f:
        user = yaml.safe_load(f) or {}
    if not isinstance(user, dict):
        raise ValueError(f"Config must be a mapping: {path}")
    for section in DEFAULT_CONFIG:
        if section in user and not isinstance(user[section], dict):
            raise ValueError(f"Config section '{section}' must be a mapping, got {type(user[section]).__name__}: {path}")
    return _merge(DEFAULT_CONFIG, user)
