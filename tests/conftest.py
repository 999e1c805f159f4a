import sys
from pathlib import Path

import cv2
import numpy as np
import pytest

# Add src/ to sys.path so 'icpvo' can be imported in tests
SRC = Path(__file__).resolve().parents[1] / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from icpvo.geom.se3 import Rt_to_T
from icpvo.modules.aligner import Aligner, AlignmentError
from icpvo.system.config import CameraIntrinsics

H, W = 48, 64


def small_intrinsics() -> CameraIntrinsics:
    return CameraIntrinsics(width=W, height=H, fx=50.0, fy=50.0, cx=31.5, cy=23.5, depth_scale=1000.0)


def wavy_depth(phase: float = 0.0) -> np.ndarray:
    u = np.arange(W, dtype=np.float64)[None, :]
    v = np.arange(H, dtype=np.float64)[:, None]
    z = 1000.0 + 100.0 * np.sin(u / 3.0 + phase) + 100.0 * np.cos(v / 4.0)
    return np.rint(z).astype(np.uint16)


def rot_z(deg: float) -> np.ndarray:
    a = np.deg2rad(deg)
    return np.array([[np.cos(a), -np.sin(a), 0.0], [np.sin(a), np.cos(a), 0.0], [0.0, 0.0, 1.0]])


def write_sequence(root: Path, stamps: list[str], *, extra_lines: list[str] = (), depths=None) -> Path:
    """Write depth pngs plus a depth.txt manifest; extra_lines go at the top."""
    (root / "depth").mkdir(parents=True, exist_ok=True)
    lines = list(extra_lines)
    for i, s in enumerate(stamps):
        rel = f"depth/{s}.png"
        d = wavy_depth(0.1 * i) if depths is None else depths[i]
        assert cv2.imwrite(str(root / rel), d)
        lines.append(f"{s} {rel}")
    (root / "depth.txt").write_text("\n".join(lines) + "\n", encoding="utf-8")
    return root


class IdentityAligner(Aligner):
    def __init__(self):
        self.models = []
        self.observations = []

    def init_model(self, depth):
        self.models.append(depth)

    def init_observation(self, depth):
        self.observations.append(depth)

    def refine(self, T_prev_cur, launch):
        return np.eye(4)


class FixedAligner(IdentityAligner):
    def __init__(self, T):
        super().__init__()
        self.T = np.asarray(T, dtype=np.float64)
        self.guesses = []

    def refine(self, T_prev_cur, launch):
        self.guesses.append(np.array(T_prev_cur))
        return self.T.copy()


class FailingAligner(IdentityAligner):
    def refine(self, T_prev_cur, launch):
        raise AlignmentError("no convergence")


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TimedAligner(IdentityAligner):
    """Advances a fake clock by cost(launch) milliseconds per refine."""

    def __init__(self, clock: FakeClock, cost):
        super().__init__()
        self.clock = clock
        self.cost = cost
        self.launches = []

    def refine(self, T_prev_cur, launch):
        self.launches.append(launch)
        self.clock.now += self.cost(launch) / 1000.0
        return np.eye(4)


@pytest.fixture
def fixed_T() -> np.ndarray:
    return Rt_to_T(rot_z(10.0), np.array([0.1, -0.02, 0.05]))
