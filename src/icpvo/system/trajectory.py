from __future__ import annotations

import numpy as np

from ..geom.se3 import R_to_quat_xyzw, Rt_to_T, quat_xyzw_to_R


def format_pose_line(timestamp: int, T_w_c: np.ndarray) -> str:
    """
    One TUM/Freiburg trajectory line: `sec tx ty tz qx qy qz qw`.

    `timestamp` is in microseconds. Pose values are written from float32 with
    6 significant digits.
    """
    T = np.asarray(T_w_c, dtype=np.float32).astype(np.float64)
    t = T[:3, 3]
    q = R_to_quat_xyzw(T[:3, :3]).astype(np.float32)
    vals = " ".join(f"{float(x):g}" for x in (*t.astype(np.float32), *q))
    return f"{timestamp / 1000000.0:.6f} {vals}\n"


class TrajectoryWriter:
    def __init__(self, path: str):
        self.path = path
        self.lines = 0

    def reset(self) -> None:
        # truncate once per run; append() reopens in append mode per record
        with open(self.path, "w", encoding="utf-8"):
            pass
        self.lines = 0

    def append(self, timestamp: int, T_w_c: np.ndarray) -> None:
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(format_pose_line(timestamp, T_w_c))
        self.lines += 1


def read_trajectory(path: str) -> tuple[list[float], list[np.ndarray]]:
    ts_list: list[float] = []
    poses: list[np.ndarray] = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            parts = line.split()
            if len(parts) != 8 or parts[0].startswith("#"):
                continue
            vals = [float(p) for p in parts]
            ts_list.append(vals[0])
            poses.append(Rt_to_T(quat_xyzw_to_R(np.array(vals[4:8])), np.array(vals[1:4])))
    return ts_list, poses
