from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np

from .aligner import Aligner, AlignmentError
from ..geom.se3 import Rt_to_T, is_rigid
from ..system.config import CameraIntrinsics
from ..system.state import LaunchConfig


def depth_to_vertices(depth: np.ndarray, intr: CameraIntrinsics, depth_cutoff: float) -> np.ndarray:
    """
    Back-project a raw depth image into an (H,W,3) vertex map in metres.
    Missing depth and depth beyond depth_cutoff become NaN.
    """
    z = depth.astype(np.float64) / intr.depth_scale
    z[(depth == 0) | (z > depth_cutoff)] = np.nan
    h, w = depth.shape
    u = np.arange(w, dtype=np.float64)[None, :]
    v = np.arange(h, dtype=np.float64)[:, None]
    x = (u - intr.cx) * z / intr.fx
    y = (v - intr.cy) * z / intr.fy
    return np.dstack([x, y, z])


def vertices_to_normals(vmap: np.ndarray) -> np.ndarray:
    # forward differences; last row/column has no normal
    nmap = np.full_like(vmap, np.nan)
    dx = vmap[:-1, 1:] - vmap[:-1, :-1]
    dy = vmap[1:, :-1] - vmap[:-1, :-1]
    c = np.cross(dx, dy)
    norm = np.linalg.norm(c, axis=2, keepdims=True)
    with np.errstate(divide="ignore", invalid="ignore"):
        nmap[:-1, :-1] = c / norm
    return nmap


@dataclass
class _Level:
    intr: CameraIntrinsics
    vmap: np.ndarray
    nmap: np.ndarray


class CpuIcpAligner(Aligner):
    """
    Coarse-to-fine point-to-plane ICP with projective data association.

    Level 0 is full resolution; each further level halves it. `iterations[i]` is
    the iteration count at level i, and levels are visited coarsest first.

    The 6x6 normal equations are reduced as `launch.blocks` partial sums, the
    same split a GPU reduction uses. `launch.threads` has no CPU counterpart and
    only affects GPU-backed aligners.
    """

    def __init__(self, intr: CameraIntrinsics, cfg: dict | None = None):
        cfg = cfg or {}
        self.intr = intr
        self.iterations = [int(i) for i in cfg.get("iterations", [10, 5, 4])]
        if not self.iterations or any(i < 0 for i in self.iterations):
            raise ValueError(f"icp.iterations must be a non-empty list of counts, got {self.iterations}")
        self.dist_thresh = float(cfg.get("dist_thresh", 0.10))
        self.sin_thresh = float(np.sin(np.deg2rad(float(cfg.get("angle_thresh_deg", 20.0)))))
        self.depth_cutoff = float(cfg.get("depth_cutoff", 20.0))
        self.min_correspondences = int(cfg.get("min_correspondences", 64))

        self._model: list[_Level] | None = None
        self._obs: list[tuple[np.ndarray, np.ndarray]] | None = None
        self.last_stats: dict = {}

    def _pyramid(self, depth: np.ndarray) -> list[_Level]:
        if depth.shape != (self.intr.height, self.intr.width):
            raise ValueError(f"depth shape {depth.shape} does not match camera {self.intr.height}x{self.intr.width}")
        levels = []
        for lvl in range(len(self.iterations)):
            intr = self.intr.scaled(lvl)
            if lvl == 0:
                d = depth
            else:
                d = cv2.resize(depth, (intr.width, intr.height), interpolation=cv2.INTER_NEAREST)
            vmap = depth_to_vertices(d, intr, self.depth_cutoff)
            levels.append(_Level(intr, vmap, vertices_to_normals(vmap)))
        return levels

    def init_model(self, depth: np.ndarray) -> None:
        self._model = self._pyramid(depth)

    def init_observation(self, depth: np.ndarray) -> None:
        obs = []
        for level in self._pyramid(depth):
            P = level.vmap.reshape(-1, 3)
            N = level.nmap.reshape(-1, 3)
            keep = np.all(np.isfinite(P), axis=1) & np.all(np.isfinite(N), axis=1)
            obs.append((P[keep], N[keep]))
        self._obs = obs

    def refine(self, T_prev_cur: np.ndarray, launch: LaunchConfig) -> np.ndarray:
        self.last_stats = {}
        if self._model is None or self._obs is None:
            raise AlignmentError("init_model and init_observation must be called before refine")
        T = np.array(T_prev_cur, dtype=np.float64)
        if not is_rigid(T):
            raise AlignmentError("initial guess is not a rigid transform")

        blocks = max(1, int(launch.blocks))
        for lvl in reversed(range(len(self.iterations))):
            for _ in range(self.iterations[lvl]):
                T = self._iterate(lvl, T, blocks)

        if not is_rigid(T):
            raise AlignmentError("ICP diverged to a non-rigid transform")
        return T

    def _iterate(self, lvl: int, T: np.ndarray, blocks: int) -> np.ndarray:
        model = self._model[lvl]
        P, Nc = self._obs[lvl]
        intr = model.intr

        R = T[:3, :3]
        t = T[:3, 3]
        p = P @ R.T + t
        n_rot = Nc @ R.T

        # project current points into the model image
        z = p[:, 2]
        front = z > 1e-6
        u = np.full(z.shape, -1.0)
        v = np.full(z.shape, -1.0)
        u[front] = np.rint(intr.fx * p[front, 0] / z[front] + intr.cx)
        v[front] = np.rint(intr.fy * p[front, 1] / z[front] + intr.cy)
        inside = front & (u >= 0) & (u < intr.width) & (v >= 0) & (v < intr.height)

        idx = np.nonzero(inside)[0]
        ui = u[idx].astype(np.intp)
        vi = v[idx].astype(np.intp)
        q = model.vmap[vi, ui]
        nq = model.nmap[vi, ui]
        pp = p[idx]
        nr = n_rot[idx]

        valid = np.all(np.isfinite(q), axis=1) & np.all(np.isfinite(nq), axis=1)
        pp, nr, q, nq = pp[valid], nr[valid], q[valid], nq[valid]

        dist = np.linalg.norm(pp - q, axis=1)
        sin_angle = np.linalg.norm(np.cross(nr, nq), axis=1)
        keep = (dist <= self.dist_thresh) & (sin_angle <= self.sin_thresh)
        pp, q, nq = pp[keep], q[keep], nq[keep]

        n = pp.shape[0]
        if n < self.min_correspondences:
            raise AlignmentError(f"too few correspondences at level {lvl}: {n} < {self.min_correspondences}")

        # r_i = n_i^T (p_i - q_i); n^T (w x p) = (p x n)^T w
        r = np.einsum("ij,ij->i", nq, pp - q)
        J = np.hstack([np.cross(pp, nq), nq])

        A = np.zeros((6, 6))
        b = np.zeros(6)
        for Js, rs in zip(np.array_split(J, min(blocks, n)), np.array_split(r, min(blocks, n))):
            A += Js.T @ Js
            b += Js.T @ rs

        if np.linalg.matrix_rank(A) < 6:
            raise AlignmentError(f"degenerate geometry at level {lvl}: point-to-plane system is rank deficient")

        try:
            x = np.linalg.solve(A, -b)
        except np.linalg.LinAlgError as ex:
            raise AlignmentError(f"point-to-plane solve failed at level {lvl}: {ex}") from ex
        dR, _ = cv2.Rodrigues(x[:3].reshape(3, 1))
        T = Rt_to_T(dR, x[3:]) @ T

        self.last_stats = {
            "level": lvl,
            "num_corr": int(n),
            "residual_rms": float(np.sqrt(np.mean(r * r))),
        }
        return T
