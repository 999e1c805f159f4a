from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

import numpy as np
import matplotlib.pyplot as plt
import yaml

from icpvo.dataset.buffers import FrameBuffers
from icpvo.dataset.depth_manifest import DepthFrameSource
from icpvo.modules.icp import CpuIcpAligner
from icpvo.system.config import CameraIntrinsics, load_config
from icpvo.system.runner import CycleResult, Tracker
from icpvo.system.state import LaunchConfig, TrackerState
from icpvo.system.telemetry import Telemetry
from icpvo.system.trajectory import TrajectoryWriter


class TrajectoryVisualizer:
    def __init__(self):
        plt.ion()
        self.fig = plt.figure(figsize=(12, 5))
        self.ax1 = self.fig.add_subplot(121, projection='3d')
        self.ax2 = self.fig.add_subplot(122)
        self.positions: list[np.ndarray] = []

    def add(self, T_w_c: np.ndarray):
        self.positions.append(T_w_c[:3, 3].copy())

    def update(self):
        if len(self.positions) < 2:
            return

        positions = np.array(self.positions)
        x, y, z = positions[:, 0], positions[:, 1], positions[:, 2]

        self.ax1.clear()
        self.ax1.set_xlabel('X (m)')
        self.ax1.set_ylabel('Y (m)')
        self.ax1.set_zlabel('Z (m)')
        self.ax1.set_title(f'3D Trajectory ({len(positions)} frames)')
        self.ax1.plot(x, y, z, 'b-', linewidth=1.5, alpha=0.7)
        self.ax1.scatter(x[0], y[0], z[0], c='g', s=100, marker='o', label='Start')
        self.ax1.scatter(x[-1], y[-1], z[-1], c='r', s=100, marker='o', label='Current')
        self.ax1.legend()

        self.ax2.clear()
        self.ax2.set_xlabel('X (m)')
        self.ax2.set_ylabel('Z (m)')
        self.ax2.set_title(f'Top-Down View (traveled: {np.linalg.norm(positions[-1] - positions[0]):.2f}m)')
        self.ax2.plot(x, z, 'b-', linewidth=1.5, alpha=0.7)
        self.ax2.scatter(x[0], z[0], c='g', s=100, marker='o', label='Start')
        self.ax2.scatter(x[-1], z[-1], c='r', s=100, marker='o', label='Current')
        self.ax2.grid(True)
        self.ax2.legend()
        self.ax2.axis('equal')

        plt.pause(0.001)

    def close(self):
        plt.ioff()
        plt.show()


def _print_tune_progress(fraction: float, best: LaunchConfig, best_ms: float) -> None:
    print(f"\rBest: {best.threads} threads, {best.blocks} blocks ({best_ms:.4f}ms), {int(fraction * 100)}%    ",
          end="", flush=True)


def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser(description="Frame-to-frame depth ICP odometry.")
    ap.add_argument("depth_dir", type=str, help="Directory holding the depth manifest (depth.txt) and images")
    ap.add_argument("-v", "--search", action="store_true", help="Search for the best threads/blocks launch config first")
    ap.add_argument("--config", type=str, default=None, help="YAML config (camera intrinsics, ICP params)")
    ap.add_argument("--out_dir", type=str, default=".")
    ap.add_argument("--visualize", action="store_true", help="Enable real-time trajectory visualization")
    ap.add_argument("--viz_update_every", type=int, default=10, help="Update visualization every N frames")
    ap.add_argument("--log_every", type=int, default=50, help="Log progress every N frames")
    args = ap.parse_args(argv)

    try:
        print(f"[INFO] Loading config: {args.config or '<defaults>'}")
        cfg = load_config(args.config)
        intr = CameraIntrinsics.from_cfg(cfg)
        default_launch = LaunchConfig(
            threads=int(cfg["tracking"].get("default_threads", 224)),
            blocks=int(cfg["tracking"].get("default_blocks", 96)),
        )
        aligner = CpuIcpAligner(intr, cfg["icp"])

        print(f"[INFO] Opening depth sequence: {args.depth_dir}")
        source = DepthFrameSource(
            args.depth_dir,
            manifest=str(cfg["dataset"].get("manifest", "depth.txt")),
            depth_factor=int(cfg["dataset"].get("depth_factor", 1)),
        )
    except (FileNotFoundError, ValueError, KeyError, TypeError, yaml.YAMLError) as ex:
        print(f"[ERROR] {ex}", file=sys.stderr)
        return 1

    out_dir = Path(args.out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    traj_path = str(out_dir / "icp_traj.txt")
    metrics_path = str(out_dir / "metrics.json")
    cfg_path = str(out_dir / "config_used.yaml")

    telemetry = Telemetry()
    visualizer = TrajectoryVisualizer() if args.visualize else None

    def on_cycle(state: TrackerState, ts: int, result: CycleResult) -> None:
        if args.log_every > 0 and state.cycles % args.log_every == 0:
            print(f"\rICP: {state.mean_ms:.4f}ms ({state.cycles} frames)", end="", flush=True)
        if visualizer is not None:
            visualizer.add(state.T_w_cur)
            if state.cycles % args.viz_update_every == 0:
                visualizer.update()

    tracker = Tracker(
        source,
        FrameBuffers(intr.height, intr.width),
        aligner,
        TrajectoryWriter(traj_path),
        default_launch=default_launch,
        telemetry=telemetry,
        on_cycle=on_cycle,
    )

    try:
        if args.search:
            print("[INFO] Searching for the best thread/block configuration...")
        started = tracker.start(tune=args.search, progress=_print_tune_progress if args.search else None)
        if args.search and tracker.tune_result is not None:
            print()
            r = tracker.tune_result
            print(f"[INFO] Tuned launch: {r.launch.threads} threads, {r.launch.blocks} blocks "
                  f"({r.mean_ms:.4f}ms, {r.disqualified}/{r.evaluated} disqualified)")
        if started:
            print(f"[INFO] Tracking with {tracker.state.launch.threads} threads, {tracker.state.launch.blocks} blocks")
            state = tracker.run()
            print()
        else:
            state = tracker.state
    except (FileNotFoundError, ValueError) as ex:
        print(f"\n[ERROR] {ex}", file=sys.stderr)
        return 1
    finally:
        source.close()

    with open(metrics_path, "w", encoding="utf-8") as f:
        json.dump(telemetry.to_dict(), f, indent=2)

    with open(cfg_path, "w", encoding="utf-8") as f:
        yaml.safe_dump(cfg, f, sort_keys=False)

    if state.count > 0 and state.mean_ms > 0.0:
        print(f"ICP speed: {int(1000.0 / state.mean_ms)}Hz")
    if state.degraded_cycles:
        print(f"[WARN] {state.degraded_cycles}/{state.cycles} cycles degraded")
    print(f"[OK] wrote: {traj_path}")
    print(f"[OK] wrote: {metrics_path}")

    if visualizer is not None:
        print("[INFO] Showing final trajectory. Close the window to exit.")
        visualizer.update()
        visualizer.close()

    return 0


if __name__ == "__main__":
    sys.exit(main())
