# src/icpvo/system/runner.py
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable

import numpy as np

from .state import DEFAULT_LAUNCH, LaunchConfig, Phase, TrackerState, running_mean
from .telemetry import Telemetry
from .trajectory import TrajectoryWriter
from .tuner import ProgressFn, TuneResult, tune_launch
from ..dataset.buffers import FrameBuffers
from ..dataset.depth_manifest import DepthFrameSource
from ..geom.se3 import inv_T
from ..modules.aligner import ALIGNMENT_FAILURES, Aligner


@dataclass
class CycleResult:
    T_prev_cur: np.ndarray
    latency_ms: float
    degraded: bool = False
    reason: str = "ICP_OK"
    stats: dict = field(default_factory=dict)


def step(
    state: TrackerState,
    aligner: Aligner,
    buffers: FrameBuffers,
    *,
    clock: Callable[[], float] = time.perf_counter,
) -> CycleResult:
    """
    One tracking cycle: buffers.model -> buffers.observation.

    Responsibilities:
      1) rebuild the aligner's model/observation from the current buffers
      2) refine the incremental transform
      3) compose it into state.T_w_cur
      4) update the running latency mean
      5) swap buffer roles

    Conventions:
      - T_a_b maps points from b to a
      - the aligner refines T_prev_cur; the trajectory stores T_w_c

    If refine raises one of ALIGNMENT_FAILURES the increment is identity (the pose is
    held) and the cycle is reported as degraded.
    """
    if state.phase is not Phase.TRACKING:
        raise ValueError(f"runner.step requires phase TRACKING, got {state.phase.value}")

    aligner.init_model(buffers.model)
    aligner.init_observation(buffers.observation)

    tick = clock()

    state.T_w_prev = state.T_w_cur
    T_prev_cur = inv_T(state.T_w_prev) @ state.T_w_cur

    degraded = False
    reason = "ICP_OK"
    try:
        T_prev_cur = aligner.refine(T_prev_cur, state.launch)
    except ALIGNMENT_FAILURES as ex:
        degraded = True
        reason = f"DEGRADED_HOLD_POSE:{ex}"
        T_prev_cur = np.eye(4)

    state.T_w_cur = state.T_w_prev @ T_prev_cur

    tock = clock()

    latency_ms = (tock - tick) * 1000.0
    state.mean_ms = running_mean(state.mean_ms, state.count, latency_ms)
    state.count += 1
    state.cycles += 1
    if degraded:
        state.degraded_cycles += 1

    buffers.swap()

    return CycleResult(
        T_prev_cur=T_prev_cur,
        latency_ms=latency_ms,
        degraded=degraded,
        reason=reason,
        stats=dict(getattr(aligner, "last_stats", {}) or {}),
    )


class Tracker:
    """
    Frame-to-frame odometry loop.

    Phases: INIT -> WARMUP (optional launch tuning) -> TRACKING -> TERMINATED.
    Every pose is written to the trajectory as soon as it is computed; nothing
    is kept in memory beyond the current and previous pose.
    """

    def __init__(
        self,
        source: DepthFrameSource,
        buffers: FrameBuffers,
        aligner: Aligner,
        writer: TrajectoryWriter,
        *,
        default_launch: LaunchConfig = DEFAULT_LAUNCH,
        telemetry: Telemetry | None = None,
        clock: Callable[[], float] = time.perf_counter,
        on_cycle: Callable[[TrackerState, int, CycleResult], None] | None = None,
    ):
        self.source = source
        self.buffers = buffers
        self.aligner = aligner
        self.writer = writer
        self.telemetry = telemetry
        self.clock = clock
        self.on_cycle = on_cycle
        self.state = TrackerState(launch=default_launch)
        self.tune_result: TuneResult | None = None

    def start(self, tune: bool = False, progress: ProgressFn | None = None) -> bool:
        """Truncate the trajectory, load the first two frames and pick the launch config."""
        if self.state.phase is not Phase.INIT:
            raise ValueError(f"Tracker.start called in phase {self.state.phase.value}")

        self.writer.reset()

        if not self.source.fill_model(self.buffers) or not self.source.fill_observation(self.buffers):
            print("[WARN] Fewer than two frames in manifest; nothing to track.")
            self.state.phase = Phase.TERMINATED
            return False

        if tune:
            self.state.phase = Phase.WARMUP
            self.tune_result = tune_launch(
                self.aligner,
                self.buffers,
                clock=self.clock,
                progress=progress,
                fallback=self.state.launch,
            )
            self.state.launch = self.tune_result.launch

        self.state.phase = Phase.TRACKING
        return True

    def run(self) -> TrackerState:
        state = self.state
        while state.phase is Phase.TRACKING:
            result = step(state, self.aligner, self.buffers, clock=self.clock)
            if result.degraded:
                print(f"\n[WARN] cycle {state.cycles}: alignment failed, holding pose ({result.reason})")

            # after the swap the frame that produced this pose sits in the model slot
            ts = self.buffers.model_timestamp
            self.writer.append(ts, state.T_w_cur)

            if self.telemetry is not None:
                self.telemetry.log_frame(state.cycles, {
                    "ts": ts / 1000000.0,
                    "latency_ms": float(result.latency_ms),
                    "mean_ms": float(state.mean_ms),
                    "degraded": bool(result.degraded),
                    "reason": result.reason,
                    "icp": result.stats,
                })
            if self.on_cycle is not None:
                self.on_cycle(state, ts, result)

            if not self.source.fill_observation(self.buffers):
                state.phase = Phase.TERMINATED

        if self.telemetry is not None:
            self.telemetry.summary = {
                "cycles": state.cycles,
                "degraded_cycles": state.degraded_cycles,
                "mean_ms": float(state.mean_ms),
                "launch": {"threads": state.launch.threads, "blocks": state.launch.blocks},
            }
        return state
