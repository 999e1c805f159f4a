from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Callable

import numpy as np

from .state import DEFAULT_LAUNCH, LaunchConfig, running_mean
from ..dataset.buffers import FrameBuffers
from ..geom.se3 import inv_T
from ..modules.aligner import ALIGNMENT_FAILURES, Aligner

THREAD_RANGE = range(16, 513, 16)
BLOCK_RANGE = range(16, 513, 16)
REPEATS = 5

ProgressFn = Callable[[float, LaunchConfig, float], None]


@dataclass
class TuneResult:
    launch: LaunchConfig
    mean_ms: float
    evaluated: int
    disqualified: int


def benchmark_launch(
    aligner: Aligner,
    buffers: FrameBuffers,
    launch: LaunchConfig,
    *,
    repeats: int = REPEATS,
    clock: Callable[[], float] = time.perf_counter,
) -> float:
    """
    Mean wall-clock time (ms) of one tracking cycle on the current model/observation
    pair. Returns +inf if the aligner fails for this launch configuration.
    """
    T_w_prev = np.eye(4)
    T_w_cur = np.eye(4)
    mean = 0.0
    count = 0
    for _ in range(repeats):
        aligner.init_model(buffers.model)
        aligner.init_observation(buffers.observation)

        tick = clock()
        T_w_prev = T_w_cur
        T_prev_cur = inv_T(T_w_prev) @ T_w_cur
        try:
            T_prev_cur = aligner.refine(T_prev_cur, launch)
        except ALIGNMENT_FAILURES:
            return math.inf
        T_w_cur = T_w_prev @ T_prev_cur
        tock = clock()

        mean = running_mean(mean, count, (tock - tick) * 1000.0)
        count += 1
    return mean


def tune_launch(
    aligner: Aligner,
    buffers: FrameBuffers,
    *,
    repeats: int = REPEATS,
    clock: Callable[[], float] = time.perf_counter,
    progress: ProgressFn | None = None,
    fallback: LaunchConfig = DEFAULT_LAUNCH,
) -> TuneResult:
    """
    Grid search over (threads, blocks) for the lowest mean alignment latency.

    Uses the frames currently held in `buffers` as a fixed workload; buffer roles
    are left untouched. Only a strictly lower mean replaces the best, so ties
    keep the earliest candidate in threads-then-blocks order.
    """
    total = len(THREAD_RANGE) * len(BLOCK_RANGE)
    best = fallback
    best_ms = math.inf
    evaluated = 0
    disqualified = 0

    for threads in THREAD_RANGE:
        for blocks in BLOCK_RANGE:
            launch = LaunchConfig(threads=threads, blocks=blocks)
            mean = benchmark_launch(aligner, buffers, launch, repeats=repeats, clock=clock)
            evaluated += 1
            if math.isinf(mean):
                disqualified += 1

            if mean < best_ms:
                best_ms = mean
                best = launch

            if progress is not None:
                progress(evaluated / total, best, best_ms)

    return TuneResult(launch=best, mean_ms=best_ms, evaluated=evaluated, disqualified=disqualified)
