from dataclasses import dataclass, field
from enum import Enum
import numpy as np

class Phase(str, Enum):
    INIT = "init"
    WARMUP = "warmup"
    TRACKING = "tracking"
    TERMINATED = "terminated"

@dataclass(frozen=True)
class LaunchConfig:
    threads: int  # parallelism width
    blocks: int   # parallel unit count

DEFAULT_LAUNCH = LaunchConfig(threads=224, blocks=96)

@dataclass
class TrackerState:
    T_w_prev: np.ndarray = field(default_factory=lambda: np.eye(4))
    T_w_cur: np.ndarray = field(default_factory=lambda: np.eye(4))
    launch: LaunchConfig = DEFAULT_LAUNCH
    phase: Phase = Phase.INIT

    # running mean of per-cycle alignment latency (ms)
    mean_ms: float = 0.0
    count: int = 0

    cycles: int = 0
    degraded_cycles: int = 0

def running_mean(mean: float, count: int, sample: float) -> float:
    return (count * mean + sample) / (count + 1)
