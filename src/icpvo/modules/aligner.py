from __future__ import annotations

from abc import ABC, abstractmethod

import numpy as np

from ..system.state import LaunchConfig


class AlignmentError(RuntimeError):
    """Raised by an aligner when it cannot produce a trustworthy incremental transform."""


class Aligner(ABC):
    """
    Rigid alignment between two depth frames.

    Callers must re-run init_model/init_observation every cycle: the frame
    buffers are reused in alternating roles, so any state derived from them is
    stale after a swap.
    """

    @abstractmethod
    def init_model(self, depth: np.ndarray) -> None:
        """Build the reference surface from the model (previous) depth frame."""

    @abstractmethod
    def init_observation(self, depth: np.ndarray) -> None:
        """Build the observed surface from the current depth frame."""

    @abstractmethod
    def refine(self, T_prev_cur: np.ndarray, launch: LaunchConfig) -> np.ndarray:
        """
        Refine the initial guess T_prev_cur (maps current-frame points into the
        previous frame) and return the refined 4x4 rigid transform.

        Raises:
            AlignmentError: if the estimate cannot be trusted.
        """


# errors a refine call may raise that mean "no trustworthy estimate this time"
ALIGNMENT_FAILURES = (AlignmentError, ValueError, np.linalg.LinAlgError)
